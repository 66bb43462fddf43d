"""
Feeds tie the client pieces together for one screen.

MessageFeed keeps one conversation's timeline current: it seeds from the
cache, polls the message store, folds in push events and send pipeline
updates, and reports new incoming messages. ConversationFeed keeps the
conversation list current.

Every source of messages goes through sync.merge(), so the timeline is the
same whichever path a message took to get here.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from chatsync.client import outbound
from chatsync.client.api import ChatAPIClient
from chatsync.client.cache import ConversationCache
from chatsync.client.models import ConversationSummary, LocalMessage, MessagePage, UserSummary, STATUS_SEEN
from chatsync.client.network import NetworkStatus
from chatsync.client.outbound import SendPipeline
from chatsync.client.poller import Poller
from chatsync.client.realtime import ChannelEvent, ChannelState, RealtimeChannel, Subscription
from chatsync.client.sync import NewMessageNotifier, merge, new_since, latest_id
from chatsync.errors import ChatSyncError

logger = logging.getLogger(__name__)


class MessageFeed:
    def __init__(
        self,
        conversation_id: int,
        user_id: str,
        api: ChatAPIClient,
        network: NetworkStatus,
        cache: ConversationCache,
        pipeline: Optional[SendPipeline] = None,
        channel: Optional[RealtimeChannel] = None,
        interval: float = 2.0,
        offline_interval: float = 10.0,
        failure_threshold: int = 3,
        page_size: int = 50,
        auto_mark_seen: bool = False,
        on_update: Optional[Callable[[List[LocalMessage]], None]] = None,
        on_new_message: Optional[Callable[[LocalMessage], None]] = None,
    ):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.api = api
        self.network = network
        self.cache = cache
        self.pipeline = pipeline
        self.channel = channel
        self.page_size = page_size
        self.auto_mark_seen = auto_mark_seen
        self.on_update = on_update
        self.on_new_message = on_new_message

        self.messages: List[LocalMessage] = cache.get(conversation_id)
        self.has_more = True
        self.state = ChannelState.DEGRADED_POLL
        self.last_error: Optional[Exception] = None

        self._notifier = NewMessageNotifier(self._announce)
        self._subscription: Optional[Subscription] = None
        self._push_task: Optional[asyncio.Task] = None
        self._seen_task: Optional[asyncio.Task] = None
        self._closed = False
        self._loaded = False

        self.poller = Poller(
            fetch=self._fetch_latest,
            interval=interval,
            offline_interval=offline_interval,
            on_change=self._on_page,
            on_error=self._on_error,
            network=network,
            failure_threshold=failure_threshold,
            name=f"message-poller[{conversation_id}]",
        )
        self._remove_pipeline_listener = pipeline.add_listener(self._on_outbound) if pipeline else None
        self._remove_network_listener = network.add_listener(self._on_network_change)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("feed is closed")
        if self.channel is None:
            self.poller.start()
            return
        self.state = ChannelState.CONNECTING
        # Poll until push reports itself live
        self.poller.start()
        self._subscription = self.channel.subscribe(self.conversation_id)
        self._push_task = asyncio.get_running_loop().create_task(self._consume_push(self._subscription))

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.poller.close()
        if self._subscription is not None:
            self._subscription.cancel()
        for task in (self._push_task, self._seen_task):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if self._remove_pipeline_listener is not None:
            self._remove_pipeline_listener()
        self._remove_network_listener()
        self.state = ChannelState.CLOSED

    async def refresh(self) -> bool:
        """Poll now. Returns True if the latest page changed."""
        return await self.poller.refresh()

    # =========================================================================
    # Operations
    # =========================================================================

    async def send(self, content: str, image_url: Optional[str] = None) -> LocalMessage:
        if self.pipeline is None:
            raise RuntimeError("feed has no send pipeline")
        return await self.pipeline.send(self.conversation_id, content, image_url=image_url)

    async def load_more(self) -> List[LocalMessage]:
        """
        Fetch the page of history just older than the oldest confirmed
        message held, whatever arrived since or was seeded from the cache.

        Returns:
            Messages not previously in the timeline
        """
        confirmed = [m for m in self.messages if not m.is_placeholder]
        oldest = confirmed[-1].id if confirmed else None
        page = await self.api.list_messages(self.conversation_id, limit=self.page_size, before=oldest)
        known = {m.id for m in self.messages}
        added = [m for m in page.messages if m.id not in known]
        self.has_more = page.has_more
        self._apply(page.messages, announce=False)
        logger.debug(f"Loaded {len(added)} older messages for conversation {self.conversation_id}")
        return added

    async def mark_seen(self) -> int:
        """Mark everything addressed to this user as seen, then resync."""
        updated = await self.api.mark_conversation_seen(self.conversation_id)
        if updated:
            await self.refresh()
        return updated

    def unseen_incoming(self) -> List[LocalMessage]:
        return [
            m for m in self.messages
            if not m.is_placeholder and m.recipient_id == self.user_id and m.status != STATUS_SEEN
        ]

    def newest_id(self) -> Optional[int]:
        return latest_id(self.messages)

    def messages_since(self, since_id: Optional[int]) -> List[LocalMessage]:
        return new_since(self.messages, since_id)

    # =========================================================================
    # Sources
    # =========================================================================

    async def _fetch_latest(self) -> MessagePage:
        return await self.api.list_messages(self.conversation_id, limit=self.page_size)

    def _on_page(self, page: MessagePage) -> None:
        first = not self._loaded
        if first:
            self.has_more = page.has_more
            self._loaded = True
        self._apply(page.messages, prime=first)

    def _on_error(self, exc: Exception) -> None:
        self.last_error = exc

    def _on_outbound(self, event: str, message: LocalMessage) -> None:
        if message.conversation_id != self.conversation_id:
            return
        if event in (outbound.REJECTED, outbound.DISCARDED):
            self.messages = [m for m in self.messages if m.id != message.id]
            self._publish()
            return
        self._apply([message], announce=False)

    def _on_network_change(self, online: bool) -> None:
        if not online and self.state == ChannelState.ACTIVE_PUSH:
            self._degrade()

    async def _consume_push(self, subscription: Subscription) -> None:
        async for event in subscription:
            await self._handle_push(event)

    async def _handle_push(self, event: ChannelEvent) -> None:
        if event.kind == "connected":
            self.state = ChannelState.ACTIVE_PUSH
            # Catch up on anything missed while connecting, then let push carry updates
            await self.poller.refresh()
            if self.state == ChannelState.ACTIVE_PUSH:
                self.poller.stop()
        elif event.kind == "message" and event.message is not None:
            if event.message.conversation_id == self.conversation_id:
                self._apply([event.message])
        elif event.kind in ("error", "closed"):
            if not self._closed:
                self._degrade()

    def _degrade(self) -> None:
        self.state = ChannelState.DEGRADED_POLL
        if not self._closed and not self.poller.running:
            logger.info(f"Conversation {self.conversation_id} falling back to polling")
            self.poller.start()

    # =========================================================================
    # Timeline
    # =========================================================================

    def _apply(self, incoming: List[LocalMessage], announce: bool = True, prime: bool = False) -> None:
        self.messages = merge(self.messages, incoming)
        self.cache.set(self.conversation_id, self.messages)
        # Only the first server page primes; earlier applies are folded into it
        if prime:
            self._notifier.prime(self.messages)
        elif self._notifier.primed:
            if announce:
                self._notifier.notify(self.messages)
            else:
                self._notifier.prime(self.messages)
        self._publish()

        if self.auto_mark_seen and self.unseen_incoming():
            self._schedule_mark_seen()

    def _publish(self) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(list(self.messages))
        except Exception:
            logger.exception("Feed update callback failed")

    def _announce(self, message: LocalMessage) -> None:
        if message.sender_id == self.user_id or self.on_new_message is None:
            return
        self.on_new_message(message)

    def _schedule_mark_seen(self) -> None:
        if self._closed or (self._seen_task is not None and not self._seen_task.done()):
            return
        self._seen_task = asyncio.get_running_loop().create_task(self._mark_seen_quietly())

    async def _mark_seen_quietly(self) -> None:
        try:
            await self.api.mark_conversation_seen(self.conversation_id)
        except ChatSyncError as e:
            logger.warning(f"Auto mark seen failed for conversation {self.conversation_id}: {e}")


class ConversationFeed:
    """Polls the caller's conversation list."""

    def __init__(
        self,
        api: ChatAPIClient,
        network: NetworkStatus,
        interval: float = 3.0,
        offline_interval: float = 15.0,
        failure_threshold: int = 3,
        page_size: int = 50,
        on_update: Optional[Callable[[List[ConversationSummary]], None]] = None,
    ):
        self.api = api
        self.page_size = page_size
        self.on_update = on_update
        self.conversations: List[ConversationSummary] = []
        self.has_more = False
        self.poller = Poller(
            fetch=self._fetch,
            interval=interval,
            offline_interval=offline_interval,
            on_change=self._on_change,
            network=network,
            failure_threshold=failure_threshold,
            name="conversation-poller",
        )

    def start(self) -> None:
        self.poller.start()

    async def aclose(self) -> None:
        self.poller.close()

    async def refresh(self) -> bool:
        return await self.poller.refresh()

    async def search(self, query: str) -> List[UserSummary]:
        return await self.api.search_users(query)

    async def open_with(self, recipient_id: str) -> ConversationSummary:
        """Get or create the conversation with a user and refresh the list."""
        conversation, created = await self.api.create_conversation(recipient_id)
        if created:
            await self.refresh()
        return conversation

    async def _fetch(self):
        return await self.api.list_conversations(limit=self.page_size)

    def _on_change(self, value) -> None:
        self.conversations, self.has_more = value
        if self.on_update is not None:
            try:
                self.on_update(list(self.conversations))
            except Exception:
                logger.exception("Conversation list callback failed")
