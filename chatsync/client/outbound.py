"""
Outbound send pipeline.

Every send shows up immediately as a placeholder ("temp-..." id) and sits
in an ordered queue until the server acknowledges it. The temporary id
doubles as the clientRef of the create call, so a retry of a send whose
response was lost is acknowledged by the server instead of stored twice.

Delivery only ever happens inside drain(), under one lock, in submission
order. Reconnecting schedules a drain of queued items followed by failed
ones; flapping connectivity can schedule several drains but they run one
after the other and an item leaves the queue the moment it is confirmed.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Set

from chatsync.client.api import ChatAPIClient
from chatsync.client.cache import ConversationCache
from chatsync.client.models import LocalMessage, OutboundItem, OutboundState
from chatsync.client.network import NetworkStatus
from chatsync.errors import ChatSyncError, NotFoundError, TransientNetworkError, ValidationError
from chatsync.utils import backoff_delay, check_content, check_image_url, new_temp_id

logger = logging.getLogger(__name__)

# Pipeline events, delivered to listeners as (event, message)
PLACEHOLDER = "placeholder"
CONFIRMED = "confirmed"
FAILED = "failed"
REJECTED = "rejected"
DISCARDED = "discarded"

Listener = Callable[[str, LocalMessage], None]


class SendPipeline:
    def __init__(
        self,
        api: ChatAPIClient,
        network: NetworkStatus,
        user_id: str,
        cache: Optional[ConversationCache] = None,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        max_content_length: int = 1000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.api = api
        self.network = network
        self.user_id = user_id
        self.cache = cache
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.max_content_length = max_content_length
        self._sleep = sleep

        self._queue: "OrderedDict[str, OutboundItem]" = OrderedDict()
        self._waiters: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._remove_network_listener = network.add_listener(self._on_network_change)

    # =========================================================================
    # Public API
    # =========================================================================

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def send(self, conversation_id: int, content: str, image_url: Optional[str] = None) -> LocalMessage:
        """
        Send a message optimistically.

        Returns the confirmed message when the server acknowledged it, or
        the placeholder (queued or failed) when it did not.

        Raises:
            ValidationError: invalid content; nothing is queued
            ChatSyncError: the server rejected the message permanently
        """
        try:
            body = check_content(content, self.max_content_length)
            image_url = check_image_url(image_url)
        except ValueError as e:
            raise ValidationError(str(e))

        item = OutboundItem(
            temp_id=new_temp_id(),
            conversation_id=conversation_id,
            content=body,
            image_url=image_url,
        )
        self._queue[item.temp_id] = item
        self._emit(PLACEHOLDER, self._placeholder(item))

        if not self.network.online:
            logger.info(f"Offline, queued message {item.temp_id} for conversation {conversation_id}")
            return self._placeholder(item)

        return await self._drain_for(item)

    async def retry(self, temp_id: str) -> LocalMessage:
        """Manually retry one failed send."""
        item = self._queue.get(temp_id)
        if item is None or item.state != OutboundState.FAILED:
            raise NotFoundError(f"No failed message {temp_id}")
        item.state = OutboundState.QUEUED
        self._emit(PLACEHOLDER, self._placeholder(item))
        if not self.network.online:
            return self._placeholder(item)
        return await self._drain_for(item)

    async def retry_failed(self) -> Dict[str, LocalMessage]:
        """Requeue every failed send and drain. Returns outcomes by temp id."""
        for item in self._queue.values():
            if item.state == OutboundState.FAILED:
                item.state = OutboundState.QUEUED
                self._emit(PLACEHOLDER, self._placeholder(item))
        if not self.network.online:
            return {}
        return await self.drain()

    async def flush(self) -> Dict[str, LocalMessage]:
        """Drain queued sends, then retry failed ones."""
        return await self.drain(include_failed=True)

    def pending(self) -> List[OutboundItem]:
        """Snapshot of unconfirmed sends in submission order."""
        return [item.model_copy() for item in self._queue.values()]

    def clear_failed(self) -> int:
        """Drop every failed send and its placeholder. Returns the count."""
        failed = [item for item in self._queue.values() if item.state == OutboundState.FAILED]
        for item in failed:
            del self._queue[item.temp_id]
            self._emit(DISCARDED, self._placeholder(item))
        return len(failed)

    async def wait_idle(self) -> None:
        """Wait for drains scheduled by connectivity changes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        self._remove_network_listener()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()

    # =========================================================================
    # Draining
    # =========================================================================

    async def drain(self, include_failed: bool = False) -> Dict[str, LocalMessage]:
        """
        Deliver queued items in submission order, then (optionally) failed ones.

        Stops early when the network goes offline. A permanent rejection
        drops that item and moves on to the next.

        Returns:
            Outcome per attempted temp id: confirmed message or placeholder
        """
        results: Dict[str, LocalMessage] = {}
        async with self._lock:
            order = [i for i in self._queue.values() if i.state == OutboundState.QUEUED]
            if include_failed:
                order += [i for i in self._queue.values() if i.state == OutboundState.FAILED]
            if order:
                logger.info(f"Draining {len(order)} outbound messages")

            for item in order:
                if self._queue.get(item.temp_id) is not item:
                    continue
                if not self.network.online:
                    logger.info("Network went offline, drain paused")
                    break
                try:
                    results[item.temp_id] = await self._deliver(item)
                except ChatSyncError:
                    continue
                if item.state == OutboundState.QUEUED:
                    # Went offline mid-attempt; later items wait their turn
                    break
        return results

    async def _drain_for(self, item: OutboundItem) -> LocalMessage:
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiters[item.temp_id] = waiter
        try:
            await self.drain()
        finally:
            self._waiters.pop(item.temp_id, None)
        if waiter.done():
            return waiter.result()
        return self._placeholder(item)

    async def _deliver(self, item: OutboundItem) -> LocalMessage:
        item.state = OutboundState.SENDING
        self._emit(PLACEHOLDER, self._placeholder(item))

        try:
            return await self._attempt(item)
        except asyncio.CancelledError:
            # Not acknowledged, so the item stays queued for the next drain
            if self._queue.get(item.temp_id) is item and item.state == OutboundState.SENDING:
                item.state = OutboundState.QUEUED
                logger.info(f"Send {item.temp_id} interrupted, requeued")
                self._emit(PLACEHOLDER, self._placeholder(item))
            raise

    async def _attempt(self, item: OutboundItem) -> LocalMessage:
        attempt = 0
        while True:
            try:
                message, duplicate = await self.api.create_message(
                    content=item.content,
                    conversation_id=item.conversation_id,
                    image_url=item.image_url,
                    client_ref=item.temp_id,
                )
            except TransientNetworkError as e:
                attempt += 1
                item.attempts += 1
                item.last_error = str(e)
                logger.warning(f"Send {item.temp_id} attempt {attempt}/{self.max_attempts} failed: {e}")
                if not self.network.online:
                    return self._settle(item, OutboundState.QUEUED)
                if attempt >= self.max_attempts:
                    return self._settle(item, OutboundState.FAILED)
                await self._sleep(backoff_delay(attempt - 1, self.backoff_base, self.backoff_cap))
                if not self.network.online:
                    return self._settle(item, OutboundState.QUEUED)
                continue
            except ChatSyncError as e:
                logger.warning(f"Send {item.temp_id} rejected: {e.code}: {e.message}")
                self._queue.pop(item.temp_id, None)
                self._emit(REJECTED, self._placeholder(item))
                self._resolve(item.temp_id, error=e)
                raise

            self._queue.pop(item.temp_id, None)
            if duplicate:
                logger.info(f"Send {item.temp_id} was already stored as message {message.id}")
            else:
                logger.info(f"Send {item.temp_id} confirmed as message {message.id}")
            self._emit(CONFIRMED, message)
            self._resolve(item.temp_id, result=message)
            return message

    def _settle(self, item: OutboundItem, state: OutboundState) -> LocalMessage:
        item.state = state
        placeholder = self._placeholder(item)
        if state == OutboundState.FAILED:
            logger.error(f"Send {item.temp_id} failed after {self.max_attempts} attempts")
            self._emit(FAILED, placeholder)
        else:
            logger.info(f"Send {item.temp_id} requeued until the network returns")
            self._emit(PLACEHOLDER, placeholder)
        self._resolve(item.temp_id, result=placeholder)
        return placeholder

    def _resolve(self, temp_id: str, result: Optional[LocalMessage] = None, error: Optional[Exception] = None) -> None:
        waiter = self._waiters.get(temp_id)
        if waiter is None or waiter.done():
            return
        if error is not None:
            waiter.set_exception(error)
        else:
            waiter.set_result(result)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _placeholder(self, item: OutboundItem) -> LocalMessage:
        return LocalMessage(
            id=item.temp_id,
            conversation_id=item.conversation_id,
            sender_id=self.user_id,
            content=item.content,
            image_url=item.image_url,
            client_ref=item.temp_id,
            created_at=item.created_at,
            updated_at=item.created_at,
            local_state=item.state,
        )

    def _emit(self, event: str, message: LocalMessage) -> None:
        if self.cache is not None:
            self._update_cache(event, message)
        for listener in list(self._listeners):
            try:
                listener(event, message)
            except Exception:
                logger.exception(f"Send pipeline listener failed on {event}")

    def _update_cache(self, event: str, message: LocalMessage) -> None:
        conversation_id = message.conversation_id
        if event == CONFIRMED:
            if message.client_ref:
                self.cache.discard(conversation_id, message.client_ref)
            self.cache.append(conversation_id, message)
        elif event in (REJECTED, DISCARDED):
            self.cache.discard(conversation_id, message.id)
        else:
            self.cache.discard(conversation_id, message.id)
            self.cache.append(conversation_id, message)

    def _on_network_change(self, online: bool) -> None:
        if not online or not self._queue:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Network came back outside an event loop, call flush() to send queued messages")
            return
        task = loop.create_task(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
