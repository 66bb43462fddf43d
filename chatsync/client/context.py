import logging
from typing import Dict, Optional

import httpx

from chatsync.client.api import ChatAPIClient
from chatsync.client.cache import ConversationCache
from chatsync.client.feed import ConversationFeed, MessageFeed
from chatsync.client.network import NetworkStatus
from chatsync.client.outbound import SendPipeline
from chatsync.client.realtime import RealtimeChannel, Transport, WebSocketTransport
from chatsync.config import Settings, get_settings

logger = logging.getLogger(__name__)


class ClientContext:
    """
    Everything one signed-in client owns: reachability, cache, API client,
    send pipeline and the feeds it has open.

    Use as an async context manager, or call aclose() when done:

        async with ClientContext("http://localhost:8000", user_id) as ctx:
            feed = ctx.open_conversation(conversation_id)
            await feed.send("hi")
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[Transport] = None,
        realtime: bool = False,
    ):
        self.settings = settings or get_settings()
        self.user_id = user_id
        self.network = NetworkStatus()
        self.cache = ConversationCache(cap=self.settings.CACHE_MAX_MESSAGES)
        self.api = ChatAPIClient(
            base_url,
            user_id,
            timeout=self.settings.REQUEST_TIMEOUT,
            http_client=http_client,
        )
        self.pipeline = SendPipeline(
            api=self.api,
            network=self.network,
            user_id=user_id,
            cache=self.cache,
            max_attempts=self.settings.SEND_MAX_ATTEMPTS,
            backoff_base=self.settings.SEND_BACKOFF_BASE,
            backoff_cap=self.settings.SEND_BACKOFF_CAP,
            max_content_length=self.settings.MAX_CONTENT_LENGTH,
        )
        self.channel: Optional[RealtimeChannel] = None
        if transport is not None or realtime:
            self.channel = RealtimeChannel(
                transport or WebSocketTransport(base_url),
                user_id,
                retry_interval=self.settings.REALTIME_RETRY_INTERVAL,
            )
        self.feeds: Dict[int, MessageFeed] = {}
        self.conversation_feed: Optional[ConversationFeed] = None
        self._closed = False

    async def __aenter__(self) -> "ClientContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def open_conversation(self, conversation_id: int, start: bool = True, **options) -> MessageFeed:
        """Open (or return the already open) feed for one conversation."""
        feed = self.feeds.get(conversation_id)
        if feed is not None:
            return feed
        feed = MessageFeed(
            conversation_id=conversation_id,
            user_id=self.user_id,
            api=self.api,
            network=self.network,
            cache=self.cache,
            pipeline=self.pipeline,
            channel=self.channel,
            interval=self.settings.MESSAGE_POLL_INTERVAL,
            offline_interval=self.settings.MESSAGE_POLL_OFFLINE_INTERVAL,
            failure_threshold=self.settings.POLL_FAILURE_THRESHOLD,
            page_size=self.settings.DEFAULT_PAGE_SIZE,
            **options,
        )
        self.feeds[conversation_id] = feed
        if start:
            feed.start()
        return feed

    async def close_conversation(self, conversation_id: int) -> None:
        feed = self.feeds.pop(conversation_id, None)
        if feed is not None:
            await feed.aclose()

    def open_conversation_list(self, start: bool = True, **options) -> ConversationFeed:
        if self.conversation_feed is None:
            self.conversation_feed = ConversationFeed(
                api=self.api,
                network=self.network,
                interval=self.settings.CONVERSATION_POLL_INTERVAL,
                offline_interval=self.settings.CONVERSATION_POLL_OFFLINE_INTERVAL,
                failure_threshold=self.settings.POLL_FAILURE_THRESHOLD,
                page_size=self.settings.DEFAULT_PAGE_SIZE,
                **options,
            )
            if start:
                self.conversation_feed.start()
        return self.conversation_feed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for conversation_id in list(self.feeds):
            await self.close_conversation(conversation_id)
        if self.conversation_feed is not None:
            await self.conversation_feed.aclose()
        await self.pipeline.aclose()
        await self.api.aclose()
        logger.info(f"Client context closed for {self.user_id}")
