"""
Client side of the push channel.

RealtimeChannel.subscribe() returns a Subscription: a cancellable handle
that is also an async iterator of ChannelEvents. The subscription
reconnects on its own after a failure; its state tells the consumer
whether push is live (ACTIVE_PUSH) or polling must carry the load
(DEGRADED_POLL).

    subscription = channel.subscribe()
    async for event in subscription:
        if event.kind == "message":
            ...
    subscription.cancel()
"""

import asyncio
import enum
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Protocol

import aiohttp
from pydantic import BaseModel

from chatsync.client.api import USER_HEADER
from chatsync.client.models import LocalMessage
from chatsync.errors import AuthenticationError, AuthorizationError, ChatSyncError, TransientNetworkError

logger = logging.getLogger(__name__)

# Close codes the server uses to refuse a subscription
CLOSE_UNAUTHENTICATED = 4401
CLOSE_FORBIDDEN = 4403

MESSAGE_FRAME_TYPES = ("message.created", "message.updated")


class ChannelState(str, enum.Enum):
    CONNECTING = "connecting"
    ACTIVE_PUSH = "active_push"
    DEGRADED_POLL = "degraded_poll"
    CLOSED = "closed"


class ChannelEvent(BaseModel):
    """
    kind is one of:
    - connected: push is live
    - message: a created or updated message (message is set)
    - error: connecting failed or the socket was lost (error is set)
    - closed: the subscription ended; no further events follow
    """
    kind: str
    state: ChannelState
    message: Optional[LocalMessage] = None
    event_type: Optional[str] = None
    error: Optional[str] = None


class Connection(Protocol):
    close_code: Optional[int]

    async def receive(self) -> Optional[Dict[str, Any]]:
        """Next JSON frame, or None once the socket is closed."""

    async def send(self, frame: Dict[str, Any]) -> None:
        ...


class Transport(Protocol):
    def connect(self, path: str, user_id: str):
        """Async context manager yielding a Connection."""


class _AiohttpConnection:
    def __init__(self, ws: aiohttp.ClientWebSocketResponse):
        self._ws = ws

    @property
    def close_code(self) -> Optional[int]:
        return self._ws.close_code

    async def receive(self) -> Optional[Dict[str, Any]]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Dropping malformed realtime frame")
                    continue
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                            aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                return None

    async def send(self, frame: Dict[str, Any]) -> None:
        await self._ws.send_json(frame)


class WebSocketTransport:
    """WebSocket transport built on aiohttp."""

    def __init__(self, base_url: str, heartbeat: float = 20.0):
        url = base_url.rstrip("/")
        if url.startswith("https://"):
            url = "wss://" + url[len("https://"):]
        elif url.startswith("http://"):
            url = "ws://" + url[len("http://"):]
        self.base_url = url
        self.heartbeat = heartbeat

    @asynccontextmanager
    async def connect(self, path: str, user_id: str) -> AsyncIterator[_AiohttpConnection]:
        url = f"{self.base_url}{path}"
        async with aiohttp.ClientSession() as session:
            try:
                ws = await session.ws_connect(url, headers={USER_HEADER: user_id}, heartbeat=self.heartbeat)
            except aiohttp.ClientError as e:
                raise TransientNetworkError(f"Realtime connect failed: {e}")
            try:
                yield _AiohttpConnection(ws)
            finally:
                await ws.close()


class Subscription:
    """Cancellable handle on one push subscription."""

    def __init__(self, transport: Transport, path: str, user_id: str, retry_interval: float):
        self.transport = transport
        self.path = path
        self.user_id = user_id
        self.retry_interval = retry_interval
        self.state = ChannelState.CONNECTING
        self._events: asyncio.Queue = asyncio.Queue()
        self._finished = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    @property
    def closed(self) -> bool:
        return self.state == ChannelState.CLOSED

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChannelEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._events.get()
        if event.kind == "closed":
            self._finished = True
        return event

    def _emit(self, kind: str, **fields) -> None:
        self._events.put_nowait(ChannelEvent(kind=kind, state=self.state, **fields))

    def _close(self) -> None:
        if self.state == ChannelState.CLOSED:
            return
        self.state = ChannelState.CLOSED
        self._emit("closed")
        logger.info(f"Realtime subscription closed: {self.path}")

    def _degrade(self, reason: str) -> None:
        self.state = ChannelState.DEGRADED_POLL
        logger.warning(f"Realtime degraded to polling ({self.path}): {reason}")
        self._emit("error", error=reason)

    async def _run(self) -> None:
        while self.state != ChannelState.CLOSED:
            if self.state != ChannelState.DEGRADED_POLL:
                self.state = ChannelState.CONNECTING
            try:
                async with self.transport.connect(self.path, self.user_id) as connection:
                    await self._consume(connection)
                    code = connection.close_code
                if code == CLOSE_UNAUTHENTICATED:
                    raise AuthenticationError("Realtime subscription refused: unknown user")
                if code == CLOSE_FORBIDDEN:
                    raise AuthorizationError("Realtime subscription refused: not a participant")
                self._degrade("connection lost")
            except (AuthenticationError, AuthorizationError) as e:
                self._degrade(e.message)
                self._close()
                return
            except ChatSyncError as e:
                self._degrade(e.message)
            except (aiohttp.ClientError, OSError) as e:
                self._degrade(str(e) or type(e).__name__)
            await asyncio.sleep(self.retry_interval)

    async def _consume(self, connection: Connection) -> None:
        while True:
            frame = await connection.receive()
            if frame is None:
                return
            frame_type = frame.get("type")
            if frame_type == "connected":
                self.state = ChannelState.ACTIVE_PUSH
                logger.info(f"Realtime subscription active: {self.path}")
                self._emit("connected")
            elif frame_type in MESSAGE_FRAME_TYPES:
                try:
                    message = LocalMessage.from_server(frame.get("data") or {})
                except ValueError as e:
                    logger.warning(f"Dropping invalid realtime message frame: {e}")
                    continue
                self._emit("message", message=message, event_type=frame_type)
            elif frame_type == "error":
                self._emit("error", error=str(frame.get("data", {}).get("detail", "server error")))
            else:
                logger.debug(f"Ignoring realtime frame type {frame_type}")


class RealtimeChannel:
    """Factory for push subscriptions of one user."""

    def __init__(self, transport: Transport, user_id: str, retry_interval: float = 5.0):
        self.transport = transport
        self.user_id = user_id
        self.retry_interval = retry_interval

    def subscribe(self, conversation_id: Optional[int] = None) -> Subscription:
        """
        Subscribe to one conversation, or to everything addressed to the
        user when conversation_id is None.
        """
        if conversation_id is None:
            path = "/ws/users/me"
        else:
            path = f"/ws/conversations/{conversation_id}"
        return Subscription(self.transport, path, self.user_id, self.retry_interval)
