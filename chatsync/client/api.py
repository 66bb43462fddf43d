"""
HTTP client for the chat sync API.

Thin async wrapper over httpx. Responses are validated into client models
at the boundary, and failures are mapped back onto chatsync.errors:
timeouts, connection errors and 5xx answers become TransientNetworkError,
everything else the class matching its status.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from chatsync.client.models import ConversationSummary, LocalMessage, MessagePage, UserSummary
from chatsync.errors import TransientNetworkError, error_for_status

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-ID"


class ChatAPIClient:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._http.request(
                method,
                path,
                json=json,
                params=params,
                headers={USER_HEADER: self.user_id},
            )
        except httpx.TimeoutException:
            logger.warning(f"{method} {path} timed out")
            raise TransientNetworkError(f"Request timed out: {method} {path}")
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise TransientNetworkError(f"Network error: {e}")

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            logger.debug(f"{method} {path} -> {response.status_code}: {detail}")
            raise error_for_status(response.status_code, str(detail))

        return response.json()

    # =========================================================================
    # Messages
    # =========================================================================

    async def list_messages(
        self,
        conversation_id: int,
        limit: int = 50,
        skip: int = 0,
        before: Optional[int] = None,
    ) -> MessagePage:
        params = {"limit": limit, "skip": skip}
        if before is not None:
            params["before"] = before
        data = await self._request("GET", f"/messages/conversation/{conversation_id}", params=params)
        return MessagePage(
            messages=[LocalMessage.from_server(m) for m in data.get("messages", [])],
            has_more=data.get("pagination", {}).get("hasMore", False),
        )

    async def create_message(
        self,
        content: str,
        conversation_id: Optional[int] = None,
        recipient_id: Optional[str] = None,
        image_url: Optional[str] = None,
        client_ref: Optional[str] = None,
    ) -> Tuple[LocalMessage, bool]:
        """
        Send a message. Returns (message, duplicate); duplicate is True when
        the server had already stored a message with this client_ref.
        """
        body = {
            "conversationId": conversation_id,
            "recipientId": recipient_id,
            "content": content,
            "imageUrl": image_url,
            "clientRef": client_ref,
        }
        data = await self._request("POST", "/messages", json={k: v for k, v in body.items() if v is not None})
        return LocalMessage.from_server(data["message"]), bool(data.get("duplicate", False))

    async def mark_message_seen(self, message_id: int) -> Tuple[LocalMessage, bool]:
        data = await self._request("PATCH", f"/messages/{message_id}/seen")
        return LocalMessage.from_server(data["message"]), bool(data.get("alreadySeen", False))

    async def mark_conversation_seen(self, conversation_id: int) -> int:
        data = await self._request("POST", f"/conversations/{conversation_id}/seen")
        return int(data["updated"])

    async def mark_conversation_delivered(self, conversation_id: int) -> int:
        data = await self._request("POST", f"/conversations/{conversation_id}/delivered")
        return int(data["updated"])

    # =========================================================================
    # Conversations
    # =========================================================================

    async def list_conversations(self, limit: int = 50, skip: int = 0) -> Tuple[List[ConversationSummary], bool]:
        data = await self._request("GET", "/conversations", params={"limit": limit, "skip": skip})
        conversations = [ConversationSummary.model_validate(c) for c in data.get("conversations", [])]
        return conversations, data.get("pagination", {}).get("hasMore", False)

    async def search_users(self, query: str) -> List[UserSummary]:
        data = await self._request("GET", "/conversations", params={"search": query})
        return [UserSummary.model_validate(u) for u in data.get("users", [])]

    async def create_conversation(self, recipient_id: str) -> Tuple[ConversationSummary, bool]:
        data = await self._request("POST", "/conversations", json={"recipientId": recipient_id})
        return ConversationSummary.model_validate(data["conversation"]), bool(data.get("isNew", False))

    async def get_conversation(self, conversation_id: int) -> ConversationSummary:
        data = await self._request("GET", f"/conversations/{conversation_id}")
        return ConversationSummary.model_validate(data["conversation"])
