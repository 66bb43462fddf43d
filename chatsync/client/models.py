"""
Client-side data models.

These mirror the server's wire schemas (camelCase on the wire) but carry
client-only state: placeholders for unconfirmed sends have a temporary
string identity and a local delivery state.
"""

import enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chatsync.utils import is_temp_id, utc_now_iso

STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_SEEN = "seen"

_STATUS_RANK = {
    STATUS_SENT: 0,
    STATUS_DELIVERED: 1,
    STATUS_SEEN: 2,
}


def status_rank(status: str) -> int:
    return _STATUS_RANK.get(status, 0)


class OutboundState(str, enum.Enum):
    """Lifecycle of an unconfirmed send."""

    QUEUED = "queued"
    SENDING = "sending"
    FAILED = "failed"


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class LocalMessage(WireModel):
    """
    Client mirror of a server message, or a placeholder for one in flight.

    Placeholders have a "temp-..." id, no server timestamps of their own
    beyond the local creation time, and a local_state.
    """
    id: Union[int, str]
    conversation_id: int
    sender_id: str
    recipient_id: Optional[str] = None
    content: str
    image_url: Optional[str] = None
    status: str = STATUS_SENT
    client_ref: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None
    seen_at: Optional[str] = None
    local_state: Optional[OutboundState] = None

    @property
    def is_placeholder(self) -> bool:
        return is_temp_id(self.id)

    @property
    def rank(self) -> int:
        return status_rank(self.status)

    @classmethod
    def from_server(cls, data: dict) -> "LocalMessage":
        return cls.model_validate(data)

    @classmethod
    def placeholder(
        cls,
        temp_id: str,
        conversation_id: int,
        sender_id: str,
        content: str,
        image_url: Optional[str] = None,
        local_state: OutboundState = OutboundState.SENDING,
    ) -> "LocalMessage":
        now = utc_now_iso()
        return cls(
            id=temp_id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            image_url=image_url,
            client_ref=temp_id,
            created_at=now,
            updated_at=now,
            local_state=local_state,
        )


class OutboundItem(BaseModel):
    """An unconfirmed send waiting in the outbound queue."""
    temp_id: str
    conversation_id: int
    content: str
    image_url: Optional[str] = None
    attempts: int = 0
    state: OutboundState = OutboundState.QUEUED
    created_at: str = Field(default_factory=utc_now_iso)
    last_error: Optional[str] = None


class UserSummary(WireModel):
    id: str
    name: str
    email: str


class ConversationSummary(WireModel):
    """One row of the conversation list."""
    id: int
    participant_ids: List[str]
    last_message: Optional[LocalMessage] = None
    last_message_time: Optional[str] = None
    unread_count: int = 0
    created_at: str
    updated_at: str


class MessagePage(WireModel):
    messages: List[LocalMessage] = Field(default_factory=list)
    has_more: bool = False
