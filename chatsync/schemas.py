"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
- Realtime envelope models for the push channel

Wire format is camelCase; Python attributes stay snake_case.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from chatsync.config import settings
from chatsync.models import MessageStatus
from chatsync.utils import check_content, check_image_url


class CamelModel(BaseModel):
    """Base model serializing to camelCase and accepting both spellings."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreateMessageRequest(CamelModel):
    """
    Body of POST /messages.

    Validates:
    - content: non-blank after trimming, at most MAX_CONTENT_LENGTH characters
    - imageUrl: optional http(s) URL
    - conversationId or recipientId: at least one is required
    - clientRef: optional idempotency key chosen by the sending client
    """
    conversation_id: Optional[int] = Field(None, description="Existing conversation")
    recipient_id: Optional[str] = Field(None, min_length=1, description="Recipient user id")
    content: str = Field(..., description="Message body")
    image_url: Optional[str] = Field(None, description="Image URL from the image service")
    client_ref: Optional[str] = Field(
        None,
        min_length=1,
        max_length=64,
        description="Temporary id assigned by the client; makes retries idempotent",
    )

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        return check_content(v, settings.MAX_CONTENT_LENGTH)

    @field_validator("image_url")
    @classmethod
    def validate_image_url(cls, v: Optional[str]) -> Optional[str]:
        return check_image_url(v)

    @model_validator(mode="after")
    def require_target(self):
        if self.conversation_id is None and not self.recipient_id:
            raise ValueError("recipientId is required when conversationId is not given")
        return self

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "recipientId": "u2",
                    "content": "hi",
                    "clientRef": "temp-2f0c8d",
                }
            ]
        },
    )


class CreateConversationRequest(CamelModel):
    """Body of POST /conversations."""
    recipient_id: str = Field(..., min_length=1, description="The other participant")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    code: str = Field(..., description="Stable error code")


class MessageOut(CamelModel):
    """A persisted message as the API exposes it."""
    id: int
    conversation_id: int
    sender_id: str
    recipient_id: str
    content: str
    image_url: Optional[str] = None
    status: MessageStatus
    client_ref: Optional[str] = None
    created_at: str
    updated_at: str
    seen_at: Optional[str] = None


class MessageResponse(CamelModel):
    """Response of POST /messages."""
    message: MessageOut
    duplicate: bool = False


class SeenResponse(CamelModel):
    """Response of PATCH /messages/{id}/seen."""
    message: MessageOut
    already_seen: bool = False


class BatchUpdateResponse(CamelModel):
    """Response of the batch status endpoints."""
    updated: int = Field(..., ge=0)


class Pagination(CamelModel):
    limit: int = Field(..., ge=1)
    skip: int = Field(..., ge=0)
    has_more: bool


class MessagesListResponse(CamelModel):
    """Response of GET /messages/conversation/{id}, newest first."""
    messages: List[MessageOut] = Field(default_factory=list)
    pagination: Pagination


class UserOut(CamelModel):
    id: str
    name: str
    email: str


class ConversationOut(CamelModel):
    id: int
    participant_ids: List[str]
    last_message: Optional[MessageOut] = None
    last_message_time: Optional[str] = None
    unread_count: int = 0
    created_at: str
    updated_at: str


class ConversationResponse(CamelModel):
    conversation: ConversationOut
    is_new: Optional[bool] = None


class ConversationsListResponse(CamelModel):
    """
    Response of GET /conversations.

    Exactly one of conversations (list mode) or users (search mode) is set.
    """
    conversations: Optional[List[ConversationOut]] = None
    users: Optional[List[UserOut]] = None
    pagination: Optional[Pagination] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Realtime Envelopes
# =============================================================================

class RealtimeEnvelope(BaseModel):
    """
    One push channel frame.

    type: connected | message.created | message.updated | error | pong
    """
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
