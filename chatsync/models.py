"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from chatsync.storage import Base


class MessageStatus(str, enum.Enum):
    """Delivery status. Transitions only move forward: sent -> delivered -> seen."""

    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.SEEN: 2,
}


class User(Base):
    """
    Mirror of a user owned by the external profile service.

    Table: users
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class Conversation(Base):
    """
    A two-party conversation.

    Table: conversations
    The participant pair is stored canonically (user_low < user_high), and
    the unique constraint on it guarantees one conversation per pair even
    when two first sends race.
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_low = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    user_high = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    last_message_id = Column(Integer, nullable=True)
    last_message_at = Column(String, nullable=True, index=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_low", "user_high", name="uq_conversation_pair"),
    )

    @property
    def participant_ids(self) -> list:
        return [self.user_low, self.user_high]

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.user_low, self.user_high)

    def other_participant(self, user_id: str):
        if user_id == self.user_low:
            return self.user_high
        if user_id == self.user_high:
            return self.user_low
        return None


class Message(Base):
    """
    One entry of the authoritative message log.

    Table: messages
    Primary Key: id (autoincrement, defines identity order)
    (sender_id, client_ref) is unique so a retried send is recorded once.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String, ForeignKey("users.id"), nullable=False)
    recipient_id = Column(String, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    image_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default=MessageStatus.SENT.value)
    client_ref = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)
    seen_at = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("sender_id", "client_ref", name="uq_message_client_ref"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_recipient_status", "recipient_id", "status"),
    )
