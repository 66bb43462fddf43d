"""
Server message store: the authoritative message log.

Identity and ordering are assigned here, status transitions are atomic
bulk updates that only ever move forward, and a send that carries a
client reference is recorded at most once per sender.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from chatsync.config import settings
from chatsync.errors import AuthorizationError, NotFoundError, StoreError, ValidationError
from chatsync.models import Message, MessageStatus
from chatsync.registry import get_conversation, update_last_message
from chatsync.utils import check_content, check_image_url, utc_now_iso

logger = logging.getLogger(__name__)


def get_message(db: Session, message_id: int) -> Optional[Message]:
    """
    Retrieve a message by its ID.

    Returns:
        Message object if found, None otherwise
    """
    logger.debug(f"Looking up message by ID: {message_id}")
    return db.query(Message).filter(Message.id == message_id).first()


def find_by_client_ref(db: Session, sender_id: str, client_ref: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.sender_id == sender_id, Message.client_ref == client_ref)
        .first()
    )


def send_message(
    db: Session,
    conversation_id: int,
    sender_id: str,
    recipient_id: str,
    content: str,
    image_url: Optional[str] = None,
    client_ref: Optional[str] = None,
) -> Tuple[Message, bool]:
    """
    Persist a new message (idempotent per sender and client reference).

    Validation happens before anything is written. The message row and the
    conversation's last-message pointer are committed in one transaction.

    Args:
        db: Database session
        conversation_id: Conversation the message belongs to
        sender_id: Author, must be a participant
        recipient_id: The other participant
        content: Message body (trimmed; 1..MAX_CONTENT_LENGTH characters)
        image_url: Optional http(s) URL from the image service
        client_ref: Temporary id the sending client assigned, if any

    Returns:
        Tuple of (message, duplicate)
        - (message, False): Message created
        - (message, True): A message with this client_ref already existed

    Raises:
        ValidationError: bad content or participants
        StoreError: persistence failure
    """
    try:
        body = check_content(content, settings.MAX_CONTENT_LENGTH)
        image_url = check_image_url(image_url)
    except ValueError as e:
        raise ValidationError(str(e))

    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        raise ValidationError("Conversation not found")
    if sender_id == recipient_id:
        raise ValidationError("Cannot send a message to yourself")
    if not conversation.is_participant(sender_id):
        raise ValidationError("Sender is not a participant in this conversation")
    if not conversation.is_participant(recipient_id):
        raise ValidationError("Recipient is not a participant in this conversation")

    if client_ref:
        existing = find_by_client_ref(db, sender_id, client_ref)
        if existing is not None:
            logger.info(f"Duplicate send detected: client_ref={client_ref}, id={existing.id}")
            return existing, True

    logger.info(f"Creating message: conversation={conversation_id}, from={sender_id}, to={recipient_id}")

    now = utc_now_iso()
    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        recipient_id=recipient_id,
        content=body,
        image_url=image_url,
        status=MessageStatus.SENT.value,
        client_ref=client_ref or None,
        created_at=now,
        updated_at=now,
    )

    try:
        db.add(message)
        db.flush()
        update_last_message(db, conversation, message)
        db.commit()
    except IntegrityError:
        # Concurrent replay of the same client_ref won the insert
        db.rollback()
        existing = find_by_client_ref(db, sender_id, client_ref) if client_ref else None
        if existing is None:
            logger.error(f"Integrity error storing message for conversation {conversation_id}")
            raise StoreError("Failed to store message")
        logger.info(f"Duplicate send detected after race: client_ref={client_ref}")
        return existing, True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store message for conversation {conversation_id}: {e}")
        raise StoreError("Failed to store message")

    db.refresh(message)
    logger.info(f"Message created successfully: {message.id}")
    return message, False


def list_messages(
    db: Session,
    conversation_id: int,
    limit: int,
    offset: int = 0,
    before: Optional[int] = None,
) -> Tuple[List[Message], bool]:
    """
    One page of a conversation, newest first.

    The page size is capped at MAX_PAGE_SIZE whatever the caller asks for.
    With before, the page starts right after that message in timeline order
    and offset counts from there.

    Returns:
        Tuple of (messages page, has_more)

    Raises:
        NotFoundError: before is not a message of this conversation
    """
    limit = max(1, min(limit, settings.MAX_PAGE_SIZE))
    offset = max(offset, 0)
    logger.info(
        f"Querying messages: conversation={conversation_id}, limit={limit}, offset={offset}, before={before}"
    )

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if before is not None:
        anchor = get_message(db, before)
        if anchor is None or anchor.conversation_id != conversation_id:
            raise NotFoundError("Message not found")
        query = query.filter(
            or_(
                Message.created_at < anchor.created_at,
                and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
            )
        )

    rows = (
        query
        .order_by(Message.created_at.desc(), Message.id.desc())
        .offset(offset)
        .limit(limit + 1)
        .all()
    )
    has_more = len(rows) > limit
    page = rows[:limit]
    logger.debug(f"Retrieved {len(page)} messages, has_more={has_more}")
    return page, has_more


def _transition(
    db: Session,
    conversation_id: int,
    user_id: str,
    target: MessageStatus,
) -> List[Message]:
    """
    Move every message addressed to user_id in the conversation forward to
    target. Messages already at or past target are left alone.
    """
    behind = [s.value for s in MessageStatus if s.rank < target.rank]
    candidates = (
        db.query(Message.id)
        .filter(
            Message.conversation_id == conversation_id,
            Message.recipient_id == user_id,
            Message.status.in_(behind),
        )
        .all()
    )
    ids = [row.id for row in candidates]
    if not ids:
        return []

    now = utc_now_iso()
    values = {Message.status: target.value, Message.updated_at: now}
    if target is MessageStatus.SEEN:
        values[Message.seen_at] = now

    try:
        # Re-check the status in the UPDATE so a concurrent transition is not redone
        (
            db.query(Message)
            .filter(Message.id.in_(ids), Message.status.in_(behind))
            .update(values, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to mark messages {target.value} in conversation {conversation_id}: {e}")
        raise StoreError("Failed to update message status")

    updated = (
        db.query(Message)
        .filter(Message.id.in_(ids), Message.updated_at == now)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )
    return updated


def mark_seen_returning(db: Session, conversation_id: int, user_id: str) -> List[Message]:
    """Batch transition to SEEN; returns the rows that changed."""
    updated = _transition(db, conversation_id, user_id, MessageStatus.SEEN)
    logger.info(f"Marked {len(updated)} messages seen: conversation={conversation_id}, user={user_id}")
    return updated


def mark_seen(db: Session, conversation_id: int, user_id: str) -> int:
    """
    Mark every message addressed to user_id in the conversation as seen.

    Returns:
        Number of messages that changed status
    """
    return len(mark_seen_returning(db, conversation_id, user_id))


def mark_delivered_returning(db: Session, conversation_id: int, user_id: str) -> List[Message]:
    updated = _transition(db, conversation_id, user_id, MessageStatus.DELIVERED)
    logger.info(f"Marked {len(updated)} messages delivered: conversation={conversation_id}, user={user_id}")
    return updated


def mark_delivered(db: Session, conversation_id: int, user_id: str) -> int:
    """SENT -> DELIVERED for messages addressed to user_id. Returns the count."""
    return len(mark_delivered_returning(db, conversation_id, user_id))


def mark_message_seen(db: Session, message_id: int, user_id: str) -> Tuple[Message, bool]:
    """
    Mark one message as seen by its recipient.

    Returns:
        Tuple of (message, already_seen). Re-marking is a no-op.

    Raises:
        NotFoundError: unknown message
        AuthorizationError: caller is not the recipient
        StoreError: persistence failure
    """
    message = get_message(db, message_id)
    if message is None:
        raise NotFoundError("Message not found")

    conversation = get_conversation(db, message.conversation_id)
    if conversation is None or not conversation.is_participant(user_id):
        raise AuthorizationError("You are not a participant in this conversation")
    if message.recipient_id != user_id:
        raise AuthorizationError("You can only mark messages sent to you as seen")

    if message.status == MessageStatus.SEEN.value:
        logger.debug(f"Message already seen: {message_id}")
        return message, True

    now = utc_now_iso()
    try:
        changed = (
            db.query(Message)
            .filter(Message.id == message_id, Message.status != MessageStatus.SEEN.value)
            .update(
                {
                    Message.status: MessageStatus.SEEN.value,
                    Message.seen_at: now,
                    Message.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to mark message {message_id} seen: {e}")
        raise StoreError("Failed to update message status")

    db.refresh(message)
    logger.info(f"Message marked seen: {message_id}")
    # changed == 0 means a concurrent request got there first
    return message, changed == 0


def count_unread(db: Session, user_id: str, conversation_id: Optional[int] = None) -> int:
    """Messages addressed to the user that are not seen yet, optionally in one conversation."""
    query = db.query(Message).filter(
        Message.recipient_id == user_id,
        Message.status != MessageStatus.SEEN.value,
    )
    if conversation_id is not None:
        query = query.filter(Message.conversation_id == conversation_id)
    return query.count()
