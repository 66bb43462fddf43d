"""
Conversation registry.

Maps a participant pair to exactly one conversation. The pair is
canonicalized here and nowhere else; the unique constraint on the canonical
pair is what makes concurrent first calls safe, so a constraint violation
during creation is read as "someone else created it first".
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from chatsync.errors import ConflictError, StoreError, ValidationError
from chatsync.metrics import record_conversation_outcome
from chatsync.models import Conversation
from chatsync.utils import canonical_pair, utc_now_iso

logger = logging.getLogger(__name__)


def find_conversation(db: Session, user_low: str, user_high: str) -> Optional[Conversation]:
    """Look up the conversation for an already canonical pair."""
    return (
        db.query(Conversation)
        .filter(Conversation.user_low == user_low, Conversation.user_high == user_high)
        .first()
    )


def _insert_conversation(db: Session, user_low: str, user_high: str) -> Conversation:
    now = utc_now_iso()
    conversation = Conversation(
        user_low=user_low,
        user_high=user_high,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(conversation)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Conversation already exists for {user_low}/{user_high}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create conversation {user_low}/{user_high}: {e}")
        raise StoreError()
    db.refresh(conversation)
    return conversation


def get_or_create_conversation(db: Session, user_a: str, user_b: str) -> Tuple[Conversation, bool]:
    """
    Get the conversation between two users, creating it on first use.

    Commutative: (A, B) and (B, A) resolve to the same row.

    Returns:
        Tuple of (conversation, created)

    Raises:
        ValidationError: if both ids are the same user
        StoreError: if the row can be neither created nor found
    """
    try:
        user_low, user_high = canonical_pair(user_a, user_b)
    except ValueError as e:
        raise ValidationError(str(e))

    existing = find_conversation(db, user_low, user_high)
    if existing is not None:
        logger.debug(f"Conversation found: id={existing.id}")
        record_conversation_outcome("existing")
        return existing, False

    try:
        conversation = _insert_conversation(db, user_low, user_high)
    except ConflictError:
        # Lost the creation race; the winner's row is the answer
        logger.info(f"Conversation creation race for {user_low}/{user_high}, fetching existing row")
        existing = find_conversation(db, user_low, user_high)
        if existing is None:
            logger.error(f"Conversation conflict without a row for {user_low}/{user_high}")
            raise StoreError()
        record_conversation_outcome("race")
        return existing, False

    logger.info(f"Conversation created: id={conversation.id}")
    record_conversation_outcome("created")
    return conversation, True


def get_conversation(db: Session, conversation_id: int) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def get_conversation_for_user(db: Session, conversation_id: int, user_id: str) -> Optional[Conversation]:
    """Conversation by id, or None when it is missing or the user is not in it."""
    conversation = get_conversation(db, conversation_id)
    if conversation is None or not conversation.is_participant(user_id):
        return None
    return conversation


def is_participant(db: Session, conversation_id: int, user_id: str) -> bool:
    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        return False
    return conversation.is_participant(user_id)


def list_conversations_for_user(
    db: Session,
    user_id: str,
    limit: int,
    offset: int = 0,
    max_page_size: int = 100,
) -> Tuple[List[Conversation], bool]:
    """
    Conversations the user takes part in, most recently active first.

    Conversations without messages sort after those with messages, then by
    last update.

    Returns:
        Tuple of (conversations page, has_more)
    """
    limit = max(1, min(limit, max_page_size))
    offset = max(offset, 0)
    logger.info(f"Listing conversations for {user_id}: limit={limit}, offset={offset}")

    rows = (
        db.query(Conversation)
        .filter(or_(Conversation.user_low == user_id, Conversation.user_high == user_id))
        .order_by(
            Conversation.last_message_at.is_(None),
            Conversation.last_message_at.desc(),
            Conversation.updated_at.desc(),
            Conversation.id.desc(),
        )
        .offset(offset)
        .limit(limit + 1)
        .all()
    )
    has_more = len(rows) > limit
    return rows[:limit], has_more


def update_last_message(db: Session, conversation: Conversation, message) -> None:
    """
    Point the conversation at its newest message.

    Does not commit: callers run it inside the transaction that persisted
    the message so both rows change together.
    """
    if conversation.last_message_at is not None and conversation.last_message_at > message.created_at:
        return
    conversation.last_message_id = message.id
    conversation.last_message_at = message.created_at
    conversation.updated_at = message.created_at
