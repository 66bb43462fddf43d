"""
Tests for the message store and conversation registry, below the HTTP layer.

Tests cover:
- Canonical pair resolution, including a lost creation race
- send_message validation and idempotency
- Atomic, monotonic status transitions
- Unread counts and page size capping
"""

import pytest

from chatsync import message_store, registry
from chatsync.errors import AuthorizationError, NotFoundError, ValidationError
from chatsync.models import Conversation, MessageStatus
from chatsync.utils import canonical_pair

from conftest import ALICE, BOB, CAROL


@pytest.fixture
def conversation(db, users):
    conversation, _ = registry.get_or_create_conversation(db, ALICE, BOB)
    return conversation


class TestRegistry:
    """Test get_or_create_conversation and friends."""

    def test_commutative(self, db, users):
        first, created_first = registry.get_or_create_conversation(db, ALICE, BOB)
        second, created_second = registry.get_or_create_conversation(db, BOB, ALICE)

        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert (first.user_low, first.user_high) == canonical_pair(BOB, ALICE)

    def test_self_conversation_rejected(self, db, users):
        with pytest.raises(ValidationError):
            registry.get_or_create_conversation(db, ALICE, ALICE)

    def test_lost_race_returns_winner(self, db, users, monkeypatch):
        """
        Simulate another request creating the row between our lookup and
        our insert: the unique constraint fires and the winner's row is
        returned.
        """
        winner, _ = registry.get_or_create_conversation(db, ALICE, BOB)
        real_find = registry.find_conversation
        calls = {"count": 0}

        def stale_first_lookup(session, low, high):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return real_find(session, low, high)

        monkeypatch.setattr(registry, "find_conversation", stale_first_lookup)

        conversation, created = registry.get_or_create_conversation(db, BOB, ALICE)

        assert created is False
        assert conversation.id == winner.id
        assert calls["count"] == 2
        assert db.query(Conversation).count() == 1

    def test_is_participant(self, db, conversation):
        assert registry.is_participant(db, conversation.id, ALICE)
        assert registry.is_participant(db, conversation.id, BOB)
        assert not registry.is_participant(db, conversation.id, CAROL)
        assert not registry.is_participant(db, 9999, ALICE)


class TestSendMessage:
    """Test message_store.send_message."""

    def test_creates_sent_message_and_updates_pointer(self, db, conversation):
        message, duplicate = message_store.send_message(db, conversation.id, ALICE, BOB, "hi")

        db.refresh(conversation)
        assert duplicate is False
        assert message.status == MessageStatus.SENT.value
        assert message.seen_at is None
        assert conversation.last_message_id == message.id
        assert conversation.last_message_at == message.created_at

    def test_ids_increase(self, db, conversation):
        first, _ = message_store.send_message(db, conversation.id, ALICE, BOB, "one")
        second, _ = message_store.send_message(db, conversation.id, BOB, ALICE, "two")

        assert second.id > first.id
        assert second.created_at >= first.created_at

    def test_client_ref_replay(self, db, conversation):
        first, _ = message_store.send_message(db, conversation.id, ALICE, BOB, "hi", client_ref="temp-1")
        again, duplicate = message_store.send_message(db, conversation.id, ALICE, BOB, "hi", client_ref="temp-1")

        assert duplicate is True
        assert again.id == first.id

    def test_rejects_too_long_before_writing(self, db, conversation):
        with pytest.raises(ValidationError):
            message_store.send_message(db, conversation.id, ALICE, BOB, "x" * 1001)

        page, _ = message_store.list_messages(db, conversation.id, limit=10)
        assert page == []

    def test_rejects_outsider(self, db, conversation):
        with pytest.raises(ValidationError):
            message_store.send_message(db, conversation.id, CAROL, BOB, "hi")

    def test_rejects_unknown_conversation(self, db, users):
        with pytest.raises(ValidationError):
            message_store.send_message(db, 9999, ALICE, BOB, "hi")


class TestTransitions:
    """Test status transitions."""

    def test_mark_seen_sets_status_and_timestamp(self, db, conversation):
        message_store.send_message(db, conversation.id, ALICE, BOB, "one")
        message_store.send_message(db, conversation.id, ALICE, BOB, "two")

        assert message_store.mark_seen(db, conversation.id, BOB) == 2
        assert message_store.mark_seen(db, conversation.id, BOB) == 0

        page, _ = message_store.list_messages(db, conversation.id, limit=10)
        for message in page:
            db.refresh(message)
            assert message.status == MessageStatus.SEEN.value
            assert message.seen_at is not None

    def test_mark_seen_only_touches_recipient_messages(self, db, conversation):
        message_store.send_message(db, conversation.id, ALICE, BOB, "to bob")

        assert message_store.mark_seen(db, conversation.id, ALICE) == 0

    def test_delivered_is_optional_and_monotonic(self, db, conversation):
        message, _ = message_store.send_message(db, conversation.id, ALICE, BOB, "hi")

        assert message_store.mark_delivered(db, conversation.id, BOB) == 1
        assert message_store.mark_delivered(db, conversation.id, BOB) == 0
        assert message_store.mark_seen(db, conversation.id, BOB) == 1
        assert message_store.mark_delivered(db, conversation.id, BOB) == 0

        db.refresh(message)
        assert message.status == MessageStatus.SEEN.value

    def test_mark_message_seen(self, db, conversation):
        message, _ = message_store.send_message(db, conversation.id, ALICE, BOB, "hi")

        seen, already = message_store.mark_message_seen(db, message.id, BOB)
        seen_at = seen.seen_at
        again, already_again = message_store.mark_message_seen(db, message.id, BOB)

        assert already is False
        assert already_again is True
        assert again.seen_at == seen_at

    def test_mark_message_seen_errors(self, db, conversation):
        message, _ = message_store.send_message(db, conversation.id, ALICE, BOB, "hi")

        with pytest.raises(NotFoundError):
            message_store.mark_message_seen(db, 9999, BOB)
        with pytest.raises(AuthorizationError):
            message_store.mark_message_seen(db, message.id, ALICE)
        with pytest.raises(AuthorizationError):
            message_store.mark_message_seen(db, message.id, CAROL)

    def test_count_unread(self, db, conversation):
        message_store.send_message(db, conversation.id, ALICE, BOB, "one")
        message_store.send_message(db, conversation.id, ALICE, BOB, "two")

        assert message_store.count_unread(db, BOB) == 2
        assert message_store.count_unread(db, BOB, conversation.id) == 2
        assert message_store.count_unread(db, BOB, conversation.id + 1) == 0
        message_store.mark_seen(db, conversation.id, BOB)
        assert message_store.count_unread(db, BOB) == 0


class TestListMessages:
    def test_page_size_capped(self, db, conversation):
        for i in range(105):
            message_store.send_message(db, conversation.id, ALICE, BOB, f"m{i}")

        page, has_more = message_store.list_messages(db, conversation.id, limit=1000)

        assert len(page) == 100
        assert has_more is True
        assert page[0].content == "m104"

    def test_before_cursor_excludes_anchor_and_newer(self, db, conversation):
        sent = [message_store.send_message(db, conversation.id, ALICE, BOB, f"m{i}")[0] for i in range(4)]

        page, has_more = message_store.list_messages(db, conversation.id, limit=10, before=sent[2].id)

        assert [m.content for m in page] == ["m1", "m0"]
        assert has_more is False

    def test_cursor_from_another_conversation(self, db, conversation):
        other, _ = registry.get_or_create_conversation(db, ALICE, CAROL)
        foreign, _ = message_store.send_message(db, other.id, ALICE, CAROL, "elsewhere")

        with pytest.raises(NotFoundError):
            message_store.list_messages(db, conversation.id, limit=10, before=foreign.id)
