"""
End-to-end scenarios: the sync client against the real app, in process.

The API is served through httpx.ASGITransport; feeds are driven with
refresh() instead of timers so every step is deterministic.
"""

import asyncio

import httpx
import pytest

from chatsync.client import ClientContext
from chatsync.client.models import OutboundState
from chatsync.errors import ValidationError
from chatsync.main import app

from conftest import ALICE, BOB


BASE_URL = "http://testserver"


def http_client():
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE_URL)


def run(scenario):
    """Run a scenario(alice_ctx, bob_ctx) coroutine with two signed-in clients."""
    async def main():
        async with http_client() as http:
            async with ClientContext(BASE_URL, ALICE, http_client=http) as alice:
                async with ClientContext(BASE_URL, BOB, http_client=http) as bob:
                    return await scenario(alice, bob)

    return asyncio.run(main())


class TestScenarios:
    def test_first_message_creates_conversation(self, users):
        """Sending to a new recipient creates the conversation and moves its pointer."""
        async def scenario(alice, bob):
            conversations = alice.open_conversation_list(start=False)
            conversation = await conversations.open_with(BOB)
            feed = alice.open_conversation(conversation.id, start=False)
            message = await feed.send("hi")
            await conversations.refresh()
            return message, conversations.conversations

        message, conversations = run(scenario)

        assert message.is_placeholder is False
        assert message.status == "sent"
        assert message.content == "hi"
        assert len(conversations) == 1
        assert conversations[0].last_message.id == message.id

    def test_recipient_receives_once(self, users):
        """A poll delivers the message once; re-polling with nothing new changes nothing."""
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            arrived = []
            bob_feed = bob.open_conversation(conversation.id, start=False, on_new_message=arrived.append)
            await bob_feed.refresh()

            sent = await alice.pipeline.send(conversation.id, "hi")

            changed = await bob_feed.refresh()
            changed_again = await bob_feed.refresh()
            return sent, arrived, changed, changed_again, bob_feed.messages

        sent, arrived, changed, changed_again, timeline = run(scenario)

        assert [m.id for m in arrived] == [sent.id]
        assert changed is True
        assert changed_again is False
        assert [m.id for m in timeline] == [sent.id]

    def test_mark_seen_twice(self, users):
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            sent = await alice.pipeline.send(conversation.id, "hi")
            first, already_first = await bob.api.mark_message_seen(sent.id)
            second, already_second = await bob.api.mark_message_seen(sent.id)

            alice_feed = alice.open_conversation(conversation.id, start=False)
            await alice_feed.refresh()
            return first, already_first, second, already_second, alice_feed.messages

        first, already_first, second, already_second, alice_view = run(scenario)

        assert first.status == "seen"
        assert first.seen_at is not None
        assert already_first is False
        assert already_second is True
        assert second.seen_at == first.seen_at
        assert alice_view[0].status == "seen"

    def test_offline_sends_flush_once_in_order(self, users):
        """Three sends while offline persist exactly once each, in order, after reconnect."""
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            feed = alice.open_conversation(conversation.id, start=False)

            alice.network.set_online(False)
            placeholders = [await feed.send(text) for text in ("one", "two", "three")]
            local_before = [m.id for m in feed.messages]

            alice.network.set_online(True)
            await alice.pipeline.wait_idle()

            page = await bob.api.list_messages(conversation.id)
            return placeholders, local_before, page.messages, alice.pipeline.pending(), feed.messages

        placeholders, local_before, stored, pending, timeline = run(scenario)

        assert all(p.local_state == OutboundState.QUEUED for p in placeholders)
        assert set(local_before) == {p.id for p in placeholders}
        assert [m.content for m in stored] == ["three", "two", "one"]
        assert sorted(m.client_ref for m in stored) == sorted(p.id for p in placeholders)
        assert pending == []
        # placeholders were replaced by the confirmed messages
        assert [m.content for m in timeline] == ["three", "two", "one"]
        assert not any(m.is_placeholder for m in timeline)

    def test_oversized_message_rejected_locally(self, users):
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            with pytest.raises(ValidationError):
                await alice.pipeline.send(conversation.id, "x" * 1001)
            page = await alice.api.list_messages(conversation.id)
            return page.messages, alice.pipeline.pending()

        stored, pending = run(scenario)

        assert stored == []
        assert pending == []


class TestFeedOperations:
    def test_load_more_pages_history(self, users):
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            for i in range(5):
                await alice.api.create_message(f"m{i}", conversation_id=conversation.id)

            feed = bob.open_conversation(conversation.id, start=False)
            feed.page_size = 2
            await feed.refresh()
            first = [m.content for m in feed.messages]
            added = await feed.load_more()
            return first, [m.content for m in added], [m.content for m in feed.messages], feed.has_more

        first, added, timeline, has_more = run(scenario)

        assert first == ["m4", "m3"]
        assert added == ["m2", "m1"]
        assert timeline == ["m4", "m3", "m2", "m1"]
        assert has_more is True

    def test_mark_seen_from_feed(self, users):
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            await alice.pipeline.send(conversation.id, "one")
            await alice.pipeline.send(conversation.id, "two")

            feed = bob.open_conversation(conversation.id, start=False)
            await feed.refresh()
            unseen_before = len(feed.unseen_incoming())
            updated = await feed.mark_seen()
            return unseen_before, updated, feed.unseen_incoming(), feed.messages

        unseen_before, updated, unseen_after, timeline = run(scenario)

        assert unseen_before == 2
        assert updated == 2
        assert unseen_after == []
        assert all(m.status == "seen" and m.seen_at for m in timeline)

    def test_search_users(self, users):
        async def scenario(alice, bob):
            return await alice.open_conversation_list(start=False).search("bob")

        found = run(scenario)

        assert [u.id for u in found] == [BOB]

    def test_cache_seeds_reopened_conversation(self, users):
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            await alice.pipeline.send(conversation.id, "cached")
            await alice.close_conversation(conversation.id)
            reopened = alice.open_conversation(conversation.id, start=False)
            return [m.content for m in reopened.messages]

        assert run(scenario) == ["cached"]

    def test_load_more_after_falling_behind(self, users):
        """Older pages continue from the oldest message held, not from a count."""
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            for i in range(5):
                await alice.api.create_message(f"m{i}", conversation_id=conversation.id)

            feed = bob.open_conversation(conversation.id, start=False)
            feed.page_size = 2
            await feed.refresh()
            for i in range(5, 8):
                await alice.api.create_message(f"m{i}", conversation_id=conversation.id)

            added = await feed.load_more()
            return [m.content for m in added], [m.content for m in feed.messages]

        added, timeline = run(scenario)

        assert added == ["m2", "m1"]
        assert timeline == ["m4", "m3", "m2", "m1"]

    def test_load_more_from_cache_seed(self, users):
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            for i in range(4):
                await alice.api.create_message(f"m{i}", conversation_id=conversation.id)
            newest = (await bob.api.list_messages(conversation.id, limit=1)).messages
            bob.cache.set(conversation.id, newest)

            feed = bob.open_conversation(conversation.id, start=False)
            added = await feed.load_more()
            return [m.content for m in added], feed.has_more

        added, has_more = run(scenario)

        assert added == ["m2", "m1", "m0"]
        assert has_more is False


class TestNotifications:
    def test_send_before_first_load_does_not_announce_history(self, users):
        """History is never announced, even when the first thing a feed sees is its own send."""
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            for i in range(3):
                await alice.api.create_message(f"old{i}", conversation_id=conversation.id)

            arrived = []
            feed = bob.open_conversation(conversation.id, start=False, on_new_message=arrived.append)
            await feed.send("hello")
            await feed.refresh()
            announced_on_load = [m.content for m in arrived]

            await alice.pipeline.send(conversation.id, "fresh")
            await feed.refresh()
            return announced_on_load, [m.content for m in arrived]

        announced_on_load, announced = run(scenario)

        assert announced_on_load == []
        assert announced == ["fresh"]

    def test_unread_count_on_conversation_rows(self, users):
        async def scenario(alice, bob):
            conversation, _ = await alice.api.create_conversation(BOB)
            await alice.pipeline.send(conversation.id, "one")
            await alice.pipeline.send(conversation.id, "two")

            rows = bob.open_conversation_list(start=False)
            await rows.refresh()
            before = rows.conversations[0].unread_count
            await bob.api.mark_conversation_seen(conversation.id)
            await rows.refresh()
            return before, rows.conversations[0].unread_count

        assert run(scenario) == (2, 0)
