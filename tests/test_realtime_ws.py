"""
Tests for the WebSocket push endpoints and the event hub.
"""

import asyncio
import time

import pytest
from starlette.websockets import WebSocketDisconnect

from chatsync.main import app
from chatsync.realtime import EventHub
from chatsync.schemas import RealtimeEnvelope

from conftest import ALICE, BOB, CAROL, headers_for


def start_conversation(client):
    return client.post(
        "/conversations", json={"recipientId": BOB}, headers=headers_for(ALICE)
    ).json()["conversation"]["id"]


class TestConversationChannel:
    """Test WS /ws/conversations/{id}."""

    def test_receives_created_and_updated(self, client):
        conversation_id = start_conversation(client)

        with client.websocket_connect(f"/ws/conversations/{conversation_id}", headers=headers_for(ALICE)) as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"

            sent = client.post(
                "/messages",
                json={"conversationId": conversation_id, "content": "pushed"},
                headers=headers_for(ALICE),
            ).json()["message"]

            created = ws.receive_json()
            assert created["type"] == "message.created"
            assert created["data"]["id"] == sent["id"]
            assert created["data"]["content"] == "pushed"
            assert created["data"]["conversationId"] == conversation_id

            client.patch(f"/messages/{sent['id']}/seen", headers=headers_for(BOB))

            updated = ws.receive_json()
            assert updated["type"] == "message.updated"
            assert updated["data"]["status"] == "seen"
            assert updated["data"]["seenAt"] is not None

    def test_ping_pong(self, client):
        conversation_id = start_conversation(client)

        with client.websocket_connect(f"/ws/conversations/{conversation_id}", headers=headers_for(BOB)) as ws:
            ws.receive_json()
            ws.send_json({"type": "ping"})

            assert ws.receive_json()["type"] == "pong"

    def test_ping_burst_on_full_queue_keeps_stream_open(self, client, monkeypatch):
        """Pongs that do not fit the subscriber queue are dropped, the stream stays up."""
        monkeypatch.setattr(app.state, "event_hub", EventHub(queue_size=1))
        conversation_id = start_conversation(client)

        with client.websocket_connect(f"/ws/conversations/{conversation_id}", headers=headers_for(BOB)) as ws:
            ws.receive_json()
            for _ in range(20):
                ws.send_text("ping")
            time.sleep(0.2)

            client.post(
                "/messages",
                json={"conversationId": conversation_id, "content": "after the burst"},
                headers=headers_for(ALICE),
            )

            frame = ws.receive_json()
            while frame["type"] == "pong":
                frame = ws.receive_json()
            assert frame["type"] == "message.created"
            assert frame["data"]["content"] == "after the burst"

    def test_outsider_refused(self, client):
        conversation_id = start_conversation(client)

        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/ws/conversations/{conversation_id}", headers=headers_for(CAROL)):
                pass

        assert exc.value.code == 4403

    def test_missing_identity_refused(self, client):
        conversation_id = start_conversation(client)

        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/ws/conversations/{conversation_id}"):
                pass

        assert exc.value.code == 4401


class TestUserChannel:
    """Test WS /ws/users/me."""

    def test_recipient_receives_new_message(self, client):
        with client.websocket_connect("/ws/users/me", headers=headers_for(BOB)) as ws:
            assert ws.receive_json()["type"] == "connected"

            client.post(
                "/messages",
                json={"recipientId": BOB, "content": "hello bob"},
                headers=headers_for(ALICE),
            )

            frame = ws.receive_json()
            assert frame["type"] == "message.created"
            assert frame["data"]["recipientId"] == BOB

    def test_unknown_user_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/users/me", headers=headers_for("u-ghost")):
                pass

        assert exc.value.code == 4401


class TestEventHub:
    """Test the in-process hub directly."""

    def test_publish_reaches_topic_subscribers_only(self):
        async def scenario():
            hub = EventHub(queue_size=10)
            async with hub.subscribe("conversation:1") as one, hub.subscribe("conversation:2") as two:
                delivered = hub.publish(["conversation:1"], RealtimeEnvelope(type="message.created", data={"id": 1}))
                assert delivered == 1
                assert one.get_nowait() == {"type": "message.created", "data": {"id": 1}}
                assert two.empty()
            assert hub.subscriber_count("conversation:1") == 0

        asyncio.run(scenario())

    def test_full_queue_drops_for_slow_subscriber(self):
        async def scenario():
            hub = EventHub(queue_size=1)
            async with hub.subscribe("user:u") as queue:
                hub.publish(["user:u"], RealtimeEnvelope(type="a"))
                delivered = hub.publish(["user:u"], RealtimeEnvelope(type="b"))
                assert delivered == 0
                assert queue.qsize() == 1

        asyncio.run(scenario())
