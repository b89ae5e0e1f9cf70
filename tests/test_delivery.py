"""
Tests for the DeliveryCoordinator.

Tests cover:
- Send fan-out (room event plus recipient notification)
- Block enforcement in both directions, unknown recipients
- Forwarding with per-target skipping
- Status updates end to end, including replays
- Delete for everyone / for me broadcast rules
- No broadcast when the write fails or times out
"""

import asyncio

import pytest
from starlette.concurrency import run_in_threadpool

from conftest import ALICE, BOB, CAROL, FakeWebSocket
from wachat import block_registry, message_store
from wachat.config import get_settings
from wachat.delivery import DeliveryCoordinator
from wachat.errors import (
    Blocked,
    DuplicateMessage,
    Forbidden,
    InternalError,
    InvalidTransition,
    NotFound,
    RecipientNotFound,
    StoreTimeout,
    ValidationError,
)
from wachat.identity import canonical_conversation_id
from wachat.models import MessageType
from wachat.presence import PresenceHub
from wachat.storage import SessionLocal

CID = canonical_conversation_id(ALICE, BOB)


async def connected(hub, wa_id, name=None, room=None):
    ws = FakeWebSocket()
    await hub.connect(ws, wa_id, name)
    if room:
        hub.join(ws, room)
    return ws


def build(**overrides):
    settings = get_settings()
    if overrides:
        settings = settings.model_copy(update=overrides)
    hub = PresenceHub(SessionLocal)
    return DeliveryCoordinator(SessionLocal, hub, settings), hub


class TestSend:

    def test_new_message_and_notification(self, users):
        async def scenario():
            coordinator, hub = build()
            alice = await connected(hub, ALICE, "Alice", CID)
            bob = await connected(hub, BOB, "Bob", CID)
            carol = await connected(hub, CAROL, "Carol")
            message = await coordinator.send(ALICE, BOB, {"body": "Hello Bob"})
            return message, alice, bob, carol

        message, alice, bob, carol = asyncio.run(scenario())

        assert message["status"] == "sent"
        assert message["origin"] == "live"
        assert message["conversation_id"] == CID

        [room_event] = bob.events("new_message")
        assert room_event["data"]["message"]["message_id"] == message["message_id"]
        assert room_event["data"]["conversationId"] == CID
        assert len(alice.events("new_message")) == 1

        [notification] = bob.events("message_notification")
        assert notification["data"]["from"] == "Alice"
        assert notification["data"]["message"] == "Hello Bob"
        assert notification["data"]["muted"] is False
        assert alice.events("message_notification") == []
        assert carol.events("new_message") == [] and carol.events("message_notification") == []

    def test_media_message(self, users):
        message = asyncio.run(
            build()[0].send(ALICE, BOB, {"media_url": "https://cdn.example/p.jpg", "caption": "beach"}, "image")
        )
        assert message["message_type"] == "image"
        assert message["content"]["media_url"] == "https://cdn.example/p.jpg"

    @pytest.mark.parametrize("blocker, blocked", [(ALICE, BOB), (BOB, ALICE)])
    def test_blocked_in_either_direction(self, db, users, blocker, blocked):
        block_registry.block(db, blocker, blocked)

        async def scenario():
            coordinator, hub = build()
            bob = await connected(hub, BOB, room=CID)
            with pytest.raises(Blocked):
                await coordinator.send(ALICE, BOB, {"body": "hi"})
            return bob

        bob = asyncio.run(scenario())
        assert bob.events("new_message") == []
        assert message_store.count_messages(db) == 0

    def test_unknown_recipient(self, users):
        with pytest.raises(RecipientNotFound):
            asyncio.run(build()[0].send(ALICE, "15550001111", {"body": "hi"}))

    def test_unknown_sender(self, users):
        with pytest.raises(NotFound):
            asyncio.run(build()[0].send("15550001111", ALICE, {"body": "hi"}))

    @pytest.mark.parametrize("content, kind", [
        ({"body": "   "}, MessageType.TEXT),
        ({"body": "no media"}, MessageType.IMAGE),
        ({"body": "x"}, MessageType.DELETED),
        ({"body": "x"}, "sticker"),
    ])
    def test_invalid_content(self, users, content, kind):
        with pytest.raises(ValidationError):
            asyncio.run(build()[0].send(ALICE, BOB, content, kind))

    def test_reply_must_be_in_same_conversation(self, users):
        async def scenario():
            coordinator, _ = build()
            other = await coordinator.send(ALICE, CAROL, {"body": "to carol"})
            first = await coordinator.send(ALICE, BOB, {"body": "first"})
            reply = await coordinator.send(BOB, ALICE, {"body": "reply"}, reply_to=first["message_id"])
            with pytest.raises(ValidationError):
                await coordinator.send(BOB, ALICE, {"body": "bad"}, reply_to=other["message_id"])
            return first, reply

        first, reply = asyncio.run(scenario())
        assert reply["reply_to"] == first["message_id"]

    def test_muted_flag_in_notification(self, db, users):
        from wachat import conversation_store
        conversation_store.set_muted(db, CID, BOB, True)

        async def scenario():
            coordinator, hub = build()
            bob = await connected(hub, BOB)
            await coordinator.send(ALICE, BOB, {"body": "psst"})
            return bob

        bob = asyncio.run(scenario())
        assert bob.events("message_notification")[0]["data"]["muted"] is True


class TestStoreFailures:

    def test_unexpected_failure_suppresses_broadcast(self, users, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(message_store, "create_message", broken)

        async def scenario():
            coordinator, hub = build()
            bob = await connected(hub, BOB, room=CID)
            with pytest.raises(InternalError):
                await coordinator.send(ALICE, BOB, {"body": "hi"})
            return bob

        bob = asyncio.run(scenario())
        assert bob.events("new_message") == []
        assert bob.events("message_notification") == []

    def test_timeout_is_retryable(self, users, monkeypatch):
        async def never_acknowledged(*args):
            await asyncio.sleep(5)

        monkeypatch.setattr("wachat.delivery.run_in_threadpool", never_acknowledged)

        async def scenario():
            coordinator, hub = build(STORE_TIMEOUT_SECONDS=0.05)
            bob = await connected(hub, BOB, room=CID)
            with pytest.raises(StoreTimeout) as excinfo:
                await coordinator.send(ALICE, BOB, {"body": "hi"})
            return bob, excinfo.value

        bob, error = asyncio.run(scenario())
        assert error.retryable is True
        assert bob.events("new_message") == []

    def test_retry_with_same_id_after_timeout(self, db, users, monkeypatch):
        async def late_ack(fn, *args):
            result = await run_in_threadpool(fn, *args)
            await asyncio.sleep(5)
            return result

        async def scenario():
            coordinator, _ = build(STORE_TIMEOUT_SECONDS=0.05)
            monkeypatch.setattr("wachat.delivery.run_in_threadpool", late_ack)
            with pytest.raises(StoreTimeout):
                await coordinator.send(ALICE, BOB, {"body": "hi"}, message_id="client-1")

            monkeypatch.setattr("wachat.delivery.run_in_threadpool", run_in_threadpool)
            with pytest.raises(DuplicateMessage):
                await coordinator.send(ALICE, BOB, {"body": "hi"}, message_id="client-1")

        asyncio.run(scenario())
        stored = message_store.get_message(db, "client-1")
        assert stored is not None
        assert message_store.count_messages(db) == 1


class TestForward:

    def test_blocked_and_unknown_targets_are_skipped(self, db, make_user, users):
        dave = make_user("12025550199", "Dave")
        block_registry.block(db, CAROL, ALICE)

        async def scenario():
            coordinator, hub = build()
            original = await coordinator.send(ALICE, BOB, {"body": "forward me"})
            dave_ws = await connected(hub, dave)
            count = await coordinator.forward(
                original["message_id"], ALICE, [CAROL, "15550001111", dave]
            )
            return count, dave_ws

        count, dave_ws = asyncio.run(scenario())
        assert count == 1
        [notification] = dave_ws.events("message_notification")
        assert notification["data"]["message"] == "forward me"

    def test_outsider_cannot_forward(self, users):
        async def scenario():
            coordinator, _ = build()
            original = await coordinator.send(ALICE, BOB, {"body": "private"})
            await coordinator.forward(original["message_id"], CAROL, [ALICE])

        with pytest.raises(Forbidden):
            asyncio.run(scenario())

    def test_deleted_message_cannot_be_forwarded(self, users):
        async def scenario():
            coordinator, _ = build()
            original = await coordinator.send(ALICE, BOB, {"body": "oops"})
            await coordinator.delete_message(original["message_id"], ALICE, for_everyone=True)
            await coordinator.forward(original["message_id"], BOB, [CAROL])

        with pytest.raises(InvalidTransition):
            asyncio.run(scenario())


class TestStatusFlow:

    def test_sent_delivered_read_and_transcript(self, db, users):
        async def scenario():
            coordinator, hub = build()
            alice = await connected(hub, ALICE, "Alice", CID)
            message = await coordinator.send(ALICE, BOB, {"body": "Are you there?"})
            mid = message["message_id"]

            delivered = await coordinator.update_status(mid, "delivered", requester=BOB)
            read = await coordinator.update_status(mid, "read", requester=BOB)
            replay = await coordinator.update_status(mid, "delivered", requester=BOB)
            await coordinator.send(BOB, ALICE, {"body": "Yes"})
            return alice, mid, delivered, read, replay

        alice, mid, delivered, read, replay = asyncio.run(scenario())

        assert delivered == {"message_id": mid, "status": "delivered", "changed": True}
        assert read["status"] == "read" and read["changed"] is True
        assert replay == {"message_id": mid, "status": "read", "changed": False}

        updates = [e["data"] for e in alice.events("message_status_update")]
        assert [(u["messageId"], u["status"]) for u in updates] == [(mid, "delivered"), (mid, "read")]

        lines = message_store.export_transcript(db, CID, ALICE).splitlines()
        assert len(lines) == 2
        assert lines[0].endswith("] You: Are you there?")
        assert lines[1].endswith("] Bob: Yes")

    def test_invalid_status_value(self, users):
        with pytest.raises(ValidationError):
            asyncio.run(build()[0].update_status("whatever", "seen"))

    def test_outsider_cannot_update(self, users):
        async def scenario():
            coordinator, _ = build()
            message = await coordinator.send(ALICE, BOB, {"body": "hi"})
            await coordinator.update_status(message["message_id"], "read", requester=CAROL)

        with pytest.raises(Forbidden):
            asyncio.run(scenario())

    def test_sender_cannot_acknowledge_own_message(self, users):
        async def scenario():
            coordinator, _ = build()
            message = await coordinator.send(ALICE, BOB, {"body": "hi"})
            for status in ("delivered", "read"):
                with pytest.raises(Forbidden):
                    await coordinator.update_status(message["message_id"], status, requester=ALICE)
            return await coordinator.update_status(message["message_id"], "failed", requester=ALICE)

        result = asyncio.run(scenario())
        assert result["status"] == "failed"

    def test_list_messages_marks_read(self, users):
        async def scenario():
            coordinator, hub = build()
            alice = await connected(hub, ALICE, "Alice", CID)
            await coordinator.send(ALICE, BOB, {"body": "one"})
            await coordinator.send(ALICE, BOB, {"body": "two"})
            page = await coordinator.list_messages(CID, BOB)
            again = await coordinator.list_messages(CID, BOB)
            return alice, page, again

        alice, page, again = asyncio.run(scenario())
        assert [m["content"]["body"] for m in page["data"]] == ["one", "two"]
        assert page["total"] == 2
        assert [m["status"] for m in again["data"]] == ["read", "read"]
        [read_event] = alice.events("messages_read")
        assert read_event["data"]["readBy"] == BOB
        assert len(alice.events("message_status_update")) == 2


class TestDelete:

    def test_delete_for_everyone_is_broadcast(self, users):
        async def scenario():
            coordinator, hub = build()
            bob = await connected(hub, BOB, room=CID)
            message = await coordinator.send(ALICE, BOB, {"body": "typo"})
            result = await coordinator.delete_message(message["message_id"], ALICE, for_everyone=True)
            return bob, message, result

        bob, message, result = asyncio.run(scenario())
        assert result["for_everyone"] is True
        [event] = bob.events("message_deleted_for_everyone")
        assert event["data"] == {"messageId": message["message_id"], "conversationId": CID}

    def test_delete_for_me_is_silent(self, users):
        async def scenario():
            coordinator, hub = build()
            bob = await connected(hub, BOB, room=CID)
            message = await coordinator.send(ALICE, BOB, {"body": "hmm"})
            await coordinator.delete_message(message["message_id"], ALICE)
            page = await coordinator.list_messages(CID, BOB, mark_read=False)
            return bob, page

        bob, page = asyncio.run(scenario())
        assert bob.events("message_deleted_for_everyone") == []
        assert page["total"] == 1

    def test_delete_for_everyone_by_recipient(self, users):
        async def scenario():
            coordinator, _ = build()
            message = await coordinator.send(ALICE, BOB, {"body": "mine"})
            await coordinator.delete_message(message["message_id"], BOB, for_everyone=True)

        with pytest.raises(Forbidden):
            asyncio.run(scenario())

    def test_clear_and_delete_conversation(self, db, users):
        async def scenario():
            coordinator, hub = build()
            bob = await connected(hub, BOB, room=CID)
            await coordinator.send(ALICE, BOB, {"body": "one"})
            await coordinator.send(BOB, ALICE, {"body": "two"})
            cleared = await coordinator.clear_conversation(CID, ALICE)
            deleted = await coordinator.delete_conversation(CID, ALICE)
            with pytest.raises(NotFound):
                await coordinator.delete_conversation(CID, ALICE)
            with pytest.raises(Forbidden):
                await coordinator.clear_conversation(CID, CAROL)
            return bob, cleared, deleted

        bob, cleared, deleted = asyncio.run(scenario())
        assert cleared == 2
        assert deleted == 0
        assert len(bob.events("conversation_cleared")) == 1
        assert len(bob.events("conversation_deleted")) == 1
        assert message_store.count_messages(db) == 0
