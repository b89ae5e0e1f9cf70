"""
Tests for the PresenceHub: rooms, typing relay and online presence.
"""

import asyncio

import pytest

from conftest import ALICE, BOB, CAROL, FakeWebSocket
from wachat import user_store
from wachat.errors import Forbidden, ValidationError
from wachat.identity import canonical_conversation_id
from wachat.presence import PresenceHub, personal_channel
from wachat.storage import SessionLocal

CID = canonical_conversation_id(ALICE, BOB)


def test_typing_is_relayed_to_the_room_except_sender():
    async def scenario():
        hub = PresenceHub()
        alice, bob = FakeWebSocket(), FakeWebSocket()
        await hub.connect(alice, ALICE, "Alice")
        await hub.connect(bob, BOB, "Bob")
        hub.join(alice, CID)
        hub.join(bob, CID)

        await hub.typing(alice, CID, True)
        await hub.typing(alice, CID, False)
        return alice, bob

    alice, bob = asyncio.run(scenario())

    assert [e["event"] for e in bob.events() if "typing" in e["event"]] == ["user_typing", "user_stop_typing"]
    assert bob.events("user_typing")[0]["data"] == {
        "userId": ALICE,
        "userName": "Alice",
        "wa_id": ALICE,
        "conversationId": CID,
    }
    assert alice.events("user_typing") == []


def test_join_requires_membership():
    async def scenario():
        hub = PresenceHub()
        carol = FakeWebSocket()
        await hub.connect(carol, CAROL)
        with pytest.raises(Forbidden):
            hub.join(carol, CID)
        with pytest.raises(ValidationError):
            hub.join(FakeWebSocket(), CID)
        return hub

    hub = asyncio.run(scenario())
    assert CID not in hub.rooms


def test_leave_stops_room_events():
    async def scenario():
        hub = PresenceHub()
        bob = FakeWebSocket()
        await hub.connect(bob, BOB)
        hub.join(bob, CID)
        hub.leave(bob, CID)
        delivered = await hub.to_conversation(CID, "new_message", {"x": 1})
        return bob, delivered

    bob, delivered = asyncio.run(scenario())
    assert delivered == 0
    assert bob.events("new_message") == []


def test_presence_follows_first_and_last_session():
    async def scenario():
        hub = PresenceHub()
        alice, bob_phone, bob_laptop = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        await hub.connect(alice, ALICE)
        await hub.connect(bob_phone, BOB)
        await hub.connect(bob_laptop, BOB)
        online_after_connect = hub.is_online(BOB)

        await hub.disconnect(bob_phone)
        still_online = hub.is_online(BOB)
        await hub.disconnect(bob_laptop)
        return alice, online_after_connect, still_online, hub.is_online(BOB)

    alice, online_after_connect, still_online, online_at_end = asyncio.run(scenario())

    updates = [e["data"] for e in alice.events("user_presence_update") if e["data"]["userId"] == BOB]
    assert [u["isOnline"] for u in updates] == [True, False]
    assert online_after_connect and still_online
    assert not online_at_end


def test_personal_channel_reaches_every_session():
    async def scenario():
        hub = PresenceHub()
        phone, laptop = FakeWebSocket(), FakeWebSocket()
        await hub.connect(phone, BOB)
        await hub.connect(laptop, BOB)
        delivered = await hub.to_user(BOB, "message_notification", {"from": "Alice"})
        return hub, phone, laptop, delivered

    hub, phone, laptop, delivered = asyncio.run(scenario())
    assert delivered == 2
    assert len(phone.events("message_notification")) == 1
    assert len(laptop.events("message_notification")) == 1
    assert hub.sessions_for(BOB) == hub.rooms[personal_channel(BOB)]


def test_failed_socket_is_dropped():
    async def scenario():
        hub = PresenceHub()
        alice, broken = FakeWebSocket(), FakeWebSocket(fail=True)
        await hub.connect(alice, ALICE)
        await hub.connect(broken, BOB)
        hub.join(alice, CID)
        hub.join(broken, CID)
        delivered = await hub.to_conversation(CID, "new_message", {"x": 1})
        return hub, delivered

    hub, delivered = asyncio.run(scenario())
    assert delivered == 1
    assert not hub.is_online(BOB)
    assert hub.members(CID) == {ALICE}


def test_update_presence_validates_status():
    async def scenario():
        hub = PresenceHub()
        alice = FakeWebSocket()
        await hub.connect(alice, ALICE)
        with pytest.raises(ValidationError):
            await hub.update_presence(alice, "invisible")
        await hub.update_presence(alice, "away")

    asyncio.run(scenario())


def test_presence_is_persisted(users):
    async def scenario():
        hub = PresenceHub(SessionLocal)
        bob = FakeWebSocket()
        await hub.connect(bob, BOB)
        with SessionLocal() as db:
            online = user_store.get_user(db, BOB).is_online
        await hub.disconnect(bob)
        return online

    assert asyncio.run(scenario()) is True
    with SessionLocal() as db:
        assert user_store.get_user(db, BOB).is_online is False


def test_close_closes_every_socket():
    async def scenario():
        hub = PresenceHub()
        sockets = [FakeWebSocket(), FakeWebSocket()]
        await hub.connect(sockets[0], ALICE)
        await hub.connect(sockets[1], BOB)
        await hub.close()
        return hub, sockets

    hub, sockets = asyncio.run(scenario())
    assert all(ws.closed for ws in sockets)
    assert hub.users == {} and hub.rooms == {}
