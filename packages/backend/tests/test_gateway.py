"""Tests for the realtime gateway — auth, rooms, dispatch, fan-out.

Learn: These tests drive the gateway through a FakeTransport that records
every outbound event, so each assertion is about who observed what:
- authentication moves a session Connected → Authenticated (or closes it)
- room events reach the room, user events reach every session of a user
- errors go back to the originating session only
"""

import uuid

import pytest

from tatu.realtime import events
from tatu.realtime.events import conversation_room
from tatu.realtime.gateway import AUTH_FAILED_CLOSE_CODE, FanoutEnvelope
from tatu.realtime.session import SessionState
from tatu.services.conversation_service import ConversationService

from conftest import FakeTransport, token_for


async def _login(gateway, transport, user):
    session = await transport.open(gateway)
    await gateway.dispatch(session, events.AUTHENTICATE, {"token": token_for(user)})
    assert session.is_authenticated
    return session


async def _conversation(session_factory, a, b):
    async with session_factory() as db:
        conv = await ConversationService(db).get_or_create_conversation(a.id, b.id)
    return conv.id


# ═══════════════════════════════════════════════════════════
# Authentication
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_authenticate_binds_user(gateway, users):
    transport = FakeTransport()
    session = await transport.open(gateway)
    assert session.state is SessionState.CONNECTED

    await gateway.dispatch(session, events.AUTHENTICATE, {"token": token_for(users["alice"])})

    assert session.state is SessionState.AUTHENTICATED
    assert session.user_id == users["alice"].id
    assert gateway.is_user_online(users["alice"].id)
    assert transport.payloads(session, events.AUTHENTICATED) == [
        {"userId": str(users["alice"].id)}
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [{"token": "not-a-jwt"}, {}, {"token": ""}, {"token": 12345}, {"token": {"jwt": "x"}}],
)
async def test_authenticate_failure_closes_session(gateway, users, payload):
    transport = FakeTransport()
    session = await transport.open(gateway)

    await gateway.dispatch(session, events.AUTHENTICATE, payload)

    assert transport.events(session, events.ERROR) == []
    assert session.is_closed
    assert len(transport.payloads(session, events.AUTHENTICATION_ERROR)) == 1
    assert transport.closed == [(session, AUTH_FAILED_CLOSE_CODE)]
    assert len(gateway.presence) == 0


@pytest.mark.asyncio
async def test_events_after_close_are_ignored(gateway, users):
    transport = FakeTransport()
    session = await transport.open(gateway)
    await gateway.dispatch(session, events.AUTHENTICATE, {"token": "bad"})
    transport.sent.clear()

    await gateway.dispatch(session, events.GET_CONVERSATIONS, {})
    assert transport.sent == []


@pytest.mark.asyncio
async def test_reauthenticate_as_other_user_drops_rooms(gateway, users, session_factory):
    transport = FakeTransport()
    conv_id = await _conversation(session_factory, users["alice"], users["bob"])
    session = await _login(gateway, transport, users["alice"])
    await gateway.dispatch(session, events.JOIN_CONVERSATION, {"conversationId": str(conv_id)})
    assert session.rooms == {conversation_room(conv_id)}

    await gateway.dispatch(session, events.AUTHENTICATE, {"token": token_for(users["carol"])})

    assert session.user_id == users["carol"].id
    assert session.rooms == set()
    assert not gateway.is_user_online(users["alice"].id)
    assert gateway.is_user_online(users["carol"].id)


# ═══════════════════════════════════════════════════════════
# Before authentication
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_membership_events_ignored_before_auth(gateway, users):
    transport = FakeTransport()
    session = await transport.open(gateway)
    conv_id = str(uuid.uuid4())

    await gateway.dispatch(session, events.JOIN_CONVERSATION, {"conversationId": conv_id})
    await gateway.dispatch(session, events.TYPING_START, {"conversationId": conv_id})

    assert session.rooms == set()
    assert transport.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event", [events.SEND_MESSAGE, events.GET_MESSAGES, events.GET_CONVERSATIONS, events.MARK_MESSAGES_READ]
)
async def test_requests_before_auth_get_error(gateway, users, event):
    transport = FakeTransport()
    session = await transport.open(gateway)

    await gateway.dispatch(session, event, {"conversationId": str(uuid.uuid4())})

    assert transport.payloads(session, events.ERROR) == [{"message": "User not authenticated"}]
    assert not session.is_closed


@pytest.mark.asyncio
async def test_unknown_event_gets_error(gateway, users):
    transport = FakeTransport()
    session = await _login(gateway, transport, users["alice"])

    await gateway.dispatch(session, "launch_rockets", {})

    assert transport.payloads(session, events.ERROR) == [{"message": "Unknown event: launch_rockets"}]


# ═══════════════════════════════════════════════════════════
# Rooms and typing
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_join_and_leave(gateway, users):
    transport = FakeTransport()
    session = await _login(gateway, transport, users["alice"])
    conv_id = uuid.uuid4()
    room = conversation_room(conv_id)

    await gateway.dispatch(session, events.JOIN_CONVERSATION, {"conversationId": str(conv_id)})
    assert room in session.rooms
    assert gateway.presence.room_members(room) == {session}

    await gateway.dispatch(session, events.LEAVE_CONVERSATION, {"conversationId": str(conv_id)})
    assert room not in session.rooms
    assert gateway.presence.room_members(room) == set()


@pytest.mark.asyncio
async def test_join_with_invalid_id_reports_error(gateway, users):
    transport = FakeTransport()
    session = await _login(gateway, transport, users["alice"])

    await gateway.dispatch(session, events.JOIN_CONVERSATION, {"conversationId": "nope"})

    [error] = transport.payloads(session, events.ERROR)
    assert error["message"] == "Invalid payload for join_conversation"
    assert session.rooms == set()


@pytest.mark.asyncio
async def test_typing_reaches_room_but_not_sender(gateway, users):
    transport = FakeTransport()
    alice_phone = await _login(gateway, transport, users["alice"])
    alice_laptop = await _login(gateway, transport, users["alice"])
    bob = await _login(gateway, transport, users["bob"])
    carol = await _login(gateway, transport, users["carol"])
    conv_id = str(uuid.uuid4())
    for session in (alice_phone, alice_laptop, bob):
        await gateway.dispatch(session, events.JOIN_CONVERSATION, {"conversationId": conv_id})

    await gateway.dispatch(alice_phone, events.TYPING_START, {"conversationId": conv_id})
    await gateway.dispatch(alice_phone, events.TYPING_STOP, {"conversationId": conv_id})

    expected = {"userId": str(users["alice"].id), "conversationId": conv_id}
    assert transport.payloads(bob, events.USER_TYPING) == [expected]
    assert transport.payloads(bob, events.USER_STOPPED_TYPING) == [expected]
    assert transport.events(alice_phone, events.USER_TYPING) == []
    assert transport.events(alice_laptop, events.USER_TYPING) == []
    assert transport.events(carol, events.USER_TYPING) == []


# ═══════════════════════════════════════════════════════════
# Sending
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_send_message_fans_out(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])
    bob = await _login(gateway, transport, users["bob"])
    carol = await _login(gateway, transport, users["carol"])

    await gateway.dispatch(
        alice,
        events.SEND_MESSAGE,
        {"receiverId": str(users["bob"].id), "content": "Hi! Any slots in May?"},
    )

    [ack] = transport.payloads(alice, events.MESSAGE_SENT)
    assert ack["success"] is True
    message = ack["message"]
    assert message["content"] == "Hi! Any slots in May?"
    assert message["isRead"] is False
    assert message["senderId"] == str(users["alice"].id)

    # Bob never joined the room; he gets it through his personal room.
    assert transport.payloads(bob, events.NEW_MESSAGE) == [message]
    assert transport.payloads(alice, events.NEW_MESSAGE) == [message]
    assert transport.events(carol) == [(events.AUTHENTICATED, {"userId": str(users["carol"].id)})]


@pytest.mark.asyncio
async def test_new_message_delivered_once_per_session(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])
    bob = await _login(gateway, transport, users["bob"])

    await gateway.dispatch(
        alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": "first"}
    )
    conv_id = transport.payloads(alice, events.MESSAGE_SENT)[0]["message"]["conversationId"]
    await gateway.dispatch(bob, events.JOIN_CONVERSATION, {"conversationId": conv_id})
    await gateway.dispatch(alice, events.JOIN_CONVERSATION, {"conversationId": conv_id})

    await gateway.dispatch(
        alice, events.SEND_MESSAGE, {"conversationId": conv_id, "content": "second"}
    )

    contents = [m["content"] for m in transport.payloads(bob, events.NEW_MESSAGE)]
    assert contents == ["first", "second"]


@pytest.mark.asyncio
async def test_conversation_updated_carries_recomputed_unread(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])
    bob = await _login(gateway, transport, users["bob"])

    for text in ("one", "two"):
        await gateway.dispatch(
            alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": text}
        )

    bob_updates = transport.payloads(bob, events.CONVERSATION_UPDATED)
    assert [u["unreadCount"] for u in bob_updates] == [1, 2]
    assert bob_updates[-1]["otherUser"]["id"] == str(users["alice"].id)
    assert bob_updates[-1]["lastMessage"]["content"] == "two"

    alice_updates = transport.payloads(alice, events.CONVERSATION_UPDATED)
    assert [u["unreadCount"] for u in alice_updates] == [0, 0]
    assert alice_updates[-1]["otherUser"]["id"] == str(users["bob"].id)


@pytest.mark.asyncio
async def test_receiver_outside_room_gets_conversation_updated(gateway, users, session_factory):
    transport = FakeTransport()
    conv_id = await _conversation(session_factory, users["alice"], users["bob"])
    alice = await _login(gateway, transport, users["alice"])
    bob = await _login(gateway, transport, users["bob"])
    await gateway.dispatch(alice, events.JOIN_CONVERSATION, {"conversationId": str(conv_id)})

    await gateway.dispatch(
        alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": "hello"}
    )

    assert bob.rooms == set()
    [update] = transport.payloads(bob, events.CONVERSATION_UPDATED)
    assert update["id"] == str(conv_id)
    assert update["lastMessage"]["content"] == "hello"
    assert update["unreadCount"] == 1


@pytest.mark.asyncio
async def test_send_by_conversation_id_resolves_receiver(gateway, users, session_factory):
    transport = FakeTransport()
    conv_id = await _conversation(session_factory, users["alice"], users["bob"])
    bob = await _login(gateway, transport, users["bob"])

    await gateway.dispatch(
        bob, events.SEND_MESSAGE, {"conversationId": str(conv_id), "content": "Booked!"}
    )

    [ack] = transport.payloads(bob, events.MESSAGE_SENT)
    assert ack["message"]["receiverId"] == str(users["alice"].id)


@pytest.mark.asyncio
async def test_send_into_foreign_conversation_is_denied(gateway, users, session_factory):
    transport = FakeTransport()
    conv_id = await _conversation(session_factory, users["alice"], users["bob"])
    carol = await _login(gateway, transport, users["carol"])

    await gateway.dispatch(
        carol, events.SEND_MESSAGE, {"conversationId": str(conv_id), "content": "hi"}
    )

    assert transport.payloads(carol, events.ERROR) == [
        {"message": "You are not a participant in this conversation"}
    ]
    assert transport.events(carol, events.MESSAGE_SENT) == []


@pytest.mark.asyncio
async def test_send_without_target_is_rejected(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])

    await gateway.dispatch(alice, events.SEND_MESSAGE, {"content": "hi"})

    assert transport.payloads(alice, events.ERROR) == [
        {"message": "Receiver ID or conversation ID is required"}
    ]
    assert alice.is_authenticated


@pytest.mark.asyncio
async def test_blank_message_error_goes_to_sender_only(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])
    bob = await _login(gateway, transport, users["bob"])

    await gateway.dispatch(
        alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": "   "}
    )

    assert transport.payloads(alice, events.ERROR) == [{"message": "Content is required"}]
    assert transport.events(bob, events.NEW_MESSAGE) == []
    assert transport.events(bob, events.ERROR) == []


@pytest.mark.asyncio
async def test_send_to_self_is_rejected(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])

    await gateway.dispatch(
        alice, events.SEND_MESSAGE, {"receiverId": str(users["alice"].id), "content": "me"}
    )

    assert transport.payloads(alice, events.ERROR) == [{"message": "Cannot send message to yourself"}]


# ═══════════════════════════════════════════════════════════
# Read receipts
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_mark_messages_read(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])
    bob = await _login(gateway, transport, users["bob"])
    bob_tablet = await _login(gateway, transport, users["bob"])

    await gateway.dispatch(
        alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": "hello"}
    )
    conv_id = transport.payloads(alice, events.MESSAGE_SENT)[0]["message"]["conversationId"]
    await gateway.dispatch(alice, events.JOIN_CONVERSATION, {"conversationId": conv_id})
    transport.sent.clear()

    await gateway.dispatch(bob, events.MARK_MESSAGES_READ, {"conversationId": conv_id})

    assert transport.payloads(bob, events.MESSAGES_MARKED_READ) == [
        {"conversationId": conv_id, "markedCount": 1, "success": True}
    ]
    assert transport.payloads(alice, events.MESSAGES_READ) == [
        {"conversationId": conv_id, "userId": str(users["bob"].id), "markedCount": 1}
    ]
    # Bob's other device learns its badge is cleared.
    [update] = transport.payloads(bob_tablet, events.CONVERSATION_UPDATED)
    assert update["unreadCount"] == 0

    transport.sent.clear()
    await gateway.dispatch(bob, events.MARK_MESSAGES_READ, {"conversationId": conv_id})
    assert transport.payloads(bob, events.MESSAGES_MARKED_READ)[0]["markedCount"] == 0
    assert transport.events(alice, events.MESSAGES_READ) == []


# ═══════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_get_messages(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])
    for i in range(1, 4):
        await gateway.dispatch(
            alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": f"m{i}"}
        )
    conv_id = transport.payloads(alice, events.MESSAGE_SENT)[0]["message"]["conversationId"]

    await gateway.dispatch(
        alice, events.GET_MESSAGES, {"conversationId": conv_id, "page": 1, "limit": 2}
    )

    [loaded] = transport.payloads(alice, events.MESSAGES_LOADED)
    assert loaded["conversationId"] == conv_id
    assert loaded["success"] is True
    assert [m["content"] for m in loaded["messages"]] == ["m2", "m3"]
    assert loaded["pagination"]["total"] == 3
    assert loaded["pagination"]["hasMore"] is True


@pytest.mark.asyncio
async def test_get_messages_clamps_limit(gateway, users):
    transport = FakeTransport()
    gateway.max_page_size = 2
    alice = await _login(gateway, transport, users["alice"])
    for i in range(3):
        await gateway.dispatch(
            alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": f"m{i}"}
        )
    conv_id = transport.payloads(alice, events.MESSAGE_SENT)[0]["message"]["conversationId"]

    await gateway.dispatch(alice, events.GET_MESSAGES, {"conversationId": conv_id, "limit": 500})

    [loaded] = transport.payloads(alice, events.MESSAGES_LOADED)
    assert loaded["pagination"]["limit"] == 2
    assert len(loaded["messages"]) == 2


@pytest.mark.asyncio
async def test_get_messages_zero_limit_clamps_to_one(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])
    for i in range(2):
        await gateway.dispatch(
            alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": f"m{i}"}
        )
    conv_id = transport.payloads(alice, events.MESSAGE_SENT)[0]["message"]["conversationId"]

    await gateway.dispatch(alice, events.GET_MESSAGES, {"conversationId": conv_id, "limit": 0})

    [loaded] = transport.payloads(alice, events.MESSAGES_LOADED)
    assert loaded["pagination"]["limit"] == 1
    assert len(loaded["messages"]) == 1


@pytest.mark.asyncio
async def test_get_messages_denied_for_outsider(gateway, users, session_factory):
    transport = FakeTransport()
    conv_id = await _conversation(session_factory, users["alice"], users["bob"])
    carol = await _login(gateway, transport, users["carol"])

    await gateway.dispatch(carol, events.GET_MESSAGES, {"conversationId": str(conv_id)})

    assert transport.events(carol, events.MESSAGES_LOADED) == []
    assert transport.payloads(carol, events.ERROR) == [
        {"message": "You are not a participant in this conversation"}
    ]


@pytest.mark.asyncio
async def test_get_conversations(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])
    bob = await _login(gateway, transport, users["bob"])
    await gateway.dispatch(
        alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": "hey"}
    )

    await gateway.dispatch(bob, events.GET_CONVERSATIONS, {})

    [loaded] = transport.payloads(bob, events.CONVERSATIONS_LOADED)
    assert loaded["success"] is True
    [conv] = loaded["conversations"]
    assert conv["otherUser"]["name"] == "Alice"
    assert conv["unreadCount"] == 1


# ═══════════════════════════════════════════════════════════
# Lifecycle and fan-out plumbing
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_disconnect_cleans_up(gateway, users):
    transport = FakeTransport()
    session = await _login(gateway, transport, users["alice"])
    await gateway.dispatch(session, events.JOIN_CONVERSATION, {"conversationId": str(uuid.uuid4())})

    await gateway.disconnect(session)
    await gateway.disconnect(session)

    assert session.is_closed
    assert session.rooms == set()
    assert not gateway.is_user_online(users["alice"].id)
    assert len(gateway.presence) == 0


@pytest.mark.asyncio
async def test_user_stays_online_while_any_session_open(gateway, users):
    transport = FakeTransport()
    phone = await _login(gateway, transport, users["alice"])
    await _login(gateway, transport, users["alice"])

    await gateway.disconnect(phone)

    assert gateway.is_user_online(users["alice"].id)


@pytest.mark.asyncio
async def test_handler_failure_is_contained(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])

    async def explode(session, payload):
        raise RuntimeError("database on fire")

    gateway._handlers[events.GET_CONVERSATIONS] = explode
    await gateway.dispatch(alice, events.GET_CONVERSATIONS, {})

    [error] = transport.payloads(alice, events.ERROR)
    assert error["message"] == "Failed to handle get_conversations"
    assert alice.is_authenticated


@pytest.mark.asyncio
async def test_stats_counts_sessions_per_transport(gateway, users):
    ws = FakeTransport("websocket")
    sio = FakeTransport("socketio")
    await _login(gateway, ws, users["alice"])
    await _login(gateway, sio, users["alice"])
    await _login(gateway, sio, users["bob"])
    await ws.open(gateway)

    assert gateway.stats() == {
        "onlineUsers": 2,
        "sessions": 4,
        "byTransport": {"websocket": 2, "socketio": 2},
    }


@pytest.mark.asyncio
async def test_shutdown_closes_every_session(gateway, users):
    transport = FakeTransport()
    a = await _login(gateway, transport, users["alice"])
    b = await transport.open(gateway)

    await gateway.shutdown()

    assert a.is_closed and b.is_closed
    assert {code for _, code in transport.closed} == {1001}
    assert len(gateway.presence) == 0


class RecordingRelay:
    def __init__(self):
        self.published = []

    async def publish(self, envelope):
        self.published.append(envelope)


@pytest.mark.asyncio
async def test_relay_publishes_instead_of_delivering(gateway, users):
    transport = FakeTransport()
    bob = await _login(gateway, transport, users["bob"])
    relay = RecordingRelay()
    gateway.attach_relay(relay)

    await gateway.fanout("new_message", {"content": "x"}, users=[users["bob"].id])

    assert transport.events(bob, "new_message") == []
    [raw] = relay.published
    assert raw["users"] == [str(users["bob"].id)]

    # What comes back over the relay is delivered locally.
    await gateway.deliver_envelope(raw)
    assert transport.payloads(bob, "new_message") == [{"content": "x"}]


class UnreachableRelay:
    async def publish(self, envelope):
        raise ConnectionError("redis unreachable")


@pytest.mark.asyncio
async def test_relay_outage_still_acks_and_delivers_locally(gateway, users):
    transport = FakeTransport()
    alice = await _login(gateway, transport, users["alice"])
    bob = await _login(gateway, transport, users["bob"])
    gateway.attach_relay(UnreachableRelay())

    await gateway.dispatch(
        alice, events.SEND_MESSAGE, {"receiverId": str(users["bob"].id), "content": "stored"}
    )

    # The message was persisted, so the sender must get its ack, not an error.
    assert transport.events(alice, events.ERROR) == []
    [ack] = transport.payloads(alice, events.MESSAGE_SENT)
    assert ack["success"] is True
    assert [m["content"] for m in transport.payloads(bob, events.NEW_MESSAGE)] == ["stored"]
    [update] = transport.payloads(bob, events.CONVERSATION_UPDATED)
    assert update["unreadCount"] == 1


def test_envelope_round_trip():
    user = uuid.uuid4()
    envelope = FanoutEnvelope(
        event="user_typing", data={"a": 1}, room="conversation:1", exclude_user=user
    )
    assert FanoutEnvelope.from_dict(envelope.to_dict()) == envelope
