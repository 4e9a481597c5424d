from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from uuid import uuid4

import jwt
import pytest
from fastapi import status
from sqlalchemy import func, select

from app.config import get_settings
from app.core.security import create_access_token
from app.models import Message, MessageReceipt, PresenceStatus, User
from app.services.store import SqlAlchemyChatStore, as_utc
from baatkare.realtime import RealtimeHub, SessionState, TokenVerifier
from baatkare.realtime.session import SUPERSEDED_CLOSE_CODE

from conftest import DummyWebSocket, auth_token

settings = get_settings()


@pytest.fixture()
def realtime(session_factory) -> RealtimeHub:
    return RealtimeHub(
        SqlAlchemyChatStore(session_factory),
        TokenVerifier(settings.jwt_secret_key, settings.jwt_algorithm),
        typing_ttl_seconds=5,
        message_max_length=50,
    )


async def connect(hub: RealtimeHub, user_id):
    websocket = DummyWebSocket(auth_token(user_id))
    session = hub.create_session(websocket)
    assert await session.open() is True
    return session, websocket


async def send(session, **payload) -> None:
    await session.handle_raw(json.dumps(payload))


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_missing_token_is_rejected_before_accept(realtime) -> None:
    websocket = DummyWebSocket()
    session = realtime.create_session(websocket)

    assert await session.open() is False
    assert websocket.accepted is False
    assert websocket.close_code == status.WS_1008_POLICY_VIOLATION
    assert websocket.close_reason == "Missing token"
    assert session.state is SessionState.CLOSED
    assert len(realtime.state.registry) == 0


@pytest.mark.anyio("asyncio")
async def test_expired_token_is_rejected(realtime, make_user) -> None:
    user_id = make_user()
    token = create_access_token({"sub": str(user_id)}, expires_delta=timedelta(seconds=-5))
    websocket = DummyWebSocket(token)

    assert await realtime.create_session(websocket).open() is False
    assert websocket.close_reason == "Token has expired"
    assert realtime.is_online(user_id) is False


@pytest.mark.anyio("asyncio")
async def test_forged_token_is_rejected(realtime, make_user) -> None:
    user_id = make_user()
    token = jwt.encode({"sub": str(user_id)}, "not-the-secret", algorithm="HS256")
    websocket = DummyWebSocket(token)

    assert await realtime.create_session(websocket).open() is False
    assert websocket.close_reason == "Invalid token"


@pytest.mark.anyio("asyncio")
async def test_unknown_user_is_rejected(realtime) -> None:
    websocket = DummyWebSocket(auth_token(uuid4()))

    assert await realtime.create_session(websocket).open() is False
    assert websocket.close_reason == "Unknown user"


@pytest.mark.anyio("asyncio")
async def test_bearer_header_is_accepted(realtime, make_user) -> None:
    user_id = make_user()
    websocket = DummyWebSocket(headers={"Authorization": f"Bearer {auth_token(user_id)}"})

    assert await realtime.create_session(websocket).open() is True
    assert realtime.is_online(user_id)


@pytest.mark.anyio("asyncio")
async def test_open_registers_marks_online_and_joins_rooms(
    realtime, make_user, make_chat, session_factory
) -> None:
    alice, bob = make_user("alice"), make_user("bob")
    chat_id = make_chat(alice, bob)
    bob_session, bob_ws = await connect(realtime, bob)

    alice_session, alice_ws = await connect(realtime, alice)

    assert alice_ws.accepted
    assert alice_session.state is SessionState.ACTIVE
    assert realtime.state.registry.lookup(alice) is alice_session
    assert realtime.state.rooms.is_listening(chat_id, alice_session)
    assert bob_ws.of_type("user_online") == [{"type": "user_online", "user_id": str(alice)}]
    assert alice_ws.of_type("user_online") == []
    with session_factory() as db:
        user = db.get(User, alice)
        assert user.presence_status == PresenceStatus.ONLINE
        assert user.last_seen is not None


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_offline_member_misses_events_but_history_keeps_order(
    realtime, make_user, make_chat, session_factory
) -> None:
    alice, bob = make_user("alice"), make_user("bob")
    chat_id = make_chat(alice, bob)
    alice_session, alice_ws = await connect(realtime, alice)
    bob_session, bob_ws = await connect(realtime, bob)

    await send(alice_session, type="send_message", chatId=str(chat_id), content="hello")

    [event] = bob_ws.of_type("new_message")
    assert event["message"]["content"] == "hello"
    assert event["message"]["author_id"] == str(alice)
    assert event["message"]["author"]["username"] == "alice"
    assert len(alice_ws.of_type("new_message")) == 1

    await bob_session.disconnect()
    assert alice_ws.of_type("user_offline")[0]["user_id"] == str(bob)

    bob_ws.sent.clear()
    await send(alice_session, type="send_message", chatId=str(chat_id), content="are you there?")
    assert bob_ws.sent == []

    history = await realtime.store.recent_messages(chat_id, 10)
    assert [m.content for m in history] == ["hello", "are you there?"]
    with session_factory() as db:
        assert db.get(User, bob).presence_status == PresenceStatus.OFFLINE


@pytest.mark.anyio("asyncio")
async def test_concurrent_sends_are_broadcast_in_persisted_order(realtime, make_user, make_chat) -> None:
    alice, bob = make_user("alice"), make_user("bob")
    chat_id = make_chat(alice, bob)
    alice_session, _ = await connect(realtime, alice)
    bob_session, bob_ws = await connect(realtime, bob)

    await asyncio.gather(
        *(
            send(session, type="send_message", chatId=str(chat_id), content=f"m{i}")
            for i, session in enumerate([alice_session, bob_session] * 5)
        )
    )

    received = [event["message"]["id"] for event in bob_ws.of_type("new_message")]
    persisted = [str(m.id) for m in await realtime.store.recent_messages(chat_id, 20)]
    assert len(received) == 10
    assert received == persisted


@pytest.mark.anyio("asyncio")
async def test_send_to_foreign_chat_is_rejected_without_writes(
    realtime, make_user, make_chat, session_factory
) -> None:
    alice, bob, carol = make_user(), make_user(), make_user()
    chat_id = make_chat(alice, bob)
    carol_session, carol_ws = await connect(realtime, carol)

    await send(carol_session, type="send_message", chatId=str(chat_id), content="let me in")

    assert carol_ws.of_type("error") == [
        {"type": "error", "code": "forbidden", "detail": "Not a chat member"}
    ]
    assert carol_session.active
    with session_factory() as db:
        assert db.execute(select(func.count(Message.id))).scalar_one() == 0


@pytest.mark.anyio("asyncio")
async def test_send_to_unknown_chat_reports_not_found(realtime, make_user) -> None:
    session, websocket = await connect(realtime, make_user())

    await send(session, type="send_message", chatId=str(uuid4()), content="hi")

    assert websocket.of_type("error")[0]["code"] == "not_found"


@pytest.mark.anyio("asyncio")
async def test_invalid_frames_are_reported_and_connection_stays_active(realtime, make_user, make_chat) -> None:
    user_id = make_user()
    chat_id = make_chat(user_id, make_user())
    session, websocket = await connect(realtime, user_id)

    await session.handle_raw("{not json")
    await send(session, type="dance")
    await send(session, type="send_message", content="no chat")
    await send(session, type="send_message", chatId=str(chat_id), content="x" * 51)
    await send(session, type="send_message", chatId=str(chat_id), content="   ")
    await send(session, type="update_presence", status="sleeping")

    details = [event["detail"] for event in websocket.of_type("error")]
    assert details[0] == "Malformed JSON"
    assert details[1] == "Unsupported event type: dance"
    assert details[2].startswith("Invalid chatId")
    assert details[3] == "Message is too long"
    assert details[4] == "Message content is required"
    assert details[5].startswith("Invalid status")
    assert all(event["code"] == "invalid_payload" for event in websocket.of_type("error"))
    assert session.active


@pytest.mark.anyio("asyncio")
async def test_reply_to_message_from_other_chat_is_rejected(realtime, make_user, make_chat) -> None:
    alice, bob = make_user(), make_user()
    first = make_chat(alice, bob)
    second = make_chat(alice, make_user())
    session, websocket = await connect(realtime, alice)

    await send(session, type="send_message", chatId=str(first), content="original")
    original_id = websocket.of_type("new_message")[0]["message"]["id"]
    await send(session, type="send_message", chatId=str(second), content="reply", replyTo=original_id)

    assert websocket.of_type("error")[0]["detail"] == "Reply target not found"


@pytest.mark.anyio("asyncio")
async def test_ping_gets_pong(realtime, make_user) -> None:
    session, websocket = await connect(realtime, make_user())

    await send(session, type="ping")

    assert websocket.sent[-1] == {"type": "pong"}


@pytest.mark.anyio("asyncio")
async def test_join_chat_adds_room_for_members_only(realtime, make_user, make_chat) -> None:
    alice, bob = make_user(), make_user()
    session, websocket = await connect(realtime, alice)
    chat_id = make_chat(alice, bob)
    foreign = make_chat(bob, make_user())

    assert not realtime.state.rooms.is_listening(chat_id, session)
    await send(session, type="join_chat", chatId=str(chat_id))
    await send(session, type="join_chat", chatId=str(foreign))

    assert realtime.state.rooms.is_listening(chat_id, session)
    assert not realtime.state.rooms.is_listening(foreign, session)
    assert websocket.of_type("error")[0]["code"] == "forbidden"


# ---------------------------------------------------------------------------
# Receipts, typing and presence
# ---------------------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_mark_read_twice_keeps_one_receipt_and_broadcasts_each_time(
    realtime, make_user, make_chat, session_factory
) -> None:
    alice, bob = make_user(), make_user()
    chat_id = make_chat(alice, bob)
    alice_session, alice_ws = await connect(realtime, alice)
    bob_session, bob_ws = await connect(realtime, bob)
    await send(alice_session, type="send_message", chatId=str(chat_id), content="read me")
    message_id = alice_ws.of_type("new_message")[0]["message"]["id"]

    await send(bob_session, type="mark_read", messageId=message_id, chatId=str(chat_id))
    await send(bob_session, type="mark_read", messageId=message_id, chatId=str(chat_id))

    receipts = alice_ws.of_type("message_read")
    assert len(receipts) == 2
    assert receipts[0]["user_id"] == str(bob)
    with session_factory() as db:
        rows = db.execute(select(MessageReceipt)).scalars().all()
        assert len(rows) == 1
        assert as_utc(rows[0].read_at).isoformat() == receipts[1]["read_at"]
    assert receipts[0]["read_at"] <= receipts[1]["read_at"]


@pytest.mark.anyio("asyncio")
async def test_mark_read_rejects_message_from_other_chat(realtime, make_user, make_chat) -> None:
    alice, bob = make_user(), make_user()
    first = make_chat(alice, bob)
    second = make_chat(alice, bob)
    alice_session, alice_ws = await connect(realtime, alice)
    await send(alice_session, type="send_message", chatId=str(first), content="hi")
    message_id = alice_ws.of_type("new_message")[0]["message"]["id"]

    await send(alice_session, type="mark_read", messageId=message_id, chatId=str(second))

    assert alice_ws.of_type("error")[0]["detail"] == "Message not found"
    assert alice_ws.of_type("message_read") == []


@pytest.mark.anyio("asyncio")
async def test_message_delivered_is_broadcast_to_room(realtime, make_user, make_chat) -> None:
    alice, bob = make_user(), make_user()
    chat_id = make_chat(alice, bob)
    _, alice_ws = await connect(realtime, alice)
    bob_session, _ = await connect(realtime, bob)
    message_id = uuid4()

    await send(bob_session, type="message_delivered", messageId=str(message_id), chatId=str(chat_id))

    assert alice_ws.of_type("message_delivered") == [
        {
            "type": "message_delivered",
            "message_id": str(message_id),
            "chat_id": str(chat_id),
            "user_id": str(bob),
        }
    ]


@pytest.mark.anyio("asyncio")
async def test_typing_is_relayed_and_cleared_on_disconnect(realtime, make_user, make_chat) -> None:
    alice, bob = make_user(), make_user()
    chat_id = make_chat(alice, bob)
    alice_session, alice_ws = await connect(realtime, alice)
    bob_session, bob_ws = await connect(realtime, bob)

    await send(alice_session, type="typing", chatId=str(chat_id), isTyping=True)

    [typing] = bob_ws.of_type("user_typing")
    assert typing["is_typing"] is True
    assert typing["expires_in"] == 5
    assert alice_ws.of_type("user_typing") == []

    await alice_session.disconnect()

    stop = bob_ws.of_type("user_typing")[-1]
    assert stop == {
        "type": "user_typing",
        "chat_id": str(chat_id),
        "user_id": str(alice),
        "is_typing": False,
    }
    assert await realtime.state.typing.typing_users(chat_id) == []


@pytest.mark.anyio("asyncio")
async def test_sending_a_message_stops_typing(realtime, make_user, make_chat) -> None:
    alice, bob = make_user(), make_user()
    chat_id = make_chat(alice, bob)
    alice_session, _ = await connect(realtime, alice)
    _, bob_ws = await connect(realtime, bob)

    await send(alice_session, type="typing", chatId=str(chat_id))
    await send(alice_session, type="send_message", chatId=str(chat_id), content="done")

    assert [event["is_typing"] for event in bob_ws.of_type("user_typing")] == [True, False]


@pytest.mark.anyio("asyncio")
async def test_update_presence_persists_and_broadcasts(
    realtime, make_user, session_factory
) -> None:
    alice, bob = make_user(), make_user()
    alice_session, alice_ws = await connect(realtime, alice)
    _, bob_ws = await connect(realtime, bob)

    await send(alice_session, type="update_presence", status="away")

    [event] = bob_ws.of_type("user_presence_changed")
    assert event["user_id"] == str(alice)
    assert event["status"] == "away"
    assert alice_ws.of_type("user_presence_changed") == []
    with session_factory() as db:
        assert db.get(User, alice).presence_status == PresenceStatus.AWAY


# ---------------------------------------------------------------------------
# Displacement and call signalling
# ---------------------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_reconnect_supersedes_previous_connection(
    realtime, make_user, make_chat, session_factory
) -> None:
    alice, bob = make_user(), make_user()
    chat_id = make_chat(alice, bob)
    _, bob_ws = await connect(realtime, bob)
    first, first_ws = await connect(realtime, alice)

    second, second_ws = await connect(realtime, alice)

    assert first_ws.close_code == SUPERSEDED_CLOSE_CODE
    assert realtime.state.registry.lookup(alice) is second
    assert not realtime.state.rooms.is_listening(chat_id, first)
    assert realtime.state.rooms.is_listening(chat_id, second)

    bob_ws.sent.clear()
    await first.disconnect()

    assert bob_ws.of_type("user_offline") == []
    assert realtime.is_online(alice)
    with session_factory() as db:
        assert db.get(User, alice).presence_status == PresenceStatus.ONLINE


class HeldTypingWebSocket(DummyWebSocket):
    """Blocks on the first typing-stop frame until the test releases it."""

    def __init__(self, token: str) -> None:
        super().__init__(token)
        self.held = asyncio.Event()
        self.release = asyncio.Event()

    async def send_json(self, payload) -> None:
        if payload.get("type") == "user_typing" and payload["is_typing"] is False:
            self.held.set()
            await self.release.wait()
        await super().send_json(payload)


@pytest.mark.anyio("asyncio")
async def test_reconnect_during_teardown_keeps_user_online(
    realtime, make_user, make_chat, session_factory
) -> None:
    alice, bob = make_user(), make_user()
    chat_id = make_chat(alice, bob)
    bob_ws = HeldTypingWebSocket(auth_token(bob))
    assert await realtime.create_session(bob_ws).open() is True
    first, _ = await connect(realtime, alice)
    await send(first, type="typing", chatId=str(chat_id), isTyping=True)

    teardown = asyncio.create_task(first.disconnect())
    await asyncio.wait_for(bob_ws.held.wait(), timeout=1)
    second, _ = await connect(realtime, alice)
    bob_ws.release.set()
    await teardown

    assert realtime.state.registry.lookup(alice) is second
    assert [event["type"] for event in bob_ws.sent if event["type"].startswith("user_o")] == [
        "user_online",
        "user_online",
    ]
    with session_factory() as db:
        assert db.get(User, alice).presence_status == PresenceStatus.ONLINE


@pytest.mark.anyio("asyncio")
async def test_call_signals_are_relayed_one_to_one(realtime, make_user) -> None:
    alice, bob = make_user(), make_user()
    alice_session, alice_ws = await connect(realtime, alice)
    bob_session, bob_ws = await connect(realtime, bob)

    await send(alice_session, type="call_user", targetUserId=str(bob), offer={"sdp": "o"}, callType="video")
    await send(bob_session, type="call_answer", targetUserId=str(alice), answer={"sdp": "a"})
    await send(alice_session, type="ice_candidate", targetUserId=str(bob), candidate={"c": 1})
    await send(bob_session, type="end_call", targetUserId=str(alice))

    assert bob_ws.of_type("incoming_call") == [
        {"type": "incoming_call", "caller_id": str(alice), "offer": {"sdp": "o"}, "call_type": "video"}
    ]
    assert alice_ws.of_type("call_answered")[0]["answer"] == {"sdp": "a"}
    assert bob_ws.of_type("ice_candidate")[0]["candidate"] == {"c": 1}
    assert alice_ws.of_type("call_ended") == [{"type": "call_ended", "user_id": str(bob)}]


@pytest.mark.anyio("asyncio")
async def test_call_signals_to_offline_or_self_are_not_delivered(realtime, make_user) -> None:
    alice = make_user()
    session, websocket = await connect(realtime, alice)

    await send(session, type="call_user", targetUserId=str(uuid4()))
    await send(session, type="call_user", targetUserId=str(alice))

    errors = websocket.of_type("error")
    assert len(errors) == 1
    assert errors[0]["detail"] == "Cannot signal your own connection"
