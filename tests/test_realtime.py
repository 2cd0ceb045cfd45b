"""Tests for the authenticated /ws channel and the room hub."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import STRONG_PASSWORD
from oceanblog import app as app_module
from oceanblog.api.realtime import WS_CLOSE_UNAUTHORIZED
from oceanblog.service.realtime import RealtimeHub, post_room, user_room
from oceanblog.service.runtime import get_runtime
from oceanblog.service.tokens import TokenIssuer


@pytest.fixture
def client():
    # one portal, so every socket in a test shares the event loop
    with TestClient(app_module.app) as test_client:
        yield test_client


def _token_for(email: str) -> tuple[str, str]:
    runtime = get_runtime()
    result = asyncio.run(runtime.auth.register("Wave Rider", email, STRONG_PASSWORD, STRONG_PASSWORD))
    return result.user.id, result.tokens.access_token


def _expired_token(user_id: str, email: str) -> str:
    settings = get_runtime().settings
    issued = datetime.now(timezone.utc) - timedelta(minutes=settings.access_token_ttl_minutes + 5)
    return TokenIssuer(settings, clock=lambda: issued).issue_access_token(user_id, email, "user")


def _expect_rejection(ws, reason: str) -> None:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        ws.receive_json()
    assert excinfo.value.code == WS_CLOSE_UNAUTHORIZED
    assert excinfo.value.reason == reason


class TestHandshake:
    def test_missing_token_is_rejected(self, client):
        with client.websocket_connect("/ws") as ws:
            _expect_rejection(ws, "Authentication token required")

    def test_garbage_token_is_rejected(self, client):
        with client.websocket_connect("/ws?token=garbage") as ws:
            _expect_rejection(ws, "Invalid token")

    def test_deleted_user_is_rejected(self, client):
        token = get_runtime().auth.tokens.issue_access_token("gone", "gone@example.com", "user")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            _expect_rejection(ws, "User not found")

    def test_deactivated_user_is_rejected(self, client):
        user_id, token = _token_for("idle@example.com")
        asyncio.run(get_runtime().auth.set_active(user_id, False))
        with client.websocket_connect(f"/ws?token={token}") as ws:
            _expect_rejection(ws, "Account is deactivated")

    def test_query_token(self, client):
        user_id, token = _token_for("query@example.com")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            frame = ws.receive_json()
        assert frame["event"] == "connected"
        assert frame["data"] == {"user_id": user_id, "rooms": [user_room(user_id)]}

    def test_authorization_header(self, client):
        user_id, token = _token_for("header@example.com")
        with client.websocket_connect("/ws", headers={"Authorization": f"Bearer {token}"}) as ws:
            assert ws.receive_json()["data"]["user_id"] == user_id

    def test_bearer_subprotocol_is_echoed(self, client):
        user_id, token = _token_for("proto@example.com")
        with client.websocket_connect("/ws", subprotocols=["bearer", token]) as ws:
            assert ws.accepted_subprotocol == "bearer"
            assert ws.receive_json()["data"]["user_id"] == user_id

    def test_subprotocol_wins_over_query(self, client):
        user_id, token = _token_for("first@example.com")
        with client.websocket_connect("/ws?token=garbage", subprotocols=["bearer", token]) as ws:
            assert ws.receive_json()["event"] == "connected"

    def test_header_wins_over_query(self, client):
        user_id, token = _token_for("second@example.com")
        with client.websocket_connect(
            "/ws?token=garbage", headers={"Authorization": f"Bearer {token}"}
        ) as ws:
            assert ws.receive_json()["data"]["user_id"] == user_id

    def test_expired_token_is_rejected(self, client):
        user_id, _ = _token_for("late@example.com")
        token = _expired_token(user_id, "late@example.com")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            _expect_rejection(ws, "Token expired")

    def test_non_ascii_signature_is_rejected(self, client):
        _, token = _token_for("accent@example.com")
        head, body, _ = token.split(".")
        with client.websocket_connect(f"/ws?token={head}.{body}.%C3%A9") as ws:
            _expect_rejection(ws, "Invalid token")


class TestRooms:
    def test_comment_reaches_everyone_in_the_post_room(self, client):
        _, author_token = _token_for("author@example.com")
        _, reader_token = _token_for("reader@example.com")
        _, stranger_token = _token_for("stranger@example.com")

        with client.websocket_connect(f"/ws?token={author_token}") as author, \
                client.websocket_connect(f"/ws?token={reader_token}") as reader, \
                client.websocket_connect(f"/ws?token={stranger_token}") as stranger:
            for ws in (author, reader, stranger):
                ws.receive_json()
            for ws in (author, reader):
                ws.send_json({"event": "join_post", "data": {"post_id": "42"}})
                assert ws.receive_json() == {"event": "joined", "data": {"room": post_room("42")}}

            author.send_json(
                {"event": "new_comment", "data": {"post_id": "42", "comment": {"body": "First!"}}}
            )

            for ws in (author, reader):
                frame = ws.receive_json()
                assert frame["event"] == "comment_added"
                assert frame["data"]["post_id"] == "42"
                assert frame["data"]["comment"] == {"body": "First!"}
                assert frame["data"]["timestamp"]

            # the stranger never joined, so its next frame is its own echo
            stranger.send_json({"event": "ping"})
            assert stranger.receive_json() == {
                "event": "error",
                "data": {"message": "Unknown event: ping"},
            }

    def test_leave_post(self, client):
        _, token = _token_for("leaver@example.com")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.receive_json()
            ws.send_json({"event": "join_post", "data": "7"})
            ws.receive_json()
            assert get_runtime().realtime.room_size(post_room("7")) == 1

            ws.send_json({"event": "leave_post", "data": "7"})
            assert ws.receive_json() == {"event": "left", "data": {"room": post_room("7")}}
            assert get_runtime().realtime.room_size(post_room("7")) == 0

    def test_bad_frames_get_error_events(self, client):
        _, token = _token_for("noisy@example.com")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json()["event"] == "error"
            ws.send_json({"event": "join_post", "data": {}})
            assert ws.receive_json() == {"event": "error", "data": {"message": "post_id is required"}}
            ws.send_json({"event": "new_comment", "data": {"post_id": "1"}})
            assert ws.receive_json() == {
                "event": "error",
                "data": {"message": "Failed to broadcast comment"},
            }

    def test_disconnect_unregisters(self, client):
        user_id, token = _token_for("brief@example.com")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.receive_json()
            ws.send_json({"event": "join_post", "data": "9"})
            ws.receive_json()
            assert get_runtime().realtime.connection_count == 1

        assert get_runtime().realtime.connection_count == 0
        assert get_runtime().realtime.room_size(user_room(user_id)) == 0
        assert get_runtime().realtime.room_size(post_room("9")) == 0


class _FakeSocket:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.frames = []

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(data)


class _FakeUser:
    def __init__(self, user_id: str):
        self.id = user_id


class TestHub:
    async def test_emit_to_user_and_all(self):
        from oceanblog.service.realtime import RealtimeConnection

        hub = RealtimeHub()
        alice = RealtimeConnection(_FakeSocket(), _FakeUser("a"))
        bob = RealtimeConnection(_FakeSocket(), _FakeUser("b"))
        hub.register(alice)
        hub.register(bob)

        assert await hub.emit_to_user("a", "notice", {"n": 1}) == 1
        assert await hub.emit_to_all("broadcast", {}) == 2
        assert [frame["event"] for frame in alice.websocket.frames] == ["notice", "broadcast"]
        assert [frame["event"] for frame in bob.websocket.frames] == ["broadcast"]

    async def test_failed_send_marks_connection_inactive(self):
        from oceanblog.service.realtime import RealtimeConnection

        hub = RealtimeHub()
        broken = RealtimeConnection(_FakeSocket(fail=True), _FakeUser("x"))
        hub.register(broken)
        hub.join(broken, post_room("1"))

        assert await hub.emit_to_room(post_room("1"), "comment_added", {}) == 0
        assert broken.active is False
        assert await broken.emit("again", {}) is False
