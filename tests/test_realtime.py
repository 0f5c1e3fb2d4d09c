"""Unit tests for the chat connection registry and per-session fan-out."""

import json

import pytest

from chatgate.service.realtime import IDLE_CLOSE_CODE, IDLE_CLOSE_REASON, ChatHub
from chatgate.storage.memory import MemoryStore


class FakeSocket:
    def __init__(self, *, fail_sends=False):
        self.sent = []
        self.closed = None
        self.fail_sends = fail_sends

    async def send_json(self, data):
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.closed = (code, reason)

    def of_type(self, event_type):
        return [event for event in self.sent if event.get("type") == event_type]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hub(store):
    return ChatHub(store, idle_timeout_seconds=60)


@pytest.fixture
def alice(store):
    return store.create_or_update_user("sub-alice", "alice@example.com", "Alice")


@pytest.fixture
def bob(store):
    return store.create_or_update_user("sub-bob", "bob@example.com", "Bob")


class TestConnect:
    async def test_connect_sends_welcome(self, hub, alice):
        socket = FakeSocket()

        connection = await hub.connect(socket, alice.id)

        assert connection.connection_id in hub.connections
        welcome = socket.sent[0]
        assert welcome["type"] == "user_joined"
        assert welcome["userId"] == alice.id
        assert "timestamp" in welcome

    async def test_disconnect_is_idempotent(self, hub, alice):
        connection = await hub.connect(FakeSocket(), alice.id)

        hub.disconnect(connection.connection_id)
        hub.disconnect(connection.connection_id)

        assert hub.connections == {}

    async def test_failed_welcome_leaves_no_registry_entry(self, hub, alice):
        with pytest.raises(ConnectionError):
            await hub.connect(FakeSocket(fail_sends=True), alice.id)

        assert hub.connections == {}
        assert hub.stats()["connections"] == 0


class TestMessages:
    async def test_message_is_persisted_and_broadcast_to_session_only(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        s2 = store.create_chat_session(alice.id)
        a, b, c = FakeSocket(), FakeSocket(), FakeSocket()
        conn_a = await hub.connect(a, alice.id)
        conn_b = await hub.connect(b, alice.id)
        conn_c = await hub.connect(c, alice.id)
        await hub.join(conn_b, s1.id)
        await hub.join(conn_c, s2.id)

        await hub.handle_event(conn_a, {"type": "message", "sessionId": s1.id, "content": "hi"})

        assert [m.content for m in store.list_chat_messages(s1.id)] == ["hi"]
        for socket in (a, b):
            (event,) = socket.of_type("message")
            assert event["sessionId"] == s1.id
            assert event["userId"] == alice.id
            assert event["content"] == "hi"
            assert event["role"] == "user"
            assert event["messageId"] == store.list_chat_messages(s1.id)[0].id
        assert c.of_type("message") == []
        assert conn_a.chat_session_id == s1.id

    async def test_both_sides_receive_in_sequence(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        a, b = FakeSocket(), FakeSocket()
        conn_a = await hub.connect(a, alice.id)
        conn_b = await hub.connect(b, alice.id)
        await hub.join(conn_b, s1.id)

        await hub.handle_event(conn_a, {"type": "message", "sessionId": s1.id, "content": "one"})
        await hub.handle_event(conn_b, {"type": "message", "sessionId": s1.id, "content": "two"})

        for socket in (a, b):
            assert [e["content"] for e in socket.of_type("message")] == ["one", "two"]

    async def test_foreign_session_is_denied_without_persistence(self, hub, store, alice, bob):
        bobs_session = store.create_chat_session(bob.id)
        a = FakeSocket()
        conn_a = await hub.connect(a, alice.id)

        await hub.handle_event(
            conn_a, {"type": "message", "sessionId": bobs_session.id, "content": "sneaky"}
        )

        (denied,) = a.of_type("access_denied")
        assert denied["sessionId"] == bobs_session.id
        assert store.list_chat_messages(bobs_session.id) == []
        assert conn_a.chat_session_id is None

    async def test_unknown_session_is_denied(self, hub, alice):
        a = FakeSocket()
        conn_a = await hub.connect(a, alice.id)

        await hub.handle_event(conn_a, {"type": "message", "sessionId": "nope", "content": "x"})

        assert len(a.of_type("access_denied")) == 1

    async def test_missing_content_yields_error(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        a = FakeSocket()
        conn_a = await hub.connect(a, alice.id)

        await hub.handle_event(conn_a, {"type": "message", "sessionId": s1.id, "content": "  "})

        assert len(a.of_type("error")) == 1
        assert store.list_chat_messages(s1.id) == []

    async def test_failing_socket_is_dropped_and_others_still_receive(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        good, broken = FakeSocket(), FakeSocket()
        conn_good = await hub.connect(good, alice.id)
        conn_broken = await hub.connect(broken, alice.id)
        await hub.join(conn_broken, s1.id)
        broken.fail_sends = True

        await hub.handle_event(conn_good, {"type": "message", "sessionId": s1.id, "content": "hi"})

        assert len(good.of_type("message")) == 1
        assert conn_broken.connection_id not in hub.connections
        assert conn_good.connection_id in hub.connections

    async def test_evicted_connection_stops_processing_frames(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        socket = FakeSocket()
        conn = await hub.connect(socket, alice.id)
        socket.fail_sends = True

        await hub.handle_event(conn, {"type": "message", "sessionId": s1.id, "content": "hi"})

        assert conn.connection_id not in hub.connections
        with pytest.raises(ConnectionError):
            await hub.handle_frame(conn, json.dumps({"type": "join", "sessionId": s1.id}))
        assert len(store.list_chat_messages(s1.id)) == 1

    @pytest.mark.parametrize("requested", ["assistant", "system", "admin", ["user"], None])
    async def test_end_user_messages_are_stored_as_user(self, hub, store, alice, requested):
        s1 = store.create_chat_session(alice.id)
        socket = FakeSocket()
        conn = await hub.connect(socket, alice.id)

        await hub.handle_event(
            conn, {"type": "message", "sessionId": s1.id, "content": "hi", "role": requested}
        )

        assert socket.of_type("message")[0]["role"] == "user"
        assert store.list_chat_messages(s1.id)[0].role == "user"

    async def test_admin_may_post_as_assistant(self, hub, store, alice):
        store.update_user_role(alice.id, "admin")
        s1 = store.create_chat_session(alice.id)
        socket = FakeSocket()
        conn = await hub.connect(socket, alice.id)

        await hub.handle_event(
            conn, {"type": "message", "sessionId": s1.id, "content": "hi", "role": "assistant"}
        )

        assert store.list_chat_messages(s1.id)[0].role == "assistant"


class TestFrames:
    async def test_invalid_json_yields_error_event(self, hub, alice):
        a = FakeSocket()
        conn_a = await hub.connect(a, alice.id)

        await hub.handle_frame(conn_a, "{not json")

        (error,) = a.of_type("error")
        assert error["content"] == "Invalid message format"
        assert conn_a.connection_id in hub.connections

    async def test_non_object_frame_yields_error_event(self, hub, alice):
        a = FakeSocket()
        conn_a = await hub.connect(a, alice.id)

        await hub.handle_frame(conn_a, json.dumps(["message"]))

        assert len(a.of_type("error")) == 1

    async def test_unknown_type_yields_error_event(self, hub, alice):
        a = FakeSocket()
        conn_a = await hub.connect(a, alice.id)

        await hub.handle_frame(conn_a, json.dumps({"type": "dance"}))

        (error,) = a.of_type("error")
        assert error["content"] == "Unknown message type"

    async def test_storage_failure_yields_generic_error(self, hub, store, alice, monkeypatch):
        s1 = store.create_chat_session(alice.id)
        a = FakeSocket()
        conn_a = await hub.connect(a, alice.id)

        def explode(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(store, "create_chat_message", explode)
        await hub.handle_event(conn_a, {"type": "message", "sessionId": s1.id, "content": "hi"})

        (error,) = a.of_type("error")
        assert error["content"] == "Failed to process message"


class TestTyping:
    async def test_typing_excludes_sender(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        a, b = FakeSocket(), FakeSocket()
        conn_a = await hub.connect(a, alice.id)
        conn_b = await hub.connect(b, alice.id)
        await hub.join(conn_a, s1.id)
        await hub.join(conn_b, s1.id)

        await hub.handle_event(conn_a, {"type": "typing", "sessionId": s1.id})

        assert a.of_type("typing") == []
        (typing,) = b.of_type("typing")
        assert typing["userId"] == alice.id

    async def test_typing_requires_association(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        a, b = FakeSocket(), FakeSocket()
        conn_a = await hub.connect(a, alice.id)
        conn_b = await hub.connect(b, alice.id)
        await hub.join(conn_b, s1.id)

        await hub.handle_event(conn_a, {"type": "typing", "sessionId": s1.id})

        assert b.of_type("typing") == []


class TestMembership:
    async def test_membership_kept_while_another_connection_is_attached(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        conn_a = await hub.connect(FakeSocket(), alice.id)
        conn_b = await hub.connect(FakeSocket(), alice.id)
        await hub.join(conn_a, s1.id)
        await hub.join(conn_b, s1.id)

        hub.disconnect(conn_a.connection_id)
        assert hub.user_sessions[alice.id] == {s1.id}

        hub.disconnect(conn_b.connection_id)
        assert alice.id not in hub.user_sessions

    async def test_switching_sessions_moves_membership(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        s2 = store.create_chat_session(alice.id)
        conn = await hub.connect(FakeSocket(), alice.id)

        await hub.join(conn, s1.id)
        await hub.join(conn, s2.id)

        assert hub.user_sessions[alice.id] == {s2.id}

    async def test_stats(self, hub, store, alice, bob):
        s1 = store.create_chat_session(alice.id)
        conn = await hub.connect(FakeSocket(), alice.id)
        await hub.connect(FakeSocket(), bob.id)
        await hub.join(conn, s1.id)

        assert hub.stats() == {"connections": 2, "users": 2, "chat_sessions": 1}


class TestIdleCleanup:
    async def test_idle_connections_are_closed_and_removed(self, hub, store, alice):
        s1 = store.create_chat_session(alice.id)
        idle_socket, busy_socket = FakeSocket(), FakeSocket()
        idle = await hub.connect(idle_socket, alice.id)
        busy = await hub.connect(busy_socket, alice.id)
        await hub.join(idle, s1.id)
        idle.last_activity -= 120

        closed = await hub.cleanup_inactive()

        assert closed == 1
        assert idle_socket.closed == (IDLE_CLOSE_CODE, IDLE_CLOSE_REASON)
        assert idle.connection_id not in hub.connections
        assert busy.connection_id in hub.connections
        assert alice.id not in hub.user_sessions

    async def test_activity_resets_idle_clock(self, hub, store, alice):
        conn = await hub.connect(FakeSocket(), alice.id)
        conn.last_activity -= 120

        await hub.handle_frame(conn, json.dumps({"type": "typing", "sessionId": "x"}))

        assert await hub.cleanup_inactive() == 0
