"""
Tests for ConnectionManager - the resilient session connection.

These tests drive the state machine with a VirtualClock and an in-memory
transport, covering the connect/auth lifecycle, queueing and flushing,
backoff and retry limits, heartbeat timeouts and manual disconnects.
"""

import pytest

from tablelink.config.config import Config
from tablelink.exceptions import ValidationError
from tablelink.websocket.connection_state import ConnectionState
from tablelink.websocket.manager import ConnectionEvent, ConnectionManager


def channel(events, name):
    """Arguments of every emission on ``name``, in order."""
    return [args[1:] for args in events if args[0] == name]


def states(events):
    return [args[1] for args in events if args[0] == "state_change"]


class TestConnectLifecycle:
    """connect() through auth to CONNECTED."""

    def test_initial_state(self, manager: ConnectionManager):
        assert manager.state == ConnectionState.IDLE
        assert manager.is_connected() is False
        assert manager.is_reconnecting() is False
        assert manager.reconnect_attempts == 0
        assert manager.session is None

    def test_connect_and_authenticate(self, manager, transports, events):
        """connect(); server accepts the token; the manager ends up CONNECTED."""
        manager.connect()
        transport = transports.latest
        assert manager.state == ConnectionState.CONNECTING
        assert transport.open_calls == 1

        transport.server_accept()
        assert manager.state == ConnectionState.AUTHENTICATING
        assert transport.sent_envelopes == [{"type": "auth", "token": "secret-token"}]

        transport.server_auth_success(sessionId="sess-42", playerId="p-7")

        assert manager.is_connected() is True
        assert states(events) == [
            ConnectionState.CONNECTING,
            ConnectionState.AUTHENTICATING,
            ConnectionState.CONNECTED,
        ]
        assert manager.session.session_id == "sess-42"
        assert manager.session.data == {"sessionId": "sess-42", "playerId": "p-7"}
        assert channel(events, "connected") == [(manager.session,)]

    def test_repeated_connect_opens_one_transport(self, manager, transports):
        """Calling connect() repeatedly before the first attempt resolves is a no-op."""
        manager.connect()
        manager.connect()
        manager.connect()
        assert len(transports.created) == 1
        assert transports.latest.open_calls == 1

        transports.latest.server_accept()
        manager.connect()
        transports.latest.server_auth_success()
        manager.connect()

        assert len(transports.created) == 1
        assert transports.latest.sent_types().count("auth") == 1
        assert manager.is_connected() is True

    def test_connect_uses_latest_token(self, manager, transports):
        manager.set_token("rotated")
        manager.connect()
        transports.latest.server_accept()
        assert transports.latest.sent_envelopes[0] == {"type": "auth", "token": "rotated"}

    def test_initial_connect_failure_schedules_retry(self, manager, transports, events, clock):
        manager.connect()
        transports.latest.server_fail(ConnectionRefusedError("refused"))

        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.is_reconnecting() is True
        assert channel(events, "error") == [({"type": "transport_error", "detail": "refused"},)]
        assert channel(events, "reconnecting") == [(1000,)]

        clock.advance(1000)
        assert len(transports.created) == 2
        assert manager.reconnect_attempts == 1

    def test_unhandled_event_is_ignored(self, manager):
        assert manager.transition(ConnectionEvent.TRANSPORT_OPEN) is False
        assert manager.state == ConnectionState.IDLE

    def test_for_session_builds_endpoint(self, clock, transports):
        manager = ConnectionManager.for_session(
            "table-9", "tok", clock=clock, transport_factory=transports
        )
        manager.connect()
        assert transports.latest.url == Config.session_url("table-9")
        assert manager.descriptor.token == "tok"


class TestReconnection:
    """Unexpected losses, backoff and the retry limit."""

    def test_retry_attempt_counts_as_reconnecting(self, manager, transports, clock):
        """A retry stays distinguishable from a first connect until auth succeeds."""
        manager.connect()
        assert manager.is_reconnecting() is False
        transports.latest.server_accept()
        assert manager.is_reconnecting() is False
        transports.latest.server_auth_success(sessionId="s1")

        transports.latest.server_drop()
        clock.advance(1000)
        assert manager.state == ConnectionState.CONNECTING
        assert manager.is_reconnecting() is True

        transports.latest.server_accept()
        assert manager.state == ConnectionState.AUTHENTICATING
        assert manager.is_reconnecting() is True

        transports.latest.server_auth_success(sessionId="s1")
        assert manager.is_connected() is True
        assert manager.is_reconnecting() is False

    def test_unexpected_close_reconnects_after_delay(self, manager, transports, events, clock, establish):
        """Connected, transport drops: reconnecting fires, then a new transport opens after the delay."""
        first = establish()

        first.server_drop(code=1011, reason="server restart")

        assert manager.is_connected() is False
        assert manager.state == ConnectionState.DISCONNECTED
        assert channel(events, "reconnecting") == [(1000,)]
        assert channel(events, "disconnected") == [({"code": 1011, "reason": "server restart"},)]

        clock.advance(999)
        assert len(transports.created) == 1

        clock.advance(1)
        assert len(transports.created) == 2
        assert manager.reconnect_attempts == 1
        assert states(events)[-2:] == [ConnectionState.RECONNECTING, ConnectionState.CONNECTING]

        second = transports.latest
        second.server_accept()
        assert second.sent_envelopes[0]["type"] == "auth"
        second.server_auth_success()

        assert manager.is_connected() is True
        assert manager.reconnect_attempts == 0

    def test_max_reconnect_attempts_reached(self, manager, transports, events, clock, establish):
        """Four consecutive failures with a limit of three: give up once, attempts stay at three."""
        manager.set_max_reconnect_attempts(3)
        establish()

        transports.latest.server_drop()
        for delay in (1000, 2000, 4000):
            clock.advance(delay)
            transports.latest.server_fail()

        assert manager.state == ConnectionState.CLOSED
        assert manager.reconnect_attempts == 3
        assert len(channel(events, "max_reconnect_reached")) == 1
        assert channel(events, "reconnecting") == [(1000,), (2000,), (4000,)]

        clock.advance(10 * 60 * 1000)
        assert len(transports.created) == 4
        assert len(channel(events, "max_reconnect_reached")) == 1

    def test_connect_after_giving_up_starts_over(self, manager, transports, clock, establish):
        manager.set_max_reconnect_attempts(1)
        establish()
        transports.latest.server_drop()
        clock.advance(1000)
        transports.latest.server_fail()
        assert manager.state == ConnectionState.CLOSED

        manager.connect()

        assert manager.state == ConnectionState.CONNECTING
        assert manager.reconnect_attempts == 0
        assert len(transports.created) == 3

    def test_zero_attempts_gives_up_immediately(self, manager, transports, events, establish):
        manager.set_max_reconnect_attempts(0)
        establish()
        transports.latest.server_drop()

        assert manager.state == ConnectionState.CLOSED
        assert channel(events, "reconnecting") == []
        assert len(channel(events, "max_reconnect_reached")) == 1

    def test_backoff_is_non_decreasing_and_capped(self, manager, transports, events, clock, establish):
        manager.set_max_reconnect_attempts(7)
        establish()
        transports.latest.server_drop()

        while manager.state != ConnectionState.CLOSED:
            (delay,) = channel(events, "reconnecting")[-1]
            manager.send({"type": "narration", "text": "still here"})
            assert manager.queue_size <= manager.max_queue_size
            clock.advance(delay)
            transports.latest.server_fail()

        delays = [d for (d,) in channel(events, "reconnecting")]
        assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000]
        assert all(a <= b for a, b in zip(delays, delays[1:]))

    def test_only_latest_transport_stays_open(self, manager, transports, clock, establish):
        establish()
        transports.latest.server_drop()
        clock.advance(1000)
        transports.latest.server_fail()
        clock.advance(2000)

        assert len(transports.created) == 3
        assert all(t.closed for t in transports.created[:-1])
        assert transports.latest.closed is False

    def test_events_from_discarded_transport_are_ignored(self, manager, transports, clock, establish):
        old = establish()
        old.server_drop()
        clock.advance(1000)

        old.server_accept()
        old.server_send({"type": "dice_roll", "total": 3})

        assert manager.state == ConnectionState.CONNECTING
        assert transports.latest.sent == []

    def test_connect_while_retry_pending_connects_now(self, manager, transports, clock, establish):
        establish()
        transports.latest.server_drop()
        assert manager.is_reconnecting() is True

        manager.connect()

        assert len(transports.created) == 2
        assert manager.is_reconnecting() is False
        clock.advance(60000)
        assert len(transports.created) == 2


class TestAuthentication:
    """auth_error, auth timeout and session details."""

    def test_auth_rejection_is_terminal(self, manager, transports, events, clock):
        manager.connect()
        transport = transports.latest
        transport.server_accept()

        transport.server_send({"type": "auth_error", "error": "token expired"})

        assert manager.state == ConnectionState.CLOSED
        assert channel(events, "auth_error") == [("token expired",)]
        assert transport.closed is True
        assert channel(events, "reconnecting") == []

        clock.advance(10 * 60 * 1000)
        assert len(transports.created) == 1

    def test_new_token_after_rejection(self, manager, transports):
        manager.connect()
        transports.latest.server_accept()
        transports.latest.server_send({"type": "auth_error", "error": "bad"})

        manager.set_token("fresh")
        manager.connect()
        transports.latest.server_accept()

        assert len(transports.created) == 2
        assert transports.latest.sent_envelopes[0] == {"type": "auth", "token": "fresh"}

    def test_auth_timeout_is_retried(self, manager, transports, events, clock):
        manager.connect()
        transports.latest.server_accept()

        clock.advance(5000)

        assert manager.state == ConnectionState.DISCONNECTED
        assert channel(events, "error") == [({"type": "auth_timeout", "timeout_ms": 5000},)]
        assert channel(events, "reconnecting") == [(1000,)]
        assert transports.latest.closed is True

    def test_late_auth_reply_is_not_a_message(self, manager, transports, events, establish):
        transport = establish()
        transport.server_auth_success(sessionId="again")
        assert channel(events, "message") == []


class TestMessaging:
    """send(), the outbound queue and inbound frames."""

    def test_send_before_event_loop_starts_is_queued(self):
        """With the default clock, send() works before any loop is running."""
        manager = ConnectionManager("ws://game.test/ws/session-1", "secret-token")

        assert manager.send({"type": "chat", "text": "early"}) is False
        assert manager.queue_size == 1
        assert manager.state == ConnectionState.IDLE

    def test_send_when_connected_goes_straight_out(self, manager, transports, establish):
        transport = establish()
        assert manager.send({"type": "dice_roll", "notation": "6d6"}) is True
        assert transport.sent_envelopes[-1] == {"type": "dice_roll", "notation": "6d6"}
        assert manager.queue_size == 0

    def test_queued_messages_flush_in_order(self, manager, transports):
        """Messages sent while disconnected arrive after auth, in enqueue order."""
        assert manager.send({"type": "message1"}) is False
        assert manager.send({"type": "message2"}) is False
        assert manager.queue_size == 2

        manager.connect()
        transport = transports.latest
        transport.server_accept()
        transport.server_auth_success()

        assert transport.sent_types() == ["auth", "message1", "message2"]
        assert manager.queue_size == 0

    def test_messages_queued_during_outage_flush_after_reconnect(self, manager, transports, clock, establish):
        establish()
        transports.latest.server_drop()
        manager.send({"type": "message1"})
        manager.send({"type": "message2"})

        clock.advance(1000)
        transports.latest.server_accept()
        manager.send({"type": "message3"})  # Still authenticating.
        transports.latest.server_auth_success()

        assert transports.latest.sent_types() == ["auth", "message1", "message2", "message3"]

    def test_queue_bound_keeps_most_recent(self, manager, transports):
        manager.set_max_queue_size(5)
        for i in range(10):
            manager.send({"type": "note", "n": i})

        assert manager.queue_size == 5

        manager.connect()
        transports.latest.server_accept()
        transports.latest.server_auth_success()
        assert [e["n"] for e in transports.latest.sent_envelopes[1:]] == [5, 6, 7, 8, 9]

    def test_flush_precedes_connected_announcement(self, manager, transports):
        manager.on(
            "state_change",
            lambda s: manager.send({"type": "hello"}) if s == ConnectionState.CONNECTED else None,
        )
        manager.send({"type": "queued"})

        manager.connect()
        transports.latest.server_accept()
        transports.latest.server_auth_success()

        assert transports.latest.sent_types() == ["auth", "queued", "hello"]

    def test_inbound_message_is_emitted(self, manager, events, establish):
        transport = establish()
        transport.server_send({"type": "dice_roll", "total": 7, "hits": 2})
        assert channel(events, "message") == [({"type": "dice_roll", "total": 7, "hits": 2},)]

    def test_frames_before_auth_are_dropped(self, manager, transports, events):
        manager.connect()
        transports.latest.server_accept()
        transports.latest.server_send({"type": "narration", "text": "early"})
        assert channel(events, "message") == []

    @pytest.mark.parametrize("frame", ["not json{", "[1, 2]", '{"no_type": true}'])
    def test_malformed_frame_reports_parse_error(self, manager, transports, events, clock, frame, establish):
        establish()
        transports.latest.server_send(frame)

        errors = channel(events, "error")
        assert len(errors) == 1
        assert errors[0][0]["type"] == "parse_error"
        assert manager.is_connected() is True
        clock.advance(60000)
        assert len(transports.created) == 1

    @pytest.mark.parametrize("bad", ["hello", {"text": "no type"}, {"type": 5}, None])
    def test_send_rejects_invalid_messages(self, manager, bad):
        with pytest.raises(ValidationError):
            manager.send(bad)


class TestHeartbeat:
    """Ping/pong liveness while CONNECTED."""

    def test_missing_pong_drops_connection(self, manager, transports, events, clock, establish):
        manager.enable_heartbeat(5000, 3000)
        transport = establish()

        clock.advance(5000)
        assert transport.sent_types() == ["auth", "ping"]

        clock.advance(3000)

        assert len(channel(events, "ping_timeout")) == 1
        assert manager.is_connected() is False
        assert transport.closed is True
        assert channel(events, "reconnecting") == [(1000,)]

    def test_pong_keeps_connection_alive(self, manager, transports, events, clock, establish):
        manager.enable_heartbeat(5000, 3000)
        transport = establish()

        clock.advance(5000)
        transport.server_send({"type": "pong"})
        clock.advance(3000)
        assert manager.is_connected() is True

        clock.advance(2000)
        assert transport.sent_types().count("ping") == 2
        assert manager.get_health_metrics()["last_pong_at"] == 5000
        assert channel(events, "message") == []

    def test_heartbeat_disabled_by_default(self, manager, transports, clock, establish):
        transport = establish()
        clock.advance(60000)
        assert transport.sent_types() == ["auth"]

    def test_no_pings_outside_connected(self, manager, transports, clock):
        manager.enable_heartbeat(1000, 500)
        manager.connect()
        transports.latest.server_accept()
        clock.advance(4000)
        assert "ping" not in transports.latest.sent_types()

    def test_heartbeat_stops_on_drop(self, manager, transports, events, clock, establish):
        manager.enable_heartbeat(1000, 500)
        first = establish()
        first.server_drop()
        clock.advance(999)
        assert first.sent_types() == ["auth"]
        assert channel(events, "ping_timeout") == []

    def test_invalid_heartbeat_config(self, manager):
        with pytest.raises(ValidationError):
            manager.enable_heartbeat(0, 1000)


class TestDisconnect:
    """Manual disconnect cancels everything."""

    def test_disconnect_cancels_pending_retry(self, manager, transports, clock, establish):
        manager.enable_heartbeat(5000, 3000)
        establish()
        transports.latest.server_drop()
        assert manager.is_reconnecting() is True

        manager.disconnect()

        assert manager.state == ConnectionState.IDLE
        assert manager.reconnect_attempts == 0
        assert clock.pending() == 0
        clock.advance(24 * 60 * 60 * 1000)
        assert len(transports.created) == 1
        assert manager.reconnect_attempts == 0

    def test_disconnect_after_failed_retries_resets_attempts(self, manager, transports, clock, establish):
        establish()
        transports.latest.server_drop()
        clock.advance(1000)
        transports.latest.server_fail()
        assert manager.reconnect_attempts == 1

        manager.disconnect()

        assert manager.reconnect_attempts == 0
        clock.advance(10**7)
        assert len(transports.created) == 2

    def test_disconnect_while_connected_closes_transport(self, manager, transports, events, clock, establish):
        manager.enable_heartbeat(1000, 500)
        transport = establish()

        manager.disconnect()

        assert transport.closed is True
        assert transport.close_code == 1000
        assert manager.session is None
        clock.advance(60000)
        assert transport.sent_types() == ["auth"]
        assert channel(events, "reconnecting") == []

    def test_disconnect_during_auth_cancels_timeout(self, manager, transports, events, clock):
        manager.connect()
        transports.latest.server_accept()

        manager.disconnect()
        clock.advance(60000)

        assert channel(events, "error") == []
        assert manager.state == ConnectionState.IDLE

    def test_disconnect_from_state_change_handler(self, manager, transports, clock, establish):
        manager.on(
            "state_change",
            lambda s: manager.disconnect() if s == ConnectionState.RECONNECTING else None,
        )
        establish()
        transports.latest.server_drop()

        clock.advance(1000)

        assert manager.state == ConnectionState.IDLE
        assert len(transports.created) == 1

    def test_queue_survives_disconnect(self, manager, transports):
        manager.send({"type": "pending"})
        manager.disconnect()
        assert manager.queue_size == 1


class TestConfiguration:
    def test_invalid_limits(self, manager):
        with pytest.raises(ValidationError):
            manager.set_max_queue_size(0)
        with pytest.raises(ValidationError):
            manager.set_max_reconnect_attempts(-1)

    def test_invalid_constructor_arguments(self, clock, transports):
        with pytest.raises(ValidationError):
            ConnectionManager("", "t", clock=clock, transport_factory=transports)
        with pytest.raises(ValidationError):
            ConnectionManager(
                "ws://x", "t", clock=clock, transport_factory=transports, max_queue_size=0
            )

    def test_shrinking_queue_trims_oldest(self, manager):
        for i in range(8):
            manager.send({"type": "note", "n": i})
        manager.set_max_queue_size(3)
        assert manager.queue_size == 3

    def test_descriptor_and_metrics(self, manager, establish):
        establish(sessionId="s1")
        descriptor = manager.descriptor

        assert descriptor.url == "ws://game.test/ws/session-1"
        assert descriptor.state == ConnectionState.CONNECTED
        assert descriptor.session.session_id == "s1"

        metrics = manager.get_health_metrics()
        assert metrics["state"] == "CONNECTED"
        assert metrics["connected"] is True
        assert metrics["session_id"] == "s1"
        assert metrics["has_transport"] is True
