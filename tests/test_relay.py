"""Tests for api/relay.py: relay subscription, frame handling and reconnects."""

import json
import queue
import time

import pytest
import websocket

from conftest import make_event
from src.api.relay import RelayConnection, RelayHealth


class FakeSocket:
    """Scripted stand-in for a websocket-client connection."""

    def __init__(self, frames=(), ping_error=None):
        self.frames = queue.Queue()
        for frame in frames:
            self.frames.put(frame)
        self.sent = []
        self.closed = False
        self.pings = 0
        self.ping_error = ping_error

    def send(self, data):
        self.sent.append(json.loads(data))

    def settimeout(self, timeout):
        self.timeout = timeout

    def recv_data(self, control_frame=False):
        frame = self.frames.get()
        if isinstance(frame, Exception):
            raise frame
        if isinstance(frame, tuple):
            return frame
        return websocket.ABNF.OPCODE_TEXT, frame.encode("utf-8")

    def ping(self):
        self.pings += 1
        if self.ping_error is not None:
            raise self.ping_error

    def close(self):
        self.closed = True
        # Unblock a pending recv like a real socket close would
        self.frames.put(websocket.WebSocketConnectionClosedException("closed"))


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def _relay(received, connect, **kwargs):
    return RelayConnection(
        "wss://relay.test",
        lambda event, url: received.append((event, url)),
        backoff_initial=0.01,
        backoff_max=0.05,
        connect=connect,
        **kwargs,
    )


class TestHandleFrame:
    def setup_method(self):
        self.received = []
        self.relay = _relay(self.received, connect=None)

    def test_event_is_delivered_as_received(self):
        event = make_event(d="o1")
        assert self.relay.handle_frame(json.dumps(["EVENT", "sub", event])) is True
        assert self.received == [(event, "wss://relay.test")]
        assert self.relay.events_received == 1

    def test_irrelevant_events_are_not_filtered(self):
        event = make_event(kind=1)
        self.relay.handle_frame(json.dumps(["EVENT", "sub", event]))
        assert self.received == [(event, "wss://relay.test")]

    @pytest.mark.parametrize("frame", [
        "not json",
        json.dumps({"type": "EVENT"}),
        json.dumps([]),
        json.dumps(["EVENT", "sub"]),
        json.dumps(["EVENT", "sub", "string-payload"]),
    ])
    def test_malformed_frames_are_dropped(self, frame):
        assert self.relay.handle_frame(frame) is True
        assert self.received == []
        assert self.relay.frames_dropped == 1

    def test_control_messages(self):
        assert self.relay.handle_frame(json.dumps(["EOSE", "sub"])) is True
        assert self.relay.handle_frame(json.dumps(["NOTICE", "slow down"])) is True
        assert self.relay.handle_frame(json.dumps(["OK", "id", True, ""])) is True
        assert self.relay.handle_frame(json.dumps(["CLOSED", "sub", "error: shutting down"])) is False

    def test_handler_failure_does_not_propagate(self):
        def boom(event, url):
            raise ValueError("bad handler")

        relay = RelayConnection("wss://relay.test", boom, connect=None)
        assert relay.handle_frame(json.dumps(["EVENT", "sub", make_event()])) is True


class TestBackoff:
    def test_delay_grows_and_is_capped(self):
        relay = RelayConnection("wss://r", lambda e, u: None, backoff_initial=1, backoff_max=30)
        delays = [relay.next_delay(attempt) for attempt in range(10)]
        assert 0.8 <= delays[0] <= 1.0
        assert 3.2 <= delays[2] <= 4.0
        assert all(d <= 30 for d in delays)
        assert delays[-1] >= 24

    def test_subscription_filter(self):
        relay = RelayConnection("wss://r", lambda e, u: None, lookback_minutes=10)
        filt = relay.subscription_filter()
        assert filt["kinds"] == [38383]
        assert abs(filt["since"] - (time.time() - 600)) < 5

        assert "since" not in RelayConnection("wss://r", lambda e, u: None, lookback_minutes=None).subscription_filter()


class TestLifecycle:
    def test_subscribes_and_delivers_events(self):
        received = []
        event = make_event(d="o1")
        sock = FakeSocket([json.dumps(["EVENT", "sub", event])])
        relay = _relay(received, connect=lambda url, timeout: sock)

        relay.start()
        try:
            assert _wait_for(lambda: received)
            assert relay.health == RelayHealth.CONNECTED
            assert sock.sent[0][0] == "REQ"
            assert sock.sent[0][1] == relay.subscription_id
            assert sock.sent[0][2]["kinds"] == [38383]
        finally:
            relay.stop()

        assert relay.health == RelayHealth.STOPPED
        assert sock.closed
        assert not relay.is_running

    def test_reconnects_after_failures(self):
        received = []
        attempts = []
        good = FakeSocket([json.dumps(["EVENT", "sub", make_event(d="o1")])])

        def connect(url, timeout):
            attempts.append(url)
            if len(attempts) < 3:
                raise ConnectionRefusedError("relay down")
            return good

        relay = _relay(received, connect=connect)
        relay.start()
        try:
            assert _wait_for(lambda: received)
            assert len(attempts) == 3
            assert relay.reconnects == 2
        finally:
            relay.stop()

    def test_dropped_connection_is_retried(self):
        received = []
        sockets = [
            FakeSocket([websocket.WebSocketConnectionClosedException("reset")]),
            FakeSocket([json.dumps(["EVENT", "sub", make_event(d="o2")])]),
        ]
        relay = _relay(received, connect=lambda url, timeout: sockets.pop(0))

        relay.start()
        try:
            assert _wait_for(lambda: received)
            assert received[0][0]["tags"][0] == ["d", "o2"]
        finally:
            relay.stop()

    def test_idle_timeout_sends_ping(self):
        received = []
        sock = FakeSocket([
            websocket.WebSocketTimeoutException("idle"),
            json.dumps(["EVENT", "sub", make_event()]),
        ])
        relay = _relay(received, connect=lambda url, timeout: sock)

        relay.start()
        try:
            assert _wait_for(lambda: received)
            assert sock.pings == 1
        finally:
            relay.stop()

    def test_stop_while_failing_does_not_hang(self):
        def connect(url, timeout):
            raise OSError("dns failure")

        relay = RelayConnection("wss://r", lambda e, u: None, backoff_initial=5, backoff_max=5, connect=connect)
        relay.start()
        assert _wait_for(lambda: relay.health == RelayHealth.FAILED)

        started = time.monotonic()
        relay.stop()
        assert time.monotonic() - started < 2
        assert not relay.is_running

    def test_answered_ping_keeps_connection(self):
        received = []
        sock = FakeSocket([
            websocket.WebSocketTimeoutException("idle"),
            (websocket.ABNF.OPCODE_PONG, b""),
            websocket.WebSocketTimeoutException("idle"),
            json.dumps(["EVENT", "sub", make_event()]),
        ])
        relay = _relay(received, connect=lambda url, timeout: sock)

        relay.start()
        try:
            assert _wait_for(lambda: received)
            assert sock.pings == 2
            assert relay.reconnects == 0
        finally:
            relay.stop()

    def test_failed_ping_triggers_reconnect(self):
        received = []
        sockets = [
            FakeSocket(
                [websocket.WebSocketTimeoutException("idle")],
                ping_error=websocket.WebSocketConnectionClosedException("broken pipe"),
            ),
            FakeSocket([json.dumps(["EVENT", "sub", make_event(d="o3")])]),
        ]
        first = sockets[0]
        relay = _relay(received, connect=lambda url, timeout: sockets.pop(0))

        relay.start()
        try:
            assert _wait_for(lambda: received)
            assert first.pings == 1
            assert first.closed
            assert relay.reconnects == 1
        finally:
            relay.stop()

    def test_unanswered_ping_triggers_reconnect(self):
        received = []
        sockets = [
            FakeSocket([
                websocket.WebSocketTimeoutException("idle"),
                websocket.WebSocketTimeoutException("still idle"),
            ]),
            FakeSocket([json.dumps(["EVENT", "sub", make_event(d="o4")])]),
        ]
        first = sockets[0]
        relay = _relay(received, connect=lambda url, timeout: sockets.pop(0))

        relay.start()
        try:
            assert _wait_for(lambda: received)
            assert first.pings == 1
            assert relay.reconnects == 1
        finally:
            relay.stop()

    def test_close_frame_triggers_reconnect(self):
        received = []
        sockets = [
            FakeSocket([(websocket.ABNF.OPCODE_CLOSE, b"")]),
            FakeSocket([json.dumps(["EVENT", "sub", make_event(d="o5")])]),
        ]
        relay = _relay(received, connect=lambda url, timeout: sockets.pop(0))

        relay.start()
        try:
            assert _wait_for(lambda: received)
            assert relay.reconnects == 1
        finally:
            relay.stop()
