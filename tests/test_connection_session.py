"""Tests for the client connection session: backoff, queueing, heartbeat and reconnect triggers."""

import asyncio
import json

import pytest
import pytest_asyncio

from app.services.connection_session import Backoff, ConnectionSession, SessionState, session_url

HANG = "hang"


class FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, fail_sends: set[int] | None = None):
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.fail_sends = fail_sends or set()
        self._attempts = 0

    async def send(self, text: str) -> None:
        self._attempts += 1
        if self._attempts in self.fail_sends:
            raise ConnectionResetError("connection reset")
        self.sent.append(json.loads(text))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    def push(self, frame: dict | str) -> None:
        self.incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def explode(self, error: Exception) -> None:
        self.incoming.put_nowait(error)

    def drop(self) -> None:
        self.incoming.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self.drop()


class FakeConnector:
    """Plays back a script of outcomes: a FakeSocket, an exception, or HANG."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []

    @property
    def calls(self) -> int:
        return len(self.urls)

    async def __call__(self, url: str):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else FakeSocket()
        if outcome == HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, Exception):
            raise outcome
        self.sockets.append(outcome)
        return outcome


async def eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest_asyncio.fixture
async def make_session():
    sessions: list[ConnectionSession] = []

    def factory(connector, **kwargs):
        kwargs.setdefault("base_interval", 0.01)
        kwargs.setdefault("decay", 2.0)
        kwargs.setdefault("max_interval", 1.0)
        kwargs.setdefault("heartbeat_interval", 60.0)
        kwargs.setdefault("connection_timeout", 1.0)
        session = ConnectionSession("ws://test/ws?token=t", connector=connector, **kwargs)
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        await session.close()


# --- Backoff ---


class TestBackoff:
    def test_multiplicative_growth(self):
        backoff = Backoff(500, 1.1, 5000)
        backoff.failures = 2
        assert backoff.current == pytest.approx(min(500 * 1.1 ** 2, 5000))

    def test_next_delay_sequence(self):
        backoff = Backoff(1.0, 2.0, 5.0)
        assert [backoff.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_capped(self):
        backoff = Backoff(500, 1.1, 5000)
        backoff.failures = 100
        assert backoff.current == 5000

    def test_reset(self):
        backoff = Backoff(500, 1.1, 5000)
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()
        assert backoff.current == 500


def test_session_url_quotes_token():
    assert session_url("ws://host/ws", "a b/c") == "ws://host/ws?token=a%20b%2Fc"


def test_session_url_requires_token():
    with pytest.raises(ValueError):
        session_url("ws://host/ws", "")


# --- Connecting ---


async def test_connect_reaches_connected(make_session):
    states = []
    connector = FakeConnector()
    session = make_session(connector, on_state_change=states.append)

    assert session.connect() is True
    await eventually(lambda: session.state == SessionState.CONNECTED)
    assert states == [SessionState.CONNECTING, SessionState.CONNECTED]
    assert connector.urls == ["ws://test/ws?token=t"]


async def test_single_attempt_in_flight(make_session):
    connector = FakeConnector(HANG)
    session = make_session(connector, connection_timeout=5.0)

    assert session.connect() is True
    assert session.connect() is False
    await asyncio.sleep(0.02)
    assert session.connect() is False
    assert session.reconnect_now() is False
    assert connector.calls == 1
    assert session.state == SessionState.CONNECTING


async def test_handshake_timeout_counts_as_failure(make_session):
    connector = FakeConnector(HANG, FakeSocket())
    session = make_session(connector, connection_timeout=0.05)

    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)
    assert connector.calls == 2
    assert session.last_retry_delay == pytest.approx(0.01)
    assert session.backoff.failures == 0


async def test_backoff_grows_then_resets(make_session):
    connector = FakeConnector(OSError("refused"), OSError("refused"), OSError("refused"), FakeSocket())
    session = make_session(connector)

    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)
    assert connector.calls == 4
    assert session.last_retry_delay == pytest.approx(0.04)
    assert session.backoff.current == pytest.approx(0.01)


async def test_reconnects_after_drop(make_session):
    first, second = FakeSocket(), FakeSocket()
    connector = FakeConnector(first, second)
    session = make_session(connector)

    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)
    first.drop()
    await eventually(lambda: connector.calls == 2 and session.state == SessionState.CONNECTED)


async def test_gives_up_after_max_attempts(make_session):
    connector = FakeConnector(OSError("refused"), OSError("refused"), OSError("refused"), FakeSocket())
    session = make_session(connector, max_attempts=2)

    session.connect()
    await eventually(lambda: session._supervisor.done())
    assert connector.calls == 2
    assert session.failed_attempts == 2
    assert session.state == SessionState.DISCONNECTED
    assert session.reconnect_now() is False

    # An explicit connect starts over
    assert session.connect() is True
    await eventually(lambda: connector.calls == 3)


async def test_successful_connect_resets_attempt_count(make_session):
    first = FakeSocket()
    connector = FakeConnector(OSError("refused"), first, OSError("refused"), FakeSocket())
    session = make_session(connector, max_attempts=2)

    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)
    assert session.failed_attempts == 0
    first.drop()
    await eventually(lambda: connector.calls == 4 and session.state == SessionState.CONNECTED)


async def test_reconnect_now_skips_backoff(make_session):
    connector = FakeConnector(OSError("offline"), FakeSocket())
    session = make_session(connector, base_interval=30.0, max_interval=30.0)

    session.connect()
    await eventually(lambda: session.state == SessionState.DISCONNECTED and connector.calls == 1)
    await asyncio.sleep(0.02)
    assert connector.calls == 1

    assert session.notify_online() is True
    await eventually(lambda: session.state == SessionState.CONNECTED, timeout=1.0)
    assert session.notify_visible() is False


async def test_close_stops_reconnecting(make_session):
    socket = FakeSocket()
    connector = FakeConnector(socket)
    session = make_session(connector)

    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)
    await session.close()
    await asyncio.sleep(0.05)

    assert socket.closed is True
    assert session.state == SessionState.DISCONNECTED
    assert connector.calls == 1
    assert session.reconnect_now() is False


# --- Sending ---


async def test_send_when_connected(make_session):
    socket = FakeSocket()
    session = make_session(FakeConnector(socket))
    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)

    assert await session.send({"type": "location_update", "data": {"lat": 1, "lng": 2}}) is True
    assert socket.sent == [{"type": "location_update", "data": {"lat": 1, "lng": 2}}]


async def test_queued_messages_flush_in_order(make_session):
    socket = FakeSocket()
    session = make_session(FakeConnector(socket))
    messages = [{"type": "chat_message", "n": n} for n in range(3)]

    for message in messages:
        assert await session.send(message) is False
    assert session.pending == 3

    session.connect()
    await eventually(lambda: len(socket.sent) == 3)
    assert socket.sent == messages
    assert session.pending == 0


async def test_failed_flush_requeues_at_front(make_session):
    first = FakeSocket(fail_sends={2})
    second = FakeSocket()
    session = make_session(FakeConnector(first, second))
    messages = [{"type": "chat_message", "n": n} for n in range(3)]
    for message in messages:
        await session.send(message)

    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)
    await asyncio.sleep(0.01)
    assert first.sent == messages[:1]
    assert session.pending == 2

    first.drop()
    await eventually(lambda: len(second.sent) == 2)
    assert second.sent == messages[1:]


async def test_send_after_interrupted_flush_keeps_order(make_session):
    socket = FakeSocket(fail_sends={1})
    session = make_session(FakeConnector(socket))
    queued = [{"type": "chat_message", "n": n} for n in range(2)]
    for message in queued:
        await session.send(message)

    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)
    await asyncio.sleep(0.01)
    assert socket.sent == []
    assert session.pending == 2

    assert await session.send({"type": "chat_message", "n": 2}) is True
    assert [frame["n"] for frame in socket.sent] == [0, 1, 2]
    assert session.pending == 0


async def test_failed_live_send_is_queued(make_session):
    socket = FakeSocket(fail_sends={1})
    session = make_session(FakeConnector(socket))
    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)

    assert await session.send({"type": "chat_message"}) is False
    assert session.pending == 1


# --- Receiving and heartbeat ---


async def test_heartbeat_sends_pings(make_session):
    socket = FakeSocket()
    session = make_session(FakeConnector(socket), heartbeat_interval=0.01)
    session.connect()

    await eventually(lambda: len(socket.sent) >= 2)
    assert all(frame["type"] == "ping" for frame in socket.sent)
    assert "timestamp" in socket.sent[0]


async def test_pong_not_forwarded(make_session):
    received = []

    async def on_message(frame):
        received.append(frame)

    socket = FakeSocket()
    session = make_session(FakeConnector(socket), on_message=on_message)
    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)

    socket.push({"type": "pong", "timestamp": "now"})
    socket.push({"type": "new_message", "data": {"id": 1}})
    await eventually(lambda: len(received) == 1)
    assert received[0]["type"] == "new_message"


async def test_missing_pong_keeps_connection(make_session):
    socket = FakeSocket()
    session = make_session(FakeConnector(socket), heartbeat_interval=0.01)
    session.connect()
    await eventually(lambda: len(socket.sent) >= 3)
    assert session.state == SessionState.CONNECTED


async def test_handler_error_does_not_drop_connection(make_session):
    seen = []

    async def on_message(frame):
        seen.append(frame["type"])
        if frame["type"] == "boom":
            raise RuntimeError("handler bug")

    socket = FakeSocket()
    connector = FakeConnector(socket)
    session = make_session(connector, on_message=on_message)
    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)

    socket.push({"type": "boom"})
    socket.push({"type": "new_message"})
    await eventually(lambda: seen == ["boom", "new_message"])
    assert session.state == SessionState.CONNECTED
    assert connector.calls == 1


async def test_deeply_nested_frame_is_not_fatal(make_session):
    received = []

    async def on_message(frame):
        received.append(frame["type"])

    socket = FakeSocket()
    connector = FakeConnector(socket)
    session = make_session(connector, on_message=on_message)
    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)

    socket.push("[" * 100000)
    socket.push({"type": "new_message"})
    await eventually(lambda: "new_message" in received)
    assert received[0] == "unparseable"
    assert session.state == SessionState.CONNECTED
    assert connector.calls == 1


async def test_reader_failure_reconnects(make_session):
    first, second = FakeSocket(), FakeSocket()
    connector = FakeConnector(first, second)
    session = make_session(connector)
    session.connect()
    await eventually(lambda: session.state == SessionState.CONNECTED)

    first.explode(ValueError("bad frame"))
    await eventually(lambda: connector.calls == 2 and session.state == SessionState.CONNECTED)
    assert first.closed is True
    assert not session._supervisor.done()
