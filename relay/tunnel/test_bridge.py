import asyncio

import pytest

from relay.credentials import Credential
from relay.tunnel.bridge import (
    INTERNAL_ERROR,
    NORMAL_CLOSURE,
    TunnelBridge,
    TunnelClosed,
    TunnelSocket,
    UpstreamWebSocket,
    tunnel_url,
)

BOUND = 1.0


class FakeSocket(TunnelSocket):
    """Queue-backed socket; ``inbox`` feeds ``receive``."""

    def __init__(self, hang_on_close: bool = False):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = asyncio.Event()
        self.close_code = None
        self.hang_on_close = hang_on_close

    async def receive(self):
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, frame):
        if self.closed.is_set():
            raise TunnelClosed()
        self.sent.append(frame)

    async def close(self, code=NORMAL_CLOSURE, reason=""):
        self.close_code = code
        self.closed.set()
        if self.hang_on_close:
            await asyncio.Event().wait()


async def _wait_until(predicate, timeout=BOUND):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def sockets():
    return FakeSocket(), FakeSocket()


@pytest.mark.asyncio
async def test_frames_relayed_unmodified_both_ways(sockets):
    client, upstream = sockets
    bridge = TunnelBridge(close_timeout=BOUND)
    task = asyncio.create_task(bridge.run(client, upstream))

    client.inbox.put_nowait("hello")
    client.inbox.put_nowait(b"\x00\x01\xff")
    upstream.inbox.put_nowait('{"type": "pong"}')

    await _wait_until(lambda: len(upstream.sent) == 2 and len(client.sent) == 1)
    assert upstream.sent == ["hello", b"\x00\x01\xff"]
    assert client.sent == ['{"type": "pong"}']

    client.inbox.put_nowait(TunnelClosed())
    await asyncio.wait_for(task, BOUND)


@pytest.mark.asyncio
async def test_client_close_closes_upstream(sockets):
    client, upstream = sockets
    task = asyncio.create_task(TunnelBridge(close_timeout=BOUND).run(client, upstream))

    client.inbox.put_nowait(TunnelClosed(code=4001, reason="bye"))

    await asyncio.wait_for(upstream.closed.wait(), BOUND)
    await asyncio.wait_for(task, BOUND)
    assert upstream.close_code == 4001
    assert client.closed.is_set()


@pytest.mark.asyncio
@pytest.mark.parametrize("attempt", range(5))
async def test_client_close_code_is_propagated_every_time(sockets, attempt):
    client, upstream = sockets
    client.inbox.put_nowait(TunnelClosed(code=4001, reason="bye"))

    await asyncio.wait_for(TunnelBridge(close_timeout=BOUND).run(client, upstream), BOUND)

    assert upstream.close_code == 4001


@pytest.mark.asyncio
async def test_failed_send_does_not_mask_the_peer_close_code(sockets):
    client, upstream = sockets
    upstream.closed.set()
    client.inbox.put_nowait("late frame")
    upstream.inbox.put_nowait(TunnelClosed(code=4002, reason="going away"))

    await asyncio.wait_for(TunnelBridge(close_timeout=BOUND).run(client, upstream), BOUND)

    assert client.close_code == 4002


@pytest.mark.asyncio
async def test_relay_reports_nothing_when_session_already_closing(sockets):
    client, upstream = sockets
    closed = asyncio.Event()
    closed.set()

    assert await TunnelBridge()._relay(client, upstream, closed, "test") is None


@pytest.mark.asyncio
async def test_upstream_close_closes_client(sockets):
    client, upstream = sockets
    task = asyncio.create_task(TunnelBridge(close_timeout=BOUND).run(client, upstream))

    upstream.inbox.put_nowait(TunnelClosed())

    await asyncio.wait_for(client.closed.wait(), BOUND)
    await asyncio.wait_for(task, BOUND)
    assert client.close_code == NORMAL_CLOSURE


@pytest.mark.asyncio
async def test_reserved_close_codes_are_not_echoed(sockets):
    client, upstream = sockets
    task = asyncio.create_task(TunnelBridge(close_timeout=BOUND).run(client, upstream))

    upstream.inbox.put_nowait(TunnelClosed(code=1006))

    await asyncio.wait_for(task, BOUND)
    assert client.close_code == NORMAL_CLOSURE


@pytest.mark.asyncio
async def test_transport_error_closes_both_sides(sockets):
    client, upstream = sockets
    task = asyncio.create_task(TunnelBridge(close_timeout=BOUND).run(client, upstream))

    upstream.inbox.put_nowait(ConnectionResetError("reset by peer"))

    await asyncio.wait_for(task, BOUND)
    assert client.close_code == INTERNAL_ERROR
    assert upstream.close_code == INTERNAL_ERROR


@pytest.mark.asyncio
async def test_hanging_close_is_bounded():
    client, upstream = FakeSocket(), FakeSocket(hang_on_close=True)
    task = asyncio.create_task(TunnelBridge(close_timeout=0.1).run(client, upstream))

    client.inbox.put_nowait(TunnelClosed())

    await asyncio.wait_for(task, BOUND)
    assert upstream.closed.is_set()


@pytest.mark.asyncio
async def test_cancelling_the_session_closes_both_sides(sockets):
    client, upstream = sockets
    task = asyncio.create_task(TunnelBridge(close_timeout=BOUND).run(client, upstream))
    await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert client.closed.is_set()
    assert upstream.closed.is_set()


class SlowCloseSocket(FakeSocket):
    def __init__(self):
        super().__init__()
        self.close_started = asyncio.Event()
        self.close_finished = False

    async def close(self, code=NORMAL_CLOSURE, reason=""):
        self.close_started.set()
        await asyncio.sleep(0.05)
        await super().close(code, reason)
        self.close_finished = True


@pytest.mark.asyncio
async def test_cancelling_during_close_still_finishes_closing():
    client, upstream = FakeSocket(), SlowCloseSocket()
    task = asyncio.create_task(TunnelBridge(close_timeout=BOUND).run(client, upstream))

    client.inbox.put_nowait(TunnelClosed(code=4001, reason="bye"))
    await asyncio.wait_for(upstream.close_started.wait(), BOUND)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, BOUND)
    assert upstream.close_finished
    assert upstream.close_code == 4001


@pytest.mark.parametrize(
    "origin, path, query, expected",
    [
        ("https://upstream.example", "/ws", "", "wss://upstream.example/ws"),
        ("http://localhost:9000", "/ws", "v=2", "ws://localhost:9000/ws?v=2"),
        ("https://upstream.example", "/ws?a=1", "v=2", "wss://upstream.example/ws?a=1&v=2"),
    ],
)
def test_tunnel_url(origin, path, query, expected):
    assert tunnel_url(origin, path, query) == expected


@pytest.mark.asyncio
async def test_open_upstream_sends_credential_on_handshake_only():
    calls = []

    class _Connection:
        subprotocol = "chat"

    async def connector(url, **kwargs):
        calls.append((url, kwargs))
        return _Connection()

    credential = Credential(account="a", cookie="sso=1; cf_clearance=2", user_agent="UA")
    bridge = TunnelBridge(connector=connector, open_timeout=3)

    upstream = await bridge.open_upstream(
        "wss://upstream.example/ws", credential, "https://upstream.example", ["chat"]
    )

    assert isinstance(upstream, UpstreamWebSocket)
    assert upstream.subprotocol == "chat"
    url, kwargs = calls[0]
    assert url == "wss://upstream.example/ws"
    assert kwargs["additional_headers"] == {
        "Cookie": "sso=1; cf_clearance=2",
        "Origin": "https://upstream.example",
    }
    assert kwargs["user_agent_header"] == "UA"
    assert kwargs["subprotocols"] == ["chat"]
    assert kwargs["open_timeout"] == 3
