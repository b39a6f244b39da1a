"""
Bidirectional frame relay between an accepted client WebSocket and a WebSocket
opened to the upstream.

Each direction runs as its own task. Whichever direction finishes first (peer
closed, transport error) sets the shared closed event, cancels its sibling and
closes both sockets, so a session never lingers half-open.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence, Tuple, Union

import websockets
from starlette.websockets import WebSocket, WebSocketState
from websockets.exceptions import ConnectionClosed

from relay.credentials import Credential
from relay.utils.exception_logging import format_exception_message
from relay.vars import PROXY_TIMEOUT, TUNNEL_CLOSE_TIMEOUT

logger = logging.getLogger("uvicorn.error")

Frame = Union[str, bytes]

NORMAL_CLOSURE = 1000
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011


class TunnelClosed(Exception):
    """Raised by a tunnel socket once its peer has closed the connection."""

    def __init__(self, code: int = NORMAL_CLOSURE, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"closed ({code}) {reason}".strip())


class TunnelSocket(ABC):
    @abstractmethod
    async def receive(self) -> Frame:
        """Next frame; raises ``TunnelClosed`` when the peer is gone."""

    @abstractmethod
    async def send(self, frame: Frame) -> None:
        pass

    @abstractmethod
    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        pass


class ClientWebSocket(TunnelSocket):
    """The accepted inbound WebSocket."""

    def __init__(self, websocket: WebSocket):
        self._ws = websocket

    async def receive(self) -> Frame:
        message = await self._ws.receive()
        if message["type"] == "websocket.disconnect":
            raise TunnelClosed(message.get("code", NORMAL_CLOSURE), message.get("reason") or "")
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    async def send(self, frame: Frame) -> None:
        if isinstance(frame, str):
            await self._ws.send_text(frame)
        else:
            await self._ws.send_bytes(frame)

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        if (
            self._ws.application_state == WebSocketState.CONNECTED
            and self._ws.client_state == WebSocketState.CONNECTED
        ):
            await self._ws.close(code=code, reason=reason)


class UpstreamWebSocket(TunnelSocket):
    """A ``websockets`` client connection to the upstream."""

    def __init__(self, connection):
        self._conn = connection

    @property
    def subprotocol(self) -> Optional[str]:
        return getattr(self._conn, "subprotocol", None)

    async def receive(self) -> Frame:
        try:
            return await self._conn.recv()
        except ConnectionClosed as e:
            rcvd = e.rcvd
            raise TunnelClosed(rcvd.code if rcvd else NORMAL_CLOSURE, rcvd.reason if rcvd else "") from e

    async def send(self, frame: Frame) -> None:
        try:
            await self._conn.send(frame)
        except ConnectionClosed as e:
            raise TunnelClosed() from e

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        await self._conn.close(code=code, reason=reason)


def tunnel_url(origin: str, path: str, query: str = "") -> str:
    """Upstream WebSocket URL: ``https`` becomes ``wss``, ``http`` becomes ``ws``."""
    if origin.startswith("https://"):
        url = "wss://" + origin[len("https://"):]
    elif origin.startswith("http://"):
        url = "ws://" + origin[len("http://"):]
    else:
        url = origin
    url += path
    if query:
        url += ("&" if "?" in path else "?") + query
    return url


def _closable_code(code: int) -> int:
    # 1005/1006/1015 are reserved and must not be sent in a close frame
    if code in (1005, 1006, 1015) or not 1000 <= code < 5000:
        return NORMAL_CLOSURE
    return code


class TunnelBridge:
    def __init__(
        self,
        close_timeout: float = TUNNEL_CLOSE_TIMEOUT,
        open_timeout: float = PROXY_TIMEOUT,
        connector: Callable = websockets.connect,
    ):
        self.close_timeout = close_timeout
        self.open_timeout = open_timeout
        self._connector = connector

    async def open_upstream(
        self,
        url: str,
        credential: Credential,
        origin: str,
        subprotocols: Optional[Sequence[str]] = None,
    ) -> UpstreamWebSocket:
        """
        Open the upstream side of a tunnel.

        The credential rides on this connection's upgrade handshake only;
        frames relayed afterwards are never touched.
        """
        connection = await self._connector(
            url,
            additional_headers={"Cookie": credential.cookie, "Origin": origin},
            user_agent_header=credential.user_agent,
            subprotocols=list(subprotocols) if subprotocols else None,
            open_timeout=self.open_timeout,
            max_size=None,
        )
        return UpstreamWebSocket(connection)

    async def run(self, client: TunnelSocket, upstream: TunnelSocket, label: str = "") -> None:
        """
        Relay frames both ways until either side closes, then close both.

        Closing runs to completion even when the session itself is cancelled,
        so neither socket is left half-open.
        """
        closed = asyncio.Event()
        tasks = [
            asyncio.create_task(self._relay(client, upstream, closed, f"{label} client->upstream")),
            asyncio.create_task(self._relay(upstream, client, closed, f"{label} upstream->client")),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.set()
            code, reason = _first_close(tasks)
            for task in tasks:
                task.cancel()
            teardown = asyncio.ensure_future(self._teardown(tasks, client, upstream, code, reason, label))
            await _await_shielded(teardown)

    async def _teardown(self, tasks, client: TunnelSocket, upstream: TunnelSocket, code: int, reason: str, label: str):
        await asyncio.gather(
            self._close(client, code, reason, f"{label} client"),
            self._close(upstream, code, reason, f"{label} upstream"),
        )
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"[Tunnel]{label} closed ({code})")

    async def _relay(
        self, source: TunnelSocket, sink: TunnelSocket, closed: asyncio.Event, direction: str
    ) -> Optional[Tuple[int, str]]:
        """
        Pump frames from ``source`` to ``sink``.

        Returns the close code and reason when ``source`` closed or failed, and
        ``None`` when the session was already closing for another reason.
        """
        try:
            while not closed.is_set():
                try:
                    frame = await source.receive()
                except TunnelClosed as e:
                    logger.debug(f"[Tunnel]{direction} peer closed: {e}")
                    return _closable_code(e.code), e.reason
                try:
                    await sink.send(frame)
                except TunnelClosed:
                    # The other direction reports the sink's own close
                    return None
        except Exception as e:
            logger.warning(f"[Tunnel]{direction} failed: {format_exception_message(e)}")
            return INTERNAL_ERROR, "Tunnel error"
        finally:
            closed.set()
        return None

    async def _close(self, sock: TunnelSocket, code: int, reason: str, name: str) -> None:
        try:
            await asyncio.wait_for(sock.close(code, reason), timeout=self.close_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Tunnel]{name} did not close within {self.close_timeout}s")
        except Exception as e:
            logger.debug(f"[Tunnel]{name} close failed: {format_exception_message(e)}")


def _first_close(tasks) -> Tuple[int, str]:
    """Close code of the first direction, in task order, that saw its peer go."""
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is None:
            result = task.result()
            if result is not None:
                return result
    return NORMAL_CLOSURE, ""


async def _await_shielded(future: asyncio.Future) -> None:
    """Wait for ``future`` even across cancellation, then re-raise the cancel."""
    interrupted = False
    while not future.done():
        try:
            await asyncio.shield(future)
        except asyncio.CancelledError:
            interrupted = True
    if interrupted:
        raise asyncio.CancelledError()
