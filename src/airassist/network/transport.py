"""
network/transport.py — Duplex text transport

The session manager only needs four things from the wire:

    Transport.connect(endpoint) → Connection
    Connection.send(text) / recv() → text / close() / closed

Every failure surfaces as TransportError; the session's reconnect loop is
the only place that recovers from it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

import websockets

from airassist.exceptions import TransportError
from airassist.observability.logger import get_logger

log = get_logger(__name__)

_MAX_FRAME_BYTES = 16 * 2**20  # audio responses are base64 WAV


@runtime_checkable
class Connection(Protocol):

    @property
    def closed(self) -> bool: ...

    async def send(self, text: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


@runtime_checkable
class Transport(Protocol):

    async def connect(self, endpoint: str) -> Connection: ...


class WebsocketConnection:
    """Wraps a websockets client connection; tracks closure itself."""

    def __init__(self, ws: Any) -> None:
        self._ws = ws
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, text: str) -> None:
        if self._closed:
            raise TransportError("Connection is closed")
        try:
            await self._ws.send(text)
        except websockets.ConnectionClosed as e:
            self._closed = True
            raise TransportError(f"Connection closed during send: {e}") from e
        except OSError as e:
            raise TransportError(f"Send failed: {e}") from e

    async def recv(self) -> str:
        try:
            frame = await self._ws.recv()
        except websockets.ConnectionClosed as e:
            self._closed = True
            raise TransportError(f"Connection closed: {e}") from e
        if isinstance(frame, bytes):
            frame = frame.decode("utf-8", errors="replace")
        return frame

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except (websockets.ConnectionClosed, OSError) as e:
            log.debug("websocket.close_error", error=str(e))


class WebsocketTransport:
    """websockets-backed transport. Keepalive is driven by the session, not the library."""

    def __init__(self, connect_timeout_s: float = 10.0) -> None:
        self._connect_timeout_s = connect_timeout_s

    async def connect(self, endpoint: str) -> WebsocketConnection:
        try:
            ws = await asyncio.wait_for(
                websockets.connect(endpoint, max_size=_MAX_FRAME_BYTES, ping_interval=None),
                timeout=self._connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out connecting to {endpoint}") from e
        except (OSError, websockets.InvalidURI, websockets.InvalidHandshake) as e:
            raise TransportError(f"Could not connect to {endpoint}: {e}") from e
        log.info("websocket.connected", url=endpoint)
        return WebsocketConnection(ws)
