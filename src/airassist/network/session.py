"""
network/session.py — Network session manager

Keeps one duplex session to the assistant server alive for as long as the
app runs.

State machine:

    IDLE ──open──► CONNECTING ──established──► OPEN
                        │                        │ transport error / close /
                        │ connect failed         │ liveness timeout
                        ▼                        ▼
                     CLOSING ◄───────────────────┘
                        │
                        ▼
                  RECONNECTING ──reconnect delay──► CONNECTING ...

Only close() leads back to IDLE. Every transition publishes exactly one
STATE_CHANGED event.

Keepalive (per OPEN epoch):
    - a ping every ping_interval_s, never overlapping
    - any inbound frame refreshes last_activity_at
    - no inbound frame for liveness_timeout_s → the connection is dropped
      and the manager reconnects; this happens at most once per epoch
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from airassist.core.clock import Clock, LoopClock
from airassist.core.events import EventChannel, Subscription
from airassist.exceptions import TransportError
from airassist.network.protocol import encode, make_ping
from airassist.network.transport import Connection, Transport
from airassist.observability.logger import get_logger

log = get_logger(__name__)


class SessionState(str, Enum):
    IDLE         = "idle"
    CONNECTING   = "connecting"
    OPEN         = "open"
    CLOSING      = "closing"
    RECONNECTING = "reconnecting"


class SessionEventKind(str, Enum):
    STATE_CHANGED = "state_changed"
    OPENED        = "opened"
    CLOSED        = "closed"
    MESSAGE       = "message"
    ERROR         = "error"


@dataclass
class SessionEvent:
    kind: SessionEventKind
    state: Optional[SessionState] = None
    previous: Optional[SessionState] = None
    raw: Optional[str] = None
    error: Optional[Exception] = None
    reason: Optional[str] = None


@dataclass
class SessionSnapshot:
    state: SessionState
    last_activity_at: Optional[float]
    pending_ping_at: Optional[float]
    epoch: int


class NetworkSessionManager:

    def __init__(
        self,
        transport: Transport,
        clock: Optional[Clock] = None,
        ping_interval_s: float = 30.0,
        liveness_timeout_s: float = 60.0,
        reconnect_delay_s: float = 5.0,
    ) -> None:
        self._transport = transport
        self._clock = clock or LoopClock()
        self._ping_interval_s = ping_interval_s
        self._liveness_timeout_s = liveness_timeout_s
        self._reconnect_delay_s = reconnect_delay_s

        self._state = SessionState.IDLE
        self._endpoint: Optional[str] = None
        self._connection: Optional[Connection] = None
        self._runner: Optional[asyncio.Task] = None
        self._epoch = 0
        self._last_activity_at: Optional[float] = None
        self._pending_ping_at: Optional[float] = None
        self._events: EventChannel[SessionEvent] = EventChannel("session")

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is SessionState.OPEN and self._connection is not None

    @property
    def endpoint(self) -> Optional[str]:
        return self._endpoint

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            last_activity_at=self._last_activity_at,
            pending_ping_at=self._pending_ping_at,
            epoch=self._epoch,
        )

    def events(self) -> Subscription[SessionEvent]:
        return self._events.subscribe()

    def _set_state(self, new: SessionState) -> None:
        if new is self._state:
            return
        old, self._state = self._state, new
        log.info("session.state_changed", old=old.value, new=new.value, epoch=self._epoch)
        self._events.publish(
            SessionEvent(SessionEventKind.STATE_CHANGED, state=new, previous=old)
        )

    # ── Public API ────────────────────────────────────────────────────────────

    async def open(self, endpoint: str) -> None:
        """Start the connection loop. Returns immediately."""
        if self._runner is not None and not self._runner.done():
            log.debug("session.open_ignored", state=self._state.value)
            return
        self._endpoint = endpoint
        self._runner = asyncio.create_task(self._run(), name="airassist-session")

    async def send(self, message: Union[dict, str]) -> bool:
        """Send one message. False (never raises) when not OPEN or the write fails."""
        conn = self._connection
        if self._state is not SessionState.OPEN or conn is None:
            return False
        try:
            await conn.send(encode(message))
        except TransportError as e:
            log.warning("session.send_failed", error=str(e))
            return False
        return True

    async def check_connection(self) -> bool:
        """
        Reconcile belief with reality: if the manager thinks it is OPEN but the
        transport has closed underneath it, drop the connection so the
        reconnect loop takes over. Returns whether the session is usable.
        """
        conn = self._connection
        if self._state is SessionState.OPEN and conn is not None and conn.closed:
            log.warning("session.stale_connection")
            await conn.close()
            return False
        return self.is_open

    async def close(self) -> None:
        """Explicit shutdown. Cancels keepalive and any reconnect in flight."""
        runner, self._runner = self._runner, None
        was_open = self._state is SessionState.OPEN
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass

        conn, self._connection = self._connection, None
        if conn is not None:
            await conn.close()

        if self._state in (SessionState.OPEN, SessionState.CONNECTING):
            self._set_state(SessionState.CLOSING)
        if was_open:
            self._events.publish(SessionEvent(SessionEventKind.CLOSED, reason="closed"))
        self._set_state(SessionState.IDLE)
        self._pending_ping_at = None

    # ── Connection loop ───────────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            self._set_state(SessionState.CONNECTING)
            try:
                conn = await self._transport.connect(self._endpoint)
            except TransportError as e:
                log.warning("session.connect_failed", endpoint=self._endpoint, error=str(e))
                self._events.publish(SessionEvent(SessionEventKind.ERROR, error=e))
                self._set_state(SessionState.CLOSING)
                await self._reconnect_delay()
                continue

            self._connection = conn
            self._epoch += 1
            self._last_activity_at = self._clock.monotonic()
            self._pending_ping_at = None
            self._set_state(SessionState.OPEN)
            self._events.publish(SessionEvent(SessionEventKind.OPENED))

            reason = await self._serve(conn)

            self._connection = None
            self._set_state(SessionState.CLOSING)
            await conn.close()
            self._events.publish(SessionEvent(SessionEventKind.CLOSED, reason=reason))
            await self._reconnect_delay()

    async def _reconnect_delay(self) -> None:
        self._set_state(SessionState.RECONNECTING)
        log.info("session.reconnect_scheduled", delay_s=self._reconnect_delay_s)
        await self._clock.sleep(self._reconnect_delay_s)

    async def _serve(self, conn: Connection) -> str:
        """Run reader and keepalive until either ends. Returns the close reason."""
        reader = asyncio.create_task(self._reader_loop(conn))
        keepalive = asyncio.create_task(self._keepalive_loop(conn))
        try:
            done, _pending = await asyncio.wait(
                {reader, keepalive}, return_when=asyncio.FIRST_COMPLETED
            )
            return next(iter(done)).result()
        finally:
            for task in (reader, keepalive):
                if not task.done():
                    task.cancel()
            await asyncio.gather(reader, keepalive, return_exceptions=True)

    async def _reader_loop(self, conn: Connection) -> str:
        while True:
            try:
                raw = await conn.recv()
            except TransportError as e:
                log.warning("session.connection_lost", error=str(e), epoch=self._epoch)
                self._events.publish(SessionEvent(SessionEventKind.ERROR, error=e))
                return "transport_closed"
            self._last_activity_at = self._clock.monotonic()
            self._pending_ping_at = None
            self._events.publish(SessionEvent(SessionEventKind.MESSAGE, raw=raw))

    async def _keepalive_loop(self, conn: Connection) -> str:
        last_ping_at = self._clock.monotonic()
        while True:
            next_ping = last_ping_at + self._ping_interval_s
            liveness_deadline = self._last_activity_at + self._liveness_timeout_s
            await self._clock.sleep(min(next_ping, liveness_deadline) - self._clock.monotonic())

            now = self._clock.monotonic()
            if now - self._last_activity_at >= self._liveness_timeout_s:
                log.warning(
                    "session.unresponsive",
                    silent_for_s=round(now - self._last_activity_at, 1),
                    epoch=self._epoch,
                )
                self._events.publish(
                    SessionEvent(
                        SessionEventKind.ERROR,
                        error=TransportError("Server unresponsive"),
                    )
                )
                return "liveness_timeout"

            if now >= next_ping:
                try:
                    await conn.send(encode(make_ping()))
                except TransportError as e:
                    log.warning("session.ping_failed", error=str(e))
                    return "transport_error"
                last_ping_at = now
                self._pending_ping_at = now
                log.debug("session.ping_sent", epoch=self._epoch)
