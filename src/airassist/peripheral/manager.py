"""
peripheral/manager.py — Device connection manager

Scan / connect / auto-reconnect for the audio peripheral.

State machine:

    DISCONNECTED ──start_scan──► SCANNING ──stop/timeout──► DISCONNECTED
                                     │                      (or CONNECTED if a
                                     │ connect()             device is connected)
                                     ▼
                                 CONNECTING ──ok──► CONNECTED ──disconnect/lost──► DISCONNECTED
                                     │
                                     └──failure──► ERROR ──acknowledge_error──► DISCONNECTED

A failing connect() acknowledges its own error after publishing it, so the
manager is never left in CONNECTING or ERROR by a connect attempt. Scan
failures stay in ERROR until acknowledge_error().

Every successful connect moves the device to the front of the persisted
MRU history (`deviceHistory`).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from airassist.core.clock import Clock, LoopClock
from airassist.core.events import EventChannel, Subscription
from airassist.exceptions import (
    AirAssistError,
    CapabilityError,
    DeviceConnectionError,
    DeviceError,
    DeviceNotFoundError,
    RadioUnavailableError,
    StorageError,
)
from airassist.observability.logger import get_logger
from airassist.peripheral.models import ConnectionState, Device, DeviceHistory
from airassist.peripheral.radio import Radio
from airassist.storage.kv_store import KeyValueStore

log = get_logger(__name__)

DEVICE_HISTORY_KEY = "deviceHistory"


class DeviceEventKind(str, Enum):
    STATE_CHANGED     = "state_changed"
    DEVICE_DISCOVERED = "device_discovered"
    ERROR             = "error"


@dataclass
class DeviceEvent:
    kind: DeviceEventKind
    state: Optional[ConnectionState] = None
    device: Optional[Device] = None
    error: Optional[Exception] = None


class DeviceConnectionManager:

    def __init__(
        self,
        radio: Radio,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Clock] = None,
        scan_timeout_s: float = 10.0,
        history_size: int = 10,
    ) -> None:
        self._radio = radio
        self._store = store
        self._clock = clock or LoopClock()
        self._scan_timeout_s = scan_timeout_s

        self.history = DeviceHistory(history_size)
        self._state = ConnectionState.DISCONNECTED
        self._connected: Optional[Device] = None
        self._discovered: dict[str, Device] = {}
        self._scan_task: Optional[asyncio.Task] = None
        self._scan_timer: Optional[asyncio.Task] = None
        self._last_error: Optional[Exception] = None
        self._events: EventChannel[DeviceEvent] = EventChannel("device")

        self._radio.on_connection_lost = self._on_connection_lost

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    @property
    def discovered(self) -> list[Device]:
        return list(self._discovered.values())

    def get_connected(self) -> Optional[Device]:
        return self._connected

    def events(self) -> Subscription[DeviceEvent]:
        return self._events.subscribe()

    def _set_state(self, new: ConnectionState) -> None:
        if new is self._state:
            return
        old, self._state = self._state, new
        log.info("device.state_changed", old=old.value, new=new.value)
        self._events.publish(DeviceEvent(DeviceEventKind.STATE_CHANGED, state=new))

    def _fail(self, error: Exception) -> None:
        self._last_error = error
        log.warning("device.error", error=str(error), error_type=type(error).__name__)
        self._events.publish(DeviceEvent(DeviceEventKind.ERROR, error=error))
        self._set_state(ConnectionState.ERROR)

    def _resting_state(self) -> ConnectionState:
        return ConnectionState.CONNECTED if self._connected else ConnectionState.DISCONNECTED

    # ── History ───────────────────────────────────────────────────────────────

    async def load_history(self) -> None:
        if self._store is None:
            return
        records = await self._store.get(DEVICE_HISTORY_KEY, [])
        try:
            self.history = DeviceHistory.from_records(records or [], self.history.capacity)
        except (KeyError, TypeError, ValueError) as e:
            log.warning("device.history_corrupt", error=str(e))
        log.debug("device.history_loaded", count=len(self.history))

    async def _save_history(self) -> None:
        if self._store is None:
            return
        try:
            await self._store.set(DEVICE_HISTORY_KEY, self.history.to_records())
        except StorageError as e:
            log.warning("device.history_save_failed", error=str(e))

    # ── Scanning ──────────────────────────────────────────────────────────────

    async def start_scan(self, timeout: Optional[float] = None) -> None:
        """
        Begin discovery. Auto-stops after `timeout` (default scan_timeout_s).

        Raises RadioUnavailableError if the adapter is off or absent.
        """
        if self._state is ConnectionState.SCANNING:
            return
        if not await self._radio.is_enabled():
            error = RadioUnavailableError("Bluetooth adapter is off or unavailable")
            self._fail(error)
            raise error

        self._discovered.clear()
        self._set_state(ConnectionState.SCANNING)
        self._scan_task = asyncio.create_task(self._scan_loop())
        self._scan_timer = asyncio.create_task(
            self._scan_timeout(timeout if timeout is not None else self._scan_timeout_s)
        )
        log.info("device.scan_started")

    async def scan(self, timeout: Optional[float] = None) -> AsyncIterator[Device]:
        """Start a scan and yield devices as they are discovered until it stops."""
        sub = self._events.subscribe()
        try:
            await self.start_scan(timeout)
            while True:
                event = await sub.get()
                if event.kind is DeviceEventKind.DEVICE_DISCOVERED:
                    yield event.device
                elif (
                    event.kind is DeviceEventKind.STATE_CHANGED
                    and event.state is not ConnectionState.SCANNING
                ):
                    return
        finally:
            sub.close()

    async def stop_scan(self) -> None:
        if self._state is not ConnectionState.SCANNING:
            return
        await self._cancel_scan_tasks()
        self._set_state(self._resting_state())
        log.info("device.scan_stopped", found=len(self._discovered))

    async def _cancel_scan_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [self._scan_task, self._scan_timer]
        self._scan_task = self._scan_timer = None
        for task in tasks:
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _scan_loop(self) -> None:
        try:
            async for device in self._radio.scan():
                known = self._discovered.get(device.id)
                if known is not None and not device.display_name:
                    device.display_name = known.display_name
                self._discovered[device.id] = device
                self._events.publish(
                    DeviceEvent(DeviceEventKind.DEVICE_DISCOVERED, device=device)
                )
        except (DeviceError, CapabilityError) as e:
            self._scan_task = None
            await self._cancel_scan_tasks()
            self._fail(e)
            return
        # Radio ended the scan on its own
        self._scan_task = None
        await self.stop_scan()

    async def _scan_timeout(self, timeout: float) -> None:
        await self._clock.sleep(timeout)
        self._scan_timer = None
        log.debug("device.scan_timeout", timeout_s=timeout)
        await self.stop_scan()

    # ── Connect / disconnect ──────────────────────────────────────────────────

    async def connect(self, device_id: str) -> Device:
        """
        Connect to a discovered or previously connected device.

        Raises DeviceNotFoundError for unknown ids and DeviceConnectionError
        or RadioUnavailableError when the radio fails; the state is back to
        DISCONNECTED (or the prior connection) when this raises.
        """
        if self._state is ConnectionState.SCANNING:
            await self.stop_scan()

        if self._connected is not None and self._connected.id == device_id:
            return self._connected

        target = self._discovered.get(device_id) or self.history.get(device_id)
        if target is None:
            error = DeviceNotFoundError(f"Unknown device {device_id}", device_id=device_id)
            self._fail(error)
            await self.acknowledge_error()
            raise error

        if self._connected is not None:
            await self.disconnect(self._connected.id)

        self._set_state(ConnectionState.CONNECTING)
        log.info("device.connecting", device_id=device_id, name=target.display_name)
        try:
            device = await self._radio.connect(device_id)
        except DeviceError as e:
            self._fail(e)
            await self.acknowledge_error()
            raise
        except CapabilityError as e:
            error = DeviceConnectionError(str(e), device_id=device_id)
            self._fail(error)
            await self.acknowledge_error()
            raise error from e

        if not device.display_name:
            device.display_name = target.display_name
        if device.signal_strength is None:
            device.signal_strength = target.signal_strength
        self._connected = device
        self.history.add(device)
        await self._save_history()
        self._set_state(ConnectionState.CONNECTED)
        return device

    async def disconnect(self, device_id: str) -> None:
        """Disconnect the given device. A no-op if it is not the connected one."""
        if self._connected is None or self._connected.id != device_id:
            return
        try:
            await self._radio.disconnect(device_id)
        except (DeviceError, CapabilityError) as e:
            log.warning("device.disconnect_failed", device_id=device_id, error=str(e))
        self._connected = None
        self._set_state(ConnectionState.DISCONNECTED)
        log.info("device.disconnected", device_id=device_id)

    async def acknowledge_error(self) -> None:
        if self._state is ConnectionState.ERROR:
            self._set_state(self._resting_state())

    def _on_connection_lost(self, device_id: str) -> None:
        if self._connected is None or self._connected.id != device_id:
            return
        log.warning("device.connection_lost", device_id=device_id)
        self._connected = None
        if self._state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)

    async def auto_connect(self) -> Optional[Device]:
        """Connect to the most recent device in history. Failures are logged, not raised."""
        head = self.history.head
        if head is None:
            return None
        try:
            return await self.connect(head.id)
        except AirAssistError as e:
            log.warning("device.auto_connect_failed", device_id=head.id, error=str(e))
            return None

    async def shutdown(self) -> None:
        await self.stop_scan()
        if self._connected is not None:
            await self.disconnect(self._connected.id)
