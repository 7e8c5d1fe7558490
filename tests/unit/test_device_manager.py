"""
tests/unit/test_device_manager.py — Headset discovery, connection and history

Test groups
-----------
  DeviceHistory  — MRU order, dedupe, bounded capacity, record round-trip
  Scanning       — discovery events, timeout, radio off, scan() iterator
  Connect        — success, unknown id, radio failure, connect mid-scan
  History        — persisted on connect, restored on load, auto_connect
  Link loss      — radio notification moves the state to DISCONNECTED
"""

from __future__ import annotations

import asyncio

import pytest

from airassist.core.clock import VirtualClock
from airassist.exceptions import (
    DeviceConnectionError,
    DeviceNotFoundError,
    RadioUnavailableError,
)
from airassist.peripheral.manager import (
    DEVICE_HISTORY_KEY,
    DeviceConnectionManager,
    DeviceEventKind,
)
from airassist.peripheral.models import ConnectionState, Device, DeviceHistory
from airassist.storage.kv_store import MemoryKeyValueStore
from fakes import FakeRadio

BUDS = Device("AA:BB:CC:DD:EE:01", "AirBuds", -48)
POD = Device("AA:BB:CC:DD:EE:02", "Pod Pro", -60)
BAR = Device("AA:BB:CC:DD:EE:03", "", -71)
CAN = Device("AA:BB:CC:DD:EE:04", "Cans", -55)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _manager(nearby=None, enabled=True, store=None, history_size=10):
    clock = VirtualClock()
    radio = FakeRadio(nearby if nearby is not None else [BUDS, POD], enabled=enabled)
    manager = DeviceConnectionManager(
        radio,
        store=store,
        clock=clock,
        scan_timeout_s=10.0,
        history_size=history_size,
    )
    return manager, radio, clock


async def _discover(manager, clock):
    await manager.start_scan()
    await clock.settle()


def _states(sub) -> list[ConnectionState]:
    return [e.state for e in sub.drain() if e.kind is DeviceEventKind.STATE_CHANGED]


# ─────────────────────────────────────────────────────────────────────────────
# DeviceHistory
# ─────────────────────────────────────────────────────────────────────────────

class TestDeviceHistory:

    def test_newest_first_and_unique(self):
        history = DeviceHistory(10)
        history.add(BUDS)
        history.add(POD)
        history.add(Device(BUDS.id, "AirBuds (renamed)"))
        assert [d.id for d in history] == [BUDS.id, POD.id]
        assert history.head.display_name == "AirBuds (renamed)"

    def test_bounded_evicts_least_recent(self):
        history = DeviceHistory(3)
        for device in (BUDS, POD, BAR, CAN):
            history.add(device)
        assert len(history) == 3
        assert [d.id for d in history] == [CAN.id, BAR.id, POD.id]
        assert BUDS.id not in history

    def test_records_round_trip_preserves_order(self):
        history = DeviceHistory(10)
        for device in (BUDS, POD, BAR):
            history.add(device)
        restored = DeviceHistory.from_records(history.to_records(), 10)
        assert [d.id for d in restored] == [BAR.id, POD.id, BUDS.id]
        assert restored.get(POD.id).signal_strength == -60

    def test_from_records_truncates_to_capacity(self):
        records = [d.to_record() for d in (CAN, BAR, POD, BUDS)]
        restored = DeviceHistory.from_records(records, 2)
        assert [d.id for d in restored] == [CAN.id, BAR.id]

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            DeviceHistory(0)

    def test_label_falls_back_to_address(self):
        assert BAR.label == BAR.id
        assert BUDS.label == "AirBuds"


# ─────────────────────────────────────────────────────────────────────────────
# Scanning
# ─────────────────────────────────────────────────────────────────────────────

class TestScanning:

    @pytest.mark.asyncio
    async def test_scan_discovers_and_times_out(self):
        manager, _radio, clock = _manager()
        sub = manager.events()
        await _discover(manager, clock)

        assert manager.state is ConnectionState.SCANNING
        found = [e.device.id for e in sub.drain() if e.kind is DeviceEventKind.DEVICE_DISCOVERED]
        assert found == [BUDS.id, POD.id]
        assert {d.id for d in manager.discovered} == {BUDS.id, POD.id}

        await clock.advance(9.9)
        assert manager.state is ConnectionState.SCANNING
        await clock.advance(0.1)
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_explicit_timeout_overrides_default(self):
        manager, _radio, clock = _manager()
        await manager.start_scan(timeout=2.0)
        await clock.advance(2.0)
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop_scan(self):
        manager, _radio, clock = _manager()
        await _discover(manager, clock)
        await manager.stop_scan()
        assert manager.state is ConnectionState.DISCONNECTED
        assert clock.pending_sleepers == 0

    @pytest.mark.asyncio
    async def test_radio_off_raises_and_enters_error(self):
        manager, _radio, _clock = _manager(enabled=False)
        sub = manager.events()
        with pytest.raises(RadioUnavailableError):
            await manager.start_scan()
        assert manager.state is ConnectionState.ERROR
        assert isinstance(manager.last_error, RadioUnavailableError)
        assert any(e.kind is DeviceEventKind.ERROR for e in sub.drain())

        await manager.acknowledge_error()
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_scan_iterator_yields_until_timeout(self):
        manager, _radio, clock = _manager()

        async def collect():
            return [d.id async for d in manager.scan(timeout=5.0)]

        task = asyncio.create_task(collect())
        await clock.settle()
        await clock.advance(5.0)
        assert await task == [BUDS.id, POD.id]

    @pytest.mark.asyncio
    async def test_scan_returns_to_connected_when_device_connected(self):
        manager, _radio, clock = _manager()
        await _discover(manager, clock)
        await manager.connect(BUDS.id)
        await _discover(manager, clock)
        await manager.stop_scan()
        assert manager.state is ConnectionState.CONNECTED


# ─────────────────────────────────────────────────────────────────────────────
# Connect
# ─────────────────────────────────────────────────────────────────────────────

class TestConnect:

    @pytest.mark.asyncio
    async def test_connect_discovered_device(self):
        manager, radio, clock = _manager()
        await _discover(manager, clock)
        await manager.stop_scan()
        sub = manager.events()

        device = await manager.connect(BUDS.id)
        assert device.display_name == "AirBuds"
        assert device.signal_strength == -48
        assert manager.get_connected().id == BUDS.id
        assert radio.connected == [BUDS.id]
        assert _states(sub) == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    @pytest.mark.asyncio
    async def test_connect_mid_scan_stops_scan_first(self):
        manager, _radio, clock = _manager()
        await _discover(manager, clock)
        sub = manager.events()
        await manager.connect(POD.id)
        assert _states(sub) == [
            ConnectionState.DISCONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        # The scan timer is gone: advancing past it changes nothing
        await clock.advance(20.0)
        assert manager.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_unknown_device_raises_not_found(self):
        manager, radio, _clock = _manager()
        sub = manager.events()
        with pytest.raises(DeviceNotFoundError) as exc_info:
            await manager.connect("FF:FF:FF:FF:FF:FF")
        assert exc_info.value.device_id == "FF:FF:FF:FF:FF:FF"
        assert manager.state is ConnectionState.DISCONNECTED
        assert _states(sub) == [ConnectionState.ERROR, ConnectionState.DISCONNECTED]
        assert radio.connected == []

    @pytest.mark.asyncio
    async def test_radio_failure_raises_connection_error(self):
        manager, radio, clock = _manager()
        radio.fail_connect.add(POD.id)
        await _discover(manager, clock)
        with pytest.raises(DeviceConnectionError):
            await manager.connect(POD.id)
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.get_connected() is None
        assert len(manager.history) == 0

    @pytest.mark.asyncio
    async def test_connecting_to_another_device_disconnects_current(self):
        manager, radio, clock = _manager()
        await _discover(manager, clock)
        await manager.connect(BUDS.id)
        await manager.connect(POD.id)
        assert radio.disconnected == [BUDS.id]
        assert manager.get_connected().id == POD.id

    @pytest.mark.asyncio
    async def test_reconnect_same_device_is_noop(self):
        manager, radio, clock = _manager()
        await _discover(manager, clock)
        await manager.connect(BUDS.id)
        await manager.connect(BUDS.id)
        assert radio.connected == [BUDS.id]

    @pytest.mark.asyncio
    async def test_disconnect(self):
        manager, radio, clock = _manager()
        await _discover(manager, clock)
        await manager.connect(BUDS.id)
        await manager.disconnect(POD.id)  # not connected: no-op
        assert manager.state is ConnectionState.CONNECTED
        await manager.disconnect(BUDS.id)
        assert manager.state is ConnectionState.DISCONNECTED
        assert radio.disconnected == [BUDS.id]


# ─────────────────────────────────────────────────────────────────────────────
# History persistence
# ─────────────────────────────────────────────────────────────────────────────

class TestHistory:

    @pytest.mark.asyncio
    async def test_bounded_history_newest_first(self):
        store = MemoryKeyValueStore()
        manager, _radio, clock = _manager(nearby=[BUDS, POD, BAR, CAN], store=store, history_size=3)
        await _discover(manager, clock)
        for device in (BUDS, POD, BAR, CAN, POD):
            await manager.connect(device.id)

        assert [d.id for d in manager.history] == [POD.id, CAN.id, BAR.id]
        assert [r["id"] for r in store.raw()[DEVICE_HISTORY_KEY]] == [POD.id, CAN.id, BAR.id]

    @pytest.mark.asyncio
    async def test_load_and_connect_from_history_without_scan(self):
        store = MemoryKeyValueStore({DEVICE_HISTORY_KEY: [CAN.to_record(), BUDS.to_record()]})
        manager, radio, _clock = _manager(nearby=[], store=store)
        await manager.load_history()
        assert [d.id for d in manager.history] == [CAN.id, BUDS.id]

        device = await manager.connect(BUDS.id)
        assert device.display_name == "AirBuds"
        assert manager.history.head.id == BUDS.id

    @pytest.mark.asyncio
    async def test_auto_connect_uses_most_recent(self):
        store = MemoryKeyValueStore({DEVICE_HISTORY_KEY: [CAN.to_record(), BUDS.to_record()]})
        manager, radio, _clock = _manager(nearby=[], store=store)
        await manager.load_history()
        device = await manager.auto_connect()
        assert device.id == CAN.id
        assert radio.connected == [CAN.id]

    @pytest.mark.asyncio
    async def test_auto_connect_failure_is_swallowed(self):
        store = MemoryKeyValueStore({DEVICE_HISTORY_KEY: [CAN.to_record()]})
        manager, radio, _clock = _manager(nearby=[], store=store)
        radio.fail_connect.add(CAN.id)
        await manager.load_history()
        assert await manager.auto_connect() is None
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_auto_connect_with_empty_history(self):
        manager, radio, _clock = _manager()
        assert await manager.auto_connect() is None
        assert radio.connected == []


# ─────────────────────────────────────────────────────────────────────────────
# Link loss
# ─────────────────────────────────────────────────────────────────────────────

class TestLinkLoss:

    @pytest.mark.asyncio
    async def test_connection_lost_disconnects(self):
        manager, radio, clock = _manager()
        await _discover(manager, clock)
        await manager.connect(BUDS.id)
        sub = manager.events()
        radio.lose_link(BUDS.id)
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.get_connected() is None
        assert _states(sub) == [ConnectionState.DISCONNECTED]

    @pytest.mark.asyncio
    async def test_loss_of_other_device_ignored(self):
        manager, radio, clock = _manager()
        await _discover(manager, clock)
        await manager.connect(BUDS.id)
        radio.lose_link(POD.id)
        assert manager.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_shutdown_disconnects(self):
        manager, radio, clock = _manager()
        await _discover(manager, clock)
        await manager.connect(BUDS.id)
        await manager.shutdown()
        assert manager.state is ConnectionState.DISCONNECTED
        assert radio.disconnected == [BUDS.id]
