"""
peripheral/radio.py — Bluetooth radio capability

The device manager talks to the radio through the Radio protocol:

    is_enabled()          → adapter present and powered
    scan()                → async iterator of discovered devices (runs until closed)
    connect(device_id)    → Device (raises DeviceConnectionError)
    disconnect(device_id)
    on_connection_lost    → callback(device_id) set by the manager

BluetoothctlRadio drives BlueZ through the `bluetoothctl` command line tool
in asyncio subprocesses, so no native Bluetooth bindings are needed.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator
from typing import Callable, Optional, Protocol, runtime_checkable

from airassist.exceptions import DeviceConnectionError, RadioUnavailableError
from airassist.observability.logger import get_logger
from airassist.peripheral.models import Device

log = get_logger(__name__)

ConnectionLostHandler = Callable[[str], None]

# "[NEW] Device AA:BB:CC:DD:EE:FF Headset" / "[CHG] Device AA:..:FF RSSI: -61"
_DEVICE_LINE = re.compile(r"\[(NEW|CHG)\]\s+Device\s+([0-9A-Fa-f:]{17})\s+(.*)")
_RSSI = re.compile(r"RSSI:\s*(?:0x[0-9a-fA-F]+\s*\()?(-?\d+)")
_NAME = re.compile(r"^\s*Name:\s*(.+)$", re.MULTILINE)
# bluetoothctl decorates interactive output with ANSI colour codes
_ANSI = re.compile(r"\x1b\[[0-9;]*m")

_COMMAND_TIMEOUT_S = 15.0
_LINK_POLL_S = 5.0


@runtime_checkable
class Radio(Protocol):

    on_connection_lost: Optional[ConnectionLostHandler]

    async def is_enabled(self) -> bool: ...

    def scan(self) -> AsyncIterator[Device]: ...

    async def connect(self, device_id: str) -> Device: ...

    async def disconnect(self, device_id: str) -> None: ...


class BluetoothctlRadio:
    """BlueZ radio driven through `bluetoothctl` subprocesses."""

    def __init__(self, binary: str = "bluetoothctl") -> None:
        self._binary = binary
        self.on_connection_lost: Optional[ConnectionLostHandler] = None
        self._monitor: Optional[asyncio.Task] = None

    async def _run(self, *args: str, timeout: float = _COMMAND_TIMEOUT_S) -> tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise RadioUnavailableError(f"{self._binary} not found; is BlueZ installed?") from e
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return -1, ""
        return proc.returncode, _ANSI.sub("", stdout.decode("utf-8", errors="replace"))

    async def is_enabled(self) -> bool:
        try:
            code, out = await self._run("show")
        except RadioUnavailableError:
            return False
        return code == 0 and "Powered: yes" in out

    async def scan(self) -> AsyncIterator[Device]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary, "--timeout", "3600", "scan", "on",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise RadioUnavailableError(f"{self._binary} not found; is BlueZ installed?") from e

        names: dict[str, str] = {}
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                match = _DEVICE_LINE.search(_ANSI.sub("", line.decode("utf-8", errors="replace")))
                if not match:
                    continue
                kind, mac, rest = match.group(1), match.group(2).upper(), match.group(3).strip()
                rssi_match = _RSSI.search(rest)
                if kind == "NEW":
                    names[mac] = rest
                    yield Device(id=mac, display_name=rest)
                elif rssi_match:
                    yield Device(
                        id=mac,
                        display_name=names.get(mac, ""),
                        signal_strength=int(rssi_match.group(1)),
                    )
        finally:
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()
            log.debug("bluetoothctl.scan_stopped")

    async def connect(self, device_id: str) -> Device:
        code, out = await self._run("connect", device_id)
        if code != 0 or "Connection successful" not in out:
            raise DeviceConnectionError(
                f"bluetoothctl could not connect to {device_id}: {out.strip()[-200:]}",
                device_id=device_id,
            )
        name = ""
        _, info = await self._run("info", device_id)
        match = _NAME.search(info)
        if match:
            name = match.group(1).strip()
        self._start_monitor(device_id)
        log.info("bluetoothctl.connected", device_id=device_id, name=name)
        return Device(id=device_id, display_name=name)

    async def disconnect(self, device_id: str) -> None:
        await self._stop_monitor()
        code, out = await self._run("disconnect", device_id)
        if code != 0:
            raise DeviceConnectionError(
                f"bluetoothctl could not disconnect {device_id}: {out.strip()[-200:]}",
                device_id=device_id,
            )

    # ── Link monitor ──────────────────────────────────────────────────────────

    def _start_monitor(self, device_id: str) -> None:
        if self._monitor is not None and not self._monitor.done():
            self._monitor.cancel()
        self._monitor = asyncio.create_task(self._watch_link(device_id))

    async def _stop_monitor(self) -> None:
        task, self._monitor = self._monitor, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _watch_link(self, device_id: str) -> None:
        """Poll `info` and report when the link drops."""
        while True:
            await asyncio.sleep(_LINK_POLL_S)
            try:
                _, info = await self._run("info", device_id)
            except RadioUnavailableError:
                info = ""
            if "Connected: yes" not in info:
                log.warning("bluetoothctl.link_lost", device_id=device_id)
                if self.on_connection_lost is not None:
                    self.on_connection_lost(device_id)
                return
