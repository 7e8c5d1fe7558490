"""
peripheral/models.py — Device records and the MRU connection history
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    SCANNING     = "scanning"
    CONNECTING   = "connecting"
    CONNECTED    = "connected"
    ERROR        = "error"


@dataclass
class Device:
    id: str
    display_name: str = ""
    signal_strength: Optional[int] = None  # RSSI, dBm

    @property
    def label(self) -> str:
        return self.display_name or self.id

    def to_record(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.display_name, "rssi": self.signal_strength}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Device":
        rssi = record.get("rssi")
        return cls(
            id=str(record["id"]),
            display_name=str(record.get("name") or ""),
            signal_strength=int(rssi) if rssi is not None else None,
        )


class DeviceHistory:
    """
    Most-recently-connected devices, newest first, unique by id.

    add() moves an existing entry to the front instead of duplicating it.
    When full, the least recent entry is evicted.
    """

    def __init__(self, capacity: int = 10) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: list[Device] = []

    def add(self, device: Device) -> None:
        self._items = [d for d in self._items if d.id != device.id]
        self._items.insert(0, device)
        del self._items[self.capacity:]

    def get(self, device_id: str) -> Optional[Device]:
        return next((d for d in self._items if d.id == device_id), None)

    @property
    def head(self) -> Optional[Device]:
        return self._items[0] if self._items else None

    def items(self) -> list[Device]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Device]:
        return iter(list(self._items))

    def __contains__(self, device_id: object) -> bool:
        return any(d.id == device_id for d in self._items)

    def to_records(self) -> list[dict[str, Any]]:
        return [d.to_record() for d in self._items]

    @classmethod
    def from_records(cls, records: list[dict[str, Any]], capacity: int = 10) -> "DeviceHistory":
        history = cls(capacity)
        # Oldest first so the stored head ends up at the front again
        for record in reversed(records[:capacity]):
            history.add(Device.from_record(record))
        return history
