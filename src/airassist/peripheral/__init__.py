"""peripheral/ — Bluetooth headset discovery, connection and MRU history."""

from airassist.peripheral.manager import DeviceConnectionManager, DeviceEvent, DeviceEventKind
from airassist.peripheral.models import ConnectionState, Device, DeviceHistory
from airassist.peripheral.radio import BluetoothctlRadio, Radio

__all__ = [
    "DeviceConnectionManager",
    "DeviceEvent",
    "DeviceEventKind",
    "ConnectionState",
    "Device",
    "DeviceHistory",
    "BluetoothctlRadio",
    "Radio",
]
