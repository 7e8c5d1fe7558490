"""
exceptions.py — AIRAssist Unified Error Hierarchy

All AIRAssist-specific exceptions live here. Every subsystem raises typed
subclasses of AirAssistError — never bare Exception.

Import from here, not from individual modules:
    from airassist.exceptions import DeviceNotFoundError, ProtocolError

Hierarchy:
    AirAssistError
    ├── TransportError
    ├── CapabilityError
    │   ├── MicrophoneUnavailableError
    │   ├── RadioUnavailableError
    │   ├── PermissionDeniedError
    │   └── RecognizerUnavailableError
    ├── DeliveryError
    ├── ProtocolError
    ├── DeviceError
    │   ├── DeviceNotFoundError
    │   └── DeviceConnectionError
    ├── PlaybackError
    ├── RecognitionError
    └── StorageError

Recovery policy:
    TransportError    — recovered by the session reconnect loop; surfaced as state
    CapabilityError   — fatal to the operation; raised to the caller, never retried
    DeliveryError     — surfaced as Message.delivery_state = failed
    ProtocolError     — logged and the payload dropped
    RecognitionError  — logged; the capture keeps the last partial transcript
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class AirAssistError(Exception):
    """Base class for all AIRAssist exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Network layer
# ─────────────────────────────────────────────────────────────────────────────

class TransportError(AirAssistError):
    """Connection refused, dropped, or unresponsive."""


class DeliveryError(AirAssistError):
    """A dequeued outbound message could not be sent."""

    def __init__(self, message: str, message_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message_id = message_id


class ProtocolError(AirAssistError):
    """Inbound payload is malformed or of an unknown type."""

    def __init__(self, message: str, raw: object = None) -> None:
        super().__init__(message)
        self.raw = raw


# ─────────────────────────────────────────────────────────────────────────────
# Capabilities (microphone, radio, recognizer)
# ─────────────────────────────────────────────────────────────────────────────

class CapabilityError(AirAssistError):
    """Base for missing hardware or permission capabilities."""


class MicrophoneUnavailableError(CapabilityError):
    """No usable input device, or the input stream could not be opened."""


class RadioUnavailableError(CapabilityError):
    """The Bluetooth adapter is absent or powered off."""


class PermissionDeniedError(CapabilityError):
    """The OS refused access to the microphone or radio."""


class RecognizerUnavailableError(CapabilityError):
    """No speech recognizer backend could be loaded."""


# ─────────────────────────────────────────────────────────────────────────────
# Peripheral layer
# ─────────────────────────────────────────────────────────────────────────────

class DeviceError(AirAssistError):
    """Base for peripheral device errors."""

    def __init__(self, message: str, device_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.device_id = device_id


class DeviceNotFoundError(DeviceError):
    """The requested device id was not discovered and is not known."""


class DeviceConnectionError(DeviceError):
    """The radio failed to establish or tear down a connection."""


# ─────────────────────────────────────────────────────────────────────────────
# Audio / storage
# ─────────────────────────────────────────────────────────────────────────────

class PlaybackError(AirAssistError):
    """A clip could not be decoded or the output device failed."""


class RecognitionError(AirAssistError):
    """The recognizer failed while transcribing an utterance."""


class StorageError(AirAssistError):
    """The key-value store failed to read or write a record."""


__all__ = [
    "AirAssistError",
    "TransportError",
    "DeliveryError",
    "ProtocolError",
    "CapabilityError",
    "MicrophoneUnavailableError",
    "RadioUnavailableError",
    "PermissionDeniedError",
    "RecognizerUnavailableError",
    "DeviceError",
    "DeviceNotFoundError",
    "DeviceConnectionError",
    "PlaybackError",
    "RecognitionError",
    "StorageError",
]
