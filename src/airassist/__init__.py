"""
airassist — hands-free voice client for a remote AI assistant.

Captures speech, ships it over a persistent WebSocket session, and plays
back synthesized responses through a Bluetooth headset.
"""

__version__ = "1.0.0"
