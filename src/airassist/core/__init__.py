"""core/ — clock, event channel and completion primitives shared by every subsystem."""

from airassist.core.clock import Clock, LoopClock, VirtualClock
from airassist.core.completion import Completion
from airassist.core.events import EventChannel, Subscription

__all__ = [
    "Clock",
    "LoopClock",
    "VirtualClock",
    "Completion",
    "EventChannel",
    "Subscription",
]
