"""Shared utilities."""
from .cancellation import CancellationToken
from .events import EventEmitter, ProgressUpdate, Severity, SlotProgress, StatusUpdate

__all__ = [
    "CancellationToken",
    "EventEmitter",
    "ProgressUpdate",
    "Severity",
    "SlotProgress",
    "StatusUpdate",
]
