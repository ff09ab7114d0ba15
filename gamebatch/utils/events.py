from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Callable, Optional
import asyncio
import logging
logger = logging.getLogger(__name__)


class Severity(Enum):
    """Severity of a status line."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class StatusUpdate:
    """Live status text for one item."""
    item_id: str
    text: str
    severity: Severity = Severity.INFO


@dataclass(frozen=True)
class ProgressUpdate:
    """Batch-wide percent complete and ETA."""
    percent: int
    eta_seconds: float
    phase: Optional[str] = None


@dataclass(frozen=True)
class SlotProgress:
    """Progress of one upload slot."""
    index: int
    item_id: str
    bytes_done: int = 0
    total_bytes: int = 0
    rate: float = 0.0

    @property
    def percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return min(100.0, self.bytes_done * 100.0 / self.total_bytes)


class EventEmitter:
    """Simple event emitter for batch events."""
    
    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()
    
    def on(self, event_name: str, callback: Callable):
        """Subscribe to an event."""
        if event_name not in self._listeners:
            self._listeners[event_name] = []
        if callback not in self._listeners[event_name]:
            self._listeners[event_name].append(callback)
    
    def off(self, event_name: str, callback: Callable):
        """Unsubscribe from an event."""
        if event_name in self._listeners:
            if callback in self._listeners[event_name]:
                self._listeners[event_name].remove(callback)
    
    async def emit(self, event_name: str, *args, **kwargs):
        """Emit an event to all listeners."""
        if event_name not in self._listeners:
            return
        
        async with self._lock:
            for callback in self._listeners[event_name][:]:  # listeners may unsubscribe while we iterate
                try:
                    if asyncio.iscoroutinefunction(callback):
                        await callback(*args, **kwargs)
                    else:
                        callback(*args, **kwargs)
                except Exception as e:
                    logger.error(f"Error in event listener for {event_name}: {e}")
