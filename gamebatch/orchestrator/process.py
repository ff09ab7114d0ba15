from enum import Enum
from typing import AsyncIterable, Callable, List, Optional, TYPE_CHECKING
import asyncio
import logging

from ..models import BatchItem, BatchSummary
from ..services.slots import CANCEL_ALL_REASON
from ..utils.cancellation import CancellationToken
from ..utils.events import ProgressUpdate, SlotProgress, StatusUpdate

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from .coordinator import PipelineCoordinator

# Cancel target meaning "every item"
ALL = "all"


class ProcessState(Enum):
    """State of a batch process."""
    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchProcess:
    """
    Process object for one batch run with event-based progress tracking.

    Usage:
        process = orchestrator.process(items)
        process.on_status(lambda update: print(update.item_id, update.text))
        process.on_progress(lambda update: print(f"{update.percent}%"))
        process.on_finish(lambda summary: print(summary.summary_line()))

        await process.start()
        await process.cancel(item.item_id)   # skip one upload
        summary = await process.wait()
    """

    def __init__(self, coordinator: 'PipelineCoordinator', items: List[BatchItem]):
        self._coordinator = coordinator
        self._items = list(items)
        self._events = coordinator.events
        self._state = ProcessState.PENDING
        self._task: Optional[asyncio.Task] = None
        self._token = CancellationToken(reason=CANCEL_ALL_REASON)
        self._result: Optional[BatchSummary] = None
        self._error: Optional[Exception] = None

    # Event subscription methods
    def on_start(self, callback: Callable[[], None]):
        """Called when the batch starts."""
        self._events.on("start", callback)

    def on_status(self, callback: Callable[[StatusUpdate], None]):
        """Called with per-item status text. Receives StatusUpdate."""
        self._events.on("status", callback)

    def on_progress(self, callback: Callable[[ProgressUpdate], None]):
        """Called with overall percent and ETA. Receives ProgressUpdate."""
        self._events.on("progress", callback)

    def on_slot_claimed(self, callback: Callable[[SlotProgress], None]):
        self._events.on("slot_claimed", callback)

    def on_slot_progress(self, callback: Callable[[SlotProgress], None]):
        """Called when an upload slot reports bytes. Receives SlotProgress."""
        self._events.on("slot_progress", callback)

    def on_slot_released(self, callback: Callable[[SlotProgress], None]):
        self._events.on("slot_released", callback)

    def on_item_complete(self, callback: Callable[[BatchItem], None]):
        """Called once an item has no more work. Receives BatchItem."""
        self._events.on("item_complete", callback)

    def on_finish(self, callback: Callable[[BatchSummary], None]):
        """Called when the batch finishes. Receives BatchSummary."""
        self._events.on("finish", callback)

    def on_error(self, callback: Callable[[Exception], None]):
        """Called when a critical error aborts the batch. Receives Exception."""
        self._events.on("error", callback)

    # Control methods
    async def start(self):
        """Start the batch (non-blocking)."""
        if self._state != ProcessState.PENDING:
            raise RuntimeError(f"Cannot start process in state: {self._state}")

        self._state = ProcessState.RUNNING
        self._task = asyncio.create_task(self._run())
        await self._events.emit("start")

    async def cancel(self, target: str = ALL):
        """
        Cancel one item's upload (target is its item_id) or everything.

        Cancelling everything lets in-flight work wind down, so wait()
        still returns a summary.
        """
        if self._state in (ProcessState.COMPLETED, ProcessState.CANCELLED, ProcessState.FAILED):
            return

        if target == ALL:
            logger.info("Cancelling all remaining work")
            self._token.cancel(CANCEL_ALL_REASON)
            await self._coordinator.cancel_all()
        else:
            logger.info(f"Skipping {target}")
            self._coordinator.skip(target)

    async def listen(self, commands: AsyncIterable[str]):
        """Apply cancel commands (item ids or "all") until the batch ends."""
        async for command in commands:
            command = command.strip()
            if not command:
                continue
            if self._state != ProcessState.RUNNING:
                break
            await self.cancel(command)

    async def wait(self) -> BatchSummary:
        """Wait for the batch to finish and return its summary."""
        if self._state == ProcessState.PENDING:
            await self.start()

        if self._task:
            await self._task

        if self._result is None:
            self._result = BatchSummary.from_items(self._items)

        return self._result

    # State properties
    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def items(self) -> List[BatchItem]:
        return list(self._items)

    @property
    def result(self) -> Optional[BatchSummary]:
        """Final summary (None if not finished yet)."""
        return self._result

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    @property
    def is_running(self) -> bool:
        return self._state == ProcessState.RUNNING

    @property
    def is_completed(self) -> bool:
        return self._state == ProcessState.COMPLETED

    @property
    def is_cancelled(self) -> bool:
        return self._state == ProcessState.CANCELLED

    async def _run(self):
        try:
            self._result = await self._coordinator.run(self._items, self._token)
            if self._token.is_cancelled:
                self._state = ProcessState.CANCELLED
            else:
                self._state = ProcessState.COMPLETED
        except asyncio.CancelledError:
            self._state = ProcessState.CANCELLED
            raise
        except Exception as e:
            self._error = e
            self._state = ProcessState.FAILED
            logger.error(f"Batch failed: {e}", exc_info=True)
            await self._events.emit("error", e)
            raise
