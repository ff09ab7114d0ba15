"""
Upload slot pool - caps concurrently active uploads.

Each claimed slot carries its own CancellationToken, so one upload can be
skipped without touching the others. cancel_all() cancels every active
slot and closes the pool for further claims.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Set
import asyncio
import logging
import time

from ..errors import InvariantViolation
from ..utils.cancellation import CancellationToken
from ..utils.events import EventEmitter, SlotProgress
from .progress import ExponentialAverage

logger = logging.getLogger(__name__)

SKIP_REASON = "Skipped by user"
CANCEL_ALL_REASON = "Batch cancelled"


@dataclass
class UploadSlot:
    """One unit of upload concurrency."""
    index: int
    item_id: Optional[str] = None
    token: Optional[CancellationToken] = None
    total_bytes: int = 0
    bytes_done: int = 0
    rate: Optional[ExponentialAverage] = None
    generation: int = 0
    last_emit: float = 0.0

    @property
    def in_use(self) -> bool:
        return self.item_id is not None

    def progress(self) -> SlotProgress:
        return SlotProgress(
            index=self.index,
            item_id=self.item_id or "",
            bytes_done=self.bytes_done,
            total_bytes=self.total_bytes,
            rate=(self.rate.value or 0.0) if self.rate else 0.0,
        )


@dataclass(frozen=True)
class SlotHandle:
    """What a claimer holds while it owns a slot."""
    index: int
    item_id: str
    token: CancellationToken
    total_bytes: int
    generation: int

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled


class UploadSlotPool:
    """
    Bounded pool of upload slots.

    Usage:
        pool = UploadSlotPool(size=3, events=emitter)
        async with pool.slot(item.item_id, size) as handle:
            if handle is None:
                ...  # pool closed by cancel_all()
            await uploader.upload(path, cancel_token=handle.token)
    """

    def __init__(
        self,
        size: int = 3,
        events: Optional[EventEmitter] = None,
        throttle: float = 0.25,
        smoothing: float = 0.7,
        clock=time.monotonic,
    ):
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self._slots = [UploadSlot(index=i) for i in range(size)]
        self._events = events or EventEmitter()
        self._throttle = throttle
        self._smoothing = smoothing
        self._clock = clock
        self._condition = asyncio.Condition()
        self._closed = False
        self._pending_skips: Set[str] = set()
        self._generation = 0
        self._peak = 0

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._slots if s.in_use)

    @property
    def peak_active(self) -> int:
        """Highest number of simultaneously claimed slots seen."""
        return self._peak

    @property
    def is_closed(self) -> bool:
        return self._closed

    def snapshot(self) -> List[SlotProgress]:
        return [s.progress() for s in self._slots if s.in_use]

    async def claim(self, item_id: str, total_bytes: int = 0, wait: bool = True) -> Optional[SlotHandle]:
        """
        Claim a free slot for item_id.

        Waits for a free slot unless wait=False. Returns None when the pool
        is closed, or when no slot is free and wait=False.
        """
        async with self._condition:
            while True:
                if self._closed:
                    logger.debug(f"Slot claim refused for {item_id}: pool closed")
                    return None
                if any(s.item_id == item_id for s in self._slots):
                    raise InvariantViolation(f"{item_id} already owns an upload slot")
                slot = next((s for s in self._slots if not s.in_use), None)
                if slot is not None:
                    break
                if not wait:
                    return None
                await self._condition.wait()

            self._generation += 1
            token = CancellationToken(reason=SKIP_REASON)
            if item_id in self._pending_skips:
                self._pending_skips.discard(item_id)
                token.cancel(SKIP_REASON)

            slot.item_id = item_id
            slot.token = token
            slot.total_bytes = total_bytes
            slot.bytes_done = 0
            slot.rate = ExponentialAverage(self._smoothing)
            slot.generation = self._generation
            slot.last_emit = 0.0
            self._peak = max(self._peak, self.active_count)
            handle = SlotHandle(slot.index, item_id, token, total_bytes, slot.generation)

        logger.debug(f"Slot {handle.index} claimed by {item_id} ({self.active_count}/{self.size} active)")
        await self._events.emit("slot_claimed", slot.progress())
        return handle

    async def release(self, handle: Optional[SlotHandle]) -> None:
        """Free the slot held by handle. Safe to call more than once."""
        if handle is None:
            return
        async with self._condition:
            slot = self._slots[handle.index]
            if slot.generation != handle.generation or not slot.in_use:
                return
            final = slot.progress()
            slot.item_id = None
            slot.token = None
            slot.total_bytes = 0
            slot.bytes_done = 0
            slot.rate = None
            self._condition.notify_all()

        logger.debug(f"Slot {handle.index} released by {handle.item_id}")
        await self._events.emit("slot_released", final)

    @asynccontextmanager
    async def slot(self, item_id: str, total_bytes: int = 0) -> AsyncIterator[Optional[SlotHandle]]:
        """Claim a slot for the duration of the block; always released."""
        handle = await self.claim(item_id, total_bytes)
        try:
            yield handle
        finally:
            await self.release(handle)

    async def update_progress(self, handle: SlotHandle, bytes_done: int, rate: float = 0.0) -> bool:
        """
        Record progress for a slot and notify observers.

        Notifications are throttled; the final update (bytes_done >= total)
        is always sent. Returns True when an event was emitted.
        """
        slot = self._slots[handle.index]
        if slot.generation != handle.generation or not slot.in_use:
            return False
        slot.bytes_done = bytes_done
        if slot.rate is not None:
            slot.rate.update(rate)

        now = self._clock()
        finished = slot.total_bytes > 0 and bytes_done >= slot.total_bytes
        if not finished and slot.last_emit and now - slot.last_emit < self._throttle:
            return False
        slot.last_emit = now
        await self._events.emit("slot_progress", slot.progress())
        return True

    def cancel_item(self, item_id: str) -> bool:
        """
        Skip one item.

        Cancels the item's active slot, or remembers the skip so the item's
        next claim starts cancelled. Returns True if an active slot was hit.
        """
        for slot in self._slots:
            if slot.item_id == item_id and slot.token is not None:
                slot.token.cancel(SKIP_REASON)
                logger.info(f"Upload slot {slot.index} skipped: {item_id}")
                return True
        self._pending_skips.add(item_id)
        return False

    def is_skip_requested(self, item_id: str) -> bool:
        return item_id in self._pending_skips

    def discard_skip(self, item_id: str) -> None:
        """Forget a remembered skip for an item that will never claim a slot."""
        self._pending_skips.discard(item_id)

    async def cancel_all(self) -> int:
        """Close the pool and cancel every active slot. Returns slots cancelled."""
        async with self._condition:
            self._closed = True
            cancelled = 0
            for slot in self._slots:
                if slot.in_use and slot.token is not None:
                    slot.token.cancel(CANCEL_ALL_REASON)
                    cancelled += 1
            self._condition.notify_all()
        logger.info(f"Cancel all: {cancelled} active upload(s) cancelled, no further claims")
        return cancelled

    def reset(self) -> None:
        """Reopen the pool for a new batch."""
        if self.active_count:
            raise InvariantViolation("Cannot reset pool with active slots")
        self._closed = False
        self._pending_skips.clear()
        self._peak = 0
