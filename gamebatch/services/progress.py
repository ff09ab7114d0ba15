"""
ProgressEstimator - one percent value and ETA for a whole batch.

The estimator keeps a physically accurate remaining-time model
(remaining_seconds). The never-decreasing percent shown to users is a
separate clamp applied on top (clamp_percent), so both stay testable.
"""
import logging
import math
import time
from typing import Callable, Dict, Iterable, Optional, Set

from ..models import BatchItem, RateModel
from ..utils.events import ProgressUpdate

logger = logging.getLogger(__name__)


def clamp_percent(raw: float, last: int, ceiling: int = 99) -> int:
    """
    Clamp a raw percentage into [last, ceiling].

    The result never goes below the previously reported value, and never
    reaches 100 before the batch is really done.
    """
    if raw is None or math.isnan(raw):
        return last
    value = int(max(0.0, min(float(ceiling), raw)))
    return max(last, value)


class ExponentialAverage:
    """Exponential moving average of throughput samples."""

    def __init__(self, weight: float = 0.7):
        if not 0.0 <= weight < 1.0:
            raise ValueError("weight must be in [0, 1)")
        self._weight = weight
        self._value: Optional[float] = None

    @property
    def value(self) -> Optional[float]:
        return self._value

    def update(self, sample: float) -> Optional[float]:
        """Blend a new sample in. Non-positive samples (stalls) are ignored."""
        if sample is None or not math.isfinite(sample) or sample <= 0:
            return self._value
        if self._value is None:
            self._value = float(sample)
        else:
            self._value = self._value * self._weight + sample * (1.0 - self._weight)
        return self._value


class ProgressEstimator:
    """
    Time-based progress for crack, zip, upload and conversion work.

    Usage:
        estimator = ProgressEstimator(items, rates, compression_level=5)
        estimator.start()
        estimator.record_zip_progress(item.item_id, 40)
        update = estimator.snapshot("zip")
        ...
        final = estimator.finish()
    """

    def __init__(
        self,
        items: Iterable[BatchItem],
        rates: RateModel,
        compression_level: int = 5,
        convert_links: bool = True,
        crack_seconds: float = 3.0,
        conversion_seconds: float = 45.0,
        safety_multiplier: float = 1.3,
        smoothing: float = 0.7,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rates = rates
        self._level = compression_level
        self._crack_seconds = crack_seconds
        self._conversion_seconds = conversion_seconds
        self._safety = safety_multiplier
        self._clock = clock

        self._crack_pending: Set[str] = set()
        self._zip_total: Dict[str, int] = {}
        self._zip_done: Dict[str, int] = {}
        self._upload_total: Dict[str, int] = {}
        self._upload_done: Dict[str, int] = {}
        self._convert_pending: Set[str] = set()

        for item in items:
            if item.do_crack:
                self._crack_pending.add(item.item_id)
            if item.do_zip:
                self._zip_total[item.item_id] = item.size_bytes
                self._zip_done[item.item_id] = 0
            if item.do_upload:
                self._upload_total[item.item_id] = item.size_bytes
                self._upload_done[item.item_id] = 0
                if convert_links:
                    self._convert_pending.add(item.item_id)

        self._zip_rate = ExponentialAverage(smoothing)
        self._upload_rate = ExponentialAverage(smoothing)
        self._start: Optional[float] = None
        self._last_percent = 0
        self._finished = False

    # Lifecycle

    def start(self) -> None:
        if self._start is None:
            self._start = self._clock()

    @property
    def elapsed(self) -> float:
        if self._start is None:
            return 0.0
        return max(0.0, self._clock() - self._start)

    @property
    def last_percent(self) -> int:
        return self._last_percent

    @property
    def is_finished(self) -> bool:
        return self._finished

    # Rates

    @property
    def zip_rate(self) -> float:
        """Best known zip rate: this run's smoothed samples, else the learned rate."""
        return self._zip_rate.value or self._rates.zip_rate_for(self._level)

    @property
    def upload_rate(self) -> float:
        return self._upload_rate.value or self._rates.upload_rate

    @property
    def measured_zip_rate(self) -> Optional[float]:
        return self._zip_rate.value

    @property
    def measured_upload_rate(self) -> Optional[float]:
        return self._upload_rate.value

    def record_zip_rate(self, bytes_per_second: float) -> None:
        self._zip_rate.update(bytes_per_second)

    def record_upload_rate(self, bytes_per_second: float) -> None:
        self._upload_rate.update(bytes_per_second)

    # Work accounting

    def record_crack_done(self, item_id: str) -> None:
        self._crack_pending.discard(item_id)

    def record_zip_progress(self, item_id: str, percent: float) -> None:
        total = self._zip_total.get(item_id)
        if total is None:
            return
        done = int(total * max(0.0, min(100.0, percent)) / 100.0)
        self._zip_done[item_id] = max(self._zip_done[item_id], done)

    def record_zip_done(self, item_id: str) -> None:
        if item_id in self._zip_total:
            self._zip_done[item_id] = self._zip_total[item_id]

    def record_upload_progress(self, item_id: str, fraction: float) -> None:
        total = self._upload_total.get(item_id)
        if total is None:
            return
        done = int(total * max(0.0, min(1.0, fraction)))
        self._upload_done[item_id] = max(self._upload_done[item_id], done)

    def record_upload_done(self, item_id: str) -> None:
        if item_id in self._upload_total:
            self._upload_done[item_id] = self._upload_total[item_id]

    def record_conversion_done(self, item_id: str) -> None:
        self._convert_pending.discard(item_id)

    def drop_item(self, item_id: str) -> None:
        """Failed, skipped or cancelled items stop contributing remaining work."""
        self._crack_pending.discard(item_id)
        self.record_zip_done(item_id)
        self.record_upload_done(item_id)
        self._convert_pending.discard(item_id)

    def drop_upload(self, item_id: str) -> None:
        """Upload (and conversion) for item will not happen."""
        self.record_upload_done(item_id)
        self._convert_pending.discard(item_id)

    # Estimates

    def _remaining_zip_bytes(self) -> int:
        return sum(self._zip_total[k] - self._zip_done[k] for k in self._zip_total)

    def _remaining_upload_bytes(self) -> int:
        return sum(self._upload_total[k] - self._upload_done[k] for k in self._upload_total)

    def initial_estimate(self) -> float:
        """Whole-batch estimate from learned rates, padded for retries."""
        crack = len(self._crack_pending) * self._crack_seconds
        zip_time = sum(self._zip_total.values()) / self._rates.zip_rate_for(self._level)
        upload_time = sum(self._upload_total.values()) / self._rates.upload_rate
        convert = len(self._convert_pending) * self._conversion_seconds
        return (crack + zip_time + upload_time + convert) * self._safety

    def remaining_seconds(self) -> float:
        """Unpadded remaining time across all phases."""
        crack = len(self._crack_pending) * self._crack_seconds
        zip_time = self._remaining_zip_bytes() / self.zip_rate
        upload_time = self._remaining_upload_bytes() / self.upload_rate
        convert = len(self._convert_pending) * self._conversion_seconds
        return crack + zip_time + upload_time + convert

    def eta_seconds(self) -> float:
        if self._finished:
            return 0.0
        return self.remaining_seconds() * self._safety

    def raw_percent(self) -> float:
        """elapsed / (elapsed + remaining), without the UI clamp."""
        elapsed = self.elapsed
        total = elapsed + self.eta_seconds()
        if total <= 0:
            return 0.0
        return elapsed / total * 100.0

    def snapshot(self, phase: Optional[str] = None) -> ProgressUpdate:
        """Percent and ETA to report now. Percent never decreases."""
        if self._finished:
            return ProgressUpdate(percent=100, eta_seconds=0.0, phase="complete")
        self._last_percent = clamp_percent(self.raw_percent(), self._last_percent)
        return ProgressUpdate(percent=self._last_percent, eta_seconds=self.eta_seconds(), phase=phase)

    def finish(self) -> ProgressUpdate:
        self._finished = True
        self._last_percent = 100
        logger.debug(f"Batch finished after {self.elapsed:.1f}s")
        return ProgressUpdate(percent=100, eta_seconds=0.0, phase="complete")
