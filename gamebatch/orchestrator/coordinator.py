"""
PipelineCoordinator - drives a batch through cleanup, crack and zip/upload.

Phase 0 cleans old crack artifacts for every item, phase 1 cracks items
one at a time, phase 2 archives zip-only items all at once while a single
producer archives upload items in order and hands each archive to a fixed
set of upload consumers over a bounded queue.
"""
from pathlib import Path
from typing import Awaitable, Dict, List, Optional, Set
import asyncio
import logging
import time

from ..errors import InvariantViolation, PermanentItemError
from ..models import (
    BatchConfig,
    BatchItem,
    BatchSummary,
    DEFAULT_RATES,
    OutcomeStatus,
    Phase,
    PhaseOutcome,
    RateModel,
)
from ..protocols import ArchiveResult, CrackContext, IArchiver, ICracker, ILinkConverter, IUploader
from ..services.cracker import validate_context
from ..services.progress import ProgressEstimator
from ..services.rates import RateLearner
from ..services.retry import RetryPolicy, RetryStatus, UploadOutcome
from ..services.slots import CANCEL_ALL_REASON, SKIP_REASON, SlotHandle, UploadSlotPool
from ..utils.cancellation import CancellationToken
from ..utils.events import EventEmitter, Severity, StatusUpdate
from .cleanup import clean_crack_artifacts

logger = logging.getLogger(__name__)

# Minimum interval between instantaneous upload rate samples
RATE_SAMPLE_INTERVAL = 0.5


class PipelineCoordinator:
    """
    Runs batches of BatchItems.

    Collaborators are injected; any of cracker, uploader and converter may
    be None, in which case items needing them fail that phase.
    """

    def __init__(
        self,
        archiver: IArchiver,
        uploader: Optional[IUploader] = None,
        cracker: Optional[ICracker] = None,
        converter: Optional[ILinkConverter] = None,
        config: Optional[BatchConfig] = None,
        rate_learner: Optional[RateLearner] = None,
        events: Optional[EventEmitter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        slot_pool: Optional[UploadSlotPool] = None,
        clock=time.monotonic,
    ):
        self._archiver = archiver
        self._uploader = uploader
        self._cracker = cracker
        self._converter = converter
        self._config = config or BatchConfig()
        self._rate_learner = rate_learner
        self._events = events or EventEmitter()
        self._retry = retry_policy or RetryPolicy(self._config.max_retries, self._config.retry_delay)
        self._pool = slot_pool or UploadSlotPool(
            self._config.max_concurrent_uploads,
            self._events,
            throttle=self._config.progress_throttle,
            smoothing=self._config.rate_smoothing,
        )
        self._clock = clock

        self._batch_token = CancellationToken(reason=CANCEL_ALL_REASON)
        self._rates: RateModel = DEFAULT_RATES
        self._estimator = self._new_estimator([])
        self._items: Dict[str, BatchItem] = {}
        self._converting: Dict[str, CancellationToken] = {}
        self._progress_lock = asyncio.Lock()
        self._last_progress_emit = 0.0
        self._background: Set[asyncio.Task] = set()

    @property
    def events(self) -> EventEmitter:
        return self._events

    @property
    def pool(self) -> UploadSlotPool:
        return self._pool

    @property
    def config(self) -> BatchConfig:
        return self._config

    @property
    def estimator(self) -> ProgressEstimator:
        return self._estimator

    # Cancellation

    def skip(self, item_id: str) -> bool:
        """
        Skip one item's upload, or its link conversion if already uploaded.

        Returns False when there is nothing left to skip.
        """
        item = self._items.get(item_id)
        if item is None or not item.do_upload:
            logger.info(f"Ignoring skip for {item_id}: no pending upload")
            return False
        converting = self._converting.get(item_id)
        if converting is not None:
            converting.cancel(SKIP_REASON)
            logger.info(f"Skipping link conversion for {item.name}")
            return True
        if item.outcome(Phase.UPLOAD).status.is_terminal:
            logger.info(f"Ignoring skip for {item.name}: upload already finished")
            return False
        self._pool.cancel_item(item_id)
        return True

    async def cancel_all(self) -> None:
        """Cancel everything that has not finished yet."""
        self._batch_token.cancel(CANCEL_ALL_REASON)
        await self._pool.cancel_all()

    # Main entry

    async def run(self, items: List[BatchItem], batch_token: Optional[CancellationToken] = None) -> BatchSummary:
        """Process items through every phase and summarize."""
        self._validate(items)
        self._batch_token = batch_token or CancellationToken(reason=CANCEL_ALL_REASON)
        self._items = {item.item_id: item for item in items}
        self._converting = {}
        self._pool.reset()
        if self._batch_token.is_cancelled:
            await self._pool.cancel_all()

        self._rates = self._rate_learner.load() if self._rate_learner else DEFAULT_RATES
        self._estimator = self._new_estimator(items)
        self._estimator.start()
        started = self._clock()
        logger.info(
            f"Batch of {len(items)} item(s), initial estimate "
            f"{self._estimator.initial_estimate():.0f}s"
        )
        await self._emit_progress("starting")

        ticker = asyncio.create_task(self._tick())
        try:
            await self.cleanup(items)
            await self.crack_all(items)
            await self.zip_and_upload(items)
        finally:
            ticker.cancel()
            await asyncio.gather(ticker, return_exceptions=True)
            await self._drain_background()

        self._learn_rates()
        summary = BatchSummary.from_items(items, duration=self._clock() - started)
        final = self._estimator.finish()
        await self._events.emit("progress", final)
        await self._events.emit("finish", summary)
        logger.info(f"Batch complete: {summary.summary_line()}")
        return summary

    def _new_estimator(self, items: List[BatchItem]) -> ProgressEstimator:
        return ProgressEstimator(
            items,
            self._rates,
            compression_level=self._config.compression_level,
            convert_links=self._config.convert_links and self._converter is not None,
            crack_seconds=self._config.crack_seconds_per_item,
            conversion_seconds=self._config.conversion_seconds_per_item,
            safety_multiplier=self._config.safety_multiplier,
            smoothing=self._config.rate_smoothing,
            clock=self._clock,
        )

    def _validate(self, items: List[BatchItem]) -> None:
        seen: Set[str] = set()
        outputs: Dict[Path, str] = {}
        for item in items:
            if item.item_id in seen:
                raise InvariantViolation(f"Duplicate item id: {item.item_id}")
            seen.add(item.item_id)
            if item.do_upload and not item.do_zip:
                raise InvariantViolation(f"{item.name}: upload requires zip")
            if item.do_zip:
                output = self.archive_path_for(item)
                if output in outputs:
                    raise InvariantViolation(
                        f"{item.path} and {outputs[output]} would both be archived to {output}"
                    )
                outputs[output] = str(item.path)

    # Phase 0

    async def cleanup(self, items: List[BatchItem]) -> None:
        """Undo artifacts of earlier crack runs for every item."""
        for item in items:
            try:
                report = await asyncio.to_thread(clean_crack_artifacts, item.path)
            except Exception as e:
                logger.error(f"Cleanup failed for {item.name}: {e}")
                continue
            if report.changed:
                await self._status(
                    item,
                    f"Cleaned {len(report.restored) + len(report.removed)} old crack file(s)",
                )

    # Phase 1

    async def crack_all(self, items: List[BatchItem]) -> None:
        """Crack items strictly one after another."""
        for item in items:
            if not item.do_crack:
                item.set_outcome(Phase.CRACK, PhaseOutcome.ok())
                continue
            if self._batch_token.is_cancelled:
                item.set_outcome(Phase.CRACK, PhaseOutcome.cancelled())
                self._estimator.drop_item(item.item_id)
                continue
            await self._crack_one(item)
            await self._emit_progress("crack")

    async def _crack_one(self, item: BatchItem) -> None:
        context = CrackContext(folder=item.path, app_id=item.app_id, emulator=self._config.emulator)
        item.set_outcome(Phase.CRACK, PhaseOutcome(OutcomeStatus.RUNNING))
        await self._status(item, "Cracking...")
        try:
            validate_context(context)
            if self._cracker is None:
                raise PermanentItemError("No cracker configured")
            result = await self._cracker.crack(
                context,
                status_callback=lambda text: self._spawn(self._status(item, text)),
            )
            if result.success:
                item.set_outcome(Phase.CRACK, PhaseOutcome.ok())
                logger.info(f"Cracked {item.name} ({len(result.modified_files)} file(s))")
                await self._status(item, "Cracked", Severity.SUCCESS)
            else:
                reason = result.error_message or "Crack failed"
                item.set_outcome(Phase.CRACK, PhaseOutcome.fail(reason))
                logger.warning(f"Failed to crack {item.name}: {reason}")
                await self._status(item, f"Crack failed: {reason}", Severity.ERROR)
        except InvariantViolation:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            item.set_outcome(Phase.CRACK, PhaseOutcome.fail(reason))
            logger.error(f"Error cracking {item.name}: {reason}")
            await self._status(item, f"Crack failed: {reason}", Severity.ERROR)
        finally:
            self._estimator.record_crack_done(item.item_id)

    # Phase 2

    async def zip_and_upload(self, items: List[BatchItem]) -> None:
        """Archive zip-only items concurrently and run the zip->upload pipeline."""
        zip_only: List[BatchItem] = []
        pipeline: List[BatchItem] = []
        for item in items:
            if not item.do_zip:
                continue
            crack = item.outcome(Phase.CRACK)
            if crack.status == OutcomeStatus.CANCELLED:
                self._abandon(item, PhaseOutcome.cancelled())
                continue
            if not crack.success:
                self._abandon(item, PhaseOutcome.skipped("Not attempted: crack did not succeed"))
                continue
            (pipeline if item.do_upload else zip_only).append(item)

        logger.info(f"Zip phase: {len(zip_only)} zip-only, {len(pipeline)} zip+upload")
        await asyncio.gather(self._zip_fan_out(zip_only), self._zip_upload_pipeline(pipeline))

    def _abandon(self, item: BatchItem, outcome: PhaseOutcome) -> None:
        """Record outcome for the zip and upload phases that will not run."""
        for phase in (Phase.ZIP, Phase.UPLOAD):
            if phase in item.requested_phases:
                item.set_outcome(phase, outcome)
        self._estimator.drop_item(item.item_id)
        self._pool.discard_skip(item.item_id)

    async def _zip_fan_out(self, items: List[BatchItem]) -> None:
        if items:
            await asyncio.gather(*(self._archive(item, measure=False) for item in items))

    async def _zip_upload_pipeline(self, items: List[BatchItem]) -> None:
        if not items:
            return
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._pool.size)
        consumers = [
            asyncio.create_task(self._upload_consumer(queue), name=f"upload-consumer-{n}")
            for n in range(self._pool.size)
        ]
        producer = asyncio.create_task(self._archive_producer(items, queue, len(consumers)))
        tasks = [producer, *consumers]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _archive_producer(self, items: List[BatchItem], queue: asyncio.Queue, consumers: int) -> None:
        for item in items:
            if await self._archive(item, measure=True):
                await queue.put(item)
        await queue.join()
        for _ in range(consumers):
            await queue.put(None)

    async def _upload_consumer(self, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                if item is None:
                    return
                await self._upload_item(item)
            finally:
                queue.task_done()

    def archive_path_for(self, item: BatchItem) -> Path:
        return item.path.parent / f"{item.name}{self._config.archive_extension}"

    async def _archive(self, item: BatchItem, measure: bool) -> bool:
        """Archive one item. Returns True when an archive was produced."""
        if self._batch_token.is_cancelled:
            item.set_outcome(Phase.ZIP, PhaseOutcome.cancelled())
            if item.do_upload:
                item.set_outcome(Phase.UPLOAD, PhaseOutcome.cancelled())
            self._estimator.drop_item(item.item_id)
            self._pool.discard_skip(item.item_id)
            await self._status(item, "Cancelled", Severity.WARNING)
            return False

        output = self.archive_path_for(item)
        item.set_outcome(Phase.ZIP, PhaseOutcome(OutcomeStatus.RUNNING))
        await self._status(item, "Compressing...")

        def on_progress(percent: int) -> None:
            self._estimator.record_zip_progress(item.item_id, percent)
            self._progress_soon("zip")

        started = self._clock()
        try:
            if not item.path.is_dir():
                raise PermanentItemError(f"Folder no longer exists: {item.path}")
            result = await self._archiver.compress(
                item.path,
                output,
                self._config.archive_format,
                self._config.compression_level,
                self._config.password,
                on_progress,
            )
        except InvariantViolation:
            raise
        except Exception as e:
            result = ArchiveResult(False, error=str(e) or type(e).__name__)

        if not result.success:
            reason = result.error or "Compression failed"
            item.set_outcome(Phase.ZIP, PhaseOutcome.fail(reason))
            if item.do_upload:
                item.set_outcome(Phase.UPLOAD, PhaseOutcome.skipped("Not attempted: compression failed"))
            self._estimator.drop_item(item.item_id)
            self._pool.discard_skip(item.item_id)
            logger.warning(f"Failed to compress {item.name}: {reason}")
            await self._status(item, f"Zip failed: {reason}", Severity.ERROR)
            await self._events.emit("item_complete", item)
            return False

        item.archive_path = Path(result.output_path or output)
        item.set_outcome(Phase.ZIP, PhaseOutcome.ok(artifact=str(item.archive_path)))
        self._estimator.record_zip_done(item.item_id)
        elapsed = self._clock() - started
        if measure and elapsed > 0 and item.size_bytes > 0:
            self._estimator.record_zip_rate(item.size_bytes / elapsed)
        logger.info(f"Compressed {item.name} in {elapsed:.1f}s")
        await self._status(item, "Compressed", Severity.SUCCESS)
        await self._emit_progress("zip")
        if not item.do_upload:
            await self._events.emit("item_complete", item)
        return True

    async def _upload_item(self, item: BatchItem) -> None:
        if not item.outcome(Phase.ZIP).success or item.archive_path is None:
            raise InvariantViolation(f"Upload requested for {item.name} without an archive")

        if self._uploader is None:
            item.set_outcome(Phase.UPLOAD, PhaseOutcome.fail("No uploader configured"))
            self._estimator.drop_upload(item.item_id)
            self._pool.discard_skip(item.item_id)
            await self._status(item, "Upload failed: no uploader configured", Severity.ERROR)
            await self._events.emit("item_complete", item)
            return

        archive = item.archive_path
        try:
            size = archive.stat().st_size
        except OSError:
            size = item.size_bytes

        handle = await self._pool.claim(item.item_id, size)
        if handle is None:
            item.set_outcome(Phase.UPLOAD, PhaseOutcome.cancelled())
            self._estimator.drop_upload(item.item_id)
            await self._status(item, "Cancelled", Severity.WARNING)
            await self._events.emit("item_complete", item)
            return

        try:
            await self._upload_in_slot(item, archive, size, handle)
        except InvariantViolation:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            item.set_outcome(Phase.UPLOAD, PhaseOutcome.fail(reason))
            self._estimator.drop_upload(item.item_id)
            logger.error(f"Error uploading {item.name}: {reason}")
            await self._status(item, f"Upload failed: {reason}", Severity.ERROR)
        finally:
            await self._pool.release(handle)
        await self._events.emit("item_complete", item)

    async def _upload_in_slot(self, item: BatchItem, archive: Path, size: int, handle: SlotHandle) -> None:
        item.set_outcome(Phase.UPLOAD, PhaseOutcome(OutcomeStatus.RUNNING))
        await self._status(item, "Uploading...")
        sample: Dict[str, float] = {"time": self._clock(), "bytes": 0}

        def on_attempt(attempt: int) -> None:
            sample["time"] = self._clock()
            sample["bytes"] = 0
            if attempt > 1:
                self._spawn(self._status(item, f"Retry {attempt}/{self._retry.max_attempts}", Severity.WARNING))

        def on_progress(fraction: float, done: int, total: int) -> None:
            now = self._clock()
            rate = 0.0
            interval = now - sample["time"]
            if interval >= RATE_SAMPLE_INTERVAL:
                rate = (done - sample["bytes"]) / interval
                sample["time"] = now
                sample["bytes"] = done
                self._estimator.record_upload_rate(rate)
            self._estimator.record_upload_progress(item.item_id, fraction)
            self._spawn(self._pool.update_progress(handle, done, rate))
            self._progress_soon("upload")

        convert_token = CancellationToken(parent=self._batch_token, reason=SKIP_REASON)

        async def release_slot(outcome) -> None:
            if outcome.success:
                if handle.is_cancelled and handle.token.reason == SKIP_REASON:
                    convert_token.cancel(SKIP_REASON)
                self._converting[item.item_id] = convert_token
            await self._pool.release(handle)

        convert = self._converter if self._config.convert_links else None
        if convert is not None:
            await self._status(item, "Uploading (link conversion follows)...")
        try:
            outcome = await self._retry.upload(
                self._uploader,
                archive,
                handle=handle,
                batch_token=self._batch_token,
                converter=convert,
                size_hint=size,
                progress_callback=on_progress,
                on_attempt=on_attempt,
                after_upload=release_slot,
                convert_token=convert_token,
            )
        finally:
            self._converting.pop(item.item_id, None)

        retry = outcome.retry
        if outcome.status == RetryStatus.SUCCESS:
            item.upload_url = outcome.url
            item.final_url = outcome.final_url
            item.set_outcome(
                Phase.UPLOAD,
                PhaseOutcome.ok(artifact=outcome.url, attempts=retry.attempts, retry_count=retry.retry_count),
            )
            if convert is not None:
                item.set_outcome(Phase.CONVERT, self._conversion_outcome(outcome))
            self._estimator.record_upload_done(item.item_id)
            self._estimator.record_conversion_done(item.item_id)
            logger.info(f"Uploaded {item.name}: {item.final_url}")
            await self._status(item, f"Uploaded: {item.final_url}", Severity.SUCCESS)
        elif outcome.status == RetryStatus.FAILED:
            item.set_outcome(
                Phase.UPLOAD,
                PhaseOutcome.fail(retry.error or "Upload failed", retry.attempts, retry.retry_count),
            )
            self._estimator.drop_upload(item.item_id)
            logger.warning(f"Upload failed for {item.name} after {retry.attempts} attempt(s): {retry.error}")
            await self._status(item, f"Upload failed: {retry.error}", Severity.ERROR)
        elif outcome.status == RetryStatus.SKIPPED:
            item.set_outcome(Phase.UPLOAD, PhaseOutcome.skipped())
            self._estimator.drop_upload(item.item_id)
            await self._status(item, "Skipped", Severity.WARNING)
        else:
            item.set_outcome(Phase.UPLOAD, PhaseOutcome.cancelled())
            self._estimator.drop_upload(item.item_id)
            await self._status(item, "Cancelled", Severity.WARNING)

    def _conversion_outcome(self, outcome: UploadOutcome) -> PhaseOutcome:
        if outcome.conversion_cancelled:
            if self._batch_token.is_cancelled:
                return PhaseOutcome.cancelled("Batch cancelled, original link kept")
            return PhaseOutcome.skipped("Conversion skipped, original link kept")
        if outcome.mirror_url:
            return PhaseOutcome.ok(artifact=outcome.mirror_url)
        return PhaseOutcome.fail("Conversion unavailable, original link kept")

    # Rates

    def _learn_rates(self) -> None:
        if self._rate_learner is None:
            return
        learned = self._rate_learner.learn(
            self._rates,
            level=self._config.compression_level,
            zip_rate=self._estimator.measured_zip_rate,
            upload_rate=self._estimator.measured_upload_rate,
        )
        if learned != self._rates:
            self._rate_learner.save(learned)
            self._rates = learned

    # Events

    async def _status(self, item: BatchItem, text: str, severity: Severity = Severity.INFO) -> None:
        await self._events.emit("status", StatusUpdate(item.item_id, text, severity))

    async def _emit_progress(self, phase: Optional[str]) -> None:
        async with self._progress_lock:
            self._last_progress_emit = self._clock()
            update = self._estimator.snapshot(phase)
            await self._events.emit("progress", update)

    def _progress_soon(self, phase: str) -> None:
        """Throttled progress emission from synchronous callbacks."""
        if self._clock() - self._last_progress_emit < self._config.progress_throttle:
            return
        self._last_progress_emit = self._clock()
        self._spawn(self._emit_progress(phase))

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._config.progress_interval)
            await self._emit_progress(None)

    def _spawn(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _drain_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
