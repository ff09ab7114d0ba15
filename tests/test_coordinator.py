"""Tests for PipelineCoordinator."""
import asyncio

import pytest

from gamebatch.errors import InvariantViolation, PermanentItemError, TransientItemError
from gamebatch.models import DEFAULT_RATES, MB, OutcomeStatus, Phase
from gamebatch.services.progress import ProgressEstimator
from gamebatch.services.rates import UPLOAD_KEY, ZIP_COMPRESSED_KEY, ZIP_LEVEL0_KEY

from conftest import FakeArchiver, FakeConverter, FakeCracker, FakeUploader, ManualClock, make_item


@pytest.mark.asyncio
async def test_upload_overlaps_with_next_archive(tmp_path, make_coordinator):
    a = make_item(tmp_path, "A", size_mb=100, crack=True, upload=True)
    b = make_item(tmp_path, "B", size_mb=500, crack=True, upload=True)
    archiver = FakeArchiver()
    uploader = FakeUploader()
    # B's archive only starts once A is uploading, and A's upload only
    # finishes once B is archived: this completes only if they overlap.
    archiver.gates["B"] = uploader.started_event("A")
    uploader.gates["A"] = archiver.done_event("B")
    coordinator = make_coordinator(archiver, uploader, FakeCracker())

    summary = await asyncio.wait_for(coordinator.run([a, b]), timeout=5)

    assert summary.cracked == 2
    assert summary.zipped == 2
    assert summary.uploaded == 2
    assert summary.succeeded == 2
    assert summary.failed == 0
    assert archiver.calls == ["A", "B"]
    assert a.final_url == "https://files.example/A"


@pytest.mark.asyncio
async def test_zip_only_item_never_uploads(tmp_path, make_coordinator):
    item = make_item(tmp_path, "Braid", compress=True)
    uploader = FakeUploader()
    coordinator = make_coordinator(FakeArchiver(), uploader)

    summary = await coordinator.run([item])

    assert uploader.calls == []
    assert summary.zipped == 1
    assert summary.uploaded == 0
    assert summary.succeeded == 1
    assert item.archive_path == tmp_path / "Braid.7z"
    assert item.archive_path.exists()


@pytest.mark.asyncio
async def test_failed_upload_does_not_stop_batch(tmp_path, make_coordinator):
    items = [make_item(tmp_path, name, upload=True) for name in ("One", "Two", "Three")]
    uploader = FakeUploader({"Two": [TransientItemError("connection reset")]})
    coordinator = make_coordinator(FakeArchiver(), uploader)

    summary = await coordinator.run(items)

    assert summary.uploaded == 2
    assert summary.upload_failed == 1
    assert uploader.calls.count("Two") == 3
    assert items[1].outcome(Phase.UPLOAD).status == OutcomeStatus.FAILED
    assert items[1].outcome(Phase.UPLOAD).retry_count == 2
    assert summary.failures == [("Two", "upload: connection reset")]


@pytest.mark.asyncio
async def test_zip_failure_skips_upload(tmp_path, make_coordinator):
    bad = make_item(tmp_path, "Bad", upload=True)
    good = make_item(tmp_path, "Good", upload=True)
    uploader = FakeUploader()
    coordinator = make_coordinator(FakeArchiver(fail_for={"Bad"}), uploader)

    summary = await coordinator.run([bad, good])

    assert uploader.calls == ["Good"]
    assert summary.zip_failed == 1
    assert summary.uploaded == 1
    assert bad.outcome(Phase.ZIP).error == "disk full"
    assert bad.outcome(Phase.UPLOAD).status == OutcomeStatus.SKIPPED
    assert summary.skipped == 0


@pytest.mark.asyncio
async def test_crack_is_sequential_and_failures_are_isolated(tmp_path, make_coordinator):
    items = [make_item(tmp_path, f"Game{i}", crack=True, compress=True) for i in range(4)]
    cracker = FakeCracker(fail_for={"Game1"})
    archiver = FakeArchiver()
    coordinator = make_coordinator(archiver, cracker=cracker)

    summary = await coordinator.run(items)

    assert cracker.calls == ["Game0", "Game1", "Game2", "Game3"]
    assert cracker.max_active == 1
    assert summary.cracked == 3
    assert summary.crack_failed == 1
    assert "Game1" not in archiver.calls
    assert items[1].outcome(Phase.CRACK).error == "steam_api.dll not found"


@pytest.mark.asyncio
async def test_invalid_app_id_fails_crack_without_calling_tool(tmp_path, make_coordinator):
    item = make_item(tmp_path, "NoId", crack=True, app_id="")
    cracker = FakeCracker()
    coordinator = make_coordinator(cracker=cracker)

    summary = await coordinator.run([item])

    assert cracker.calls == []
    assert summary.crack_failed == 1
    assert "app identifier" in item.outcome(Phase.CRACK).error


@pytest.mark.asyncio
async def test_upload_pool_bounds_concurrency(tmp_path, make_coordinator):
    items = [make_item(tmp_path, f"G{i}", size_mb=10, upload=True) for i in range(6)]
    uploader = FakeUploader()
    coordinator = make_coordinator(FakeArchiver(), uploader)

    summary = await coordinator.run(items)

    assert summary.uploaded == 6
    assert uploader.max_active <= 3
    assert coordinator.pool.peak_active <= 3
    assert coordinator.pool.active_count == 0


@pytest.mark.asyncio
async def test_skip_one_upload(tmp_path, make_coordinator):
    slow = make_item(tmp_path, "Slow", upload=True)
    other = make_item(tmp_path, "Other", upload=True)
    uploader = FakeUploader()
    uploader.gates["Slow"] = asyncio.Event()
    coordinator = make_coordinator(FakeArchiver(), uploader)

    async def skip_when_started():
        await uploader.started_event("Slow").wait()
        coordinator.skip(slow.item_id)

    summary, _ = await asyncio.wait_for(
        asyncio.gather(coordinator.run([slow, other]), skip_when_started()), timeout=5
    )

    assert slow.outcome(Phase.UPLOAD).status == OutcomeStatus.SKIPPED
    assert other.outcome(Phase.UPLOAD).success
    assert summary.skipped == 1
    assert summary.uploaded == 1


@pytest.mark.asyncio
async def test_cancel_all_stops_remaining_work(tmp_path, make_coordinator):
    first = make_item(tmp_path, "First", upload=True)
    second = make_item(tmp_path, "Second", upload=True)
    uploader = FakeUploader()
    uploader.gates["First"] = asyncio.Event()
    archiver = FakeArchiver()
    archiver.gates["Second"] = asyncio.Event()
    coordinator = make_coordinator(archiver, uploader)

    async def cancel_when_started():
        await uploader.started_event("First").wait()
        await coordinator.cancel_all()
        archiver.gates["Second"].set()

    summary, _ = await asyncio.wait_for(
        asyncio.gather(coordinator.run([first, second]), cancel_when_started()), timeout=5
    )

    assert first.outcome(Phase.UPLOAD).status == OutcomeStatus.CANCELLED
    assert second.outcome(Phase.UPLOAD).status == OutcomeStatus.CANCELLED
    assert uploader.calls == ["First"]
    assert summary.cancelled == 2
    assert summary.uploaded == 0


@pytest.mark.asyncio
async def test_permanent_upload_error_is_not_retried(tmp_path, make_coordinator):
    item = make_item(tmp_path, "Huge", upload=True)
    uploader = FakeUploader({"Huge": [PermanentItemError("HTTP 413: too large")]})
    coordinator = make_coordinator(FakeArchiver(), uploader)

    summary = await coordinator.run([item])

    assert uploader.calls == ["Huge"]
    assert summary.upload_failed == 1


@pytest.mark.asyncio
async def test_link_conversion_result_and_fallback(tmp_path, make_coordinator):
    converted = make_item(tmp_path, "Conv", upload=True)
    coordinator = make_coordinator(
        FakeArchiver(), FakeUploader(), converter=FakeConverter("https://mirror.example/Conv")
    )
    summary = await coordinator.run([converted])
    assert converted.final_url == "https://mirror.example/Conv"
    assert summary.upload_results[0].mirror_url == "https://mirror.example/Conv"

    kept = make_item(tmp_path, "Kept", upload=True)
    coordinator = make_coordinator(
        FakeArchiver(), FakeUploader(), converter=FakeConverter(error=RuntimeError("service down"))
    )
    summary = await coordinator.run([kept])
    assert kept.final_url == "https://files.example/Kept"
    assert summary.uploaded == 1
    assert summary.upload_results[0].mirror_url is None


@pytest.mark.asyncio
async def test_progress_never_decreases_and_ends_at_100(tmp_path, make_coordinator):
    items = [make_item(tmp_path, f"P{i}", crack=True, upload=True) for i in range(3)]
    coordinator = make_coordinator(FakeArchiver(), FakeUploader(), FakeCracker(), progress_throttle=0.0)
    percents = []
    coordinator.events.on("progress", lambda update: percents.append(update.percent))

    await coordinator.run(items)

    assert percents
    assert percents == sorted(percents)
    assert percents[-1] == 100
    assert all(p <= 99 for p in percents[:-1])


@pytest.mark.asyncio
async def test_measured_rates_saved_once_at_end(tmp_path, make_coordinator, rate_store):
    rate_store.data = {UPLOAD_KEY: 1_000_000.0}
    clock = ManualClock()
    item = make_item(tmp_path, "Rated", size_mb=100, upload=True)
    archiver = FakeArchiver(clock=clock, seconds=10.0)
    uploader = FakeUploader(clock=clock, seconds=2.0, reported_bytes=8 * MB)
    coordinator = make_coordinator(archiver, uploader, clock=clock)

    await coordinator.run([item])

    assert rate_store.writes == 1
    assert rate_store.data[ZIP_COMPRESSED_KEY] == pytest.approx(10 * MB)
    assert rate_store.data[UPLOAD_KEY] == pytest.approx(4 * MB)
    assert rate_store.data[ZIP_LEVEL0_KEY] == DEFAULT_RATES.zip_rate_level0


@pytest.mark.asyncio
async def test_rates_not_saved_without_measurement(tmp_path, make_coordinator, rate_store):
    item = make_item(tmp_path, "ZipOnly", compress=True)

    await make_coordinator(FakeArchiver()).run([item])

    assert rate_store.writes == 0


@pytest.mark.asyncio
async def test_upload_retried_twice_then_succeeds(tmp_path, make_coordinator):
    item = make_item(tmp_path, "Flaky", upload=True)
    uploader = FakeUploader({
        "Flaky": [TransientItemError("reset"), TransientItemError("reset"), "https://files.example/flaky"],
    })

    summary = await make_coordinator(FakeArchiver(), uploader).run([item])

    outcome = item.outcome(Phase.UPLOAD)
    assert outcome.success
    assert outcome.attempts == 3
    assert outcome.retry_count == 2
    assert item.upload_url == "https://files.example/flaky"
    assert summary.uploaded == 1
    assert not summary.has_failures


class StuckConverter:
    """Never answers and never looks at its token."""

    def __init__(self):
        self.started = asyncio.Event()

    async def convert(self, url, size_hint=0, cancel_token=None):
        self.started.set()
        await asyncio.sleep(3600)


@pytest.mark.asyncio
async def test_cancel_all_interrupts_link_conversion(tmp_path, make_coordinator):
    item = make_item(tmp_path, "Mirror", upload=True)
    converter = StuckConverter()
    coordinator = make_coordinator(FakeArchiver(), FakeUploader(), converter=converter)

    run = asyncio.create_task(coordinator.run([item]))
    await converter.started.wait()
    await coordinator.cancel_all()
    await asyncio.wait_for(run, timeout=3)

    assert item.outcome(Phase.UPLOAD).success
    assert item.outcome(Phase.CONVERT).status == OutcomeStatus.CANCELLED
    assert item.final_url == "https://files.example/Mirror"


@pytest.mark.asyncio
async def test_skip_during_conversion_keeps_original_link(tmp_path, make_coordinator):
    item = make_item(tmp_path, "Mirror", upload=True)
    converter = StuckConverter()
    coordinator = make_coordinator(FakeArchiver(), FakeUploader(), converter=converter)

    run = asyncio.create_task(coordinator.run([item]))
    await converter.started.wait()
    assert coordinator.skip(item.item_id)
    summary = await asyncio.wait_for(run, timeout=3)

    assert item.outcome(Phase.UPLOAD).success
    assert item.outcome(Phase.CONVERT).status == OutcomeStatus.SKIPPED
    assert item.final_url == "https://files.example/Mirror"
    assert summary.uploaded == 1


@pytest.mark.asyncio
async def test_skip_after_upload_finished_is_ignored(tmp_path, make_coordinator):
    item = make_item(tmp_path, "Done", upload=True)
    coordinator = make_coordinator(FakeArchiver(), FakeUploader())

    await coordinator.run([item])

    assert not coordinator.skip(item.item_id)
    assert not coordinator.pool.is_skip_requested(item.item_id)
    assert item.outcome(Phase.UPLOAD).success


@pytest.mark.asyncio
async def test_skip_for_upload_that_never_starts_is_forgotten(tmp_path, make_coordinator):
    item = make_item(tmp_path, "Bad", upload=True)
    archiver = FakeArchiver(fail_for={"Bad"})
    archiver.gates["Bad"] = asyncio.Event()
    coordinator = make_coordinator(archiver, FakeUploader())

    run = asyncio.create_task(coordinator.run([item]))
    while "Bad" not in archiver.calls:
        await asyncio.sleep(0)
    assert coordinator.skip(item.item_id)
    assert coordinator.pool.is_skip_requested(item.item_id)
    archiver.gates["Bad"].set()
    await asyncio.wait_for(run, timeout=3)

    assert not coordinator.pool.is_skip_requested(item.item_id)
    assert item.outcome(Phase.UPLOAD).status == OutcomeStatus.SKIPPED


@pytest.mark.asyncio
async def test_items_sharing_an_archive_path_are_rejected(tmp_path, make_coordinator):
    first = make_item(tmp_path, "Portal", compress=True)
    second = make_item(tmp_path, "Portal 2", compress=True)
    second.name = first.name
    archiver = FakeArchiver()

    with pytest.raises(InvariantViolation):
        await make_coordinator(archiver).run([first, second])

    assert archiver.calls == []


@pytest.mark.asyncio
async def test_cleanup_runs_before_crack(tmp_path, make_coordinator):
    item = make_item(tmp_path, "Dirty", crack=True)
    (item.path / "steam_settings").mkdir()
    (item.path / "steam_api.dll.bak").write_bytes(b"original")
    (item.path / "steam_api.dll").write_bytes(b"patched")
    coordinator = make_coordinator(cracker=FakeCracker())

    await coordinator.run([item])

    assert not (item.path / "steam_settings").exists()
    assert (item.path / "steam_api.dll").read_bytes() == b"original"


def test_estimator_exists_before_first_run(make_coordinator):
    coordinator = make_coordinator()

    assert isinstance(coordinator.estimator, ProgressEstimator)
    assert coordinator.estimator.remaining_seconds() == 0
    assert not coordinator.skip("unknown")
