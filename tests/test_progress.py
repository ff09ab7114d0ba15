"""Tests for progress estimation."""
import math

import pytest

from gamebatch.models import BatchItem, MB, RateModel
from gamebatch.services.progress import ExponentialAverage, ProgressEstimator, clamp_percent


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


RATES = RateModel(zip_rate_level0=50 * MB, zip_rate_compressed=10 * MB, upload_rate=5 * MB)


def _item(name, size_mb, crack=False, compress=False, upload=False):
    return BatchItem(
        path=f"/games/{name}",
        do_crack=crack,
        do_zip=compress or upload,
        do_upload=upload,
        size_bytes=size_mb * MB,
    )


class TestClampPercent:
    def test_never_decreases(self):
        assert clamp_percent(40.0, 55) == 55

    def test_caps_at_99(self):
        assert clamp_percent(100.0, 10) == 99
        assert clamp_percent(250.0, 98) == 99

    def test_ignores_nan_and_negative(self):
        assert clamp_percent(math.nan, 12) == 12
        assert clamp_percent(-5.0, 0) == 0

    def test_takes_floor(self):
        assert clamp_percent(42.9, 0) == 42


class TestExponentialAverage:
    def test_first_sample_taken_as_is(self):
        avg = ExponentialAverage(0.7)
        assert avg.update(10.0) == 10.0

    def test_blends_old_and_new(self):
        avg = ExponentialAverage(0.7)
        avg.update(10.0)
        assert avg.update(20.0) == pytest.approx(13.0)

    def test_ignores_stalls(self):
        avg = ExponentialAverage(0.7)
        avg.update(10.0)
        assert avg.update(0.0) == 10.0
        assert avg.update(math.inf) == 10.0

    def test_rejects_bad_weight(self):
        with pytest.raises(ValueError):
            ExponentialAverage(1.0)


class TestProgressEstimator:
    def test_initial_estimate_uses_learned_rates(self):
        items = [_item("A", 100, crack=True, upload=True)]
        estimator = ProgressEstimator(
            items, RATES, compression_level=5, convert_links=False, crack_seconds=3.0, safety_multiplier=1.3
        )
        # 3s crack + 10s zip + 20s upload
        assert estimator.initial_estimate() == pytest.approx(33.0 * 1.3)

    def test_level_zero_uses_store_rate(self):
        items = [_item("A", 100, compress=True)]
        estimator = ProgressEstimator(items, RATES, compression_level=0, convert_links=False, safety_multiplier=1.0)
        assert estimator.initial_estimate() == pytest.approx(2.0)

    def test_eta_is_padded_remaining(self):
        clock = FakeClock()
        items = [_item("A", 100, upload=True)]
        estimator = ProgressEstimator(items, RATES, convert_links=False, clock=clock)
        estimator.start()
        assert estimator.eta_seconds() == pytest.approx(estimator.remaining_seconds() * 1.3)

    def test_percent_reflects_elapsed_share(self):
        clock = FakeClock()
        items = [_item("A", 100, compress=True)]
        estimator = ProgressEstimator(items, RATES, convert_links=False, safety_multiplier=1.0, clock=clock)
        estimator.start()
        clock.now = 5.0
        estimator.record_zip_progress(items[0].item_id, 50)
        # 5s elapsed, 50 MB left at 10 MB/s
        assert estimator.snapshot("zip").percent == 50

    def test_percent_does_not_drop_when_eta_grows(self):
        clock = FakeClock()
        items = [_item("A", 100, upload=True)]
        estimator = ProgressEstimator(items, RATES, convert_links=False, clock=clock)
        estimator.start()
        estimator.record_zip_done(items[0].item_id)
        clock.now = 10.0
        estimator.record_upload_rate(5 * MB)
        before = estimator.snapshot("upload").percent

        estimator.record_upload_rate(1_000)
        estimator.record_upload_rate(1_000)
        clock.now = 11.0
        after = estimator.snapshot("upload")

        assert after.percent >= before
        assert after.eta_seconds > 0

    def test_dropped_items_stop_counting(self):
        items = [_item("A", 100, upload=True), _item("B", 100, upload=True)]
        estimator = ProgressEstimator(items, RATES, convert_links=True, conversion_seconds=45.0)
        full = estimator.remaining_seconds()
        estimator.drop_item(items[1].item_id)
        assert estimator.remaining_seconds() == pytest.approx(full / 2)

    def test_measured_rates_override_learned(self):
        estimator = ProgressEstimator([], RATES)
        assert estimator.measured_upload_rate is None
        assert estimator.upload_rate == RATES.upload_rate
        estimator.record_upload_rate(8 * MB)
        assert estimator.upload_rate == 8 * MB

    def test_finish_reports_100(self):
        clock = FakeClock()
        estimator = ProgressEstimator([_item("A", 100, compress=True)], RATES, clock=clock)
        estimator.start()
        update = estimator.finish()
        assert update.percent == 100
        assert update.eta_seconds == 0.0
        assert estimator.snapshot().percent == 100
