"""
RateLearner - persisted throughput used to seed ETA estimates.

Stores zip and upload rates as a small JSON key/value file, similar to
the local hash cache. Values are read at batch start and written once at
batch end.
"""
import json
import logging
import math
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional

from ..models import DEFAULT_RATES, RateModel
from ..protocols import IRateStore

logger = logging.getLogger(__name__)

DEFAULT_RATES_DIR = Path.home() / ".config" / "gamebatch"
DEFAULT_RATES_FILE = "rates.json"

ZIP_LEVEL0_KEY = "zip_rate_level0"
ZIP_COMPRESSED_KEY = "zip_rate_compressed"
UPLOAD_KEY = "upload_rate"

# Plausible throughput range in bytes/sec
MIN_PLAUSIBLE_RATE = 1_000.0
MAX_PLAUSIBLE_RATE = 10_000_000_000.0


def is_plausible_rate(value: Any) -> bool:
    """A rate is usable when it is a finite number inside the plausible range."""
    if isinstance(value, bool):
        return False
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(rate) and MIN_PLAUSIBLE_RATE <= rate <= MAX_PLAUSIBLE_RATE


class JsonRateStore(IRateStore):
    """Key/value rate settings in a JSON file."""

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else DEFAULT_RATES_DIR / DEFAULT_RATES_FILE

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> Dict[str, Any]:
        try:
            if not self._path.exists():
                logger.debug(f"RateStore: no rates file at {self._path}")
                return {}
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"RateStore: corrupt rates file {self._path}: {e} - using defaults")
            return {}
        except OSError as e:
            logger.warning(f"RateStore: failed to read {self._path}: {e} - using defaults")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"RateStore: unexpected content in {self._path} - using defaults")
            return {}
        return data

    def write(self, values: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(values, f, indent=2)
        tmp.replace(self._path)


class RateLearner:
    """
    Loads, updates and saves the RateModel.

    Usage:
        learner = RateLearner(JsonRateStore(path))
        rates = learner.load()
        ...
        rates = learner.learn(rates, level=5, zip_rate=measured_zip, upload_rate=measured_up)
        learner.save(rates)
    """

    def __init__(self, store: Optional[IRateStore] = None, defaults: RateModel = DEFAULT_RATES):
        self._store = store or JsonRateStore()
        self._defaults = defaults

    @property
    def defaults(self) -> RateModel:
        return self._defaults

    def load(self) -> RateModel:
        """Persisted rates, with defaults for missing or implausible values."""
        try:
            data = self._store.read()
        except Exception as e:
            logger.warning(f"RateLearner: could not load rates: {e} - using defaults")
            data = {}

        def pick(key: str, default: float) -> float:
            value = data.get(key)
            if is_plausible_rate(value):
                return float(value)
            if value is not None:
                logger.debug(f"RateLearner: ignoring implausible {key}={value!r}")
            return default

        model = RateModel(
            zip_rate_level0=pick(ZIP_LEVEL0_KEY, self._defaults.zip_rate_level0),
            zip_rate_compressed=pick(ZIP_COMPRESSED_KEY, self._defaults.zip_rate_compressed),
            upload_rate=pick(UPLOAD_KEY, self._defaults.upload_rate),
        )
        logger.debug(f"RateLearner: loaded {model}")
        return model

    def learn(
        self,
        model: RateModel,
        level: int,
        zip_rate: Optional[float] = None,
        upload_rate: Optional[float] = None,
    ) -> RateModel:
        """Return model with plausible new measurements applied."""
        changes: Dict[str, float] = {}
        if zip_rate is not None and is_plausible_rate(zip_rate):
            key = "zip_rate_level0" if level == 0 else "zip_rate_compressed"
            changes[key] = float(zip_rate)
        if upload_rate is not None and is_plausible_rate(upload_rate):
            changes["upload_rate"] = float(upload_rate)
        if not changes:
            return model
        logger.info(
            "Learned rates: "
            + ", ".join(f"{k}={v / 1_000_000:.1f} MB/s" for k, v in changes.items())
        )
        return replace(model, **changes)

    def save(self, model: RateModel) -> bool:
        """Persist model. Returns False (and logs) on failure."""
        try:
            self._store.write({
                ZIP_LEVEL0_KEY: model.zip_rate_level0,
                ZIP_COMPRESSED_KEY: model.zip_rate_compressed,
                UPLOAD_KEY: model.upload_rate,
            })
        except OSError as e:
            logger.error(f"RateLearner: failed to save rates: {e}")
            return False
        return True
