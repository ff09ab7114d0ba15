"""
Models for gamebatch.

BatchItem is mutated in place by the coordinator as phases complete;
everything else is a plain value.
"""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging
import os

from .errors import InvariantViolation

logger = logging.getLogger(__name__)

MB = 1024 * 1024
GB = 1024 * MB

# Used when a folder cannot be walked to compute its size
FALLBACK_FOLDER_SIZE = 1_000_000_000


class OutcomeStatus(Enum):
    """Per-item, per-phase status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (OutcomeStatus.PENDING, OutcomeStatus.RUNNING)


class Phase(Enum):
    """Pipeline phase."""
    CRACK = "crack"
    ZIP = "zip"
    UPLOAD = "upload"
    CONVERT = "convert"


@dataclass
class PhaseOutcome:
    """Outcome of one phase for one item."""
    status: OutcomeStatus = OutcomeStatus.PENDING
    error: Optional[str] = None
    artifact: Optional[str] = None  # archive path or URL
    attempts: int = 0
    retry_count: int = 0

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @classmethod
    def ok(cls, artifact: Optional[str] = None, attempts: int = 0, retry_count: int = 0):
        return cls(OutcomeStatus.SUCCESS, artifact=artifact, attempts=attempts, retry_count=retry_count)

    @classmethod
    def fail(cls, error: str, attempts: int = 0, retry_count: int = 0):
        return cls(OutcomeStatus.FAILED, error=error, attempts=attempts, retry_count=retry_count)

    @classmethod
    def skipped(cls, reason: str = "Skipped by user"):
        return cls(OutcomeStatus.SKIPPED, error=reason)

    @classmethod
    def cancelled(cls, reason: str = "Batch cancelled"):
        return cls(OutcomeStatus.CANCELLED, error=reason)


def folder_size(path: Path) -> int:
    """Total size in bytes of all files below path."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


@dataclass
class BatchItem:
    """A game folder queued for processing."""
    path: Path
    name: str = ""
    app_id: str = ""
    do_crack: bool = False
    do_zip: bool = False
    do_upload: bool = False
    size_bytes: int = 0
    item_id: str = ""
    outcomes: Dict[Phase, PhaseOutcome] = field(default_factory=dict)
    archive_path: Optional[Path] = None
    upload_url: Optional[str] = None
    final_url: Optional[str] = None

    def __post_init__(self):
        self.path = Path(self.path)
        if not self.name:
            self.name = self.path.name
        if not self.item_id:
            self.item_id = str(self.path)
        if self.do_upload and not self.do_zip:
            raise InvariantViolation(f"{self.name}: upload requires zip")

    @classmethod
    def from_folder(
        cls,
        path: Path,
        app_id: str = "",
        name: str = "",
        crack: bool = False,
        compress: bool = False,
        upload: bool = False,
    ) -> "BatchItem":
        """Build an item and measure its folder size."""
        path = Path(path)
        try:
            if not path.is_dir():
                raise OSError(f"not a directory: {path}")
            size = folder_size(path)
        except OSError as e:
            logger.warning(f"Could not size {path}: {e} - assuming 1 GB")
            size = FALLBACK_FOLDER_SIZE
        return cls(
            path=path,
            name=name or path.name,
            app_id=app_id,
            do_crack=crack,
            do_zip=compress or upload,
            do_upload=upload,
            size_bytes=size,
        )

    def outcome(self, phase: Phase) -> PhaseOutcome:
        """Outcome for phase, created as PENDING on first access."""
        if phase not in self.outcomes:
            self.outcomes[phase] = PhaseOutcome()
        return self.outcomes[phase]

    def set_outcome(self, phase: Phase, outcome: PhaseOutcome) -> None:
        self.outcomes[phase] = outcome

    @property
    def requested_phases(self) -> List[Phase]:
        phases = []
        if self.do_crack:
            phases.append(Phase.CRACK)
        if self.do_zip:
            phases.append(Phase.ZIP)
        if self.do_upload:
            phases.append(Phase.UPLOAD)
        return phases

    @property
    def succeeded(self) -> bool:
        """True when every requested phase succeeded."""
        return all(self.outcome(p).success for p in self.requested_phases)


@dataclass(frozen=True)
class RateModel:
    """Learned throughput in bytes/sec. Never zero."""
    zip_rate_level0: float = 50_000_000.0
    zip_rate_compressed: float = 30_000_000.0
    upload_rate: float = 5_000_000.0

    def zip_rate_for(self, level: int) -> float:
        return self.zip_rate_level0 if level == 0 else self.zip_rate_compressed


DEFAULT_RATES = RateModel()


@dataclass(frozen=True)
class UploadResultInfo:
    """An uploaded archive and its links."""
    item_name: str
    original_url: str
    mirror_url: Optional[str] = None
    archive_size: int = 0

    @property
    def final_url(self) -> str:
        return self.mirror_url or self.original_url


@dataclass
class BatchSummary:
    """Aggregated result of a batch run."""
    total_items: int = 0
    cracked: int = 0
    crack_failed: int = 0
    zipped: int = 0
    zip_failed: int = 0
    uploaded: int = 0
    upload_failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    succeeded: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)
    upload_results: List[UploadResultInfo] = field(default_factory=list)
    duration: float = 0.0

    @property
    def failed(self) -> int:
        return self.crack_failed + self.zip_failed + self.upload_failed

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    @classmethod
    def from_items(cls, items: List[BatchItem], duration: float = 0.0) -> "BatchSummary":
        """Count outcomes across items."""
        summary = cls(total_items=len(items), duration=duration)
        counters = {
            Phase.CRACK: ("cracked", "crack_failed"),
            Phase.ZIP: ("zipped", "zip_failed"),
            Phase.UPLOAD: ("uploaded", "upload_failed"),
        }
        for item in items:
            item_skipped = False
            item_cancelled = False
            item_failed = False
            for phase in item.requested_phases:
                outcome = item.outcome(phase)
                ok_attr, fail_attr = counters[phase]
                if outcome.status == OutcomeStatus.SUCCESS:
                    setattr(summary, ok_attr, getattr(summary, ok_attr) + 1)
                elif outcome.status == OutcomeStatus.FAILED:
                    setattr(summary, fail_attr, getattr(summary, fail_attr) + 1)
                    item_failed = True
                    summary.failures.append((item.name, f"{phase.value}: {outcome.error or 'unknown error'}"))
                elif outcome.status == OutcomeStatus.SKIPPED:
                    item_skipped = True
                elif outcome.status == OutcomeStatus.CANCELLED:
                    item_cancelled = True
            if item_cancelled:
                summary.cancelled += 1
            elif item_skipped and not item_failed:
                summary.skipped += 1
            if item.requested_phases and item.succeeded:
                summary.succeeded += 1
            if item.upload_url:
                mirror = item.final_url if item.final_url != item.upload_url else None
                summary.upload_results.append(
                    UploadResultInfo(
                        item_name=item.name,
                        original_url=item.upload_url,
                        mirror_url=mirror,
                        archive_size=_safe_size(item.archive_path),
                    )
                )
        return summary

    def summary_line(self) -> str:
        parts = []
        if self.cracked:
            parts.append(f"{self.cracked} cracked")
        if self.zipped:
            parts.append(f"{self.zipped} zipped")
        if self.uploaded:
            parts.append(f"{self.uploaded} uploaded")
        if self.crack_failed:
            parts.append(f"{self.crack_failed} crack failed")
        if self.zip_failed:
            parts.append(f"{self.zip_failed} zip failed")
        if self.upload_failed:
            parts.append(f"{self.upload_failed} upload failed")
        if self.skipped:
            parts.append(f"{self.skipped} skipped")
        if self.cancelled:
            parts.append(f"{self.cancelled} cancelled")
        return ", ".join(parts) if parts else "No operations performed"

    def failure_report(self, limit: int = 10) -> str:
        lines = [f"- {name}: {reason}" for name, reason in self.failures[:limit]]
        if len(self.failures) > limit:
            lines.append(f"... and {len(self.failures) - limit} more")
        return "\n".join(lines)

    def format_links(self, bbcode: bool = False) -> str:
        if bbcode:
            return "\n\n".join(f"[url={r.final_url}]{r.item_name}[/url]" for r in self.upload_results)
        return "\n".join(f"{r.item_name}: {r.final_url}" for r in self.upload_results)


def _safe_size(path: Optional[Path]) -> int:
    if path is None:
        return 0
    try:
        return Path(path).stat().st_size
    except OSError:
        return 0


def _env_int(name: str, default: int, low: int, high: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not an integer")
        return default
    if not low <= value <= high:
        logger.warning(f"Ignoring {name}={value}: expected {low}..{high}")
        return default
    return value


@dataclass(frozen=True)
class BatchConfig:
    """Immutable configuration for a batch run."""
    archive_format: str = "7z"
    compression_level: int = 5
    password: Optional[str] = None
    emulator: str = "goldberg"
    convert_links: bool = True
    max_concurrent_uploads: int = 3
    max_retries: int = 3
    retry_delay: float = 2.0
    progress_interval: float = 20.0
    progress_throttle: float = 0.25
    crack_seconds_per_item: float = 3.0
    conversion_seconds_per_item: float = 45.0
    safety_multiplier: float = 1.3
    rate_smoothing: float = 0.7
    rates_path: Optional[Path] = None

    def __post_init__(self):
        if self.archive_format not in ("7z", "zip"):
            raise ValueError(f"Unsupported archive format: {self.archive_format}")
        if not 0 <= self.compression_level <= 9:
            raise ValueError(f"Compression level must be 0-9, got {self.compression_level}")
        if self.emulator not in ("goldberg", "ali213"):
            raise ValueError(f"Unsupported emulator: {self.emulator}")
        if self.max_concurrent_uploads < 1:
            raise ValueError("max_concurrent_uploads must be at least 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    @property
    def archive_extension(self) -> str:
        return f".{self.archive_format}"

    @classmethod
    def from_env(cls, **overrides) -> "BatchConfig":
        """Build config from GAMEBATCH_* environment variables."""
        values = {
            "max_concurrent_uploads": _env_int("GAMEBATCH_MAX_UPLOADS", 3, 1, 16),
            "max_retries": _env_int("GAMEBATCH_MAX_RETRIES", 3, 1, 20),
            "compression_level": _env_int("GAMEBATCH_COMPRESSION_LEVEL", 5, 0, 9),
        }
        fmt = (os.getenv("GAMEBATCH_ARCHIVE_FORMAT") or "7z").lower()
        if fmt not in ("7z", "zip"):
            logger.warning(f"Ignoring GAMEBATCH_ARCHIVE_FORMAT={fmt!r}")
            fmt = "7z"
        values["archive_format"] = fmt
        if os.getenv("GAMEBATCH_PASSWORD"):
            values["password"] = os.getenv("GAMEBATCH_PASSWORD")
        convert = os.getenv("GAMEBATCH_CONVERT_LINKS")
        if convert is not None:
            values["convert_links"] = convert.strip().lower() not in ("0", "false", "no", "off")
        if os.getenv("GAMEBATCH_RATES_PATH"):
            values["rates_path"] = Path(os.environ["GAMEBATCH_RATES_PATH"]).expanduser()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
