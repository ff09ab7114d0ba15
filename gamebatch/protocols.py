"""
Protocols (Interfaces) for the collaborators the pipeline calls into.

Each collaborator handles exactly one folder, archive or URL; the
pipeline owns sequencing, concurrency and retries.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from .utils.cancellation import CancellationToken


@dataclass(frozen=True)
class CrackContext:
    """Everything a crack helper needs, passed explicitly down the call chain."""
    folder: Path
    app_id: str
    emulator: str = "goldberg"


@dataclass
class CrackResult:
    """Result of patching one folder."""
    success: bool
    modified_files: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def error_message(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None


@dataclass
class ArchiveResult:
    """Result of compressing one folder."""
    success: bool
    output_path: Optional[Path] = None
    error: Optional[str] = None


# (fraction 0.0-1.0, bytes_done, total_bytes)
UploadProgressCallback = Callable[[float, int, int], None]


@runtime_checkable
class ICracker(Protocol):
    """Interface for the DRM-bypass patch of one folder. Must be re-runnable."""

    async def crack(
        self,
        context: CrackContext,
        status_callback: Optional[Callable[[str], None]] = None
    ) -> CrackResult:
        ...


@runtime_checkable
class IArchiver(Protocol):
    """Interface for compressing one folder."""

    async def compress(
        self,
        source: Path,
        output: Path,
        fmt: str = "7z",
        level: int = 5,
        password: Optional[str] = None,
        progress_callback: Optional[Callable[[int], None]] = None
    ) -> ArchiveResult:
        """Compress source into output, reporting 0-100 progress."""
        ...


@runtime_checkable
class IUploader(Protocol):
    """Interface for uploading one file."""

    async def upload(
        self,
        path: Path,
        progress_callback: Optional[UploadProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> Optional[str]:
        """Upload file and return its download URL (None on failure)."""
        ...


@runtime_checkable
class ILinkConverter(Protocol):
    """Interface for turning an upload URL into a mirror URL."""

    async def convert(
        self,
        url: str,
        size_hint: int = 0,
        cancel_token: Optional[CancellationToken] = None
    ) -> Optional[str]:
        ...


class IRateStore(ABC):
    """Interface for persisted key/value throughput settings."""

    @abstractmethod
    def read(self) -> Dict[str, Any]:
        """Return stored values (empty dict when nothing is stored)."""
        pass

    @abstractmethod
    def write(self, values: Dict[str, Any]) -> None:
        """Persist values."""
        pass
