"""
Crack artifact cleanup.

Undoes what a previous crack run left behind so repeated batch runs are
safe. restore_backups() is usable on its own; clean_crack_artifacts()
restores backups and also deletes generated files.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List
import fnmatch
import logging
import os
import shutil

logger = logging.getLogger(__name__)

BACKUP_PATTERNS = ("*.dll.bak", "*.exe.bak")
SETTINGS_DIR_NAMES = ("steam_settings",)
ARTIFACT_PATTERNS = (
    "_[[]*",  # fnmatch escape for a literal "_["
    "_lobby_connect*",
    "lobby_connect*",
    "*.lnk",
    "CreamAPI.dll",
    "cream_api.ini",
    "CreamLinux",
    "steam_api_o.dll",
    "steam_api64_o.dll",
    "local_save.txt",
)


@dataclass
class CleanupReport:
    """What a cleanup pass did to one folder."""
    folder: Path
    restored: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.restored or self.removed)


def _matches(name: str, patterns: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch.fnmatchcase(lowered, p.lower()) for p in patterns)


def _walk(folder: Path, report: CleanupReport):
    def onerror(err: OSError):
        report.errors.append(f"{err.filename}: {err.strerror}")
        logger.debug(f"Cleanup walk error: {err}")

    yield from os.walk(folder, onerror=onerror)


def restore_backups(folder: Path, report: CleanupReport = None) -> CleanupReport:
    """Put every *.dll.bak / *.exe.bak back in place of the patched file."""
    folder = Path(folder)
    report = report or CleanupReport(folder)
    if not folder.is_dir():
        return report

    for root, _dirs, files in _walk(folder, report):
        for name in files:
            if not _matches(name, BACKUP_PATTERNS):
                continue
            backup = Path(root) / name
            original = backup.with_name(name[:-len(".bak")])
            try:
                if original.exists():
                    original.unlink()
                backup.rename(original)
                report.restored.append(str(original))
            except OSError as e:
                report.errors.append(f"{backup}: {e}")
                logger.debug(f"Could not restore {backup}: {e}")
    return report


def clean_crack_artifacts(folder: Path) -> CleanupReport:
    """Restore backups, drop settings directories and crack leftovers."""
    folder = Path(folder)
    report = CleanupReport(folder)
    if not folder.is_dir():
        logger.debug(f"Cleanup skipped, not a folder: {folder}")
        return report

    restore_backups(folder, report)

    for root, dirs, files in _walk(folder, report):
        for name in list(dirs):
            if name.lower() in SETTINGS_DIR_NAMES or _matches(name, ARTIFACT_PATTERNS):
                target = Path(root) / name
                try:
                    shutil.rmtree(target)
                    report.removed.append(str(target))
                    dirs.remove(name)
                except OSError as e:
                    report.errors.append(f"{target}: {e}")
                    logger.debug(f"Could not remove {target}: {e}")
        for name in files:
            if not _matches(name, ARTIFACT_PATTERNS):
                continue
            target = Path(root) / name
            try:
                target.unlink()
                report.removed.append(str(target))
            except OSError as e:
                report.errors.append(f"{target}: {e}")
                logger.debug(f"Could not remove {target}: {e}")

    if report.changed:
        logger.info(
            f"Cleaned {folder.name}: {len(report.restored)} restored, "
            f"{len(report.removed)} removed, {len(report.errors)} errors"
        )
    return report
