"""
Archiver Service - compresses one folder with 7-Zip.

Falls back to the standard library zipfile module for plain zip archives
when no 7-Zip binary is available.
"""
from pathlib import Path
from typing import Callable, List, Optional
import asyncio
import logging
import os
import re
import shutil
import zipfile

from ..protocols import ArchiveResult

logger = logging.getLogger(__name__)

SEVEN_ZIP_CANDIDATES = ("7z", "7za", "7zz")
WINDOWS_PATHS = (
    r"C:\Program Files\7-Zip\7z.exe",
    r"C:\Program Files (x86)\7-Zip\7z.exe",
)
_PERCENT_RE = re.compile(rb"(\d{1,3})%")

LEVEL_LABELS = {0: "no compression", 1: "fast", 5: "normal", 9: "maximum"}


def level_label(level: int) -> str:
    """Human name for a compression level."""
    if level in LEVEL_LABELS:
        return LEVEL_LABELS[level]
    return "fast" if level < 5 else ("normal" if level < 9 else "maximum")


def find_seven_zip() -> Optional[str]:
    """Locate a 7-Zip executable on PATH or in the usual install folders."""
    for name in SEVEN_ZIP_CANDIDATES:
        found = shutil.which(name)
        if found:
            return found
    for candidate in WINDOWS_PATHS:
        if os.path.isfile(candidate):
            return candidate
    return None


def parse_progress(chunk: bytes) -> List[int]:
    """Extract NN% tokens from 7-Zip -bsp1 output."""
    return [min(100, int(m)) for m in _PERCENT_RE.findall(chunk)]


class SevenZipArchiver:
    """
    Compresses a folder into a 7z or zip archive.

    Usage:
        archiver = SevenZipArchiver()
        result = await archiver.compress(folder, folder.with_suffix(".7z"), "7z", 5)
    """

    def __init__(self, binary: Optional[str] = None):
        self._binary = binary or find_seven_zip()

    @property
    def binary(self) -> Optional[str]:
        return self._binary

    def build_command(
        self,
        source: Path,
        output: Path,
        fmt: str,
        level: int,
        password: Optional[str] = None
    ) -> List[str]:
        cmd = [self._binary or "7z", "a", f"-t{fmt}", f"-mx{level}"]
        if password:
            cmd.append(f"-p{password}")
            if fmt == "7z":
                cmd.append("-mhe=on")
        cmd += ["-bsp1", "-bso0", "-y", str(output), str(Path(source) / "*"), "-r"]
        return cmd

    async def compress(
        self,
        source: Path,
        output: Path,
        fmt: str = "7z",
        level: int = 5,
        password: Optional[str] = None,
        progress_callback: Optional[Callable[[int], None]] = None
    ) -> ArchiveResult:
        source = Path(source)
        output = Path(output)
        if not source.is_dir():
            return ArchiveResult(False, error=f"Folder not found: {source}")

        if output.exists():
            try:
                output.unlink()
            except OSError as e:
                return ArchiveResult(False, error=f"Cannot replace existing archive: {e}")

        if self._binary is None:
            if fmt == "zip" and not password:
                return await self._compress_stdlib(source, output, level, progress_callback)
            return ArchiveResult(False, error="7-Zip not found and built-in zip cannot do this format")

        cmd = self.build_command(source, output, fmt, level, password)
        logger.debug(f"Running 7-Zip for {source.name} ({fmt}, {level_label(level)})")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return ArchiveResult(False, error=f"Failed to start 7-Zip: {e}")

        stderr_task = asyncio.ensure_future(proc.stderr.read())
        last = -1
        while True:
            chunk = await proc.stdout.read(256)
            if not chunk:
                break
            for percent in parse_progress(chunk):
                if percent != last and progress_callback:
                    last = percent
                    progress_callback(percent)
        code = await proc.wait()
        stderr = (await stderr_task).decode(errors="replace").strip()

        if code != 0:
            message = stderr.splitlines()[-1] if stderr else f"7-Zip exited with code {code}"
            logger.error(f"7-Zip failed for {source.name}: {message}")
            return ArchiveResult(False, error=message)

        if progress_callback and last != 100:
            progress_callback(100)
        return ArchiveResult(True, output_path=output)

    async def _compress_stdlib(
        self,
        source: Path,
        output: Path,
        level: int,
        progress_callback: Optional[Callable[[int], None]]
    ) -> ArchiveResult:
        """Plain zip with zipfile, run in a worker thread."""
        loop = asyncio.get_running_loop()

        def report(percent: int):
            if progress_callback:
                loop.call_soon_threadsafe(progress_callback, percent)

        def _build():
            files = [p for p in source.rglob("*") if p.is_file()]
            total = sum(p.stat().st_size for p in files) or 1
            method = zipfile.ZIP_STORED if level == 0 else zipfile.ZIP_DEFLATED
            kwargs = {} if level == 0 else {"compresslevel": level}
            done = 0
            last = -1
            with zipfile.ZipFile(output, "w", method, **kwargs) as zf:
                for path in files:
                    zf.write(path, path.relative_to(source))
                    done += path.stat().st_size
                    percent = int(done * 100 / total)
                    if percent != last:
                        last = percent
                        report(percent)

        try:
            await asyncio.to_thread(_build)
        except (OSError, zipfile.BadZipFile) as e:
            logger.error(f"Built-in zip failed for {source.name}: {e}")
            return ArchiveResult(False, error=str(e))
        if progress_callback:
            progress_callback(100)
        return ArchiveResult(True, output_path=output)
