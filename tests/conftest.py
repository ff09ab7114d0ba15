"""Shared fakes for gamebatch tests."""
import asyncio
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from gamebatch.models import BatchConfig, BatchItem, MB
from gamebatch.orchestrator.coordinator import PipelineCoordinator
from gamebatch.protocols import ArchiveResult, CrackResult, IRateStore
from gamebatch.services.rates import RateLearner
from gamebatch.services.retry import RetryPolicy


class MemoryRateStore(IRateStore):
    def __init__(self, data: Optional[dict] = None):
        self.data = dict(data or {})
        self.writes = 0

    def read(self):
        return dict(self.data)

    def write(self, values):
        self.writes += 1
        self.data = dict(values)


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCracker:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0

    async def crack(self, context, status_callback=None):
        self.calls.append(Path(context.folder).name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            if status_callback:
                status_callback("patching")
            if Path(context.folder).name in self.fail_for:
                return CrackResult(False, errors=["steam_api.dll not found"])
            return CrackResult(True, modified_files=["steam_api.dll"])
        finally:
            self.active -= 1


class FakeArchiver:
    """Writes a small archive; can fail or wait on gates per folder name."""

    def __init__(self, fail_for=(), clock: Optional[ManualClock] = None, seconds: float = 0.0):
        self.fail_for = set(fail_for)
        self.clock = clock
        self.seconds = seconds
        self.calls: List[str] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.done: Dict[str, asyncio.Event] = {}

    def done_event(self, name: str) -> asyncio.Event:
        return self.done.setdefault(name, asyncio.Event())

    async def compress(self, source, output, fmt="7z", level=5, password=None, progress_callback=None):
        name = Path(source).name
        self.calls.append(name)
        if name in self.gates:
            await self.gates[name].wait()
        if self.clock:
            self.clock.advance(self.seconds)
        if progress_callback:
            progress_callback(50)
        await asyncio.sleep(0)
        if name in self.fail_for:
            return ArchiveResult(False, error="disk full")
        Path(output).write_bytes(b"x" * 1024)
        if progress_callback:
            progress_callback(100)
        self.done_event(name).set()
        return ArchiveResult(True, output_path=Path(output))


class FakeUploader:
    """
    Returns scripted results per archive stem.

    A script entry is either a URL string, None (no URL) or an exception
    to raise. The last entry repeats once the script runs out.
    """

    def __init__(self, scripts: Optional[Dict[str, list]] = None, clock: Optional[ManualClock] = None,
                 seconds: float = 0.0, reported_bytes: int = 1024):
        self.scripts = scripts or {}
        self.clock = clock
        self.seconds = seconds
        self.reported_bytes = reported_bytes
        self.calls: List[str] = []
        self.started: Dict[str, asyncio.Event] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.active = 0
        self.max_active = 0

    def started_event(self, name: str) -> asyncio.Event:
        return self.started.setdefault(name, asyncio.Event())

    async def upload(self, path, progress_callback=None, cancel_token=None):
        name = Path(path).stem
        attempt = self.calls.count(name)
        self.calls.append(name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started_event(name).set()
        try:
            if name in self.gates:
                await self.gates[name].wait()
            await asyncio.sleep(0)
            if self.clock:
                self.clock.advance(self.seconds)
            if progress_callback:
                progress_callback(1.0, self.reported_bytes, self.reported_bytes)
            script = self.scripts.get(name, [f"https://files.example/{name}"])
            result = script[min(attempt, len(script) - 1)]
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.active -= 1


class FakeConverter:
    def __init__(self, result=None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls: List[str] = []

    async def convert(self, url, size_hint=0, cancel_token=None):
        self.calls.append(url)
        if self.error:
            raise self.error
        return self.result


def make_item(root: Path, name: str, size_mb: int = 100, crack=False, compress=False, upload=False,
              app_id="480") -> BatchItem:
    folder = root / name
    folder.mkdir(parents=True, exist_ok=True)
    (folder / "game.exe").write_bytes(b"MZ")
    return BatchItem(
        path=folder,
        app_id=app_id,
        do_crack=crack,
        do_zip=compress or upload,
        do_upload=upload,
        size_bytes=size_mb * MB,
    )


async def no_sleep(_delay):
    await asyncio.sleep(0)


@pytest.fixture
def rate_store():
    return MemoryRateStore()


@pytest.fixture
def make_coordinator(rate_store):
    def factory(archiver=None, uploader=None, cracker=None, converter=None, clock=None, **config):
        config.setdefault("convert_links", converter is not None)
        config.setdefault("progress_interval", 3600.0)
        batch_config = BatchConfig(**config)
        return PipelineCoordinator(
            archiver or FakeArchiver(),
            uploader=uploader,
            cracker=cracker,
            converter=converter,
            config=batch_config,
            rate_learner=RateLearner(rate_store),
            retry_policy=RetryPolicy(batch_config.max_retries, 0.0, sleep=no_sleep),
            clock=clock or time.monotonic,
        )
    return factory
