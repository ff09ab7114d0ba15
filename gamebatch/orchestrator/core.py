"""Core orchestrator - wires services into a PipelineCoordinator."""
from pathlib import Path
from typing import List, Optional, Sequence, Union
import asyncio

from ..models import BatchConfig, BatchItem, BatchSummary
from ..protocols import IArchiver, ICracker, ILinkConverter, IRateStore, IUploader
from ..services.archiver import SevenZipArchiver
from ..services.cracker import ExternalCracker
from ..services.link_converter import HTTPLinkConverter
from ..services.rates import JsonRateStore, RateLearner
from ..services.uploader import HTTPUploader
from ..utils.events import EventEmitter

from .cleanup import CleanupReport, restore_backups
from .coordinator import PipelineCoordinator
from .process import BatchProcess


class BatchOrchestrator:
    """
    Orchestrates game folder batches using injected or default services.

    Usage:
        items = [BatchItem.from_folder(path, app_id="480", crack=True, upload=True)]
        async with BatchOrchestrator(config, upload_url=url) as orchestrator:
            process = orchestrator.process(items)
            process.on_progress(lambda update: print(update.percent))
            summary = await process.wait()
    """

    def __init__(
        self,
        config: Optional[BatchConfig] = None,
        upload_url: Optional[str] = None,
        convert_url: Optional[str] = None,
        cracker_command: Optional[Union[str, Sequence[str]]] = None,
        archiver: Optional[IArchiver] = None,
        uploader: Optional[IUploader] = None,
        converter: Optional[ILinkConverter] = None,
        cracker: Optional[ICracker] = None,
        rate_store: Optional[IRateStore] = None,
    ):
        """
        Initialize orchestrator with dependencies.

        Args:
            config: Batch configuration (defaults to BatchConfig.from_env())
            upload_url: Upload endpoint used when no uploader is given
            convert_url: Link conversion endpoint used when no converter is given
            cracker_command: External crack tool used when no cracker is given
            archiver/uploader/converter/cracker: Pre-built collaborators
            rate_store: Storage for learned rates (defaults to the JSON file)
        """
        self._config = config or BatchConfig.from_env()
        self._upload_url = upload_url
        self._convert_url = convert_url
        self._cracker_command = cracker_command
        self._archiver = archiver
        self._uploader = uploader
        self._converter = converter
        self._cracker = cracker
        self._rate_store = rate_store

        # Initialized in __aenter__
        self._events: Optional[EventEmitter] = None
        self._coordinator: Optional[PipelineCoordinator] = None
        self._processes: List[BatchProcess] = []

    async def __aenter__(self):
        """Build default services and the coordinator."""
        archiver = self._archiver or SevenZipArchiver()
        uploader = self._uploader
        if uploader is None and self._upload_url:
            uploader = HTTPUploader(self._upload_url)
        converter = self._converter
        if converter is None and self._convert_url:
            converter = HTTPLinkConverter(self._convert_url)
        cracker = self._cracker
        if cracker is None and self._cracker_command:
            cracker = ExternalCracker(self._cracker_command)
        store = self._rate_store or JsonRateStore(self._config.rates_path)

        self._events = EventEmitter()
        self._coordinator = PipelineCoordinator(
            archiver,
            uploader=uploader,
            cracker=cracker,
            converter=converter,
            config=self._config,
            rate_learner=RateLearner(store),
            events=self._events,
        )
        return self

    async def __aexit__(self, *args):
        """Cancel processes still running when the block exits."""
        for process in self._processes:
            if process.is_running:
                await process.cancel()

    @property
    def config(self) -> BatchConfig:
        return self._config

    @property
    def coordinator(self) -> PipelineCoordinator:
        assert self._coordinator is not None, "Use BatchOrchestrator as an async context manager"
        return self._coordinator

    def process(self, items: List[BatchItem]) -> BatchProcess:
        """Create a process for items (not started)."""
        process = BatchProcess(self.coordinator, items)
        self._processes.append(process)
        return process

    async def run(self, items: List[BatchItem]) -> BatchSummary:
        """Run items to completion."""
        return await self.process(items).wait()

    async def restore(self, folder: Path) -> CleanupReport:
        """Undo a previous crack of folder."""
        return await asyncio.to_thread(restore_backups, Path(folder))
