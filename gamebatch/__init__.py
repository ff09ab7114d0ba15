"""
gamebatch - batch crack, archive and upload of game folders.

Each folder goes through up to three phases: crack (sequential), archive
(7z/zip) and upload (bounded pool, retried, with optional link
conversion). Progress is reported as a non-decreasing percentage with an
ETA based on rates learned from earlier runs.

Usage:
    from gamebatch import BatchOrchestrator, BatchItem, BatchConfig

    items = [
        BatchItem.from_folder("/games/Portal", app_id="400", crack=True, upload=True),
        BatchItem.from_folder("/games/Braid", compress=True),
    ]
    config = BatchConfig(compression_level=0, max_concurrent_uploads=3)

    async with BatchOrchestrator(config, upload_url=url, cracker_command="crack-tool") as orchestrator:
        process = orchestrator.process(items)
        process.on_progress(lambda update: print(f"{update.percent}% ETA {update.eta_seconds:.0f}s"))
        await process.start()
        ...
        await process.cancel(items[0].item_id)   # skip one upload
        summary = await process.wait()
        print(summary.summary_line())
"""
from .orchestrator import BatchOrchestrator, BatchProcess, PipelineCoordinator
from .models import (
    BatchConfig,
    BatchItem,
    BatchSummary,
    OutcomeStatus,
    Phase,
    PhaseOutcome,
    RateModel,
)
from .errors import (
    BatchError,
    InfrastructureError,
    InvariantViolation,
    OperationCancelled,
    PermanentItemError,
    TransientItemError,
)

__version__ = "0.1.0"
__all__ = [
    # Main
    "BatchOrchestrator",
    "BatchProcess",
    "PipelineCoordinator",
    # Models
    "BatchConfig",
    "BatchItem",
    "BatchSummary",
    "OutcomeStatus",
    "Phase",
    "PhaseOutcome",
    "RateModel",
    # Errors
    "BatchError",
    "InfrastructureError",
    "InvariantViolation",
    "OperationCancelled",
    "PermanentItemError",
    "TransientItemError",
]
