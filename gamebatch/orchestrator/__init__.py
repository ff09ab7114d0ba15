"""Orchestrator package - coordinates batch workflows."""
from .cleanup import CleanupReport, clean_crack_artifacts, restore_backups
from .coordinator import PipelineCoordinator
from .core import BatchOrchestrator
from .process import BatchProcess, ProcessState

__all__ = [
    "BatchOrchestrator",
    "BatchProcess",
    "ProcessState",
    "PipelineCoordinator",
    "CleanupReport",
    "clean_crack_artifacts",
    "restore_backups",
]
