"""
Error taxonomy for batch processing.

Every per-item failure is one of these and is converted into a
PhaseOutcome at the item boundary. Only InvariantViolation may abort
a whole batch.
"""


class BatchError(Exception):
    """Base class for batch pipeline errors."""


class TransientItemError(BatchError):
    """Lock contention, network blip... retried by RetryPolicy."""


class PermanentItemError(BatchError):
    """Missing app id, folder gone... failed immediately, never retried."""


class InfrastructureError(BatchError):
    """Archiver binary missing, process spawn failure."""


class OperationCancelled(BatchError):
    """User cancelled the item or the whole batch."""


class InvariantViolation(BatchError):
    """Programming error. The only error allowed to abort the batch."""
