"""Bulk mutation sync pipeline for Google Ads content."""

__version__ = "0.1.0"

from adbulk.models import Action, BatchJob, BulkConfig, JobStatus, OperandType, QueueItem

__all__ = [
    "Action",
    "BatchJob",
    "BulkConfig",
    "JobStatus",
    "OperandType",
    "QueueItem",
    "__version__",
]
