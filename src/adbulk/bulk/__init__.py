"""Submit, poll, reconcile and commit batches of ad content mutations.

Public API:
    BulkOrchestrator -- scheduler entry points (schedule, process_due_jobs)
    AsyncBulkStateManager -- aiosqlite-backed queue/job/confirmed stores
    BulkMutationApi -- protocol implemented by the remote client
    GoogleAdsBulkClient -- google-ads implementation (imported lazily)
    ErrorClassifier -- maps raw platform errors to categories
"""

from adbulk.bulk.builder import BuiltBatch, OperationBuilder
from adbulk.bulk.classifier import ErrorClassifier
from adbulk.bulk.client import (
    BulkMutationApi,
    JobResults,
    JobStatusReport,
    Operation,
    OperationFailure,
    RemoteEntity,
)
from adbulk.bulk.exceptions import (
    BulkError,
    InvalidJobTransitionError,
    RemoteApiError,
    UnexpectedJobStateError,
    UnknownCampaignError,
)
from adbulk.bulk.notifier import LoggingNotifier, Notifier
from adbulk.bulk.orchestrator import BulkOrchestrator
from adbulk.bulk.state import AsyncBulkStateManager

__all__ = [
    "AsyncBulkStateManager",
    "BuiltBatch",
    "BulkError",
    "BulkMutationApi",
    "BulkOrchestrator",
    "ErrorClassifier",
    "InvalidJobTransitionError",
    "JobResults",
    "JobStatusReport",
    "LoggingNotifier",
    "Notifier",
    "Operation",
    "OperationBuilder",
    "OperationFailure",
    "RemoteApiError",
    "RemoteEntity",
    "UnexpectedJobStateError",
    "UnknownCampaignError",
]
