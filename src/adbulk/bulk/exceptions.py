"""Exceptions raised by the bulk mutation pipeline."""

from __future__ import annotations


class BulkError(Exception):
    """Base class for pipeline errors."""


class RemoteApiError(BulkError):
    """A call to the bulk mutation API failed.

    Attributes:
        message: Human-readable failure text from the platform.
        code: Machine-readable error code (e.g. ``quota_error.RESOURCE_EXHAUSTED``)
            when the platform supplied one.
        transient: True when the failure is a server-side hiccup that a
            later attempt may not hit.
    """

    def __init__(self, message: str, code: str | None = None, transient: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.transient = transient


class UnknownCampaignError(BulkError):
    """A queue item references a campaign missing from the resolution context.

    The whole batch is abandoned; the caller purges the campaign's queue rows.
    """

    def __init__(self, campaign_id: int) -> None:
        super().__init__(f"Campaign {campaign_id} is not known locally")
        self.campaign_id = campaign_id


class UnexpectedJobStateError(BulkError):
    """A due job was polled repeatedly while not awaiting results."""

    def __init__(self, job_id: int, status: str, attempts: int) -> None:
        super().__init__(
            f"Batch job {job_id} polled {attempts} times in status '{status}'"
        )
        self.job_id = job_id
        self.status = status
        self.attempts = attempts


class InvalidJobTransitionError(BulkError):
    """A batch job status change is not allowed by the job lifecycle."""
