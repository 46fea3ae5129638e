"""Data models and enums for the bulk mutation pipeline."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from adbulk import constants

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Format *moment* as the fixed-width UTC string stored in SQLite."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def from_iso(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class OperandType(str, Enum):
    """Kind of advertising content carried by a queue item."""

    AD = "ad"
    AD_GROUP = "ad_group"
    KEYWORD = "keyword"
    EXTENSION = "extension"


class Action(str, Enum):
    """Mutation requested for a queue item."""

    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class JobStatus(str, Enum):
    """Local status of a submitted batch job."""

    PENDING_RESULT = "pending_result"
    PENDING_CANCELLATION = "pending_cancellation"
    COMPLETE = "complete"
    ERROR = "error"


class RemoteJobStatus(str, Enum):
    """Status reported by the platform for a remote batch job."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    UNKNOWN = "UNKNOWN"
    UNSPECIFIED = "UNSPECIFIED"


@dataclass(slots=True, frozen=True)
class PolicyExemption:
    """Marker asking the platform to exempt a reviewed policy violation."""

    policy_name: str
    violating_text: str

    def to_dict(self) -> dict[str, str]:
        return {"policy_name": self.policy_name, "violating_text": self.violating_text}


@dataclass(slots=True)
class QueueItem:
    """A locally authored change waiting to be pushed to the platform.

    ``error`` set means the item is parked: it is never selected into a
    batch until an operator clears it.
    """

    id: int
    operand_type: OperandType
    action: Action
    account_id: str
    campaign_id: int
    natural_text: str
    template_id: int | None = None
    parent_external_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    external_id: str | None = None
    error: str | None = None
    exemptions: list[PolicyExemption] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> QueueItem:
        """Build a QueueItem from a ``queue_items`` row."""
        exemptions = json.loads(row["exemptions_json"] or "[]")
        return cls(
            id=row["id"],
            operand_type=OperandType(row["operand_type"]),
            action=Action(row["action"]),
            account_id=row["account_id"],
            campaign_id=row["campaign_id"],
            natural_text=row["natural_text"],
            template_id=row["template_id"],
            parent_external_id=row["parent_external_id"],
            attributes=json.loads(row["attributes_json"] or "{}"),
            external_id=row["external_id"],
            error=row["error"],
            exemptions=[PolicyExemption(**e) for e in exemptions],
        )

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary with enum values as strings."""
        d = asdict(self)
        d["operand_type"] = self.operand_type.value
        d["action"] = self.action.value
        return d


@dataclass(slots=True)
class CampaignRef:
    """Local campaign with its platform-side identity."""

    id: int
    account_id: str
    external_id: str
    name: str


@dataclass(slots=True)
class BatchJob:
    """One submitted remote bulk-mutation job.

    ``item_ids`` is the submission order: position *p* is the logical item
    whose operations were uploaded p-th.
    """

    id: int
    operand_type: OperandType
    action: Action
    account_id: str
    status: JobStatus
    remote_job_id: str | None
    attempts: int
    next_poll_at: datetime
    item_ids: list[int] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], item_ids: list[int]) -> BatchJob:
        return cls(
            id=row["id"],
            operand_type=OperandType(row["operand_type"]),
            action=Action(row["action"]),
            account_id=row["account_id"],
            status=JobStatus(row["status"]),
            remote_job_id=row["remote_job_id"],
            attempts=row["attempts"],
            next_poll_at=from_iso(row["next_poll_at"]),
            item_ids=item_ids,
            error=row["error"],
        )


@dataclass(slots=True)
class ConfirmedEntity:
    """Local mirror of content known to exist on the platform."""

    operand_type: OperandType
    external_id: str
    account_id: str
    campaign_id: int
    natural_text: str
    template_id: int | None = None
    parent_external_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_item(cls, item: QueueItem, external_id: str) -> ConfirmedEntity:
        return cls(
            operand_type=item.operand_type,
            external_id=external_id,
            account_id=item.account_id,
            campaign_id=item.campaign_id,
            natural_text=item.natural_text,
            template_id=item.template_id,
            parent_external_id=item.parent_external_id,
            attributes=dict(item.attributes),
        )


@dataclass(slots=True)
class ErrorRecord:
    """Operator-facing record of a failed item."""

    operand_type: OperandType
    item_id: int
    campaign_id: int
    campaign_name: str | None
    natural_text: str
    raw_message: str
    category: str


@dataclass
class BulkConfig:
    """Configuration for the bulk mutation pipeline.

    Controls batch sizing, upload chunking, polling cadence and the
    Google Ads connection. Credentials are not stored here; they come
    from the system keyring (see :mod:`adbulk.config`).
    """

    db_path: str = "data/adbulk.db"
    batch_size: int = constants.BATCH_SIZE
    max_parallel_jobs: int = constants.MAX_PARALLEL_JOBS
    operation_chunk_size: int = constants.OPERATION_CHUNK_SIZE
    api_delay_seconds: float = constants.API_DELAY_SECONDS
    first_poll_delay_seconds: int = constants.FIRST_POLL_DELAY_SECONDS
    poll_backoff_base_seconds: int = constants.POLL_BACKOFF_BASE_SECONDS
    poll_backoff_cap_seconds: int = constants.POLL_BACKOFF_CAP_SECONDS
    max_running_attempts: int = constants.MAX_RUNNING_ATTEMPTS
    stall_warning_attempts: int = constants.STALL_WARNING_ATTEMPTS
    results_page_size: int = constants.RESULTS_PAGE_SIZE
    login_customer_id: str | None = None
