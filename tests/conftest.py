"""Shared pytest fixtures for the bulk pipeline tests.

Provides a temporary database (sync and async handles), a frozen clock,
an in-memory fake of the remote bulk mutation API, a notifier that
records alerts, and helpers for seeding campaigns and queue items.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from adbulk.bulk.client import (
    JobResults,
    JobStatusReport,
    Operation,
    RemoteEntity,
)
from adbulk.bulk.exceptions import RemoteApiError
from adbulk.bulk.state import AsyncBulkStateManager
from adbulk.database import Database
from adbulk.models import (
    Action,
    BulkConfig,
    CampaignRef,
    OperandType,
    PolicyExemption,
    QueueItem,
    RemoteJobStatus,
)

ACCOUNT = "123-456-7890"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    """Notifier that keeps every alert for assertions."""

    def __init__(self) -> None:
        self.alerts: list[tuple[str, str]] = []

    def alert(self, subject: str, message: str) -> None:
        self.alerts.append((subject, message))


class FakeBulkApi:
    """In-memory stand-in for the remote bulk mutation API.

    Status answers are queued per remote job id: each poll pops the next
    report, and the last one repeats. Set one of the ``*_error``
    attributes to make the matching call fail.
    """

    def __init__(self) -> None:
        self.created: list[str] = []
        self.uploads: list[tuple[str, list[Operation], str | None]] = []
        self.started: list[str] = []
        self.status_calls = 0
        self.fetch_calls = 0
        self.query_calls: list[tuple[str, OperandType, list[str]]] = []

        self.create_error: RemoteApiError | None = None
        self.upload_error: RemoteApiError | None = None
        self.run_error: RemoteApiError | None = None
        self.status_error: RemoteApiError | None = None
        self.results_error: RemoteApiError | None = None

        self.statuses: dict[str, list[JobStatusReport]] = {}
        self.default_status = JobStatusReport(RemoteJobStatus.RUNNING)
        self.results: dict[str, JobResults] = {}
        self.entities: list[RemoteEntity] = []
        self._job_counter = 0

    def set_status(self, remote_job_id: str, *statuses: RemoteJobStatus) -> None:
        self.statuses[remote_job_id] = [JobStatusReport(s) for s in statuses]

    @property
    def uploaded_operations(self) -> list[Operation]:
        return [op for _, chunk, _ in self.uploads for op in chunk]

    async def create_job(self, account_id: str) -> str:
        if self.create_error is not None:
            raise self.create_error
        self._job_counter += 1
        self.created.append(account_id)
        return f"remote-{self._job_counter}"

    async def add_operations(
        self,
        remote_job_id: str,
        operations: list[Operation],
        continuation_token: str | None,
    ) -> str | None:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append((remote_job_id, list(operations), continuation_token))
        return f"token-{len(self.uploads)}"

    async def run_job(self, remote_job_id: str) -> None:
        if self.run_error is not None:
            raise self.run_error
        self.started.append(remote_job_id)

    async def get_job_status(self, account_id: str, remote_job_id: str) -> JobStatusReport:
        self.status_calls += 1
        if self.status_error is not None:
            raise self.status_error
        queue = self.statuses.get(remote_job_id)
        if not queue:
            return self.default_status
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def fetch_results(self, account_id: str, remote_job_id: str) -> JobResults:
        self.fetch_calls += 1
        if self.results_error is not None:
            raise self.results_error
        return self.results.get(remote_job_id, JobResults())

    async def query_entities(
        self,
        account_id: str,
        operand_type: OperandType,
        campaign_external_ids: list[str],
    ) -> list[RemoteEntity]:
        self.query_calls.append((account_id, operand_type, list(campaign_external_ids)))
        return [e for e in self.entities if e.campaign_external_id in campaign_external_ids]


def make_campaign(
    campaign_id: int = 1,
    account_id: str = ACCOUNT,
    external_id: str = "9001",
    name: str = "Spring Sale",
) -> CampaignRef:
    return CampaignRef(id=campaign_id, account_id=account_id, external_id=external_id, name=name)


def make_item(
    text: str = "running shoes",
    operand_type: OperandType = OperandType.KEYWORD,
    action: Action = Action.ADD,
    campaign_id: int = 1,
    account_id: str = ACCOUNT,
    parent_external_id: str | None = "5001",
    external_id: str | None = None,
    attributes: dict | None = None,
    exemptions: list[PolicyExemption] | None = None,
    item_id: int = 0,
) -> QueueItem:
    """Build an unsaved queue item (``id`` is assigned on insert)."""
    return QueueItem(
        id=item_id,
        operand_type=operand_type,
        action=action,
        account_id=account_id,
        campaign_id=campaign_id,
        natural_text=text,
        parent_external_id=parent_external_id,
        attributes=attributes or {},
        external_id=external_id,
        exemptions=exemptions or [],
    )


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Path of a temp database with the schema already created."""
    path = tmp_path / "test.db"
    Database(path).close()
    return str(path)


@pytest.fixture
def tmp_db(db_path: str) -> Database:
    """Synchronous handle on the temp database, for seeding and reporting."""
    db = Database(db_path)
    yield db
    db.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
async def state(db_path: str, clock: FrozenClock):
    """Connected async state manager sharing the frozen clock."""
    manager = AsyncBulkStateManager(db_path, clock=clock)
    await manager.connect()
    yield manager
    await manager.close()


@pytest.fixture
def api() -> FakeBulkApi:
    return FakeBulkApi()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def config(db_path: str) -> BulkConfig:
    """Small limits so chunking and ceilings are easy to hit."""
    return BulkConfig(
        db_path=db_path,
        batch_size=100,
        max_parallel_jobs=2,
        operation_chunk_size=1000,
        api_delay_seconds=0,
        first_poll_delay_seconds=30,
        poll_backoff_base_seconds=15,
        poll_backoff_cap_seconds=3600,
        max_running_attempts=7,
        stall_warning_attempts=5,
    )


@pytest.fixture
def campaign(tmp_db: Database) -> CampaignRef:
    """One seeded campaign (local id 1, external id 9001)."""
    ref = make_campaign()
    tmp_db.upsert_campaign(ref)
    return ref


def enqueue(db: Database, *items: QueueItem) -> list[int]:
    """Insert *items* and return their assigned ids."""
    return db.enqueue_items(list(items))
