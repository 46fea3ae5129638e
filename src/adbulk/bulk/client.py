"""Contract of the remote bulk mutation API and its wire-neutral types.

The pipeline talks to the platform only through :class:`BulkMutationApi`.
:mod:`adbulk.bulk.google_ads` implements it on top of the google-ads SDK;
tests substitute an in-memory fake.

Workflow:
1. ``create_job`` returns a remote job id
2. ``add_operations`` uploads chunks, chaining continuation tokens
3. ``run_job`` starts execution
4. ``get_job_status`` is polled until DONE
5. ``fetch_results`` lists per-operation outcomes
6. ``query_entities`` lists live entities when results cannot be trusted
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from adbulk.models import OperandType, PolicyExemption, RemoteJobStatus


@dataclass(slots=True)
class Operation:
    """Single mutate operation in a batch job.

    Attributes:
        resource: Resource kind in snake case (e.g. ``ad_group_criterion``).
        verb: ``create``, ``update`` or ``remove``.
        payload: Resource fields; for ``remove`` the ``resource_name`` only.
        update_mask: Field paths changed by an ``update``.
        exemptions: Policy violations the platform is asked to exempt.
    """

    resource: str
    verb: str
    payload: dict[str, Any]
    update_mask: tuple[str, ...] = ()
    exemptions: tuple[PolicyExemption, ...] = ()


@dataclass(slots=True)
class OperationFailure:
    """Failure reported for one operation index.

    Attributes:
        message: Raw platform message.
        code: Machine-readable code, ``<family>.<NAME>``, when available.
        policy_violation: Violated policy when the failure is a policy finding.
        exemptible: True when the violation may be exempted on resubmission.
    """

    message: str
    code: str | None = None
    policy_violation: PolicyExemption | None = None
    exemptible: bool = False


@dataclass(slots=True)
class JobResults:
    """Sparse per-operation outcomes of a finished job.

    Keys are operation indexes in upload order. ``successes`` values are the
    resource names (or bare ids) of the created or modified resources.
    """

    successes: dict[int, str] = field(default_factory=dict)
    failures: dict[int, OperationFailure] = field(default_factory=dict)


@dataclass(slots=True)
class JobStatusReport:
    """Remote job status as returned by a status poll."""

    status: RemoteJobStatus
    operation_count: int = 0
    executed_operation_count: int = 0


@dataclass(slots=True)
class RemoteEntity:
    """Live platform entity, as listed by :meth:`BulkMutationApi.query_entities`."""

    external_id: str
    campaign_external_id: str
    natural_text: str
    parent_external_id: str | None = None


class BulkMutationApi(Protocol):
    """Asynchronous bulk mutation API of the advertising platform.

    Every method raises :class:`~adbulk.bulk.exceptions.RemoteApiError`
    on failure.
    """

    async def create_job(self, account_id: str) -> str: ...

    async def add_operations(
        self,
        remote_job_id: str,
        operations: list[Operation],
        continuation_token: str | None,
    ) -> str | None: ...

    async def run_job(self, remote_job_id: str) -> None: ...

    async def get_job_status(self, account_id: str, remote_job_id: str) -> JobStatusReport: ...

    async def fetch_results(self, account_id: str, remote_job_id: str) -> JobResults: ...

    async def query_entities(
        self,
        account_id: str,
        operand_type: OperandType,
        campaign_external_ids: list[str],
    ) -> list[RemoteEntity]: ...
