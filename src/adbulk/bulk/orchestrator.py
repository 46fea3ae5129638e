"""Entry points invoked by the external scheduler.

- :meth:`BulkOrchestrator.schedule` scans one (operand type, action) queue
  scope, builds batches per account and submits them.
- :meth:`BulkOrchestrator.process_due_jobs` polls every job whose next poll
  is due.

Both are single sequential runs; separate invocations share only the
SQLite database. Submission for one (account, operand type) scope is
serialized with a row in ``scope_locks``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from collections.abc import Awaitable, Callable

from adbulk.bulk.builder import OperationBuilder
from adbulk.bulk.classifier import ErrorClassifier
from adbulk.bulk.client import BulkMutationApi
from adbulk.bulk.committer import LocalStateCommitter
from adbulk.bulk.exceptions import UnexpectedJobStateError, UnknownCampaignError
from adbulk.bulk.mapping import PayloadMapper
from adbulk.bulk.notifier import LoggingNotifier, Notifier
from adbulk.bulk.poller import JobPoller
from adbulk.bulk.reconciler import ResultReconciler
from adbulk.bulk.state import AsyncBulkStateManager
from adbulk.bulk.submitter import BatchSubmitter
from adbulk.models import Action, BulkConfig, Clock, OperandType, QueueItem, utc_now

logger = logging.getLogger(__name__)


def _chunks(items: list[QueueItem], size: int) -> list[list[QueueItem]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class BulkOrchestrator:
    """Wires the pipeline components together around one state manager.

    Usage::

        async with AsyncBulkStateManager(config.db_path) as state:
            orchestrator = BulkOrchestrator(state, client, config=config)
            await orchestrator.schedule(OperandType.KEYWORD, Action.ADD)
            await orchestrator.process_due_jobs()

    Args:
        state: Connected state manager.
        client: Remote bulk mutation API.
        notifier: Alert sink (default: :class:`LoggingNotifier`).
        classifier: Error classifier (default: :class:`ErrorClassifier`).
        mapper: Payload mapper for the builder (default mapper when ``None``).
        config: Pipeline configuration (defaults when ``None``).
        clock: Returns the current UTC time.
        sleep: Awaitable sleep used between submissions.
        instance_id: Identifier written into scope locks.
    """

    def __init__(
        self,
        state: AsyncBulkStateManager,
        client: BulkMutationApi,
        notifier: Notifier | None = None,
        classifier: ErrorClassifier | None = None,
        mapper: PayloadMapper | None = None,
        config: BulkConfig | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        instance_id: str | None = None,
    ) -> None:
        self._state = state
        self._config = config or BulkConfig()
        self._notifier = notifier or LoggingNotifier()
        classifier = classifier or ErrorClassifier()
        clock = clock or utc_now
        self._sleep = sleep
        self._instance_id = instance_id or f"{socket.gethostname()}:{os.getpid()}"

        self.builder = OperationBuilder(mapper)
        self.submitter = BatchSubmitter(
            state, client, self._notifier, classifier, self._config, clock=clock
        )
        self.poller = JobPoller(
            state,
            client,
            ResultReconciler(client),
            LocalStateCommitter(state, classifier),
            self._notifier,
            classifier,
            self._config,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Submission scan
    # ------------------------------------------------------------------

    async def schedule(
        self, operand_type: OperandType, action: Action, dry_run: bool = False
    ) -> dict[str, int]:
        """Build and submit batches for every account with pending items.

        Args:
            operand_type: Content type to scan.
            action: Action to scan.
            dry_run: Build and log only; no remote calls and no writes.

        Returns:
            Summary dict with keys: accounts, jobs, items, skipped, purged, locked.
        """
        summary = {"accounts": 0, "jobs": 0, "items": 0, "skipped": 0, "purged": 0, "locked": 0}
        accounts = await self._state.get_accounts_with_pending(operand_type, action)
        if not accounts:
            logger.info("No pending %s %s items", operand_type.value, action.value)
            return summary

        for account_id in accounts:
            if dry_run:
                await self._schedule_account(account_id, operand_type, action, True, summary)
                continue

            scope = f"{account_id}:{operand_type.value}"
            if not await self._state.acquire_scope_lock(scope, self._instance_id):
                logger.warning("Scope %s is being submitted by another run, skipping", scope)
                summary["locked"] += 1
                continue
            try:
                # another run may have submitted between the scan and the lock
                if await self._state.has_job_in_flight(operand_type, action, account_id):
                    logger.info("Scope %s already has a job in flight, skipping", scope)
                    continue
                await self._schedule_account(account_id, operand_type, action, False, summary)
            finally:
                await self._state.release_scope_lock(scope, self._instance_id)

        logger.info("Scheduling %s %s finished: %s", operand_type.value, action.value, summary)
        return summary

    async def _schedule_account(
        self,
        account_id: str,
        operand_type: OperandType,
        action: Action,
        dry_run: bool,
        summary: dict[str, int],
    ) -> None:
        summary["accounts"] += 1
        limit = self._config.batch_size * self._config.max_parallel_jobs
        items = await self._state.get_pending_items(operand_type, action, account_id, limit)
        submitted_any = False

        for batch_items in _chunks(items, self._config.batch_size):
            campaigns = await self._state.get_campaigns(i.campaign_id for i in batch_items)
            try:
                built = self.builder.build(operand_type, action, batch_items, campaigns)
            except UnknownCampaignError as exc:
                logger.error(
                    "Batch for account %s references unknown campaign %d; purging its %s queue",
                    account_id,
                    exc.campaign_id,
                    operand_type.value,
                )
                if not dry_run:
                    summary["purged"] += await self._state.remove_queue_items_by_campaign(
                        exc.campaign_id, operand_type
                    )
                continue

            summary["skipped"] += len(built.skipped_item_ids)
            if dry_run:
                logger.info(
                    "[dry-run] account %s: %d %s %s items -> %d operations",
                    account_id,
                    len(built.item_ids),
                    operand_type.value,
                    action.value,
                    len(built.entries),
                )
                summary["items"] += len(built.item_ids)
                continue
            if not built.entries:
                continue

            if submitted_any:
                await self._sleep(self._config.api_delay_seconds)
            submitted_any = True

            job = await self.submitter.submit(account_id, built)
            if job is None:
                # job creation failed and the account's queue is parked
                break
            summary["jobs"] += 1
            summary["items"] += len(built.item_ids)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def process_due_jobs(self, limit: int = 100) -> dict[str, int]:
        """Poll every due job once.

        A failure while polling one job is logged and alerted and does not
        stop the others; :class:`UnexpectedJobStateError` is fatal and
        propagates.

        Returns:
            Count of jobs per resulting status, plus ``failed`` for polls
            that raised.
        """
        counts: dict[str, int] = {}
        jobs = await self._state.get_due_jobs(limit)
        if not jobs:
            logger.info("No batch jobs due")
            return counts

        for job in jobs:
            try:
                status = await self.poller.poll(job.id)
            except UnexpectedJobStateError:
                logger.exception("Batch job %d is in an unexpected state", job.id)
                raise
            except Exception as exc:
                logger.exception("Polling batch job %d failed", job.id)
                self._notifier.alert(f"Polling batch job {job.id} failed", repr(exc))
                counts["failed"] = counts.get("failed", 0) + 1
                continue
            counts[status.value] = counts.get(status.value, 0) + 1

        logger.info("Processed %d due batch jobs: %s", len(jobs), counts)
        return counts
