"""Batch submitter: create the remote job, upload operations, start it.

Workflow:
1. ``create_job`` -- on failure every eligible item of the account is parked
   with the returned error and no local job is written
2. Persist the local BatchJob (PendingResult, first poll after a grace period)
3. Upload operations in bounded chunks, chaining continuation tokens
4. ``run_job`` -- any failure in 3-4 marks the job Error; it is never retried
"""

from __future__ import annotations

import logging
from datetime import timedelta

from adbulk.bulk.builder import BuiltBatch
from adbulk.bulk.classifier import ErrorClassifier
from adbulk.bulk.client import BulkMutationApi
from adbulk.bulk.exceptions import RemoteApiError
from adbulk.bulk.notifier import Notifier
from adbulk.bulk.state import AsyncBulkStateManager
from adbulk.models import BatchJob, BulkConfig, Clock, JobStatus, utc_now

logger = logging.getLogger(__name__)


class BatchSubmitter:
    """Submits one built batch for one account as a remote bulk job.

    Args:
        state: Connected state manager.
        client: Remote bulk mutation API.
        notifier: Alert sink.
        classifier: Error classifier (decides whether a failure alerts).
        config: Pipeline configuration (chunk size, first-poll grace).
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        state: AsyncBulkStateManager,
        client: BulkMutationApi,
        notifier: Notifier,
        classifier: ErrorClassifier,
        config: BulkConfig,
        clock: Clock | None = None,
    ) -> None:
        self._state = state
        self._client = client
        self._notifier = notifier
        self._classifier = classifier
        self._config = config
        self._clock = clock or utc_now

    async def submit(self, account_id: str, batch: BuiltBatch) -> BatchJob | None:
        """Submit *batch* for *account_id*.

        Returns:
            The persisted job (PendingResult, or Error if the upload or run
            failed), or ``None`` if the batch was empty or the remote job
            could not be created.
        """
        if not batch.entries:
            logger.info(
                "Nothing to submit for %s %s (account=%s)",
                batch.operand_type.value,
                batch.action.value,
                account_id,
            )
            return None

        logger.info(
            "Creating %s:%s batch job for account %s (%d items, %d operations)",
            batch.operand_type.value,
            batch.action.value,
            account_id,
            len(batch.item_ids),
            len(batch.entries),
        )
        try:
            remote_job_id = await self._client.create_job(account_id)
        except RemoteApiError as exc:
            await self._handle_create_failure(account_id, exc)
            return None

        job = await self._state.create_job(
            operand_type=batch.operand_type,
            action=batch.action,
            account_id=account_id,
            remote_job_id=remote_job_id,
            item_ids=batch.item_ids,
            next_poll_at=self._clock() + timedelta(seconds=self._config.first_poll_delay_seconds),
        )

        # resubmitted with exemptions: the earlier policy errors no longer apply
        if batch.exempted_item_ids:
            await self._state.clear_error_records(batch.exempted_item_ids)

        try:
            await self._upload(remote_job_id, batch)
            await self._client.run_job(remote_job_id)
        except RemoteApiError as exc:
            logger.error(
                "Batch job %d (remote %s) failed during upload/run: %s",
                job.id,
                remote_job_id,
                exc.message,
            )
            await self._state.transition_job(
                job.id, JobStatus.PENDING_RESULT, JobStatus.ERROR, error=exc.message
            )
            self._alert_unless_internal(
                exc,
                f"Batch job {job.id} upload failed",
                f"{exc.message} (remote job {remote_job_id}, account {account_id})",
            )
            return await self._state.get_job(job.id)

        logger.info(
            "Uploaded %d operations for batch job %d (remote %s)",
            len(batch.entries),
            job.id,
            remote_job_id,
        )
        return job

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _upload(self, remote_job_id: str, batch: BuiltBatch) -> None:
        """Upload operations in chunks; chunk k+1 carries chunk k's token."""
        operations = batch.operations
        chunk_size = self._config.operation_chunk_size
        token: str | None = None
        for start in range(0, len(operations), chunk_size):
            chunk = operations[start : start + chunk_size]
            token = await self._client.add_operations(remote_job_id, chunk, token)
            logger.debug(
                "Uploaded operations %d-%d to %s", start, start + len(chunk) - 1, remote_job_id
            )

    async def _handle_create_failure(self, account_id: str, exc: RemoteApiError) -> None:
        marked = await self._state.set_error_for_account(account_id, exc.message)
        logger.error(
            "Could not create batch job for account %s: %s (%d queue items parked)",
            account_id,
            exc.message,
            marked,
        )
        self._alert_unless_internal(
            exc,
            "Batch job creation failed",
            f"{exc.message} (account {account_id})",
        )

    def _alert_unless_internal(self, exc: RemoteApiError, subject: str, message: str) -> None:
        category = self._classifier.classify(exc.message, exc.code)
        if self._classifier.is_internal(category):
            logger.warning("Not alerting on internal platform error: %s", exc.message)
            return
        self._notifier.alert(subject, message)
