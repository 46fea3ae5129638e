"""Job poller: advance one due batch job by one status check.

Every poll first advances ``attempts`` and pushes ``next_poll_at`` out by
``min(base * 2**attempts, cap)`` seconds, whatever the remote answer, so a
job reaches the attempt ceiling in bounded wall-clock time.

Remote status handling for a PendingResult job:

- PENDING: accepted but never started -> PendingCancellation, alert
- RUNNING: stays PendingResult; Error + alert once attempts exceed the ceiling
- DONE: fetch results, reconcile, commit -> Complete, or Error if any item
  is unaccounted
- UNKNOWN / UNSPECIFIED: Error, alert
"""

from __future__ import annotations

import logging
from datetime import timedelta

from adbulk.bulk.classifier import ErrorClassifier
from adbulk.bulk.client import BulkMutationApi, JobStatusReport
from adbulk.bulk.committer import LocalStateCommitter
from adbulk.bulk.exceptions import RemoteApiError, UnexpectedJobStateError
from adbulk.bulk.notifier import Notifier
from adbulk.bulk.reconciler import ResultReconciler
from adbulk.bulk.state import AsyncBulkStateManager
from adbulk.models import BatchJob, BulkConfig, Clock, JobStatus, RemoteJobStatus, utc_now

logger = logging.getLogger(__name__)


class JobPoller:
    """Polls batch jobs and drives them through the job lifecycle.

    Args:
        state: Connected state manager.
        client: Remote bulk mutation API.
        reconciler: Maps results back onto queue items.
        committer: Applies reconciled outcomes locally.
        notifier: Alert sink.
        classifier: Error classifier (decides whether a failure alerts).
        config: Backoff base/cap, running-attempt ceiling, stall threshold.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        state: AsyncBulkStateManager,
        client: BulkMutationApi,
        reconciler: ResultReconciler,
        committer: LocalStateCommitter,
        notifier: Notifier,
        classifier: ErrorClassifier,
        config: BulkConfig,
        clock: Clock | None = None,
    ) -> None:
        self._state = state
        self._client = client
        self._reconciler = reconciler
        self._committer = committer
        self._notifier = notifier
        self._classifier = classifier
        self._config = config
        self._clock = clock or utc_now

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next poll after *attempts* polls."""
        seconds = min(
            self._config.poll_backoff_base_seconds * 2**attempts,
            self._config.poll_backoff_cap_seconds,
        )
        return timedelta(seconds=seconds)

    async def poll(self, job_id: int) -> JobStatus:
        """Poll one job once.

        Returns:
            The job's status after this poll.

        Raises:
            UnexpectedJobStateError: If the job is no longer PendingResult
                and has been polled more than the stall threshold.
            LookupError: If the job does not exist.
        """
        job = await self._state.get_job(job_id)
        if job is None:
            raise LookupError(f"Batch job {job_id} not found")

        attempts = job.attempts + 1
        await self._state.record_poll(job.id, attempts, self._clock() + self.backoff(attempts))

        if job.status is not JobStatus.PENDING_RESULT:
            if attempts > self._config.stall_warning_attempts:
                exc = UnexpectedJobStateError(job.id, job.status.value, attempts)
                self._notifier.alert("Unexpected batch job state", str(exc))
                raise exc
            logger.debug("Batch job %d is %s, nothing to poll", job.id, job.status.value)
            return job.status

        try:
            report = await self._client.get_job_status(job.account_id, job.remote_job_id)
        except RemoteApiError as exc:
            logger.warning(
                "Status lookup for batch job %d (remote %s) failed: %s",
                job.id,
                job.remote_job_id,
                exc.message,
            )
            self._alert_unless_internal(exc, f"Batch job {job.id} status lookup failed")
            return job.status

        logger.info(
            "Batch job %d (remote %s): %s, %d/%d operations executed, attempt %d",
            job.id,
            job.remote_job_id,
            report.status.value,
            report.executed_operation_count,
            report.operation_count,
            attempts,
        )

        if report.status is RemoteJobStatus.PENDING:
            logger.error(
                "Batch job %d was accepted but never started; marking for cancellation", job.id
            )
            await self._state.transition_job(
                job.id, JobStatus.PENDING_RESULT, JobStatus.PENDING_CANCELLATION
            )
            self._notifier.alert(
                "Batch job stalled",
                f"Batch job {job.id} (remote {job.remote_job_id}) is still PENDING",
            )
            return JobStatus.PENDING_CANCELLATION

        if report.status is RemoteJobStatus.RUNNING:
            return await self._still_running(job, attempts)

        if report.status is RemoteJobStatus.DONE:
            return await self._finish(job, attempts, report)

        message = f"Remote job {job.remote_job_id} reported status {report.status.value}"
        await self._state.transition_job(
            job.id, JobStatus.PENDING_RESULT, JobStatus.ERROR, error=message
        )
        self._notifier.alert(f"Batch job {job.id} failed", message)
        return JobStatus.ERROR

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _still_running(self, job: BatchJob, attempts: int) -> JobStatus:
        if attempts > self._config.max_running_attempts:
            message = f"Still running after {attempts} polls; giving up"
            logger.error("Batch job %d: %s", job.id, message)
            await self._state.transition_job(
                job.id, JobStatus.PENDING_RESULT, JobStatus.ERROR, error=message
            )
            self._notifier.alert(
                f"Batch job {job.id} timed out",
                f"{message} (remote {job.remote_job_id}, account {job.account_id})",
            )
            return JobStatus.ERROR

        if attempts > self._config.stall_warning_attempts:
            logger.error(
                "Batch job %d (%s %s) has been in progress too long: %d polls",
                job.id,
                job.operand_type.value,
                job.action.value,
                attempts,
            )
        return JobStatus.PENDING_RESULT

    async def _finish(self, job: BatchJob, attempts: int, report: JobStatusReport) -> JobStatus:
        try:
            results = await self._client.fetch_results(job.account_id, job.remote_job_id)
            items = await self._state.get_queue_items(job.item_ids)
            campaigns = await self._state.get_campaigns(i.campaign_id for i in items.values())
            outcome = await self._reconciler.reconcile(job, results, items, campaigns)
        except RemoteApiError as exc:
            logger.warning(
                "Could not collect results of batch job %d: %s", job.id, exc.message
            )
            if attempts > self._config.max_running_attempts:
                await self._state.transition_job(
                    job.id, JobStatus.PENDING_RESULT, JobStatus.ERROR, error=exc.message
                )
                self._notifier.alert(f"Batch job {job.id} results unavailable", exc.message)
                return JobStatus.ERROR
            self._alert_unless_internal(exc, f"Batch job {job.id} results unavailable")
            return JobStatus.PENDING_RESULT

        await self._committer.commit(job, outcome, items, campaigns)

        if outcome.complete:
            await self._state.transition_job(job.id, JobStatus.PENDING_RESULT, JobStatus.COMPLETE)
            return JobStatus.COMPLETE

        message = (
            f"{len(outcome.unaccounted)} of {len(job.item_ids)} items could not be "
            f"reconciled (remote executed {report.executed_operation_count}/"
            f"{report.operation_count} operations)"
        )
        await self._state.transition_job(
            job.id, JobStatus.PENDING_RESULT, JobStatus.ERROR, error=message
        )
        self._notifier.alert(f"Batch job {job.id} reconciliation incomplete", message)
        return JobStatus.ERROR

    def _alert_unless_internal(self, exc: RemoteApiError, subject: str) -> None:
        category = self._classifier.classify(exc.message, exc.code)
        if not self._classifier.is_internal(category):
            self._notifier.alert(subject, exc.message)
