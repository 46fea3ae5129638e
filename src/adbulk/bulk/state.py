"""Async SQLite state manager for the bulk mutation pipeline.

Wraps aiosqlite to provide the Queue, BatchJob, Confirmed and Error
stores used by the submitter, poller and committer. Each write method
commits before returning; no transaction is held across an ``await`` on
the remote API.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

import aiosqlite

from adbulk.bulk.exceptions import InvalidJobTransitionError
from adbulk.bulk.fsm import validate_transition
from adbulk.models import (
    Action,
    BatchJob,
    CampaignRef,
    Clock,
    ConfirmedEntity,
    ErrorRecord,
    JobStatus,
    OperandType,
    PolicyExemption,
    QueueItem,
    from_iso,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


class AsyncBulkStateManager:
    """Async SQLite state manager for queue items and batch jobs.

    Usage::

        async with AsyncBulkStateManager("data/adbulk.db") as state:
            accounts = await state.get_accounts_with_pending(OperandType.AD, Action.ADD)
            items = await state.get_pending_items(OperandType.AD, Action.ADD, accounts[0])
    """

    def __init__(self, db_path: str, clock: Clock | None = None) -> None:
        self.db_path = db_path
        self._clock = clock or utc_now
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open an aiosqlite connection with WAL mode and foreign keys."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

    async def close(self) -> None:
        """Close the connection if open."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> AsyncBulkStateManager:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    def _now_iso(self) -> str:
        return to_iso(self._clock())

    @staticmethod
    def _placeholders(values: list) -> str:
        return ",".join("?" * len(values))

    # ------------------------------------------------------------------
    # Queue store: reads
    # ------------------------------------------------------------------

    async def get_accounts_with_pending(
        self, operand_type: OperandType, action: Action
    ) -> list[str]:
        """Return accounts with eligible items and no in-flight job for the scope.

        An account whose previous job for the same operand type and action
        is still PendingResult is left out, so its items are not submitted
        twice.
        """
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT DISTINCT q.account_id
               FROM queue_items q
               WHERE q.operand_type = ? AND q.action = ? AND q.error IS NULL
                 AND NOT EXISTS (
                     SELECT 1 FROM batch_jobs j
                     WHERE j.account_id = q.account_id
                       AND j.operand_type = q.operand_type
                       AND j.action = q.action
                       AND j.status = ?)
               ORDER BY q.account_id""",
            (operand_type.value, action.value, JobStatus.PENDING_RESULT.value),
        )
        rows = await cursor.fetchall()
        return [row["account_id"] for row in rows]

    async def has_job_in_flight(
        self, operand_type: OperandType, action: Action, account_id: str
    ) -> bool:
        """True if the account has a PendingResult job for the operand type and action."""
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT 1 FROM batch_jobs
               WHERE account_id = ? AND operand_type = ? AND action = ? AND status = ?
               LIMIT 1""",
            (account_id, operand_type.value, action.value, JobStatus.PENDING_RESULT.value),
        )
        return await cursor.fetchone() is not None

    async def get_pending_items(
        self,
        operand_type: OperandType,
        action: Action,
        account_id: str,
        limit: int = 10_000,
    ) -> list[QueueItem]:
        """Return eligible items of one scope, oldest first.

        An item is eligible when it carries no error and no PendingResult
        job lists it.
        """
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT * FROM queue_items
               WHERE operand_type = ? AND action = ? AND account_id = ? AND error IS NULL
                 AND NOT EXISTS (
                     SELECT 1 FROM batch_job_items bi
                     JOIN batch_jobs j ON j.id = bi.job_id
                     WHERE bi.item_id = queue_items.id AND j.status = ?)
               ORDER BY id
               LIMIT ?""",
            (
                operand_type.value,
                action.value,
                account_id,
                JobStatus.PENDING_RESULT.value,
                limit,
            ),
        )
        rows = await cursor.fetchall()
        return [QueueItem.from_row(row) for row in rows]

    async def get_queue_items(self, item_ids: list[int]) -> dict[int, QueueItem]:
        """Return the queue items still present among *item_ids*, keyed by id."""
        if not item_ids:
            return {}
        db = self._ensure_connected()
        cursor = await db.execute(
            f"SELECT * FROM queue_items WHERE id IN ({self._placeholders(item_ids)})",
            item_ids,
        )
        rows = await cursor.fetchall()
        return {row["id"]: QueueItem.from_row(row) for row in rows}

    async def get_campaigns(self, campaign_ids: Iterable[int]) -> dict[int, CampaignRef]:
        """Return the resolution context for *campaign_ids* (unknown ids are absent)."""
        ids = sorted(set(campaign_ids))
        if not ids:
            return {}
        db = self._ensure_connected()
        cursor = await db.execute(
            f"""SELECT id, account_id, external_id, name FROM campaigns
                WHERE id IN ({self._placeholders(ids)})""",
            ids,
        )
        rows = await cursor.fetchall()
        return {row["id"]: CampaignRef(**dict(row)) for row in rows}

    # ------------------------------------------------------------------
    # Queue store: writes
    # ------------------------------------------------------------------

    async def set_error_for_account(self, account_id: str, message: str) -> int:
        """Park every eligible item of *account_id*, across all operand types.

        Returns:
            Number of items marked.
        """
        db = self._ensure_connected()
        cursor = await db.execute(
            "UPDATE queue_items SET error = ? WHERE account_id = ? AND error IS NULL",
            (message, account_id),
        )
        await db.commit()
        return cursor.rowcount

    async def set_item_errors(self, errors: dict[int, str]) -> None:
        """Set the error text of each item in *errors* (item id to message)."""
        if not errors:
            return
        db = self._ensure_connected()
        await db.executemany(
            "UPDATE queue_items SET error = ? WHERE id = ?",
            [(message, item_id) for item_id, message in errors.items()],
        )
        await db.commit()

    async def add_exemptions(self, exemptions: dict[int, list[PolicyExemption]]) -> None:
        """Append policy-exemption markers to queue items, ignoring duplicates."""
        if not exemptions:
            return
        db = self._ensure_connected()
        item_ids = list(exemptions)
        cursor = await db.execute(
            f"""SELECT id, exemptions_json FROM queue_items
                WHERE id IN ({self._placeholders(item_ids)})""",
            item_ids,
        )
        rows = await cursor.fetchall()
        updates = []
        for row in rows:
            current = [PolicyExemption(**e) for e in json.loads(row["exemptions_json"] or "[]")]
            for exemption in exemptions[row["id"]]:
                if exemption not in current:
                    current.append(exemption)
            updates.append((json.dumps([e.to_dict() for e in current]), row["id"]))
        await db.executemany("UPDATE queue_items SET exemptions_json = ? WHERE id = ?", updates)
        await db.commit()

    async def set_external_ids(self, external_ids: dict[int, str]) -> None:
        """Write resolved external ids onto queue items (item id to external id)."""
        if not external_ids:
            return
        db = self._ensure_connected()
        await db.executemany(
            "UPDATE queue_items SET external_id = ? WHERE id = ?",
            [(external_id, item_id) for item_id, external_id in external_ids.items()],
        )
        await db.commit()

    async def propagate_external_ids(self, items: list[QueueItem]) -> int:
        """Copy each item's external id to sibling update/delete rows.

        A sibling is a non-add queue row of the same operand type, campaign
        and natural key that was queued before the add was resolved.

        Returns:
            Number of sibling rows updated.
        """
        if not items:
            return 0
        db = self._ensure_connected()
        total = 0
        for item in items:
            cursor = await db.execute(
                """UPDATE queue_items SET external_id = ?
                   WHERE operand_type = ? AND campaign_id = ? AND action != ?
                     AND natural_text = ? AND parent_external_id IS ?
                     AND external_id IS NULL AND id != ?""",
                (
                    item.external_id,
                    item.operand_type.value,
                    item.campaign_id,
                    Action.ADD.value,
                    item.natural_text,
                    item.parent_external_id,
                    item.id,
                ),
            )
            total += cursor.rowcount
        await db.commit()
        return total

    async def remove_queue_items(self, item_ids: list[int]) -> int:
        """Delete queue rows by id. Returns the number removed."""
        if not item_ids:
            return 0
        db = self._ensure_connected()
        cursor = await db.execute(
            f"DELETE FROM queue_items WHERE id IN ({self._placeholders(item_ids)})",
            item_ids,
        )
        await db.commit()
        return cursor.rowcount

    async def remove_queue_items_by_campaign(
        self, campaign_id: int, operand_type: OperandType | None = None
    ) -> int:
        """Delete every queue row of *campaign_id* (optionally one operand type)."""
        db = self._ensure_connected()
        sql = "DELETE FROM queue_items WHERE campaign_id = ?"
        params: list[object] = [campaign_id]
        if operand_type is not None:
            sql += " AND operand_type = ?"
            params.append(operand_type.value)
        cursor = await db.execute(sql, params)
        await db.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # BatchJob store
    # ------------------------------------------------------------------

    async def create_job(
        self,
        operand_type: OperandType,
        action: Action,
        account_id: str,
        remote_job_id: str,
        item_ids: list[int],
        next_poll_at: datetime,
    ) -> BatchJob:
        """Persist a PendingResult job with its ordered item ids.

        The job row and its ``batch_job_items`` rows are committed together.
        """
        stored_poll_at = to_iso(next_poll_at)
        db = self._ensure_connected()
        cursor = await db.execute(
            """INSERT INTO batch_jobs
                   (operand_type, action, account_id, status, remote_job_id,
                    attempts, next_poll_at)
               VALUES (?, ?, ?, ?, ?, 0, ?)""",
            (
                operand_type.value,
                action.value,
                account_id,
                JobStatus.PENDING_RESULT.value,
                remote_job_id,
                stored_poll_at,
            ),
        )
        job_id = cursor.lastrowid
        await db.executemany(
            "INSERT INTO batch_job_items (job_id, position, item_id) VALUES (?, ?, ?)",
            [(job_id, position, item_id) for position, item_id in enumerate(item_ids)],
        )
        await db.commit()
        logger.info(
            "Created batch job %d (%s %s, account=%s, remote=%s, items=%d)",
            job_id,
            operand_type.value,
            action.value,
            account_id,
            remote_job_id,
            len(item_ids),
        )
        return BatchJob(
            id=job_id,
            operand_type=operand_type,
            action=action,
            account_id=account_id,
            status=JobStatus.PENDING_RESULT,
            remote_job_id=remote_job_id,
            attempts=0,
            next_poll_at=from_iso(stored_poll_at),
            item_ids=list(item_ids),
        )

    async def get_job(self, job_id: int) -> BatchJob | None:
        db = self._ensure_connected()
        cursor = await db.execute("SELECT * FROM batch_jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return BatchJob.from_row(row, await self._get_job_item_ids(job_id))

    async def _get_job_item_ids(self, job_id: int) -> list[int]:
        db = self._ensure_connected()
        cursor = await db.execute(
            "SELECT item_id FROM batch_job_items WHERE job_id = ? ORDER BY position",
            (job_id,),
        )
        rows = await cursor.fetchall()
        return [row["item_id"] for row in rows]

    async def get_due_jobs(self, limit: int = 100) -> list[BatchJob]:
        """Return PendingResult jobs whose next poll is due, earliest first."""
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT * FROM batch_jobs
               WHERE status = ? AND next_poll_at <= ?
               ORDER BY next_poll_at, id
               LIMIT ?""",
            (JobStatus.PENDING_RESULT.value, self._now_iso(), limit),
        )
        rows = await cursor.fetchall()
        return [BatchJob.from_row(row, await self._get_job_item_ids(row["id"])) for row in rows]

    async def record_poll(self, job_id: int, attempts: int, next_poll_at: datetime) -> None:
        """Persist the attempt counter and next due time of a job."""
        db = self._ensure_connected()
        await db.execute(
            "UPDATE batch_jobs SET attempts = ?, next_poll_at = ? WHERE id = ?",
            (attempts, to_iso(next_poll_at), job_id),
        )
        await db.commit()

    async def transition_job(
        self,
        job_id: int,
        from_status: JobStatus,
        to_status: JobStatus,
        error: str | None = None,
    ) -> None:
        """Move a job to *to_status* if it is still in *from_status*.

        Raises:
            InvalidJobTransitionError: If the lifecycle forbids the change, or
                the job was no longer in *from_status* when written.
        """
        validate_transition(from_status, to_status)
        db = self._ensure_connected()
        cursor = await db.execute(
            """UPDATE batch_jobs SET status = ?, error = COALESCE(?, error)
               WHERE id = ? AND status = ?""",
            (to_status.value, error, job_id, from_status.value),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise InvalidJobTransitionError(
                f"Batch job {job_id} is no longer '{from_status.value}'"
            )
        logger.info(
            "Batch job %d: %s -> %s", job_id, from_status.value, to_status.value
        )

    # ------------------------------------------------------------------
    # Confirmed store
    # ------------------------------------------------------------------

    async def upsert_confirmed(self, entities: list[ConfirmedEntity]) -> None:
        """Bulk insert or refresh confirmed entities."""
        if not entities:
            return
        db = self._ensure_connected()
        await db.executemany(
            """INSERT INTO confirmed_entities
                   (operand_type, external_id, account_id, campaign_id, template_id,
                    parent_external_id, natural_text, attributes_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(operand_type, campaign_id, external_id) DO UPDATE SET
                   template_id = excluded.template_id,
                   parent_external_id = excluded.parent_external_id,
                   natural_text = excluded.natural_text,
                   attributes_json = excluded.attributes_json,
                   updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')""",
            [
                (
                    e.operand_type.value,
                    e.external_id,
                    e.account_id,
                    e.campaign_id,
                    e.template_id,
                    e.parent_external_id,
                    e.natural_text,
                    json.dumps(e.attributes),
                )
                for e in entities
            ],
        )
        await db.commit()

    async def remove_confirmed(
        self, operand_type: OperandType, keys: list[tuple[int, str]]
    ) -> int:
        """Delete confirmed entities by (campaign id, external id)."""
        if not keys:
            return 0
        db = self._ensure_connected()
        total = 0
        for campaign_id, external_id in keys:
            cursor = await db.execute(
                """DELETE FROM confirmed_entities
                   WHERE operand_type = ? AND campaign_id = ? AND external_id = ?""",
                (operand_type.value, campaign_id, external_id),
            )
            total += cursor.rowcount
        await db.commit()
        return total

    async def get_confirmed(
        self, operand_type: OperandType, campaign_id: int | None = None
    ) -> list[dict]:
        db = self._ensure_connected()
        sql = "SELECT * FROM confirmed_entities WHERE operand_type = ?"
        params: list[object] = [operand_type.value]
        if campaign_id is not None:
            sql += " AND campaign_id = ?"
            params.append(campaign_id)
        cursor = await db.execute(sql + " ORDER BY id", params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Error records
    # ------------------------------------------------------------------

    async def add_error_records(self, records: list[ErrorRecord]) -> None:
        if not records:
            return
        db = self._ensure_connected()
        await db.executemany(
            """INSERT INTO error_records
                   (operand_type, item_id, campaign_id, campaign_name,
                    natural_text, raw_message, category)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    r.operand_type.value,
                    r.item_id,
                    r.campaign_id,
                    r.campaign_name,
                    r.natural_text,
                    r.raw_message,
                    r.category,
                )
                for r in records
            ],
        )
        await db.commit()

    async def clear_error_records(self, item_ids: list[int]) -> int:
        """Delete error records of *item_ids* (e.g. after resubmitting with exemptions)."""
        if not item_ids:
            return 0
        db = self._ensure_connected()
        cursor = await db.execute(
            f"DELETE FROM error_records WHERE item_id IN ({self._placeholders(item_ids)})",
            item_ids,
        )
        await db.commit()
        return cursor.rowcount

    async def get_error_records(self, item_ids: list[int] | None = None) -> list[dict]:
        db = self._ensure_connected()
        if item_ids is None:
            cursor = await db.execute("SELECT * FROM error_records ORDER BY id")
        else:
            cursor = await db.execute(
                f"""SELECT * FROM error_records
                    WHERE item_id IN ({self._placeholders(item_ids)}) ORDER BY id""",
                item_ids,
            )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Scope locks
    # ------------------------------------------------------------------

    async def acquire_scope_lock(
        self, scope: str, instance_id: str, stale_after_seconds: int = 3600
    ) -> bool:
        """Try to take the submission lock for *scope*.

        A lock older than *stale_after_seconds* is assumed abandoned by a
        crashed run and is taken over.

        Returns:
            True if the lock is now held by *instance_id*.
        """
        db = self._ensure_connected()
        now = self._clock()
        cutoff = to_iso(now - timedelta(seconds=stale_after_seconds))
        await db.execute(
            "DELETE FROM scope_locks WHERE scope = ? AND acquired_at < ?",
            (scope, cutoff),
        )
        cursor = await db.execute(
            """INSERT OR IGNORE INTO scope_locks (scope, instance_id, acquired_at)
               VALUES (?, ?, ?)""",
            (scope, instance_id, to_iso(now)),
        )
        await db.commit()
        if cursor.rowcount == 1:
            logger.debug("Acquired scope lock %s (instance=%s)", scope, instance_id)
            return True
        return False

    async def release_scope_lock(self, scope: str, instance_id: str) -> None:
        db = self._ensure_connected()
        await db.execute(
            "DELETE FROM scope_locks WHERE scope = ? AND instance_id = ?",
            (scope, instance_id),
        )
        await db.commit()
        logger.debug("Released scope lock %s", scope)
