"""SQLite database layer for the bulk mutation pipeline.

Owns the schema (queue, batch jobs, ordered job items, confirmed entities,
error records, scope locks) and the synchronous queries used by the CLI
for seeding, reporting and operator clean-up. The async pipeline itself
goes through :class:`adbulk.bulk.state.AsyncBulkStateManager`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from adbulk.models import (
    Action,
    CampaignRef,
    JobStatus,
    OperandType,
    QueueItem,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
-- Campaigns already synchronized to the platform (resolution context)
CREATE TABLE IF NOT EXISTS campaigns (
    id INTEGER PRIMARY KEY,
    account_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_campaigns_account ON campaigns(account_id);

-- Pending local changes; error IS NULL means eligible for the next batch
CREATE TABLE IF NOT EXISTS queue_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operand_type TEXT NOT NULL
        CHECK(operand_type IN ('ad', 'ad_group', 'keyword', 'extension')),
    action TEXT NOT NULL
        CHECK(action IN ('add', 'update', 'delete')),
    account_id TEXT NOT NULL,
    campaign_id INTEGER NOT NULL,
    template_id INTEGER,
    parent_external_id TEXT,
    natural_text TEXT NOT NULL,
    attributes_json TEXT,
    external_id TEXT,
    error TEXT,
    exemptions_json TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_queue_scope
    ON queue_items(operand_type, action, account_id, error);
CREATE INDEX IF NOT EXISTS idx_queue_campaign ON queue_items(campaign_id);

CREATE TRIGGER IF NOT EXISTS update_queue_items_timestamp
    AFTER UPDATE ON queue_items
    FOR EACH ROW
    BEGIN
        UPDATE queue_items SET updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')
        WHERE id = NEW.id;
    END;

-- Submitted remote jobs
CREATE TABLE IF NOT EXISTS batch_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operand_type TEXT NOT NULL
        CHECK(operand_type IN ('ad', 'ad_group', 'keyword', 'extension')),
    action TEXT NOT NULL
        CHECK(action IN ('add', 'update', 'delete')),
    account_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending_result'
        CHECK(status IN ('pending_result', 'pending_cancellation', 'complete', 'error')),
    remote_job_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_poll_at TEXT NOT NULL,
    error TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_jobs_due ON batch_jobs(status, next_poll_at);
CREATE INDEX IF NOT EXISTS idx_jobs_scope ON batch_jobs(operand_type, action, account_id, status);

CREATE TRIGGER IF NOT EXISTS update_batch_jobs_timestamp
    AFTER UPDATE ON batch_jobs
    FOR EACH ROW
    BEGIN
        UPDATE batch_jobs SET updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')
        WHERE id = NEW.id;
    END;

-- Submission order of a job's logical items (write-once)
CREATE TABLE IF NOT EXISTS batch_job_items (
    job_id INTEGER NOT NULL REFERENCES batch_jobs(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    item_id INTEGER NOT NULL,
    PRIMARY KEY (job_id, position)
);

CREATE INDEX IF NOT EXISTS idx_job_items_item ON batch_job_items(item_id);

CREATE TRIGGER IF NOT EXISTS batch_job_items_immutable
    BEFORE UPDATE ON batch_job_items
    FOR EACH ROW
    BEGIN
        SELECT RAISE(ABORT, 'batch_job_items rows are write-once');
    END;

-- Local mirror of content confirmed on the platform
CREATE TABLE IF NOT EXISTS confirmed_entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operand_type TEXT NOT NULL
        CHECK(operand_type IN ('ad', 'ad_group', 'keyword', 'extension')),
    external_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    campaign_id INTEGER NOT NULL,
    template_id INTEGER,
    parent_external_id TEXT,
    natural_text TEXT NOT NULL,
    attributes_json TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    UNIQUE(operand_type, campaign_id, external_id)
);

-- Operator-facing failure log
CREATE TABLE IF NOT EXISTS error_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operand_type TEXT NOT NULL,
    item_id INTEGER NOT NULL,
    campaign_id INTEGER NOT NULL,
    campaign_name TEXT,
    natural_text TEXT,
    raw_message TEXT NOT NULL,
    category TEXT NOT NULL,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_errors_item ON error_records(item_id);
CREATE INDEX IF NOT EXISTS idx_errors_type ON error_records(operand_type);

-- One submitter per (account, operand type) at a time
CREATE TABLE IF NOT EXISTS scope_locks (
    scope TEXT PRIMARY KEY,
    instance_id TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);
"""


class Database:
    """SQLite database wrapper for the bulk pipeline.

    Usage:
        with Database("data/adbulk.db") as db:
            db.upsert_campaign(campaign)
            db.enqueue_items(items)
            counts = db.get_queue_counts()
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self._setup_pragmas()
        self._setup_schema()

    def _setup_pragmas(self) -> None:
        """Configure SQLite pragmas for performance and reliability."""
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA temp_store=MEMORY")

    def _setup_schema(self) -> None:
        """Create tables, indexes, and triggers if they don't exist."""
        self.conn.executescript(SCHEMA_SQL)
        self.conn.execute("PRAGMA user_version = 1")

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def upsert_campaign(self, campaign: CampaignRef) -> None:
        """Insert or replace a campaign reference."""
        with self.conn:
            self.conn.execute(
                """INSERT INTO campaigns (id, account_id, external_id, name)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       account_id = excluded.account_id,
                       external_id = excluded.external_id,
                       name = excluded.name""",
                (campaign.id, campaign.account_id, campaign.external_id, campaign.name),
            )

    def enqueue_items(self, items: list[QueueItem]) -> list[int]:
        """Insert queue items in a single transaction.

        The ``id`` of each item is ignored; SQLite assigns one.

        Returns:
            Assigned ids, in input order.
        """
        ids: list[int] = []
        with self.conn:
            for item in items:
                cursor = self.conn.execute(
                    """INSERT INTO queue_items (
                           operand_type, action, account_id, campaign_id, template_id,
                           parent_external_id, natural_text, attributes_json,
                           external_id, error, exemptions_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        item.operand_type.value,
                        item.action.value,
                        item.account_id,
                        item.campaign_id,
                        item.template_id,
                        item.parent_external_id,
                        item.natural_text,
                        json.dumps(item.attributes),
                        item.external_id,
                        item.error,
                        json.dumps([e.to_dict() for e in item.exemptions]),
                    ),
                )
                ids.append(cursor.lastrowid)
        return ids

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_queue_counts(self) -> list[sqlite3.Row]:
        """Return queue counts grouped by operand type, action and parked state."""
        return self.conn.execute(
            """SELECT operand_type, action,
                      SUM(CASE WHEN error IS NULL THEN 1 ELSE 0 END) AS pending,
                      SUM(CASE WHEN error IS NOT NULL THEN 1 ELSE 0 END) AS errored
               FROM queue_items
               GROUP BY operand_type, action
               ORDER BY operand_type, action"""
        ).fetchall()

    def get_job_counts(self) -> dict[str, int]:
        """Return count of batch jobs grouped by status."""
        rows = self.conn.execute(
            "SELECT status, COUNT(*) as cnt FROM batch_jobs GROUP BY status"
        ).fetchall()
        return {row["status"]: row["cnt"] for row in rows}

    def list_jobs(self, status: JobStatus | None = None, limit: int = 50) -> list[sqlite3.Row]:
        """Return the most recent batch jobs, optionally filtered by status."""
        sql = """SELECT j.id, j.operand_type, j.action, j.account_id, j.status,
                        j.remote_job_id, j.attempts, j.next_poll_at, j.error,
                        (SELECT COUNT(*) FROM batch_job_items i WHERE i.job_id = j.id) AS item_count
                 FROM batch_jobs j"""
        params: tuple = ()
        if status is not None:
            sql += " WHERE j.status = ?"
            params = (status.value,)
        sql += " ORDER BY j.id DESC LIMIT ?"
        return self.conn.execute(sql, (*params, limit)).fetchall()

    def list_errors(
        self, operand_type: OperandType | None = None, limit: int = 100
    ) -> list[sqlite3.Row]:
        """Return the most recent error records, optionally for one operand type."""
        sql = """SELECT id, operand_type, item_id, campaign_id, campaign_name,
                        natural_text, raw_message, category, created_at
                 FROM error_records"""
        params: tuple = ()
        if operand_type is not None:
            sql += " WHERE operand_type = ?"
            params = (operand_type.value,)
        sql += " ORDER BY id DESC LIMIT ?"
        return self.conn.execute(sql, (*params, limit)).fetchall()

    # ------------------------------------------------------------------
    # Operator clean-up
    # ------------------------------------------------------------------

    def clear_errors(
        self,
        operand_type: OperandType,
        campaign_id: int | None = None,
        action: Action | None = None,
    ) -> int:
        """Make parked queue items eligible again and drop their error records.

        Returns:
            Number of queue items released.
        """
        where = "operand_type = ? AND error IS NOT NULL"
        params: list[object] = [operand_type.value]
        if campaign_id is not None:
            where += " AND campaign_id = ?"
            params.append(campaign_id)
        if action is not None:
            where += " AND action = ?"
            params.append(action.value)

        with self.conn:
            self.conn.execute(
                f"""DELETE FROM error_records
                    WHERE item_id IN (SELECT id FROM queue_items WHERE {where})""",
                params,
            )
            cursor = self.conn.execute(
                f"UPDATE queue_items SET error = NULL WHERE {where}", params
            )
        logger.info(
            "Cleared errors on %d %s queue items", cursor.rowcount, operand_type.value
        )
        return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
