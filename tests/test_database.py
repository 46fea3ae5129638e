"""Tests for the synchronous Database layer (schema, seeding, reporting)."""

from __future__ import annotations

import sqlite3

import pytest

from conftest import enqueue, make_campaign, make_item

from adbulk.database import Database
from adbulk.models import Action, OperandType


class TestSchema:
    def test_tables_exist(self, tmp_db: Database):
        rows = tmp_db.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        names = {row["name"] for row in rows}
        assert {
            "campaigns",
            "queue_items",
            "batch_jobs",
            "batch_job_items",
            "confirmed_entities",
            "error_records",
            "scope_locks",
        } <= names

    def test_user_version(self, tmp_db: Database):
        assert tmp_db.conn.execute("PRAGMA user_version").fetchone()[0] == 1

    def test_operand_type_is_checked(self, tmp_db: Database):
        with pytest.raises(sqlite3.IntegrityError):
            tmp_db.conn.execute(
                """INSERT INTO queue_items (operand_type, action, account_id, campaign_id, natural_text)
                   VALUES ('banner', 'add', 'a', 1, 'x')"""
            )

    def test_reopen_is_idempotent(self, db_path: str):
        Database(db_path).close()
        Database(db_path).close()


class TestSeeding:
    def test_upsert_campaign_updates_name(self, tmp_db: Database):
        tmp_db.upsert_campaign(make_campaign(name="Old"))
        tmp_db.upsert_campaign(make_campaign(name="New"))
        row = tmp_db.conn.execute("SELECT name FROM campaigns WHERE id = 1").fetchone()
        assert row["name"] == "New"

    def test_enqueue_returns_ids_in_order(self, tmp_db: Database, campaign):
        ids = enqueue(tmp_db, make_item("a"), make_item("b"))
        assert ids == sorted(ids)
        assert len(set(ids)) == 2


class TestReporting:
    def test_queue_counts_split_pending_and_errored(self, tmp_db: Database, campaign):
        ids = enqueue(tmp_db, make_item("a"), make_item("b"), make_item("c", action=Action.DELETE))
        tmp_db.conn.execute("UPDATE queue_items SET error = 'x' WHERE id = ?", (ids[0],))
        tmp_db.conn.commit()

        counts = {
            (r["operand_type"], r["action"]): (r["pending"], r["errored"])
            for r in tmp_db.get_queue_counts()
        }

        assert counts == {("keyword", "add"): (1, 1), ("keyword", "delete"): (1, 0)}

    def test_clear_errors_scoped_by_campaign(self, tmp_db: Database, campaign):
        tmp_db.upsert_campaign(make_campaign(campaign_id=2, external_id="9002"))
        ids = enqueue(tmp_db, make_item("a"), make_item("b", campaign_id=2))
        tmp_db.conn.execute("UPDATE queue_items SET error = 'x'")
        tmp_db.conn.commit()

        released = tmp_db.clear_errors(OperandType.KEYWORD, campaign_id=2)

        assert released == 1
        rows = tmp_db.conn.execute("SELECT id, error FROM queue_items ORDER BY id").fetchall()
        assert [(r["id"], r["error"]) for r in rows] == [(ids[0], "x"), (ids[1], None)]
