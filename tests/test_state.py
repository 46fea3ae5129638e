"""Tests for AsyncBulkStateManager and the schema it relies on."""

from __future__ import annotations

import sqlite3

import pytest

from conftest import ACCOUNT, enqueue, make_item

from adbulk.models import Action, JobStatus, OperandType, PolicyExemption


async def _job(state, ids, clock, operand_type=OperandType.KEYWORD, action=Action.ADD):
    return await state.create_job(operand_type, action, ACCOUNT, "remote-1", ids, clock.now)


class TestQueueReads:
    @pytest.mark.asyncio
    async def test_pending_items_skip_parked(self, state, tmp_db, campaign):
        ids = enqueue(tmp_db, make_item("a"), make_item("b"), make_item("c"))
        await state.set_item_errors({ids[1]: "rejected"})

        items = await state.get_pending_items(OperandType.KEYWORD, Action.ADD, ACCOUNT)

        assert [i.id for i in items] == [ids[0], ids[2]]

    @pytest.mark.asyncio
    async def test_pending_items_respect_limit(self, state, tmp_db, campaign):
        enqueue(tmp_db, *[make_item(str(n)) for n in range(5)])
        items = await state.get_pending_items(OperandType.KEYWORD, Action.ADD, ACCOUNT, limit=2)
        assert len(items) == 2

    @pytest.mark.asyncio
    async def test_account_with_inflight_job_is_excluded(self, state, tmp_db, campaign, clock):
        """An account with a PendingResult job for the same scope is not offered again."""
        ids = enqueue(tmp_db, make_item("a"), make_item("b", account_id="555-555-5555"))
        assert await state.get_accounts_with_pending(OperandType.KEYWORD, Action.ADD) == [
            ACCOUNT,
            "555-555-5555",
        ]

        job = await _job(state, [ids[0]], clock)
        enqueue(tmp_db, make_item("c"))
        assert await state.get_accounts_with_pending(OperandType.KEYWORD, Action.ADD) == [
            "555-555-5555"
        ]

        await state.transition_job(job.id, JobStatus.PENDING_RESULT, JobStatus.COMPLETE)
        assert ACCOUNT in await state.get_accounts_with_pending(OperandType.KEYWORD, Action.ADD)

    @pytest.mark.asyncio
    async def test_pending_items_skip_items_in_flight(self, state, tmp_db, campaign, clock):
        """Items listed by a PendingResult job come back only once it settles."""
        ids = enqueue(tmp_db, make_item("a"), make_item("b"), make_item("c"))
        job = await _job(state, ids[:2], clock)

        items = await state.get_pending_items(OperandType.KEYWORD, Action.ADD, ACCOUNT)
        assert [i.id for i in items] == [ids[2]]

        await state.transition_job(job.id, JobStatus.PENDING_RESULT, JobStatus.ERROR)
        items = await state.get_pending_items(OperandType.KEYWORD, Action.ADD, ACCOUNT)
        assert [i.id for i in items] == ids

    @pytest.mark.asyncio
    async def test_unknown_campaigns_are_absent(self, state, campaign):
        refs = await state.get_campaigns([1, 2])
        assert list(refs) == [1]
        assert refs[1].external_id == "9001"


class TestQueueWrites:
    @pytest.mark.asyncio
    async def test_exemptions_are_deduplicated(self, state, tmp_db, campaign):
        (item_id,) = enqueue(tmp_db, make_item("acme"))
        exemption = PolicyExemption("trademarks", "acme")

        await state.add_exemptions({item_id: [exemption]})
        await state.add_exemptions({item_id: [exemption, PolicyExemption("health", "acme")]})

        item = (await state.get_queue_items([item_id]))[item_id]
        assert item.exemptions == [exemption, PolicyExemption("health", "acme")]

    @pytest.mark.asyncio
    async def test_remove_by_campaign_filters_operand(self, state, tmp_db, campaign):
        enqueue(
            tmp_db,
            make_item("a"),
            make_item("b"),
            make_item("Group", operand_type=OperandType.AD_GROUP, parent_external_id=None),
        )

        removed = await state.remove_queue_items_by_campaign(1, OperandType.KEYWORD)

        assert removed == 2
        counts = {(r["operand_type"], r["action"]): r["pending"] for r in tmp_db.get_queue_counts()}
        assert counts == {("ad_group", "add"): 1}


class TestJobs:
    @pytest.mark.asyncio
    async def test_item_order_round_trips(self, state, tmp_db, campaign, clock):
        ids = enqueue(tmp_db, make_item("a"), make_item("b"), make_item("c"))
        order = [ids[2], ids[0], ids[1]]

        job = await _job(state, order, clock)

        assert (await state.get_job(job.id)).item_ids == order

    @pytest.mark.asyncio
    async def test_created_job_matches_stored_row(self, state, tmp_db, campaign, clock):
        ids = enqueue(tmp_db, make_item("a"), make_item("b"))

        job = await _job(state, ids, clock)

        assert job.status is JobStatus.PENDING_RESULT
        assert job.attempts == 0
        assert await state.get_job(job.id) == job
        assert await state.has_job_in_flight(OperandType.KEYWORD, Action.ADD, ACCOUNT)
        assert not await state.has_job_in_flight(OperandType.KEYWORD, Action.DELETE, ACCOUNT)

    @pytest.mark.asyncio
    async def test_job_items_are_write_once(self, state, tmp_db, campaign, clock):
        ids = enqueue(tmp_db, make_item("a"))
        job = await _job(state, ids, clock)

        with pytest.raises(sqlite3.IntegrityError, match="write-once"):
            tmp_db.conn.execute(
                "UPDATE batch_job_items SET item_id = 999 WHERE job_id = ?", (job.id,)
            )

    @pytest.mark.asyncio
    async def test_due_jobs_follow_clock(self, state, tmp_db, campaign, clock):
        ids = enqueue(tmp_db, make_item("a"))
        job = await _job(state, ids, clock)
        await state.record_poll(job.id, 1, clock.now.replace(minute=5))

        assert await state.get_due_jobs() == []
        clock.advance(5 * 60)
        assert [j.id for j in await state.get_due_jobs()] == [job.id]

    @pytest.mark.asyncio
    async def test_settled_jobs_are_never_due(self, state, tmp_db, campaign, clock):
        ids = enqueue(tmp_db, make_item("a"))
        job = await _job(state, ids, clock)
        await state.transition_job(job.id, JobStatus.PENDING_RESULT, JobStatus.ERROR)

        assert await state.get_due_jobs() == []


class TestScopeLocks:
    @pytest.mark.asyncio
    async def test_lock_is_exclusive(self, state):
        assert await state.acquire_scope_lock("acct:keyword", "run-a")
        assert not await state.acquire_scope_lock("acct:keyword", "run-b")
        assert await state.acquire_scope_lock("acct:ad", "run-b")

    @pytest.mark.asyncio
    async def test_release_frees_scope(self, state):
        await state.acquire_scope_lock("acct:keyword", "run-a")
        await state.release_scope_lock("acct:keyword", "run-a")
        assert await state.acquire_scope_lock("acct:keyword", "run-b")

    @pytest.mark.asyncio
    async def test_stale_lock_is_taken_over(self, state, clock):
        await state.acquire_scope_lock("acct:keyword", "crashed")
        clock.advance(2 * 3600)
        assert await state.acquire_scope_lock("acct:keyword", "run-b")

    @pytest.mark.asyncio
    async def test_release_by_other_instance_is_ignored(self, state):
        await state.acquire_scope_lock("acct:keyword", "run-a")
        await state.release_scope_lock("acct:keyword", "run-b")
        assert not await state.acquire_scope_lock("acct:keyword", "run-c")
