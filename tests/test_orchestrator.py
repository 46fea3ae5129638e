"""End-to-end tests for BulkOrchestrator with the fake remote API."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from conftest import ACCOUNT, enqueue, make_item

from adbulk.bulk.client import JobResults
from adbulk.bulk.exceptions import RemoteApiError, UnexpectedJobStateError
from adbulk.bulk.orchestrator import BulkOrchestrator
from adbulk.models import Action, OperandType, RemoteJobStatus

CRITERIA = "customers/1234567890/adGroupCriteria/5001~"


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _orchestrator(state, api, notifier, config, clock, sleep=None, instance_id="test-run"):
    return BulkOrchestrator(
        state,
        api,
        notifier=notifier,
        config=config,
        clock=clock,
        sleep=sleep or RecordingSleep(),
        instance_id=instance_id,
    )


class TestSchedule:
    @pytest.mark.asyncio
    async def test_submit_then_poll_to_completion(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        """3 items submitted, 3 ordered results: all committed, scope empty afterwards."""
        ids = enqueue(tmp_db, make_item("a"), make_item("b"), make_item("c"))
        orchestrator = _orchestrator(state, api, notifier, config, clock)

        summary = await orchestrator.schedule(OperandType.KEYWORD, Action.ADD)
        assert summary["jobs"] == 1
        assert summary["items"] == 3

        assert await orchestrator.process_due_jobs() == {}

        api.set_status("remote-1", RemoteJobStatus.DONE)
        api.results["remote-1"] = JobResults(
            successes={i: f"{CRITERIA}{100 + i}" for i in range(3)}
        )
        clock.advance(config.first_poll_delay_seconds)

        assert await orchestrator.process_due_jobs() == {"complete": 1}
        assert await state.get_queue_items(ids) == {}
        assert await state.get_pending_items(OperandType.KEYWORD, Action.ADD, ACCOUNT) == []
        assert notifier.alerts == []

    @pytest.mark.asyncio
    async def test_large_scope_splits_into_delayed_jobs(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        """Items beyond one batch go into further jobs, spaced by the API delay."""
        enqueue(tmp_db, *[make_item(f"kw {n}") for n in range(5)])
        sleep = RecordingSleep()
        small = replace(config, batch_size=2, max_parallel_jobs=2, api_delay_seconds=2.0)
        orchestrator = _orchestrator(state, api, notifier, small, clock, sleep=sleep)

        summary = await orchestrator.schedule(OperandType.KEYWORD, Action.ADD)

        assert summary["jobs"] == 2
        assert summary["items"] == 4
        assert sleep.calls == [2.0]
        jobs = await state.get_due_jobs()
        assert jobs == []

    @pytest.mark.asyncio
    async def test_dry_run_has_no_side_effects(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        ids = enqueue(tmp_db, make_item("a"), make_item("b"))
        orchestrator = _orchestrator(state, api, notifier, config, clock)

        summary = await orchestrator.schedule(OperandType.KEYWORD, Action.ADD, dry_run=True)

        assert summary["items"] == 2
        assert summary["jobs"] == 0
        assert api.created == []
        assert len(await state.get_queue_items(ids)) == 2
        assert tmp_db.get_job_counts() == {}

    @pytest.mark.asyncio
    async def test_locked_scope_is_skipped(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        """A scope held by another run is left for later."""
        enqueue(tmp_db, make_item("a"))
        await state.acquire_scope_lock(f"{ACCOUNT}:keyword", "other-run")
        orchestrator = _orchestrator(state, api, notifier, config, clock)

        summary = await orchestrator.schedule(OperandType.KEYWORD, Action.ADD)

        assert summary["locked"] == 1
        assert api.created == []

    @pytest.mark.asyncio
    async def test_lock_released_after_run(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        enqueue(tmp_db, make_item("a"))
        orchestrator = _orchestrator(state, api, notifier, config, clock)

        await orchestrator.schedule(OperandType.KEYWORD, Action.ADD)

        assert await state.acquire_scope_lock(f"{ACCOUNT}:keyword", "next-run")

    @pytest.mark.asyncio
    async def test_interleaved_runs_never_resubmit_items(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        """A run that scanned before another run submitted sends nothing twice."""
        ids = enqueue(tmp_db, make_item("a"), make_item("b"))
        first = _orchestrator(state, api, notifier, config, clock, instance_id="run-a")
        second = _orchestrator(state, api, notifier, config, clock, instance_id="run-b")
        scan = state.get_accounts_with_pending
        other_run: dict[str, dict[str, int]] = {}

        async def scan_then_other_run_submits(operand_type, action):
            accounts = await scan(operand_type, action)
            if "summary" not in other_run:
                other_run["summary"] = {}
                other_run["summary"] = await second.schedule(operand_type, action)
            return accounts

        state.get_accounts_with_pending = scan_then_other_run_submits

        summary = await first.schedule(OperandType.KEYWORD, Action.ADD)

        assert other_run["summary"]["jobs"] == 1
        assert summary["jobs"] == 0
        assert api.created == [ACCOUNT]
        rows = tmp_db.conn.execute("SELECT item_id FROM batch_job_items ORDER BY position").fetchall()
        assert [row["item_id"] for row in rows] == ids

    @pytest.mark.asyncio
    async def test_unknown_campaign_purges_its_queue(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        orphan_ids = enqueue(tmp_db, make_item("x", campaign_id=42), make_item("y", campaign_id=42))
        orchestrator = _orchestrator(state, api, notifier, config, clock)

        summary = await orchestrator.schedule(OperandType.KEYWORD, Action.ADD)

        assert summary["purged"] == 2
        assert summary["jobs"] == 0
        assert await state.get_queue_items(orphan_ids) == {}

    @pytest.mark.asyncio
    async def test_creation_failure_parks_scope(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        """Job creation fails: no job row, every candidate item carries the error."""
        ids = enqueue(tmp_db, *[make_item(f"kw {n}") for n in range(3)])
        api.create_error = RemoteApiError("The customer account is not active")
        orchestrator = _orchestrator(state, api, notifier, config, clock)

        summary = await orchestrator.schedule(OperandType.KEYWORD, Action.ADD)

        assert summary["jobs"] == 0
        assert tmp_db.get_job_counts() == {}
        items = await state.get_queue_items(ids)
        assert {item.error for item in items.values()} == {"The customer account is not active"}


class TestProcessDueJobs:
    @pytest.mark.asyncio
    async def test_one_failing_poll_does_not_stop_others(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        first = enqueue(tmp_db, make_item("a"))
        second = enqueue(tmp_db, make_item("b"))
        await state.create_job(OperandType.KEYWORD, Action.ADD, ACCOUNT, "broken", first, clock.now)
        await state.create_job(OperandType.KEYWORD, Action.ADD, ACCOUNT, "remote-9", second, clock.now)
        api.set_status("remote-9", RemoteJobStatus.DONE)
        api.results["remote-9"] = JobResults(successes={0: CRITERIA + "1"})
        original = api.get_job_status

        async def flaky(account_id, remote_job_id):
            if remote_job_id == "broken":
                raise RuntimeError("socket closed")
            return await original(account_id, remote_job_id)

        api.get_job_status = flaky
        orchestrator = _orchestrator(state, api, notifier, config, clock)

        counts = await orchestrator.process_due_jobs()

        assert counts == {"failed": 1, "complete": 1}
        assert len(notifier.alerts) == 1

    @pytest.mark.asyncio
    async def test_unexpected_state_is_fatal(
        self, state, api, notifier, config, clock, tmp_db, campaign
    ):
        ids = enqueue(tmp_db, make_item("a"))
        job = await state.create_job(OperandType.KEYWORD, Action.ADD, ACCOUNT, "r", ids, clock.now)
        orchestrator = _orchestrator(state, api, notifier, config, clock)
        orchestrator.poller.poll = AsyncMock(
            side_effect=UnexpectedJobStateError(job.id, "complete", 9)
        )

        with pytest.raises(UnexpectedJobStateError):
            await orchestrator.process_due_jobs()
