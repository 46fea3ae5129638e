"""Tests for ResultReconciler: positional mapping and natural-key fallback."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import ACCOUNT, FakeBulkApi, make_campaign, make_item

from adbulk.bulk.client import JobResults, OperationFailure, RemoteEntity
from adbulk.bulk.reconciler import ResultReconciler
from adbulk.models import Action, BatchJob, JobStatus, OperandType

CRITERIA = "customers/1234567890/adGroupCriteria/5001~"
CAMPAIGNS = {1: make_campaign()}


def _job(item_ids, operand_type=OperandType.KEYWORD, action=Action.ADD) -> BatchJob:
    return BatchJob(
        id=1,
        operand_type=operand_type,
        action=action,
        account_id=ACCOUNT,
        status=JobStatus.PENDING_RESULT,
        remote_job_id="remote-1",
        attempts=1,
        next_poll_at=datetime(2026, 1, 5, tzinfo=timezone.utc),
        item_ids=list(item_ids),
    )


def _keywords(*texts, action=Action.ADD, start=1):
    return {
        start + n: make_item(text, action=action, item_id=start + n)
        for n, text in enumerate(texts)
    }


@pytest.fixture
def api() -> FakeBulkApi:
    return FakeBulkApi()


class TestPrimaryPath:
    @pytest.mark.asyncio
    async def test_all_successes_resolve_by_position(self, api):
        """3 items, 3 ordered results: every item resolved, no fallback query."""
        items = _keywords("a", "b", "c")
        results = JobResults(successes={i: f"{CRITERIA}{100 + i}" for i in range(3)})

        outcome = await ResultReconciler(api).reconcile(_job(items), results, items, CAMPAIGNS)

        assert outcome.resolved == {1: "100", 2: "101", 3: "102"}
        assert outcome.complete
        assert not outcome.used_fallback
        assert api.query_calls == []

    @pytest.mark.asyncio
    async def test_successes_and_failures_account_for_all(self, api):
        """4 successes + 1 indexed error: the error maps to its item, no fallback."""
        items = _keywords("a", "b", "c", "d", "e")
        failure = OperationFailure("The keyword text contains invalid characters")
        results = JobResults(
            successes={0: CRITERIA + "10", 1: CRITERIA + "11", 3: CRITERIA + "13", 4: CRITERIA + "14"},
            failures={2: failure},
        )

        outcome = await ResultReconciler(api).reconcile(_job(items), results, items, CAMPAIGNS)

        assert outcome.failed == {3: failure}
        assert sorted(outcome.resolved) == [1, 2, 4, 5]
        assert api.query_calls == []

    @pytest.mark.asyncio
    async def test_extension_pairs_collapse_to_items(self, api):
        """Two operations per extension add: id comes from the link, failures from either."""
        items = {
            n: make_item(f"ext {n}", operand_type=OperandType.EXTENSION,
                         parent_external_id=None, item_id=n)
            for n in (1, 2, 3)
        }
        failure = OperationFailure("Asset text too long")
        results = JobResults(
            successes={
                0: "customers/1234567890/assets/501",
                1: "customers/1234567890/campaignAssets/9001~501~CALLOUT",
                5: "customers/1234567890/campaignAssets/9001~503~CALLOUT",
            },
            failures={2: failure},
        )

        outcome = await ResultReconciler(api).reconcile(
            _job(items, OperandType.EXTENSION), results, items, CAMPAIGNS
        )

        assert outcome.resolved == {1: "501", 3: "503"}
        assert outcome.failed == {2: failure}
        assert outcome.complete
        assert api.query_calls == []

    @pytest.mark.asyncio
    async def test_extra_result_forces_fallback(self, api):
        items = _keywords("a")
        results = JobResults(successes={0: CRITERIA + "1", 7: CRITERIA + "2"})

        outcome = await ResultReconciler(api).reconcile(_job(items), results, items, CAMPAIGNS)

        assert outcome.used_fallback
        assert outcome.resolved == {1: "1"}

    @pytest.mark.asyncio
    async def test_matching_count_with_shifted_index_skips_query(self, api):
        """2 items, 2 results but one at index 2: no query, the gap stays unaccounted."""
        items = _keywords("a", "b")
        results = JobResults(successes={0: CRITERIA + "10", 2: CRITERIA + "11"})
        api.entities = [RemoteEntity("11", "9001", "b", "5001")]

        outcome = await ResultReconciler(api).reconcile(_job(items), results, items, CAMPAIGNS)

        assert not outcome.used_fallback
        assert api.query_calls == []
        assert outcome.resolved == {1: "10"}
        assert outcome.unaccounted == [2]
        assert not outcome.complete

    @pytest.mark.asyncio
    async def test_matching_count_with_unparsable_id_skips_query(self, api):
        """A success whose resource name yields no id leaves the item unaccounted."""
        items = _keywords("a", "b")
        results = JobResults(successes={0: CRITERIA + "10", 1: CRITERIA})

        outcome = await ResultReconciler(api).reconcile(_job(items), results, items, CAMPAIGNS)

        assert api.query_calls == []
        assert outcome.unaccounted == [2]


class TestFallback:
    @pytest.mark.asyncio
    async def test_missing_result_resolved_by_natural_key(self, api):
        """5 items, 4 results: the live entity list recovers the missing id."""
        items = _keywords("a", "b", "c", "d", "e")
        results = JobResults(successes={i: f"{CRITERIA}{10 + i}" for i in (0, 1, 2, 4)})
        api.entities = [
            RemoteEntity("13", "9001", "  D ", parent_external_id="5001"),
            RemoteEntity("10", "9001", "a", parent_external_id="5001"),
        ]

        outcome = await ResultReconciler(api).reconcile(_job(items), results, items, CAMPAIGNS)

        assert outcome.used_fallback
        assert outcome.resolved[4] == "13"
        assert outcome.complete
        assert api.query_calls == [(ACCOUNT, OperandType.KEYWORD, ["9001"])]

    @pytest.mark.asyncio
    async def test_unmatched_item_stays_unaccounted(self, api):
        """4 recovered, 1 not on the platform: the reconciliation is incomplete."""
        items = _keywords("a", "b", "c", "d", "e")
        results = JobResults(successes={i: f"{CRITERIA}{10 + i}" for i in range(4)})
        api.entities = [RemoteEntity(str(10 + i), "9001", t, "5001") for i, t in enumerate("abcd")]

        outcome = await ResultReconciler(api).reconcile(_job(items), results, items, CAMPAIGNS)

        assert outcome.unaccounted == [5]
        assert not outcome.complete

    @pytest.mark.asyncio
    async def test_already_claimed_ids_are_not_reused(self, api):
        """Two items with the same text never resolve to the same entity."""
        items = _keywords("dup", "dup")
        api.entities = [RemoteEntity("77", "9001", "dup", "5001")]

        outcome = await ResultReconciler(api).reconcile(
            _job(items), JobResults(), items, CAMPAIGNS
        )

        assert outcome.resolved == {1: "77"}
        assert outcome.unaccounted == [2]

    @pytest.mark.asyncio
    async def test_delete_resolved_by_absence(self, api):
        items = {
            1: make_item("gone", action=Action.DELETE, external_id="55", item_id=1),
            2: make_item("kept", action=Action.DELETE, external_id="56", item_id=2),
        }
        api.entities = [RemoteEntity("56", "9001", "kept", "5001")]

        outcome = await ResultReconciler(api).reconcile(
            _job(items, action=Action.DELETE), JobResults(), items, CAMPAIGNS
        )

        assert outcome.resolved == {1: "55"}
        assert outcome.unaccounted == [2]

    @pytest.mark.asyncio
    async def test_update_resolved_by_live_id(self, api):
        items = {1: make_item("renamed", action=Action.UPDATE, external_id="55", item_id=1)}
        api.entities = [RemoteEntity("55", "9001", "renamed", "5001")]

        outcome = await ResultReconciler(api).reconcile(
            _job(items, action=Action.UPDATE), JobResults(), items, CAMPAIGNS
        )

        assert outcome.resolved == {1: "55"}

    @pytest.mark.asyncio
    async def test_fallback_keeps_positional_failures(self, api):
        """Failures reported by index still count when the totals do not add up."""
        items = _keywords("a", "b", "c")
        failure = OperationFailure("bad keyword")
        results = JobResults(successes={0: CRITERIA + "10"}, failures={1: failure})
        api.entities = [RemoteEntity("12", "9001", "c", "5001")]

        outcome = await ResultReconciler(api).reconcile(_job(items), results, items, CAMPAIGNS)

        assert outcome.failed == {2: failure}
        assert outcome.resolved == {1: "10", 3: "12"}
        assert outcome.complete
