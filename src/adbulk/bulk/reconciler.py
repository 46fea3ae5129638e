"""Result reconciler: map per-operation outcomes back onto queue items.

Operation index *i* belongs to the item at position ``i // k`` of the job's
ordered item ids, where *k* is the number of operations one item expands
to. An item is resolved when the operation carrying its id succeeded and
no operation of its group failed; it is failed when any operation of its
group failed.

Primary path: when the results cover exactly as many item groups as were
submitted, the positional mapping is trusted and no further remote calls
are made. A position that still carries no usable result stays
unaccounted.

Fallback path: on a count mismatch the platform is queried for the live
entities of the affected campaigns and each still-unaccounted item is
matched by natural key (adds), by external id or natural key (updates), or by
absence (deletes). Items still unaccounted afterwards make the
reconciliation incomplete.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from adbulk.bulk.client import BulkMutationApi, JobResults, OperationFailure
from adbulk.bulk.operands import NaturalKey, OperandVariant, get_variant
from adbulk.models import Action, BatchJob, CampaignRef, QueueItem

logger = logging.getLogger(__name__)


@dataclass
class Reconciliation:
    """Outcome of reconciling one job.

    Attributes:
        resolved: Item id to external id.
        failed: Item id to the first failure reported for its operations.
        unaccounted: Item ids neither resolved nor failed, in submission order.
        used_fallback: True if the natural-key lookup ran.
    """

    resolved: dict[int, str] = field(default_factory=dict)
    failed: dict[int, OperationFailure] = field(default_factory=dict)
    unaccounted: list[int] = field(default_factory=list)
    used_fallback: bool = False

    @property
    def complete(self) -> bool:
        return not self.unaccounted


class ResultReconciler:
    """Reconciles :class:`~adbulk.bulk.client.JobResults` against a job's item ids."""

    def __init__(self, client: BulkMutationApi) -> None:
        self._client = client

    async def reconcile(
        self,
        job: BatchJob,
        results: JobResults,
        items: dict[int, QueueItem],
        campaigns: dict[int, CampaignRef],
    ) -> Reconciliation:
        """Reconcile *results* for *job*.

        Args:
            job: The job whose ``item_ids`` define submission order.
            results: Sparse per-operation outcomes.
            items: Queue items still present, keyed by id.
            campaigns: Resolution context for the items' campaigns.

        Raises:
            RemoteApiError: If the fallback entity query fails.
        """
        variant = get_variant(job.operand_type)
        outcome = self._map_by_position(job, results, variant, items)
        submitted = len(job.item_ids)
        reported = self._reported_groups(results, variant.ops_per_item(job.action))

        if reported == submitted:
            if outcome.unaccounted:
                logger.error(
                    "Batch job %d: %d of %d items have no usable result at their position",
                    job.id,
                    len(outcome.unaccounted),
                    submitted,
                )
            else:
                logger.info(
                    "Batch job %d reconciled by position: %d resolved, %d failed",
                    job.id,
                    len(outcome.resolved),
                    len(outcome.failed),
                )
            return outcome

        logger.warning(
            "Batch job %d: results for %d of %d items, falling back to natural-key lookup",
            job.id,
            reported,
            submitted,
        )
        outcome.used_fallback = True
        await self._fallback(job, outcome, variant, items, campaigns)

        if outcome.unaccounted:
            logger.error(
                "Batch job %d: %d of %d items unaccounted after fallback",
                job.id,
                len(outcome.unaccounted),
                submitted,
            )
        return outcome

    # ------------------------------------------------------------------
    # Primary path
    # ------------------------------------------------------------------

    @staticmethod
    def _reported_groups(results: JobResults, k: int) -> int:
        """Number of item groups the results speak for, whatever their range."""
        return len({index // k for index in (*results.successes, *results.failures)})

    @staticmethod
    def _map_by_position(
        job: BatchJob,
        results: JobResults,
        variant: OperandVariant,
        items: dict[int, QueueItem],
    ) -> Reconciliation:
        """Collapse operation indexes onto item positions.

        Indexes outside the submitted range are ignored; ``unaccounted`` is
        filled in with every position left without a usable result.
        """
        k = variant.ops_per_item(job.action)
        id_offset = variant.id_offset(job.action)
        op_count = len(job.item_ids) * k

        outcome = Reconciliation()
        for index in sorted(results.failures):
            if 0 <= index < op_count:
                item_id = job.item_ids[index // k]
                outcome.failed.setdefault(item_id, results.failures[index])

        for position, item_id in enumerate(job.item_ids):
            if item_id in outcome.failed:
                continue
            resource_name = results.successes.get(position * k + id_offset)
            if resource_name is None:
                outcome.unaccounted.append(item_id)
                continue
            external_id = variant.parse_external_id(resource_name)
            if not external_id:
                item = items.get(item_id)
                external_id = item.external_id if item else None
            if external_id:
                outcome.resolved[item_id] = external_id
            else:
                outcome.unaccounted.append(item_id)
        return outcome

    # ------------------------------------------------------------------
    # Fallback path
    # ------------------------------------------------------------------

    async def _fallback(
        self,
        job: BatchJob,
        outcome: Reconciliation,
        variant: OperandVariant,
        items: dict[int, QueueItem],
        campaigns: dict[int, CampaignRef],
    ) -> None:
        pending = [i for i in outcome.unaccounted if i in items and items[i].campaign_id in campaigns]
        if not pending:
            return

        campaign_external_ids = sorted(
            {campaigns[items[item_id].campaign_id].external_id for item_id in pending}
        )
        entities = await self._client.query_entities(
            job.account_id, job.operand_type, campaign_external_ids
        )
        logger.info(
            "Fallback query for batch job %d returned %d %s entities in %d campaigns",
            job.id,
            len(entities),
            job.operand_type.value,
            len(campaign_external_ids),
        )

        by_key: dict[NaturalKey, list[str]] = defaultdict(list)
        for entity in entities:
            by_key[variant.entity_key(entity)].append(entity.external_id)
        live_ids = {entity.external_id for entity in entities}
        claimed = set(outcome.resolved.values())

        for item_id in pending:
            item = items[item_id]
            campaign = campaigns[item.campaign_id]
            external_id = self._match(job.action, item, campaign, variant, by_key, live_ids, claimed)
            if external_id is not None:
                outcome.resolved[item_id] = external_id
                claimed.add(external_id)

        outcome.unaccounted = [i for i in outcome.unaccounted if i not in outcome.resolved]

    @staticmethod
    def _match(
        action: Action,
        item: QueueItem,
        campaign: CampaignRef,
        variant: OperandVariant,
        by_key: dict[NaturalKey, list[str]],
        live_ids: set[str],
        claimed: set[str],
    ) -> str | None:
        if action is Action.DELETE:
            if item.external_id is not None and item.external_id not in live_ids:
                return item.external_id
            return None

        if action is Action.UPDATE and item.external_id in live_ids:
            return item.external_id

        key = variant.natural_key(item, campaign)
        if key is None:
            return None
        for external_id in by_key.get(key, []):
            if external_id not in claimed:
                return external_id
        return None

