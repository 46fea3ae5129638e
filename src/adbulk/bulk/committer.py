"""Local state committer: apply a reconciliation to the queue and confirmed stores."""

from __future__ import annotations

import logging
from dataclasses import replace

from adbulk.bulk.classifier import ErrorClassifier
from adbulk.bulk.reconciler import Reconciliation
from adbulk.bulk.state import AsyncBulkStateManager
from adbulk.models import (
    Action,
    BatchJob,
    CampaignRef,
    ConfirmedEntity,
    ErrorRecord,
    PolicyExemption,
    QueueItem,
)

logger = logging.getLogger(__name__)


class LocalStateCommitter:
    """Writes resolved items through to the confirmed store and records failures.

    Resolved adds and updates get their external id written, are mirrored
    into ``confirmed_entities`` and leave the queue. Resolved deletes remove
    the confirmed row and leave the queue. Failures are handled in order:

    - exemptible policy violation not yet exempted: the exemption marker is
      appended and the item stays eligible for the next batch
    - update rejected as identical and redundant: treated as already in sync
    - anything else: the item is parked with the raw message and an error
      record with the classified category is written

    Unaccounted items are left untouched.
    """

    def __init__(self, state: AsyncBulkStateManager, classifier: ErrorClassifier) -> None:
        self._state = state
        self._classifier = classifier

    async def commit(
        self,
        job: BatchJob,
        outcome: Reconciliation,
        items: dict[int, QueueItem],
        campaigns: dict[int, CampaignRef],
    ) -> dict[str, int]:
        """Apply *outcome* of *job*.

        Returns:
            Summary dict with keys: resolved, failed, exempted, redundant.
        """
        resolved = {
            item_id: replace(items[item_id], external_id=external_id)
            for item_id, external_id in outcome.resolved.items()
            if item_id in items
        }
        redundant: dict[int, QueueItem] = {}
        exemptions: dict[int, list[PolicyExemption]] = {}
        errors: dict[int, str] = {}
        error_records: list[ErrorRecord] = []

        for item_id, failure in outcome.failed.items():
            item = items.get(item_id)
            if item is None:
                continue
            category = self._classifier.classify(failure.message, failure.code)
            violation = failure.policy_violation

            if failure.exemptible and violation is not None and violation not in item.exemptions:
                exemptions.setdefault(item_id, []).append(violation)
            elif job.action is Action.UPDATE and self._classifier.is_redundant_update(category):
                redundant[item_id] = item
            else:
                campaign = campaigns.get(item.campaign_id)
                errors[item_id] = failure.message
                error_records.append(
                    ErrorRecord(
                        operand_type=job.operand_type,
                        item_id=item_id,
                        campaign_id=item.campaign_id,
                        campaign_name=campaign.name if campaign else None,
                        natural_text=item.natural_text,
                        raw_message=failure.message,
                        category=category,
                    )
                )

        if job.action is Action.DELETE:
            await self._commit_deletes(job, resolved)
        else:
            await self._commit_upserts(job, resolved)

        if redundant:
            in_sync = [
                ConfirmedEntity.from_item(item, item.external_id)
                for item in redundant.values()
                if item.external_id
            ]
            await self._state.upsert_confirmed(in_sync)
            await self._state.remove_queue_items(list(redundant))
            logger.info(
                "Batch job %d: %d redundant updates treated as in sync", job.id, len(redundant)
            )

        await self._state.add_exemptions(exemptions)
        await self._state.set_item_errors(errors)
        await self._state.add_error_records(error_records)

        summary = {
            "resolved": len(resolved),
            "failed": len(errors),
            "exempted": len(exemptions),
            "redundant": len(redundant),
        }
        logger.info(
            "Committed batch job %d (%s %s): %s",
            job.id,
            job.operand_type.value,
            job.action.value,
            summary,
        )
        return summary

    async def _commit_upserts(self, job: BatchJob, resolved: dict[int, QueueItem]) -> None:
        if not resolved:
            return
        await self._state.set_external_ids(
            {item_id: item.external_id for item_id, item in resolved.items()}
        )
        if job.action is Action.ADD:
            propagated = await self._state.propagate_external_ids(list(resolved.values()))
            if propagated:
                logger.info("Propagated external ids to %d queued follow-up rows", propagated)
        await self._state.upsert_confirmed(
            [ConfirmedEntity.from_item(item, item.external_id) for item in resolved.values()]
        )
        await self._state.remove_queue_items(list(resolved))

    async def _commit_deletes(self, job: BatchJob, resolved: dict[int, QueueItem]) -> None:
        if not resolved:
            return
        removed = await self._state.remove_confirmed(
            job.operand_type,
            [(item.campaign_id, item.external_id) for item in resolved.values()],
        )
        await self._state.remove_queue_items(list(resolved))
        logger.debug("Removed %d confirmed %s rows", removed, job.operand_type.value)
