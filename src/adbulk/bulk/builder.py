"""Operation builder: queue items to an ordered operation batch."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from adbulk.bulk.client import Operation
from adbulk.bulk.exceptions import UnknownCampaignError
from adbulk.bulk.mapping import DefaultPayloadMapper, PayloadMapper
from adbulk.bulk.operands import get_variant
from adbulk.models import Action, CampaignRef, OperandType, QueueItem

logger = logging.getLogger(__name__)


@dataclass
class BuiltBatch:
    """Operations of one batch, each paired with the queue item it came from.

    ``entries`` is the single source of ordering: operation *i* belongs to
    ``entries[i][0]``. Items expanding to several operations appear in
    consecutive entries.
    """

    operand_type: OperandType
    action: Action
    entries: list[tuple[int, Operation]] = field(default_factory=list)
    exempted_item_ids: list[int] = field(default_factory=list)
    skipped_item_ids: list[int] = field(default_factory=list)

    @property
    def operations(self) -> list[Operation]:
        return [op for _, op in self.entries]

    @property
    def item_ids(self) -> list[int]:
        """Logical item ids in submission order (one per item, not per operation)."""
        return list(dict.fromkeys(item_id for item_id, _ in self.entries))

    def __len__(self) -> int:
        return len(self.entries)


class OperationBuilder:
    """Builds :class:`BuiltBatch` instances for one operand type at a time.

    Args:
        mapper: Payload mapper; defaults to :class:`DefaultPayloadMapper`.
    """

    def __init__(self, mapper: PayloadMapper | None = None) -> None:
        self._mapper = mapper or DefaultPayloadMapper()

    def build(
        self,
        operand_type: OperandType,
        action: Action,
        items: list[QueueItem],
        campaigns: Mapping[int, CampaignRef],
    ) -> BuiltBatch:
        """Build the ordered operations for *items*.

        Items the mapper cannot express, or that lack an identity the
        action needs, are skipped and reported in ``skipped_item_ids``.

        Args:
            operand_type: Content type of every item.
            action: Action of every item.
            items: Queue items, in the order they should be submitted.
            campaigns: Resolution context, local campaign id to reference.

        Returns:
            The built batch (possibly empty).

        Raises:
            UnknownCampaignError: If any item's campaign is missing from
                *campaigns*; no partial batch is returned.
        """
        variant = get_variant(operand_type)
        batch = BuiltBatch(operand_type=operand_type, action=action)
        temp_ids = itertools.count(-1, -1)
        expected_ops = variant.ops_per_item(action)

        for item in items:
            if item.operand_type is not operand_type or item.action is not action:
                raise ValueError(
                    f"Queue item {item.id} is {item.operand_type.value}/{item.action.value}, "
                    f"expected {operand_type.value}/{action.value}"
                )
            campaign = campaigns.get(item.campaign_id)
            if campaign is None:
                raise UnknownCampaignError(item.campaign_id)

            payload = self._mapper.to_payload(item, campaign)
            operations = None
            if payload is not None:
                operations = variant.build_operations(item, action, campaign, payload, temp_ids)
            if not operations:
                batch.skipped_item_ids.append(item.id)
                continue
            if len(operations) != expected_ops:
                raise ValueError(
                    f"{operand_type.value} {action.value} produced {len(operations)} "
                    f"operations, expected {expected_ops}"
                )

            batch.entries.extend((item.id, op) for op in operations)
            if item.exemptions and action is not Action.DELETE:
                batch.exempted_item_ids.append(item.id)

        if batch.skipped_item_ids:
            logger.info(
                "Skipped %d unmappable %s items", len(batch.skipped_item_ids), operand_type.value
            )
        logger.debug(
            "Built %d operations for %d %s %s items",
            len(batch.entries),
            len(batch.item_ids),
            operand_type.value,
            action.value,
        )
        return batch
