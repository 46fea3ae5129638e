"""Per-operand-type behaviour of the bulk pipeline.

Each content type is one :class:`OperandVariant`. A variant knows how many
operations one logical item expands to, which of them carries the
resulting external id, how to turn a mapped payload into operations, and
how to key an item or a live remote entity by its natural key. Variants
are selected with :func:`get_variant`, an explicit switch over
:class:`~adbulk.models.OperandType`.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from adbulk.bulk.client import Operation, RemoteEntity
from adbulk.models import Action, CampaignRef, OperandType, QueueItem

NaturalKey = tuple[str, str]


def normalize_text(text: str) -> str:
    """Whitespace-collapsed, case-folded text used in natural keys."""
    return " ".join(text.split()).casefold()


def customer_id(account_id: str) -> str:
    return account_id.replace("-", "")


def _field_paths(payload: dict[str, Any], prefix: str = "") -> list[str]:
    """Leaf field paths of *payload* for an update mask."""
    paths: list[str] = []
    for key, value in payload.items():
        if key == "resource_name":
            continue
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            paths.extend(_field_paths(value, prefix=f"{path}."))
        else:
            paths.append(path)
    return paths


class OperandVariant:
    """Behaviour shared by all content types; subclasses fill in the rest."""

    operand_type: OperandType

    def ops_per_item(self, action: Action) -> int:
        """Operations uploaded for one logical item."""
        return 1

    def id_offset(self, action: Action) -> int:
        """Offset, within an item's operation group, of the op whose result holds the id."""
        return self.ops_per_item(action) - 1

    def parse_external_id(self, resource_name: str) -> str:
        """Extract this type's external id from a result resource name.

        Composite names (``123~456``) carry the id in their last component;
        bare ids are returned as is.
        """
        return resource_name.rsplit("/", 1)[-1].split("~")[-1]

    def scope_id(self, item: QueueItem, campaign: CampaignRef) -> str | None:
        """External id of the item's parent scope (campaign or ad group)."""
        return campaign.external_id

    def natural_key(self, item: QueueItem, campaign: CampaignRef) -> NaturalKey | None:
        scope = self.scope_id(item, campaign)
        if scope is None:
            return None
        return (scope, normalize_text(item.natural_text))

    def entity_key(self, entity: RemoteEntity) -> NaturalKey:
        return (entity.campaign_external_id, normalize_text(entity.natural_text))

    def build_operations(
        self,
        item: QueueItem,
        action: Action,
        campaign: CampaignRef,
        payload: dict[str, Any],
        temp_ids: Iterator[int],
    ) -> list[Operation] | None:
        """Turn a mapped payload into this item's operations.

        Returns:
            ``ops_per_item(action)`` operations, or ``None`` when the item
            lacks an identity the action needs (no parent or external id).
        """
        raise NotImplementedError


class AdGroupVariant(OperandVariant):
    operand_type = OperandType.AD_GROUP

    def build_operations(self, item, action, campaign, payload, temp_ids):
        cid = customer_id(campaign.account_id)
        if action is Action.ADD:
            body = {**payload, "campaign": f"customers/{cid}/campaigns/{campaign.external_id}"}
            return [Operation("ad_group", "create", body, exemptions=tuple(item.exemptions))]
        if item.external_id is None:
            return None
        resource_name = f"customers/{cid}/adGroups/{item.external_id}"
        if action is Action.UPDATE:
            body = {**payload, "resource_name": resource_name}
            return [
                Operation(
                    "ad_group",
                    "update",
                    body,
                    update_mask=tuple(_field_paths(payload)),
                    exemptions=tuple(item.exemptions),
                )
            ]
        return [Operation("ad_group", "remove", {"resource_name": resource_name})]


class KeywordVariant(OperandVariant):
    operand_type = OperandType.KEYWORD

    def scope_id(self, item, campaign):
        return item.parent_external_id

    def entity_key(self, entity):
        return (entity.parent_external_id or "", normalize_text(entity.natural_text))

    def build_operations(self, item, action, campaign, payload, temp_ids):
        if item.parent_external_id is None:
            return None
        cid = customer_id(campaign.account_id)
        if action is Action.ADD:
            body = {**payload, "ad_group": f"customers/{cid}/adGroups/{item.parent_external_id}"}
            return [
                Operation("ad_group_criterion", "create", body, exemptions=tuple(item.exemptions))
            ]
        if item.external_id is None:
            return None
        resource_name = (
            f"customers/{cid}/adGroupCriteria/{item.parent_external_id}~{item.external_id}"
        )
        if action is Action.UPDATE:
            body = {**payload, "resource_name": resource_name}
            return [
                Operation(
                    "ad_group_criterion",
                    "update",
                    body,
                    update_mask=tuple(_field_paths(payload)),
                    exemptions=tuple(item.exemptions),
                )
            ]
        return [Operation("ad_group_criterion", "remove", {"resource_name": resource_name})]


class AdVariant(OperandVariant):
    operand_type = OperandType.AD

    def scope_id(self, item, campaign):
        return item.parent_external_id

    def entity_key(self, entity):
        return (entity.parent_external_id or "", normalize_text(entity.natural_text))

    def build_operations(self, item, action, campaign, payload, temp_ids):
        if item.parent_external_id is None:
            return None
        cid = customer_id(campaign.account_id)
        if action is Action.ADD:
            body = {**payload, "ad_group": f"customers/{cid}/adGroups/{item.parent_external_id}"}
            return [Operation("ad_group_ad", "create", body, exemptions=tuple(item.exemptions))]
        if item.external_id is None:
            return None
        if action is Action.UPDATE:
            # ad content lives on the ad resource, not on the ad group ad
            body = {**payload, "resource_name": f"customers/{cid}/ads/{item.external_id}"}
            return [
                Operation(
                    "ad",
                    "update",
                    body,
                    update_mask=tuple(_field_paths(payload)),
                    exemptions=tuple(item.exemptions),
                )
            ]
        resource_name = f"customers/{cid}/adGroupAds/{item.parent_external_id}~{item.external_id}"
        return [Operation("ad_group_ad", "remove", {"resource_name": resource_name})]


class ExtensionVariant(OperandVariant):
    """Extensions are assets linked to a campaign.

    An Add uploads the asset under a temporary id followed by the campaign
    link referencing it, so one item is two operations; the link result
    carries the asset id.
    """

    operand_type = OperandType.EXTENSION

    def ops_per_item(self, action: Action) -> int:
        return 2 if action is Action.ADD else 1

    def parse_external_id(self, resource_name: str) -> str:
        # campaignAssets/{campaign}~{asset}~{field_type}
        parts = resource_name.rsplit("/", 1)[-1].split("~")
        return parts[1] if len(parts) == 3 else parts[-1]

    @staticmethod
    def _field_type(item: QueueItem) -> str:
        return str(item.attributes.get("kind", "callout")).upper()

    def build_operations(self, item, action, campaign, payload, temp_ids):
        cid = customer_id(campaign.account_id)
        if action is Action.ADD:
            asset_name = f"customers/{cid}/assets/{next(temp_ids)}"
            asset = Operation(
                "asset",
                "create",
                {**payload, "resource_name": asset_name},
                exemptions=tuple(item.exemptions),
            )
            link = Operation(
                "campaign_asset",
                "create",
                {
                    "asset": asset_name,
                    "campaign": f"customers/{cid}/campaigns/{campaign.external_id}",
                    "field_type": self._field_type(item),
                },
            )
            return [asset, link]
        if item.external_id is None:
            return None
        if action is Action.UPDATE:
            body = {**payload, "resource_name": f"customers/{cid}/assets/{item.external_id}"}
            return [
                Operation(
                    "asset",
                    "update",
                    body,
                    update_mask=tuple(_field_paths(payload)),
                    exemptions=tuple(item.exemptions),
                )
            ]
        resource_name = (
            f"customers/{cid}/campaignAssets/"
            f"{campaign.external_id}~{item.external_id}~{self._field_type(item)}"
        )
        return [Operation("campaign_asset", "remove", {"resource_name": resource_name})]


_AD_GROUP = AdGroupVariant()
_KEYWORD = KeywordVariant()
_AD = AdVariant()
_EXTENSION = ExtensionVariant()


def get_variant(operand_type: OperandType) -> OperandVariant:
    """Return the variant for *operand_type*.

    Raises:
        ValueError: If *operand_type* is not a supported content type.
    """
    if operand_type is OperandType.AD_GROUP:
        return _AD_GROUP
    elif operand_type is OperandType.KEYWORD:
        return _KEYWORD
    elif operand_type is OperandType.AD:
        return _AD
    elif operand_type is OperandType.EXTENSION:
        return _EXTENSION
    raise ValueError(f"Unsupported operand type: {operand_type!r}")
