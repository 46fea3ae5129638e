"""Mapping of a single queue item's content into platform resource fields.

The builder asks the mapper for content fields only; identity fields
(resource names, parent links, temporary ids) are added by the operand
variant. A mapper returns ``None`` when the item cannot be expressed,
and the builder skips that item.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import ValidationError

from adbulk.bulk.schemas import (
    EXTENSION_TEXT_MAX_CHARS,
    HEADLINE_MAX_CHARS,
    AdAttributes,
    AdGroupAttributes,
    ExtensionAttributes,
    ExtensionKind,
    KeywordAttributes,
)
from adbulk.models import Action, CampaignRef, OperandType, QueueItem

logger = logging.getLogger(__name__)


class PayloadMapper(Protocol):
    def to_payload(self, item: QueueItem, campaign: CampaignRef) -> dict[str, Any] | None: ...


class DefaultPayloadMapper:
    """Maps queue items to Google Ads resource fields.

    Attributes are validated with the pydantic models in
    :mod:`adbulk.bulk.schemas`. Deletes carry no content and always map.
    """

    def to_payload(self, item: QueueItem, campaign: CampaignRef) -> dict[str, Any] | None:
        if item.action is Action.DELETE:
            return {}
        if not item.natural_text or not item.natural_text.strip():
            logger.debug("Queue item %d has no text, skipping", item.id)
            return None

        try:
            if item.operand_type is OperandType.AD_GROUP:
                return self._ad_group(item)
            elif item.operand_type is OperandType.KEYWORD:
                return self._keyword(item)
            elif item.operand_type is OperandType.AD:
                return self._ad(item)
            elif item.operand_type is OperandType.EXTENSION:
                return self._extension(item)
        except ValidationError as exc:
            logger.debug(
                "Queue item %d (%s) failed attribute validation: %s",
                item.id,
                item.operand_type.value,
                exc.errors(include_url=False),
            )
            return None
        raise ValueError(f"Unsupported operand type: {item.operand_type!r}")

    # ------------------------------------------------------------------
    # Per operand type
    # ------------------------------------------------------------------

    @staticmethod
    def _ad_group(item: QueueItem) -> dict[str, Any]:
        attrs = AdGroupAttributes.model_validate(item.attributes)
        payload: dict[str, Any] = {"name": item.natural_text, "status": attrs.status.value}
        if item.action is Action.ADD:
            payload["type_"] = "SEARCH_STANDARD"
        if attrs.cpc_bid_micros is not None:
            payload["cpc_bid_micros"] = attrs.cpc_bid_micros
        return payload

    @staticmethod
    def _keyword(item: QueueItem) -> dict[str, Any]:
        attrs = KeywordAttributes.model_validate(item.attributes)
        payload: dict[str, Any] = {"status": attrs.status.value}
        # keyword text and match type are immutable once created
        if item.action is Action.ADD:
            payload["keyword"] = {"text": item.natural_text, "match_type": attrs.match_type.value}
        if attrs.cpc_bid_micros is not None:
            payload["cpc_bid_micros"] = attrs.cpc_bid_micros
        return payload

    @staticmethod
    def _ad(item: QueueItem) -> dict[str, Any] | None:
        if len(item.natural_text) > HEADLINE_MAX_CHARS:
            logger.debug("Queue item %d headline too long, skipping", item.id)
            return None
        attrs = AdAttributes.model_validate(item.attributes)
        headlines = [item.natural_text] + [h for h in attrs.headlines if h != item.natural_text]
        rsa: dict[str, Any] = {
            "headlines": [{"text": h} for h in headlines],
            "descriptions": [{"text": d} for d in attrs.descriptions],
        }
        if attrs.path1:
            rsa["path1"] = attrs.path1
        if attrs.path2:
            rsa["path2"] = attrs.path2
        ad = {"responsive_search_ad": rsa, "final_urls": attrs.final_urls}
        if item.action is Action.UPDATE:
            return ad
        return {"ad": ad, "status": attrs.status.value}

    @staticmethod
    def _extension(item: QueueItem) -> dict[str, Any] | None:
        if len(item.natural_text) > EXTENSION_TEXT_MAX_CHARS:
            logger.debug("Queue item %d extension text too long, skipping", item.id)
            return None
        attrs = ExtensionAttributes.model_validate(item.attributes)
        if attrs.kind is ExtensionKind.CALLOUT:
            return {"callout_asset": {"callout_text": item.natural_text}}

        if not attrs.final_urls:
            logger.debug("Queue item %d sitelink has no final URL, skipping", item.id)
            return None
        sitelink: dict[str, Any] = {"link_text": item.natural_text}
        if attrs.description1:
            sitelink["description1"] = attrs.description1
        if attrs.description2:
            sitelink["description2"] = attrs.description2
        return {"sitelink_asset": sitelink, "final_urls": attrs.final_urls}
