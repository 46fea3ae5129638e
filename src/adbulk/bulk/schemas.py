"""Pydantic models validating the free-form attributes of queue items.

One model per operand type. The default payload mapper validates an
item's ``attributes`` against its model; a validation failure means the
item cannot be expressed and is skipped for this batch.

Length limits follow the platform's published text limits.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

HEADLINE_MAX_CHARS = 30
DESCRIPTION_MAX_CHARS = 90
PATH_MAX_CHARS = 15
EXTENSION_TEXT_MAX_CHARS = 25


class EntityStatus(str, Enum):
    ENABLED = "ENABLED"
    PAUSED = "PAUSED"


class MatchType(str, Enum):
    """Keyword match type."""

    EXACT = "EXACT"
    PHRASE = "PHRASE"
    BROAD = "BROAD"


class ExtensionKind(str, Enum):
    """Asset kind an extension is rendered as."""

    CALLOUT = "callout"
    SITELINK = "sitelink"


class AdGroupAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: EntityStatus = EntityStatus.ENABLED
    cpc_bid_micros: int | None = Field(default=None, ge=0)


class KeywordAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    match_type: MatchType = MatchType.BROAD
    status: EntityStatus = EntityStatus.ENABLED
    cpc_bid_micros: int | None = Field(default=None, ge=0)


class AdAttributes(BaseModel):
    """Responsive search ad content.

    The item's natural text is always the first headline; ``headlines``
    holds the remaining ones.
    """

    model_config = ConfigDict(extra="ignore")

    headlines: list[str] = Field(min_length=2, max_length=14)
    descriptions: list[str] = Field(min_length=2, max_length=4)
    final_urls: list[str] = Field(min_length=1)
    path1: str | None = Field(default=None, max_length=PATH_MAX_CHARS)
    path2: str | None = Field(default=None, max_length=PATH_MAX_CHARS)
    status: EntityStatus = EntityStatus.ENABLED

    @field_validator("headlines")
    @classmethod
    def headlines_fit(cls, v: list[str]) -> list[str]:
        too_long = [h for h in v if len(h) > HEADLINE_MAX_CHARS]
        if too_long:
            raise ValueError(f"Headlines longer than {HEADLINE_MAX_CHARS} chars: {too_long}")
        return v

    @field_validator("descriptions")
    @classmethod
    def descriptions_fit(cls, v: list[str]) -> list[str]:
        too_long = [d for d in v if len(d) > DESCRIPTION_MAX_CHARS]
        if too_long:
            raise ValueError(f"Descriptions longer than {DESCRIPTION_MAX_CHARS} chars: {too_long}")
        return v


class ExtensionAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: ExtensionKind
    final_urls: list[str] = Field(default_factory=list)
    description1: str | None = Field(default=None, max_length=35)
    description2: str | None = Field(default=None, max_length=35)

    @field_validator("final_urls")
    @classmethod
    def strip_blank_urls(cls, v: list[str]) -> list[str]:
        return [u.strip() for u in v if u and u.strip()]
