"""Turns raw platform error text into a short, operator-facing category.

Lookup order:
1. machine-readable error code (stable contract of the API)
2. substring match on the raw message, first hit wins
3. the quoted value after ``errorString`` in legacy SOAP-style messages
4. the raw message itself
"""

from __future__ import annotations

import re

from adbulk import constants

DUPLICATE_ELEMENT = "The request contains two parameters that are identical and redundant."
INTERNAL_ERROR = "Google Ads API encountered unexpected internal error."
TRANSIENT_INTERNAL_ERROR = (
    "Google Ads API encountered an unexpected transient internal error."
    " The user should retry their request in these cases."
)

CODE_CATEGORIES: dict[str, str] = {
    "distinct_error.DUPLICATE_ELEMENT": DUPLICATE_ELEMENT,
    "internal_error.INTERNAL_ERROR": INTERNAL_ERROR,
    "internal_error.TRANSIENT_ERROR": TRANSIENT_INTERNAL_ERROR,
    "ad_error.LINE_TOO_WIDE": "One of the lines in an ad was longer than the maximum allowed length.",
    "ad_group_ad_error.CANNOT_OPERATE_ON_REMOVED_ADGROUPAD": "An operation attempted to update a removed ad.",
    "ad_group_criterion_error.INVALID_KEYWORD_TEXT": "The keyword text contains invalid characters.",
    "ad_group_error.DUPLICATE_ADGROUP_NAME": (
        "An ad group is being added or renamed, but the name is already being used by another ad group."
    ),
    "authentication_error.CUSTOMER_NOT_FOUND": "No account found for the customer ID provided in the header.",
    "authorization_error.USER_PERMISSION_DENIED": (
        "There is no link between the manager account authenticated in the request"
        " and the client account specified in the headers."
    ),
    "bidding_error.BID_TOO_MANY_FRACTIONAL_DIGITS": (
        "The bid value is not an exact multiple of the minimum CPC."
    ),
    "campaign_error.DUPLICATE_CAMPAIGN_NAME": (
        "A campaign is being added or renamed, but the name is already being used by another campaign."
    ),
    "database_error.CONCURRENT_MODIFICATION": (
        "Multiple processes are trying to update the same entity at the same time."
    ),
    "mutate_error.RESOURCE_NOT_FOUND": "The ID of the entity you are operating on isn't valid.",
    "policy_finding_error.POLICY_FINDING": "An ad you are adding violates an advertising policy.",
    "policy_violation_error.POLICY_ERROR": "A keyword you are adding violates an advertising policy.",
    "quota_error.RESOURCE_EXHAUSTED": "A system frequency limit has been exceeded.",
    "quota_error.RESOURCE_TEMPORARILY_EXHAUSTED": (
        "Google Ads API encountered too many requests for one customer."
    ),
    "range_error.TOO_LOW": "A value was lower than the minimum allowed.",
    "request_error.INVALID_INPUT": "The request is malformed.",
    "field_error.REQUIRED": "The request is missing required information.",
    "criterion_error.KEYWORD_HAS_TOO_MANY_WORDS": "The keyword has too many words",
}

# Order matters: more specific patterns precede the general ones they contain.
MESSAGE_PATTERNS: list[tuple[tuple[str, ...], str]] = [
    (("AdError.INVALID_INPUT",), "One of the fields in an ad contains invalid characters."),
    (("AdError.LINE_TOO_WIDE",), CODE_CATEGORIES["ad_error.LINE_TOO_WIDE"]),
    (
        ("AdGroupAdError.CANNOT_OPERATE_ON_REMOVED_ADGROUPAD",),
        CODE_CATEGORIES["ad_group_ad_error.CANNOT_OPERATE_ON_REMOVED_ADGROUPAD"],
    ),
    (
        ("AdGroupCriterionError.INVALID_KEYWORD_TEXT",),
        CODE_CATEGORIES["ad_group_criterion_error.INVALID_KEYWORD_TEXT"],
    ),
    (
        ("AdGroupServiceError.DUPLICATE_ADGROUP_NAME",),
        CODE_CATEGORIES["ad_group_error.DUPLICATE_ADGROUP_NAME"],
    ),
    (
        ("AuthenticationError.CUSTOMER_NOT_FOUND",),
        CODE_CATEGORIES["authentication_error.CUSTOMER_NOT_FOUND"],
    ),
    (
        ("AuthorizationError.USER_PERMISSION_DENIED",),
        CODE_CATEGORIES["authorization_error.USER_PERMISSION_DENIED"],
    ),
    (
        ("BiddingError.BID_TOO_HIGH_FOR_DAILY_BUDGET",),
        "The bid on a keyword or ad group is higher than the daily budget of the campaign.",
    ),
    (
        ("BiddingError.BID_TOO_MANY_FRACTIONAL_DIGITS",),
        CODE_CATEGORIES["bidding_error.BID_TOO_MANY_FRACTIONAL_DIGITS"],
    ),
    (
        ("CampaignError.DUPLICATE_CAMPAIGN_NAME",),
        CODE_CATEGORIES["campaign_error.DUPLICATE_CAMPAIGN_NAME"],
    ),
    (
        ("DatabaseError.CONCURRENT_MODIFICATION",),
        CODE_CATEGORIES["database_error.CONCURRENT_MODIFICATION"],
    ),
    (("DistinctError.DUPLICATE_ELEMENT",), DUPLICATE_ELEMENT),
    (("EntityNotFound.INVALID_ID",), CODE_CATEGORIES["mutate_error.RESOURCE_NOT_FOUND"]),
    (
        ("InternalApiError.UNEXPECTED_INTERNAL_API_ERROR",),
        "Something unexpected happened while processing the request.",
    ),
    (("NotEmptyError.EMPTY_LIST",), "A required list is empty."),
    (
        ("CriterionPolicyError", "PolicyViolationError"),
        CODE_CATEGORIES["policy_violation_error.POLICY_ERROR"],
    ),
    (("PolicyViolationError",), CODE_CATEGORIES["policy_finding_error.POLICY_FINDING"]),
    (("QuotaCheckError.QUOTA_EXCEEDED",), CODE_CATEGORIES["quota_error.RESOURCE_EXHAUSTED"]),
    (("RangeError.TOO_LOW",), CODE_CATEGORIES["range_error.TOO_LOW"]),
    (
        ("RateExceededError.RATE_EXCEEDED",),
        "Too many requests were made to the API in a short period of time.",
    ),
    (("RequestError.INVALID_INPUT",), CODE_CATEGORIES["request_error.INVALID_INPUT"]),
    (("RequiredError.REQUIRED",), CODE_CATEGORIES["field_error.REQUIRED"]),
    (
        ("CriterionError.KEYWORD_HAS_TOO_MANY_WORDS",),
        CODE_CATEGORIES["criterion_error.KEYWORD_HAS_TOO_MANY_WORDS"],
    ),
    (("A transient internal error has occurred.",), TRANSIENT_INTERNAL_ERROR),
    (("An internal error has occurred.",), INTERNAL_ERROR),
    (
        ("Too many requests. Retry in",),
        CODE_CATEGORIES["quota_error.RESOURCE_TEMPORARILY_EXHAUSTED"],
    ),
]

_ERROR_STRING_RE = re.compile(r"errorString\W*'([^']+)'")


class ErrorClassifier:
    """Maps raw errors to categories; see the module docstring for lookup order."""

    def __init__(
        self,
        code_categories: dict[str, str] | None = None,
        message_patterns: list[tuple[tuple[str, ...], str]] | None = None,
    ) -> None:
        self._codes = CODE_CATEGORIES if code_categories is None else code_categories
        self._patterns = MESSAGE_PATTERNS if message_patterns is None else message_patterns

    def classify(self, message: str, code: str | None = None) -> str:
        if code and code in self._codes:
            return self._codes[code]

        for needles, category in self._patterns:
            if all(needle in message for needle in needles):
                return category

        match = _ERROR_STRING_RE.search(message)
        if match:
            return match.group(1)
        return message

    @staticmethod
    def is_internal(category: str) -> bool:
        """True for transient platform failures that should not alert."""
        return constants.INTERNAL_ERROR_MARKER in category.lower()

    @staticmethod
    def is_redundant_update(category: str) -> bool:
        """True when the platform rejected an update because it changed nothing."""
        return constants.REDUNDANT_UPDATE_MARKER in category.lower()
