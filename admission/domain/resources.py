"""Resource and action rule table.

Every metered resource follows the same column naming on tiers
(``monthly_<key>_quota``, ``daily_<key>_limit``), usage records
(``<key>_quota``, ``<key>_used``, ``<key>_reserved``, ``daily_<key>_used``,
``daily_<key>_reserved``) and wallets (``<pool>_balance``, ``<pool>_reserved``),
so adding a resource is a new entry here plus its columns.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ActionType(str, Enum):
    TEXT_GENERATION = "text_generation"
    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"
    DOCUMENT_PARSING = "document_parsing"


class CreditPool(str, Enum):
    TOKENS = "tokens"
    IMAGES = "images"
    VIDEOS = "videos"


class CreditKind(str, Enum):
    TOKENS = "tokens"
    IMAGES = "images"
    VIDEOS = "videos"
    UNIVERSAL = "universal"

    def pools(self) -> tuple[CreditPool, ...]:
        if self is CreditKind.UNIVERSAL:
            return tuple(CreditPool)
        return (CreditPool(self.value),)


@dataclass(frozen=True, slots=True)
class ResourceRule:
    key: str
    credit_pool: CreditPool | None = None
    daily_denial: str | None = None

    @property
    def has_daily_limit(self) -> bool:
        return self.daily_denial is not None

    @property
    def tier_quota_field(self) -> str:
        return f"monthly_{self.key}_quota"

    @property
    def tier_daily_field(self) -> str:
        return f"daily_{self.key}_limit"

    @property
    def quota_column(self) -> str:
        return f"{self.key}_quota"

    @property
    def used_column(self) -> str:
        return f"{self.key}_used"

    @property
    def reserved_column(self) -> str:
        return f"{self.key}_reserved"

    @property
    def daily_column(self) -> str:
        return f"daily_{self.key}_used"

    @property
    def daily_reserved_column(self) -> str:
        return f"daily_{self.key}_reserved"


TOKENS_INPUT = ResourceRule("tokens_input", CreditPool.TOKENS, "Daily input token limit exceeded")
TOKENS_OUTPUT = ResourceRule("tokens_output", CreditPool.TOKENS, "Daily output token limit exceeded")
IMAGES = ResourceRule("images", CreditPool.IMAGES, "Daily image limit exceeded")
VIDEOS = ResourceRule("videos", CreditPool.VIDEOS, "Daily video limit exceeded")
DOCUMENTS = ResourceRule("documents")

RESOURCES: tuple[ResourceRule, ...] = (TOKENS_INPUT, TOKENS_OUTPUT, IMAGES, VIDEOS, DOCUMENTS)
DAILY_RESOURCES: tuple[ResourceRule, ...] = tuple(r for r in RESOURCES if r.has_daily_limit)


@dataclass(frozen=True, slots=True)
class ActionRule:
    action: ActionType
    resources: tuple[ResourceRule, ...]
    monthly_denial: str
    metered_by_tokens: bool = False

    @property
    def credit_pool(self) -> CreditPool | None:
        return self.resources[0].credit_pool

    def requested_amounts(
        self, tokens_input: int = 0, tokens_output: int = 0, quantity: int = 1
    ) -> dict[str, int]:
        if self.metered_by_tokens:
            return {TOKENS_INPUT.key: tokens_input, TOKENS_OUTPUT.key: tokens_output}
        return {rule.key: quantity for rule in self.resources}


ACTION_RULES: dict[ActionType, ActionRule] = {
    ActionType.TEXT_GENERATION: ActionRule(
        ActionType.TEXT_GENERATION,
        (TOKENS_INPUT, TOKENS_OUTPUT),
        "Monthly token quota exceeded and insufficient credits",
        metered_by_tokens=True,
    ),
    ActionType.IMAGE_GENERATION: ActionRule(
        ActionType.IMAGE_GENERATION,
        (IMAGES,),
        "Monthly image quota exceeded and no credits available",
    ),
    ActionType.VIDEO_GENERATION: ActionRule(
        ActionType.VIDEO_GENERATION,
        (VIDEOS,),
        "Monthly video quota exceeded and no credits available",
    ),
    ActionType.DOCUMENT_PARSING: ActionRule(
        ActionType.DOCUMENT_PARSING,
        (DOCUMENTS,),
        "Monthly document parsing quota exceeded",
    ),
}

# Free-form queue request types mapped onto metered actions; anything else is text.
REQUEST_TYPE_ACTIONS: dict[str, ActionType] = {
    "image": ActionType.IMAGE_GENERATION,
    "image_generation": ActionType.IMAGE_GENERATION,
    "video": ActionType.VIDEO_GENERATION,
    "video_generation": ActionType.VIDEO_GENERATION,
    "document": ActionType.DOCUMENT_PARSING,
    "document_parsing": ActionType.DOCUMENT_PARSING,
}


def rule_for(action: ActionType | str) -> ActionRule:
    return ACTION_RULES[ActionType(action)]


def action_for_request_type(request_type: str | None) -> ActionType:
    return REQUEST_TYPE_ACTIONS.get((request_type or "").lower(), ActionType.TEXT_GENERATION)


__all__ = [
    "ACTION_RULES",
    "DAILY_RESOURCES",
    "RESOURCES",
    "ActionRule",
    "ActionType",
    "CreditKind",
    "CreditPool",
    "ResourceRule",
    "action_for_request_type",
    "rule_for",
]
