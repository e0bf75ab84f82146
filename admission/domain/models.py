"""Pydantic models shared across service and API layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from admission.domain.resources import ActionType, CreditKind


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# Part of the public contract; clients rely on these values.
PRIORITY_SCORES: dict[Priority, int] = {
    Priority.CRITICAL: 100,
    Priority.HIGH: 80,
    Priority.NORMAL: 50,
    Priority.LOW: 20,
}


def priority_score(priority: Priority | str | None) -> int:
    if not priority:
        return PRIORITY_SCORES[Priority.NORMAL]
    return PRIORITY_SCORES[Priority(priority)]


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class AuthorizationContext:
    """Who is calling, resolved before any quota arithmetic happens."""

    user_id: int
    role: Literal["user", "admin", "service"] = "user"

    @property
    def is_elevated(self) -> bool:
        return self.role == "admin"

    @property
    def is_service(self) -> bool:
        return self.role == "service"


class UsageCounters(BaseModel):
    tokens_input: int = 0
    tokens_output: int = 0
    images: int = 0
    videos: int = 0
    documents: int = 0


class QuotaLimits(BaseModel):
    tokens_input: int | None = None
    tokens_output: int | None = None
    images: int | None = None
    videos: int | None = None
    documents: int | None = None


class CreditBalances(BaseModel):
    """Available credit per pool; ``None`` means unlimited."""

    tokens: int | None = 0
    images: int | None = 0
    videos: int | None = 0


class SubscriptionSummary(BaseModel):
    tier: str
    is_trial: bool = False
    trial_ends_at: datetime | None = None


class QuotaDecision(BaseModel):
    allowed: bool
    reason: str | None = None
    unlimited: bool = False
    subscription: SubscriptionSummary | None = None
    usage: UsageCounters = Field(default_factory=UsageCounters)
    daily_usage: UsageCounters = Field(default_factory=UsageCounters)
    quotas: QuotaLimits = Field(default_factory=QuotaLimits)
    credits: CreditBalances = Field(default_factory=CreditBalances)
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def deny(cls, reason: str, **kwargs: Any) -> "QuotaDecision":
        return cls(allowed=False, reason=reason, **kwargs)


class QuotaCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(alias="userId")
    action_type: ActionType = Field(alias="actionType")
    tokens_input: int = Field(default=0, ge=0, alias="tokensInput")
    tokens_output: int = Field(default=0, ge=0, alias="tokensOutput")
    quantity: int = Field(default=1, ge=1)


class QuotaCheckResponse(QuotaDecision):
    """Wire shape of a decision with the flattened credit fields clients read."""

    @computed_field(alias="tokenCredits")
    @property
    def token_credits(self) -> int | None:
        return self.credits.tokens

    @computed_field(alias="imageCredits")
    @property
    def image_credits(self) -> int | None:
        return self.credits.images

    @computed_field(alias="videoCredits")
    @property
    def video_credits(self) -> int | None:
        return self.credits.videos


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = ""


class RequestPayload(BaseModel):
    messages: list[ChatMessage]
    context: dict[str, Any] | None = None


class EnqueueRequest(BaseModel):
    workspace_id: int
    request_payload: RequestPayload
    priority: Priority = Priority.NORMAL
    callback_url: str | None = Field(default=None, max_length=512)
    idempotency_key: str | None = Field(default=None, max_length=191)
    request_type: str = Field(default="chat", max_length=32)
    estimated_tokens_input: int | None = Field(default=None, ge=0)
    estimated_tokens_output: int | None = Field(default=None, ge=0)

    @field_validator("idempotency_key", "callback_url", mode="before")
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, value):
        return value or Priority.NORMAL


class EnqueueResponse(BaseModel):
    id: int
    status: QueueStatus
    priority: Priority
    priority_score: int
    created_at: datetime


class IdempotentReplayResponse(BaseModel):
    id: int
    status: QueueStatus
    result: dict[str, Any] | None = None
    idempotent: Literal[True] = True


class QueueItemView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    workspace_id: int
    request_type: str
    action_type: ActionType
    priority: Priority
    priority_score: int
    status: QueueStatus
    retry_count: int
    max_retries: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime
    result_payload: dict[str, Any] | None = None
    error_message: str | None = None
    position: int | None = None


class ReprioritizeRequest(BaseModel):
    priority: Priority


class QueueStats(BaseModel):
    pending: dict[str, int]
    processing: int
    completed_24h: int
    failed_24h: int


class UsageRecordRequest(BaseModel):
    user_id: int
    event_type: ActionType
    tokens_input: int = Field(default=0, ge=0)
    tokens_output: int = Field(default=0, ge=0)
    tokens_reasoning: int = Field(default=0, ge=0)
    quantity: int = Field(default=1, ge=1)
    model_used: str | None = None
    cost_usd: float = Field(default=0.0, ge=0)
    request_id: str | None = None
    response_time_ms: int | None = Field(default=None, ge=0)
    queue_item_id: int | None = None


class UsageRecordResponse(BaseModel):
    success: bool = True
    event_id: int
    credits_charged: dict[str, int]


class TopUpRequest(BaseModel):
    user_id: int
    kind: CreditKind
    amount: int = Field(gt=0)
    reference: str | None = Field(default=None, max_length=191)


__all__ = [
    "AuthorizationContext",
    "ChatMessage",
    "CreditBalances",
    "EnqueueRequest",
    "EnqueueResponse",
    "IdempotentReplayResponse",
    "PRIORITY_SCORES",
    "Priority",
    "QueueItemView",
    "QueueStats",
    "QueueStatus",
    "QuotaCheckRequest",
    "QuotaCheckResponse",
    "QuotaDecision",
    "QuotaLimits",
    "ReprioritizeRequest",
    "RequestPayload",
    "SubscriptionSummary",
    "TopUpRequest",
    "UsageCounters",
    "UsageRecordRequest",
    "UsageRecordResponse",
    "priority_score",
]
