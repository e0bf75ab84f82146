"""SQLAlchemy models for subscriptions, metering and the admission queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from admission.db.base import Base
from admission.utils.datetime import utc_now

UtcDateTime = DateTime(timezone=True)


class SubscriptionTier(Base):
    __tablename__ = "subscription_tiers"
    __table_args__ = (UniqueConstraint("code", name="uq_subscription_tiers_code"),)

    code: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    monthly_price: Mapped[float] = mapped_column(default=0.0)
    # NULL means unlimited.
    monthly_tokens_input_quota: Mapped[int | None] = mapped_column(Integer)
    monthly_tokens_output_quota: Mapped[int | None] = mapped_column(Integer)
    monthly_images_quota: Mapped[int | None] = mapped_column(Integer)
    monthly_videos_quota: Mapped[int | None] = mapped_column(Integer)
    monthly_documents_quota: Mapped[int | None] = mapped_column(Integer)
    # Enforced for trial subscriptions only.
    daily_tokens_input_limit: Mapped[int | None] = mapped_column(Integer)
    daily_tokens_output_limit: Mapped[int | None] = mapped_column(Integer)
    daily_images_limit: Mapped[int | None] = mapped_column(Integer)
    daily_videos_limit: Mapped[int | None] = mapped_column(Integer)
    trial_days: Mapped[int | None] = mapped_column(Integer)
    is_default: Mapped[bool] = mapped_column(default=False)
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)

    subscriptions: Mapped[list["UserSubscription"]] = relationship(back_populates="tier")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    email: Mapped[str] = mapped_column(String(191), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(128))
    role: Mapped[str] = mapped_column(
        Enum("user", "admin", "service", name="user_role"), default="user", nullable=False
    )
    status: Mapped[str] = mapped_column(
        Enum("active", "blocked", "deleted", "pending", name="user_status"),
        default="active",
        nullable=False,
    )
    last_seen_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)

    subscriptions: Mapped[list["UserSubscription"]] = relationship(back_populates="user")


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"
    __table_args__ = (Index("ix_user_subscriptions_user_status", "user_id", "status"),)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    tier_id: Mapped[int] = mapped_column(ForeignKey("subscription_tiers.id"))
    status: Mapped[str] = mapped_column(
        Enum("active", "suspended", "cancelled", "expired", name="subscription_status"),
        default="active",
        nullable=False,
    )
    is_trial: Mapped[bool] = mapped_column(default=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    current_period_start: Mapped[datetime | None] = mapped_column(UtcDateTime)
    current_period_end: Mapped[datetime | None] = mapped_column(UtcDateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)

    user: Mapped[User] = relationship(back_populates="subscriptions")
    tier: Mapped[SubscriptionTier] = relationship(back_populates="subscriptions")


class Workspace(Base):
    __tablename__ = "workspaces"

    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    is_suspended: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)

    owner: Mapped[User] = relationship()
    members: Mapped[list["WorkspaceMember"]] = relationship(back_populates="workspace")


class WorkspaceMember(Base):
    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_workspace_user"),
    )

    workspace_id: Mapped[int] = mapped_column(ForeignKey("workspaces.id", ondelete="CASCADE"))
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    role: Mapped[str] = mapped_column(
        Enum("member", "admin", name="workspace_member_role"), default="member", nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)

    workspace: Mapped[Workspace] = relationship(back_populates="members")
    user: Mapped[User] = relationship()


class UsageRecord(Base):
    """Per-user aggregate for one calendar-month period."""

    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("user_id", "period_start", name="uq_usage_records_user_period"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("user_subscriptions.id", ondelete="SET NULL")
    )
    period_start: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)

    # Snapshotted from the tier when the period record is created.
    tokens_input_quota: Mapped[int | None] = mapped_column(Integer)
    tokens_output_quota: Mapped[int | None] = mapped_column(Integer)
    images_quota: Mapped[int | None] = mapped_column(Integer)
    videos_quota: Mapped[int | None] = mapped_column(Integer)
    documents_quota: Mapped[int | None] = mapped_column(Integer)

    tokens_input_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_output_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    images_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    videos_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    documents_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Held by admitted queue items that have not been processed yet.
    tokens_input_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_output_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    images_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    videos_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    documents_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    daily_tokens_input_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_tokens_output_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_images_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_videos_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Daily share of the reservations above; cleared when the daily window rolls.
    daily_tokens_input_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_tokens_output_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_images_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_videos_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_reset_at: Mapped[datetime | None] = mapped_column(UtcDateTime)

    last_usage_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)

    user: Mapped[User] = relationship()
    subscription: Mapped[UserSubscription | None] = relationship()


class UsageEvent(Base):
    """Append-only audit log of recorded consumption."""

    __tablename__ = "usage_events"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("user_subscriptions.id", ondelete="SET NULL")
    )
    queue_item_id: Mapped[int | None] = mapped_column(
        ForeignKey("queue_items.id", ondelete="SET NULL")
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    model_used: Mapped[str | None] = mapped_column(String(128))
    tokens_input: Mapped[int] = mapped_column(Integer, default=0)
    tokens_output: Mapped[int] = mapped_column(Integer, default=0)
    tokens_reasoning: Mapped[int] = mapped_column(Integer, default=0)
    images: Mapped[int] = mapped_column(Integer, default=0)
    videos: Mapped[int] = mapped_column(Integer, default=0)
    documents: Mapped[int] = mapped_column(Integer, default=0)
    credits_charged: Mapped[dict | None] = mapped_column(JSON)
    cost_usd: Mapped[float] = mapped_column(Numeric(12, 6, asdecimal=False), default=0)
    request_id: Mapped[str | None] = mapped_column(String(128))
    response_time_ms: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)


class CreditWallet(Base):
    __tablename__ = "credit_wallets"
    __table_args__ = (UniqueConstraint("user_id", name="uq_credit_wallets_user_id"),)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    tokens_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    images_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    videos_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    images_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    videos_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)

    user: Mapped[User] = relationship()


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    kind: Mapped[str] = mapped_column(
        Enum("tokens", "images", "videos", "universal", name="credit_kind"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(
        Enum("purchase", "usage", "adjustment", name="credit_transaction_reason"),
        default="purchase",
        nullable=False,
    )
    reference: Mapped[str | None] = mapped_column(String(191))
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)


class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_queue_items_user_idempotency_key"),
        Index("ix_queue_items_dequeue", "status", "priority_score", "created_at"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    workspace_id: Mapped[int] = mapped_column(ForeignKey("workspaces.id", ondelete="CASCADE"))
    request_type: Mapped[str] = mapped_column(String(32), default="chat", nullable=False)
    action_type: Mapped[str] = mapped_column(
        Enum(
            "text_generation",
            "image_generation",
            "video_generation",
            "document_parsing",
            name="queue_action_type",
        ),
        nullable=False,
    )
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    priority: Mapped[str] = mapped_column(
        Enum("critical", "high", "normal", "low", name="queue_priority"),
        default="normal",
        nullable=False,
    )
    priority_score: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        Enum("pending", "processing", "completed", "failed", "cancelled", name="queue_status"),
        default="pending",
        nullable=False,
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(191))
    callback_url: Mapped[str | None] = mapped_column(String(512))
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    processing_node: Mapped[str | None] = mapped_column(String(64))
    result_payload: Mapped[dict | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    reservation: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)

    user: Mapped[User] = relationship()
    workspace: Mapped[Workspace] = relationship()


__all__ = [
    "CreditTransaction",
    "CreditWallet",
    "QueueItem",
    "SubscriptionTier",
    "UsageEvent",
    "UsageRecord",
    "User",
    "UserSubscription",
    "Workspace",
    "WorkspaceMember",
]
