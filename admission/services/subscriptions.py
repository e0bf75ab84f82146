"""Subscription lifecycle helpers."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from admission.config import AdmissionSettings, get_settings
from admission.db.models.core import SubscriptionTier, UserSubscription
from admission.logging import logger
from admission.services.exceptions import InvalidStateTransition
from admission.utils.datetime import as_utc, month_bounds, utc_now


class SubscriptionLifecycle:
    def __init__(self, session: AsyncSession, settings: AdmissionSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def get_active_subscription(self, user_id: int) -> UserSubscription | None:
        stmt = (
            select(UserSubscription)
            .options(selectinload(UserSubscription.tier))
            .where(
                and_(
                    UserSubscription.user_id == user_id,
                    UserSubscription.status == "active",
                )
            )
            .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
        )
        result = await self.session.execute(stmt)
        subscription = result.scalars().first()
        if subscription is not None and subscription.tier is None:
            subscription.tier = await self.session.get(SubscriptionTier, subscription.tier_id)
        return subscription

    async def expire_trial_if_needed(
        self, subscription: UserSubscription, now: datetime | None = None
    ) -> bool:
        """Move an elapsed trial to ``expired``; returns True when it did."""

        now = now or utc_now()
        trial_ends_at = as_utc(subscription.trial_ends_at)
        if not subscription.is_trial or trial_ends_at is None or trial_ends_at >= now:
            return False

        subscription.status = "expired"
        subscription.updated_at = now
        await self.session.flush()
        logger.info(
            "trial_expired",
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            trial_ends_at=trial_ends_at.isoformat(),
        )
        return True

    async def start_subscription(
        self,
        user_id: int,
        tier: SubscriptionTier,
        *,
        trial: bool = False,
        now: datetime | None = None,
    ) -> UserSubscription:
        """Activate ``tier`` for the user, cancelling whatever was active before."""

        now = now or utc_now()
        stmt = (
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status == "active",
            )
            .with_for_update()
        )
        for previous in (await self.session.execute(stmt)).scalars():
            previous.status = "cancelled"
            previous.cancelled_at = now
            logger.info(
                "subscription_superseded",
                subscription_id=previous.id,
                user_id=user_id,
            )

        period_start, period_end = month_bounds(now)
        subscription = UserSubscription(
            user_id=user_id,
            tier_id=tier.id,
            status="active",
            is_trial=trial,
            current_period_start=period_start,
            current_period_end=period_end,
            created_at=now,
            updated_at=now,
        )
        if trial:
            trial_days = tier.trial_days or self.settings.trial.default_trial_days
            subscription.trial_ends_at = now + timedelta(days=trial_days)
        self.session.add(subscription)
        subscription.tier = tier
        await self.session.flush()
        logger.info(
            "subscription_started",
            subscription_id=subscription.id,
            user_id=user_id,
            tier=tier.code,
            is_trial=trial,
        )
        return subscription

    async def cancel(self, subscription: UserSubscription) -> UserSubscription:
        return await self._change_status(subscription, "cancelled")

    async def suspend(self, subscription: UserSubscription) -> UserSubscription:
        return await self._change_status(subscription, "suspended")

    async def reactivate(self, subscription: UserSubscription) -> UserSubscription:
        if subscription.status != "suspended":
            raise InvalidStateTransition(
                "Only suspended subscriptions can be reactivated.",
                details={"status": subscription.status},
            )
        active = await self.get_active_subscription(subscription.user_id)
        if active is not None and active.id != subscription.id:
            raise InvalidStateTransition(
                "User already has an active subscription.",
                details={"active_subscription_id": active.id},
            )
        return await self._change_status(subscription, "active")

    async def _change_status(self, subscription: UserSubscription, status: str) -> UserSubscription:
        if subscription.status in {"cancelled", "expired"}:
            raise InvalidStateTransition(
                f"Subscription is already {subscription.status}.",
                details={"subscription_id": subscription.id},
            )
        now = utc_now()
        subscription.status = status
        subscription.updated_at = now
        if status == "cancelled":
            subscription.cancelled_at = now
        await self.session.flush()
        logger.info(
            "subscription_status_changed",
            subscription_id=subscription.id,
            status=status,
        )
        return subscription


__all__ = ["SubscriptionLifecycle"]
