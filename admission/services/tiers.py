"""Subscription tier catalog and startup seeding."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from admission.db.models.core import SubscriptionTier
from admission.logging import logger
from admission.services.exceptions import NotFound
from admission.utils.datetime import utc_now

DEFAULT_TIERS = (
    {
        "code": "TRIAL",
        "name": "Free Trial",
        "description": "Trial tier with daily pacing",
        "monthly_price": 0.0,
        "monthly_tokens_input_quota": 200_000,
        "monthly_tokens_output_quota": 100_000,
        "monthly_images_quota": 20,
        "monthly_videos_quota": 2,
        "monthly_documents_quota": 20,
        "daily_tokens_input_limit": 10_000,
        "daily_tokens_output_limit": 5_000,
        "daily_images_limit": 5,
        "daily_videos_limit": 1,
        "trial_days": 14,
        "is_default": True,
    },
    {
        "code": "STARTER",
        "name": "Starter",
        "description": "Entry paid tier",
        "monthly_price": 10.0,
        "monthly_tokens_input_quota": 2_000_000,
        "monthly_tokens_output_quota": 1_000_000,
        "monthly_images_quota": 50,
        "monthly_videos_quota": 5,
        "monthly_documents_quota": 100,
        "daily_tokens_input_limit": None,
        "daily_tokens_output_limit": None,
        "daily_images_limit": None,
        "daily_videos_limit": None,
        "trial_days": None,
        "is_default": False,
    },
    {
        "code": "PRO",
        "name": "Pro",
        "description": "Pro tier",
        "monthly_price": 30.0,
        "monthly_tokens_input_quota": 10_000_000,
        "monthly_tokens_output_quota": 5_000_000,
        "monthly_images_quota": 300,
        "monthly_videos_quota": 30,
        "monthly_documents_quota": 1_000,
        "daily_tokens_input_limit": None,
        "daily_tokens_output_limit": None,
        "daily_images_limit": None,
        "daily_videos_limit": None,
        "trial_days": None,
        "is_default": False,
    },
    {
        "code": "ENTERPRISE",
        "name": "Enterprise",
        "description": "Unmetered monthly usage",
        "monthly_price": 200.0,
        "monthly_tokens_input_quota": None,
        "monthly_tokens_output_quota": None,
        "monthly_images_quota": None,
        "monthly_videos_quota": None,
        "monthly_documents_quota": None,
        "daily_tokens_input_limit": None,
        "daily_tokens_output_limit": None,
        "daily_images_limit": None,
        "daily_videos_limit": None,
        "trial_days": None,
        "is_default": False,
    },
)


class TierCatalog:
    """Read-only access to tier definitions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tier_id: int) -> SubscriptionTier:
        tier = await self.session.get(SubscriptionTier, tier_id)
        if tier is None:
            raise NotFound("Subscription tier not found.", details={"tier_id": tier_id})
        return tier

    async def get_by_code(self, code: str) -> SubscriptionTier:
        stmt = select(SubscriptionTier).where(SubscriptionTier.code == code.upper())
        result = await self.session.execute(stmt)
        tier = result.scalar_one_or_none()
        if tier is None:
            raise NotFound("Subscription tier not found.", details={"code": code})
        return tier

    async def get_default(self) -> SubscriptionTier | None:
        stmt = (
            select(SubscriptionTier)
            .where(
                SubscriptionTier.is_default.is_(True),
                SubscriptionTier.is_active.is_(True),
            )
            .order_by(SubscriptionTier.id)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()


async def ensure_default_tiers(session: AsyncSession) -> None:
    """Ensure the built-in tiers exist and stay in sync."""

    for payload in DEFAULT_TIERS:
        stmt = select(SubscriptionTier).where(SubscriptionTier.code == payload["code"])
        result = await session.execute(stmt)
        tier = result.scalar_one_or_none()
        now = utc_now()
        if tier:
            for field, value in payload.items():
                setattr(tier, field, value)
            tier.is_active = True
            tier.updated_at = now
        else:
            session.add(SubscriptionTier(**payload, is_active=True, created_at=now, updated_at=now))

    await session.commit()
    logger.info("subscription_tiers_seeded", count=len(DEFAULT_TIERS))


__all__ = ["DEFAULT_TIERS", "TierCatalog", "ensure_default_tiers"]
