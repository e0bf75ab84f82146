"""Tests for subscription lifecycle and tier seeding."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from admission.db.models.core import SubscriptionTier, UserSubscription
from admission.services.exceptions import InvalidStateTransition, NotFound
from admission.services.subscriptions import SubscriptionLifecycle
from admission.services.tiers import DEFAULT_TIERS, TierCatalog, ensure_default_tiers
from admission.utils.datetime import as_utc, utc_now
from tests.factories import build_tier


@pytest.mark.asyncio
async def test_ensure_default_tiers_is_idempotent(session):
    await ensure_default_tiers(session)
    await ensure_default_tiers(session)

    tiers = (await session.execute(select(SubscriptionTier))).scalars().all()
    assert sorted(t.code for t in tiers) == sorted(p["code"] for p in DEFAULT_TIERS)
    default = await TierCatalog(session).get_default()
    assert default.code == "TRIAL"
    assert default.daily_tokens_input_limit == 10_000


@pytest.mark.asyncio
async def test_tier_lookup_raises_not_found(session):
    catalog = TierCatalog(session)
    with pytest.raises(NotFound):
        await catalog.get(404)
    with pytest.raises(NotFound):
        await catalog.get_by_code("missing")


@pytest.mark.asyncio
async def test_start_subscription_supersedes_active_one(session, settings, make_user):
    user = await make_user()
    basic, pro = build_tier("BASIC"), build_tier("PRO")
    session.add_all([basic, pro])
    await session.flush()
    lifecycle = SubscriptionLifecycle(session, settings)

    first = await lifecycle.start_subscription(user.id, basic)
    second = await lifecycle.start_subscription(user.id, pro)

    assert first.status == "cancelled"
    assert first.cancelled_at is not None
    active = await lifecycle.get_active_subscription(user.id)
    assert active.id == second.id
    assert active.tier.code == "PRO"
    rows = (
        await session.execute(
            select(UserSubscription).where(UserSubscription.status == "active")
        )
    ).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_trial_uses_tier_days_or_default(session, settings, make_user):
    user = await make_user()
    tier = build_tier("TRIALISH", trial_days=None)
    session.add(tier)
    await session.flush()
    now = utc_now()

    subscription = await SubscriptionLifecycle(session, settings).start_subscription(
        user.id, tier, trial=True, now=now
    )

    assert subscription.is_trial
    assert as_utc(subscription.trial_ends_at) == now + timedelta(days=14)


@pytest.mark.asyncio
async def test_expire_trial_only_after_end(session, settings, make_user, subscribe):
    user = await make_user()
    subscription = await subscribe(user, trial=True)
    lifecycle = SubscriptionLifecycle(session, settings)

    assert not await lifecycle.expire_trial_if_needed(subscription)
    assert subscription.status == "active"

    later = as_utc(subscription.trial_ends_at) + timedelta(seconds=1)
    assert await lifecycle.expire_trial_if_needed(subscription, now=later)
    assert subscription.status == "expired"


@pytest.mark.asyncio
async def test_paid_subscription_never_expires_as_trial(session, settings, make_user, subscribe):
    user = await make_user()
    subscription = await subscribe(user)
    assert not await SubscriptionLifecycle(session, settings).expire_trial_if_needed(
        subscription, now=utc_now() + timedelta(days=365)
    )


@pytest.mark.asyncio
async def test_status_transitions(session, settings, make_user, subscribe):
    user = await make_user()
    subscription = await subscribe(user)
    lifecycle = SubscriptionLifecycle(session, settings)

    await lifecycle.suspend(subscription)
    assert await lifecycle.get_active_subscription(user.id) is None
    await lifecycle.reactivate(subscription)
    assert subscription.status == "active"

    await lifecycle.cancel(subscription)
    with pytest.raises(InvalidStateTransition):
        await lifecycle.reactivate(subscription)
    with pytest.raises(InvalidStateTransition):
        await lifecycle.suspend(subscription)
