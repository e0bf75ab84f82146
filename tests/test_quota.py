"""Tests for admission decisions."""

from __future__ import annotations

from datetime import timedelta

import pytest

from admission.domain.models import AuthorizationContext, CreditBalances
from admission.domain.resources import ActionType, rule_for
from admission.services.ledger import UsageLedger, UsageSnapshot
from admission.services.quota import NO_SUBSCRIPTION, TRIAL_EXPIRED, QuotaEvaluator, decide
from admission.services.wallet import CreditWalletService
from admission.utils.datetime import month_bounds, start_of_day, utc_now


def _snapshot(**used) -> UsageSnapshot:
    start, end = month_bounds(utc_now())
    return UsageSnapshot(
        period_start=start,
        period_end=end,
        quotas={"tokens_input": 1000, "tokens_output": 1000, "images": 5, "videos": 1, "documents": 2},
        used={"tokens_input": 0, "tokens_output": 0, "images": 0, "videos": 0, "documents": 0, **used},
        reserved={},
        daily={"tokens_input": 0, "tokens_output": 0, "images": 0, "videos": 0},
    )


def test_decide_allows_within_quota():
    verdict = decide(
        rule_for(ActionType.TEXT_GENERATION),
        {"tokens_input": 500, "tokens_output": 500},
        _snapshot(),
        CreditBalances(),
    )
    assert verdict.allowed
    assert not verdict.credit_covered


def test_decide_requires_credits_for_whole_text_request():
    rule = rule_for(ActionType.TEXT_GENERATION)
    requested = {"tokens_input": 300, "tokens_output": 10}
    snapshot = _snapshot(tokens_input=900)

    short = decide(rule, requested, snapshot, CreditBalances(tokens=309))
    assert not short.allowed
    assert short.reason == "Monthly token quota exceeded and insufficient credits"

    covered = decide(rule, requested, snapshot, CreditBalances(tokens=310))
    assert covered.allowed
    assert covered.credit_covered


def test_decide_daily_limit_applies_even_when_credit_covered():
    verdict = decide(
        rule_for(ActionType.IMAGE_GENERATION),
        {"images": 1},
        _snapshot(images=5),
        CreditBalances(images=10),
        daily_limits={"images": 0},
    )
    assert not verdict.allowed
    assert verdict.reason == "Daily image limit exceeded"


def test_decide_documents_have_no_credit_fallback():
    verdict = decide(
        rule_for(ActionType.DOCUMENT_PARSING),
        {"documents": 1},
        _snapshot(documents=2),
        CreditBalances(tokens=100, images=100, videos=100),
    )
    assert not verdict.allowed
    assert verdict.reason == "Monthly document parsing quota exceeded"


@pytest.mark.asyncio
async def test_admin_bypasses_every_check(session, settings, make_user):
    admin = await make_user(role="admin")
    evaluator = QuotaEvaluator(session, settings)

    decision = await evaluator.evaluate(
        AuthorizationContext(admin.id, "admin"),
        ActionType.VIDEO_GENERATION,
        {"videos": 100},
    )

    assert decision.allowed
    assert decision.unlimited
    assert decision.credits.tokens is None
    assert decision.credits.images is None
    assert decision.credits.videos is None


@pytest.mark.asyncio
async def test_denies_without_subscription(session, settings, make_user):
    user = await make_user()
    decision = await QuotaEvaluator(session, settings).evaluate(
        AuthorizationContext(user.id), ActionType.TEXT_GENERATION, {"tokens_input": 1}
    )
    assert not decision.allowed
    assert decision.reason == NO_SUBSCRIPTION


@pytest.mark.asyncio
async def test_expired_trial_is_marked_and_denied(session, settings, make_user, subscribe):
    user = await make_user()
    subscription = await subscribe(user, trial=True)
    subscription.trial_ends_at = utc_now() - timedelta(minutes=1)
    await session.flush()

    decision = await QuotaEvaluator(session, settings).evaluate(
        AuthorizationContext(user.id), ActionType.TEXT_GENERATION, {"tokens_input": 1}
    )

    assert not decision.allowed
    assert decision.reason == TRIAL_EXPIRED
    assert subscription.status == "expired"


@pytest.mark.asyncio
async def test_scenario_a_trial_daily_input_limit(session, settings, make_user, subscribe):
    user = await make_user()
    await subscribe(user, trial=True, daily_tokens_input_limit=10_000, monthly_tokens_input_quota=200_000)

    decision = await QuotaEvaluator(session, settings).evaluate(
        AuthorizationContext(user.id),
        ActionType.TEXT_GENERATION,
        {"tokens_input": 12_000, "tokens_output": 0},
    )

    assert not decision.allowed
    assert decision.reason == "Daily input token limit exceeded"


@pytest.mark.asyncio
async def test_daily_limits_ignored_for_paid_subscriptions(session, settings, make_user, subscribe):
    user = await make_user()
    await subscribe(user, daily_tokens_input_limit=10_000, monthly_tokens_input_quota=200_000)

    decision = await QuotaEvaluator(session, settings).evaluate(
        AuthorizationContext(user.id),
        ActionType.TEXT_GENERATION,
        {"tokens_input": 12_000, "tokens_output": 0},
    )

    assert decision.allowed


@pytest.mark.asyncio
async def test_scenarios_b_and_c_image_credits(session, settings, make_user, subscribe):
    user = await make_user()
    await subscribe(user, monthly_images_quota=50)
    ledger = UsageLedger(session)
    await ledger.record_usage(user.id, ActionType.IMAGE_GENERATION, quantity=50)
    evaluator = QuotaEvaluator(session, settings)
    context = AuthorizationContext(user.id)

    denied = await evaluator.evaluate(context, ActionType.IMAGE_GENERATION, {"images": 1})
    assert not denied.allowed
    assert denied.reason == "Monthly image quota exceeded and no credits available"
    assert denied.usage.images == 50

    wallet = CreditWalletService(session)
    await wallet.top_up(user.id, "images", 3)
    allowed = await evaluator.evaluate(context, ActionType.IMAGE_GENERATION, {"images": 1})
    assert allowed.allowed
    assert allowed.details["credit_covered"] is True
    assert allowed.credits.images == 3

    await ledger.record_usage(user.id, ActionType.IMAGE_GENERATION, quantity=1)
    assert (await wallet.balances(user.id)).images == 2


@pytest.mark.asyncio
async def test_daily_usage_rolls_over_on_read(session, settings, make_user, subscribe):
    user = await make_user()
    await subscribe(user, trial=True, daily_tokens_input_limit=10_000)
    ledger = UsageLedger(session)
    await ledger.record_usage(user.id, ActionType.TEXT_GENERATION, tokens_input=9_000)
    evaluator = QuotaEvaluator(session, settings)
    context = AuthorizationContext(user.id)

    same_day = await evaluator.evaluate(context, ActionType.TEXT_GENERATION, {"tokens_input": 5_000})
    assert same_day.reason == "Daily input token limit exceeded"

    # Stored counters are still yesterday's; only the window has moved on.
    now = utc_now()
    record = await ledger.get_period_record(user.id, month_bounds(now)[0])
    record.daily_reset_at = start_of_day(now)
    await session.flush()

    next_day = await evaluator.evaluate(context, ActionType.TEXT_GENERATION, {"tokens_input": 5_000})
    assert next_day.allowed
    assert next_day.daily_usage.tokens_input == 0
    stored = await ledger.get_period_record(user.id, month_bounds(now)[0])
    assert stored.daily_tokens_input_used == 9_000


@pytest.mark.asyncio
async def test_reserved_amounts_count_against_quota(session, settings, make_user, subscribe):
    user = await make_user()
    subscription = await subscribe(user, monthly_tokens_input_quota=100_000)
    ledger = UsageLedger(session)
    await ledger.reserve(
        user.id,
        ActionType.TEXT_GENERATION,
        {"tokens_input": 90_000, "tokens_output": 0},
        subscription,
    )

    decision = await QuotaEvaluator(session, settings).evaluate(
        AuthorizationContext(user.id),
        ActionType.TEXT_GENERATION,
        {"tokens_input": 20_000, "tokens_output": 0},
    )

    assert not decision.allowed
    assert decision.usage.tokens_input == 90_000
