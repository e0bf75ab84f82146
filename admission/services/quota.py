"""Admission decisions over subscription, usage and credit state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from admission.config import AdmissionSettings, get_settings
from admission.db.models.core import UserSubscription
from admission.domain.models import (
    AuthorizationContext,
    CreditBalances,
    QuotaDecision,
    QuotaLimits,
    SubscriptionSummary,
    UsageCounters,
)
from admission.domain.resources import ActionRule, ActionType, rule_for
from admission.logging import logger
from admission.services.ledger import UsageLedger, UsageSnapshot, trial_daily_limits
from admission.services.subscriptions import SubscriptionLifecycle
from admission.services.wallet import CreditWalletService
from admission.utils.datetime import as_utc, utc_now

NO_SUBSCRIPTION = "No active subscription found"
TRIAL_EXPIRED = "Trial period has expired"


@dataclass(slots=True)
class Verdict:
    allowed: bool
    reason: str | None = None
    credit_covered: bool = False


def decide(
    rule: ActionRule,
    requested: dict[str, int],
    snapshot: UsageSnapshot,
    credits: CreditBalances,
    daily_limits: dict[str, int | None] | None = None,
) -> Verdict:
    """Apply one action's resource rules; ``daily_limits`` is only given for trials.

    Monthly load includes reserved amounts. A request that would push any of
    its resources past the monthly quota must be fully covered by the
    action's credit pool. Daily limits are checked whether or not credit
    covered the request.
    """

    over_quota = False
    for resource in rule.resources:
        quota = snapshot.quotas.get(resource.key)
        if quota is None:
            continue
        if snapshot.monthly_load(resource.key) + requested.get(resource.key, 0) > quota:
            over_quota = True
            break

    credit_covered = False
    if over_quota:
        pool = rule.credit_pool
        available = getattr(credits, pool.value) if pool is not None else 0
        needed = sum(requested.values())
        if pool is None or (available is not None and available < needed):
            return Verdict(False, rule.monthly_denial)
        credit_covered = True

    for resource in rule.resources:
        if not resource.has_daily_limit or not daily_limits:
            continue
        limit = daily_limits.get(resource.key)
        if limit is None:
            continue
        if snapshot.daily_load(resource.key) + requested.get(resource.key, 0) > limit:
            return Verdict(False, resource.daily_denial)

    return Verdict(True, credit_covered=credit_covered)


def _summary(subscription: UserSubscription) -> SubscriptionSummary:
    return SubscriptionSummary(
        tier=subscription.tier.code,
        is_trial=subscription.is_trial,
        trial_ends_at=as_utc(subscription.trial_ends_at),
    )


class QuotaEvaluator:
    def __init__(self, session: AsyncSession, settings: AdmissionSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.subscriptions = SubscriptionLifecycle(session, self.settings)
        self.wallet = CreditWalletService(session)
        self.ledger = UsageLedger(session, self.wallet)

    async def evaluate(
        self,
        context: AuthorizationContext,
        action: ActionType | str,
        requested: dict[str, int],
        now: datetime | None = None,
    ) -> QuotaDecision:
        """Decide whether ``context`` may run ``action``.

        Business denials come back as ``allowed=False`` decisions; only
        datastore failures raise.
        """

        if context.is_elevated:
            return QuotaDecision(
                allowed=True,
                unlimited=True,
                credits=CreditBalances(tokens=None, images=None, videos=None),
            )

        now = now or utc_now()
        rule = rule_for(action)
        subscription = await self.subscriptions.get_active_subscription(context.user_id)
        if subscription is None:
            logger.info("quota_denied", user_id=context.user_id, reason=NO_SUBSCRIPTION)
            return QuotaDecision.deny(NO_SUBSCRIPTION)

        if await self.subscriptions.expire_trial_if_needed(subscription, now):
            logger.info("quota_denied", user_id=context.user_id, reason=TRIAL_EXPIRED)
            return QuotaDecision.deny(TRIAL_EXPIRED, subscription=_summary(subscription))

        snapshot = await self.ledger.snapshot(context.user_id, subscription, now)
        credits = await self.wallet.balances(context.user_id)
        daily_limits = trial_daily_limits(subscription, rule)

        verdict = decide(rule, requested, snapshot, credits, daily_limits)
        decision = QuotaDecision(
            allowed=verdict.allowed,
            reason=verdict.reason,
            subscription=_summary(subscription),
            usage=UsageCounters(**{key: snapshot.monthly_load(key) for key in snapshot.used}),
            daily_usage=UsageCounters(**{key: snapshot.daily_load(key) for key in snapshot.daily}),
            quotas=QuotaLimits(**snapshot.quotas),
            credits=credits,
            details={
                "action": rule.action.value,
                "requested": dict(requested),
                "credit_covered": verdict.credit_covered,
                "period_start": snapshot.period_start.isoformat(),
            },
        )
        if not verdict.allowed:
            logger.info(
                "quota_denied",
                user_id=context.user_id,
                action=rule.action.value,
                reason=verdict.reason,
            )
        return decision


__all__ = ["NO_SUBSCRIPTION", "TRIAL_EXPIRED", "QuotaEvaluator", "Verdict", "decide"]
