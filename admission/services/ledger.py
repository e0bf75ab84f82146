"""Per-period usage aggregation, reservations and the usage audit log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from admission.db.models.core import QueueItem, UsageEvent, UsageRecord, UserSubscription
from admission.domain.resources import (
    DAILY_RESOURCES,
    RESOURCES,
    ActionRule,
    ActionType,
    CreditPool,
    rule_for,
)
from admission.logging import logger
from admission.services.exceptions import QuotaExceeded
from admission.services.subscriptions import SubscriptionLifecycle
from admission.services.wallet import CreditWalletService
from admission.utils.datetime import as_utc, month_bounds, start_of_next_day, utc_now


def daily_window_elapsed(daily_reset_at: datetime | None, now: datetime) -> bool:
    """``daily_reset_at`` holds the next reset instant; counters are stale once it passes."""

    reset_at = as_utc(daily_reset_at)
    return reset_at is None or reset_at <= now


def trial_daily_limits(
    subscription: UserSubscription | None, rule: ActionRule | None = None
) -> dict[str, int]:
    """Daily caps that bind ``subscription``; only trials are paced per day."""

    if subscription is None or not subscription.is_trial or subscription.tier is None:
        return {}
    resources = rule.resources if rule is not None else DAILY_RESOURCES
    limits = {}
    for resource in resources:
        if not resource.has_daily_limit:
            continue
        limit = getattr(subscription.tier, resource.tier_daily_field)
        if limit is not None:
            limits[resource.key] = limit
    return limits


@dataclass(slots=True)
class UsageSnapshot:
    period_start: datetime
    period_end: datetime
    quotas: dict[str, int | None]
    used: dict[str, int] = field(default_factory=dict)
    reserved: dict[str, int] = field(default_factory=dict)
    daily: dict[str, int] = field(default_factory=dict)
    daily_reserved: dict[str, int] = field(default_factory=dict)
    exists: bool = False

    def monthly_load(self, key: str) -> int:
        return self.used.get(key, 0) + self.reserved.get(key, 0)

    def daily_load(self, key: str) -> int:
        return self.daily.get(key, 0) + self.daily_reserved.get(key, 0)


@dataclass(slots=True)
class Reservation:
    """Quota or credit held for an admitted request until it is processed."""

    period_start: datetime
    amounts: dict[str, int] = field(default_factory=dict)
    credit_pool: CreditPool | None = None
    credits: int = 0
    # Daily share, only valid while the record's daily window still ends here.
    daily: dict[str, int] = field(default_factory=dict)
    daily_window_end: datetime | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "period_start": self.period_start.isoformat(),
            "amounts": dict(self.amounts),
            "credit_pool": self.credit_pool.value if self.credit_pool else None,
            "credits": self.credits,
            "daily": dict(self.daily),
            "daily_window_end": (
                self.daily_window_end.isoformat() if self.daily_window_end else None
            ),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "Reservation":
        pool = data.get("credit_pool")
        return cls(
            period_start=as_utc(datetime.fromisoformat(data["period_start"])),
            amounts={key: int(value) for key, value in (data.get("amounts") or {}).items()},
            credit_pool=CreditPool(pool) if pool else None,
            credits=int(data.get("credits") or 0),
            daily={key: int(value) for key, value in (data.get("daily") or {}).items()},
            daily_window_end=(
                as_utc(datetime.fromisoformat(data["daily_window_end"]))
                if data.get("daily_window_end")
                else None
            ),
        )

    @property
    def is_empty(self) -> bool:
        return (
            not any(self.amounts.values())
            and not self.credits
            and not any(self.daily.values())
        )


class UsageLedger:
    def __init__(self, session: AsyncSession, wallet: CreditWalletService | None = None) -> None:
        self.session = session
        self.wallet = wallet or CreditWalletService(session)

    async def get_period_record(
        self, user_id: int, period_start: datetime, *, lock: bool = False
    ) -> UsageRecord | None:
        stmt = (
            select(UsageRecord)
            .where(
                UsageRecord.user_id == user_id,
                UsageRecord.period_start == period_start,
            )
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def snapshot(
        self,
        user_id: int,
        subscription: UserSubscription | None = None,
        now: datetime | None = None,
    ) -> UsageSnapshot:
        """Current period counters with daily rollover applied on read, without writing."""

        now = now or utc_now()
        period_start, period_end = month_bounds(now)
        record = await self.get_period_record(user_id, period_start)
        if record is None:
            tier = subscription.tier if subscription is not None else None
            return UsageSnapshot(
                period_start=period_start,
                period_end=period_end,
                quotas={
                    r.key: getattr(tier, r.tier_quota_field) if tier is not None else None
                    for r in RESOURCES
                },
                used={r.key: 0 for r in RESOURCES},
                reserved={r.key: 0 for r in RESOURCES},
                daily={r.key: 0 for r in DAILY_RESOURCES},
                daily_reserved={r.key: 0 for r in DAILY_RESOURCES},
            )

        stale = daily_window_elapsed(record.daily_reset_at, now)
        return UsageSnapshot(
            period_start=period_start,
            period_end=period_end,
            quotas={r.key: getattr(record, r.quota_column) for r in RESOURCES},
            used={r.key: getattr(record, r.used_column) or 0 for r in RESOURCES},
            reserved={r.key: getattr(record, r.reserved_column) or 0 for r in RESOURCES},
            daily={
                r.key: 0 if stale else getattr(record, r.daily_column) or 0 for r in DAILY_RESOURCES
            },
            daily_reserved={
                r.key: 0 if stale else getattr(record, r.daily_reserved_column) or 0
                for r in DAILY_RESOURCES
            },
            exists=True,
        )

    async def record_usage(
        self,
        user_id: int,
        event_type: ActionType | str,
        *,
        tokens_input: int = 0,
        tokens_output: int = 0,
        tokens_reasoning: int = 0,
        quantity: int = 1,
        model_used: str | None = None,
        cost_usd: float = 0.0,
        request_id: str | None = None,
        response_time_ms: int | None = None,
        queue_item_id: int | None = None,
        subscription: UserSubscription | None = None,
    ) -> UsageEvent:
        """Append the audit event and fold the amounts into the period aggregate."""

        now = utc_now()
        action = ActionType(event_type)
        rule = rule_for(action)
        amounts = rule.requested_amounts(tokens_input, tokens_output, quantity)
        if subscription is None:
            subscription = await SubscriptionLifecycle(self.session).get_active_subscription(user_id)

        record = await self._locked_period_record(user_id, subscription, now)
        self._roll_daily_window(record, now)

        over_quota: dict[CreditPool, int] = {}
        for resource in rule.resources:
            amount = amounts[resource.key]
            used_after = getattr(record, resource.used_column) + amount
            setattr(record, resource.used_column, used_after)
            if resource.has_daily_limit:
                setattr(
                    record,
                    resource.daily_column,
                    getattr(record, resource.daily_column) + amount,
                )
            quota = getattr(record, resource.quota_column)
            if resource.credit_pool is not None and quota is not None:
                over = min(amount, max(0, used_after - quota))
                if over:
                    over_quota[resource.credit_pool] = over_quota.get(resource.credit_pool, 0) + over
        record.last_usage_at = now
        record.updated_at = now
        await self.session.flush()

        if queue_item_id is not None:
            await self._release_item_reservation(queue_item_id)

        charged: dict[str, int] = {}
        for pool, amount in over_quota.items():
            charged[pool.value] = await self.wallet.spend(user_id, pool, amount)

        event = UsageEvent(
            user_id=user_id,
            subscription_id=subscription.id if subscription is not None else None,
            queue_item_id=queue_item_id,
            event_type=action.value,
            model_used=model_used,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            tokens_reasoning=tokens_reasoning,
            images=amounts.get("images", 0),
            videos=amounts.get("videos", 0),
            documents=amounts.get("documents", 0),
            credits_charged=charged or None,
            cost_usd=cost_usd,
            request_id=request_id,
            response_time_ms=response_time_ms,
            created_at=now,
        )
        self.session.add(event)
        await self.session.flush()
        logger.info(
            "usage_recorded",
            user_id=user_id,
            event_type=action.value,
            amounts=amounts,
            credits_charged=charged,
            usage_record_id=record.id,
        )
        return event

    async def reserve(
        self,
        user_id: int,
        action: ActionType | str,
        amounts: dict[str, int],
        subscription: UserSubscription | None = None,
        now: datetime | None = None,
    ) -> Reservation:
        """Atomically check headroom and hold it; raises ``QuotaExceeded`` when none is left.

        Trial daily limits are held first with their own conditional UPDATE.
        Monthly headroom is claimed with one conditional UPDATE; when the
        request does not fit, the whole request is held against the matching
        credit pool instead.
        """

        now = now or utc_now()
        rule = rule_for(action)
        record = await self._locked_period_record(user_id, subscription, now)
        if self._roll_daily_window(record, now):
            await self.session.flush()

        limits = trial_daily_limits(subscription, rule)
        daily = {key: amounts[key] for key in limits if amounts.get(key, 0) > 0}
        window_end = as_utc(record.daily_reset_at) if daily else None
        if daily:
            await self._reserve_daily(record, rule, daily, limits, amounts)

        conditions = []
        values = {}
        for resource in rule.resources:
            amount = amounts.get(resource.key, 0)
            quota = getattr(UsageRecord, resource.quota_column)
            used = getattr(UsageRecord, resource.used_column)
            reserved = getattr(UsageRecord, resource.reserved_column)
            conditions.append(or_(quota.is_(None), used + reserved + amount <= quota))
            values[reserved] = reserved + amount
        stmt = (
            update(UsageRecord)
            .where(UsageRecord.id == record.id, *conditions)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 1:
            return Reservation(
                period_start=record.period_start,
                amounts=dict(amounts),
                daily=daily,
                daily_window_end=window_end,
            )

        needed = sum(amounts.values())
        pool = rule.credit_pool
        if pool is not None and await self.wallet.reserve(user_id, pool, needed):
            return Reservation(
                period_start=record.period_start,
                credit_pool=pool,
                credits=needed,
                daily=daily,
                daily_window_end=window_end,
            )

        if daily:
            await self._release_daily(user_id, record.period_start, daily, window_end)
        logger.info("reservation_rejected", user_id=user_id, action=rule.action.value, amounts=amounts)
        raise QuotaExceeded(
            rule.monthly_denial,
            details={"action": rule.action.value, "requested": dict(amounts)},
        )

    async def release(self, user_id: int, reservation: Reservation) -> None:
        if reservation.daily and reservation.daily_window_end is not None:
            await self._release_daily(
                user_id,
                reservation.period_start,
                reservation.daily,
                reservation.daily_window_end,
            )
        if reservation.amounts:
            values = {}
            for key, amount in reservation.amounts.items():
                if amount <= 0:
                    continue
                column = getattr(UsageRecord, f"{key}_reserved")
                values[column] = case((column >= amount, column - amount), else_=0)
            if values:
                stmt = (
                    update(UsageRecord)
                    .where(
                        UsageRecord.user_id == user_id,
                        UsageRecord.period_start == reservation.period_start,
                    )
                    .values(values)
                    .execution_options(synchronize_session=False)
                )
                await self.session.execute(stmt)
        if reservation.credit_pool is not None:
            await self.wallet.release(user_id, reservation.credit_pool, reservation.credits)

    async def release_item(self, item: QueueItem) -> None:
        if not item.reservation:
            return
        await self.release(item.user_id, Reservation.from_json(item.reservation))
        item.reservation = None
        logger.info("reservation_released", item_id=item.id, user_id=item.user_id)

    # Internal helpers -------------------------------------------------

    async def _release_item_reservation(self, queue_item_id: int) -> None:
        stmt = select(QueueItem).where(QueueItem.id == queue_item_id).with_for_update()
        item = (await self.session.execute(stmt)).scalar_one_or_none()
        if item is not None:
            await self.release_item(item)

    async def _reserve_daily(
        self,
        record: UsageRecord,
        rule: ActionRule,
        daily: dict[str, int],
        limits: dict[str, int],
        amounts: dict[str, int],
    ) -> None:
        conditions = []
        values = {}
        for key, amount in daily.items():
            used = getattr(UsageRecord, f"daily_{key}_used")
            reserved = getattr(UsageRecord, f"daily_{key}_reserved")
            conditions.append(used + reserved + amount <= limits[key])
            values[reserved] = reserved + amount
        stmt = (
            update(UsageRecord)
            .where(UsageRecord.id == record.id, *conditions)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 1:
            return

        limited = [resource for resource in rule.resources if resource.key in daily]
        denial = limited[0].daily_denial
        for resource in limited:
            load = (getattr(record, resource.daily_column) or 0) + (
                getattr(record, resource.daily_reserved_column) or 0
            )
            if load + daily[resource.key] > limits[resource.key]:
                denial = resource.daily_denial
                break
        logger.info(
            "daily_reservation_rejected",
            user_id=record.user_id,
            action=rule.action.value,
            daily=daily,
        )
        raise QuotaExceeded(
            denial,
            details={"action": rule.action.value, "requested": dict(amounts)},
        )

    async def _release_daily(
        self,
        user_id: int,
        period_start: datetime,
        daily: dict[str, int],
        window_end: datetime | None,
    ) -> None:
        values = {}
        for key, amount in daily.items():
            if amount <= 0:
                continue
            column = getattr(UsageRecord, f"daily_{key}_reserved")
            values[column] = case((column >= amount, column - amount), else_=0)
        if not values or window_end is None:
            return
        # A rolled window already cleared its holds.
        stmt = (
            update(UsageRecord)
            .where(
                UsageRecord.user_id == user_id,
                UsageRecord.period_start == period_start,
                UsageRecord.daily_reset_at == window_end,
            )
            .values(values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def _locked_period_record(
        self,
        user_id: int,
        subscription: UserSubscription | None,
        now: datetime,
    ) -> UsageRecord:
        period_start, period_end = month_bounds(now)
        record = await self.get_period_record(user_id, period_start, lock=True)
        if record is not None:
            return record

        tier = subscription.tier if subscription is not None else None
        record = UsageRecord(
            user_id=user_id,
            subscription_id=subscription.id if subscription is not None else None,
            period_start=period_start,
            period_end=period_end,
            daily_reset_at=start_of_next_day(now),
            created_at=now,
            updated_at=now,
        )
        for resource in RESOURCES:
            quota = getattr(tier, resource.tier_quota_field) if tier is not None else None
            setattr(record, resource.quota_column, quota)
            setattr(record, resource.used_column, 0)
            setattr(record, resource.reserved_column, 0)
        for resource in DAILY_RESOURCES:
            setattr(record, resource.daily_column, 0)
            setattr(record, resource.daily_reserved_column, 0)

        try:
            async with self.session.begin_nested():
                self.session.add(record)
        except IntegrityError:
            # Another handler created the period row first.
            record = await self.get_period_record(user_id, period_start, lock=True)
            if record is None:
                raise
            return record
        logger.info(
            "usage_period_opened",
            user_id=user_id,
            period_start=period_start.isoformat(),
            tier=tier.code if tier is not None else None,
        )
        return record

    @staticmethod
    def _roll_daily_window(record: UsageRecord, now: datetime) -> bool:
        if not daily_window_elapsed(record.daily_reset_at, now):
            return False
        for resource in DAILY_RESOURCES:
            setattr(record, resource.daily_column, 0)
            setattr(record, resource.daily_reserved_column, 0)
        record.daily_reset_at = start_of_next_day(now)
        return True


__all__ = ["Reservation", "UsageLedger", "UsageSnapshot", "daily_window_elapsed"]
