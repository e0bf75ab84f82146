"""Priority request queue with idempotent admission."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from admission.config import AdmissionSettings, get_settings
from admission.db.models.core import QueueItem
from admission.domain.models import (
    AuthorizationContext,
    EnqueueRequest,
    EnqueueResponse,
    IdempotentReplayResponse,
    Priority,
    QueueStats,
    QueueStatus,
    QuotaDecision,
    priority_score,
)
from admission.domain.resources import ActionType, action_for_request_type, rule_for
from admission.logging import logger
from admission.services.exceptions import (
    InvalidStateTransition,
    NotFound,
    QuotaExceeded,
    Unauthorized,
)
from admission.services.ledger import UsageLedger
from admission.services.quota_gateway import LocalQuotaGateway, QuotaGateway
from admission.services.subscriptions import SubscriptionLifecycle
from admission.services.workspaces import WorkspaceAccess
from admission.utils.datetime import as_utc, utc_now
from admission.utils.tokens import estimate_messages_tokens

ALLOWED_TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.PROCESSING, QueueStatus.CANCELLED}),
    QueueStatus.PROCESSING: frozenset(
        {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED}
    ),
    QueueStatus.FAILED: frozenset({QueueStatus.PENDING}),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.CANCELLED: frozenset(),
}


class RequestQueue:
    def __init__(
        self,
        session: AsyncSession,
        settings: AdmissionSettings | None = None,
        gateway: QuotaGateway | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.gateway = gateway or LocalQuotaGateway(session, self.settings)
        self.workspaces = WorkspaceAccess(session)
        self.ledger = UsageLedger(session)

    # Admission --------------------------------------------------------

    def estimate(self, action: ActionType, request: EnqueueRequest) -> dict[str, int]:
        """Amounts to check and hold for a request before it has run."""

        rule = rule_for(action)
        if not rule.metered_by_tokens:
            return rule.requested_amounts()
        tokens_input = request.estimated_tokens_input
        if tokens_input is None:
            tokens_input = estimate_messages_tokens(request.request_payload.messages)
        tokens_output = request.estimated_tokens_output
        if tokens_output is None:
            tokens_output = self.settings.queue.default_output_token_estimate
        return rule.requested_amounts(tokens_input=tokens_input, tokens_output=tokens_output)

    async def enqueue(
        self, context: AuthorizationContext, request: EnqueueRequest
    ) -> EnqueueResponse | IdempotentReplayResponse:
        """Admit a request into the queue.

        Checks run in a fixed order and each one stops the request: workspace
        access, the fail-closed quota check, idempotent replay, then the
        atomic reservation of the estimated amounts. Holds left by the
        caller's expired items are given back before the quota check.
        """

        await self.workspaces.authorize(context, request.workspace_id)
        await self.release_expired(user_id=context.user_id)

        action = action_for_request_type(request.request_type)
        requested = self.estimate(action, request)
        decision = await self.gateway.check(context, action, requested)
        if not decision.allowed:
            raise self._denial(decision)

        now = utc_now()
        if request.idempotency_key:
            existing = await self._find_by_idempotency_key(context.user_id, request.idempotency_key)
            if existing is not None:
                if as_utc(existing.expires_at) > now:
                    logger.info(
                        "queue_item_replayed",
                        item_id=existing.id,
                        user_id=context.user_id,
                    )
                    return self._replay(existing)
                await self.ledger.release_item(existing)
                existing.idempotency_key = None
                await self.session.flush()
                logger.info("idempotency_key_released", item_id=existing.id, user_id=context.user_id)

        reservation = None
        if not decision.unlimited:
            subscription = await SubscriptionLifecycle(
                self.session, self.settings
            ).get_active_subscription(context.user_id)
            try:
                reservation = await self.ledger.reserve(
                    context.user_id, action, requested, subscription, now
                )
            except QuotaExceeded as exc:
                exc.details.setdefault("upgrade_url", self.settings.upgrade_path)
                raise

        item = QueueItem(
            user_id=context.user_id,
            workspace_id=request.workspace_id,
            request_type=request.request_type,
            action_type=action.value,
            payload=request.request_payload.model_dump(mode="json"),
            priority=request.priority.value,
            priority_score=priority_score(request.priority),
            status=QueueStatus.PENDING.value,
            idempotency_key=request.idempotency_key,
            callback_url=request.callback_url,
            retry_count=0,
            max_retries=self.settings.queue.max_retries,
            reservation=reservation.to_json() if reservation is not None else None,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=self.settings.queue.item_ttl_hours),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(item)
        except IntegrityError:
            # A concurrent submission with the same key won the insert.
            if reservation is not None:
                await self.ledger.release(context.user_id, reservation)
            if not request.idempotency_key:
                raise
            existing = await self._find_by_idempotency_key(context.user_id, request.idempotency_key)
            if existing is None:
                raise
            return self._replay(existing)

        logger.info(
            "queue_item_enqueued",
            item_id=item.id,
            user_id=context.user_id,
            workspace_id=request.workspace_id,
            action=action.value,
            priority=item.priority,
            priority_score=item.priority_score,
        )
        return EnqueueResponse(
            id=item.id,
            status=QueueStatus.PENDING,
            priority=request.priority,
            priority_score=item.priority_score,
            created_at=now,
        )

    def _denial(self, decision: QuotaDecision) -> QuotaExceeded:
        return QuotaExceeded(
            decision.reason or "Quota exceeded",
            details={
                "reason": decision.reason,
                "usage": decision.usage.model_dump(),
                "daily_usage": decision.daily_usage.model_dump(),
                "quotas": decision.quotas.model_dump(),
                "credits": decision.credits.model_dump(),
                "upgrade_url": self.settings.upgrade_path,
            },
        )

    @staticmethod
    def _replay(item: QueueItem) -> IdempotentReplayResponse:
        return IdempotentReplayResponse(
            id=item.id,
            status=QueueStatus(item.status),
            result=item.result_payload,
        )

    async def _find_by_idempotency_key(self, user_id: int, key: str) -> QueueItem | None:
        stmt = (
            select(QueueItem)
            .where(QueueItem.user_id == user_id, QueueItem.idempotency_key == key)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # Caller operations ------------------------------------------------

    async def get(self, context: AuthorizationContext, item_id: int) -> QueueItem:
        item = await self._load(item_id)
        self._ensure_owner(context, item)
        return item

    async def reprioritize(
        self, context: AuthorizationContext, item_id: int, priority: Priority | str
    ) -> QueueItem:
        priority = Priority(priority)
        item = await self._load(item_id, lock=True)
        self._ensure_owner(context, item)
        if item.status != QueueStatus.PENDING.value:
            raise InvalidStateTransition(
                "Only pending items can be reprioritized.",
                details={"item_id": item.id, "status": item.status},
            )
        item.priority = priority.value
        item.priority_score = priority_score(priority)
        item.updated_at = utc_now()
        await self.session.flush()
        logger.info(
            "queue_item_reprioritized",
            item_id=item.id,
            priority=priority.value,
            priority_score=item.priority_score,
        )
        return item

    async def cancel(self, context: AuthorizationContext, item_id: int) -> QueueItem:
        item = await self._load(item_id, lock=True)
        self._ensure_owner(context, item)
        now = utc_now()
        self._transition(item, QueueStatus.CANCELLED)
        item.completed_at = now
        await self.ledger.release_item(item)
        await self.session.flush()
        logger.info("queue_item_cancelled", item_id=item.id, user_id=item.user_id)
        return item

    # Worker operations ------------------------------------------------

    async def claim_next(self, processing_node: str) -> QueueItem | None:
        """Move the next item in dequeue order to ``processing``."""

        now = utc_now()
        stmt = (
            select(QueueItem)
            .where(
                QueueItem.status == QueueStatus.PENDING.value,
                QueueItem.expires_at > now,
            )
            .order_by(
                QueueItem.priority_score.desc(),
                QueueItem.created_at.asc(),
                QueueItem.id.asc(),
            )
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        item = (await self.session.execute(stmt)).scalar_one_or_none()
        if item is None:
            return None
        self._transition(item, QueueStatus.PROCESSING)
        item.started_at = now
        item.processing_node = processing_node
        await self.session.flush()
        logger.info(
            "queue_item_claimed",
            item_id=item.id,
            processing_node=processing_node,
            priority_score=item.priority_score,
        )
        return item

    async def complete(self, item_id: int, result: dict | None = None) -> QueueItem:
        item = await self._load(item_id, lock=True)
        self._transition(item, QueueStatus.COMPLETED)
        item.result_payload = result
        item.completed_at = utc_now()
        await self.ledger.release_item(item)
        await self.session.flush()
        logger.info("queue_item_completed", item_id=item.id)
        return item

    async def fail(self, item_id: int, error: str) -> QueueItem:
        item = await self._load(item_id, lock=True)
        self._transition(item, QueueStatus.FAILED)
        item.error_message = error
        item.completed_at = utc_now()
        if item.retry_count >= item.max_retries:
            await self.ledger.release_item(item)
        await self.session.flush()
        logger.warning(
            "queue_item_failed",
            item_id=item.id,
            retry_count=item.retry_count,
            max_retries=item.max_retries,
            error=error,
        )
        return item

    async def retry(self, item_id: int) -> QueueItem:
        item = await self._load(item_id, lock=True)
        if item.status == QueueStatus.FAILED.value and item.retry_count >= item.max_retries:
            raise InvalidStateTransition(
                "Retry budget exhausted.",
                details={"item_id": item.id, "retry_count": item.retry_count},
            )
        self._transition(item, QueueStatus.PENDING)
        item.retry_count += 1
        item.started_at = None
        item.completed_at = None
        item.processing_node = None
        await self.session.flush()
        logger.info("queue_item_retried", item_id=item.id, retry_count=item.retry_count)
        return item

    async def release_expired(
        self, now: datetime | None = None, *, user_id: int | None = None
    ) -> int:
        """Give back the holds of pending items whose TTL passed.

        The items stay pending; claim skips them and the external sweep marks
        them terminal.
        """

        now = now or utc_now()
        stmt = select(QueueItem).where(
            QueueItem.status == QueueStatus.PENDING.value,
            QueueItem.expires_at <= now,
        )
        if user_id is not None:
            stmt = stmt.where(QueueItem.user_id == user_id)
        items = (await self.session.execute(stmt.with_for_update(skip_locked=True))).scalars().all()
        released = 0
        for item in items:
            # JSON columns store None as JSON null, so filter here rather than in SQL.
            if not item.reservation:
                continue
            await self.ledger.release_item(item)
            released += 1
        if released:
            await self.session.flush()
            logger.info("expired_reservations_released", count=released, user_id=user_id)
        return released

    # Introspection ----------------------------------------------------

    async def stats(self) -> QueueStats:
        since = utc_now() - timedelta(hours=24)
        pending_rows = await self.session.execute(
            select(QueueItem.priority, func.count(QueueItem.id))
            .where(QueueItem.status == QueueStatus.PENDING.value)
            .group_by(QueueItem.priority)
        )
        pending = {priority.value: 0 for priority in Priority}
        for priority, count in pending_rows.all():
            pending[priority] = count

        processing = await self._count(QueueItem.status == QueueStatus.PROCESSING.value)
        completed = await self._count(
            QueueItem.status == QueueStatus.COMPLETED.value, QueueItem.completed_at >= since
        )
        failed = await self._count(
            QueueItem.status == QueueStatus.FAILED.value, QueueItem.completed_at >= since
        )
        return QueueStats(
            pending=pending,
            processing=processing,
            completed_24h=completed,
            failed_24h=failed,
        )

    async def position(self, item_id: int) -> int | None:
        """Pending items ahead of ``item_id`` in dequeue order; None once it left pending."""

        item = await self._load(item_id)
        if item.status != QueueStatus.PENDING.value:
            return None
        return await self._count(
            QueueItem.status == QueueStatus.PENDING.value,
            QueueItem.expires_at > utc_now(),
            QueueItem.id != item.id,
            or_(
                QueueItem.priority_score > item.priority_score,
                and_(
                    QueueItem.priority_score == item.priority_score,
                    or_(
                        QueueItem.created_at < item.created_at,
                        and_(QueueItem.created_at == item.created_at, QueueItem.id < item.id),
                    ),
                ),
            ),
        )

    # Internal helpers -------------------------------------------------

    async def _count(self, *conditions) -> int:
        stmt = select(func.count(QueueItem.id)).where(*conditions)
        return int((await self.session.execute(stmt)).scalar_one())

    async def _load(self, item_id: int, *, lock: bool = False) -> QueueItem:
        stmt = select(QueueItem).where(QueueItem.id == item_id)
        if lock:
            stmt = stmt.with_for_update()
        item = (await self.session.execute(stmt)).scalar_one_or_none()
        if item is None:
            raise NotFound("Queue item not found.", details={"item_id": item_id})
        return item

    @staticmethod
    def _ensure_owner(context: AuthorizationContext, item: QueueItem) -> None:
        if item.user_id != context.user_id and not context.is_elevated:
            raise Unauthorized("You do not have access to this queue item.", details={"item_id": item.id})

    @staticmethod
    def _transition(item: QueueItem, target: QueueStatus) -> None:
        current = QueueStatus(item.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransition(
                f"Cannot move queue item from {current.value} to {target.value}.",
                details={"item_id": item.id, "from": current.value, "to": target.value},
            )
        item.status = target.value
        item.updated_at = utc_now()


__all__ = ["ALLOWED_TRANSITIONS", "RequestQueue"]
