"""Quota check, usage recording and credit top-up endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from admission.api.dependencies import get_app_settings, get_context, get_session, require_service
from admission.config import AdmissionSettings
from admission.domain.models import (
    AuthorizationContext,
    CreditBalances,
    QuotaCheckRequest,
    QuotaCheckResponse,
    TopUpRequest,
    UsageRecordRequest,
    UsageRecordResponse,
)
from admission.domain.resources import rule_for
from admission.services.auth import AuthService
from admission.services.exceptions import Unauthorized
from admission.services.ledger import UsageLedger
from admission.services.quota import QuotaEvaluator
from admission.services.wallet import CreditWalletService

router = APIRouter(prefix="/v1", tags=["metering"])


@router.post(
    "/quota/check",
    response_model=QuotaCheckResponse,
    responses={402: {"model": QuotaCheckResponse}},
)
async def check_quota(
    body: QuotaCheckRequest,
    context: AuthorizationContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
    settings: AdmissionSettings = Depends(get_app_settings),
):
    if body.user_id != context.user_id:
        if not (context.is_service or context.is_elevated):
            raise Unauthorized("You may only check your own quota.")
        target = await AuthService(session, settings).context_for(body.user_id)
    else:
        target = context

    rule = rule_for(body.action_type)
    requested = rule.requested_amounts(body.tokens_input, body.tokens_output, body.quantity)
    decision = await QuotaEvaluator(session, settings).evaluate(target, rule.action, requested)
    payload = QuotaCheckResponse.model_validate(decision.model_dump())
    return JSONResponse(
        status_code=status.HTTP_200_OK if decision.allowed else status.HTTP_402_PAYMENT_REQUIRED,
        content=payload.model_dump(mode="json", by_alias=True),
    )


@router.post("/usage", response_model=UsageRecordResponse, status_code=status.HTTP_201_CREATED)
async def record_usage(
    body: UsageRecordRequest,
    _: AuthorizationContext = Depends(require_service),
    session: AsyncSession = Depends(get_session),
):
    event = await UsageLedger(session).record_usage(
        body.user_id,
        body.event_type,
        tokens_input=body.tokens_input,
        tokens_output=body.tokens_output,
        tokens_reasoning=body.tokens_reasoning,
        quantity=body.quantity,
        model_used=body.model_used,
        cost_usd=body.cost_usd,
        request_id=body.request_id,
        response_time_ms=body.response_time_ms,
        queue_item_id=body.queue_item_id,
    )
    return UsageRecordResponse(event_id=event.id, credits_charged=event.credits_charged or {})


@router.post("/credits/top-up", response_model=CreditBalances)
async def top_up_credits(
    body: TopUpRequest,
    _: AuthorizationContext = Depends(require_service),
    session: AsyncSession = Depends(get_session),
):
    return await CreditWalletService(session).top_up(
        body.user_id, body.kind, body.amount, reference=body.reference
    )
