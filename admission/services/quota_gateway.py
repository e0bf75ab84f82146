"""Fail-closed access to quota decisions.

The queue never talks to the evaluator directly: every admission goes
through a gateway, and any failure to obtain a well-formed decision is an
error, never an implicit allow.
"""

from __future__ import annotations

from typing import Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from admission.config import AdmissionSettings, get_settings
from admission.domain.models import (
    AuthorizationContext,
    CreditBalances,
    QuotaCheckRequest,
    QuotaDecision,
)
from admission.domain.resources import ActionType, rule_for
from admission.logging import logger
from admission.services.exceptions import QuotaServiceUnavailable
from admission.services.quota import QuotaEvaluator
from admission.utils.retry import retry_async

RESPONSE_INVALID = "quota_response_invalid"


class QuotaGateway(Protocol):
    async def check(
        self,
        context: AuthorizationContext,
        action: ActionType | str,
        requested: dict[str, int],
    ) -> QuotaDecision: ...


class LocalQuotaGateway:
    """Evaluates in-process against the request's own session."""

    def __init__(self, session: AsyncSession, settings: AdmissionSettings | None = None) -> None:
        self.evaluator = QuotaEvaluator(session, settings)

    async def check(
        self,
        context: AuthorizationContext,
        action: ActionType | str,
        requested: dict[str, int],
    ) -> QuotaDecision:
        try:
            return await self.evaluator.evaluate(context, action, requested)
        except SQLAlchemyError as exc:
            logger.error(
                "quota_service_unavailable",
                user_id=context.user_id,
                action=str(action),
                error=str(exc),
            )
            raise QuotaServiceUnavailable(
                "Quota service is unavailable; request denied.",
                details={"action": ActionType(action).value},
            ) from exc


class HttpQuotaGateway:
    """Asks a remote metering service; transport failures and bad bodies deny."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: AdmissionSettings | None = None,
    ) -> None:
        self._client = http_client
        self._settings = (settings or get_settings()).quota_service
        if self._settings.url is None:
            raise ValueError("quota_service.url must be set when mode is 'http'")

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._settings.api_key is not None:
            headers["Authorization"] = f"Bearer {self._settings.api_key.get_secret_value()}"
        return headers

    @staticmethod
    def _payload(
        context: AuthorizationContext,
        action: ActionType | str,
        requested: dict[str, int],
    ) -> dict:
        rule = rule_for(action)
        if rule.metered_by_tokens:
            body = QuotaCheckRequest(
                user_id=context.user_id,
                action_type=rule.action,
                tokens_input=requested.get("tokens_input", 0),
                tokens_output=requested.get("tokens_output", 0),
            )
        else:
            body = QuotaCheckRequest(
                user_id=context.user_id,
                action_type=rule.action,
                quantity=max([1, *requested.values()]),
            )
        return body.model_dump(mode="json", by_alias=True)

    async def check(
        self,
        context: AuthorizationContext,
        action: ActionType | str,
        requested: dict[str, int],
    ) -> QuotaDecision:
        if context.is_elevated:
            return QuotaDecision(
                allowed=True,
                unlimited=True,
                credits=CreditBalances(tokens=None, images=None, videos=None),
            )

        details = {"action": ActionType(action).value}

        async def _request() -> httpx.Response:
            response = await self._client.post(
                str(self._settings.url),
                json=self._payload(context, action, requested),
                headers=self._headers(),
                timeout=self._settings.request_timeout_seconds,
            )
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(
                _request,
                retry_on=(httpx.TransportError, httpx.HTTPStatusError),
                max_attempts=self._settings.max_attempts,
                base_delay=self._settings.retry_base_delay,
                logger=logger,
                operation_name="quota_check",
            )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "quota_service_unavailable",
                user_id=context.user_id,
                status_code=exc.response.status_code,
            )
            raise QuotaServiceUnavailable(
                f"Quota service returned {exc.response.status_code}; request denied.",
                details=details,
            ) from exc
        except httpx.RequestError as exc:
            logger.error("quota_service_unavailable", user_id=context.user_id, error=str(exc))
            raise QuotaServiceUnavailable(
                "Quota service is unreachable; request denied.",
                details=details,
            ) from exc

        # 402 carries a denial decision; any other non-200 status is a failure.
        if response.status_code not in (200, 402):
            logger.error(
                "quota_service_unavailable",
                user_id=context.user_id,
                status_code=response.status_code,
            )
            raise QuotaServiceUnavailable(
                f"Quota service returned {response.status_code}; request denied.",
                details=details,
            )

        try:
            decision = QuotaDecision.model_validate_json(response.content)
        except PydanticValidationError as exc:
            logger.error(
                "quota_response_invalid",
                user_id=context.user_id,
                body=response.text[:500],
            )
            raise QuotaServiceUnavailable(
                "Quota service returned a malformed decision; request denied.",
                code=RESPONSE_INVALID,
                details=details,
            ) from exc

        if response.status_code == 402 and decision.allowed:
            raise QuotaServiceUnavailable(
                "Quota service returned a contradictory decision; request denied.",
                code=RESPONSE_INVALID,
                details=details,
            )
        return decision


def build_quota_gateway(
    session: AsyncSession,
    settings: AdmissionSettings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> QuotaGateway:
    settings = settings or get_settings()
    if settings.quota_service.mode == "http":
        if http_client is None:
            raise ValueError("An http client is required for the remote quota gateway")
        return HttpQuotaGateway(http_client, settings)
    return LocalQuotaGateway(session, settings)


__all__ = [
    "HttpQuotaGateway",
    "LocalQuotaGateway",
    "QuotaGateway",
    "RESPONSE_INVALID",
    "build_quota_gateway",
]
