"""FastAPI dependencies: per-request session, caller context and services."""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from admission.config import AdmissionSettings
from admission.db.session import Database
from admission.domain.models import AuthorizationContext
from admission.services.auth import AuthService
from admission.services.exceptions import QuotaExceeded, Unauthorized
from admission.services.queue import RequestQueue
from admission.services.quota_gateway import QuotaGateway, build_quota_gateway

bearer = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> AdmissionSettings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_session(database: Database = Depends(get_database)) -> AsyncIterator[AsyncSession]:
    """One session per request: committed on success, rolled back on any error.

    A quota denial is a final answer, so the bookkeeping done while reaching it
    (an expired trial, released holds) is committed before the error propagates.
    """

    async with database.session() as session:
        try:
            yield session
            await session.commit()
        except QuotaExceeded:
            await session.commit()
            raise
        except Exception:
            await session.rollback()
            raise


async def get_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    session: AsyncSession = Depends(get_session),
    settings: AdmissionSettings = Depends(get_app_settings),
) -> AuthorizationContext:
    token = credentials.credentials if credentials else None
    return await AuthService(session, settings).authenticate(token)


async def require_service(context: AuthorizationContext = Depends(get_context)) -> AuthorizationContext:
    if not (context.is_service or context.is_elevated):
        raise Unauthorized("This operation is reserved for service callers.")
    return context


def get_quota_gateway(
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: AdmissionSettings = Depends(get_app_settings),
) -> QuotaGateway:
    return build_quota_gateway(session, settings, getattr(request.app.state, "http_client", None))


def get_queue(
    session: AsyncSession = Depends(get_session),
    settings: AdmissionSettings = Depends(get_app_settings),
    gateway: QuotaGateway = Depends(get_quota_gateway),
) -> RequestQueue:
    return RequestQueue(session, settings, gateway)


__all__ = [
    "bearer",
    "get_app_settings",
    "get_context",
    "get_database",
    "get_queue",
    "get_quota_gateway",
    "get_session",
    "require_service",
]
