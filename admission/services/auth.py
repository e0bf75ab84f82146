"""Bearer-token authentication and caller context resolution."""

from __future__ import annotations

from datetime import timedelta

import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from admission.config import AdmissionSettings, get_settings
from admission.db.models.core import User
from admission.domain.models import AuthorizationContext
from admission.logging import logger
from admission.services.exceptions import NotFound, Unauthenticated
from admission.utils.datetime import utc_now

INACTIVE_STATUSES = frozenset({"blocked", "deleted"})


def issue_token(
    user_id: int,
    settings: AdmissionSettings | None = None,
    *,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    auth = (settings or get_settings()).auth
    now = utc_now()
    claims = {"sub": str(user_id), "iat": now, "exp": now + expires_in}
    if auth.audience:
        claims["aud"] = auth.audience
    if auth.issuer:
        claims["iss"] = auth.issuer
    return jwt.encode(claims, auth.jwt_secret.get_secret_value(), algorithm=auth.jwt_algorithm)


class AuthService:
    def __init__(self, session: AsyncSession, settings: AdmissionSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def decode_user_id(self, token: str) -> int:
        """Verify the token signature and expiry; returns the ``sub`` claim as a user id."""

        auth = self.settings.auth
        required = ["exp", "sub"]
        if auth.issuer:
            required.append("iss")
        try:
            claims = jwt.decode(
                token,
                auth.jwt_secret.get_secret_value(),
                algorithms=[auth.jwt_algorithm],
                audience=auth.audience,
                issuer=auth.issuer,
                options={"require": required, "verify_aud": auth.audience is not None},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthenticated("Token has expired.") from exc
        except jwt.InvalidTokenError as exc:
            logger.info("token_rejected", error=str(exc))
            raise Unauthenticated("Invalid authentication token.") from exc

        try:
            return int(claims["sub"])
        except (TypeError, ValueError) as exc:
            raise Unauthenticated("Invalid authentication token.") from exc

    async def authenticate(self, token: str | None) -> AuthorizationContext:
        if not token:
            raise Unauthenticated("Missing authorization token.")
        user_id = self.decode_user_id(token)
        user = await self.session.get(User, user_id)
        if user is None or user.status in INACTIVE_STATUSES:
            logger.info("authentication_denied", user_id=user_id)
            raise Unauthenticated("User is not allowed to sign in.")
        user.last_seen_at = utc_now()
        return AuthorizationContext(user_id=user.id, role=user.role)

    async def context_for(self, user_id: int) -> AuthorizationContext:
        """Context for acting on behalf of ``user_id`` with that user's own role."""

        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFound("User not found.", details={"user_id": user_id})
        return AuthorizationContext(user_id=user.id, role=user.role)


__all__ = ["AuthService", "issue_token"]
