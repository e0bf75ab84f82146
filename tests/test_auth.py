"""Tests for bearer-token authentication."""

from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from admission.config import AdmissionSettings, AuthSettings
from admission.services.auth import AuthService, issue_token
from admission.services.exceptions import NotFound, Unauthenticated

SECRET = "unit-test-secret-with-enough-bytes"


@pytest.fixture
def auth_settings():
    return AdmissionSettings(auth=AuthSettings(jwt_secret=SECRET, audience="admission", issuer="tests"))


@pytest.mark.asyncio
async def test_authenticate_resolves_context_and_touches_user(session, make_user, auth_settings):
    user = await make_user(role="service")
    token = issue_token(user.id, auth_settings)

    context = await AuthService(session, auth_settings).authenticate(token)

    assert context.user_id == user.id
    assert context.is_service
    assert user.last_seen_at is not None


@pytest.mark.asyncio
async def test_missing_token_is_rejected(session, auth_settings):
    with pytest.raises(Unauthenticated, match="Missing"):
        await AuthService(session, auth_settings).authenticate(None)


@pytest.mark.asyncio
async def test_expired_token_is_rejected(session, make_user, auth_settings):
    user = await make_user()
    token = issue_token(user.id, auth_settings, expires_in=timedelta(seconds=-5))

    with pytest.raises(Unauthenticated, match="expired"):
        await AuthService(session, auth_settings).authenticate(token)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "token",
    [
        "not-a-jwt",
        jwt.encode({"sub": "1", "exp": 4102444800}, "some-other-secret-value-here", algorithm="HS256"),
    ],
)
async def test_forged_or_garbage_tokens_are_rejected(session, auth_settings, token):
    with pytest.raises(Unauthenticated):
        await AuthService(session, auth_settings).authenticate(token)


@pytest.mark.asyncio
async def test_wrong_audience_is_rejected(session, make_user, auth_settings):
    user = await make_user()
    other = AdmissionSettings(auth=AuthSettings(jwt_secret=SECRET, audience="elsewhere", issuer="tests"))

    with pytest.raises(Unauthenticated):
        await AuthService(session, auth_settings).authenticate(issue_token(user.id, other))


@pytest.mark.asyncio
async def test_non_numeric_subject_is_rejected(session, auth_settings):
    token = jwt.encode(
        {"sub": "alice", "exp": 4102444800, "aud": "admission", "iss": "tests"},
        SECRET,
        algorithm="HS256",
    )
    with pytest.raises(Unauthenticated):
        AuthService(session, auth_settings).decode_user_id(token)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["blocked", "deleted"])
async def test_inactive_users_cannot_authenticate(session, make_user, auth_settings, status):
    user = await make_user(status=status)
    with pytest.raises(Unauthenticated):
        await AuthService(session, auth_settings).authenticate(issue_token(user.id, auth_settings))


@pytest.mark.asyncio
async def test_context_for_unknown_user(session, auth_settings):
    with pytest.raises(NotFound):
        await AuthService(session, auth_settings).context_for(999)
