"""Shared pytest fixtures for database-backed service tests."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from admission.db.base import Base
from admission.db.models.core import User, UserSubscription, Workspace
from admission.utils.datetime import month_bounds, utc_now
from tests.factories import build_tier, enable_sqlite_savepoints


class _AsyncSessionWrapper:
    def __init__(self, sync_session) -> None:
        self._sync = sync_session

    async def execute(self, *args, **kwargs):
        return self._sync.execute(*args, **kwargs)

    async def get(self, *args, **kwargs):
        return self._sync.get(*args, **kwargs)

    def add(self, obj) -> None:
        self._sync.add(obj)

    def add_all(self, objs) -> None:
        self._sync.add_all(objs)

    async def flush(self) -> None:
        self._sync.flush()

    async def commit(self) -> None:
        self._sync.commit()

    async def rollback(self) -> None:
        self._sync.rollback()

    async def refresh(self, obj) -> None:
        self._sync.refresh(obj)

    @asynccontextmanager
    async def begin_nested(self):
        with self._sync.begin_nested():
            yield

    async def close(self) -> None:
        self._sync.close()


@pytest_asyncio.fixture
async def session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    sync_session = SessionLocal()
    try:
        yield _AsyncSessionWrapper(sync_session)
    finally:
        sync_session.close()
        engine.dispose()


@pytest.fixture
def settings():
    return SimpleNamespace(
        upgrade_path="/settings/billing",
        queue=SimpleNamespace(item_ttl_hours=24, max_retries=3, default_output_token_estimate=100),
        trial=SimpleNamespace(default_trial_days=14),
    )


@pytest.fixture
def make_user(session):
    counter = {"value": 0}

    async def _make(role: str = "user", status: str = "active") -> User:
        counter["value"] += 1
        user = User(email=f"user{counter['value']}@example.com", role=role, status=status)
        session.add(user)
        await session.flush()
        return user

    return _make


@pytest.fixture
def subscribe(session):
    """Attach an active subscription on a fresh tier built from ``tier_overrides``."""

    async def _subscribe(user: User, *, trial: bool = False, **tier_overrides) -> UserSubscription:
        tier = build_tier(code=f"T{user.id}", **tier_overrides)
        session.add(tier)
        await session.flush()
        now = utc_now()
        period_start, period_end = month_bounds(now)
        subscription = UserSubscription(
            user_id=user.id,
            tier_id=tier.id,
            status="active",
            is_trial=trial,
            trial_ends_at=now + timedelta(days=14) if trial else None,
            current_period_start=period_start,
            current_period_end=period_end,
        )
        subscription.tier = tier
        session.add(subscription)
        await session.flush()
        return subscription

    return _subscribe


@pytest.fixture
def make_workspace(session):
    async def _make(owner: User, *, suspended: bool = False) -> Workspace:
        workspace = Workspace(owner_id=owner.id, name=f"ws-{owner.id}", is_suspended=suspended)
        session.add(workspace)
        await session.flush()
        return workspace

    return _make
