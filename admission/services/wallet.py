"""Purchased credit pools per user."""

from __future__ import annotations

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from admission.db.models.core import CreditTransaction, CreditWallet
from admission.domain.models import CreditBalances
from admission.domain.resources import CreditKind, CreditPool
from admission.logging import logger
from admission.services.exceptions import ValidationError


def _balance(pool: CreditPool):
    return getattr(CreditWallet, f"{pool.value}_balance")


def _reserved(pool: CreditPool):
    return getattr(CreditWallet, f"{pool.value}_reserved")


class CreditWalletService:
    """Credit balances only grow through ``top_up`` and only shrink through the ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: int, *, lock: bool = False) -> CreditWallet | None:
        stmt = (
            select(CreditWallet)
            .where(CreditWallet.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: int, *, lock: bool = False) -> CreditWallet:
        wallet = await self.get(user_id, lock=lock)
        if wallet is None:
            wallet = CreditWallet(
                user_id=user_id,
                tokens_balance=0,
                images_balance=0,
                videos_balance=0,
                tokens_reserved=0,
                images_reserved=0,
                videos_reserved=0,
            )
            self.session.add(wallet)
            await self.session.flush()
        return wallet

    async def balances(self, user_id: int) -> CreditBalances:
        """Credit still available to new requests (balance minus reservations)."""

        wallet = await self.get(user_id)
        if wallet is None:
            return CreditBalances(tokens=0, images=0, videos=0)
        return CreditBalances(
            **{
                pool.value: max(
                    0,
                    getattr(wallet, f"{pool.value}_balance") - getattr(wallet, f"{pool.value}_reserved"),
                )
                for pool in CreditPool
            }
        )

    async def top_up(
        self,
        user_id: int,
        kind: CreditKind | str,
        amount: int,
        *,
        reference: str | None = None,
    ) -> CreditBalances:
        kind = CreditKind(kind)
        if amount <= 0:
            raise ValidationError("Top-up amount must be positive.", details={"amount": amount})

        await self.get_or_create(user_id)
        values = {f"{pool.value}_balance": _balance(pool) + amount for pool in kind.pools()}
        stmt = update(CreditWallet).where(CreditWallet.user_id == user_id).values(**values)
        await self.session.execute(stmt)
        self.session.add(
            CreditTransaction(
                user_id=user_id,
                kind=kind.value,
                amount=amount,
                reason="purchase",
                reference=reference,
            )
        )
        await self.session.flush()
        logger.info("credits_topped_up", user_id=user_id, kind=kind.value, amount=amount)
        return await self.balances(user_id)

    async def reserve(self, user_id: int, pool: CreditPool, amount: int) -> bool:
        """Hold ``amount`` of available credit; False when the pool cannot cover it."""

        if amount <= 0:
            return True
        stmt = (
            update(CreditWallet)
            .where(
                CreditWallet.user_id == user_id,
                _balance(pool) - _reserved(pool) >= amount,
            )
            .values({_reserved(pool): _reserved(pool) + amount})
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def release(self, user_id: int, pool: CreditPool, amount: int) -> None:
        if amount <= 0:
            return
        column = _reserved(pool)
        stmt = (
            update(CreditWallet)
            .where(CreditWallet.user_id == user_id)
            .values({column: case((column >= amount, column - amount), else_=0)})
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def spend(self, user_id: int, pool: CreditPool, amount: int) -> int:
        """Deduct up to ``amount``; returns what was actually collected."""

        if amount <= 0:
            return 0
        wallet = await self.get(user_id, lock=True)
        available = getattr(wallet, f"{pool.value}_balance") if wallet else 0
        collected = min(available, amount)
        if collected < amount:
            # Admission should have prevented this path.
            logger.warning(
                "credit_shortfall",
                user_id=user_id,
                pool=pool.value,
                requested=amount,
                collected=collected,
            )
        if wallet is None or collected == 0:
            return collected

        setattr(wallet, f"{pool.value}_balance", available - collected)
        self.session.add(
            CreditTransaction(
                user_id=user_id,
                kind=pool.value,
                amount=-collected,
                reason="usage",
            )
        )
        await self.session.flush()
        return collected


__all__ = ["CreditWalletService"]
