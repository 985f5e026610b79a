"""Locked wallet reads and audited debit/credit operations."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.db.models.core import Listener, Transaction, User
from callcore.domain.models import TransactionType
from callcore.logging import logger
from callcore.services.exceptions import InsufficientBalance, ListenerNotFound, UserNotFound

CENT = Decimal("0.01")


def to_money(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class WalletStore:
    """Wallet mutations scoped to the caller's transaction.

    Every method flushes but never commits; the unit of work that owns the
    session decides when the debit, credit and audit rows become visible.
    """

    def __init__(self, session: AsyncSession, currency: str = "INR") -> None:
        self.session = session
        self.currency = currency

    async def lock_user(self, user_id: int) -> User:
        stmt = (
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = (await self.session.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise UserNotFound(f"User {user_id} not found.")
        return user

    async def lock_listener(self, listener_id: int) -> Listener:
        stmt = (
            select(Listener)
            .where(Listener.id == listener_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        listener = (await self.session.execute(stmt)).scalar_one_or_none()
        if listener is None:
            raise ListenerNotFound(f"Listener {listener_id} not found.")
        return listener

    def ensure_can_debit(self, user: User, amount: Decimal) -> Decimal:
        """Return the post-debit balance or raise without touching the row."""

        amount = to_money(amount)
        balance = to_money(user.wallet_balance)
        remaining = balance - amount
        if remaining < 0:
            raise InsufficientBalance(
                f"Balance {balance} is not enough to cover {amount}."
            )
        return remaining

    async def debit(
        self,
        user: User,
        amount: Decimal,
        *,
        description: str,
        call_id: int | None = None,
    ) -> Transaction:
        """Debit a wallet row previously returned by :meth:`lock_user`."""

        amount = to_money(amount)
        user.wallet_balance = self.ensure_can_debit(user, amount)
        record = self._record(user.id, TransactionType.DEBIT, amount, description, call_id)
        await self.session.flush()
        logger.info(
            "wallet_debited",
            user_id=user.id,
            amount=str(amount),
            balance=str(user.wallet_balance),
            call_id=call_id,
        )
        return record

    async def credit_listener(
        self,
        listener: Listener,
        amount: Decimal,
        *,
        description: str,
        call_id: int | None = None,
    ) -> Transaction:
        """Credit earnings to a listener row previously returned by :meth:`lock_listener`."""

        amount = to_money(amount)
        listener.wallet_balance = to_money(listener.wallet_balance) + amount
        listener.total_earning = to_money(listener.total_earning) + amount
        record = self._record(
            listener.user_id, TransactionType.CREDIT, amount, description, call_id
        )
        await self.session.flush()
        logger.info(
            "wallet_credited",
            listener_id=listener.id,
            amount=str(amount),
            balance=str(listener.wallet_balance),
            call_id=call_id,
        )
        return record

    def _record(
        self,
        user_id: int,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str,
        call_id: int | None,
    ) -> Transaction:
        record = Transaction(
            user_id=user_id,
            call_id=call_id,
            transaction_type=transaction_type,
            amount=amount,
            currency=self.currency,
            description=description,
            status="completed",
        )
        self.session.add(record)
        return record


__all__ = ["WalletStore", "to_money", "CENT"]
