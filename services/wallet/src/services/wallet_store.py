"""Wallet store — balances and fee schedule, keyed by user id.

``compare_and_advance`` is the only code path that debits a fee or moves
``next_fee_due_at``. It is a single conditional UPDATE keyed on the due
date read at decision time, committed together with its ledger entry.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import STORAGE_TIMEOUT
from errors import ConflictError, NotFoundError, StorageError
from models import Wallet, LedgerEntry
from services.monetary_policy import (
    DEFAULT_FEE_AMOUNT,
    DEFAULT_FEE_PERIOD_DAYS,
    FEE_CURRENCIES,
    advance_due_date,
    first_due_date,
    to_money,
)

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalise aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class WalletSnapshot:
    id: int
    user_id: int
    base_balance: Decimal
    token_balance: Decimal
    fee_amount: Decimal
    fee_currency: str
    fee_period_days: int
    next_fee_due_at: datetime
    last_processed_at: Optional[datetime]

    @classmethod
    def from_row(cls, w: Wallet) -> "WalletSnapshot":
        return cls(
            id=w.id,
            user_id=w.user_id,
            base_balance=Decimal(w.base_balance),
            token_balance=Decimal(w.token_balance),
            fee_amount=Decimal(w.fee_amount),
            fee_currency=w.fee_currency,
            fee_period_days=w.fee_period_days,
            next_fee_due_at=as_utc(w.next_fee_due_at),
            last_processed_at=as_utc(w.last_processed_at),
        )

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_fee_due_at


def fee_reference(user_id: int, due_at: datetime) -> str:
    """Idempotency key for the charge of one due period."""
    return f"wallet-fee:{user_id}:{due_at.isoformat()}"


class WalletStore:
    def __init__(self, session_factory: async_sessionmaker, timeout: float = STORAGE_TIMEOUT):
        self.session_factory = session_factory
        self.timeout = timeout

    async def _guarded(self, coro):
        """Run a storage coroutine under the timeout, translating driver errors."""
        try:
            return await asyncio.wait_for(coro, self.timeout)
        except asyncio.TimeoutError:
            raise StorageError(f"Storage operation timed out after {self.timeout}s")
        except IntegrityError as e:
            raise ConflictError(f"Constraint violated: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    # ── Reads ───────────────────────────────────────────────────

    async def read(self, fn):
        """Run ``fn(db)`` in a fresh session under the storage guard."""
        async def _read():
            async with self.session_factory() as db:
                return await fn(db)

        return await self._guarded(_read())

    async def get(self, user_id: int) -> Optional[WalletSnapshot]:
        async def _get():
            async with self.session_factory() as db:
                result = await db.execute(select(Wallet).filter(Wallet.user_id == user_id))
                w = result.scalars().first()
                return WalletSnapshot.from_row(w) if w else None

        return await self._guarded(_get())

    async def list_due(self, now: datetime) -> List[WalletSnapshot]:
        """All wallets whose fee is due at ``now``, oldest due date first."""
        async def _list():
            async with self.session_factory() as db:
                result = await db.execute(
                    select(Wallet)
                    .filter(Wallet.next_fee_due_at <= now)
                    .order_by(Wallet.next_fee_due_at, Wallet.id)
                )
                return [WalletSnapshot.from_row(w) for w in result.scalars().all()]

        return await self._guarded(_list())

    async def history(self, user_id: int, limit: int = 50, offset: int = 0) -> List[LedgerEntry]:
        async def _history():
            async with self.session_factory() as db:
                result = await db.execute(select(Wallet.id).filter(Wallet.user_id == user_id))
                wallet_id = result.scalar()
                if wallet_id is None:
                    raise NotFoundError(f"Wallet not found for user {user_id}")
                entries = await db.execute(
                    select(LedgerEntry)
                    .filter(LedgerEntry.wallet_id == wallet_id)
                    .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
                return list(entries.scalars().all())

        return await self._guarded(_history())

    # ── Writes ──────────────────────────────────────────────────

    async def create(
        self,
        user_id: int,
        base_balance: Decimal = Decimal(0),
        token_balance: Decimal = Decimal(0),
        fee_amount: Decimal = DEFAULT_FEE_AMOUNT,
        fee_currency: str = "BASE",
        fee_period_days: int = DEFAULT_FEE_PERIOD_DAYS,
        next_fee_due_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> WalletSnapshot:
        """Get the wallet for ``user_id``, creating it if it doesn't exist.

        A new wallet's first fee falls due after the free trial unless
        ``next_fee_due_at`` is given. An existing wallet is returned as-is.
        """
        if fee_currency not in FEE_CURRENCIES:
            raise ValueError(f"Unknown fee currency: {fee_currency}")
        if fee_period_days <= 0:
            raise ValueError("Fee period must be positive")
        if base_balance < 0 or token_balance < 0 or fee_amount < 0:
            raise ValueError("Balances and fee amount must not be negative")

        now = as_utc(now) or datetime.now(timezone.utc)
        due_at = as_utc(next_fee_due_at) or first_due_date(now)

        async def _create():
            async with self.session_factory() as db:
                result = await db.execute(select(Wallet).filter(Wallet.user_id == user_id))
                w = result.scalars().first()
                if w:
                    return WalletSnapshot.from_row(w)
                w = Wallet(
                    user_id=user_id,
                    base_balance=to_money(base_balance),
                    token_balance=to_money(token_balance),
                    fee_amount=to_money(fee_amount),
                    fee_currency=fee_currency,
                    fee_period_days=fee_period_days,
                    next_fee_due_at=due_at,
                )
                db.add(w)
                try:
                    await db.commit()
                except IntegrityError:
                    # Lost a concurrent create for the same user; return the winner's row
                    await db.rollback()
                    result = await db.execute(select(Wallet).filter(Wallet.user_id == user_id))
                    existing = result.scalars().first()
                    if existing is None:
                        raise
                    return WalletSnapshot.from_row(existing)
                await db.refresh(w)
                logger.info("Wallet created: user=%d, first fee due %s", user_id, due_at.isoformat())
                return WalletSnapshot.from_row(w)

        return await self._guarded(_create())

    async def credit(self, user_id: int, amount: Decimal, description: Optional[str] = None) -> Decimal:
        """Deposit into the base balance. Leaves the fee schedule untouched.

        Returns:
            the new base balance
        """
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        amount = to_money(amount)

        async def _credit():
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        update(Wallet)
                        .where(Wallet.user_id == user_id)
                        .values(base_balance=Wallet.base_balance + amount)
                        .returning(Wallet.id, Wallet.base_balance)
                    )
                    row = result.first()
                    if row is None:
                        raise NotFoundError(f"Wallet not found for user {user_id}")
                    balance_after = Decimal(row.base_balance)
                    db.add(LedgerEntry(
                        wallet_id=row.id,
                        amount=amount,
                        balance_after=balance_after,
                        entry_type="CREDIT",
                        transaction_type="DEPOSIT",
                        description=description,
                    ))
                return balance_after

        return await self._guarded(_credit())

    async def compare_and_advance(
        self, wallet: WalletSnapshot, amount: Decimal, now: datetime
    ) -> Decimal:
        """Debit ``amount`` and advance the due date by one period, atomically.

        The update only applies while the stored due date still equals
        ``wallet.next_fee_due_at`` and the balance still covers ``amount``.

        Returns:
            the new base balance

        Raises:
            ConflictError: the due date or balance changed since ``wallet`` was read
            StorageError: persistence failed or timed out; nothing was applied
        """
        new_due = advance_due_date(wallet.next_fee_due_at, wallet.fee_period_days)

        async def _apply():
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        update(Wallet)
                        .where(
                            Wallet.id == wallet.id,
                            Wallet.next_fee_due_at == wallet.next_fee_due_at,
                            Wallet.base_balance >= amount,
                        )
                        .values(
                            base_balance=Wallet.base_balance - amount,
                            next_fee_due_at=new_due,
                            last_processed_at=now,
                        )
                        .returning(Wallet.base_balance)
                    )
                    row = result.first()
                    if row is None:
                        raise ConflictError(
                            f"Wallet {wallet.user_id} changed since due date {wallet.next_fee_due_at.isoformat()} was read"
                        )
                    balance_after = Decimal(row.base_balance)
                    await self._record_fee(db, wallet, amount, balance_after)
                return balance_after

        balance_after = await self._guarded(_apply())
        logger.info(
            "Wallet fee charged: user=%d, amount=%s, balance=%s, next due %s",
            wallet.user_id, amount, balance_after, new_due.isoformat(),
        )
        return balance_after

    async def _record_fee(
        self, db: AsyncSession, wallet: WalletSnapshot, amount: Decimal, balance_after: Decimal
    ) -> None:
        db.add(LedgerEntry(
            wallet_id=wallet.id,
            amount=-amount,
            balance_after=balance_after,
            entry_type="DEBIT",
            transaction_type="WALLET_FEE",
            description=f"Wallet fee ({wallet.fee_period_days}-day period)",
            reference_id=fee_reference(wallet.user_id, wallet.next_fee_due_at),
        ))
        await db.flush()
