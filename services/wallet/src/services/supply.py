"""Supply ledger — fixed user-facing supply and how much of it is consumed.

The ledger is a single row. Issuance paths lock it with
SELECT ... FOR UPDATE; valuation reads take a plain snapshot.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import SupplyLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SupplySnapshot:
    total_supply: Decimal
    consumed_supply: Decimal


async def get_snapshot(db: AsyncSession) -> Optional[SupplySnapshot]:
    """Read the current ledger row, or None if it was never seeded."""
    result = await db.execute(select(SupplyLedger).order_by(SupplyLedger.id).limit(1))
    row = result.scalars().first()
    if row is None:
        return None
    return SupplySnapshot(
        total_supply=Decimal(row.total_supply),
        consumed_supply=Decimal(row.consumed_supply or 0),
    )


async def ensure_ledger(db: AsyncSession, total_supply: Decimal) -> SupplyLedger:
    """Create the singleton ledger row if it doesn't exist."""
    result = await db.execute(select(SupplyLedger).order_by(SupplyLedger.id).limit(1))
    ledger = result.scalars().first()
    if not ledger:
        ledger = SupplyLedger(total_supply=total_supply, consumed_supply=0)
        db.add(ledger)
        await db.flush()
        logger.info("Supply ledger seeded: total_supply=%s", total_supply)
    return ledger


async def record_issuance(db: AsyncSession, amount: Decimal) -> SupplySnapshot:
    """Consume ``amount`` of the fixed supply for a token issuance.

    Raises:
        ValueError: non-positive amount, missing ledger, or supply exhausted
    """
    if amount <= 0:
        raise ValueError("Issuance amount must be positive")

    result = await db.execute(
        select(SupplyLedger).order_by(SupplyLedger.id).limit(1).with_for_update()
    )
    ledger = result.scalars().first()
    if not ledger:
        raise ValueError("Supply ledger not initialized")

    consumed = Decimal(ledger.consumed_supply or 0) + amount
    if consumed > Decimal(ledger.total_supply):
        raise ValueError("Insufficient remaining supply")

    ledger.consumed_supply = consumed
    await db.flush()
    logger.info("Issuance: amount=%s, consumed=%s/%s", amount, consumed, ledger.total_supply)
    return SupplySnapshot(total_supply=Decimal(ledger.total_supply), consumed_supply=consumed)
