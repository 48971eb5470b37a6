"""Supply-based token valuation.

The price is recomputed from a fresh supply ledger snapshot on every call;
nothing here is cached between requests.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import TOKEN_BASE_PRICE
from errors import ConfigurationError
from services.monetary_policy import (
    FALLBACK_PRICE,
    clamp_usage,
    inflation_factor,
    round_price,
)
from services.supply import SupplySnapshot, get_snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Valuation:
    base_price: Decimal
    inflation_factor: Decimal
    current_price: Decimal  # unrounded; fee conversion uses this
    total_supply: Decimal
    consumed_supply: Decimal
    remaining_supply: Decimal
    usage_percentage: Decimal  # ratio in [0, 1]
    is_fallback: bool = False

    @property
    def display_price(self) -> Decimal:
        return round_price(self.current_price)


def fallback_valuation() -> Valuation:
    """Constant valuation served when the ledger is missing or unusable."""
    return Valuation(
        base_price=FALLBACK_PRICE,
        inflation_factor=Decimal(1),
        current_price=FALLBACK_PRICE,
        total_supply=Decimal(0),
        consumed_supply=Decimal(0),
        remaining_supply=Decimal(0),
        usage_percentage=Decimal(0),
        is_fallback=True,
    )


def compute_valuation(
    total_supply: Decimal,
    consumed_supply: Decimal,
    base_price: Decimal = TOKEN_BASE_PRICE,
) -> Valuation:
    """Derive a valuation from supply figures.

    Raises:
        ConfigurationError: total supply is zero, negative or unset
    """
    if total_supply is None or total_supply <= 0:
        raise ConfigurationError(f"Invalid total supply: {total_supply}")

    consumed = Decimal(consumed_supply or 0)
    usage = clamp_usage(consumed / total_supply)
    factor = inflation_factor(usage)
    return Valuation(
        base_price=base_price,
        inflation_factor=factor,
        current_price=base_price * factor,
        total_supply=total_supply,
        consumed_supply=consumed,
        remaining_supply=max(total_supply - consumed, Decimal(0)),
        usage_percentage=usage,
    )


def valuation_from_snapshot(
    snapshot: Optional[SupplySnapshot],
    base_price: Decimal = TOKEN_BASE_PRICE,
) -> Valuation:
    if snapshot is None:
        logger.warning("Supply ledger not initialized, using fallback valuation")
        return fallback_valuation()
    try:
        return compute_valuation(snapshot.total_supply, snapshot.consumed_supply, base_price)
    except ConfigurationError as e:
        logger.warning("Using fallback valuation: %s", e)
        return fallback_valuation()


async def get_current_valuation(db: AsyncSession) -> Valuation:
    """Valuation for the ledger state as of this read."""
    return valuation_from_snapshot(await get_snapshot(db))
