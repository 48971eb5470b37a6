"""Monetary policy logic — token valuation curve and wallet fee schedule.

Centralises all pricing and fee parameters so they can be tuned in one place.
"""

import math
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

# ── Valuation curve ─────────────────────────────────────────────
INFLATION_SLOPE = Decimal("1.5")     # factor = 1 + slope * usage
PRICE_DISPLAY_PLACES = 6
FALLBACK_PRICE = Decimal("0.0035")   # served when the supply ledger is unreachable

# ── Wallet fee ──────────────────────────────────────────────────
DEFAULT_FEE_AMOUNT = Decimal("2")    # base currency per period
DEFAULT_FEE_PERIOD_DAYS = 30
FREE_TRIAL_DAYS = 30                 # first fee falls due this long after signup
FEE_CURRENCIES = ("BASE", "TOKEN")

# Stored precision of money columns
MONEY_QUANT = Decimal("0.00000001")

_ZERO = Decimal(0)
_ONE = Decimal(1)


def clamp_usage(usage: Decimal) -> Decimal:
    """Clamp a usage ratio into [0, 1]."""
    return min(max(usage, _ZERO), _ONE)


def inflation_factor(usage: Decimal) -> Decimal:
    """Price multiplier for a usage ratio; monotonic, 1 at zero usage."""
    return _ONE + INFLATION_SLOPE * clamp_usage(Decimal(usage))


def round_price(price: Decimal) -> Decimal:
    """Display rounding for prices (6 fractional digits, half-up)."""
    return price.quantize(Decimal(1).scaleb(-PRICE_DISPLAY_PLACES), rounding=ROUND_HALF_UP)


def to_money(amount: Decimal) -> Decimal:
    """Quantize an amount to the stored precision (half-up)."""
    return Decimal(amount).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def calc_fee(fee_amount: Decimal, fee_currency: str, current_price: Optional[Decimal] = None) -> Decimal:
    """Fee owed in base currency for one period.

    TOKEN-denominated fees are converted at the unrounded current price;
    only the product is quantized to stored precision.
    """
    if fee_currency == "TOKEN":
        if current_price is None:
            raise ValueError("Token-denominated fee requires a current price")
        return to_money(fee_amount * current_price)
    return to_money(fee_amount)


def first_due_date(created_at: datetime) -> datetime:
    """Due date of the first fee for a wallet opened at ``created_at``."""
    return created_at + timedelta(days=FREE_TRIAL_DAYS)


def advance_due_date(due_at: datetime, period_days: int) -> datetime:
    """Next due date, one period after the previous one (not after now)."""
    return due_at + timedelta(days=period_days)


def days_remaining(due_at: datetime, now: datetime) -> int:
    """Whole days (rounded up) until ``due_at``; 0 once due."""
    seconds = (due_at - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))
