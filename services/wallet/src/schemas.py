from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal

from services.monetary_policy import DEFAULT_FEE_AMOUNT, DEFAULT_FEE_PERIOD_DAYS
from services.reporter import FeeStatus


# Wallet
class WalletCreate(BaseModel):
    user_id: int
    base_balance: Decimal = Field(default=Decimal(0), ge=0)
    token_balance: Decimal = Field(default=Decimal(0), ge=0)
    fee_amount: Decimal = Field(default=DEFAULT_FEE_AMOUNT, ge=0)
    fee_currency: str = Field(default="BASE", pattern="^(BASE|TOKEN)$")
    fee_period_days: int = Field(default=DEFAULT_FEE_PERIOD_DAYS, gt=0)
    next_fee_due_at: Optional[datetime] = None  # defaults to end of free trial

class WalletResponse(BaseModel):
    user_id: int
    base_balance: Decimal
    token_balance: Decimal
    fee_amount: Decimal
    fee_currency: str
    fee_period_days: int
    next_fee_due_at: datetime
    last_processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Ledger
class LedgerEntryResponse(BaseModel):
    id: int
    wallet_id: int
    amount: Decimal
    balance_after: Decimal
    entry_type: str
    transaction_type: str
    description: Optional[str] = None
    reference_id: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Fees
class FeeOutcomeResponse(BaseModel):
    user_id: int
    status: FeeStatus
    amount: Decimal
    new_balance: Optional[Decimal] = None
    next_fee_due_at: Optional[datetime] = None
    error: Optional[str] = None
    retryable: bool = False

    class Config:
        from_attributes = True


class BatchSummaryResponse(BaseModel):
    charged: int
    skipped: int
    failed: int
    total: int
    total_fees_collected: Decimal
    outcomes: List[FeeOutcomeResponse]
    started_at: datetime
    completed_at: datetime
    partial: bool

    class Config:
        from_attributes = True


class FeeStatusResponse(BaseModel):
    user_id: int
    fee_amount: Decimal
    fee_currency: str
    fee_period_days: int
    next_fee_due_at: datetime
    last_processed_at: Optional[datetime] = None
    days_remaining: int
    is_due: bool
    can_afford: bool

    class Config:
        from_attributes = True


# Supply / valuation
class ValuationResponse(BaseModel):
    total_supply: Decimal
    consumed_supply: Decimal
    remaining_supply: Decimal
    usage_percentage: Decimal  # ratio in [0, 1], unrounded
    base_price: Decimal
    current_price: Decimal  # rounded to 6 places
    inflation_factor: Decimal  # unrounded
    is_fallback: bool
