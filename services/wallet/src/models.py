from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, Numeric,
    CheckConstraint, ForeignKey, Index,
)
from sqlalchemy.sql import func
from database import Base

# 8 fractional digits for every money-like column
MONEY = Numeric(28, 8, asdecimal=True)


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("base_balance >= 0", name="ck_wallets_base_balance_non_negative"),
        CheckConstraint("token_balance >= 0", name="ck_wallets_token_balance_non_negative"),
        CheckConstraint("fee_amount >= 0", name="ck_wallets_fee_amount_non_negative"),
        CheckConstraint("fee_period_days > 0", name="ck_wallets_fee_period_positive"),
        Index("ix_wallets_next_fee_due_at", "next_fee_due_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, nullable=False, index=True)
    base_balance = Column(MONEY, default=0, nullable=False)
    token_balance = Column(MONEY, default=0, nullable=False)
    fee_amount = Column(MONEY, nullable=False)
    fee_currency = Column(String(10), default="BASE", nullable=False)  # BASE / TOKEN
    fee_period_days = Column(Integer, nullable=False)
    next_fee_due_at = Column(DateTime(timezone=True), nullable=False)
    last_processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_wallet_created", "wallet_id", "created_at"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False)
    amount = Column(MONEY, nullable=False)  # negative=debit
    balance_after = Column(MONEY, nullable=False)
    entry_type = Column(String(50), nullable=False)  # DEBIT / CREDIT
    transaction_type = Column(String(50), nullable=False)  # WALLET_FEE / DEPOSIT
    description = Column(Text, nullable=True)
    reference_id = Column(String(200), unique=True, nullable=True)  # idempotency key
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SupplyLedger(Base):
    __tablename__ = "supply_ledger"
    __table_args__ = (
        CheckConstraint(
            "consumed_supply >= 0 AND consumed_supply <= total_supply",
            name="ck_supply_consumed_within_total",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    total_supply = Column(MONEY, nullable=False)
    consumed_supply = Column(MONEY, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
