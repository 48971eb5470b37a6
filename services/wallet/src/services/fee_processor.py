"""Recurring wallet fee processing.

Two entry points share one core: ``process_one`` for an on-demand charge of
a single wallet and ``process_all_due`` for the scheduled pass over every
due wallet. Both commit through ``WalletStore.compare_and_advance``, so a
wallet is charged at most once per due period no matter how the two
overlap.

At most one period is charged per call. A wallet several periods behind
becomes due again straight away and is picked up by the next pass.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from config import FEE_BATCH_CONCURRENCY
from errors import ConfigurationError, ConflictError, NotFoundError, WalletFeeError
from services.monetary_policy import advance_due_date, calc_fee, days_remaining
from services.reporter import BatchReporter, BatchSummary, FeeOutcome, FeeStatus
from services.valuation import Valuation, get_current_valuation
from services.wallet_store import WalletSnapshot, WalletStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FeeStatusReport:
    user_id: int
    fee_amount: Decimal  # base currency
    fee_currency: str
    fee_period_days: int
    next_fee_due_at: datetime
    last_processed_at: Optional[datetime]
    days_remaining: int
    is_due: bool
    can_afford: bool


class FeeProcessor:
    def __init__(
        self,
        store: WalletStore,
        valuation_provider: Optional[Callable[[], Awaitable[Valuation]]] = None,
        clock: Callable[[], datetime] = _utcnow,
        concurrency: int = FEE_BATCH_CONCURRENCY,
    ):
        self.store = store
        self.valuation_provider = valuation_provider or self._read_valuation
        self.clock = clock
        self.concurrency = max(1, concurrency)

    async def _read_valuation(self) -> Valuation:
        return await self.store.read(get_current_valuation)

    async def _fee_for(self, wallet: WalletSnapshot) -> Decimal:
        """Fee owed for one period, in base currency."""
        if wallet.fee_currency != "TOKEN":
            return calc_fee(wallet.fee_amount, wallet.fee_currency)
        valuation = await self.valuation_provider()
        if valuation.is_fallback:
            raise ConfigurationError("Token price unavailable; refusing to convert fee at fallback price")
        return calc_fee(wallet.fee_amount, "TOKEN", valuation.current_price)

    # ── Single wallet ───────────────────────────────────────────

    async def process_one(self, user_id: int) -> FeeOutcome:
        """Charge the wallet of ``user_id`` if its fee is due.

        Raises:
            NotFoundError: no wallet for ``user_id``
            StorageError: persistence failed; the wallet is unchanged
            ConfigurationError: a token-denominated fee cannot be priced
        """
        wallet = await self.store.get(user_id)
        if wallet is None:
            raise NotFoundError(f"Wallet not found for user {user_id}")
        return await self._process_wallet(wallet, self.clock())

    async def _process_wallet(self, wallet: WalletSnapshot, now: datetime) -> FeeOutcome:
        if not wallet.is_due(now):
            return FeeOutcome(
                user_id=wallet.user_id,
                status=FeeStatus.SKIPPED_NOT_DUE,
                new_balance=wallet.base_balance,
                next_fee_due_at=wallet.next_fee_due_at,
            )

        amount = await self._fee_for(wallet)
        if wallet.base_balance < amount:
            logger.info(
                "Wallet fee skipped user=%d: balance %s < fee %s",
                wallet.user_id, wallet.base_balance, amount,
            )
            return FeeOutcome(
                user_id=wallet.user_id,
                status=FeeStatus.SKIPPED_INSUFFICIENT_BALANCE,
                amount=amount,
                new_balance=wallet.base_balance,
                next_fee_due_at=wallet.next_fee_due_at,
            )

        try:
            new_balance = await self.store.compare_and_advance(wallet, amount, now)
        except ConflictError as e:
            logger.info("Wallet fee conflict user=%d: %s", wallet.user_id, e.reason)
            return await self._resolve_conflict(wallet, amount)

        return FeeOutcome(
            user_id=wallet.user_id,
            status=FeeStatus.CHARGED,
            amount=amount,
            new_balance=new_balance,
            next_fee_due_at=advance_due_date(wallet.next_fee_due_at, wallet.fee_period_days),
        )

    async def _resolve_conflict(self, wallet: WalletSnapshot, amount: Decimal) -> FeeOutcome:
        """Classify a lost compare-and-advance.

        If the due date still matches, the balance guard failed (a
        concurrent withdrawal); otherwise another run already charged
        this period.
        """
        current = await self.store.get(wallet.user_id) or wallet
        if current.next_fee_due_at == wallet.next_fee_due_at and current.base_balance < amount:
            status = FeeStatus.SKIPPED_INSUFFICIENT_BALANCE
        else:
            status = FeeStatus.SKIPPED_NOT_DUE
        return FeeOutcome(
            user_id=wallet.user_id,
            status=status,
            amount=amount if status == FeeStatus.SKIPPED_INSUFFICIENT_BALANCE else Decimal(0),
            new_balance=current.base_balance,
            next_fee_due_at=current.next_fee_due_at,
        )

    # ── Batch ───────────────────────────────────────────────────

    async def _process_isolated(self, wallet: WalletSnapshot, now: datetime) -> FeeOutcome:
        """Process one wallet of a batch; failures become FAILED outcomes."""
        try:
            return await self._process_wallet(wallet, now)
        except WalletFeeError as e:
            logger.warning("Wallet fee failed user=%d: %s", wallet.user_id, e)
            return FeeOutcome(
                user_id=wallet.user_id,
                status=FeeStatus.FAILED,
                new_balance=wallet.base_balance,
                next_fee_due_at=wallet.next_fee_due_at,
                error=e.reason,
                retryable=e.retryable,
            )
        except Exception as e:
            logger.exception("Wallet fee crashed user=%d", wallet.user_id)
            return FeeOutcome(
                user_id=wallet.user_id,
                status=FeeStatus.FAILED,
                new_balance=wallet.base_balance,
                next_fee_due_at=wallet.next_fee_due_at,
                error=str(e) or e.__class__.__name__,
            )

    async def process_all_due(self, cancel_event: Optional[asyncio.Event] = None) -> BatchSummary:
        """Charge every wallet whose fee is due now.

        Wallets run concurrently up to ``concurrency`` at a time. Setting
        ``cancel_event`` stops further wallets from starting; charges
        already committed stay committed and the summary is marked partial.
        """
        now = self.clock()
        reporter = BatchReporter(clock=self.clock)
        due = await self.store.list_due(now)
        logger.info("Wallet fee batch: %d due wallets", len(due))

        semaphore = asyncio.Semaphore(self.concurrency)
        cancelled = False

        async def _run(wallet: WalletSnapshot) -> None:
            nonlocal cancelled
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    return
                reporter.add(await self._process_isolated(wallet, now))

        await asyncio.gather(*(_run(w) for w in due))

        summary = reporter.finish(partial=cancelled)
        logger.info(
            "Wallet fee batch complete: %d charged, %d skipped, %d failed, %s collected%s",
            summary.charged, summary.skipped, summary.failed,
            summary.total_fees_collected, " (partial)" if summary.partial else "",
        )
        return summary

    # ── Status ──────────────────────────────────────────────────

    async def fee_status(self, user_id: int) -> FeeStatusReport:
        wallet = await self.store.get(user_id)
        if wallet is None:
            raise NotFoundError(f"Wallet not found for user {user_id}")
        now = self.clock()
        amount = await self._fee_for(wallet)
        return FeeStatusReport(
            user_id=wallet.user_id,
            fee_amount=amount,
            fee_currency=wallet.fee_currency,
            fee_period_days=wallet.fee_period_days,
            next_fee_due_at=wallet.next_fee_due_at,
            last_processed_at=wallet.last_processed_at,
            days_remaining=days_remaining(wallet.next_fee_due_at, now),
            is_due=wallet.is_due(now),
            can_afford=wallet.base_balance >= amount,
        )
