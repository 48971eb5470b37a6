"""Per-wallet fee outcomes and their aggregation into a batch summary."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional


class FeeStatus(str, Enum):
    CHARGED = "CHARGED"
    SKIPPED_NOT_DUE = "SKIPPED_NOT_DUE"
    SKIPPED_INSUFFICIENT_BALANCE = "SKIPPED_INSUFFICIENT_BALANCE"
    FAILED = "FAILED"

    @property
    def is_skip(self) -> bool:
        return self in (FeeStatus.SKIPPED_NOT_DUE, FeeStatus.SKIPPED_INSUFFICIENT_BALANCE)


@dataclass
class FeeOutcome:
    user_id: int
    status: FeeStatus
    amount: Decimal = Decimal(0)
    new_balance: Optional[Decimal] = None
    next_fee_due_at: Optional[datetime] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass
class BatchSummary:
    charged: int
    skipped: int
    failed: int
    total_fees_collected: Decimal
    outcomes: List[FeeOutcome]
    started_at: datetime
    completed_at: datetime
    total: int
    partial: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BatchReporter:
    clock: Callable[[], datetime] = _utcnow
    outcomes: List[FeeOutcome] = field(default_factory=list)
    started_at: Optional[datetime] = None

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = self.clock()

    def add(self, outcome: FeeOutcome) -> None:
        self.outcomes.append(outcome)

    def finish(self, partial: bool = False) -> BatchSummary:
        charged = [o for o in self.outcomes if o.status == FeeStatus.CHARGED]
        return BatchSummary(
            charged=len(charged),
            skipped=sum(1 for o in self.outcomes if o.status.is_skip),
            failed=sum(1 for o in self.outcomes if o.status == FeeStatus.FAILED),
            total_fees_collected=sum((o.amount for o in charged), Decimal(0)),
            outcomes=list(self.outcomes),
            total=len(self.outcomes),
            started_at=self.started_at,
            completed_at=self.clock(),
            partial=partial,
        )
