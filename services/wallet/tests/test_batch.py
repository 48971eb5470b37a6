from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

from conftest import NOW
from errors import StorageError
from services.fee_processor import FeeProcessor
from services.reporter import FeeStatus
from services.wallet_store import WalletStore


def _seed(store: WalletStore, wallets: dict[int, tuple[str, int]]) -> None:
    """user_id -> (balance, days overdue; negative means not yet due)."""
    async def _create():
        for user_id, (balance, overdue) in wallets.items():
            await store.create(
                user_id,
                base_balance=Decimal(balance),
                fee_amount=Decimal(10),
                fee_period_days=30,
                next_fee_due_at=NOW - timedelta(days=overdue),
                now=NOW - timedelta(days=60),
            )

    asyncio.run(_create())


def _by_user(summary):
    return {o.user_id: o for o in summary.outcomes}


def test_batch_charges_only_due_wallets(store) -> None:
    _seed(store, {1: ("100", 1), 2: ("5", 2), 3: ("100", -3), 4: ("50", 0)})
    summary = asyncio.run(FeeProcessor(store, clock=lambda: NOW).process_all_due())

    outcomes = _by_user(summary)
    assert set(outcomes) == {1, 2, 4}
    assert outcomes[1].status == FeeStatus.CHARGED
    assert outcomes[2].status == FeeStatus.SKIPPED_INSUFFICIENT_BALANCE
    assert outcomes[4].status == FeeStatus.CHARGED
    assert (summary.charged, summary.skipped, summary.failed, summary.total) == (2, 1, 0, 3)
    assert summary.total_fees_collected == Decimal(20)
    assert not summary.partial
    assert asyncio.run(store.get(3)).base_balance == Decimal(100)


def test_batch_is_rerunnable(store) -> None:
    _seed(store, {1: ("100", 1), 2: ("100", 1)})
    processor = FeeProcessor(store, clock=lambda: NOW)

    async def scenario():
        return await processor.process_all_due(), await processor.process_all_due()

    first, second = asyncio.run(scenario())
    assert first.charged == 2
    assert second.total == 0
    assert asyncio.run(store.get(1)).base_balance == Decimal(90)


def test_one_failing_wallet_does_not_abort_batch(store) -> None:
    _seed(store, {1: ("100", 1), 2: ("100", 1), 3: ("100", 1)})

    class FlakyStore(WalletStore):
        async def compare_and_advance(self, wallet, amount, now):
            if wallet.user_id == 2:
                raise StorageError("connection reset")
            return await super().compare_and_advance(wallet, amount, now)

    flaky = FlakyStore(store.session_factory)
    summary = asyncio.run(FeeProcessor(flaky, clock=lambda: NOW).process_all_due())

    outcomes = _by_user(summary)
    assert outcomes[1].status == FeeStatus.CHARGED
    assert outcomes[3].status == FeeStatus.CHARGED
    assert outcomes[2].status == FeeStatus.FAILED
    assert outcomes[2].retryable
    assert outcomes[2].error == "connection reset"
    assert summary.failed == 1

    # Failed wallet stays due and is picked up by the next pass
    retry = asyncio.run(FeeProcessor(store, clock=lambda: NOW).process_all_due())
    assert [(o.user_id, o.status) for o in retry.outcomes] == [(2, FeeStatus.CHARGED)]


def test_unexpected_error_is_isolated(store) -> None:
    _seed(store, {1: ("100", 1), 2: ("100", 2)})

    class BuggyStore(WalletStore):
        async def compare_and_advance(self, wallet, amount, now):
            if wallet.user_id == 1:
                raise RuntimeError("boom")
            return await super().compare_and_advance(wallet, amount, now)

    summary = asyncio.run(FeeProcessor(BuggyStore(store.session_factory), clock=lambda: NOW).process_all_due())
    outcomes = _by_user(summary)
    assert outcomes[1].status == FeeStatus.FAILED
    assert not outcomes[1].retryable
    assert outcomes[2].status == FeeStatus.CHARGED


def test_concurrent_single_and_batch_charge_once(store) -> None:
    _seed(store, {1: ("100", 1)})
    processor = FeeProcessor(store, clock=lambda: NOW)

    async def scenario():
        return await asyncio.gather(processor.process_one(1), processor.process_all_due())

    single, batch = asyncio.run(scenario())
    statuses = [single.status] + [o.status for o in batch.outcomes]
    assert statuses.count(FeeStatus.CHARGED) == 1
    assert all(s in (FeeStatus.CHARGED, FeeStatus.SKIPPED_NOT_DUE) for s in statuses)
    assert asyncio.run(store.get(1)).base_balance == Decimal(90)
    assert len(asyncio.run(store.history(1))) == 1


def test_concurrent_batches_charge_each_wallet_once(store) -> None:
    _seed(store, {uid: ("100", 1) for uid in range(1, 6)})
    processor = FeeProcessor(store, clock=lambda: NOW, concurrency=3)

    async def scenario():
        return await asyncio.gather(processor.process_all_due(), processor.process_all_due())

    a, b = asyncio.run(scenario())
    assert a.charged + b.charged == 5
    assert a.failed == b.failed == 0
    for uid in range(1, 6):
        assert asyncio.run(store.get(uid)).base_balance == Decimal(90)


def test_cancelled_batch_keeps_committed_charges(store) -> None:
    _seed(store, {1: ("100", 3), 2: ("100", 2), 3: ("100", 1)})
    cancel = asyncio.Event()

    class CancellingStore(WalletStore):
        async def compare_and_advance(self, wallet, amount, now):
            balance = await super().compare_and_advance(wallet, amount, now)
            cancel.set()
            return balance

    processor = FeeProcessor(CancellingStore(store.session_factory), clock=lambda: NOW, concurrency=1)
    summary = asyncio.run(processor.process_all_due(cancel_event=cancel))

    assert summary.partial
    assert summary.charged == 1
    assert summary.total == 1
    # Oldest due date goes first
    assert summary.outcomes[0].user_id == 1
    assert asyncio.run(store.get(1)).base_balance == Decimal(90)
    assert asyncio.run(store.get(2)).base_balance == Decimal(100)


def test_preset_cancel_processes_nothing(store) -> None:
    _seed(store, {1: ("100", 1)})
    cancel = asyncio.Event()
    cancel.set()
    summary = asyncio.run(FeeProcessor(store, clock=lambda: NOW).process_all_due(cancel_event=cancel))
    assert summary.partial
    assert summary.total == 0
    assert asyncio.run(store.get(1)).base_balance == Decimal(100)
