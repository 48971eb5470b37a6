from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Ensure the service's "src/" takes precedence over any installed copy.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

# Importing database.py builds the module-level engine; keep it off Postgres.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from database import Base  # noqa: E402
from models import SupplyLedger  # noqa: E402
from services.wallet_store import WalletStore  # noqa: E402

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


async def _create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def session_factory(tmp_path):
    # NullPool: every session gets a fresh connection on whichever loop runs it
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'wallet.db'}", poolclass=NullPool)
    asyncio.run(_create_schema(engine))
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> WalletStore:
    return WalletStore(session_factory, timeout=5.0)


def seed_supply(session_factory, total: Decimal, consumed: Decimal) -> None:
    async def _seed():
        async with session_factory() as db:
            db.add(SupplyLedger(total_supply=total, consumed_supply=consumed))
            await db.commit()

    asyncio.run(_seed())
