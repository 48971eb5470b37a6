import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from config import FEE_BATCH_INTERVAL, TOKEN_TOTAL_SUPPLY
from database import engine, Base, AsyncSessionLocal
import models  # Make sure models are registered
from dependencies import get_processor, get_store
from routers import wallets, fees, supply
from services.supply import ensure_ledger

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Supply ledger (single row)
    async with AsyncSessionLocal() as db:
        await ensure_ledger(db, TOKEN_TOTAL_SUPPLY)
        await db.commit()

    # Optional in-process scheduler; otherwise an external caller hits /fees/process-due
    fee_task = None
    if FEE_BATCH_INTERVAL > 0:
        fee_task = asyncio.create_task(_fee_loop())
    yield
    if fee_task is not None:
        fee_task.cancel()
        try:
            await fee_task
        except asyncio.CancelledError:
            pass


async def _fee_loop() -> None:
    """Periodically charge every wallet whose fee is due."""
    processor = get_processor(get_store())
    while True:
        await asyncio.sleep(FEE_BATCH_INTERVAL)
        try:
            await processor.process_all_due()
        except Exception:
            logger.exception("Wallet fee cycle failed")


app = FastAPI(title="Wallet Fee Service", lifespan=lifespan)

app.include_router(wallets.router)
app.include_router(fees.router)
app.include_router(supply.router)


@app.get("/")
async def root():
    return {"message": "Wallet Fee Service Running"}
