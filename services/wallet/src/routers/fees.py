import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

import config
from dependencies import get_processor
from errors import ConfigurationError, NotFoundError, StorageError
from schemas import FeeOutcomeResponse, BatchSummaryResponse
from services.fee_processor import FeeProcessor

router = APIRouter(prefix="/fees", tags=["fees"])


def _check_cron_secret(authorization: Optional[str]) -> None:
    expected = config.CRON_SECRET
    supplied = (authorization or "").removeprefix("Bearer ").strip()
    if not expected or not secrets.compare_digest(supplied, expected):
        raise HTTPException(status_code=401, detail="Invalid scheduler credentials")


@router.post("/process/{user_id}", response_model=FeeOutcomeResponse)
async def process_wallet_fee(user_id: int, processor: FeeProcessor = Depends(get_processor)):
    """Charge one wallet's fee on demand (caller identity resolved upstream)."""
    try:
        return await processor.process_one(user_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Wallet not found")
    except (StorageError, ConfigurationError) as e:
        raise HTTPException(status_code=503, detail=e.reason)


@router.post("/process-due", response_model=BatchSummaryResponse)
async def process_due_fees(
    authorization: Optional[str] = Header(None),
    processor: FeeProcessor = Depends(get_processor),
):
    """Scheduled pass over every due wallet."""
    _check_cron_secret(authorization)
    try:
        return await processor.process_all_due()
    except StorageError as e:
        raise HTTPException(status_code=503, detail=e.reason)
