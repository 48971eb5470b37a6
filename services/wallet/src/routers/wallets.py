from fastapi import APIRouter, Depends, HTTPException, Query

from dependencies import get_processor, get_store
from errors import ConfigurationError, NotFoundError, StorageError
from schemas import WalletCreate, WalletResponse, LedgerEntryResponse, FeeStatusResponse
from services.fee_processor import FeeProcessor
from services.wallet_store import WalletStore

router = APIRouter(prefix="/wallets", tags=["wallets"])


@router.post("/", response_model=WalletResponse)
async def create_wallet(body: WalletCreate, store: WalletStore = Depends(get_store)):
    try:
        return await store.create(**body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=e.reason)


@router.get("/{user_id}", response_model=WalletResponse)
async def get_wallet(user_id: int, store: WalletStore = Depends(get_store)):
    try:
        wallet = await store.get(user_id)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=e.reason)
    if not wallet:
        raise HTTPException(status_code=404, detail="Wallet not found")
    return wallet


@router.get("/{user_id}/history", response_model=list[LedgerEntryResponse])
async def get_history(
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    store: WalletStore = Depends(get_store),
):
    try:
        return await store.history(user_id, limit=limit, offset=offset)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Wallet not found")
    except StorageError as e:
        raise HTTPException(status_code=503, detail=e.reason)


@router.get("/{user_id}/fee-status", response_model=FeeStatusResponse)
async def get_fee_status(user_id: int, processor: FeeProcessor = Depends(get_processor)):
    try:
        return await processor.fee_status(user_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Wallet not found")
    except (ConfigurationError, StorageError) as e:
        raise HTTPException(status_code=503, detail=e.reason)
