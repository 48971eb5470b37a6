from fastapi import Depends

from database import AsyncSessionLocal
from services.fee_processor import FeeProcessor
from services.wallet_store import WalletStore

_store = WalletStore(AsyncSessionLocal)


def get_store() -> WalletStore:
    return _store


def get_processor(store: WalletStore = Depends(get_store)) -> FeeProcessor:
    return FeeProcessor(store)
