import logging

from fastapi import APIRouter, Depends

from dependencies import get_store
from errors import StorageError
from schemas import ValuationResponse
from services.valuation import Valuation, fallback_valuation, get_current_valuation
from services.wallet_store import WalletStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["supply"])


def _to_response(v: Valuation) -> ValuationResponse:
    return ValuationResponse(
        total_supply=v.total_supply,
        consumed_supply=v.consumed_supply,
        remaining_supply=v.remaining_supply,
        usage_percentage=v.usage_percentage,
        base_price=v.base_price,
        current_price=v.display_price,
        inflation_factor=v.inflation_factor,
        is_fallback=v.is_fallback,
    )


@router.get("/token-supply", response_model=ValuationResponse)
async def get_token_supply(store: WalletStore = Depends(get_store)):
    # Always read the ledger fresh; issuance can move the price at any time
    try:
        valuation = await store.read(get_current_valuation)
    except StorageError as e:
        logger.warning("Supply ledger unreachable, serving fallback price: %s", e)
        valuation = fallback_valuation()
    return _to_response(valuation)
