"""
Gold price endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import RahnuSystem, get_system, get_current_caller
from .schemas import SetGoldPriceRequest, success_response
from ..access import Caller, ModuleScope
from ..gold_prices import GoldPriceQuote


router = APIRouter()

PRICE_SCOPES = (ModuleScope.RAHNU, ModuleScope.BSE)


def _quote_to_response(quote: GoldPriceQuote) -> dict:
    data = quote.to_dict()
    del data['updated_at']
    return data


@router.post("", status_code=status.HTTP_201_CREATED)
async def set_gold_price(
    request: SetGoldPriceRequest,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Publish a new quote for a karat (managers only)"""
    system.access_guard.require_manager(caller, PRICE_SCOPES)
    quote = await system.price_book.set_quote(
        karat=request.karat,
        buy_price_per_gram=request.buy_price_per_gram,
        sell_price_per_gram=request.sell_price_per_gram,
        effective_date=request.effective_date,
        expiry_date=request.expiry_date,
        margin_percentage=request.margin_percentage,
        source=request.source,
        created_by=caller.user_id,
        branch_id=caller.branch_id,
    )
    return success_response(_quote_to_response(quote), "Gold price set successfully")


@router.get("")
async def list_gold_prices(
    karat: Optional[str] = None,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """List quotes, newest first"""
    system.access_guard.require_staff(caller, PRICE_SCOPES)
    quotes = await system.price_book.list_quotes(karat)
    return success_response([_quote_to_response(q) for q in quotes])


@router.get("/active/{karat}")
async def get_active_gold_price(
    karat: str,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Quote currently used for valuing the karat"""
    system.access_guard.require_staff(caller, PRICE_SCOPES)
    quote = await system.price_book.get_active_quote(karat)
    return success_response(_quote_to_response(quote))


@router.post("/{quote_id}/deactivate")
async def deactivate_gold_price(
    quote_id: str,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    system.access_guard.require_manager(caller, PRICE_SCOPES)
    quote = await system.price_book.deactivate_quote(
        quote_id, user_id=caller.user_id, branch_id=caller.branch_id
    )
    return success_response(_quote_to_response(quote), "Gold price deactivated")
