"""
Valuation endpoints
"""

from fastapi import APIRouter, Depends

from .auth import RahnuSystem, get_system, get_current_caller
from .schemas import ValuationRequest, success_response
from ..access import Caller, ModuleScope


router = APIRouter()


@router.post("")
async def value_item(
    request: ValuationRequest,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Quote market value and principal for an item without persisting anything"""
    system.access_guard.require_staff(caller, ModuleScope.RAHNU)
    valuation = await system.valuation_calculator.value_item(
        karat=request.karat,
        weight_grams=request.weight_grams,
        margin_percent=request.margin_percent,
    )
    return success_response(valuation.to_dict())
