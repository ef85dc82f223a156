"""
Gold savings (BSE) endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import RahnuSystem, get_system, get_current_caller
from .schemas import BuyGoldRequest, OpenAccountRequest, SellGoldRequest, success_response
from ..access import Caller, ModuleScope, Role
from ..exceptions import AccessDeniedError
from ..savings import GoldAccount, account_to_response, transaction_to_response


router = APIRouter()

ADMIN_LISTING_LIMIT = 100


def _owner_filter(caller: Caller, user_id: Optional[str]) -> Optional[str]:
    """Customers see only themselves; admins see everyone unless they ask for a user"""
    if caller.role == Role.CUSTOMER:
        if user_id and user_id != caller.user_id:
            raise AccessDeniedError("Access denied. You can only access your own gold account.")
        return caller.user_id
    if caller.is_admin:
        return user_id
    return user_id or caller.user_id


def _require_owner(caller: Caller, account: GoldAccount) -> None:
    if caller.role == Role.CUSTOMER and account.user_id != caller.user_id:
        raise AccessDeniedError("Access denied. You can only access your own gold account.")


@router.post("/accounts", status_code=status.HTTP_201_CREATED)
async def open_account(
    request: OpenAccountRequest,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    system.access_guard.require_scope(caller, ModuleScope.BSE)
    user_id = request.user_id or caller.user_id
    if caller.role == Role.CUSTOMER and user_id != caller.user_id:
        raise AccessDeniedError("Access denied. You can only access your own gold account.")

    account = await system.savings.open_account(
        user_id, opened_by=caller.user_id, branch_id=caller.branch_id
    )
    return success_response(account_to_response(account), "Gold account opened successfully")


@router.get("/accounts")
async def list_accounts(
    user_id: Optional[str] = None,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    system.access_guard.require_scope(caller, ModuleScope.BSE)
    accounts = await system.savings.list_accounts(_owner_filter(caller, user_id))
    return success_response([account_to_response(a) for a in accounts])


@router.get("/accounts/{account_id}")
async def get_account(
    account_id: str,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    system.access_guard.require_scope(caller, ModuleScope.BSE)
    account = await system.savings.get_account(account_id)
    _require_owner(caller, account)
    return success_response(account_to_response(account))


@router.get("/transactions")
async def list_transactions(
    user_id: Optional[str] = None,
    account_id: Optional[str] = None,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Admins without a user filter get the latest transactions across all accounts"""
    system.access_guard.require_scope(caller, ModuleScope.BSE)
    owner = _owner_filter(caller, user_id)
    limit = ADMIN_LISTING_LIMIT if owner is None and account_id is None else None
    transactions = await system.savings.list_transactions(owner, account_id, limit)
    return success_response([transaction_to_response(t) for t in transactions])


@router.post("/transactions/buy", status_code=status.HTTP_201_CREATED)
async def buy_gold(
    request: BuyGoldRequest,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    system.access_guard.require_scope(caller, ModuleScope.BSE)
    _require_owner(caller, await system.savings.get_account(request.account_id))

    txn = await system.savings.buy_gold(
        account_id=request.account_id,
        karat=request.karat,
        weight_grams=request.weight_grams,
        payment_method=request.payment_method,
        payment_reference=request.payment_reference,
        processed_by=caller.user_id,
        branch_id=caller.branch_id,
    )
    return success_response(transaction_to_response(txn), "Gold purchased successfully")


@router.post("/transactions/sell", status_code=status.HTTP_201_CREATED)
async def sell_gold(
    request: SellGoldRequest,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    system.access_guard.require_scope(caller, ModuleScope.BSE)
    _require_owner(caller, await system.savings.get_account(request.account_id))

    txn = await system.savings.sell_gold(
        account_id=request.account_id,
        karat=request.karat,
        weight_grams=request.weight_grams,
        processed_by=caller.user_id,
        branch_id=caller.branch_id,
    )
    return success_response(transaction_to_response(txn), "Gold sold successfully")
