"""
Vault custody endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import RahnuSystem, get_system, get_current_caller
from .schemas import VaultInRequest, VaultOutRequest, success_response
from ..access import Caller, ModuleScope, visible_branch
from ..vault import VaultStatus, item_to_response


router = APIRouter()


@router.get("")
async def list_vault_items(
    status: Optional[VaultStatus] = None,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Custody records, restricted to the caller's branch for non-admins"""
    system.access_guard.require_staff(caller, ModuleScope.RAHNU)
    items = await system.vault.list_items(visible_branch(caller), status)
    return success_response([item_to_response(item) for item in items])


@router.get("/{loan_id}")
async def get_vault_item(
    loan_id: str,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    system.access_guard.require_staff(caller, ModuleScope.RAHNU)
    item = await system.vault.get_item(loan_id)
    system.access_guard.require_staff(caller, ModuleScope.RAHNU, item.branch_id)
    return success_response(item_to_response(item))


@router.post("/vault-in", status_code=status.HTTP_201_CREATED)
async def vault_in(
    request: VaultInRequest,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Secure a loan's collateral in the vault with dual approval"""
    system.access_guard.require_staff(caller, ModuleScope.RAHNU)
    loan = await system.loan_manager.get_loan(request.loan_id)
    system.access_guard.require_staff(caller, ModuleScope.RAHNU, loan.branch_id)

    item = await system.vault.vault_in(
        loan_id=request.loan_id,
        barcode=request.barcode,
        location=request.location,
        approver1_id=request.approver1_id,
        approver2_id=request.approver2_id,
        signature1=request.signature1,
        signature2=request.signature2,
        caller=caller,
    )
    return success_response(item_to_response(item), "Item secured in vault with dual approval")


@router.post("/vault-out")
async def vault_out(
    request: VaultOutRequest,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Release a loan's collateral from the vault with dual approval"""
    system.access_guard.require_staff(caller, ModuleScope.RAHNU)
    item = await system.vault.get_item(request.loan_id)
    system.access_guard.require_staff(caller, ModuleScope.RAHNU, item.branch_id)

    item = await system.vault.vault_out(
        loan_id=request.loan_id,
        approver1_id=request.approver1_id,
        approver2_id=request.approver2_id,
        signature1=request.signature1,
        signature2=request.signature2,
        caller=caller,
    )
    return success_response(item_to_response(item), "Item released from vault with dual approval")
