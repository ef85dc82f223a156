"""
Pawn loan endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import RahnuSystem, get_system, get_current_caller
from .schemas import CreateLoanRequest, success_response
from ..access import Caller, ModuleScope, visible_branch
from ..exceptions import RahnuError
from ..loans import loan_to_response


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Originate a new pawn loan at the caller's branch"""
    branch_id = request.branch_id or caller.branch_id
    if not branch_id:
        raise RahnuError("branch_id is required")
    system.access_guard.require_staff(caller, ModuleScope.RAHNU, branch_id)

    loan = await system.loan_manager.originate_loan(
        customer_id=request.customer_id,
        branch_id=branch_id,
        item_description=request.item_description,
        item_type=request.item_type,
        karat=request.karat,
        weight_grams=request.weight_grams,
        margin_percent=request.margin_percent,
        loan_amount=request.loan_amount,
        loan_period_months=request.loan_period_months,
        processed_by=caller.user_id,
        notes=request.notes,
    )
    return success_response(loan_to_response(loan), "Loan created successfully")


@router.get("")
async def list_loans(
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Admins see every branch, other staff only their own"""
    system.access_guard.require_staff(caller, ModuleScope.RAHNU)
    loans = await system.loan_manager.list_loans(visible_branch(caller))
    return success_response([loan_to_response(loan) for loan in loans])


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    system.access_guard.require_staff(caller, ModuleScope.RAHNU)
    loan = await system.loan_manager.get_loan(loan_id)
    system.access_guard.require_staff(caller, ModuleScope.RAHNU, loan.branch_id)
    return success_response(loan_to_response(loan))
