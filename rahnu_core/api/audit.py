"""
Audit trail endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .auth import RahnuSystem, get_system, get_current_caller
from .schemas import success_response
from ..access import Caller, ModuleScope, visible_branch
from ..audit import AuditEventType, AuditModule


router = APIRouter()

AUDIT_SCOPES = (ModuleScope.RAHNU, ModuleScope.BSE)


@router.get("/events")
async def get_audit_events(
    module: Optional[AuditModule] = None,
    event_type: Optional[AuditEventType] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Audit events, oldest first; managers see their own branch"""
    system.access_guard.require_manager(caller, AUDIT_SCOPES)
    events = await system.audit_trail.get_all_events(
        module=module,
        event_type=event_type,
        branch_id=visible_branch(caller),
        limit=limit,
    )
    return success_response([event.to_dict() for event in events])


@router.get("/integrity")
async def verify_audit_integrity(
    caller: Caller = Depends(get_current_caller),
    system: RahnuSystem = Depends(get_system)
):
    """Verify the whole hash chain"""
    system.access_guard.require_manager(caller, ModuleScope.ADMIN)
    return success_response(await system.audit_trail.verify_integrity())
