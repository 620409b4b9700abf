"""
Approval inbox endpoints
"""

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends

from ..maker_checker import PendingStatus
from ..system import ControlPlane
from ..tenancy import tenant_context
from .dependencies import RequestContext, get_control_plane, get_request_context, parse_enum
from .schemas import DecisionRequest

router = APIRouter()


@router.get("")
async def list_pending_commands(
    maker: Optional[str] = None,
    checker: Optional[str] = None,
    status: Optional[str] = None,
    office_id: Optional[str] = None,
    action_name: Optional[str] = None,
    entity_name: Optional[str] = None,
    resource_id: Optional[str] = None,
    made_from: Optional[datetime] = None,
    made_to: Optional[datetime] = None,
    offset: int = 0,
    limit: int = 50,
    newest_first: bool = True,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """List commands in the approval inbox"""
    filters = dict(
        maker=maker,
        checker=checker,
        status=parse_enum(PendingStatus, status, "status"),
        office_id=office_id,
        action_name=action_name,
        entity_name=entity_name,
        resource_id=resource_id,
        made_from=made_from,
        made_to=made_to,
    )
    with tenant_context(ctx.tenant_id):
        items = system.inbox.list(offset=offset, limit=limit, newest_first=newest_first, **filters)
        total = system.inbox.count(**filters)
    return {
        "total": total,
        "offset": offset,
        "limit": limit,
        "items": [item.to_dict() for item in items],
    }


@router.get("/summary")
async def inbox_summary(
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Inbox counts per status"""
    with tenant_context(ctx.tenant_id):
        return system.inbox.summary()


@router.get("/searchtemplate")
async def inbox_search_template(
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Values the inbox can be filtered by"""
    with tenant_context(ctx.tenant_id):
        return system.inbox.search_template()


@router.get("/{pending_id}")
async def get_pending_command(
    pending_id: int,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Get one pending command"""
    with tenant_context(ctx.tenant_id):
        return system.inbox.get(pending_id).to_dict()


@router.post("/{pending_id}")
async def decide_pending_command(
    pending_id: int,
    command: Literal["approve", "reject"],
    request: Optional[DecisionRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Approve or reject a pending command"""
    with tenant_context(ctx.tenant_id):
        if command == "approve":
            result = system.inbox.approve(pending_id, checker=ctx.actor)
            return {"pending_command_id": pending_id, "status": "approved", **result.to_dict()}

        pending = system.inbox.reject(pending_id, checker=ctx.actor,
                                      reason=request.reason if request else None)
        return pending.to_dict()


@router.delete("/{pending_id}")
async def withdraw_pending_command(
    pending_id: int,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Withdraw your own pending command"""
    with tenant_context(ctx.tenant_id):
        return system.inbox.withdraw(pending_id, maker=ctx.actor).to_dict()
