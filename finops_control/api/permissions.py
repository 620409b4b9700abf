"""
Permission matrix and maker-checker configuration endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from ..system import ControlPlane
from ..tenancy import tenant_context
from .dependencies import RequestContext, get_control_plane, get_request_context
from .schemas import GroupUpdateRequest, MakerCheckerSwitchRequest, PermissionUpdateRequest

router = APIRouter()
configurations_router = APIRouter()


@router.get("")
async def list_permissions(
    grouping: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """List permission codes and their approval flags"""
    with tenant_context(ctx.tenant_id):
        entries = system.permissions.list_entries(grouping)
        groupings = system.permissions.groupings()
    return {
        "groupings": groupings,
        "permissions": [entry.to_dict() for entry in entries],
    }


@router.put("")
async def update_permissions(
    request: PermissionUpdateRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Toggle approval for many codes; each code succeeds or fails on its own"""
    with tenant_context(ctx.tenant_id):
        results = system.permissions.set_many(
            [update.model_dump() for update in request.permissions],
            actor=ctx.actor,
        )
    return {"results": [r.to_dict() for r in results]}


@router.put("/groups/{grouping}")
async def update_permission_group(
    grouping: str,
    request: GroupUpdateRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Toggle approval for every code in a grouping"""
    with tenant_context(ctx.tenant_id):
        results = system.permissions.set_group(grouping, request.requires_approval, actor=ctx.actor)
    return {"grouping": grouping, "results": [r.to_dict() for r in results]}


@configurations_router.get("/maker-checker")
async def get_maker_checker(
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Global maker-checker switch and its impact"""
    with tenant_context(ctx.tenant_id):
        return system.impact()


@configurations_router.put("/maker-checker")
async def set_maker_checker(
    request: MakerCheckerSwitchRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Turn maker-checker on or off for the tenant"""
    with tenant_context(ctx.tenant_id):
        system.permissions.set_enabled(request.enabled, actor=ctx.actor)
        return system.impact()
