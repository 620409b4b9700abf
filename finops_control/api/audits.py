"""
Audit log endpoints
"""

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends

from ..audit import ProcessingResult
from ..system import ControlPlane
from ..tenancy import tenant_context
from ..timeline import TimelineFilters
from .dependencies import RequestContext, get_control_plane, get_request_context, parse_enum

router = APIRouter()


@router.get("")
async def search_audits(
    action_name: Optional[str] = None,
    entity_name: Optional[str] = None,
    resource_id: Optional[str] = None,
    actor: Optional[str] = None,
    office_id: Optional[str] = None,
    processing_result: Optional[str] = None,
    command_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    offset: int = 0,
    limit: int = 100,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Search audit events"""
    result = parse_enum(ProcessingResult, processing_result, "processing_result")
    with tenant_context(ctx.tenant_id):
        events = system.audit_log.search(
            action_name=action_name,
            entity_name=entity_name,
            resource_id=resource_id,
            actor=actor,
            office_id=office_id,
            processing_result=result,
            command_id=command_id,
            start_time=start,
            end_time=end,
        )
    page = events[offset:offset + limit]
    return {
        "total": len(events),
        "offset": offset,
        "limit": limit,
        "items": [event.to_dict() for event in page],
    }


@router.get("/timeline")
async def audit_timeline(
    mode: Literal["day", "cursor"] = "day",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    days_per_page: int = 7,
    after_id: Optional[int] = None,
    limit: int = 50,
    actor: Optional[str] = None,
    action: Optional[str] = None,
    status: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Audit events grouped by day, paged by day groups or by event id cursor"""
    filters = TimelineFilters(actor=actor, action=action, status=status)
    with tenant_context(ctx.tenant_id):
        if mode == "cursor":
            timeline = system.timeline.timeline_by_cursor(start, end, after_id=after_id,
                                                          limit=limit, filters=filters)
        else:
            timeline = system.timeline.timeline_by_day(start, end, page=page,
                                                       days_per_page=days_per_page,
                                                       filters=filters)
    return timeline.to_dict()


@router.get("/integrity")
async def verify_audit_integrity(
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Verify the audit hash chain"""
    with tenant_context(ctx.tenant_id):
        return system.audit_log.verify_integrity()


@router.get("/{event_id}")
async def get_audit_event(
    event_id: int,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Get one audit event"""
    with tenant_context(ctx.tenant_id):
        return system.audit_log.get_event(event_id).to_dict()
