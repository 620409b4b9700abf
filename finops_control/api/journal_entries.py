"""
Journal entry endpoints
"""

from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from ..commands import Command
from ..maker_checker import CommandResult
from ..system import ControlPlane
from ..tenancy import tenant_context
from .dependencies import RequestContext, get_control_plane, get_request_context
from .schemas import ReverseRequest

router = APIRouter()


def command_response(result: CommandResult) -> JSONResponse:
    """200 for executed commands, 202 for commands parked for approval"""
    status_code = 202 if result.awaiting_approval else 200
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post("")
async def create_journal_entry(
    payload: Dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Submit a journal entry"""
    with tenant_context(ctx.tenant_id):
        result = system.gate.submit(Command(
            operation="create_journal_entry",
            payload=payload,
            maker=ctx.actor,
        ))
    return command_response(result)


@router.get("")
async def search_journal_entries(
    office_id: Optional[str] = None,
    gl_account_id: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    manual_only: bool = False,
    offset: int = 0,
    limit: int = 50,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Search journal entries"""
    with tenant_context(ctx.tenant_id):
        matches = system.ledger.search_entries(
            office_id=office_id,
            gl_account_id=gl_account_id,
            from_date=from_date,
            to_date=to_date,
            manual_only=manual_only,
        )
    page = matches[offset:offset + limit]
    return {
        "total": len(matches),
        "offset": offset,
        "limit": limit,
        "items": [entry.to_dict() for entry in page],
    }


@router.get("/{transaction_id}")
async def get_journal_entry(
    transaction_id: str,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Get a journal entry with totals, reversal links and audit provenance"""
    with tenant_context(ctx.tenant_id):
        return system.ledger.describe_transaction(transaction_id)


@router.post("/{transaction_id}/reverse")
async def reverse_journal_entry(
    transaction_id: str,
    request: Optional[ReverseRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Reverse a journal entry"""
    payload: Dict[str, Any] = {"transaction_id": transaction_id}
    if request and request.note:
        payload["note"] = request.note
    with tenant_context(ctx.tenant_id):
        result = system.gate.submit(Command(
            operation="reverse_journal_entry",
            payload=payload,
            maker=ctx.actor,
        ))
    return command_response(result)
