"""
GL account endpoints
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from ..commands import Command
from ..ledger import GLAccountType
from ..system import ControlPlane
from ..tenancy import tenant_context
from .dependencies import RequestContext, get_control_plane, get_request_context, parse_enum
from .journal_entries import command_response

router = APIRouter()


@router.post("")
async def create_gl_account(
    payload: Dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Create a GL account"""
    with tenant_context(ctx.tenant_id):
        result = system.gate.submit(Command(
            operation="create_gl_account",
            payload=payload,
            maker=ctx.actor,
        ))
    return command_response(result)


@router.get("")
async def list_gl_accounts(
    account_type: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """List the chart of accounts"""
    wanted = parse_enum(GLAccountType, account_type, "account_type")
    with tenant_context(ctx.tenant_id):
        accounts = system.chart.list_accounts(wanted)
    return {"items": [account.to_dict() for account in accounts]}
