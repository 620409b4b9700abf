"""
Batch endpoint
"""

from typing import List

from fastapi import APIRouter, Depends

from ..batch import BatchRequest
from ..system import ControlPlane
from ..tenancy import tenant_context
from .dependencies import RequestContext, get_control_plane, get_request_context
from .schemas import BatchRequestModel

router = APIRouter()


@router.post("")
async def execute_batch(
    requests: List[BatchRequestModel],
    enclosing_transaction: bool = False,
    ctx: RequestContext = Depends(get_request_context),
    system: ControlPlane = Depends(get_control_plane)
):
    """Run several commands, optionally all or nothing"""
    batch = [BatchRequest(request_id=r.request_id, operation=r.operation, payload=r.payload)
             for r in requests]
    with tenant_context(ctx.tenant_id):
        result = system.batch.execute(batch, maker=ctx.actor,
                                      enclosing_transaction=enclosing_transaction)
    return result.to_dict()
