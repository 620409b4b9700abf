"""
Pydantic schemas for API requests

Command payloads are not modelled here: they are passed through to the
maker-checker gate, which validates them against the handler registry so
that malformed commands are audited like any other failure.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class ReverseRequest(BaseModel):
    note: Optional[str] = None


class PermissionUpdate(BaseModel):
    code: str
    requires_approval: Any = Field(..., description="Must be a boolean")


class PermissionUpdateRequest(BaseModel):
    permissions: List[PermissionUpdate]


class GroupUpdateRequest(BaseModel):
    requires_approval: bool


class MakerCheckerSwitchRequest(BaseModel):
    enabled: bool


class DecisionRequest(BaseModel):
    reason: Optional[str] = None


class BatchRequestModel(BaseModel):
    request_id: Union[int, str]
    operation: str
    payload: Dict[str, Any] = Field(default_factory=dict)
