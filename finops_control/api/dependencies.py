"""
Request dependencies: the shared control plane and per-request identity
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Type, TypeVar

from fastapi import Depends, Header

from ..errors import ValidationError
from ..system import ControlPlane

E = TypeVar("E", bound=Enum)

# Global control plane instance, created on first request
_control_plane: Optional[ControlPlane] = None


def get_control_plane() -> ControlPlane:
    global _control_plane
    if _control_plane is None:
        _control_plane = ControlPlane()
    return _control_plane


@dataclass
class RequestContext:
    """Tenant and actor a request is made for"""
    tenant_id: str
    actor_id: Optional[str] = None

    @property
    def actor(self) -> str:
        """Actor for state-changing calls; the header is mandatory there"""
        if not self.actor_id:
            raise ValidationError("X-Actor-Id header is required")
        return self.actor_id


def get_request_context(
    x_tenant_id: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
    control_plane: ControlPlane = Depends(get_control_plane)
) -> RequestContext:
    tenant_id = control_plane.ensure_tenant(x_tenant_id)
    return RequestContext(tenant_id=tenant_id, actor_id=x_actor_id)


def parse_enum(enum_type: Type[E], value: Optional[str], name: str) -> Optional[E]:
    """Query string value to enum member, None passes through"""
    if value is None:
        return None
    try:
        return enum_type(value.lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValidationError(f"Invalid {name} '{value}', expected one of: {allowed}")
