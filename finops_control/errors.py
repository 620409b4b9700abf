"""
Error Taxonomy

Typed errors raised by every control-plane component. Each error knows the
HTTP status it maps to and can carry the id of the audit event written for
the failed command, which callers use as a correlation id.
"""

from typing import Optional


class ControlPlaneError(Exception):
    """Base class for all control-plane errors"""

    code = "error"
    status_code = 500

    def __init__(self, message: str, audit_event_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.audit_event_id = audit_event_id

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "correlation_id": self.audit_event_id,
        }


class ValidationError(ControlPlaneError, ValueError):
    """Malformed or out-of-range input, e.g. unbalanced ledger lines"""

    code = "validation_error"
    status_code = 400


class NotFoundError(ControlPlaneError, LookupError):
    """Unknown account, transaction or pending command"""

    code = "not_found"
    status_code = 404


class ConflictError(ControlPlaneError):
    """State already moved on: double reversal, double approval, ..."""

    code = "conflict"
    status_code = 409


class HandlerError(ControlPlaneError):
    """A command handler failed with an untyped exception"""

    code = "handler_error"
    status_code = 500


class StorageError(ControlPlaneError):
    """Persistent store failure; opaque to callers"""

    code = "storage_error"
    status_code = 500
