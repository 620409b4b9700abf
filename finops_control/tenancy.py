"""
Multi-Tenancy Support Module

Every ledger entry, permission, audit event and pending command belongs to
one tenant. The tenant for the current request is held in a context variable
and ``TenantAwareStorage`` partitions every table by it, so no component can
see another tenant's records.
"""

import contextvars
from contextlib import contextmanager
from typing import Dict, List, Optional, Any

from .storage import StorageInterface

TENANT_FIELD = "_tenant_id"

_current_tenant = contextvars.ContextVar('current_tenant', default=None)


def get_current_tenant() -> Optional[str]:
    """Get the current tenant ID for this context"""
    return _current_tenant.get()


def set_current_tenant(tenant_id: Optional[str]) -> None:
    """Set the current tenant ID for this context"""
    _current_tenant.set(tenant_id)


@contextmanager
def tenant_context(tenant_id: str):
    """Context manager for temporary tenant switching"""
    token = _current_tenant.set(tenant_id)
    try:
        yield
    finally:
        _current_tenant.reset(token)


class TenantAwareStorage(StorageInterface):
    """
    Storage wrapper that partitions any StorageInterface by tenant

    Records are stored under ``<tenant>:<record_id>`` and stamped with the
    tenant id, so two tenants can use the same natural keys (permission codes,
    sequence names, transaction ids) without colliding. Calls made outside a
    tenant context use ``default_tenant``.
    """

    def __init__(self, inner_storage: StorageInterface, default_tenant: str = "default"):
        self.inner = inner_storage
        self.default_tenant = default_tenant

    @property
    def tenant_id(self) -> str:
        return get_current_tenant() or self.default_tenant

    def _key(self, record_id: str) -> str:
        return f"{self.tenant_id}:{record_id}"

    def _owned(self, data: Dict[str, Any]) -> bool:
        return data.get(TENANT_FIELD) == self.tenant_id

    def _strip(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        data.pop(TENANT_FIELD, None)
        return data

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record stamped with the current tenant"""
        tenant_data = dict(data)
        tenant_data[TENANT_FIELD] = self.tenant_id
        self.inner.save(table, self._key(record_id), tenant_data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record of the current tenant"""
        result = self.inner.load(table, self._key(record_id))
        if result is None or not self._owned(result):
            return None
        return self._strip(result)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records of the current tenant"""
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record of the current tenant"""
        if self.load(table, record_id) is None:
            return False
        return self.inner.delete(table, self._key(record_id))

    def exists(self, table: str, record_id: str) -> bool:
        """Check if record exists for the current tenant"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records of the current tenant"""
        tenant_filters = dict(filters)
        tenant_filters[TENANT_FIELD] = self.tenant_id
        return [self._strip(record) for record in self.inner.find(table, tenant_filters)]

    def count(self, table: str) -> int:
        """Count records of the current tenant"""
        return len(self.find(table, {}))

    def close(self) -> None:
        """Close underlying storage"""
        self.inner.close()

    def begin_transaction(self) -> None:
        """Begin transaction on underlying storage"""
        self.inner.begin_transaction()

    def commit(self) -> None:
        """Commit transaction on underlying storage"""
        self.inner.commit()

    def rollback(self) -> None:
        """Rollback transaction on underlying storage"""
        self.inner.rollback()
