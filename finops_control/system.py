"""
Control Plane Composition Root

Wires storage, audit log, permission matrix, ledger, gate, inbox, batch
executor and timeline together for one process. All components share a
single tenant-partitioned storage backend.
"""

import logging
from typing import Any, Dict, Optional, Set

from .audit import AuditLog
from .batch import BatchCommandExecutor
from .commands import CommandRegistry, register_ledger_handlers
from .config import FinopsConfig, get_config
from .inbox import ApprovalInbox
from .ledger import ChartOfAccounts, GeneralLedger, LedgerEntryBuilder
from .maker_checker import MakerCheckerGate, PendingStatus
from .permissions import DEFAULT_PERMISSION_CATALOG, PermissionMatrix
from .reversal import ReversalEngine
from .storage import StorageInterface, create_storage
from .tenancy import TenantAwareStorage, tenant_context
from .timeline import AuditAggregator

logger = logging.getLogger("finops.system")


class ControlPlane:
    """Control plane with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[FinopsConfig] = None):
        self.config = config or get_config()
        self.backend = storage if storage is not None else create_storage(self.config.database_url)
        self.storage = TenantAwareStorage(self.backend, default_tenant=self.config.default_tenant)

        self.audit_log = AuditLog(self.storage)
        self.permissions = PermissionMatrix(
            self.storage, self.audit_log,
            missing_code_policy=self.config.missing_permission_policy,
            enabled_by_default=self.config.maker_checker_enabled,
        )
        self.ledger = GeneralLedger(self.storage, self.audit_log)
        self.chart = ChartOfAccounts(self.storage, self.audit_log)
        self.builder = LedgerEntryBuilder(self.ledger, self.chart, self.audit_log)
        self.reversal = ReversalEngine(self.ledger, self.audit_log)

        self.registry = CommandRegistry()
        register_ledger_handlers(self.registry, self.builder, self.reversal, self.chart)

        self.gate = MakerCheckerGate(self.storage, self.audit_log, self.permissions, self.registry)
        self.inbox = ApprovalInbox(self.gate, self.audit_log, self.registry)
        self.batch = BatchCommandExecutor(self.gate)
        self.timeline = AuditAggregator(self.audit_log, self.config.timeline_timezone)

        self._bootstrapped: Set[str] = set()

    def ensure_tenant(self, tenant_id: Optional[str] = None) -> str:
        """Bootstrap the permission catalog for a tenant on first use"""
        tenant_id = tenant_id or self.config.default_tenant
        if tenant_id not in self._bootstrapped:
            with tenant_context(tenant_id):
                self.permissions.bootstrap(DEFAULT_PERMISSION_CATALOG)
            self._bootstrapped.add(tenant_id)
            logger.info(f"Tenant {tenant_id} ready")
        return tenant_id

    def impact(self) -> Dict[str, Any]:
        """How much of the current tenant's traffic maker-checker affects"""
        entries = self.permissions.list_entries()
        return {
            'maker_checker_enabled': self.permissions.is_enabled(),
            'total_codes': len(entries),
            'codes_requiring_approval': sum(1 for e in entries if e.requires_approval),
            'pending_approvals': self.inbox.count(status=PendingStatus.PENDING),
            'missing_permission_policy': self.permissions.missing_code_policy,
        }

    def close(self) -> None:
        self.storage.close()
