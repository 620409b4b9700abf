"""
Permission Matrix Store

Per-tenant table of permission codes, each flagged with whether commands
under that code must pass maker-checker approval. Entries are created at
bootstrap from a fixed catalog and only ever toggled. A per-tenant global
switch can turn maker-checker off for every code at once.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .audit import AuditLog, ProcessingResult
from .errors import NotFoundError
from .storage import StorageInterface

logger = logging.getLogger("finops.permissions")

MISSING_CODE_ALLOW = "allow"
MISSING_CODE_REQUIRE_APPROVAL = "require_approval"

# (code, grouping) pairs known at bootstrap
DEFAULT_PERMISSION_CATALOG: List[Tuple[str, str]] = [
    ("CREATE_JOURNALENTRY", "accounting"),
    ("REVERSE_JOURNALENTRY", "accounting"),
    ("CREATE_GLACCOUNT", "accounting"),
    ("UPDATE_GLACCOUNT", "accounting"),
    ("DELETE_GLACCOUNT", "accounting"),
    ("CREATE_GLCLOSURE", "accounting"),
    ("CREATE_ACCOUNTINGRULE", "accounting"),
    ("CREATE_CLIENT", "portfolio"),
    ("ACTIVATE_CLIENT", "portfolio"),
    ("CREATE_LOAN", "portfolio"),
    ("APPROVE_LOAN", "portfolio"),
    ("DISBURSE_LOAN", "portfolio"),
    ("WRITEOFF_LOAN", "portfolio"),
    ("REPAYMENT_LOAN", "transaction_loan"),
    ("ADJUST_LOAN", "transaction_loan"),
    ("DEPOSIT_SAVINGSACCOUNT", "transaction_savings"),
    ("WITHDRAWAL_SAVINGSACCOUNT", "transaction_savings"),
    ("CREATE_OFFICE", "organisation"),
    ("CREATE_STAFF", "organisation"),
    ("CREATE_USER", "authorisation"),
    ("UPDATE_ROLE", "authorisation"),
]


@dataclass
class PermissionEntry:
    """One row of the permission matrix"""
    code: str
    grouping: str
    requires_approval: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.code,
            'code': self.code,
            'grouping': self.grouping,
            'requires_approval': self.requires_approval,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PermissionEntry':
        return cls(
            code=data['code'],
            grouping=data['grouping'],
            requires_approval=bool(data.get('requires_approval', False)),
        )


@dataclass
class PermissionUpdateResult:
    """Outcome of one code in a bulk update"""
    code: str
    success: bool
    requires_approval: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'success': self.success,
            'requires_approval': self.requires_approval,
            'error': self.error,
        }


class PermissionMatrix:
    """Permission matrix and global maker-checker switch for the current tenant"""

    TABLE = "permissions"
    CONFIG_TABLE = "configurations"
    GLOBAL_SWITCH = "maker-checker"

    def __init__(self, storage: StorageInterface, audit_log: AuditLog,
                 missing_code_policy: str = MISSING_CODE_ALLOW,
                 enabled_by_default: bool = True):
        if missing_code_policy not in (MISSING_CODE_ALLOW, MISSING_CODE_REQUIRE_APPROVAL):
            raise ValueError(f"Unknown missing permission policy '{missing_code_policy}'")
        self.storage = storage
        self.audit_log = audit_log
        self.missing_code_policy = missing_code_policy
        self.enabled_by_default = enabled_by_default

    def bootstrap(self, catalog: Iterable[Tuple[str, str]] = DEFAULT_PERMISSION_CATALOG) -> int:
        """
        Create catalog entries that do not exist yet

        Existing entries keep their current flag.

        Returns:
            Number of entries created
        """
        created = 0
        with self.storage.atomic():
            for code, grouping in catalog:
                if not self.storage.exists(self.TABLE, code):
                    entry = PermissionEntry(code=code, grouping=grouping)
                    self.storage.save(self.TABLE, code, entry.to_dict())
                    created += 1
        if created:
            logger.info(f"Bootstrapped {created} permission codes")
        return created

    def get(self, code: str) -> bool:
        """
        Whether commands under ``code`` require checker approval

        A code missing from the matrix follows the configured policy:
        ``allow`` answers False (fail open), ``require_approval`` answers True.
        """
        data = self.storage.load(self.TABLE, code)
        if data is None:
            logger.warning(f"Permission code {code} not in matrix, applying '{self.missing_code_policy}' policy")
            return self.missing_code_policy == MISSING_CODE_REQUIRE_APPROVAL
        return bool(data.get('requires_approval', False))

    def requires_approval(self, code: str) -> bool:
        """Matrix flag combined with the global maker-checker switch"""
        return self.is_enabled() and self.get(code)

    def get_entry(self, code: str) -> PermissionEntry:
        data = self.storage.load(self.TABLE, code)
        if data is None:
            raise NotFoundError(f"Permission code {code} not found")
        return PermissionEntry.from_dict(data)

    def list_entries(self, grouping: Optional[str] = None) -> List[PermissionEntry]:
        """List entries ordered by grouping then code"""
        filters = {'grouping': grouping} if grouping else {}
        entries = [PermissionEntry.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        entries.sort(key=lambda e: (e.grouping, e.code))
        return entries

    def groupings(self) -> List[str]:
        return sorted({entry.grouping for entry in self.list_entries()})

    def set_many(self, updates: Iterable[Mapping[str, Any]], actor: str) -> List[PermissionUpdateResult]:
        """
        Toggle many codes, each applied on its own

        A failing code does not stop the others; the caller sees exactly which
        codes were applied.

        Args:
            updates: Mappings with ``code`` and ``requires_approval``
            actor: Administrator making the change

        Returns:
            One PermissionUpdateResult per update, in input order
        """
        results: List[PermissionUpdateResult] = []
        changes: Dict[str, bool] = {}

        for update in updates:
            code = update.get('code')
            flag = update.get('requires_approval')
            if not isinstance(code, str) or not code:
                results.append(PermissionUpdateResult(code=str(code), success=False,
                                                      error="Permission code is required"))
                continue
            if not isinstance(flag, bool):
                results.append(PermissionUpdateResult(code=code, success=False,
                                                      error="requires_approval must be a boolean"))
                continue

            updated = self.storage.compare_and_set(self.TABLE, code, {'code': code},
                                                   {'requires_approval': flag})
            if not updated:
                results.append(PermissionUpdateResult(code=code, success=False,
                                                      error=f"Unknown permission code {code}"))
                continue

            changes[code] = flag
            results.append(PermissionUpdateResult(code=code, success=True, requires_approval=flag))

        failed = [r.code for r in results if not r.success]
        if failed:
            logger.warning(f"Permission update by {actor} failed for {failed}")

        details = {'requested': len(results), 'applied': len(changes), 'failed_codes': failed}
        if changes:
            self.audit_log.record(
                actor=actor,
                action_name="UPDATE",
                entity_name="PERMISSION",
                changes=changes,
                details=details,
            )
        elif results:
            self.audit_log.append(
                actor=actor,
                action_name="UPDATE",
                entity_name="PERMISSION",
                processing_result=ProcessingResult.ERRORED,
                details=details,
            )
        return results

    def set_group(self, grouping: str, requires_approval: bool, actor: str) -> List[PermissionUpdateResult]:
        """Toggle every code in a grouping"""
        entries = self.list_entries(grouping)
        if not entries:
            raise NotFoundError(f"Permission grouping {grouping} not found")
        return self.set_many(
            [{'code': entry.code, 'requires_approval': requires_approval} for entry in entries],
            actor=actor,
        )

    def is_enabled(self) -> bool:
        """Current state of the global maker-checker switch"""
        data = self.storage.load(self.CONFIG_TABLE, self.GLOBAL_SWITCH)
        if data is None:
            return self.enabled_by_default
        return bool(data['enabled'])

    def set_enabled(self, enabled: bool, actor: str) -> bool:
        """Turn maker-checker on or off for the whole tenant"""
        previous = self.is_enabled()
        self.storage.save(self.CONFIG_TABLE, self.GLOBAL_SWITCH, {
            'id': self.GLOBAL_SWITCH,
            'name': self.GLOBAL_SWITCH,
            'enabled': enabled,
        })
        self.audit_log.record(
            actor=actor,
            action_name="UPDATE",
            entity_name="CONFIGURATION",
            resource_id=self.GLOBAL_SWITCH,
            changes={'enabled': enabled},
            details={'previous': previous},
        )
        logger.info(f"Maker-checker switched {'on' if enabled else 'off'} by {actor}")
        return enabled
