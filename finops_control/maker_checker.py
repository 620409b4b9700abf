"""
Maker-Checker Gate

Single entry point for state-changing commands. The gate resolves the
handler, validates the payload, and asks the permission matrix whether the
command's permission code needs a second pair of eyes. Ungated commands run
immediately inside one storage transaction together with their ``processed``
audit event; gated commands are parked as PendingCommands for the approval
inbox with no side effect. Every submission produces exactly one audit event.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

from .audit import AuditLog, ProcessingResult
from .commands import Command, CommandContext, CommandHandler, CommandRegistry
from .errors import ControlPlaneError, HandlerError, StorageError
from .logging_config import log_action
from .permissions import PermissionMatrix
from .storage import StorageInterface

logger = logging.getLogger("finops.maker_checker")


class CommandState(Enum):
    """How a submitted command left the gate"""
    EXECUTED = "executed"
    AWAITING_APPROVAL = "awaiting_approval"


class PendingStatus(Enum):
    """Lifecycle of a parked command; only PENDING is non-terminal"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


@dataclass
class PendingCommand:
    """
    Command awaiting a checker decision

    The payload is stored in validated, JSON-serialized form and is parsed
    again when the command is finally executed.
    """
    id: int
    maker: str
    operation: str
    action_name: str
    entity_name: str
    payload: Dict[str, Any]
    made_on: datetime
    status: PendingStatus = PendingStatus.PENDING
    office_id: Optional[str] = None
    resource_id: Optional[str] = None
    checker: Optional[str] = None
    checked_on: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    audit_event_id: Optional[int] = None

    @property
    def permission_code(self) -> str:
        return f"{self.action_name}_{self.entity_name}"

    @property
    def is_pending(self) -> bool:
        return self.status is PendingStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'maker': self.maker,
            'operation': self.operation,
            'action_name': self.action_name,
            'entity_name': self.entity_name,
            'permission_code': self.permission_code,
            'payload': self.payload,
            'made_on': self.made_on.isoformat(),
            'status': self.status.value,
            'office_id': self.office_id,
            'resource_id': self.resource_id,
            'checker': self.checker,
            'checked_on': self.checked_on.isoformat() if self.checked_on else None,
            'rejection_reason': self.rejection_reason,
            'audit_event_id': self.audit_event_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingCommand':
        data = dict(data)
        data.pop('permission_code', None)
        data['made_on'] = datetime.fromisoformat(data['made_on'])
        data['status'] = PendingStatus(data['status'])
        if data.get('checked_on'):
            data['checked_on'] = datetime.fromisoformat(data['checked_on'])
        return cls(**data)


@dataclass
class CommandResult:
    """Outcome of a command that did not fail"""
    state: CommandState
    audit_event_id: int
    result: Dict[str, Any] = field(default_factory=dict)
    resource_id: Optional[str] = None
    pending_command_id: Optional[int] = None

    @property
    def awaiting_approval(self) -> bool:
        return self.state is CommandState.AWAITING_APPROVAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'audit_event_id': self.audit_event_id,
            'resource_id': self.resource_id,
            'pending_command_id': self.pending_command_id,
            'result': self.result,
        }


class MakerCheckerGate:
    """Routes commands to immediate execution or to the approval inbox"""

    PENDING_TABLE = "pending_commands"
    PENDING_SEQUENCE = "pending_commands"

    def __init__(self, storage: StorageInterface, audit_log: AuditLog,
                 permissions: PermissionMatrix, registry: CommandRegistry):
        self.storage = storage
        self.audit_log = audit_log
        self.permissions = permissions
        self.registry = registry

    def submit(self, command: Command, audit_failures: bool = True) -> CommandResult:
        """
        Submit a command

        Args:
            command: Operation, raw payload, maker and office
            audit_failures: Append the ``errored`` event for a failing command.
                The batch executor turns this off inside an enclosing
                transaction and records failures itself after rolling back.

        Returns:
            CommandResult in state EXECUTED or AWAITING_APPROVAL

        Raises:
            ValidationError: Unknown operation or malformed payload
            NotFoundError, ConflictError: Raised by the handler
            HandlerError: Handler failed with an untyped exception
            StorageError: Persistent store failure
        """
        try:
            handler = self.registry.resolve(command.operation)
        except ControlPlaneError as e:
            if audit_failures:
                self.record_failure(
                    actor=command.maker,
                    action_name=command.operation.upper(),
                    entity_name="UNKNOWN",
                    error=e,
                    office_id=command.office_id,
                    details={'operation': command.operation},
                )
            raise

        try:
            payload = self.registry.parse_payload(handler, command.payload)
        except ControlPlaneError as e:
            if audit_failures:
                self.record_failure(
                    actor=command.maker,
                    action_name=handler.action_name,
                    entity_name=handler.entity_name,
                    error=e,
                    office_id=command.office_id,
                    details={'operation': command.operation},
                )
            raise

        office_id = command.office_id or getattr(payload, 'office_id', None)

        if self.permissions.requires_approval(handler.permission_code):
            return self._park(handler, payload, command.maker, office_id)

        context = CommandContext(maker=command.maker, office_id=office_id)
        return self.execute(handler, payload, context, audit_failures=audit_failures)

    def _park(self, handler: CommandHandler, payload: BaseModel, maker: str,
              office_id: Optional[str]) -> CommandResult:
        """Store a PendingCommand and its awaiting_approval event atomically"""
        serialized = payload.model_dump(mode="json")
        with self.storage.atomic():
            pending = PendingCommand(
                id=self.storage.next_sequence(self.PENDING_SEQUENCE),
                maker=maker,
                operation=handler.operation,
                action_name=handler.action_name,
                entity_name=handler.entity_name,
                payload=serialized,
                made_on=datetime.now(timezone.utc),
                office_id=office_id,
            )
            event = self.audit_log.append(
                actor=maker,
                action_name=handler.action_name,
                entity_name=handler.entity_name,
                processing_result=ProcessingResult.AWAITING_APPROVAL,
                details={'operation': handler.operation, 'payload': serialized},
                office_id=office_id,
                command_id=pending.id,
            )
            pending.audit_event_id = event.id
            self.storage.save(self.PENDING_TABLE, str(pending.id), pending.to_dict())

        log_action(logger, "info", f"Command {handler.operation} parked for approval as #{pending.id}",
                   user_id=maker, action=handler.permission_code, correlation_id=event.id)
        return CommandResult(
            state=CommandState.AWAITING_APPROVAL,
            audit_event_id=event.id,
            pending_command_id=pending.id,
        )

    def execute(self, handler: CommandHandler, payload: BaseModel, context: CommandContext,
                audit_failures: bool = True) -> CommandResult:
        """
        Run a handler and append its single outcome event

        Used for direct submissions and for deferred execution after
        approval, where ``context`` carries the checker and pending id.
        """
        actor = context.checker or context.maker
        try:
            with self.audit_log.capture() as scope:
                with self.storage.atomic():
                    result = handler.execute(payload, context) or {}
                    resource_id = scope.resource_id or result.get('resource_id')
                    details = dict(scope.details)
                    details['operation'] = handler.operation
                    if context.checker:
                        details['maker'] = context.maker
                    event = self.audit_log.append(
                        actor=actor,
                        action_name=handler.action_name,
                        entity_name=handler.entity_name,
                        processing_result=ProcessingResult.PROCESSED,
                        resource_id=resource_id,
                        details=details,
                        changes=scope.changes,
                        office_id=scope.office_id or context.office_id,
                        command_id=context.pending_command_id,
                        checker=context.checker,
                    )
        except ControlPlaneError as e:
            if isinstance(e, StorageError):
                logger.exception(f"Storage failure while running {handler.operation}")
            if audit_failures:
                self.record_failure(actor, handler.action_name, handler.entity_name, e,
                                    office_id=context.office_id,
                                    command_id=context.pending_command_id,
                                    checker=context.checker,
                                    details={'operation': handler.operation})
            raise
        except Exception as e:
            logger.exception(f"Handler for {handler.operation} failed")
            error = HandlerError(f"Command {handler.operation} failed: {e}")
            if audit_failures:
                self.record_failure(actor, handler.action_name, handler.entity_name, error,
                                    office_id=context.office_id,
                                    command_id=context.pending_command_id,
                                    checker=context.checker,
                                    details={'operation': handler.operation})
            raise error from e

        log_action(logger, "info", f"Command {handler.operation} processed",
                   user_id=actor, action=handler.permission_code,
                   resource=resource_id, correlation_id=event.id)
        return CommandResult(
            state=CommandState.EXECUTED,
            audit_event_id=event.id,
            result=result,
            resource_id=resource_id,
            pending_command_id=context.pending_command_id,
        )

    def record_failure(self, actor: str, action_name: str, entity_name: str,
                       error: ControlPlaneError, office_id: Optional[str] = None,
                       command_id: Optional[int] = None, checker: Optional[str] = None,
                       details: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """
        Append the ``errored`` event for a failed command and stamp its id on
        the error as correlation id

        A storage outage while writing the event is logged; the original
        error is what the caller sees.
        """
        payload = dict(details or {})
        payload['error'] = {'code': error.code, 'message': error.message}
        try:
            event = self.audit_log.append(
                actor=actor,
                action_name=action_name,
                entity_name=entity_name,
                processing_result=ProcessingResult.ERRORED,
                details=payload,
                office_id=office_id,
                command_id=command_id,
                checker=checker,
            )
        except StorageError:
            logger.exception(f"Could not record failure of {action_name}_{entity_name}")
            return None

        error.audit_event_id = event.id
        log_action(logger, "warning", f"Command {action_name}_{entity_name} failed: {error.message}",
                   user_id=actor, action=f"{action_name}_{entity_name}", correlation_id=event.id)
        return event.id
