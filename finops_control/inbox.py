"""
Approval Inbox

Checker-side view of parked commands. A PendingCommand leaves ``pending``
exactly once: the transition is a compare-and-set on the status, so two
checkers racing on the same command cannot both win. Approval executes the
stored payload through the gate; rejection and withdrawal never touch the
handler.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit import AuditLog, ProcessingResult, as_aware
from .commands import CommandContext, CommandRegistry
from .errors import ConflictError, ControlPlaneError, NotFoundError, ValidationError
from .maker_checker import CommandResult, MakerCheckerGate, PendingCommand, PendingStatus

logger = logging.getLogger("finops.inbox")


class ApprovalInbox:
    """Decide, withdraw and browse pending commands"""

    def __init__(self, gate: MakerCheckerGate, audit_log: AuditLog, registry: CommandRegistry):
        self.gate = gate
        self.storage = gate.storage
        self.audit_log = audit_log
        self.registry = registry

    @property
    def table(self) -> str:
        return self.gate.PENDING_TABLE

    def get(self, pending_id: int) -> PendingCommand:
        """Get a pending command by id"""
        data = self.storage.load(self.table, str(pending_id))
        if data is None:
            raise NotFoundError(f"Pending command {pending_id} not found")
        return PendingCommand.from_dict(data)

    def _claim(self, pending_id: int, status: PendingStatus, updates: Dict[str, Any]) -> PendingCommand:
        """Move a command out of ``pending``; only one caller can win"""
        pending = self.get(pending_id)
        if not pending.is_pending:
            raise ConflictError(f"Pending command {pending_id} is already {pending.status.value}")

        updates = dict(updates)
        updates['status'] = status.value
        if not self.storage.compare_and_set(self.table, str(pending_id),
                                            {'status': PendingStatus.PENDING.value}, updates):
            raise ConflictError(f"Pending command {pending_id} was decided concurrently")
        return self.get(pending_id)

    def approve(self, pending_id: int, checker: str) -> CommandResult:
        """
        Approve a pending command and execute it

        The command is marked approved before it runs. If the handler then
        fails the command stays approved, the failure is recorded as an
        ``errored`` event and the error is re-raised.

        Raises:
            NotFoundError: Unknown pending command
            ConflictError: Command already decided or withdrawn
        """
        now = datetime.now(timezone.utc)
        pending = self._claim(pending_id, PendingStatus.APPROVED, {
            'checker': checker,
            'checked_on': now.isoformat(),
        })

        try:
            handler = self.registry.resolve(pending.operation)
            payload = self.registry.parse_payload(handler, pending.payload)
        except ControlPlaneError as e:
            self.gate.record_failure(checker, pending.action_name, pending.entity_name, e,
                                     office_id=pending.office_id, command_id=pending.id,
                                     checker=checker, details={'operation': pending.operation})
            raise

        context = CommandContext(
            maker=pending.maker,
            office_id=pending.office_id,
            checker=checker,
            pending_command_id=pending.id,
        )
        result = self.gate.execute(handler, payload, context)

        if result.resource_id is not None:
            self.storage.compare_and_set(self.table, str(pending.id),
                                         {'status': PendingStatus.APPROVED.value},
                                         {'resource_id': result.resource_id})

        logger.info(f"Pending command {pending.id} approved by {checker}")
        return result

    def reject(self, pending_id: int, checker: str, reason: Optional[str] = None) -> PendingCommand:
        """
        Reject a pending command; the handler is never called

        Raises:
            NotFoundError: Unknown pending command
            ConflictError: Command already decided or withdrawn
        """
        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            pending = self._claim(pending_id, PendingStatus.REJECTED, {
                'checker': checker,
                'checked_on': now.isoformat(),
                'rejection_reason': reason,
            })
            self.audit_log.append(
                actor=checker,
                action_name=pending.action_name,
                entity_name=pending.entity_name,
                processing_result=ProcessingResult.REJECTED,
                details={'operation': pending.operation, 'maker': pending.maker, 'reason': reason},
                office_id=pending.office_id,
                command_id=pending.id,
                checker=checker,
            )

        logger.info(f"Pending command {pending.id} rejected by {checker}")
        return pending

    def withdraw(self, pending_id: int, maker: str) -> PendingCommand:
        """
        Withdraw a pending command; only its maker may do so

        Raises:
            NotFoundError: Unknown pending command
            ConflictError: Command already decided or withdrawn
            ValidationError: Actor is not the maker
        """
        with self.storage.atomic():
            current = self.get(pending_id)
            if not current.is_pending:
                raise ConflictError(f"Pending command {pending_id} is already {current.status.value}")
            if current.maker != maker:
                raise ValidationError(f"Only the maker of pending command {pending_id} can withdraw it")

            pending = self._claim(pending_id, PendingStatus.WITHDRAWN, {
                'checked_on': datetime.now(timezone.utc).isoformat(),
            })
            self.audit_log.append(
                actor=maker,
                action_name=pending.action_name,
                entity_name=pending.entity_name,
                processing_result=ProcessingResult.WITHDRAWN,
                details={'operation': pending.operation},
                office_id=pending.office_id,
                command_id=pending.id,
            )

        logger.info(f"Pending command {pending.id} withdrawn by {maker}")
        return pending

    def _matching(
        self,
        maker: Optional[str] = None,
        checker: Optional[str] = None,
        status: Optional[PendingStatus] = None,
        office_id: Optional[str] = None,
        action_name: Optional[str] = None,
        entity_name: Optional[str] = None,
        resource_id: Optional[str] = None,
        made_from: Optional[datetime] = None,
        made_to: Optional[datetime] = None
    ) -> List[PendingCommand]:
        filters: Dict[str, Any] = {}
        if maker:
            filters['maker'] = maker
        if checker:
            filters['checker'] = checker
        if status:
            filters['status'] = status.value
        if office_id:
            filters['office_id'] = office_id
        if action_name:
            filters['action_name'] = action_name
        if entity_name:
            filters['entity_name'] = entity_name
        if resource_id:
            filters['resource_id'] = resource_id

        commands = [PendingCommand.from_dict(d) for d in self.storage.find(self.table, filters)]
        made_from, made_to = as_aware(made_from), as_aware(made_to)
        if made_from:
            commands = [c for c in commands if c.made_on >= made_from]
        if made_to:
            commands = [c for c in commands if c.made_on <= made_to]
        return commands

    def list(self, maker: Optional[str] = None, checker: Optional[str] = None,
             status: Optional[PendingStatus] = None, office_id: Optional[str] = None,
             action_name: Optional[str] = None, entity_name: Optional[str] = None,
             resource_id: Optional[str] = None, made_from: Optional[datetime] = None,
             made_to: Optional[datetime] = None, offset: int = 0, limit: Optional[int] = None,
             newest_first: bool = True) -> List[PendingCommand]:
        """
        List commands matching every given filter

        Returns:
            Commands ordered by id, newest first unless ``newest_first`` is False
        """
        commands = self._matching(maker, checker, status, office_id, action_name,
                                  entity_name, resource_id, made_from, made_to)
        commands.sort(key=lambda c: c.id, reverse=newest_first)
        commands = commands[offset:]
        if limit is not None:
            commands = commands[:limit]
        return commands

    def count(self, **filters) -> int:
        """Number of commands matching the same filters as ``list``"""
        return len(self._matching(**filters))

    def summary(self) -> Dict[str, int]:
        """Command counts per status"""
        result = {status.value: 0 for status in PendingStatus}
        commands = self._matching()
        for command in commands:
            result[command.status.value] += 1
        result['total'] = len(commands)
        return result

    def search_template(self) -> Dict[str, List[str]]:
        """Distinct values the inbox can be filtered by"""
        commands = self._matching()
        return {
            'action_names': sorted({c.action_name for c in commands}),
            'entity_names': sorted({c.entity_name for c in commands}),
            'makers': sorted({c.maker for c in commands}),
            'offices': sorted({c.office_id for c in commands if c.office_id}),
            'statuses': [status.value for status in PendingStatus],
        }
