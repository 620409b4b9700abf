"""
Batch Command Executor

Runs an ordered list of commands through the maker-checker gate. Without an
enclosing transaction every member stands alone. With one, the batch is all
or nothing: members that could not complete inside the transaction (unknown
operations, permission-gated commands) fail the batch before anything runs,
and any failure during the run rolls back every member's effects.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .commands import Command
from .errors import ConflictError, ControlPlaneError, ValidationError
from .maker_checker import CommandResult, MakerCheckerGate

logger = logging.getLogger("finops.batch")

STATUS_EXECUTED = 200
STATUS_AWAITING_APPROVAL = 202


@dataclass
class BatchRequest:
    """One member of a batch"""
    request_id: Any
    operation: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchResponse:
    """Outcome of one member, keyed by its request id"""
    request_id: Any
    status_code: int
    body: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'request_id': self.request_id,
            'status_code': self.status_code,
            'body': self.body,
            'error': self.error,
        }


@dataclass
class BatchResult:
    responses: List[BatchResponse]
    rolled_back: bool = False
    enclosing_transaction: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enclosing_transaction': self.enclosing_transaction,
            'rolled_back': self.rolled_back,
            'responses': [r.to_dict() for r in self.responses],
        }


def _success(request: BatchRequest, result: CommandResult) -> BatchResponse:
    status = STATUS_AWAITING_APPROVAL if result.awaiting_approval else STATUS_EXECUTED
    return BatchResponse(request_id=request.request_id, status_code=status, body=result.to_dict())


def _failure(request: BatchRequest, error: ControlPlaneError) -> BatchResponse:
    return BatchResponse(request_id=request.request_id, status_code=error.status_code,
                         error=error.to_dict())


class BatchCommandExecutor:
    """Fans a list of commands through the gate"""

    def __init__(self, gate: MakerCheckerGate):
        self.gate = gate

    def execute(self, requests: Sequence[BatchRequest], maker: str,
                office_id: Optional[str] = None,
                enclosing_transaction: bool = False) -> BatchResult:
        """
        Execute a batch

        Args:
            requests: Members in execution order
            maker: Actor submitting every member
            office_id: Office applied to members whose payload names none
            enclosing_transaction: Run all members in one storage transaction

        Returns:
            BatchResult with one response per request, in input order

        Raises:
            ValidationError: Duplicate request ids
        """
        seen = set()
        for request in requests:
            if request.request_id in seen:
                raise ValidationError(f"Duplicate request id {request.request_id} in batch")
            seen.add(request.request_id)

        if enclosing_transaction:
            result = self._execute_atomic(requests, maker, office_id)
        else:
            result = BatchResult(
                responses=[self._execute_one(r, maker, office_id) for r in requests],
            )

        failed = sum(1 for r in result.responses if r.status_code >= 300)
        logger.info(
            f"Batch of {len(requests)} by {maker} finished: {failed} failed, "
            f"enclosing_transaction={enclosing_transaction}, rolled_back={result.rolled_back}"
        )
        return result

    def _command(self, request: BatchRequest, maker: str, office_id: Optional[str]) -> Command:
        return Command(operation=request.operation, payload=request.payload,
                       maker=maker, office_id=office_id)

    def _execute_one(self, request: BatchRequest, maker: str, office_id: Optional[str]) -> BatchResponse:
        try:
            result = self.gate.submit(self._command(request, maker, office_id))
        except ControlPlaneError as e:
            return _failure(request, e)
        return _success(request, result)

    def _precheck(self, requests: Sequence[BatchRequest]) -> Optional[Tuple[BatchRequest, ControlPlaneError]]:
        """First member that cannot run inside an enclosing transaction"""
        for request in requests:
            if not self.gate.registry.is_registered(request.operation):
                return request, ValidationError(f"Unknown operation '{request.operation}'")
            handler = self.gate.registry.resolve(request.operation)
            if self.gate.permissions.requires_approval(handler.permission_code):
                return request, ValidationError(
                    f"Operation '{request.operation}' requires approval and cannot run "
                    f"inside an enclosing transaction"
                )
        return None

    def _execute_atomic(self, requests: Sequence[BatchRequest], maker: str,
                        office_id: Optional[str]) -> BatchResult:
        failure = self._precheck(requests)
        if failure is None:
            successes: List[BatchResponse] = []
            try:
                with self.gate.storage.atomic():
                    for request in requests:
                        try:
                            result = self.gate.submit(self._command(request, maker, office_id),
                                                      audit_failures=False)
                        except ControlPlaneError as e:
                            failure = (request, e)
                            raise
                        if result.awaiting_approval:
                            failure = (request, ConflictError(
                                f"Operation '{request.operation}' unexpectedly awaits approval"
                            ))
                            raise failure[1]
                        successes.append(_success(request, result))
            except ControlPlaneError as e:
                if failure is None:
                    # Commit of the enclosing transaction failed
                    failure = (None, e)
            else:
                return BatchResult(responses=successes, rolled_back=False, enclosing_transaction=True)

        return self._fail_all(requests, maker, office_id, failure)

    def _fail_all(self, requests: Sequence[BatchRequest], maker: str, office_id: Optional[str],
                  failure: Tuple[Optional[BatchRequest], ControlPlaneError]) -> BatchResult:
        """Report every member failed, writing one errored event each"""
        culprit, cause = failure
        culprit_id = culprit.request_id if culprit is not None else None
        responses: List[BatchResponse] = []

        for request in requests:
            if culprit is None or request is culprit:
                error = cause
            else:
                error = ValidationError(
                    f"Rolled back: batch request {culprit_id} failed: {cause.message}"
                )

            if self.gate.registry.is_registered(request.operation):
                handler = self.gate.registry.resolve(request.operation)
                action_name, entity_name = handler.action_name, handler.entity_name
            else:
                action_name, entity_name = request.operation.upper(), "UNKNOWN"

            payload_office = request.payload.get('office_id') if isinstance(request.payload, dict) else None
            self.gate.record_failure(
                actor=maker,
                action_name=action_name,
                entity_name=entity_name,
                error=error,
                office_id=office_id or payload_office,
                details={'operation': request.operation, 'batch_request_id': request.request_id},
            )
            responses.append(_failure(request, error))

        return BatchResult(responses=responses, rolled_back=True, enclosing_transaction=True)
