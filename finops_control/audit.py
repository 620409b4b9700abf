"""
Audit Log Module

Append-only, hash-chained log of every attempted command. Events carry a
per-tenant monotonically increasing integer id and are totally ordered by
(timestamp, id). Each append bumps the sequence, writes the event and moves
the chain head inside one storage transaction, so concurrent writers never
interleave partial records.

Components report their state changes through ``AuditLog.record``. When the
maker-checker gate runs a command it opens a capture scope; records made
inside that scope are folded into the single event the gate writes for the
command instead of being appended separately.
"""

import contextvars
import hashlib
import json
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from .errors import NotFoundError
from .storage import StorageInterface


def as_aware(value: Optional[datetime], tz: tzinfo = timezone.utc) -> Optional[datetime]:
    """Attach ``tz`` to a naive datetime; aware values pass through"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value


class ProcessingResult(Enum):
    """Outcome recorded for an attempted command"""
    PROCESSED = "processed"
    AWAITING_APPROVAL = "awaiting_approval"
    REJECTED = "rejected"
    ERRORED = "errored"
    WITHDRAWN = "withdrawn"


def _to_json_value(value: Any) -> Any:
    """Convert values to JSON-serializable form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_json_value(v) for v in value]
    return value


@dataclass
class AuditEvent:
    """
    Immutable audit event with hash chaining for tamper detection
    """
    id: int
    timestamp: datetime
    actor: str
    action_name: str   # CREATE, REVERSE, UPDATE, ...
    entity_name: str   # JOURNALENTRY, PERMISSION, ...
    resource_id: Optional[str]
    processing_result: ProcessingResult
    details: Dict[str, Any] = field(default_factory=dict)
    office_id: Optional[str] = None
    command_id: Optional[int] = None  # PendingCommand id for maker-checker traffic
    checker: Optional[str] = None
    previous_hash: str = ""
    current_hash: str = ""

    def __post_init__(self):
        self.details = _to_json_value(self.details or {})

    @property
    def permission_code(self) -> str:
        return f"{self.action_name}_{self.entity_name}"

    @property
    def changes(self) -> Dict[str, Any]:
        changes = self.details.get('changes')
        return changes if isinstance(changes, dict) else {}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = self.to_dict()
        hash_data.pop('current_hash')
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'actor': self.actor,
            'action_name': self.action_name,
            'entity_name': self.entity_name,
            'resource_id': self.resource_id,
            'processing_result': self.processing_result.value,
            'details': self.details,
            'office_id': self.office_id,
            'command_id': self.command_id,
            'checker': self.checker,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        data['processing_result'] = ProcessingResult(data['processing_result'])
        return cls(**data)


@dataclass
class AuditCapture:
    """Facts reported by components while one command executes"""
    resource_id: Optional[str] = None
    entity_name: Optional[str] = None
    office_id: Optional[str] = None
    changes: Dict[str, Any] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)

    def absorb(self, entity_name: str, resource_id: Optional[str],
               changes: Optional[Dict[str, Any]], details: Optional[Dict[str, Any]],
               office_id: Optional[str]) -> None:
        # First component to report owns the resource identity
        if self.resource_id is None:
            self.resource_id = resource_id
            self.entity_name = entity_name
        if self.office_id is None:
            self.office_id = office_id
        self.changes.update(changes or {})
        self.details.update(details or {})


_active_capture: contextvars.ContextVar = contextvars.ContextVar('audit_capture', default=None)


class AuditLog:
    """
    Hash-chained, append-only audit log
    """

    TABLE = "audit_events"
    CHAIN_TABLE = "audit_chain"
    SEQUENCE = "audit_events"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def append(
        self,
        actor: str,
        action_name: str,
        entity_name: str,
        processing_result: ProcessingResult,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        changes: Optional[Dict[str, Any]] = None,
        office_id: Optional[str] = None,
        command_id: Optional[int] = None,
        checker: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the log

        Args:
            actor: Actor the event is attributed to (maker, or checker on decisions)
            action_name: Action part of the permission code
            entity_name: Entity part of the permission code
            processing_result: Outcome of the attempt
            resource_id: Id of the affected resource, when one exists
            details: Structured payload stored with the event
            changes: Field -> new value map, stored under details['changes']
            office_id: Office the command was made for
            command_id: PendingCommand id when maker-checker was involved
            checker: Deciding actor for approvals and rejections

        Returns:
            The stored AuditEvent
        """
        payload = dict(details or {})
        if changes:
            payload['changes'] = dict(changes)

        with self.storage.atomic():
            head = self.storage.load(self.CHAIN_TABLE, "head") or {
                'id': "head", 'hash': "", 'timestamp': None
            }
            now = datetime.now(timezone.utc)
            if head['timestamp']:
                # Keep (timestamp, id) ordering consistent with id ordering
                now = max(now, datetime.fromisoformat(head['timestamp']))

            event = AuditEvent(
                id=self.storage.next_sequence(self.SEQUENCE),
                timestamp=now,
                actor=actor,
                action_name=action_name,
                entity_name=entity_name,
                resource_id=str(resource_id) if resource_id is not None else None,
                processing_result=processing_result,
                details=payload,
                office_id=office_id,
                command_id=command_id,
                checker=checker,
                previous_hash=head['hash'],
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.TABLE, str(event.id), event.to_dict())
            self.storage.save(self.CHAIN_TABLE, "head", {
                'id': "head",
                'hash': event.current_hash,
                'timestamp': event.timestamp.isoformat(),
            })

        return event

    def record(
        self,
        actor: str,
        action_name: str,
        entity_name: str,
        resource_id: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        office_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Report a successful state change made by a component

        Inside a capture scope the facts are handed to the scope and None is
        returned; otherwise a ``processed`` event is appended immediately.
        """
        capture = _active_capture.get()
        if capture is not None:
            capture.absorb(entity_name, resource_id, changes, details, office_id)
            return None
        return self.append(
            actor=actor,
            action_name=action_name,
            entity_name=entity_name,
            processing_result=ProcessingResult.PROCESSED,
            resource_id=resource_id,
            details=details,
            changes=changes,
            office_id=office_id,
        )

    @contextmanager
    def capture(self) -> Iterator[AuditCapture]:
        """Collect component records instead of appending them"""
        scope = AuditCapture()
        token = _active_capture.set(scope)
        try:
            yield scope
        finally:
            _active_capture.reset(token)

    def get_event(self, event_id: int) -> AuditEvent:
        """Get a specific audit event by ID"""
        data = self.storage.load(self.TABLE, str(event_id))
        if not data:
            raise NotFoundError(f"Audit event {event_id} not found")
        return AuditEvent.from_dict(data)

    def search(
        self,
        action_name: Optional[str] = None,
        entity_name: Optional[str] = None,
        resource_id: Optional[str] = None,
        actor: Optional[str] = None,
        office_id: Optional[str] = None,
        processing_result: Optional[ProcessingResult] = None,
        command_id: Optional[int] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> List[AuditEvent]:
        """
        Search events by exact field values and an inclusive time range

        Returns:
            Matching events ordered by (timestamp, id)
        """
        filters: Dict[str, Any] = {}
        if action_name:
            filters['action_name'] = action_name
        if entity_name:
            filters['entity_name'] = entity_name
        if resource_id is not None:
            filters['resource_id'] = str(resource_id)
        if actor:
            filters['actor'] = actor
        if office_id is not None:
            filters['office_id'] = office_id
        if processing_result:
            filters['processing_result'] = processing_result.value
        if command_id is not None:
            filters['command_id'] = command_id

        events = [AuditEvent.from_dict(data) for data in self.storage.find(self.TABLE, filters)]
        start_time, end_time = as_aware(start_time), as_aware(end_time)
        if start_time:
            events = [e for e in events if e.timestamp >= start_time]
        if end_time:
            events = [e for e in events if e.timestamp <= end_time]

        events.sort(key=lambda e: (e.timestamp, e.id))
        return events

    def get_all_events(self, start_time: Optional[datetime] = None,
                       end_time: Optional[datetime] = None) -> List[AuditEvent]:
        """Get all audit events within time range"""
        return self.search(start_time=start_time, end_time=end_time)

    def events_for_resource(self, entity_name: str, resource_id: str) -> List[AuditEvent]:
        """Audit provenance of one resource"""
        return self.search(entity_name=entity_name, resource_id=resource_id)

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.TABLE)

    def get_latest_hash(self) -> str:
        """Get the hash of the most recent audit event"""
        head = self.storage.load(self.CHAIN_TABLE, "head")
        return head['hash'] if head else ""

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result: Dict[str, Any] = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
            'sequence_gaps': [],
        }

        events = self.get_all_events()
        events.sort(key=lambda e: e.id)
        result['total_events'] = len(events)

        previous_hash = ""
        expected_id = 1
        for event in events:
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            if event.id != expected_id:
                result['valid'] = False
                result['sequence_gaps'].append({'expected_id': expected_id, 'actual_id': event.id})
            previous_hash = event.current_hash
            expected_id = event.id + 1

        if events and self.get_latest_hash() != events[-1].current_hash:
            result['valid'] = False
            result['chain_breaks'].append({'event_id': None, 'reason': 'chain head does not match last event'})

        return result
