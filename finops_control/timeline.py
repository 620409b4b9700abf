"""
Audit Timeline

Read model over the audit log: events become display entries with a status
colour, a readable action label and flattened field changes, grouped by
calendar day in the configured timezone. Nothing here writes to the log.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .audit import AuditEvent, AuditLog, as_aware
from .errors import ValidationError

DISPLAY_SUCCESS = "success"
DISPLAY_WARNING = "warning"
DISPLAY_ERROR = "error"
DISPLAY_INFO = "info"


def derive_display_status(processing_result: str) -> str:
    """Map a processing result to a display status"""
    result = (processing_result or "").lower()
    if "processed" in result or "success" in result:
        return DISPLAY_SUCCESS
    if "awaiting" in result or "pending" in result:
        return DISPLAY_WARNING
    if "error" in result or "fail" in result:
        return DISPLAY_ERROR
    return DISPLAY_INFO


def _humanize(word: str) -> str:
    return " ".join(part.capitalize() for part in word.replace("-", "_").split("_") if part)


def humanize_label(action_name: str, entity_name: str) -> str:
    """``CREATE`` + ``JOURNALENTRY`` -> ``Journalentry Create``"""
    return f"{_humanize(entity_name)} {_humanize(action_name)}".strip()


def to_detail_value(value: Any) -> str:
    """
    Flatten a change value for display

    Lists are joined with ", ", objects shrink to their username or display
    name, and any other object is shown as "updated".
    """
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(to_detail_value(v) for v in value)
    if isinstance(value, dict):
        return str(value.get('username') or value.get('display_name') or "updated")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float, Decimal)):
        return str(value)
    return "updated"


@dataclass
class ChangeItem:
    field: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {'field': self.field, 'value': self.value}


def extract_change_items(changes: Optional[Dict[str, Any]]) -> List[ChangeItem]:
    """One display item per changed field, in recorded order"""
    return [ChangeItem(field=str(k), value=to_detail_value(v)) for k, v in (changes or {}).items()]


@dataclass
class TimelineEntry:
    """Display form of one audit event"""
    event_id: int
    timestamp: datetime
    actor: str
    action_name: str
    entity_name: str
    action_label: str
    processing_result: str
    display_status: str
    resource_id: Optional[str] = None
    office_id: Optional[str] = None
    command_id: Optional[int] = None
    checker: Optional[str] = None
    changes: List[ChangeItem] = field(default_factory=list)

    @property
    def change_count(self) -> int:
        return len(self.changes)

    @classmethod
    def from_event(cls, event: AuditEvent, tz: tzinfo) -> 'TimelineEntry':
        return cls(
            event_id=event.id,
            timestamp=event.timestamp.astimezone(tz),
            actor=event.actor,
            action_name=event.action_name,
            entity_name=event.entity_name,
            action_label=humanize_label(event.action_name, event.entity_name),
            processing_result=event.processing_result.value,
            display_status=derive_display_status(event.processing_result.value),
            resource_id=event.resource_id,
            office_id=event.office_id,
            command_id=event.command_id,
            checker=event.checker,
            changes=extract_change_items(event.changes),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'timestamp': self.timestamp.isoformat(),
            'actor': self.actor,
            'action_name': self.action_name,
            'entity_name': self.entity_name,
            'action_label': self.action_label,
            'processing_result': self.processing_result,
            'display_status': self.display_status,
            'resource_id': self.resource_id,
            'office_id': self.office_id,
            'command_id': self.command_id,
            'checker': self.checker,
            'change_count': self.change_count,
            'changes': [c.to_dict() for c in self.changes],
        }


@dataclass
class DayGroup:
    day: date
    entries: List[TimelineEntry]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.day.isoformat(),
            'event_count': len(self.entries),
            'entries': [e.to_dict() for e in self.entries],
        }


def group_by_day(entries: Iterable[TimelineEntry]) -> List[DayGroup]:
    """
    Group entries by the calendar day of their (already localized) timestamp

    Days are returned most recent first; entries inside a day are ascending
    by (timestamp, id). Every entry lands in exactly one group.
    """
    days: Dict[date, List[TimelineEntry]] = {}
    for entry in entries:
        days.setdefault(entry.timestamp.date(), []).append(entry)

    groups = []
    for day in sorted(days, reverse=True):
        day_entries = sorted(days[day], key=lambda e: (e.timestamp, e.event_id))
        groups.append(DayGroup(day=day, entries=day_entries))
    return groups


@dataclass
class TimelineFilters:
    """Optional substring and status filters, case-insensitive"""
    actor: Optional[str] = None
    action: Optional[str] = None
    status: Optional[str] = None

    def matches(self, entry: TimelineEntry) -> bool:
        if self.actor and self.actor.lower() not in entry.actor.lower():
            return False
        if self.action:
            needle = self.action.lower()
            haystacks = (entry.action_label.lower(),
                         f"{entry.action_name}_{entry.entity_name}".lower())
            if not any(needle in h for h in haystacks):
                return False
        if self.status and self.status.lower() != entry.display_status:
            return False
        return True


@dataclass
class TimelinePage:
    groups: List[DayGroup]
    total_events: int
    has_more: bool = False
    page: Optional[int] = None
    days_per_page: Optional[int] = None
    total_days: Optional[int] = None
    next_cursor: Optional[int] = None

    @property
    def entries(self) -> List[TimelineEntry]:
        return [entry for group in self.groups for entry in group.entries]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'groups': [g.to_dict() for g in self.groups],
            'total_events': self.total_events,
            'has_more': self.has_more,
            'page': self.page,
            'days_per_page': self.days_per_page,
            'total_days': self.total_days,
            'next_cursor': self.next_cursor,
        }


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone '{name}'")


class AuditAggregator:
    """Day-grouped, paginated timeline over an AuditLog"""

    def __init__(self, audit_log: AuditLog, timezone_name: str = "UTC"):
        self.audit_log = audit_log
        self.tz = resolve_timezone(timezone_name)

    def _entries(self, start: Optional[datetime], end: Optional[datetime],
                 filters: Optional[TimelineFilters]) -> List[TimelineEntry]:
        # naive bounds are wall-clock times in the timeline zone
        start, end = as_aware(start, self.tz), as_aware(end, self.tz)
        events = self.audit_log.get_all_events(start_time=start, end_time=end)
        entries = [TimelineEntry.from_event(event, self.tz) for event in events]
        if filters:
            entries = [e for e in entries if filters.matches(e)]
        return entries

    def timeline_by_day(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                        page: int = 1, days_per_page: int = 7,
                        filters: Optional[TimelineFilters] = None) -> TimelinePage:
        """
        Page through day groups

        Args:
            start: Inclusive lower bound on event time
            end: Inclusive upper bound on event time
            page: 1-based page number
            days_per_page: Day groups per page
            filters: Optional entry filters

        Returns:
            TimelinePage holding at most ``days_per_page`` groups
        """
        if page < 1:
            raise ValidationError("page must be at least 1")
        if days_per_page < 1:
            raise ValidationError("days_per_page must be at least 1")

        entries = self._entries(start, end, filters)
        groups = group_by_day(entries)
        first = (page - 1) * days_per_page
        selected = groups[first:first + days_per_page]
        return TimelinePage(
            groups=selected,
            total_events=len(entries),
            has_more=first + days_per_page < len(groups),
            page=page,
            days_per_page=days_per_page,
            total_days=len(groups),
        )

    def timeline_by_cursor(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                           after_id: Optional[int] = None, limit: int = 50,
                           filters: Optional[TimelineFilters] = None) -> TimelinePage:
        """
        Page through events by id

        Events with id greater than ``after_id`` are taken in id order, up to
        ``limit``, then grouped by day. ``next_cursor`` is the last id
        returned while more events remain.
        """
        if limit < 1:
            raise ValidationError("limit must be at least 1")

        entries = self._entries(start, end, filters)
        entries.sort(key=lambda e: e.event_id)
        if after_id is not None:
            entries = [e for e in entries if e.event_id > after_id]

        selected = entries[:limit]
        has_more = len(entries) > limit
        return TimelinePage(
            groups=group_by_day(selected),
            total_events=len(entries),
            has_more=has_more,
            next_cursor=selected[-1].event_id if has_more else None,
        )
