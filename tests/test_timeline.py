"""
Tests for the audit timeline read model
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from finops_control.audit import AuditEvent, AuditLog, ProcessingResult
from finops_control.errors import ValidationError
from finops_control.storage import InMemoryStorage
from finops_control.timeline import (
    AuditAggregator, TimelineEntry, TimelineFilters, derive_display_status,
    extract_change_items, group_by_day, humanize_label, to_detail_value
)


class TestPureFunctions:
    """Display derivations"""

    @pytest.mark.parametrize("result,expected", [
        ("processed", "success"),
        ("PROCESSED", "success"),
        ("success", "success"),
        ("partially_processed", "success"),
        ("awaiting_approval", "warning"),
        ("pending", "warning"),
        ("errored", "error"),
        ("failed", "error"),
        ("rejected", "info"),
        ("withdrawn", "info"),
        ("", "info"),
    ])
    def test_display_status(self, result, expected):
        assert derive_display_status(result) == expected

    def test_humanize_label(self):
        assert humanize_label("CREATE", "JOURNALENTRY") == "Journalentry Create"
        assert humanize_label("UPDATE", "GL_ACCOUNT") == "Gl Account Update"

    def test_detail_values(self):
        assert to_detail_value(["a", "b", 3]) == "a, b, 3"
        assert to_detail_value({"username": "alice", "id": 7}) == "alice"
        assert to_detail_value({"display_name": "Alice A."}) == "Alice A."
        assert to_detail_value({"id": 7}) == "updated"
        assert to_detail_value(True) == "true"
        assert to_detail_value("100.00") == "100.00"
        assert to_detail_value(None) == ""

    def test_extract_change_items(self):
        items = extract_change_items({"amount": "10.00", "tags": ["x", "y"]})
        assert [(i.field, i.value) for i in items] == [("amount", "10.00"), ("tags", "x, y")]
        assert extract_change_items(None) == []


def make_entry(event_id, when, result="processed"):
    return TimelineEntry(
        event_id=event_id,
        timestamp=when,
        actor="alice",
        action_name="CREATE",
        entity_name="JOURNALENTRY",
        action_label="Journalentry Create",
        processing_result=result,
        display_status=derive_display_status(result),
    )


class TestGroupByDay:
    """Lossless day grouping"""

    def test_groups_are_lossless_and_ordered(self):
        base = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        entries = [
            make_entry(3, base + timedelta(days=1)),
            make_entry(1, base),
            make_entry(2, base + timedelta(hours=5)),
            make_entry(4, base + timedelta(days=3)),
        ]

        groups = group_by_day(entries)

        assert [g.day for g in groups] == [date(2024, 3, 4), date(2024, 3, 2), date(2024, 3, 1)]
        assert [e.event_id for e in groups[2].entries] == [1, 2]
        flattened = sorted(e.event_id for g in groups for e in g.entries)
        assert flattened == [1, 2, 3, 4]

    def test_same_timestamp_ordered_by_id(self):
        when = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
        groups = group_by_day([make_entry(9, when), make_entry(8, when)])
        assert [e.event_id for e in groups[0].entries] == [8, 9]


def seed_events(storage, timestamps, result=ProcessingResult.PROCESSED, actor="alice"):
    """Store events with fixed timestamps, bypassing the clock"""
    start = storage.count(AuditLog.TABLE)
    for offset, when in enumerate(timestamps, start=1):
        event = AuditEvent(
            id=start + offset,
            timestamp=when,
            actor=actor,
            action_name="CREATE",
            entity_name="JOURNALENTRY",
            resource_id=f"T{start + offset}",
            processing_result=result,
            details={"changes": {"amount": "10.00", "office": {"display_name": "HQ"}}},
        )
        storage.save(AuditLog.TABLE, str(event.id), event.to_dict())


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def aggregator(storage):
    return AuditAggregator(AuditLog(storage), "UTC")


class TestAggregator:
    """Paginated timeline"""

    def test_entry_fields(self, storage, aggregator):
        seed_events(storage, [datetime(2024, 3, 1, 10, tzinfo=timezone.utc)])
        page = aggregator.timeline_by_day()
        entry = page.groups[0].entries[0]

        assert entry.action_label == "Journalentry Create"
        assert entry.display_status == "success"
        assert entry.change_count == 2
        assert [(c.field, c.value) for c in entry.changes] == [("amount", "10.00"), ("office", "HQ")]

    def test_day_pages(self, storage, aggregator):
        base = datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        seed_events(storage, [base + timedelta(days=d) for d in range(5)])

        first = aggregator.timeline_by_day(page=1, days_per_page=2)
        second = aggregator.timeline_by_day(page=2, days_per_page=2)
        last = aggregator.timeline_by_day(page=3, days_per_page=2)

        assert [g.day.day for g in first.groups] == [5, 4]
        assert [g.day.day for g in second.groups] == [3, 2]
        assert [g.day.day for g in last.groups] == [1]
        assert first.has_more and second.has_more and not last.has_more
        assert first.total_days == 5
        assert first.total_events == 5

    def test_cursor_pages(self, storage, aggregator):
        base = datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        seed_events(storage, [base + timedelta(minutes=m) for m in range(5)])

        first = aggregator.timeline_by_cursor(limit=2)
        assert [e.event_id for e in first.entries] == [1, 2]
        assert first.next_cursor == 2

        second = aggregator.timeline_by_cursor(after_id=first.next_cursor, limit=2)
        assert [e.event_id for e in second.entries] == [3, 4]

        third = aggregator.timeline_by_cursor(after_id=second.next_cursor, limit=2)
        assert [e.event_id for e in third.entries] == [5]
        assert third.next_cursor is None
        assert not third.has_more

    def test_time_bounds(self, storage, aggregator):
        base = datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        seed_events(storage, [base, base + timedelta(days=1), base + timedelta(days=2)])
        page = aggregator.timeline_by_day(start=base + timedelta(hours=1),
                                          end=base + timedelta(days=1))
        assert [e.event_id for e in page.entries] == [2]

    def test_naive_bounds(self, storage, aggregator):
        base = datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        seed_events(storage, [base, base + timedelta(days=1), base + timedelta(days=2)])
        page = aggregator.timeline_by_day(start=datetime(2024, 3, 1, 11),
                                          end=datetime(2024, 3, 2, 10))
        assert [e.event_id for e in page.entries] == [2]

        cursor = aggregator.timeline_by_cursor(start=datetime(2024, 3, 2))
        assert sorted(e.event_id for e in cursor.entries) == [2, 3]

    def test_naive_bounds_use_timeline_zone(self, storage):
        # 22:30 UTC on 1 March is 01:30 on 2 March in Nairobi
        seed_events(storage, [datetime(2024, 3, 1, 22, 30, tzinfo=timezone.utc)])
        nairobi = AuditAggregator(AuditLog(storage), "Africa/Nairobi")
        assert len(nairobi.timeline_by_day(start=datetime(2024, 3, 2)).entries) == 1
        assert nairobi.timeline_by_day(end=datetime(2024, 3, 1, 23, 59)).entries == []

    def test_filters(self, storage, aggregator):
        base = datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        seed_events(storage, [base], actor="alice")
        seed_events(storage, [base + timedelta(minutes=1)], actor="bob",
                    result=ProcessingResult.ERRORED)

        by_actor = aggregator.timeline_by_day(filters=TimelineFilters(actor="BO"))
        assert [e.actor for e in by_actor.entries] == ["bob"]

        by_status = aggregator.timeline_by_day(filters=TimelineFilters(status="error"))
        assert [e.event_id for e in by_status.entries] == [2]

        by_action = aggregator.timeline_by_day(filters=TimelineFilters(action="journalentry create"))
        assert len(by_action.entries) == 2

    def test_timezone_moves_day_boundary(self, storage):
        seed_events(storage, [datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc)])
        utc = AuditAggregator(AuditLog(storage), "UTC").timeline_by_day()
        nairobi = AuditAggregator(AuditLog(storage), "Africa/Nairobi").timeline_by_day()
        assert utc.groups[0].day == date(2024, 3, 1)
        assert nairobi.groups[0].day == date(2024, 3, 2)

    def test_does_not_mutate_log(self, storage, aggregator):
        audit_log = AuditLog(storage)
        audit_log.append("alice", "CREATE", "JOURNALENTRY", ProcessingResult.PROCESSED)
        before = [e.to_dict() for e in audit_log.get_all_events()]
        aggregator.timeline_by_day()
        aggregator.timeline_by_cursor()
        assert [e.to_dict() for e in audit_log.get_all_events()] == before

    def test_invalid_arguments(self, aggregator):
        with pytest.raises(ValidationError):
            aggregator.timeline_by_day(page=0)
        with pytest.raises(ValidationError):
            aggregator.timeline_by_cursor(limit=0)
        with pytest.raises(ValidationError):
            AuditAggregator(aggregator.audit_log, "Mars/Olympus_Mons")
