"""
Tests for the approval inbox
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from finops_control.audit import ProcessingResult
from finops_control.commands import Command
from finops_control.config import FinopsConfig
from finops_control.errors import ConflictError, NotFoundError, ValidationError
from finops_control.ledger import GLAccountType
from finops_control.maker_checker import CommandState, PendingStatus
from finops_control.storage import InMemoryStorage
from finops_control.system import ControlPlane


@pytest.fixture
def system():
    config = FinopsConfig(database_url="memory://", maker_checker_enabled=True,
                          missing_permission_policy="allow")
    system = ControlPlane(storage=InMemoryStorage(), config=config)
    system.ensure_tenant()
    system.chart.create_account("A", "Cash", GLAccountType.ASSET, actor="setup")
    system.chart.create_account("B", "Deposits", GLAccountType.LIABILITY, actor="setup")
    system.permissions.set_group("accounting", True, actor="admin")
    return system


def submit_entry(system, maker="maker1", account="A", office_id="HQ"):
    result = system.gate.submit(Command(
        operation="create_journal_entry",
        payload={
            "office_id": office_id,
            "currency_code": "USD",
            "debits": [{"gl_account_id": account, "amount": "100"}],
            "credits": [{"gl_account_id": "B", "amount": "100"}],
        },
        maker=maker,
    ))
    assert result.state is CommandState.AWAITING_APPROVAL
    return result.pending_command_id


class TestApprove:
    """Approving parked commands"""

    def test_approve_executes_with_one_event(self, system):
        """Test approval runs the command and appends exactly one event"""
        pending_id = submit_entry(system)
        before = system.audit_log.count_events()

        result = system.inbox.approve(pending_id, checker="checker1")

        assert result.state is CommandState.EXECUTED
        assert result.resource_id == "T1"
        assert system.ledger.get_entry("T1").created_by == "maker1"
        assert system.audit_log.count_events() == before + 1

        event = system.audit_log.get_event(result.audit_event_id)
        assert event.processing_result is ProcessingResult.PROCESSED
        assert event.checker == "checker1"
        assert event.actor == "checker1"
        assert event.command_id == pending_id
        assert event.details["maker"] == "maker1"

        pending = system.inbox.get(pending_id)
        assert pending.status is PendingStatus.APPROVED
        assert pending.checker == "checker1"
        assert pending.checked_on is not None
        assert pending.resource_id == "T1"

    def test_approve_twice_conflicts(self, system):
        pending_id = submit_entry(system)
        system.inbox.approve(pending_id, checker="checker1")
        with pytest.raises(ConflictError):
            system.inbox.approve(pending_id, checker="checker2")
        assert len(system.ledger.search_entries()) == 1

    def test_approve_unknown(self, system):
        with pytest.raises(NotFoundError):
            system.inbox.approve(42, checker="checker1")

    def test_failed_execution_stays_approved(self, system):
        """Test a handler failure after approval is recorded and re-raised"""
        pending_id = submit_entry(system, account="MISSING")
        before = system.audit_log.count_events()

        with pytest.raises(NotFoundError) as exc_info:
            system.inbox.approve(pending_id, checker="checker1")

        assert system.inbox.get(pending_id).status is PendingStatus.APPROVED
        assert system.ledger.search_entries() == []
        assert system.audit_log.count_events() == before + 1
        event = system.audit_log.get_event(exc_info.value.audit_event_id)
        assert event.processing_result is ProcessingResult.ERRORED
        assert event.command_id == pending_id
        assert event.checker == "checker1"

    def test_concurrent_approvals_execute_once(self, system):
        """Test racing checkers produce exactly one execution"""
        pending_id = submit_entry(system)
        outcomes = []
        barrier = threading.Barrier(5)

        def attempt(i):
            barrier.wait()
            try:
                system.inbox.approve(pending_id, checker=f"checker{i}")
                outcomes.append("approved")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("approved") == 1
        assert outcomes.count("conflict") == 4
        assert len(system.ledger.search_entries()) == 1
        processed = system.audit_log.search(processing_result=ProcessingResult.PROCESSED,
                                            entity_name="JOURNALENTRY")
        assert len(processed) == 1

    def test_approve_and_reject_race_to_one_terminal_state(self, system):
        """Test an approve racing a reject leaves exactly one decision"""
        for _ in range(10):
            pending_id = submit_entry(system)
            entries_before = len(system.ledger.search_entries())
            outcomes = {}
            barrier = threading.Barrier(2)

            def decide(name, action):
                barrier.wait()
                try:
                    action()
                    outcomes[name] = "won"
                except ConflictError:
                    outcomes[name] = "conflict"

            threads = [
                threading.Thread(target=decide, args=(
                    "approve", lambda: system.inbox.approve(pending_id, checker="checker1"))),
                threading.Thread(target=decide, args=(
                    "reject", lambda: system.inbox.reject(pending_id, checker="checker2"))),
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert sorted(outcomes.values()) == ["conflict", "won"]
            status = system.inbox.get(pending_id).status
            new_entries = len(system.ledger.search_entries()) - entries_before
            if outcomes["approve"] == "won":
                assert status is PendingStatus.APPROVED
                assert new_entries == 1
            else:
                assert status is PendingStatus.REJECTED
                assert new_entries == 0

            decisions = [e for e in system.audit_log.search(command_id=pending_id)
                         if e.processing_result is not ProcessingResult.AWAITING_APPROVAL]
            assert len(decisions) == 1


class TestRejectAndWithdraw:
    """Decisions without side effects"""

    def test_reject(self, system):
        pending_id = submit_entry(system)
        pending = system.inbox.reject(pending_id, checker="checker1", reason="wrong office")

        assert pending.status is PendingStatus.REJECTED
        assert pending.rejection_reason == "wrong office"
        assert system.ledger.search_entries() == []
        events = system.audit_log.search(processing_result=ProcessingResult.REJECTED)
        assert len(events) == 1
        assert events[0].command_id == pending_id
        assert events[0].details["reason"] == "wrong office"

        with pytest.raises(ConflictError):
            system.inbox.approve(pending_id, checker="checker2")

    def test_reject_after_approve_conflicts(self, system):
        pending_id = submit_entry(system)
        system.inbox.approve(pending_id, checker="checker1")
        with pytest.raises(ConflictError):
            system.inbox.reject(pending_id, checker="checker2")

    def test_withdraw_by_maker(self, system):
        pending_id = submit_entry(system)
        pending = system.inbox.withdraw(pending_id, maker="maker1")

        assert pending.status is PendingStatus.WITHDRAWN
        assert len(system.audit_log.search(processing_result=ProcessingResult.WITHDRAWN)) == 1
        with pytest.raises(ConflictError):
            system.inbox.approve(pending_id, checker="checker1")

    def test_withdraw_by_someone_else(self, system):
        pending_id = submit_entry(system)
        with pytest.raises(ValidationError):
            system.inbox.withdraw(pending_id, maker="intruder")
        assert system.inbox.get(pending_id).is_pending


class TestBrowsing:
    """List, summary and search template"""

    def test_list_filters(self, system):
        first = submit_entry(system, maker="maker1")
        second = submit_entry(system, maker="maker2", office_id="BR1")
        submit_entry(system, maker="maker1")
        system.inbox.reject(first, checker="checker1")

        assert [c.id for c in system.inbox.list()] == [3, 2, 1]
        assert [c.id for c in system.inbox.list(newest_first=False)] == [1, 2, 3]
        assert [c.id for c in system.inbox.list(maker="maker1")] == [3, 1]
        assert [c.id for c in system.inbox.list(status=PendingStatus.PENDING)] == [3, second]
        assert [c.id for c in system.inbox.list(office_id="BR1")] == [second]
        assert [c.id for c in system.inbox.list(checker="checker1")] == [first]
        assert [c.id for c in system.inbox.list(offset=1, limit=1)] == [2]
        assert system.inbox.count(maker="maker1") == 2

    def test_list_with_naive_date_range(self, system):
        """Test a date range without a timezone is read as UTC"""
        pending_id = submit_entry(system)
        made_on = system.inbox.get(pending_id).made_on.astimezone(timezone.utc).replace(tzinfo=None)

        assert [c.id for c in system.inbox.list(made_from=datetime(2020, 1, 1))] == [pending_id]
        assert [c.id for c in system.inbox.list(made_from=made_on, made_to=made_on)] == [pending_id]
        assert system.inbox.list(made_to=made_on - timedelta(seconds=1)) == []

    def test_summary_and_template(self, system):
        first = submit_entry(system, maker="maker1")
        submit_entry(system, maker="maker2")
        system.inbox.approve(first, checker="checker1")

        summary = system.inbox.summary()
        assert summary == {"pending": 1, "approved": 1, "rejected": 0, "withdrawn": 0, "total": 2}

        template = system.inbox.search_template()
        assert template["makers"] == ["maker1", "maker2"]
        assert template["action_names"] == ["CREATE"]
        assert template["entity_names"] == ["JOURNALENTRY"]
        assert "pending" in template["statuses"]

    def test_impact(self, system):
        submit_entry(system)
        impact = system.impact()
        assert impact["maker_checker_enabled"] is True
        assert impact["pending_approvals"] == 1
        assert impact["codes_requiring_approval"] == len(system.permissions.list_entries("accounting"))
