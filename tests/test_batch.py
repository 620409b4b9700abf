"""
Tests for the batch command executor
"""

import pytest

from finops_control.audit import ProcessingResult
from finops_control.batch import BatchRequest
from finops_control.config import FinopsConfig
from finops_control.errors import ValidationError
from finops_control.ledger import GLAccountType
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
    return system


def entry(request_id, debit="100", credit="100"):
    return BatchRequest(
        request_id=request_id,
        operation="create_journal_entry",
        payload={
            "office_id": "HQ",
            "currency_code": "USD",
            "debits": [{"gl_account_id": "A", "amount": debit}],
            "credits": [{"gl_account_id": "B", "amount": credit}],
        },
    )


def invalid_entry(request_id):
    request = entry(request_id)
    del request.payload["currency_code"]
    return request


class TestNonAtomic:
    """Members are independent"""

    def test_failure_does_not_affect_others(self, system):
        result = system.batch.execute([entry(1), invalid_entry(2), entry(3)], maker="maker1")

        assert [r.status_code for r in result.responses] == [200, 400, 200]
        assert [r.request_id for r in result.responses] == [1, 2, 3]
        assert result.responses[1].error["code"] == "validation_error"
        assert result.rolled_back is False
        assert len(system.ledger.search_entries()) == 2

    def test_gated_member_is_accepted(self, system):
        system.permissions.set_many([{"code": "CREATE_JOURNALENTRY", "requires_approval": True}],
                                    actor="admin")
        result = system.batch.execute([entry(1)], maker="maker1")
        assert result.responses[0].status_code == 202
        assert result.responses[0].body["pending_command_id"] == 1

    def test_status_codes_follow_error_type(self, system):
        missing = BatchRequest(2, "reverse_journal_entry", {"transaction_id": "T99"})
        unknown = BatchRequest(3, "launch_rocket", {})
        result = system.batch.execute([entry(1), missing, unknown], maker="maker1")
        assert [r.status_code for r in result.responses] == [200, 404, 400]

    def test_double_reversal_conflicts(self, system):
        system.batch.execute([entry(1)], maker="maker1")
        reverse = {"transaction_id": "T1"}
        result = system.batch.execute([
            BatchRequest("a", "reverse_journal_entry", reverse),
            BatchRequest("b", "reverse_journal_entry", reverse),
        ], maker="maker1")
        assert [r.status_code for r in result.responses] == [200, 409]


class TestAtomic:
    """All or nothing"""

    def test_all_succeed(self, system):
        result = system.batch.execute([entry(1), entry(2)], maker="maker1", enclosing_transaction=True)

        assert [r.status_code for r in result.responses] == [200, 200]
        assert result.rolled_back is False
        assert result.enclosing_transaction is True
        assert [e.id for e in system.ledger.search_entries()] == ["T1", "T2"]

    def test_failure_rolls_back_everything(self, system):
        """Test one invalid member fails the whole batch with no effects"""
        events_before = system.audit_log.count_events()

        result = system.batch.execute([entry(1), invalid_entry(2), entry(3)], maker="maker1",
                                      enclosing_transaction=True)

        assert result.rolled_back is True
        assert all(r.status_code >= 400 for r in result.responses)
        assert result.responses[1].status_code == 400
        assert "Rolled back" in result.responses[0].error["message"]
        assert system.ledger.search_entries() == []

        # One errored event per member, nothing else
        new_events = system.audit_log.get_all_events()[events_before:]
        assert len(new_events) == 3
        assert all(e.processing_result is ProcessingResult.ERRORED for e in new_events)
        assert system.audit_log.verify_integrity()["valid"]

    def test_failure_keeps_transaction_numbering(self, system):
        system.batch.execute([entry(1), entry(2, credit="1")], maker="maker1",
                             enclosing_transaction=True)
        result = system.batch.execute([entry(3)], maker="maker1")
        assert result.responses[0].body["resource_id"] == "T1"

    def test_gated_member_fails_before_any_effect(self, system):
        system.permissions.set_many([{"code": "REVERSE_JOURNALENTRY", "requires_approval": True}],
                                    actor="admin")
        result = system.batch.execute([
            entry(1),
            BatchRequest(2, "reverse_journal_entry", {"transaction_id": "T1"}),
        ], maker="maker1", enclosing_transaction=True)

        assert result.rolled_back is True
        assert [r.status_code for r in result.responses] == [400, 400]
        assert "requires approval" in result.responses[1].error["message"]
        assert system.ledger.search_entries() == []
        assert system.inbox.summary()["total"] == 0

    def test_unknown_operation_fails_before_any_effect(self, system):
        result = system.batch.execute([entry(1), BatchRequest(2, "launch_rocket", {})],
                                      maker="maker1", enclosing_transaction=True)
        assert result.rolled_back is True
        assert "Unknown operation" in result.responses[1].error["message"]
        assert system.ledger.search_entries() == []

    def test_errors_carry_correlation_ids(self, system):
        result = system.batch.execute([entry(1), invalid_entry(2)], maker="maker1",
                                      enclosing_transaction=True)
        ids = [r.error["correlation_id"] for r in result.responses]
        assert all(ids)
        assert len(set(ids)) == 2


class TestRequestIds:
    def test_duplicate_request_ids(self, system):
        with pytest.raises(ValidationError):
            system.batch.execute([entry(1), entry(1)], maker="maker1")
