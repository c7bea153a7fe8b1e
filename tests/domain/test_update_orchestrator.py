"""Tests for the UpdateOrchestrator.

Most tests run against a real in-memory DuckDB adapter so the conditional
write, sub-record replacement and audit persistence are exercised together.
"""

from datetime import date, timedelta
from unittest.mock import Mock

import pytest

from src.domain.audit_models import AuditAction
from src.domain.ports import (
    AuditWriteError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from src.domain.services.update_orchestrator import UpdateOrchestrator
from src.infrastructure.audit.audit_store import AuditStore
from tests.conftest import OUTSIDER_ID, OWNER_ID, PARENT_ID, READ_ONLY_ID, T0

T1 = T0 + timedelta(seconds=5)
T0_ISO = "2026-01-15T09:30:00.000Z"


@pytest.fixture
def audit_store(duckdb_adapter):
    return AuditStore(duckdb_adapter, duckdb_adapter, clock=lambda: T1)


@pytest.fixture
def orchestrator(duckdb_adapter, audit_store):
    return UpdateOrchestrator(duckdb_adapter, duckdb_adapter, audit_store, clock=lambda: T1)


def history(audit_store, entity_type, entity_id):
    result = audit_store.list(entity_type, entity_id, page=1, page_size=200)
    assert result.is_success()
    return result.value[0]


class TestUpdateHappyPath:
    """Successful partial updates."""

    def test_single_field_update(self, orchestrator, audit_store, visit_row):
        """A temperature edit writes one field and records one audit event."""
        outcome = orchestrator.update(
            "visit", visit_row["id"], OWNER_ID,
            {"temperature": 99.0, "updated_at": T0_ISO},
            request_id="req-1"
        )

        assert outcome.entity["temperature"] == 99.0
        assert outcome.entity["notes"] == "Fever since Tuesday"
        assert outcome.entity["updated_at"] == T1
        assert outcome.entity["illnesses"] == ["flu"]
        assert outcome.changes == {"temperature": {"before": 101.5, "after": 99.0}}
        assert outcome.audit_recorded is True

        events = history(audit_store, "visit", visit_row["id"])
        assert len(events) == 1
        assert events[0].action is AuditAction.UPDATED
        assert events[0].user_id == OWNER_ID
        assert events[0].request_id == "req-1"
        assert events[0].changes == {"temperature": {"before": 101.5, "after": 99.0}}
        assert events[0].summary == "Temperature: 101.5 → 99.0"

    def test_update_without_version_stamp(self, orchestrator, visit_row):
        outcome = orchestrator.update("visit", visit_row["id"], PARENT_ID, {"location": "Urgent care"})

        assert outcome.entity["location"] == "Urgent care"

    def test_no_op_update_records_no_event(self, orchestrator, audit_store, visit_row):
        """Re-sending the stored values in another representation changes nothing."""
        outcome = orchestrator.update(
            "visit", visit_row["id"], OWNER_ID,
            {"temperature": "101.5", "visit_date": "2026-01-15T00:00:00.000Z", "notes": " Fever  since Tuesday "}
        )

        assert outcome.changes == {}
        assert outcome.audit_recorded is False
        assert history(audit_store, "visit", visit_row["id"]) == []

    def test_collection_is_replaced_in_order(self, orchestrator, duckdb_adapter, visit_row):
        outcome = orchestrator.update("visit", visit_row["id"], OWNER_ID, {"illnesses": ["strep", "ear_infection"]})

        assert outcome.entity["illnesses"] == ["strep", "ear_infection"]
        assert outcome.changes == {"illnesses": {"before": ["flu"], "after": ["strep", "ear_infection"]}}
        assert duckdb_adapter.load_collection("visit", visit_row["id"], "illnesses") == ["strep", "ear_infection"]

    def test_clearing_a_field(self, orchestrator, visit_row):
        outcome = orchestrator.update("visit", visit_row["id"], OWNER_ID, {"notes": ""})

        assert outcome.entity["notes"] is None
        assert outcome.changes == {"notes": {"before": "Fever since Tuesday", "after": None}}

    def test_system_fields_in_body_are_ignored(self, orchestrator, visit_row):
        outcome = orchestrator.update(
            "visit", visit_row["id"], OWNER_ID,
            {"id": 999, "child_id": 12345, "created_at": "2020-01-01", "title": "Flu"}
        )

        assert outcome.entity["id"] == visit_row["id"]
        assert outcome.entity["child_id"] == visit_row["child_id"]
        assert list(outcome.changes) == ["title"]


class TestUpdateRejections:
    """Authorization, validation and concurrency failures."""

    def test_missing_entity(self, orchestrator, family):
        with pytest.raises(NotFoundError):
            orchestrator.update("visit", 424242, OWNER_ID, {"notes": "x"})

    def test_outsider_gets_not_found(self, orchestrator, visit_row):
        with pytest.raises(NotFoundError):
            orchestrator.update("visit", visit_row["id"], OUTSIDER_ID, {"notes": "x"})

    def test_read_only_member_gets_forbidden(self, orchestrator, visit_row):
        with pytest.raises(ForbiddenError):
            orchestrator.update("visit", visit_row["id"], READ_ONLY_ID, {"notes": "x"})

    def test_validation_error_names_field(self, orchestrator, duckdb_adapter, visit_row):
        with pytest.raises(BadRequestError) as exc_info:
            orchestrator.update("visit", visit_row["id"], OWNER_ID, {"temperature": 120})

        assert exc_info.value.field == "temperature"
        assert duckdb_adapter.load("visit", visit_row["id"])["temperature"] == 101.5

    def test_no_recognised_fields(self, orchestrator, visit_row):
        with pytest.raises(BadRequestError, match="No valid fields provided for update"):
            orchestrator.update("visit", visit_row["id"], OWNER_ID, {"favourite_colour": "blue"})

    def test_stale_client_gets_conflict(self, duckdb_adapter, audit_store, visit_row):
        """User B saves at T1; user A, still holding T0, is rejected and nothing is written."""
        writer_b = UpdateOrchestrator(duckdb_adapter, duckdb_adapter, audit_store, clock=lambda: T1)
        writer_b.update("visit", visit_row["id"], PARENT_ID, {"notes": "B's note", "updated_at": T0_ISO})

        writer_a = UpdateOrchestrator(duckdb_adapter, duckdb_adapter, audit_store,
                                      clock=lambda: T1 + timedelta(seconds=1))
        with pytest.raises(ConflictError) as exc_info:
            writer_a.update("visit", visit_row["id"], OWNER_ID, {"notes": "A's note", "updated_at": T0_ISO})

        assert exc_info.value.current_version == T1
        assert exc_info.value.your_version == T0_ISO
        stored = duckdb_adapter.load("visit", visit_row["id"])
        assert stored["notes"] == "B's note"
        assert stored["updated_at"] == T1
        assert len(history(audit_store, "visit", visit_row["id"])) == 1

    @staticmethod
    def racing_storage(duckdb_adapter, stale_snapshot):
        """Storage whose first load returns a snapshot taken before the other writer committed."""
        storage = Mock(wraps=duckdb_adapter)

        def load(entity_type, entity_id):
            if storage.load.call_count == 1:
                return stale_snapshot
            return duckdb_adapter.load(entity_type, entity_id)

        storage.load.side_effect = load
        return storage

    def test_lost_conditional_write_is_a_conflict(self, duckdb_adapter, audit_store, visit_row):
        """Both writers pass the pre-check; the second conditional write affects zero rows."""
        stale_snapshot = duckdb_adapter.load("visit", visit_row["id"])
        winner_stamp = T0 + timedelta(milliseconds=500)

        first = UpdateOrchestrator(duckdb_adapter, duckdb_adapter, audit_store, clock=lambda: winner_stamp)
        first.update("visit", visit_row["id"], OWNER_ID, {"temperature": 100.0, "updated_at": T0_ISO})

        second = UpdateOrchestrator(
            self.racing_storage(duckdb_adapter, stale_snapshot), duckdb_adapter, audit_store, clock=lambda: T1
        )
        with pytest.raises(ConflictError) as exc_info:
            second.update("visit", visit_row["id"], PARENT_ID, {"temperature": 99.0, "updated_at": T0_ISO})

        # Reports the stamp the winning write left behind, not the one read before the race
        assert exc_info.value.current_version == winner_stamp
        assert exc_info.value.your_version == T0_ISO
        assert duckdb_adapter.load("visit", visit_row["id"])["temperature"] == 100.0
        events = history(audit_store, "visit", visit_row["id"])
        assert len(events) == 1
        assert events[0].user_id == OWNER_ID

    def test_lost_write_to_concurrent_delete_is_not_found(self, duckdb_adapter, audit_store, visit_row):
        stale_snapshot = duckdb_adapter.load("visit", visit_row["id"])
        racing_storage = self.racing_storage(duckdb_adapter, stale_snapshot)
        duckdb_adapter.delete("visit", visit_row["id"])
        racing_storage.can_read = Mock(return_value=True)
        racing_storage.can_write = Mock(return_value=True)

        second = UpdateOrchestrator(racing_storage, racing_storage, audit_store, clock=lambda: T1)
        with pytest.raises(NotFoundError):
            second.update("visit", visit_row["id"], PARENT_ID, {"temperature": 99.0, "updated_at": T0_ISO})


class TestAuditFailurePolicy:
    """Audit write failures after a committed entity write."""

    def test_fail_open_logs_and_succeeds(self, duckdb_adapter, visit_row):
        failing_store = Mock()
        failing_store.record.side_effect = AuditWriteError("disk full", operation="record_audit_event")
        logger = Mock()
        orchestrator = UpdateOrchestrator(
            duckdb_adapter, duckdb_adapter, failing_store, logger=logger, clock=lambda: T1
        )

        outcome = orchestrator.update("visit", visit_row["id"], OWNER_ID, {"temperature": 99.0})

        assert outcome.audit_recorded is False
        assert outcome.entity["temperature"] == 99.0
        logger.error.assert_called_once()
        message = logger.error.call_args[0][0]
        assert "temperature" in message
        assert "Fever" not in message

    def test_fail_closed_raises_after_commit(self, duckdb_adapter, visit_row):
        failing_store = Mock()
        failing_store.record.side_effect = AuditWriteError("disk full", operation="record_audit_event")
        logger = Mock()
        orchestrator = UpdateOrchestrator(
            duckdb_adapter, duckdb_adapter, failing_store,
            fail_closed=True, logger=logger, clock=lambda: T1
        )

        with pytest.raises(AuditWriteError):
            orchestrator.update("visit", visit_row["id"], OWNER_ID, {"temperature": 99.0})

        logger.error.assert_called_once()
        assert duckdb_adapter.load("visit", visit_row["id"])["temperature"] == 99.0

    def test_audit_not_attempted_for_no_op(self, duckdb_adapter, visit_row):
        audit = Mock()
        orchestrator = UpdateOrchestrator(duckdb_adapter, duckdb_adapter, audit, clock=lambda: T1)

        orchestrator.update("visit", visit_row["id"], OWNER_ID, {"temperature": 101.5})

        audit.record.assert_not_called()


class TestIllnessUpdates:
    """The same pipeline drives illnesses."""

    @pytest.fixture
    def illness(self, orchestrator, family):
        outcome = orchestrator.create(
            "illness", OWNER_ID,
            {"child_id": family.child_id, "start_date": "2026-01-10", "illness_types": ["flu"], "severity": 4}
        )
        return outcome.entity

    def test_create_records_created_event(self, audit_store, illness):
        events = history(audit_store, "illness", illness["id"])

        assert illness["illness_types"] == ["flu"]
        assert illness["start_date"] == date(2026, 1, 10)
        assert [e.action for e in events] == [AuditAction.CREATED]
        assert events[0].summary == "Illness created"
        assert events[0].changes == {}

    def test_end_date_checked_against_stored_start(self, orchestrator, illness):
        with pytest.raises(BadRequestError) as exc_info:
            orchestrator.update("illness", illness["id"], OWNER_ID, {"end_date": "2026-01-09"})

        assert exc_info.value.field == "end_date"

    def test_update_illness_types_and_severity(self, orchestrator, illness):
        outcome = orchestrator.update(
            "illness", illness["id"], OWNER_ID,
            {"illness_types": ["flu", "ear_infection"], "severity": 6}
        )

        assert outcome.entity["illness_types"] == ["flu", "ear_infection"]
        assert outcome.entity["severity"] == 6
        assert set(outcome.changes) == {"illness_types", "severity"}


class TestCreateAndDelete:
    """Create and delete flows."""

    def test_create_requires_fields(self, orchestrator, family):
        with pytest.raises(BadRequestError, match="visit_type is required"):
            orchestrator.create("visit", OWNER_ID, {"child_id": family.child_id, "visit_date": "2026-02-01"})

    def test_create_for_unknown_child(self, orchestrator, family):
        with pytest.raises(NotFoundError):
            orchestrator.create("visit", OUTSIDER_ID,
                                {"child_id": family.child_id, "visit_date": "2026-02-01", "visit_type": "wellness"})

    def test_read_only_member_cannot_create(self, orchestrator, family):
        with pytest.raises(ForbiddenError):
            orchestrator.create("visit", READ_ONLY_ID,
                                {"child_id": family.child_id, "visit_date": "2026-02-01", "visit_type": "wellness"})

    def test_create_stamps_versions(self, orchestrator, family):
        outcome = orchestrator.create(
            "visit", PARENT_ID,
            {"child_id": family.child_id, "visit_date": "2026-02-01", "visit_type": "wellness",
             "weight_value": 30.5, "tags": ["annual"]}
        )

        assert outcome.entity["created_at"] == T1
        assert outcome.entity["updated_at"] == T1
        assert outcome.entity["tags"] == ["annual"]
        assert outcome.entity["illnesses"] == []

    def test_delete_keeps_history(self, orchestrator, duckdb_adapter, audit_store, visit_row):
        orchestrator.update("visit", visit_row["id"], OWNER_ID, {"temperature": 99.0})

        assert orchestrator.delete("visit", visit_row["id"], OWNER_ID) is True

        assert duckdb_adapter.load("visit", visit_row["id"]) is None
        assert duckdb_adapter.load_collection("visit", visit_row["id"], "illnesses") == []
        actions = [e.action for e in history(audit_store, "visit", visit_row["id"])]
        assert sorted(a.value for a in actions) == ["deleted", "updated"]

    def test_read_only_member_cannot_delete(self, orchestrator, visit_row):
        with pytest.raises(ForbiddenError):
            orchestrator.delete("visit", visit_row["id"], READ_ONLY_ID)

    def test_get_hides_unreadable(self, orchestrator, visit_row):
        assert orchestrator.get("visit", visit_row["id"], READ_ONLY_ID)["illnesses"] == ["flu"]
        with pytest.raises(NotFoundError):
            orchestrator.get("visit", visit_row["id"], OUTSIDER_ID)
