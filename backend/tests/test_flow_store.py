"""
DocSpace Flow Hub - Flow Store Tests

State machine rules, event log cap, listing order, projects, contacts and
snapshot round trips of services/flow_store.py.
"""

import pytest

from services.errors import FlowVersionConflict
from services.flow_store import (
    FlowEngine,
    FlowStore,
    FlowStatus,
    FlowAction,
    MAX_FLOW_EVENTS,
    append_event,
    backfill_flow,
    is_trackable_flow,
    normalize_emails,
    normalize_tags,
)


@pytest.fixture
def store():
    return FlowStore()


def make_flow(store, **kwargs):
    params = {"template_file_id": "T1", "created_by_user_id": "U1"}
    params.update(kwargs)
    return store.create_flow(**params)


def event_types(store, flow_id):
    return [e["type"] for e in store.get_events(flow_id)]


# =============================================================================
# CREATION
# =============================================================================

class TestCreateFlow:
    """Flow creation and input validation."""

    def test_create_minimal_flow(self, store):
        """A template id and creator are enough; the flow starts InProgress."""
        flow = make_flow(store)
        assert flow["status"] == "InProgress"
        assert flow["templateFileId"] == "T1"
        assert flow["createdByUserId"] == "U1"
        assert flow["events"][0]["type"] == "created"
        assert len(flow["events"]) == 1
        assert flow["version"] == 1

    def test_generated_id_and_group(self, store):
        """Without explicit ids the flow gets a UUID and is its own group."""
        flow = make_flow(store)
        assert flow["id"]
        assert flow["groupId"] == flow["id"]

    def test_explicit_group(self, store):
        flow = make_flow(store, flow_id="F1", group_id="G1")
        assert flow["id"] == "F1"
        assert flow["groupId"] == "G1"

    @pytest.mark.parametrize("kwargs", [
        {"template_file_id": ""},
        {"template_file_id": "   "},
        {"created_by_user_id": ""},
        {"flow_id": ""},
    ])
    def test_missing_required_field_returns_none(self, store, kwargs):
        assert make_flow(store, **kwargs) is None
        assert store.list_all_flows() == []

    def test_duplicate_id_rejected(self, store):
        assert make_flow(store, flow_id="F1") is not None
        assert make_flow(store, flow_id="F1") is None

    def test_recipient_emails_normalized(self, store):
        flow = make_flow(store, recipient_emails=[" A@Example.com", "a@example.com", "b@example.com", ""])
        assert flow["recipientEmails"] == ["a@example.com", "b@example.com"]

    def test_returned_flow_is_a_copy(self, store):
        """Mutating a returned record does not touch the stored one."""
        flow = make_flow(store, flow_id="F1")
        flow["status"] = "Completed"
        flow["events"].clear()
        stored = store.get_flow("F1")
        assert stored["status"] == "InProgress"
        assert len(stored["events"]) == 1


# =============================================================================
# TRANSITIONS
# =============================================================================

class TestCancelReopen:
    """cancel / reopen semantics."""

    def test_cancel_is_idempotent(self, store):
        flow = make_flow(store, flow_id="F1")
        store.cancel_flow("F1", actor_user_id="U1")
        again = store.cancel_flow("F1", actor_user_id="U1")
        assert again["status"] == "Canceled"
        assert event_types(store, flow["id"]).count("canceled") == 1

    def test_cancel_records_actor(self, store):
        make_flow(store, flow_id="F1")
        flow = store.cancel_flow("F1", actor_user_id="U1", actor_name="Ann", reason="wrong form")
        assert flow["canceledByUserId"] == "U1"
        assert flow["canceledByName"] == "Ann"
        assert flow["canceledAt"]
        assert flow["events"][-1]["reason"] == "wrong form"

    def test_cancel_completed_is_noop(self, store):
        make_flow(store, flow_id="F1")
        store.complete_flow("F1")
        flow = store.cancel_flow("F1")
        assert flow["status"] == "Completed"
        assert "canceled" not in event_types(store, "F1")

    def test_reopen_only_from_canceled(self, store):
        make_flow(store, flow_id="F1")
        assert store.reopen_flow("F1")["status"] == "InProgress"
        assert "reopened" not in event_types(store, "F1")

        store.cancel_flow("F1")
        reopened = store.reopen_flow("F1", actor_user_id="U1")
        assert reopened["status"] == "InProgress"
        assert reopened["reopenedByUserId"] == "U1"
        assert event_types(store, "F1") == ["created", "canceled", "reopened"]

    def test_reopen_completed_is_noop(self, store):
        make_flow(store, flow_id="F1")
        store.complete_flow("F1")
        assert store.reopen_flow("F1")["status"] == "Completed"

    def test_unknown_flow_returns_none(self, store):
        assert store.cancel_flow("missing") is None
        assert store.reopen_flow("missing") is None
        assert store.complete_flow("missing") is None
        assert store.archive_flow("missing") is None
        assert store.mark_trashed("missing") is None


class TestComplete:
    """complete semantics including result refresh."""

    def test_complete_in_progress(self, store):
        make_flow(store, flow_id="F1")
        flow = store.complete_flow("F1", actor_user_id="U1", result_file_id="R1", result_file_title="Done.pdf")
        assert flow["status"] == "Completed"
        assert flow["resultFileId"] == "R1"
        assert flow["resultFileTitle"] == "Done.pdf"
        assert flow["completedAt"]
        assert flow["completedByUserId"] == "U1"

    def test_complete_never_changes_canceled(self, store):
        make_flow(store, flow_id="F1")
        store.cancel_flow("F1")
        flow = store.complete_flow("F1", result_file_id="R1")
        assert flow["status"] == "Canceled"
        assert flow["resultFileId"] is None
        assert "completed" not in event_types(store, "F1")

    def test_recomplete_without_new_data_is_noop(self, store):
        make_flow(store, flow_id="F1")
        first = store.complete_flow("F1", result_file_id="R1")
        second = store.complete_flow("F1", result_file_id="R1")
        assert second["version"] == first["version"]
        assert event_types(store, "F1").count("completed") == 1

    def test_recomplete_with_new_result_keeps_completed_at(self, store):
        make_flow(store, flow_id="F1")
        first = store.complete_flow("F1", result_file_id="R1")
        second = store.complete_flow("F1", result_file_id="R2", result_file_url="https://x/r2")
        assert second["resultFileId"] == "R2"
        assert second["resultFileUrl"] == "https://x/r2"
        assert second["completedAt"] == first["completedAt"]
        assert second["events"][-1]["resultUpdated"] is True


class TestArchive:
    """archive / unarchive semantics."""

    def test_archive_requires_terminal_status(self, store):
        make_flow(store, flow_id="F1")
        flow = store.archive_flow("F1")
        assert flow["archivedAt"] is None

    def test_archive_twice_keeps_first_timestamp(self, store):
        make_flow(store, flow_id="F1")
        store.complete_flow("F1")
        first = store.archive_flow("F1", actor_user_id="U1")
        second = store.archive_flow("F1", actor_user_id="U2")
        assert first["archivedAt"] is not None
        assert second["archivedAt"] == first["archivedAt"]
        assert second["archivedByUserId"] == "U1"
        assert event_types(store, "F1").count("archived") == 1

    def test_archive_canceled(self, store):
        make_flow(store, flow_id="F1")
        store.cancel_flow("F1")
        assert store.archive_flow("F1")["archivedAt"]

    def test_unarchive(self, store):
        make_flow(store, flow_id="F1")
        store.cancel_flow("F1")
        store.archive_flow("F1")
        flow = store.unarchive_flow("F1", actor_user_id="U1")
        assert flow["archivedAt"] is None
        assert flow["unarchivedByUserId"] == "U1"
        assert flow["status"] == "Canceled"

    def test_unarchive_not_archived_is_noop(self, store):
        make_flow(store, flow_id="F1")
        assert "unarchived" not in event_types(store, store.unarchive_flow("F1")["id"])

    def test_reopen_blocked_while_archived(self, store):
        make_flow(store, flow_id="F1")
        store.cancel_flow("F1")
        store.archive_flow("F1")
        assert store.reopen_flow("F1")["status"] == "Canceled"


class TestTrashed:

    def test_mark_trashed_once(self, store):
        make_flow(store, flow_id="F1", file_id="D1")
        first = store.mark_trashed("F1", actor_name="DocSpace")
        second = store.mark_trashed("F1")
        assert first["trashedAt"]
        assert second["trashedAt"] == first["trashedAt"]
        assert event_types(store, "F1").count("trashed") == 1
        assert first["events"][-1]["fileId"] == "D1"


class TestVersioning:
    """Optimistic concurrency on transitions."""

    def test_version_increments_on_change(self, store):
        make_flow(store, flow_id="F1")
        assert store.cancel_flow("F1")["version"] == 2
        assert store.reopen_flow("F1")["version"] == 3

    def test_stale_version_raises(self, store):
        make_flow(store, flow_id="F1")
        store.cancel_flow("F1")
        with pytest.raises(FlowVersionConflict) as exc:
            store.reopen_flow("F1", expected_version=1)
        assert exc.value.status_code == 409
        assert exc.value.actual_version == 2
        assert store.get_flow("F1")["status"] == "Canceled"

    def test_matching_version_applies(self, store):
        make_flow(store, flow_id="F1")
        flow = store.complete_flow("F1", expected_version=1)
        assert flow["status"] == "Completed"


# =============================================================================
# STATE MACHINE
# =============================================================================

class TestFlowEngine:

    def test_unknown_action(self):
        can, next_status, reason = FlowEngine.can_transition({"status": "InProgress"}, "approve")
        assert can is False
        assert next_status is None
        assert "Unknown" in reason

    def test_cancel_from_in_progress(self):
        can, next_status, _ = FlowEngine.can_transition({"status": "InProgress"}, FlowAction.CANCEL)
        assert can is True
        assert next_status == FlowStatus.CANCELED.value

    def test_archive_keeps_status(self):
        can, next_status, _ = FlowEngine.can_transition({"status": "Completed"}, "archive")
        assert can is True
        assert next_status == "Completed"

    def test_terminal_statuses(self):
        assert set(FlowEngine.get_terminal_statuses()) == {"Completed", "Canceled"}


# =============================================================================
# EVENTS AND LISTINGS
# =============================================================================

class TestEventLog:

    def test_event_log_capped(self, store):
        """250 appended events leave the most recent 200."""
        flow = {"events": []}
        for i in range(250):
            append_event(flow, {"type": "note", "seq": i})
        assert len(flow["events"]) == MAX_FLOW_EVENTS
        assert flow["events"][0]["seq"] == 50
        assert flow["events"][-1]["seq"] == 249

    def test_store_caps_flow_events(self, store):
        make_flow(store, flow_id="F1")
        for _ in range(130):
            store.cancel_flow("F1")
            store.reopen_flow("F1")
        events = store.get_events("F1")
        assert len(events) == MAX_FLOW_EVENTS
        assert events[0]["type"] != "created"
        assert events[-1]["type"] == "reopened"


class TestListings:

    def test_list_for_user_by_creator_or_recipient(self, store):
        make_flow(store, flow_id="F1", created_by_user_id="U1")
        make_flow(store, flow_id="F2", created_by_user_id="U2", recipient_emails=["ann@example.com"])
        make_flow(store, flow_id="F3", created_by_user_id="U3")
        ids = {f["id"] for f in store.list_flows_for_user("U1", "ANN@example.com")}
        assert ids == {"F1", "F2"}

    def test_list_for_user_requires_identity(self, store):
        make_flow(store)
        assert store.list_flows_for_user("", None) == []

    def test_group_ascending_all_descending(self, store):
        for fid in ("F1", "F2", "F3"):
            make_flow(store, flow_id=fid, group_id="G1")
        assert [f["id"] for f in store.list_flows_for_group("G1")] == ["F1", "F2", "F3"]
        assert [f["id"] for f in store.list_all_flows()] == ["F3", "F2", "F1"]

    def test_list_for_room(self, store):
        make_flow(store, flow_id="F1", project_room_id="R1")
        make_flow(store, flow_id="F2", project_room_id="R2")
        assert [f["id"] for f in store.list_flows_for_room("R1")] == ["F1"]


class TestTrackable:

    def test_trackable_rules(self, store):
        assert is_trackable_flow(make_flow(store, flow_id="F1")) is True
        assert is_trackable_flow(make_flow(store, flow_id="F2", kind="sharedSign")) is False
        store.cancel_flow("F1")
        assert is_trackable_flow(store.get_flow("F1")) is False
        assert is_trackable_flow(None) is False


# =============================================================================
# PROJECTS AND CONTACTS
# =============================================================================

class TestProjects:

    def test_project_crud(self, store):
        project = store.create_project("Leases", "R1", project_id="P1")
        assert project["roomId"] == "R1"
        updated = store.update_project("P1", title="Leases 2026")
        assert updated["title"] == "Leases 2026"
        assert updated["roomId"] == "R1"
        assert store.archive_project("P1")["archivedAt"]
        assert store.list_projects(include_archived=False) == []
        assert store.unarchive_project("P1")["archivedAt"] is None
        assert store.delete_project("P1") is True
        assert store.get_project("P1") is None

    def test_project_requires_title_and_room(self, store):
        assert store.create_project("", "R1") is None
        assert store.create_project("Leases", "") is None


class TestContacts:

    def test_contact_normalization(self, store):
        tags = ["a", "b", "a"] + [f"t{i}" for i in range(20)]
        contact = store.create_contact("U1", " Ann@Example.COM ", tags=tags)
        assert contact["email"] == "ann@example.com"
        assert contact["name"] == "ann@example.com"
        assert contact["tags"][:3] == ["a", "b", "t0"]
        assert len(contact["tags"]) == 12

    def test_contacts_are_owner_scoped(self, store):
        contact = store.create_contact("U1", "ann@example.com", name="Ann")
        assert store.list_contacts_for_user("U2") == []
        assert store.update_contact("U2", contact["id"], name="Mallory") is None
        assert store.delete_contact("U2", contact["id"]) is False
        assert store.update_contact("U1", contact["id"], name="Ann B")["name"] == "Ann B"
        assert store.delete_contact("U1", contact["id"]) is True

    def test_normalize_helpers(self):
        assert normalize_emails("a@x.com; B@x.com\nA@x.com") == ["a@x.com", "b@x.com"]
        assert normalize_tags("not-a-list") == []


# =============================================================================
# SNAPSHOTS
# =============================================================================

class TestSnapshot:

    def test_snapshot_restore_round_trip(self, store):
        make_flow(store, flow_id="F1")
        store.cancel_flow("F1")
        store.create_project("Leases", "R1", project_id="P1")
        store.create_contact("U1", "ann@example.com", contact_id="C1")

        restored = FlowStore()
        restored.restore(store.snapshot())
        assert restored.get_flow("F1") == store.get_flow("F1")
        assert restored.get_project("P1")["roomId"] == "R1"
        assert restored.list_contacts_for_user("U1")[0]["id"] == "C1"

    def test_snapshot_shape(self, store):
        snap = store.snapshot()
        assert set(snap) == {"version", "savedAt", "flows", "projects", "contacts"}

    def test_backfill_old_flow(self):
        """Flows persisted before newer fields existed get defaults."""
        flow = backfill_flow({"id": "F1", "status": "Canceled", "templateFileId": "T1"})
        assert flow["groupId"] == "F1"
        assert flow["archivedAt"] is None
        assert flow["trashedAt"] is None
        assert flow["events"] == []
        assert flow["version"] == 1
        assert flow["status"] == "Canceled"

    def test_backfill_drops_records_without_id(self):
        store = FlowStore()
        store.restore({"flows": [{"status": "InProgress"}, {"id": "F1"}]})
        assert [f["id"] for f in store.list_all_flows()] == ["F1"]
