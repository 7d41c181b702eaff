"""
DocSpace Flow Hub - Flow Store and State Machine

The authoritative repository of Flow, Project and Contact records, and the
state machine every flow goes through.

Flow states:
    InProgress --cancel--> Canceled --reopen--> InProgress
    InProgress --complete--> Completed
    Completed --complete--> Completed   (result refresh only)

Archive is an orthogonal flag that can only be raised on a terminal flow
(Completed or Canceled) and only once until it is cleared by unarchive.

Transitions fail soft: when a transition is not allowed the flow is returned
unchanged and no event is recorded. They are called speculatively by webhook
resolution, so a refusal is an ordinary outcome, not an error. The one
exception is a stale `expected_version`, which raises FlowVersionConflict.

Records are plain dicts with camelCase keys, the same shape that is persisted
and returned by the API. Callers always receive deep copies.
"""

import copy
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from services.errors import FlowVersionConflict
from services.store_persistence import DebouncedSaver, NullSnapshotSink, SnapshotSink

logger = logging.getLogger(__name__)

STORE_SCHEMA_VERSION = 2
MAX_FLOW_EVENTS = 200
MAX_CONTACT_TAGS = 12


# =============================================================================
# ENUMS
# =============================================================================

class FlowStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELED = "Canceled"


class FlowKind(str, Enum):
    APPROVAL = "approval"
    FILL_SIGN = "fillSign"
    SHARED_SIGN = "sharedSign"   # signature flows managed entirely by DocSpace
    OTHER = "other"


class FlowSource(str, Enum):
    MANUAL = "manual"
    BULK_LINK = "bulkLink"


class FlowAction(str, Enum):
    CANCEL = "cancel"
    REOPEN = "reopen"
    COMPLETE = "complete"
    ARCHIVE = "archive"
    UNARCHIVE = "unarchive"


class FlowEventType(str, Enum):
    CREATED = "created"
    CANCELED = "canceled"
    REOPENED = "reopened"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    UNARCHIVED = "unarchived"
    TRASHED = "trashed"


TERMINAL_STATUSES = (FlowStatus.COMPLETED.value, FlowStatus.CANCELED.value)

# Format: {action: {"from": [allowed statuses], "to": next status or None (unchanged)}}
FLOW_TRANSITIONS: Dict[str, Dict[str, Any]] = {
    FlowAction.CANCEL.value: {
        "from": [FlowStatus.IN_PROGRESS.value],
        "to": FlowStatus.CANCELED.value,
    },
    FlowAction.REOPEN.value: {
        "from": [FlowStatus.CANCELED.value],
        "to": FlowStatus.IN_PROGRESS.value,
    },
    FlowAction.COMPLETE.value: {
        "from": [FlowStatus.IN_PROGRESS.value, FlowStatus.COMPLETED.value],
        "to": FlowStatus.COMPLETED.value,
    },
    FlowAction.ARCHIVE.value: {
        "from": list(TERMINAL_STATUSES),
        "to": None,
    },
    FlowAction.UNARCHIVE.value: {
        "from": [s.value for s in FlowStatus],
        "to": None,
    },
}

ACTION_EVENT_TYPES = {
    FlowAction.CANCEL.value: FlowEventType.CANCELED.value,
    FlowAction.REOPEN.value: FlowEventType.REOPENED.value,
    FlowAction.COMPLETE.value: FlowEventType.COMPLETED.value,
    FlowAction.ARCHIVE.value: FlowEventType.ARCHIVED.value,
    FlowAction.UNARCHIVE.value: FlowEventType.UNARCHIVED.value,
}

RESULT_FIELDS = ("resultFileId", "resultFileTitle", "resultFileUrl")


# =============================================================================
# RECORD DEFAULTS (back-filled into records loaded from older snapshots)
# =============================================================================

FLOW_DEFAULTS: Dict[str, Any] = {
    "groupId": None,
    "kind": FlowKind.APPROVAL.value,
    "source": None,
    "templateFileId": None,
    "templateTitle": None,
    "fileId": None,
    "fileTitle": None,
    "resultFileId": None,
    "resultFileTitle": None,
    "resultFileUrl": None,
    "projectRoomId": None,
    "createdByUserId": None,
    "createdByName": None,
    "recipientEmails": [],
    "stageIndex": None,
    "dueDate": None,
    "openUrl": None,
    "linkRequestToken": None,
    "status": FlowStatus.IN_PROGRESS.value,
    "archivedAt": None,
    "archivedByUserId": None,
    "archivedByName": None,
    "unarchivedAt": None,
    "unarchivedByUserId": None,
    "unarchivedByName": None,
    "trashedAt": None,
    "canceledAt": None,
    "canceledByUserId": None,
    "canceledByName": None,
    "reopenedAt": None,
    "reopenedByUserId": None,
    "reopenedByName": None,
    "completedAt": None,
    "completedByUserId": None,
    "completedByName": None,
    "events": [],
    "version": 1,
    "createdAt": None,
    "updatedAt": None,
}

PROJECT_DEFAULTS: Dict[str, Any] = {
    "title": "",
    "roomId": None,
    "roomUrl": None,
    "archivedAt": None,
    "archivedByUserId": None,
    "archivedByName": None,
    "createdAt": None,
    "updatedAt": None,
}

CONTACT_DEFAULTS: Dict[str, Any] = {
    "ownerUserId": None,
    "name": "",
    "email": "",
    "tags": [],
    "createdAt": None,
    "updatedAt": None,
}


# =============================================================================
# NORMALIZATION HELPERS
# =============================================================================

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _optional(value: Any) -> Optional[str]:
    cleaned = _clean(value)
    return cleaned or None


def normalize_email(value: Any) -> str:
    return _clean(value).lower()


def normalize_emails(values: Any) -> List[str]:
    """Trim, lower-case and de-duplicate, keeping first-seen order."""
    if not values:
        return []
    if isinstance(values, str):
        values = values.replace(";", ",").replace("\n", ",").split(",")
    out: List[str] = []
    for raw in values:
        email = normalize_email(raw)
        if email and email not in out:
            out.append(email)
    return out


def normalize_tags(values: Any) -> List[str]:
    if not isinstance(values, (list, tuple)):
        return []
    out: List[str] = []
    for raw in values:
        tag = _clean(raw)
        if tag and tag not in out:
            out.append(tag)
    return out[:MAX_CONTACT_TAGS]


def append_event(flow: Dict[str, Any], event: Dict[str, Any]) -> None:
    """Append to the flow's event log, dropping the oldest entries past the cap."""
    events = flow.setdefault("events", [])
    events.append(event)
    overflow = len(events) - MAX_FLOW_EVENTS
    if overflow > 0:
        del events[:overflow]


def backfill_flow(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Complete a persisted flow with defaults for fields it predates."""
    flow_id = _clean(raw.get("id"))
    if not flow_id:
        return None
    flow = copy.deepcopy(FLOW_DEFAULTS)
    flow.update(copy.deepcopy(raw))
    flow["id"] = flow_id
    flow["groupId"] = _clean(flow.get("groupId")) or flow_id
    flow["recipientEmails"] = normalize_emails(flow.get("recipientEmails"))
    if flow.get("status") not in [s.value for s in FlowStatus]:
        flow["status"] = FlowStatus.IN_PROGRESS.value
    events = flow.get("events") if isinstance(flow.get("events"), list) else []
    flow["events"] = events[-MAX_FLOW_EVENTS:]
    if not isinstance(flow.get("version"), int) or flow["version"] < 1:
        flow["version"] = 1
    flow["createdAt"] = flow.get("createdAt") or flow.get("updatedAt") or _now()
    flow["updatedAt"] = flow.get("updatedAt") or flow["createdAt"]
    return flow


def backfill_project(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    project_id = _clean(raw.get("id"))
    if not project_id:
        return None
    project = copy.deepcopy(PROJECT_DEFAULTS)
    project.update(copy.deepcopy(raw))
    project["id"] = project_id
    project["createdAt"] = project.get("createdAt") or _now()
    project["updatedAt"] = project.get("updatedAt") or project["createdAt"]
    return project


def backfill_contact(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    contact_id = _clean(raw.get("id"))
    if not contact_id:
        return None
    contact = copy.deepcopy(CONTACT_DEFAULTS)
    contact.update(copy.deepcopy(raw))
    contact["id"] = contact_id
    contact["email"] = normalize_email(contact.get("email"))
    contact["tags"] = normalize_tags(contact.get("tags"))
    contact["createdAt"] = contact.get("createdAt") or _now()
    contact["updatedAt"] = contact.get("updatedAt") or contact["createdAt"]
    return contact


def is_trackable_flow(flow: Optional[Dict[str, Any]]) -> bool:
    """A flow whose status may still be changed by webhook-driven resolution."""
    if not flow or not flow.get("id"):
        return False
    if flow.get("archivedAt") or flow.get("trashedAt"):
        return False
    if flow.get("status") in TERMINAL_STATUSES:
        return False
    if _clean(flow.get("kind")).lower() == FlowKind.SHARED_SIGN.value.lower():
        return False
    return True


# =============================================================================
# STATE MACHINE
# =============================================================================

class FlowEngine:
    """Pure transition rules; no storage access."""

    @staticmethod
    def can_transition(flow: Dict[str, Any], action: str) -> Tuple[bool, Optional[str], str]:
        """
        Check whether `action` may be applied to `flow`.

        Returns:
            (can_transition, next_status, reason)
        """
        action_key = action.value if isinstance(action, FlowAction) else action
        rule = FLOW_TRANSITIONS.get(action_key)
        if rule is None:
            return (False, None, f"Unknown action '{action_key}'")

        status = flow.get("status")
        if status not in rule["from"]:
            return (False, None, f"Cannot {action_key} from status '{status}'")

        archived = bool(flow.get("archivedAt"))
        if action_key == FlowAction.ARCHIVE.value and archived:
            return (False, None, "Flow is already archived")
        if action_key == FlowAction.UNARCHIVE.value and not archived:
            return (False, None, "Flow is not archived")
        if action_key == FlowAction.REOPEN.value and archived:
            return (False, None, "Archived flows cannot be reopened")

        return (True, rule["to"] or status, "Transition allowed")

    @staticmethod
    def get_terminal_statuses() -> List[str]:
        return list(TERMINAL_STATUSES)


# =============================================================================
# STORE
# =============================================================================

class FlowStore:
    """
    In-memory repository with debounced snapshot persistence.

    Usage:
        store = FlowStore(sink=JsonFileSnapshotSink("data/store.json"))
        await store.load()
        flow = store.create_flow(template_file_id="T1", created_by_user_id="U1")
        store.cancel_flow(flow["id"], actor_user_id="U1")
        await store.flush()
    """

    def __init__(self, sink: SnapshotSink = None, save_debounce_ms: int = 200):
        self._flows: Dict[str, Dict[str, Any]] = {}
        self._projects: Dict[str, Dict[str, Any]] = {}
        self._contacts: Dict[str, Dict[str, Any]] = {}
        self._saver = DebouncedSaver(sink or NullSnapshotSink(), self.snapshot, save_debounce_ms)

    @property
    def saver(self) -> DebouncedSaver:
        return self._saver

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def snapshot(self) -> Dict[str, Any]:
        return {
            "version": STORE_SCHEMA_VERSION,
            "savedAt": _now(),
            "flows": copy.deepcopy(list(self._flows.values())),
            "projects": copy.deepcopy(list(self._projects.values())),
            "contacts": copy.deepcopy(list(self._contacts.values())),
        }

    def restore(self, snapshot: Optional[Dict[str, Any]]) -> None:
        """Replace the store contents with a snapshot, back-filling missing fields."""
        snapshot = snapshot or {}
        flows = [backfill_flow(f) for f in snapshot.get("flows") or [] if isinstance(f, dict)]
        projects = [backfill_project(p) for p in snapshot.get("projects") or [] if isinstance(p, dict)]
        contacts = [backfill_contact(c) for c in snapshot.get("contacts") or [] if isinstance(c, dict)]
        self._flows = {f["id"]: f for f in flows if f}
        self._projects = {p["id"]: p for p in projects if p}
        self._contacts = {c["id"]: c for c in contacts if c}
        logger.info(
            "Store restored (schema v%s): %d flows, %d projects, %d contacts",
            snapshot.get("version"), len(self._flows), len(self._projects), len(self._contacts),
        )

    async def load(self) -> None:
        self.restore(await self._saver.sink.load())

    async def flush(self) -> None:
        await self._saver.flush()

    def _touch(self, record: Dict[str, Any]) -> None:
        record["updatedAt"] = _now()
        if "version" in record:
            record["version"] = int(record.get("version") or 0) + 1
        self._saver.schedule()

    # =========================================================================
    # FLOWS - CREATE / READ
    # =========================================================================

    def create_flow(
        self,
        template_file_id: str = None,
        created_by_user_id: str = None,
        flow_id: str = None,
        group_id: str = None,
        kind: str = FlowKind.APPROVAL.value,
        source: str = None,
        template_title: str = None,
        file_id: str = None,
        file_title: str = None,
        project_room_id: str = None,
        created_by_name: str = None,
        recipient_emails: Iterable[str] = None,
        stage_index: int = None,
        due_date: str = None,
        open_url: str = None,
        link_request_token: str = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Create a flow in InProgress with a single "created" event.

        Returns None when the id (if given), template file id or creator id is
        empty. When flow_id is omitted a new UUID is assigned.
        """
        fid = _clean(flow_id) if flow_id is not None else str(uuid.uuid4())
        template = _clean(template_file_id)
        creator = _clean(created_by_user_id)
        if not fid or not template or not creator:
            logger.info("Flow creation rejected: id=%r template=%r creator=%r", fid, template, creator)
            return None
        if fid in self._flows:
            logger.warning("Flow creation rejected: duplicate id %s", fid)
            return None

        now = _now()
        flow = copy.deepcopy(FLOW_DEFAULTS)
        flow.update({
            "id": fid,
            "groupId": _clean(group_id) or fid,
            "kind": _clean(kind) or FlowKind.APPROVAL.value,
            "source": _optional(source),
            "templateFileId": template,
            "templateTitle": _optional(template_title),
            "fileId": _optional(file_id),
            "fileTitle": _optional(file_title),
            "projectRoomId": _optional(project_room_id),
            "createdByUserId": creator,
            "createdByName": _optional(created_by_name),
            "recipientEmails": normalize_emails(recipient_emails),
            "stageIndex": stage_index,
            "dueDate": _optional(due_date),
            "openUrl": _optional(open_url),
            "linkRequestToken": _optional(link_request_token),
            "status": FlowStatus.IN_PROGRESS.value,
            "version": 1,
            "createdAt": now,
            "updatedAt": now,
        })
        append_event(flow, {
            "ts": now,
            "type": FlowEventType.CREATED.value,
            "actorUserId": creator,
            "actorName": flow["createdByName"],
            "kind": flow["kind"],
            "source": flow["source"],
        })
        self._flows[fid] = flow
        self._saver.schedule()
        logger.info("Flow created: id=%s kind=%s group=%s", fid, flow["kind"], flow["groupId"])
        return copy.deepcopy(flow)

    def get_flow(self, flow_id: str) -> Optional[Dict[str, Any]]:
        flow = self._flows.get(_clean(flow_id))
        return copy.deepcopy(flow) if flow else None

    def get_events(self, flow_id: str) -> Optional[List[Dict[str, Any]]]:
        flow = self._flows.get(_clean(flow_id))
        return copy.deepcopy(flow["events"]) if flow else None

    def list_flows_for_user(self, user_id: str, email: str = None) -> List[Dict[str, Any]]:
        """Flows the user created or is a recipient of, newest first."""
        uid = _clean(user_id)
        mail = normalize_email(email)
        if not uid and not mail:
            return []
        matches = [
            f for f in self._flows.values()
            if (uid and f.get("createdByUserId") == uid)
            or (mail and mail in (f.get("recipientEmails") or []))
        ]
        return self._sorted(matches, newest_first=True)

    def list_flows_for_room(self, room_id: str) -> List[Dict[str, Any]]:
        rid = _clean(room_id)
        if not rid:
            return []
        matches = [f for f in self._flows.values() if _clean(f.get("projectRoomId")) == rid]
        return self._sorted(matches, newest_first=True)

    def list_flows_for_group(self, group_id: str) -> List[Dict[str, Any]]:
        """Flows of one group, oldest first."""
        gid = _clean(group_id)
        if not gid:
            return []
        matches = [f for f in self._flows.values() if f.get("groupId") == gid]
        return self._sorted(matches, newest_first=False)

    def list_all_flows(self) -> List[Dict[str, Any]]:
        return self._sorted(self._flows.values(), newest_first=True)

    @staticmethod
    def _sorted(flows: Iterable[Dict[str, Any]], newest_first: bool) -> List[Dict[str, Any]]:
        # Insertion position breaks createdAt ties
        ranked = sorted(
            enumerate(flows),
            key=lambda pair: (pair[1].get("createdAt") or "", pair[0]),
            reverse=newest_first,
        )
        return copy.deepcopy([flow for _, flow in ranked])

    # =========================================================================
    # FLOWS - TRANSITIONS
    # =========================================================================

    def _transition(
        self,
        flow_id: str,
        action: FlowAction,
        actor_user_id: Optional[str],
        actor_name: Optional[str],
        expected_version: Optional[int],
        event_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        flow = self._flows.get(_clean(flow_id))
        if flow is None:
            return None
        if expected_version is not None and int(expected_version) != flow.get("version"):
            raise FlowVersionConflict(flow["id"], int(expected_version), flow.get("version"))

        allowed, next_status, reason = FlowEngine.can_transition(flow, action)
        if not allowed:
            logger.debug("Flow %s: %s ignored (%s)", flow["id"], action.value, reason)
            return copy.deepcopy(flow)

        now = _now()
        previous = flow["status"]
        actor_uid = _optional(actor_user_id)
        actor = _optional(actor_name)
        flow["status"] = next_status

        if action == FlowAction.CANCEL:
            flow.update({"canceledAt": now, "canceledByUserId": actor_uid, "canceledByName": actor})
        elif action == FlowAction.REOPEN:
            flow.update({"reopenedAt": now, "reopenedByUserId": actor_uid, "reopenedByName": actor})
        elif action == FlowAction.ARCHIVE:
            flow.update({"archivedAt": now, "archivedByUserId": actor_uid, "archivedByName": actor})
        elif action == FlowAction.UNARCHIVE:
            flow.update({
                "archivedAt": None, "archivedByUserId": None, "archivedByName": None,
                "unarchivedAt": now, "unarchivedByUserId": actor_uid, "unarchivedByName": actor,
            })

        event = {
            "ts": now,
            "type": ACTION_EVENT_TYPES[action.value],
            "actorUserId": actor_uid,
            "actorName": actor,
            "fromStatus": previous,
            "toStatus": next_status,
        }
        event.update(event_fields or {})
        append_event(flow, event)
        self._touch(flow)
        logger.info(
            "Flow transition: id=%s %s -> %s (action=%s, actor=%s)",
            flow["id"], previous, next_status, action.value, actor_uid or "system",
        )
        return copy.deepcopy(flow)

    def cancel_flow(
        self,
        flow_id: str,
        actor_user_id: str = None,
        actor_name: str = None,
        reason: str = None,
        expected_version: int = None,
    ) -> Optional[Dict[str, Any]]:
        """InProgress -> Canceled. Completed and Canceled flows are returned unchanged."""
        fields = {"reason": reason} if reason else None
        return self._transition(flow_id, FlowAction.CANCEL, actor_user_id, actor_name, expected_version, fields)

    def reopen_flow(
        self,
        flow_id: str,
        actor_user_id: str = None,
        actor_name: str = None,
        expected_version: int = None,
    ) -> Optional[Dict[str, Any]]:
        """Canceled -> InProgress only."""
        return self._transition(flow_id, FlowAction.REOPEN, actor_user_id, actor_name, expected_version)

    def complete_flow(
        self,
        flow_id: str,
        actor_user_id: str = None,
        actor_name: str = None,
        result_file_id: str = None,
        result_file_title: str = None,
        result_file_url: str = None,
        expected_version: int = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Mark a flow Completed.

        Canceled flows are returned unchanged. Re-completing a Completed flow
        is a no-op unless new result data is supplied; then only the result
        fields change and the original completedAt is kept.
        """
        flow = self._flows.get(_clean(flow_id))
        if flow is None:
            return None
        if expected_version is not None and int(expected_version) != flow.get("version"):
            raise FlowVersionConflict(flow["id"], int(expected_version), flow.get("version"))

        supplied = dict(zip(RESULT_FIELDS, map(_optional, (result_file_id, result_file_title, result_file_url))))
        changes = {k: v for k, v in supplied.items() if v is not None and v != flow.get(k)}

        if flow["status"] == FlowStatus.COMPLETED.value:
            if not changes:
                return copy.deepcopy(flow)
            flow.update(changes)
            now = _now()
            append_event(flow, {
                "ts": now,
                "type": FlowEventType.COMPLETED.value,
                "actorUserId": _optional(actor_user_id),
                "actorName": _optional(actor_name),
                "fromStatus": FlowStatus.COMPLETED.value,
                "toStatus": FlowStatus.COMPLETED.value,
                "resultUpdated": True,
                **changes,
            })
            if not flow.get("completedAt"):
                flow["completedAt"] = now
            self._touch(flow)
            logger.info("Flow %s: result updated (%s)", flow["id"], ", ".join(sorted(changes)))
            return copy.deepcopy(flow)

        result = self._transition(
            flow_id, FlowAction.COMPLETE, actor_user_id, actor_name, None, changes or None
        )
        if result and result["status"] == FlowStatus.COMPLETED.value:
            stored = self._flows[result["id"]]
            stored.update(changes)
            if not stored.get("completedAt"):
                stored["completedAt"] = stored["updatedAt"]
            stored["completedByUserId"] = _optional(actor_user_id)
            stored["completedByName"] = _optional(actor_name)
            return copy.deepcopy(stored)
        return result

    def archive_flow(
        self,
        flow_id: str,
        actor_user_id: str = None,
        actor_name: str = None,
        expected_version: int = None,
    ) -> Optional[Dict[str, Any]]:
        """Set archivedAt on a Completed/Canceled flow that is not archived yet."""
        return self._transition(flow_id, FlowAction.ARCHIVE, actor_user_id, actor_name, expected_version)

    def unarchive_flow(
        self,
        flow_id: str,
        actor_user_id: str = None,
        actor_name: str = None,
        expected_version: int = None,
    ) -> Optional[Dict[str, Any]]:
        return self._transition(flow_id, FlowAction.UNARCHIVE, actor_user_id, actor_name, expected_version)

    def mark_trashed(
        self,
        flow_id: str,
        actor_name: str = None,
        expected_version: int = None,
    ) -> Optional[Dict[str, Any]]:
        """Record that the flow's external file went to the trash. Set once."""
        flow = self._flows.get(_clean(flow_id))
        if flow is None:
            return None
        if expected_version is not None and int(expected_version) != flow.get("version"):
            raise FlowVersionConflict(flow["id"], int(expected_version), flow.get("version"))
        if flow.get("trashedAt"):
            return copy.deepcopy(flow)
        now = _now()
        flow["trashedAt"] = now
        append_event(flow, {
            "ts": now,
            "type": FlowEventType.TRASHED.value,
            "actorUserId": None,
            "actorName": _optional(actor_name),
            "fileId": flow.get("resultFileId") or flow.get("fileId"),
        })
        self._touch(flow)
        logger.info("Flow %s: external file trashed", flow["id"])
        return copy.deepcopy(flow)

    # =========================================================================
    # PROJECTS
    # =========================================================================

    def create_project(
        self,
        title: str,
        room_id: str,
        room_url: str = None,
        project_id: str = None,
    ) -> Optional[Dict[str, Any]]:
        pid = _clean(project_id) or str(uuid.uuid4())
        name = _clean(title)
        rid = _clean(room_id)
        if not name or not rid or pid in self._projects:
            return None
        now = _now()
        project = copy.deepcopy(PROJECT_DEFAULTS)
        project.update({
            "id": pid, "title": name, "roomId": rid, "roomUrl": _optional(room_url),
            "createdAt": now, "updatedAt": now,
        })
        self._projects[pid] = project
        self._saver.schedule()
        return copy.deepcopy(project)

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        project = self._projects.get(_clean(project_id))
        return copy.deepcopy(project) if project else None

    def list_projects(self, include_archived: bool = True) -> List[Dict[str, Any]]:
        projects = [
            p for p in self._projects.values()
            if include_archived or not p.get("archivedAt")
        ]
        return copy.deepcopy(sorted(projects, key=lambda p: p.get("createdAt") or "", reverse=True))

    def update_project(self, project_id: str, title: str = None, room_url: str = None) -> Optional[Dict[str, Any]]:
        """Update display fields. The room a project points to never changes."""
        project = self._projects.get(_clean(project_id))
        if project is None:
            return None
        if title is not None and _clean(title):
            project["title"] = _clean(title)
        if room_url is not None:
            project["roomUrl"] = _optional(room_url)
        self._touch(project)
        return copy.deepcopy(project)

    def archive_project(self, project_id: str, actor_user_id: str = None, actor_name: str = None) -> Optional[Dict[str, Any]]:
        project = self._projects.get(_clean(project_id))
        if project is None:
            return None
        if not project.get("archivedAt"):
            project.update({
                "archivedAt": _now(),
                "archivedByUserId": _optional(actor_user_id),
                "archivedByName": _optional(actor_name),
            })
            self._touch(project)
        return copy.deepcopy(project)

    def unarchive_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        project = self._projects.get(_clean(project_id))
        if project is None:
            return None
        if project.get("archivedAt"):
            project.update({"archivedAt": None, "archivedByUserId": None, "archivedByName": None})
            self._touch(project)
        return copy.deepcopy(project)

    def delete_project(self, project_id: str) -> bool:
        removed = self._projects.pop(_clean(project_id), None)
        if removed is not None:
            self._saver.schedule()
        return removed is not None

    # =========================================================================
    # CONTACTS (owner-scoped)
    # =========================================================================

    def _owned_contact(self, owner_user_id: str, contact_id: str) -> Optional[Dict[str, Any]]:
        contact = self._contacts.get(_clean(contact_id))
        if contact is None or contact.get("ownerUserId") != _clean(owner_user_id):
            return None
        return contact

    def create_contact(
        self,
        owner_user_id: str,
        email: str,
        name: str = None,
        tags: Iterable[str] = None,
        contact_id: str = None,
    ) -> Optional[Dict[str, Any]]:
        owner = _clean(owner_user_id)
        mail = normalize_email(email)
        cid = _clean(contact_id) or str(uuid.uuid4())
        if not owner or not mail or cid in self._contacts:
            return None
        now = _now()
        contact = {
            "id": cid,
            "ownerUserId": owner,
            "name": _clean(name) or mail,
            "email": mail,
            "tags": normalize_tags(list(tags) if tags is not None else []),
            "createdAt": now,
            "updatedAt": now,
        }
        self._contacts[cid] = contact
        self._saver.schedule()
        return copy.deepcopy(contact)

    def list_contacts_for_user(self, owner_user_id: str) -> List[Dict[str, Any]]:
        owner = _clean(owner_user_id)
        if not owner:
            return []
        mine = [c for c in self._contacts.values() if c.get("ownerUserId") == owner]
        return copy.deepcopy(sorted(mine, key=lambda c: (c.get("name") or "").lower()))

    def update_contact(
        self,
        owner_user_id: str,
        contact_id: str,
        name: str = None,
        email: str = None,
        tags: Iterable[str] = None,
    ) -> Optional[Dict[str, Any]]:
        contact = self._owned_contact(owner_user_id, contact_id)
        if contact is None:
            return None
        if name is not None:
            contact["name"] = _clean(name) or contact["email"]
        if email is not None and normalize_email(email):
            contact["email"] = normalize_email(email)
        if tags is not None:
            contact["tags"] = normalize_tags(list(tags))
        self._touch(contact)
        return copy.deepcopy(contact)

    def delete_contact(self, owner_user_id: str, contact_id: str) -> bool:
        contact = self._owned_contact(owner_user_id, contact_id)
        if contact is None:
            return False
        del self._contacts[contact["id"]]
        self._saver.schedule()
        return True
