"""
DocSpace Flow Hub - Bulk Link Flows

Creates N copies of a template in a project room, gives each copy a
fill-out link and records one approval flow per copy. All flows of a batch
share a groupId.

Units run one after another: each relies on a clean before/after listing
of the destination folder, which concurrent copies would spoil.

A failed unit does not discard the units already created in DocSpace. The
result lists created flows, failed units and units that were skipped after a
failure (default) or processed anyway (continue_on_error=True). A unit that
fails after its copy exists reports the copy's fileId so it can be found.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from services import portal_config
from services.docspace_client import DocSpaceClient, get_docspace_client, profile_display_name
from services.errors import BulkUnitError, FlowHubError, NotFoundError, ValidationError
from services.flow_store import FlowKind, FlowSource, FlowStore
from services.link_provisioner import LinkProvisioner, link_url
from services.reconciliation import ReconciliationPoller
from services.room_resolver import RoomFolderResolver

logger = logging.getLogger(__name__)

EXTENSION_PATTERN = re.compile(r"\.[a-z0-9]+$", re.IGNORECASE)


def clamp_count(value: Any, maximum: int = None) -> int:
    maximum = maximum or portal_config.BULK_MAX_COUNT
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        n = 1
    return min(maximum, max(1, n))


def split_title(title: str):
    """'Lease.pdf' -> ('Lease', '.pdf'); empty names fall back to 'Document'."""
    title = str(title or "").strip()
    match = EXTENSION_PATTERN.search(title)
    ext = match.group(0) if match else ""
    base = title[: -len(ext)] if ext else title
    return (base.strip() or "Document", ext)


def unit_title(base: str, ext: str, batch_id: str, index: int) -> str:
    return f"{base} - Link {batch_id}-{index + 1:03d}{ext}"


@dataclass
class BulkResult:
    group_id: str
    requested: int
    created: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    skipped: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "groupId": self.group_id,
            "requested": self.requested,
            "created": self.created,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class BulkFlowCreator:
    """
    Usage:
        creator = BulkFlowCreator(store)
        result = await creator.bulk_create(3, "T1", user=profile, room_id="R1", auth=token)
    """

    def __init__(
        self,
        store: FlowStore,
        client: DocSpaceClient = None,
        resolver: RoomFolderResolver = None,
        poller: ReconciliationPoller = None,
        provisioner: LinkProvisioner = None,
    ):
        self.store = store
        self.client = client or get_docspace_client()
        self.resolver = resolver or RoomFolderResolver(self.client)
        self.poller = poller or ReconciliationPoller(self.client)
        self.provisioner = provisioner or LinkProvisioner(self.client)

    def _target_room(self, project_id: Optional[str], room_id: Optional[str]) -> str:
        if project_id:
            project = self.store.get_project(project_id)
            if project is None:
                raise NotFoundError(f"Project not found: {project_id}")
            return project["roomId"]
        rid = str(room_id or "").strip() or portal_config.FORMS_ROOM_ID
        if not rid:
            raise ValidationError("No target project selected", details="Pick a project or configure a forms room")
        return rid

    async def _destination(self, room_id: str, auth: Optional[str]):
        try:
            folder = await self.resolver.ensure_folder(room_id, portal_config.BULK_LINKS_FOLDER_TITLE, auth=auth)
            dest = str(folder.get("id") or "") or room_id
        except FlowHubError as e:
            logger.warning("Bulk links folder unavailable in room %s (%s); using room root", room_id, e.message)
            dest = room_id
        try:
            folders = await self.resolver.resolve_folders(room_id, auth=auth)
            alternate = (folders.in_process or {}).get("id")
        except FlowHubError as e:
            logger.warning("In-process folder lookup failed for room %s: %s", room_id, e.message)
            alternate = None
        return dest, alternate

    async def bulk_create(
        self,
        count: Any,
        template_file_id: str,
        user: Dict[str, Any],
        project_id: str = None,
        room_id: str = None,
        auth: str = None,
        continue_on_error: bool = False,
    ) -> BulkResult:
        user_id = str((user or {}).get("id") or "").strip()
        if not user_id:
            raise FlowHubError("Invalid user token", status_code=401)
        tid = str(template_file_id or "").strip()
        if not tid:
            raise ValidationError("templateFileId is required")

        total = clamp_count(count)
        target_room = self._target_room(project_id, room_id)

        try:
            room = await self.client.get_room_info(target_room, auth=auth) or {}
        except FlowHubError as e:
            raise FlowHubError("No access to the selected project", status_code=403, details=e.details)
        if room.get("id") is None:
            raise FlowHubError("No access to the selected project", status_code=403)
        try:
            template = await self.client.get_file_info(tid) or {}
        except FlowHubError as e:
            raise NotFoundError("Template file not found", details=e.details)
        if template.get("id") is None:
            raise NotFoundError("Template file not found")

        dest, alternate = await self._destination(target_room, auth)
        base, ext = split_title(template.get("title"))
        batch_id = datetime.now(timezone.utc).strftime("%Y%m%d")
        result = BulkResult(group_id=str(uuid.uuid4()), requested=total)
        creator_name = profile_display_name(user)

        logger.info(
            "Bulk links: %d x template %s into folder %s (room %s, group %s)",
            total, tid, dest, target_room, result.group_id,
        )

        for index in range(total):
            title = unit_title(base, ext, batch_id, index)
            try:
                flow = await self._create_unit(
                    tid, template, dest, alternate, title, target_room,
                    user_id, creator_name, result.group_id, auth,
                )
            except (FlowHubError, httpx.HTTPError) as e:
                message = getattr(e, "message", None) or str(e)
                logger.error("Bulk unit %d/%d (%s) failed: %s", index + 1, total, title, message)
                result.failed.append({
                    "index": index,
                    "title": title,
                    "error": message,
                    "fileId": getattr(e, "file_id", None),
                    "fileTitle": getattr(e, "file_title", None),
                })
                if not continue_on_error:
                    result.skipped = total - index - 1
                    break
                continue
            result.created.append(flow)

        logger.info(
            "Bulk links finished: created=%d failed=%d skipped=%d",
            len(result.created), len(result.failed), result.skipped,
        )
        return result

    async def _create_unit(
        self,
        template_file_id: str,
        template: Dict[str, Any],
        dest_folder_id: str,
        alternate_folder_id: Optional[str],
        title: str,
        room_id: str,
        user_id: str,
        creator_name: str,
        group_id: str,
        auth: Optional[str],
    ) -> Dict[str, Any]:
        created = await self.poller.instantiate_template(
            template_file_id,
            dest_folder_id,
            title=title,
            auth=auth,
            alternate_folder_id=alternate_folder_id,
            template=template,
        )
        file_id = str(created.get("id") or "").strip()
        if not file_id:
            raise FlowHubError("Failed to determine created file id")
        file_title = created.get("title") or title

        try:
            link = await self.provisioner.ensure_link(
                file_id, access="FillForms", title=portal_config.BULK_LINK_TITLE, auth=auth
            )
            open_url = link_url(link)

            flow = self.store.create_flow(
                template_file_id=template_file_id,
                created_by_user_id=user_id,
                group_id=group_id,
                kind=FlowKind.APPROVAL.value,
                source=FlowSource.BULK_LINK.value,
                template_title=template.get("title"),
                file_id=file_id,
                file_title=file_title,
                project_room_id=room_id,
                created_by_name=creator_name,
                open_url=open_url,
                link_request_token=link.request_token,
            )
            if flow is None:
                raise FlowHubError("Flow record could not be created")
        except (FlowHubError, httpx.HTTPError) as e:
            raise BulkUnitError(e, file_id, file_title) from e
        return flow
