"""
DocSpace Flow Hub - Flow Status Resolution

Reads the current DocSpace state of each flow's document and applies the
matching store transition:

- file gone (404) or sitting in the trash    -> mark_trashed
- form submitted, or file in a Complete folder -> complete
- form filling stopped / declined / canceled   -> cancel (actor "DocSpace")

The flow version is captured before the DocSpace round trip and passed as
expected_version, so a user transition that lands in between wins and the
resolution for that flow is dropped.
"""

import logging
from typing import Any, Dict, Iterable, Optional

import httpx
from dateutil import parser as date_parser

from services import portal_config
from services.docspace_client import DocSpaceClient, get_docspace_client
from services.errors import FlowHubError, FlowVersionConflict, UpstreamError
from services.flow_store import FlowStore, is_trackable_flow

logger = logging.getLogger(__name__)

DOCSPACE_ACTOR = "DocSpace"
COMPLETE_FILLING_STATUSES = {"complete", "completed"}
STOPPED_FILLING_STATUSES = {"stopped", "declined", "canceled", "cancelled"}
SUBMITTED_COMMENT = "submitted form"


def _norm(value: Any) -> str:
    return str(value or "").strip().lower()


def parse_external_timestamp(value: Any) -> Optional[str]:
    """DocSpace timestamps come in several ISO flavours; return ISO 8601 or None."""
    if not value:
        return None
    try:
        return date_parser.isoparse(str(value)).isoformat()
    except (ValueError, OverflowError):
        try:
            return date_parser.parse(str(value)).isoformat()
        except (ValueError, OverflowError):
            return None


def classify_file(info: Dict[str, Any], folder_is_complete: bool = False) -> str:
    """Return one of 'trashed', 'complete', 'canceled', 'unchanged'."""
    root_type = info.get("rootFolderType")
    if root_type is not None and str(root_type) == str(portal_config.FOLDER_TYPE_TRASH):
        return "trashed"
    filling = _norm(info.get("formFillingStatus"))
    if filling in COMPLETE_FILLING_STATUSES or _norm(info.get("comment")) == SUBMITTED_COMMENT:
        return "complete"
    if folder_is_complete:
        return "complete"
    if filling in STOPPED_FILLING_STATUSES:
        return "canceled"
    return "unchanged"


class FlowStatusResolver:
    """
    Usage:
        resolver = FlowStatusResolver(store)
        summary = await resolver.resolve(flows)
    """

    def __init__(self, store: FlowStore, client: DocSpaceClient = None):
        self.store = store
        self.client = client or get_docspace_client()

    async def _folder_is_complete(self, folder_id: Optional[str], cache: Dict[str, bool]) -> bool:
        if not folder_id:
            return False
        if folder_id in cache:
            return cache[folder_id]
        try:
            contents = await self.client.get_folder_contents(folder_id)
        except FlowHubError as e:
            logger.debug("Folder %s lookup failed: %s", folder_id, e.message)
            cache[folder_id] = False
            return False
        complete_titles = {_norm(t) for t in portal_config.COMPLETE_FOLDER_TITLES}
        result = (
            contents.get("folderTypeCode") == portal_config.FOLDER_TYPE_COMPLETE
            or _norm(contents.get("title")) in complete_titles
        )
        cache[folder_id] = result
        return result

    async def resolve(self, flows: Iterable[Dict[str, Any]], auth: str = None) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "checked": 0, "completed": 0, "canceled": 0, "trashed": 0,
            "unchanged": 0, "conflicts": 0, "errors": 0, "changes": [],
        }
        folder_cache: Dict[str, bool] = {}
        seen = set()

        for candidate in flows:
            flow_id = str((candidate or {}).get("id") or "")
            if not flow_id or flow_id in seen:
                continue
            seen.add(flow_id)
            flow = self.store.get_flow(flow_id)
            if not is_trackable_flow(flow):
                summary["unchanged"] += 1
                continue
            file_id = flow.get("resultFileId") or flow.get("fileId")
            if not file_id:
                summary["unchanged"] += 1
                continue

            version = flow["version"]
            summary["checked"] += 1
            try:
                outcome, info = await self._check_file(str(file_id), folder_cache, auth)
                changed = self._apply(flow_id, outcome, info, str(file_id), version)
            except FlowVersionConflict as e:
                logger.info("Status resolution for flow %s dropped: %s", flow_id, e.message)
                summary["conflicts"] += 1
                continue
            except (FlowHubError, httpx.HTTPError) as e:
                logger.warning("Status resolution for flow %s failed: %s", flow_id, getattr(e, "message", str(e)))
                summary["errors"] += 1
                continue

            if not changed:
                summary["unchanged"] += 1
                continue
            key = {"complete": "completed", "canceled": "canceled", "trashed": "trashed"}[outcome]
            summary[key] += 1
            summary["changes"].append({
                "flowId": flow_id,
                "outcome": outcome,
                "fileId": str(file_id),
                "fileUpdatedAt": parse_external_timestamp((info or {}).get("updated")),
            })

        logger.info(
            "Status resolution: checked=%d completed=%d canceled=%d trashed=%d conflicts=%d errors=%d",
            summary["checked"], summary["completed"], summary["canceled"],
            summary["trashed"], summary["conflicts"], summary["errors"],
        )
        return summary

    async def _check_file(self, file_id: str, folder_cache: Dict[str, bool], auth: Optional[str]):
        try:
            info = await self.client.get_file_info(file_id, auth=auth) or {}
        except UpstreamError as e:
            if e.status_code == 404:
                return "trashed", None
            raise
        folder_id = info.get("folderId")
        folder_is_complete = await self._folder_is_complete(str(folder_id) if folder_id else None, folder_cache)
        return classify_file(info, folder_is_complete), info

    def _apply(
        self,
        flow_id: str,
        outcome: str,
        info: Optional[Dict[str, Any]],
        file_id: str,
        version: int,
    ) -> bool:
        if outcome == "trashed":
            updated = self.store.mark_trashed(flow_id, actor_name=DOCSPACE_ACTOR, expected_version=version)
            return bool(updated and updated.get("version") != version)
        if outcome == "complete":
            info = info or {}
            updated = self.store.complete_flow(
                flow_id,
                actor_name=DOCSPACE_ACTOR,
                result_file_id=file_id,
                result_file_title=info.get("title"),
                result_file_url=info.get("webUrl"),
                expected_version=version,
            )
            return bool(updated and updated.get("version") != version)
        if outcome == "canceled":
            updated = self.store.cancel_flow(
                flow_id, actor_name=DOCSPACE_ACTOR, reason="Form filling stopped in DocSpace",
                expected_version=version,
            )
            return bool(updated and updated.get("version") != version)
        return False

