"""
DocSpace Flow Hub - Room and Folder Resolution

Finds the forms room and its semantic subfolders. Display titles are
localized and editable, so folders are matched by DocSpace folder type code
first and by title only when no typed folder is present.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from services import portal_config
from services.docspace_client import DocSpaceClient, get_docspace_client
from services.errors import NotFoundError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)


def _key(value: Any) -> str:
    return str(value or "").strip().lower()


def match_by_title(items: Iterable[Dict[str, Any]], candidates: Iterable[str]) -> Optional[Dict[str, Any]]:
    """Exact case-insensitive match over all candidates first, then substring."""
    items = list(items)
    keys = [_key(c) for c in candidates if _key(c)]
    for key in keys:
        for item in items:
            if _key(item.get("title")) == key:
                return item
    for key in keys:
        for item in items:
            if key in _key(item.get("title")):
                return item
    return None


@dataclass
class RoomFolders:
    room: Dict[str, Any]
    templates: Dict[str, Any]
    in_process: Optional[Dict[str, Any]] = None
    complete: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room": self.room,
            "templates": self.templates,
            "inProcess": self.in_process,
            "complete": self.complete,
        }


class RoomFolderResolver:
    """
    Usage:
        resolver = RoomFolderResolver()
        room = await resolver.resolve_room(auth=user_token)
        folders = await resolver.resolve_folders(room["id"], auth=user_token)
    """

    def __init__(
        self,
        client: DocSpaceClient = None,
        room_id: str = None,
        room_titles: List[str] = None,
    ):
        self.client = client or get_docspace_client()
        self.room_id = (room_id if room_id is not None else portal_config.FORMS_ROOM_ID).strip()
        if room_titles is None:
            room_titles = [portal_config.FORMS_ROOM_TITLE] + portal_config.FORMS_ROOM_TITLE_FALLBACKS
        self.room_titles = [t.strip() for t in room_titles if t and t.strip()]

    async def resolve_room(self, auth: str = None) -> Dict[str, Any]:
        """Configured room when still reachable, else the first title candidate match."""
        if self.room_id:
            try:
                info = await self.client.get_room_info(self.room_id, auth=auth) or {}
                if info.get("id") is not None:
                    return {"id": str(info["id"]), "title": str(info.get("title") or "")}
            except UpstreamError as e:
                logger.warning(
                    "Configured room %s is not reachable (%s); searching by title", self.room_id, e.status_code
                )

        rooms = await self.client.list_rooms(auth=auth)
        room = match_by_title(rooms, self.room_titles)
        if room is None or not room.get("id"):
            candidates = ", ".join(self.room_titles) or "none"
            raise NotFoundError(
                f"Forms room not found. Configure DOCSPACE_FORMS_ROOM_TITLE (candidates: {candidates})",
                details={"candidates": self.room_titles},
            )
        logger.info("Resolved forms room %s (%s)", room["id"], room.get("title"))
        return {"id": str(room["id"]), "title": str(room.get("title") or "")}

    async def resolve_folders(self, room_id: str, auth: str = None) -> RoomFolders:
        rid = str(room_id or "").strip()
        if not rid:
            raise ValidationError("roomId is required")
        contents = await self.client.get_folder_contents(rid, auth=auth)
        folders = [i for i in contents.get("items") or [] if i.get("type") == "folder"]

        def pick(type_code: int, titles: List[str]) -> Optional[Dict[str, Any]]:
            typed = next((f for f in folders if f.get("folderTypeCode") == type_code), None)
            return typed or match_by_title(folders, titles)

        room = {"id": str(contents.get("id") or rid), "title": contents.get("title") or ""}
        templates_titles = [portal_config.FORMS_TEMPLATES_FOLDER_TITLE] if portal_config.FORMS_TEMPLATES_FOLDER_TITLE else []
        templates = pick(portal_config.FOLDER_TYPE_TEMPLATES, templates_titles)
        resolved = RoomFolders(
            room=room,
            templates=templates or room,
            in_process=pick(portal_config.FOLDER_TYPE_IN_PROCESS, portal_config.IN_PROCESS_FOLDER_TITLES),
            complete=pick(portal_config.FOLDER_TYPE_COMPLETE, portal_config.COMPLETE_FOLDER_TITLES),
        )
        if resolved.in_process is None or resolved.complete is None:
            logger.warning(
                "Room %s is missing standard folders (inProcess=%s, complete=%s)",
                rid, bool(resolved.in_process), bool(resolved.complete),
            )
        return resolved

    async def ensure_folder(self, parent_id: str, title: str, auth: str = None) -> Dict[str, Any]:
        """Return the subfolder titled `title`, creating it when absent."""
        contents = await self.client.get_folder_contents(parent_id, auth=auth)
        wanted = _key(title)
        for item in contents.get("items") or []:
            if item.get("type") == "folder" and _key(item.get("title")) == wanted:
                return item
        created = await self.client.create_folder(parent_id, title, auth=auth)
        logger.info("Created folder '%s' in %s (id=%s)", title, parent_id, created.get("id"))
        return created
