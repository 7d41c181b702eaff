"""
DocSpace Flow Hub - DocSpace API Client

Async client for the parts of the ONLYOFFICE DocSpace REST API the flow
services consume: rooms, folder listings, asynchronous file copy, file
metadata and external share links.

Every call accepts an optional `auth` value (a user's token). Without it the
configured service credential is used. A non-2xx answer raises UpstreamError
carrying the upstream status and body so callers can surface them unchanged.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from services import portal_config
from services.errors import FlowHubError, UpstreamError

logger = logging.getLogger(__name__)

API_PREFIX = "/api/2.0"


def normalize_auth_header(value: Optional[str]) -> str:
    """Prefix raw tokens with 'Bearer '; keep explicit schemes as they are."""
    value = (value or "").strip()
    if not value:
        return ""
    if value.startswith(("Bearer ", "Basic ", "ASC ")):
        return value
    return f"Bearer {value}"


def _file_extension(item: Dict[str, Any]) -> str:
    ext = item.get("fileExst") or item.get("fileExtension")
    if ext:
        return str(ext).lower()
    match = re.search(r"\.[a-z0-9]+$", str(item.get("title") or ""), re.IGNORECASE)
    return match.group(0).lower() if match else ""


def _folder_type_code(item: Dict[str, Any]) -> Optional[int]:
    for key in ("folderType", "type"):
        value = item.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def normalize_item(item: Dict[str, Any], kind: str) -> Dict[str, Any]:
    """Flatten a DocSpace file/folder DTO into the shape the services use."""
    return {
        "id": str(item.get("id", "")),
        "title": str(item.get("title") or ""),
        "type": kind,
        "fileExtension": _file_extension(item) if kind == "file" else "",
        "folderTypeCode": _folder_type_code(item) if kind == "folder" else None,
        "parentId": str(item.get("folderId") or item.get("parentId") or "") or None,
        "created": item.get("created"),
        "webUrl": item.get("webUrl"),
    }


def profile_display_name(profile: Optional[Dict[str, Any]]) -> str:
    profile = profile or {}
    full_name = " ".join(p for p in (profile.get("firstName"), profile.get("lastName")) if p)
    return (
        profile.get("displayName")
        or full_name
        or profile.get("userName")
        or profile.get("email")
        or "User"
    )


class DocSpaceClient:
    """
    DocSpace API client.

    Usage:
        client = DocSpaceClient()
        rooms = await client.list_rooms(auth=user_token)
        contents = await client.get_folder_contents(room_id)
    """

    def __init__(
        self,
        base_url: str = None,
        auth_token: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.base_url = (base_url if base_url is not None else portal_config.DOCSPACE_BASE_URL).rstrip("/")
        self._service_auth = normalize_auth_header(
            auth_token if auth_token is not None else portal_config.DOCSPACE_AUTH_TOKEN
        )
        self.timeout = timeout or portal_config.DOCSPACE_REQUEST_TIMEOUT
        self._transport = transport

    @property
    def has_service_credential(self) -> bool:
        return bool(self._service_auth)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _api_request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict] = None,
        auth: Optional[str] = None,
        requires_auth: bool = True,
    ) -> Any:
        """
        Make an authenticated request and unwrap DocSpace's {"response": ...} envelope.
        """
        if not self.base_url:
            raise FlowHubError("DOCSPACE_BASE_URL is not set")
        authorization = normalize_auth_header(auth) or self._service_auth
        if requires_auth and not authorization:
            raise FlowHubError("DOCSPACE_AUTH_TOKEN is not set")

        url = f"{self.base_url}{API_PREFIX}{path}"
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if requires_auth:
            headers["Authorization"] = authorization

        async with self._client() as client:
            resp = await client.request(method, url, headers=headers, json=json_body)

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code >= 400:
            message = None
            if isinstance(data, dict):
                err = data.get("error")
                if isinstance(err, dict):
                    message = err.get("message")
                message = message or data.get("message") or (err if isinstance(err, str) else None)
            message = message or resp.reason_phrase or "DocSpace request failed"
            logger.warning("DocSpace %s %s failed: %d - %s", method, path, resp.status_code, message)
            raise UpstreamError(message, status_code=resp.status_code, details=data)

        if isinstance(data, dict) and "response" in data:
            return data["response"]
        return data

    # =========================================================================
    # PEOPLE
    # =========================================================================

    async def authenticate_user(self, user_name: str, password: str) -> Optional[str]:
        """Exchange DocSpace credentials for a user token."""
        data = await self._api_request(
            "POST",
            "/authentication",
            json_body={"userName": user_name, "password": password},
            requires_auth=False,
        )
        return (data or {}).get("token") if isinstance(data, dict) else None

    async def get_self_profile(self, auth: str) -> Dict[str, Any]:
        """Profile of the user owning `auth`."""
        if not auth:
            raise FlowHubError("User token is required", status_code=401)
        return await self._api_request("GET", "/people/@self", auth=auth)

    # =========================================================================
    # ROOMS / FOLDERS
    # =========================================================================

    async def list_rooms(self, auth: str = None) -> List[Dict[str, Any]]:
        data = await self._api_request("GET", "/files/rooms", auth=auth)
        rooms = (data or {}).get("folders") or []
        return [
            {
                "id": str(r.get("id", "")),
                "title": str(r.get("title") or r.get("name") or ""),
                "type": r.get("roomType"),
            }
            for r in rooms
        ]

    async def get_room_info(self, room_id: str, auth: str = None) -> Dict[str, Any]:
        return await self._api_request("GET", f"/files/rooms/{room_id}", auth=auth)

    async def get_folder_contents(self, folder_id: str, auth: str = None) -> Dict[str, Any]:
        """
        List a folder. Returns {id, title, items: [...]} where each item has
        id, title, type ("file" | "folder"), fileExtension and folderTypeCode.
        """
        if not str(folder_id or "").strip():
            raise FlowHubError("folderId is required", status_code=400)
        data = await self._api_request("GET", f"/files/{folder_id}", auth=auth) or {}
        current = data.get("current") or {}
        items = [normalize_item(f, "folder") for f in data.get("folders") or []]
        items.extend(normalize_item(f, "file") for f in data.get("files") or [])
        return {
            "id": str(current.get("id", folder_id)),
            "title": str(current.get("title") or ""),
            "folderTypeCode": _folder_type_code(current),
            "items": items,
        }

    async def create_folder(self, parent_id: str, title: str, auth: str = None) -> Dict[str, Any]:
        created = await self._api_request(
            "POST", f"/files/folder/{parent_id}", json_body={"title": title}, auth=auth
        )
        return normalize_item(created or {}, "folder")

    # =========================================================================
    # FILES
    # =========================================================================

    async def copy_files(
        self,
        file_ids: List[str],
        dest_folder_id: str,
        auth: str = None,
        to_fill_out: bool = False,
    ) -> Any:
        """
        Start an asynchronous copy. The created file is NOT returned; it only
        becomes visible in later listings of dest_folder_id.
        """
        if not file_ids or not dest_folder_id:
            raise FlowHubError("fileIds and destFolderId are required", status_code=400)
        return await self._api_request(
            "PUT",
            "/files/fileops/copy",
            json_body={
                "fileIds": [str(f) for f in file_ids],
                "destFolderId": str(dest_folder_id),
                "deleteAfter": False,
                "content": True,
                "toFillOut": to_fill_out,
            },
            auth=auth,
        )

    async def get_file_info(self, file_id: str, auth: str = None) -> Dict[str, Any]:
        return await self._api_request("GET", f"/files/file/{file_id}", auth=auth)

    async def rename_file(self, file_id: str, title: str, auth: str = None) -> Dict[str, Any]:
        updated = await self._api_request(
            "PUT", f"/files/file/{file_id}", json_body={"title": title}, auth=auth
        )
        return normalize_item(updated or {}, "file")

    async def get_external_links(self, file_id: str, auth: str = None) -> List[Dict[str, Any]]:
        data = await self._api_request("GET", f"/files/file/{file_id}/links", auth=auth)
        return data if isinstance(data, list) else []

    async def upsert_external_link(self, file_id: str, body: Dict[str, Any], auth: str = None) -> Any:
        return await self._api_request("PUT", f"/files/file/{file_id}/links", json_body=body, auth=auth)


# =============================================================================
# SINGLETON ACCESS
# =============================================================================

_docspace_client: Optional[DocSpaceClient] = None


def get_docspace_client() -> DocSpaceClient:
    """Get the singleton DocSpace client instance."""
    global _docspace_client
    if _docspace_client is None:
        _docspace_client = DocSpaceClient()
    return _docspace_client
