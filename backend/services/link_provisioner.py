"""
DocSpace Flow Hub - External Link Provisioning

Makes sure a file has one primary, externally visible share link with the
requested access level and label. Repeated calls update the existing link in
place instead of creating new ones.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from services import portal_config
from services.docspace_client import DocSpaceClient, get_docspace_client
from services.errors import FlowHubError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

MAX_LINK_TITLE_LENGTH = 255


@dataclass
class ExternalLink:
    """A file share link as returned by DocSpace, flattened."""
    id: Optional[str]
    title: str
    share_link: Optional[str]
    request_token: Optional[str] = None
    link_type: Optional[int] = None
    internal: Optional[bool] = None
    primary: Optional[bool] = None

    @property
    def is_external(self) -> bool:
        return self.internal is False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "id": data["id"],
            "title": data["title"],
            "shareLink": data["share_link"],
            "requestToken": data["request_token"],
            "linkType": data["link_type"],
            "internal": data["internal"],
            "primary": data["primary"],
        }


def normalize_link_entry(entry: Dict[str, Any]) -> ExternalLink:
    """DocSpace nests link data under sharedLink / sharedTo depending on version."""
    entry = entry or {}
    shared = entry.get("sharedLink") or entry.get("sharedTo") or entry.get("shared") or entry
    if not isinstance(shared, dict):
        shared = entry

    def pick(key):
        value = shared.get(key)
        return value if value is not None else entry.get(key)

    share_link = pick("shareLink")
    request_token = pick("requestToken")
    internal = pick("internal")
    primary = pick("primary")
    link_id = pick("id")
    return ExternalLink(
        id=str(link_id) if link_id else None,
        title=str(pick("title") or ""),
        share_link=str(share_link) if share_link else None,
        request_token=str(request_token) if request_token else None,
        link_type=pick("linkType"),
        internal=internal if isinstance(internal, bool) else None,
        primary=primary if isinstance(primary, bool) else None,
    )


def _usable(entries: List[Dict[str, Any]]) -> List[ExternalLink]:
    links = [normalize_link_entry(e) for e in entries or [] if isinstance(e, dict)]
    return [l for l in links if l.share_link]


def _first(links: List[ExternalLink], *predicates) -> Optional[ExternalLink]:
    for predicate in predicates:
        for link in links:
            if predicate(link):
                return link
    return None


class LinkProvisioner:
    """
    Usage:
        provisioner = LinkProvisioner()
        link = await provisioner.ensure_link(file_id, access="FillForms", title="Approval link")
    """

    def __init__(self, client: DocSpaceClient = None):
        self.client = client or get_docspace_client()

    async def ensure_link(
        self,
        file_id: str,
        access: str = "FillForms",
        title: str = None,
        auth: str = None,
    ) -> Optional[ExternalLink]:
        """
        Upsert the file's primary external link and return it as re-read from DocSpace.

        A 403 under a user credential is retried once with the service credential.
        """
        fid = str(file_id or "").strip()
        if not fid:
            raise ValidationError("fileId is required")
        desired_access = str(access or "").strip()
        if not desired_access:
            raise ValidationError("access is required")

        try:
            return await self._ensure(fid, desired_access, title, auth)
        except UpstreamError as e:
            if not auth or e.status_code != 403 or not self.client.has_service_credential:
                raise
            logger.warning("Link upsert on file %s denied for user token, retrying with service credential", fid)
            return await self._ensure(fid, desired_access, title, None)

    async def _ensure(self, file_id: str, access: str, title: Optional[str], auth: Optional[str]) -> Optional[ExternalLink]:
        links = _usable(await self.client.get_external_links(file_id, auth=auth))
        existing = _first(
            links,
            lambda l: l.primary and l.is_external and l.id,
            lambda l: l.is_external and l.id,
            lambda l: l.id,
        )

        body: Dict[str, Any] = {"access": access, "internal": False, "primary": True}
        if existing is not None:
            body["linkId"] = existing.id
        if title:
            body["title"] = str(title)[:MAX_LINK_TITLE_LENGTH]

        await self.client.upsert_external_link(file_id, body, auth=auth)

        updated = _usable(await self.client.get_external_links(file_id, auth=auth))
        picked = _first(
            updated,
            lambda l: l.primary and l.is_external,
            lambda l: l.is_external,
        ) or (updated[0] if updated else None)

        logger.info(
            "External link %s for file %s (access=%s, link=%s)",
            "updated" if existing else "created", file_id, access, picked.id if picked else None,
        )
        return picked

    async def find_fill_link(self, file_id: str, auth: str = None) -> Optional[ExternalLink]:
        """Read-only lookup of the link recipients use to fill out a form."""
        fid = str(file_id or "").strip()
        if not fid:
            raise ValidationError("fileId is required")
        links = _usable(await self.client.get_external_links(fid, auth=auth))
        wanted = portal_config.FILL_LINK_TITLE.lower()
        return _first(
            links,
            lambda l: l.title.lower() == wanted,
            lambda l: "fill out" in l.title.lower(),
            lambda l: l.link_type == 1,
            lambda l: l.primary and l.is_external,
            lambda l: l.is_external,
        )


def link_url(link: Optional[ExternalLink]) -> str:
    """Share URL of a provisioned link; a link without one is a provisioning failure."""
    if link is None or not link.share_link:
        raise FlowHubError("DocSpace did not return a share link", status_code=502)
    return link.share_link
