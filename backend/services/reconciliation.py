"""
DocSpace Flow Hub - Reconciliation Poller

DocSpace file copies are asynchronous: the copy call returns an operation
handle, never the created file. The poller finds the new file by listing
the destination folder before the operation and diffing later listings
against that snapshot.

Polling uses a fixed budget (attempts x delay, 8 x 450 ms by default). An
exhausted budget is a failure the caller must surface; it is not retried.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from services import portal_config
from services.docspace_client import DocSpaceClient, get_docspace_client
from services.errors import ReconciliationTimeout, UpstreamError, ValidationError

logger = logging.getLogger(__name__)


def _norm(value: Any) -> str:
    return str(value or "").strip().lower()


def _norm_ext(value: Any) -> str:
    ext = _norm(value)
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


class ReconciliationPoller:
    """
    Usage:
        poller = ReconciliationPoller()
        created = await poller.instantiate_template(template_id, folder_id, title="Form - 001.pdf")
    """

    def __init__(
        self,
        client: DocSpaceClient = None,
        attempts: int = None,
        delay: float = None,
        sleep: Callable[[float], Awaitable[Any]] = None,
    ):
        self.client = client or get_docspace_client()
        self.attempts = max(1, attempts if attempts is not None else portal_config.RECONCILE_ATTEMPTS)
        self.delay = delay if delay is not None else portal_config.RECONCILE_DELAY_MS / 1000.0
        self._sleep = sleep or asyncio.sleep

    async def _list_files(self, folder_id: str, auth: Optional[str]) -> List[Dict[str, Any]]:
        contents = await self.client.get_folder_contents(folder_id, auth=auth)
        return [i for i in contents.get("items") or [] if i.get("type") == "file"]

    async def snapshot_ids(self, folder_id: str, auth: str = None) -> Set[str]:
        return {str(i["id"]) for i in await self._list_files(folder_id, auth)}

    async def _new_files(
        self,
        folder_id: str,
        before_ids: Set[str],
        expected_title: Optional[str],
        extension: str,
        auth: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        try:
            items = await self._list_files(folder_id, auth)
        except UpstreamError as e:
            logger.warning("Listing folder %s failed during reconciliation: %s", folder_id, e.message)
            return None
        candidates = [
            i for i in items
            if str(i["id"]) not in before_ids
            and (not extension or _norm_ext(i.get("fileExtension")) == extension)
        ]
        if not candidates:
            return None
        if expected_title:
            wanted = _norm(expected_title)
            for item in candidates:
                if _norm(item.get("title")) == wanted:
                    return item
        return candidates[0]

    async def find_new_file(
        self,
        folder_id: str,
        before_ids: Set[str],
        expected_title: str = None,
        extension: str = None,
        alternate_folder_id: str = None,
        alternate_before_ids: Set[str] = None,
        auth: str = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Poll until a file absent from `before_ids` shows up in `folder_id`.

        When the primary folder shows nothing on an attempt, the alternate
        folder is checked as well. Returns None once the budget is spent.
        """
        ext = _norm_ext(extension)
        before = {str(i) for i in before_ids or ()}
        alt_before = None if alternate_before_ids is None else {str(i) for i in alternate_before_ids}
        if alternate_folder_id and alt_before is None:
            alt_before = await self.snapshot_ids(alternate_folder_id, auth)

        for attempt in range(1, self.attempts + 1):
            found = await self._new_files(folder_id, before, expected_title, ext, auth)
            if found is None and alternate_folder_id:
                found = await self._new_files(alternate_folder_id, alt_before, expected_title, ext, auth)
            if found is not None:
                logger.info(
                    "Reconciled new file %s (%s) on attempt %d/%d",
                    found.get("id"), found.get("title"), attempt, self.attempts,
                )
                return found
            if attempt < self.attempts:
                await self._sleep(self.delay)

        logger.warning(
            "No new file in folder %s after %d attempts (expected '%s')",
            folder_id, self.attempts, expected_title or "",
        )
        return None

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        folder_id: str,
        expected_title: str = None,
        extension: str = None,
        alternate_folder_id: str = None,
        auth: str = None,
    ) -> Dict[str, Any]:
        """Snapshot, run the asynchronous operation, then poll for its result."""
        before = await self.snapshot_ids(folder_id, auth)
        alt_before = await self.snapshot_ids(alternate_folder_id, auth) if alternate_folder_id else None
        await operation()
        found = await self.find_new_file(
            folder_id,
            before,
            expected_title=expected_title,
            extension=extension,
            alternate_folder_id=alternate_folder_id,
            alternate_before_ids=alt_before,
            auth=auth,
        )
        if found is None:
            raise ReconciliationTimeout(folder_id, self.attempts, expected_title)
        return found

    async def instantiate_template(
        self,
        template_file_id: str,
        dest_folder_id: str,
        title: str = None,
        auth: str = None,
        alternate_folder_id: str = None,
        template: Dict[str, Any] = None,
    ) -> Dict[str, Any]:
        """
        Copy a template into `dest_folder_id` and return the new file item.

        The copy keeps the template's title; when `title` differs the new
        file is renamed afterwards.
        """
        tid = str(template_file_id or "").strip()
        dest = str(dest_folder_id or "").strip()
        if not tid or not dest:
            raise ValidationError("templateFileId and destFolderId are required")
        if template is None:
            template = await self.client.get_file_info(tid, auth=auth) or {}
        source_title = str(template.get("title") or "")
        extension = template.get("fileExst") or template.get("fileExtension")
        if not extension and "." in source_title:
            extension = source_title[source_title.rfind("."):]

        created = await self.run(
            lambda: self.client.copy_files([tid], dest, auth=auth),
            dest,
            expected_title=source_title,
            extension=extension,
            alternate_folder_id=alternate_folder_id,
            auth=auth,
        )

        if title and _norm(title) != _norm(created.get("title")):
            renamed = await self.client.rename_file(created["id"], title, auth=auth)
            created = {**created, "title": renamed.get("title") or title}
        return created
