"""
DocSpace Flow Hub - Webhook Ingestion

Turns DocSpace webhook deliveries into a set of flows whose status should be
re-checked.

1. Verify the HMAC-SHA256 signature over the exact raw body.
2. Walk the whole payload and collect file / room / folder ids found under a
   fixed list of key aliases. The payload schema is not versioned upstream.
3. Match the ids to trackable flows and hand them to FlowStatusResolver.

A delivery that matches no flow still gets a 200 summary; only a bad
signature (or, in strict mode, a missing one) is rejected.
"""

import hashlib
import hmac
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from services import portal_config
from services.errors import FlowHubError, SignatureError, ValidationError
from services.flow_status import FlowStatusResolver
from services.flow_store import FlowStore, is_trackable_flow

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = [
    "X-DocSpace-Signature-256",
    "X-DocSpace-Signature",
    "X-OnlyOffice-Signature-256",
    "X-OnlyOffice-Signature",
]

FILE_ID_KEYS = ["fileId", "file_id", "documentId", "document_id"]
ROOM_ID_KEYS = ["roomId", "room_id"]
FOLDER_ID_KEYS = [
    "folderId",
    "folder_id",
    "parentFolderId",
    "parent_folder_id",
    "toFolderId",
    "destFolderId",
]

SIGNATURE_PATTERN = re.compile(r"^sha256=([a-fA-F0-9]{64})$")


@dataclass
class SignatureCheck:
    ok: bool
    checked: bool
    reason: str


def verify_signature(raw_body: bytes, secret: Optional[str], header_value: Optional[str]) -> SignatureCheck:
    """Check a `sha256=<hex>` header against HMAC-SHA256(secret, raw_body)."""
    secret = (secret or "").strip()
    if not secret:
        return SignatureCheck(ok=True, checked=False, reason="no_secret")

    header = (header_value or "").strip()
    if not header:
        return SignatureCheck(ok=False, checked=True, reason="missing_header")

    match = SIGNATURE_PATTERN.match(header)
    if not match:
        return SignatureCheck(ok=False, checked=True, reason="bad_format")

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    ok = hmac.compare_digest(expected, match.group(1).lower())
    return SignatureCheck(ok=ok, checked=True, reason="ok" if ok else "mismatch")


def signature_header(headers: Mapping[str, str]) -> str:
    """First non-empty signature header; lookup is case-insensitive."""
    lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name.lower())
        if value:
            return value
    return ""


def _id_value(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, (str, int, float)):
        return str(value).strip() or None
    return None


def collect_ids_by_keys(payload: Any, keys: Iterable[str]) -> List[str]:
    """
    Collect scalar ids stored under any of `keys` (case-insensitive) anywhere
    in the payload, in first-seen order without duplicates.

    Containers are tracked by identity, so shared or cyclic references are
    visited once.
    """
    wanted = {str(k).lower() for k in keys if k}
    found: List[str] = []
    visited = set()

    def walk(node: Any) -> None:
        if not isinstance(node, (dict, list, tuple)) or id(node) in visited:
            return
        visited.add(id(node))
        if isinstance(node, dict):
            for key, value in node.items():
                if str(key).lower() in wanted:
                    ident = _id_value(value)
                    if ident and ident not in found:
                        found.append(ident)
                walk(value)
        else:
            for item in node:
                walk(item)

    walk(payload)
    return found


class WebhookIngestor:
    """
    Usage:
        ingestor = WebhookIngestor(store, resolver)
        summary = await ingestor.ingest(raw_body, request.headers)
    """

    def __init__(
        self,
        store: FlowStore,
        resolver: FlowStatusResolver = None,
        secret: str = None,
        require_signature: bool = None,
    ):
        self.store = store
        self.resolver = resolver or FlowStatusResolver(store)
        self.secret = secret if secret is not None else portal_config.WEBHOOK_SECRET
        self.require_signature = (
            require_signature if require_signature is not None else portal_config.WEBHOOK_REQUIRE_SIGNATURE
        )

    def find_candidate_flows(self, room_ids: List[str], file_ids: List[str]) -> List[Dict[str, Any]]:
        by_id: Dict[str, Dict[str, Any]] = {}
        for room_id in room_ids:
            for flow in self.store.list_flows_for_room(room_id):
                if is_trackable_flow(flow):
                    by_id[flow["id"]] = flow
        if file_ids:
            wanted = set(file_ids)
            for flow in self.store.list_all_flows():
                if not is_trackable_flow(flow):
                    continue
                file_id = str(flow.get("fileId") or "").strip()
                result_id = str(flow.get("resultFileId") or "").strip()
                if file_id in wanted or (result_id and result_id in wanted):
                    by_id[flow["id"]] = flow
        return list(by_id.values())

    async def ingest(self, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        check = verify_signature(raw_body, self.secret, signature_header(headers))
        if not check.ok:
            logger.warning("Webhook rejected: %s", check.reason)
            raise SignatureError(check.reason)
        if not check.checked:
            if self.require_signature:
                logger.warning("Webhook rejected: no secret configured and signatures are required")
                raise SignatureError("no_secret")
            logger.warning("Webhook accepted without signature check (DOCSPACE_WEBHOOK_SECRET is not set)")

        try:
            payload = json.loads(raw_body.decode("utf-8")) if raw_body.strip() else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError("Webhook body is not valid JSON", details=str(e))

        file_ids = collect_ids_by_keys(payload, FILE_ID_KEYS)
        room_ids = collect_ids_by_keys(payload, ROOM_ID_KEYS)
        folder_ids = collect_ids_by_keys(payload, FOLDER_ID_KEYS)

        flows = self.find_candidate_flows(room_ids, file_ids)
        resolution = None
        if flows:
            try:
                resolution = await self.resolver.resolve(flows)
            except (FlowHubError, httpx.HTTPError) as e:
                logger.error("Webhook status resolution failed: %s", getattr(e, "message", str(e)))

        logger.info(
            "Webhook processed: rooms=%s files=%s folders=%s flows=%d",
            room_ids, file_ids, folder_ids, len(flows),
        )
        summary = {
            "ok": True,
            "signatureChecked": check.checked,
            "roomIds": room_ids,
            "folderIds": folder_ids,
            "fileIds": file_ids,
            "flowsConsidered": len(flows),
        }
        if resolution is not None:
            summary["resolution"] = {k: v for k, v in resolution.items() if k != "changes"}
        return summary
