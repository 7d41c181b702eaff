"""
DocSpace Flow Hub - Webhook Ingestion Tests

Signature verification, id extraction from arbitrary payloads and candidate
flow selection.
"""

import hashlib
import hmac
import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from services.errors import SignatureError, UpstreamError, ValidationError
from services.flow_store import FlowStore
from services.webhook_ingestor import (
    FILE_ID_KEYS,
    FOLDER_ID_KEYS,
    ROOM_ID_KEYS,
    WebhookIngestor,
    collect_ids_by_keys,
    signature_header,
    verify_signature,
)

SECRET = "whsec-test"


def sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def make_ingestor(store=None, secret=SECRET, require_signature=False):
    store = store or FlowStore()
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value={"checked": 0, "changes": []})
    return WebhookIngestor(store, resolver, secret=secret, require_signature=require_signature), resolver


# =============================================================================
# SIGNATURES
# =============================================================================

class TestVerifySignature:

    def test_valid_signature(self):
        body = b'{"fileId": 1}'
        check = verify_signature(body, SECRET, sign(body))
        assert check.ok is True
        assert check.checked is True
        assert check.reason == "ok"

    def test_uppercase_hex_accepted(self):
        body = b"{}"
        header = "sha256=" + sign(body)[len("sha256="):].upper()
        assert verify_signature(body, SECRET, header).ok is True

    def test_tampered_body_fails(self):
        body = b'{"fileId": 1}'
        header = sign(body)
        check = verify_signature(b'{"fileId": 2}', SECRET, header)
        assert check.ok is False
        assert check.reason == "mismatch"

    def test_missing_header(self):
        check = verify_signature(b"{}", SECRET, "")
        assert (check.ok, check.reason) == (False, "missing_header")

    @pytest.mark.parametrize("header", ["abc", "sha256=xyz", "sha1=" + "a" * 40, "sha256=" + "a" * 63])
    def test_bad_format(self, header):
        check = verify_signature(b"{}", SECRET, header)
        assert (check.ok, check.reason) == (False, "bad_format")

    @pytest.mark.parametrize("header", ["", "garbage", "sha256=" + "0" * 64])
    def test_no_secret_accepts_anything(self, header):
        check = verify_signature(b"{}", "", header)
        assert check.ok is True
        assert check.checked is False
        assert check.reason == "no_secret"

    def test_header_aliases(self):
        assert signature_header({"x-onlyoffice-signature": "sha256=1"}) == "sha256=1"
        assert signature_header({"X-DocSpace-Signature-256": "a", "X-OnlyOffice-Signature": "b"}) == "a"
        assert signature_header({}) == ""


# =============================================================================
# ID EXTRACTION
# =============================================================================

class TestCollectIds:

    def test_nested_case_insensitive(self):
        payload = {
            "event": {"trigger": "file.updated"},
            "payload": {"FileID": 101, "data": [{"file_id": "102"}, {"documentId": 101}]},
        }
        assert collect_ids_by_keys(payload, FILE_ID_KEYS) == ["101", "102"]

    def test_excludes_bools_and_objects(self):
        payload = {"fileId": True, "file_id": {"id": 5}, "documentId": None, "document_id": 7}
        assert collect_ids_by_keys(payload, FILE_ID_KEYS) == ["7"]

    def test_cyclic_payload_terminates(self):
        node = {"roomId": "R1"}
        node["self"] = node
        node["children"] = [node, {"room_id": "R2", "parent": node}]
        assert collect_ids_by_keys(node, ROOM_ID_KEYS) == ["R1", "R2"]

    def test_folder_aliases(self):
        payload = {"folderId": 1, "parentFolderId": 2, "toFolderId": 3, "destFolderId": 3}
        assert collect_ids_by_keys(payload, FOLDER_ID_KEYS) == ["1", "2", "3"]

    def test_integral_float_matches_int(self):
        assert collect_ids_by_keys({"fileId": 12.0}, FILE_ID_KEYS) == ["12"]

    def test_non_container_payload(self):
        assert collect_ids_by_keys("fileId", FILE_ID_KEYS) == []


# =============================================================================
# INGESTION
# =============================================================================

class TestIngest:

    @pytest.mark.asyncio
    async def test_signed_delivery_resolves_matching_flows(self):
        store = FlowStore()
        store.create_flow(template_file_id="T1", created_by_user_id="U1", flow_id="F1", file_id="101")
        store.create_flow(template_file_id="T1", created_by_user_id="U1", flow_id="F2", project_room_id="R1")
        store.create_flow(template_file_id="T1", created_by_user_id="U1", flow_id="F3", file_id="999")
        ingestor, resolver = make_ingestor(store)

        body = json.dumps({"payload": {"fileId": 101, "roomId": "R1", "folderId": 5}}).encode()
        summary = await ingestor.ingest(body, {"X-DocSpace-Signature-256": sign(body)})

        assert summary["ok"] is True
        assert summary["signatureChecked"] is True
        assert summary["fileIds"] == ["101"]
        assert summary["roomIds"] == ["R1"]
        assert summary["folderIds"] == ["5"]
        assert summary["flowsConsidered"] == 2
        flows = resolver.resolve.await_args.args[0]
        assert {f["id"] for f in flows} == {"F1", "F2"}

    @pytest.mark.asyncio
    async def test_result_file_id_matches(self):
        store = FlowStore()
        store.create_flow(template_file_id="T1", created_by_user_id="U1", flow_id="F1", file_id="1")
        store._flows["F1"]["resultFileId"] = "55"
        ingestor, _ = make_ingestor(store, secret="")
        summary = await ingestor.ingest(b'{"fileId": "55"}', {})
        assert summary["flowsConsidered"] == 1

    @pytest.mark.asyncio
    async def test_untrackable_flows_skipped(self):
        store = FlowStore()
        store.create_flow(template_file_id="T1", created_by_user_id="U1", flow_id="F1", file_id="101")
        store.create_flow(template_file_id="T1", created_by_user_id="U1", flow_id="F2", file_id="101", kind="sharedSign")
        store.cancel_flow("F1")
        ingestor, resolver = make_ingestor(store, secret="")
        summary = await ingestor.ingest(b'{"fileId": 101}', {})
        assert summary["flowsConsidered"] == 0
        resolver.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self):
        ingestor, resolver = make_ingestor()
        body = b'{"fileId": 1}'
        with pytest.raises(SignatureError) as exc:
            await ingestor.ingest(b'{"fileId": 2}', {"X-DocSpace-Signature-256": sign(body)})
        assert exc.value.status_code == 401
        assert exc.value.reason == "mismatch"
        resolver.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_secret_accepts_unsigned(self):
        ingestor, _ = make_ingestor(secret="")
        summary = await ingestor.ingest(b'{"fileId": 1}', {"X-DocSpace-Signature-256": "whatever"})
        assert summary["ok"] is True
        assert summary["signatureChecked"] is False

    @pytest.mark.asyncio
    async def test_strict_mode_rejects_unsigned(self):
        ingestor, _ = make_ingestor(secret="", require_signature=True)
        with pytest.raises(SignatureError):
            await ingestor.ingest(b"{}", {})

    @pytest.mark.asyncio
    async def test_empty_body_summary(self):
        ingestor, _ = make_ingestor(secret="")
        summary = await ingestor.ingest(b"", {})
        assert summary["flowsConsidered"] == 0
        assert summary["fileIds"] == []

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        ingestor, _ = make_ingestor(secret="")
        with pytest.raises(ValidationError):
            await ingestor.ingest(b"{oops", {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        UpstreamError("Bad gateway", status_code=502),
        httpx.ConnectError("connection refused"),
    ])
    async def test_resolution_failure_still_summarized(self, error):
        """DocSpace trouble during resolution never fails the delivery."""
        store = FlowStore()
        store.create_flow(template_file_id="T1", created_by_user_id="U1", flow_id="F1", file_id="101")
        ingestor, resolver = make_ingestor(store)
        resolver.resolve = AsyncMock(side_effect=error)

        body = b'{"fileId": 101}'
        summary = await ingestor.ingest(body, {"X-DocSpace-Signature-256": sign(body)})

        assert summary["ok"] is True
        assert summary["flowsConsidered"] == 1
        assert "resolution" not in summary
        resolver.resolve.assert_awaited_once()
