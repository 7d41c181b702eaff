"""
DocSpace Flow Hub - DocSpace Client Tests

Requests are served by httpx.MockTransport; nothing leaves the process.
"""

import json

import httpx
import pytest

from services.docspace_client import (
    DocSpaceClient,
    normalize_auth_header,
    normalize_item,
    profile_display_name,
)
from services.errors import FlowHubError, UpstreamError

BASE_URL = "https://portal.docspace.test"


def make_client(handler, auth_token="service-key"):
    return DocSpaceClient(
        base_url=BASE_URL,
        auth_token=auth_token,
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


class Recorder:
    """Captures requests and answers with a fixed JSON body."""

    def __init__(self, body=None, status_code=200):
        self.requests = []
        self.body = body if body is not None else {"response": {}}
        self.status_code = status_code

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


class TestHelpers:

    @pytest.mark.parametrize("value,expected", [
        ("abc", "Bearer abc"),
        ("Bearer abc", "Bearer abc"),
        ("Basic xyz", "Basic xyz"),
        ("ASC token", "ASC token"),
        ("  ", ""),
        (None, ""),
    ])
    def test_normalize_auth_header(self, value, expected):
        assert normalize_auth_header(value) == expected

    def test_normalize_file_item(self):
        item = normalize_item({"id": 12, "title": "Lease.PDF", "folderId": 3}, "file")
        assert item["id"] == "12"
        assert item["fileExtension"] == ".pdf"
        assert item["parentId"] == "3"
        assert item["folderTypeCode"] is None

    def test_normalize_folder_type_codes(self):
        assert normalize_item({"id": 1, "folderType": 26}, "folder")["folderTypeCode"] == 26
        assert normalize_item({"id": 1, "type": "25"}, "folder")["folderTypeCode"] == 25
        assert normalize_item({"id": 1, "folderType": True}, "folder")["folderTypeCode"] is None

    def test_profile_display_name(self):
        assert profile_display_name({"displayName": "Ann"}) == "Ann"
        assert profile_display_name({"firstName": "Ann", "lastName": "Lee"}) == "Ann Lee"
        assert profile_display_name({"email": "a@x.com"}) == "a@x.com"
        assert profile_display_name(None) == "User"


class TestRequests:

    @pytest.mark.asyncio
    async def test_service_credential_used_by_default(self):
        recorder = Recorder({"response": {"id": 5, "title": "Room"}})
        client = make_client(recorder)
        info = await client.get_room_info("5")
        assert info["id"] == 5
        request = recorder.requests[0]
        assert str(request.url) == f"{BASE_URL}/api/2.0/files/rooms/5"
        assert request.headers["Authorization"] == "Bearer service-key"

    @pytest.mark.asyncio
    async def test_user_token_overrides(self):
        recorder = Recorder({"response": {"id": "u1"}})
        await make_client(recorder).get_self_profile("ASC user-token")
        assert recorder.requests[0].headers["Authorization"] == "ASC user-token"

    @pytest.mark.asyncio
    async def test_error_carries_upstream_status_and_body(self):
        body = {"error": {"message": "Access denied"}, "statusCode": 403}
        client = make_client(Recorder(body, status_code=403))
        with pytest.raises(UpstreamError) as exc:
            await client.get_file_info("9")
        assert exc.value.status_code == 403
        assert exc.value.message == "Access denied"
        assert exc.value.details == body

    @pytest.mark.asyncio
    async def test_missing_configuration(self):
        with pytest.raises(FlowHubError):
            await DocSpaceClient(base_url="", auth_token="k").list_rooms()
        with pytest.raises(FlowHubError):
            await make_client(Recorder(), auth_token="").list_rooms()

    @pytest.mark.asyncio
    async def test_authenticate_without_credentials(self):
        recorder = Recorder({"response": {"token": "new-token"}})
        token = await make_client(recorder, auth_token="").authenticate_user("ann@example.com", "pw")
        assert token == "new-token"
        request = recorder.requests[0]
        assert "Authorization" not in request.headers
        assert json.loads(request.content) == {"userName": "ann@example.com", "password": "pw"}


class TestEndpoints:

    @pytest.mark.asyncio
    async def test_list_rooms(self):
        recorder = Recorder({"response": {"folders": [{"id": 1, "title": "Forms Room", "roomType": 1}]}})
        rooms = await make_client(recorder).list_rooms(auth="tok")
        assert rooms == [{"id": "1", "title": "Forms Room", "type": 1}]

    @pytest.mark.asyncio
    async def test_folder_contents_flattened(self):
        recorder = Recorder({"response": {
            "current": {"id": 10, "title": "Forms Room", "rootFolderType": 14},
            "folders": [{"id": 11, "title": "In Process", "type": 26}],
            "files": [{"id": 12, "title": "Lease.pdf", "fileExst": ".pdf"}],
        }})
        contents = await make_client(recorder).get_folder_contents("10")
        assert contents["id"] == "10"
        assert [i["type"] for i in contents["items"]] == ["folder", "file"]
        assert contents["items"][0]["folderTypeCode"] == 26
        assert contents["items"][1]["fileExtension"] == ".pdf"

    @pytest.mark.asyncio
    async def test_folder_contents_requires_id(self):
        with pytest.raises(FlowHubError):
            await make_client(Recorder()).get_folder_contents(" ")

    @pytest.mark.asyncio
    async def test_copy_files_body(self):
        recorder = Recorder({"response": [{"id": "op1"}]})
        await make_client(recorder).copy_files([7], "20", auth="tok")
        request = recorder.requests[0]
        assert request.method == "PUT"
        assert request.url.path == "/api/2.0/files/fileops/copy"
        assert json.loads(request.content) == {
            "fileIds": ["7"],
            "destFolderId": "20",
            "deleteAfter": False,
            "content": True,
            "toFillOut": False,
        }

    @pytest.mark.asyncio
    async def test_external_links(self):
        recorder = Recorder({"response": [{"sharedTo": {"id": "L1"}}]})
        client = make_client(recorder)
        assert await client.get_external_links("7") == [{"sharedTo": {"id": "L1"}}]
        await client.upsert_external_link("7", {"access": "FillForms"})
        assert recorder.requests[1].method == "PUT"
        assert recorder.requests[1].url.path == "/api/2.0/files/file/7/links"

    @pytest.mark.asyncio
    async def test_rename_and_create_folder(self):
        recorder = Recorder({"response": {"id": 30, "title": "New"}})
        client = make_client(recorder)
        renamed = await client.rename_file("30", "New")
        created = await client.create_folder("10", "New")
        assert renamed["type"] == "file"
        assert created["type"] == "folder"
        assert recorder.requests[1].url.path == "/api/2.0/files/folder/10"
