import json
from unittest.mock import AsyncMock

import httpx
import pytest

from obsidian_feishu_sync.core import settle
from obsidian_feishu_sync.core.errors import (
    AuthenticationError,
    BusinessRejectionError,
    FolderConfigError,
    ImportTimeoutError,
    TransientRemoteError,
)
from obsidian_feishu_sync.core.settle import SettleClock
from obsidian_feishu_sync.feishu.api_client import FeishuClient, format_document_url
from obsidian_feishu_sync.feishu.delete_queue import DeleteQueue
from obsidian_feishu_sync.models.blocks import BlockType
from obsidian_feishu_sync.models.documents import PermissionSettings

BASE = "https://open.feishu.test/open-apis"


def make_client(handler):
    """Client wired to a MockTransport; the handler sees every non-auth request."""
    calls = []

    def _dispatch(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/auth/v3/tenant_access_token/internal"):
            return httpx.Response(200, json={"code": 0, "tenant_access_token": "t-123", "expire": 7200})
        calls.append(request)
        return handler(request)

    async def _no_sleep(_seconds):
        return None

    client = FeishuClient(
        app_id="cli_test",
        app_secret="secret",
        base_url=BASE,
        clock=SettleClock(sleeper=AsyncMock()),
        deletes=DeleteQueue(sleeper=_no_sleep),
        transport=httpx.MockTransport(_dispatch),
    )
    return client, calls


def ok(data=None):
    return httpx.Response(200, json={"code": 0, "msg": "success", "data": data or {}})


class TestRequestPolicy:
    @pytest.mark.asyncio
    async def test_bearer_token_sent(self):
        """Calls carry the tenant access token."""
        client, calls = make_client(lambda r: ok({"document": {"document_id": "d"}}))
        await client.get_document("d")
        assert calls[0].headers["Authorization"] == "Bearer t-123"

    @pytest.mark.asyncio
    async def test_server_errors_retried_then_raised(self):
        """5xx responses are retried three times, then surface as transient."""
        client, calls = make_client(lambda r: httpx.Response(503, text="unavailable"))
        with pytest.raises(TransientRemoteError) as info:
            await client.get_document("d")
        assert len(calls) == 4
        assert info.value.status_code == 503
        assert client.clock.history == [settle.SERVER_ERROR_BACKOFF] * 3

    @pytest.mark.asyncio
    async def test_recovers_after_server_error(self):
        """A success after a 5xx is returned normally."""
        responses = iter([httpx.Response(500), ok({"document": {"document_id": "d"}})])
        client, calls = make_client(lambda r: next(responses))
        assert await client.get_document("d") == {"document_id": "d"}
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_business_error_not_retried(self):
        """A non-zero code raises immediately with the remote message."""
        client, calls = make_client(
            lambda r: httpx.Response(200, json={"code": 1770002, "msg": "not found"})
        )
        with pytest.raises(BusinessRejectionError) as info:
            await client.get_document("d")
        assert len(calls) == 1
        assert info.value.code == 1770002
        assert info.value.msg == "not found"

    @pytest.mark.asyncio
    async def test_transport_errors_retried(self):
        """Connection failures count as transient."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client, calls = make_client(handler)
        with pytest.raises(TransientRemoteError):
            await client.get_document("d")
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_bad_credentials(self):
        """A rejected token request raises AuthenticationError."""
        def dispatch(request):
            return httpx.Response(200, json={"code": 10014, "msg": "app secret invalid"})

        client = FeishuClient(
            app_id="cli", app_secret="bad", base_url=BASE,
            clock=SettleClock(sleeper=AsyncMock()),
            transport=httpx.MockTransport(dispatch),
        )
        with pytest.raises(AuthenticationError):
            await client.get_document("d")


class TestOperations:
    @pytest.mark.asyncio
    async def test_get_blocks_paginates(self):
        """Block listing follows page tokens."""
        pages = {
            None: {"items": [{"block_id": "doc", "block_type": 1, "children": ["a"]}], "has_more": True, "page_token": "p2"},
            "p2": {"items": [{"block_id": "a", "block_type": 2, "parent_id": "doc",
                              "text": {"elements": [{"text_run": {"content": "hi"}}]}}], "has_more": False},
        }
        client, calls = make_client(lambda r: ok(pages[r.url.params.get("page_token")]))
        blocks = await client.get_blocks("doc")
        assert [b.block_id for b in blocks] == ["doc", "a"]
        assert blocks[1].block_type is BlockType.TEXT
        assert blocks[1].plain_text() == "hi"
        assert calls[0].url.params["page_size"] == "500"

    @pytest.mark.asyncio
    async def test_convert_markdown(self):
        """Conversion builds an arena with first-level blocks at the top."""
        payload = {
            "first_level_block_ids": ["h"],
            "blocks": [
                {"block_id": "h", "block_type": 3, "parent_id": "x",
                 "heading1": {"elements": [{"text_run": {"content": "Title"}}]}},
            ],
        }
        client, calls = make_client(lambda r: ok(payload))
        tree = await client.convert_markdown("# Title")
        assert calls[0].url.path.endswith("/docx/v1/documents/blocks/convert")
        assert json.loads(calls[0].content) == {"content_type": "markdown", "content": "# Title"}
        assert tree.get("h").parent_id is None
        assert tree.get("h").block_type is BlockType.HEADING1

    @pytest.mark.asyncio
    async def test_convert_skips_blocks_without_id(self):
        """Blocks the converter returns without an id are left out of the arena."""
        payload = {
            "first_level_block_ids": ["t"],
            "blocks": [
                {"block_type": 2, "text": {"elements": [{"text_run": {"content": "lost"}}]}},
                {"block_id": "", "block_type": 2},
                {"block_id": "t", "block_type": 2,
                 "text": {"elements": [{"text_run": {"content": "kept"}}]}},
            ],
        }
        client, _ = make_client(lambda r: ok(payload))
        tree = await client.convert_markdown("kept")
        assert tree.ids() == ["t"]

    @pytest.mark.asyncio
    async def test_batch_delete_through_queue(self):
        """Ranged deletes send a half-open interval."""
        client, calls = make_client(lambda r: ok())
        await client.batch_delete_blocks("doc", "doc", 0, 3)
        assert calls[0].method == "DELETE"
        assert calls[0].url.path.endswith("/blocks/doc/children/batch_delete")
        assert json.loads(calls[0].content) == {"start_index": 0, "end_index": 3}

    @pytest.mark.asyncio
    async def test_empty_range_skipped(self):
        """An empty range issues no request."""
        client, calls = make_client(lambda r: ok())
        await client.batch_delete_blocks("doc", "doc", 2, 2)
        assert calls == []

    @pytest.mark.asyncio
    async def test_upload_requires_folder(self):
        """Uploading without a folder token is a configuration error."""
        client, calls = make_client(lambda r: ok())
        with pytest.raises(FolderConfigError):
            await client.upload_raw_file("note.md", b"# hi", "")
        assert calls == []

    @pytest.mark.asyncio
    async def test_import_job_done(self):
        """A finished import returns the new document."""
        client, _ = make_client(
            lambda r: ok({"result": {"job_status": 0, "token": "doxcn1", "url": "https://x.feishu.cn/docx/doxcn1"}})
        )
        result = await client.wait_for_import_job("ticket", "Notes")
        assert result.token == "doxcn1"
        assert result.url == "https://x.feishu.cn/docx/doxcn1"
        assert client.clock.history == [settle.IMPORT_START]

    @pytest.mark.asyncio
    async def test_import_job_timeout(self):
        """A job still running after the retries is a partial success."""
        client, calls = make_client(lambda r: ok({"result": {"job_status": 2}}))
        with pytest.raises(ImportTimeoutError):
            await client.wait_for_import_job("ticket", "Notes", max_retries=3)
        assert len(calls) == 4
        assert client.clock.history == [
            settle.IMPORT_START,
            settle.IMPORT_POLL_EARLY,
            settle.IMPORT_POLL_EARLY,
            settle.IMPORT_POLL_LATE,
        ]

    @pytest.mark.asyncio
    async def test_permissions_body(self):
        """Permission flags map to public-sharing entities."""
        client, calls = make_client(lambda r: ok())
        await client.set_permissions("doc", PermissionSettings(is_public=True, allow_copy=True))
        body = json.loads(calls[0].content)
        assert body["link_share_entity"] == "anyone_readable"
        assert body["copy_entity"] == "anyone_can_view"
        assert "security_entity" not in body
        assert calls[0].url.path.endswith("/drive/v2/permissions/doc/public")


def test_document_url_fallback():
    assert format_document_url("tok", "https://a.feishu.cn/docx/tok") == "https://a.feishu.cn/docx/tok"
    assert format_document_url("tok", None) == "https://open.feishu.cn/document/tok"
