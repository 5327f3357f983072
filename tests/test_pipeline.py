from unittest.mock import AsyncMock

import pytest

from obsidian_feishu_sync.core import settle
from obsidian_feishu_sync.core.errors import BusinessRejectionError, ImportTimeoutError
from obsidian_feishu_sync.history.store import UploadHistoryStore
from obsidian_feishu_sync.models.blocks import Block, BlockTree, BlockType
from obsidian_feishu_sync.models.documents import DocumentResult, PermissionSettings, UploadRecord
from obsidian_feishu_sync.sync.images import RasterImage
from obsidian_feishu_sync.sync.pipeline import PipelineContext, SyncPipeline
from obsidian_feishu_sync.vault import Vault

from conftest import text_block


def imported(title: str) -> DocumentResult:
    token = f"dox-{title.lower()}"
    return DocumentResult(title=title, token=token, url=f"https://x.feishu.cn/docx/{token}")


def context(**overrides) -> PipelineContext:
    values = dict(
        enable_double_link_mode=True,
        enable_smart_update=True,
        folder_token="fld",
        owner_user_id=None,
    )
    values.update(overrides)
    return PipelineContext(**values)


@pytest.fixture
def history(tmp_path):
    return UploadHistoryStore(tmp_path / "history.json")


@pytest.fixture
def vault(tmp_path):
    root = tmp_path / "vault"
    root.mkdir()
    (root / "Main.md").write_text("Main body with [[Ref]]", encoding="utf-8")
    (root / "Ref.md").write_text("Referenced body", encoding="utf-8")
    return Vault(root)


class TestCreateDocument:
    @pytest.mark.asyncio
    async def test_import_flow(self, mock_client, vault, history):
        """A new note is uploaded, imported, and recorded in history."""
        mock_client.wait_for_import_job.return_value = imported("Plain")
        pipeline = SyncPipeline(mock_client, vault, history, context())

        outcome = await pipeline.upload("Line one\n![[pic.png]]", "Plain")

        assert outcome.document_id == "dox-plain"
        assert not outcome.smart_updated
        name, content, folder = mock_client.upload_raw_file.await_args.args
        assert (name, folder) == ("Plain.md", "fld")
        assert content == "Line one\n![pic.png](pic.png)".encode("utf-8")
        mock_client.create_import_job.assert_awaited_once_with("Plain.md", "file-token", "fld")
        mock_client.delete_file.assert_awaited_once_with("file-token", "file")
        assert history.find_by_title("Plain").doc_token == "dox-plain"

    @pytest.mark.asyncio
    async def test_temp_file_deleted_on_failure(self, mock_client, vault, history):
        """The temporary upload is removed even when the import times out."""
        mock_client.wait_for_import_job.side_effect = ImportTimeoutError("still running")
        pipeline = SyncPipeline(mock_client, vault, history, context())

        with pytest.raises(ImportTimeoutError):
            await pipeline.upload("text", "Slow")
        mock_client.delete_file.assert_awaited_once_with("file-token", "file")
        assert len(history) == 0

    @pytest.mark.asyncio
    async def test_frontmatter_and_callouts(self, mock_client, vault, history):
        """Frontmatter is stripped before upload and comes back as an info block."""
        mock_client.wait_for_import_job.return_value = imported("Doc")
        mock_client.get_blocks.return_value = [
            Block(block_id="dox-doc", block_type=BlockType.PAGE, children=["q"]),
            text_block("q", "[!note] Remember", BlockType.QUOTE, parent_id="dox-doc"),
        ]
        pipeline = SyncPipeline(mock_client, vault, history, context())

        await pipeline.upload("---\ntitle: Doc\n---\n> [!note] Remember\n", "Doc")

        content = mock_client.upload_raw_file.await_args.args[1].decode("utf-8")
        assert "title: Doc" not in content
        mock_client.delete_block.assert_awaited_once_with("dox-doc", "q", "dox-doc", 0)
        assert mock_client.create_nested_blocks.await_count == 2
        history_names = mock_client.clock.history
        assert history_names.index(settle.BEFORE_CALLOUTS) < history_names.index(settle.BEFORE_INFO_BLOCK)

    @pytest.mark.asyncio
    async def test_permissions_and_owner(self, mock_client, vault, history):
        """Permissions and ownership are applied; a failure there is only logged."""
        mock_client.wait_for_import_job.return_value = imported("Shared")
        mock_client.transfer_ownership.side_effect = BusinessRejectionError(1063001, "no such user")
        pipeline = SyncPipeline(mock_client, vault, history, context(owner_user_id="ou_1"))
        permissions = PermissionSettings(is_public=True)

        outcome = await pipeline.upload("text", "Shared", permissions=permissions)

        assert outcome.document_id == "dox-shared"
        mock_client.set_permissions.assert_awaited_once_with("dox-shared", permissions)
        mock_client.transfer_ownership.assert_awaited_once_with("dox-shared", "ou_1")
        assert history.get("dox-shared").permissions.is_public


class TestSmartUpdatePath:
    @pytest.mark.asyncio
    async def test_existing_document_rebuilt(self, mock_client, vault, history):
        """A previously uploaded title is updated in place."""
        history.add(UploadRecord(title="Notes", url="https://x.feishu.cn/docx/old", doc_token="old", upload_time=""))
        history.add(UploadRecord(title="Other", url="https://x.feishu.cn/docx/o", doc_token="o", upload_time=""))
        mock_client.convert_markdown.return_value = BlockTree([text_block("b", "fresh content")])
        pipeline = SyncPipeline(mock_client, vault, history, context())

        outcome = await pipeline.upload("fresh content", "Notes")

        assert outcome.smart_updated
        assert outcome.document_id == "old"
        assert outcome.url == "https://x.feishu.cn/docx/old"
        mock_client.upload_raw_file.assert_not_awaited()
        assert history.list_records()[0].doc_token == "old"
        assert len(history) == 2

    @pytest.mark.asyncio
    async def test_table_forces_new_document(self, mock_client, vault, history):
        history.add(UploadRecord(title="Notes", url="u", doc_token="old", upload_time=""))
        mock_client.wait_for_import_job.return_value = imported("Notes")
        pipeline = SyncPipeline(mock_client, vault, history, context())

        outcome = await pipeline.upload("| a | b |\n|---|---|\n| 1 | 2 |", "Notes")

        assert not outcome.smart_updated
        mock_client.get_document.assert_not_awaited()
        assert len(history) == 2


class TestDoubleLinks:
    @pytest.mark.asyncio
    async def test_referenced_note_uploaded_first(self, mock_client, vault, history):
        """Linked notes are created first and the link points at them."""
        mock_client.wait_for_import_job = AsyncMock(
            side_effect=lambda ticket, title: imported(title)
        )
        pipeline = SyncPipeline(mock_client, vault, history, context())

        outcome = await pipeline.upload_note("Main.md")

        uploads = [c.args for c in mock_client.upload_raw_file.await_args_list]
        assert [u[0] for u in uploads] == ["Ref.md", "Main.md"]
        assert b"[Ref](https://x.feishu.cn/docx/dox-ref)" in uploads[1][1]
        assert set(outcome.referenced_documents) == {"Ref"}

        main = history.find_by_title("Main")
        assert [r.doc_token for r in main.referenced_documents] == ["dox-ref"]
        ref = history.find_by_title("Ref", include_referenced=True)
        assert ref.is_referenced_document
        assert history.find_by_title("Ref") is None

    @pytest.mark.asyncio
    async def test_links_untouched_when_disabled(self, mock_client, vault, history):
        mock_client.wait_for_import_job.return_value = imported("Main")
        pipeline = SyncPipeline(mock_client, vault, history, context(enable_double_link_mode=False))

        await pipeline.upload_note("Main.md")

        assert mock_client.upload_raw_file.await_count == 1
        assert b"[[Ref]]" in mock_client.upload_raw_file.await_args.args[1]


class TestMermaid:
    @pytest.mark.asyncio
    async def test_charts_rendered_and_cache_cleared(self, mock_client, vault, history):
        """Charts become images for the run and the cache is emptied afterwards."""
        mock_client.wait_for_import_job.return_value = imported("Chart")
        mock_client.get_blocks.return_value = [Block(block_id="img", block_type=BlockType.IMAGE)]
        rasterizer = AsyncMock(return_value=RasterImage(b"png", 640, 480))
        ctx = context(mermaid_rasterizer=rasterizer)
        pipeline = SyncPipeline(mock_client, vault, history, ctx)

        await pipeline.upload("```mermaid\npie\n  \"a\": 1\n```", "Chart")

        content = mock_client.upload_raw_file.await_args.args[1].decode("utf-8")
        assert "```mermaid" not in content
        assert mock_client.upload_asset.await_args.args[0] == b"png"
        mock_client.patch_image_block.assert_awaited_once_with("dox-chart", "img", "asset-token", 640, 480)
        assert ctx.image_cache == {}
