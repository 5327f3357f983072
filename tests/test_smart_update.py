from unittest.mock import AsyncMock

import pytest

from obsidian_feishu_sync.core import settle
from obsidian_feishu_sync.core.errors import (
    BusinessRejectionError,
    ConversionError,
    DocumentAccessError,
    SmartUpdateError,
)
from obsidian_feishu_sync.models.blocks import Block, BlockTree, BlockType
from obsidian_feishu_sync.models.documents import UploadRecord
from obsidian_feishu_sync.sync.smart_update import (
    SmartUpdateOrchestrator,
    SmartUpdateState,
    find_existing_document,
    should_use_smart_update,
)

from conftest import text_block


def record(title: str, token: str, referenced: bool = False) -> UploadRecord:
    return UploadRecord(
        title=title,
        url=f"https://x.feishu.cn/docx/{token}",
        doc_token=token,
        upload_time="2024-01-01 10:00",
        is_referenced_document=referenced,
    )


HISTORY = [record("Notes", "ref-doc", referenced=True), record("Notes", "doc1")]


class TestDecision:
    def test_history_without_table(self):
        """A known title and table-free content take the smart path."""
        assert should_use_smart_update("Notes", HISTORY, "# Notes\n\nJust text")

    def test_table_disqualifies(self):
        """Table content never takes the smart path."""
        assert not should_use_smart_update("Notes", HISTORY, "| a | b |\n|---|---|\n| 1 | 2 |")

    def test_unknown_title(self):
        assert not should_use_smart_update("Other", HISTORY, "text")

    def test_disabled(self):
        assert not should_use_smart_update("Notes", HISTORY, "text", enabled=False)

    def test_referenced_records_skipped(self):
        """Referenced-document records are never smart-update targets."""
        assert find_existing_document("Notes", HISTORY).doc_token == "doc1"
        assert find_existing_document("Notes", HISTORY[:1]) is None


@pytest.fixture
def converted():
    return BlockTree(
        [
            text_block("b2", "Body text here"),
            text_block("b1", "Notes", BlockType.HEADING1),
        ]
    )


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_full_run(self, mock_client, converted):
        """Validate, clear, then rebuild in source order."""
        mock_client.get_blocks.return_value = [
            Block(block_id="doc1", block_type=BlockType.PAGE, children=["old1", "old2"]),
        ]
        mock_client.convert_markdown.return_value = converted
        orchestrator = SmartUpdateOrchestrator(mock_client)

        report = await orchestrator.run("Notes", HISTORY, "# Notes\n\nBody text here")

        assert orchestrator.state is SmartUpdateState.DONE
        assert report.document_id == "doc1"
        assert report.cleared == 2
        mock_client.get_document.assert_awaited_once_with("doc1")
        mock_client.batch_delete_blocks.assert_awaited_once_with("doc1", "doc1", 0, 2)
        args = mock_client.create_blocks.await_args.args
        assert args[:3] == ("doc1", "doc1", 0)
        assert [b["text" if "text" in b else "heading1"]["elements"][0]["text_run"]["content"] for b in args[3]] == [
            "Notes",
            "Body text here",
        ]
        assert report.execution.blocks_created == 2

    @pytest.mark.asyncio
    async def test_not_applicable(self, mock_client):
        orchestrator = SmartUpdateOrchestrator(mock_client)
        assert await orchestrator.run("Unknown", HISTORY, "text") is None
        assert orchestrator.state is SmartUpdateState.IDLE
        mock_client.get_document.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inaccessible_document(self, mock_client):
        """A failed validation changes nothing remotely."""
        mock_client.get_document.side_effect = BusinessRejectionError(1770002, "not found")
        orchestrator = SmartUpdateOrchestrator(mock_client)

        with pytest.raises(DocumentAccessError):
            await orchestrator.run("Notes", HISTORY, "text")
        assert orchestrator.state is SmartUpdateState.FAILED
        mock_client.batch_delete_blocks.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_clear_failure(self, mock_client):
        mock_client.get_blocks.return_value = [
            Block(block_id="doc1", block_type=BlockType.PAGE, children=["old"]),
        ]
        mock_client.batch_delete_blocks.side_effect = BusinessRejectionError(99991400, "rate limited")
        orchestrator = SmartUpdateOrchestrator(mock_client)

        with pytest.raises(SmartUpdateError) as info:
            await orchestrator.run("Notes", HISTORY, "text")
        assert info.value.stage == "clearing"
        assert orchestrator.state is SmartUpdateState.FAILED

    @pytest.mark.asyncio
    async def test_rebuild_failure_not_retried(self, mock_client):
        """An empty conversion after clearing surfaces as a rebuild failure."""
        mock_client.convert_markdown.return_value = BlockTree()
        orchestrator = SmartUpdateOrchestrator(mock_client)

        with pytest.raises(SmartUpdateError) as info:
            await orchestrator.run("Notes", HISTORY, "text")
        assert info.value.stage == "rebuilding"
        assert isinstance(info.value.__cause__, ConversionError)
        mock_client.upload_raw_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_callouts_and_info_block(self, mock_client):
        """Callouts are converted after the rebuild, then the info block is added."""
        markdown = "> [!tip] Use it\n> wisely"
        mock_client.convert_markdown.return_value = BlockTree(
            [text_block("q", "[!tip] Use it wisely", BlockType.QUOTE)]
        )
        mock_client.get_blocks = AsyncMock(
            side_effect=[
                [Block(block_id="doc1", block_type=BlockType.PAGE)],
                [
                    Block(block_id="doc1", block_type=BlockType.PAGE, children=["rq"]),
                    text_block("rq", "[!tip] Use it wisely", BlockType.QUOTE, parent_id="doc1"),
                ],
            ]
        )
        orchestrator = SmartUpdateOrchestrator(mock_client)

        report = await orchestrator.run("Notes", HISTORY, markdown, frontmatter={"title": "Notes"})

        assert report.callouts_converted == 1
        assert report.info_block
        mock_client.delete_block.assert_awaited_once_with("doc1", "rq", "doc1", 0)
        nested = mock_client.create_nested_blocks.await_args_list
        assert len(nested) == 2
        assert nested[-1].args[:3] == ("doc1", "doc1", 0)
        history = mock_client.clock.history
        assert history.index(settle.BEFORE_CALLOUTS) < history.index(settle.BEFORE_INFO_BLOCK)
