from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from obsidian_feishu_sync.core.settle import SettleClock
from obsidian_feishu_sync.models.blocks import (
    Block,
    BlockType,
    ImageBody,
    TextBody,
    text_elements,
)


def text_block(
    block_id: str,
    content: str,
    block_type: BlockType = BlockType.TEXT,
    parent_id: Optional[str] = None,
    children: Optional[List[str]] = None,
) -> Block:
    return Block(
        block_id=block_id,
        block_type=block_type,
        parent_id=parent_id,
        children=children or [],
        body=TextBody(elements=text_elements(content)),
    )


def image_block(block_id: str, parent_id: Optional[str] = None) -> Block:
    return Block(
        block_id=block_id,
        block_type=BlockType.IMAGE,
        parent_id=parent_id,
        body=ImageBody(),
    )


@pytest.fixture
def settle_clock():
    return SettleClock(sleeper=AsyncMock())


@pytest.fixture
def mock_client(settle_clock):
    """FeishuClient stand-in whose remote calls are AsyncMocks."""
    client = MagicMock()
    client.clock = settle_clock
    client.get_blocks = AsyncMock(return_value=[])
    client.get_document = AsyncMock(return_value={"document_id": "doc1"})
    client.convert_markdown = AsyncMock()
    client.create_blocks = AsyncMock(return_value=[{"block_id": "new"}])
    client.create_nested_blocks = AsyncMock(return_value=[{"block_id": "new"}])
    client.batch_delete_blocks = AsyncMock(return_value=None)
    client.delete_block = AsyncMock(return_value=None)
    client.upload_asset = AsyncMock(return_value="asset-token")
    client.patch_image_block = AsyncMock(return_value=None)
    client.upload_raw_file = AsyncMock(return_value="file-token")
    client.create_import_job = AsyncMock(return_value="ticket-1")
    client.wait_for_import_job = AsyncMock()
    client.delete_file = AsyncMock(return_value=None)
    client.set_permissions = AsyncMock(return_value=None)
    client.transfer_ownership = AsyncMock(return_value=None)
    return client
