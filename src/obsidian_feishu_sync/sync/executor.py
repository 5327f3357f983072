"""
Remote Mutation Executor

Sequences every block creation and deletion for one document.

Design Goals
------------
- Strict ordering: one remote mutation at a time, indices computed from the
  plan rather than re-read from the server
- Non-table blocks go out in bulk batches with a settle pause between them
- Tables are created one by one: a direct nested call first, a stepwise
  shell-then-cells fallback second, and a placeholder paragraph last
- A table failure never aborts the rest of the document
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from ..core import settle
from ..core.errors import BusinessRejectionError, SyncError
from ..core.settle import SettleClock
from ..feishu.api_client import FeishuClient, created_block_ids
from ..models.blocks import Block, BlockTree, BlockType, TableBody, text_elements, wire_block_type
from .planner import InsertionPlan, batch_has_nesting

logger = logging.getLogger("sync.executor")

TABLE_FAILURE_TEMPLATE = (
    "[Table creation failed] The original table could not be recreated, "
    "please rebuild it manually. Error: {error}"
)


class TableOutcome(str, Enum):
    DIRECT = "direct"
    STEPWISE = "stepwise"
    PLACEHOLDER = "placeholder"
    LOST = "lost"


class ExecutionReport(NamedTuple):
    blocks_created: int
    batches: int
    tables: Dict[str, TableOutcome]

    @property
    def failed_tables(self) -> List[str]:
        return [
            block_id
            for block_id, outcome in self.tables.items()
            if outcome in (TableOutcome.PLACEHOLDER, TableOutcome.LOST)
        ]


class MutationExecutor:
    """
    Applies an :class:`InsertionPlan` to a remote document.

    Parameters
    ----------
    client : FeishuClient
        Remote API client.

    clock : Optional[SettleClock]
        Settle clock; defaults to the client's.
    """

    def __init__(self, client: FeishuClient, clock: Optional[SettleClock] = None) -> None:
        self.client = client
        self.clock = clock or client.clock

    # ------------------------------------------------------------------
    # Clearing
    # ------------------------------------------------------------------

    async def clear_children(self, document_id: str, root_id: str) -> int:
        """
        Delete every direct child of ``root_id`` with one ranged delete.

        Returns
        -------
        int
            Number of children deleted.
        """
        blocks = await self.client.get_blocks(document_id)
        root = next((b for b in blocks if b.block_id == root_id), None)
        if root is not None and root.children:
            count = len(root.children)
        else:
            count = sum(1 for b in blocks if b.parent_id == root_id)

        if count == 0:
            logger.info("Document %s has no content to clear", document_id)
            return 0

        await self.client.batch_delete_blocks(document_id, root_id, 0, count)
        logger.info("Cleared %d blocks from document %s", count, document_id)
        return count

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def execute(
        self,
        document_id: str,
        parent_id: str,
        plan: InsertionPlan,
        start_index: int = 0,
    ) -> ExecutionReport:
        """
        Create every planned block under ``parent_id``.

        Non-table batches are inserted contiguously from ``start_index``;
        tables are then inserted in ascending target order, which lands each
        one at its original top-level position.
        """
        index = start_index
        created = 0

        for number, batch in enumerate(plan.batches):
            if number:
                await self.clock.wait(settle.BATCH_INTERVAL)
            try:
                await self._create_batch(document_id, parent_id, plan, batch, index)
            except SyncError:
                logger.error(
                    "Batch %d/%d (%d blocks at index %d) failed",
                    number + 1,
                    len(plan.batches),
                    len(batch),
                    index,
                )
                raise
            index += len(batch)
            created += len(batch)

        outcomes: Dict[str, TableOutcome] = {}
        lost = 0
        for number, table in enumerate(plan.tables):
            if number:
                await self.clock.wait(settle.TABLE_INTERVAL)
            outcome = await self.create_table(
                document_id,
                parent_id,
                plan.tree,
                table.block_id,
                start_index + table.target_index - lost,
            )
            outcomes[table.block_id] = outcome
            if outcome is TableOutcome.LOST:
                lost += 1
            else:
                created += 1

        report = ExecutionReport(created, len(plan.batches), outcomes)
        if report.failed_tables:
            logger.warning(
                "%d of %d tables could not be created",
                len(report.failed_tables),
                len(outcomes),
            )
        return report

    async def _create_batch(
        self,
        document_id: str,
        parent_id: str,
        plan: InsertionPlan,
        batch: List[str],
        index: int,
    ) -> None:
        tree = plan.tree
        if batch_has_nesting(plan, batch):
            descendants = [
                block.to_wire(include_id=True, include_children=True)
                for top_id in batch
                for block in tree.subtree(top_id)
            ]
            await self.client.create_nested_blocks(
                document_id, parent_id, index, list(batch), descendants
            )
        else:
            payload = [tree.get(block_id).to_wire() for block_id in batch]
            await self.client.create_blocks(document_id, parent_id, index, payload)
        logger.debug("Created batch of %d blocks at index %d", len(batch), index)

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    async def create_table(
        self,
        document_id: str,
        parent_id: str,
        tree: BlockTree,
        table_id: str,
        index: int,
    ) -> TableOutcome:
        """
        Create one table at ``index``, degrading from direct to stepwise to
        a placeholder paragraph.
        """
        try:
            await self._create_table_direct(document_id, parent_id, tree, table_id, index)
            return TableOutcome.DIRECT
        except SyncError as direct_error:
            logger.warning(
                "Direct creation of table %s failed (%s), trying stepwise",
                table_id,
                direct_error,
            )

        try:
            await self._create_table_stepwise(document_id, parent_id, tree, table_id, index)
            return TableOutcome.STEPWISE
        except SyncError as stepwise_error:
            logger.error("Stepwise creation of table %s failed: %s", table_id, stepwise_error)
            failure = stepwise_error

        placeholder = {
            "block_type": wire_block_type(BlockType.TEXT),
            "text": {"elements": text_elements(TABLE_FAILURE_TEMPLATE.format(error=failure))},
        }
        try:
            await self.client.create_blocks(document_id, parent_id, index, [placeholder])
        except SyncError as exc:
            logger.error("Placeholder for table %s could not be created: %s", table_id, exc)
            return TableOutcome.LOST
        return TableOutcome.PLACEHOLDER

    async def _create_table_direct(
        self,
        document_id: str,
        parent_id: str,
        tree: BlockTree,
        table_id: str,
        index: int,
    ) -> None:
        descendants = [
            block.to_wire(include_id=True, include_children=True)
            for block in tree.subtree(table_id)
        ]
        created = await self.client.create_nested_blocks(
            document_id, parent_id, index, [table_id], descendants
        )
        if not created_block_ids(created):
            raise BusinessRejectionError(-1, "no block id returned", "create table")

    async def _create_table_stepwise(
        self,
        document_id: str,
        parent_id: str,
        tree: BlockTree,
        table_id: str,
        index: int,
    ) -> None:
        table = tree.get(table_id)
        if table is None or not isinstance(table.body, TableBody):
            raise BusinessRejectionError(-1, f"{table_id} is not a table", "create table")

        shell = table.model_copy(update={"children": []})
        created = await self.client.create_blocks(document_id, parent_id, index, [shell.to_wire()])
        if not created or not created[0].get("block_id"):
            raise BusinessRejectionError(-1, "table shell returned no block id", "create table")

        remote_table_id = created[0]["block_id"]
        cell_ids = await self._remote_cell_ids(document_id, remote_table_id, created[0])
        source_cells = _source_cells(tree, table_id)
        rows, columns = table.body.row_size, table.body.column_size

        filled = 0
        for row in range(rows):
            for column in range(columns):
                position = row * columns + column
                if position >= len(source_cells) or position >= len(cell_ids):
                    continue
                content = tree.children_of(source_cells[position].block_id)
                if not content:
                    continue
                if filled:
                    await self.clock.wait(settle.TABLE_CELL_INTERVAL)
                await self.client.create_blocks(
                    document_id,
                    cell_ids[position],
                    0,
                    [block.to_wire() for block in content],
                )
                filled += 1

        logger.info("Table %s created stepwise (%d cells filled)", remote_table_id, filled)

    async def _remote_cell_ids(
        self,
        document_id: str,
        remote_table_id: str,
        created: Dict[str, Any],
    ) -> List[str]:
        cells = created.get("children") or (created.get("table") or {}).get("cells") or []
        if cells:
            return [str(c) for c in cells]

        blocks = await self.client.get_blocks(document_id)
        for block in blocks:
            if block.block_id == remote_table_id and block.children:
                return list(block.children)
        return [b.block_id for b in blocks if b.parent_id == remote_table_id]


def _source_cells(tree: BlockTree, table_id: str) -> List[Block]:
    """Cells of a local table in row-major order, flattening explicit rows."""
    cells: List[Block] = []
    for child in tree.children_of(table_id):
        if child.block_type is BlockType.TABLE_CELL:
            cells.append(child)
        elif child.block_type is BlockType.TABLE_ROW:
            cells.extend(
                c for c in tree.children_of(child.block_id) if c.block_type is BlockType.TABLE_CELL
            )
    return cells
