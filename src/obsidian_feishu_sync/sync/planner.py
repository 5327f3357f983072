"""
Insertion Planner

Turns a validated block arena into the sequence of remote creation calls.

Responsibilities
----------------
- Drop block kinds the remote API refuses to create, with their subtrees
- Drop children whose kind the parent kind may not contain (never reparent)
- Normalize table dimensions to the remote limits
- Split top-level blocks into non-table batches of at most 50 and tables,
  each table remembering the top-level index it must occupy
"""

from __future__ import annotations

import logging
import math
from typing import Dict, FrozenSet, List, NamedTuple, Optional, Set, Tuple

from ..models.blocks import Block, BlockTree, BlockType, TableBody

logger = logging.getLogger("sync.planner")

MAX_BATCH_SIZE = 50
MAX_TABLE_CELLS = 2000
DEFAULT_TABLE_DIMENSION = 1

# Kinds the creation endpoints never accept
UNCREATABLE_TYPES: FrozenSet[BlockType] = frozenset(
    {
        BlockType.AI_TEMPLATE,
        BlockType.SOURCE_SYNCED,
        BlockType.REFERENCE_SYNCED,
        BlockType.MINDNOTE,
        BlockType.UNDEFINED,
        BlockType.PAGE,
        BlockType.VIEW,
        BlockType.DIAGRAM,
    }
)

_HEADINGS_1_TO_6 = frozenset(BlockType("heading%d" % level) for level in range(1, 7))

_RICH_CONTENT = frozenset(
    {
        BlockType.TEXT,
        BlockType.BULLET,
        BlockType.ORDERED,
        BlockType.QUOTE,
        BlockType.CODE,
        BlockType.EQUATION,
        BlockType.TODO,
    }
) | _HEADINGS_1_TO_6

_LIST_CONTENT = frozenset(
    {
        BlockType.TEXT,
        BlockType.BULLET,
        BlockType.ORDERED,
        BlockType.TODO,
        BlockType.CODE,
        BlockType.QUOTE,
        BlockType.EQUATION,
        BlockType.IMAGE,
    }
)

# Kinds that only exist inside a specific container
NESTED_ONLY_TYPES: FrozenSet[BlockType] = frozenset(
    {BlockType.TABLE_ROW, BlockType.TABLE_CELL, BlockType.GRID_COLUMN}
)

# Parent kind -> child kinds it may contain. Kinds absent from this table
# accept any creatable child.
ALLOWED_CHILDREN: Dict[BlockType, FrozenSet[BlockType]] = {
    BlockType.CALLOUT: _RICH_CONTENT,
    BlockType.GRID_COLUMN: _RICH_CONTENT | {BlockType.IMAGE, BlockType.TABLE, BlockType.CALLOUT},
    BlockType.QUOTE: _RICH_CONTENT - {BlockType.QUOTE},
    BlockType.QUOTE_CONTAINER: _RICH_CONTENT,
    BlockType.CODE: frozenset(),
    BlockType.TABLE: frozenset({BlockType.TABLE_ROW, BlockType.TABLE_CELL}),
    BlockType.TABLE_ROW: frozenset({BlockType.TABLE_CELL}),
    BlockType.TABLE_CELL: frozenset({BlockType.TEXT, BlockType.EQUATION}),
    BlockType.BULLET: _LIST_CONTENT,
    BlockType.ORDERED: _LIST_CONTENT,
    BlockType.TODO: _LIST_CONTENT,
}


def is_creatable(block_type: BlockType) -> bool:
    return block_type not in UNCREATABLE_TYPES


def is_allowed_child(parent_type: BlockType, child_type: BlockType) -> bool:
    allowed = ALLOWED_CHILDREN.get(parent_type)
    if allowed is None:
        return True
    return child_type in allowed


def normalize_table_size(row_size: int, column_size: int) -> Tuple[int, int]:
    """
    Return a (rows, columns) pair the remote service accepts.

    Missing or non-positive dimensions become 1. When the cell count exceeds
    2000 both dimensions shrink by the square root of the overflow ratio,
    which keeps the aspect ratio within rounding.
    """
    rows = row_size if row_size and row_size > 0 else DEFAULT_TABLE_DIMENSION
    columns = column_size if column_size and column_size > 0 else DEFAULT_TABLE_DIMENSION

    total = rows * columns
    if total > MAX_TABLE_CELLS:
        ratio = math.sqrt(MAX_TABLE_CELLS / total)
        new_rows = max(1, math.floor(rows * ratio))
        new_columns = max(1, math.floor(columns * ratio))
        logger.warning(
            "Table of %dx%d cells exceeds %d, shrinking to %dx%d",
            rows,
            columns,
            MAX_TABLE_CELLS,
            new_rows,
            new_columns,
        )
        rows, columns = new_rows, new_columns

    return rows, columns


# ---------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------

class PlannedTable(NamedTuple):
    """A table and the top-level index it must end up at."""
    block_id: str
    target_index: int


class InsertionPlan(NamedTuple):
    tree: BlockTree
    rejected: List[Block]
    batches: List[List[str]]
    tables: List[PlannedTable]

    @property
    def top_level_count(self) -> int:
        return sum(len(batch) for batch in self.batches) + len(self.tables)


def surviving_table_parts(
    tree: BlockTree,
    table_id: str,
    rows: int,
    columns: int,
    original_columns: int,
) -> Set[str]:
    """
    Ids of the rows and cells that still fit a table shrunk to
    ``rows`` x ``columns``.

    Direct cell children are laid out row-major over ``original_columns``;
    explicit rows keep their first ``columns`` cells.
    """
    keep: Set[str] = set()
    cell_index = 0
    row_index = 0
    for child in tree.children_of(table_id):
        if child.block_type is BlockType.TABLE_ROW:
            if row_index < rows:
                keep.add(child.block_id)
                cells = [
                    c for c in tree.children_of(child.block_id)
                    if c.block_type is BlockType.TABLE_CELL
                ]
                keep.update(c.block_id for c in cells[:columns])
            row_index += 1
        elif child.block_type is BlockType.TABLE_CELL:
            row, column = divmod(cell_index, original_columns)
            if row < rows and column < columns:
                keep.add(child.block_id)
            cell_index += 1
    return keep


def _prune(
    tree: BlockTree,
    block: Block,
    rejected: List[Block],
    kept: BlockTree,
    table_parts: Optional[Set[str]] = None,
) -> None:
    """
    Copy ``block`` and its acceptable descendants into ``kept``.

    ``table_parts`` restricts the rows and cells kept below a shrunk table.
    """
    clone = block.model_copy(deep=True)

    if isinstance(clone.body, TableBody):
        original_rows = clone.body.row_size if clone.body.row_size > 0 else DEFAULT_TABLE_DIMENSION
        original_columns = (
            clone.body.column_size if clone.body.column_size > 0 else DEFAULT_TABLE_DIMENSION
        )
        rows, columns = normalize_table_size(clone.body.row_size, clone.body.column_size)
        clone.body.row_size = rows
        clone.body.column_size = columns
        clone.body.merge_info = None
        table_parts = None
        if (rows, columns) != (original_rows, original_columns):
            table_parts = surviving_table_parts(tree, block.block_id, rows, columns, original_columns)

    kept_children: List[str] = []
    kept.add(clone)
    dropped_cells = 0
    for child in tree.children_of(block.block_id):
        if (
            table_parts is not None
            and child.block_type in (BlockType.TABLE_ROW, BlockType.TABLE_CELL)
            and child.block_id not in table_parts
        ):
            rejected.extend(tree.subtree(child.block_id))
            dropped_cells += 1
            continue
        if not is_creatable(child.block_type):
            logger.warning("Dropping uncreatable %s block %s", child.block_type.value, child.block_id)
            rejected.extend(tree.subtree(child.block_id))
            continue
        if not is_allowed_child(clone.block_type, child.block_type):
            logger.warning(
                "Dropping %s block %s: not allowed inside %s",
                child.block_type.value,
                child.block_id,
                clone.block_type.value,
            )
            rejected.extend(tree.subtree(child.block_id))
            continue
        row_parts = table_parts if child.block_type is BlockType.TABLE_ROW else None
        _prune(tree, child, rejected, kept, row_parts)
        kept_children.append(child.block_id)
    clone.children = kept_children

    if dropped_cells:
        logger.warning(
            "Dropped %d rows or cells of %s outside its shrunk size",
            dropped_cells,
            block.block_id,
        )


def plan_insertion(tree: BlockTree, batch_size: int = MAX_BATCH_SIZE) -> InsertionPlan:
    """
    Plan creation of every top-level block of ``tree``.

    Parameters
    ----------
    tree : BlockTree
        A validated arena in reconciled order.

    batch_size : int
        Maximum number of top-level blocks per bulk-create call.

    Returns
    -------
    InsertionPlan
        The pruned arena, rejected blocks, non-table batches (top-level ids
        in order) and tables with their final top-level indices.
    """
    if batch_size < 1 or batch_size > MAX_BATCH_SIZE:
        raise ValueError(f"batch_size must be within 1..{MAX_BATCH_SIZE}")

    rejected: List[Block] = []
    kept = BlockTree()
    non_table: List[str] = []
    tables: List[PlannedTable] = []
    position = 0

    for block in tree.top_level():
        if not is_creatable(block.block_type):
            logger.warning("Dropping uncreatable %s block %s", block.block_type.value, block.block_id)
            rejected.extend(tree.subtree(block.block_id))
            continue
        if block.block_type in NESTED_ONLY_TYPES:
            logger.warning("Dropping orphaned %s block %s", block.block_type.value, block.block_id)
            rejected.extend(tree.subtree(block.block_id))
            continue

        _prune(tree, block, rejected, kept)
        if block.block_type is BlockType.TABLE:
            tables.append(PlannedTable(block.block_id, position))
        else:
            non_table.append(block.block_id)
        position += 1

    batches = [
        non_table[start:start + batch_size]
        for start in range(0, len(non_table), batch_size)
    ]

    logger.info(
        "Planned %d blocks in %d batches plus %d tables (%d rejected)",
        len(non_table),
        len(batches),
        len(tables),
        len(rejected),
    )

    return InsertionPlan(kept, rejected, batches, tables)


def batch_has_nesting(plan: InsertionPlan, batch: List[str]) -> bool:
    """Return True when any block of ``batch`` has children to create."""
    for block_id in batch:
        block: Optional[Block] = plan.tree.get(block_id)
        if block is not None and block.children:
            return True
    return False
