"""
Relationship Validator

Repairs parent/child references in a reconciled block list so that every
``parent_id`` points at an existing block that lists the child exactly once,
and every ``children`` entry points back.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Set

from ..models.blocks import Block, BlockTree

logger = logging.getLogger("sync.relations")


def _creates_cycle(child_id: str, parent_id: str, owner: Dict[str, str]) -> bool:
    """Return True if attaching ``child_id`` under ``parent_id`` closes a loop."""
    seen: Set[str] = set()
    current: Optional[str] = parent_id
    while current is not None and current not in seen:
        if current == child_id:
            return True
        seen.add(current)
        current = owner.get(current)
    return False


def validate_relations(blocks: Sequence[Block]) -> BlockTree:
    """
    Build a consistent arena from ``blocks``.

    Repair rules, applied on copies so the input is never mutated:

    - ``children`` entries naming missing blocks, the block itself, or a
      block already claimed by an earlier parent are dropped
    - a child listed by a parent takes that parent as its ``parent_id``
    - a block whose ``parent_id`` names a missing block becomes top-level
    - a block whose ``parent_id`` names an existing parent that does not
      list it is appended to that parent's ``children``
    - links that would create a cycle are dropped

    Parameters
    ----------
    blocks : Sequence[Block]
        Blocks in reconciled order.

    Returns
    -------
    BlockTree
        Arena preserving the input order.
    """
    copies = [b.model_copy(deep=True) for b in blocks]
    by_id: Dict[str, Block] = {}
    for block in copies:
        if block.block_id in by_id:
            logger.warning("Dropping duplicate block id %s", block.block_id)
            continue
        by_id[block.block_id] = block

    owner: Dict[str, str] = {}
    claimed: Dict[str, List[str]] = {block_id: [] for block_id in by_id}

    # Pass 1: explicit children lists win, first claimant first
    for block in by_id.values():
        for child_id in block.children:
            if child_id not in by_id:
                logger.debug("Dropping missing child %s of %s", child_id, block.block_id)
                continue
            if child_id == block.block_id or child_id in owner:
                continue
            if _creates_cycle(child_id, block.block_id, owner):
                logger.warning(
                    "Dropping cyclic link %s -> %s", block.block_id, child_id
                )
                continue
            owner[child_id] = block.block_id
            claimed[block.block_id].append(child_id)

    # Pass 2: parent_id references not mirrored in any children list
    for block in by_id.values():
        if block.block_id in owner:
            continue
        parent_id = block.parent_id
        if parent_id is None:
            continue
        if parent_id not in by_id or parent_id == block.block_id:
            logger.debug("Clearing dangling parent %s of %s", parent_id, block.block_id)
            continue
        if _creates_cycle(block.block_id, parent_id, owner):
            logger.warning("Dropping cyclic parent %s of %s", parent_id, block.block_id)
            continue
        owner[block.block_id] = parent_id
        claimed[parent_id].append(block.block_id)

    for block in by_id.values():
        block.parent_id = owner.get(block.block_id)
        block.children = claimed[block.block_id]

    return BlockTree(by_id.values())
