"""
Block Reconciler

Restores source order to the block list returned by the Markdown conversion
endpoint, which does not guarantee that blocks come back in document order.

Design Goals
------------
- Greedy matching: each structural element, in source order, takes the
  best-scoring unused block
- Only confident matches (score >= 0.5) move a block; everything else keeps
  its relative order at the end of the list
- Reconciliation only reorders: the output always contains every input block
- Deterministic: ties go to the earliest unused block
"""

from __future__ import annotations

import logging
from typing import List, NamedTuple, Sequence, Set

from ..models.blocks import Block
from ..models.documents import MatchAssignment, StructuralElement
from .similarity import block_preview, match_score

logger = logging.getLogger("sync.reconciler")

MATCH_THRESHOLD = 0.5


class ReconcileResult(NamedTuple):
    """Reordered blocks plus the matches that produced the order."""
    blocks: List[Block]
    assignments: List[MatchAssignment]
    unmatched_elements: List[int]


def reconcile_blocks(
    blocks: Sequence[Block],
    structure: Sequence[StructuralElement],
    threshold: float = MATCH_THRESHOLD,
) -> ReconcileResult:
    """
    Reorder ``blocks`` to follow ``structure``.

    Parameters
    ----------
    blocks : Sequence[Block]
        Converted blocks in the order the converter returned them.

    structure : Sequence[StructuralElement]
        Ground-truth elements in source order.

    threshold : float
        Minimum score a match must reach to be accepted.

    Returns
    -------
    ReconcileResult
        Matched blocks in structure order followed by unmatched blocks in
        their original relative order.
    """
    used: Set[int] = set()
    ordered: List[Block] = []
    assignments: List[MatchAssignment] = []
    unmatched: List[int] = []

    for element_index, element in enumerate(structure):
        best_index = -1
        best_score = 0.0

        for block_index, block in enumerate(blocks):
            if block_index in used:
                continue
            score = match_score(block, element)
            # Strict comparison keeps the first of equally good candidates
            if score > best_score:
                best_score = score
                best_index = block_index

        if best_index != -1 and best_score >= threshold:
            used.add(best_index)
            matched = blocks[best_index]
            ordered.append(matched)
            assignments.append(
                MatchAssignment(
                    element_index=element_index,
                    block_id=matched.block_id,
                    score=best_score,
                )
            )
            logger.debug(
                "Matched element %d %r -> block %d %r (%.2f)",
                element_index,
                element.content_preview,
                best_index,
                block_preview(matched),
                best_score,
            )
        else:
            unmatched.append(element_index)
            logger.debug(
                "No confident match for element %d %r",
                element_index,
                element.content_preview,
            )

    for block_index, block in enumerate(blocks):
        if block_index not in used:
            ordered.append(block)

    logger.info(
        "Reconciled %d/%d blocks against %d structural elements",
        len(used),
        len(blocks),
        len(structure),
    )

    return ReconcileResult(ordered, assignments, unmatched)
