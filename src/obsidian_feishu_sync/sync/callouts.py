"""
Callout Transcoder

The conversion endpoint renders an Obsidian callout (``> [!warning] ...``)
as a plain quote block. This module finds those quote blocks in the remote
document and swaps each for a native callout block holding the same text.

Design Goals
------------
- The remote API cannot change a block's type, so every conversion is a
  delete of the quote block followed by a nested insert at the same index
- Delete before insert: inserting first would shift the sibling indices
  the pending delete still refers to
- Each quote block is converted at most once
- A failed conversion is logged and skipped; the rest still run
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from ..core import settle
from ..core.errors import SyncError
from ..core.settle import SettleClock
from ..feishu.api_client import FeishuClient
from ..models.blocks import Block, BlockType, CalloutBody, make_text_block

logger = logging.getLogger("sync.callouts")

CALLOUT_RE = re.compile(r"^> \[!([A-Za-z]+)\][+-]?[^\n]*(?:\n((?:> .*\n?)*))?", re.M)
_MARKER_RE = re.compile(r"\[!(\w+)\]([+-]?)\s*(.*)$", re.S)

EMPTY_CALLOUT_TEXT = "no content"
CALLOUT_BORDER_COLOR = 2
CALLOUT_TEXT_COLOR = 5
DEFAULT_BACKGROUND_COLOR = 1
DEFAULT_EMOJI = "pushpin"

# Remote palette: 1 blue, 2 red, 3 orange, 4 green, 5 yellow
BACKGROUND_COLORS: Dict[str, int] = {
    "NOTE": 1,
    "INFO": 1,
    "ABSTRACT": 1,
    "WARNING": 3,
    "CAUTION": 3,
    "ERROR": 2,
    "DANGER": 2,
    "TIP": 4,
    "HINT": 4,
    "SUCCESS": 4,
    "QUESTION": 5,
    "HELP": 5,
    "FAQ": 5,
}

EMOJIS: Dict[str, str] = {
    "NOTE": "memo",
    "INFO": "information_source",
    "ABSTRACT": "page_facing_up",
    "TIP": "bulb",
    "HINT": "bulb",
    "SUCCESS": "white_check_mark",
    "WARNING": "warning",
    "CAUTION": "warning",
    "DANGER": "warning",
    "ERROR": "x",
    "QUESTION": "question",
    "HELP": "question",
    "FAQ": "question",
}


class CalloutInfo(NamedTuple):
    """A callout found in the source Markdown."""
    callout_type: str
    content: str
    original_text: str
    start: int
    end: int

    @property
    def marker(self) -> str:
        return f"[!{self.callout_type.lower()}]"


class QuoteMatch(NamedTuple):
    """A callout paired with the remote quote block that renders it."""
    callout: CalloutInfo
    block: Block
    parent_id: str
    index: int


def background_color_for(callout_type: str) -> int:
    return BACKGROUND_COLORS.get(callout_type.upper(), DEFAULT_BACKGROUND_COLOR)


def emoji_for(callout_type: str) -> str:
    return EMOJIS.get(callout_type.upper(), DEFAULT_EMOJI)


# ---------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------

def extract_callouts(markdown: str) -> List[CalloutInfo]:
    """
    Find every ``> [!type]`` callout in ``markdown``.

    The body is the following ``> `` lines with the prefix removed; a callout
    with no body gets a fixed placeholder text.
    """
    callouts: List[CalloutInfo] = []
    for match in CALLOUT_RE.finditer(markdown):
        lines = []
        for line in (match.group(2) or "").split("\n"):
            if line.startswith("> "):
                lines.append(line[2:])
            elif line.strip():
                lines.append(line)
        content = "\n".join(lines).strip()
        callouts.append(
            CalloutInfo(
                callout_type=match.group(1).upper(),
                content=content or EMPTY_CALLOUT_TEXT,
                original_text=match.group(0),
                start=match.start(),
                end=match.end(),
            )
        )
    return callouts


def strip_marker(text: str) -> str:
    """Remove the leading ``[!type]`` / ``[!type]+`` marker from quote text."""
    match = _MARKER_RE.search(text)
    if match and match.group(3):
        return match.group(3).strip()
    return text


def build_callout_blocks(callout_type: str, content: str) -> Tuple[List[str], List[Block]]:
    """
    Build the two-level structure inserted in place of a quote block.

    Returns
    -------
    Tuple[List[str], List[Block]]
        Top-level temporary ids and every descendant, outer callout first.
    """
    suffix = uuid.uuid4().hex[:12]
    callout_id = f"callout_{suffix}"
    text_id = f"text_{suffix}"
    outer = Block(
        block_id=callout_id,
        block_type=BlockType.CALLOUT,
        children=[text_id],
        body=CalloutBody(
            background_color=background_color_for(callout_type),
            border_color=CALLOUT_BORDER_COLOR,
            text_color=CALLOUT_TEXT_COLOR,
            emoji_id=emoji_for(callout_type),
        ),
    )
    inner = make_text_block(text_id, content, parent_id=callout_id)
    return [callout_id], [outer, inner]


# ---------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------

def sibling_index(block: Block, by_id: Dict[str, Block], blocks: Sequence[Block]) -> Optional[int]:
    """Position of ``block`` among its parent's children, or None if unknown."""
    if not block.parent_id:
        return None
    parent = by_id.get(block.parent_id)
    if parent is not None and block.block_id in parent.children:
        return parent.children.index(block.block_id)
    siblings = [b.block_id for b in blocks if b.parent_id == block.parent_id]
    return siblings.index(block.block_id)


def find_matching_quotes(blocks: Sequence[Block], callouts: Sequence[CalloutInfo]) -> List[QuoteMatch]:
    """
    Pair each callout with the first unused quote block carrying its marker.

    The marker comparison ignores case. Quote blocks without a parent or a
    known index cannot be replaced and are never matched.
    """
    by_id = {b.block_id: b for b in blocks}
    quotes = [b for b in blocks if b.block_type is BlockType.QUOTE]
    used = set()
    matches: List[QuoteMatch] = []

    for callout in callouts:
        for block in quotes:
            if block.block_id in used:
                continue
            if callout.marker not in block.plain_text().lower():
                continue
            index = sibling_index(block, by_id, blocks)
            if index is None:
                logger.warning("Quote block %s has no parent, cannot convert", block.block_id)
                used.add(block.block_id)
                continue
            used.add(block.block_id)
            matches.append(QuoteMatch(callout, block, str(block.parent_id), index))
            break
        else:
            logger.info("No quote block found for %s callout", callout.callout_type)

    return matches


# ---------------------------------------------------------------------
# Transcoder
# ---------------------------------------------------------------------

class CalloutTranscoder:
    """
    Converts quote-rendered callouts of one document into callout blocks.

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

    async def insert_callout(self, document_id: str, match: QuoteMatch) -> None:
        """Insert the callout for ``match`` where its quote block used to be."""
        content = strip_marker(match.block.plain_text().strip())
        children_ids, descendants = build_callout_blocks(match.callout.callout_type, content)
        await self.client.create_nested_blocks(
            document_id,
            match.parent_id,
            match.index,
            children_ids,
            [b.to_wire(include_id=True, include_children=True) for b in descendants],
        )

    async def transcode(
        self,
        document_id: str,
        callouts: Sequence[CalloutInfo],
        blocks: Optional[Sequence[Block]] = None,
    ) -> int:
        """
        Convert every callout that has a matching remote quote block.

        A quote that was deleted but whose callout could not be inserted
        leaves a gap; later indices under the same parent are shifted down
        to match the live children.

        Parameters
        ----------
        document_id : str
            Target document.

        callouts : Sequence[CalloutInfo]
            Callouts extracted from the source Markdown.

        blocks : Optional[Sequence[Block]]
            Current remote blocks; fetched when omitted.

        Returns
        -------
        int
            Number of successful conversions.
        """
        if not callouts:
            return 0
        if blocks is None:
            blocks = await self.client.get_blocks(document_id)

        matches = find_matching_quotes(blocks, callouts)
        if not matches:
            logger.info("No callout quote blocks found in %s", document_id)
            return 0

        # Original sibling indices removed without replacement, per parent
        gaps: Dict[str, List[int]] = {}
        converted = 0
        for number, match in enumerate(matches):
            if number:
                await self.clock.wait(settle.CALLOUT_INTERVAL)
            removed_before = sum(1 for i in gaps.get(match.parent_id, []) if i < match.index)
            live = match._replace(index=match.index - removed_before)

            try:
                await self.client.delete_block(
                    document_id, live.block.block_id, live.parent_id, live.index
                )
            except SyncError as exc:
                self._log_failure(match, exc)
                continue

            try:
                await self.clock.wait(settle.AFTER_DELETE)
                await self.insert_callout(document_id, live)
            except SyncError as exc:
                self._log_failure(match, exc)
                gaps.setdefault(match.parent_id, []).append(match.index)
                continue
            converted += 1

        logger.info("Converted %d/%d callouts in %s", converted, len(matches), document_id)
        return converted

    @staticmethod
    def _log_failure(match: QuoteMatch, exc: SyncError) -> None:
        logger.error(
            "Callout %s (block %s) conversion failed: %s",
            match.callout.callout_type,
            match.block.block_id,
            exc,
        )
