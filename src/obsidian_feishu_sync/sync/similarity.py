"""
Similarity Scoring

Heuristic scores used by the reconciler to pair ground-truth structural
elements with converted blocks.

The thresholds are tuning values observed to work on real notes, not the
output of a formal model.
"""

from __future__ import annotations

import re
from typing import List

from ..markdown.structure import IMAGE_PLACEHOLDER, PREVIEW_LENGTH
from ..models.blocks import Block, BlockType, HEADING_TYPES, LIST_TYPES
from ..models.documents import StructuralElement

LIST_TYPE_SCORE = 0.6
SAME_TYPE_SCORE = 0.4
CALLOUT_QUOTE_SCORE = 0.35
CONTENT_WEIGHT = 0.6
CROSS_TYPE_WEIGHT = 0.5
CROSS_TYPE_MIN_SIMILARITY = 0.8

_HEADING_MARK_RE = re.compile(r"^h\d+:\s*")
_ORDERED_MARK_RE = re.compile(r"^\d+\.\s*")
_BULLET_MARK_RE = re.compile(r"^(-\s*|\*\s*)")
_NOISE_RE = re.compile(r"[^\w\s\u4e00-\u9fff>!]")
_WHITESPACE_RE = re.compile(r"\s+")

_FOLDED_HEADINGS = HEADING_TYPES - {BlockType.HEADING1, BlockType.HEADING2}


def clean_content(content: str) -> str:
    """
    Normalize text for comparison.

    Lowercases and trims; strings of two characters or fewer are returned
    as-is so short markers like ``>`` survive. Longer strings lose list and
    heading markers and every character except word characters, spaces,
    CJK ideographs, ``>`` and ``!``.
    """
    cleaned = content.lower().strip()
    if len(cleaned) <= 2:
        return cleaned
    cleaned = _HEADING_MARK_RE.sub("", cleaned, count=1)
    cleaned = _ORDERED_MARK_RE.sub("", cleaned, count=1)
    cleaned = _BULLET_MARK_RE.sub("", cleaned, count=1)
    cleaned = _NOISE_RE.sub("", cleaned)
    return cleaned.strip()


def levenshtein_distance(first: str, second: str) -> int:
    if len(first) < len(second):
        first, second = second, first
    previous = list(range(len(second) + 1))
    for i, char_a in enumerate(first, start=1):
        current = [i]
        for j, char_b in enumerate(second, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def character_similarity(first: str, second: str) -> float:
    if not first and not second:
        return 1.0
    if not first or not second:
        return 0.0
    longest = max(len(first), len(second))
    return max(0.0, (longest - levenshtein_distance(first, second)) / longest)


def _words(text: str) -> List[str]:
    return [w for w in _WHITESPACE_RE.split(text) if len(w) > 1]


def content_similarity(first: str, second: str) -> float:
    """
    Score how alike two content strings are, in [0, 1].

    Identical cleaned strings score 1. Strings whose lengths differ by more
    than a factor of ~3 score 0. Containment of a string of three or more
    characters scores 0.8. Otherwise multi-character word overlap is bucketed
    (0.9/0.7/0.5/0.3/0.1), with edit-distance similarity used when either
    side has no multi-character words.
    """
    if not first or not second:
        return 0.0

    a = clean_content(first)
    b = clean_content(second)
    if a == b:
        return 1.0

    longest = max(len(a), len(b))
    if longest == 0 or min(len(a), len(b)) / longest < 0.3:
        return 0.0

    if (b in a and len(b) >= 3) or (a in b and len(a) >= 3):
        return 0.8

    words_a = _words(a)
    words_b = _words(b)
    if not words_a or not words_b:
        return character_similarity(a, b)

    common = [w for w in words_a if w in words_b]
    if not common:
        return 0.0

    overlap = len(common) / max(len(words_a), len(words_b))
    if overlap >= 0.8:
        return 0.9
    if overlap >= 0.6:
        return 0.7
    if overlap >= 0.4:
        return 0.5
    if overlap >= 0.2:
        return 0.3
    return 0.1


def block_preview(block: Block) -> str:
    """Comparable text for a converted block, truncated like element previews."""
    if block.block_type is BlockType.IMAGE:
        return IMAGE_PLACEHOLDER
    if block.block_type is BlockType.DIVIDER:
        return "---"
    return block.plain_text()[:PREVIEW_LENGTH]


def _comparable_type(block_type: BlockType) -> BlockType:
    if block_type in _FOLDED_HEADINGS:
        return BlockType.HEADING3
    return block_type


def match_score(block: Block, element: StructuralElement) -> float:
    """
    Score a candidate block against a structural element.

    Returns
    -------
    float
        1.0 for identical cleaned content; a type base (0.6 lists, 0.4 other
        same-type, 0.35/0.4 for callout blocks against quote elements) plus up
        to 0.6 of content similarity; or half the content similarity when
        types disagree but similarity exceeds 0.8; otherwise 0.
    """
    preview = block_preview(block)
    if not preview or not element.content_preview:
        return 0.0

    if clean_content(preview) == clean_content(element.content_preview):
        return 1.0

    block_type = _comparable_type(block.block_type)
    type_score = 0.0
    if block_type is element.semantic_type:
        if block_type in LIST_TYPES:
            type_score = LIST_TYPE_SCORE
        else:
            type_score = SAME_TYPE_SCORE
    elif element.semantic_type is BlockType.QUOTE and block_type is BlockType.CALLOUT:
        # A callout may stand in for a quote element; marked ones score lower
        type_score = CALLOUT_QUOTE_SCORE if "[!" in preview else SAME_TYPE_SCORE

    similarity = content_similarity(preview, element.content_preview)
    if type_score > 0:
        return min(1.0, type_score + similarity * CONTENT_WEIGHT)
    if similarity > CROSS_TYPE_MIN_SIMILARITY:
        return similarity * CROSS_TYPE_WEIGHT
    return 0.0
