"""
Structure Parser

Derives the ground-truth ordering of a Markdown document, one
:class:`StructuralElement` per meaningful source line, independently of the
remote conversion endpoint.
"""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

from ..models.blocks import BlockType
from ..models.documents import StructuralElement

PREVIEW_LENGTH = 50

IMAGE_PLACEHOLDER = "[image]"

_ORDERED_RE = re.compile(r"^\d+\.\s")
_DEEP_HEADING_RE = re.compile(r"^#{4,6}\s")


def _classify(line: str) -> Tuple[BlockType, str]:
    """Return (semantic type, content with marker stripped) for one trimmed line."""
    if line.startswith("# "):
        return BlockType.HEADING1, line[2:].strip()
    if line.startswith("## "):
        return BlockType.HEADING2, line[3:].strip()
    if line.startswith("### "):
        return BlockType.HEADING3, line[4:].strip()
    if _DEEP_HEADING_RE.match(line):
        # Levels 4-6 fold into heading3
        return BlockType.HEADING3, line.lstrip("#").strip()
    if line.startswith("- ") or line.startswith("* "):
        return BlockType.BULLET, line[2:].strip()
    if _ORDERED_RE.match(line):
        return BlockType.ORDERED, _ORDERED_RE.sub("", line, count=1).strip()
    if line.startswith("> "):
        return BlockType.QUOTE, line[2:].strip()
    if line == ">":
        return BlockType.TEXT, ">"
    if "![" in line and "](" in line:
        return BlockType.IMAGE, IMAGE_PLACEHOLDER
    return BlockType.TEXT, line


def parse_structure(markdown: str) -> List[StructuralElement]:
    """
    Parse Markdown into an ordered list of structural elements.

    Blank lines are skipped. A fenced code block yields a single ``code``
    element at its opening fence, previewing the fenced body; the body lines
    and the closing fence yield nothing.

    Parameters
    ----------
    markdown : str
        The same Markdown text that was fed to the converter.

    Returns
    -------
    List[StructuralElement]
        Elements in source order with previews truncated to 50 characters.
    """
    lines = markdown.split("\n")
    elements: List[StructuralElement] = []
    fence_start: Optional[int] = None
    fence_body: List[str] = []

    for number, raw in enumerate(lines):
        line = raw.strip()

        if fence_start is not None:
            if line.startswith("```"):
                elements.append(
                    StructuralElement(
                        semantic_type=BlockType.CODE,
                        content_preview="\n".join(fence_body)[:PREVIEW_LENGTH],
                        source_line=fence_start,
                    )
                )
                fence_start = None
                fence_body = []
            else:
                fence_body.append(raw)
            continue

        if not line:
            continue

        if line.startswith("```"):
            fence_start = number
            continue

        semantic_type, content = _classify(line)
        elements.append(
            StructuralElement(
                semantic_type=semantic_type,
                content_preview=content[:PREVIEW_LENGTH],
                source_line=number,
            )
        )

    if fence_start is not None:
        # Unterminated fence still counts as one code block
        elements.append(
            StructuralElement(
                semantic_type=BlockType.CODE,
                content_preview="\n".join(fence_body)[:PREVIEW_LENGTH],
                source_line=fence_start,
            )
        )

    return elements
