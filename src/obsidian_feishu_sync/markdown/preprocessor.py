"""
Markdown Preprocessor

Pure string transforms applied before Markdown is handed to the remote
conversion endpoint.

Responsibilities
----------------
- Rewrite embed-style images (``![[name]]``, ``![[name|alt]]``) as standard
  ``![alt](name)`` links with a URL-encoded target
- Separate adjacent plain-text lines with a blank line so the converter does
  not merge them into one paragraph
- Detect Markdown tables outside fenced code

Every function here is idempotent.
"""

from __future__ import annotations

import re
from typing import List, Optional
from urllib.parse import quote

# Characters ``encodeURI`` leaves untouched besides alphanumerics.
_URI_SAFE = ";,/?:@&=+$-_.!~*'()#"

EMBED_IMAGE_RE = re.compile(r"!\[\[([^\]|]+)(?:\|([^\]]+))?\]\]")

_SPECIAL_LINE_PATTERNS = [
    re.compile(r"^#{1,6}\s"),
    re.compile(r"^\s*[-*+]\s"),
    re.compile(r"^\s*\d+\.\s"),
    re.compile(r"^>"),
    re.compile(r"^```"),
    re.compile(r"^\s*\|.*\|"),
    re.compile(r"^!\[.*\]\(.*\)"),
    re.compile(r"^\[.*\]\(.*\)"),
    re.compile(r"^---+$"),
]


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def convert_embed_images(markdown: str) -> str:
    """
    Rewrite ``![[name]]`` / ``![[name|alt]]`` into ``![alt](encoded-name)``.

    When no alt text is given the file name is used.
    """
    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        alt = match.group(2) or name
        return f"![{alt}]({quote(name, safe=_URI_SAFE)})"

    return EMBED_IMAGE_RE.sub(_replace, markdown)


def is_plain_text_line(line: Optional[str]) -> bool:
    """
    Return True when ``line`` is ordinary paragraph text.

    Headings, list items, quotes, code fences, table rows, image or
    link-only lines and horizontal rules are not plain text; neither is a
    blank line.
    """
    if line is None:
        return False
    trimmed = line.strip()
    if not trimmed:
        return False
    return not any(pattern.search(trimmed) for pattern in _SPECIAL_LINE_PATTERNS)


def separate_plain_text_lines(markdown: str) -> str:
    """
    Insert one blank line between every pair of adjacent plain-text lines.

    Lines inside fenced code blocks are left untouched.
    """
    lines = markdown.split("\n")
    output: List[str] = []
    in_fence = False

    for index, line in enumerate(lines):
        output.append(line)

        if line.strip().startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        next_line = lines[index + 1] if index + 1 < len(lines) else None
        if is_plain_text_line(line) and is_plain_text_line(next_line):
            output.append("")

    return "\n".join(output)


def preprocess_markdown(markdown: str) -> str:
    """Apply every preprocessing step in order."""
    return separate_plain_text_lines(convert_embed_images(markdown))


def has_table(markdown: str) -> bool:
    """
    Return True when the Markdown contains a table row outside code fences.

    A table row is a line containing ``|`` that splits into at least three
    cells (leading and trailing pipes produce empty outer cells).
    """
    fence_count = 0
    for raw in markdown.split("\n"):
        line = raw.strip()
        if line.startswith("```"):
            fence_count += 1
            continue
        if fence_count % 2 == 1:
            continue
        if "|" in line and len(line) > 2 and len(line.split("|")) >= 3:
            return True
    return False
