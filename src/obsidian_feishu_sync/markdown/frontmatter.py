"""
YAML Frontmatter

Obsidian notes may open with a ``---`` fenced YAML block. It is removed from
the body before conversion (the converter would render it as a divider and
a paragraph) and re-inserted as a grey "Document info" callout at the top of
the remote document once everything else is in place.
"""

from __future__ import annotations

import datetime
import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..core import settle
from ..feishu.api_client import FeishuClient
from ..models.blocks import Block, BlockType, CalloutBody, make_text_block

logger = logging.getLogger("sync.frontmatter")

FRONTMATTER_RE = re.compile(r"^---\s*\n([\s\S]*?)\n---\s*\n")

INFO_TITLE = "\U0001F4C4 Document info"
INFO_BACKGROUND_COLOR = 6
INFO_BORDER_COLOR = 2
INFO_TEXT_COLOR = 5
INFO_EMOJI = "page_facing_up"
OTHER_FIELD_ICON = "\U0001F4CC"

# Display order, icon and label of well-known fields
FIELD_DISPLAY: Dict[str, Tuple[str, str]] = {
    "title": ("\U0001F4DD", "Title"),
    "date": ("\U0001F4C5", "Date"),
    "category": ("\U0001F4C2", "Category"),
    "tags": ("\U0001F3F7️", "Tags"),
    "alias": ("\U0001F517", "Alias"),
    "stars": ("⭐", "Rating"),
    "from": ("\U0001F4D6", "Source"),
    "url": ("\U0001F517", "Link"),
    "author": ("\U0001F464", "Author"),
    "status": ("\U0001F4CA", "Status"),
    "priority": ("\U0001F525", "Priority"),
    "created": ("\U0001F195", "Created"),
    "updated": ("\U0001F504", "Updated"),
    "version": ("\U0001F522", "Version"),
    "description": ("\U0001F4C4", "Description"),
}
FIELD_ORDER = list(FIELD_DISPLAY)


def extract_frontmatter(markdown: str) -> Optional[Dict[str, Any]]:
    """
    Parse the frontmatter of ``markdown``.

    Returns None when there is no frontmatter, when it is not valid YAML,
    or when it does not hold a mapping.
    """
    match = FRONTMATTER_RE.match(markdown)
    if not match:
        return None
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.warning("Ignoring unparsable frontmatter: %s", exc)
        return None
    if not isinstance(data, dict) or not data:
        return None
    return {str(key): value for key, value in data.items()}


def remove_frontmatter(markdown: str) -> str:
    return FRONTMATTER_RE.sub("", markdown, count=1)


def has_frontmatter(markdown: str) -> bool:
    return FRONTMATTER_RE.match(markdown) is not None


def format_field_value(key: str, value: Any) -> str:
    if value is None:
        return ""
    if key == "stars" and isinstance(value, (int, float)) and not isinstance(value, bool):
        if 0 <= value <= 5:
            return f"{chr(0x2B50) * int(value)} ({value}/5)"
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def format_info_text(fields: Dict[str, Any]) -> str:
    """
    Render frontmatter fields as the info block's text.

    Known fields come first in a fixed order; any others follow in their
    original order with a generic icon.
    """
    rank = {key: position for position, key in enumerate(FIELD_ORDER)}
    keys = sorted(fields, key=lambda k: rank.get(k, len(FIELD_ORDER)))

    lines: List[str] = [INFO_TITLE]
    for key in keys:
        rendered = format_field_value(key, fields[key])
        if not rendered:
            continue
        icon, label = FIELD_DISPLAY.get(key, (OTHER_FIELD_ICON, key))
        lines.append(f"{icon} {label}: {rendered}")
    return "\n".join(lines)


def build_info_blocks(fields: Dict[str, Any]) -> Tuple[List[str], List[Block]]:
    """Callout plus inner text block, ready for a nested insert."""
    suffix = uuid.uuid4().hex[:12]
    callout_id = f"info_{suffix}"
    text_id = f"text_{suffix}"
    outer = Block(
        block_id=callout_id,
        block_type=BlockType.CALLOUT,
        children=[text_id],
        body=CalloutBody(
            background_color=INFO_BACKGROUND_COLOR,
            border_color=INFO_BORDER_COLOR,
            text_color=INFO_TEXT_COLOR,
            emoji_id=INFO_EMOJI,
        ),
    )
    inner = make_text_block(text_id, format_info_text(fields), parent_id=callout_id)
    return [callout_id], [outer, inner]


async def insert_info_block(client: FeishuClient, document_id: str, fields: Dict[str, Any]) -> None:
    """Insert the info callout as the first child of the document root."""
    children_ids, descendants = build_info_blocks(fields)
    await client.clock.wait(settle.BEFORE_INFO_BLOCK)
    await client.create_nested_blocks(
        document_id,
        document_id,
        0,
        children_ids,
        [b.to_wire(include_id=True, include_children=True) for b in descendants],
    )
    logger.info("Inserted document info block into %s", document_id)
