"""
Block Models

Typed representation of the remote document's content tree.

Design Goals
------------
- A closed set of block kinds, each with a typed body
- Blocks live in an arena (:class:`BlockTree`) and reference each other by id
- Lossless conversion to and from the remote wire dictionaries
- Structural repair happens on ids, never on nested object graphs
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, Iterable, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------
# Block Kinds
# ---------------------------------------------------------------------

class BlockType(str, Enum):
    PAGE = "page"
    TEXT = "text"
    HEADING1 = "heading1"
    HEADING2 = "heading2"
    HEADING3 = "heading3"
    HEADING4 = "heading4"
    HEADING5 = "heading5"
    HEADING6 = "heading6"
    HEADING7 = "heading7"
    HEADING8 = "heading8"
    HEADING9 = "heading9"
    BULLET = "bullet"
    ORDERED = "ordered"
    CODE = "code"
    QUOTE = "quote"
    EQUATION = "equation"
    TODO = "todo"
    BITABLE = "bitable"
    CALLOUT = "callout"
    CHAT_CARD = "chat_card"
    DIAGRAM = "diagram"
    DIVIDER = "divider"
    FILE = "file"
    GRID = "grid"
    GRID_COLUMN = "grid_column"
    IFRAME = "iframe"
    IMAGE = "image"
    ISV = "isv"
    MINDNOTE = "mindnote"
    SHEET = "sheet"
    TABLE = "table"
    TABLE_ROW = "table_row"
    TABLE_CELL = "table_cell"
    VIEW = "view"
    QUOTE_CONTAINER = "quote_container"
    TASK = "task"
    SOURCE_SYNCED = "source_synced"
    REFERENCE_SYNCED = "reference_synced"
    AI_TEMPLATE = "ai_template"
    UNDEFINED = "undefined"


# Numeric codes used on the wire. Kinds without a code are only ever
# produced locally and serialized by name.
BLOCK_TYPE_CODES: Dict[BlockType, int] = {
    BlockType.PAGE: 1,
    BlockType.TEXT: 2,
    BlockType.HEADING1: 3,
    BlockType.HEADING2: 4,
    BlockType.HEADING3: 5,
    BlockType.HEADING4: 6,
    BlockType.HEADING5: 7,
    BlockType.HEADING6: 8,
    BlockType.HEADING7: 9,
    BlockType.HEADING8: 10,
    BlockType.HEADING9: 11,
    BlockType.BULLET: 12,
    BlockType.ORDERED: 13,
    BlockType.CODE: 14,
    BlockType.QUOTE: 15,
    BlockType.EQUATION: 16,
    BlockType.TODO: 17,
    BlockType.BITABLE: 18,
    BlockType.CALLOUT: 19,
    BlockType.CHAT_CARD: 20,
    BlockType.DIAGRAM: 21,
    BlockType.DIVIDER: 22,
    BlockType.FILE: 23,
    BlockType.GRID: 24,
    BlockType.GRID_COLUMN: 25,
    BlockType.IFRAME: 26,
    BlockType.IMAGE: 27,
    BlockType.ISV: 28,
    BlockType.MINDNOTE: 29,
    BlockType.SHEET: 30,
    BlockType.TABLE: 31,
    BlockType.TABLE_CELL: 32,
    BlockType.VIEW: 33,
    BlockType.QUOTE_CONTAINER: 34,
    BlockType.TASK: 35,
    BlockType.SOURCE_SYNCED: 49,
    BlockType.REFERENCE_SYNCED: 50,
    BlockType.UNDEFINED: 999,
}

_TYPES_BY_CODE: Dict[int, BlockType] = {code: kind for kind, code in BLOCK_TYPE_CODES.items()}

HEADING_TYPES = frozenset(
    BlockType("heading%d" % level) for level in range(1, 10)
)

TEXT_LIKE_TYPES = frozenset(
    {
        BlockType.TEXT,
        BlockType.BULLET,
        BlockType.ORDERED,
        BlockType.CODE,
        BlockType.QUOTE,
        BlockType.EQUATION,
        BlockType.TODO,
    }
) | HEADING_TYPES

LIST_TYPES = frozenset({BlockType.BULLET, BlockType.ORDERED})


def parse_block_type(raw: Union[int, str, None]) -> BlockType:
    """
    Resolve a wire block type (numeric code or name) to a BlockType.

    Unknown values resolve to ``BlockType.UNDEFINED``.
    """
    if isinstance(raw, bool) or raw is None:
        return BlockType.UNDEFINED
    if isinstance(raw, int):
        return _TYPES_BY_CODE.get(raw, BlockType.UNDEFINED)
    if isinstance(raw, str) and raw.isdigit():
        return _TYPES_BY_CODE.get(int(raw), BlockType.UNDEFINED)
    try:
        return BlockType(raw)
    except ValueError:
        return BlockType.UNDEFINED


def wire_block_type(kind: BlockType) -> Union[int, str]:
    return BLOCK_TYPE_CODES.get(kind, kind.value)


def text_elements(content: str) -> List[Dict[str, Any]]:
    """Wrap plain text as a single text-run element list."""
    return [{"text_run": {"content": content}}]


# ---------------------------------------------------------------------
# Block Bodies
# ---------------------------------------------------------------------

class TextBody(BaseModel):
    """Rich-text payload shared by text, heading, list, quote and code blocks."""
    kind: Literal["text"] = "text"
    elements: List[Dict[str, Any]] = Field(default_factory=list)
    style: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    def plain_text(self) -> str:
        parts: List[str] = []
        for element in self.elements:
            run = element.get("text_run") or {}
            content = run.get("content")
            if content:
                parts.append(content)
        return "".join(parts)


class ImageBody(BaseModel):
    kind: Literal["image"] = "image"
    token: str = ""
    width: Optional[int] = None
    height: Optional[int] = None
    align: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class TableBody(BaseModel):
    kind: Literal["table"] = "table"
    row_size: int = 0
    column_size: int = 0
    column_width: Optional[List[int]] = None
    header_row: Optional[bool] = None
    merge_info: Optional[List[Dict[str, Any]]] = None

    model_config = ConfigDict(extra="forbid")


class CalloutBody(BaseModel):
    kind: Literal["callout"] = "callout"
    background_color: Optional[int] = None
    border_color: Optional[int] = None
    text_color: Optional[int] = None
    emoji_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class EmptyBody(BaseModel):
    """Body of structural blocks that carry no payload (cells, dividers)."""
    kind: Literal["empty"] = "empty"

    model_config = ConfigDict(extra="forbid")


class OpaqueBody(BaseModel):
    """Payload of block kinds this system passes through untouched."""
    kind: Literal["opaque"] = "opaque"
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


BlockBody = Annotated[
    Union[TextBody, ImageBody, TableBody, CalloutBody, EmptyBody, OpaqueBody],
    Field(discriminator="kind"),
]

_EMPTY_TYPES = frozenset(
    {
        BlockType.TABLE_ROW,
        BlockType.TABLE_CELL,
        BlockType.DIVIDER,
        BlockType.GRID_COLUMN,
        BlockType.QUOTE_CONTAINER,
    }
)


def body_kind_for(block_type: BlockType) -> str:
    """Return the body kind every block of ``block_type`` carries."""
    if block_type in TEXT_LIKE_TYPES:
        return "text"
    if block_type is BlockType.IMAGE:
        return "image"
    if block_type is BlockType.TABLE:
        return "table"
    if block_type is BlockType.CALLOUT:
        return "callout"
    if block_type in _EMPTY_TYPES:
        return "empty"
    return "opaque"


def _body_from_wire(block_type: BlockType, data: Dict[str, Any]) -> BlockBody:
    kind = body_kind_for(block_type)
    raw = data.get(block_type.value) or {}

    if kind == "text":
        return TextBody(
            elements=list(raw.get("elements") or []),
            style=dict(raw.get("style") or {}),
        )
    if kind == "image":
        return ImageBody(
            token=raw.get("token") or "",
            width=raw.get("width"),
            height=raw.get("height"),
            align=raw.get("align"),
        )
    if kind == "table":
        prop = raw.get("property") or {}
        return TableBody(
            row_size=prop.get("row_size") or 0,
            column_size=prop.get("column_size") or 0,
            column_width=prop.get("column_width"),
            header_row=prop.get("header_row"),
            merge_info=prop.get("merge_info"),
        )
    if kind == "callout":
        return CalloutBody(
            background_color=raw.get("background_color"),
            border_color=raw.get("border_color"),
            text_color=raw.get("text_color"),
            emoji_id=raw.get("emoji_id"),
        )
    if kind == "empty":
        return EmptyBody()
    return OpaqueBody(data=dict(raw))


def _body_to_wire(body: BlockBody) -> Dict[str, Any]:
    if isinstance(body, TextBody):
        payload: Dict[str, Any] = {"elements": body.elements}
        if body.style:
            payload["style"] = body.style
        return payload
    if isinstance(body, ImageBody):
        return body.model_dump(exclude={"kind"}, exclude_none=True, exclude_defaults=True)
    if isinstance(body, TableBody):
        # merge_info is read-only on the remote side and rejected on create
        prop: Dict[str, Any] = {
            "row_size": body.row_size,
            "column_size": body.column_size,
        }
        if body.column_width:
            prop["column_width"] = body.column_width
        if body.header_row is not None:
            prop["header_row"] = body.header_row
        return {"property": prop}
    if isinstance(body, CalloutBody):
        return body.model_dump(exclude={"kind"}, exclude_none=True)
    if isinstance(body, EmptyBody):
        return {}
    return dict(body.data)


# ---------------------------------------------------------------------
# Block
# ---------------------------------------------------------------------

class Block(BaseModel):
    """
    One node of the remote document tree.

    ``children`` lists child ids in display order; each child's
    ``parent_id`` must point back at this block.
    """
    block_id: str = Field(..., min_length=1)
    block_type: BlockType
    parent_id: Optional[str] = None
    children: List[str] = Field(default_factory=list)
    body: BlockBody = Field(default_factory=EmptyBody)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Block":
        """Build a Block from a remote block dictionary."""
        block_type = parse_block_type(data.get("block_type"))
        return cls(
            block_id=str(data.get("block_id") or ""),
            block_type=block_type,
            parent_id=data.get("parent_id") or None,
            children=[str(c) for c in (data.get("children") or [])],
            body=_body_from_wire(block_type, data),
        )

    def to_wire(self, include_id: bool = False, include_children: bool = False) -> Dict[str, Any]:
        """
        Serialize this block as a remote creation descriptor.

        Parameters
        ----------
        include_id : bool
            Emit ``block_id`` (needed for nested creation, where ids are
            temporary references between descendants).

        include_children : bool
            Emit the ``children`` id list.
        """
        payload: Dict[str, Any] = {
            "block_type": wire_block_type(self.block_type),
            self.block_type.value: _body_to_wire(self.body),
        }
        if include_id:
            payload["block_id"] = self.block_id
        if include_children and self.children:
            payload["children"] = list(self.children)
        return payload

    def plain_text(self) -> str:
        if isinstance(self.body, TextBody):
            return self.body.plain_text()
        return ""


def make_text_block(block_id: str, content: str, parent_id: Optional[str] = None) -> Block:
    return Block(
        block_id=block_id,
        block_type=BlockType.TEXT,
        parent_id=parent_id,
        body=TextBody(elements=text_elements(content)),
    )


# ---------------------------------------------------------------------
# Arena
# ---------------------------------------------------------------------

class BlockTree:
    """
    Ordered arena of blocks keyed by id.

    Iteration yields blocks in arena order, which is the order the
    reconciler and planner treat as document order for top-level blocks.
    """

    def __init__(self, blocks: Iterable[Block] = ()) -> None:
        self._blocks: Dict[str, Block] = {}
        for block in blocks:
            self.add(block)

    @classmethod
    def from_convert_payload(cls, data: Dict[str, Any]) -> "BlockTree":
        """
        Build an arena from a Markdown conversion response.

        Blocks listed in ``first_level_block_ids`` have their parent cleared
        so they read as top-level.
        """
        first_level = set(data.get("first_level_block_ids") or [])
        blocks: List[Block] = []
        for raw in data.get("blocks") or []:
            if not raw.get("block_id"):
                continue
            block = Block.from_wire(raw)
            if block.block_id in first_level:
                block.parent_id = None
            blocks.append(block)
        return cls(blocks)

    # ------------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[Block]:
        return iter(list(self._blocks.values()))

    def __len__(self) -> int:
        return len(self._blocks)

    def __contains__(self, block_id: object) -> bool:
        return block_id in self._blocks

    def add(self, block: Block) -> None:
        if block.block_id in self._blocks:
            raise ValueError(f"Duplicate block id: {block.block_id}")
        self._blocks[block.block_id] = block

    def get(self, block_id: Optional[str]) -> Optional[Block]:
        if block_id is None:
            return None
        return self._blocks.get(block_id)

    def ids(self) -> List[str]:
        return list(self._blocks.keys())

    def blocks(self) -> List[Block]:
        return list(self._blocks.values())

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def top_level(self) -> List[Block]:
        return [b for b in self._blocks.values() if b.parent_id is None]

    def children_of(self, block_id: str) -> List[Block]:
        block = self._blocks.get(block_id)
        if block is None:
            return []
        return [self._blocks[c] for c in block.children if c in self._blocks]

    def subtree(self, block_id: str) -> List[Block]:
        """Return ``block_id`` and all of its descendants in pre-order."""
        result: List[Block] = []
        stack = [block_id]
        seen = set()
        while stack:
            current = stack.pop()
            if current in seen or current not in self._blocks:
                continue
            seen.add(current)
            block = self._blocks[current]
            result.append(block)
            stack.extend(reversed(block.children))
        return result
