"""
Models Package

Block arena types and document-level records shared by the sync pipeline.
"""

from .blocks import (
    Block,
    BlockTree,
    BlockType,
    CalloutBody,
    EmptyBody,
    ImageBody,
    OpaqueBody,
    TableBody,
    TextBody,
    make_text_block,
    parse_block_type,
    text_elements,
)
from .documents import (
    DocumentResult,
    ImagePayload,
    MatchAssignment,
    PermissionSettings,
    ReferencedDocument,
    StructuralElement,
    SyncOutcome,
    UploadRecord,
    WikiLinkReference,
)

__all__ = [
    "Block",
    "BlockTree",
    "BlockType",
    "CalloutBody",
    "EmptyBody",
    "ImageBody",
    "OpaqueBody",
    "TableBody",
    "TextBody",
    "make_text_block",
    "parse_block_type",
    "text_elements",
    "DocumentResult",
    "ImagePayload",
    "MatchAssignment",
    "PermissionSettings",
    "ReferencedDocument",
    "StructuralElement",
    "SyncOutcome",
    "UploadRecord",
    "WikiLinkReference",
]
