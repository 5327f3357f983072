"""
Document Models

Pydantic models for everything the pipeline tracks about a document besides
its blocks: ground-truth structure, match results, images, wiki-links,
permissions and upload history records.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .blocks import BlockType


# ---------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------

class StructuralElement(BaseModel):
    """One ground-truth line of the source Markdown."""
    semantic_type: BlockType
    content_preview: str = Field(default="", max_length=50)
    source_line: int = Field(..., ge=0)

    model_config = ConfigDict(extra="forbid", frozen=True)


class MatchAssignment(BaseModel):
    """Pairing of one structural element with one converted block."""
    element_index: int = Field(..., ge=0)
    block_id: str
    score: float = Field(..., ge=0.0, le=1.0)

    model_config = ConfigDict(extra="forbid", frozen=True)


# ---------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------

class ImagePayload(BaseModel):
    """
    An image referenced by the Markdown, in document order.

    ``original_width``/``original_height``/``scale_factor`` are set for
    rasterized SVG and Mermaid sources.
    """
    source_path: str
    file_name: str
    ordinal_position: int = Field(..., ge=0)
    alt: str = ""
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    original_width: Optional[float] = Field(default=None, gt=0)
    original_height: Optional[float] = Field(default=None, gt=0)
    scale_factor: Optional[float] = Field(default=None, gt=0)

    model_config = ConfigDict(extra="forbid")


class WikiLinkReference(BaseModel):
    """A ``[[title]]`` or ``[[title|alias]]`` span found in a note."""
    original_text: str
    title: str
    alias: Optional[str] = None
    position: int = Field(..., ge=0)
    file_path: Optional[str] = None
    remote_url: Optional[str] = None
    remote_token: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @property
    def display_text(self) -> str:
        return self.alias or self.title


# ---------------------------------------------------------------------
# Permissions & History
# ---------------------------------------------------------------------

class PermissionSettings(BaseModel):
    """Public-sharing flags applied to an uploaded document."""
    is_public: bool = False
    allow_copy: bool = False
    allow_create_copy: bool = False
    allow_print_download: bool = False
    copy_entity: Optional[str] = None
    security_entity: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class ReferencedDocument(BaseModel):
    """A secondary document created while resolving wiki-links."""
    title: str
    doc_token: str
    url: str

    model_config = ConfigDict(extra="forbid")


class UploadRecord(BaseModel):
    """Persisted upload history entry."""
    title: str = Field(..., min_length=1)
    url: str
    doc_token: str = Field(..., min_length=1)
    upload_time: str
    permissions: Optional[PermissionSettings] = None
    referenced_documents: Optional[List[ReferencedDocument]] = None
    is_referenced_document: bool = False

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------

class DocumentResult(BaseModel):
    """Identity of a document that now exists remotely."""
    title: str
    token: str
    url: str

    model_config = ConfigDict(extra="forbid")


class SyncOutcome(BaseModel):
    """Result of one top-level pipeline run."""
    document_id: str
    url: str
    title: str
    smart_updated: bool = False
    referenced_documents: Dict[str, DocumentResult] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")
