"""
API Models

Request/response schemas for the sync and history endpoints.

Design Goals
------------
- Strong typing
- Safe defaults (no shared mutable state)
- Reuse of the domain models where the wire shape is the same
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.documents import DocumentResult, PermissionSettings, UploadRecord


# ---------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------

class SyncUploadRequest(BaseModel):
    """
    Upload one note from the vault.
    """
    path: str = Field(..., min_length=1, description="Note path relative to the vault root")
    permissions: Optional[PermissionSettings] = None

    model_config = ConfigDict(extra="forbid")


class SyncUploadResponse(BaseModel):
    document_id: str
    url: str
    title: str
    smart_updated: bool
    referenced_documents: Dict[str, DocumentResult] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# History
# ---------------------------------------------------------------------

class HistoryResponse(BaseModel):
    records: List[UploadRecord] = Field(default_factory=list)
    count: int = Field(..., ge=0)

    model_config = ConfigDict(extra="forbid")


class OperationResult(BaseModel):
    """
    Standardized mutation operation result.
    """
    status: Literal["updated", "deleted"]
    doc_token: str
    remote: bool = False

    model_config = ConfigDict(extra="forbid")
