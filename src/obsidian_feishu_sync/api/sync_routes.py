"""
Sync Routes

Upload a vault note to the remote document service. Typed pipeline failures
propagate to the global ``SyncError`` handler, which turns them into
categorized responses.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import get_pipeline
from .models import SyncUploadRequest, SyncUploadResponse
from ..sync.pipeline import SyncPipeline

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post(
    "/upload",
    response_model=SyncUploadResponse,
    summary="Upload or smart-update one note",
)
async def upload_note(
    req: SyncUploadRequest,
    pipeline: Annotated[SyncPipeline, Depends(get_pipeline)],
) -> SyncUploadResponse:
    if not req.path.lower().endswith(".md"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only Markdown notes can be uploaded",
        )
    try:
        pipeline.vault.resolve(req.path)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Path is outside the vault",
        )
    if not pipeline.vault.exists(req.path):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Note not found: {req.path}",
        )

    outcome = await pipeline.upload_note(req.path, req.permissions)
    return SyncUploadResponse(**outcome.model_dump())
