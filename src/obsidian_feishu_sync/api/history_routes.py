"""
History Routes

Read and manage the upload history.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .dependencies import get_feishu_client, get_history_store
from .models import HistoryResponse, OperationResult
from ..feishu.api_client import FeishuClient
from ..history.store import UploadHistoryStore
from ..models.documents import PermissionSettings

router = APIRouter(prefix="/history", tags=["history"])


def _require_record(store: UploadHistoryStore, doc_token: str) -> None:
    if store.get(doc_token) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No upload record for {doc_token}",
        )


@router.get("", response_model=HistoryResponse, summary="List upload records")
async def list_history(
    store: Annotated[UploadHistoryStore, Depends(get_history_store)],
) -> HistoryResponse:
    records = store.list_records()
    return HistoryResponse(records=records, count=len(records))


@router.delete(
    "/{doc_token}",
    response_model=OperationResult,
    summary="Delete an upload record, optionally with its remote document",
)
async def delete_history_record(
    doc_token: str,
    store: Annotated[UploadHistoryStore, Depends(get_history_store)],
    client: Annotated[FeishuClient, Depends(get_feishu_client)],
    remote: bool = Query(default=False, description="Also delete the remote document"),
) -> OperationResult:
    _require_record(store, doc_token)
    if remote:
        await store.delete_with_remote(doc_token, client)
    else:
        store.delete(doc_token)
    return OperationResult(status="deleted", doc_token=doc_token, remote=remote)


@router.patch(
    "/{doc_token}/permissions",
    response_model=OperationResult,
    summary="Apply new permissions to an uploaded document",
)
async def update_history_permissions(
    doc_token: str,
    permissions: PermissionSettings,
    store: Annotated[UploadHistoryStore, Depends(get_history_store)],
    client: Annotated[FeishuClient, Depends(get_feishu_client)],
) -> OperationResult:
    _require_record(store, doc_token)
    await client.set_permissions(doc_token, permissions)
    store.update_permissions(doc_token, permissions)
    return OperationResult(status="updated", doc_token=doc_token, remote=True)
