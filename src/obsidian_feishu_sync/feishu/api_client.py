"""
Feishu Open API Client

Async client for the drive and docx endpoints the sync pipeline depends on.

Design Goals
------------
- Every request goes through one `_request` method that owns authentication,
  the 5xx retry policy and business-code checking
- Transient failures (5xx, transport errors) are retried up to 3 times with
  a fixed backoff; business rejections (non-zero ``code``) never are
- All deletes are funneled through the process-wide delete queue
- No sleeping outside the settle clock, so tests run instantly
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import httpx

from ..config import settings
from ..core.errors import (
    AuthenticationError,
    BusinessRejectionError,
    FolderConfigError,
    ImportTimeoutError,
    TransientRemoteError,
)
from ..core import settle
from ..core.settle import SettleClock
from ..models.blocks import Block, BlockTree
from ..models.documents import DocumentResult, PermissionSettings
from .delete_queue import DeleteQueue, delete_queue

logger = logging.getLogger("sync.feishu")

MAX_SERVER_ERROR_RETRIES = 3
TOKEN_REFRESH_MARGIN = 30 * 60
BLOCK_PAGE_SIZE = 500
IMPORT_MAX_RETRIES = 5

# Import job states
JOB_DONE = 0
JOB_IN_PROGRESS = frozenset({1, 2})

_DOCUMENT_HOSTS = ("feishu.cn", "larkoffice.com", "larksuite.com")


class ImportJobStatus(NamedTuple):
    job_status: Optional[int]
    token: Optional[str]
    url: Optional[str]
    error_message: Optional[str]


def format_document_url(token: str, url: Optional[str] = None) -> str:
    """Return ``url`` when it already points at a document host, else build one."""
    if url and any(host in url for host in _DOCUMENT_HOSTS):
        return url
    return f"https://open.feishu.cn/document/{token}"


def created_block_ids(created: Sequence[Dict[str, Any]]) -> List[str]:
    """Extract block ids from a creation response, in input order."""
    return [str(item.get("block_id")) for item in created if item.get("block_id")]


class FeishuClient:
    """
    Client for one Feishu application.

    Parameters
    ----------
    app_id, app_secret : Optional[str]
        Application credentials. Default to settings.

    base_url : Optional[str]
        Open API root, e.g. ``https://open.feishu.cn/open-apis``.

    clock : Optional[SettleClock]
        Settle clock used for retry backoff and import polling.

    deletes : Optional[DeleteQueue]
        Queue every delete is dispatched through.

    transport : Optional[httpx.AsyncBaseTransport]
        Transport override, used by tests.
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        clock: Optional[SettleClock] = None,
        deletes: Optional[DeleteQueue] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.app_id = app_id if app_id is not None else settings.feishu_app_id
        self.app_secret = (
            app_secret
            if app_secret is not None
            else settings.feishu_app_secret.get_secret_value()
        )
        self.base_url = (base_url or str(settings.feishu_base_url)).rstrip("/")
        self.timeout = timeout or settings.request_timeout
        self.clock = clock or SettleClock()
        self.deletes = deletes or delete_queue
        self._transport = transport
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def get_access_token(self) -> str:
        """
        Return a cached tenant access token, refreshing it 30 minutes
        before it expires.

        Raises
        ------
        AuthenticationError
            If the token endpoint rejects the credentials.
        """
        now = time.monotonic()
        if self._access_token and now < self._token_expires_at - TOKEN_REFRESH_MARGIN:
            return self._access_token

        if not self.app_id or not self.app_secret:
            raise AuthenticationError(-1, "app id and app secret are required", "get access token")

        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.base_url}/auth/v3/tenant_access_token/internal",
                    json={"app_id": self.app_id, "app_secret": self.app_secret},
                )
        except httpx.HTTPError as exc:
            logger.error("Token request failed (%s)", type(exc).__name__)
            raise TransientRemoteError(f"Token request failed: {type(exc).__name__}") from exc

        data = self._decode(resp)
        code = data.get("code", resp.status_code if resp.status_code >= 400 else 0)
        token = data.get("tenant_access_token")
        if code != 0 or not token:
            raise AuthenticationError(int(code or -1), data.get("msg") or "missing token", "get access token")

        self._access_token = token
        self._token_expires_at = now + float(data.get("expire") or 0)
        logger.debug("Tenant access token refreshed (expires in %ss)", data.get("expire"))
        return token

    @staticmethod
    def _decode(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Perform one authenticated call and return its ``data`` object.

        Raises
        ------
        TransientRemoteError
            When 5xx responses or transport errors persist through all retries.

        BusinessRejectionError
            When the API answers with a non-zero ``code``.
        """
        token = await self.get_access_token()
        headers = {"Authorization": f"Bearer {token}"}
        url = f"{self.base_url}{path}"

        last_status: Optional[int] = None
        for attempt in range(MAX_SERVER_ERROR_RETRIES + 1):
            if attempt:
                logger.warning(
                    "%s: retrying after server error (attempt %d/%d)",
                    operation,
                    attempt,
                    MAX_SERVER_ERROR_RETRIES,
                )
                await self.clock.wait(settle.SERVER_ERROR_BACKOFF)

            try:
                async with self._client() as client:
                    resp = await client.request(
                        method,
                        url,
                        params=params,
                        json=json_body,
                        data=data,
                        files=files,
                        headers=headers,
                    )
            except httpx.TransportError as exc:
                logger.warning("%s: transport error (%s)", operation, type(exc).__name__)
                last_status = None
                continue

            if resp.status_code >= 500:
                last_status = resp.status_code
                continue

            payload = self._decode(resp)
            code = payload.get("code")
            if code is None and resp.status_code >= 400:
                raise BusinessRejectionError(resp.status_code, resp.text or "request rejected", operation)
            if code not in (None, 0):
                logger.error("%s rejected: code=%s msg=%s", operation, code, payload.get("msg"))
                raise BusinessRejectionError(int(code), str(payload.get("msg") or ""), operation)
            return payload.get("data") or {}

        raise TransientRemoteError(
            f"{operation} failed after {MAX_SERVER_ERROR_RETRIES} retries "
            f"(status={last_status}); the document may have been partially "
            "created, check manually",
            status_code=last_status,
        )

    # ------------------------------------------------------------------
    # Drive: files and import jobs
    # ------------------------------------------------------------------

    async def upload_raw_file(self, file_name: str, content: bytes, folder_token: str) -> str:
        """Upload a file into a drive folder and return its file token."""
        if not folder_token:
            raise FolderConfigError("No target folder token is configured")

        data = await self._request(
            "POST",
            "/drive/v1/files/upload_all",
            "upload file",
            data={
                "file_name": file_name,
                "parent_type": "explorer",
                "parent_node": folder_token,
                "size": str(len(content)),
            },
            files={"file": (file_name, content, "text/markdown")},
        )
        file_token = data.get("file_token")
        if not file_token:
            raise BusinessRejectionError(-1, "upload returned no file token", "upload file")
        return file_token

    async def create_import_job(self, file_name: str, file_token: str, folder_token: str) -> str:
        """Start converting an uploaded Markdown file into a docx document."""
        stem = file_name[:-3] if file_name.lower().endswith(".md") else file_name
        data = await self._request(
            "POST",
            "/drive/v1/import_tasks",
            "create import job",
            json_body={
                "file_extension": "md",
                "file_name": stem,
                "type": "docx",
                "file_token": file_token,
                "point": {"mount_type": 1, "mount_key": folder_token},
            },
        )
        ticket = data.get("ticket")
        if not ticket:
            raise BusinessRejectionError(-1, "import job returned no ticket", "create import job")
        return ticket

    async def poll_import_job(self, ticket: str) -> ImportJobStatus:
        data = await self._request("GET", f"/drive/v1/import_tasks/{ticket}", "poll import job")
        result = data.get("result") or {}
        return ImportJobStatus(
            job_status=result.get("job_status"),
            token=result.get("token"),
            url=result.get("url"),
            error_message=result.get("job_error_msg"),
        )

    async def wait_for_import_job(
        self,
        ticket: str,
        title: str,
        max_retries: int = IMPORT_MAX_RETRIES,
    ) -> DocumentResult:
        """
        Poll an import job until it finishes.

        Waits 3 seconds before the first poll, then 3 seconds between the
        first polls and 6 seconds from the third retry on.

        Raises
        ------
        ImportTimeoutError
            If the job is still running after ``max_retries`` retries.

        BusinessRejectionError
            If the job reports failure.
        """
        await self.clock.wait(settle.IMPORT_START)
        retries = 0
        while True:
            status = await self.poll_import_job(ticket)

            if status.job_status == JOB_DONE:
                if not status.token:
                    raise BusinessRejectionError(-1, "import finished without a document", "import")
                return DocumentResult(
                    title=title,
                    token=status.token,
                    url=format_document_url(status.token, status.url),
                )

            if status.job_status in JOB_IN_PROGRESS:
                retries += 1
                if retries > max_retries:
                    logger.warning("Import job %s still running after %d retries", ticket, max_retries)
                    raise ImportTimeoutError(
                        "Import job is still processing; check the folder manually"
                    )
                await self.clock.wait(
                    settle.IMPORT_POLL_EARLY if retries < 3 else settle.IMPORT_POLL_LATE
                )
                continue

            raise BusinessRejectionError(
                int(status.job_status if status.job_status is not None else -1),
                status.error_message or f"unknown job status {status.job_status}",
                "import",
            )

    async def delete_file(self, token: str, file_type: str = "docx") -> None:
        await self._request(
            "DELETE",
            f"/drive/v1/files/{token}",
            "delete file",
            params={"type": file_type},
        )

    # ------------------------------------------------------------------
    # Docx: documents and blocks
    # ------------------------------------------------------------------

    async def get_document(self, document_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/docx/v1/documents/{document_id}", "get document")
        return data.get("document") or data

    async def get_blocks(self, document_id: str) -> List[Block]:
        """Return every block of a document, following pagination."""
        blocks: List[Block] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"page_size": BLOCK_PAGE_SIZE, "document_revision_id": -1}
            if page_token:
                params["page_token"] = page_token
            data = await self._request(
                "GET",
                f"/docx/v1/documents/{document_id}/blocks",
                "list blocks",
                params=params,
            )
            for item in data.get("items") or []:
                blocks.append(Block.from_wire(item))
            page_token = data.get("page_token")
            if not data.get("has_more") or not page_token:
                return blocks

    async def convert_markdown(self, markdown: str) -> BlockTree:
        """Convert Markdown to a flat arena of blocks (order not guaranteed)."""
        data = await self._request(
            "POST",
            "/docx/v1/documents/blocks/convert",
            "convert markdown",
            json_body={"content_type": "markdown", "content": markdown},
        )
        return BlockTree.from_convert_payload(data)

    async def create_blocks(
        self,
        document_id: str,
        parent_id: str,
        index: int,
        children: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Insert sibling blocks at ``index`` under ``parent_id``; returns the created blocks."""
        data = await self._request(
            "POST",
            f"/docx/v1/documents/{document_id}/blocks/{parent_id}/children",
            "create blocks",
            params={"document_revision_id": -1},
            json_body={"index": index, "children": children},
        )
        return list(data.get("children") or [])

    async def create_nested_blocks(
        self,
        document_id: str,
        parent_id: str,
        index: int,
        children_ids: List[str],
        descendants: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Insert a pre-built subtree in one call; ids in ``descendants`` are temporary."""
        data = await self._request(
            "POST",
            f"/docx/v1/documents/{document_id}/blocks/{parent_id}/descendant",
            "create nested blocks",
            params={"document_revision_id": -1},
            json_body={
                "children_id": children_ids,
                "descendants": descendants,
                "index": index,
            },
        )
        return list(data.get("children") or [])

    async def batch_delete_blocks(
        self,
        document_id: str,
        parent_id: str,
        start_index: int,
        end_index: int,
    ) -> None:
        """Delete the children of ``parent_id`` in ``[start_index, end_index)``."""
        if end_index <= start_index:
            return

        async def _delete() -> Dict[str, Any]:
            return await self._request(
                "DELETE",
                f"/docx/v1/documents/{document_id}/blocks/{parent_id}/children/batch_delete",
                "delete blocks",
                params={"document_revision_id": -1},
                json_body={"start_index": start_index, "end_index": end_index},
            )

        await self.deletes.submit(_delete)

    async def delete_block(
        self,
        document_id: str,
        block_id: str,
        parent_id: Optional[str] = None,
        index: Optional[int] = None,
    ) -> None:
        """
        Delete one block.

        Without a known parent and index the block's position is looked up
        first, since deletion is only addressable by sibling range.
        """
        if parent_id is None or index is None:
            blocks = await self.get_blocks(document_id)
            by_id = {b.block_id: b for b in blocks}
            target = by_id.get(block_id)
            parent = by_id.get(target.parent_id) if target is not None else None
            if target is None or parent is None:
                raise BusinessRejectionError(-1, f"block {block_id} not found", "delete block")
            parent_id = parent.block_id
            index = parent.children.index(block_id)

        await self.batch_delete_blocks(document_id, parent_id, index, index + 1)

    async def upload_asset(
        self,
        content: bytes,
        file_name: str,
        document_id: str,
        block_id: str,
    ) -> str:
        """Upload image bytes bound to an image block; returns the asset token."""
        data = await self._request(
            "POST",
            "/drive/v1/medias/upload_all",
            "upload image",
            data={
                "file_name": file_name,
                "parent_type": "docx_image",
                "parent_node": block_id,
                "size": str(len(content)),
                "extra": json.dumps({"drive_route_token": document_id}),
            },
            files={"file": (file_name, content, "application/octet-stream")},
        )
        token = data.get("file_token")
        if not token:
            raise BusinessRejectionError(-1, "image upload returned no token", "upload image")
        return token

    async def patch_image_block(
        self,
        document_id: str,
        block_id: str,
        image_token: str,
        width: int,
        height: int,
    ) -> None:
        await self._request(
            "PATCH",
            f"/docx/v1/documents/{document_id}/blocks/{block_id}",
            "patch image",
            params={"document_revision_id": -1},
            json_body={
                "replace_image": {
                    "token": image_token,
                    "width": width,
                    "height": height,
                    "align": 2,
                }
            },
        )

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def set_permissions(self, document_token: str, permissions: PermissionSettings) -> None:
        """Apply public-sharing flags to a document."""
        body: Dict[str, Any] = {"external_access_entity": "open"}
        if permissions.is_public:
            body["link_share_entity"] = "anyone_readable"
        if permissions.copy_entity:
            body["copy_entity"] = permissions.copy_entity
        elif permissions.allow_copy:
            body["copy_entity"] = "anyone_can_view"
        if permissions.security_entity:
            body["security_entity"] = permissions.security_entity
        elif permissions.allow_create_copy or permissions.allow_print_download:
            body["security_entity"] = "anyone_can_view"

        await self._request(
            "PATCH",
            f"/drive/v2/permissions/{document_token}/public",
            "set permissions",
            params={"type": "docx"},
            json_body=body,
        )

    async def transfer_ownership(self, document_token: str, user_id: str) -> None:
        """Hand document ownership to ``user_id``, keeping full access for the app."""
        await self._request(
            "POST",
            f"/drive/v1/permissions/{document_token}/members/transfer_owner",
            "transfer ownership",
            params={
                "need_notification": "false",
                "old_owner_perm": "full_access",
                "remove_old_owner": "false",
                "stay_put": "true",
                "type": "docx",
            },
            json_body={"member_id": user_id, "member_type": "userid"},
        )
        await self.clock.wait(settle.AFTER_TRANSFER)
