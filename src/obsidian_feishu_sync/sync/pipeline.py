"""
Sync Pipeline

Entry point that takes one note from the vault to a remote document.

Responsibilities
----------------
- Resolve wiki-links (uploading referenced notes first)
- Strip frontmatter, render Mermaid charts, collect images and callouts
- Either smart-update the previously uploaded document or create a new one
  through an import job
- Attach images, convert callouts, insert the info block
- Apply permissions and ownership, then record the upload in history

All per-run state (image cache, feature flags, rasterizers) lives in a
:class:`PipelineContext`; the wiki-link cache and in-flight set live in a
resolver created for each top-level upload.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import settings
from ..core import settle
from ..core.errors import SyncError
from ..feishu.api_client import FeishuClient
from ..history.store import UploadHistoryStore
from ..markdown.frontmatter import extract_frontmatter, insert_info_block, remove_frontmatter
from ..markdown.mermaid import MermaidRasterizer, has_mermaid_charts, render_mermaid_charts
from ..markdown.preprocessor import convert_embed_images
from ..models.documents import (
    DocumentResult,
    ImagePayload,
    PermissionSettings,
    ReferencedDocument,
    SyncOutcome,
    UploadRecord,
)
from ..vault import NoteFile, Vault
from .callouts import CalloutInfo, CalloutTranscoder, extract_callouts
from .images import ImageAttachmentPipeline, RasterImage, SvgRasterizer, extract_image_payloads
from .links import DoubleLinkResolver
from .smart_update import SmartUpdateOrchestrator, should_use_smart_update

logger = logging.getLogger("sync.pipeline")

ProgressCallback = Callable[[str], None]


@dataclass
class PipelineContext:
    """Per-run configuration and caches."""
    enable_double_link_mode: bool = field(default_factory=lambda: settings.enable_double_link_mode)
    enable_smart_update: bool = field(default_factory=lambda: settings.enable_smart_update)
    folder_token: str = field(default_factory=lambda: settings.feishu_folder_token)
    owner_user_id: Optional[str] = field(default_factory=lambda: settings.feishu_user_id)
    svg_rasterizer: Optional[SvgRasterizer] = None
    mermaid_rasterizer: Optional[MermaidRasterizer] = None
    image_cache: Dict[str, RasterImage] = field(default_factory=dict)


@dataclass
class _PreparedNote:
    markdown: str
    images: List[ImagePayload]
    callouts: List[CalloutInfo]
    frontmatter: Optional[Dict[str, Any]]


def _parent_dir(path: str) -> Optional[str]:
    return path.rsplit("/", 1)[0] if "/" in path else None


class SyncPipeline:
    """
    Uploads notes and keeps their remote copies current.

    Parameters
    ----------
    client : FeishuClient
        Remote API client.

    vault : Vault
        Source notes and images.

    history : UploadHistoryStore
        Upload records, used to find documents to smart-update.

    context : Optional[PipelineContext]
        Flags, rasterizers and the image cache.
    """

    def __init__(
        self,
        client: FeishuClient,
        vault: Vault,
        history: UploadHistoryStore,
        context: Optional[PipelineContext] = None,
    ) -> None:
        self.client = client
        self.vault = vault
        self.history = history
        self.context = context or PipelineContext()
        self.images = ImageAttachmentPipeline(
            client, vault, self.context.image_cache, self.context.svg_rasterizer
        )
        self.callouts = CalloutTranscoder(client)
        self._last_stamp = 0

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def upload_note(
        self,
        path: str,
        permissions: Optional[PermissionSettings] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SyncOutcome:
        """Upload the vault note at ``path``; its file stem is the title."""
        content = self.vault.read_text(path)
        file_name = path.rsplit("/", 1)[-1]
        title = file_name[:-3] if file_name.lower().endswith(".md") else file_name
        return await self.upload(
            content,
            title,
            file_name=file_name,
            permissions=permissions,
            progress=progress,
            base_path=_parent_dir(path),
        )

    async def upload(
        self,
        markdown: str,
        title: str,
        file_name: Optional[str] = None,
        permissions: Optional[PermissionSettings] = None,
        progress: Optional[ProgressCallback] = None,
        base_path: Optional[str] = None,
    ) -> SyncOutcome:
        """
        Run the whole pipeline for one note.

        Returns
        -------
        SyncOutcome
            Final document id and URL, whether it was smart-updated, and
            every referenced document created along the way.
        """
        resolver: Optional[DoubleLinkResolver] = None
        if self.context.enable_double_link_mode:

            async def upload_reference(note: NoteFile, ref_title: str, content: str) -> DocumentResult:
                result, _ = await self._sync(
                    content,
                    ref_title,
                    file_name=note.path.rsplit("/", 1)[-1],
                    permissions=permissions,
                    progress=progress,
                    base_path=_parent_dir(note.path),
                    resolver=resolver,
                    allow_smart_update=False,
                )
                return result

            resolver = DoubleLinkResolver(self.vault, upload_reference)

        try:
            result, smart_updated = await self._sync(
                markdown,
                title,
                file_name=file_name or f"{title}.md",
                permissions=permissions,
                progress=progress,
                base_path=base_path,
                resolver=resolver,
                allow_smart_update=self.context.enable_smart_update,
            )
            referenced = resolver.uploaded if resolver is not None else {}
        finally:
            if resolver is not None:
                resolver.clear_cache()
            self.context.image_cache.clear()

        self._record(result, smart_updated, permissions, referenced)
        if progress:
            progress("Upload complete")
        return SyncOutcome(
            document_id=result.token,
            url=result.url,
            title=title,
            smart_updated=smart_updated,
            referenced_documents=referenced,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _sync(
        self,
        markdown: str,
        title: str,
        file_name: str,
        permissions: Optional[PermissionSettings],
        progress: Optional[ProgressCallback],
        base_path: Optional[str],
        resolver: Optional[DoubleLinkResolver],
        allow_smart_update: bool,
    ) -> Tuple[DocumentResult, bool]:
        if resolver is not None:
            if progress:
                progress("Uploading referenced documents...")
            markdown, _ = await resolver.process(markdown, title, progress)

        note = await self._prepare(markdown, base_path)

        result: Optional[DocumentResult] = None
        smart_updated = False
        history = self.history.list_records()
        if should_use_smart_update(title, history, note.markdown, allow_smart_update):
            orchestrator = SmartUpdateOrchestrator(self.client, self.images)
            report = await orchestrator.run(
                title, history, note.markdown, note.images, note.frontmatter, progress
            )
            if report is not None:
                record = self.history.find_by_title(title)
                url = record.url if record is not None else ""
                result = DocumentResult(title=title, token=report.document_id, url=url)
                smart_updated = True

        if result is None:
            result = await self._create_document(note, title, file_name, progress)

        await self._apply_permissions(result.token, permissions)
        return result, smart_updated

    async def _prepare(self, markdown: str, base_path: Optional[str]) -> _PreparedNote:
        frontmatter = extract_frontmatter(markdown)
        if frontmatter is not None:
            markdown = remove_frontmatter(markdown)

        if self.context.mermaid_rasterizer is not None and has_mermaid_charts(markdown):
            markdown = await render_mermaid_charts(
                markdown,
                self.context.mermaid_rasterizer,
                self.context.image_cache,
                self._next_stamp(),
            )

        return _PreparedNote(
            markdown=markdown,
            images=extract_image_payloads(markdown, base_path),
            callouts=extract_callouts(markdown),
            frontmatter=frontmatter,
        )

    def _next_stamp(self) -> int:
        # Chart file names must stay unique across nested uploads of one run
        self._last_stamp = max(int(time.time() * 1000), self._last_stamp + 1)
        return self._last_stamp

    async def _create_document(
        self,
        note: _PreparedNote,
        title: str,
        file_name: str,
        progress: Optional[ProgressCallback],
    ) -> DocumentResult:
        folder = self.context.folder_token
        if progress:
            progress("Uploading file...")
        file_token = await self.client.upload_raw_file(
            file_name, convert_embed_images(note.markdown).encode("utf-8"), folder
        )
        try:
            if progress:
                progress("Creating import job...")
            ticket = await self.client.create_import_job(file_name, file_token, folder)
            result = await self.client.wait_for_import_job(ticket, title)
            if note.images:
                if progress:
                    progress("Uploading images...")
                await self.images.attach(result.token, note.images, progress)
        finally:
            await self._delete_temp_file(file_token)

        if note.callouts:
            if progress:
                progress("Converting callouts...")
            try:
                await self.client.clock.wait(settle.BEFORE_CALLOUTS)
                await self.callouts.transcode(result.token, note.callouts)
            except SyncError as exc:
                logger.error("Callout conversion for %s failed: %s", result.token, exc)

        if note.frontmatter:
            try:
                await insert_info_block(self.client, result.token, note.frontmatter)
            except SyncError as exc:
                logger.error("Info block for %s could not be inserted: %s", result.token, exc)

        return result

    async def _delete_temp_file(self, file_token: str) -> None:
        try:
            await self.client.delete_file(file_token, "file")
        except SyncError as exc:
            logger.warning("Temporary file %s could not be deleted: %s", file_token, exc)

    async def _apply_permissions(
        self, document_token: str, permissions: Optional[PermissionSettings]
    ) -> None:
        if permissions is not None:
            try:
                await self.client.set_permissions(document_token, permissions)
            except SyncError as exc:
                logger.error("Permissions for %s could not be set: %s", document_token, exc)

        if self.context.owner_user_id:
            try:
                await self.client.transfer_ownership(document_token, self.context.owner_user_id)
            except SyncError as exc:
                logger.error("Ownership of %s could not be transferred: %s", document_token, exc)

    def _record(
        self,
        result: DocumentResult,
        smart_updated: bool,
        permissions: Optional[PermissionSettings],
        referenced: Dict[str, DocumentResult],
    ) -> None:
        if smart_updated:
            self.history.touch(result.token)
            if permissions is not None:
                self.history.update_permissions(result.token, permissions)
        else:
            self.history.add(
                UploadRecord(
                    title=result.title,
                    url=result.url,
                    doc_token=result.token,
                    upload_time="",
                    permissions=permissions,
                    referenced_documents=[
                        ReferencedDocument(title=r.title, doc_token=r.token, url=r.url)
                        for r in referenced.values()
                    ]
                    or None,
                )
            )

        for ref in referenced.values():
            self.history.add(
                UploadRecord(
                    title=ref.title,
                    url=ref.url,
                    doc_token=ref.token,
                    upload_time="",
                    permissions=permissions,
                    is_referenced_document=True,
                )
            )
