"""
Smart-Update Orchestrator

Re-syncs a note into the remote document it was uploaded to before, instead
of creating a duplicate.

Design Goals
------------
- Explicit state machine:
  ``Idle -> Locating -> Validating -> Clearing -> Rebuilding -> Done``,
  with ``Failed`` reachable from Validating, Clearing and Rebuilding
- Nothing destructive happens before the document is confirmed reachable
- Content containing a Markdown table never takes this path
- A failure after clearing is reported, never retried as a plain upload
  (that would leave a half-emptied original next to a new copy)
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence

from ..core import settle
from ..core.errors import ConversionError, DocumentAccessError, SmartUpdateError, SyncError
from ..feishu.api_client import FeishuClient
from ..markdown.frontmatter import insert_info_block
from ..markdown.preprocessor import has_table, preprocess_markdown
from ..markdown.structure import parse_structure
from ..models.documents import ImagePayload, UploadRecord
from .callouts import CalloutTranscoder, extract_callouts
from .executor import ExecutionReport, MutationExecutor
from .images import ImageAttachmentPipeline
from .planner import MAX_BATCH_SIZE, plan_insertion
from .reconciler import reconcile_blocks
from .relations import validate_relations

logger = logging.getLogger("sync.smart_update")

ProgressCallback = Callable[[str], None]


class SmartUpdateState(str, Enum):
    IDLE = "idle"
    LOCATING = "locating"
    VALIDATING = "validating"
    CLEARING = "clearing"
    REBUILDING = "rebuilding"
    DONE = "done"
    FAILED = "failed"


class RebuildReport(NamedTuple):
    """What one smart update did to the remote document."""
    document_id: str
    cleared: int
    execution: ExecutionReport
    images_attached: int
    callouts_converted: int
    info_block: bool


def find_existing_document(title: str, history: Sequence[UploadRecord]) -> Optional[UploadRecord]:
    """First history record for ``title`` that is not a referenced document."""
    for record in history:
        if record.title == title and not record.is_referenced_document:
            return record
    return None


def should_use_smart_update(
    title: str,
    history: Sequence[UploadRecord],
    content: str,
    enabled: bool = True,
) -> bool:
    """
    Decide whether an upload should replace an existing document.

    Disabled, table-bearing content, or no prior upload of ``title`` all
    mean a plain creation.
    """
    if not enabled:
        return False
    if has_table(content):
        logger.info("Smart update skipped for %r: content contains a table", title)
        return False
    return find_existing_document(title, history) is not None


class SmartUpdateOrchestrator:
    """
    Drives one smart update.

    Parameters
    ----------
    client : FeishuClient
        Remote API client.

    images : Optional[ImageAttachmentPipeline]
        Attaches image payloads after the rebuild. Without one, image blocks
        stay empty.

    batch_size : int
        Top-level blocks per bulk-create call.
    """

    def __init__(
        self,
        client: FeishuClient,
        images: Optional[ImageAttachmentPipeline] = None,
        batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        self.client = client
        self.images = images
        self.batch_size = batch_size
        self.executor = MutationExecutor(client)
        self.callouts = CalloutTranscoder(client)
        self.state = SmartUpdateState.IDLE

    def _enter(self, state: SmartUpdateState) -> None:
        logger.debug("Smart update: %s -> %s", self.state.value, state.value)
        self.state = state

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def locate(self, title: str, history: Sequence[UploadRecord]) -> Optional[UploadRecord]:
        self._enter(SmartUpdateState.LOCATING)
        record = find_existing_document(title, history)
        if record is None:
            logger.info("No previous upload of %r, smart update not applicable", title)
            self._enter(SmartUpdateState.IDLE)
        return record

    async def validate(self, document_id: str) -> None:
        """Confirm the document is still readable; raises DocumentAccessError."""
        self._enter(SmartUpdateState.VALIDATING)
        try:
            await self.client.get_document(document_id)
        except SyncError as exc:
            self._enter(SmartUpdateState.FAILED)
            raise DocumentAccessError(
                f"Document {document_id} is no longer accessible: {exc}"
            ) from exc

    async def clear(self, document_id: str) -> int:
        # The page block id of a document equals the document id
        self._enter(SmartUpdateState.CLEARING)
        try:
            return await self.executor.clear_children(document_id, document_id)
        except SyncError as exc:
            self._enter(SmartUpdateState.FAILED)
            raise SmartUpdateError(f"Could not clear the existing document: {exc}", "clearing") from exc

    async def rebuild(
        self,
        document_id: str,
        markdown: str,
        images: Optional[List[ImagePayload]] = None,
        frontmatter: Optional[Dict[str, Any]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> RebuildReport:
        """
        Rebuild the emptied document from ``markdown``.

        ``markdown`` must already have its frontmatter removed and its
        wiki-links and Mermaid charts rewritten.
        """
        self._enter(SmartUpdateState.REBUILDING)
        try:
            return await self._rebuild(document_id, markdown, images or [], frontmatter, progress)
        except SyncError as exc:
            self._enter(SmartUpdateState.FAILED)
            if isinstance(exc, SmartUpdateError):
                raise
            raise SmartUpdateError(
                f"Rebuilding the document failed after its content was cleared: {exc}",
                "rebuilding",
            ) from exc

    async def _rebuild(
        self,
        document_id: str,
        markdown: str,
        images: List[ImagePayload],
        frontmatter: Optional[Dict[str, Any]],
        progress: Optional[ProgressCallback],
    ) -> RebuildReport:
        processed = preprocess_markdown(markdown)

        if progress:
            progress("Converting Markdown to blocks...")
        converted = await self.client.convert_markdown(processed)
        if not len(converted):
            raise ConversionError("The conversion endpoint returned no blocks")

        structure = parse_structure(processed)
        reconciled = reconcile_blocks(converted.blocks(), structure)
        tree = validate_relations(reconciled.blocks)
        plan = plan_insertion(tree, self.batch_size)

        if progress:
            progress(f"Creating {plan.top_level_count} blocks...")
        execution = await self.executor.execute(document_id, document_id, plan)

        attached = 0
        if images and self.images is not None:
            if progress:
                progress("Uploading images...")
            attached = await self.images.attach(document_id, images, progress)

        callouts = extract_callouts(markdown)
        converted_callouts = 0
        if callouts:
            if progress:
                progress("Converting callouts...")
            await self.client.clock.wait(settle.BEFORE_CALLOUTS)
            converted_callouts = await self.callouts.transcode(document_id, callouts)

        if frontmatter:
            await insert_info_block(self.client, document_id, frontmatter)

        return RebuildReport(
            document_id=document_id,
            cleared=0,
            execution=execution,
            images_attached=attached,
            callouts_converted=converted_callouts,
            info_block=bool(frontmatter),
        )

    # ------------------------------------------------------------------
    # Whole run
    # ------------------------------------------------------------------

    async def run(
        self,
        title: str,
        history: Sequence[UploadRecord],
        markdown: str,
        images: Optional[List[ImagePayload]] = None,
        frontmatter: Optional[Dict[str, Any]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Optional[RebuildReport]:
        """
        Locate, validate, clear and rebuild.

        Returns
        -------
        Optional[RebuildReport]
            None when no previous upload exists (the caller creates a new
            document instead).

        Raises
        ------
        DocumentAccessError
            The previous document cannot be read; nothing was changed.

        SmartUpdateError
            Clearing or rebuilding failed.
        """
        record = self.locate(title, history)
        if record is None:
            return None

        document_id = record.doc_token
        if progress:
            progress("Checking the existing document...")
        await self.validate(document_id)

        if progress:
            progress("Clearing the existing document...")
        cleared = await self.clear(document_id)

        report = await self.rebuild(document_id, markdown, images, frontmatter, progress)
        self._enter(SmartUpdateState.DONE)
        logger.info("Smart update of %r (%s) complete", title, document_id)
        return report._replace(cleared=cleared)
