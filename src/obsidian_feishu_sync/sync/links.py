"""
Double-Link Resolver

Turns ``[[title]]`` / ``[[title|alias]]`` references into links to remote
documents, uploading each referenced note first.

Design Goals
------------
- Resolution order: exact basename, then path suffix, then a
  case-insensitive substring match in either direction
- Each title is uploaded at most once per resolver (result cache)
- A title already being processed is skipped rather than recursed into,
  which ends mutual-reference loops
- References are uploaded one at a time, in document order
- Substitution runs from the last reference to the first so earlier
  offsets stay valid
"""

from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..core.errors import SyncError
from ..models.documents import DocumentResult, WikiLinkReference
from ..vault import NoteFile, Vault

logger = logging.getLogger("sync.links")

WIKI_LINK_RE = re.compile(r"(?<!!)\[\[([^\]|]+)(?:\|([^\]]+))?\]\]")

# Uploads one referenced note (path, title, content) and returns its identity
Uploader = Callable[[NoteFile, str, str], Awaitable[DocumentResult]]
ProgressCallback = Callable[[str], None]


def extract_wiki_links(content: str) -> List[WikiLinkReference]:
    """List wiki-links in document order. Image embeds (``![[...]]``) are excluded."""
    links: List[WikiLinkReference] = []
    for match in WIKI_LINK_RE.finditer(content):
        title = match.group(1).strip()
        if not title:
            continue
        links.append(
            WikiLinkReference(
                original_text=match.group(0),
                title=title,
                alias=match.group(2),
                position=match.start(),
            )
        )
    return links


def find_note_by_title(notes: List[NoteFile], title: str) -> Optional[NoteFile]:
    for note in notes:
        if note.basename == title:
            return note

    for note in notes:
        without_ext = note.path[:-3] if note.path.endswith(".md") else note.path
        if without_ext == title or without_ext.endswith("/" + title):
            return note

    lowered = title.lower()
    for note in notes:
        basename = note.basename.lower()
        if lowered in basename or basename in lowered:
            return note
    return None


def replace_wiki_links(content: str, links: List[WikiLinkReference]) -> str:
    """Rewrite every resolved link as ``[display](url)``; unresolved ones stay."""
    for link in sorted(links, key=lambda l: l.position, reverse=True):
        if not link.remote_url:
            continue
        end = link.position + len(link.original_text)
        if content[link.position:end] != link.original_text:
            logger.warning("Wiki-link %r moved, skipping replacement", link.original_text)
            continue
        content = f"{content[:link.position]}[{link.display_text}]({link.remote_url}){content[end:]}"
    return content


class DoubleLinkResolver:
    """
    Uploads the notes a document links to and rewrites the links.

    Parameters
    ----------
    vault : Vault
        Where referenced notes are looked up and read.

    uploader : Uploader
        Uploads one note. The pipeline passes a function that runs the full
        upload, including this resolver, so references resolve recursively.
    """

    def __init__(self, vault: Vault, uploader: Uploader) -> None:
        self.vault = vault
        self.uploader = uploader
        self._uploaded: Dict[str, DocumentResult] = {}
        self._processing: Set[str] = set()
        self._notes: Optional[List[NoteFile]] = None

    @property
    def uploaded(self) -> Dict[str, DocumentResult]:
        """Every document uploaded through this resolver, keyed by title."""
        return dict(self._uploaded)

    def find_file(self, title: str) -> Optional[NoteFile]:
        if self._notes is None:
            self._notes = self.vault.list_markdown_files()
        return find_note_by_title(self._notes, title)

    async def upload_reference(self, link: WikiLinkReference) -> Optional[DocumentResult]:
        """
        Upload the note behind ``link``.

        Returns the cached result for a title already uploaded, and None for
        an unresolvable title, a title currently in flight, or a failed
        upload.
        """
        note = self.find_file(link.title)
        if note is None:
            logger.info("No note found for wiki-link %r", link.title)
            return None
        link.file_path = note.path

        cached = self._uploaded.get(link.title)
        if cached is not None:
            return cached
        if link.title in self._processing:
            logger.info("Skipping %r: already being processed", link.title)
            return None

        self._processing.add(link.title)
        try:
            content = self.vault.read_text(note.path)
            result = await self.uploader(note, link.title, content)
        except (SyncError, OSError) as exc:
            logger.error("Referenced note %r could not be uploaded: %s", link.title, exc)
            return None
        finally:
            self._processing.discard(link.title)

        self._uploaded[link.title] = result
        return result

    async def process(
        self,
        content: str,
        source_title: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Tuple[str, Dict[str, DocumentResult]]:
        """
        Resolve every wiki-link of ``content``.

        Parameters
        ----------
        content : str
            Markdown of the note being uploaded.

        source_title : Optional[str]
            Title of that note. It counts as in flight while its references
            are uploaded, so they never upload it again.

        Returns
        -------
        Tuple[str, Dict[str, DocumentResult]]
            Rewritten Markdown and the results for this note's references.
        """
        links = extract_wiki_links(content)
        if not links:
            return content, {}

        owns_source = bool(source_title) and source_title not in self._processing
        if owns_source:
            self._processing.add(str(source_title))

        results: Dict[str, DocumentResult] = {}
        try:
            for number, link in enumerate(links, start=1):
                if progress:
                    progress(f"Processing referenced document {number}/{len(links)}: {link.title}")
                result = await self.upload_reference(link)
                if result is None:
                    continue
                link.remote_url = result.url
                link.remote_token = result.token
                results[link.title] = result
        finally:
            if owns_source:
                self._processing.discard(str(source_title))

        return replace_wiki_links(content, links), results

    def clear_cache(self) -> None:
        self._uploaded.clear()
        self._processing.clear()
        self._notes = None
