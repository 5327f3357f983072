"""
Vault Access

Read-only view of the local note vault: text and binary reads by
vault-relative path, a listing of every Markdown note, and the basename
lookup used when an image link does not resolve relative to its note.

Paths are always vault-relative POSIX strings; reads that would leave the
vault root are refused.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import List, NamedTuple, Optional, Union

from .config import settings

logger = logging.getLogger("sync.vault")


class NoteFile(NamedTuple):
    """One Markdown note of the vault."""
    path: str
    basename: str


class Vault:
    """
    File access rooted at one directory.

    Parameters
    ----------
    root : Optional[Union[str, Path]]
        Vault directory. Defaults to ``settings.vault_root``.
    """

    def __init__(self, root: Optional[Union[str, Path]] = None) -> None:
        self.root = Path(root if root is not None else settings.vault_root).resolve()

    def resolve(self, path: str) -> Path:
        """
        Map a vault-relative path to an absolute one.

        Raises
        ------
        ValueError
            If the path escapes the vault root.
        """
        candidate = (self.root / path.lstrip("/")).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ValueError(f"Path outside vault: {path}")
        return candidate

    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).is_file()
        except ValueError:
            return False

    def read_text(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8")

    def read_bytes(self, path: str) -> bytes:
        return self.resolve(path).read_bytes()

    def list_markdown_files(self) -> List[NoteFile]:
        """Every ``.md`` file under the root, sorted by path."""
        notes = []
        for file in sorted(self.root.rglob("*.md")):
            if not file.is_file():
                continue
            relative = file.relative_to(self.root).as_posix()
            notes.append(NoteFile(relative, file.stem))
        return notes

    def locate(self, path: str) -> Optional[str]:
        """
        Find a file referenced from a note.

        Tries the path as given (minus a leading ``./``), then falls back to
        the first file anywhere in the vault with the same file name.
        """
        cleaned = path[2:] if path.startswith("./") else path
        if self.exists(cleaned):
            return cleaned

        name = PurePosixPath(cleaned.replace("\\", "/")).name
        if not name:
            return None
        for file in sorted(self.root.rglob("*")):
            if file.name == name and file.is_file():
                found = file.relative_to(self.root).as_posix()
                logger.debug("Resolved %s to %s by file name", path, found)
                return found
        return None
