"""
Upload History Store

JSON-file backed list of UploadRecord entries, newest first.

Design choices
--------------
- The whole history is one JSON array on disk, rewritten after each change.
- Thread-safe access using a re-entrant lock.
- Copy-on-read semantics (callers cannot mutate internal state).
- Records are never pruned automatically; only explicit deletion removes one.
- Global singleton `history_store` for typical application use, while still
  allowing custom instances (e.g. on a temp path) to be created for tests.
"""

from __future__ import annotations

import datetime
import json
import logging
from pathlib import Path
from threading import RLock
from typing import Callable, List, Optional, Union

from pydantic import TypeAdapter, ValidationError

from ..config import settings
from ..feishu.api_client import FeishuClient
from ..models.documents import PermissionSettings, UploadRecord

logger = logging.getLogger("sync.history")

TIME_FORMAT = "%Y-%m-%d %H:%M"

_RECORDS = TypeAdapter(List[UploadRecord])


def format_upload_time(moment: Optional[datetime.datetime] = None) -> str:
    """Render a timestamp the way history records store it."""
    return (moment or datetime.datetime.now()).strftime(TIME_FORMAT)


class UploadHistoryStore:
    """
    Persistent upload history.

    Parameters
    ----------
    path : Optional[Union[str, Path]]
        JSON file. Defaults to ``settings.history_path``; created on first
        write.

    now : Optional[Callable[[], datetime.datetime]]
        Time source for new and touched records.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        now: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self.path = Path(path if path is not None else settings.history_path)
        self._now = now or datetime.datetime.now
        self._lock = RLock()
        self._records: List[UploadRecord] = self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> List[UploadRecord]:
        if not self.path.exists():
            return []
        try:
            return _RECORDS.validate_json(self.path.read_bytes())
        except ValidationError as exc:
            logger.error("Upload history at %s is invalid, starting empty: %s", self.path, exc)
            return []

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(exclude_none=True) for r in self._records]
        self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_records(self) -> List[UploadRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records]

    def find_by_title(self, title: str, include_referenced: bool = False) -> Optional[UploadRecord]:
        """
        Return the newest record with ``title``.

        Records created for referenced documents are skipped unless
        ``include_referenced`` is set.
        """
        with self._lock:
            for record in self._records:
                if record.title != title:
                    continue
                if record.is_referenced_document and not include_referenced:
                    continue
                return record.model_copy(deep=True)
        return None

    def get(self, doc_token: str) -> Optional[UploadRecord]:
        with self._lock:
            for record in self._records:
                if record.doc_token == doc_token:
                    return record.model_copy(deep=True)
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, record: UploadRecord) -> UploadRecord:
        """Insert ``record`` at the front. Existing records are kept."""
        with self._lock:
            stored = record.model_copy(deep=True)
            if not stored.upload_time:
                stored.upload_time = format_upload_time(self._now())
            self._records.insert(0, stored)
            self._save()
            return stored.model_copy(deep=True)

    def update_permissions(self, doc_token: str, permissions: PermissionSettings) -> bool:
        """Replace a record's permissions; False if the token is unknown."""
        with self._lock:
            for record in self._records:
                if record.doc_token == doc_token:
                    record.permissions = permissions.model_copy()
                    self._save()
                    return True
        return False

    def touch(self, doc_token: str) -> bool:
        """Refresh a record's timestamp and move it to the front."""
        with self._lock:
            for position, record in enumerate(self._records):
                if record.doc_token != doc_token:
                    continue
                record.upload_time = format_upload_time(self._now())
                if position > 0:
                    self._records.insert(0, self._records.pop(position))
                self._save()
                return True
        return False

    def delete(self, doc_token: str) -> bool:
        with self._lock:
            for position, record in enumerate(self._records):
                if record.doc_token == doc_token:
                    del self._records[position]
                    self._save()
                    return True
        return False

    async def delete_with_remote(self, doc_token: str, client: FeishuClient) -> bool:
        """
        Delete the remote document, then its history record.

        A failed remote delete propagates and leaves the record in place.
        """
        await client.delete_file(doc_token)
        deleted = self.delete(doc_token)
        logger.info("Deleted remote document %s (record removed=%s)", doc_token, deleted)
        return deleted

    def clear_all(self) -> None:
        with self._lock:
            self._records.clear()
            self._save()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# Global singleton used by the application.
history_store = UploadHistoryStore()
