"""Persistent store for AI suggestions (``suggestions.json``).

Suggestions are never physically deleted; dismissed and accepted records
stay as an audit trail. Status transitions are guarded by the suggestion
engine, this store only persists what it is given.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger(__name__)

STATUS_NEW = "new"
STATUS_ACCEPTED = "accepted"
STATUS_DISMISSED = "dismissed"
STATUSES = (STATUS_NEW, STATUS_ACCEPTED, STATUS_DISMISSED)


class SuggestionStore:
    def __init__(self, filepath: str | Path):
        self.filepath = Path(filepath).resolve()
        self._data: dict[str, dict] = {}
        self._lock = asyncio.Lock()
        self._load_sync()

    def _load_sync(self):
        """Synchronous load: called from __init__."""
        if self.filepath.exists():
            try:
                with open(self.filepath) as f:
                    data = json.load(f)
                self._data = data if isinstance(data, dict) else {}
            except (json.JSONDecodeError, OSError):
                logger.warning("Corrupt %s, starting fresh", self.filepath.name)
                self._data = {}

    def _save_sync(self, data: dict):
        """Synchronous save: must be called via asyncio.to_thread()."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.filepath.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def create(self, child_id: str, kind: str, payload: dict) -> dict:
        suggestion = {
            "id": uuid4().hex,
            "childId": child_id,
            "kind": kind,
            "payload": payload,
            "status": STATUS_NEW,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "acceptedAt": None,
        }
        async with self._lock:
            updated = {**self._data, suggestion["id"]: suggestion}
            await asyncio.to_thread(self._save_sync, updated)
            self._data = updated
        return dict(suggestion)

    async def get(self, suggestion_id: str) -> dict | None:
        async with self._lock:
            suggestion = self._data.get(suggestion_id)
            return dict(suggestion) if suggestion else None

    async def update(self, suggestion_id: str, **fields) -> dict | None:
        """Write ``fields`` onto a suggestion. Returns None if it does not exist.

        The in-memory copy only changes once the file write succeeded.
        """
        async with self._lock:
            current = self._data.get(suggestion_id)
            if current is None:
                return None
            suggestion = {**current, **fields}
            updated = {**self._data, suggestion_id: suggestion}
            await asyncio.to_thread(self._save_sync, updated)
            self._data = updated
        return dict(suggestion)

    async def list_by_child(
        self, child_id: str, status: str | None = None, kind: str | None = None,
    ) -> list[dict]:
        """Suggestions for a child, newest first, optionally filtered."""
        async with self._lock:
            matches = [
                dict(s) for s in self._data.values()
                if s.get("childId") == child_id
                and (status is None or s.get("status") == status)
                and (kind is None or s.get("kind") == kind)
            ]
        return sorted(matches, key=lambda s: s.get("createdAt", ""), reverse=True)
