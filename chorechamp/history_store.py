"""Chat history storage: append-only message log per Party.

One JSON file per Party in ``messages/{partyType}-{partyId}.json``, each
containing an array of message objects in the order they were written.
Follows the same atomic-write and path-validation patterns used by the other
JSON stores.

Read order differs from display order: ``recent()`` returns the newest
messages first (this is what the history endpoint serves), while
``conversation()`` returns the same window oldest-first for a chat window or
an agent prompt.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from .party import Party
from .ws_constants import MESSAGE_TYPE_GENERAL, ROLE_AGENT, ROLE_USER

logger = logging.getLogger(__name__)

_ROLES = (ROLE_USER, ROLE_AGENT)
MAX_HISTORY_LIMIT = 500


class HistoryStore:
    def __init__(self, messages_dir: str | Path = "messages"):
        self.messages_dir = Path(messages_dir).resolve()
        self.messages_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _filepath(self, party: Party) -> Path | None:
        fp = (self.messages_dir / f"{party.key}.json").resolve()
        if not fp.is_relative_to(self.messages_dir):
            return None
        return fp

    def _read_sync(self, filepath: Path) -> list[dict]:
        if not filepath.exists():
            return []
        try:
            with open(filepath) as f:
                data = json.load(f)
            return data if isinstance(data, list) else []
        except (json.JSONDecodeError, OSError):
            logger.warning("Corrupt history file: %s", filepath)
            return []

    def _write_sync(self, filepath: Path, messages: list[dict]) -> None:
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.messages_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(messages, f, indent=2)
            os.replace(tmp_path, filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def append(
        self,
        party: Party,
        role: str,
        content: str,
        *,
        message_type: str = MESSAGE_TYPE_GENERAL,
    ) -> dict:
        """Durably append a message. Returns the stored message."""
        if role not in _ROLES:
            raise ValueError(f"Invalid role: {role}")
        filepath = self._filepath(party)
        if filepath is None:
            raise ValueError(f"Unsafe history path for {party}")

        message = {
            "id": uuid4().hex,
            "partyType": party.type,
            "partyId": party.id,
            "role": role,
            "type": message_type,
            "content": content,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        async with self._lock:
            messages = await asyncio.to_thread(self._read_sync, filepath)
            messages.append(message)
            await asyncio.to_thread(self._write_sync, filepath, messages)
        return message

    async def recent(self, party: Party, limit: int = 50) -> list[dict]:
        """Return up to ``limit`` messages for ``party``, newest first."""
        filepath = self._filepath(party)
        if filepath is None or limit <= 0:
            return []
        limit = min(limit, MAX_HISTORY_LIMIT)
        async with self._lock:
            messages = await asyncio.to_thread(self._read_sync, filepath)
        return list(reversed(messages[-limit:]))

    async def conversation(self, party: Party, limit: int = 50) -> list[dict]:
        """Return the ``recent()`` window reordered oldest-first."""
        return list(reversed(await self.recent(party, limit)))

