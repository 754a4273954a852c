"""AI suggestion lifecycle: generate, list, accept, dismiss, assign.

A suggestion starts as ``new`` and moves exactly once to ``accepted`` or
``dismissed``. Each transition runs under a lock scoped to the suggestion id,
so the status check, the materialization and the status write form one unit:
two concurrent accepts of the same suggestion produce a single entity and one
``SuggestionAlreadyResolved``.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Protocol

from .family_store import ChildNotFound, FamilyStore
from .materializer import KINDS, Materializer, validate_payload
from .suggestion_store import (
    STATUS_ACCEPTED,
    STATUS_DISMISSED,
    STATUS_NEW,
    SuggestionStore,
)

logger = logging.getLogger(__name__)


class SuggestionNotFound(LookupError):
    """No suggestion with the given id."""


class SuggestionAlreadyResolved(Exception):
    """The suggestion is no longer ``new``."""

    def __init__(self, suggestion_id: str, status: str):
        super().__init__(f"Suggestion {suggestion_id} is already {status}")
        self.suggestion_id = suggestion_id
        self.status = status


class SuggestionGenerator(Protocol):
    async def generate_suggestions(self, kind: str, context: dict, params: dict) -> list: ...


class SuggestionEngine:
    def __init__(
        self,
        suggestion_store: SuggestionStore,
        family_store: FamilyStore,
        materializer: Materializer,
        generator: SuggestionGenerator,
    ):
        self.suggestion_store = suggestion_store
        self.family_store = family_store
        self.materializer = materializer
        self.generator = generator
        # suggestion id -> lock, dropped once no transition holds or awaits it
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, suggestion_id: str):
        lock = self._locks.setdefault(suggestion_id, asyncio.Lock())
        self._lock_users[suggestion_id] = self._lock_users.get(suggestion_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[suggestion_id] -= 1
            if not self._lock_users[suggestion_id]:
                del self._lock_users[suggestion_id]
                del self._locks[suggestion_id]

    async def _require_child(self, child_id: str) -> dict:
        child = await self.family_store.get_child(child_id)
        if child is None:
            raise ChildNotFound(child_id)
        return child

    # ------------------------------------------------------------------
    # Generation and listing
    # ------------------------------------------------------------------

    async def generate(
        self, child_id: str, kinds: list[str], params: dict | None = None,
    ) -> list[dict]:
        """Generate and persist new suggestions for a child.

        Candidates failing the kind's schema are skipped. A GeneratorFailure
        from any kind fails the whole call before anything is persisted.
        """
        unknown = [k for k in kinds if k not in KINDS]
        if unknown:
            raise ValueError(f"Unknown suggestion kind: {', '.join(unknown)}")
        child = await self._require_child(child_id)
        params = params or {}
        context = {"child": child}

        accepted: list[tuple[str, dict]] = []
        for kind in dict.fromkeys(kinds):
            candidates = await self.generator.generate_suggestions(kind, context, params)
            skipped = 0
            for candidate in candidates:
                if validate_payload(kind, candidate) is None:
                    skipped += 1
                    continue
                accepted.append((kind, candidate))
            if skipped:
                logger.warning(
                    "Skipped %d malformed %s candidates for child %s",
                    skipped, kind, child_id,
                )

        created = [
            await self.suggestion_store.create(child_id, kind, payload)
            for kind, payload in accepted
        ]
        logger.info("Generated %d suggestions for child %s", len(created), child_id)
        return created

    async def list_new(self, child_id: str, kind: str | None = None) -> list[dict]:
        return await self.suggestion_store.list_by_child(child_id, STATUS_NEW, kind)

    async def list_for_child(
        self, child_id: str, status: str | None = None, kind: str | None = None,
    ) -> list[dict]:
        return await self.suggestion_store.list_by_child(child_id, status, kind)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _load_new(self, suggestion_id: str) -> dict:
        suggestion = await self.suggestion_store.get(suggestion_id)
        if suggestion is None:
            raise SuggestionNotFound(suggestion_id)
        if suggestion["status"] != STATUS_NEW:
            raise SuggestionAlreadyResolved(suggestion_id, suggestion["status"])
        return suggestion

    async def _materialize_and_accept(
        self, suggestion: dict, assignee: dict | None = None,
    ) -> tuple[dict, dict]:
        child = await self._require_child(suggestion["childId"])
        result = await self.materializer.materialize(suggestion, child, assignee=assignee)
        fields = {
            "status": STATUS_ACCEPTED,
            "acceptedAt": datetime.now(timezone.utc).isoformat(),
            "materialized": {
                "entityType": result["entityType"],
                "entityId": result["entity"]["id"],
            },
        }
        if assignee is not None:
            fields["assignedChildId"] = assignee["id"]
        try:
            updated = await self.suggestion_store.update(suggestion["id"], **fields)
        except Exception:
            logger.exception("Failed to mark suggestion %s accepted", suggestion["id"])
            await self.materializer.rollback(result)
            raise
        return updated, result

    async def accept(self, suggestion_id: str) -> dict:
        """Accept a suggestion. Returns ``{"suggestion", "entity"}``."""
        async with self._locked(suggestion_id):
            suggestion = await self._load_new(suggestion_id)
            updated, result = await self._materialize_and_accept(suggestion)
        logger.info(
            "Accepted suggestion %s -> %s %s",
            suggestion_id, result["entityType"], result["entity"]["id"],
        )
        return {"suggestion": updated, "entity": result["entity"]}

    async def dismiss(self, suggestion_id: str) -> dict:
        async with self._locked(suggestion_id):
            await self._load_new(suggestion_id)
            updated = await self.suggestion_store.update(
                suggestion_id,
                status=STATUS_DISMISSED,
                dismissedAt=datetime.now(timezone.utc).isoformat(),
            )
        logger.info("Dismissed suggestion %s", suggestion_id)
        return {"suggestion": updated, "dismissed": True}

    async def assign(self, suggestion_id: str, child_id: str) -> dict:
        """Accept a suggestion and link the new entity to ``child_id``.

        Returns ``{"suggestion", "entity", "assignment"}``; ``assignment`` is
        None for learning goals, which are owned by the assignee directly.
        """
        async with self._locked(suggestion_id):
            suggestion = await self._load_new(suggestion_id)
            assignee = await self._require_child(child_id)
            updated, result = await self._materialize_and_accept(suggestion, assignee)
        logger.info(
            "Assigned suggestion %s to child %s -> %s %s",
            suggestion_id, child_id, result["entityType"], result["entity"]["id"],
        )
        return {
            "suggestion": updated,
            "entity": result["entity"],
            "assignment": result["assignment"],
        }
