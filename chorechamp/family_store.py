"""Family data store: children, chore templates, assigned chores, learning goals.

Repository-style CRUD over a single ``family.json`` file. Only the operations
the chat and suggestion workflows need are provided; everything else about
the family model (points arithmetic, rewards, badges) lives elsewhere.
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

CHILDREN = "children"
CHORE_TEMPLATES = "choreTemplates"
ASSIGNED_CHORES = "assignedChores"
LEARNING_GOALS = "learningGoals"
_COLLECTIONS = (CHILDREN, CHORE_TEMPLATES, ASSIGNED_CHORES, LEARNING_GOALS)

DEFAULT_CHORE_ICON = "🧹"


class ChildNotFound(LookupError):
    """The referenced child profile does not exist."""


class FamilyStore:
    def __init__(self, filepath: str | Path):
        self.filepath = Path(filepath).resolve()
        self._data: dict[str, dict[str, dict]] = {c: {} for c in _COLLECTIONS}
        self._lock = asyncio.Lock()
        self._load_sync()

    def _load_sync(self):
        """Synchronous load: called from __init__."""
        if not self.filepath.exists():
            return
        try:
            with open(self.filepath) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            logger.warning("Corrupt %s, starting fresh", self.filepath.name)
            return
        for collection in _COLLECTIONS:
            records = data.get(collection)
            if isinstance(records, dict):
                self._data[collection] = records

    def _save_sync(self):
        """Synchronous save: must be called via asyncio.to_thread()."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.filepath.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(self._data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def _save(self):
        await asyncio.to_thread(self._save_sync)

    async def _insert(self, collection: str, record: dict) -> dict:
        async with self._lock:
            self._data[collection][record["id"]] = record
            try:
                await self._save()
            except BaseException:
                self._data[collection].pop(record["id"], None)
                raise
        return dict(record)

    async def _get(self, collection: str, record_id: str) -> dict | None:
        async with self._lock:
            record = self._data[collection].get(record_id)
            return dict(record) if record else None

    async def _list(self, collection: str, **filters) -> list[dict]:
        async with self._lock:
            records = [
                dict(r) for r in self._data[collection].values()
                if all(r.get(k) == v for k, v in filters.items())
            ]
        return sorted(records, key=lambda r: r.get("createdAt", ""))

    async def delete(self, collection: str, record_id: str) -> bool:
        """Remove a record. Returns False if it did not exist."""
        async with self._lock:
            record = self._data[collection].pop(record_id, None)
            if record is None:
                return False
            try:
                await self._save()
            except BaseException:
                self._data[collection][record_id] = record
                raise
        return True

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    async def create_child(
        self, parent_id: str, name: str, age: int,
        *, total_points: int = 0, level: int = 1,
    ) -> dict:
        return await self._insert(CHILDREN, {
            "id": uuid4().hex,
            "parentId": parent_id,
            "name": name,
            "age": age,
            "totalPoints": total_points,
            "level": level,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        })

    async def get_child(self, child_id: str) -> dict | None:
        return await self._get(CHILDREN, child_id)

    async def list_children(self, parent_id: str | None = None) -> list[dict]:
        if parent_id is None:
            return await self._list(CHILDREN)
        return await self._list(CHILDREN, parentId=parent_id)

    # ------------------------------------------------------------------
    # Chore templates and assignments
    # ------------------------------------------------------------------

    async def create_chore_template(
        self,
        parent_id: str,
        name: str,
        point_value: int,
        *,
        description: str | None = None,
        icon: str = DEFAULT_CHORE_ICON,
        category: str | None = None,
        frequency: str = "custom",
        source_suggestion_id: str | None = None,
    ) -> dict:
        return await self._insert(CHORE_TEMPLATES, {
            "id": uuid4().hex,
            "parentId": parent_id,
            "name": name,
            "description": description,
            "pointValue": point_value,
            "icon": icon,
            "category": category,
            "frequency": frequency,
            "sourceSuggestionId": source_suggestion_id,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        })

    async def list_chore_templates(self, parent_id: str) -> list[dict]:
        return await self._list(CHORE_TEMPLATES, parentId=parent_id)

    async def assign_chore(
        self, child_id: str, chore_template_id: str, assigned_date: str | None = None,
    ) -> dict:
        return await self._insert(ASSIGNED_CHORES, {
            "id": uuid4().hex,
            "childId": child_id,
            "choreTemplateId": chore_template_id,
            "assignedDate": assigned_date or datetime.now(timezone.utc).date().isoformat(),
            "completedAt": None,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        })

    async def complete_chore(self, assigned_chore_id: str) -> dict | None:
        async with self._lock:
            record = self._data[ASSIGNED_CHORES].get(assigned_chore_id)
            if record is None:
                return None
            previous = record.get("completedAt")
            record["completedAt"] = datetime.now(timezone.utc).isoformat()
            try:
                await self._save()
            except BaseException:
                record["completedAt"] = previous
                raise
            return dict(record)

    async def list_assigned_chores(self, child_id: str) -> list[dict]:
        """Assigned chores for a child, each with its template embedded."""
        async with self._lock:
            templates = self._data[CHORE_TEMPLATES]
            chores = [
                {**r, "choreTemplate": dict(templates.get(r["choreTemplateId"]) or {})}
                for r in self._data[ASSIGNED_CHORES].values()
                if r.get("childId") == child_id
            ]
        return sorted(chores, key=lambda r: r.get("createdAt", ""))

    # ------------------------------------------------------------------
    # Learning goals
    # ------------------------------------------------------------------

    async def create_learning_goal(
        self,
        child_id: str,
        parent_id: str,
        subject: str,
        target_units: int,
        points_per_unit: int,
        *,
        difficulty: str = "medium",
        is_active: bool = True,
        source_suggestion_id: str | None = None,
    ) -> dict:
        return await self._insert(LEARNING_GOALS, {
            "id": uuid4().hex,
            "childId": child_id,
            "parentId": parent_id,
            "subject": subject,
            "difficulty": difficulty,
            "targetUnits": target_units,
            "pointsPerUnit": points_per_unit,
            "isActive": is_active,
            "sourceSuggestionId": source_suggestion_id,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        })

    async def list_learning_goals(self, child_id: str) -> list[dict]:
        return await self._list(LEARNING_GOALS, childId=child_id)
