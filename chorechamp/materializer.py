"""Turns an accepted suggestion into a durable family entity.

Generator output uses different field names depending on the kind and on the
generator version (``title`` vs ``subject``, ``pointValue`` vs
``pointsReward``...). ``FIELD_ALIASES`` is the single place that maps those
names onto the canonical fields; ``REQUIRED_FIELDS`` says which canonical
fields a candidate must carry to be accepted at all.

The materializer does no duplicate detection. The suggestion engine
guarantees each suggestion is materialized at most once.
"""

import logging

from .family_store import (
    ASSIGNED_CHORES,
    CHORE_TEMPLATES,
    DEFAULT_CHORE_ICON,
    LEARNING_GOALS,
    FamilyStore,
)

logger = logging.getLogger(__name__)

KIND_TASK = "task"
KIND_EXERCISE = "exercise"
KIND_LEARNING_GOAL = "learning_goal"
KINDS = (KIND_TASK, KIND_EXERCISE, KIND_LEARNING_GOAL)

ENTITY_CHORE_TEMPLATE = "chore_template"
ENTITY_LEARNING_GOAL = "learning_goal"

_CHORE_ALIASES = {
    "name": ("title", "subject", "name"),
    "pointValue": ("pointValue", "pointsReward", "points"),
    "description": ("description", "rationale"),
    "icon": ("icon",),
    "category": ("category",),
    "frequency": ("frequency",),
}

# canonical field -> source field names, first non-empty match wins
FIELD_ALIASES: dict[str, dict[str, tuple[str, ...]]] = {
    KIND_TASK: _CHORE_ALIASES,
    KIND_EXERCISE: _CHORE_ALIASES,
    KIND_LEARNING_GOAL: {
        "subject": ("subject", "title", "name"),
        "targetUnits": ("suggestedTargetUnits", "targetUnits"),
        "pointsPerUnit": ("pointsPerUnit", "pointValue", "pointsReward"),
        "difficulty": ("difficulty",),
        "rationale": ("rationale", "description"),
    },
}

REQUIRED_FIELDS: dict[str, dict[str, type]] = {
    KIND_TASK: {"name": str, "pointValue": int},
    KIND_EXERCISE: {"name": str, "pointValue": int},
    KIND_LEARNING_GOAL: {"subject": str, "targetUnits": int, "pointsPerUnit": int},
}

_INT_FIELDS = {"pointValue", "targetUnits", "pointsPerUnit"}


def _coerce_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def normalize_payload(kind: str, payload: dict) -> dict:
    """Map a raw generator payload onto the canonical fields for ``kind``."""
    aliases = FIELD_ALIASES.get(kind)
    if aliases is None:
        raise ValueError(f"Unknown suggestion kind: {kind}")
    normalized = {}
    for field, sources in aliases.items():
        for source in sources:
            value = payload.get(source)
            if value is None or value == "":
                continue
            if field in _INT_FIELDS:
                value = _coerce_int(value)
                if value is None:
                    continue
            elif isinstance(value, str):
                value = value.strip()
            normalized[field] = value
            break
    return normalized


def validate_payload(kind: str, payload) -> dict | None:
    """Return the normalized payload, or None if the candidate is malformed."""
    if not isinstance(payload, dict):
        return None
    normalized = normalize_payload(kind, payload)
    for field, expected in REQUIRED_FIELDS[kind].items():
        value = normalized.get(field)
        if not isinstance(value, expected):
            return None
        if expected is str and not value:
            return None
        if expected is int and value <= 0:
            return None
    return normalized


class Materializer:
    """Kind-specific creation of chore templates and learning goals."""

    def __init__(self, family_store: FamilyStore):
        self.family_store = family_store

    # Dispatch table: suggestion kind -> handler method name
    _HANDLERS = {
        KIND_TASK: "_materialize_task",
        KIND_EXERCISE: "_materialize_exercise",
        KIND_LEARNING_GOAL: "_materialize_learning_goal",
    }

    async def materialize(
        self, suggestion: dict, child: dict, *, assignee: dict | None = None,
    ) -> dict:
        """Create the entity for ``suggestion``.

        ``child`` is the child the suggestion was generated for. When
        ``assignee`` is given, the new entity is also linked to that child.
        Returns ``{"entityType", "entity", "assignment"}``.
        """
        handler_name = self._HANDLERS.get(suggestion.get("kind"))
        if handler_name is None:
            raise ValueError(f"Unknown suggestion kind: {suggestion.get('kind')}")
        fields = validate_payload(suggestion["kind"], suggestion.get("payload"))
        if fields is None:
            raise ValueError(f"Suggestion {suggestion['id']} has an invalid payload")
        return await getattr(self, handler_name)(suggestion, fields, child, assignee)

    async def _create_chore(
        self, suggestion: dict, fields: dict, child: dict, assignee: dict | None,
        *, category: str, icon: str,
    ) -> dict:
        template = await self.family_store.create_chore_template(
            parent_id=child["parentId"],
            name=fields["name"],
            point_value=fields["pointValue"],
            description=fields.get("description"),
            icon=fields.get("icon") or icon,
            category=category,
            frequency=fields.get("frequency") or "custom",
            source_suggestion_id=suggestion["id"],
        )
        assignment = None
        if assignee is not None:
            try:
                assignment = await self.family_store.assign_chore(
                    assignee["id"], template["id"]
                )
            except Exception:
                await self.family_store.delete(CHORE_TEMPLATES, template["id"])
                raise
        return {
            "entityType": ENTITY_CHORE_TEMPLATE,
            "entity": template,
            "assignment": assignment,
        }

    async def _materialize_task(self, suggestion, fields, child, assignee):
        return await self._create_chore(
            suggestion, fields, child, assignee,
            category=fields.get("category") or "educational",
            icon=DEFAULT_CHORE_ICON,
        )

    async def _materialize_exercise(self, suggestion, fields, child, assignee):
        return await self._create_chore(
            suggestion, fields, child, assignee,
            category="exercise",
            icon="🏃",
        )

    async def _materialize_learning_goal(self, suggestion, fields, child, assignee):
        owner = assignee or child
        goal = await self.family_store.create_learning_goal(
            child_id=owner["id"],
            parent_id=owner["parentId"],
            subject=fields["subject"],
            target_units=fields["targetUnits"],
            points_per_unit=fields["pointsPerUnit"],
            difficulty=fields.get("difficulty") or "medium",
            source_suggestion_id=suggestion["id"],
        )
        return {"entityType": ENTITY_LEARNING_GOAL, "entity": goal, "assignment": None}

    async def rollback(self, result: dict) -> None:
        """Undo a materialization whose suggestion could not be marked accepted."""
        if result.get("assignment"):
            await self.family_store.delete(ASSIGNED_CHORES, result["assignment"]["id"])
        collection = (
            LEARNING_GOALS if result["entityType"] == ENTITY_LEARNING_GOAL
            else CHORE_TEMPLATES
        )
        await self.family_store.delete(collection, result["entity"]["id"])
        logger.info("Rolled back %s %s", result["entityType"], result["entity"]["id"])
