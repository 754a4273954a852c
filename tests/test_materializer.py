"""Tests for chorechamp.materializer -- field normalization and entity creation."""

from unittest.mock import AsyncMock, patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from chorechamp.materializer import (
    ENTITY_CHORE_TEMPLATE,
    ENTITY_LEARNING_GOAL,
    Materializer,
    normalize_payload,
    validate_payload,
)


def make_suggestion(kind, payload, suggestion_id="s1", child_id="c1"):
    return {"id": suggestion_id, "childId": child_id, "kind": kind, "payload": payload}


# ===================================================================
# Normalization table
# ===================================================================

class TestNormalizePayload:

    def test_subject_and_points_reward_map_to_chore_fields(self):
        fields = normalize_payload("task", {"subject": "Sweep porch", "pointsReward": 20})
        assert fields == {"name": "Sweep porch", "pointValue": 20}

    def test_title_preferred_over_name(self):
        fields = normalize_payload("exercise", {"title": "Jumping jacks", "name": "x", "pointValue": 10})
        assert fields["name"] == "Jumping jacks"

    def test_learning_goal_aliases(self):
        fields = normalize_payload(
            "learning_goal",
            {"title": "Fractions", "suggestedTargetUnits": "5", "pointValue": 12.0},
        )
        assert fields["subject"] == "Fractions"
        assert fields["targetUnits"] == 5
        assert fields["pointsPerUnit"] == 12

    def test_rationale_falls_back_to_description(self):
        fields = normalize_payload("task", {"title": "Read", "pointValue": 5, "rationale": "Builds focus"})
        assert fields["description"] == "Builds focus"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            normalize_payload("reward", {})


class TestValidatePayload:

    def test_valid_exercise(self):
        assert validate_payload("exercise", {"title": "Plank", "pointValue": 15}) is not None

    @pytest.mark.parametrize("payload", [
        {"title": "Plank"},
        {"pointValue": 15},
        {"title": "", "pointValue": 15},
        {"title": "Plank", "pointValue": 0},
        {"title": "Plank", "pointValue": "lots"},
        {"title": "Plank", "pointValue": True},
        "not a dict",
        None,
    ])
    def test_malformed_exercise(self, payload):
        assert validate_payload("exercise", payload) is None

    def test_learning_goal_requires_target_units(self):
        assert validate_payload("learning_goal", {"subject": "Spanish", "pointsPerUnit": 10}) is None

    @given(points=st.integers(min_value=1, max_value=10_000), name=st.text(min_size=1).filter(str.strip))
    @settings(max_examples=100)
    def test_positive_points_with_name_always_valid(self, points, name):
        fields = validate_payload("task", {"title": name, "pointsReward": points})
        assert fields["pointValue"] == points
        assert fields["name"] == name.strip()

    @given(points=st.integers(max_value=0))
    @settings(max_examples=50)
    def test_non_positive_points_never_valid(self, points):
        assert validate_payload("task", {"title": "Dishes", "pointValue": points}) is None


# ===================================================================
# Materialization
# ===================================================================

class TestMaterialize:

    async def test_task_becomes_parent_chore_template(self, family_store, child):
        materializer = Materializer(family_store)
        result = await materializer.materialize(
            make_suggestion("task", {"subject": "Sweep porch", "pointsReward": 20}, child_id=child["id"]),
            child,
        )
        template = result["entity"]
        assert result["entityType"] == ENTITY_CHORE_TEMPLATE
        assert template["name"] == "Sweep porch"
        assert template["pointValue"] == 20
        assert template["parentId"] == "parent-1"
        assert template["category"] == "educational"
        assert template["icon"] == "🧹"
        assert template["frequency"] == "custom"
        assert template["sourceSuggestionId"] == "s1"
        assert result["assignment"] is None

    async def test_exercise_category_forced(self, family_store, child):
        result = await Materializer(family_store).materialize(
            make_suggestion("exercise", {"title": "Plank", "pointValue": 15, "category": "fun"}),
            child,
        )
        assert result["entity"]["category"] == "exercise"
        assert result["entity"]["icon"] == "🏃"

    async def test_learning_goal_owned_by_child(self, family_store, child):
        result = await Materializer(family_store).materialize(
            make_suggestion("learning_goal", {
                "subject": "Fractions", "suggestedTargetUnits": 5, "pointsPerUnit": 10,
            }),
            child,
        )
        goal = result["entity"]
        assert result["entityType"] == ENTITY_LEARNING_GOAL
        assert goal["childId"] == child["id"]
        assert goal["difficulty"] == "medium"
        assert goal["isActive"] is True

    async def test_assignee_gets_assigned_chore(self, family_store, child):
        sibling = await family_store.create_child("parent-1", "Theo", 7)
        result = await Materializer(family_store).materialize(
            make_suggestion("task", {"title": "Water plants", "pointValue": 10}),
            child,
            assignee=sibling,
        )
        assert result["assignment"]["childId"] == sibling["id"]
        assert result["assignment"]["choreTemplateId"] == result["entity"]["id"]
        chores = await family_store.list_assigned_chores(sibling["id"])
        assert [c["choreTemplate"]["name"] for c in chores] == ["Water plants"]

    async def test_failed_assignment_removes_template(self, family_store, child):
        with patch.object(family_store, "assign_chore", AsyncMock(side_effect=OSError("disk"))):
            with pytest.raises(OSError):
                await Materializer(family_store).materialize(
                    make_suggestion("task", {"title": "Water plants", "pointValue": 10}),
                    child,
                    assignee=child,
                )
        assert await family_store.list_chore_templates("parent-1") == []

    async def test_invalid_payload_creates_nothing(self, family_store, child):
        with pytest.raises(ValueError):
            await Materializer(family_store).materialize(
                make_suggestion("task", {"title": "No points"}), child,
            )
        assert await family_store.list_chore_templates("parent-1") == []

    async def test_rollback_removes_entity_and_assignment(self, family_store, child):
        materializer = Materializer(family_store)
        result = await materializer.materialize(
            make_suggestion("task", {"title": "Dishes", "pointValue": 5}), child, assignee=child,
        )
        await materializer.rollback(result)
        assert await family_store.list_chore_templates("parent-1") == []
        assert await family_store.list_assigned_chores(child["id"]) == []
