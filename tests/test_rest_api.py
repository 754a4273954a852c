"""Tests for chorechamp.server -- REST API endpoints.

These tests use httpx.AsyncClient with ASGITransport to call the FastAPI app
directly (no real server needed). Stores live in tmp_path and the Claude
query is replaced by ``fake_query`` via the `app` fixture in conftest.
"""

import json
from unittest.mock import patch

import pytest

from chorechamp.agent import GeneratorFailure
from chorechamp.auth import tokens
from chorechamp.party import Party


async def create_child(client, parent_id="parent-1", name="Maya", age=10):
    resp = await client.post("/api/children", json={"parentId": parent_id, "name": name, "age": age})
    assert resp.status_code == 200
    return resp.json()


async def generate(client, fake_query, child_id, kind, candidates):
    fake_query.return_value = json.dumps(candidates)
    resp = await client.post("/api/ai/suggestions", json={"childId": child_id, "kinds": [kind]})
    assert resp.status_code == 200
    return resp.json()


# ---------------------------------------------------------------------------
# Health / auth
# ---------------------------------------------------------------------------

class TestHealthCheckEndpoint:

    async def test_health_check_returns_ok(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "connectedParties": 0}


@pytest.fixture
def password_auth():
    """Turn on password auth with a clean token book."""
    with patch.object(tokens, "password", "s3cret"), \
         patch.object(tokens, "_expiry", {}), \
         patch.object(tokens, "_attempts", {}):
        yield


class TestAuthEndpoints:

    async def test_auth_status_returns_flag(self, client):
        resp = await client.get("/api/auth/status")
        assert resp.status_code == 200
        assert isinstance(resp.json()["auth_required"], bool)

    async def test_login_when_auth_disabled(self, client):
        resp = await client.post("/api/login", json={"password": "anything"})
        assert resp.status_code == 200
        assert resp.json()["token"] == "no-auth"

    async def test_login_missing_password(self, client):
        resp = await client.post("/api/login", json={})
        assert resp.status_code == 422

    async def test_login_issues_usable_token(self, client, password_auth):
        bad = await client.post("/api/login", json={"password": "nope"})
        assert bad.status_code == 401
        good = await client.post("/api/login", json={"password": "s3cret"})
        token = good.json()["token"]
        resp = await client.get("/api/children", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200

    async def test_logout_revokes_token(self, client, password_auth):
        token = (await client.post("/api/login", json={"password": "s3cret"})).json()["token"]
        headers = {"Authorization": f"Bearer {token}"}
        resp = await client.post("/api/logout", headers=headers)
        assert resp.json() == {"revoked": True}
        resp = await client.get("/api/children", headers=headers)
        assert resp.status_code == 401

    async def test_protected_endpoint_requires_token(self, client, password_auth):
        resp = await client.get("/api/ai/suggestions", params={"childId": "c1"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Chat history
# ---------------------------------------------------------------------------

class TestChatHistory:

    async def test_newest_first_and_limited(self, client, app):
        from chorechamp import server

        party = Party("child", "c1")
        for text in ("one", "two", "three"):
            await server._history_store.append(party, "user", text)

        resp = await client.get(
            "/api/app-chat/history", params={"partyType": "child", "partyId": "c1", "limit": 2},
        )
        assert resp.status_code == 200
        assert [m["content"] for m in resp.json()] == ["three", "two"]

    async def test_legacy_child_history(self, client, app):
        from chorechamp import server

        await server._history_store.append(Party("child", "c1"), "agent", "hello")
        resp = await client.get("/api/chat/history", params={"childId": "c1"})
        assert [m["content"] for m in resp.json()] == ["hello"]

    async def test_invalid_party_type_is_400(self, client):
        resp = await client.get("/api/app-chat/history", params={"partyType": "admin", "partyId": "x"})
        assert resp.status_code == 400

    async def test_unsafe_party_id_is_400(self, client):
        resp = await client.get("/api/app-chat/history", params={"partyType": "parent", "partyId": "user.42"})
        assert resp.status_code == 400

    async def test_missing_params_is_422(self, client):
        resp = await client.get("/api/app-chat/history")
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

class TestSuggestionGeneration:

    async def test_generate_persists_valid_candidates(self, client, fake_query):
        child = await create_child(client)
        created = await generate(client, fake_query, child["id"], "exercise", [
            {"title": "Jumping jacks", "pointValue": 10},
            {"title": "Plank", "pointValue": 15},
            {"title": "Broken"},
        ])
        assert len(created) == 2
        resp = await client.get("/api/ai/suggestions", params={"childId": child["id"], "status": "new"})
        assert len(resp.json()) == 2

    async def test_unknown_kind_is_400(self, client):
        child = await create_child(client)
        resp = await client.post("/api/ai/suggestions", json={"childId": child["id"], "kinds": ["reward"]})
        assert resp.status_code == 400

    async def test_unknown_child_is_404(self, client):
        resp = await client.post("/api/ai/suggestions", json={"childId": "ghost", "kinds": ["task"]})
        assert resp.status_code == 404

    async def test_generator_failure_is_502(self, client, fake_query):
        child = await create_child(client)
        fake_query.side_effect = GeneratorFailure("down")
        resp = await client.post("/api/ai/suggestions", json={"childId": child["id"], "kinds": ["task"]})
        assert resp.status_code == 502

    async def test_unparseable_output_is_502(self, client, fake_query):
        child = await create_child(client)
        fake_query.return_value = "no json here"
        resp = await client.post("/api/ai/suggestions", json={"childId": child["id"], "kinds": ["task"]})
        assert resp.status_code == 502

    async def test_invalid_status_filter_is_400(self, client):
        resp = await client.get("/api/ai/suggestions", params={"childId": "c1", "status": "maybe"})
        assert resp.status_code == 400


class TestSuggestionTransitions:

    async def test_accept_returns_entity(self, client, fake_query):
        child = await create_child(client)
        [suggestion] = await generate(client, fake_query, child["id"], "task", [
            {"subject": "Sweep porch", "pointsReward": 20},
        ])
        resp = await client.post(f"/api/ai/suggestions/{suggestion['id']}/accept")
        assert resp.status_code == 200
        body = resp.json()
        assert body["suggestion"]["status"] == "accepted"
        assert body["entity"]["name"] == "Sweep porch"
        assert body["entity"]["pointValue"] == 20

        templates = await client.get("/api/chore-templates", params={"parentId": "parent-1"})
        assert [t["name"] for t in templates.json()] == ["Sweep porch"]

    async def test_second_accept_is_409(self, client, fake_query):
        child = await create_child(client)
        [suggestion] = await generate(client, fake_query, child["id"], "task", [
            {"title": "Dishes", "pointValue": 5},
        ])
        await client.post(f"/api/ai/suggestions/{suggestion['id']}/accept")
        resp = await client.post(f"/api/ai/suggestions/{suggestion['id']}/accept")
        assert resp.status_code == 409

    async def test_accept_unknown_is_404(self, client):
        resp = await client.post("/api/ai/suggestions/nope/accept")
        assert resp.status_code == 404

    async def test_dismiss(self, client, fake_query):
        child = await create_child(client)
        [suggestion] = await generate(client, fake_query, child["id"], "task", [
            {"title": "Dishes", "pointValue": 5},
        ])
        resp = await client.post(f"/api/ai/suggestions/{suggestion['id']}/dismiss")
        assert resp.status_code == 200
        assert resp.json()["dismissed"] is True
        templates = await client.get("/api/chore-templates", params={"parentId": "parent-1"})
        assert templates.json() == []
        again = await client.post(f"/api/ai/suggestions/{suggestion['id']}/dismiss")
        assert again.status_code == 409

    async def test_assign_to_sibling(self, client, fake_query):
        child = await create_child(client)
        sibling = await create_child(client, name="Theo", age=7)
        [suggestion] = await generate(client, fake_query, child["id"], "exercise", [
            {"title": "Plank", "pointValue": 15},
        ])
        resp = await client.post(
            f"/api/ai/suggestions/{suggestion['id']}/assign", json={"childId": sibling["id"]},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["assignment"]["childId"] == sibling["id"]
        chores = await client.get("/api/assigned-chores", params={"childId": sibling["id"]})
        assert [c["choreTemplate"]["name"] for c in chores.json()] == ["Plank"]

    async def test_assign_across_families_is_403(self, client, fake_query):
        child = await create_child(client)
        stranger = await create_child(client, parent_id="parent-2", name="Zed", age=9)
        [suggestion] = await generate(client, fake_query, child["id"], "task", [
            {"title": "Dishes", "pointValue": 5},
        ])
        resp = await client.post(
            f"/api/ai/suggestions/{suggestion['id']}/assign", json={"childId": stranger["id"]},
        )
        assert resp.status_code == 403

    async def test_assign_learning_goal(self, client, fake_query):
        child = await create_child(client)
        [suggestion] = await generate(client, fake_query, child["id"], "learning_goal", [
            {"subject": "Fractions", "suggestedTargetUnits": 5, "pointsPerUnit": 10},
        ])
        resp = await client.post(
            f"/api/ai/suggestions/{suggestion['id']}/assign", json={"childId": child["id"]},
        )
        assert resp.status_code == 200
        goals = await client.get("/api/learning-goals", params={"childId": child["id"]})
        assert [g["subject"] for g in goals.json()] == ["Fractions"]


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

class TestSendReminders:

    async def test_no_online_children_sends_nothing(self, client):
        resp = await client.post("/api/send-reminders")
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "sent": 0}


# ---------------------------------------------------------------------------
# Family scaffolding
# ---------------------------------------------------------------------------

class TestAssignedChores:

    async def test_complete_assigned_chore(self, client, fake_query):
        child = await create_child(client)
        [suggestion] = await generate(client, fake_query, child["id"], "task", [
            {"title": "Dishes", "pointValue": 5},
        ])
        body = (await client.post(
            f"/api/ai/suggestions/{suggestion['id']}/assign", json={"childId": child["id"]},
        )).json()
        resp = await client.post(f"/api/assigned-chores/{body['assignment']['id']}/complete")
        assert resp.status_code == 200
        assert resp.json()["completedAt"]
        chores = (await client.get("/api/assigned-chores", params={"childId": child["id"]})).json()
        assert chores[0]["completedAt"] == resp.json()["completedAt"]

    async def test_complete_unknown_chore_is_404(self, client):
        resp = await client.post("/api/assigned-chores/nope/complete")
        assert resp.status_code == 404
