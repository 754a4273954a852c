"""Shared fixtures for the ChoreChamp test suite."""

import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure the project root is on sys.path so the 'chorechamp' package resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# chorechamp.server builds its stores at import time; keep them out of the repo
os.environ.setdefault("CHORECHAMP_DATA_DIR", tempfile.mkdtemp(prefix="chorechamp-test-"))

from chorechamp.agent import ChoreAgent  # noqa: E402
from chorechamp.connection_registry import ConnectionRegistry  # noqa: E402
from chorechamp.family_store import FamilyStore  # noqa: E402
from chorechamp.history_store import HistoryStore  # noqa: E402
from chorechamp.materializer import Materializer  # noqa: E402
from chorechamp.reminders import ReminderScheduler  # noqa: E402
from chorechamp.suggestion_engine import SuggestionEngine  # noqa: E402
from chorechamp.suggestion_store import SuggestionStore  # noqa: E402


# ---------------------------------------------------------------------------
# Bare Object Factory: skip __init__ for WebSocketSession
# ---------------------------------------------------------------------------

def make_bare_ws_session(*, party=None):
    """Create a WebSocketSession with __new__ (skip __init__).

    Registry, history store, family store and reply generator are AsyncMocks;
    callers replace them when a test needs real behaviour.
    """
    from chorechamp.ws_handler import (
        STATE_AUTHENTICATED,
        STATE_UNAUTHENTICATED,
        WebSocketSession,
    )

    session = WebSocketSession.__new__(WebSocketSession)
    session.ws = AsyncMock()
    session.registry = AsyncMock()
    session.registry.bind = AsyncMock(return_value=True)
    session.family_store = AsyncMock()
    session.family_store.get_child = AsyncMock(return_value={"id": "c1", "name": "Maya", "age": 10})
    session.history_store = AsyncMock()
    session.history_store.append = AsyncMock(side_effect=lambda party, role, content, **kw: {
        "id": "m1",
        "partyType": party.type,
        "partyId": party.id,
        "role": role,
        "type": kw.get("message_type", "general_chat"),
        "content": content,
        "createdAt": "2024-01-01T10:00:00",
    })
    session.generate_reply = AsyncMock(
        return_value={"content": "Nice!", "type": "general_chat", "actionSuggestion": None}
    )
    session.handle = "conn-1"
    session.party = party
    session.state = STATE_AUTHENTICATED if party else STATE_UNAUTHENTICATED
    return session


def sent_frames(registry_mock, method: str = "send") -> list[dict]:
    """Frames passed to ``registry.send`` / ``registry.send_to`` on a mock."""
    return [c.args[1] for c in getattr(registry_mock, method).call_args_list]


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

@pytest.fixture
def family_store(tmp_path):
    return FamilyStore(tmp_path / "family.json")


@pytest.fixture
def history_store(tmp_path):
    return HistoryStore(tmp_path / "messages")


@pytest.fixture
def suggestion_store(tmp_path):
    return SuggestionStore(tmp_path / "suggestions.json")


@pytest.fixture
async def child(family_store):
    return await family_store.create_child("parent-1", "Maya", 10)


@pytest.fixture
def fake_query():
    """Stand-in for the Claude one-shot query: ``(system_prompt, prompt) -> text``."""
    return AsyncMock(return_value="You're doing great today!")


@pytest.fixture
def agent(family_store, history_store, fake_query):
    return ChoreAgent(family_store, history_store, query=fake_query)


@pytest.fixture
def generator():
    """Suggestion generator double returning canned candidates per kind."""
    gen = AsyncMock()
    gen.generate_suggestions = AsyncMock(return_value=[])
    return gen


@pytest.fixture
def engine(suggestion_store, family_store, generator):
    return SuggestionEngine(
        suggestion_store, family_store, Materializer(family_store), generator,
    )


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

@pytest.fixture
def app(tmp_path, fake_query):
    """The FastAPI app wired to fresh tmp_path stores and a fake AI query.

    Nothing here talks to Claude; ``fake_query`` answers every prompt.
    """
    families = FamilyStore(tmp_path / "family.json")
    history = HistoryStore(tmp_path / "messages")
    suggestions = SuggestionStore(tmp_path / "suggestions.json")
    registry = ConnectionRegistry()
    chore_agent = ChoreAgent(families, history, query=fake_query)
    suggestion_engine = SuggestionEngine(
        suggestions, families, Materializer(families), chore_agent,
    )
    reminders = ReminderScheduler(registry, families, history, chore_agent)

    with patch("chorechamp.server._family_store", families), \
         patch("chorechamp.server._history_store", history), \
         patch("chorechamp.server._suggestion_store", suggestions), \
         patch("chorechamp.server._registry", registry), \
         patch("chorechamp.server._agent", chore_agent), \
         patch("chorechamp.server._suggestion_engine", suggestion_engine), \
         patch("chorechamp.server._reminders", reminders):
        from chorechamp.server import app as fastapi_app
        yield fastapi_app


@pytest.fixture
async def client(app):
    """Async HTTP client for testing REST endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
