import sys
if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import logging
import os
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.requests import Request

from .agent import ChoreAgent, GeneratorFailure
from .auth import LoginRequest, bearer_token, require_auth, tokens
from .connection_registry import ConnectionRegistry
from .family_store import ChildNotFound, FamilyStore
from .history_store import MAX_HISTORY_LIMIT, HistoryStore
from .materializer import KINDS, Materializer
from .party import Party
from .reminders import ReminderScheduler
from .suggestion_engine import (
    SuggestionAlreadyResolved,
    SuggestionEngine,
    SuggestionNotFound,
)
from .suggestion_store import STATUSES, SuggestionStore
from .ws_constants import PARTY_CHILD
from .ws_handler import websocket_chat

logger = logging.getLogger(__name__)

app = FastAPI(title="ChoreChamp")

# --- CORS Configuration ---

def _get_cors_origins() -> list[str]:
    """CORS origins from CHORECHAMP_CORS_ORIGINS (comma-separated)."""
    raw = os.environ.get("CHORECHAMP_CORS_ORIGINS", "http://localhost:8000")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["http://localhost:8000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("CHORECHAMP_DATA_DIR", str(BASE_DIR / "data")))

_registry = ConnectionRegistry()
_family_store = FamilyStore(DATA_DIR / "family.json")
_history_store = HistoryStore(DATA_DIR / "messages")
_suggestion_store = SuggestionStore(DATA_DIR / "suggestions.json")
_agent = ChoreAgent(_family_store, _history_store)
_suggestion_engine = SuggestionEngine(
    _suggestion_store, _family_store, Materializer(_family_store), _agent,
)
_reminders = ReminderScheduler(_registry, _family_store, _history_store, _agent)


@app.on_event("startup")
async def startup_event():
    _reminders.start()


@app.on_event("shutdown")
async def shutdown_event():
    await _reminders.stop()
    await _registry.close_all()


# --- Auth ---

@app.get("/api/auth/status")
async def auth_status():
    return {"auth_required": tokens.enabled}


@app.post("/api/login")
async def api_login(req: LoginRequest, request: Request):
    if not tokens.enabled:
        return {"token": "no-auth", "message": "Authentication is disabled."}
    client_ip = request.client.host if request.client else "unknown"
    return {"token": tokens.login(client_ip, req.password)}


@app.post("/api/logout", dependencies=[Depends(require_auth)])
async def api_logout(request: Request):
    token = bearer_token(request)
    return {"revoked": bool(token) and tokens.revoke(token)}


@app.get("/api/health")
async def health_check():
    return {"status": "ok", "connectedParties": len(await _registry.connected_parties())}


# --- Chat history ---

def _party_or_400(party_type: str, party_id: str) -> Party:
    try:
        return Party(type=party_type, id=party_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/app-chat/history", dependencies=[Depends(require_auth)])
async def api_chat_history(
    partyType: str,
    partyId: str,
    limit: int = Query(50, ge=1, le=MAX_HISTORY_LIMIT),
):
    """Messages for a Party, newest first."""
    return await _history_store.recent(_party_or_400(partyType, partyId), limit)


@app.get("/api/chat/history", dependencies=[Depends(require_auth)])
async def api_legacy_chat_history(
    childId: str,
    limit: int = Query(50, ge=1, le=MAX_HISTORY_LIMIT),
):
    return await _history_store.recent(_party_or_400(PARTY_CHILD, childId), limit)


# --- AI suggestions ---

class GenerateSuggestionsRequest(BaseModel):
    childId: str = Field(..., min_length=1, max_length=128)
    kinds: list[str] = Field(..., min_length=1)
    params: dict = Field(default_factory=dict)


class AssignSuggestionRequest(BaseModel):
    childId: str = Field(..., min_length=1, max_length=128)


@app.get("/api/ai/suggestions", dependencies=[Depends(require_auth)])
async def api_list_suggestions(
    childId: str,
    status: str | None = None,
    kind: str | None = None,
):
    if status is not None and status not in STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    if kind is not None and kind not in KINDS:
        raise HTTPException(status_code=400, detail=f"Invalid kind: {kind}")
    return await _suggestion_engine.list_for_child(childId, status=status, kind=kind)


@app.post("/api/ai/suggestions", dependencies=[Depends(require_auth)])
async def api_generate_suggestions(req: GenerateSuggestionsRequest):
    try:
        return await _suggestion_engine.generate(req.childId, req.kinds, req.params)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ChildNotFound:
        raise HTTPException(status_code=404, detail="Child not found")
    except GeneratorFailure:
        logger.exception("Suggestion generation failed for child %s", req.childId)
        raise HTTPException(status_code=502, detail="Suggestion generator unavailable")


def _transition_error(e: Exception) -> HTTPException:
    if isinstance(e, SuggestionNotFound):
        return HTTPException(status_code=404, detail="Suggestion not found")
    if isinstance(e, ChildNotFound):
        return HTTPException(status_code=404, detail="Child not found")
    if isinstance(e, SuggestionAlreadyResolved):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@app.post("/api/ai/suggestions/{suggestion_id}/accept", dependencies=[Depends(require_auth)])
async def api_accept_suggestion(suggestion_id: str):
    try:
        return await _suggestion_engine.accept(suggestion_id)
    except (SuggestionNotFound, SuggestionAlreadyResolved, ChildNotFound, ValueError) as e:
        raise _transition_error(e)


@app.post("/api/ai/suggestions/{suggestion_id}/dismiss", dependencies=[Depends(require_auth)])
async def api_dismiss_suggestion(suggestion_id: str):
    try:
        return await _suggestion_engine.dismiss(suggestion_id)
    except (SuggestionNotFound, SuggestionAlreadyResolved) as e:
        raise _transition_error(e)


@app.post("/api/ai/suggestions/{suggestion_id}/assign", dependencies=[Depends(require_auth)])
async def api_assign_suggestion(suggestion_id: str, req: AssignSuggestionRequest):
    suggestion = await _suggestion_store.get(suggestion_id)
    if suggestion is None:
        raise HTTPException(status_code=404, detail="Suggestion not found")
    source = await _family_store.get_child(suggestion["childId"])
    target = await _family_store.get_child(req.childId)
    if target is None:
        raise HTTPException(status_code=404, detail="Child not found")
    if source is not None and source["parentId"] != target["parentId"]:
        raise HTTPException(status_code=403, detail="Child belongs to another family")
    try:
        return await _suggestion_engine.assign(suggestion_id, req.childId)
    except (SuggestionNotFound, SuggestionAlreadyResolved, ChildNotFound, ValueError) as e:
        raise _transition_error(e)


# --- Reminders ---

@app.post("/api/send-reminders", dependencies=[Depends(require_auth)])
async def api_send_reminders():
    sent = await _reminders.send_reminders()
    return {"success": True, "sent": sent}


# --- Family scaffolding ---

class CreateChildRequest(BaseModel):
    parentId: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=100)
    age: int = Field(..., ge=1, le=18)


@app.post("/api/children", dependencies=[Depends(require_auth)])
async def api_create_child(req: CreateChildRequest):
    return await _family_store.create_child(req.parentId, req.name, req.age)


@app.get("/api/children", dependencies=[Depends(require_auth)])
async def api_list_children(parentId: str | None = None):
    return await _family_store.list_children(parentId)


@app.get("/api/chore-templates", dependencies=[Depends(require_auth)])
async def api_list_chore_templates(parentId: str):
    return await _family_store.list_chore_templates(parentId)


@app.get("/api/learning-goals", dependencies=[Depends(require_auth)])
async def api_list_learning_goals(childId: str):
    return await _family_store.list_learning_goals(childId)


@app.get("/api/assigned-chores", dependencies=[Depends(require_auth)])
async def api_list_assigned_chores(childId: str):
    return await _family_store.list_assigned_chores(childId)


@app.post("/api/assigned-chores/{assigned_chore_id}/complete", dependencies=[Depends(require_auth)])
async def api_complete_assigned_chore(assigned_chore_id: str):
    record = await _family_store.complete_chore(assigned_chore_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Assigned chore not found")
    return record


# --- WebSocket ---

@app.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    await websocket_chat(
        websocket,
        registry=_registry,
        history_store=_history_store,
        family_store=_family_store,
        generate_reply=_agent.reply,
    )
