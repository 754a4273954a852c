"""WebSocket chat handler: per-connection handshake and message routing.

The main entry point is ``websocket_chat()``, which server.py mounts as
``/ws``. Each connection runs its own ``WebSocketSession`` loop, so frames
from one connection are handled strictly in arrival order while other
connections proceed concurrently.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from fastapi import WebSocket, WebSocketDisconnect

from .agent import GeneratorFailure
from .auth import tokens
from .connection_registry import ConnectionRegistry
from .family_store import ChildNotFound, FamilyStore
from .history_store import HistoryStore
from .party import Party, party_from_auth_frame
from .ws_constants import (
    MESSAGE_TYPE_GREETING,
    MSG_AGENT_MESSAGE,
    MSG_AUTH,
    MSG_CHAT,
    MSG_ERROR,
    PARTY_CHILD,
    ROLE_AGENT,
    ROLE_USER,
)

logger = logging.getLogger(__name__)

STATE_UNAUTHENTICATED = "unauthenticated"
STATE_AUTHENTICATED = "authenticated"

WELCOME_MESSAGE = "Hey! I'm your ChoreChamp Agent. What's going on today? 😊"
REPLY_FAILED_MESSAGE = "Sorry, I had trouble understanding that. Can you try again?"
MAX_MESSAGE_SIZE = 4 * 1024  # bytes, UTF-8

ReplyFn = Callable[[Party, str], Awaitable[dict]]


class WebSocketSession:
    """Holds the handshake state and routing for a single WebSocket connection.

    Each frame type is handled by a ``handle_<type>`` method. Until an
    ``auth`` frame succeeds, every other frame is dropped without a reply.
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        registry: ConnectionRegistry,
        history_store: HistoryStore,
        family_store: FamilyStore,
        generate_reply: ReplyFn,
    ):
        self.ws = websocket
        self.registry = registry
        self.history_store = history_store
        self.family_store = family_store
        self.generate_reply = generate_reply

        self.handle: str | None = None
        self.party: Party | None = None
        self.state = STATE_UNAUTHENTICATED

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def send_error(self, content: str) -> bool:
        """Send an error frame to this connection only."""
        return await self.registry.send_to(self.handle, {"type": MSG_ERROR, "content": content})

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def handle_auth(self, msg: dict) -> None:
        if self.state == STATE_AUTHENTICATED:
            logger.debug("Ignoring repeated auth on connection %s", self.handle)
            return
        if not tokens.verify(msg.get("token")):
            await self.send_error("Unauthorized")
            return
        try:
            party = party_from_auth_frame(msg)
        except ValueError as e:
            logger.warning("Rejected auth frame: %s", e)
            await self.send_error("Invalid auth message.")
            return

        if not await self.registry.bind(self.handle, party):
            return
        self.party = party
        self.state = STATE_AUTHENTICATED
        await self.registry.send_to(self.handle, {
            "type": MSG_AGENT_MESSAGE,
            "content": WELCOME_MESSAGE,
            "messageType": MESSAGE_TYPE_GREETING,
            "timestamp": _now(),
        })

    async def handle_chat(self, msg: dict) -> None:
        text = msg.get("message")
        if not isinstance(text, str) or not text.strip():
            await self.send_error("Message cannot be empty.")
            return
        if len(text.encode("utf-8")) > MAX_MESSAGE_SIZE:
            await self.send_error(f"Message too large (max {MAX_MESSAGE_SIZE} bytes).")
            return
        # Nothing is stored for a child profile that does not exist
        if self.party.type == PARTY_CHILD and await self.family_store.get_child(self.party.id) is None:
            await self.send_error("Child not found")
            return

        await self.history_store.append(self.party, ROLE_USER, text)

        try:
            reply = await self.generate_reply(self.party, text)
        except ChildNotFound:
            await self.send_error("Child not found")
            return
        except (GeneratorFailure, ValueError):
            logger.exception("Reply generation failed for %s", self.party)
            await self.send_error(REPLY_FAILED_MESSAGE)
            return

        stored = await self.history_store.append(
            self.party, ROLE_AGENT, reply["content"], message_type=reply["type"],
        )
        frame = {
            "type": MSG_AGENT_MESSAGE,
            "content": stored["content"],
            "messageType": stored["type"],
            "timestamp": stored["createdAt"],
        }
        if reply.get("actionSuggestion"):
            frame["actionSuggestion"] = reply["actionSuggestion"]
        await self.registry.send(self.party, frame)

    # Dispatch table: frame type -> handler method name
    _HANDLERS = {
        MSG_AUTH: "handle_auth",
        MSG_CHAT: "handle_chat",
    }

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _dispatch(self, data: str) -> None:
        authenticated = self.state == STATE_AUTHENTICATED
        try:
            msg = json.loads(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Malformed JSON from client: %s", e)
            if authenticated:
                await self.send_error("Invalid message format.")
            return
        if not isinstance(msg, dict) or not msg.get("type"):
            if authenticated:
                await self.send_error("Missing message type.")
            return

        msg_type = msg["type"]
        if not authenticated and msg_type != MSG_AUTH:
            return

        handler_name = self._HANDLERS.get(msg_type)
        if not handler_name:
            await self.send_error(f"Unknown message type: {msg_type}")
            return
        await getattr(self, handler_name)(msg)

    async def run(self) -> None:
        """Main message loop: dispatches to handler methods."""
        try:
            while True:
                data = await self.ws.receive_text()
                try:
                    await self._dispatch(data)
                except (WebSocketDisconnect, RuntimeError):
                    raise
                except Exception:
                    logger.exception("Unexpected error handling frame on %s", self.handle)
                    await self.send_error("An internal error occurred.")
        except (WebSocketDisconnect, RuntimeError):
            pass

    async def cleanup(self) -> None:
        if self.handle is not None:
            await self.registry.unregister(self.handle)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ------------------------------------------------------------------
# FastAPI endpoint: this is what server.py mounts at /ws
# ------------------------------------------------------------------

async def websocket_chat(
    websocket: WebSocket,
    *,
    registry: ConnectionRegistry,
    history_store: HistoryStore,
    family_store: FamilyStore,
    generate_reply: ReplyFn,
) -> None:
    """WebSocket endpoint handler for /ws."""
    await websocket.accept()
    session = WebSocketSession(
        websocket,
        registry=registry,
        history_store=history_store,
        family_store=family_store,
        generate_reply=generate_reply,
    )
    session.handle = await registry.register(websocket)
    try:
        await session.run()
    finally:
        await session.cleanup()
