"""Chat client with a fixed-delay reconnect loop.

``ChatClient`` owns one WebSocket at a time. Every time a socket opens it
replays the ``auth`` handshake, so a dropped connection resumes receiving
``agent_message`` frames as soon as the server is reachable again. The
pending reconnect is a cancellable timer handle; ``close()`` cancels it and
closes the socket, after which the client stays down.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import httpx
import websockets

from .party import Party
from .ws_constants import MSG_AUTH, MSG_CHAT

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 3.0  # seconds, fixed

STATE_DISCONNECTED = "disconnected"
STATE_CONNECTING = "connecting"
STATE_AUTHENTICATED = "authenticated"

ConnectFn = Callable[[str], Awaitable[Any]]
MessageCallback = Callable[[dict], None]


class ChatClient:
    def __init__(
        self,
        url: str,
        party: Party,
        *,
        token: str | None = None,
        on_message: MessageCallback | None = None,
        connect: ConnectFn = websockets.connect,
        reconnect_delay: float = RECONNECT_DELAY,
    ):
        self.url = url
        self.party = party
        self.token = token
        self.on_message = on_message
        self.reconnect_delay = reconnect_delay
        self._connect = connect

        self.state = STATE_DISCONNECTED
        self.ws = None
        self._open = False
        self._task: asyncio.Task | None = None
        self._retry: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Start connecting; keeps reconnecting until ``close()``."""
        if self._open:
            return
        self._open = True
        self._start_attempt()

    async def close(self) -> None:
        self._open = False
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.close()
            except (websockets.exceptions.WebSocketException, OSError):
                logger.debug("Error closing chat socket", exc_info=True)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.state = STATE_DISCONNECTED

    def _start_attempt(self) -> None:
        self._retry = None
        if self._open:
            self._task = asyncio.ensure_future(self._connection_session())

    def _schedule_reconnect(self) -> None:
        if not self._open:
            return
        logger.info("Reconnecting in %.1fs", self.reconnect_delay)
        loop = asyncio.get_running_loop()
        self._retry = loop.call_later(self.reconnect_delay, self._start_attempt)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _auth_frame(self) -> dict:
        frame = {"type": MSG_AUTH, **self.party.to_dict()}
        if self.token:
            frame["token"] = self.token
        return frame

    async def _connection_session(self) -> None:
        self.state = STATE_CONNECTING
        try:
            self.ws = await self._connect(self.url)
            await self.ws.send(json.dumps(self._auth_frame()))
            # No server ack for auth; assume success once the frame is sent
            self.state = STATE_AUTHENTICATED
            async for raw in self.ws:
                self._deliver(raw)
        except asyncio.CancelledError:
            raise
        except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
            logger.warning("Chat connection lost: %r", e)
        finally:
            self.ws = None
            self.state = STATE_DISCONNECTED
        self._schedule_reconnect()

    def _deliver(self, raw) -> None:
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid JSON from chat server")
            return
        if self.on_message is not None:
            try:
                self.on_message(frame)
            except Exception:
                logger.exception("on_message callback failed")

    async def send_chat(self, text: str) -> bool:
        """Send a chat message. Returns False when no socket is open."""
        if self.ws is None or self.state != STATE_AUTHENTICATED:
            return False
        try:
            await self.ws.send(json.dumps({"type": MSG_CHAT, "message": text}))
        except (websockets.exceptions.WebSocketException, OSError):
            logger.warning("Chat send failed; waiting for reconnect")
            return False
        return True


async def load_history(
    base_url: str,
    party: Party,
    *,
    limit: int = 50,
    token: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[dict]:
    """Fetch a Party's chat history in display order (oldest first)."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    async with httpx.AsyncClient(base_url=base_url, headers=headers, transport=transport) as http:
        resp = await http.get(
            "/api/app-chat/history",
            params={**party.to_dict(), "limit": limit},
        )
        resp.raise_for_status()
        # The endpoint serves newest-first
        return list(reversed(resp.json()))
