"""Registry of live WebSocket connections, keyed by authenticated Party.

A Party may hold several live connections at once (one per device or tab);
``send`` fans a frame out to all of them. Delivery is best-effort: sending to
a Party with no live connection is a silent no-op.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from fastapi import WebSocketDisconnect

from .party import Party

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    websocket: Any
    handle: str = field(default_factory=lambda: uuid4().hex)
    party: Party | None = None
    alive: bool = True

    async def safe_send(self, data: dict) -> bool:
        """Send JSON to the client, return False if disconnected."""
        if not self.alive:
            return False
        try:
            await self.websocket.send_json(data)
            return True
        except (WebSocketDisconnect, RuntimeError):
            self.alive = False
            return False


class ConnectionRegistry:
    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._by_party: dict[Party, set[str]] = {}
        self._lock = asyncio.Lock()

    async def register(self, websocket: Any) -> str:
        """Track a new, unauthenticated connection and return its handle."""
        conn = Connection(websocket=websocket)
        async with self._lock:
            self._connections[conn.handle] = conn
        return conn.handle

    async def bind(self, handle: str, party: Party) -> bool:
        """Associate a registered connection with ``party``.

        Returns False when the handle is unknown (already unregistered).
        """
        async with self._lock:
            conn = self._connections.get(handle)
            if conn is None:
                return False
            if conn.party is not None and conn.party != party:
                self._discard(conn.party, handle)
            conn.party = party
            self._by_party.setdefault(party, set()).add(handle)
            count = len(self._by_party[party])
        logger.info("Party %s bound (%d live connection(s))", party, count)
        return True

    async def unregister(self, handle: str) -> None:
        async with self._lock:
            conn = self._connections.pop(handle, None)
            if conn is None:
                return
            conn.alive = False
            if conn.party is not None:
                self._discard(conn.party, handle)
                offline = conn.party not in self._by_party
            else:
                offline = False
        if offline:
            logger.info("Party %s is offline", conn.party)

    def _discard(self, party: Party, handle: str) -> None:
        """Remove a handle from a party's set. Caller holds the lock."""
        handles = self._by_party.get(party)
        if handles is None:
            return
        handles.discard(handle)
        if not handles:
            del self._by_party[party]

    async def send(self, party: Party, frame: dict) -> int:
        """Deliver ``frame`` to every live connection bound to ``party``.

        Returns the number of connections that accepted the frame.
        """
        async with self._lock:
            targets = [
                self._connections[h]
                for h in self._by_party.get(party, ())
                if h in self._connections
            ]
        delivered = 0
        # Send outside the lock so a slow client cannot stall the registry
        for conn in targets:
            if await conn.safe_send(frame):
                delivered += 1
        if not targets:
            logger.debug("No live connection for %s; frame not delivered", party)
        return delivered

    async def send_to(self, handle: str, frame: dict) -> bool:
        """Deliver ``frame`` to one connection only."""
        async with self._lock:
            conn = self._connections.get(handle)
        if conn is None:
            return False
        return await conn.safe_send(frame)

    async def is_online(self, party: Party) -> bool:
        async with self._lock:
            return party in self._by_party

    async def connected_parties(self) -> list[Party]:
        async with self._lock:
            return list(self._by_party)

    async def close_all(self) -> None:
        """Close every tracked connection (used on shutdown)."""
        async with self._lock:
            remaining = list(self._connections.values())
            self._connections.clear()
            self._by_party.clear()
        for conn in remaining:
            conn.alive = False
            try:
                await conn.websocket.close()
            except Exception:
                logger.debug("Error closing connection %s during shutdown", conn.handle)
