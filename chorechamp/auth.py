"""Shared-password bearer tokens for the REST API and the chat handshake.

Authentication is off unless ``CHORECHAMP_PASSWORD`` is set. When it is on,
``POST /api/login`` trades the password for a token, REST endpoints require
``Authorization: Bearer <token>`` and the WebSocket ``auth`` frame must carry
the same token in its ``token`` field. ``POST /api/logout`` retires a token
before its TTL runs out.
"""

import hmac
import logging
import os
import secrets
import time
from collections import deque
from typing import Callable

from fastapi import HTTPException
from pydantic import BaseModel
from starlette.requests import Request

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = int(os.environ.get("CHORECHAMP_TOKEN_TTL", str(24 * 60 * 60)))
LOGIN_RATE_LIMIT = 5
LOGIN_RATE_WINDOW = 60.0  # seconds


class LoginRequest(BaseModel):
    password: str


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


class TokenBook:
    """Live tokens and recent login attempts for one shared password.

    A book with no password is open: ``verify`` accepts anything and
    ``login`` must not be called.
    """

    def __init__(
        self,
        password: str | None,
        *,
        ttl: float = TOKEN_TTL_SECONDS,
        rate_limit: int = LOGIN_RATE_LIMIT,
        rate_window: float = LOGIN_RATE_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.password = password or None
        self.ttl = ttl
        self.rate_limit = rate_limit
        self.rate_window = rate_window
        self._clock = clock
        self._expiry: dict[str, float] = {}
        self._attempts: dict[str, deque[float]] = {}

    @property
    def enabled(self) -> bool:
        return self.password is not None

    def _prune(self, now: float) -> None:
        for token in [t for t, expires in self._expiry.items() if expires <= now]:
            del self._expiry[token]
        cutoff = now - self.rate_window
        for client in list(self._attempts):
            attempts = self._attempts[client]
            while attempts and attempts[0] <= cutoff:
                attempts.popleft()
            if not attempts:
                del self._attempts[client]

    def login(self, client: str, password: str) -> str:
        """Trade the password for a fresh token.

        Every attempt counts against ``client``, right or wrong. Raises 429
        once the window's attempts are used up, 401 on a wrong password.
        """
        now = self._clock()
        self._prune(now)
        attempts = self._attempts.setdefault(client, deque())
        if len(attempts) >= self.rate_limit:
            logger.warning("Login throttled for %s", client)
            raise HTTPException(status_code=429, detail="Too many login attempts. Try again later.")
        attempts.append(now)
        if not _same(password, self.password):
            raise HTTPException(status_code=401, detail="Invalid password")
        token = secrets.token_hex(32)
        self._expiry[token] = now + self.ttl
        return token

    def verify(self, token) -> bool:
        if not self.enabled:
            return True
        if not isinstance(token, str) or not token:
            return False
        self._prune(self._clock())
        return any(_same(token, live) for live in self._expiry)

    def revoke(self, token: str) -> bool:
        return self._expiry.pop(token, None) is not None


tokens = TokenBook(os.environ.get("CHORECHAMP_PASSWORD"))


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):]
    return None


async def require_auth(request: Request):
    """FastAPI dependency guarding every /api route except login and status."""
    if not tokens.verify(bearer_token(request)):
        raise HTTPException(status_code=401, detail="Unauthorized")
