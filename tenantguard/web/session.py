"""Server-side session bags addressed by signed cookie tokens."""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
import time
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

SESSION_COOKIE = "tg_session"


class SessionStore:
    """Per-principal key-value bags.

    The cookie carries ``token.signature``; the bag itself stays on the
    server so the switcher can keep history and the current tenant in it.
    """

    def __init__(self, secret_key: str, max_age: int = 86400) -> None:
        self._secret = secret_key.encode()
        self._max_age = max_age
        self._sessions: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create_session(self, user_id: str) -> str:
        """Create a new session and return the signed token."""
        token = secrets.token_urlsafe(32)
        signed_token = f"{token}.{self._sign(token)}"
        with self._lock:
            self._sessions[signed_token] = {"user_id": user_id, "created_at": time.time()}
        logger.info("session_created", user_id=user_id)
        return signed_token

    def load(self, token: str | None) -> dict[str, Any] | None:
        """Return the live bag for a token, or None when invalid or expired."""
        if not token or "." not in token:
            return None

        raw_token, signature = token.rsplit(".", 1)
        if not hmac.compare_digest(signature, self._sign(raw_token)):
            return None

        with self._lock:
            bag = self._sessions.get(token)
        if bag is None:
            return None

        if time.time() - bag["created_at"] > self._max_age:
            self.destroy_session(token)
            return None
        return bag

    def destroy_session(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)
        logger.info("session_destroyed")

    def _sign(self, data: str) -> str:
        return hmac.new(self._secret, data.encode(), hashlib.sha256).hexdigest()[:32]
