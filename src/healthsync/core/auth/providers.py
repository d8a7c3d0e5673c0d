"""Concrete AuthService implementations."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class StaticTokenAuth:
    """Serves a fixed bearer token (from settings). Used for service accounts and tests."""

    def __init__(self, token: str = "") -> None:
        self._token = token
        self.terminated = False
        self.termination_reason: str | None = None

    async def get_access_token(self) -> str | None:
        if self.terminated:
            return None
        return self._token or None

    def terminate_session(self, reason: str) -> None:
        self.terminated = True
        self.termination_reason = reason
        logger.warning("Session terminated: %s", reason)
