"""Authentication adapter: the narrow interface the sync layer needs from the identity provider."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class AuthService(Protocol):
    """What the record layer needs from the session owner (OIDC client, etc.).

    The API client asks for a bearer token per request. Security failures
    (key loss, tampered ciphertext) call ``terminate_session`` so the app
    fails closed.
    """

    async def get_access_token(self) -> str | None:
        """Current bearer token, or None when signed out."""
        ...

    def terminate_session(self, reason: str) -> None:
        """End the session after a security failure."""
        ...
