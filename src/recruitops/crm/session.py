"""Authenticated session state owned by one CRMConnector."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class Session:
    """Tokens and identity for a logged-in CRM connection.

    Created on login, mutated in place on refresh, discarded on logout or
    unrecoverable auth failure. ``generation`` increases on every refresh so
    concurrent callers can tell whether someone else already refreshed.
    """

    server_url: str
    username: str
    access_token: str
    refresh_token: str | None = None
    user_id: str | None = None
    generation: int = 0
    established_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def session_id(self) -> str:
        """Identifier sent with every request (token or sessionName)."""
        return self.access_token

    def renew(self, access_token: str, refresh_token: str | None = None) -> None:
        """Replace tokens after a successful refresh."""
        self.access_token = access_token
        if refresh_token:
            self.refresh_token = refresh_token
        self.generation += 1
        self.established_at = datetime.now(timezone.utc)
