"""Authentication schemes for the Vtiger web service.

Provides:
- AuthStrategy: abstract login/refresh/authorize contract used by CRMConnector
- TokenAuth: api.php ``UserLogin`` + ``RefreshAccessToken`` with Bearer tokens
- ChallengeAuth: webservice.php ``getchallenge`` + md5 ``login`` with sessionName
- build_auth(): pick the strategy for a deployment

A deployment runs exactly one scheme; the connector never tries both.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from src.recruitops.config import AuthScheme
from src.recruitops.crm.errors import AuthError
from src.recruitops.crm.session import Session

# Unauthenticated request: (operation, params) -> decoded ``result`` payload.
SendFn = Callable[[str, dict[str, Any]], Awaitable[Any]]


class AuthStrategy(ABC):
    """How a connector obtains, renews and presents credentials."""

    scheme: AuthScheme
    endpoint: str
    read_operations: frozenset[str] = frozenset()
    list_types_operation: str = "listTypes"

    def method_for(self, operation: str) -> str:
        """HTTP method used to send ``operation``."""
        return "GET" if operation in self.read_operations else "POST"

    @abstractmethod
    async def login(self, send: SendFn, server_url: str, username: str, access_key: str) -> Session:
        """Authenticate and return a fresh Session."""
        ...

    @abstractmethod
    async def refresh(self, send: SendFn, session: Session, access_key: str) -> None:
        """Renew ``session`` in place. Raises AuthError when renewal is impossible."""
        ...

    @abstractmethod
    def authorize(self, session: Session, params: dict[str, Any], headers: dict[str, str]) -> None:
        """Attach credentials to an outgoing request."""
        ...


class TokenAuth(AuthStrategy):
    """Bearer-token authentication against ``api.php``."""

    scheme = AuthScheme.token
    endpoint = "api.php"

    async def login(self, send: SendFn, server_url: str, username: str, access_key: str) -> Session:
        result = await send("UserLogin", {"username": username, "password": access_key})
        if not isinstance(result, dict) or not result.get("accesstoken"):
            raise AuthError("Failed to obtain access token from CRM")
        return Session(
            server_url=server_url,
            username=username,
            access_token=result["accesstoken"],
            refresh_token=result.get("refreshtoken") or None,
            user_id=result.get("userid") or result.get("userId"),
        )

    async def refresh(self, send: SendFn, session: Session, access_key: str) -> None:
        if not session.refresh_token:
            raise AuthError("Session expired and no refresh token is available")
        result = await send("RefreshAccessToken", {"refreshtoken": session.refresh_token})
        if not isinstance(result, dict) or not result.get("accesstoken"):
            raise AuthError("Failed to refresh access token")
        session.renew(result["accesstoken"], result.get("refreshtoken"))

    def authorize(self, session: Session, params: dict[str, Any], headers: dict[str, str]) -> None:
        headers["Authorization"] = f"Bearer {session.access_token}"


class ChallengeAuth(AuthStrategy):
    """Challenge/response authentication against ``webservice.php``.

    There is no refresh token in this scheme, so a refresh is a complete
    challenge and login cycle whose new sessionName replaces the old one.
    """

    scheme = AuthScheme.challenge
    endpoint = "webservice.php"
    read_operations = frozenset({"getchallenge", "query", "retrieve", "listtypes", "describe"})
    list_types_operation = "listtypes"

    async def login(self, send: SendFn, server_url: str, username: str, access_key: str) -> Session:
        challenge = await send("getchallenge", {"username": username})
        token = challenge.get("token") if isinstance(challenge, dict) else None
        if not token:
            raise AuthError("CRM did not return a login challenge")

        digest = hashlib.md5(f"{token}{access_key}".encode()).hexdigest()
        result = await send("login", {"username": username, "accessKey": digest})
        if not isinstance(result, dict) or not result.get("sessionName"):
            raise AuthError("CRM login did not return a sessionName")
        return Session(
            server_url=server_url,
            username=username,
            access_token=result["sessionName"],
            user_id=result.get("userId"),
        )

    async def refresh(self, send: SendFn, session: Session, access_key: str) -> None:
        fresh = await self.login(send, session.server_url, session.username, access_key)
        session.renew(fresh.access_token)

    def authorize(self, session: Session, params: dict[str, Any], headers: dict[str, str]) -> None:
        params["sessionName"] = session.session_id


def build_auth(scheme: AuthScheme | str) -> AuthStrategy:
    """Return the strategy instance for ``scheme``."""
    scheme = AuthScheme(scheme)
    if scheme == AuthScheme.challenge:
        return ChallengeAuth()
    return TokenAuth()
