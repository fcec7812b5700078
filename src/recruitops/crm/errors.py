"""Exception hierarchy for the CRM connector.

Callers branch on the class, never on message text:
- AuthError: credentials rejected, or a refresh did not recover the session
- AuthExpiredError: the current token/session is no longer accepted (retryable once)
- TransientError: network or server-side failure worth retrying with backoff
- RemoteError: the CRM answered with a well-formed failure envelope
- ConfigurationError: the connector cannot be built from the given settings
"""

from __future__ import annotations


class CRMError(Exception):
    """Base class for every error raised by the CRM connector."""


class ConfigurationError(CRMError):
    """Required connection settings are missing."""


class AuthError(CRMError):
    """Authentication failed and cannot be recovered automatically."""


class AuthExpiredError(AuthError):
    """The CRM reported an expired or invalid token/session."""


class TransientError(CRMError):
    """A request failed for a reason that may succeed on retry."""


class RemoteError(CRMError):
    """The CRM returned ``success: false`` for a non-auth reason.

    Args:
        message: Error message from the CRM envelope.
        code: Optional machine-readable error code from the envelope.
    """

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        if self.code:
            return f"{self.code}: {self.message}"
        return self.message


# Codes and message fragments that mean "log in again", across API flavours.
AUTH_EXPIRED_CODES = frozenset({
    "INVALID_SESSIONID",
    "AUTHENTICATION_REQUIRED",
    "INVALID_AUTH_TOKEN",
    "TOKEN_EXPIRED",
})
AUTH_EXPIRED_MESSAGES = ("token expired", "session expired", "invalid sessionid")


def classify_remote_error(error: dict | None) -> CRMError:
    """Map a CRM ``error`` envelope to the matching exception instance."""
    error = error or {}
    code = error.get("code")
    message = str(error.get("message") or "Unknown CRM error")

    if code in AUTH_EXPIRED_CODES:
        return AuthExpiredError(message)
    lowered = message.lower()
    if any(fragment in lowered for fragment in AUTH_EXPIRED_MESSAGES):
        return AuthExpiredError(message)
    return RemoteError(message, code=code)
