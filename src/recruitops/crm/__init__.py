"""CRM connector layer -- authenticated, retrying access to the Vtiger web service.

Provides:
- CRMConnector: session lifecycle, paginated queries, bulk imports, status push
- TokenAuth / ChallengeAuth: the two supported authentication schemes
- Session: tokens owned by one connector
- CRMError hierarchy: AuthError, AuthExpiredError, TransientError, RemoteError
"""

from src.recruitops.crm.auth import AuthStrategy, ChallengeAuth, TokenAuth, build_auth
from src.recruitops.crm.connector import CRMConnector
from src.recruitops.crm.errors import (
    AuthError,
    AuthExpiredError,
    ConfigurationError,
    CRMError,
    RemoteError,
    TransientError,
)
from src.recruitops.crm.session import Session

__all__ = [
    "AuthError",
    "AuthExpiredError",
    "AuthStrategy",
    "ChallengeAuth",
    "ConfigurationError",
    "CRMConnector",
    "CRMError",
    "RemoteError",
    "Session",
    "TokenAuth",
    "TransientError",
    "build_auth",
]
