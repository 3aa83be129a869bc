"""
FastAPI Security Dependencies
End-user bearer tokens are Supabase access tokens; maintenance endpoints take
the shared MAINTENANCE_API_KEY instead and never accept a user token.
"""

import logging
import secrets
from dataclasses import dataclass

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from coachpay.config import Config
from coachpay.config.supabase_config import get_supabase_client
from coachpay.db.organizations import is_org_admin
from coachpay.utils.exceptions import AuthError, ForbiddenError

logger = logging.getLogger(__name__)

# auto_error=False so missing credentials surface as AuthError, not FastAPI's 403
security = HTTPBearer(auto_error=False)

ERROR_INVALID_MAINTENANCE_KEY = "Invalid maintenance credential"


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str | None = None


def _require_token(credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None or not credentials.credentials:
        raise AuthError("Missing authorization header")
    return credentials.credentials


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> AuthenticatedUser:
    """
    Resolve the caller from a Supabase access token.

    Raises:
        AuthError: 401 if the token is missing, expired or unknown
    """
    token = _require_token(credentials)

    try:
        response = get_supabase_client().auth.get_user(token)
    except Exception as e:
        logger.warning(f"Access token rejected: {type(e).__name__}")
        raise AuthError("Invalid or expired token") from e

    user = getattr(response, "user", None)
    if user is None or not getattr(user, "id", None):
        raise AuthError("Invalid or expired token")

    return AuthenticatedUser(id=str(user.id), email=getattr(user, "email", None))


def ensure_org_admin(organization_id: str, user: AuthenticatedUser) -> None:
    """Raises ForbiddenError unless the user is an active owner/admin of the organization."""
    if not is_org_admin(organization_id, user.id):
        logger.warning(f"User {user.id} is not an admin of organization {organization_id}")
        raise ForbiddenError("Not authorized for this organization")


async def require_maintenance_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """
    Validate the shared maintenance credential with a constant-time comparison.

    Raises:
        AuthError: 401 if the credential is missing, not configured, or wrong
    """
    provided = _require_token(credentials)
    expected = Config.MAINTENANCE_API_KEY

    if not expected:
        logger.error("MAINTENANCE_API_KEY is not configured; rejecting maintenance request")
        raise AuthError(ERROR_INVALID_MAINTENANCE_KEY)

    if not secrets.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Invalid maintenance credential presented")
        raise AuthError(ERROR_INVALID_MAINTENANCE_KEY)

    return provided
