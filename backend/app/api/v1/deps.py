# app/api/v1/deps.py

import uuid
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from app.core.config import settings
from app.services.openai_service import MISSING_KEY_ERROR, openai_service
from app.utils.exceptions import AuthenticationError, ConfigurationError

# auto_error=False so a missing header becomes our own 401 body
security = HTTPBearer(auto_error=False)

# ============================================================================
# JWT Dependency
# ============================================================================

def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> uuid.UUID:
    """
    Validate the bearer token issued by the external auth service and
    return the user id from its ``sub`` claim.
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("No authorization header")

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Invalid user token", details="Token expired")
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid user token", details=str(exc))

    subject = payload.get("sub") or payload.get("user_id")
    try:
        return uuid.UUID(str(subject))
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid user token", details="Token subject is not a user id")


def get_optional_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[uuid.UUID]:
    """Like get_current_user_id, but anonymous callers get None."""
    if credentials is None:
        return None
    return get_current_user_id(credentials)

# ============================================================================
# Configuration guards
# ============================================================================

def require_openai() -> None:
    """Fail with 500 before any work when the OpenAI key is missing."""
    if not openai_service.is_configured:
        raise ConfigurationError(MISSING_KEY_ERROR)
