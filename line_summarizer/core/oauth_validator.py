"""
Bearer token validation for the dashboard API.

Tokens are HS256 JWTs issued by the identity service, which shares
JWT_SECRET_KEY with this service. We never issue tokens ourselves.

Claims used:
- sub:           user id (required)
- type:          must be "access"
- email, name:   optional, recorded in audit entries
- platform_role: "super_admin" grants the platform-wide bypass
"""

from datetime import datetime, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from line_summarizer.config import settings
from line_summarizer.core.exceptions import UnauthorizedError
from line_summarizer.core.logging_config import get_logger

logger = get_logger(__name__)

SUPER_ADMIN_ROLE = "super_admin"

security = HTTPBearer(auto_error=False)


class CallerIdentity(BaseModel):
    """Authenticated dashboard caller extracted from the access token."""

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    platform_role: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_superadmin(self) -> bool:
        return self.platform_role == SUPER_ADMIN_ROLE

    @classmethod
    def from_jwt_payload(cls, payload: dict) -> "CallerIdentity":
        return cls(
            user_id=payload["sub"],
            email=payload.get("email"),
            name=payload.get("name"),
            platform_role=payload.get("platform_role"),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc) if "exp" in payload else None,
        )


def decode_access_token(token: str) -> CallerIdentity:
    """
    Decode and validate a raw JWT string.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, missing sub or wrong type
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
        options={
            "verify_exp": True,
            "verify_signature": True,
            "verify_aud": False,  # Any audience issued by the identity service is accepted
            "require": ["sub"],
        },
    )

    if payload.get("type") != "access":
        logger.warning(
            "token_invalid_type",
            token_type=payload.get("type"),
            expected="access"
        )
        raise jwt.InvalidTokenError("Invalid token type")

    return CallerIdentity.from_jwt_payload(payload)


def validate_access_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> CallerIdentity:
    """
    FastAPI dependency resolving the caller identity from the Authorization header.

    Usage:
        @router.get("/organizations/{org_id}/sessions")
        async def list_sessions(caller: CallerIdentity = Depends(validate_access_token)):
            ...

    Raises:
        UnauthorizedError: 401 if the header is missing or the token is invalid
    """
    if credentials is None:
        raise UnauthorizedError("Missing bearer token")

    try:
        caller = decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise UnauthorizedError("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning("token_invalid", error=str(e))
        raise UnauthorizedError(f"Invalid token: {e}")

    logger.debug(
        "token_validated",
        user_id=caller.user_id,
        platform_role=caller.platform_role,
    )
    return caller
