"""
Rate limiting for the dashboard API.

Uses slowapi. Limits are applied per endpoint with @limiter.limit on the
expensive operations (summary regeneration, message search, invite codes).
The LINE webhook is never rate limited: the platform retries on errors and
throttling it would only cause retry storms.

Keys:
1. User ID from the bearer token for authenticated requests
2. Client IP otherwise
"""

from typing import Optional

import jwt
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from line_summarizer.config import settings


def get_user_identifier(request: Request) -> str:
    """Rate-limit key: the token subject when present, else the client IP."""
    user_id: Optional[str] = getattr(request.state, "user_id", None)

    if user_id is None:
        auth_header = request.headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            try:
                payload = jwt.decode(
                    auth_header[len("Bearer "):],
                    settings.JWT_SECRET_KEY,
                    algorithms=[settings.JWT_ALGORITHM],
                )
                user_id = payload.get("sub")
            except jwt.InvalidTokenError:
                user_id = None

    if user_id:
        return f"user:{user_id}"

    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_user_identifier,
    default_limits=["100/minute"],
    storage_uri="memory://",  # Use Redis storage when running more than one replica
    strategy="fixed-window",
)
