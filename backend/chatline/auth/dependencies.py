"""FastAPI dependencies resolving the authenticated caller."""
from typing import Optional

from fastapi import Header

from .tokens import verify_token


def bearer_token(authorization: str) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


async def current_user_id(authorization: str = Header(default="")) -> str:
    """Dependency returning the caller's user id.

    Raises:
        AuthenticationError: Rendered as 401 by the app's error handler.
    """
    return verify_token(bearer_token(authorization))
