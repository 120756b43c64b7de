"""Bearer credential handling.

Tokens are HS256 JWTs whose ``id`` claim carries the user id. Issuing
tokens belongs to the account service; :func:`issue_token` is kept for
development tooling and tests.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from chatline.config import get_config
from chatline.errors import AuthenticationError

logger = logging.getLogger(__name__)


def issue_token(user_id: str, expires_minutes: Optional[int] = None) -> str:
    """Sign a bearer token for ``user_id``."""
    config = get_config()
    minutes = expires_minutes if expires_minutes is not None else config.auth.token_expire_minutes
    payload = {
        "id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    return jwt.encode(
        payload,
        config.secrets.jwt.secret_key,
        algorithm=config.secrets.jwt.algorithm,
    )


def verify_token(token: Optional[str]) -> str:
    """Validate a bearer token and return the user id it identifies.

    Raises:
        AuthenticationError: If the token is missing, expired, malformed
            or carries no ``id`` claim.
    """
    if not token:
        raise AuthenticationError("No token, authorization denied")
    config = get_config()
    try:
        decoded = jwt.decode(
            token,
            config.secrets.jwt.secret_key,
            algorithms=[config.secrets.jwt.algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.debug("Rejected bearer token: %s", e)
        raise AuthenticationError("Token is not valid")

    user_id = decoded.get("id")
    if not user_id:
        raise AuthenticationError("Token is not valid")
    return str(user_id)
