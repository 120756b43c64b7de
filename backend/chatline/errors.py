"""Error taxonomy shared by the chat services.

Services raise these before mutating any state; the application turns them
into JSON error responses via :func:`chat_error_handler`.

Best-effort failures (presence persistence, live fan-out) never surface as
ChatError: they are logged and swallowed where they happen.
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """Base exception for caller-visible chat failures."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(ChatError):
    """Raised for malformed input (missing fields, self-messaging, ...)."""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class AuthenticationError(ChatError):
    """Raised when the bearer credential is missing or invalid."""
    def __init__(self, message: str = "Token is not valid"):
        super().__init__(message, status_code=401)


class AuthorizationError(ChatError):
    """Raised when acting on a group the caller may not act on."""
    def __init__(self, message: str):
        super().__init__(message, status_code=403)


class NotFoundError(ChatError):
    """Raised when a referenced user, group or message does not exist."""
    def __init__(self, message: str):
        super().__init__(message, status_code=404)


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render a ChatError as ``{"error": message}`` with its status code."""
    logger.info(
        "%s %s rejected (%s): %s",
        request.method, request.url.path, exc.status_code, exc.message,
    )
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)
