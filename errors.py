"""
Error taxonomy for the directory API.

Every failure the core can produce is one of these exceptions. The HTTP layer
maps them to the uniform response envelope; nothing here knows about FastAPI.
"""

from typing import Any, Dict, Optional


class DirectoryError(Exception):
    status_code = 500
    kind = "internal"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def envelope(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "error": self.kind}


class Unauthenticated(DirectoryError):
    status_code = 401
    kind = "unauthenticated"
    default_message = "Could not validate credentials"


class InvalidCredential(Unauthenticated):
    """Token is missing, malformed, expired or carries a bad signature."""

    default_message = "Invalid token"


class UnknownUser(Unauthenticated):
    """Token is well formed but names a user that does not exist."""

    default_message = "User not found"


class Forbidden(DirectoryError):
    status_code = 403
    kind = "forbidden"
    default_message = "Not authorized"


class NotFound(DirectoryError):
    status_code = 404
    kind = "not_found"
    default_message = "Resource not found"


class QuotaExceeded(DirectoryError):
    status_code = 403
    kind = "quota_exceeded"
    default_message = "Plan limit reached"


class Conflict(DirectoryError):
    status_code = 409
    kind = "conflict"
    default_message = "Conflict"


class ValidationFailed(DirectoryError):
    status_code = 422
    kind = "validation"
    default_message = "Invalid request"


class Internal(DirectoryError):
    pass
