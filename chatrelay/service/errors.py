from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can switch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    plus the chat-turn codes declared below.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource already exists (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Chat-turn failures. The first four abort a turn before anything is written.


class InvalidRoomError(NotFoundError):
    """Room is missing or owned by another user."""
    error_code = "invalid_room"


class TurnNotFoundError(NotFoundError):
    """Regenerate target does not exist in the room."""
    error_code = "turn_not_found"


class SensitiveContentError(ServiceError):
    """Prompt matched the content audit policy."""
    status_code = 400
    error_code = "sensitive_content"


class NoEligibleCredentialError(ServiceError):
    """No enabled credential serves this model for the caller's roles."""
    status_code = 503
    error_code = "no_eligible_credential"


class CompletionError(ServiceError):
    """Upstream completion failed or timed out mid-turn.

    Raised by completion backends from inside the event stream; the
    orchestrator keeps whatever text already arrived.
    """
    status_code = 502
    error_code = "adapter_error"


class PersistenceError(ServerError):
    """Writing the finalized turn or its usage row failed."""
    error_code = "persistence_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidRoomError",
    "TurnNotFoundError",
    "SensitiveContentError",
    "NoEligibleCredentialError",
    "CompletionError",
    "PersistenceError",
]
