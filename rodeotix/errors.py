"""
Error taxonomy shared by every service.

Each error knows the HTTP status it maps to; the FastAPI exception handler in
`server.py` renders `to_dict()` as the response body.
"""
from typing import Any, Dict, Optional


class RodeoError(Exception):
    status_code = 500
    reason = "error"

    def __init__(self, message: str, *, reason: Optional[str] = None,
                 **details: Any) -> None:
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        out = {"error": self.message, "reason": self.reason}
        out.update(self.details)
        return out


class ValidationError(RodeoError):
    status_code = 400
    reason = "invalid_request"


class AuthError(RodeoError):
    status_code = 401
    reason = "unauthorized"


class NotFoundError(RodeoError):
    status_code = 404
    reason = "not_found"


class ConflictError(RodeoError):
    """A compare-and-set lost, or the record is in the wrong state."""
    status_code = 409
    reason = "conflict"


class GatewayError(RodeoError):
    """
    Payment provider rejected the request or could not be reached.

    `provider_message` carries the raw provider text for logs only; it is
    never part of `to_dict()`.
    """
    status_code = 502
    reason = "gateway_error"

    def __init__(self, message: str, *, provider: str = "",
                 provider_message: str = "") -> None:
        super().__init__(message)
        self.provider = provider
        self.provider_message = provider_message


class IntegrationError(RodeoError):
    """Email, shipping or catalog collaborator failure."""
    status_code = 502
    reason = "integration_error"
