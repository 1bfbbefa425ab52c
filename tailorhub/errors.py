"""Error types raised by the order, escrow, loyalty, review and dispute services.

Each error carries a machine-readable ``code`` and the HTTP status the request
handlers translate it to, so the reason for a rejection survives all the way
to the client.
"""
from __future__ import annotations


class ServiceError(Exception):
    code = "server_error"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, object]:
        return {"error": self.code, "message": self.message}


# --- Validation: the request itself is malformed or out of range ---

class ValidationError(ServiceError):
    code = "validation_error"
    status_code = 400

    def __init__(self, message: str, *, field: str | None = None,
                 errors: list[dict[str, str]] | None = None, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.field = field
        self.errors = errors or ([{"field": field, "message": message}] if field else [])

    def to_dict(self) -> dict[str, object]:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body


class Unauthorized(ServiceError):
    code = "unauthorized"
    status_code = 401


class NotFound(ServiceError):
    code = "not_found"
    status_code = 404


class Forbidden(ServiceError):
    code = "forbidden"
    status_code = 403


# --- Precondition/state: valid request, wrong entity state ---

class InvalidState(ServiceError):
    code = "invalid_state"
    status_code = 409


class InvalidTransition(InvalidState):
    code = "invalid_transition"


class AlreadyApproved(InvalidState):
    code = "already_approved"


class ReviewNotAllowed(InvalidState):
    code = "review_not_allowed"

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict[str, object]:
        body = super().to_dict()
        body["reason"] = self.reason
        return body


class ConcurrentModification(InvalidState):
    code = "concurrent_modification"


# --- Resource exhaustion: current system state can't satisfy the request ---

class InsufficientPoints(ServiceError):
    code = "insufficient_points"
    status_code = 422

    def __init__(self, available: int, required: int) -> None:
        super().__init__(
            f"Insufficient points. You have {available} points, but need {required} points"
        )
        self.available = available
        self.required = required


class TailorUnavailable(ServiceError):
    code = "tailor_unavailable"
    status_code = 422


# --- External dependencies ---

class PaymentGatewayError(ServiceError):
    code = "payment_error"

    def __init__(self, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = 502 if retryable else 500

    def to_dict(self) -> dict[str, object]:
        body = super().to_dict()
        body["retryable"] = self.retryable
        return body
