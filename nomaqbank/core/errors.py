"""
Structured application errors.

Every failure a caller can branch on carries a stable ``code``; the API layer
renders them as ``{"error": {"code", "message", ...}}``.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    code = "APP_ERROR"
    status_code = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "type": "app_error",
            "status_code": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        return body


class Unauthenticated(AppError):
    code = "UNAUTHENTICATED"
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class Unauthorized(AppError):
    code = "UNAUTHORIZED"
    status_code = 403

    def __init__(self, message: str = "You are not allowed to perform this action"):
        super().__init__(message)


class NotFound(AppError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, message: Optional[str] = None):
        super().__init__(message or f"{resource} not found", details={"resource": resource})
        self.resource = resource


class InvalidState(AppError):
    code = "INVALID_STATE"
    status_code = 409


class FraudDetected(InvalidState):
    """An answer was submitted for a question locked by the pause."""

    code = "FRAUD_DETECTED"

    def __init__(self, message: str, *, question_id: int, question_index: int):
        super().__init__(
            message,
            details={"question_id": question_id, "question_index": question_index},
        )
        self.question_id = question_id
        self.question_index = question_index


class AccessExpired(AppError):
    code = "ACCESS_EXPIRED"
    status_code = 403

    def __init__(self, category: str, message: Optional[str] = None):
        super().__init__(
            message or f"Your {category} access has expired or was never purchased",
            details={"category": category},
        )
        self.category = category


class InvalidInput(AppError):
    code = "INVALID_INPUT"
    status_code = 400


class AlreadyExists(AppError):
    code = "ALREADY_EXISTS"
    status_code = 409


class RateLimited(AppError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str, *, retry_after_minutes: int):
        super().__init__(message, details={"retry_after_minutes": retry_after_minutes})
        self.retry_after_minutes = retry_after_minutes
