from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class LendingError(Exception):
    """Base for every business-rule failure raised inside the engine."""

    kind = "LendingError"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ValidationError(LendingError):
    kind = "ValidationError"
    status_code = 400


class InsufficientStock(LendingError):
    kind = "InsufficientStock"
    status_code = 409


class InvalidTransition(LendingError):
    kind = "InvalidTransition"
    status_code = 409


class NotFound(LendingError):
    kind = "NotFound"
    status_code = 404


class InvalidOtp(LendingError):
    kind = "InvalidOtp"
    status_code = 400


class DuplicateRequest(LendingError):
    kind = "DuplicateRequest"
    status_code = 409


class Unauthorized(LendingError):
    kind = "Unauthorized"
    status_code = 403


class VerificationRequired(Unauthorized):
    kind = "VerificationRequired"
    status_code = 401


class StorageUnavailable(LendingError):
    kind = "StorageUnavailable"
    status_code = 503


@dataclass
class ActionResult:
    success: bool
    record: dict | None = None
    error: LendingError | None = None
    message: str | None = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, record: dict | None = None, message: str | None = None, **extra: Any) -> "ActionResult":
        return cls(success=True, record=record, message=message, extra=extra)

    @classmethod
    def fail(cls, error: LendingError) -> "ActionResult":
        return cls(success=False, error=error, message=error.message)

    @property
    def status_code(self) -> int:
        if self.success or self.error is None:
            return 200
        return self.error.status_code

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"success": self.success}
        if self.message:
            payload["message"] = self.message
        if self.record is not None:
            payload["record"] = self.record
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        payload.update(self.extra)
        return payload
