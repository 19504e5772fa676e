# Overview: Typed error taxonomy shared by services and routes.

"""
Engine error taxonomy.

Every error raised by a service operation is a subclass of EngineError and
carries a human-readable message plus a structured ``details`` dict the
caller can act on (e.g. ConflictError lists every colliding postal code and
its owning territory). Routes translate them to JSON with the class'
``status_code`` and ``code``.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for recoverable, caller-visible failures."""
    status_code = 400
    code = "engine_error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(EngineError):
    """400-level input problem (empty name, invalid state code, empty postal-code set...)."""
    status_code = 400
    code = "validation_error"


class NotFoundError(EngineError):
    """Territory, rule, assignment, rep or transaction does not exist."""
    status_code = 404
    code = "not_found"


class ConflictError(EngineError):
    """409-level business rule conflict (postal-code overlap, duplicate commission)."""
    status_code = 409
    code = "conflict"


class AlreadyProtectedError(EngineError):
    status_code = 409
    code = "already_protected"


class NotAssignedToRepError(EngineError):
    status_code = 409
    code = "not_assigned_to_rep"


class InvalidStateTransitionError(EngineError):
    status_code = 409
    code = "invalid_state_transition"


class ApprovalRequiredError(EngineError):
    status_code = 403
    code = "approval_required"


class AccountRepointError(EngineError):
    """The account store permanently refused to re-point accounts; the assignment rolled back."""
    status_code = 502
    code = "account_repoint_failed"


class UnavailableError(EngineError):
    """Storage-layer transient failures persisted after the bounded retries."""
    status_code = 503
    code = "unavailable"


class DeadlineExceededError(EngineError):
    status_code = 504
    code = "deadline_exceeded"
