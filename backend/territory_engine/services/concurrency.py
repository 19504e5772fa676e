# Overview: Transaction boundaries, retry, row locking and deadlines for service operations.

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, DeadlineExceededError, UnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 0.1

# Backstop constraints whose violation means a concurrent writer won the race
_CONFLICT_CONSTRAINTS = {
    "uq_territory_postal_codes_claim": "Postal code already claimed by another territory",
    "uq_territory_assignments_active": "Territory already has an active assignment",
}


class Deadline:
    """
    Caller-supplied time budget for one operation.

    Uses a monotonic clock so wall-clock adjustments never extend or cut a
    budget. ``Deadline(None)`` never expires.
    """

    def __init__(self, seconds: Optional[float], *, monotonic: Callable[[], float] = time.monotonic):
        self._monotonic = monotonic
        self.seconds = seconds
        self.expires_at = None if seconds is None else monotonic() + seconds

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._monotonic())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str = "operation") -> None:
        if self.expired():
            raise DeadlineExceededError(
                f"Deadline exceeded before {operation} could complete",
                details={"timeout_seconds": self.seconds},
            )


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def _conflict_from_integrity(exc: IntegrityError) -> Optional[ConflictError]:
    text = str(getattr(exc, "orig", exc))
    for name, message in _CONFLICT_CONSTRAINTS.items():
        if name in text:
            return ConflictError(message, details={"constraint": name})
    # SQLite reports the columns rather than the constraint name
    if "territory_postal_codes.postal_code" in text:
        return ConflictError(
            _CONFLICT_CONSTRAINTS["uq_territory_postal_codes_claim"],
            details={"constraint": "uq_territory_postal_codes_claim"},
        )
    if "territory_assignments.territory_id" in text:
        return ConflictError(
            _CONFLICT_CONSTRAINTS["uq_territory_assignments_active"],
            details={"constraint": "uq_territory_assignments_active"},
        )
    return None


def run_in_transaction(
    func: Callable[[], T],
    *,
    session: Session,
    attempts: int = DEFAULT_ATTEMPTS,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    deadline: Optional[Deadline] = None,
    operation: str = "operation",
) -> T:
    """
    Execute ``func`` and commit it as one unit of work.

    - Any exception rolls the session back, so callers never observe a
      partial mutation.
    - OperationalError (deadlocks, locks) and StaleDataError (optimistic
      locking conflicts) are retried with exponential backoff; once the
      attempts are exhausted they surface as UnavailableError.
    - IntegrityError raised by a backstop uniqueness constraint becomes a
      ConflictError: a concurrent writer claimed the row first.
    """
    deadline = deadline or Deadline(None)
    last_exc: Optional[Exception] = None
    for attempt in range(attempts):
        deadline.check(operation)
        try:
            result = func()
            deadline.check(operation)
            session.commit()
            return result
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            last_exc = exc
            logger.warning(
                "%s failed on attempt %d/%d: %s", operation, attempt + 1, attempts, exc
            )
            if attempt >= attempts - 1:
                break
            delay = backoff_base * (2 ** attempt)
            remaining = deadline.remaining()
            if remaining is not None and remaining <= delay:
                break
            time.sleep(delay)
        except IntegrityError as exc:
            session.rollback()
            conflict = _conflict_from_integrity(exc)
            if conflict is not None:
                raise conflict from exc
            raise
        except BaseException:
            session.rollback()
            raise

    deadline.check(operation)
    raise UnavailableError(
        f"{operation} could not be completed: storage unavailable",
        details={"attempts": attempts},
    ) from last_exc


def retry_call(
    func: Callable[[], T],
    *,
    retry_on: tuple[type[BaseException], ...],
    attempts: int = DEFAULT_ATTEMPTS,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    deadline: Optional[Deadline] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Retry a collaborator call on transient failures.

    Unlike run_in_transaction this does not touch the session; the last
    transient error is re-raised unchanged so the caller decides how to
    surface it.
    """
    for attempt in range(attempts):
        if deadline is not None:
            deadline.check("collaborator call")
        try:
            return func()
        except retry_on as exc:
            if attempt >= attempts - 1:
                raise
            logger.warning("Transient collaborator failure (attempt %d/%d): %s", attempt + 1, attempts, exc)
            sleep(backoff_base * (2 ** attempt))
    raise RuntimeError("retry_call exhausted without result")  # pragma: no cover
