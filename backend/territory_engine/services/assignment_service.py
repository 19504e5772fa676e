# backend/territory_engine/services/assignment_service.py
"""
Assignment & Transfer Coordinator.

WHY: A territory is routable to at most one rep at a time, and protected
territories must never change hands silently. Every change of holder goes
through assign() or transfer() and leaves an audit trail.

LIFECYCLE (territory status):
1. available: no active assignment
2. assigned: active assignment with partial/none protection
3. protected: active assignment with full protection (rule guaranteed)
protected -> assigned -> protected cycles happen only through transfer or a
protection lapse.

ATOMICITY: superseding the old assignment, creating the new one, appending
history and re-pointing accounts run in one transaction. A permanent
account-store failure rolls the whole change back (AccountRepointError).
The unique constraint on territory_assignments(territory_id, active_marker)
is the backstop for "one active assignment per territory".
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..errors import (
    AccountRepointError,
    AlreadyProtectedError,
    ApprovalRequiredError,
    InvalidStateTransitionError,
    NotAssignedToRepError,
    NotFoundError,
    ValidationError,
)
from ..models import (
    Territory,
    TerritoryAssignment,
    TerritoryConflict,
    TerritoryTransferHistory,
)
from ..models.territories import (
    ASSIGNMENT_ACTIVE,
    ASSIGNMENT_TRANSFERRED,
    CONFLICT_ESCALATED,
    CONFLICT_PENDING,
    CONFLICT_RESOLVED,
    CONFLICT_TYPES,
    PROTECTION_LEVEL_FULL,
    PROTECTION_LEVELS,
    TERRITORY_STATUS_ASSIGNED,
    TERRITORY_STATUS_PROTECTED,
)
from ..time_utils import Clock, utcnow
from ..validation import MAX_RATE_PERCENT, parse_rate
from .collaborators import AccountStore, CollaboratorError, SqlAccountStore, TransientCollaboratorError
from .concurrency import (
    DEFAULT_ATTEMPTS,
    DEFAULT_BACKOFF_BASE,
    Deadline,
    lock_for_update,
    retry_call,
    run_in_transaction,
)
from .protection_service import ProtectionRuleStore
from .territory_validation import validate_assignment

logger = logging.getLogger(__name__)

# Allowed conflict resolution moves
_CONFLICT_TRANSITIONS = {
    CONFLICT_PENDING: (CONFLICT_RESOLVED, CONFLICT_ESCALATED),
    CONFLICT_ESCALATED: (CONFLICT_RESOLVED,),
}


def _required(value, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return str(value).strip()


def open_assignment(
    session: Session,
    territory: Territory,
    *,
    rep_id: str,
    assigned_by: str,
    protection_level: str,
    now: datetime,
    protection: ProtectionRuleStore,
    commission_override=None,
    notes: Optional[str] = None,
) -> TerritoryAssignment:
    """
    Create the territory's active assignment and move the territory to
    assigned/protected (no commit).

    The caller must already have superseded any previous active assignment.
    """
    assignment = TerritoryAssignment(
        territory_id=territory.id,
        rep_id=rep_id,
        assigned_date=now,
        assigned_by=assigned_by,
        status=ASSIGNMENT_ACTIVE,
        active_marker=True,
        protection_level=protection_level,
        commission_override=commission_override,
        notes=notes,
    )
    session.add(assignment)

    territory.assigned_rep_id = rep_id
    territory.status = (
        TERRITORY_STATUS_PROTECTED if protection_level == PROTECTION_LEVEL_FULL else TERRITORY_STATUS_ASSIGNED
    )
    territory.protection_start_date = now
    # A stale end date would lapse the new protection on the next re-evaluation
    if territory.protection_end_date is not None and territory.protection_end_date <= now:
        territory.protection_end_date = None
    session.flush()

    if territory.status == TERRITORY_STATUS_PROTECTED:
        protection.ensure_rule(territory)
    return assignment


class AssignmentCoordinator:
    def __init__(
        self,
        session: Session,
        clock: Clock = utcnow,
        account_store: Optional[AccountStore] = None,
        *,
        protection: Optional[ProtectionRuleStore] = None,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        collaborator_attempts: int = DEFAULT_ATTEMPTS,
        collaborator_backoff_base: float = 0.2,
    ):
        self.session = session
        self.clock = clock
        self.account_store = account_store or SqlAccountStore(session)
        self.protection = protection or ProtectionRuleStore(
            session, clock, retry_attempts=retry_attempts, backoff_base=backoff_base
        )
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base
        self.collaborator_attempts = collaborator_attempts
        self.collaborator_backoff_base = collaborator_backoff_base

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_assignment(self, territory_id: int) -> Optional[TerritoryAssignment]:
        return (
            self.session.query(TerritoryAssignment)
            .filter_by(territory_id=territory_id, status=ASSIGNMENT_ACTIVE)
            .first()
        )

    def list_assignments(self, territory_id: int) -> list[TerritoryAssignment]:
        """Full assignment history of a territory, newest first."""
        self._get_territory(territory_id)
        return (
            self.session.query(TerritoryAssignment)
            .filter_by(territory_id=territory_id)
            .order_by(TerritoryAssignment.assigned_date.desc(), TerritoryAssignment.id.desc())
            .all()
        )

    def assignment_warnings(self, territory_id: int, rep_id: str) -> list[str]:
        """Advisory load-balancing / adjacency warnings for a prospective assignment."""
        territory = self._get_territory(territory_id)
        held = (
            self.session.query(Territory)
            .filter(
                Territory.assigned_rep_id == rep_id,
                Territory.is_active.is_(True),
                Territory.id != territory.id,
            )
            .all()
        )
        result = validate_assignment(territory.postal_codes, [t.postal_codes for t in held])
        return result.warnings

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def assign(
        self,
        territory_id: int,
        rep_id: str,
        assigned_by: str,
        protection_level: str = PROTECTION_LEVEL_FULL,
        commission_override=None,
        notes: Optional[str] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> TerritoryAssignment:
        """
        Give the territory to ``rep_id``.

        Raises:
            NotFoundError: territory does not exist
            ValidationError: territory deactivated or inputs invalid
            AlreadyProtectedError: territory is protected by an active assignment, or its
                rule requires an approved transfer to move it to another rep
            AccountRepointError: accounts could not be re-pointed (nothing committed)
        """
        rep_id = _required(rep_id, "rep_id")
        assigned_by = _required(assigned_by, "assigned_by")
        if protection_level not in PROTECTION_LEVELS:
            raise ValidationError(f"protection_level must be one of: {', '.join(PROTECTION_LEVELS)}")
        override = self._parse_override(commission_override)

        def _op():
            territory = self._lock_territory(territory_id)
            active = self.get_active_assignment(territory.id)

            if territory.status == TERRITORY_STATUS_PROTECTED and active is not None:
                raise AlreadyProtectedError(
                    f"Territory {territory.name} is protected for rep {active.rep_id}; use transfer",
                    {"territory_id": territory.id, "assigned_rep_id": active.rep_id},
                )
            if active is not None and active.rep_id != rep_id:
                # Moving a held territory is a transfer; its approval policy applies even below full protection
                rule = self.protection.get_rules(territory.id)
                approval_reason = self.protection.requires_transfer_approval(rule, rep_id)
                if approval_reason:
                    raise AlreadyProtectedError(
                        f"{approval_reason}; use transfer to move territory {territory.name} "
                        f"from rep {active.rep_id}",
                        {
                            "territory_id": territory.id,
                            "assigned_rep_id": active.rep_id,
                            "rule_type": rule.rule_type,
                        },
                    )

            now = self.clock()
            if active is not None:
                self._supersede(active, now)

            assignment = open_assignment(
                self.session,
                territory,
                rep_id=rep_id,
                assigned_by=assigned_by,
                protection_level=protection_level,
                now=now,
                protection=self.protection,
                commission_override=override,
                notes=notes,
            )
            if active is not None:
                self._append_history(
                    territory, assignment, active.rep_id, rep_id, now,
                    reason="Reassigned", approved_by=assigned_by,
                )
            self._repoint(territory.id, rep_id, deadline)
            return assignment

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="assign territory",
        )

    def transfer(
        self,
        territory_id: int,
        from_rep_id: str,
        to_rep_id: str,
        reason: str,
        approved_by: Optional[str] = None,
        requested_by: Optional[str] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> TerritoryAssignment:
        """
        Move the territory from its current holder to ``to_rep_id``.

        The protection level (and any commission override) carries over to
        the new assignment. Lifetime protection always needs an approver.
        """
        from_rep_id = _required(from_rep_id, "from_rep_id")
        to_rep_id = _required(to_rep_id, "to_rep_id")
        reason = _required(reason, "reason")
        if to_rep_id == from_rep_id:
            raise ValidationError(
                "Cannot transfer a territory to the rep who already holds it",
                {"territory_id": territory_id, "rep_id": from_rep_id},
            )
        approver = (approved_by or "").strip() or None

        def _op():
            territory = self._lock_territory(territory_id)
            active = self.get_active_assignment(territory.id)
            if active is None or active.rep_id != from_rep_id:
                raise NotAssignedToRepError(
                    f"Territory {territory.name} is not assigned to rep {from_rep_id}",
                    {
                        "territory_id": territory.id,
                        "current_rep_id": active.rep_id if active else None,
                    },
                )

            rule = self.protection.get_rules(territory.id)
            approval_reason = self.protection.requires_transfer_approval(rule, to_rep_id)
            if approval_reason and not approver:
                raise ApprovalRequiredError(
                    approval_reason,
                    {"territory_id": territory.id, "rule_type": rule.rule_type if rule else None},
                )

            now = self.clock()
            self._supersede(active, now)
            assignment = open_assignment(
                self.session,
                territory,
                rep_id=to_rep_id,
                assigned_by=approver or (requested_by or "").strip() or from_rep_id,
                protection_level=active.protection_level,
                now=now,
                protection=self.protection,
                commission_override=active.commission_override,
                notes=f"Transferred from {from_rep_id}: {reason}",
            )
            self._append_history(territory, assignment, from_rep_id, to_rep_id, now, reason, approver)
            self._repoint(territory.id, to_rep_id, deadline)
            logger.info("Territory %s transferred from %s to %s", territory.id, from_rep_id, to_rep_id)
            return assignment

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="transfer territory",
        )

    def report_conflict(
        self,
        territory_id: int,
        reporting_rep_id: str,
        conflict_type: str,
        details: Optional[str] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> TerritoryConflict:
        """Record a dispute for manual resolution; assignment state is untouched."""
        reporting_rep_id = _required(reporting_rep_id, "reporting_rep_id")
        if conflict_type not in CONFLICT_TYPES:
            raise ValidationError(f"conflict_type must be one of: {', '.join(CONFLICT_TYPES)}")

        def _op():
            territory = self._get_territory(territory_id)
            conflict = TerritoryConflict(
                territory_id=territory.id,
                reporting_rep_id=reporting_rep_id,
                current_rep_id=territory.assigned_rep_id,
                conflict_type=conflict_type,
                details=details,
                resolution_status=CONFLICT_PENDING,
                created_at=self.clock(),
            )
            self.session.add(conflict)
            self.session.flush()
            return conflict

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="report conflict",
        )

    def resolve_conflict(
        self,
        conflict_id: int,
        resolved_by: str,
        status: str = CONFLICT_RESOLVED,
        notes: Optional[str] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> TerritoryConflict:
        resolved_by = _required(resolved_by, "resolved_by")

        def _op():
            conflict = lock_for_update(
                self.session.query(TerritoryConflict).filter_by(id=conflict_id)
            ).first()
            if conflict is None:
                raise NotFoundError(f"Conflict {conflict_id} not found", {"conflict_id": conflict_id})
            allowed = _CONFLICT_TRANSITIONS.get(conflict.resolution_status, ())
            if status not in allowed:
                raise InvalidStateTransitionError(
                    f"Cannot move conflict from {conflict.resolution_status} to {status}",
                    {"conflict_id": conflict.id, "resolution_status": conflict.resolution_status},
                )
            conflict.resolution_status = status
            conflict.resolution_notes = notes
            conflict.resolved_by = resolved_by
            if status == CONFLICT_RESOLVED:
                conflict.resolved_at = self.clock()
            self.session.flush()
            return conflict

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="resolve conflict",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_territory(self, territory_id: int) -> Territory:
        territory = self.session.get(Territory, territory_id)
        if territory is None:
            raise NotFoundError(f"Territory {territory_id} not found", {"territory_id": territory_id})
        return territory

    def _lock_territory(self, territory_id: int) -> Territory:
        territory = lock_for_update(
            self.session.query(Territory).filter_by(id=territory_id)
        ).first()
        if territory is None:
            raise NotFoundError(f"Territory {territory_id} not found", {"territory_id": territory_id})
        if not territory.is_active:
            raise ValidationError(
                f"Territory {territory_id} is deactivated",
                {"territory_id": territory_id},
            )
        return territory

    @staticmethod
    def _parse_override(value):
        if value is None or value == "":
            return None
        rate = parse_rate(value, "commission_override")
        if rate < 0 or rate > MAX_RATE_PERCENT:
            raise ValidationError("commission_override must be between 0 and 100")
        return rate

    def _supersede(self, assignment: TerritoryAssignment, now: datetime) -> None:
        assignment.status = ASSIGNMENT_TRANSFERRED
        assignment.active_marker = None
        assignment.ended_at = now
        # Release the active slot before the replacement is inserted
        self.session.flush()

    def _append_history(
        self,
        territory: Territory,
        assignment: TerritoryAssignment,
        from_rep_id: str,
        to_rep_id: str,
        now: datetime,
        reason: str,
        approved_by: Optional[str],
    ) -> TerritoryTransferHistory:
        entry = TerritoryTransferHistory(
            territory_id=territory.id,
            assignment_id=assignment.id,
            from_rep_id=from_rep_id,
            to_rep_id=to_rep_id,
            transfer_date=now,
            reason=reason,
            approved_by=approved_by,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def _repoint(self, territory_id: int, rep_id: str, deadline: Optional[Deadline]) -> int:
        try:
            moved = retry_call(
                lambda: self.account_store.repoint_accounts(territory_id, rep_id),
                retry_on=(TransientCollaboratorError,),
                attempts=self.collaborator_attempts,
                backoff_base=self.collaborator_backoff_base,
                deadline=deadline,
            )
        except CollaboratorError as exc:
            raise AccountRepointError(
                f"Could not re-point accounts of territory {territory_id} to rep {rep_id}",
                {"territory_id": territory_id, "rep_id": rep_id, "reason": str(exc)},
            ) from exc
        logger.info("Re-pointed %s accounts of territory %s to rep %s", moved, territory_id, rep_id)
        return moved
