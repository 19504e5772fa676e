# backend/territory_engine/services/territory_service.py
"""
Territory Registry.

WHY: Canonical store of territories and of postal-code ownership. A postal
code may be claimed by at most one live (non-deactivated) territory,
whatever that territory's status: available and house territories
participate in the conflict check too, so assignment never trips over a
code that was silently double-listed.

CONCURRENCY: the conflict check and the write run in one transaction, and
the unique constraint on territory_postal_codes(postal_code, claim_active)
is the backstop when two writers pass the check at the same time. Conflicts
are always reported, never resolved by "last write wins".
"""
from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ..errors import ConflictError, InvalidStateTransitionError, NotFoundError, ValidationError
from ..models import Territory, TerritoryAssignment, TerritoryPostalCode
from ..models.territories import (
    ASSIGNMENT_ACTIVE,
    PROTECTION_LEVEL_FULL,
    PROTECTION_LEVELS,
    TERRITORY_STATUS_ASSIGNED,
    TERRITORY_STATUS_AVAILABLE,
    TERRITORY_STATUS_PROTECTED,
    TERRITORY_STATUSES,
)
from ..time_utils import Clock, utcnow
from ..validation import TERRITORY_POLICY, enforce_rules_territory, validate_payload
from .assignment_service import open_assignment
from .collaborators import AccountStore, SqlAccountStore
from .concurrency import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF_BASE, Deadline, lock_for_update, run_in_transaction
from .protection_service import ProtectionRuleStore
from .territory_validation import ValidationResult, normalize_postal_codes, validate_territory

# Keys accepted on create/update that are not Territory columns
_CREATE_EXTRAS = frozenset({"postal_codes", "assigned_rep_id", "protection_level", "assigned_by"})
_UPDATE_EXTRAS = frozenset({"postal_codes"})

ROUTABLE_STATUSES = (TERRITORY_STATUS_ASSIGNED, TERRITORY_STATUS_PROTECTED)


def _conflict_message(conflicts: list[dict]) -> str:
    listed = ", ".join(f"{c['postal_code']} ({c['territory_name']})" for c in conflicts)
    return f"Postal codes already assigned to other territories: {listed}"


class TerritoryRegistry:
    def __init__(
        self,
        session: Session,
        clock: Clock = utcnow,
        *,
        protection: Optional[ProtectionRuleStore] = None,
        account_store: Optional[AccountStore] = None,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
    ):
        self.session = session
        self.clock = clock
        self.protection = protection or ProtectionRuleStore(
            session, clock, retry_attempts=retry_attempts, backoff_base=backoff_base
        )
        self.account_store = account_store or SqlAccountStore(session)
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_territory(self, territory_id: int) -> Territory:
        territory = self.session.get(Territory, territory_id)
        if territory is None:
            raise NotFoundError(f"Territory {territory_id} not found", {"territory_id": territory_id})
        return territory

    def list_territories(
        self,
        *,
        state: Optional[str] = None,
        status: Optional[str] = None,
        rep_id: Optional[str] = None,
        include_inactive: bool = False,
    ) -> list[Territory]:
        q = self.session.query(Territory)
        if not include_inactive:
            q = q.filter(Territory.is_active.is_(True))
        if state:
            q = q.filter(Territory.state == state.upper())
        if status:
            if status not in TERRITORY_STATUSES:
                raise ValidationError(f"status must be one of: {', '.join(TERRITORY_STATUSES)}")
            q = q.filter(Territory.status == status)
        if rep_id:
            q = q.filter(Territory.assigned_rep_id == rep_id)
        return q.order_by(Territory.name, Territory.id).all()

    def get_rep_territories(self, rep_id: str) -> list[Territory]:
        return self.list_territories(rep_id=rep_id)

    def check_conflicts(
        self,
        postal_codes: Iterable[str],
        exclude_territory_id: Optional[int] = None,
    ) -> list[dict]:
        """
        Codes already claimed by another live territory, with their owners.

        Pure query; results follow the order of ``postal_codes``.
        """
        codes = normalize_postal_codes(postal_codes)
        if not codes:
            return []

        q = (
            self.session.query(TerritoryPostalCode.postal_code, Territory.id, Territory.name, Territory.status)
            .join(Territory, Territory.id == TerritoryPostalCode.territory_id)
            .filter(
                TerritoryPostalCode.postal_code.in_(codes),
                TerritoryPostalCode.claim_active.is_(True),
                Territory.is_active.is_(True),
            )
        )
        if exclude_territory_id is not None:
            q = q.filter(Territory.id != exclude_territory_id)

        owners = {row.postal_code: row for row in q.all()}
        return [
            {
                "postal_code": code,
                "territory_id": owners[code].id,
                "territory_name": owners[code].name,
                "territory_status": owners[code].status,
            }
            for code in codes
            if code in owners
        ]

    def find_by_postal_code(self, postal_code: str) -> Optional[Territory]:
        """The assigned/protected territory routing this code, if any."""
        code = (postal_code or "").strip()
        if not code:
            return None
        return (
            self.session.query(Territory)
            .join(TerritoryPostalCode, TerritoryPostalCode.territory_id == Territory.id)
            .filter(
                TerritoryPostalCode.postal_code == code,
                TerritoryPostalCode.claim_active.is_(True),
                Territory.is_active.is_(True),
                Territory.status.in_(ROUTABLE_STATUSES),
            )
            .first()
        )

    def validate(self, data: dict, exclude_territory_id: Optional[int] = None) -> ValidationResult:
        """Full advisory validation (errors + warnings) without writing anything."""
        codes = normalize_postal_codes(data.get("postal_codes"))
        state = data.get("state")
        return validate_territory(
            data.get("name"),
            codes,
            state.upper() if isinstance(state, str) else state,
            find_conflicts=lambda c: self.check_conflicts(c, exclude_territory_id),
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_territory(
        self,
        data: dict,
        *,
        created_by: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> Territory:
        """
        Create a territory after checking its postal codes against every live territory.

        Status is "available" unless assigned_rep_id is supplied, in which
        case the first assignment is opened in the same transaction
        ("protected" for full protection, else "assigned").
        """
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        postal_codes = normalize_postal_codes(data.get("postal_codes"))

        def _op():
            patch = validate_payload(
                model=Territory,
                payload=data,
                policy=TERRITORY_POLICY,
                partial=False,
                ignore=_CREATE_EXTRAS,
            )
            enforce_rules_territory(patch, creating=True)
            self._validate_definition(patch.get("name"), postal_codes, patch.get("state"))
            self._raise_on_conflicts(postal_codes)

            territory = Territory(**patch)
            territory.status = patch.get("status") or TERRITORY_STATUS_AVAILABLE
            territory.postal_code_rows = [
                TerritoryPostalCode(postal_code=code, position=i, claim_active=True)
                for i, code in enumerate(postal_codes)
            ]
            self.session.add(territory)
            self.session.flush()

            rep_id = data.get("assigned_rep_id")
            if rep_id:
                protection_level = data.get("protection_level") or PROTECTION_LEVEL_FULL
                if protection_level not in PROTECTION_LEVELS:
                    raise ValidationError(f"protection_level must be one of: {', '.join(PROTECTION_LEVELS)}")
                open_assignment(
                    self.session,
                    territory,
                    rep_id=str(rep_id).strip(),
                    assigned_by=data.get("assigned_by") or created_by or "system",
                    protection_level=protection_level,
                    now=self.clock(),
                    protection=self.protection,
                )
            return territory

        return self._run(_op, postal_codes, None, deadline, "create territory")

    def update_territory(
        self,
        territory_id: int,
        data: dict,
        *,
        deadline: Optional[Deadline] = None,
    ) -> Territory:
        """
        Partial update. Only postal codes being added are conflict-checked
        (excluding this territory); removed codes release their claims.
        """
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        new_codes = normalize_postal_codes(data["postal_codes"]) if "postal_codes" in data else None

        def _op():
            territory = lock_for_update(
                self.session.query(Territory).filter_by(id=territory_id)
            ).first()
            if not territory:
                raise NotFoundError(f"Territory {territory_id} not found", {"territory_id": territory_id})
            if not territory.is_active:
                raise InvalidStateTransitionError(
                    f"Territory {territory_id} is deactivated and cannot be updated",
                    {"territory_id": territory_id},
                )

            patch = validate_payload(
                model=Territory,
                payload=data,
                policy=TERRITORY_POLICY,
                partial=True,
                ignore=_UPDATE_EXTRAS,
            )
            enforce_rules_territory(patch, creating=False)

            if "status" in patch and patch["status"] != territory.status and self._has_active_assignment(territory.id):
                raise InvalidStateTransitionError(
                    "Cannot change the status of a territory with an active assignment; use transfer",
                    {"territory_id": territory.id, "status": territory.status},
                )

            codes = new_codes if new_codes is not None else territory.postal_codes
            self._validate_definition(
                patch.get("name", territory.name),
                codes,
                patch.get("state", territory.state),
            )

            if new_codes is not None:
                current = set(territory.postal_codes)
                added = [code for code in new_codes if code not in current]
                self._raise_on_conflicts(added, exclude_territory_id=territory.id)

                rows_by_code = {row.postal_code: row for row in territory.postal_code_rows}
                territory.postal_code_rows = [
                    rows_by_code.get(code) or TerritoryPostalCode(postal_code=code, claim_active=True)
                    for code in new_codes
                ]
                for i, row in enumerate(territory.postal_code_rows):
                    row.position = i

            for key, value in patch.items():
                setattr(territory, key, value)

            self.session.flush()
            return territory

        return self._run(_op, new_codes or [], territory_id, deadline, "update territory")

    def deactivate_territory(self, territory_id: int, *, deadline: Optional[Deadline] = None) -> Territory:
        """
        Retire a territory without deleting it; its postal codes become claimable.

        Refused while a rep actively holds the territory.
        """
        def _op():
            territory = lock_for_update(
                self.session.query(Territory).filter_by(id=territory_id)
            ).first()
            if not territory:
                raise NotFoundError(f"Territory {territory_id} not found", {"territory_id": territory_id})
            if not territory.is_active:
                return territory
            if self._has_active_assignment(territory.id):
                raise InvalidStateTransitionError(
                    "Cannot deactivate a territory with an active assignment",
                    {"territory_id": territory.id, "assigned_rep_id": territory.assigned_rep_id},
                )
            territory.is_active = False
            territory.deactivated_at = self.clock()
            territory.status = TERRITORY_STATUS_AVAILABLE
            for row in territory.postal_code_rows:
                row.claim_active = None
            self.session.flush()
            return territory

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="deactivate territory",
        )

    def route_account(
        self,
        business_account_id: str,
        postal_code: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> Optional[Territory]:
        """
        Attach an account to the territory routing its postal code.

        Returns the territory, or None when no assigned/protected territory
        covers the code (the account is left untouched).
        """
        if not business_account_id or not str(business_account_id).strip():
            raise ValidationError("business_account_id is required")

        def _op():
            territory = self.find_by_postal_code(postal_code)
            if territory is None:
                return None
            if not self.account_store.attach_account(str(business_account_id).strip(), territory.id, territory.assigned_rep_id):
                raise NotFoundError(
                    f"Business account {business_account_id} not found",
                    {"business_account_id": business_account_id},
                )
            return territory

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="route account",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run(self, op, postal_codes: list[str], exclude_territory_id, deadline, operation: str):
        try:
            return run_in_transaction(
                op,
                session=self.session,
                attempts=self.retry_attempts,
                backoff_base=self.backoff_base,
                deadline=deadline,
                operation=operation,
            )
        except ConflictError as exc:
            if "conflicts" in exc.details or not postal_codes:
                raise
            # Lost the race to a concurrent writer: report who holds the codes now
            conflicts = self.check_conflicts(postal_codes, exclude_territory_id)
            if not conflicts:
                raise
            raise ConflictError(_conflict_message(conflicts), {"conflicts": conflicts}) from exc

    def _validate_definition(self, name, postal_codes, state) -> None:
        result = validate_territory(name, postal_codes, state)
        if not result.is_valid:
            raise ValidationError(result.errors[0], {"errors": result.errors, "warnings": result.warnings})

    def _raise_on_conflicts(self, postal_codes: list[str], exclude_territory_id: Optional[int] = None) -> None:
        conflicts = self.check_conflicts(postal_codes, exclude_territory_id)
        if conflicts:
            raise ConflictError(_conflict_message(conflicts), {"conflicts": conflicts})

    def _has_active_assignment(self, territory_id: int) -> bool:
        return (
            self.session.query(TerritoryAssignment.id)
            .filter_by(territory_id=territory_id, status=ASSIGNMENT_ACTIVE)
            .first()
            is not None
        )
