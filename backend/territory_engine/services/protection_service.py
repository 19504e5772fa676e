# Overview: Protection policy lookup, upsert and condition evaluation per territory.

"""
Protection Rule Store.

Invariants:
- At most one rule per territory (insert-or-replace).
- A territory in status "protected" always has a rule.
- "lifetime" (first-to-sign) protection always requires an approver on
  transfer. That is hard-coded in requires_transfer_approval and no
  inheritance flag can relax it. Replacing a lifetime rule while a rep
  holds the territory needs the same approver.
- evaluate_conditions is pure: same rule + metrics -> same answer, no writes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..errors import ApprovalRequiredError, NotFoundError
from ..models import Territory, TerritoryAssignment, TerritoryProtectionRule
from ..models.territories import (
    ASSIGNMENT_ACTIVE,
    PROTECTION_FIRST_TO_SIGN,
    PROTECTION_LEVEL_PARTIAL,
    PROTECTION_PERFORMANCE_BASED,
    PROTECTION_TIME_LIMITED,
    RULE_HYBRID,
    RULE_LIFETIME,
    RULE_PERFORMANCE,
    RULE_TIME_BASED,
    TERRITORY_STATUS_ASSIGNED,
    TERRITORY_STATUS_PROTECTED,
)
from ..time_utils import Clock, add_months, utcnow
from ..validation import (
    PROTECTION_RULE_POLICY,
    enforce_rules_protection_rule,
    validate_payload,
)
from .concurrency import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF_BASE, Deadline, lock_for_update, run_in_transaction

logger = logging.getLogger(__name__)

# Default rule type when full protection is granted without an explicit rule
DEFAULT_RULE_FOR_PROTECTION_TYPE = {
    PROTECTION_FIRST_TO_SIGN: RULE_LIFETIME,
    PROTECTION_PERFORMANCE_BASED: RULE_PERFORMANCE,
    PROTECTION_TIME_LIMITED: RULE_TIME_BASED,
}


@dataclass(frozen=True)
class ProtectionMetrics:
    """Snapshot of a territory's standing, evaluated against its protection rule."""
    as_of: datetime
    account_count: int = 0
    active_account_count: int = 0
    revenue_cents: int = 0
    quota_attainment: Optional[Decimal] = None
    protection_start: Optional[datetime] = None
    protection_end: Optional[datetime] = None


@dataclass
class ReevaluationReport:
    evaluated: list[int] = field(default_factory=list)
    lapsed: list[int] = field(default_factory=list)
    completed: bool = True

    def to_dict(self) -> dict:
        return {
            "evaluated": list(self.evaluated),
            "lapsed": list(self.lapsed),
            "completed": self.completed,
        }


def _meets_performance(rule: TerritoryProtectionRule, metrics: ProtectionMetrics) -> bool:
    if rule.minimum_accounts is not None and metrics.account_count < rule.minimum_accounts:
        return False
    if rule.minimum_revenue_cents is not None and metrics.revenue_cents < rule.minimum_revenue_cents:
        return False
    if rule.performance_threshold is not None:
        if metrics.quota_attainment is None:
            return False
        if metrics.quota_attainment < Decimal(rule.performance_threshold):
            return False
    return True


def _within_time_window(rule: TerritoryProtectionRule, metrics: ProtectionMetrics) -> bool:
    if metrics.protection_end is not None and metrics.as_of >= metrics.protection_end:
        return False
    if rule.time_period_months is None:
        return True
    if metrics.protection_start is None:
        return False
    return metrics.as_of < add_months(metrics.protection_start, rule.time_period_months)


class ProtectionRuleStore:
    def __init__(
        self,
        session: Session,
        clock: Clock = utcnow,
        *,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
    ):
        self.session = session
        self.clock = clock
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    def get_rules(self, territory_id: int) -> Optional[TerritoryProtectionRule]:
        return (
            self.session.query(TerritoryProtectionRule)
            .filter_by(territory_id=territory_id)
            .first()
        )

    def set_rules(
        self,
        territory_id: int,
        data: dict,
        *,
        approved_by: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> TerritoryProtectionRule:
        """
        Insert-or-replace the territory's rule set.

        Downgrading a lifetime rule while a rep holds the territory needs
        the same approver a lifetime transfer needs.

        Raises:
            NotFoundError: unknown territory
            ValidationError: invalid rule payload
            ApprovalRequiredError: lifetime rule on a held territory replaced without approver
        """
        approver = (approved_by or "").strip()

        def _op():
            territory = lock_for_update(
                self.session.query(Territory).filter_by(id=territory_id)
            ).first()
            if not territory:
                raise NotFoundError(f"Territory {territory_id} not found", {"territory_id": territory_id})
            patch = validate_payload(
                model=TerritoryProtectionRule,
                payload=data,
                policy=PROTECTION_RULE_POLICY,
                partial=False,
            )
            enforce_rules_protection_rule(patch)

            current = self.get_rules(territory.id)
            if current is not None and current.rule_type == RULE_LIFETIME and patch["rule_type"] != RULE_LIFETIME:
                holder = (
                    self.session.query(TerritoryAssignment)
                    .filter_by(territory_id=territory.id, status=ASSIGNMENT_ACTIVE)
                    .first()
                )
                if holder is not None:
                    if not approver:
                        raise ApprovalRequiredError(
                            "Replacing a lifetime rule on a held territory requires admin approval",
                            {
                                "territory_id": territory.id,
                                "assigned_rep_id": holder.rep_id,
                                "rule_type": patch["rule_type"],
                            },
                        )
                    logger.info(
                        "Lifetime rule on territory %s replaced with %s (holder %s, approved by %s)",
                        territory.id, patch["rule_type"], holder.rep_id, approver,
                    )
            return self.upsert_rule(territory, patch)

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="set protection rules",
        )

    def upsert_rule(self, territory: Territory, patch: dict) -> TerritoryProtectionRule:
        """Replace every policy field of the territory's rule (no commit)."""
        rule = self.get_rules(territory.id)
        if rule is None:
            rule = TerritoryProtectionRule(territory_id=territory.id)
            self.session.add(rule)

        rule.rule_type = patch["rule_type"]
        rule.minimum_accounts = patch.get("minimum_accounts")
        rule.minimum_revenue_cents = patch.get("minimum_revenue_cents")
        rule.time_period_months = patch.get("time_period_months")
        rule.performance_threshold = patch.get("performance_threshold")
        rule.allow_inheritance = bool(patch.get("allow_inheritance", False))
        rule.require_approval = bool(patch.get("require_approval", False))
        rule.approved_inheritors = patch.get("approved_inheritors") or []
        rule.split_commission_enabled = bool(patch.get("split_commission_enabled", False))
        rule.split_percentage = patch.get("split_percentage")
        rule.split_conditions = patch.get("split_conditions") or []
        self.session.flush()
        return rule

    def ensure_rule(self, territory: Territory) -> TerritoryProtectionRule:
        """
        Guarantee a protected territory has a rule (no commit).

        The default type follows the territory's protection_type; "none"
        falls back to a performance rule without thresholds.
        """
        rule = self.get_rules(territory.id)
        if rule is not None:
            return rule
        rule_type = DEFAULT_RULE_FOR_PROTECTION_TYPE.get(territory.protection_type, RULE_PERFORMANCE)
        return self.upsert_rule(territory, {"rule_type": rule_type})

    @staticmethod
    def evaluate_conditions(rule: Optional[TerritoryProtectionRule], metrics: ProtectionMetrics) -> bool:
        """Whether the territory still qualifies for protection under ``rule``."""
        if rule is None:
            return False
        if rule.rule_type == RULE_LIFETIME:
            return True
        if rule.rule_type == RULE_PERFORMANCE:
            return _meets_performance(rule, metrics)
        if rule.rule_type == RULE_TIME_BASED:
            return _within_time_window(rule, metrics)
        if rule.rule_type == RULE_HYBRID:
            return _meets_performance(rule, metrics) and _within_time_window(rule, metrics)
        return False

    @staticmethod
    def requires_transfer_approval(
        rule: Optional[TerritoryProtectionRule],
        to_rep_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Reason an approver is required for a transfer, or None.

        Lifetime protection is checked first and unconditionally.
        """
        if rule is None:
            return None
        if rule.rule_type == RULE_LIFETIME:
            return "Lifetime protected territories require admin approval for transfer"
        if rule.require_approval:
            return "Territory protection policy requires approval for transfer"
        inheritors = rule.approved_inheritors or []
        if rule.allow_inheritance and inheritors and to_rep_id not in inheritors:
            return f"Rep {to_rep_id} is not an approved inheritor of this territory"
        return None

    def reevaluate_protections(
        self,
        metrics_for: Callable[[Territory, datetime], ProtectionMetrics],
        *,
        deadline: Optional[Deadline] = None,
    ) -> ReevaluationReport:
        """
        Re-check every protected territory and lapse the ones that no longer qualify.

        Externally triggered (CLI / cron). Each lapse commits on its own, so
        a deadline only leaves the unprocessed tail untouched. Running it
        twice in a row lapses nothing the second time.
        """
        deadline = deadline or Deadline(None)
        report = ReevaluationReport()
        as_of = self.clock()

        territory_ids = [
            row.id for row in
            self.session.query(Territory.id)
            .filter(Territory.status == TERRITORY_STATUS_PROTECTED, Territory.is_active.is_(True))
            .order_by(Territory.id)
            .all()
        ]

        for territory_id in territory_ids:
            if deadline.expired():
                report.completed = False
                logger.warning("Protection re-evaluation stopped at deadline; %d territories left",
                               len(territory_ids) - len(report.evaluated))
                break

            def _op(territory_id=territory_id):
                territory = lock_for_update(
                    self.session.query(Territory).filter_by(id=territory_id)
                ).first()
                if territory is None or territory.status != TERRITORY_STATUS_PROTECTED:
                    return False
                rule = self.get_rules(territory.id)
                if self.evaluate_conditions(rule, metrics_for(territory, as_of)):
                    return False
                self._lapse(territory, as_of)
                return True

            lapsed = run_in_transaction(
                _op,
                session=self.session,
                attempts=self.retry_attempts,
                backoff_base=self.backoff_base,
                deadline=deadline,
                operation="protection re-evaluation",
            )
            report.evaluated.append(territory_id)
            if lapsed:
                report.lapsed.append(territory_id)

        return report

    def _lapse(self, territory: Territory, as_of: datetime) -> None:
        territory.status = TERRITORY_STATUS_ASSIGNED
        territory.protection_end_date = territory.protection_end_date or as_of
        active = (
            self.session.query(TerritoryAssignment)
            .filter_by(territory_id=territory.id, status=ASSIGNMENT_ACTIVE)
            .first()
        )
        if active is not None:
            active.protection_level = PROTECTION_LEVEL_PARTIAL
        logger.info("Protection lapsed for territory %s (%s)", territory.id, territory.name)
