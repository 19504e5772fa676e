# Overview: Commission rule conditions (closed union) and rule CRUD.

"""
Commission rules.

A rule row stores its conditions and rate structure as JSON; they are
parsed once, at write time and again when a snapshot is taken, into one of
the frozen condition dataclasses below. The engine dispatches on the
dataclass type, so a rule whose JSON cannot be parsed never reaches it.

JSON shapes by rule_type:

    tiered        conditions: {"volume_threshold_cents": int}
                  rate_structure: {"bonus_rate": pct}
    category      conditions: {"categories": [str, ...]}  (or applies_to_categories)
                  rate_structure: {"category_rate": pct}
    new_customer  conditions: {"max_account_age_days": int}
                  rate_structure: {"bonus_rate": pct}
    performance   conditions: {"quota_percentage": pct}
                  rate_structure: {"bonus_rate": pct}
    bonus         conditions: {"min_order_amount_cents": int}  (optional)
                  rate_structure: {"rate": pct} or {"fixed_amount_cents": int}
                  Negative results are booked as deductions.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.orm import Session

from ..errors import NotFoundError, ValidationError
from ..models import CommissionRule
from ..models.commissions import (
    COMMISSION_RULE_TYPES,
    RULE_TYPE_BONUS,
    RULE_TYPE_CATEGORY,
    RULE_TYPE_NEW_CUSTOMER,
    RULE_TYPE_PERFORMANCE,
    RULE_TYPE_TIERED,
)
from ..time_utils import Clock, utcnow
from ..validation import (
    COMMISSION_RULE_POLICY,
    MAX_RATE_PERCENT,
    enforce_rules_commission_rule,
    parse_amount_cents,
    parse_rate,
    validate_payload,
)
from .concurrency import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF_BASE, Deadline, lock_for_update, run_in_transaction


@dataclass(frozen=True)
class TieredCondition:
    volume_threshold_cents: int
    bonus_rate: Decimal


@dataclass(frozen=True)
class CategoryCondition:
    categories: tuple[str, ...]
    category_rate: Decimal


@dataclass(frozen=True)
class NewCustomerCondition:
    max_account_age_days: int
    bonus_rate: Decimal


@dataclass(frozen=True)
class PerformanceCondition:
    quota_percentage: Decimal
    bonus_rate: Decimal


@dataclass(frozen=True)
class BonusCondition:
    rate: Optional[Decimal] = None
    fixed_amount_cents: Optional[int] = None
    min_order_amount_cents: int = 0


RuleCondition = Union[TieredCondition, CategoryCondition, NewCustomerCondition, PerformanceCondition, BonusCondition]


@dataclass(frozen=True)
class RuleSpec:
    """Immutable snapshot of one commission rule, as the engine sees it."""
    id: int
    name: str
    rule_type: str
    priority: int
    condition: RuleCondition
    applies_to_reps: tuple[str, ...] = ()
    applies_to_territories: tuple[str, ...] = ()
    applies_to_products: tuple[str, ...] = ()
    applies_to_categories: tuple[str, ...] = ()
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    is_active: bool = True

    @classmethod
    def from_model(cls, rule: CommissionRule) -> "RuleSpec":
        return cls(
            id=rule.id,
            name=rule.name,
            rule_type=rule.rule_type,
            priority=rule.priority or 0,
            condition=parse_condition(
                rule.rule_type, rule.conditions, rule.rate_structure, rule.applies_to_categories
            ),
            applies_to_reps=tuple(rule.applies_to_reps or ()),
            applies_to_territories=tuple(str(t) for t in (rule.applies_to_territories or ())),
            applies_to_products=tuple(rule.applies_to_products or ()),
            applies_to_categories=tuple(rule.applies_to_categories or ()),
            valid_from=rule.valid_from,
            valid_to=rule.valid_to,
            is_active=bool(rule.is_active),
        )

    def is_valid_at(self, now: datetime) -> bool:
        if self.valid_from is not None and now < self.valid_from:
            return False
        if self.valid_to is not None and now > self.valid_to:
            return False
        return True


def _rate(source: dict, key: str, *, allow_negative: bool = False) -> Decimal:
    if source.get(key) is None:
        raise ValidationError(f"rate_structure.{key} is required")
    rate = parse_rate(source[key], f"rate_structure.{key}")
    if abs(rate) > MAX_RATE_PERCENT or (rate < 0 and not allow_negative):
        raise ValidationError(f"rate_structure.{key} must be between 0 and 100")
    return rate


def _whole(source: dict, key: str, *, required: bool = True, default: int = 0) -> int:
    if source.get(key) is None:
        if required:
            raise ValidationError(f"conditions.{key} is required")
        return default
    return parse_amount_cents(source[key], f"conditions.{key}")


def parse_condition(
    rule_type: str,
    conditions: Optional[dict],
    rate_structure: Optional[dict],
    applies_to_categories=None,
) -> RuleCondition:
    """Turn a rule's JSON documents into its condition dataclass, or raise ValidationError."""
    conditions = conditions or {}
    rate_structure = rate_structure or {}
    if not isinstance(conditions, dict) or not isinstance(rate_structure, dict):
        raise ValidationError("conditions and rate_structure must be objects")

    if rule_type == RULE_TYPE_TIERED:
        return TieredCondition(
            volume_threshold_cents=_whole(conditions, "volume_threshold_cents"),
            bonus_rate=_rate(rate_structure, "bonus_rate"),
        )

    if rule_type == RULE_TYPE_CATEGORY:
        categories = conditions.get("categories") or applies_to_categories or []
        if not isinstance(categories, (list, tuple)) or not categories:
            raise ValidationError("category rules need conditions.categories or applies_to_categories")
        return CategoryCondition(
            categories=tuple(str(c).strip() for c in categories),
            category_rate=_rate(rate_structure, "category_rate"),
        )

    if rule_type == RULE_TYPE_NEW_CUSTOMER:
        return NewCustomerCondition(
            max_account_age_days=_whole(conditions, "max_account_age_days"),
            bonus_rate=_rate(rate_structure, "bonus_rate"),
        )

    if rule_type == RULE_TYPE_PERFORMANCE:
        if conditions.get("quota_percentage") is None:
            raise ValidationError("conditions.quota_percentage is required")
        quota = parse_rate(conditions["quota_percentage"], "conditions.quota_percentage")
        if quota < 0:
            raise ValidationError("conditions.quota_percentage must be >= 0")
        return PerformanceCondition(
            quota_percentage=quota,
            bonus_rate=_rate(rate_structure, "bonus_rate"),
        )

    if rule_type == RULE_TYPE_BONUS:
        has_rate = rate_structure.get("rate") is not None
        has_fixed = rate_structure.get("fixed_amount_cents") is not None
        if has_rate == has_fixed:
            raise ValidationError("bonus rules need exactly one of rate_structure.rate or rate_structure.fixed_amount_cents")
        return BonusCondition(
            rate=_rate(rate_structure, "rate", allow_negative=True) if has_rate else None,
            fixed_amount_cents=(
                parse_amount_cents(rate_structure["fixed_amount_cents"], "rate_structure.fixed_amount_cents",
                                   allow_negative=True)
                if has_fixed else None
            ),
            min_order_amount_cents=_whole(conditions, "min_order_amount_cents", required=False),
        )

    raise ValidationError(f"rule_type must be one of: {', '.join(COMMISSION_RULE_TYPES)}")


class CommissionRuleStore:
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

    def get_rule(self, rule_id: int) -> CommissionRule:
        rule = self.session.get(CommissionRule, rule_id)
        if rule is None:
            raise NotFoundError(f"Commission rule {rule_id} not found", {"rule_id": rule_id})
        return rule

    def list_rules(self, *, include_inactive: bool = False, rule_type: Optional[str] = None) -> list[CommissionRule]:
        q = self.session.query(CommissionRule)
        if not include_inactive:
            q = q.filter(CommissionRule.is_active.is_(True))
        if rule_type:
            q = q.filter(CommissionRule.rule_type == rule_type)
        return q.order_by(CommissionRule.priority.desc(), CommissionRule.id.asc()).all()

    def active_rules_snapshot(self) -> list[RuleSpec]:
        """Active rules in evaluation order; validity windows are checked by the engine."""
        return [RuleSpec.from_model(rule) for rule in self.list_rules()]

    def create_rule(
        self,
        data: dict,
        *,
        created_by: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> CommissionRule:
        def _op():
            patch = validate_payload(
                model=CommissionRule,
                payload=data,
                policy=COMMISSION_RULE_POLICY,
                partial=False,
            )
            enforce_rules_commission_rule(patch)
            parse_condition(
                patch["rule_type"], patch.get("conditions"), patch.get("rate_structure"),
                patch.get("applies_to_categories"),
            )
            rule = CommissionRule(**patch)
            rule.conditions = patch.get("conditions") or {}
            rule.rate_structure = patch.get("rate_structure") or {}
            rule.created_by = created_by
            self.session.add(rule)
            self.session.flush()
            return rule

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="create commission rule",
        )

    def update_rule(self, rule_id: int, data: dict, *, deadline: Optional[Deadline] = None) -> CommissionRule:
        def _op():
            rule = lock_for_update(
                self.session.query(CommissionRule).filter_by(id=rule_id)
            ).first()
            if rule is None:
                raise NotFoundError(f"Commission rule {rule_id} not found", {"rule_id": rule_id})
            patch = validate_payload(
                model=CommissionRule,
                payload=data,
                policy=COMMISSION_RULE_POLICY,
                partial=True,
            )
            enforce_rules_commission_rule(patch)

            merged = {
                key: patch.get(key, getattr(rule, key))
                for key in ("rule_type", "conditions", "rate_structure", "applies_to_categories", "valid_from", "valid_to")
            }
            if merged["valid_from"] and merged["valid_to"] and merged["valid_to"] < merged["valid_from"]:
                raise ValidationError("valid_to must not be before valid_from")
            parse_condition(
                merged["rule_type"], merged["conditions"], merged["rate_structure"], merged["applies_to_categories"]
            )

            for key, value in patch.items():
                setattr(rule, key, value)
            self.session.flush()
            return rule

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="update commission rule",
        )

    def deactivate_rule(self, rule_id: int, *, deadline: Optional[Deadline] = None) -> CommissionRule:
        return self.update_rule(rule_id, {"is_active": False}, deadline=deadline)
