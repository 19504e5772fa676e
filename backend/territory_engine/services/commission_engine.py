# Overview: Pure commission calculation for one order (base rate, rule bonuses, built-in tiers).

"""
Commission Rule Engine.

Pure computation: nothing here writes to storage. Given the same rule
snapshot and collaborator answers, an order carrying a sale_date always
prices to equal CommissionCalculation values with equal to_dict() output.
Without a sale_date the clock reading becomes the sale date.

Steps:
1. base = order amount x rep rate (or the assignment's commission override)
2. rules filtered by activity, validity window (at the sale date) and
   applicability, then evaluated by priority desc, id asc
3. built-in defaults: monthly-volume tier bonus and new-account bonus
4. total = base + bonuses - deductions

Every line is rounded half-up to whole cents on its own.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Sequence

from ..errors import NotFoundError, ValidationError
from ..time_utils import Clock, parse_iso_datetime, period_key, to_utc_z, utcnow
from ..validation import parse_amount_cents, parse_rate
from .collaborators import AccountStore, RepProfileStore
from .commission_rules import (
    BonusCondition,
    CategoryCondition,
    NewCustomerCondition,
    PerformanceCondition,
    RuleSpec,
    TieredCondition,
)

# (monthly volume floor in cents, bonus rate %, tier name), highest first
VOLUME_TIERS = (
    (10_000_000, Decimal("5"), "platinum"),
    (5_000_000, Decimal("2"), "gold"),
    (2_500_000, Decimal("1"), "silver"),
)

NEW_ACCOUNT_MAX_AGE_DAYS = 90
NEW_ACCOUNT_BONUS_RATE = Decimal("2")

_CENT = Decimal("1")
_RATE_QUANTUM = Decimal("0.0001")

VolumeLookup = Callable[[str, str], int]


def percent_of(amount_cents: int, rate: Decimal) -> int:
    """``rate`` percent of ``amount_cents``, rounded half-up to a whole cent."""
    return int((Decimal(amount_cents) * Decimal(rate) / 100).quantize(_CENT, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class ProductLine:
    product_id: str
    category: Optional[str]
    amount_cents: int

    def to_dict(self) -> dict:
        return {"product_id": self.product_id, "category": self.category, "amount_cents": self.amount_cents}


@dataclass(frozen=True)
class OrderDetails:
    order_id: str
    rep_id: str
    business_account_id: Optional[str]
    order_amount_cents: int
    product_lines: tuple[ProductLine, ...] = ()
    territory_id: Optional[int] = None
    sale_date: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict) -> "OrderDetails":
        """Build from a JSON payload, raising ValidationError on malformed input."""
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        order_id = str(data.get("order_id") or "").strip()
        rep_id = str(data.get("rep_id") or "").strip()
        if not order_id:
            raise ValidationError("order_id is required")
        if not rep_id:
            raise ValidationError("rep_id is required")
        if "order_amount_cents" not in data:
            raise ValidationError("order_amount_cents is required")

        lines = data.get("product_lines") or []
        if not isinstance(lines, list):
            raise ValidationError("product_lines must be a list")
        product_lines = []
        for i, line in enumerate(lines):
            if not isinstance(line, dict):
                raise ValidationError(f"product_lines[{i}] must be an object")
            product_lines.append(ProductLine(
                product_id=str(line.get("product_id") or "").strip(),
                category=(str(line["category"]).strip() if line.get("category") is not None else None),
                amount_cents=parse_amount_cents(line.get("amount_cents"), f"product_lines[{i}].amount_cents"),
            ))

        territory_id = data.get("territory_id")
        if territory_id is not None:
            if isinstance(territory_id, bool) or not str(territory_id).strip().isdigit():
                raise ValidationError("territory_id must be an integer")
            territory_id = int(territory_id)

        sale_date = None
        if data.get("sale_date"):
            try:
                sale_date = parse_iso_datetime(str(data["sale_date"]))
            except ValueError:
                raise ValidationError("sale_date must be an ISO-8601 datetime")

        account_id = data.get("business_account_id")
        return cls(
            order_id=order_id,
            rep_id=rep_id,
            business_account_id=str(account_id).strip() if account_id else None,
            order_amount_cents=parse_amount_cents(data.get("order_amount_cents"), "order_amount_cents"),
            product_lines=tuple(product_lines),
            territory_id=territory_id,
            sale_date=sale_date,
        )

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "rep_id": self.rep_id,
            "business_account_id": self.business_account_id,
            "order_amount_cents": self.order_amount_cents,
            "product_lines": [line.to_dict() for line in self.product_lines],
            "territory_id": self.territory_id,
            "sale_date": to_utc_z(self.sale_date),
        }


@dataclass(frozen=True)
class CommissionLine:
    kind: str
    description: str
    amount_cents: int
    rate: Optional[Decimal] = None
    rule_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "description": self.description,
            "amount_cents": self.amount_cents,
            "rate": str(self.rate) if self.rate is not None else None,
            "rule_id": self.rule_id,
        }


@dataclass(frozen=True)
class CommissionCalculation:
    order_id: str
    rep_id: str
    business_account_id: Optional[str]
    territory_id: Optional[int]
    order_amount_cents: int
    base_rate: Decimal
    base_amount_cents: int
    bonuses: tuple[CommissionLine, ...]
    deductions: tuple[CommissionLine, ...]
    total_amount_cents: int
    effective_rate: Decimal
    sale_date: datetime
    commission_period: str
    applied_rule_ids: tuple[int, ...] = field(default=())

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "rep_id": self.rep_id,
            "business_account_id": self.business_account_id,
            "territory_id": self.territory_id,
            "order_amount_cents": self.order_amount_cents,
            "base_rate": str(self.base_rate),
            "base_amount_cents": self.base_amount_cents,
            "bonuses": [line.to_dict() for line in self.bonuses],
            "deductions": [line.to_dict() for line in self.deductions],
            "total_amount_cents": self.total_amount_cents,
            "effective_rate": str(self.effective_rate),
            "sale_date": to_utc_z(self.sale_date),
            "commission_period": self.commission_period,
            "applied_rule_ids": list(self.applied_rule_ids),
        }


class _Lookups:
    """Per-calculation memo so each collaborator is asked at most once."""

    def __init__(self, engine: "CommissionEngine", order: OrderDetails, rep, as_of: datetime, period: str):
        self._engine = engine
        self._order = order
        self._rep = rep
        self._as_of = as_of
        self._period = period
        self._volume = None
        self._age_loaded = False
        self._age = None

    @property
    def monthly_volume(self) -> int:
        if self._volume is None:
            self._volume = int(self._engine.volume_lookup(self._order.rep_id, self._period) or 0)
        return self._volume

    @property
    def account_age_days(self) -> Optional[int]:
        if not self._age_loaded:
            self._age_loaded = True
            if self._order.business_account_id:
                self._age = self._engine.account_store.get_account_age(self._order.business_account_id, self._as_of)
        return self._age

    @property
    def quota_attainment(self) -> Optional[Decimal]:
        quota = self._rep.monthly_quota_cents
        if not quota:
            return None
        return Decimal(self.monthly_volume) / Decimal(quota) * 100


class CommissionEngine:
    def __init__(
        self,
        rules: Sequence[RuleSpec],
        rep_store: RepProfileStore,
        account_store: AccountStore,
        volume_lookup: VolumeLookup,
        clock: Clock = utcnow,
    ):
        self.rules = tuple(rules)
        self.rep_store = rep_store
        self.account_store = account_store
        self.volume_lookup = volume_lookup
        self.clock = clock

    def calculate(self, order: OrderDetails, commission_override=None) -> CommissionCalculation:
        """
        Price one order's commission.

        Raises:
            ValidationError: negative amounts or missing ids
            NotFoundError: the rep is unknown to the profile store
        """
        if not order.order_id or not order.rep_id:
            raise ValidationError("order_id and rep_id are required")
        if order.order_amount_cents < 0:
            raise ValidationError("order_amount_cents must be >= 0")

        rep = self.rep_store.get_rep(order.rep_id)
        if rep is None:
            raise NotFoundError(f"Sales rep {order.rep_id} not found", {"rep_id": order.rep_id})

        # Rule windows, account age and period all follow the sale date
        sale_date = order.sale_date or self.clock()
        period = period_key(sale_date)
        lookups = _Lookups(self, order, rep, sale_date, period)

        base_rate = (
            parse_rate(commission_override, "commission_override")
            if commission_override is not None
            else Decimal(rep.commission_rate)
        )
        base_amount = percent_of(order.order_amount_cents, base_rate)

        bonuses: list[CommissionLine] = []
        deductions: list[CommissionLine] = []
        applied: list[int] = []

        for rule in self.applicable_rules(order, sale_date):
            produced = self._evaluate(rule, order, lookups)
            for line in produced:
                if line.amount_cents < 0:
                    deductions.append(CommissionLine(
                        kind="deduction",
                        description=line.description,
                        amount_cents=-line.amount_cents,
                        rate=-line.rate if line.rate is not None else None,
                        rule_id=line.rule_id,
                    ))
                elif line.amount_cents > 0:
                    bonuses.append(line)
            if produced:
                applied.append(rule.id)

        bonuses.extend(self._default_bonuses(order, lookups))

        total = base_amount + sum(b.amount_cents for b in bonuses) - sum(d.amount_cents for d in deductions)
        if order.order_amount_cents:
            effective_rate = (Decimal(total) / Decimal(order.order_amount_cents) * 100).quantize(
                _RATE_QUANTUM, rounding=ROUND_HALF_UP
            )
        else:
            effective_rate = Decimal("0")

        return CommissionCalculation(
            order_id=order.order_id,
            rep_id=order.rep_id,
            business_account_id=order.business_account_id,
            territory_id=order.territory_id,
            order_amount_cents=order.order_amount_cents,
            base_rate=base_rate,
            base_amount_cents=base_amount,
            bonuses=tuple(bonuses),
            deductions=tuple(deductions),
            total_amount_cents=total,
            effective_rate=effective_rate,
            sale_date=sale_date,
            commission_period=period,
            applied_rule_ids=tuple(applied),
        )

    def applicable_rules(self, order: OrderDetails, now: datetime) -> list[RuleSpec]:
        """Rules that apply to this order at ``now``, in evaluation order."""
        matching = [rule for rule in self.rules if self._applies(rule, order, now)]
        return sorted(matching, key=lambda rule: (-rule.priority, rule.id))

    @staticmethod
    def _applies(rule: RuleSpec, order: OrderDetails, now: datetime) -> bool:
        if not rule.is_active or not rule.is_valid_at(now):
            return False
        if rule.applies_to_reps and order.rep_id not in rule.applies_to_reps:
            return False
        if rule.applies_to_territories:
            if order.territory_id is None or str(order.territory_id) not in rule.applies_to_territories:
                return False
        if rule.applies_to_products:
            if not any(line.product_id in rule.applies_to_products for line in order.product_lines):
                return False
        # Category rules filter per line during evaluation
        if rule.applies_to_categories and not isinstance(rule.condition, CategoryCondition):
            if not any(line.category in rule.applies_to_categories for line in order.product_lines):
                return False
        return True

    def _evaluate(self, rule: RuleSpec, order: OrderDetails, lookups: _Lookups) -> list[CommissionLine]:
        condition = rule.condition
        amount = order.order_amount_cents

        if isinstance(condition, TieredCondition):
            if lookups.monthly_volume >= condition.volume_threshold_cents:
                return [CommissionLine("tiered", f"Tiered bonus: {rule.name}",
                                       percent_of(amount, condition.bonus_rate), condition.bonus_rate, rule.id)]
            return []

        if isinstance(condition, CategoryCondition):
            return [
                CommissionLine("category", f"Category bonus: {line.category}",
                               percent_of(line.amount_cents, condition.category_rate), condition.category_rate, rule.id)
                for line in order.product_lines
                if line.category in condition.categories
            ]

        if isinstance(condition, NewCustomerCondition):
            age = lookups.account_age_days
            if age is not None and age <= condition.max_account_age_days:
                return [CommissionLine("new_customer", f"New customer bonus: {rule.name}",
                                       percent_of(amount, condition.bonus_rate), condition.bonus_rate, rule.id)]
            return []

        if isinstance(condition, PerformanceCondition):
            attainment = lookups.quota_attainment
            if attainment is not None and attainment >= condition.quota_percentage:
                return [CommissionLine("performance", f"Performance bonus: {rule.name}",
                                       percent_of(amount, condition.bonus_rate), condition.bonus_rate, rule.id)]
            return []

        if isinstance(condition, BonusCondition):
            if amount < condition.min_order_amount_cents:
                return []
            if condition.fixed_amount_cents is not None:
                return [CommissionLine("bonus", f"Bonus: {rule.name}", condition.fixed_amount_cents, None, rule.id)]
            return [CommissionLine("bonus", f"Bonus: {rule.name}",
                                   percent_of(amount, condition.rate), condition.rate, rule.id)]

        return []

    def _default_bonuses(self, order: OrderDetails, lookups: _Lookups) -> list[CommissionLine]:
        lines = []
        volume = lookups.monthly_volume
        for floor, rate, tier in VOLUME_TIERS:
            if volume >= floor:
                lines.append(CommissionLine("tier_bonus", f"{tier} tier bonus",
                                            percent_of(order.order_amount_cents, rate), rate))
                break

        age = lookups.account_age_days
        if age is not None and age <= NEW_ACCOUNT_MAX_AGE_DAYS:
            lines.append(CommissionLine("new_account_bonus", "New account bonus",
                                        percent_of(order.order_amount_cents, NEW_ACCOUNT_BONUS_RATE),
                                        NEW_ACCOUNT_BONUS_RATE))
        return [line for line in lines if line.amount_cents > 0]
