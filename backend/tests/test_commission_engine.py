# Overview: Pytest coverage for commission calculation (pure; no database).

"""
Commission Engine Tests

The engine only sees a rule snapshot, two collaborator stores, a volume
lookup and a clock, so these tests run against in-memory fakes.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from territory_engine.errors import NotFoundError, ValidationError
from territory_engine.services.collaborators import AccountStore, RepProfile, RepProfileStore
from territory_engine.services.commission_engine import (
    CommissionEngine,
    OrderDetails,
    ProductLine,
    percent_of,
)
from territory_engine.services.commission_rules import RuleSpec, parse_condition

NOW = datetime(2026, 9, 15, 12, 0, 0)


class FakeReps(RepProfileStore):
    def __init__(self, *profiles):
        self.profiles = {p.rep_id: p for p in profiles}

    def get_rep(self, rep_id):
        return self.profiles.get(rep_id)


class FakeAccounts(AccountStore):
    def __init__(self, ages=None):
        self.ages = ages or {}
        self.age_calls = 0

    def get_account_age(self, business_account_id, as_of):
        self.age_calls += 1
        return self.ages.get(business_account_id)


class FakeVolume:
    def __init__(self, volume=0):
        self.volume = volume
        self.calls = []

    def __call__(self, rep_id, period):
        self.calls.append((rep_id, period))
        return self.volume


def _rule(rule_id, rule_type, conditions=None, rate_structure=None, *, priority=0, **kwargs):
    return RuleSpec(
        id=rule_id,
        name=f"rule {rule_id}",
        rule_type=rule_type,
        priority=priority,
        condition=parse_condition(rule_type, conditions, rate_structure, kwargs.get("applies_to_categories")),
        **kwargs,
    )


def _engine(rules=(), *, rate="5", quota=None, volume=0, ages=None):
    rep = RepProfile(rep_id="rep-1", commission_rate=Decimal(rate), monthly_quota_cents=quota)
    return CommissionEngine(rules, FakeReps(rep), FakeAccounts(ages), FakeVolume(volume), lambda: NOW)


def _order(amount=100_000, *, account=None, lines=(), territory_id=None, sale_date=None):
    return OrderDetails(
        order_id="ord-1",
        rep_id="rep-1",
        business_account_id=account,
        order_amount_cents=amount,
        product_lines=tuple(lines),
        territory_id=territory_id,
        sale_date=sale_date,
    )


class TestDefaults:

    def test_gold_tier_bonus(self):
        """$60,000 monthly volume, $1,000 order at 5%: $50 base + $20 gold bonus."""
        calc = _engine(volume=6_000_000).calculate(_order(100_000))

        assert calc.base_amount_cents == 5_000
        assert [(b.kind, b.amount_cents) for b in calc.bonuses] == [("tier_bonus", 2_000)]
        assert calc.bonuses[0].description == "gold tier bonus"
        assert calc.total_amount_cents == 7_000
        assert calc.effective_rate == Decimal("7.0000")
        assert calc.deductions == ()

    @pytest.mark.parametrize("volume, tier, bonus", [
        (10_000_000, "platinum", 5_000),
        (2_500_000, "silver", 1_000),
        (2_499_999, None, 0),
    ])
    def test_tier_floors(self, volume, tier, bonus):
        calc = _engine(volume=volume).calculate(_order(100_000))
        tier_lines = [b for b in calc.bonuses if b.kind == "tier_bonus"]
        if tier is None:
            assert tier_lines == []
        else:
            assert tier_lines[0].description == f"{tier} tier bonus"
            assert tier_lines[0].amount_cents == bonus

    def test_new_account_bonus_without_tier(self):
        """10-day-old account, $2,000 order, no volume: +2% new-account bonus only."""
        calc = _engine(ages={"acct-1": 10}).calculate(_order(200_000, account="acct-1"))

        assert calc.base_amount_cents == 10_000
        assert [(b.kind, b.amount_cents) for b in calc.bonuses] == [("new_account_bonus", 4_000)]
        assert calc.total_amount_cents == 14_000

    def test_old_or_unknown_account_gets_no_bonus(self):
        engine = _engine(ages={"acct-old": 91})
        assert engine.calculate(_order(account="acct-old")).bonuses == ()
        assert engine.calculate(_order(account="acct-missing")).bonuses == ()


class TestRules:

    def test_rules_run_by_priority_then_id(self):
        rules = [
            _rule(3, "bonus", rate_structure={"fixed_amount_cents": 100}, priority=1),
            _rule(1, "bonus", rate_structure={"fixed_amount_cents": 200}, priority=5),
            _rule(2, "bonus", rate_structure={"fixed_amount_cents": 300}, priority=1),
        ]
        calc = _engine(rules).calculate(_order())

        assert calc.applied_rule_ids == (1, 2, 3)
        assert [b.amount_cents for b in calc.bonuses] == [200, 300, 100]

    def test_tiered_rule_threshold(self):
        rule = _rule(1, "tiered", {"volume_threshold_cents": 1_000_000}, {"bonus_rate": 1.5})

        assert _engine([rule], volume=999_999).calculate(_order()).applied_rule_ids == ()
        calc = _engine([rule], volume=1_000_000).calculate(_order(100_000))
        assert calc.bonuses[0].kind == "tiered"
        assert calc.bonuses[0].amount_cents == 1_500

    def test_category_rule_per_line(self):
        rule = _rule(1, "category", {"categories": ["hardware"]}, {"category_rate": 3})
        lines = [
            ProductLine("p-1", "hardware", 40_000),
            ProductLine("p-2", "software", 50_000),
            ProductLine("p-3", "hardware", 10_000),
        ]
        calc = _engine([rule]).calculate(_order(100_000, lines=lines))

        assert [(b.kind, b.amount_cents) for b in calc.bonuses] == [("category", 1_200), ("category", 300)]

    def test_new_customer_rule(self):
        rule = _rule(1, "new_customer", {"max_account_age_days": 30}, {"bonus_rate": 1})
        engine = _engine([rule], ages={"young": 30, "older": 31})

        young = engine.calculate(_order(100_000, account="young"))
        assert [b.kind for b in young.bonuses] == ["new_customer", "new_account_bonus"]
        assert young.bonuses[0].amount_cents == 1_000
        assert engine.calculate(_order(account="older")).applied_rule_ids == ()

    def test_performance_rule_uses_quota_attainment(self):
        rule = _rule(1, "performance", {"quota_percentage": 100}, {"bonus_rate": 2})

        assert _engine([rule], quota=1_000_000, volume=999_999).calculate(_order()).applied_rule_ids == ()
        assert _engine([rule], quota=1_000_000, volume=1_000_000).calculate(_order()).applied_rule_ids == (1,)
        assert _engine([rule], quota=None, volume=9_000_000).calculate(_order()).applied_rule_ids == ()

    def test_negative_bonus_becomes_deduction(self):
        rule = _rule(1, "bonus", rate_structure={"rate": -1})
        calc = _engine([rule]).calculate(_order(100_000))

        assert calc.bonuses == ()
        assert [(d.kind, d.amount_cents, d.rate) for d in calc.deductions] == [("deduction", 1_000, Decimal("1"))]
        assert calc.total_amount_cents == 4_000
        assert calc.effective_rate == Decimal("4.0000")

    def test_minimum_order_amount(self):
        rule = _rule(1, "bonus", {"min_order_amount_cents": 50_000}, {"fixed_amount_cents": 2_500})
        assert _engine([rule]).calculate(_order(49_999)).applied_rule_ids == ()
        assert _engine([rule]).calculate(_order(50_000)).total_amount_cents == 2_500 + 2_500


class TestApplicability:

    def test_validity_window_is_inclusive(self):
        at_start = _rule(1, "bonus", rate_structure={"fixed_amount_cents": 1}, valid_from=NOW)
        at_end = _rule(2, "bonus", rate_structure={"fixed_amount_cents": 1}, valid_to=NOW)
        expired = _rule(3, "bonus", rate_structure={"fixed_amount_cents": 1}, valid_to=NOW - timedelta(seconds=1))
        future = _rule(4, "bonus", rate_structure={"fixed_amount_cents": 1}, valid_from=NOW + timedelta(days=1))

        calc = _engine([at_start, at_end, expired, future]).calculate(_order())
        assert calc.applied_rule_ids == (1, 2)

    def test_inactive_rules_ignored(self):
        rule = _rule(1, "bonus", rate_structure={"fixed_amount_cents": 1}, is_active=False)
        assert _engine([rule]).calculate(_order()).applied_rule_ids == ()

    def test_rep_filter(self):
        rule = _rule(1, "bonus", rate_structure={"fixed_amount_cents": 1}, applies_to_reps=("rep-9",))
        assert _engine([rule]).calculate(_order()).applied_rule_ids == ()

    def test_territory_filter_needs_territory(self):
        rule = _rule(1, "bonus", rate_structure={"fixed_amount_cents": 1}, applies_to_territories=("7",))
        engine = _engine([rule])

        assert engine.calculate(_order()).applied_rule_ids == ()
        assert engine.calculate(_order(territory_id=8)).applied_rule_ids == ()
        assert engine.calculate(_order(territory_id=7)).applied_rule_ids == (1,)

    def test_product_filter(self):
        rule = _rule(1, "bonus", rate_structure={"fixed_amount_cents": 1}, applies_to_products=("p-2",))
        engine = _engine([rule])

        assert engine.calculate(_order(lines=[ProductLine("p-1", None, 100)])).applied_rule_ids == ()
        assert engine.calculate(_order(lines=[ProductLine("p-2", None, 100)])).applied_rule_ids == (1,)


class TestCalculation:

    def test_deterministic(self):
        rules = [
            _rule(1, "tiered", {"volume_threshold_cents": 0}, {"bonus_rate": 1}),
            _rule(2, "bonus", rate_structure={"rate": -0.5}),
        ]
        engine = _engine(rules, volume=5_500_000, ages={"acct-1": 5})
        order = _order(123_457, account="acct-1")

        first = engine.calculate(order)
        second = engine.calculate(order)
        assert first == second
        assert first.to_dict() == second.to_dict()

    def test_lookups_are_memoized(self):
        rules = [
            _rule(1, "tiered", {"volume_threshold_cents": 0}, {"bonus_rate": 1}),
            _rule(2, "new_customer", {"max_account_age_days": 30}, {"bonus_rate": 1}),
        ]
        engine = _engine(rules, volume=100, ages={"acct-1": 5})
        engine.calculate(_order(account="acct-1"))

        assert engine.volume_lookup.calls == [("rep-1", "2026-09")]
        assert engine.account_store.age_calls == 1

    def test_period_follows_sale_date(self):
        calc = _engine().calculate(_order(sale_date=datetime(2026, 8, 31, 23, 59)))
        assert calc.commission_period == "2026-08"
        assert calc.sale_date == datetime(2026, 8, 31, 23, 59)
        assert _engine().calculate(_order()).commission_period == "2026-09"

    def test_dated_order_ignores_clock(self):
        """A dated order prices the same on either side of a month and rule boundary."""
        sale = datetime(2026, 9, 30, 23, 0)
        rules = [
            _rule(1, "bonus", rate_structure={"fixed_amount_cents": 100}, valid_to=datetime(2026, 9, 30, 23, 59)),
            _rule(2, "new_customer", {"max_account_age_days": 30}, {"bonus_rate": 1}),
        ]
        clock = [datetime(2026, 9, 30, 23, 30)]
        rep = RepProfile(rep_id="rep-1", commission_rate=Decimal("5"), monthly_quota_cents=None)
        engine = CommissionEngine(rules, FakeReps(rep), FakeAccounts({"acct-1": 30}), FakeVolume(), lambda: clock[0])
        order = _order(account="acct-1", sale_date=sale)

        before = engine.calculate(order)
        clock[0] = datetime(2026, 11, 2, 8, 0)
        after = engine.calculate(order)

        assert before == after
        assert before.to_dict() == after.to_dict()
        assert after.commission_period == "2026-09"
        assert after.applied_rule_ids == (1, 2)
        assert engine.volume_lookup.calls == [("rep-1", "2026-09"), ("rep-1", "2026-09")]

    def test_undated_order_takes_clock_as_sale_date(self):
        clock = [datetime(2026, 9, 30, 23, 59)]
        rep = RepProfile(rep_id="rep-1", commission_rate=Decimal("5"), monthly_quota_cents=None)
        engine = CommissionEngine((), FakeReps(rep), FakeAccounts(), FakeVolume(), lambda: clock[0])

        assert engine.calculate(_order()).commission_period == "2026-09"
        clock[0] = datetime(2026, 10, 1)
        calc = engine.calculate(_order())
        assert calc.commission_period == "2026-10"
        assert calc.sale_date == datetime(2026, 10, 1)

    def test_override_replaces_rep_rate(self):
        calc = _engine(rate="5").calculate(_order(100_000), commission_override=Decimal("8"))
        assert calc.base_rate == Decimal("8")
        assert calc.base_amount_cents == 8_000

    def test_half_up_rounding_per_line(self):
        assert percent_of(1, Decimal("50")) == 1
        assert percent_of(3, Decimal("50")) == 2
        assert percent_of(12_345, Decimal("2.5")) == 309

    def test_zero_amount_order(self):
        calc = _engine().calculate(_order(0))
        assert calc.total_amount_cents == 0
        assert calc.effective_rate == Decimal("0")

    def test_unknown_rep(self):
        engine = _engine()
        order = OrderDetails(order_id="ord-1", rep_id="ghost", business_account_id=None, order_amount_cents=1)
        with pytest.raises(NotFoundError):
            engine.calculate(order)

    def test_negative_amount(self):
        with pytest.raises(ValidationError):
            _engine().calculate(_order(-1))


class TestOrderDetails:

    def test_from_dict(self):
        order = OrderDetails.from_dict({
            "order_id": "ord-9",
            "rep_id": "rep-1",
            "business_account_id": "acct-1",
            "order_amount_cents": "150000",
            "territory_id": "4",
            "sale_date": "2026-09-01T10:00:00Z",
            "product_lines": [{"product_id": "p-1", "category": "hardware", "amount_cents": 150000}],
        })

        assert order.order_amount_cents == 150_000
        assert order.territory_id == 4
        assert order.sale_date == datetime(2026, 9, 1, 10, 0)
        assert order.product_lines == (ProductLine("p-1", "hardware", 150_000),)

    @pytest.mark.parametrize("payload", [
        {"rep_id": "rep-1", "order_amount_cents": 1},
        {"order_id": "o", "order_amount_cents": 1},
        {"order_id": "o", "rep_id": "rep-1"},
        {"order_id": "o", "rep_id": "rep-1", "order_amount_cents": 12.5},
        {"order_id": "o", "rep_id": "rep-1", "order_amount_cents": -5},
        {"order_id": "o", "rep_id": "rep-1", "order_amount_cents": 1, "territory_id": "north"},
        {"order_id": "o", "rep_id": "rep-1", "order_amount_cents": 1, "sale_date": "yesterday"},
        {"order_id": "o", "rep_id": "rep-1", "order_amount_cents": 1, "product_lines": "p-1"},
    ])
    def test_from_dict_rejects(self, payload):
        with pytest.raises(ValidationError):
            OrderDetails.from_dict(payload)
