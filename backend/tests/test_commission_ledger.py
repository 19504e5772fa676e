# Overview: Pytest coverage for the commission ledger lifecycle.

"""
Commission Ledger Tests

Covers:
- Booking a calculation (sale + bonus rows) and duplicate detection
- Bulk approval with per-id failure reporting
- Chunked, idempotent payout and deadline handling
- Cancellation and clawback of paid rows
- Owed totals and monthly volume
"""

from datetime import datetime

import pytest

from territory_engine.errors import ConflictError, InvalidStateTransitionError, NotFoundError, ValidationError
from territory_engine.services.commission_engine import OrderDetails
from territory_engine.services.concurrency import Deadline

from conftest import make_account


def _book(services, order_id="ord-1", amount=100_000, rep_id="rep-1", **extra):
    order = OrderDetails.from_dict({"order_id": order_id, "rep_id": rep_id, "order_amount_cents": amount, **extra})
    calculation = services.engine().calculate(order)
    return services.ledger.record_calculation(order, calculation), calculation


def _adjustment(services, amount, rep_id="rep-1", **extra):
    return services.ledger.record(
        rep_id=rep_id, transaction_type="adjustment", commission_amount_cents=amount, **extra
    )


class TestRecord:

    def test_books_sale_and_bonus_rows(self, services, reps, db_session):
        make_account(db_session, "acct-new", age_days=10)

        ids, calculation = _book(services, amount=200_000, business_account_id="acct-new")

        rows = [services.ledger.get_transaction(i) for i in ids]
        assert [r.transaction_type for r in rows] == ["sale", "bonus"]
        assert [r.commission_amount_cents for r in rows] == [10_000, 4_000]
        assert [r.order_amount_cents for r in rows] == [200_000, 0]
        assert all(r.status == "pending" and r.commission_period == "2026-09" for r in rows)
        assert sum(r.commission_amount_cents for r in rows) == calculation.total_amount_cents
        assert services.ledger.monthly_volume("rep-1", "2026-09") == 200_000

    def test_deductions_are_negative_adjustments(self, services, reps):
        services.rules.create_rule({
            "name": "Chargeback reserve", "rule_type": "bonus", "rate_structure": {"rate": -1},
        })

        ids, _ = _book(services, amount=100_000)

        rows = [services.ledger.get_transaction(i) for i in ids]
        assert [(r.transaction_type, r.commission_amount_cents) for r in rows] == [("sale", 5_000), ("adjustment", -1_000)]

    def test_duplicate_order_rejected_until_cancelled(self, services, reps):
        ids, _ = _book(services)

        with pytest.raises(ConflictError) as exc:
            _book(services)
        assert exc.value.details["transaction_id"] == ids[0]

        services.ledger.cancel(ids[0], "Order voided", "admin1")
        assert len(_book(services)[0]) == 1

    def test_record_rejects_clawback_type(self, services):
        with pytest.raises(ValidationError):
            services.ledger.record(rep_id="rep-1", transaction_type="clawback", commission_amount_cents=-1)
        with pytest.raises(ValidationError):
            services.ledger.record(rep_id="", transaction_type="adjustment", commission_amount_cents=1)

    def test_record_uses_sale_date_period(self, services):
        txn = _adjustment(services, 500, sale_date=datetime(2026, 8, 3))
        assert txn.commission_period == "2026-08"


class TestApprove:

    def test_reports_failures_without_aborting(self, services, db_session):
        first = _adjustment(services, 100).id
        second = _adjustment(services, 200).id
        services.ledger.cancel(second, "Duplicate", "admin1")

        result = services.ledger.approve([first, second, 9999, first], "manager-1")

        assert result.approved == [first]
        assert result.failed == [
            {"id": second, "reason": "invalid_state", "status": "cancelled"},
            {"id": 9999, "reason": "not_found"},
        ]
        txn = services.ledger.get_transaction(first)
        assert (txn.status, txn.approved_by) == ("approved", "manager-1")

    def test_requires_approver(self, services):
        txn_id = _adjustment(services, 100).id
        with pytest.raises(ValidationError):
            services.ledger.approve([txn_id], " ")
        with pytest.raises(ValidationError):
            services.ledger.approve(["abc"], "manager-1")


class TestPayout:

    def _approved(self, services, count, period_date=None):
        ids = [_adjustment(services, 100 * (i + 1), sale_date=period_date).id for i in range(count)]
        services.ledger.approve(ids, "manager-1")
        return ids

    def test_pays_approved_rows_only_once(self, services):
        ids = self._approved(services, 5)
        pending = _adjustment(services, 999).id

        result = services.ledger.payout("2026-09", "PAY-2026-09", chunk_size=2)

        assert (result.paid_count, result.remaining_count, result.completed) == (5, 0, True)
        for txn_id in ids:
            txn = services.ledger.get_transaction(txn_id)
            assert (txn.status, txn.payment_reference) == ("paid", "PAY-2026-09")
        assert services.ledger.get_transaction(pending).status == "pending"

        again = services.ledger.payout("2026-09", "PAY-2026-09")
        assert (again.paid_count, again.completed) == (0, True)

    def test_only_the_requested_period(self, services):
        self._approved(services, 2, period_date=datetime(2026, 8, 15))
        self._approved(services, 1)

        result = services.ledger.payout("2026-08", "PAY-2026-08")
        assert result.paid_count == 2
        assert len(services.ledger.list_transactions(status="approved", period="2026-09")) == 1

    def test_deadline_leaves_tail_approved(self, services):
        self._approved(services, 3)

        result = services.ledger.payout("2026-09", "PAY-2026-09", deadline=Deadline(0))

        assert (result.paid_count, result.remaining_count, result.completed) == (0, 3, False)
        resumed = services.ledger.payout("2026-09", "PAY-2026-09")
        assert (resumed.paid_count, resumed.completed) == (3, True)

    @pytest.mark.parametrize("period, reference", [("2026-13", "PAY"), ("Sept", "PAY"), ("2026-09", "")])
    def test_payout_validation(self, services, period, reference):
        with pytest.raises(ValidationError):
            services.ledger.payout(period, reference)


class TestCancel:

    def _paid(self, services, amount=1_000):
        txn_id = _adjustment(services, amount, order_amount_cents=20_000).id
        services.ledger.approve([txn_id], "manager-1")
        services.ledger.payout("2026-09", "PAY-1")
        return txn_id

    def test_cancel_pending_and_approved(self, services):
        pending = _adjustment(services, 100).id
        approved = _adjustment(services, 200).id
        services.ledger.approve([approved], "manager-1")

        assert services.ledger.cancel(pending, "Order returned", "admin1").status == "cancelled"
        cancelled = services.ledger.cancel(approved, "Order returned", "admin1")
        assert (cancelled.status, cancelled.cancelled_by, cancelled.cancellation_reason) == \
            ("cancelled", "admin1", "Order returned")

        with pytest.raises(InvalidStateTransitionError):
            services.ledger.cancel(pending, "Again", "admin1")

    def test_paid_row_is_clawed_back(self, services, clock, db_session):
        original_id = self._paid(services)
        clock.advance(days=20)

        clawback = services.ledger.cancel(original_id, "Customer refund", "admin1")

        assert clawback.id != original_id
        assert clawback.transaction_type == "clawback"
        assert clawback.commission_amount_cents == -1_000
        assert clawback.order_amount_cents == -20_000
        assert clawback.reference_transaction_id == original_id
        assert clawback.status == "pending"
        assert clawback.commission_period == "2026-10"
        original = services.ledger.get_transaction(original_id)
        assert (original.status, original.commission_amount_cents) == ("paid", 1_000)

        with pytest.raises(InvalidStateTransitionError):
            services.ledger.cancel(original_id, "Twice", "admin1")

    def test_paid_clawback_cannot_be_clawed_back(self, services, clock):
        original_id = self._paid(services)
        clawback = services.ledger.cancel(original_id, "Customer refund", "admin1")
        services.ledger.approve([clawback.id], "manager-1")
        services.ledger.payout("2026-09", "PAY-2")

        with pytest.raises(InvalidStateTransitionError):
            services.ledger.cancel(clawback.id, "Undo", "admin1")

    def test_cancel_validation(self, services):
        with pytest.raises(NotFoundError):
            services.ledger.cancel(404, "Missing", "admin1")
        txn_id = _adjustment(services, 100).id
        with pytest.raises(ValidationError):
            services.ledger.cancel(txn_id, "", "admin1")


class TestTotals:

    def test_commission_owed_excludes_cancelled(self, services):
        paid = _adjustment(services, 1_000).id
        approved = _adjustment(services, 300).id
        _adjustment(services, 50)
        cancelled = _adjustment(services, 7_000).id
        services.ledger.approve([paid], "manager-1")
        services.ledger.payout("2026-09", "PAY-1")
        services.ledger.approve([approved], "manager-1")
        services.ledger.cancel(cancelled, "Voided", "admin1")
        _adjustment(services, 80, rep_id="rep-2")

        owed = services.ledger.commission_owed("rep-1", "2026-09")

        assert owed["paid_cents"] == 1_000
        assert owed["approved_cents"] == 300
        assert owed["pending_cents"] == 50
        assert owed["total_cents"] == 1_350
        assert owed["outstanding_cents"] == 350

    def test_monthly_volume_per_rep_and_period(self, services, reps):
        _book(services, "ord-1", 300_000)
        _book(services, "ord-2", 200_000)
        _book(services, "ord-3", 999_000, rep_id="rep-2")
        _book(services, "ord-4", 50_000, sale_date="2026-08-20T10:00:00Z")

        assert services.ledger.monthly_volume("rep-1", "2026-09") == 500_000
        assert services.ledger.monthly_volume("rep-1", "2026-08") == 50_000
        assert services.ledger.monthly_volume("rep-3", "2026-09") == 0

    def test_list_transactions_filters(self, services, reps):
        _book(services, "ord-1", 100_000)
        _book(services, "ord-2", 100_000, rep_id="rep-2")

        assert {t.order_id for t in services.ledger.list_transactions(rep_id="rep-2")} == {"ord-2"}
        assert {t.rep_id for t in services.ledger.list_transactions(order_id="ord-1")} == {"rep-1"}
        assert len(services.ledger.list_transactions(limit=1)) == 1
        with pytest.raises(ValidationError):
            services.ledger.list_transactions(status="lost")
