# Overview: Append-only commission ledger; record, approve, pay out and claw back commissions.

"""
Commission Ledger Invariants (authoritative)

- Append-only: rows are inserted, then only their status/stamps move.
  Amounts never change after insert; nothing is deleted.
- pending -> approved -> paid, or pending/approved -> cancelled.
- A paid row is never touched again. Reversing it appends a negative
  clawback row pointing at it (reference_transaction_id).
- Σ commission_amount_cents of non-cancelled rows for a rep/period is the
  commission owed; Σ order_amount_cents of the same rows is the rep's
  monthly volume.
- payout commits per chunk, so a deadline only leaves the unpaid tail of the
  period approved. Re-running a fully paid period pays nothing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import (
    ConflictError,
    DeadlineExceededError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models import CommissionTransaction
from ..models.commissions import (
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    TXN_ADJUSTMENT,
    TXN_BONUS,
    TXN_CLAWBACK,
    TXN_SALE,
    TXN_STATUS_APPROVED,
    TXN_STATUS_CANCELLED,
    TXN_STATUS_PAID,
    TXN_STATUS_PENDING,
)
from ..time_utils import Clock, is_valid_period, period_key, utcnow
from ..validation import parse_amount_cents, parse_rate
from .commission_engine import CommissionCalculation, OrderDetails
from .concurrency import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF_BASE, Deadline, lock_for_update, run_in_transaction

logger = logging.getLogger(__name__)

DEFAULT_PAYOUT_CHUNK_SIZE = 500
MAX_LIST_LIMIT = 500


@dataclass
class ApprovalResult:
    approved: list[int] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "approved": list(self.approved),
            "approved_count": len(self.approved),
            "failed": list(self.failed),
        }


@dataclass(frozen=True)
class PayoutResult:
    period: str
    payment_reference: str
    paid_count: int
    remaining_count: int
    completed: bool

    def to_dict(self) -> dict:
        return {
            "period": self.period,
            "payment_reference": self.payment_reference,
            "paid_count": self.paid_count,
            "remaining_count": self.remaining_count,
            "completed": self.completed,
        }


def _required(value, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} is required")
    return str(value).strip()


def _require_period(period: Optional[str]) -> str:
    if not is_valid_period(period):
        raise ValidationError("period must be formatted as YYYY-MM")
    return period


class CommissionLedger:
    def __init__(
        self,
        session: Session,
        clock: Clock = utcnow,
        *,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        chunk_size: int = DEFAULT_PAYOUT_CHUNK_SIZE,
    ):
        self.session = session
        self.clock = clock
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base
        self.chunk_size = chunk_size

    def _transaction(self, op, deadline: Optional[Deadline], operation: str):
        return run_in_transaction(
            op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation=operation,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: int) -> CommissionTransaction:
        txn = self.session.get(CommissionTransaction, transaction_id)
        if txn is None:
            raise NotFoundError(
                f"Commission transaction {transaction_id} not found",
                {"transaction_id": transaction_id},
            )
        return txn

    def list_transactions(
        self,
        *,
        rep_id: Optional[str] = None,
        status: Optional[str] = None,
        period: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CommissionTransaction]:
        q = self.session.query(CommissionTransaction)
        if rep_id:
            q = q.filter(CommissionTransaction.rep_id == rep_id)
        if status:
            if status not in TRANSACTION_STATUSES:
                raise ValidationError(f"status must be one of: {', '.join(TRANSACTION_STATUSES)}")
            q = q.filter(CommissionTransaction.status == status)
        if period:
            q = q.filter(CommissionTransaction.commission_period == _require_period(period))
        if order_id:
            q = q.filter(CommissionTransaction.order_id == order_id)
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        offset = max(0, int(offset))
        return (
            q.order_by(CommissionTransaction.sale_date.desc(), CommissionTransaction.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    def monthly_volume(self, rep_id: str, period: str) -> int:
        """Σ order_amount_cents of the rep's non-cancelled rows in ``period``."""
        total = (
            self.session.query(func.coalesce(func.sum(CommissionTransaction.order_amount_cents), 0))
            .filter(
                CommissionTransaction.rep_id == rep_id,
                CommissionTransaction.commission_period == _require_period(period),
                CommissionTransaction.status != TXN_STATUS_CANCELLED,
            )
            .scalar()
        )
        return int(total or 0)

    def commission_owed(self, rep_id: str, period: Optional[str] = None) -> dict:
        """Commission totals by status for a rep (optionally one period), cancelled rows excluded."""
        q = (
            self.session.query(
                CommissionTransaction.status,
                func.coalesce(func.sum(CommissionTransaction.commission_amount_cents), 0),
            )
            .filter(
                CommissionTransaction.rep_id == rep_id,
                CommissionTransaction.status != TXN_STATUS_CANCELLED,
            )
        )
        if period:
            q = q.filter(CommissionTransaction.commission_period == _require_period(period))
        by_status = {status: int(amount or 0) for status, amount in q.group_by(CommissionTransaction.status).all()}
        pending = by_status.get(TXN_STATUS_PENDING, 0)
        approved = by_status.get(TXN_STATUS_APPROVED, 0)
        paid = by_status.get(TXN_STATUS_PAID, 0)
        return {
            "rep_id": rep_id,
            "period": period,
            "pending_cents": pending,
            "approved_cents": approved,
            "paid_cents": paid,
            "total_cents": pending + approved + paid,
            "outstanding_cents": pending + approved,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _append(
        self,
        *,
        rep_id: str,
        transaction_type: str,
        commission_amount_cents: int,
        sale_date: datetime,
        order_id: Optional[str] = None,
        business_account_id: Optional[str] = None,
        territory_id: Optional[int] = None,
        description: Optional[str] = None,
        order_amount_cents: int = 0,
        commissionable_amount_cents: int = 0,
        commission_rate=Decimal("0"),
        reference_transaction_id: Optional[int] = None,
        commission_period: Optional[str] = None,
    ) -> CommissionTransaction:
        txn = CommissionTransaction(
            rep_id=rep_id,
            order_id=order_id,
            business_account_id=business_account_id,
            territory_id=territory_id,
            transaction_type=transaction_type,
            description=description,
            order_amount_cents=order_amount_cents,
            commissionable_amount_cents=commissionable_amount_cents,
            commission_rate=commission_rate,
            commission_amount_cents=commission_amount_cents,
            status=TXN_STATUS_PENDING,
            sale_date=sale_date,
            commission_period=commission_period or period_key(sale_date),
            reference_transaction_id=reference_transaction_id,
            created_at=self.clock(),
        )
        self.session.add(txn)
        return txn

    def record(
        self,
        *,
        rep_id: str,
        transaction_type: str,
        commission_amount_cents,
        sale_date: Optional[datetime] = None,
        order_id: Optional[str] = None,
        business_account_id: Optional[str] = None,
        territory_id: Optional[int] = None,
        description: Optional[str] = None,
        order_amount_cents=0,
        commissionable_amount_cents=0,
        commission_rate=0,
        deadline: Optional[Deadline] = None,
    ) -> CommissionTransaction:
        """Append one pending row (manual adjustments, overrides)."""
        rep_id = _required(rep_id, "rep_id")
        if transaction_type not in TRANSACTION_TYPES or transaction_type == TXN_CLAWBACK:
            raise ValidationError("transaction_type must be one of: sale, bonus, override, adjustment")
        amount = parse_amount_cents(commission_amount_cents, "commission_amount_cents", allow_negative=True)
        order_amount = parse_amount_cents(order_amount_cents, "order_amount_cents")
        commissionable = parse_amount_cents(commissionable_amount_cents, "commissionable_amount_cents")
        rate = parse_rate(commission_rate, "commission_rate")

        def _op():
            txn = self._append(
                rep_id=rep_id,
                transaction_type=transaction_type,
                commission_amount_cents=amount,
                sale_date=sale_date or self.clock(),
                order_id=order_id,
                business_account_id=business_account_id,
                territory_id=territory_id,
                description=description,
                order_amount_cents=order_amount,
                commissionable_amount_cents=commissionable,
                commission_rate=rate,
            )
            self.session.flush()
            return txn

        return self._transaction(_op, deadline, "record commission")

    def record_calculation(
        self,
        order: OrderDetails,
        calculation: CommissionCalculation,
        *,
        deadline: Optional[Deadline] = None,
    ) -> list[int]:
        """
        Book a calculation: one sale row for the base, one bonus row per
        bonus line and one negative adjustment row per deduction.

        Only the sale row carries the order amount, so monthly volume counts
        each order once.
        """
        if calculation.order_id != order.order_id or calculation.rep_id != order.rep_id:
            raise ValidationError("calculation does not belong to this order")

        def _op():
            existing = (
                self.session.query(CommissionTransaction.id)
                .filter(
                    CommissionTransaction.order_id == order.order_id,
                    CommissionTransaction.rep_id == order.rep_id,
                    CommissionTransaction.transaction_type == TXN_SALE,
                    CommissionTransaction.status != TXN_STATUS_CANCELLED,
                )
                .first()
            )
            if existing is not None:
                raise ConflictError(
                    f"Commission already recorded for order {order.order_id}",
                    {"order_id": order.order_id, "rep_id": order.rep_id, "transaction_id": existing.id},
                )

            common = dict(
                rep_id=order.rep_id,
                order_id=order.order_id,
                business_account_id=order.business_account_id,
                territory_id=order.territory_id,
                sale_date=calculation.sale_date,
                commission_period=calculation.commission_period,
            )
            rows = [self._append(
                transaction_type=TXN_SALE,
                description=f"Base commission for order {order.order_id}",
                order_amount_cents=order.order_amount_cents,
                commissionable_amount_cents=order.order_amount_cents,
                commission_rate=calculation.base_rate,
                commission_amount_cents=calculation.base_amount_cents,
                **common,
            )]
            for line in calculation.bonuses:
                rows.append(self._append(
                    transaction_type=TXN_BONUS,
                    description=line.description,
                    commissionable_amount_cents=order.order_amount_cents,
                    commission_rate=line.rate if line.rate is not None else Decimal("0"),
                    commission_amount_cents=line.amount_cents,
                    **common,
                ))
            for line in calculation.deductions:
                rows.append(self._append(
                    transaction_type=TXN_ADJUSTMENT,
                    description=line.description,
                    commissionable_amount_cents=order.order_amount_cents,
                    commission_rate=line.rate if line.rate is not None else Decimal("0"),
                    commission_amount_cents=-line.amount_cents,
                    **common,
                ))
            self.session.flush()
            return [row.id for row in rows]

        return self._transaction(_op, deadline, "record commission calculation")

    def approve(
        self,
        transaction_ids: Iterable[int],
        approved_by: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> ApprovalResult:
        """
        pending -> approved for every id that is pending.

        Unknown or non-pending ids are reported in ``failed``; they do not
        abort the batch.
        """
        approved_by = _required(approved_by, "approved_by")
        ids = []
        for raw in transaction_ids or []:
            if isinstance(raw, bool) or not str(raw).strip().isdigit():
                raise ValidationError("transaction_ids must be integers")
            if int(raw) not in ids:
                ids.append(int(raw))

        def _op():
            result = ApprovalResult()
            if not ids:
                return result
            rows = lock_for_update(
                self.session.query(CommissionTransaction).filter(CommissionTransaction.id.in_(ids))
            ).all()
            by_id = {row.id: row for row in rows}
            now = self.clock()
            for txn_id in ids:
                row = by_id.get(txn_id)
                if row is None:
                    result.failed.append({"id": txn_id, "reason": "not_found"})
                    continue
                if row.status != TXN_STATUS_PENDING:
                    result.failed.append({"id": txn_id, "reason": "invalid_state", "status": row.status})
                    continue
                row.status = TXN_STATUS_APPROVED
                row.approved_by = approved_by
                row.approved_at = now
                result.approved.append(txn_id)
            self.session.flush()
            return result

        return self._transaction(_op, deadline, "approve commissions")

    def payout(
        self,
        period: str,
        payment_reference: str,
        *,
        deadline: Optional[Deadline] = None,
        chunk_size: Optional[int] = None,
    ) -> PayoutResult:
        """Mark every approved row of ``period`` paid, one committed chunk at a time."""
        period = _require_period(period)
        payment_reference = _required(payment_reference, "payment_reference")
        chunk_size = chunk_size or self.chunk_size
        if chunk_size < 1:
            raise ValidationError("chunk_size must be >= 1")
        deadline = deadline or Deadline(None)

        paid = 0
        completed = True
        while True:
            if deadline.expired():
                completed = False
                break

            def _op():
                rows = (
                    lock_for_update(
                        self.session.query(CommissionTransaction).filter(
                            CommissionTransaction.commission_period == period,
                            CommissionTransaction.status == TXN_STATUS_APPROVED,
                        )
                    )
                    .order_by(CommissionTransaction.id)
                    .limit(chunk_size)
                    .all()
                )
                now = self.clock()
                for row in rows:
                    row.status = TXN_STATUS_PAID
                    row.payment_reference = payment_reference
                    row.paid_at = now
                self.session.flush()
                return len(rows)

            try:
                count = self._transaction(_op, deadline, "commission payout")
            except DeadlineExceededError:
                completed = False
                break
            if not count:
                break
            paid += count
            logger.info("Payout %s for %s: paid %d rows (%d so far)", payment_reference, period, count, paid)
            if count < chunk_size:
                break

        remaining = (
            self.session.query(func.count(CommissionTransaction.id))
            .filter(
                CommissionTransaction.commission_period == period,
                CommissionTransaction.status == TXN_STATUS_APPROVED,
            )
            .scalar()
        ) or 0
        if not completed:
            logger.warning("Payout %s for %s stopped at deadline; %d rows left", payment_reference, period, remaining)
        return PayoutResult(
            period=period,
            payment_reference=payment_reference,
            paid_count=paid,
            remaining_count=int(remaining),
            completed=completed and not remaining,
        )

    def cancel(
        self,
        transaction_id: int,
        reason: str,
        cancelled_by: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> CommissionTransaction:
        """
        Cancel a pending/approved row, or claw back a paid one.

        Returns the cancelled row, or the new clawback row for a paid one.
        """
        reason = _required(reason, "reason")
        cancelled_by = _required(cancelled_by, "cancelled_by")

        def _op():
            txn = lock_for_update(
                self.session.query(CommissionTransaction).filter_by(id=transaction_id)
            ).first()
            if txn is None:
                raise NotFoundError(
                    f"Commission transaction {transaction_id} not found",
                    {"transaction_id": transaction_id},
                )
            now = self.clock()

            if txn.status in (TXN_STATUS_PENDING, TXN_STATUS_APPROVED):
                txn.status = TXN_STATUS_CANCELLED
                txn.cancelled_by = cancelled_by
                txn.cancelled_at = now
                txn.cancellation_reason = reason
                self.session.flush()
                return txn

            if txn.status == TXN_STATUS_CANCELLED:
                raise InvalidStateTransitionError(
                    f"Commission transaction {txn.id} is already cancelled",
                    {"transaction_id": txn.id, "status": txn.status},
                )

            # Paid: reverse with a new row
            if txn.transaction_type == TXN_CLAWBACK:
                raise InvalidStateTransitionError(
                    "A paid clawback cannot itself be clawed back",
                    {"transaction_id": txn.id},
                )
            prior = (
                self.session.query(CommissionTransaction.id)
                .filter(
                    CommissionTransaction.reference_transaction_id == txn.id,
                    CommissionTransaction.transaction_type == TXN_CLAWBACK,
                    CommissionTransaction.status != TXN_STATUS_CANCELLED,
                )
                .first()
            )
            if prior is not None:
                raise InvalidStateTransitionError(
                    f"Commission transaction {txn.id} has already been clawed back",
                    {"transaction_id": txn.id, "clawback_id": prior.id},
                )

            clawback = self._append(
                rep_id=txn.rep_id,
                transaction_type=TXN_CLAWBACK,
                description=f"Clawback of transaction {txn.id}: {reason}"[:255],
                order_id=txn.order_id,
                business_account_id=txn.business_account_id,
                territory_id=txn.territory_id,
                order_amount_cents=-txn.order_amount_cents,
                commissionable_amount_cents=-txn.commissionable_amount_cents,
                commission_rate=txn.commission_rate,
                commission_amount_cents=-txn.commission_amount_cents,
                sale_date=now,
                reference_transaction_id=txn.id,
            )
            self.session.flush()
            logger.info("Clawback %s recorded for paid transaction %s", clawback.id, txn.id)
            return clawback

        return self._transaction(_op, deadline, "cancel commission")
