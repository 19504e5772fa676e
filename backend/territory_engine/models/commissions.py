from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


# Commission rule types
RULE_TYPE_TIERED = "tiered"
RULE_TYPE_CATEGORY = "category"
RULE_TYPE_BONUS = "bonus"
RULE_TYPE_NEW_CUSTOMER = "new_customer"
RULE_TYPE_PERFORMANCE = "performance"
COMMISSION_RULE_TYPES = (
    RULE_TYPE_TIERED,
    RULE_TYPE_CATEGORY,
    RULE_TYPE_BONUS,
    RULE_TYPE_NEW_CUSTOMER,
    RULE_TYPE_PERFORMANCE,
)

# Commission transaction types
TXN_SALE = "sale"
TXN_BONUS = "bonus"
TXN_OVERRIDE = "override"
TXN_ADJUSTMENT = "adjustment"
TXN_CLAWBACK = "clawback"
TRANSACTION_TYPES = (TXN_SALE, TXN_BONUS, TXN_OVERRIDE, TXN_ADJUSTMENT, TXN_CLAWBACK)

# Commission transaction status
TXN_STATUS_PENDING = "pending"
TXN_STATUS_APPROVED = "approved"
TXN_STATUS_PAID = "paid"
TXN_STATUS_CANCELLED = "cancelled"
TRANSACTION_STATUSES = (TXN_STATUS_PENDING, TXN_STATUS_APPROVED, TXN_STATUS_PAID, TXN_STATUS_CANCELLED)


class CommissionRule(db.Model):
    """
    Conditional bonus/adjustment applied on top of a rep's base rate.

    conditions / rate_structure are JSON documents validated and parsed into
    a typed condition by services.commission_rules. Empty applicability
    filters mean "applies to all". valid_from / valid_to are inclusive and
    optional (unbounded).

    Evaluation order: priority DESC, then id ASC (creation order).
    """
    __tablename__ = "commission_rules"
    __table_args__ = (
        db.Index("ix_commission_rules_active_priority", "is_active", "priority"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    rule_type = db.Column(db.String(32), nullable=False)

    conditions = db.Column(db.JSON, nullable=False, default=dict)
    rate_structure = db.Column(db.JSON, nullable=False, default=dict)

    applies_to_reps = db.Column(db.JSON, nullable=True)
    applies_to_territories = db.Column(db.JSON, nullable=True)
    applies_to_products = db.Column(db.JSON, nullable=True)
    applies_to_categories = db.Column(db.JSON, nullable=True)

    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_to = db.Column(db.DateTime(timezone=True), nullable=True)

    priority = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "rule_type": self.rule_type,
            "conditions": self.conditions or {},
            "rate_structure": self.rate_structure or {},
            "applies_to_reps": list(self.applies_to_reps or []),
            "applies_to_territories": list(self.applies_to_territories or []),
            "applies_to_products": list(self.applies_to_products or []),
            "applies_to_categories": list(self.applies_to_categories or []),
            "valid_from": to_utc_z(self.valid_from),
            "valid_to": to_utc_z(self.valid_to),
            "priority": self.priority,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CommissionTransaction(db.Model):
    """
    Append-only commission ledger row.

    LIFECYCLE: pending -> approved -> paid, or pending/approved -> cancelled.
    Amounts never change after insert. A paid row is never touched again:
    clawbacks are new negative rows pointing at it via
    reference_transaction_id.

    INVARIANT: Σ commission_amount_cents of non-cancelled rows for a
    rep/period is the authoritative commission owed.
    """
    __tablename__ = "commission_transactions"
    __table_args__ = (
        db.Index("ix_commission_txns_rep_period_status", "rep_id", "commission_period", "status"),
        db.Index("ix_commission_txns_period_status", "commission_period", "status"),
        db.Index("ix_commission_txns_order", "order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    rep_id = db.Column(db.String(64), nullable=False)
    order_id = db.Column(db.String(64), nullable=True)
    business_account_id = db.Column(db.String(64), nullable=True, index=True)
    territory_id = db.Column(db.Integer, db.ForeignKey("territories.id"), nullable=True, index=True)

    # sale, bonus, override, adjustment, clawback
    transaction_type = db.Column(db.String(16), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    order_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    commissionable_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    commission_rate = db.Column(db.Numeric(9, 4), nullable=False, default=0)
    commission_amount_cents = db.Column(db.Integer, nullable=False)

    # pending, approved, paid, cancelled
    status = db.Column(db.String(16), nullable=False, default=TXN_STATUS_PENDING)

    sale_date = db.Column(db.DateTime(timezone=True), nullable=False)
    commission_period = db.Column(db.String(7), nullable=False)  # YYYY-MM

    reference_transaction_id = db.Column(
        db.Integer, db.ForeignKey("commission_transactions.id"), nullable=True, index=True
    )

    approved_by = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_reference = db.Column(db.String(128), nullable=True, index=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.String(64), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    reference_transaction = db.relationship("CommissionTransaction", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rep_id": self.rep_id,
            "order_id": self.order_id,
            "business_account_id": self.business_account_id,
            "territory_id": self.territory_id,
            "transaction_type": self.transaction_type,
            "description": self.description,
            "order_amount_cents": self.order_amount_cents,
            "commissionable_amount_cents": self.commissionable_amount_cents,
            "commission_rate": str(self.commission_rate),
            "commission_amount_cents": self.commission_amount_cents,
            "status": self.status,
            "sale_date": to_utc_z(self.sale_date),
            "commission_period": self.commission_period,
            "reference_transaction_id": self.reference_transaction_id,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "payment_reference": self.payment_reference,
            "paid_at": to_utc_z(self.paid_at),
            "cancelled_by": self.cancelled_by,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
