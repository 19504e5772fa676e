from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


# Territory status
TERRITORY_STATUS_AVAILABLE = "available"
TERRITORY_STATUS_ASSIGNED = "assigned"
TERRITORY_STATUS_PROTECTED = "protected"
TERRITORY_STATUS_HOUSE = "house"
TERRITORY_STATUSES = (
    TERRITORY_STATUS_AVAILABLE,
    TERRITORY_STATUS_ASSIGNED,
    TERRITORY_STATUS_PROTECTED,
    TERRITORY_STATUS_HOUSE,
)

# Territory protection type
PROTECTION_FIRST_TO_SIGN = "first-to-sign"
PROTECTION_PERFORMANCE_BASED = "performance-based"
PROTECTION_TIME_LIMITED = "time-limited"
PROTECTION_NONE = "none"
PROTECTION_TYPES = (
    PROTECTION_FIRST_TO_SIGN,
    PROTECTION_PERFORMANCE_BASED,
    PROTECTION_TIME_LIMITED,
    PROTECTION_NONE,
)

# Protection rule type
RULE_LIFETIME = "lifetime"
RULE_PERFORMANCE = "performance"
RULE_TIME_BASED = "time-based"
RULE_HYBRID = "hybrid"
PROTECTION_RULE_TYPES = (RULE_LIFETIME, RULE_PERFORMANCE, RULE_TIME_BASED, RULE_HYBRID)

# Assignment status / protection level
ASSIGNMENT_ACTIVE = "active"
ASSIGNMENT_PENDING = "pending"
ASSIGNMENT_EXPIRED = "expired"
ASSIGNMENT_TRANSFERRED = "transferred"

PROTECTION_LEVEL_FULL = "full"
PROTECTION_LEVEL_PARTIAL = "partial"
PROTECTION_LEVEL_NONE = "none"
PROTECTION_LEVELS = (PROTECTION_LEVEL_FULL, PROTECTION_LEVEL_PARTIAL, PROTECTION_LEVEL_NONE)

# Conflict reports
CONFLICT_TYPES = ("overlap", "dispute", "transfer_request")
CONFLICT_PENDING = "pending"
CONFLICT_RESOLVED = "resolved"
CONFLICT_ESCALATED = "escalated"
CONFLICT_RESOLUTION_STATUSES = (CONFLICT_PENDING, CONFLICT_RESOLVED, CONFLICT_ESCALATED)


class Territory(db.Model):
    """
    Exclusive sales territory defined as a set of postal codes.

    LIFECYCLE: available -> assigned -> protected, with protected ->
    assigned -> protected cycles only through transfer or protection lapse.
    Territories with order history are never deleted; is_active=False
    deactivates them and releases their postal-code claims.

    Postal codes live in territory_postal_codes so the storage layer can
    enforce one live claim per code.
    """
    __tablename__ = "territories"
    __table_args__ = (
        db.Index("ix_territories_state_status", "state", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    city = db.Column(db.String(128), nullable=True)
    state = db.Column(db.String(2), nullable=False, index=True)

    # available, assigned, protected, house
    status = db.Column(db.String(16), nullable=False, default=TERRITORY_STATUS_AVAILABLE, index=True)
    protection_type = db.Column(db.String(32), nullable=False, default=PROTECTION_NONE)
    protection_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    protection_end_date = db.Column(db.DateTime(timezone=True), nullable=True)

    assigned_rep_id = db.Column(db.String(64), nullable=True, index=True)

    # Opaque GeoJSON polygon; never interpreted by the engine
    boundaries = db.Column(db.JSON, nullable=True)

    # Cached performance metrics (refreshed by metrics_service)
    total_accounts = db.Column(db.Integer, nullable=False, default=0)
    active_accounts = db.Column(db.Integer, nullable=False, default=0)
    trailing_revenue_cents = db.Column(db.Integer, nullable=False, default=0)
    metrics_refreshed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    postal_code_rows = db.relationship(
        "TerritoryPostalCode",
        back_populates="territory",
        order_by="TerritoryPostalCode.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def postal_codes(self) -> list[str]:
        return [row.postal_code for row in self.postal_code_rows]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "postal_codes": self.postal_codes,
            "city": self.city,
            "state": self.state,
            "status": self.status,
            "protection_type": self.protection_type,
            "protection_start_date": to_utc_z(self.protection_start_date),
            "protection_end_date": to_utc_z(self.protection_end_date),
            "assigned_rep_id": self.assigned_rep_id,
            "boundaries": self.boundaries,
            "metrics": {
                "total_accounts": self.total_accounts,
                "active_accounts": self.active_accounts,
                "trailing_revenue_cents": self.trailing_revenue_cents,
                "refreshed_at": to_utc_z(self.metrics_refreshed_at),
            },
            "is_active": self.is_active,
            "deactivated_at": to_utc_z(self.deactivated_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class TerritoryPostalCode(db.Model):
    """
    One postal-code claim held by a territory.

    INVARIANT (storage backstop): claim_active is TRUE for a live claim and
    NULL once the owning territory is deactivated. The unique constraint on
    (postal_code, claim_active) therefore admits exactly one live claim per
    code while keeping released codes on record.
    """
    __tablename__ = "territory_postal_codes"
    __table_args__ = (
        db.UniqueConstraint("postal_code", "claim_active", name="uq_territory_postal_codes_claim"),
        db.Index("ix_territory_postal_codes_territory", "territory_id", "position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    territory_id = db.Column(db.Integer, db.ForeignKey("territories.id"), nullable=False)
    postal_code = db.Column(db.String(10), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    claim_active = db.Column(db.Boolean, nullable=True, default=True)

    territory = db.relationship("Territory", back_populates="postal_code_rows")


class TerritoryProtectionRule(db.Model):
    """
    Protection policy for a territory (at most one per territory).

    rule_type:
    - lifetime: first-to-sign protection; any transfer needs an approver
    - performance: holds while account/revenue/quota thresholds are met
    - time-based: holds for time_period_months from protection start
    - hybrid: performance AND time-based
    """
    __tablename__ = "territory_protection_rules"
    __table_args__ = (
        db.UniqueConstraint("territory_id", name="uq_protection_rules_territory"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    territory_id = db.Column(db.Integer, db.ForeignKey("territories.id"), nullable=False, index=True)

    rule_type = db.Column(db.String(16), nullable=False)

    # Conditions
    minimum_accounts = db.Column(db.Integer, nullable=True)
    minimum_revenue_cents = db.Column(db.Integer, nullable=True)
    time_period_months = db.Column(db.Integer, nullable=True)
    performance_threshold = db.Column(db.Numeric(9, 4), nullable=True)  # quota attainment %

    # Inheritance policy
    allow_inheritance = db.Column(db.Boolean, nullable=False, default=False)
    require_approval = db.Column(db.Boolean, nullable=False, default=False)
    approved_inheritors = db.Column(db.JSON, nullable=True)  # list of rep ids

    # Split-commission policy
    split_commission_enabled = db.Column(db.Boolean, nullable=False, default=False)
    split_percentage = db.Column(db.Numeric(9, 4), nullable=True)
    split_conditions = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    territory = db.relationship("Territory", backref=db.backref("protection_rule", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "territory_id": self.territory_id,
            "rule_type": self.rule_type,
            "conditions": {
                "minimum_accounts": self.minimum_accounts,
                "minimum_revenue_cents": self.minimum_revenue_cents,
                "time_period_months": self.time_period_months,
                "performance_threshold": str(self.performance_threshold) if self.performance_threshold is not None else None,
            },
            "inheritance_rules": {
                "allow_inheritance": self.allow_inheritance,
                "require_approval": self.require_approval,
                "approved_inheritors": list(self.approved_inheritors or []),
            },
            "split_commission_rules": {
                "enabled": self.split_commission_enabled,
                "split_percentage": str(self.split_percentage) if self.split_percentage is not None else None,
                "conditions": list(self.split_conditions or []),
            },
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class TerritoryAssignment(db.Model):
    """
    One continuous period during which a rep held a territory.

    INVARIANT: at most one ACTIVE assignment per territory. active_marker is
    TRUE only while status == active; the unique constraint on
    (territory_id, active_marker) enforces the invariant at the storage layer.
    """
    __tablename__ = "territory_assignments"
    __table_args__ = (
        db.UniqueConstraint("territory_id", "active_marker", name="uq_territory_assignments_active"),
        db.Index("ix_territory_assignments_rep_status", "rep_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    territory_id = db.Column(db.Integer, db.ForeignKey("territories.id"), nullable=False, index=True)
    rep_id = db.Column(db.String(64), nullable=False)

    assigned_date = db.Column(db.DateTime(timezone=True), nullable=False)
    assigned_by = db.Column(db.String(64), nullable=False)

    # active, pending, expired, transferred
    status = db.Column(db.String(16), nullable=False, default=ASSIGNMENT_ACTIVE, index=True)
    active_marker = db.Column(db.Boolean, nullable=True, default=True)

    # full, partial, none
    protection_level = db.Column(db.String(16), nullable=False, default=PROTECTION_LEVEL_FULL)
    commission_override = db.Column(db.Numeric(9, 4), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    territory = db.relationship("Territory", backref=db.backref("assignments", lazy=True))
    transfer_history = db.relationship(
        "TerritoryTransferHistory",
        back_populates="assignment",
        order_by="TerritoryTransferHistory.id",
        lazy=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "territory_id": self.territory_id,
            "rep_id": self.rep_id,
            "assigned_date": to_utc_z(self.assigned_date),
            "assigned_by": self.assigned_by,
            "status": self.status,
            "protection_level": self.protection_level,
            "commission_override": str(self.commission_override) if self.commission_override is not None else None,
            "notes": self.notes,
            "ended_at": to_utc_z(self.ended_at),
            "transfer_history": [entry.to_dict() for entry in self.transfer_history],
        }


class TerritoryTransferHistory(db.Model):
    """
    Append-only audit trail of territory hand-offs.

    IMMUTABLE: Records are never updated or deleted. Each entry is attached
    to the assignment it created.
    """
    __tablename__ = "territory_transfer_history"
    __table_args__ = (
        db.Index("ix_transfer_history_territory_date", "territory_id", "transfer_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    territory_id = db.Column(db.Integer, db.ForeignKey("territories.id"), nullable=False)
    assignment_id = db.Column(db.Integer, db.ForeignKey("territory_assignments.id"), nullable=False, index=True)

    from_rep_id = db.Column(db.String(64), nullable=False)
    to_rep_id = db.Column(db.String(64), nullable=False)
    transfer_date = db.Column(db.DateTime(timezone=True), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    approved_by = db.Column(db.String(64), nullable=True)

    assignment = db.relationship("TerritoryAssignment", back_populates="transfer_history")

    def to_dict(self) -> dict:
        return {
            "from_rep_id": self.from_rep_id,
            "to_rep_id": self.to_rep_id,
            "transfer_date": to_utc_z(self.transfer_date),
            "reason": self.reason,
            "approved_by": self.approved_by,
        }


class TerritoryConflict(db.Model):
    """
    Dispute raised by a rep about a territory, resolved manually.

    Reporting a conflict never changes assignment state.
    """
    __tablename__ = "territory_conflicts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    territory_id = db.Column(db.Integer, db.ForeignKey("territories.id"), nullable=False, index=True)
    reporting_rep_id = db.Column(db.String(64), nullable=False)
    current_rep_id = db.Column(db.String(64), nullable=True)

    conflict_type = db.Column(db.String(32), nullable=False)  # overlap, dispute, transfer_request
    details = db.Column(db.Text, nullable=True)

    resolution_status = db.Column(db.String(16), nullable=False, default=CONFLICT_PENDING, index=True)
    resolution_notes = db.Column(db.Text, nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    territory = db.relationship("Territory", backref=db.backref("conflicts", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "territory_id": self.territory_id,
            "reporting_rep_id": self.reporting_rep_id,
            "current_rep_id": self.current_rep_id,
            "conflict_type": self.conflict_type,
            "details": self.details,
            "resolution_status": self.resolution_status,
            "resolution_notes": self.resolution_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": to_utc_z(self.resolved_at),
            "created_at": to_utc_z(self.created_at),
        }
