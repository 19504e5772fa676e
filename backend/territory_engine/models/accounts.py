from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class SalesRep(db.Model):
    """
    Representative profile (owned by the rep profile store collaborator).

    commission_rate is a percentage (5 means 5%). The engine only reads this
    table through services.collaborators.SqlRepProfileStore.
    """
    __tablename__ = "sales_reps"

    id = db.Column(db.String(64), primary_key=True)
    first_name = db.Column(db.String(128), nullable=True)
    last_name = db.Column(db.String(128), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    commission_rate = db.Column(db.Numeric(9, 4), nullable=False, default=0)
    commission_tier = db.Column(db.String(16), nullable=False, default="standard")  # standard, silver, gold, platinum
    monthly_quota_cents = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "commission_rate": str(self.commission_rate),
            "commission_tier": self.commission_tier,
            "monthly_quota_cents": self.monthly_quota_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class BusinessAccount(db.Model):
    """
    Customer business account (owned by the account store collaborator).

    territory_id / sales_rep_id are re-pointed in bulk when a territory
    changes hands.
    """
    __tablename__ = "business_accounts"
    __table_args__ = (
        db.Index("ix_business_accounts_territory", "territory_id"),
        db.Index("ix_business_accounts_rep", "sales_rep_id"),
    )

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    postal_code = db.Column(db.String(10), nullable=True)
    territory_id = db.Column(db.Integer, db.ForeignKey("territories.id"), nullable=True)
    sales_rep_id = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="active")  # active, inactive

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "postal_code": self.postal_code,
            "territory_id": self.territory_id,
            "sales_rep_id": self.sales_rep_id,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
