# Overview: Territory and rep performance metrics; feeds protection re-evaluation.

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..models import BusinessAccount, CommissionTransaction, Territory
from ..models.commissions import TXN_SALE, TXN_STATUS_CANCELLED
from ..time_utils import Clock, period_key, to_utc_z, utcnow
from .collaborators import RepProfileStore, SqlRepProfileStore
from .concurrency import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF_BASE, Deadline, lock_for_update, run_in_transaction
from .ledger_service import CommissionLedger
from .protection_service import ProtectionMetrics

TRAILING_DAYS = 30
ACCOUNT_ACTIVE = "active"

_PCT = Decimal("0.01")


def _attainment(volume_cents: int, quota_cents: Optional[int]) -> Optional[Decimal]:
    if not quota_cents:
        return None
    return (Decimal(volume_cents) / Decimal(quota_cents) * 100).quantize(_PCT, rounding=ROUND_HALF_UP)


def _average(total_cents: int, count: int) -> int:
    if not count:
        return 0
    return int((Decimal(total_cents) / count).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _month_start(dt: datetime) -> datetime:
    return dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class MetricsService:
    def __init__(
        self,
        session: Session,
        clock: Clock = utcnow,
        *,
        ledger: Optional[CommissionLedger] = None,
        rep_store: Optional[RepProfileStore] = None,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
    ):
        self.session = session
        self.clock = clock
        self.ledger = ledger or CommissionLedger(session, clock)
        self.rep_store = rep_store or SqlRepProfileStore(session)
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    def _sales(self):
        """Live sale rows; one per recorded order."""
        return self.session.query(CommissionTransaction).filter(
            CommissionTransaction.transaction_type == TXN_SALE,
            CommissionTransaction.status != TXN_STATUS_CANCELLED,
        )

    def territory_metrics(self, territory_id: int, as_of: Optional[datetime] = None) -> dict:
        territory = self.session.get(Territory, territory_id)
        if territory is None:
            raise NotFoundError(f"Territory {territory_id} not found", {"territory_id": territory_id})
        as_of = as_of or self.clock()
        since = as_of - timedelta(days=TRAILING_DAYS)

        accounts = self.session.query(BusinessAccount).filter(BusinessAccount.territory_id == territory_id)
        total_accounts = accounts.count()
        active_accounts = accounts.filter(BusinessAccount.status == ACCOUNT_ACTIVE).count()
        new_accounts = accounts.filter(BusinessAccount.created_at >= since).count()

        revenue, orders = (
            self._sales()
            .with_entities(
                func.coalesce(func.sum(CommissionTransaction.order_amount_cents), 0),
                func.count(CommissionTransaction.id),
            )
            .filter(
                CommissionTransaction.territory_id == territory_id,
                CommissionTransaction.sale_date >= since,
                CommissionTransaction.sale_date <= as_of,
            )
            .one()
        )
        revenue = int(revenue or 0)

        return {
            "territory_id": territory_id,
            "as_of": to_utc_z(as_of),
            "total_accounts": total_accounts,
            "active_accounts": active_accounts,
            "new_accounts": new_accounts,
            "revenue_cents": revenue,
            "order_count": int(orders or 0),
            "average_order_value_cents": _average(revenue, int(orders or 0)),
        }

    def refresh_territory_metrics(self, territory_id: int, *, deadline: Optional[Deadline] = None) -> Territory:
        """Recompute and cache the territory's metrics on its row."""
        def _op():
            territory = lock_for_update(
                self.session.query(Territory).filter_by(id=territory_id)
            ).first()
            if territory is None:
                raise NotFoundError(f"Territory {territory_id} not found", {"territory_id": territory_id})
            now = self.clock()
            metrics = self.territory_metrics(territory_id, now)
            territory.total_accounts = metrics["total_accounts"]
            territory.active_accounts = metrics["active_accounts"]
            territory.trailing_revenue_cents = metrics["revenue_cents"]
            territory.metrics_refreshed_at = now
            self.session.flush()
            return territory

        return run_in_transaction(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
            deadline=deadline,
            operation="refresh territory metrics",
        )

    def rep_performance(self, rep_id: str, period: Optional[str] = None) -> dict:
        rep = self.rep_store.get_rep(rep_id)
        if rep is None:
            raise NotFoundError(f"Sales rep {rep_id} not found", {"rep_id": rep_id})
        now = self.clock()
        period = period or period_key(now)

        total_sales, orders = (
            self._sales()
            .with_entities(
                func.coalesce(func.sum(CommissionTransaction.order_amount_cents), 0),
                func.count(CommissionTransaction.id),
            )
            .filter(
                CommissionTransaction.rep_id == rep_id,
                CommissionTransaction.commission_period == period,
            )
            .one()
        )
        total_sales = int(total_sales or 0)
        volume = self.ledger.monthly_volume(rep_id, period)
        owed = self.ledger.commission_owed(rep_id, period)

        accounts = self.session.query(BusinessAccount).filter(BusinessAccount.sales_rep_id == rep_id)
        new_accounts = accounts.filter(BusinessAccount.created_at >= _month_start(now)).count()
        attainment = _attainment(volume, rep.monthly_quota_cents)

        return {
            "rep_id": rep_id,
            "period": period,
            "commission_tier": rep.tier,
            "total_sales_cents": total_sales,
            "monthly_volume_cents": volume,
            "order_count": int(orders or 0),
            "average_order_value_cents": _average(total_sales, int(orders or 0)),
            "commissions_total_cents": owed["total_cents"],
            "commissions_pending_cents": owed["outstanding_cents"],
            "commissions_paid_cents": owed["paid_cents"],
            "account_count": accounts.count(),
            "new_accounts_this_month": new_accounts,
            "monthly_quota_cents": rep.monthly_quota_cents,
            "quota_attainment": str(attainment) if attainment is not None else None,
        }

    def protection_metrics(self, territory: Territory, as_of: datetime) -> ProtectionMetrics:
        """Standing of a territory and its holder, as evaluated by protection rules."""
        metrics = self.territory_metrics(territory.id, as_of)
        attainment = None
        if territory.assigned_rep_id:
            rep = self.rep_store.get_rep(territory.assigned_rep_id)
            if rep is not None:
                volume = self.ledger.monthly_volume(territory.assigned_rep_id, period_key(as_of))
                attainment = _attainment(volume, rep.monthly_quota_cents)
        return ProtectionMetrics(
            as_of=as_of,
            account_count=metrics["total_accounts"],
            active_account_count=metrics["active_accounts"],
            revenue_cents=metrics["revenue_cents"],
            quota_attainment=attainment,
            protection_start=territory.protection_start_date,
            protection_end=territory.protection_end_date,
        )
