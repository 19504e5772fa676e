# Overview: Contracts for external collaborators (account store, rep profiles) and SQL-backed defaults.

"""
Collaborator contracts.

The engine never reaches into account or representative data directly; it
talks to these two interfaces. The SQL implementations below operate on the
reference business_accounts / sales_reps tables inside the caller's session,
so account re-pointing commits or rolls back together with the assignment
that triggered it. Deployments with a remote account service inject their
own AccountStore and raise TransientCollaboratorError for retryable failures.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..models import BusinessAccount, SalesRep
from ..time_utils import days_between


class CollaboratorError(Exception):
    """Permanent collaborator failure; the calling operation must not claim success."""


class TransientCollaboratorError(CollaboratorError):
    """Retryable collaborator failure (timeout, connection reset...)."""


@dataclass(frozen=True)
class RepProfile:
    rep_id: str
    commission_rate: Decimal
    tier: str = "standard"
    monthly_quota_cents: Optional[int] = None
    is_active: bool = True


class AccountStore:
    def repoint_accounts(self, territory_id: int, new_rep_id: str) -> int:
        """Point every account of the territory at new_rep_id; returns the count moved."""
        raise NotImplementedError

    def get_account_age(self, business_account_id: str, as_of: datetime) -> Optional[int]:
        """Age of the account in days at as_of, or None when the account is unknown."""
        raise NotImplementedError

    def attach_account(self, business_account_id: str, territory_id: int, rep_id: Optional[str]) -> bool:
        """Route one account to a territory and its rep; False when the account is unknown."""
        raise NotImplementedError


class RepProfileStore:
    def get_rep(self, rep_id: str) -> Optional[RepProfile]:
        raise NotImplementedError


class SqlAccountStore(AccountStore):
    def __init__(self, session: Session):
        self.session = session

    def repoint_accounts(self, territory_id: int, new_rep_id: str) -> int:
        return (
            self.session.query(BusinessAccount)
            .filter(BusinessAccount.territory_id == territory_id)
            .update({BusinessAccount.sales_rep_id: new_rep_id}, synchronize_session="fetch")
        )

    def get_account_age(self, business_account_id: str, as_of: datetime) -> Optional[int]:
        account = self.session.get(BusinessAccount, business_account_id)
        if account is None or account.created_at is None:
            return None
        return days_between(account.created_at, as_of)

    def attach_account(self, business_account_id: str, territory_id: int, rep_id: Optional[str]) -> bool:
        account = self.session.get(BusinessAccount, business_account_id)
        if account is None:
            return False
        account.territory_id = territory_id
        account.sales_rep_id = rep_id
        self.session.flush()
        return True


class SqlRepProfileStore(RepProfileStore):
    def __init__(self, session: Session):
        self.session = session

    def get_rep(self, rep_id: str) -> Optional[RepProfile]:
        rep = self.session.get(SalesRep, rep_id)
        if rep is None:
            return None
        return RepProfile(
            rep_id=rep.id,
            commission_rate=Decimal(rep.commission_rate or 0),
            tier=rep.commission_tier,
            monthly_quota_cents=rep.monthly_quota_cents,
            is_active=rep.is_active,
        )
