# Overview: Wires the service objects for one request or CLI invocation.

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy.orm import Session

from ..extensions import db
from ..time_utils import Clock, utcnow


@dataclass
class Services:
    registry: "TerritoryRegistry"
    protection: "ProtectionRuleStore"
    coordinator: "AssignmentCoordinator"
    rules: "CommissionRuleStore"
    ledger: "CommissionLedger"
    metrics: "MetricsService"
    rep_store: "RepProfileStore"
    account_store: "AccountStore"
    clock: Clock

    def engine(self) -> "CommissionEngine":
        """Commission engine over the current active-rule snapshot."""
        from .commission_engine import CommissionEngine

        return CommissionEngine(
            self.rules.active_rules_snapshot(),
            self.rep_store,
            self.account_store,
            self.ledger.monthly_volume,
            self.clock,
        )


def build_services(
    session: Optional[Session] = None,
    clock: Optional[Clock] = None,
    *,
    account_store=None,
    rep_store=None,
) -> Services:
    """
    Construct every service around one session and clock.

    Retry, chunking and collaborator settings come from the app config;
    ENGINE_CLOCK (a zero-argument callable) replaces the wall clock when set.
    """
    from .assignment_service import AssignmentCoordinator
    from .collaborators import SqlAccountStore, SqlRepProfileStore
    from .commission_rules import CommissionRuleStore
    from .ledger_service import CommissionLedger
    from .metrics_service import MetricsService
    from .protection_service import ProtectionRuleStore
    from .territory_service import TerritoryRegistry

    config = current_app.config
    session = session or db.session
    clock = clock or config.get("ENGINE_CLOCK") or utcnow
    retry = dict(
        retry_attempts=config.get("DB_RETRY_ATTEMPTS", 3),
        backoff_base=config.get("DB_RETRY_BACKOFF_BASE", 0.1),
    )

    account_store = account_store or config.get("ACCOUNT_STORE") or SqlAccountStore(session)
    rep_store = rep_store or SqlRepProfileStore(session)
    protection = ProtectionRuleStore(session, clock, **retry)
    ledger = CommissionLedger(session, clock, chunk_size=config.get("PAYOUT_CHUNK_SIZE", 500), **retry)

    return Services(
        registry=TerritoryRegistry(session, clock, protection=protection, account_store=account_store, **retry),
        protection=protection,
        coordinator=AssignmentCoordinator(
            session,
            clock,
            account_store,
            protection=protection,
            collaborator_attempts=config.get("COLLABORATOR_RETRY_ATTEMPTS", 3),
            collaborator_backoff_base=config.get("COLLABORATOR_RETRY_BACKOFF_BASE", 0.2),
            **retry,
        ),
        rules=CommissionRuleStore(session, clock, **retry),
        ledger=ledger,
        metrics=MetricsService(session, clock, ledger=ledger, rep_store=rep_store, **retry),
        rep_store=rep_store,
        account_store=account_store,
        clock=clock,
    )
