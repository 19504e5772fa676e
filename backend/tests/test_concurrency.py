# Overview: Pytest coverage for transaction boundaries, retries and deadlines.

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from territory_engine.errors import ConflictError, DeadlineExceededError, UnavailableError, ValidationError
from territory_engine.models import SalesRep
from territory_engine.services.collaborators import TransientCollaboratorError
from territory_engine.services.concurrency import Deadline, retry_call, run_in_transaction


class FakeMonotonic:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def _locked():
    return OperationalError("UPDATE territories", {}, Exception("database is locked"))


class TestDeadline:

    def test_counts_down_on_monotonic_clock(self):
        monotonic = FakeMonotonic()
        deadline = Deadline(5, monotonic=monotonic)

        assert deadline.remaining() == 5
        monotonic.now = 104.0
        assert not deadline.expired()
        monotonic.now = 105.5
        assert deadline.remaining() == 0
        with pytest.raises(DeadlineExceededError) as exc:
            deadline.check("payout")
        assert exc.value.details == {"timeout_seconds": 5}

    def test_unbounded(self):
        deadline = Deadline(None)
        assert deadline.remaining() is None
        assert not deadline.expired()
        deadline.check()


class TestRunInTransaction:

    def test_commits_result(self, db_session):
        def _op():
            db_session.add(SalesRep(id="rep-9", first_name="Dee"))
            return "ok"

        assert run_in_transaction(_op, session=db_session) == "ok"
        db_session.expire_all()
        assert db_session.get(SalesRep, "rep-9") is not None

    def test_domain_error_rolls_back(self, db_session):
        def _op():
            db_session.add(SalesRep(id="rep-9", first_name="Dee"))
            db_session.flush()
            raise ValidationError("nope")

        with pytest.raises(ValidationError):
            run_in_transaction(_op, session=db_session)
        assert db_session.get(SalesRep, "rep-9") is None

    def test_retries_storage_errors_then_succeeds(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) < 3:
                raise _locked()
            return len(calls)

        assert run_in_transaction(_op, session=db_session, attempts=3, backoff_base=0) == 3

    def test_exhausted_retries_surface_unavailable(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise _locked()

        with pytest.raises(UnavailableError) as exc:
            run_in_transaction(_op, session=db_session, attempts=4, backoff_base=0, operation="assign")
        assert len(calls) == 4
        assert exc.value.details == {"attempts": 4}

    def test_claim_constraint_becomes_conflict(self, db_session):
        def _op():
            raise IntegrityError(
                "INSERT INTO territory_postal_codes", {},
                Exception("UNIQUE constraint failed: territory_postal_codes.postal_code, "
                          "territory_postal_codes.claim_active"),
            )

        with pytest.raises(ConflictError) as exc:
            run_in_transaction(_op, session=db_session)
        assert exc.value.details["constraint"] == "uq_territory_postal_codes_claim"

    def test_other_integrity_errors_propagate(self, db_session):
        def _op():
            raise IntegrityError("INSERT INTO sales_reps", {}, Exception("NOT NULL constraint failed"))

        with pytest.raises(IntegrityError):
            run_in_transaction(_op, session=db_session)

    def test_expired_deadline_skips_work(self, db_session):
        calls = []
        with pytest.raises(DeadlineExceededError):
            run_in_transaction(lambda: calls.append(1), session=db_session, deadline=Deadline(0))
        assert calls == []


class TestRetryCall:

    def test_backs_off_exponentially(self):
        sleeps = []
        calls = []

        def _call():
            calls.append(1)
            if len(calls) < 3:
                raise TransientCollaboratorError("timeout")
            return "done"

        result = retry_call(_call, retry_on=(TransientCollaboratorError,), attempts=3,
                            backoff_base=0.5, sleep=sleeps.append)

        assert result == "done"
        assert sleeps == [0.5, 1.0]

    def test_reraises_last_transient_error(self):
        calls = []

        def _call():
            calls.append(1)
            raise TransientCollaboratorError(f"timeout {len(calls)}")

        with pytest.raises(TransientCollaboratorError, match="timeout 2"):
            retry_call(_call, retry_on=(TransientCollaboratorError,), attempts=2, sleep=lambda _: None)

    def test_other_errors_are_not_retried(self):
        calls = []

        def _call():
            calls.append(1)
            raise KeyError("boom")

        with pytest.raises(KeyError):
            retry_call(_call, retry_on=(TransientCollaboratorError,), attempts=5, sleep=lambda _: None)
        assert calls == [1]
