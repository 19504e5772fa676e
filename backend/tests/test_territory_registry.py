# Overview: Pytest coverage for the territory registry (postal-code ownership, lifecycle, routing).

"""
Territory Registry Tests

Covers:
- Postal-code conflict detection on create/update, with owner details
- The storage backstop when the pre-write check is bypassed
- Deactivation releasing postal codes
- Lookup and routing by postal code
"""

import pytest

from territory_engine.errors import ConflictError, InvalidStateTransitionError, NotFoundError, ValidationError
from territory_engine.models import BusinessAccount, Territory, TerritoryPostalCode

from conftest import make_account, territory_payload


class TestCreateTerritory:

    def test_create_defaults_to_available(self, services):
        """A territory without a rep starts available, codes kept in order."""
        territory = services.registry.create_territory(
            territory_payload(codes=["10003", "10001", "10002"]), created_by="admin1"
        )

        assert territory.id is not None
        assert territory.status == "available"
        assert territory.postal_codes == ["10003", "10001", "10002"]
        assert territory.state == "NY"
        assert territory.assigned_rep_id is None

    def test_create_deduplicates_codes(self, services):
        territory = services.registry.create_territory(territory_payload(codes=["10001", " 10001", "10002"]))
        assert territory.postal_codes == ["10001", "10002"]

    def test_overlapping_codes_rejected_with_owner(self, services, db_session):
        """Creating B over A's code fails and names A; a disjoint B then succeeds."""
        a = services.registry.create_territory(territory_payload(name="Territory A", codes=["10001", "10002"]))

        with pytest.raises(ConflictError) as exc:
            services.registry.create_territory(territory_payload(name="Territory B", codes=["10002", "10003"]))

        assert exc.value.details["conflicts"] == [{
            "postal_code": "10002",
            "territory_id": a.id,
            "territory_name": "Territory A",
            "territory_status": "available",
        }]
        assert "10002 (Territory A)" in exc.value.message
        assert db_session.query(Territory).count() == 1

        b = services.registry.create_territory(territory_payload(name="Territory B", codes=["10003", "10004"]))
        assert b.postal_codes == ["10003", "10004"]

    def test_house_territories_hold_their_codes(self, services):
        """House accounts participate in the conflict check like any live territory."""
        services.registry.create_territory(territory_payload(name="House West", codes=["90001"], state="CA", status="house"))

        with pytest.raises(ConflictError):
            services.registry.create_territory(territory_payload(name="LA Central", codes=["90001"], state="CA"))

    def test_storage_backstop_reports_owner(self, services, db_session, monkeypatch):
        """If two writers both pass the pre-check, the unique constraint still rejects the second."""
        a = services.registry.create_territory(territory_payload(name="Territory A", codes=["10001"]))
        monkeypatch.setattr(services.registry, "_raise_on_conflicts", lambda *args, **kwargs: None)

        with pytest.raises(ConflictError) as exc:
            services.registry.create_territory(territory_payload(name="Territory B", codes=["10001"]))

        assert exc.value.details["conflicts"][0]["territory_id"] == a.id
        assert db_session.query(Territory).count() == 1

    @pytest.mark.parametrize("payload, message", [
        (territory_payload(name="NY"), "at least 3 characters"),
        (territory_payload(state="XX"), "Invalid state code"),
        (territory_payload(codes=[]), "at least one postal code"),
        (territory_payload(codes=["1000A"]), "Invalid postal code format: 1000A"),
    ])
    def test_invalid_definitions(self, services, payload, message):
        with pytest.raises(ValidationError) as exc:
            services.registry.create_territory(payload)
        assert message in exc.value.message

    def test_rejects_unknown_fields(self, services):
        with pytest.raises(ValidationError):
            services.registry.create_territory(territory_payload(version_id=7))

    def test_status_assigned_only_through_assignment(self, services):
        with pytest.raises(ValidationError):
            services.registry.create_territory(territory_payload(status="protected"))

    def test_create_with_rep_opens_protected_assignment(self, services, reps):
        territory = services.registry.create_territory(
            territory_payload(assigned_rep_id="rep-1"), created_by="admin1"
        )

        assert territory.status == "protected"
        assert territory.assigned_rep_id == "rep-1"
        active = services.coordinator.get_active_assignment(territory.id)
        assert active.rep_id == "rep-1"
        assert active.assigned_by == "admin1"
        assert services.protection.get_rules(territory.id) is not None

    def test_create_with_partial_protection_is_assigned(self, services, reps):
        territory = services.registry.create_territory(
            territory_payload(assigned_rep_id="rep-1", protection_level="partial")
        )
        assert territory.status == "assigned"
        assert services.protection.get_rules(territory.id) is None


class TestUpdateTerritory:

    def test_only_added_codes_are_checked(self, services):
        a = services.registry.create_territory(territory_payload(name="Territory A", codes=["10001", "10002"]))
        services.registry.create_territory(territory_payload(name="Territory B", codes=["10005"]))

        updated = services.registry.update_territory(a.id, {"postal_codes": ["10002", "10001", "10003"]})
        assert updated.postal_codes == ["10002", "10001", "10003"]

        with pytest.raises(ConflictError) as exc:
            services.registry.update_territory(a.id, {"postal_codes": ["10001", "10005"]})
        assert exc.value.details["conflicts"][0]["postal_code"] == "10005"

    def test_removed_codes_become_claimable(self, services):
        a = services.registry.create_territory(territory_payload(name="Territory A", codes=["10001", "10002"]))
        services.registry.update_territory(a.id, {"postal_codes": ["10001"]})

        b = services.registry.create_territory(territory_payload(name="Territory B", codes=["10002"]))
        assert b.postal_codes == ["10002"]

    def test_update_fields(self, services):
        a = services.registry.create_territory(territory_payload())
        updated = services.registry.update_territory(a.id, {"name": "Upper Manhattan", "city": "New York"})
        assert updated.name == "Upper Manhattan"
        assert updated.city == "New York"
        assert updated.postal_codes == ["10001", "10002"]

    def test_update_missing_territory(self, services):
        with pytest.raises(NotFoundError):
            services.registry.update_territory(999, {"name": "Nowhere"})

    def test_status_change_refused_while_assigned(self, services, reps):
        a = services.registry.create_territory(territory_payload(assigned_rep_id="rep-1", protection_level="none"))
        with pytest.raises(InvalidStateTransitionError):
            services.registry.update_territory(a.id, {"status": "house"})


class TestDeactivateTerritory:

    def test_deactivation_releases_codes(self, services, db_session):
        a = services.registry.create_territory(territory_payload(name="Territory A", codes=["10001"]))
        services.registry.deactivate_territory(a.id)

        db_session.expire_all()
        retired = db_session.get(Territory, a.id)
        assert retired.is_active is False
        assert retired.deactivated_at is not None
        assert services.registry.check_conflicts(["10001"]) == []
        assert services.registry.list_territories() == []
        assert [t.id for t in services.registry.list_territories(include_inactive=True)] == [a.id]

        b = services.registry.create_territory(territory_payload(name="Territory B", codes=["10001"]))
        claims = db_session.query(TerritoryPostalCode).filter_by(postal_code="10001").all()
        assert {(c.territory_id, c.claim_active) for c in claims} == {(a.id, None), (b.id, True)}

    def test_refused_with_active_assignment(self, services, reps):
        a = services.registry.create_territory(territory_payload(assigned_rep_id="rep-1"))
        with pytest.raises(InvalidStateTransitionError):
            services.registry.deactivate_territory(a.id)

    def test_deactivated_territory_cannot_be_updated(self, services):
        a = services.registry.create_territory(territory_payload())
        services.registry.deactivate_territory(a.id)
        with pytest.raises(InvalidStateTransitionError):
            services.registry.update_territory(a.id, {"name": "Revived"})


class TestLookup:

    def test_check_conflicts_follows_input_order(self, services):
        a = services.registry.create_territory(territory_payload(name="Territory A", codes=["10001"]))
        b = services.registry.create_territory(territory_payload(name="Territory B", codes=["10002"]))

        conflicts = services.registry.check_conflicts(["10002", "10009", "10001"])
        assert [(c["postal_code"], c["territory_id"]) for c in conflicts] == [("10002", b.id), ("10001", a.id)]
        assert services.registry.check_conflicts(["10001"], exclude_territory_id=a.id) == []

    def test_find_by_postal_code_only_routes_held_territories(self, services, reps):
        available = services.registry.create_territory(territory_payload(name="Open Area", codes=["10001"]))
        held = services.registry.create_territory(
            territory_payload(name="Held Area", codes=["10002"], assigned_rep_id="rep-1")
        )

        assert services.registry.find_by_postal_code("10001") is None
        assert services.registry.find_by_postal_code("10002").id == held.id
        assert services.registry.find_by_postal_code("99999") is None
        assert available.status == "available"

    def test_list_filters(self, services, reps):
        services.registry.create_territory(territory_payload(name="Bronx", codes=["10451"]))
        services.registry.create_territory(
            territory_payload(name="Brooklyn", codes=["11201"], assigned_rep_id="rep-2", protection_level="partial")
        )
        services.registry.create_territory(territory_payload(name="Newark", codes=["07101"], state="NJ"))

        assert [t.name for t in services.registry.list_territories(state="ny")] == ["Bronx", "Brooklyn"]
        assert [t.name for t in services.registry.list_territories(status="assigned")] == ["Brooklyn"]
        assert [t.name for t in services.registry.get_rep_territories("rep-2")] == ["Brooklyn"]
        with pytest.raises(ValidationError):
            services.registry.list_territories(status="bogus")

    def test_validate_returns_errors_and_warnings(self, services):
        services.registry.create_territory(territory_payload(name="Territory A", codes=["10001"]))

        result = services.registry.validate(territory_payload(name="Spread Out", codes=["10001", "90210"]))
        assert not result.is_valid
        assert any("10001" in e and "Territory A" in e for e in result.errors)
        assert result.warnings


class TestRouteAccount:

    def test_routes_account_to_holder(self, services, reps, db_session):
        territory = services.registry.create_territory(
            territory_payload(codes=["10001"], assigned_rep_id="rep-1")
        )
        make_account(db_session, "acct-1", postal_code="10001")

        routed = services.registry.route_account("acct-1", "10001")

        assert routed.id == territory.id
        account = db_session.get(BusinessAccount, "acct-1")
        assert account.territory_id == territory.id
        assert account.sales_rep_id == "rep-1"

    def test_unrouted_code_leaves_account_alone(self, services, db_session):
        make_account(db_session, "acct-1", postal_code="30301")
        assert services.registry.route_account("acct-1", "30301") is None
        assert db_session.get(BusinessAccount, "acct-1").territory_id is None

    def test_unknown_account(self, services, reps):
        services.registry.create_territory(territory_payload(codes=["10001"], assigned_rep_id="rep-1"))
        with pytest.raises(NotFoundError):
            services.registry.route_account("ghost", "10001")
