# Overview: Pytest coverage for the HTTP API (status codes, error bodies, actor header).

"""
API Tests

Exercises the blueprints end to end through the Flask test client:
- Mutating routes require X-Actor-Id (401 otherwise)
- Engine errors map to {error, code, details} with their HTTP status
- Territory, assignment and commission flows as a client sees them
"""

from conftest import ACTOR_HEADERS, make_account, territory_payload


def _create(client, **kwargs):
    return client.post('/api/territories', json=territory_payload(**kwargs), headers=ACTOR_HEADERS)


class TestSystem:

    def test_health(self, client, db_session):
        response = client.get('/api/health')

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["details"] == {"active_territories": 0, "active_commission_rules": 0}


class TestTerritoryApi:

    def test_mutations_require_actor(self, client, db_session):
        response = client.post('/api/territories', json=territory_payload())

        assert response.status_code == 401
        assert response.get_json()["code"] == "actor_required"

        response = client.post('/api/territories', json=territory_payload(), headers={"X-Actor-Id": "  "})
        assert response.status_code == 401

    def test_create_and_get(self, client, db_session):
        response = _create(client)

        assert response.status_code == 201
        created = response.get_json()
        assert created["postal_codes"] == ["10001", "10002"]
        assert created["status"] == "available"

        fetched = client.get(f'/api/territories/{created["id"]}').get_json()
        assert fetched["protection_rule"] is None
        assert fetched["active_assignment"] is None

    def test_overlap_is_409_with_owners(self, client, db_session):
        first = _create(client, name="Territory A", codes=["10001", "10002"]).get_json()

        response = _create(client, name="Territory B", codes=["10002", "10003"])

        assert response.status_code == 409
        body = response.get_json()
        assert body["code"] == "conflict"
        assert "10002 (Territory A)" in body["error"]
        assert body["details"]["conflicts"] == [{
            "postal_code": "10002",
            "territory_id": first["id"],
            "territory_name": "Territory A",
            "territory_status": "available",
        }]

    def test_invalid_definition_is_400(self, client, db_session):
        response = _create(client, name="X", codes=[])

        assert response.status_code == 400
        assert response.get_json()["code"] == "validation_error"

    def test_check_conflicts_and_validate(self, client, db_session):
        _create(client, name="Territory A", codes=["10001"])

        conflicts = client.post('/api/territories/check-conflicts', json={"postal_codes": ["10001", "10005"]})
        assert conflicts.status_code == 200
        assert conflicts.get_json()["has_conflicts"] is True
        assert [c["postal_code"] for c in conflicts.get_json()["conflicts"]] == ["10001"]

        validation = client.post('/api/territories/validate', json={
            "name": "Territory B", "state": "NY", "postal_codes": ["10001"],
        }).get_json()
        assert validation["is_valid"] is False

    def test_unknown_territory_is_404(self, client, db_session):
        response = client.get('/api/territories/404')
        assert response.status_code == 404
        assert response.get_json()["code"] == "not_found"

    def test_assign_and_route(self, client, reps, db_session):
        territory = _create(client, codes=["10001"]).get_json()

        response = client.post(f'/api/territories/{territory["id"]}/assign',
                               json={"rep_id": "rep-1"}, headers=ACTOR_HEADERS)

        assert response.status_code == 200
        body = response.get_json()
        assert body["assignment"]["assigned_by"] == "admin1"
        assert body["territory"]["status"] == "protected"
        assert body["warnings"] == []

        again = client.post(f'/api/territories/{territory["id"]}/assign',
                            json={"rep_id": "rep-2"}, headers=ACTOR_HEADERS)
        assert again.status_code == 409
        assert again.get_json()["code"] == "already_protected"

        assert client.get('/api/territories/by-postal-code/10001').get_json()["id"] == territory["id"]
        assert client.get('/api/territories/by-postal-code/99999').status_code == 404

        make_account(db_session, "acct-1")
        routed = client.post('/api/territories/route-account',
                             json={"business_account_id": "acct-1", "postal_code": "10001"},
                             headers=ACTOR_HEADERS).get_json()
        assert routed["routed"] is True

        rep_territories = client.get('/api/reps/rep-1/territories').get_json()
        assert [t["id"] for t in rep_territories["territories"]] == [territory["id"]]

    def test_lifetime_transfer_needs_approver(self, client, reps, db_session):
        territory = _create(client, codes=["10001"]).get_json()
        url = f'/api/territories/{territory["id"]}'
        client.put(f'{url}/protection-rules', json={"rule_type": "lifetime"}, headers=ACTOR_HEADERS)
        client.post(f'{url}/assign', json={"rep_id": "rep-1"}, headers=ACTOR_HEADERS)
        transfer = {"from_rep_id": "rep-1", "to_rep_id": "rep-2", "reason": "Relocation"}

        denied = client.post(f'{url}/transfer', json=transfer, headers=ACTOR_HEADERS)
        assert denied.status_code == 403
        assert denied.get_json()["code"] == "approval_required"

        approved = client.post(f'{url}/transfer', json={**transfer, "approved_by": "admin1"}, headers=ACTOR_HEADERS)
        assert approved.status_code == 200
        assert approved.get_json()["assignment"]["rep_id"] == "rep-2"

        history = client.get(f'{url}/assignments').get_json()["assignments"]
        assert [a["status"] for a in history] == ["active", "transferred"]

    def test_lifetime_rule_replacement_needs_approver(self, client, reps, db_session):
        territory = _create(client, codes=["10001"]).get_json()
        url = f'/api/territories/{territory["id"]}'
        client.put(f'{url}/protection-rules', json={"rule_type": "lifetime"}, headers=ACTOR_HEADERS)
        client.post(f'{url}/assign', json={"rep_id": "rep-1"}, headers=ACTOR_HEADERS)

        denied = client.put(f'{url}/protection-rules', json={"rule_type": "performance"}, headers=ACTOR_HEADERS)
        assert denied.status_code == 403
        assert denied.get_json()["code"] == "approval_required"
        assert client.get(f'{url}/protection-rules').get_json()["protection_rule"]["rule_type"] == "lifetime"

        approved = client.put(f'{url}/protection-rules', json={"rule_type": "performance", "approved_by": "admin1"},
                              headers=ACTOR_HEADERS)
        assert approved.status_code == 200
        assert approved.get_json()["rule_type"] == "performance"

    def test_conflict_report_flow(self, client, db_session):
        territory = _create(client, codes=["10001"]).get_json()

        reported = client.post(f'/api/territories/{territory["id"]}/conflicts',
                               json={"conflict_type": "dispute", "details": "Overlapping account"},
                               headers={"X-Actor-Id": "rep-2"})
        assert reported.status_code == 201
        conflict = reported.get_json()
        assert conflict["reporting_rep_id"] == "rep-2"

        resolved = client.post(f'/api/territories/conflicts/{conflict["id"]}/resolve',
                               json={"notes": "Kept with rep-1"}, headers=ACTOR_HEADERS)
        assert resolved.get_json()["resolution_status"] == "resolved"


class TestCommissionApi:

    ORDER = {"order_id": "ord-1", "rep_id": "rep-1", "order_amount_cents": 100_000}

    def test_calculate_is_read_only(self, client, reps, db_session):
        response = client.post('/api/commissions/calculate', json=self.ORDER)

        assert response.status_code == 200
        body = response.get_json()
        assert body["total_amount_cents"] == 5_000
        assert client.get('/api/commissions/transactions').get_json()["transactions"] == []

    def test_record_approve_payout(self, client, reps, db_session):
        recorded = client.post('/api/commissions/record', json=self.ORDER, headers=ACTOR_HEADERS)
        assert recorded.status_code == 201
        ids = recorded.get_json()["transaction_ids"]

        duplicate = client.post('/api/commissions/record', json=self.ORDER, headers=ACTOR_HEADERS)
        assert duplicate.status_code == 409

        approval = client.post('/api/commissions/approve', json={"transaction_ids": ids + [999]},
                               headers=ACTOR_HEADERS).get_json()
        assert approval["approved"] == ids
        assert approval["failed"] == [{"id": 999, "reason": "not_found"}]

        payout = client.post('/api/commissions/payout', json={"period": "2026-09", "payment_reference": "PAY-1"},
                             headers=ACTOR_HEADERS).get_json()
        assert payout["paid_count"] == 1
        assert payout["completed"] is True

        owed = client.get('/api/commissions/owed?rep_id=rep-1&period=2026-09').get_json()
        assert owed["paid_cents"] == 5_000

        clawback = client.post(f'/api/commissions/transactions/{ids[0]}/cancel', json={"reason": "Refund"},
                               headers=ACTOR_HEADERS).get_json()
        assert clawback["transaction_type"] == "clawback"
        assert clawback["commission_amount_cents"] == -5_000

    def test_calculate_rejects_bad_payload(self, client, reps, db_session):
        response = client.post('/api/commissions/calculate', json={"order_id": "ord-1", "rep_id": "rep-1"})
        assert response.status_code == 400
        assert response.get_json()["details"] == {}

        response = client.post('/api/commissions/calculate', data="not json", content_type="application/json")
        assert response.status_code == 400

    def test_rules_endpoints(self, client, db_session):
        created = client.post('/api/commissions/rules', json={
            "name": "Hardware push",
            "rule_type": "category",
            "conditions": {"categories": ["hardware"]},
            "rate_structure": {"category_rate": 2},
        }, headers=ACTOR_HEADERS)
        assert created.status_code == 201
        rule = created.get_json()
        assert rule["created_by"] == "admin1"

        patched = client.patch(f'/api/commissions/rules/{rule["id"]}', json={"priority": 4},
                               headers=ACTOR_HEADERS).get_json()
        assert patched["priority"] == 4

        listed = client.get('/api/commissions/rules?rule_type=category').get_json()["rules"]
        assert [r["id"] for r in listed] == [rule["id"]]

    def test_rep_performance(self, client, reps, db_session):
        client.post('/api/commissions/record', json=self.ORDER, headers=ACTOR_HEADERS)

        performance = client.get('/api/reps/rep-1/performance').get_json()
        assert performance["monthly_volume_cents"] == 100_000
        assert client.get('/api/reps/ghost/performance').status_code == 404
