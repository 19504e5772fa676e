# backend/territory_engine/routes/territories.py
"""
Territory API routes: registry, protection rules, assignment and transfer,
conflict reports and metrics.
"""
from flask import Blueprint, g, jsonify, request

from ..decorators import handle_engine_errors, request_deadline, require_actor
from ..errors import ValidationError
from ..models.territories import CONFLICT_RESOLVED, PROTECTION_LEVEL_FULL
from ..services import build_services


territories_bp = Blueprint("territories", __name__, url_prefix="/api/territories")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


@territories_bp.route("", methods=["POST"])
@require_actor
@handle_engine_errors
def create_territory():
    """
    Create a territory.

    Request body:
    {
        "name": str, "state": str, "postal_codes": [str, ...],
        "city", "description", "protection_type", "boundaries" (optional),
        "assigned_rep_id", "protection_level" (optional; opens the first assignment)
    }

    Returns:
        201: Territory created
        400: Invalid definition
        409: Postal codes already claimed (details.conflicts lists each code and owner)
    """
    services = build_services()
    territory = services.registry.create_territory(
        _json_body(), created_by=g.actor_id, deadline=request_deadline()
    )
    return jsonify(territory.to_dict()), 201


@territories_bp.route("", methods=["GET"])
@handle_engine_errors
def list_territories():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    territories = build_services().registry.list_territories(
        state=request.args.get("state"),
        status=request.args.get("status"),
        rep_id=request.args.get("rep_id"),
        include_inactive=include_inactive,
    )
    return jsonify({"territories": [t.to_dict() for t in territories]})


@territories_bp.route("/<int:territory_id>", methods=["GET"])
@handle_engine_errors
def get_territory(territory_id: int):
    services = build_services()
    territory = services.registry.get_territory(territory_id)
    result = territory.to_dict()
    rule = services.protection.get_rules(territory_id)
    result["protection_rule"] = rule.to_dict() if rule else None
    active = services.coordinator.get_active_assignment(territory_id)
    result["active_assignment"] = active.to_dict() if active else None
    return jsonify(result)


@territories_bp.route("/<int:territory_id>", methods=["PATCH"])
@require_actor
@handle_engine_errors
def update_territory(territory_id: int):
    territory = build_services().registry.update_territory(
        territory_id, _json_body(), deadline=request_deadline()
    )
    return jsonify(territory.to_dict())


@territories_bp.route("/<int:territory_id>/deactivate", methods=["POST"])
@require_actor
@handle_engine_errors
def deactivate_territory(territory_id: int):
    territory = build_services().registry.deactivate_territory(territory_id, deadline=request_deadline())
    return jsonify(territory.to_dict())


@territories_bp.route("/by-postal-code/<code>", methods=["GET"])
@handle_engine_errors
def get_by_postal_code(code: str):
    territory = build_services().registry.find_by_postal_code(code)
    if territory is None:
        return jsonify({"error": f"No assigned territory covers postal code {code}", "code": "not_found",
                        "details": {"postal_code": code}}), 404
    return jsonify(territory.to_dict())


@territories_bp.route("/check-conflicts", methods=["POST"])
@handle_engine_errors
def check_conflicts():
    """
    Request body: {"postal_codes": [str, ...], "exclude_territory_id": int (optional)}
    """
    data = _json_body()
    conflicts = build_services().registry.check_conflicts(
        data.get("postal_codes") or [], data.get("exclude_territory_id")
    )
    return jsonify({"has_conflicts": bool(conflicts), "conflicts": conflicts})


@territories_bp.route("/validate", methods=["POST"])
@handle_engine_errors
def validate_territory():
    data = _json_body()
    result = build_services().registry.validate(data, data.get("exclude_territory_id"))
    return jsonify(result.to_dict())


@territories_bp.route("/route-account", methods=["POST"])
@require_actor
@handle_engine_errors
def route_account():
    """
    Attach a business account to the territory covering its postal code.

    Request body: {"business_account_id": str, "postal_code": str}
    """
    data = _json_body()
    territory = build_services().registry.route_account(
        data.get("business_account_id"), data.get("postal_code"), deadline=request_deadline()
    )
    return jsonify({
        "routed": territory is not None,
        "territory": territory.to_dict() if territory else None,
    })


# ---------------------------------------------------------------------------
# Protection rules
# ---------------------------------------------------------------------------

@territories_bp.route("/<int:territory_id>/protection-rules", methods=["GET"])
@handle_engine_errors
def get_protection_rules(territory_id: int):
    services = build_services()
    services.registry.get_territory(territory_id)
    rule = services.protection.get_rules(territory_id)
    return jsonify({"territory_id": territory_id, "protection_rule": rule.to_dict() if rule else None})


@territories_bp.route("/<int:territory_id>/protection-rules", methods=["PUT"])
@require_actor
@handle_engine_errors
def set_protection_rules(territory_id: int):
    """
    Request body: the full rule set, plus
        "approved_by": str (required to replace a lifetime rule on a held territory)
    """
    data = _json_body()
    approved_by = data.pop("approved_by", None)
    rule = build_services().protection.set_rules(
        territory_id, data, approved_by=approved_by, deadline=request_deadline()
    )
    return jsonify(rule.to_dict())


# ---------------------------------------------------------------------------
# Assignment / transfer
# ---------------------------------------------------------------------------

@territories_bp.route("/<int:territory_id>/assign", methods=["POST"])
@require_actor
@handle_engine_errors
def assign_territory(territory_id: int):
    """
    Request body:
    {
        "rep_id": str,
        "protection_level": "full" | "partial" | "none" (default full),
        "commission_override": number (optional, percent),
        "notes": str (optional)
    }

    Returns:
        200: assignment, territory and advisory warnings
        409: territory already protected
        502: accounts could not be re-pointed (nothing changed)
    """
    data = _json_body()
    services = build_services()
    rep_id = str(data.get("rep_id") or "").strip()
    if not rep_id:
        raise ValidationError("rep_id is required")
    warnings = services.coordinator.assignment_warnings(territory_id, rep_id)
    assignment = services.coordinator.assign(
        territory_id,
        rep_id,
        data.get("assigned_by") or g.actor_id,
        protection_level=data.get("protection_level") or PROTECTION_LEVEL_FULL,
        commission_override=data.get("commission_override"),
        notes=data.get("notes"),
        deadline=request_deadline(),
    )
    return jsonify({
        "assignment": assignment.to_dict(),
        "territory": assignment.territory.to_dict(),
        "warnings": warnings,
    })


@territories_bp.route("/<int:territory_id>/transfer", methods=["POST"])
@require_actor
@handle_engine_errors
def transfer_territory(territory_id: int):
    """
    Request body:
    {
        "from_rep_id": str,
        "to_rep_id": str,
        "reason": str,
        "approved_by": str (required for lifetime-protected territories)
    }
    """
    data = _json_body()
    assignment = build_services().coordinator.transfer(
        territory_id,
        data.get("from_rep_id"),
        data.get("to_rep_id"),
        data.get("reason"),
        approved_by=data.get("approved_by"),
        requested_by=g.actor_id,
        deadline=request_deadline(),
    )
    return jsonify({"assignment": assignment.to_dict(), "territory": assignment.territory.to_dict()})


@territories_bp.route("/<int:territory_id>/assignments", methods=["GET"])
@handle_engine_errors
def list_assignments(territory_id: int):
    assignments = build_services().coordinator.list_assignments(territory_id)
    return jsonify({"territory_id": territory_id, "assignments": [a.to_dict() for a in assignments]})


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

@territories_bp.route("/<int:territory_id>/conflicts", methods=["POST"])
@require_actor
@handle_engine_errors
def report_conflict(territory_id: int):
    data = _json_body()
    conflict = build_services().coordinator.report_conflict(
        territory_id,
        data.get("reporting_rep_id") or g.actor_id,
        data.get("conflict_type"),
        data.get("details"),
        deadline=request_deadline(),
    )
    return jsonify(conflict.to_dict()), 201


@territories_bp.route("/conflicts/<int:conflict_id>/resolve", methods=["POST"])
@require_actor
@handle_engine_errors
def resolve_conflict(conflict_id: int):
    data = _json_body()
    conflict = build_services().coordinator.resolve_conflict(
        conflict_id,
        g.actor_id,
        status=data.get("status") or CONFLICT_RESOLVED,
        notes=data.get("notes"),
        deadline=request_deadline(),
    )
    return jsonify(conflict.to_dict())


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

@territories_bp.route("/<int:territory_id>/metrics", methods=["GET"])
@handle_engine_errors
def territory_metrics(territory_id: int):
    services = build_services()
    if request.args.get("refresh", "false").lower() == "true":
        services.metrics.refresh_territory_metrics(territory_id, deadline=request_deadline())
    return jsonify(services.metrics.territory_metrics(territory_id))
