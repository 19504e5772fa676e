# backend/territory_engine/routes/commissions.py
"""
Commission API routes: calculation, ledger and rule management.
"""
from flask import Blueprint, g, jsonify, request

from ..decorators import handle_engine_errors, request_deadline, require_actor
from ..errors import ValidationError
from ..services import build_services
from ..services.commission_engine import OrderDetails


commissions_bp = Blueprint("commissions", __name__, url_prefix="/api/commissions")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


def _commission_override(services, order: OrderDetails, data: dict):
    """Explicit override from the payload, else the holder's assignment override for the order's territory."""
    if data.get("commission_override") is not None:
        return data["commission_override"]
    if order.territory_id is None:
        return None
    active = services.coordinator.get_active_assignment(order.territory_id)
    if active is not None and active.rep_id == order.rep_id:
        return active.commission_override
    return None


def _calculate(services, data: dict):
    order = OrderDetails.from_dict(data)
    calculation = services.engine().calculate(order, _commission_override(services, order, data))
    return order, calculation


@commissions_bp.route("/calculate", methods=["POST"])
@handle_engine_errors
def calculate_commission():
    """
    Price an order's commission without recording anything.

    Request body:
    {
        "order_id": str, "rep_id": str, "business_account_id": str (optional),
        "order_amount_cents": int,
        "product_lines": [{"product_id": str, "category": str, "amount_cents": int}],
        "territory_id": int (optional), "sale_date": ISO-8601 (optional),
        "commission_override": number (optional, percent)
    }
    """
    _, calculation = _calculate(build_services(), _json_body())
    return jsonify(calculation.to_dict())


@commissions_bp.route("/record", methods=["POST"])
@require_actor
@handle_engine_errors
def record_commission():
    """
    Calculate and book an order's commission.

    Returns:
        201: {"transaction_ids": [...], "calculation": {...}}
        409: commission already recorded for this order and rep
    """
    services = build_services()
    order, calculation = _calculate(services, _json_body())
    ids = services.ledger.record_calculation(order, calculation, deadline=request_deadline())
    return jsonify({"transaction_ids": ids, "calculation": calculation.to_dict()}), 201


@commissions_bp.route("/approve", methods=["POST"])
@require_actor
@handle_engine_errors
def approve_commissions():
    data = _json_body()
    ids = data.get("transaction_ids")
    if not isinstance(ids, list):
        raise ValidationError("transaction_ids must be a list")
    result = build_services().ledger.approve(
        ids, data.get("approved_by") or g.actor_id, deadline=request_deadline()
    )
    return jsonify(result.to_dict())


@commissions_bp.route("/payout", methods=["POST"])
@require_actor
@handle_engine_errors
def payout_commissions():
    data = _json_body()
    result = build_services().ledger.payout(
        data.get("period"), data.get("payment_reference"), deadline=request_deadline()
    )
    return jsonify(result.to_dict())


@commissions_bp.route("/transactions", methods=["GET"])
@handle_engine_errors
def list_transactions():
    transactions = build_services().ledger.list_transactions(
        rep_id=request.args.get("rep_id"),
        status=request.args.get("status"),
        period=request.args.get("period"),
        order_id=request.args.get("order_id"),
        limit=request.args.get("limit", 100, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"transactions": [t.to_dict() for t in transactions]})


@commissions_bp.route("/transactions/<int:transaction_id>", methods=["GET"])
@handle_engine_errors
def get_transaction(transaction_id: int):
    return jsonify(build_services().ledger.get_transaction(transaction_id).to_dict())


@commissions_bp.route("/transactions/<int:transaction_id>/cancel", methods=["POST"])
@require_actor
@handle_engine_errors
def cancel_transaction(transaction_id: int):
    """Cancel a pending/approved transaction, or claw back a paid one."""
    data = _json_body()
    txn = build_services().ledger.cancel(
        transaction_id, data.get("reason"), g.actor_id, deadline=request_deadline()
    )
    return jsonify(txn.to_dict())


@commissions_bp.route("/owed", methods=["GET"])
@handle_engine_errors
def commission_owed():
    rep_id = request.args.get("rep_id")
    if not rep_id:
        raise ValidationError("rep_id is required")
    return jsonify(build_services().ledger.commission_owed(rep_id, request.args.get("period")))


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@commissions_bp.route("/rules", methods=["GET"])
@handle_engine_errors
def list_rules():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    rules = build_services().rules.list_rules(
        include_inactive=include_inactive, rule_type=request.args.get("rule_type")
    )
    return jsonify({"rules": [rule.to_dict() for rule in rules]})


@commissions_bp.route("/rules", methods=["POST"])
@require_actor
@handle_engine_errors
def create_rule():
    rule = build_services().rules.create_rule(_json_body(), created_by=g.actor_id, deadline=request_deadline())
    return jsonify(rule.to_dict()), 201


@commissions_bp.route("/rules/<int:rule_id>", methods=["GET"])
@handle_engine_errors
def get_rule(rule_id: int):
    return jsonify(build_services().rules.get_rule(rule_id).to_dict())


@commissions_bp.route("/rules/<int:rule_id>", methods=["PATCH"])
@require_actor
@handle_engine_errors
def update_rule(rule_id: int):
    rule = build_services().rules.update_rule(rule_id, _json_body(), deadline=request_deadline())
    return jsonify(rule.to_dict())
