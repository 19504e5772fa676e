from __future__ import annotations

from flask import Blueprint, jsonify, request

from ..decorators import handle_engine_errors
from ..services import build_services

reps_bp = Blueprint("reps", __name__, url_prefix="/api/reps")


@reps_bp.route("/<rep_id>/territories", methods=["GET"])
@handle_engine_errors
def rep_territories(rep_id: str):
    territories = build_services().registry.get_rep_territories(rep_id)
    return jsonify({"rep_id": rep_id, "territories": [t.to_dict() for t in territories]})


@reps_bp.route("/<rep_id>/performance", methods=["GET"])
@handle_engine_errors
def rep_performance(rep_id: str):
    return jsonify(build_services().metrics.rep_performance(rep_id, request.args.get("period")))
