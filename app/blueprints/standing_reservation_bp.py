"""Standing reservation blueprint — contracts, overrides and occurrences.

Endpoint groups (prefix /api/v1/standing-reservations):
  Contracts        GET/POST  /contracts
                   GET       /contracts/<id>
                   POST      /contracts/<id>/<action>      activate|pause|resume|complete|cancel|archive
  Exceptions       GET/POST  /contracts/<id>/exceptions
                   POST      /exceptions/<id>/deactivate
  Planner          POST      /contracts/<id>/expand
  Occurrences      GET       /contracts/<id>/occurrences
                   POST      /occurrences/<id>/materialize
                   POST      /occurrences/<id>/<action>    generate|fulfill|cancel|skip|fail
                   POST      /materialize-due

tenant_id is resolved from query param or JSON body and is mandatory.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import app.services.occurrence_lifecycle as lifecycle
import app.services.standing_reservation_service as srs
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.integrations.order_gateway import OrderServiceError
from app.utils.errors import E, api_error, error_response
from app.utils.helpers import parse_datetime, parse_int

logger = logging.getLogger(__name__)

standing_reservation_bp = Blueprint(
    "standing_reservation", __name__, url_prefix="/api/v1/standing-reservations",
)

_CONTRACT_ACTIONS = {"activate", "pause", "resume", "complete", "cancel", "archive"}


# ── Tenant helpers ────────────────────────────────────────────────────────────


def _tenant_id() -> int | None:
    """Extract tenant_id from query string or JSON body."""
    tid = request.args.get("tenant_id", type=int)
    if tid:
        return tid
    data: dict = request.get_json(silent=True) or {}
    return data.get("tenant_id") or None


def _tenant_required() -> tuple[int | None, tuple | None]:
    tid = _tenant_id()
    if not tid:
        return None, api_error(E.VALIDATION_REQUIRED, "tenant_id is required")
    return tid, None


# ── Error handlers ────────────────────────────────────────────────────────────


@standing_reservation_bp.errorhandler(NotFoundError)
@standing_reservation_bp.errorhandler(ValidationError)
@standing_reservation_bp.errorhandler(ConflictError)
def _handle_domain_error(error):
    return error_response(error)


@standing_reservation_bp.errorhandler(OrderServiceError)
def _handle_order_service(error: OrderServiceError):
    logger.warning("Order service failure: %s", error)
    return api_error(E.INTERNAL, str(error), status=502)


@standing_reservation_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in standing_reservation_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Contracts
# ═════════════════════════════════════════════════════════════════════════


@standing_reservation_bp.route("/contracts", methods=["GET"])
def list_contracts():
    tenant_id, err = _tenant_required()
    if err:
        return err
    items = srs.list_contracts(tenant_id, status=request.args.get("status"))
    return jsonify({"items": [c.to_dict() for c in items], "total": len(items)}), 200


@standing_reservation_bp.route("/contracts", methods=["POST"])
def create_contract():
    """Create a draft contract.

    Body: {
        tenant_id, name, sellable_id, anchor_start_at, recurrence_rule,
        customer_user_ref | customer_group_ref, timezone?, location_id?,
        default_duration_min?, effective_start_date?, effective_end_date?,
        auto_create_orders?, max_generated_ahead_days?, policy_snapshot?
    }
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    contract = srs.create_contract(tenant_id, data)
    return jsonify(contract.to_dict()), 201


@standing_reservation_bp.route("/contracts/<int:contract_id>", methods=["GET"])
def get_contract(contract_id: int):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(srs.get_contract(tenant_id, contract_id).to_dict()), 200


@standing_reservation_bp.route("/contracts/<int:contract_id>/<action>", methods=["POST"])
def contract_action(contract_id: int, action: str):
    """Run a lifecycle action. Body: {tenant_id, resume_at?, reason?}"""
    if action not in _CONTRACT_ACTIONS:
        return api_error(E.NOT_FOUND, f"Unknown contract action: {action}", status=404)
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    contract = srs.transition_contract(
        tenant_id,
        contract_id,
        action,
        resume_at=parse_datetime(data.get("resume_at"), "resume_at"),
        reason=data.get("reason"),
    )
    return jsonify(contract.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Exceptions
# ═════════════════════════════════════════════════════════════════════════


@standing_reservation_bp.route("/contracts/<int:contract_id>/exceptions", methods=["GET"])
def list_exceptions(contract_id: int):
    tenant_id, err = _tenant_required()
    if err:
        return err
    active_only = request.args.get("active", "").lower() in ("1", "true", "yes")
    rows = srs.list_exceptions(tenant_id, contract_id, active_only=active_only)
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows)}), 200


@standing_reservation_bp.route("/contracts/<int:contract_id>/exceptions", methods=["POST"])
def create_exception(contract_id: int):
    """Body: {tenant_id, action, target_occurrence_key | target_local_date, override_*, reason, created_by?}"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    row = srs.create_exception(tenant_id, contract_id, data, created_by=data.get("created_by"))
    return jsonify(row.to_dict()), 201


@standing_reservation_bp.route("/exceptions/<int:exception_id>/deactivate", methods=["POST"])
def deactivate_exception(exception_id: int):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(srs.deactivate_exception(tenant_id, exception_id).to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Planner & occurrences
# ═════════════════════════════════════════════════════════════════════════


@standing_reservation_bp.route("/contracts/<int:contract_id>/expand", methods=["POST"])
def expand_contract(contract_id: int):
    """Body: {tenant_id, horizon_days?}"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    horizon = data.get("horizon_days")
    result = srs.expand_contract(tenant_id, contract_id, horizon_days=parse_int(horizon, "horizon_days"))
    return jsonify(result.to_dict()), 200


@standing_reservation_bp.route("/contracts/<int:contract_id>/occurrences", methods=["GET"])
def list_occurrences(contract_id: int):
    tenant_id, err = _tenant_required()
    if err:
        return err
    rows = srs.list_occurrences(tenant_id, contract_id, status=request.args.get("status"))
    return jsonify({"items": [o.to_dict() for o in rows], "total": len(rows)}), 200


@standing_reservation_bp.route("/occurrences/<int:occurrence_id>/materialize", methods=["POST"])
def materialize(occurrence_id: int):
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    order = lifecycle.materialize_order(tenant_id, occurrence_id, actor_ref=data.get("actor_ref"))
    return jsonify(order.to_dict()), 201


@standing_reservation_bp.route("/occurrences/<int:occurrence_id>/<action>", methods=["POST"])
def occurrence_action(occurrence_id: int, action: str):
    """Body: {tenant_id, reason?}"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    reason = (request.get_json(silent=True) or {}).get("reason")

    if action == "generate":
        occ = lifecycle.mark_generated(tenant_id, occurrence_id)
    elif action == "fulfill":
        occ = lifecycle.mark_fulfilled(tenant_id, occurrence_id, reason=reason)
    elif action == "cancel":
        occ = lifecycle.cancel_occurrence(tenant_id, occurrence_id, reason)
    elif action == "skip":
        occ = lifecycle.skip_occurrence(tenant_id, occurrence_id, reason)
    elif action == "fail":
        occ = lifecycle.fail_occurrence(tenant_id, occurrence_id, reason)
    else:
        return api_error(E.NOT_FOUND, f"Unknown occurrence action: {action}", status=404)
    return jsonify(occ.to_dict()), 200


@standing_reservation_bp.route("/materialize-due", methods=["POST"])
def materialize_due():
    """Book due occurrences of this tenant. Body: {tenant_id, lead_hours?}"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    lead = (request.get_json(silent=True) or {}).get("lead_hours")
    report = lifecycle.materialize_due_occurrences(tenant_id, lead_hours=parse_int(lead, "lead_hours"))
    return jsonify(report.to_dict()), 200
