"""Fulfillment blueprint — unit graphs, dependency validation and resource assignments.

Endpoint groups (prefix /api/v1/fulfillment):
  Graph         GET/POST  /orders/<id>/graph
                GET       /orders/<id>/validation
                POST      /orders/<id>/dependencies
  Units         POST      /units/<id>/transition
  Assignments   POST      /assignments
                GET       /assignments/<id>
                POST      /assignments/<id>/<action>   confirm|start|complete|cancel|reassign
                GET       /assignments/<id>/events
                GET       /resources/<id>/conflicts

tenant_id is resolved from query param or JSON body and is mandatory.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import app.services.assignment_service as assignments
import app.services.fulfillment_graph_service as graph_service
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.base import isoformat
from app.services.dependency_validator import validate_graph
from app.utils.errors import E, api_error, error_response
from app.utils.helpers import parse_datetime, parse_int, require_fields

logger = logging.getLogger(__name__)

fulfillment_bp = Blueprint("fulfillment", __name__, url_prefix="/api/v1/fulfillment")


# ── Tenant helpers ────────────────────────────────────────────────────────────


def _tenant_id() -> int | None:
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


def _actor(data: dict) -> dict:
    return {
        "actor_ref": data.get("actor_ref"),
        "request_key": data.get("request_key"),
        "reason_code": data.get("reason_code"),
    }


# ── Error handlers ────────────────────────────────────────────────────────────


@fulfillment_bp.errorhandler(NotFoundError)
@fulfillment_bp.errorhandler(ValidationError)
@fulfillment_bp.errorhandler(ConflictError)
def _handle_domain_error(error):
    return error_response(error)


@fulfillment_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in fulfillment_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Graph
# ═════════════════════════════════════════════════════════════════════════


@fulfillment_bp.route("/orders/<int:order_id>/graph", methods=["GET"])
def get_graph(order_id: int):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(graph_service.get_graph(tenant_id, order_id)), 200


@fulfillment_bp.route("/orders/<int:order_id>/graph", methods=["POST"])
def build_graph(order_id: int):
    """Expand the order's sellable into units and edges (idempotent)."""
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(graph_service.build_graph(tenant_id, order_id)), 201


@fulfillment_bp.route("/orders/<int:order_id>/validation", methods=["GET"])
def validate_order_graph(order_id: int):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(validate_graph(tenant_id, order_id).to_dict()), 200


@fulfillment_bp.route("/orders/<int:order_id>/dependencies", methods=["POST"])
def add_dependency(order_id: int):
    """Body: {tenant_id, predecessor_unit_id, successor_unit_id, dependency_type?,
    min_gap_min?, max_gap_min?, hard_block?}
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    require_fields(data, "predecessor_unit_id", "successor_unit_id")
    dep = graph_service.add_dependency(
        tenant_id,
        order_id,
        parse_int(data["predecessor_unit_id"], "predecessor_unit_id"),
        parse_int(data["successor_unit_id"], "successor_unit_id"),
        dependency_type=data.get("dependency_type", "finish_to_start"),
        min_gap_min=data.get("min_gap_min"),
        max_gap_min=data.get("max_gap_min"),
        hard_block=bool(data.get("hard_block", True)),
    )
    return jsonify(dep.to_dict()), 201


@fulfillment_bp.route("/units/<int:unit_id>/transition", methods=["POST"])
def transition_unit(unit_id: int):
    """Body: {tenant_id, status}"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    require_fields(data, "status")
    unit = graph_service.transition_unit(tenant_id, unit_id, data["status"])
    return jsonify(unit.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Assignments
# ═════════════════════════════════════════════════════════════════════════


@fulfillment_bp.route("/assignments", methods=["POST"])
def propose_assignment():
    """Body: {tenant_id, fulfillment_unit_id, resource_id, starts_at, ends_at,
    conflict_policy?, initial_status?, role_label?, is_primary?, actor_ref?, request_key?}
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    require_fields(data, "fulfillment_unit_id", "resource_id")
    assignment = assignments.propose_assignment(
        tenant_id,
        parse_int(data["fulfillment_unit_id"], "fulfillment_unit_id"),
        parse_int(data["resource_id"], "resource_id"),
        parse_datetime(data.get("starts_at"), "starts_at"),
        parse_datetime(data.get("ends_at"), "ends_at"),
        data.get("conflict_policy", "enforce_no_overlap"),
        initial_status=data.get("initial_status", "reserved"),
        role_label=data.get("role_label"),
        is_primary=bool(data.get("is_primary", False)),
        **_actor(data),
    )
    return jsonify(assignment.to_dict()), 201


@fulfillment_bp.route("/assignments/<int:assignment_id>", methods=["GET"])
def get_assignment(assignment_id: int):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(assignments.get_assignment(tenant_id, assignment_id).to_dict()), 200


@fulfillment_bp.route("/assignments/<int:assignment_id>/<action>", methods=["POST"])
def assignment_action(assignment_id: int, action: str):
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    meta = _actor(data)

    if action == "confirm":
        assignment = assignments.confirm_assignment(tenant_id, assignment_id, **meta)
    elif action == "start":
        assignment = assignments.start_assignment(tenant_id, assignment_id, **meta)
    elif action == "complete":
        assignment = assignments.complete_assignment(tenant_id, assignment_id, **meta)
    elif action == "cancel":
        assignment = assignments.cancel_assignment(tenant_id, assignment_id, **meta)
    elif action == "reassign":
        assignment = assignments.reassign_assignment(
            tenant_id,
            assignment_id,
            resource_id=data.get("resource_id"),
            starts_at=parse_datetime(data.get("starts_at"), "starts_at"),
            ends_at=parse_datetime(data.get("ends_at"), "ends_at"),
            conflict_policy=data.get("conflict_policy"),
            **meta,
        )
    else:
        return api_error(E.NOT_FOUND, f"Unknown assignment action: {action}", status=404)
    return jsonify(assignment.to_dict()), 200


@fulfillment_bp.route("/assignments/<int:assignment_id>/events", methods=["GET"])
def assignment_events(assignment_id: int):
    """Event log plus the state folded from it."""
    tenant_id, err = _tenant_required()
    if err:
        return err
    events = assignments.assignment_history(tenant_id, assignment_id)
    state = assignments.replay_assignment_events(events)
    replayed = {k: isoformat(v) if k in ("starts_at", "ends_at") else v for k, v in state.items()}
    return jsonify({
        "items": [e.to_dict() for e in events],
        "total": len(events),
        "replayed_state": replayed,
    }), 200


@fulfillment_bp.route("/resources/<int:resource_id>/conflicts", methods=["GET"])
def resource_conflicts(resource_id: int):
    """Active enforce_no_overlap assignments overlapping ?starts_at=&ends_at=."""
    tenant_id, err = _tenant_required()
    if err:
        return err
    starts_at = parse_datetime(request.args.get("starts_at"), "starts_at")
    ends_at = parse_datetime(request.args.get("ends_at"), "ends_at")
    if starts_at is None or ends_at is None:
        return api_error(E.VALIDATION_REQUIRED, "starts_at and ends_at are required")
    ids = assignments.find_conflicts(tenant_id, resource_id, starts_at, ends_at)
    return jsonify({"resource_id": resource_id, "conflicting_assignment_ids": ids}), 200
