"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

    NotFoundError    → 404  (also cross-tenant access)
    ValidationError  → 422  (well-formed input that breaks a business rule)
    ConflictError    → 409  (uniqueness / exclusivity violations)

The scheduling taxonomy below subclasses one of the three so a blueprint
that only knows the base classes still answers with the right status.

Usage:
    from app.core.exceptions import NotFoundError, ResourceConflict

    raise NotFoundError(resource="FulfillmentUnit", resource_id=42, tenant_id=1)
    raise ResourceConflict(resource_id=7, conflicting_assignment_ids=[3])
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access
    attempts; a 403 would confirm the resource exists, a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "StandingReservationContract").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    code = "ERR_NOT_FOUND"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    code = "ERR_CONFLICT_DUPLICATE"

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        self.details = {"resource": resource, "field": field}
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ═════════════════════════════════════════════════════════════════════════
# Scheduling taxonomy
# ═════════════════════════════════════════════════════════════════════════


class InvalidTransition(ValidationError):
    """Lifecycle move not allowed from the entity's current status."""

    code = "ERR_INVALID_TRANSITION"

    def __init__(self, entity: str, entity_id, current: str, target: str, reason: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current
        self.target_status = target
        msg = f"Cannot move {entity} id={entity_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"current_status": current, "target_status": target})


class RecurrenceParseError(ValidationError):
    """The contract's recurrence rule cannot be parsed or expanded."""

    code = "ERR_RECURRENCE_PARSE"

    def __init__(self, rule: str, reason: str, contract_id: int | None = None) -> None:
        self.rule = rule
        self.reason = reason
        self.contract_id = contract_id
        super().__init__(
            f"Unparsable recurrence rule {rule!r}: {reason}",
            details={"recurrence_rule": rule, "contract_id": contract_id},
        )


class InvalidExceptionShape(ValidationError):
    """An override carries fields its action does not allow, or lacks required ones."""

    code = "ERR_INVALID_EXCEPTION_SHAPE"

    def __init__(self, action: str, message: str, fields: list[str] | None = None) -> None:
        self.action = action
        self.fields = fields or []
        super().__init__(f"{action}: {message}", details={"action": action, "fields": self.fields})


class InvalidTargetShape(ValidationError):
    """An override target is missing, ambiguous or does not belong to the contract."""

    code = "ERR_INVALID_TARGET_SHAPE"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, details=details)


class CycleDetected(ValidationError):
    """The unit graph of an order contains at least one cycle."""

    code = "ERR_CYCLE_DETECTED"

    def __init__(self, unit_ids, order_id: int | None = None) -> None:
        self.unit_ids = sorted(unit_ids)
        self.order_id = order_id
        super().__init__(
            f"Dependency cycle through units {self.unit_ids}",
            details={"order_id": order_id, "unit_ids": self.unit_ids},
        )


class SelfLoopRejected(ValidationError):
    """An edge whose predecessor and successor are the same node."""

    code = "ERR_SELF_LOOP"

    def __init__(self, node: str, node_id) -> None:
        self.node = node
        self.node_id = node_id
        super().__init__(
            f"{node} id={node_id} cannot depend on itself",
            details={"node": node, "node_id": node_id},
        )


class GapViolation(ValidationError):
    """The actual gap along an edge is outside [min_gap_min, max_gap_min]."""

    code = "ERR_GAP_VIOLATION"

    def __init__(
        self,
        dependency_id: int,
        actual_gap_min: float,
        min_gap_min: int | None,
        max_gap_min: int | None,
        hard_block: bool,
        message: str | None = None,
    ) -> None:
        self.dependency_id = dependency_id
        self.actual_gap_min = actual_gap_min
        self.min_gap_min = min_gap_min
        self.max_gap_min = max_gap_min
        self.hard_block = hard_block
        super().__init__(
            message or (
                f"Dependency id={dependency_id} gap {actual_gap_min:g} min "
                f"outside [{min_gap_min}, {max_gap_min}]"
            ),
            details={
                "dependency_id": dependency_id,
                "actual_gap_min": actual_gap_min,
                "min_gap_min": min_gap_min,
                "max_gap_min": max_gap_min,
                "hard_block": hard_block,
            },
        )


class GenerationConflict(ConflictError):
    """Occurrence key already present. Absorbed by the planner, never surfaced."""

    code = "ERR_GENERATION_CONFLICT"

    def __init__(self, occurrence_key: str) -> None:
        self.occurrence_key = occurrence_key
        super().__init__("StandingReservationOccurrence", "occurrence_key", occurrence_key)


class AlreadyBooked(ConflictError):
    """Losing side of a materialization race: the occurrence already has an order."""

    code = "ERR_ALREADY_BOOKED"

    def __init__(self, occurrence_id: int, booking_order_id: int | None = None) -> None:
        self.occurrence_id = occurrence_id
        self.booking_order_id = booking_order_id
        super().__init__("StandingReservationOccurrence", "booking_order_id", booking_order_id)
        self.args = (f"Occurrence id={occurrence_id} is already booked",)
        self.details = {"occurrence_id": occurrence_id, "booking_order_id": booking_order_id}


class ResourceConflict(ConflictError):
    """An active enforce_no_overlap assignment already holds the resource for an overlapping window."""

    code = "ERR_RESOURCE_CONFLICT"

    def __init__(self, resource_id: int, conflicting_assignment_ids=None, starts_at=None, ends_at=None) -> None:
        self.resource_id = resource_id
        self.conflicting_assignment_ids = list(conflicting_assignment_ids or [])
        self.starts_at = starts_at
        self.ends_at = ends_at
        super().__init__("FulfillmentAssignment", "resource_id", resource_id)
        self.args = (f"Resource id={resource_id} is already assigned in an overlapping window",)
        self.details = {
            "resource_id": resource_id,
            "conflicting_assignment_ids": self.conflicting_assignment_ids,
            "starts_at": starts_at.isoformat() if starts_at else None,
            "ends_at": ends_at.isoformat() if ends_at else None,
        }
