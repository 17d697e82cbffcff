"""
Dependency Validator — acyclicity and gap checks for one order's unit graph.

validate_unit_graph() is pure: it takes unit ids, edges (anything with the
FulfillmentDependency attribute names) and planned timings, and returns a
ValidationReport. validate_graph() loads one order and delegates.

Algorithm:
    1. Kahn's algorithm over adjacency lists keyed by unit id.
       Units left over after the zero-in-degree queue drains sit on or
       behind a cycle; only those that can reach themselves are flagged.
    2. For every edge whose two timings are known, compute the actual gap:
           start_to_start   succ.start - pred.start
           everything else  succ.start - pred.end
       and compare with [min_gap_min, max_gap_min]. Ordering types imply a
       minimum of 0; same_day also needs both starts on one UTC date.
    3. Units downstream of a hard violation are blocked (transitively).

Verdicts per edge: ok | violation | unresolved | cycle
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select

from app.core.exceptions import CycleDetected, GapViolation
from app.models import db
from app.models.fulfillment import (
    ORDERING_DEPENDENCY_TYPES,
    BookingOrder,
    FulfillmentDependency,
    FulfillmentUnit,
)
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

VERDICT_OK = "ok"
VERDICT_VIOLATION = "violation"
VERDICT_UNRESOLVED = "unresolved"
VERDICT_CYCLE = "cycle"


@dataclass(frozen=True)
class Edge:
    """In-memory edge with the same attribute names as FulfillmentDependency."""

    predecessor_unit_id: int
    successor_unit_id: int
    dependency_type: str = "finish_to_start"
    min_gap_min: int | None = None
    max_gap_min: int | None = None
    hard_block: bool = True
    id: int | None = None


@dataclass
class EdgeVerdict:
    dependency_id: int | None
    predecessor_unit_id: int
    successor_unit_id: int
    dependency_type: str
    verdict: str
    actual_gap_min: float | None = None
    violation: GapViolation | None = None

    @property
    def is_hard_violation(self) -> bool:
        return self.violation is not None and self.violation.hard_block

    def to_dict(self) -> dict:
        return {
            "dependency_id": self.dependency_id,
            "predecessor_unit_id": self.predecessor_unit_id,
            "successor_unit_id": self.successor_unit_id,
            "dependency_type": self.dependency_type,
            "verdict": self.verdict,
            "actual_gap_min": self.actual_gap_min,
            "hard_block": self.violation.hard_block if self.violation else None,
            "message": str(self.violation) if self.violation else None,
        }


@dataclass
class ValidationReport:
    order_id: int | None
    unit_ids: list[int]
    topological_order: list[int] = field(default_factory=list)
    cycle: CycleDetected | None = None
    verdicts: list[EdgeVerdict] = field(default_factory=list)
    blocked_by: dict[int, GapViolation] = field(default_factory=dict)

    @property
    def cycle_unit_ids(self) -> set[int]:
        return set(self.cycle.unit_ids) if self.cycle else set()

    @property
    def hard_violations(self) -> list[GapViolation]:
        return [v.violation for v in self.verdicts if v.is_hard_violation]

    @property
    def warnings(self) -> list[GapViolation]:
        """Soft violations: reported, never blocking."""
        return [v.violation for v in self.verdicts if v.violation is not None and not v.violation.hard_block]

    @property
    def ok(self) -> bool:
        return self.cycle is None and not self.hard_violations

    def is_schedulable(self, unit_id: int) -> bool:
        return unit_id not in self.cycle_unit_ids and unit_id not in self.blocked_by

    def raise_for_unit(self, unit_id: int) -> None:
        """Raise the error that keeps ``unit_id`` from being scheduled, if any."""
        if unit_id in self.cycle_unit_ids:
            raise self.cycle
        violation = self.blocked_by.get(unit_id)
        if violation is not None:
            raise violation

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "ok": self.ok,
            "topological_order": self.topological_order,
            "cycle_unit_ids": sorted(self.cycle_unit_ids),
            "blocked_unit_ids": sorted(self.blocked_by),
            "edges": [v.to_dict() for v in self.verdicts],
            "warnings": [str(w) for w in self.warnings],
        }


# ── Graph walks ──────────────────────────────────────────────────────────────


def _adjacency(unit_ids, edges) -> dict[int, list[int]]:
    adj: dict[int, list[int]] = {u: [] for u in unit_ids}
    for e in edges:
        adj.setdefault(e.predecessor_unit_id, []).append(e.successor_unit_id)
        adj.setdefault(e.successor_unit_id, [])
    return adj


def _kahn(adj: dict[int, list[int]]) -> tuple[list[int], set[int]]:
    """Return (topological order, residual units)."""
    indegree: dict[int, int] = defaultdict(int)
    for u in adj:
        indegree.setdefault(u, 0)
        for v in adj[u]:
            indegree[v] += 1

    queue = deque(sorted(u for u, d in indegree.items() if d == 0))
    order = []
    while queue:
        u = queue.popleft()
        order.append(u)
        for v in adj[u]:
            indegree[v] -= 1
            if indegree[v] == 0:
                queue.append(v)
    residual = set(adj) - set(order)
    return order, residual


def _on_cycle(adj: dict[int, list[int]], residual: set[int]) -> set[int]:
    """Residual units that can reach themselves (not those merely downstream)."""
    flagged = set()
    for start in residual:
        seen = set()
        stack = [v for v in adj[start] if v in residual]
        while stack:
            node = stack.pop()
            if node == start:
                flagged.add(start)
                break
            if node in seen:
                continue
            seen.add(node)
            stack.extend(v for v in adj[node] if v in residual)
    return flagged


# ── Gap check ────────────────────────────────────────────────────────────────


def _minutes(delta) -> float:
    return delta.total_seconds() / 60.0


def _check_edge(edge, timings: dict) -> EdgeVerdict:
    verdict = EdgeVerdict(
        dependency_id=edge.id,
        predecessor_unit_id=edge.predecessor_unit_id,
        successor_unit_id=edge.successor_unit_id,
        dependency_type=edge.dependency_type,
        verdict=VERDICT_UNRESOLVED,
    )
    pred_start, pred_end = timings.get(edge.predecessor_unit_id) or (None, None)
    succ_start, _succ_end = timings.get(edge.successor_unit_id) or (None, None)

    reference = pred_start if edge.dependency_type == "start_to_start" else pred_end
    if reference is None or succ_start is None:
        return verdict

    gap = _minutes(succ_start - reference)
    verdict.actual_gap_min = gap

    lower = edge.min_gap_min
    if lower is None and edge.dependency_type in ORDERING_DEPENDENCY_TYPES:
        lower = 0
    upper = edge.max_gap_min

    problem = None
    if lower is not None and gap < lower:
        problem = f"gap {gap:g} min is below the minimum of {lower} min"
    elif upper is not None and gap > upper:
        problem = f"gap {gap:g} min exceeds the maximum of {upper} min"
    elif edge.dependency_type == "same_day" and pred_start is not None and (
        pred_start.astimezone(timezone.utc).date() != succ_start.astimezone(timezone.utc).date()
    ):
        problem = "predecessor and successor do not start on the same day"

    if problem is None:
        verdict.verdict = VERDICT_OK
        return verdict

    verdict.verdict = VERDICT_VIOLATION
    verdict.violation = GapViolation(
        dependency_id=edge.id,
        actual_gap_min=gap,
        min_gap_min=lower,
        max_gap_min=upper,
        hard_block=bool(edge.hard_block),
        message=f"Dependency {edge.predecessor_unit_id}→{edge.successor_unit_id} ({edge.dependency_type}): {problem}",
    )
    return verdict


def _downstream(adj: dict[int, list[int]], roots) -> set[int]:
    seen = set()
    stack = list(roots)
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(adj.get(node, ()))
    return seen


# ── Entry points ─────────────────────────────────────────────────────────────


def validate_unit_graph(
    unit_ids,
    edges,
    timings: dict[int, tuple[datetime | None, datetime | None]] | None = None,
    *,
    order_id: int | None = None,
) -> ValidationReport:
    """Validate one unit graph.

    Args:
        unit_ids: every unit of the graph, including isolated ones.
        edges: FulfillmentDependency rows or ``Edge`` values.
        timings: unit id → (planned_start_at, planned_end_at); missing or
            None entries make the touching edges ``unresolved``.
    """
    unit_ids = list(unit_ids)
    edges = list(edges)
    timings = timings or {}
    adj = _adjacency(unit_ids, edges)

    order, residual = _kahn(adj)
    report = ValidationReport(order_id=order_id, unit_ids=unit_ids, topological_order=order)
    on_cycle = _on_cycle(adj, residual) if residual else set()
    if on_cycle:
        report.cycle = CycleDetected(on_cycle, order_id=order_id)

    for edge in edges:
        if edge.predecessor_unit_id in on_cycle and edge.successor_unit_id in on_cycle:
            report.verdicts.append(EdgeVerdict(
                dependency_id=edge.id,
                predecessor_unit_id=edge.predecessor_unit_id,
                successor_unit_id=edge.successor_unit_id,
                dependency_type=edge.dependency_type,
                verdict=VERDICT_CYCLE,
            ))
            continue
        report.verdicts.append(_check_edge(edge, timings))

    for v in report.verdicts:
        if not v.is_hard_violation:
            continue
        for unit_id in _downstream(adj, [v.successor_unit_id]):
            report.blocked_by.setdefault(unit_id, v.violation)

    if not report.ok:
        logger.info(
            "Graph order=%s invalid: cycle=%s hard_violations=%d blocked=%s",
            order_id, sorted(on_cycle), len(report.hard_violations), sorted(report.blocked_by),
        )
    return report


def validate_graph(tenant_id: int, order_id: int) -> ValidationReport:
    """Load one order's units and edges and validate them."""
    order = get_scoped(BookingOrder, order_id, tenant_id=tenant_id)
    units = db.session.execute(
        select(FulfillmentUnit).where(
            FulfillmentUnit.tenant_id == tenant_id,
            FulfillmentUnit.booking_order_id == order.id,
        ).order_by(FulfillmentUnit.id)
    ).scalars().all()
    edges = db.session.execute(
        select(FulfillmentDependency).where(
            FulfillmentDependency.tenant_id == tenant_id,
            FulfillmentDependency.booking_order_id == order.id,
        ).order_by(FulfillmentDependency.id)
    ).scalars().all()
    timings = {u.id: (u.planned_start_at, u.planned_end_at) for u in units}
    return validate_unit_graph([u.id for u in units], edges, timings, order_id=order.id)
