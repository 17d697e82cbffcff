"""
Bookable Fulfillment Platform
Scheduled Jobs — the scheduling core's background workers.

Jobs:
    - standing_reservation_planner: expands every active/paused contract
    - occurrence_materializer:      books (or flags) occurrences entering the lead window

Both jobs walk every tenant and are safe to retry wholesale.
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.occurrence_lifecycle import materialize_due_occurrences
from app.services.scheduler_service import register_job
from app.services.standing_reservation_service import plan_all_contracts

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Standing Reservation Planner
# ═══════════════════════════════════════════════════════════════════════════

@register_job("standing_reservation_planner")
def plan_standing_reservations(app) -> dict[str, Any]:
    """Expand standing reservation contracts over their generation horizon."""
    report = plan_all_contracts()
    if report["parse_errors"]:
        logger.warning("Planner: %d contract(s) excluded for unparsable rules", len(report["parse_errors"]))
    if report["errors"]:
        logger.info("Planner: %d contract(s) changed state mid-run and were skipped", len(report["errors"]))
    logger.info("Planner run: %d contracts, %d occurrences inserted", report["contracts"], report["inserted"])
    return report


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Occurrence Materializer
# ═══════════════════════════════════════════════════════════════════════════

@register_job("occurrence_materializer")
def materialize_occurrences(app) -> dict[str, Any]:
    """Create orders for occurrences that start within the lead window."""
    report = materialize_due_occurrences(lead_hours=app.config.get("MATERIALIZE_LEAD_HOURS", 48))
    return report.to_dict()
