"""
Startup diagnostics — runs once when the Flask app starts.

Checks critical dependencies and logs a summary banner.
"""

import logging
import sys

from flask import Flask

from app.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []

    with app.app_context():
        # ── Python version ───────────────────────────────────────────
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = f"FAILED ({exc})"
            issues.append(f"Database unreachable: {exc}")

        # ── btree_gist (backs the assignment overlap exclusion) ─────
        gist_status = "n/a"
        if "postgresql" in db_uri:
            try:
                row = db.session.execute(
                    db.text("SELECT extversion FROM pg_extension WHERE extname = 'btree_gist'")
                ).fetchone()
                gist_status = f"v{row[0]}" if row else "NOT INSTALLED"
                if not row:
                    issues.append("btree_gist not installed — run 'flask db upgrade' for the overlap constraint")
            except Exception:
                gist_status = "check failed"
        else:
            issues.append("No database exclusion constraint on SQLite — overlap relies on the service check")

        # ── Table count ──────────────────────────────────────────────
        try:
            from sqlalchemy import inspect as sa_inspect
            table_count = len(sa_inspect(db.engine).get_table_names())
            if table_count == 0:
                issues.append("No tables found — run 'flask db upgrade'")
        except Exception:
            table_count = "?"

        # ── Collaborators ────────────────────────────────────────────
        orders = "http" if app.config.get("ORDER_SERVICE_URL") else "local"
        availability = "http" if app.config.get("AVAILABILITY_SERVICE_URL") else "open"
        scheduler = "ENABLED" if app.config.get("SCHEDULER_ENABLED") else "DISABLED"

        # ── Banner ───────────────────────────────────────────────────
        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  Bookable Fulfillment Platform — Startup Diagnostics        ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Debug       : {str(app.debug):<46s}║
║  Database    : {db_type} ({db_status}){' ' * max(0, 46 - len(db_type) - len(str(db_status)) - 3)}║
║  Tables      : {str(table_count):<46s}║
║  btree_gist  : {gist_status:<46s}║
║  Orders      : {orders:<46s}║
║  Availability: {availability:<46s}║
║  Scheduler   : {scheduler:<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
