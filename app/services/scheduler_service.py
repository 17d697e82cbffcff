"""
Bookable Fulfillment Platform
Scheduler Service — background workers for the scheduling core.

Runs the registered jobs (standing reservation planner, occurrence
materializer) on fixed intervals from a single daemon thread. Every job is
safe to run concurrently on several hosts: the planner converges through
insert-if-absent and the materializer through its check-and-set update.

Architecture:
    - register_job(name): decorator that adds a job function to the registry
    - ScheduledJob rows persist schedule config and last-run bookkeeping
    - SchedulerService.run_job(): manual trigger (API, tests, CLI)
    - SchedulerService.start(): interval loop, only when SCHEDULER_ENABLED
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Callable

from flask import Flask, has_app_context

from app.models import db
from app.models.base import utcnow
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("standing_reservation_planner")
        def plan_standing_reservations(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight interval scheduler.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _running: bool = False
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))
        if app.config.get("SCHEDULER_ENABLED") and not app.config.get("TESTING"):
            cls.ensure_jobs_registered()
            cls.start(app.config.get("SCHEDULER_TICK_SECONDS", 60))

    @classmethod
    def _context(cls):
        return nullcontext() if has_app_context() else cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        if not cls._app:
            return []

        created = []
        with cls._context():
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        schedule_type="interval",
                        schedule_config=_get_default_schedule(name),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._context():
            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc)

            duration_ms = int((time.monotonic() - start) * 1000)

            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record:
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Run every enabled job whose interval has elapsed since its last run."""
        if not cls._app:
            return []
        now = now or utcnow()
        with cls._context():
            due = []
            for job in ScheduledJob.query.filter_by(is_enabled=True).order_by(ScheduledJob.id).all():
                minutes = (job.schedule_config or {}).get("interval_minutes", 60)
                if job.last_run_at is None or now - job.last_run_at >= timedelta(minutes=minutes):
                    due.append(job.job_name)
        return [cls.run_job(name) for name in due if name in _job_registry]

    @classmethod
    def start(cls, tick_seconds: int = 60) -> None:
        """Start the interval loop in a daemon thread (idempotent)."""
        if cls._running:
            return
        cls._running = True
        cls._stop_event = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop, args=(tick_seconds,), name="scheduler", daemon=True,
        )
        cls._thread.start()
        logger.info("Scheduler loop started (tick=%ss)", tick_seconds)

    @classmethod
    def stop(cls) -> None:
        if cls._stop_event is not None:
            cls._stop_event.set()
        cls._running = False

    @classmethod
    def _loop(cls, tick_seconds: int) -> None:
        while cls._running and not cls._stop_event.is_set():
            try:
                cls.run_due_jobs()
            except Exception:
                logger.exception("Scheduler tick failed")
            cls._stop_event.wait(tick_seconds)

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


def _get_default_schedule(job_name: str) -> dict:
    """Return default schedule config for known job types."""
    defaults = {
        "standing_reservation_planner": {"interval_minutes": 60, "description": "Every hour"},
        "occurrence_materializer": {"interval_minutes": 15, "description": "Every 15 minutes"},
    }
    return defaults.get(job_name, {"interval_minutes": 1440, "description": "Once a day"})
