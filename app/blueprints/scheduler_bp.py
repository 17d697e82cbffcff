"""Scheduler blueprint — inspect and trigger the background jobs."""

import logging

from flask import Blueprint, jsonify, request

from app.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)

scheduler_bp = Blueprint("scheduler_bp", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════

@scheduler_bp.route("/scheduler/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List registered jobs with their persisted status."""
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@scheduler_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    job = SchedulerService.get_job_status(job_name)
    if not job:
        return jsonify({"error": f"Job '{job_name}' not found"}), 404
    return jsonify(job)


@scheduler_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    """Manually trigger a scheduled job."""
    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return jsonify(result), 404
    logger.info("Job %s triggered manually: %s", job_name, result.get("status"))
    return jsonify(result)


@scheduler_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return jsonify({"error": "'enabled' field is required (true/false)"}), 400

    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return jsonify({"error": f"Job '{job_name}' not found"}), 404
    return jsonify(result)
