"""HTTP entrypoint for submitting and polling lead discovery jobs (Cloud Run friendly)."""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from leadpipe.core.config import get_settings
from leadpipe.core.errors import ConfigError, JobNotFoundError, JobStateError, ValidationError
from leadpipe.jobs.orchestrator import JobOrchestrator

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & orchestrator ----------
app = Flask(__name__)
_orchestrator: Optional[JobOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> JobOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = JobOrchestrator()
        return _orchestrator


def _error(message: str, status: int) -> Any:
    return jsonify({"error": message}), status


@app.errorhandler(ValidationError)
def _validation_error(exc: ValidationError) -> Any:
    return _error(str(exc), 400)


@app.errorhandler(JobNotFoundError)
def _not_found(exc: JobNotFoundError) -> Any:
    return _error(str(exc), 404)


@app.errorhandler(JobStateError)
def _conflict(exc: JobStateError) -> Any:
    return _error(str(exc), 409)


@app.errorhandler(ConfigError)
def _config_error(exc: ConfigError) -> Any:
    logger.error("Configuration error: %s", exc)
    return _error("service misconfigured", 500)


# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    """Simple root to avoid 404 on GET /"""
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; reads settings only, never touches the database."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": getattr(settings, "worker_port", None),
                "discovery_provider": settings.discovery_provider,
                "revision": os.getenv("K_REVISION", "unknown"),
                "region": os.getenv("X_GOOGLE_RUNTIMEREGION", "unknown"),
            }
        ),
        200,
    )


@app.post("/jobs")
def submit_job() -> Any:
    """
    Queue a discovery job.
    Body: a query object (vertical, geo, result_size, ...) plus optional
    ``profile`` (name or {"weights": {...}}).
    """
    payload: Dict[str, Any] = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _error("request body must be a JSON object", 400)

    query_payload = dict(payload)
    profile = query_payload.pop("profile", None)
    job = get_orchestrator().submit_query(query_payload, profile=profile)
    return jsonify({"data": job.to_dict()}), 202


@app.get("/jobs/<job_id>")
def get_job(job_id: str) -> Any:
    job = get_orchestrator().get_job(job_id)
    return jsonify({"data": job.to_dict()}), 200


@app.get("/jobs/<job_id>/leads")
def list_leads(job_id: str) -> Any:
    sort_by = request.args.get("sort_by") or None
    only_matching = request.args.get("only_matching", "").lower() in ("1", "true", "yes")
    leads = get_orchestrator().list_leads(job_id, sort_by=sort_by, only_matching=only_matching)
    return jsonify({"data": [lead.to_dict() for lead in leads]}), 200


@app.post("/jobs/<job_id>/rescore")
def rescore_job(job_id: str) -> Any:
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    if "weights" in payload:
        target: Any = {"weights": payload["weights"], "name": payload.get("name") or "custom"}
    elif payload.get("profile"):
        target = payload["profile"]
    else:
        return _error("profile or weights is required", 400)

    result = get_orchestrator().rescore_job(job_id, target)
    return jsonify({"data": result}), 200


@app.post("/jobs/<job_id>/cancel")
def cancel_job(job_id: str) -> Any:
    job = get_orchestrator().cancel_job(job_id)
    return jsonify({"data": job.to_dict()}), 202


def main() -> None:
    """
    Cloud Run injects PORT; fall back to WORKER_PORT locally.
    """
    env_port = os.getenv("PORT")
    logger.info("[BOOT] ENV PORT=%s", env_port)

    port = int(env_port or get_settings().worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)

    get_orchestrator()
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
