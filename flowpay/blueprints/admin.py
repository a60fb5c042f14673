"""
Admin Blueprint - Health Checks, Metrics, and Scheduled Jobs

Provides monitoring endpoints and the cron-triggered lifecycle jobs
(expiry sweep, expiry reminders, reconciliation).
"""

import hmac
import logging
import time
from functools import wraps
from typing import Any, Dict

from flask import Blueprint, Response, current_app, jsonify, request
from prometheus_client import generate_latest

from flowpay.database import get_redis
from flowpay.errors import LedgerError, StoreError
from flowpay.factory import get_service
from flowpay.metrics import escrow_balanced, escrow_locked, job_runs, registry

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)


def require_cron_secret(f):
    """Reject requests without ``Authorization: Bearer <CRON_SECRET>``."""

    @wraps(f)
    def wrapper(*args, **kwargs):
        cfg = current_app.config.get("APP_CONFIG", {})
        expected = f"Bearer {cfg.get('CRON_SECRET', '')}"
        provided = request.headers.get("Authorization", "")
        if not cfg.get("CRON_SECRET") or not hmac.compare_digest(provided.encode(), expected.encode()):
            logger.warning(f"Rejected cron call to {request.path} from {request.remote_addr}")
            return jsonify({"success": False, "error": "unauthorized", "message": "Unauthorized"}), 401
        return f(*args, **kwargs)

    return wrapper


@admin_bp.route("/health")
def health():
    """
    Health check endpoint.

    Returns:
        JSON health status with component information
    """
    cfg = current_app.config.get("APP_CONFIG", {})
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": time.time(),
        "service": cfg.get("APP_NAME", "FlowPay"),
        "version": cfg.get("APP_VERSION", "1.0.0"),
        "components": {},
    }

    try:
        get_service().store.ping()
        health_status["components"]["database"] = {"status": "connected"}
    except StoreError as e:
        logger.warning(f"Database health check failed: {e}")
        health_status["components"]["database"] = {"status": "error", "error": e.message}
        health_status["status"] = "degraded"

    redis_client = get_redis()
    if redis_client is None:
        health_status["components"]["redis"] = {"status": "not_configured"}
    else:
        try:
            redis_client.ping()
            health_status["components"]["redis"] = {"status": "connected"}
        except Exception as e:
            logger.info(f"Redis not available: {e}")
            health_status["components"]["redis"] = {"status": "optional_unavailable"}

    health_status["components"]["ledger"] = {"backend": cfg.get("LEDGER_BACKEND", "memory")}

    return jsonify(health_status), 200 if health_status["status"] == "healthy" else 503


@admin_bp.route("/health/live")
def liveness():
    """Liveness check - reports that the app is running."""
    return jsonify({"status": "alive"}), 200


@admin_bp.route("/metrics")
def metrics_prometheus():
    """
    Prometheus metrics endpoint.

    Returns:
        Prometheus text format metrics
    """
    return Response(generate_latest(registry), mimetype="text/plain; version=0.0.4")


@admin_bp.route("/api/cron/sweep-expired", methods=["GET", "POST"])
@require_cron_secret
def cron_sweep_expired():
    """Refund all pending transfers past their expiry."""
    report = get_service().sweep_expired_transfers()
    job_runs.labels(job="sweep", outcome="ok" if not report.failed else "partial").inc()
    return jsonify({"success": True, "report": report.to_dict()})


@admin_bp.route("/api/cron/expiry-reminders", methods=["GET", "POST"])
@require_cron_secret
def cron_expiry_reminders():
    """Email recipients whose transfers expire within the reminder window."""
    counts = get_service().send_expiry_reminders()
    job_runs.labels(job="reminders", outcome="ok").inc()
    return jsonify({"success": True, **counts})


@admin_bp.route("/api/cron/reconcile", methods=["GET", "POST"])
@require_cron_secret
def cron_reconcile():
    """
    Resolve in-flight ledger transactions and compare custody totals.

    Returns:
        JSON with in-flight resolution counts and the escrow comparison
    """
    service = get_service()
    body: Dict[str, Any] = {"success": True, "in_flight": service.reconcile_in_flight()}

    try:
        report = service.check_escrow_reconciliation()
    except LedgerError as e:
        logger.error(f"Escrow reconciliation unavailable: {e.message}")
        job_runs.labels(job="reconcile", outcome="ledger_error").inc()
        body["escrow"] = {"error": e.message}
        return jsonify(body), 502

    escrow_locked.set(float(report.ledger_total_locked))
    escrow_balanced.set(1 if report.balanced else 0)
    job_runs.labels(job="reconcile", outcome="ok" if report.balanced else "mismatch").inc()
    body["escrow"] = report.to_dict()
    return jsonify(body)
