from __future__ import annotations

from datetime import datetime

from flask import Blueprint, current_app, jsonify

from opshub.health import HealthChecker

bp = Blueprint("health", __name__, url_prefix="/api/health")


def get_health_checker() -> HealthChecker:
    checker = current_app.extensions.get("opshub_health")
    if checker is None:
        checker = HealthChecker(current_app.config)
        current_app.extensions["opshub_health"] = checker
    return checker


@bp.get("")
def health_report():
    report = get_health_checker().run()
    status_code = 503 if report["status"] == "unhealthy" else 200
    if status_code == 503:
        failing = [name for name, check in report["checks"].items() if check["status"] == "fail"]
        current_app.logger.warning("Health check unhealthy: %s", ", ".join(failing))

    response = jsonify(report)
    response.status_code = status_code
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return response


@bp.get("/live")
def liveness():
    return jsonify({"status": "ok", "timestamp": datetime.utcnow().isoformat() + "Z"})
