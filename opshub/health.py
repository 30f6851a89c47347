"""Runtime health checks shared by ``/api/health`` and the CLI banner."""

from __future__ import annotations

import os
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

import psutil
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from opshub.extensions import db


PASS = "pass"
WARN = "warn"
FAIL = "fail"


def _check(status: str, message: str, *, response_time=None, details=None) -> dict[str, Any]:
    result: dict[str, Any] = {"status": status, "message": message}
    if response_time is not None:
        result["responseTime"] = response_time
    if details:
        result["details"] = details
    return result


def overall_status(checks: Mapping[str, Mapping[str, Any]]) -> str:
    statuses = {check.get("status") for check in checks.values()}
    if FAIL in statuses:
        return "unhealthy"
    if WARN in statuses:
        return "degraded"
    return "healthy"


class HealthChecker:
    """Run the configured checks against an application's config."""

    def __init__(self, config: Mapping[str, Any], *, environ: Mapping[str, str] | None = None):
        self.config = config
        self.environ = os.environ if environ is None else environ
        self.started_at = time.monotonic()

    @property
    def is_production(self) -> bool:
        return str(self.config.get("APP_ENV", "")).lower() == "production"

    def check_database(self) -> dict[str, Any]:
        slow_ms = int(self.config.get("HEALTH_DB_SLOW_MS", 2000))
        started = time.perf_counter()
        try:
            with db.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            return _check(
                FAIL,
                "Database connectivity failed",
                details={"error": str(getattr(exc, "orig", exc))},
            )
        response_time = round((time.perf_counter() - started) * 1000, 2)

        if response_time > slow_ms:
            return _check(
                WARN,
                "Database response time is slow",
                response_time=response_time,
                details={"threshold": f"{slow_ms}ms"},
            )
        return _check(PASS, "Database connection healthy", response_time=response_time)

    def check_environment(self) -> dict[str, Any]:
        required = self.config.get("HEALTH_REQUIRED_ENV_VARS") or ()
        missing = [name for name in required if not self.environ.get(name)]
        if missing:
            return _check(
                FAIL,
                "Missing required environment variables",
                details={"missingVariables": missing},
            )

        if self.is_production:
            recommended = self.config.get("HEALTH_RECOMMENDED_ENV_VARS") or ()
            missing = [name for name in recommended if not self.environ.get(name)]
            if missing:
                return _check(
                    WARN,
                    "Missing recommended environment variables for production",
                    details={"missingVariables": missing},
                )

        return _check(PASS, "Environment configuration is valid")

    def check_memory(self, rss_reader: Callable[[], int] | None = None) -> dict[str, Any]:
        warn_mb = int(self.config.get("HEALTH_MEMORY_WARN_MB", 256))
        fail_mb = int(self.config.get("HEALTH_MEMORY_FAIL_MB", 512))
        try:
            rss = rss_reader() if rss_reader else psutil.Process().memory_info().rss
        except psutil.Error as exc:
            return _check(FAIL, "Memory check failed", details={"error": str(exc)})

        rss_mb = round(rss / 1024 / 1024)
        details: dict[str, Any] = {"rssUsedMB": rss_mb}
        if rss_mb > fail_mb:
            details["threshold"] = f"{fail_mb}MB"
            return _check(FAIL, "Memory usage critically high", details=details)
        if rss_mb > warn_mb:
            details["threshold"] = f"{warn_mb}MB"
            return _check(WARN, "Memory usage elevated", details=details)
        return _check(PASS, "Memory usage normal", details=details)

    def check_disk(self) -> dict[str, Any]:
        warn_percent = float(self.config.get("HEALTH_DISK_WARN_PERCENT", 10.0))
        fail_percent = float(self.config.get("HEALTH_DISK_FAIL_PERCENT", 5.0))
        path = Path(self.config.get("LOG_DIR") or ".")
        while not path.exists() and path != path.parent:
            path = path.parent

        try:
            usage = shutil.disk_usage(path)
        except OSError as exc:
            return _check(FAIL, "Disk check failed", details={"error": str(exc)})

        free_percent = (usage.free / usage.total) * 100 if usage.total else 0.0
        details = {
            "path": str(path),
            "total_gb": round(usage.total / (1024**3), 2),
            "free_gb": round(usage.free / (1024**3), 2),
            "free_percent": round(free_percent, 2),
        }
        if free_percent <= fail_percent:
            return _check(FAIL, f"Low disk space: {free_percent:.1f}% free", details=details)
        if free_percent <= warn_percent:
            return _check(WARN, f"Disk space warning: {free_percent:.1f}% free", details=details)
        return _check(PASS, "Disk space healthy", details=details)

    def run(self) -> dict[str, Any]:
        checks = {
            "database": self.check_database(),
            "environment": self.check_environment(),
            "memory": self.check_memory(),
            "disk": self.check_disk(),
        }
        return {
            "status": overall_status(checks),
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "checks": checks,
            "metadata": {
                "environment": self.config.get("APP_ENV", "development"),
                "version": self.config.get("BUILD_ID") or "unknown",
                "uptime": round(time.monotonic() - self.started_at, 3),
            },
        }
