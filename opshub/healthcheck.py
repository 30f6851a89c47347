import argparse
import datetime as dt
import logging

from sqlalchemy.engine.url import make_url

from opshub import create_app
from opshub.health import HealthChecker


def _mask_db_url(raw_url: str) -> str:
    try:
        parsed = make_url(raw_url)
        if parsed.password:
            return parsed.render_as_string(hide_password=True)
        return str(parsed)
    except Exception:
        if "@" in raw_url:
            prefix, remainder = raw_url.split("@", 1)
            if ":" in prefix:
                user, _ = prefix.split(":", 1)
                return f"{user}:***@{remainder}"
        return raw_url


def _render_banner(lines: list[str]) -> str:
    width = max(len(line) for line in lines) + 4
    border = "+" + "-" * (width - 2) + "+"
    body = [f"| {line.ljust(width - 4)} |" for line in lines]
    return "\n".join([border, *body, border])


def build_report_lines(report: dict, database_url: str) -> list[str]:
    timestamp = dt.datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")
    metadata = report.get("metadata", {})
    lines = [
        f"Operations Hub Health Check - {timestamp}",
        f"Overall status: {report['status'].upper()}",
        f"Environment: {metadata.get('environment')} (build {metadata.get('version')})",
        f"DB_URL: {_mask_db_url(database_url)}",
    ]
    for name, check in report["checks"].items():
        line = f"{name}: {check['status'].upper()} - {check.get('message', '')}"
        if "responseTime" in check:
            line += f" ({check['responseTime']}ms)"
        lines.append(line)
        missing = (check.get("details") or {}).get("missingVariables")
        if missing:
            lines.append(f"  missing: {', '.join(missing)}")
    return lines


def run_healthcheck(nonfatal: bool, config_override=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    # one-shot process; keep the presence prune job from starting
    app = create_app({"PRESENCE_PRUNE_INTERVAL_SECONDS": 0, **(config_override or {})})
    with app.app_context():
        report = HealthChecker(app.config).run()

    print(_render_banner(build_report_lines(report, app.config["SQLALCHEMY_DATABASE_URI"])))

    if report["status"] == "unhealthy" and not nonfatal:
        return 1
    return 0


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Operations Hub health check")
    parser.add_argument(
        "--fatal",
        action="store_true",
        help="Exit with non-zero status when checks fail",
    )
    args = parser.parse_args(argv)

    raise SystemExit(run_healthcheck(nonfatal=not args.fatal))


if __name__ == "__main__":
    main()
