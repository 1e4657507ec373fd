#!/usr/bin/env python
from __future__ import annotations

import json
import os
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from croniter import croniter
from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.services.schema_guard import verify_runtime_schema
from app.settings import get_settings

VERSIONS_DIR = ROOT_DIR / "app" / "migrations" / "versions"
REVISION_PATTERN = re.compile(r'^\s*revision\s*:\s*str\s*=\s*"([^"]+)"\s*$', re.MULTILINE)
DOWN_REVISION_PATTERN = re.compile(r'^\s*down_revision\s*:[^=]*=\s*(?:"([^"]+)"|None)\s*$', re.MULTILINE)


@dataclass(slots=True)
class CheckResult:
    name: str
    status: str
    details: dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _read_revisions() -> dict[str, str | None]:
    revisions: dict[str, str | None] = {}
    for path in sorted(VERSIONS_DIR.glob("*.py")):
        if path.name.startswith("__"):
            continue
        content = path.read_text(encoding="utf-8")
        match = REVISION_PATTERN.search(content)
        if not match:
            continue
        down = DOWN_REVISION_PATTERN.search(content)
        revisions[match.group(1).strip()] = down.group(1) if down and down.group(1) else None
    return revisions


def _expected_heads(revisions: dict[str, str | None]) -> list[str]:
    parents = {parent for parent in revisions.values() if parent}
    return sorted(revision for revision in revisions if revision not in parents)


def _check_revisions() -> CheckResult:
    revisions = _read_revisions()
    too_long = [revision for revision in revisions if len(revision) > 32]
    heads = _expected_heads(revisions)
    return CheckResult(
        name="migration_revisions",
        status="ok" if not too_long and len(heads) == 1 else "fail",
        details={"max_len": 32, "too_long": too_long, "heads": heads, "total": len(revisions)},
    )


def _check_job_schedules() -> CheckResult:
    settings = get_settings()
    crons = {
        "checkin_creation_cron": settings.checkin_creation_cron,
        "checkin_expiry_cron": settings.checkin_expiry_cron,
        "checkin_reminder_cron": settings.checkin_reminder_cron,
        "job_notification_status_cron": settings.job_notification_status_cron,
        "generic_notification_status_cron": settings.generic_notification_status_cron,
    }
    invalid = [name for name, expression in crons.items() if not croniter.is_valid(expression)]
    reminder_inside_grace = settings.checkin_reminder_day_offset < settings.checkin_grace_period_days
    status = "ok"
    if invalid:
        status = "fail"
    elif not reminder_inside_grace:
        status = "warn"
    return CheckResult(
        name="job_schedules",
        status=status,
        details={
            "invalid": invalid,
            "grace_period_days": settings.checkin_grace_period_days,
            "reminder_day_offset": settings.checkin_reminder_day_offset,
        },
    )


def _check_notify_config() -> CheckResult:
    settings = get_settings()
    api_key_set = bool(settings.notify_api_key.strip())
    template_count = len([value for value in settings.notify_templates.values() if value.strip()])
    topic_ok = not settings.domain_events_enabled or bool((settings.domain_events_topic_arn or "").strip())
    status = "ok"
    if not topic_ok:
        status = "fail"
    elif api_key_set and template_count == 0:
        status = "warn"
    return CheckResult(
        name="notify_config",
        status=status,
        details={
            "notify_api_key_set": api_key_set,
            "template_count": template_count,
            "domain_events_enabled": settings.domain_events_enabled,
            "domain_events_topic_set": topic_ok,
        },
    )


def _check_database_migration_and_schema() -> CheckResult:
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if not database_url:
        return CheckResult(
            name="database_schema_guard",
            status="warn",
            details={"reason": "DATABASE_URL_NOT_SET"},
        )

    expected_heads = _expected_heads(_read_revisions())
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            current_versions = [
                str(row[0]).strip()
                for row in connection.execute(text("SELECT version_num FROM alembic_version")).fetchall()
                if row and row[0] is not None
            ]
            duplicate_checkins = connection.execute(
                text(
                    """
                    select offender_id, due_date, count(*)
                    from checkins
                    group by offender_id, due_date
                    having count(*) > 1
                    limit 20
                    """
                )
            ).fetchall()
        schema_result = verify_runtime_schema(engine)
    finally:
        engine.dispose()

    missing_heads = [head for head in expected_heads if head not in current_versions]
    status = "ok"
    if missing_heads or duplicate_checkins or (not schema_result.ok):
        status = "fail"

    return CheckResult(
        name="database_schema_guard",
        status=status,
        details={
            "expected_heads": expected_heads,
            "current_versions": current_versions,
            "missing_heads": missing_heads,
            "duplicate_checkins": [[str(value) for value in row] for row in duplicate_checkins],
            "schema_guard_ok": schema_result.ok,
            "schema_guard_issues": schema_result.issues,
            "schema_guard_warnings": schema_result.warnings,
        },
    )


def main() -> int:
    checks = [
        _check_revisions(),
        _check_job_schedules(),
        _check_notify_config(),
        _check_database_migration_and_schema(),
    ]
    failed_checks = [check for check in checks if check.status == "fail"]
    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": len(failed_checks) == 0,
        "checks": [
            {
                "name": check.name,
                "status": check.status,
                "details": check.details,
            }
            for check in checks
        ],
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0 if len(failed_checks) == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
