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

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from punchsync.services.schema_guard import EXPECTED_ALEMBIC_HEAD, verify_runtime_schema
from punchsync.settings import Settings, get_settings, get_upstream_host

VERSIONS_DIR = ROOT_DIR / "punchsync" / "migrations" / "versions"
MAX_REVISION_ID_LENGTH = 32


@dataclass(slots=True)
class CheckResult:
    name: str
    status: str
    details: dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _extract_revision_ids(versions_dir: Path = VERSIONS_DIR) -> list[str]:
    revisions: list[str] = []
    pattern = re.compile(r'^\s*revision\s*:\s*str\s*=\s*"([^"]+)"\s*$', re.MULTILINE)
    for path in sorted(versions_dir.glob("*.py")):
        if path.name.startswith("__"):
            continue
        match = pattern.search(path.read_text(encoding="utf-8"))
        if match:
            revisions.append(match.group(1).strip())
    return revisions


def check_revision_id_lengths(revisions: list[str]) -> CheckResult:
    too_long = [revision for revision in revisions if len(revision) > MAX_REVISION_ID_LENGTH]
    return CheckResult(
        name="migration_revision_length",
        status="ok" if not too_long else "fail",
        details={"max_len": MAX_REVISION_ID_LENGTH, "too_long": too_long, "total": len(revisions)},
    )


def check_expected_head(heads: list[str]) -> CheckResult:
    """The runtime schema guard must expect the revision alembic will upgrade to."""
    matches = heads == [EXPECTED_ALEMBIC_HEAD]
    return CheckResult(
        name="schema_guard_head",
        status="ok" if matches else "fail",
        details={"alembic_heads": heads, "schema_guard_expects": EXPECTED_ALEMBIC_HEAD},
    )


def check_upstream_config(settings: Settings) -> CheckResult:
    username_set = bool((settings.upstream_username or "").strip())
    password_set = bool((settings.upstream_password or "").strip())
    details: dict[str, Any] = {
        "upstream_host": get_upstream_host(),
        "username_set": username_set,
        "password_set": password_set,
        "workers_enabled": settings.workers_enabled,
    }
    if username_set != password_set:
        return CheckResult(name="upstream_config", status="fail", details=details)
    if settings.workers_enabled and not username_set:
        # Enabled workers poll with these credentials.
        return CheckResult(name="upstream_config", status="fail", details=details)
    if not settings.ops_api_token:
        details["ops_api_token_set"] = False
        return CheckResult(name="upstream_config", status="warn", details=details)
    return CheckResult(name="upstream_config", status="ok", details=details)


def _expected_alembic_heads() -> list[str]:
    config = Config(str(ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT_DIR / "punchsync" / "migrations"))
    script = ScriptDirectory.from_config(config)
    return sorted(script.get_heads())


def _check_database_migration_and_schema(expected_heads: list[str]) -> CheckResult:
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if not database_url:
        return CheckResult(
            name="database_schema_guard",
            status="warn",
            details={"reason": "DATABASE_URL_NOT_SET"},
        )

    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            current_versions = [
                str(row[0]).strip()
                for row in connection.execute(text("SELECT version_num FROM alembic_version")).fetchall()
                if row and row[0] is not None
            ]
        schema_result = verify_runtime_schema(engine)
    finally:
        engine.dispose()

    missing_heads = [head for head in expected_heads if head not in current_versions]
    status = "ok"
    if missing_heads or (not schema_result.ok):
        status = "fail"

    return CheckResult(
        name="database_schema_guard",
        status=status,
        details={
            "expected_heads": expected_heads,
            "current_versions": current_versions,
            "missing_heads": missing_heads,
            "schema_guard_ok": schema_result.ok,
            "schema_guard_issues": schema_result.issues,
            "schema_guard_warnings": schema_result.warnings,
        },
    )


def main() -> int:
    expected_heads = _expected_alembic_heads()
    checks = [
        check_revision_id_lengths(_extract_revision_ids()),
        check_expected_head(expected_heads),
        check_upstream_config(get_settings()),
        _check_database_migration_and_schema(expected_heads),
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
