#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.settings import get_settings

EXPECTED_HEAD = "0001_initial"


def run(engine: Engine | None = None) -> dict:
    engine = engine or create_engine(get_settings().database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "database_url": engine.url.render_as_string(hide_password=True),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    tables = set(inspect(engine).get_table_names())
    with engine.connect() as conn:
        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        required = ["employees", "attendance_sessions", "attendance_records", "audit_logs"]
        missing = [table for table in required if table not in tables]
        add("missing_tables", "fail" if missing else "ok", {"tables": missing})

        if "attendance_sessions" in tables:
            active_sessions = conn.execute(
                text(
                    """
                    select session_id
                    from attendance_sessions
                    where status = 'active'
                    """
                )
            ).scalars().all()
            add(
                "single_active_session",
                "fail" if len(active_sessions) > 1 else "ok",
                {"active_session_ids": list(active_sessions)},
            )

        if "attendance_records" in tables:
            duplicate_records = conn.execute(
                text(
                    """
                    select session_id, employee_id, count(*)
                    from attendance_records
                    group by session_id, employee_id
                    having count(*) > 1
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "duplicate_attendance_records",
                "fail" if duplicate_records else "ok",
                {"rows": [list(row) for row in duplicate_records]},
            )

            orphan_employees = conn.execute(
                text(
                    """
                    select r.id
                    from attendance_records r
                    left join employees e on e.employee_id = r.employee_id
                    where e.employee_id is null
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "attendance_orphan_employee",
                "fail" if orphan_employees else "ok",
                {"sample_ids": [row[0] for row in orphan_employees]},
            )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
