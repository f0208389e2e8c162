#!/usr/bin/env python
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, text


EXPECTED_HEAD = "0002_attendance_points"


def load_env_if_exists() -> None:
    env_file = Path(".env")
    if not env_file.exists():
        return
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def run() -> dict:
    load_env_if_exists()
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL not found (.env or env vars).")

    engine = create_engine(database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
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

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

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

        required_by_revision = {
            "0001+": ["users", "attendances", "audit_logs", "notification_jobs"],
            "0002+": ["attendance_points"],
        }
        missing = {
            rev: [table for table in required if table not in tables]
            for rev, required in required_by_revision.items()
        }
        missing = {rev: tables_ for rev, tables_ in missing.items() if tables_}
        add("missing_tables_by_revision", "warn" if missing else "ok", missing)

        if "attendance_points" not in tables:
            return report

        duplicate_attendance_points = conn.execute(
            text(
                """
                select attendance_id, count(*)
                from attendance_points
                where attendance_id is not null
                group by attendance_id
                having count(*) > 1
                limit 20
                """
            )
        ).fetchall()
        add(
            "duplicate_attendance_points",
            "fail" if duplicate_attendance_points else "ok",
            {"rows": [list(row) for row in duplicate_attendance_points]},
        )

        ineligible_with_gbro = conn.execute(
            text(
                """
                select id
                from attendance_points
                where point_type = 'WHOLE_DAY_ABSENCE_UNADVISED'
                  and (eligible_for_gbro = true or gbro_expires_at is not null)
                limit 20
                """
            )
        ).fetchall()
        add(
            "unadvised_absence_gbro_eligibility",
            "fail" if ineligible_with_gbro else "ok",
            {"sample_ids": [row[0] for row in ineligible_with_gbro]},
        )

        excused_with_gbro = conn.execute(
            text(
                """
                select id
                from attendance_points
                where is_excused = true
                  and is_expired = false
                  and gbro_expires_at is not null
                limit 20
                """
            )
        ).fetchall()
        add(
            "excused_points_with_gbro_date",
            "warn" if excused_with_gbro else "ok",
            {"sample_ids": [row[0] for row in excused_with_gbro]},
        )

        overdue = conn.execute(
            text(
                """
                select count(*)
                from attendance_points
                where is_expired = false
                  and (
                    expires_at < current_date
                    or (is_excused = false and gbro_expires_at < current_date)
                  )
                """
            )
        ).scalar()
        add("overdue_expirations", "warn" if overdue else "ok", {"count": int(overdue or 0)})

        orphan_users = conn.execute(
            text(
                """
                select p.id
                from attendance_points p
                left join users u on u.id = p.user_id
                where u.id is null
                limit 20
                """
            )
        ).fetchall()
        add(
            "attendance_point_orphan_user",
            "fail" if orphan_users else "ok",
            {"sample_ids": [row[0] for row in orphan_users]},
        )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
