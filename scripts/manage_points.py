#!/usr/bin/env python
"""Run attendance point maintenance from the command line.

    python scripts/manage_points.py cleanup
    python scripts/manage_points.py expire --scope gbro
    python scripts/manage_points.py regenerate --from 2026-01-01 --to 2026-01-31 --user 42
"""
from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from pathlib import Path
from typing import Any, Sequence

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from point_engine.db import SessionLocal
from point_engine.errors import ApiError
from point_engine.logging_utils import setup_json_logging
from point_engine.security import PointActor
from point_engine.services import maintenance
from point_engine.services.gbro import recalculate_gbro
from point_engine.services.points import rescan_attendance


def _parse_date(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date: {raw!r} (expected YYYY-MM-DD)") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Attendance point maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="print management statistics")
    sub.add_parser("dedupe", help="remove duplicate points per attendance record")
    expire = sub.add_parser("expire", help="expire points whose expiration date has passed")
    expire.add_argument("--scope", choices=maintenance.EXPIRE_SCOPES, default="both")
    sub.add_parser("init-gbro", help="backfill missing GBRO dates")
    sub.add_parser("fix-gbro", help="re-derive GBRO dates for every user")
    reset = sub.add_parser("reset", help="un-expire points")
    reset.add_argument("--user", type=int, dest="user_id")
    reset.add_argument("--users", type=int, nargs="+", dest="user_ids")
    sub.add_parser("cleanup", help="dedupe then expire")

    for name, help_text in (("regenerate", "create missing points for verified attendance"), ("rescan", "import verified attendance")):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--from", type=_parse_date, dest="date_from", required=True)
        command.add_argument("--to", type=_parse_date, dest="date_to", required=True)
        if name == "regenerate":
            command.add_argument("--user", type=int, dest="user_id")

    recalc = sub.add_parser("recalculate", help="run the GBRO cascade for one user")
    recalc.add_argument("user_id", type=int)
    return parser


def run(args: argparse.Namespace) -> Any:
    actor = PointActor.system()
    db = SessionLocal()
    try:
        if args.command == "stats":
            return maintenance.management_stats(db)
        if args.command == "dedupe":
            return maintenance.remove_duplicates(db, actor=actor).to_dict()
        if args.command == "expire":
            return maintenance.expire_all_pending(db, scope=args.scope, actor=actor).to_dict()
        if args.command == "init-gbro":
            return maintenance.initialize_gbro_dates(db, actor=actor).to_dict()
        if args.command == "fix-gbro":
            return maintenance.fix_gbro_dates(db, actor=actor).to_dict()
        if args.command == "reset":
            return maintenance.reset_expired(db, actor=actor, user_ids=args.user_ids, user_id=args.user_id).to_dict()
        if args.command == "cleanup":
            return {name: result.to_dict() for name, result in maintenance.cleanup(db, actor=actor).items()}
        if args.command == "regenerate":
            return maintenance.regenerate_points(
                db,
                actor=actor,
                date_from=args.date_from,
                date_to=args.date_to,
                user_id=args.user_id,
            ).to_dict()
        if args.command == "rescan":
            return rescan_attendance(db, date_from=args.date_from, date_to=args.date_to, actor=actor).to_dict()
        if args.command == "recalculate":
            return recalculate_gbro(db, args.user_id, actor=actor).to_dict()
        raise ValueError(f"unknown command: {args.command}")
    finally:
        db.close()


def main(argv: Sequence[str] | None = None) -> int:
    setup_json_logging()
    args = build_parser().parse_args(argv)
    try:
        result = run(args)
    except ApiError as exc:
        print(json.dumps({"error": {"code": exc.code, "message": exc.message}}), file=sys.stderr)
        return 1
    print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
