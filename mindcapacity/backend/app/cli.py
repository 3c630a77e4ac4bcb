"""
MindCapacity CLI

Batch maintenance for capacity logs.

Usage:
    python -m mindcapacity.backend.app.cli recalculate             # Every user
    python -m mindcapacity.backend.app.cli recalculate --user 3    # One user
    python -m mindcapacity.backend.app.cli current --user 3        # Current capacity
    python -m mindcapacity.backend.app.cli forecast --user 3 --days 7
"""
from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from .capacity_service import CapacityService
from .database import CATALOG, SessionLocal, configure_logging, init_db


def build_service() -> CapacityService:
    init_db()
    return CapacityService(SessionLocal, CATALOG)


def require_user(service: CapacityService, user_id: int) -> bool:
    if service.user_exists(user_id):
        return True
    print(f"User with ID {user_id} not found.", file=sys.stderr)
    return False


def cmd_recalculate(args, service: CapacityService) -> int:
    """Rebuild capacity logs from the first entry through today."""
    if args.user is not None:
        if not require_user(service, args.user):
            return 1
        days = service.recalculate_from_first_entry(args.user)
        print(f"Recalculated capacity for user {args.user} ({days} days).")
        return 0

    count = service.recalculate_all_users()
    if count == 0:
        print("No users found.")
        return 0
    print(f"Recalculated capacity for {count} user(s).")
    return 0


def cmd_current(args, service: CapacityService) -> int:
    if not require_user(service, args.user):
        return 1
    print(f"{service.get_current_capacity(args.user)}%")
    return 0


def cmd_forecast(args, service: CapacityService) -> int:
    if not require_user(service, args.user):
        return 1
    for point in service.forecast_capacity(args.user, args.days):
        print(f"{point['date']}  {point['projected_capacity']:>3}%  {point['risk_level']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MindCapacity CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("recalculate", help="Recalculate capacity logs for all users or one user")
    p.add_argument("--user", type=int, help="Specific user ID to recalculate")

    p = subparsers.add_parser("current", help="Show current capacity")
    p.add_argument("--user", type=int, required=True, help="User ID")

    p = subparsers.add_parser("forecast", help="Project capacity for the coming days")
    p.add_argument("--user", type=int, required=True, help="User ID")
    p.add_argument("--days", type=int, default=7, help="Days ahead (default 7)")

    return parser


def main(argv: Optional[List[str]] = None, service: Optional[CapacityService] = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    service = service or build_service()

    commands = {
        "recalculate": cmd_recalculate,
        "current": cmd_current,
        "forecast": cmd_forecast,
    }

    return commands[args.command](args, service)


if __name__ == "__main__":
    sys.exit(main())
