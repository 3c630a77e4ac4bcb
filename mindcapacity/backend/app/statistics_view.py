from __future__ import annotations

import calendar
from collections import Counter
from datetime import date, timedelta
from typing import List, Optional

from .capacity_engine import EntrySnapshot
from .capacity_service import CapacityService
from .state_catalog import StateCatalog


def month_bounds(year: int, month: int) -> tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def parse_month(value: Optional[str], today: date) -> tuple[int, int]:
    if not value:
        return today.year, today.month
    try:
        year_text, month_text = value.split("-", 1)
        first_day = date(int(year_text), int(month_text), 1)
    except ValueError as exc:
        raise ValueError(f"Invalid month {value!r}, expected YYYY-MM") from exc
    return first_day.year, first_day.month


def build_state_breakdown(entries: List[EntrySnapshot], catalog: StateCatalog) -> dict:
    counts = Counter(entry.state_key for entry in entries)
    return {
        state_type.key: {
            "count": counts.get(state_type.key, 0),
            "label": state_type.label,
            "color": state_type.color,
            "severity": state_type.severity,
        }
        for state_type in catalog.list_ordered()
    }


def compute_breakdown_duration(breakdown_dates: List[date]) -> int:
    """Length of the run of consecutive breakdown days ending at the latest one."""
    if not breakdown_dates:
        return 0
    ordered = sorted(set(breakdown_dates), reverse=True)
    duration = 1
    for newer, older in zip(ordered, ordered[1:]):
        if newer - older != timedelta(days=1):
            break
        duration += 1
    return duration


def compute_days_since(latest: Optional[date], today: date) -> Optional[int]:
    if latest is None:
        return None
    return max(0, (today - latest).days)


def get_monthly_statistics(service: CapacityService, user_id: int, year: int, month: int) -> dict:
    catalog = service.catalog
    start_date, end_date = month_bounds(year, month)
    month_entries = service.get_entry_snapshots(user_id, start_date, end_date)
    breakdown_keys = set(catalog.breakdown_keys())
    today = service.today()
    # Breakdowns recorded ahead of today do not count yet.
    breakdown_dates = [
        entry.entry_date
        for entry in service.get_entry_snapshots(user_id, end_date=today)
        if entry.state_key in breakdown_keys
    ]

    return {
        "total_entries": len(month_entries),
        "state_breakdown": build_state_breakdown(month_entries, catalog),
        "days_since_last_breakdown": compute_days_since(max(breakdown_dates, default=None), today),
        "breakdown_duration": compute_breakdown_duration(breakdown_dates),
        "monthly_breakdown_count": sum(1 for entry in month_entries if entry.state_key in breakdown_keys),
        "current_capacity": service.get_current_capacity(user_id),
        "capacity_timeline": service.get_capacity_timeline(user_id, start_date, end_date),
        "breakdown_analysis": service.analyze_breakdown_triggers(user_id, 90),
        "capacity_forecast": service.forecast_capacity(user_id, 7),
    }
