from __future__ import annotations

import logging
import statistics
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Protocol

from .state_catalog import StateCatalog

logger = logging.getLogger(__name__)

MAX_CAPACITY = 100
MIN_CAPACITY = 0
BREAKDOWN_THRESHOLD = 20


class DatedEntry(Protocol):
    id: Optional[int]
    entry_date: date
    state_key: str


@dataclass(frozen=True)
class EntrySnapshot:
    id: Optional[int]
    entry_date: date
    state_key: str


@dataclass(frozen=True)
class CapacityLogRecord:
    log_date: date
    state_entry_id: Optional[int]
    capacity_before: int
    capacity_after: int
    capacity_change: int
    triggered_breakdown: bool

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["log_date"] = self.log_date.isoformat()
        return payload


def clamp(value: float, low: int = MIN_CAPACITY, high: int = MAX_CAPACITY) -> int:
    return int(max(low, min(high, value)))


def iter_days(start: date, end: date) -> Iterator[date]:
    day = start
    while day <= end:
        yield day
        day = day + timedelta(days=1)


def index_entries_by_date(entries: Iterable[DatedEntry]) -> Dict[date, DatedEntry]:
    indexed: Dict[date, DatedEntry] = {}
    for entry in entries:
        if entry.entry_date in indexed:
            raise ValueError(f"More than one state entry for {entry.entry_date.isoformat()}")
        indexed[entry.entry_date] = entry
    return indexed


def is_breakdown_triggered(is_breakdown: bool, capacity_before: int) -> bool:
    return is_breakdown and capacity_before <= BREAKDOWN_THRESHOLD


def build_capacity_logs(
    entries: Iterable[DatedEntry],
    catalog: StateCatalog,
    today: date,
) -> List[CapacityLogRecord]:
    """Rebuild the daily capacity timeline from the first entry through ``today``.

    Days without an entry carry the previous value forward unchanged. An entry
    whose state key is missing from the catalog produces no row for its date
    and leaves the running capacity untouched.
    """
    by_date = index_entries_by_date(entries)
    if not by_date:
        return []

    first_date = min(by_date)
    capacity = MAX_CAPACITY
    logs: List[CapacityLogRecord] = []

    for day in iter_days(first_date, today):
        capacity_before = capacity
        entry = by_date.get(day)
        if entry is None:
            logs.append(CapacityLogRecord(
                log_date=day,
                state_entry_id=None,
                capacity_before=capacity_before,
                capacity_after=capacity_before,
                capacity_change=0,
                triggered_breakdown=False,
            ))
            continue

        state_type = catalog.get(entry.state_key)
        if state_type is None:
            logger.warning(
                "Skipping %s: state entry %s references unknown state key %r",
                day.isoformat(),
                entry.id,
                entry.state_key,
            )
            continue

        capacity_change = state_type.capacity_impact
        capacity_after = clamp(capacity_before + capacity_change)
        logs.append(CapacityLogRecord(
            log_date=day,
            state_entry_id=entry.id,
            capacity_before=capacity_before,
            capacity_after=capacity_after,
            capacity_change=capacity_change,
            triggered_breakdown=is_breakdown_triggered(state_type.is_breakdown, capacity_before),
        ))
        capacity = capacity_after

    return logs


def summarize_breakdown_triggers(entries: Iterable[DatedEntry], catalog: StateCatalog) -> dict:
    """Re-simulate capacity from a full gauge over ``entries``.

    The simulation starts at 100 at the first entry of the window rather than
    reading the stored timeline, so its numbers can differ from the logs when
    the user's capacity was already low before the window opened.
    """
    capacity = MAX_CAPACITY
    total_breakdowns = 0
    triggered_before: List[int] = []
    streaks: List[int] = []
    current_streak = 0
    longest_streak = 0

    for entry in sorted(entries, key=lambda item: item.entry_date):
        state_type = catalog.get(entry.state_key)
        if state_type is None:
            logger.warning(
                "Ignoring state entry %s on %s in breakdown analysis: unknown state key %r",
                entry.id,
                entry.entry_date.isoformat(),
                entry.state_key,
            )
            continue

        capacity_before = capacity
        if state_type.is_breakdown:
            total_breakdowns += 1
            if is_breakdown_triggered(True, capacity_before):
                triggered_before.append(capacity_before)

        if state_type.is_draining:
            current_streak += 1
            longest_streak = max(longest_streak, current_streak)
        else:
            if current_streak > 0:
                streaks.append(current_streak)
            current_streak = 0

        capacity = clamp(capacity_before + state_type.capacity_impact)

    triggered = len(triggered_before)
    return {
        "total_breakdowns": total_breakdowns,
        "triggered_by_low_capacity": triggered,
        "percentage_triggered": round(triggered / total_breakdowns * 100, 1) if total_breakdowns else 0,
        "avg_capacity_before_breakdown": round(statistics.mean(triggered_before)) if triggered_before else None,
        "avg_stress_streak_before_breakdown": round(statistics.mean(streaks), 1) if streaks else 0,
        "longest_stress_streak": longest_streak,
    }


def average_daily_change(changes: Iterable[int]) -> float:
    values = list(changes)
    if not values:
        return 0.0
    return statistics.mean(values)


def risk_level(capacity: float) -> str:
    if capacity >= 70:
        return "low"
    if capacity >= 40:
        return "medium"
    if capacity >= BREAKDOWN_THRESHOLD:
        return "high"
    return "critical"


def project_capacity(
    current_capacity: int,
    avg_daily_change: float,
    days_ahead: int,
    start_date: date,
) -> List[dict]:
    forecast: List[dict] = []
    projected = current_capacity
    for offset in range(1, days_ahead + 1):
        projected = clamp(projected + avg_daily_change)
        forecast.append({
            "date": (start_date + timedelta(days=offset)).isoformat(),
            "projected_capacity": projected,
            "risk_level": risk_level(projected),
        })
    return forecast
