from __future__ import annotations

import logging
import threading
import weakref
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from .capacity_engine import (
    MAX_CAPACITY,
    CapacityLogRecord,
    EntrySnapshot,
    average_daily_change,
    build_capacity_logs,
    project_capacity,
    summarize_breakdown_triggers,
)
from .database import CapacityLog, MentalState, User
from .state_catalog import StateCatalog

logger = logging.getLogger(__name__)

FORECAST_LOOKBACK_DAYS = 30


def local_today() -> date:
    return datetime.now().date()


def entry_to_dict(entry: MentalState) -> dict:
    return {
        "id": entry.id,
        "entry_date": entry.entry_date.isoformat(),
        "state_key": entry.state_key,
        "notes": entry.notes,
    }


def log_to_record(log: CapacityLog) -> CapacityLogRecord:
    return CapacityLogRecord(
        log_date=log.log_date,
        state_entry_id=log.state_entry_id,
        capacity_before=log.capacity_before,
        capacity_after=log.capacity_after,
        capacity_change=log.capacity_change,
        triggered_breakdown=bool(log.triggered_breakdown),
    )


class CapacityService:
    """Keeps each user's capacity log in step with their state entries.

    Every entry mutation triggers a full rebuild of the user's log. Rebuilds
    for the same user are serialized; the delete and the re-insert share one
    transaction so readers see either the old or the new log set.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        catalog: StateCatalog,
        today: Callable[[], date] = local_today,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.today = today
        # A user's lock is dropped once no recalculation references it.
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.Lock())

    def _session(self) -> Session:
        return self.session_factory()

    def user_exists(self, user_id: int) -> bool:
        db = self._session()
        try:
            return db.query(User.id).filter(User.id == user_id).first() is not None
        finally:
            db.close()

    def recalculate_from_first_entry(self, user_id: int) -> int:
        with self._user_lock(user_id):
            db = self._session()
            try:
                entries = [
                    EntrySnapshot(id=row.id, entry_date=row.entry_date, state_key=row.state_key)
                    for row in db.query(MentalState).filter(MentalState.user_id == user_id).all()
                ]
                if not entries:
                    logger.debug("No state entries for user %s; nothing to recalculate", user_id)
                    return 0
                today = self.today()
                records = build_capacity_logs(entries, self.catalog, today)
                db.query(CapacityLog).filter(CapacityLog.user_id == user_id).delete(synchronize_session=False)
                db.add_all([
                    CapacityLog(
                        user_id=user_id,
                        state_entry_id=record.state_entry_id,
                        log_date=record.log_date,
                        capacity_before=record.capacity_before,
                        capacity_after=record.capacity_after,
                        capacity_change=record.capacity_change,
                        triggered_breakdown=record.triggered_breakdown,
                    )
                    for record in records
                ])
                db.commit()
            except Exception:
                db.rollback()
                logger.exception("Capacity recalculation failed for user %s", user_id)
                raise
            finally:
                db.close()
        logger.info(
            "Recalculated capacity for user %s: %d days through %s",
            user_id,
            len(records),
            today.isoformat(),
        )
        return len(records)

    def recalculate_all_users(self) -> int:
        db = self._session()
        try:
            user_ids = [row[0] for row in db.query(User.id).order_by(User.id).all()]
        finally:
            db.close()
        for user_id in user_ids:
            self.recalculate_from_first_entry(user_id)
        return len(user_ids)

    def save_state_entry(
        self,
        user_id: int,
        entry_date: date,
        state_key: str,
        notes: Optional[str] = None,
    ) -> dict:
        self.catalog.lookup(state_key)
        db = self._session()
        try:
            entry = (
                db.query(MentalState)
                .filter(MentalState.user_id == user_id, MentalState.entry_date == entry_date)
                .first()
            )
            if entry is None:
                entry = MentalState(user_id=user_id, entry_date=entry_date)
                db.add(entry)
            entry.state_key = state_key
            entry.notes = notes
            db.commit()
            db.refresh(entry)
            payload = entry_to_dict(entry)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        self.recalculate_from_first_entry(user_id)
        return payload

    def delete_state_entry(self, user_id: int, entry_date: date) -> bool:
        db = self._session()
        try:
            deleted = (
                db.query(MentalState)
                .filter(MentalState.user_id == user_id, MentalState.entry_date == entry_date)
                .delete(synchronize_session=False)
            )
            if not deleted:
                return False
            # Recalculation is a no-op for a user with no entries.
            remaining = db.query(MentalState.id).filter(MentalState.user_id == user_id).first()
            if remaining is None:
                db.query(CapacityLog).filter(CapacityLog.user_id == user_id).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        self.recalculate_from_first_entry(user_id)
        return True

    def list_state_entries(
        self,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[dict]:
        db = self._session()
        try:
            query = db.query(MentalState).filter(MentalState.user_id == user_id)
            if start_date is not None:
                query = query.filter(MentalState.entry_date >= start_date)
            if end_date is not None:
                query = query.filter(MentalState.entry_date <= end_date)
            return [entry_to_dict(entry) for entry in query.order_by(MentalState.entry_date.asc()).all()]
        finally:
            db.close()

    def get_capacity_logs(
        self,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        descending: bool = False,
    ) -> List[CapacityLogRecord]:
        db = self._session()
        try:
            query = db.query(CapacityLog).filter(CapacityLog.user_id == user_id)
            if start_date is not None:
                query = query.filter(CapacityLog.log_date >= start_date)
            if end_date is not None:
                query = query.filter(CapacityLog.log_date <= end_date)
            order = CapacityLog.log_date.desc() if descending else CapacityLog.log_date.asc()
            return [log_to_record(log) for log in query.order_by(order).all()]
        finally:
            db.close()

    def get_current_capacity(self, user_id: int) -> int:
        db = self._session()
        try:
            latest = (
                db.query(CapacityLog)
                .filter(CapacityLog.user_id == user_id)
                .order_by(CapacityLog.log_date.desc())
                .first()
            )
            return latest.capacity_after if latest else MAX_CAPACITY
        finally:
            db.close()

    def get_capacity_timeline(self, user_id: int, start_date: date, end_date: date) -> List[dict]:
        return [
            {
                "date": record.log_date.isoformat(),
                "capacity": record.capacity_after,
                "change": record.capacity_change,
            }
            for record in self.get_capacity_logs(user_id, start_date, end_date)
        ]

    def get_entry_snapshots(
        self,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[EntrySnapshot]:
        db = self._session()
        try:
            query = db.query(MentalState).filter(MentalState.user_id == user_id)
            if start_date is not None:
                query = query.filter(MentalState.entry_date >= start_date)
            if end_date is not None:
                query = query.filter(MentalState.entry_date <= end_date)
            return [
                EntrySnapshot(id=row.id, entry_date=row.entry_date, state_key=row.state_key)
                for row in query.order_by(MentalState.entry_date.asc()).all()
            ]
        finally:
            db.close()

    def analyze_breakdown_triggers(self, user_id: int, window_days: int = 90) -> dict:
        since = self.today() - timedelta(days=window_days - 1)
        return summarize_breakdown_triggers(self.get_entry_snapshots(user_id, start_date=since), self.catalog)

    def forecast_capacity(self, user_id: int, days_ahead: int = 7) -> List[dict]:
        today = self.today()
        current = self.get_current_capacity(user_id)
        recent = self.get_capacity_logs(user_id, start_date=today - timedelta(days=FORECAST_LOOKBACK_DAYS - 1))
        avg_change = average_daily_change(record.capacity_change for record in recent)
        return project_capacity(current, avg_change, days_ahead, today)
