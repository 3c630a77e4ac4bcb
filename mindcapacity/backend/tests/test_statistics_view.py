from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mindcapacity.backend.app import database, statistics_view
from mindcapacity.backend.app.capacity_service import CapacityService
from mindcapacity.backend.app.state_catalog import default_catalog

TODAY = date(2025, 9, 25)


@pytest.fixture
def service():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    database.Base.metadata.create_all(engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return CapacityService(session_factory, default_catalog(), today=lambda: TODAY)


@pytest.fixture
def user_id(service):
    db = service.session_factory()
    try:
        user = database.User(email="stats@example.com", hashed_password="x")
        db.add(user)
        db.commit()
        return user.id
    finally:
        db.close()


def test_month_bounds():
    assert statistics_view.month_bounds(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))
    assert statistics_view.month_bounds(2025, 12) == (date(2025, 12, 1), date(2025, 12, 31))


def test_parse_month():
    assert statistics_view.parse_month("2025-08", TODAY) == (2025, 8)
    assert statistics_view.parse_month(None, TODAY) == (2025, 9)
    with pytest.raises(ValueError):
        statistics_view.parse_month("2025-13", TODAY)
    with pytest.raises(ValueError):
        statistics_view.parse_month("August", TODAY)


def test_breakdown_duration_counts_latest_run():
    days = [date(2025, 9, 1), date(2025, 9, 10), date(2025, 9, 11), date(2025, 9, 12)]
    assert statistics_view.compute_breakdown_duration(days) == 3
    assert statistics_view.compute_breakdown_duration([date(2025, 9, 1)]) == 1
    assert statistics_view.compute_breakdown_duration([]) == 0


def test_monthly_statistics(service, user_id):
    service.save_state_entry(user_id, date(2025, 8, 30), "im_loch")
    service.save_state_entry(user_id, date(2025, 9, 2), "normaler_tag")
    service.save_state_entry(user_id, date(2025, 9, 3), "normaler_tag")
    service.save_state_entry(user_id, date(2025, 9, 20), "halb_im_loch")
    service.save_state_entry(user_id, date(2025, 9, 21), "im_loch")

    stats = statistics_view.get_monthly_statistics(service, user_id, 2025, 9)

    assert stats["total_entries"] == 4
    assert list(stats["state_breakdown"])[0] == "im_loch"
    assert stats["state_breakdown"]["normaler_tag"]["count"] == 2
    assert stats["state_breakdown"]["ruhetag"]["count"] == 0
    assert stats["state_breakdown"]["im_loch"]["label"] == "Im Loch"
    assert stats["days_since_last_breakdown"] == 4
    assert stats["breakdown_duration"] == 2
    assert stats["monthly_breakdown_count"] == 2
    assert stats["current_capacity"] == service.get_current_capacity(user_id)
    assert len(stats["capacity_timeline"]) == 25
    assert stats["breakdown_analysis"]["total_breakdowns"] == 3
    assert len(stats["capacity_forecast"]) == 7


def test_monthly_statistics_without_entries(service, user_id):
    stats = statistics_view.get_monthly_statistics(service, user_id, 2025, 9)
    assert stats["total_entries"] == 0
    assert stats["days_since_last_breakdown"] is None
    assert stats["breakdown_duration"] == 0
    assert stats["current_capacity"] == 100
    assert stats["capacity_timeline"] == []


def test_parse_month_rejects_years_out_of_range():
    for value in ("0000-01", "10000-01"):
        with pytest.raises(ValueError):
            statistics_view.parse_month(value, TODAY)


def test_days_since_never_negative():
    assert statistics_view.compute_days_since(date(2025, 9, 30), TODAY) == 0
    assert statistics_view.compute_days_since(date(2025, 9, 20), TODAY) == 5


def test_future_breakdown_is_ignored(service, user_id):
    service.save_state_entry(user_id, date(2025, 9, 20), "im_loch")
    service.save_state_entry(user_id, date(2025, 9, 28), "halb_im_loch")

    stats = statistics_view.get_monthly_statistics(service, user_id, 2025, 9)

    assert stats["days_since_last_breakdown"] == 5
    assert stats["breakdown_duration"] == 1
    assert stats["monthly_breakdown_count"] == 2
