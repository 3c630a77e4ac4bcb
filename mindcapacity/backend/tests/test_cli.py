from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mindcapacity.backend.app import cli, database
from mindcapacity.backend.app.capacity_service import CapacityService
from mindcapacity.backend.app.state_catalog import default_catalog

TODAY = date(2025, 9, 25)


@pytest.fixture
def service():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    database.Base.metadata.create_all(engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return CapacityService(session_factory, default_catalog(), today=lambda: TODAY)


def add_user_with_entry(service, email, day, state_key):
    db = service.session_factory()
    try:
        user = database.User(email=email, hashed_password="x")
        db.add(user)
        db.flush()
        db.add(database.MentalState(user_id=user.id, entry_date=day, state_key=state_key))
        db.commit()
        return user.id
    finally:
        db.close()


def test_recalculate_without_users(service, capsys):
    assert cli.main(["recalculate"], service=service) == 0
    assert "No users found." in capsys.readouterr().out


def test_recalculate_all_users(service, capsys):
    first = add_user_with_entry(service, "a@example.com", date(2025, 9, 20), "normaler_tag")
    add_user_with_entry(service, "b@example.com", date(2025, 9, 24), "ruhetag")
    assert cli.main(["recalculate"], service=service) == 0
    assert "2 user(s)" in capsys.readouterr().out
    assert service.get_current_capacity(first) == 90


def test_recalculate_single_user(service, capsys):
    user_id = add_user_with_entry(service, "a@example.com", date(2025, 9, 20), "stressiger_tag")
    assert cli.main(["recalculate", "--user", str(user_id)], service=service) == 0
    assert "(6 days)" in capsys.readouterr().out
    assert service.get_current_capacity(user_id) == 80


def test_recalculate_unknown_user_fails(service, capsys):
    assert cli.main(["recalculate", "--user", "42"], service=service) == 1
    assert "User with ID 42 not found." in capsys.readouterr().err


def test_current_and_forecast(service, capsys):
    user_id = add_user_with_entry(service, "a@example.com", date(2025, 9, 25), "stressiger_tag")
    service.recalculate_from_first_entry(user_id)

    assert cli.main(["current", "--user", str(user_id)], service=service) == 0
    assert capsys.readouterr().out.strip() == "80%"

    assert cli.main(["forecast", "--user", str(user_id), "--days", "2"], service=service) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("2025-09-26   60%")
