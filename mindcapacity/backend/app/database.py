from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from dotenv import load_dotenv
from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from .state_catalog import StateCatalog, load_catalog

APP_VERSION = "1.0.0"
REPO_ROOT = Path(__file__).resolve().parents[3]
load_dotenv(REPO_ROOT / ".env")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

Base = declarative_base()


def resolve_db_path() -> str:
    db_env = (os.getenv("MINDCAPACITY_DB_PATH") or os.getenv("DB_PATH") or "").strip()
    db_path = Path(db_env) if db_env else (REPO_ROOT / "mindcapacity.db")
    if not db_path.is_absolute():
        db_path = REPO_ROOT / db_path
    return str(db_path)


def resolve_secret_key() -> str:
    return (os.getenv("MINDCAPACITY_SECRET_KEY") or "CHANGE_ME").strip()


def resolve_catalog_path() -> Optional[str]:
    value = (os.getenv("MINDCAPACITY_CATALOG_PATH") or "").strip()
    if not value:
        return None
    path = Path(value)
    if not path.is_absolute():
        path = REPO_ROOT / path
    return str(path)


def resolve_log_level() -> int:
    name = (os.getenv("MINDCAPACITY_LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> None:
    logging.basicConfig(level=resolve_log_level(), format=LOG_FORMAT)


def build_engine(database_url: str) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


DB_PATH = resolve_db_path()
DATABASE_URL = f"sqlite:///{DB_PATH}"

engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)
CATALOG: StateCatalog = load_catalog(resolve_catalog_path())


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    mental_states = relationship("MentalState", back_populates="user", cascade="all, delete-orphan")
    capacity_logs = relationship("CapacityLog", back_populates="user", cascade="all, delete-orphan")


class MentalState(Base):
    __tablename__ = "mental_states"
    __table_args__ = (UniqueConstraint("user_id", "entry_date", name="uq_mental_state_user_date"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    entry_date = Column(Date, nullable=False)
    state_key = Column(String, nullable=False)
    notes = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="mental_states")


class CapacityLog(Base):
    __tablename__ = "capacity_logs"
    __table_args__ = (UniqueConstraint("user_id", "log_date", name="uq_capacity_log_user_date"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Null on days without an entry.
    state_entry_id = Column(Integer, nullable=True)
    log_date = Column(Date, nullable=False)
    capacity_before = Column(Integer, nullable=False, default=100)
    capacity_after = Column(Integer, nullable=False, default=100)
    capacity_change = Column(Integer, nullable=False, default=0)
    triggered_breakdown = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="capacity_logs")


def init_db(bind: Optional[Engine] = None) -> None:
    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
