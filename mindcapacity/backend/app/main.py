from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from .capacity_engine import risk_level
from .capacity_service import CapacityService
from .database import (
    APP_VERSION,
    CATALOG,
    DB_PATH,
    SessionLocal,
    User,
    configure_logging,
    get_db,
    init_db,
    resolve_secret_key,
)
from .state_catalog import UnknownStateKeyError
from .statistics_view import get_monthly_statistics, month_bounds, parse_month

configure_logging()
logger = logging.getLogger(__name__)

SECRET_KEY = resolve_secret_key()
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24
MAX_NOTES_LENGTH = 1000

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

capacity_service = CapacityService(SessionLocal, CATALOG)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str


class RegisterRequest(BaseModel):
    email: str
    password: str


class StateTypeResponse(BaseModel):
    key: str
    label: str
    color: str
    severity: int
    display_order: int
    capacity_impact: int
    is_breakdown: bool


class StateEntryCreate(BaseModel):
    entry_date: date
    state_key: str
    notes: Optional[str] = None


class StateEntryResponse(BaseModel):
    id: int
    entry_date: date
    state_key: str
    notes: Optional[str] = None
    current_capacity: Optional[int] = None


class CapacityResponse(BaseModel):
    capacity: int
    risk_level: str


class TimelinePoint(BaseModel):
    date: str
    capacity: int
    change: int


class ForecastPoint(BaseModel):
    date: str
    projected_capacity: int
    risk_level: str


class BreakdownAnalysisResponse(BaseModel):
    total_breakdowns: int
    triggered_by_low_capacity: int
    percentage_triggered: float
    avg_capacity_before_breakdown: Optional[int] = None
    avg_stress_streak_before_breakdown: float
    longest_stress_streak: int


app = FastAPI(title="MindCapacity API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info("MindCapacity %s using database %s (%d state types)", APP_VERSION, DB_PATH, len(CATALOG))


def get_capacity_service() -> CapacityService:
    return capacity_service


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError as exc:
        raise credentials_exception from exc

    user = db.query(User).filter(User.id == int(user_id)).first()
    if user is None:
        raise credentials_exception
    return user


def resolve_month(value: Optional[str], service: CapacityService) -> tuple[int, int]:
    try:
        return parse_month(value, service.today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health() -> dict:
    db_status = "ok"
    try:
        with SessionLocal() as session:
            session.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        db_status = "error"
    return {
        "status": "ok",
        "version": APP_VERSION,
        "db": db_status,
    }


@app.post("/auth/register", response_model=TokenResponse)
def register_user(payload: RegisterRequest, db: Session = Depends(get_db)) -> TokenResponse:
    existing = db.query(User).filter(User.email == payload.email).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    if len(payload.password.encode("utf-8")) > 72:
        raise HTTPException(
            status_code=400,
            detail="Password too long (bcrypt limit is 72 bytes). Use a shorter password.",
        )
    user = User(email=payload.email, hashed_password=get_password_hash(payload.password))
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Registered user %s", user.id)
    token = create_access_token({"sub": str(user.id), "email": user.email})
    return TokenResponse(access_token=token, token_type="bearer")


@app.post("/auth/login", response_model=TokenResponse)
def login_user(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
) -> TokenResponse:
    user = db.query(User).filter(User.email == form_data.username).first()
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    token = create_access_token({"sub": str(user.id), "email": user.email})
    return TokenResponse(access_token=token, token_type="bearer")


@app.get("/state-types", response_model=List[StateTypeResponse])
def state_types(service: CapacityService = Depends(get_capacity_service)) -> List[StateTypeResponse]:
    return [StateTypeResponse(**item.to_dict()) for item in service.catalog.list_ordered()]


@app.get("/states", response_model=List[StateEntryResponse])
def list_states(
    month: Optional[str] = Query(None, description="YYYY-MM, defaults to the current month"),
    user: User = Depends(get_current_user),
    service: CapacityService = Depends(get_capacity_service),
) -> List[StateEntryResponse]:
    year, month_number = resolve_month(month, service)
    start_date, end_date = month_bounds(year, month_number)
    return [
        StateEntryResponse(**entry)
        for entry in service.list_state_entries(user.id, start_date, end_date)
    ]


@app.post("/states", response_model=StateEntryResponse)
def save_state(
    payload: StateEntryCreate,
    user: User = Depends(get_current_user),
    service: CapacityService = Depends(get_capacity_service),
) -> StateEntryResponse:
    if payload.notes is not None and len(payload.notes) > MAX_NOTES_LENGTH:
        raise HTTPException(status_code=400, detail=f"Notes must be at most {MAX_NOTES_LENGTH} characters")
    try:
        entry = service.save_state_entry(user.id, payload.entry_date, payload.state_key, payload.notes)
    except UnknownStateKeyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return StateEntryResponse(**entry, current_capacity=service.get_current_capacity(user.id))


@app.delete("/states/{entry_date}")
def delete_state(
    entry_date: date,
    user: User = Depends(get_current_user),
    service: CapacityService = Depends(get_capacity_service),
) -> dict:
    if not service.delete_state_entry(user.id, entry_date):
        raise HTTPException(status_code=404, detail="No state entry for that date")
    return {"deleted": True, "current_capacity": service.get_current_capacity(user.id)}


@app.get("/capacity/current", response_model=CapacityResponse)
def capacity_current(
    user: User = Depends(get_current_user),
    service: CapacityService = Depends(get_capacity_service),
) -> CapacityResponse:
    capacity = service.get_current_capacity(user.id)
    return CapacityResponse(capacity=capacity, risk_level=risk_level(capacity))


@app.get("/capacity/timeline", response_model=List[TimelinePoint])
def capacity_timeline(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    user: User = Depends(get_current_user),
    service: CapacityService = Depends(get_capacity_service),
) -> List[TimelinePoint]:
    end_date = end or service.today()
    start_date = start or (end_date - timedelta(days=29))
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return [TimelinePoint(**point) for point in service.get_capacity_timeline(user.id, start_date, end_date)]


@app.get("/capacity/forecast", response_model=List[ForecastPoint])
def capacity_forecast(
    days: int = Query(7, ge=1, le=30),
    user: User = Depends(get_current_user),
    service: CapacityService = Depends(get_capacity_service),
) -> List[ForecastPoint]:
    return [ForecastPoint(**point) for point in service.forecast_capacity(user.id, days)]


@app.get("/capacity/breakdowns", response_model=BreakdownAnalysisResponse)
def capacity_breakdowns(
    days: int = Query(90, ge=1, le=365),
    user: User = Depends(get_current_user),
    service: CapacityService = Depends(get_capacity_service),
) -> BreakdownAnalysisResponse:
    return BreakdownAnalysisResponse(**service.analyze_breakdown_triggers(user.id, days))


@app.get("/statistics")
def statistics(
    month: Optional[str] = Query(None, description="YYYY-MM, defaults to the current month"),
    user: User = Depends(get_current_user),
    service: CapacityService = Depends(get_capacity_service),
) -> dict:
    year, month_number = resolve_month(month, service)
    return get_monthly_statistics(service, user.id, year, month_number)
