"""
Training Load Router

Exposes training load metrics:
- Fitness trend (CTL/ATL/TSB series, status, ramp rate)
- Load history for charting
- Per-workout stress
- Weekly load bar
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.cache import cache_key, get_cache, set_cache
from core.database import get_db
from core.exceptions import NotFoundError
from models import Activity, Athlete
from services.training_load import TrainingLoadCalculator, calculate_ramp_rate, get_ramp_rate_risk

router = APIRouter(prefix="/v1/training-load", tags=["Training Load"])

MIN_DAYS = 7
MAX_DAYS = 365


# ============ Response Models ============

class DailyLoadResponse(BaseModel):
    date: str
    load: float
    ctl: float
    atl: float
    tsb: float


class LoadHistoryResponse(BaseModel):
    history: List[DailyLoadResponse]
    days: int


class WorkoutStressResponse(BaseModel):
    activity_id: str
    date: str
    tss: float
    load: float
    duration_minutes: float
    intensity_factor: float
    calculation_method: str


class RampRateResponse(BaseModel):
    ramp_rate: Optional[float] = None
    level: str
    label: str
    message: str
    recommendation: Optional[str] = None


def _clamp_days(days: int) -> int:
    return max(MIN_DAYS, min(MAX_DAYS, days))


# ============ Endpoints ============

@router.get("/fitness")
def get_fitness(
    days: int = 90,
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Fitness trend: daily CTL (fitness, 42-day), ATL (fatigue, 7-day) and
    TSB (form = CTL - ATL) with the current status and ramp-rate risk.

    `days` is clamped to 7..365. Cached per athlete until the next sync.
    """
    days = _clamp_days(days)
    key = cache_key(athlete.id, "fitness", days, date.today().isoformat())
    cached = get_cache(key)
    if cached is not None:
        return cached

    trend = TrainingLoadCalculator(db).get_fitness_trend(athlete.id, days=days)
    payload = jsonable_encoder(trend.to_dict())
    set_cache(key, payload)
    return payload


@router.get("/history", response_model=LoadHistoryResponse)
def get_load_history(
    days: int = 60,
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Get daily training load history for charting.
    """
    days = _clamp_days(days)
    history = TrainingLoadCalculator(db).get_load_history(athlete.id, days=days)

    return LoadHistoryResponse(
        history=[
            DailyLoadResponse(
                date=m.date.isoformat(),
                load=m.daily_load,
                ctl=m.ctl,
                atl=m.atl,
                tsb=m.tsb,
            ) for m in history
        ],
        days=days,
    )


@router.get("/load/{activity_id}", response_model=WorkoutStressResponse)
def get_workout_load(
    activity_id: UUID,
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Stress calculation details for a specific workout.
    """
    activity = db.query(Activity).filter(
        Activity.id == activity_id,
        Activity.athlete_id == athlete.id
    ).first()

    if not activity:
        raise NotFoundError("Activity", str(activity_id))

    stress = TrainingLoadCalculator(db).calculate_workout_tss(activity, athlete)

    return WorkoutStressResponse(
        activity_id=str(stress.activity_id),
        date=stress.date.isoformat(),
        tss=stress.tss,
        load=stress.load,
        duration_minutes=round(stress.duration_minutes, 1),
        intensity_factor=stress.intensity_factor,
        calculation_method=stress.calculation_method,
    )


@router.get("/ramp-rate", response_model=RampRateResponse)
def get_ramp_rate(
    weeks: int = Query(4, ge=1, le=12),
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """CTL change per week over the last `weeks` weeks, with an injury-risk label."""
    metrics = TrainingLoadCalculator(db).get_load_history(athlete.id, days=weeks * 7)
    rate = calculate_ramp_rate(metrics, weeks)
    risk = get_ramp_rate_risk(rate)
    return RampRateResponse(
        ramp_rate=rate,
        level=risk.level,
        label=risk.label,
        message=risk.message,
        recommendation=risk.recommendation,
    )


@router.get("/load-bar")
def get_load_bar(
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """This week's load against last week and the 4-week average."""
    return jsonable_encoder(TrainingLoadCalculator(db).get_load_bar(athlete.id))
