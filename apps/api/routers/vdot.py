"""
VDOT API Endpoints

Public calculator tools:
- VDOT from a race result, optionally corrected for weather and elevation
- Training paces for a VDOT
- Equivalent race performances and single-distance predictions
- Weather pace adjustment

Athlete endpoints (auth): VDOT history, trend, and recalculation.
"""
import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.database import get_db
from core.exceptions import ValidationError
from models import Athlete
from services.vdot_calculator import (
    adjust_pace_zones_for_weather,
    calculate_adjusted_vdot,
    calculate_heat_index,
    calculate_pace_zones,
    calculate_vdot,
    format_duration,
    format_pace,
    get_equivalent_race_times,
    get_pace_zone_descriptions,
    get_weather_pace_adjustment,
    predict_race_time,
)
from services.vdot_sync import (
    get_vdot_history,
    get_vdot_trend,
    rebuild_monthly_vdot_history,
    recalculate_vdot_from_races,
    record_vdot_entry,
    sync_athlete_vdot,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/vdot", tags=["VDOT"])


class VDOTCalculateRequest(BaseModel):
    """Request for VDOT calculation from race result."""
    race_time_seconds: int
    distance_meters: float
    temperature_f: Optional[float] = None
    humidity_pct: Optional[float] = None
    elevation_gain_ft: Optional[float] = None


class VDOTTrainingPacesRequest(BaseModel):
    """Request for training paces from VDOT."""
    vdot: float
    temperature_f: Optional[float] = None
    humidity_pct: Optional[float] = None


class PredictRequest(BaseModel):
    vdot: float
    distance_meters: float


class WeatherAdjustmentRequest(BaseModel):
    temperature_f: float
    humidity_pct: float = Field(..., ge=0, le=100)
    dew_point_f: Optional[float] = None


class VdotHistoryEntryRequest(BaseModel):
    vdot: float
    source: str = "manual"
    entry_date: Optional[date] = None
    confidence: str = "medium"
    notes: Optional[str] = None


class VdotHistoryEntryResponse(BaseModel):
    month: date
    vdot: float
    source: str
    confidence: str
    notes: Optional[str] = None


def _require_vdot(vdot: float) -> None:
    if vdot is None or vdot <= 0:
        raise ValidationError("VDOT must be positive", field="vdot")


@router.post("/calculate")
def calculate_vdot_post(request: VDOTCalculateRequest):
    """
    Calculate VDOT from race time and distance.

    With temperature/humidity and/or elevation gain, also returns the VDOT
    the race would have been worth in cool, flat conditions.
    """
    vdot = calculate_vdot(request.distance_meters, request.race_time_seconds)
    if vdot is None:
        raise ValidationError("Distance and time must be positive")

    adjusted = None
    if request.elevation_gain_ft is not None or (
        request.temperature_f is not None and request.humidity_pct is not None
    ):
        adjusted = calculate_adjusted_vdot(
            request.distance_meters,
            request.race_time_seconds,
            temperature_f=request.temperature_f,
            humidity_pct=request.humidity_pct,
            elevation_gain_ft=request.elevation_gain_ft,
        )

    zones = calculate_pace_zones(adjusted or vdot)
    return {
        "vdot": vdot,
        "adjusted_vdot": adjusted,
        "training_paces": get_pace_zone_descriptions(zones),
        "equivalent_races": get_equivalent_race_times(adjusted or vdot),
    }


@router.post("/training-paces")
def get_training_paces_post(request: VDOTTrainingPacesRequest):
    """
    Get training paces for a given VDOT, slowed for heat/humidity when given.
    """
    _require_vdot(request.vdot)

    zones = calculate_pace_zones(request.vdot)
    adjustment = 0
    if request.temperature_f is not None and request.humidity_pct is not None:
        adjustment = get_weather_pace_adjustment(request.temperature_f, request.humidity_pct)
        if adjustment > 0:
            zones = adjust_pace_zones_for_weather(zones, adjustment)

    return {
        "vdot": request.vdot,
        "paces": zones.to_dict(),
        "zones": get_pace_zone_descriptions(zones),
        "weather_adjustment_s_per_mile": adjustment,
    }


@router.get("/equivalent-races")
def get_equivalent_races(
    vdot: float = Query(..., description="VDOT score")
):
    """
    Get equivalent race performances for a given VDOT score.
    """
    _require_vdot(vdot)
    return {
        "vdot": vdot,
        "equivalent_races": get_equivalent_race_times(vdot),
    }


@router.post("/predict")
def predict(request: PredictRequest):
    _require_vdot(request.vdot)
    time_seconds = predict_race_time(request.vdot, request.distance_meters)
    if time_seconds is None:
        raise ValidationError("Distance must be positive", field="distance_meters")

    pace = time_seconds / (request.distance_meters / 1609.34)
    return {
        "vdot": request.vdot,
        "distance_meters": request.distance_meters,
        "time_seconds": time_seconds,
        "time_formatted": format_duration(time_seconds),
        "pace_per_mile": format_pace(pace),
    }


@router.post("/weather-adjustment")
def weather_adjustment(request: WeatherAdjustmentRequest):
    adjustment = get_weather_pace_adjustment(request.temperature_f, request.humidity_pct, request.dew_point_f)
    return {
        "temperature_f": request.temperature_f,
        "humidity_pct": request.humidity_pct,
        "heat_index_f": calculate_heat_index(request.temperature_f, request.humidity_pct),
        "pace_adjustment_s_per_mile": adjustment,
    }


@router.get("/history", response_model=List[VdotHistoryEntryResponse])
def vdot_history(
    limit: int = Query(50, ge=1, le=500),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    entries = get_vdot_history(db, athlete.id, limit=limit, start_date=start_date, end_date=end_date)
    return [
        VdotHistoryEntryResponse(
            month=e.date, vdot=e.vdot, source=e.source, confidence=e.confidence, notes=e.notes
        )
        for e in entries
    ]


@router.post("/history", response_model=VdotHistoryEntryResponse, status_code=201)
def add_vdot_history_entry(
    request: VdotHistoryEntryRequest,
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Record a VDOT for a month (e.g. from a time trial the app never saw)."""
    try:
        entry = record_vdot_entry(
            db,
            athlete.id,
            request.vdot,
            request.source,
            entry_date=request.entry_date,
            confidence=request.confidence,
            notes=request.notes,
        )
    except ValueError as e:
        raise ValidationError(str(e))
    return VdotHistoryEntryResponse(
        month=entry.date, vdot=entry.vdot, source=entry.source, confidence=entry.confidence, notes=entry.notes
    )


@router.post("/history/rebuild")
def rebuild_history(
    start_date: date,
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Rewrite history as one entry per month, carrying values forward."""
    return rebuild_monthly_vdot_history(db, athlete, start_date)


@router.get("/trend")
def vdot_trend(
    days: int = Query(90, ge=14, le=730),
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_vdot_trend(db, athlete.id, days=days)


@router.post("/recalculate")
def recalculate(
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Re-estimate VDOT from races and recent best efforts without smoothing.

    Race VDOTs are refreshed first so the per-race values stay current.
    """
    races = recalculate_vdot_from_races(db, athlete)
    result = sync_athlete_vdot(db, athlete, skip_smoothing=True)
    logger.info(f"VDOT recalculation requested by athlete {athlete.id}")
    return {
        "vdot": athlete.vdot,
        "threshold_pace_per_mile": athlete.threshold_pace_per_mile,
        "races": races,
        "estimate": result.to_dict(),
    }
