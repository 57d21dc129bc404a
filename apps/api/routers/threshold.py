"""
Threshold Pace Router

Detected lactate-threshold pace from the athlete's own runs, with the
evidence behind it.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.cache import invalidate_athlete_cache
from core.database import get_db
from models import Athlete
from services.threshold_detector import (
    MIN_CONFIDENCE_TO_STORE,
    detect_threshold,
    load_threshold_workouts,
    update_athlete_threshold,
)
from services.vdot_calculator import format_pace

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/threshold", tags=["Threshold"])


def _response(athlete: Athlete, estimate) -> dict:
    payload = jsonable_encoder(estimate.to_dict())
    # Raw points are chart input only; the list can be long
    payload["evidence"].pop("pace_hr_points", None)
    payload["threshold_pace_formatted"] = format_pace(estimate.threshold_pace_seconds_per_mile) if estimate.is_usable else None
    payload["stored_threshold_pace_per_mile"] = athlete.threshold_pace_per_mile
    return payload


@router.get("/")
def get_threshold(
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Current threshold estimate. Read-only; use /recalculate to store it.
    """
    workouts = load_threshold_workouts(db, athlete.id)
    estimate = detect_threshold(workouts, vdot=athlete.vdot)
    return _response(athlete, estimate)


@router.post("/recalculate")
def recalculate_threshold(
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Re-detect threshold pace and store it on the athlete when confidence
    reaches MIN_CONFIDENCE_TO_STORE.
    """
    estimate = update_athlete_threshold(db, athlete)
    stored = estimate.is_usable and estimate.confidence >= MIN_CONFIDENCE_TO_STORE
    if stored:
        invalidate_athlete_cache(athlete.id)
    logger.info(f"Threshold recalculated for athlete {athlete.id}: method={estimate.method} stored={stored}")

    payload = _response(athlete, estimate)
    payload["stored"] = stored
    return payload
