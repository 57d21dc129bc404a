"""
Personal Records Router

PRs per standard distance merged from Strava best efforts, race results and
whole workouts; per-distance timelines; lap-based best efforts and near
misses; race result entry.
"""
import logging
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.cache import cache_key, get_cache, invalidate_athlete_cache, set_cache
from core.database import get_db
from core.exceptions import ConflictError, NotFoundError, ValidationError
from models import Activity, Athlete, PersonalBest, RaceResult
from services.best_effort_service import (
    NEAR_MISS_THRESHOLD_PCT,
    analyze_athlete_best_efforts,
    find_near_misses,
    get_best_effort_history,
    get_best_effort_insights,
    load_effort_workouts,
)
from services.personal_records import (
    get_best_effort_timeline,
    get_personal_records,
    regenerate_personal_bests,
)
from services.vdot_calculator import calculate_vdot
from services.vdot_sync import sync_athlete_vdot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/personal-records", tags=["Personal Records"])


class RaceResultCreate(BaseModel):
    race_name: Optional[str] = None
    distance_label: str = Field(..., min_length=1)
    distance_meters: int = Field(..., gt=0)
    finish_time_seconds: int = Field(..., gt=0)
    race_date: date
    activity_id: Optional[UUID] = None


@router.get("/")
def list_personal_records(
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    One record per distance the athlete has run. Cached per athlete until
    the next sync or race-result change.
    """
    key = cache_key(athlete.id, "personal_records", date.today().isoformat())
    cached = get_cache(key)
    if cached is not None:
        return cached

    payload = {"records": [r.to_dict() for r in get_personal_records(db, athlete.id)]}
    set_cache(key, payload)
    return payload


@router.get("/timeline/{category}")
def personal_record_timeline(
    category: str,
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        timeline = get_best_effort_timeline(db, athlete.id, category)
    except ValueError as e:
        raise ValidationError(str(e), field="category")
    return {"category": category, "efforts": [t.to_dict() for t in timeline]}


@router.get("/strava-efforts/{category}")
def strava_effort_history(
    category: str,
    limit: int = Query(20, ge=1, le=100),
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Stored Strava best efforts at one distance, fastest first."""
    efforts = get_best_effort_history(db, athlete.id, category, limit=limit)
    return {
        "category": category,
        "efforts": [
            {
                "activity_id": str(e.activity_id),
                "elapsed_time": e.elapsed_time,
                "achieved_at": e.achieved_at.isoformat(),
                "pr_rank": e.pr_rank,
            }
            for e in efforts
        ],
    }


@router.get("/best-efforts")
def lap_best_efforts(
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Best efforts detected from laps, with recent PRs and highlights."""
    analysis = analyze_athlete_best_efforts(db, athlete.id)
    payload = analysis.to_dict()
    payload["insights"] = get_best_effort_insights(analysis)
    return payload


@router.get("/near-misses")
def near_misses(
    threshold_pct: float = Query(NEAR_MISS_THRESHOLD_PCT, gt=0, le=10),
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    workouts = load_effort_workouts(db, athlete.id)
    misses = find_near_misses(workouts, threshold_pct=threshold_pct)
    return {"threshold_pct": threshold_pct, "near_misses": [m.to_dict() for m in misses]}


def _refresh_after_race_change(db: Session, athlete: Athlete) -> None:
    db.flush()
    sync_athlete_vdot(db, athlete)
    regenerate_personal_bests(db, athlete.id)
    invalidate_athlete_cache(athlete.id)


@router.post("/race-results", status_code=201)
def create_race_result(
    request: RaceResultCreate,
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Record a race result; VDOT and personal bests are refreshed from it."""
    vdot = calculate_vdot(request.distance_meters, request.finish_time_seconds)
    if vdot is None:
        raise ValidationError("Distance and time must be positive")

    duplicate = db.query(RaceResult).filter(
        RaceResult.athlete_id == athlete.id,
        RaceResult.date == request.race_date,
        RaceResult.distance_meters == request.distance_meters,
    ).first()
    if duplicate:
        raise ConflictError("A race result at this distance already exists for that date")

    if request.activity_id is not None:
        owned = db.query(Activity.id).filter(
            Activity.id == request.activity_id,
            Activity.athlete_id == athlete.id,
        ).first()
        if not owned:
            raise NotFoundError("Activity", str(request.activity_id))

    race = RaceResult(
        athlete_id=athlete.id,
        activity_id=request.activity_id,
        race_name=request.race_name,
        distance_label=request.distance_label,
        distance_meters=request.distance_meters,
        finish_time_seconds=request.finish_time_seconds,
        date=request.race_date,
        calculated_vdot=vdot,
    )
    db.add(race)
    _refresh_after_race_change(db, athlete)
    logger.info(f"Race result {race.id} recorded for athlete {athlete.id}")

    return {
        "id": str(race.id),
        "race_name": race.race_name,
        "distance_label": race.distance_label,
        "distance_meters": race.distance_meters,
        "finish_time_seconds": race.finish_time_seconds,
        "date": race.date.isoformat(),
        "calculated_vdot": race.calculated_vdot,
        "athlete_vdot": athlete.vdot,
    }


@router.delete("/race-results/{race_result_id}", status_code=204)
def delete_race_result(
    race_result_id: UUID,
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    race = db.query(RaceResult).filter(
        RaceResult.id == race_result_id,
        RaceResult.athlete_id == athlete.id,
    ).first()
    if not race:
        raise NotFoundError("Race result", str(race_result_id))

    db.query(PersonalBest).filter(PersonalBest.race_result_id == race.id).delete(synchronize_session=False)
    db.delete(race)
    _refresh_after_race_change(db, athlete)


@router.post("/regenerate")
def regenerate(
    athlete: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Rebuild stored personal bests from every source."""
    result = regenerate_personal_bests(db, athlete.id)
    invalidate_athlete_cache(athlete.id)
    return result
