"""
Strava ingestion.

Pulls runs from Strava into Activity/ActivitySplit/BestEffort rows and keeps
the derived athlete state (threshold, VDOT, personal bests, analytics cache)
current afterwards. Used by the Celery tasks and the webhook handler.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

import requests
from sqlalchemy.orm import Session

from core.cache import invalidate_athlete_cache
from models import Activity, ActivitySplit, Athlete, BestEffort, PersonalBest, RaceResult, as_utc
from services.best_effort_service import extract_best_efforts_from_activity
from services.personal_records import regenerate_personal_bests
from services.strava_service import (
    StravaAuthError,
    calculate_hr_zones,
    classify_laps,
    convert_strava_activity,
    convert_strava_lap,
    deauthorize,
    get_activities,
    get_activity_details,
    get_activity_laps,
    get_activity_streams,
    get_fastest_work_pace,
    get_valid_access_token,
    hr_zone_bounds,
    is_running_activity,
    store_tokens,
)
from services.threshold_detector import update_athlete_threshold
from services.token_encryption import decrypt_token
from services.vdot_sync import sync_athlete_vdot

logger = logging.getLogger(__name__)

FIRST_SYNC_DAYS = 90
FULL_SYNC_DAYS = 365
# Re-read recent history so late edits on Strava are picked up
SYNC_OVERLAP_HOURS = 36
# Manual entry on the same day within this distance is the same run
MANUAL_MATCH_TOLERANCE_MILES = 0.2

METERS_PER_MILE = 1609.34


@dataclass
class SyncResult:
    synced_new: int = 0
    updated_existing: int = 0
    skipped: int = 0
    best_efforts: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


def sync_window_start(athlete: Athlete, full: bool = False, now: Optional[datetime] = None) -> datetime:
    """Earliest activity start time a sync should fetch."""
    now = now or datetime.now(timezone.utc)
    if full:
        return now - timedelta(days=FULL_SYNC_DAYS)
    last_sync = as_utc(athlete.last_strava_sync)
    if last_sync is None:
        return now - timedelta(days=FIRST_SYNC_DAYS)
    return last_sync - timedelta(hours=SYNC_OVERLAP_HOURS)


def _find_manual_match(db: Session, athlete_id, fields: Dict) -> Optional[Activity]:
    if not fields.get("local_date") or not fields.get("distance_m"):
        return None
    candidates = (
        db.query(Activity)
        .filter(
            Activity.athlete_id == athlete_id,
            Activity.source == "manual",
            Activity.external_activity_id.is_(None),
            Activity.local_date == fields["local_date"],
            Activity.distance_m.isnot(None),
        )
        .all()
    )
    tolerance_m = MANUAL_MATCH_TOLERANCE_MILES * METERS_PER_MILE
    for candidate in candidates:
        if abs(candidate.distance_m - fields["distance_m"]) <= tolerance_m:
            return candidate
    return None


def _store_laps(db: Session, activity: Activity, laps: List[Dict]) -> int:
    """Replace the activity's splits with classified Strava laps."""
    classified = classify_laps([convert_strava_lap(lap) for lap in laps])

    db.query(ActivitySplit).filter(ActivitySplit.activity_id == activity.id).delete(synchronize_session=False)
    db.expire(activity, ["splits"])

    for i, lap in enumerate(classified, start=1):
        db.add(ActivitySplit(
            activity_id=activity.id,
            split_number=lap["split_number"] or i,
            distance=lap["distance"],
            elapsed_time=lap["elapsed_time"],
            moving_time=lap["moving_time"],
            average_heartrate=lap["average_heartrate"],
            max_heartrate=lap["max_heartrate"],
            lap_type=lap["lap_type"],
        ))
    return len(classified)


def _upsert_activity(
    db: Session,
    athlete: Athlete,
    payload: Dict,
    access_token: str,
    result: SyncResult,
    details: Optional[Dict] = None,
) -> Optional[Activity]:
    """
    Insert or update one Strava run, with its laps and best efforts.

    A manual entry for the same run gets the Strava id linked and is
    otherwise left alone (counted as skipped; returns None).
    """
    fields = convert_strava_activity(payload)
    activity = (
        db.query(Activity)
        .filter(Activity.provider == "strava", Activity.external_activity_id == fields["external_activity_id"])
        .first()
    )

    if activity is not None:
        for key, value in fields.items():
            setattr(activity, key, value)
        result.updated_existing += 1
    else:
        manual = _find_manual_match(db, athlete.id, fields)
        if manual is not None:
            manual.provider = "strava"
            manual.external_activity_id = fields["external_activity_id"]
            result.skipped += 1
            logger.info(f"Linked Strava activity {fields['external_activity_id']} to manual entry {manual.id}")
            return None

        activity = Activity(athlete_id=athlete.id, **fields)
        db.add(activity)
        # id is needed for splits and efforts
        db.flush()
        result.synced_new += 1

    strava_id = int(fields["external_activity_id"])
    if activity.best_efforts_extracted_at is None or details is not None:
        try:
            details = details or get_activity_details(access_token, strava_id)
        except requests.HTTPError as e:
            logger.warning(f"Could not fetch details for Strava activity {strava_id}: {e}")
        else:
            result.best_efforts += extract_best_efforts_from_activity(details, activity, db)

    laps = get_activity_laps(access_token, strava_id)
    if laps:
        _store_laps(db, activity, laps)
    return activity


def refresh_derived_metrics(db: Session, athlete: Athlete) -> None:
    """Recompute threshold, VDOT and personal bests after activities changed. Commits."""
    update_athlete_threshold(db, athlete)
    sync_athlete_vdot(db, athlete)
    regenerate_personal_bests(db, athlete.id)
    invalidate_athlete_cache(athlete.id)


def _require_token(db: Session, athlete: Athlete) -> str:
    token = get_valid_access_token(athlete, db)
    if not token:
        raise StravaAuthError(f"No valid Strava token for athlete {athlete.id}")
    return token


def _partial_sync_cursor(athlete: Athlete, summaries: List[Dict]) -> Optional[datetime]:
    # With `after` set, Strava pages oldest first, so everything up to the
    # newest fetched run has been seen
    fetched = [convert_strava_activity(s)["start_time"] for s in summaries]
    fetched = [t for t in fetched if t is not None]
    previous = as_utc(athlete.last_strava_sync)
    if not fetched:
        return previous
    newest = max(fetched)
    return max(newest, previous) if previous else newest


def sync_athlete_activities(
    db: Session,
    athlete: Athlete,
    full: bool = False,
    now: Optional[datetime] = None,
) -> SyncResult:
    """
    Import the athlete's recent Strava runs.

    The first sync covers FIRST_SYNC_DAYS; later syncs start SYNC_OVERLAP_HOURS
    before the previous one; `full` re-reads FULL_SYNC_DAYS. Each activity is
    committed as it is stored, so a rate limit part-way keeps what was done.
    When paging stopped early, last_strava_sync only advances to the newest
    run actually fetched.

    Raises StravaAuthError when the athlete has no usable token and
    StravaRateLimitError when Strava throttles us.
    """
    now = now or datetime.now(timezone.utc)
    token = _require_token(db, athlete)
    after = sync_window_start(athlete, full=full, now=now)

    summaries, complete = get_activities(token, after=int(after.timestamp()))
    result = SyncResult()
    for summary in summaries:
        _upsert_activity(db, athlete, summary, token, result)
        db.commit()

    if complete:
        athlete.last_strava_sync = now
    else:
        athlete.last_strava_sync = _partial_sync_cursor(athlete, summaries)
    refresh_derived_metrics(db, athlete)
    db.commit()

    logger.info(
        "Strava sync complete",
        extra={"extra_fields": {"athlete_id": str(athlete.id), "full": full, **result.to_dict()}},
    )
    return result


def sync_single_activity(db: Session, athlete: Athlete, strava_activity_id: int) -> Optional[Activity]:
    """
    Import or refresh one Strava activity (webhook create/update).

    Returns the stored activity, or None when it is not a run or was linked
    to a manual entry.
    """
    token = _require_token(db, athlete)
    details = get_activity_details(token, strava_activity_id)
    if not is_running_activity(details):
        logger.info(f"Ignoring non-run Strava activity {strava_activity_id}")
        return None

    result = SyncResult()
    activity = _upsert_activity(db, athlete, details, token, result, details=details)
    db.commit()

    refresh_derived_metrics(db, athlete)
    db.commit()
    return activity


def delete_strava_activity(db: Session, athlete: Athlete, strava_activity_id: int) -> bool:
    """
    Remove a Strava activity and everything derived from it. Commits.

    Returns False when we never stored the activity.
    """
    activity = (
        db.query(Activity)
        .filter(
            Activity.athlete_id == athlete.id,
            Activity.provider == "strava",
            Activity.external_activity_id == str(strava_activity_id),
        )
        .first()
    )
    if activity is None:
        return False

    # SQLite does not enforce ON DELETE, so dependents are handled explicitly
    db.query(BestEffort).filter(BestEffort.activity_id == activity.id).delete(synchronize_session=False)
    db.query(PersonalBest).filter(PersonalBest.activity_id == activity.id).delete(synchronize_session=False)
    db.query(RaceResult).filter(RaceResult.activity_id == activity.id).update(
        {RaceResult.activity_id: None}, synchronize_session=False
    )
    db.delete(activity)
    db.commit()

    logger.info(f"Deleted Strava activity {strava_activity_id} for athlete {athlete.id}")
    refresh_derived_metrics(db, athlete)
    db.commit()
    return True


def connect_strava(db: Session, athlete: Athlete, token_data: Dict) -> None:
    """
    Store a fresh OAuth grant on the athlete. The caller commits.

    Raises ValueError when the Strava account is linked to another athlete.
    """
    strava_athlete_id = (token_data.get("athlete") or {}).get("id")
    if strava_athlete_id is None:
        raise ValueError("Token response is missing the Strava athlete id")

    other = (
        db.query(Athlete)
        .filter(Athlete.strava_athlete_id == strava_athlete_id, Athlete.id != athlete.id)
        .first()
    )
    if other is not None:
        raise ValueError("This Strava account is already connected to another athlete")

    store_tokens(athlete, token_data)
    athlete.strava_athlete_id = strava_athlete_id
    athlete.strava_auto_sync = True
    logger.info(f"Strava connected for athlete {athlete.id}")


def clear_strava_connection(db: Session, athlete: Athlete) -> None:
    """Forget the athlete's Strava grant. Synced activities stay. The caller commits."""
    athlete.strava_athlete_id = None
    athlete.strava_access_token = None
    athlete.strava_refresh_token = None
    athlete.strava_token_expires_at = None
    athlete.strava_auto_sync = False
    athlete.last_strava_sync = None
    invalidate_athlete_cache(athlete.id)
    logger.info(f"Strava connection cleared for athlete {athlete.id}")


def disconnect_strava(db: Session, athlete: Athlete) -> bool:
    """
    Revoke on Strava (best effort) and clear the stored grant. The caller commits.

    Returns whether Strava confirmed the deauthorization.
    """
    revoked = False
    token = decrypt_token(athlete.strava_access_token)
    if token:
        try:
            deauthorize(token)
            revoked = True
        except requests.RequestException as e:
            logger.warning(f"Strava deauthorize failed for athlete {athlete.id}: {e}")

    clear_strava_connection(db, athlete)
    return revoked


DEFAULT_MAX_HR = 185


def _age_on(birthdate: date, today: date) -> int:
    return today.year - birthdate.year - ((today.month, today.day) < (birthdate.month, birthdate.day))


def estimate_max_hr(athlete: Athlete, activity: Activity, hr_data: List[float], today: Optional[date] = None) -> int:
    """
    Max HR for zone bounds: the athlete's setting, else the run's max, else
    DEFAULT_MAX_HR. Raised to the age estimate (220 - age) and to the
    highest streamed sample.
    """
    max_hr = athlete.max_hr or activity.max_hr or DEFAULT_MAX_HR
    if athlete.birthdate:
        max_hr = max(max_hr, 220 - _age_on(athlete.birthdate, today or date.today()))
    if hr_data:
        max_hr = max(max_hr, int(round(max(hr_data))))
    return max_hr


def activity_hr_zones(db: Session, athlete: Athlete, activity: Activity) -> Dict:
    """
    Time in each heart-rate zone for one Strava run, from its streams.

    Raises StravaAuthError when the athlete has no usable token and
    ValueError when the activity did not come from Strava.
    """
    if activity.provider != "strava" or not activity.external_activity_id:
        raise ValueError("Heart rate zones are only available for Strava activities")

    token = _require_token(db, athlete)
    streams = get_activity_streams(token, int(activity.external_activity_id))
    hr_data = streams.get("heartrate") or []
    time_data = streams.get("time") or []

    max_hr = estimate_max_hr(athlete, activity, hr_data)
    return {
        "activity_id": str(activity.id),
        "max_hr": max_hr,
        "zones": calculate_hr_zones(hr_data, time_data, max_hr),
        "zone_bounds": hr_zone_bounds(max_hr),
    }


def activity_laps(activity: Activity) -> Dict:
    """Stored laps with pace, plus the fastest work-lap pace."""
    laps = [
        {
            "split_number": s.split_number,
            "distance": s.distance,
            "elapsed_time": s.elapsed_time,
            "moving_time": s.moving_time,
            "average_heartrate": s.average_heartrate,
            "max_heartrate": s.max_heartrate,
            "pace_seconds_per_mile": round(s.pace_per_mile) if s.pace_per_mile else 0,
            "lap_type": s.lap_type or "steady",
        }
        for s in sorted(activity.splits, key=lambda s: s.split_number)
    ]
    return {
        "activity_id": str(activity.id),
        "laps": laps,
        "fastest_work_pace": get_fastest_work_pace(laps),
    }
