"""
VDOT Sync

Keeps the athlete's working VDOT current and records a monthly history.

The estimate blends race results with Strava best efforts (1 mile and up)
from the last 180 days, weighting races above training efforts and recent
performances above old ones. Applying it to the stored VDOT is asymmetric:
a fast performance pulls VDOT up readily, a slow one only nudges it down,
since a slow run has many explanations besides lost fitness.
"""
from dataclasses import dataclass, asdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from models import Athlete, BestEffort, RaceResult, VdotHistory, as_utc
from services.threshold_detector import MIN_CONFIDENCE_TO_STORE
from services.vdot_calculator import VDOT_MAX, VDOT_MIN, calculate_pace_zones, calculate_vdot

logger = logging.getLogger(__name__)


ESTIMATE_WINDOW_DAYS = 180
RECENCY_HALF_LIFE_DAYS = 60
RACE_WEIGHT = 1.0
BEST_EFFORT_WEIGHT = 0.7
MAX_BEST_EFFORT_SIGNALS = 3  # fastest training efforts only
MIN_BEST_EFFORT_METERS = 1609
RECENT_RACE_DAYS = 90
RACE_SOURCE_MIN_SHARE = 0.3

SMOOTHING_UP = {"high": 0.85, "medium": 0.75, "low": 0.60}
SMOOTHING_DOWN = {"high": 0.40, "medium": 0.30, "low": 0.20}

TREND_THRESHOLD = 0.5

VALID_SOURCES = ("race", "time_trial", "workout", "estimate", "manual")
VALID_CONFIDENCE = ("high", "medium", "low")


@dataclass
class VdotSignal:
    vdot: float
    date: date
    source: str  # race | best_effort
    weight: float


@dataclass
class VdotEstimate:
    vdot: float
    confidence: str
    signals_used: int
    source: str  # race | estimate
    race_weight_share: float


@dataclass
class VdotSyncResult:
    success: bool
    old_vdot: Optional[float]
    new_vdot: Optional[float]
    confidence: str
    signals_used: int

    def to_dict(self) -> Dict:
        return asdict(self)


def _recency_weight(age_days: int) -> float:
    return 0.5 ** (max(age_days, 0) / RECENCY_HALF_LIFE_DAYS)


def gather_vdot_signals(db: Session, athlete_id, as_of: Optional[date] = None) -> List[VdotSignal]:
    as_of = as_of or date.today()
    since = as_of - timedelta(days=ESTIMATE_WINDOW_DAYS)
    signals: List[VdotSignal] = []

    races = (
        db.query(RaceResult)
        .filter(
            RaceResult.athlete_id == athlete_id,
            RaceResult.date >= since,
            RaceResult.date <= as_of,
        )
        .all()
    )
    for race in races:
        vdot = calculate_vdot(race.distance_meters, race.finish_time_seconds)
        if vdot is None:
            continue
        signals.append(VdotSignal(
            vdot=vdot,
            date=race.date,
            source="race",
            weight=RACE_WEIGHT * _recency_weight((as_of - race.date).days),
        ))

    since_dt = datetime.combine(since, time.min, tzinfo=timezone.utc)
    until_dt = datetime.combine(as_of + timedelta(days=1), time.min, tzinfo=timezone.utc)
    efforts = (
        db.query(BestEffort)
        .filter(
            BestEffort.athlete_id == athlete_id,
            BestEffort.distance_meters >= MIN_BEST_EFFORT_METERS,
            BestEffort.achieved_at >= since_dt,
            BestEffort.achieved_at < until_dt,
        )
        .all()
    )
    effort_signals = []
    for effort in efforts:
        vdot = calculate_vdot(effort.distance_meters, effort.elapsed_time)
        if vdot is None:
            continue
        effort_date = as_utc(effort.achieved_at).date()
        effort_signals.append(VdotSignal(
            vdot=vdot,
            date=effort_date,
            source="best_effort",
            weight=BEST_EFFORT_WEIGHT * _recency_weight((as_of - effort_date).days),
        ))
    effort_signals.sort(key=lambda s: s.vdot, reverse=True)
    signals.extend(effort_signals[:MAX_BEST_EFFORT_SIGNALS])

    return signals


def estimate_current_vdot(db: Session, athlete_id, as_of: Optional[date] = None) -> Optional[VdotEstimate]:
    """
    Weighted VDOT estimate from recent races and best efforts.

    Returns None when there is nothing to go on.
    """
    as_of = as_of or date.today()
    signals = gather_vdot_signals(db, athlete_id, as_of)
    total_weight = sum(s.weight for s in signals)
    if not signals or total_weight <= 0:
        return None

    vdot = sum(s.vdot * s.weight for s in signals) / total_weight
    race_weight = sum(s.weight for s in signals if s.source == "race")
    race_share = race_weight / total_weight

    races = [s for s in signals if s.source == "race"]
    recent_race = any((as_of - s.date).days <= RECENT_RACE_DAYS for s in races)
    if recent_race and len(signals) >= 2:
        confidence = "high"
    elif len(signals) >= 2 or races:
        confidence = "medium"
    else:
        confidence = "low"

    return VdotEstimate(
        vdot=round(vdot, 1),
        confidence=confidence,
        signals_used=len(signals),
        source="race" if race_share >= RACE_SOURCE_MIN_SHARE else "estimate",
        race_weight_share=round(race_share, 2),
    )


def apply_smoothing(current: Optional[float], raw: float, confidence: str) -> float:
    """Move from the current VDOT toward the raw estimate by a confidence-dependent fraction."""
    if current is None or not VDOT_MIN <= current <= VDOT_MAX:
        return round(raw, 1)
    delta = raw - current
    if delta > 0:
        smoothed = current + delta * SMOOTHING_UP.get(confidence, SMOOTHING_UP["low"])
    elif delta < 0:
        smoothed = current + delta * SMOOTHING_DOWN.get(confidence, SMOOTHING_DOWN["low"])
    else:
        smoothed = current
    return round(smoothed, 1)


def _apply_vdot_to_athlete(athlete: Athlete, vdot: float) -> None:
    athlete.vdot = vdot
    # A confidently detected threshold beats the one implied by VDOT
    detected = athlete.threshold_confidence is not None and athlete.threshold_confidence >= MIN_CONFIDENCE_TO_STORE
    if not detected:
        athlete.threshold_pace_per_mile = float(calculate_pace_zones(vdot).threshold)


def sync_athlete_vdot(
    db: Session,
    athlete: Athlete,
    skip_smoothing: bool = False,
    as_of: Optional[date] = None,
) -> VdotSyncResult:
    """
    Re-estimate the athlete's VDOT, smooth it against the stored value, store
    it and record this month's history entry. The caller commits.

    `skip_smoothing` is for explicit, athlete-triggered recalculation.
    """
    old_vdot = athlete.vdot
    estimate = estimate_current_vdot(db, athlete.id, as_of)
    if estimate is None:
        return VdotSyncResult(False, old_vdot, None, "low", 0)

    if not VDOT_MIN <= estimate.vdot <= VDOT_MAX:
        return VdotSyncResult(False, old_vdot, None, estimate.confidence, estimate.signals_used)

    new_vdot = round(estimate.vdot, 1) if skip_smoothing else apply_smoothing(old_vdot, estimate.vdot, estimate.confidence)
    _apply_vdot_to_athlete(athlete, new_vdot)

    notes = f"{estimate.signals_used} signals, race share {round(estimate.race_weight_share * 100)}%"
    if old_vdot is not None:
        notes += f" | prev: {old_vdot} -> {new_vdot} (raw: {estimate.vdot})"
    record_vdot_entry(
        db,
        athlete.id,
        new_vdot,
        estimate.source,
        entry_date=as_of,
        confidence=estimate.confidence,
        notes=notes,
    )

    logger.info(
        "VDOT synced",
        extra={"extra_fields": {
            "athlete_id": str(athlete.id),
            "old_vdot": old_vdot,
            "new_vdot": new_vdot,
            "raw_vdot": estimate.vdot,
            "confidence": estimate.confidence,
        }},
    )
    return VdotSyncResult(True, old_vdot, new_vdot, estimate.confidence, estimate.signals_used)


def month_start(d: date) -> date:
    return d.replace(day=1)


def record_vdot_entry(
    db: Session,
    athlete_id,
    vdot: float,
    source: str,
    entry_date: Optional[date] = None,
    confidence: str = "medium",
    notes: Optional[str] = None,
) -> VdotHistory:
    """
    Upsert the history row for the month containing `entry_date` (default today).

    Raises ValueError for a VDOT outside 15-85 or an unknown source/confidence.
    The caller commits.
    """
    if vdot is None or not VDOT_MIN <= vdot <= VDOT_MAX:
        raise ValueError("VDOT must be between 15 and 85")
    if source not in VALID_SOURCES:
        raise ValueError(f"Unknown VDOT source: {source}")
    if confidence not in VALID_CONFIDENCE:
        raise ValueError(f"Unknown confidence: {confidence}")

    month = month_start(entry_date or date.today())
    entry = (
        db.query(VdotHistory)
        .filter(VdotHistory.athlete_id == athlete_id, VdotHistory.date == month)
        .first()
    )
    if entry is None:
        entry = VdotHistory(athlete_id=athlete_id, date=month)
        db.add(entry)

    entry.vdot = round(vdot, 1)
    entry.source = source
    entry.confidence = confidence
    entry.notes = notes
    db.flush()
    return entry


def get_vdot_history(
    db: Session,
    athlete_id,
    limit: int = 50,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[VdotHistory]:
    """Most recent entries first."""
    query = db.query(VdotHistory).filter(VdotHistory.athlete_id == athlete_id)
    if start_date:
        query = query.filter(VdotHistory.date >= start_date)
    if end_date:
        query = query.filter(VdotHistory.date <= end_date)
    return query.order_by(VdotHistory.date.desc()).limit(limit).all()


def get_vdot_trend(db: Session, athlete_id, days: int = 90, as_of: Optional[date] = None) -> Dict:
    """
    Compare the mean VDOT of the recent half of the window with the older half.

    Returns current, previous, change, change_percent and a trend of
    improving / declining (beyond +/-0.5), stable, or unknown when either
    half has no entries.
    """
    as_of = as_of or date.today()
    start = as_of - timedelta(days=days)
    mid = as_of - timedelta(days=days / 2)

    entries = (
        db.query(VdotHistory)
        .filter(VdotHistory.athlete_id == athlete_id, VdotHistory.date >= start)
        .all()
    )
    recent = [e.vdot for e in entries if e.date >= mid]
    older = [e.vdot for e in entries if e.date < mid]

    current = sum(recent) / len(recent) if recent else None
    previous = sum(older) / len(older) if older else None

    if current is None or previous is None:
        return {
            "current": round(current, 1) if current is not None else None,
            "previous": round(previous, 1) if previous is not None else None,
            "change": None,
            "change_percent": None,
            "trend": "unknown",
        }

    change = current - previous
    if change > TREND_THRESHOLD:
        trend = "improving"
    elif change < -TREND_THRESHOLD:
        trend = "declining"
    else:
        trend = "stable"

    return {
        "current": round(current, 1),
        "previous": round(previous, 1),
        "change": round(change, 1),
        "change_percent": round(change / previous * 100, 1),
        "trend": trend,
    }


def recalculate_vdot_from_races(db: Session, athlete: Athlete) -> Dict:
    """
    Set the athlete's VDOT to the best race VDOT on record. The caller commits.
    """
    races = db.query(RaceResult).filter(RaceResult.athlete_id == athlete.id).all()
    if not races:
        return {"best_vdot": None, "race_count": 0, "updated": False}

    best = None
    for race in races:
        vdot = calculate_vdot(race.distance_meters, race.finish_time_seconds)
        race.calculated_vdot = vdot
        if vdot is not None and (best is None or vdot > best):
            best = vdot

    if best is None:
        return {"best_vdot": None, "race_count": len(races), "updated": False}

    _apply_vdot_to_athlete(athlete, best)
    logger.info(f"VDOT recalculated from {len(races)} races for athlete {athlete.id}: {best}")
    return {"best_vdot": best, "race_count": len(races), "updated": True}


def rebuild_monthly_vdot_history(
    db: Session,
    athlete: Athlete,
    start_date: date,
    end_date: Optional[date] = None,
) -> Dict:
    """
    Rewrite history as one row per month from start to end, carrying the last
    known value forward through months without an entry. The caller commits.
    """
    start = month_start(start_date)
    end = month_start(end_date or date.today())

    raw = (
        db.query(VdotHistory)
        .filter(VdotHistory.athlete_id == athlete.id)
        .order_by(VdotHistory.date.asc(), VdotHistory.created_at.asc())
        .all()
    )
    by_month = {month_start(e.date): e for e in raw}

    carry = None
    if raw:
        first = raw[0]
        carry = (first.vdot, first.source, first.confidence, first.notes)
    elif athlete.vdot and VDOT_MIN <= athlete.vdot <= VDOT_MAX:
        carry = (athlete.vdot, "manual", "medium", "monthly baseline from profile")

    rows = []
    cursor = start
    while cursor <= end:
        entry = by_month.get(cursor)
        if entry is not None:
            carry = (round(entry.vdot, 1), entry.source, entry.confidence, entry.notes)
        if carry is not None:
            vdot, source, confidence, notes = carry
            rows.append(VdotHistory(
                athlete_id=athlete.id,
                date=cursor,
                vdot=vdot,
                source=source,
                confidence=confidence,
                notes=notes if entry is not None else (notes or "monthly carry-forward"),
            ))
        cursor = (cursor + timedelta(days=32)).replace(day=1)

    previous = len(raw)
    for entry in raw:
        db.delete(entry)
    db.flush()
    db.add_all(rows)
    db.flush()
    return {"previous_entries": previous, "rebuilt_entries": len(rows)}
