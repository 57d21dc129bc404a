"""
Personal Records

Aggregates the fastest known time per standard distance from three sources:

- Strava best efforts (BestEffort rows)
- race results entered by the athlete
- whole workouts whose distance lands in a category's tolerance window

The same performance can show up twice (a race linked to a synced activity,
or an activity with a Strava 5k effort that was itself a 5K). An activity
contributes at most one performance per category; race results and Strava
efforts are preferred over the bare workout.
"""
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from models import Activity, BestEffort, PersonalBest, RaceResult, as_utc
from services.vdot_calculator import METERS_PER_MILE, calculate_vdot, format_duration, format_pace

logger = logging.getLogger(__name__)


RECENT_PR_DAYS = 30
RECENT_EFFORTS = 3


@dataclass(frozen=True)
class RecordDistance:
    category: str
    label: str
    meters: float
    min_meters: float
    max_meters: float


# Ordered shortest to longest
RECORD_DISTANCES = [
    RecordDistance('400m', '400m', 400, 380, 420),
    RecordDistance('1k', '1K', 1000, 950, 1050),
    RecordDistance('mile', '1 Mile', 1609.34, 1580, 1650),
    RecordDistance('5k', '5K', 5000, 4800, 5200),
    RecordDistance('10k', '10K', 10000, 9500, 10500),
    RecordDistance('half_marathon', 'Half Marathon', 21097, 20500, 21500),
    RecordDistance('marathon', 'Marathon', 42195, 41500, 43000),
]

RECORD_DISTANCES_BY_CATEGORY = {d.category: d for d in RECORD_DISTANCES}

# RaceResult.distance_label values seen from the entry form and older imports
RACE_LABEL_TO_CATEGORY = {
    '400m': '400m',
    '1k': '1k',
    '1_mile': 'mile',
    'mile': 'mile',
    '5k': '5k',
    '10k': '10k',
    'half_marathon': 'half_marathon',
    'half': 'half_marathon',
    'marathon': 'marathon',
}

SOURCE_PRIORITY = {'race': 0, 'strava': 1, 'workout': 2}


@dataclass
class Performance:
    category: str
    time_seconds: int
    date: date
    source: str  # strava | race | workout
    activity_id: Optional[UUID] = None
    race_result_id: Optional[UUID] = None
    name: Optional[str] = None
    achieved_at: Optional[datetime] = None

    def summary(self) -> Dict:
        return {
            "time_seconds": self.time_seconds,
            "time_formatted": format_duration(self.time_seconds),
            "date": self.date.isoformat(),
            "source": self.source,
            "activity_id": str(self.activity_id) if self.activity_id else None,
            "race_result_id": str(self.race_result_id) if self.race_result_id else None,
        }


@dataclass
class PersonalRecord:
    category: str
    label: str
    distance_meters: float
    pr_time_seconds: int
    pr_time_formatted: str
    pr_date: date
    pr_source: str
    pr_activity_id: Optional[str]
    pr_race_result_id: Optional[str]
    pr_pace_per_mile: Optional[float]
    pr_pace_formatted: Optional[str]
    pr_vdot: Optional[float]
    previous_pr_time_seconds: Optional[int]
    improvement_seconds: Optional[int]
    is_recent_pr: bool
    recent_efforts: List[Dict] = field(default_factory=list)
    effort_count: int = 0

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["pr_date"] = self.pr_date.isoformat()
        return d


@dataclass
class TimelineEntry:
    date: date
    time_seconds: int
    time_formatted: str
    source: str
    activity_id: Optional[str]
    race_result_id: Optional[str]
    name: Optional[str]
    vdot: Optional[float]
    is_pr: bool

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["date"] = self.date.isoformat()
        return d


def get_distance_category(distance_meters: Optional[float]) -> Optional[str]:
    """
    Record category whose tolerance window contains the distance, or None.

    Windows do not overlap, so the first match is the only match.
    """
    if not distance_meters or distance_meters <= 0:
        return None
    for d in RECORD_DISTANCES:
        if d.min_meters <= distance_meters <= d.max_meters:
            return d.category
    return None


def _race_category(race: RaceResult) -> Optional[str]:
    label = (race.distance_label or '').strip().lower()
    category = RACE_LABEL_TO_CATEGORY.get(label)
    if category:
        return category
    return get_distance_category(race.distance_meters)


def collect_performances(db: Session, athlete_id) -> Dict[str, List[Performance]]:
    """Every known performance per record category, unsorted."""
    perfs: Dict[str, List[Performance]] = {d.category: [] for d in RECORD_DISTANCES}
    claimed: set = set()  # (activity_id, category)

    races = db.query(RaceResult).filter(RaceResult.athlete_id == athlete_id).all()
    for race in races:
        category = _race_category(race)
        if category is None:
            continue
        perfs[category].append(Performance(
            category=category,
            time_seconds=race.finish_time_seconds,
            date=race.date,
            source='race',
            activity_id=race.activity_id,
            race_result_id=race.id,
            name=race.race_name,
        ))
        if race.activity_id:
            claimed.add((race.activity_id, category))

    efforts = (
        db.query(BestEffort, Activity)
        .join(Activity, BestEffort.activity_id == Activity.id)
        .filter(BestEffort.athlete_id == athlete_id)
        .all()
    )
    for effort, activity in efforts:
        category = effort.distance_category
        if category not in perfs or (activity.id, category) in claimed:
            continue
        claimed.add((activity.id, category))
        perfs[category].append(Performance(
            category=category,
            time_seconds=effort.elapsed_time,
            date=activity.activity_date,
            source='strava',
            activity_id=activity.id,
            name=activity.name,
            achieved_at=as_utc(effort.achieved_at),
        ))

    activities = (
        db.query(Activity)
        .filter(
            Activity.athlete_id == athlete_id,
            Activity.sport == "run",
            Activity.distance_m.isnot(None),
            Activity.duration_s.isnot(None),
        )
        .all()
    )
    for activity in activities:
        category = get_distance_category(activity.distance_m)
        if category is None or (activity.id, category) in claimed or activity.duration_s <= 0:
            continue
        claimed.add((activity.id, category))
        perfs[category].append(Performance(
            category=category,
            time_seconds=activity.duration_s,
            date=activity.activity_date,
            source='workout',
            activity_id=activity.id,
            name=activity.name,
            achieved_at=as_utc(activity.start_time),
        ))

    return perfs


def _fastest_first(perfs: List[Performance]) -> List[Performance]:
    # Ties go to the earlier date, then the more authoritative source
    return sorted(perfs, key=lambda p: (p.time_seconds, p.date, SOURCE_PRIORITY[p.source]))


def _build_record(distance: RecordDistance, perfs: List[Performance], as_of: date) -> PersonalRecord:
    ranked = _fastest_first(perfs)
    best = ranked[0]

    earlier = [p for p in ranked if p.date < best.date]
    previous = earlier[0] if earlier else None

    recent = sorted(perfs, key=lambda p: p.date, reverse=True)[:RECENT_EFFORTS]
    pace = best.time_seconds / (distance.meters / METERS_PER_MILE)

    return PersonalRecord(
        category=distance.category,
        label=distance.label,
        distance_meters=distance.meters,
        pr_time_seconds=best.time_seconds,
        pr_time_formatted=format_duration(best.time_seconds),
        pr_date=best.date,
        pr_source=best.source,
        pr_activity_id=str(best.activity_id) if best.activity_id else None,
        pr_race_result_id=str(best.race_result_id) if best.race_result_id else None,
        pr_pace_per_mile=round(pace, 1),
        pr_pace_formatted=format_pace(pace),
        pr_vdot=calculate_vdot(distance.meters, best.time_seconds),
        previous_pr_time_seconds=previous.time_seconds if previous else None,
        improvement_seconds=(previous.time_seconds - best.time_seconds) if previous else None,
        is_recent_pr=best.date >= as_of - timedelta(days=RECENT_PR_DAYS),
        recent_efforts=[p.summary() for p in recent],
        effort_count=len(perfs),
    )


def get_personal_records(db: Session, athlete_id, as_of: Optional[date] = None) -> List[PersonalRecord]:
    """
    One record per standard distance the athlete has run, shortest first.

    The previous PR is the fastest performance dated strictly before the
    current PR; distances with no performances are omitted.
    """
    as_of = as_of or date.today()
    perfs = collect_performances(db, athlete_id)
    return [
        _build_record(distance, perfs[distance.category], as_of)
        for distance in RECORD_DISTANCES
        if perfs[distance.category]
    ]


def get_best_effort_timeline(db: Session, athlete_id, category: str) -> List[TimelineEntry]:
    """
    Every performance at one distance, oldest first, with a running PR flag.

    Raises ValueError for an unknown category.
    """
    distance = RECORD_DISTANCES_BY_CATEGORY.get(category)
    if distance is None:
        raise ValueError(f"Unknown distance category: {category}")

    perfs = collect_performances(db, athlete_id)[category]
    perfs.sort(key=lambda p: (p.date, p.time_seconds))

    timeline = []
    best_so_far: Optional[int] = None
    for p in perfs:
        is_pr = best_so_far is None or p.time_seconds < best_so_far
        if is_pr:
            best_so_far = p.time_seconds
        timeline.append(TimelineEntry(
            date=p.date,
            time_seconds=p.time_seconds,
            time_formatted=format_duration(p.time_seconds),
            source=p.source,
            activity_id=str(p.activity_id) if p.activity_id else None,
            race_result_id=str(p.race_result_id) if p.race_result_id else None,
            name=p.name,
            vdot=calculate_vdot(distance.meters, p.time_seconds),
            is_pr=is_pr,
        ))
    return timeline


def _achieved_at(p: Performance) -> datetime:
    if p.achieved_at is not None:
        return p.achieved_at
    return datetime.combine(p.date, time(12, 0), tzinfo=timezone.utc)


def regenerate_personal_bests(db: Session, athlete_id) -> Dict[str, object]:
    """
    Rebuild PersonalBest rows from all sources.

    For each category the fastest performance wins. An existing PB row that is
    faster than anything found (e.g. entered manually) is kept. Commits.

    Returns:
        Dict with counts: {'created': int, 'updated': int, 'kept': int, 'categories': list}
    """
    perfs = collect_performances(db, athlete_id)
    existing = {
        pb.distance_category: pb
        for pb in db.query(PersonalBest).filter(PersonalBest.athlete_id == athlete_id).all()
    }

    created = updated = kept = 0
    categories: List[str] = []

    for distance in RECORD_DISTANCES:
        candidates = perfs[distance.category]
        if not candidates:
            continue
        best = _fastest_first(candidates)[0]
        pace = best.time_seconds / (distance.meters / METERS_PER_MILE)
        values = dict(
            distance_meters=int(round(distance.meters)),
            time_seconds=best.time_seconds,
            pace_per_mile=round(pace, 1),
            achieved_at=_achieved_at(best),
            source=best.source,
            activity_id=best.activity_id,
            race_result_id=best.race_result_id,
        )

        pb = existing.get(distance.category)
        if pb is None:
            db.add(PersonalBest(athlete_id=athlete_id, distance_category=distance.category, **values))
            created += 1
            categories.append(distance.category)
        elif best.time_seconds < pb.time_seconds:
            for key, value in values.items():
                setattr(pb, key, value)
            updated += 1
            categories.append(distance.category)
        else:
            kept += 1

    db.commit()
    logger.info(
        "Personal bests regenerated",
        extra={"extra_fields": {
            "athlete_id": str(athlete_id),
            "created": created,
            "updated": updated,
            "kept": kept,
        }},
    )
    return {'created': created, 'updated': updated, 'kept': kept, 'categories': categories}

