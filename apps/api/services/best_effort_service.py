"""
Best Effort Service

Two ways of finding the fastest time over a standard distance:

- Strava best efforts: Strava already computes them from the GPS stream and
  ships them in the activity details payload. We store every one in the
  BestEffort table (history, trends); PersonalBest is derived from them.
- Lap-based detection: for workouts without Strava efforts (manual entries,
  watch imports) we look for runs of consecutive laps, or the whole workout,
  that land on a standard distance within a tolerance.
"""
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence
import logging

from sqlalchemy.orm import Session, selectinload

from models import Activity, BestEffort, as_utc
from services.vdot_calculator import METERS_PER_MILE, calculate_vdot, format_duration, format_pace

logger = logging.getLogger(__name__)


# Map Strava effort names to our standardized categories
STRAVA_EFFORT_MAP = {
    '400m': '400m',
    '1/2 mile': None,  # Not tracked
    '1k': '1k',
    '1 mile': 'mile',
    'mile': 'mile',
    '2 mile': None,
    '5k': '5k',
    '10k': '10k',
    '15k': '15k',
    '10 mile': '10_mile',
    '10-mile': '10_mile',
    '20k': None,
    'half marathon': 'half_marathon',
    'half-marathon': 'half_marathon',
    'marathon': 'marathon',
}

# Nominal distance per category, meters
CATEGORY_METERS = {
    '400m': 400,
    '800m': 800,
    '1k': 1000,
    'mile': 1609,
    '5k': 5000,
    '10k': 10000,
    '15k': 15000,
    '10_mile': 16093,
    'half_marathon': 21097,
    'marathon': 42195,
}

RECENT_PR_DAYS = 30
NOTIFY_PR_DAYS = 7
TOP_EFFORTS_PER_DISTANCE = 10
NEAR_MISS_THRESHOLD_PCT = 2.0


@dataclass(frozen=True)
class EffortDistance:
    category: str
    label: str
    meters: float
    tolerance: float  # meters either side


# Lap-based detection targets, shortest first
STANDARD_DISTANCES = [
    EffortDistance('400m', '400m', 400, 10),
    EffortDistance('800m', '800m', 800, 20),
    EffortDistance('1k', '1K', 1000, 25),
    EffortDistance('mile', '1 Mile', 1609.34, 40),
    EffortDistance('5k', '5K', 5000, 100),
    EffortDistance('10k', '10K', 10000, 200),
    EffortDistance('10_mile', '10 Mile', 16093.4, 400),
    EffortDistance('half_marathon', 'Half Marathon', 21097.5, 500),
    EffortDistance('marathon', 'Marathon', 42195, 1000),
]


@dataclass
class EffortLap:
    index: int
    distance_meters: Optional[float]
    elapsed_seconds: Optional[float]


@dataclass
class EffortWorkout:
    id: str
    date: date
    distance_meters: Optional[float]
    duration_seconds: Optional[float]
    laps: List[EffortLap] = field(default_factory=list)


@dataclass
class DetectedEffort:
    workout_id: str
    workout_date: date
    category: str
    label: str
    distance_meters: float
    time_seconds: float
    time_formatted: str
    pace: Optional[str]  # M:SS per mile
    start_lap: Optional[int]  # None when the whole workout matched
    end_lap: Optional[int]
    is_pr: bool = False
    improvement_seconds: Optional[float] = None
    vdot: Optional[float] = None
    rank_all_time: Optional[int] = None

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["workout_date"] = self.workout_date.isoformat()
        return d


@dataclass
class EffortAnalysis:
    best_efforts: List[DetectedEffort] = field(default_factory=list)
    recent_prs: List[DetectedEffort] = field(default_factory=list)
    notifications: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "best_efforts": [e.to_dict() for e in self.best_efforts],
            "recent_prs": [e.to_dict() for e in self.recent_prs],
            "notifications": list(self.notifications),
        }


@dataclass
class NearMiss:
    workout_id: str
    workout_date: date
    category: str
    label: str
    time_seconds: float
    pr_time_seconds: float
    missed_by_seconds: float
    missed_by_percent: float

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["workout_date"] = self.workout_date.isoformat()
        return d


def normalize_effort_name(name: str) -> Optional[str]:
    """Convert Strava effort name to our standardized category."""
    if not name:
        return None
    normalized = name.lower().strip()
    return STRAVA_EFFORT_MAP.get(normalized)


def _parse_strava_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Unparseable best effort start_date: {value!r}")
        return None


def extract_best_efforts_from_activity(
    activity_details: Dict,
    activity: Activity,
    db: Session
) -> int:
    """
    Extract and store best efforts from Strava activity details.

    Called during activity sync. Efforts already stored for this activity
    (same strava_effort_id) are skipped, so re-syncing is harmless. The caller
    commits.

    Returns:
        Number of best efforts stored
    """
    best_efforts = activity_details.get('best_efforts') or []
    stored = 0

    existing_ids = {
        row.strava_effort_id
        for row in db.query(BestEffort.strava_effort_id).filter(BestEffort.activity_id == activity.id)
        if row.strava_effort_id is not None
    }

    for effort in best_efforts:
        category = normalize_effort_name(effort.get('name', ''))
        if not category:
            continue

        distance_meters = effort.get('distance') or 0
        elapsed_time = effort.get('elapsed_time') or 0
        if not distance_meters or not elapsed_time:
            continue

        strava_effort_id = effort.get('id')
        if strava_effort_id is not None:
            if strava_effort_id in existing_ids:
                continue
            existing_ids.add(strava_effort_id)

        achieved_at = _parse_strava_time(effort.get('start_date')) or as_utc(activity.start_time)

        db.add(BestEffort(
            athlete_id=activity.athlete_id,
            activity_id=activity.id,
            distance_category=category,
            distance_meters=int(round(distance_meters)),
            elapsed_time=int(elapsed_time),
            achieved_at=achieved_at,
            strava_effort_id=strava_effort_id,
            pr_rank=effort.get('pr_rank'),
        ))
        stored += 1

    activity.best_efforts_extracted_at = datetime.now(timezone.utc)
    if stored:
        logger.info(f"Stored {stored} best efforts for activity {activity.id}")
    return stored


def get_best_effort_history(
    db: Session,
    athlete_id,
    distance_category: str,
    limit: int = 20
) -> List[BestEffort]:
    """Fastest stored Strava efforts for one category."""
    return db.query(BestEffort).filter(
        BestEffort.athlete_id == athlete_id,
        BestEffort.distance_category == distance_category
    ).order_by(
        BestEffort.elapsed_time.asc()
    ).limit(limit).all()


# ---------------------------------------------------------------------------
# Lap-based detection
# ---------------------------------------------------------------------------

def _make_effort(
    workout: EffortWorkout,
    target: EffortDistance,
    distance_m: float,
    time_s: float,
    start_lap: Optional[int],
    end_lap: Optional[int],
    historical: Optional[DetectedEffort],
) -> DetectedEffort:
    miles = distance_m / METERS_PER_MILE
    is_pr = historical is None or time_s < historical.time_seconds
    return DetectedEffort(
        workout_id=workout.id,
        workout_date=workout.date,
        category=target.category,
        label=target.label,
        distance_meters=distance_m,
        time_seconds=time_s,
        time_formatted=format_duration(time_s),
        pace=format_pace(time_s / miles) if miles > 0 else None,
        start_lap=start_lap,
        end_lap=end_lap,
        is_pr=is_pr,
        improvement_seconds=(historical.time_seconds - time_s) if historical else None,
        vdot=calculate_vdot(target.meters, time_s),
    )


def detect_best_efforts_in_workout(
    workout: EffortWorkout,
    historical_bests: Optional[Dict[str, DetectedEffort]] = None,
) -> List[DetectedEffort]:
    """
    Fastest effort per standard distance inside one workout.

    Candidates are the whole workout and every run of consecutive laps whose
    summed distance is within the distance's tolerance. Each result is flagged
    as a PR against `historical_bests` (category -> best so far).
    """
    historical_bests = historical_bests or {}
    laps = sorted(
        (lap for lap in workout.laps if lap.distance_meters and lap.elapsed_seconds),
        key=lambda lap: lap.index,
    )
    best: Dict[str, DetectedEffort] = {}

    def consider(candidate: DetectedEffort):
        current = best.get(candidate.category)
        if current is None or candidate.time_seconds < current.time_seconds:
            best[candidate.category] = candidate

    for target in STANDARD_DISTANCES:
        if workout.distance_meters and workout.distance_meters < target.meters * 0.9:
            continue
        historical = historical_bests.get(target.category)

        if workout.distance_meters and workout.duration_seconds:
            if abs(workout.distance_meters - target.meters) <= target.tolerance:
                consider(_make_effort(
                    workout, target, workout.distance_meters, workout.duration_seconds,
                    None, None, historical,
                ))

        for start in range(len(laps)):
            distance = 0.0
            elapsed = 0.0
            for end in range(start, len(laps)):
                distance += laps[end].distance_meters
                elapsed += laps[end].elapsed_seconds
                if abs(distance - target.meters) <= target.tolerance:
                    consider(_make_effort(
                        workout, target, distance, elapsed,
                        laps[start].index, laps[end].index, historical,
                    ))
                    break
                if distance > target.meters + target.tolerance:
                    break

    return [best[t.category] for t in STANDARD_DISTANCES if t.category in best]


def _days_between(earlier: date, later: date) -> int:
    return (later - earlier).days


def analyze_workouts_for_best_efforts(
    workouts: Sequence[EffortWorkout],
    as_of: Optional[date] = None,
) -> EffortAnalysis:
    """
    Replay workouts oldest first, tracking the top efforts per distance.

    An effort is a PR when it beats everything before it. PRs from the last
    30 days are listed as recent; those from the last 7 days also produce a
    notification.
    """
    as_of = as_of or date.today()
    top: Dict[str, List[DetectedEffort]] = {}
    analysis = EffortAnalysis()

    for workout in sorted(workouts, key=lambda w: w.date):
        current_bests = {cat: efforts[0] for cat, efforts in top.items() if efforts}
        for effort in detect_best_efforts_in_workout(workout, current_bests):
            ranked = top.setdefault(effort.category, [])
            ranked.append(effort)
            ranked.sort(key=lambda e: e.time_seconds)
            del ranked[TOP_EFFORTS_PER_DISTANCE:]

            age_days = _days_between(workout.date, as_of)
            if effort.is_pr and age_days <= RECENT_PR_DAYS:
                analysis.recent_prs.append(effort)
            if effort.is_pr and age_days <= NOTIFY_PR_DAYS:
                if effort.improvement_seconds and effort.improvement_seconds > 0:
                    analysis.notifications.append(
                        f"New {effort.label} PR: {effort.time_formatted} "
                        f"({round(effort.improvement_seconds)}s faster!)"
                    )
                else:
                    analysis.notifications.append(f"New {effort.label} PR: {effort.time_formatted}")

    for target in STANDARD_DISTANCES:
        for rank, effort in enumerate(top.get(target.category, []), start=1):
            effort.rank_all_time = rank
            analysis.best_efforts.append(effort)

    analysis.recent_prs.sort(key=lambda e: e.workout_date, reverse=True)
    return analysis


def find_near_misses(
    workouts: Sequence[EffortWorkout],
    threshold_pct: float = NEAR_MISS_THRESHOLD_PCT,
) -> List[NearMiss]:
    """
    Efforts that were not PRs but came within `threshold_pct` percent of the
    best time standing at that point.
    """
    bests: Dict[str, DetectedEffort] = {}
    misses: List[NearMiss] = []

    for workout in sorted(workouts, key=lambda w: w.date):
        for effort in detect_best_efforts_in_workout(workout, bests):
            previous = bests.get(effort.category)
            if effort.is_pr:
                bests[effort.category] = effort
                continue
            ratio = effort.time_seconds / previous.time_seconds
            if ratio <= 1 + threshold_pct / 100:
                misses.append(NearMiss(
                    workout_id=effort.workout_id,
                    workout_date=effort.workout_date,
                    category=effort.category,
                    label=effort.label,
                    time_seconds=effort.time_seconds,
                    pr_time_seconds=previous.time_seconds,
                    missed_by_seconds=round(effort.time_seconds - previous.time_seconds, 1),
                    missed_by_percent=round((ratio - 1) * 100, 2),
                ))

    misses.sort(key=lambda m: m.workout_date, reverse=True)
    return misses


def get_best_effort_insights(analysis: EffortAnalysis) -> List[str]:
    """Short motivational lines drawn from recent PRs."""
    insights = []

    pr_dates = {pr.workout_date for pr in analysis.recent_prs}
    if len(pr_dates) >= 3:
        insights.append(f"You're on fire! {len(pr_dates)} PRs in the last 30 days!")

    by_distance: Dict[str, int] = {}
    for pr in analysis.recent_prs:
        by_distance[pr.label] = by_distance.get(pr.label, 0) + 1
    if by_distance:
        label, count = max(by_distance.items(), key=lambda item: item[1])
        if count >= 2:
            insights.append(f"{label} specialist! {count} PRs at this distance recently.")

    total = sum(pr.improvement_seconds for pr in analysis.recent_prs if pr.improvement_seconds)
    if total > 60:
        insights.append(f"You've saved {round(total)} seconds across all PRs. Consistent progress!")

    return insights


# ---------------------------------------------------------------------------
# ORM adapters
# ---------------------------------------------------------------------------

def to_effort_workout(activity: Activity) -> EffortWorkout:
    return EffortWorkout(
        id=str(activity.id),
        date=activity.activity_date,
        distance_meters=activity.distance_m,
        duration_seconds=activity.duration_s,
        laps=[
            EffortLap(
                index=s.split_number,
                distance_meters=s.distance,
                elapsed_seconds=s.elapsed_time,
            )
            for s in activity.splits
        ],
    )


def load_effort_workouts(db: Session, athlete_id) -> List[EffortWorkout]:
    activities = (
        db.query(Activity)
        .options(selectinload(Activity.splits))
        .filter(Activity.athlete_id == athlete_id, Activity.sport == "run")
        .order_by(Activity.start_time.asc())
        .all()
    )
    return [to_effort_workout(a) for a in activities]


def analyze_athlete_best_efforts(
    db: Session,
    athlete_id,
    as_of: Optional[date] = None,
) -> EffortAnalysis:
    """Lap-based best effort analysis over an athlete's runs, with guidance when data is thin."""
    workouts = load_effort_workouts(db, athlete_id)
    if not workouts:
        return EffortAnalysis(notifications=[
            "No workouts found. Start logging runs to see your best efforts!",
        ])

    with_laps = [w for w in workouts if w.laps]
    if not with_laps:
        return EffortAnalysis(notifications=[
            "No lap/segment data found.",
            "Make sure your runs are synced with lap data from Strava or your watch.",
            "Laps are needed to detect efforts within your runs.",
        ])

    analysis = analyze_workouts_for_best_efforts(with_laps, as_of=as_of)
    if not analysis.best_efforts:
        analysis.notifications.extend([
            "No standard distance efforts detected yet.",
            "Best efforts are found when you run close to standard distances (400m, 1mi, 5K, etc).",
        ])
    elif not analysis.recent_prs:
        analysis.notifications.append("No recent PRs in the last 30 days.")
    return analysis
