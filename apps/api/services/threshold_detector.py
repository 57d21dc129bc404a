"""
Lactate Threshold Pace Detector

Estimates threshold pace (seconds/mile) from workout history alone, without
a race result. Three independent signals are combined:

1. Threshold efforts: steady, hard, flat runs of 20-40 minutes.
2. Pace-HR deflection: the pace where HR starts rising disproportionately
   (a field-data take on the Conconi test).
3. Sustainability boundary: the pace separating runs with under 5% cardiac
   drift from runs above it.

The algorithm itself is pure (`detect_threshold`); `load_threshold_workouts`
and `update_athlete_threshold` adapt it to the ORM.
"""
from dataclasses import dataclass, field, replace, asdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Sequence
import logging
import math

from sqlalchemy.orm import Session, selectinload

from models import Activity, Athlete
from services.vdot_calculator import calculate_pace_zones

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdConfig:
    # Threshold effort identification
    min_duration_seconds: int = 20 * 60
    max_duration_seconds: int = 40 * 60
    max_pace_cv: float = 0.06
    min_pace_ratio_vs_easy: float = 0.72  # faster than this is VO2max work
    max_pace_ratio_vs_easy: float = 0.92  # slower than this is too easy
    max_elevation_gain_per_mile: float = 80  # ft/mi

    # HR deflection
    min_hr_workouts: int = 5
    hr_deflection_sensitivity: float = 0.5
    pace_bin_width_seconds: float = 15

    # Sustainability boundary
    cardiac_drift_threshold: float = 0.05
    min_splits_for_drift: int = 3
    sustainable_duration_min: int = 20 * 60
    max_pace_drift: float = 0.08

    max_age_days: int = 180

    # Confidence
    min_efforts_for_high_conf: int = 3
    min_efforts_for_medium_conf: int = 2


DEFAULT_CONFIG = ThresholdConfig()

MIN_VALID_WORKOUTS = 3
MIN_CONFIDENCE_TO_STORE = 0.5


@dataclass
class ThresholdSplit:
    pace_seconds_per_mile: float
    duration_seconds: float
    heart_rate: Optional[float] = None


@dataclass
class ThresholdWorkout:
    date: date
    distance_miles: float
    duration_seconds: float
    average_pace_seconds_per_mile: float
    average_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None
    elevation_gain_feet: Optional[float] = None
    workout_type: Optional[str] = None
    id: Optional[str] = None
    splits: List[ThresholdSplit] = field(default_factory=list)


@dataclass
class ThresholdEffort:
    workout_date: date
    pace: float
    duration_seconds: float
    pace_variability: float = 0.0
    score: float = 0.0
    average_hr: Optional[float] = None


@dataclass
class PaceHrPoint:
    pace: float
    heart_rate: float
    workout_date: date


@dataclass
class VdotComparison:
    vdot_threshold_pace: int
    estimated_threshold_pace: int
    difference_seconds: int  # positive = estimate is slower than VDOT tables
    agreement: str  # strong | moderate | weak


@dataclass
class ThresholdEvidence:
    threshold_efforts: List[ThresholdEffort] = field(default_factory=list)
    pace_hr_points: List[PaceHrPoint] = field(default_factory=list)
    deflection_pace: Optional[int] = None
    sustainability_pace: Optional[int] = None
    signals_used: int = 0
    workouts_analyzed: int = 0
    workouts_with_hr: int = 0
    earliest: Optional[date] = None
    latest: Optional[date] = None


@dataclass
class ThresholdEstimate:
    threshold_pace_seconds_per_mile: int
    confidence: float
    method: str  # threshold_efforts | hr_deflection | sustainability | combined | insufficient_data
    evidence: ThresholdEvidence
    vdot_comparison: Optional[VdotComparison] = None

    @property
    def is_usable(self) -> bool:
        return self.method != "insufficient_data"

    def to_dict(self) -> Dict:
        return asdict(self)


def compute_coefficient_of_variation(values: Sequence[float]) -> float:
    """Population standard deviation over the mean; 0 for fewer than 2 values."""
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    if mean == 0:
        return 0.0
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance) / mean


def _average(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def filter_valid_workouts(
    workouts: Sequence[ThresholdWorkout],
    as_of: date,
    config: ThresholdConfig = DEFAULT_CONFIG,
) -> List[ThresholdWorkout]:
    """Recent runs with a plausible distance, duration and pace (4:00-15:00/mi)."""
    cutoff = as_of - timedelta(days=config.max_age_days)
    valid = []
    for w in workouts:
        if not w.distance_miles or w.distance_miles < 0.5:
            continue
        if not w.duration_seconds or w.duration_seconds < 300:
            continue
        pace = w.average_pace_seconds_per_mile
        if not pace or pace < 240 or pace > 900:
            continue
        if w.date < cutoff:
            continue
        valid.append(w)
    return valid


def _gain_per_mile(w: ThresholdWorkout) -> Optional[float]:
    if w.elevation_gain_feet and w.distance_miles > 0:
        return w.elevation_gain_feet / w.distance_miles
    return None


def score_threshold_effort(w: ThresholdWorkout, pace_ratio: float, pace_cv: float) -> float:
    """How threshold-like a run is, 0-1."""
    score = 0.0

    duration_min = w.duration_seconds / 60
    if 25 <= duration_min <= 35:
        score += 0.3
    else:
        score += max(0.0, 0.3 - abs(duration_min - 30) * 0.02)

    # Threshold pace sits around 80% of easy pace (in seconds/mile)
    score += max(0.0, 0.3 - abs(pace_ratio - 0.80) * 2.5)

    score += max(0.0, 0.2 - pace_cv * 4)

    if w.average_heart_rate and w.average_heart_rate > 150:
        score += 0.1

    gain = _gain_per_mile(w)
    if gain is not None:
        if gain < 30:
            score += 0.1
    else:
        score += 0.05

    return min(1.0, max(0.0, score))


def identify_threshold_efforts(
    workouts: Sequence[ThresholdWorkout],
    config: ThresholdConfig = DEFAULT_CONFIG,
) -> List[ThresholdEffort]:
    """Steady hard efforts, best-scoring first."""
    if not workouts:
        return []

    paces = sorted(w.average_pace_seconds_per_mile for w in workouts)
    median_pace = paces[len(paces) // 2]
    # 60th percentile (slower side) so threshold runs don't drag the reference
    easy_reference = paces[int(len(paces) * 0.6)] or median_pace

    efforts: List[ThresholdEffort] = []
    for w in workouts:
        if not (config.min_duration_seconds <= w.duration_seconds <= config.max_duration_seconds):
            continue

        gain = _gain_per_mile(w)
        if gain is not None and gain > config.max_elevation_gain_per_mile:
            continue

        pace_ratio = w.average_pace_seconds_per_mile / easy_reference
        if pace_ratio < config.min_pace_ratio_vs_easy or pace_ratio > config.max_pace_ratio_vs_easy:
            continue

        pace_cv = 0.0
        if len(w.splits) >= 2:
            pace_cv = compute_coefficient_of_variation([s.pace_seconds_per_mile for s in w.splits])
        if pace_cv > config.max_pace_cv:
            continue

        efforts.append(ThresholdEffort(
            workout_date=w.date,
            pace=w.average_pace_seconds_per_mile,
            duration_seconds=w.duration_seconds,
            pace_variability=pace_cv,
            score=score_threshold_effort(w, pace_ratio, pace_cv),
            average_hr=w.average_heart_rate,
        ))

    efforts.sort(key=lambda e: e.score, reverse=True)
    return efforts


def build_pace_hr_points(workouts: Sequence[ThresholdWorkout]) -> List[PaceHrPoint]:
    """One (pace, HR) point per run with HR, ordered slowest to fastest."""
    points = [
        PaceHrPoint(pace=w.average_pace_seconds_per_mile, heart_rate=w.average_heart_rate, workout_date=w.date)
        for w in workouts
        if w.average_heart_rate and w.average_heart_rate > 0
    ]
    points.sort(key=lambda p: p.pace, reverse=True)
    return points


def _bin_by_pace(points: Sequence[PaceHrPoint], bin_width: float) -> List[Dict[str, float]]:
    min_pace = min(p.pace for p in points)
    bins: Dict[int, List[float]] = {}
    for p in points:
        index = int(math.floor((p.pace - min_pace) / bin_width))
        bins.setdefault(index, []).append(p.heart_rate)

    return [
        {
            "center_pace": min_pace + (index + 0.5) * bin_width,
            "avg_hr": _average(hrs),
            "count": len(hrs),
        }
        for index, hrs in bins.items()
    ]


def find_deflection_point(
    points: Sequence[PaceHrPoint],
    config: ThresholdConfig = DEFAULT_CONFIG,
) -> Optional[int]:
    """
    Pace (s/mi) where the HR-vs-pace slope steepens, or None.

    Paces are binned and the slope between consecutive bins is computed from
    slow to fast. Every split point leaving at least two slopes on the slow
    side is tried; the split maximizing fast/slow mean slope wins if the
    ratio clears 1 + sensitivity.
    """
    if len(points) < config.min_hr_workouts:
        return None

    bins = _bin_by_pace(points, config.pace_bin_width_seconds)
    if len(bins) < 4:
        return None
    bins.sort(key=lambda b: b["center_pace"], reverse=True)

    slopes = []
    for prev, cur in zip(bins, bins[1:]):
        d_pace = cur["center_pace"] - prev["center_pace"]
        if d_pace == 0:
            continue
        slopes.append({
            "pace": (cur["center_pace"] + prev["center_pace"]) / 2,
            "slope": -(cur["avg_hr"] - prev["avg_hr"]) / d_pace,
        })

    if len(slopes) < 3:
        return None

    best_ratio = 0.0
    best_index = -1
    for split_at in range(2, len(slopes) - 1):
        avg_slow = _average([s["slope"] for s in slopes[:split_at]])
        avg_fast = _average([s["slope"] for s in slopes[split_at:]])
        if avg_slow <= 0 or avg_fast <= 0:
            continue
        ratio = avg_fast / avg_slow
        if ratio > best_ratio:
            best_ratio = ratio
            best_index = split_at

    if best_index < 0 or best_ratio < 1.0 + config.hr_deflection_sensitivity:
        return None

    return round(slopes[best_index]["pace"])


def find_sustainability_boundary(
    workouts: Sequence[ThresholdWorkout],
    config: ThresholdConfig = DEFAULT_CONFIG,
) -> Optional[int]:
    """
    Midpoint between the fastest pace held with under 5% HR drift and the
    slowest pace that drifted, or None without both kinds of runs.
    """
    drift_data = []
    for w in workouts:
        if w.duration_seconds < config.sustainable_duration_min:
            continue
        with_hr = [s for s in w.splits if s.heart_rate and s.heart_rate > 0]
        if len(with_hr) < config.min_splits_for_drift:
            continue

        mid = len(with_hr) // 2
        first, second = with_hr[:mid], with_hr[mid:]
        first_hr = _average([s.heart_rate for s in first])
        if first_hr == 0:
            continue
        drift = (_average([s.heart_rate for s in second]) - first_hr) / first_hr

        first_pace = _average([s.pace_seconds_per_mile for s in first])
        second_pace = _average([s.pace_seconds_per_mile for s in second])
        if first_pace and abs(second_pace - first_pace) / first_pace > config.max_pace_drift:
            continue

        drift_data.append((w.average_pace_seconds_per_mile, drift))

    if len(drift_data) < 3:
        return None

    sustainable = [pace for pace, drift in drift_data if drift < config.cardiac_drift_threshold]
    unsustainable = [pace for pace, drift in drift_data if drift >= config.cardiac_drift_threshold]
    if not sustainable or not unsustainable:
        return None

    return round((min(sustainable) + max(unsustainable)) / 2)


def _compute_confidence(signal_count: int, efforts: List[ThresholdEffort], config: ThresholdConfig) -> float:
    confidence = 0.2

    if len(efforts) >= config.min_efforts_for_high_conf:
        confidence += 0.3
    elif len(efforts) >= config.min_efforts_for_medium_conf:
        confidence += 0.2
    elif efforts:
        confidence += 0.1

    if signal_count >= 3:
        confidence += 0.2
    elif signal_count >= 2:
        confidence += 0.1

    if efforts:
        top = efforts[:3]
        confidence += _average([e.score for e in top]) * 0.15

    return min(0.95, confidence)


def validate_against_vdot(estimated_pace: int, vdot: float) -> VdotComparison:
    """Compare an estimate against the VDOT table threshold pace."""
    vdot_pace = calculate_pace_zones(vdot).threshold
    diff = estimated_pace - vdot_pace
    if abs(diff) <= 10:
        agreement = "strong"
    elif abs(diff) <= 20:
        agreement = "moderate"
    else:
        agreement = "weak"
    return VdotComparison(
        vdot_threshold_pace=vdot_pace,
        estimated_threshold_pace=estimated_pace,
        difference_seconds=diff,
        agreement=agreement,
    )


def _insufficient(workouts: Sequence[ThresholdWorkout]) -> ThresholdEstimate:
    dates = [w.date for w in workouts]
    return ThresholdEstimate(
        threshold_pace_seconds_per_mile=0,
        confidence=0.0,
        method="insufficient_data",
        evidence=ThresholdEvidence(
            workouts_analyzed=len(workouts),
            workouts_with_hr=sum(1 for w in workouts if w.average_heart_rate and w.average_heart_rate > 0),
            earliest=min(dates) if dates else None,
            latest=max(dates) if dates else None,
        ),
    )


def detect_threshold(
    workouts: Sequence[ThresholdWorkout],
    as_of: Optional[date] = None,
    vdot: Optional[float] = None,
    config: ThresholdConfig = DEFAULT_CONFIG,
) -> ThresholdEstimate:
    """
    Estimate threshold pace from a workout history.

    Args:
        workouts: Runs covering ideally 4-8 weeks of training
        as_of: Reference date for the age cutoff (default today)
        vdot: Known VDOT to compare the estimate against
        config: Overrides for the detection constants

    Returns:
        ThresholdEstimate; method is "insufficient_data" with fewer than
        three valid runs or when no signal could be extracted.
    """
    as_of = as_of or date.today()
    valid = filter_valid_workouts(workouts, as_of, config)
    if len(valid) < MIN_VALID_WORKOUTS:
        return _insufficient(workouts)

    valid.sort(key=lambda w: w.date, reverse=True)

    efforts = identify_threshold_efforts(valid, config)

    with_hr = [w for w in valid if w.average_heart_rate and w.average_heart_rate > 0]
    points = build_pace_hr_points(with_hr)
    deflection = find_deflection_point(points, config) if len(with_hr) >= config.min_hr_workouts else None

    sustainability = find_sustainability_boundary(valid, config)

    signals = []  # (pace, weight, method)
    if efforts:
        top = efforts[:5]
        score_sum = sum(e.score for e in top)
        if score_sum > 0:
            effort_pace = sum(e.pace * e.score for e in top) / score_sum
        else:
            effort_pace = _average([e.pace for e in top])
        if len(efforts) >= config.min_efforts_for_high_conf:
            weight = 0.5
        elif len(efforts) >= config.min_efforts_for_medium_conf:
            weight = 0.35
        else:
            weight = 0.2
        signals.append((effort_pace, weight, "threshold_efforts"))
    if deflection is not None:
        signals.append((deflection, 0.3, "hr_deflection"))
    if sustainability is not None:
        signals.append((sustainability, 0.2, "sustainability"))

    if not signals:
        return _insufficient(workouts)

    total_weight = sum(weight for _, weight, _ in signals)
    pace = sum(p * weight / total_weight for p, weight, _ in signals)

    confidence = _compute_confidence(len(signals), efforts, config)
    if len(signals) >= 2:
        paces = [p for p, _, _ in signals]
        spread = max(paces) - min(paces)
        if spread <= 15:
            confidence = min(1.0, confidence + 0.15)
        elif spread <= 30:
            confidence = min(1.0, confidence + 0.05)
        elif spread > 45:
            confidence = max(0.1, confidence - 0.15)

    estimate = ThresholdEstimate(
        threshold_pace_seconds_per_mile=round(pace),
        confidence=round(confidence, 2),
        method="combined" if len(signals) > 1 else signals[0][2],
        evidence=ThresholdEvidence(
            threshold_efforts=efforts,
            pace_hr_points=points,
            deflection_pace=deflection,
            sustainability_pace=sustainability,
            signals_used=len(signals),
            workouts_analyzed=len(valid),
            workouts_with_hr=len(with_hr),
            earliest=valid[-1].date,
            latest=valid[0].date,
        ),
    )

    if vdot:
        estimate.vdot_comparison = validate_against_vdot(estimate.threshold_pace_seconds_per_mile, vdot)

    return estimate


def _to_threshold_workout(activity: Activity) -> Optional[ThresholdWorkout]:
    miles = activity.distance_miles
    pace = activity.pace_per_mile
    if not miles or not pace:
        return None

    splits = []
    for s in activity.splits:
        split_pace = s.pace_per_mile
        if split_pace is None:
            continue
        splits.append(ThresholdSplit(
            pace_seconds_per_mile=split_pace,
            duration_seconds=s.moving_time or s.elapsed_time or 0,
            heart_rate=s.average_heartrate,
        ))

    return ThresholdWorkout(
        id=str(activity.id),
        date=activity.activity_date,
        distance_miles=miles,
        duration_seconds=activity.duration_s,
        average_pace_seconds_per_mile=pace,
        average_heart_rate=activity.avg_hr,
        max_heart_rate=activity.max_hr,
        elevation_gain_feet=activity.elevation_gain_ft,
        workout_type=activity.workout_type,
        splits=splits,
    )


def load_threshold_workouts(
    db: Session,
    athlete_id,
    as_of: Optional[date] = None,
    max_age_days: int = DEFAULT_CONFIG.max_age_days,
) -> List[ThresholdWorkout]:
    """Runs (with splits) from the detection window, converted to detector inputs."""
    as_of = as_of or date.today()
    since = datetime.combine(as_of - timedelta(days=max_age_days + 1), time.min, tzinfo=timezone.utc)
    activities = (
        db.query(Activity)
        .options(selectinload(Activity.splits))
        .filter(
            Activity.athlete_id == athlete_id,
            Activity.sport == "run",
            Activity.start_time >= since,
        )
        .order_by(Activity.start_time.desc())
        .all()
    )
    workouts = []
    for activity in activities:
        workout = _to_threshold_workout(activity)
        if workout is not None:
            workouts.append(workout)
    return workouts


def update_athlete_threshold(
    db: Session,
    athlete: Athlete,
    as_of: Optional[date] = None,
    config: ThresholdConfig = DEFAULT_CONFIG,
) -> ThresholdEstimate:
    """
    Detect threshold pace for an athlete and store it when confident enough.

    The caller commits.
    """
    workouts = load_threshold_workouts(db, athlete.id, as_of, config.max_age_days)
    estimate = detect_threshold(workouts, as_of=as_of, vdot=athlete.vdot, config=config)

    if estimate.is_usable and estimate.confidence >= MIN_CONFIDENCE_TO_STORE:
        athlete.threshold_pace_per_mile = float(estimate.threshold_pace_seconds_per_mile)
        athlete.threshold_confidence = estimate.confidence
        logger.info(
            "Threshold pace updated",
            extra={"extra_fields": {
                "athlete_id": str(athlete.id),
                "pace": estimate.threshold_pace_seconds_per_mile,
                "confidence": estimate.confidence,
                "method": estimate.method,
            }},
        )
    return estimate


def with_overrides(**overrides) -> ThresholdConfig:
    """Default config with selected constants replaced."""
    return replace(DEFAULT_CONFIG, **overrides)
