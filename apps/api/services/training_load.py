"""
Training Load Calculator

Fitness/fatigue modeling from workout history:
- Workout load: duration x intensity, with endurance and pace modifiers
- CTL (Chronic Training Load) - fitness, 42-day exponential average
- ATL (Acute Training Load) - fatigue, 7-day exponential average
- TSB (Training Stress Balance) - form, CTL - ATL

Positive TSB means fresh (possibly losing fitness); negative means fatigued
but building. Rest days count as zero-load days, so series are gap-filled
before averaging.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import List, Dict, Optional, Iterable
from uuid import UUID
from dataclasses import dataclass, asdict
from sqlalchemy.orm import Session
import math
import logging

from models import Activity, Athlete

logger = logging.getLogger(__name__)


INTENSITY_FACTORS: Dict[str, float] = {
    "recovery": 0.5,
    "easy": 0.6,
    "long": 0.65,  # duration bonus compensates for the low factor
    "steady": 0.75,
    "tempo": 0.85,
    "interval": 1.0,
    "race": 1.1,
    "cross_train": 0.4,
    "other": 0.6,
}

CTL_TIME_CONSTANT = 42
ATL_TIME_CONSTANT = 7
CTL_DECAY = 1 - math.exp(-1 / CTL_TIME_CONSTANT)
ATL_DECAY = 1 - math.exp(-1 / ATL_TIME_CONSTANT)

MIN_TSS_DURATION_MINUTES = 5


@dataclass
class DailyLoad:
    date: date
    load: float


@dataclass
class FitnessMetrics:
    date: date
    ctl: float
    atl: float
    tsb: float
    daily_load: float


@dataclass
class FitnessStatus:
    status: str  # fresh | optimal | tired | overreached
    label: str


@dataclass
class RampRateRisk:
    level: str  # safe | moderate | elevated | high
    label: str
    message: str
    recommendation: Optional[str] = None


@dataclass
class WorkoutStress:
    """Stress score for one workout."""
    activity_id: UUID
    date: date
    tss: float
    load: float
    duration_minutes: float
    intensity_factor: float
    calculation_method: str  # hrTSS | rTSS | load_model | too_short


@dataclass
class FitnessTrend:
    metrics: List[FitnessMetrics]
    current_ctl: float
    current_atl: float
    current_tsb: float
    status: FitnessStatus
    weekly_load: int
    optimal_range: Dict[str, int]
    ctl_change: Optional[float]
    ramp_rate: Optional[float]
    ramp_rate_risk: RampRateRisk
    has_data: bool
    confidence: float
    message: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class LoadBar:
    """Current week versus the previous week and the 4-week norm."""
    current_7_day_load: int
    previous_7_day_load: int
    optimal_min: int
    optimal_max: int
    load_status: str  # low | optimal | high
    percent_change: Optional[int] = None


def calculate_workout_load(
    duration_minutes: float,
    workout_type: Optional[str],
    avg_pace_seconds_per_mile: Optional[float] = None,
) -> int:
    """
    Training load for one workout.

    Base load is duration x intensity factor. Efforts over an hour get a
    0.5%/minute endurance bonus. A meaningful pace (4:00-15:00/mi) scales
    load by sqrt(600 / pace), so a 10:00/mi run is neutral.
    """
    if not duration_minutes or duration_minutes <= 0:
        return 0

    intensity = INTENSITY_FACTORS.get(workout_type or "easy", INTENSITY_FACTORS["other"])
    load = duration_minutes * intensity

    if duration_minutes > 60:
        load *= 1 + (duration_minutes - 60) * 0.005

    if avg_pace_seconds_per_mile and 240 <= avg_pace_seconds_per_mile <= 900:
        load *= math.sqrt(600 / avg_pace_seconds_per_mile)

    return round(load)


def activity_load(activity: Activity) -> int:
    duration_minutes = (activity.duration_s or 0) / 60
    return calculate_workout_load(
        duration_minutes,
        activity.workout_type,
        activity.pace_per_mile,
    )


def fill_daily_load_gaps(
    loads: Iterable[DailyLoad],
    start_date: date,
    end_date: date,
) -> List[DailyLoad]:
    """One entry per day from start to end (inclusive); same-day loads are summed."""
    by_day: Dict[date, float] = {}
    for entry in loads:
        by_day[entry.date] = by_day.get(entry.date, 0) + entry.load

    result: List[DailyLoad] = []
    current = start_date
    while current <= end_date:
        result.append(DailyLoad(date=current, load=by_day.get(current, 0)))
        current += timedelta(days=1)
    return result


def calculate_fitness_metrics(daily_loads: Iterable[DailyLoad]) -> List[FitnessMetrics]:
    """CTL/ATL/TSB for each day. Both averages start from zero."""
    metrics: List[FitnessMetrics] = []
    ctl = 0.0
    atl = 0.0

    for day in sorted(daily_loads, key=lambda d: d.date):
        ctl += CTL_DECAY * (day.load - ctl)
        atl += ATL_DECAY * (day.load - atl)
        metrics.append(FitnessMetrics(
            date=day.date,
            ctl=round(ctl, 1),
            atl=round(atl, 1),
            tsb=round(ctl - atl, 1),
            daily_load=day.load,
        ))

    return metrics


def calculate_optimal_load_range(current_ctl: float) -> Dict[str, int]:
    """Weekly load band: 80-120% of the load that would hold CTL steady."""
    weekly_target = current_ctl * 7
    return {
        "min": round(weekly_target * 0.8),
        "max": round(weekly_target * 1.2),
    }


def get_fitness_status(tsb: float) -> FitnessStatus:
    if tsb > 20:
        return FitnessStatus("fresh", "Well Rested")
    if tsb > 5:
        return FitnessStatus("optimal", "Race Ready")
    if tsb > -10:
        return FitnessStatus("optimal", "Training")
    if tsb > -25:
        return FitnessStatus("tired", "Fatigued")
    return FitnessStatus("overreached", "Overreached")


def calculate_rolling_load(daily_loads: Iterable[DailyLoad], days: int = 7) -> float:
    """Sum of the most recent `days` entries."""
    recent = sorted(daily_loads, key=lambda d: d.date, reverse=True)[:days]
    return sum(d.load for d in recent)


def calculate_ramp_rate(metrics: List[FitnessMetrics], weeks: int = 4) -> Optional[float]:
    """
    CTL change per week over the last `weeks` weeks.

    None with less than a week of metrics.
    """
    if len(metrics) < 7:
        return None

    end_idx = len(metrics) - 1
    start_idx = max(0, end_idx - weeks * 7)
    if end_idx - start_idx < 7:
        return None

    actual_weeks = (end_idx - start_idx) / 7
    rate = (metrics[end_idx].ctl - metrics[start_idx].ctl) / actual_weeks
    return round(rate, 1)


def get_ramp_rate_risk(ramp_rate: Optional[float]) -> RampRateRisk:
    """Injury-risk band for a CTL ramp rate (points/week)."""
    if ramp_rate is None:
        return RampRateRisk(
            level="safe",
            label="Insufficient Data",
            message="Not enough training history to calculate ramp rate",
        )

    if ramp_rate < 0:
        return RampRateRisk(
            level="safe",
            label="Decreasing",
            message=f"Fitness declining at {abs(ramp_rate):.1f} pts/week",
            recommendation=(
                "Consider increasing training volume gradually to maintain fitness"
                if ramp_rate < -5 else None
            ),
        )

    if ramp_rate < 5:
        return RampRateRisk("safe", "Conservative", f"Building at {ramp_rate:.1f} pts/week")

    if ramp_rate < 8:
        return RampRateRisk("moderate", "Moderate", f"Building at {ramp_rate:.1f} pts/week")

    if ramp_rate < 10:
        return RampRateRisk(
            level="elevated",
            label="Aggressive",
            message=f"Ramping at {ramp_rate:.1f} pts/week",
            recommendation="Consider adding an extra recovery day or reducing volume by 10%",
        )

    return RampRateRisk(
        level="high",
        label="High Risk",
        message=f"Rapid ramp at {ramp_rate:.1f} pts/week",
        recommendation="High injury risk - schedule a recovery week soon and reduce intensity",
    )


def _data_confidence(workout_days: int):
    if workout_days == 0:
        return 0.0, "No workout data available - log some runs to see fitness trends"
    if workout_days < 7:
        return 0.3, "Need at least a week of training data for reliable fitness metrics"
    if workout_days < 28:
        return 0.6, "Limited training history - metrics will become more accurate over time"
    return 1.0, None


class TrainingLoadCalculator:
    """
    Computes workout stress and fitness trends for an athlete.

    Fitness trends are driven by the workout-load model; hrTSS/rTSS are
    reported per workout when heart-rate or threshold data exists.
    """

    WARMUP_DAYS = CTL_TIME_CONSTANT

    def __init__(self, db: Session):
        self.db = db

    def calculate_workout_tss(self, activity: Activity, athlete: Athlete) -> WorkoutStress:
        """Stress for one workout using the best method the data allows."""
        duration_minutes = (activity.duration_s or 0) / 60
        load = activity_load(activity)

        if duration_minutes < MIN_TSS_DURATION_MINUTES:
            return WorkoutStress(
                activity_id=activity.id,
                date=activity.activity_date,
                tss=0,
                load=load,
                duration_minutes=duration_minutes,
                intensity_factor=0,
                calculation_method="too_short",
            )

        if activity.avg_hr and athlete.max_hr and athlete.resting_hr and athlete.max_hr > athlete.resting_hr:
            return self._calculate_hr_tss(activity, athlete, duration_minutes, load)

        pace = activity.pace_per_mile
        if pace and athlete.threshold_pace_per_mile:
            return self._calculate_running_tss(activity, athlete, duration_minutes, load, pace)

        intensity = INTENSITY_FACTORS.get(activity.workout_type or "easy", INTENSITY_FACTORS["other"])
        return WorkoutStress(
            activity_id=activity.id,
            date=activity.activity_date,
            tss=round(duration_minutes * intensity ** 2 / 60 * 100, 1),
            load=load,
            duration_minutes=duration_minutes,
            intensity_factor=intensity,
            calculation_method="load_model",
        )

    def _calculate_hr_tss(self, activity, athlete, duration_minutes, load) -> WorkoutStress:
        """
        hrTSS from heart-rate reserve with TRIMP-style exponential weighting,
        normalized so an hour at threshold (~88% HRR) scores 100.
        """
        hr_reserve = (activity.avg_hr - athlete.resting_hr) / (athlete.max_hr - athlete.resting_hr)
        hr_reserve = max(0, min(1.1, hr_reserve))

        trimp_factor = 0.75 * math.exp(1.8 * hr_reserve)
        threshold_trimp = 0.75 * math.exp(1.8 * 0.88)
        intensity_factor = trimp_factor / threshold_trimp

        return WorkoutStress(
            activity_id=activity.id,
            date=activity.activity_date,
            tss=round(duration_minutes * intensity_factor ** 2 / 60 * 100, 1),
            load=load,
            duration_minutes=duration_minutes,
            intensity_factor=round(intensity_factor, 3),
            calculation_method="hrTSS",
        )

    def _calculate_running_tss(self, activity, athlete, duration_minutes, load, pace) -> WorkoutStress:
        """rTSS: intensity is threshold pace over actual pace, bounded to 0.5-1.5."""
        intensity_factor = athlete.threshold_pace_per_mile / pace
        intensity_factor = max(0.5, min(1.5, intensity_factor))

        return WorkoutStress(
            activity_id=activity.id,
            date=activity.activity_date,
            tss=round(duration_minutes * intensity_factor ** 2 / 60 * 100, 1),
            load=load,
            duration_minutes=duration_minutes,
            intensity_factor=round(intensity_factor, 3),
            calculation_method="rTSS",
        )

    def _activities_between(self, athlete_id: UUID, start: date, end: date) -> List[Activity]:
        # start_time is filtered with a one-day margin; local_date decides the calendar day.
        window_start = datetime.combine(start - timedelta(days=1), time.min, tzinfo=timezone.utc)
        window_end = datetime.combine(end + timedelta(days=2), time.min, tzinfo=timezone.utc)
        rows = (
            self.db.query(Activity)
            .filter(
                Activity.athlete_id == athlete_id,
                Activity.start_time >= window_start,
                Activity.start_time < window_end,
            )
            .order_by(Activity.start_time)
            .all()
        )
        return [a for a in rows if start <= a.activity_date <= end]

    def _workout_loads(self, activities: List[Activity]) -> List[DailyLoad]:
        return [
            DailyLoad(date=a.activity_date, load=activity_load(a))
            for a in activities
            if a.duration_s and a.duration_s > 0
        ]

    def get_fitness_trend(
        self,
        athlete_id: UUID,
        days: int = 90,
        as_of: Optional[date] = None,
    ) -> FitnessTrend:
        """
        Fitness trend for the last `days` days ending at `as_of` (default today).

        An extra 42 days are loaded so CTL is warmed up by the first displayed day.
        """
        end_date = as_of or date.today()
        start_date = end_date - timedelta(days=days + self.WARMUP_DAYS)

        activities = self._activities_between(athlete_id, start_date, end_date)
        workout_loads = self._workout_loads(activities)
        daily = fill_daily_load_gaps(workout_loads, start_date, end_date)
        metrics = calculate_fitness_metrics(daily)

        current = metrics[-1] if metrics else FitnessMetrics(end_date, 0, 0, 0, 0)

        four_weeks_ago = end_date - timedelta(days=28)
        past = next((m for m in metrics if m.date == four_weeks_ago), None)
        ctl_change = round(current.ctl - past.ctl, 1) if past else None

        weekly_load = sum(m.daily_load for m in metrics[-7:])
        ramp_rate = calculate_ramp_rate(metrics, 4)

        workout_days = len({w.date for w in workout_loads})
        confidence, message = _data_confidence(workout_days)

        display_start = end_date - timedelta(days=days)
        trend = FitnessTrend(
            metrics=[m for m in metrics if m.date >= display_start],
            current_ctl=current.ctl,
            current_atl=current.atl,
            current_tsb=current.tsb,
            status=get_fitness_status(current.tsb),
            weekly_load=round(weekly_load),
            optimal_range=calculate_optimal_load_range(current.ctl),
            ctl_change=ctl_change,
            ramp_rate=ramp_rate,
            ramp_rate_risk=get_ramp_rate_risk(ramp_rate),
            has_data=workout_days > 0,
            confidence=confidence,
            message=message,
        )
        logger.debug(
            "Fitness trend computed",
            extra={"extra_fields": {"athlete_id": str(athlete_id), "days": days, "workout_days": workout_days}},
        )
        return trend

    def get_load_history(
        self,
        athlete_id: UUID,
        days: int = 60,
        as_of: Optional[date] = None,
    ) -> List[FitnessMetrics]:
        """Daily CTL/ATL/TSB for the last `days` days (warm-up excluded)."""
        return self.get_fitness_trend(athlete_id, days=days, as_of=as_of).metrics

    def get_load_bar(self, athlete_id: UUID, as_of: Optional[date] = None) -> LoadBar:
        """This week's load against last week and the 4-week average."""
        end_date = as_of or date.today()
        start_date = end_date - timedelta(days=28)
        one_week_ago = end_date - timedelta(days=7)
        two_weeks_ago = end_date - timedelta(days=14)

        current_load = 0
        previous_load = 0
        total = 0
        for activity in self._activities_between(athlete_id, start_date, end_date):
            if not activity.duration_s:
                continue
            load = activity_load(activity)
            total += load
            day = activity.activity_date
            if one_week_ago <= day <= end_date:
                current_load += load
            elif two_weeks_ago <= day < one_week_ago:
                previous_load += load

        avg_weekly = total / 4
        optimal_min = round(avg_weekly * 0.8)
        optimal_max = round(avg_weekly * 1.2)

        if current_load < optimal_min:
            status = "low"
        elif current_load > optimal_max:
            status = "high"
        else:
            status = "optimal"

        percent_change = (
            round((current_load - previous_load) / previous_load * 100)
            if previous_load > 0 else None
        )

        return LoadBar(
            current_7_day_load=round(current_load),
            previous_7_day_load=round(previous_load),
            optimal_min=optimal_min,
            optimal_max=optimal_max,
            load_status=status,
            percent_change=percent_change,
        )
