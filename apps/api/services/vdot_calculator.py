"""
VDOT Calculator - Based on Daniels' Running Formula

Fitness score (VDOT), training pace zones, race-time prediction and
weather/elevation corrections. Uses the Daniels/Gilbert oxygen-cost and
drop-dead equations rather than lookup tables.

All paces are seconds per mile unless a function says otherwise.
"""
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional
import math

METERS_PER_MILE = 1609.34
KM_PER_MILE = 1.60934

VDOT_MIN = 15.0
VDOT_MAX = 85.0

# Race distances used for equivalent performances
RACE_DISTANCES = {
    "5K": {"label": "5K", "meters": 5000, "miles": 3.1},
    "10K": {"label": "10K", "meters": 10000, "miles": 6.2},
    "15K": {"label": "15K", "meters": 15000, "miles": 9.3},
    "10_mile": {"label": "10 Mile", "meters": 16093, "miles": 10.0},
    "half_marathon": {"label": "Half Marathon", "meters": 21097, "miles": 13.1},
    "marathon": {"label": "Marathon", "meters": 42195, "miles": 26.2},
}

# Fraction of VO2max run at each training zone
ZONE_INTENSITIES = {
    "recovery": 0.55,
    "easy": 0.65,
    "general_aerobic": 0.70,
    "marathon": 0.78,
    "half_marathon": 0.83,
    "tempo": 0.85,
    "threshold": 0.88,
    "vo2max": 0.95,
    "interval": 0.97,
    "repetition": 1.05,
}

OPTIMAL_RACING_TEMP_F = 45


@dataclass
class PaceZones:
    """Training paces in seconds per mile for a given VDOT."""
    vdot: float
    recovery: int
    easy: int
    general_aerobic: int
    marathon: int
    half_marathon: int
    tempo: int
    threshold: int
    vo2max: int
    interval: int
    repetition: int

    def to_dict(self) -> Dict:
        return asdict(self)


def round_half_up(value: float, ndigits: int = 0):
    """Round halves up (2.5 -> 3, -2.5 -> -2) instead of to the even neighbour."""
    factor = 10 ** ndigits
    rounded = math.floor(value * factor + 0.5) / factor
    return int(rounded) if ndigits == 0 else rounded


def _percent_vo2max(time_minutes: float) -> float:
    return (
        0.8
        + 0.1894393 * math.exp(-0.012778 * time_minutes)
        + 0.2989558 * math.exp(-0.1932605 * time_minutes)
    )


def _vo2_at_velocity(velocity_m_per_min: float) -> float:
    return -4.60 + 0.182258 * velocity_m_per_min + 0.000104 * velocity_m_per_min ** 2


def calculate_vdot(distance_meters: float, time_seconds: float) -> Optional[float]:
    """
    Calculate VDOT from a race distance and finish time.

    Args:
        distance_meters: Race distance in meters
        time_seconds: Finish time in seconds

    Returns:
        VDOT clamped to 15-85 and rounded to 1 decimal, or None for invalid input
    """
    if not distance_meters or not time_seconds or distance_meters <= 0 or time_seconds <= 0:
        return None

    time_minutes = time_seconds / 60.0
    velocity = distance_meters / time_minutes
    vdot = _vo2_at_velocity(velocity) / _percent_vo2max(time_minutes)

    clamped = max(VDOT_MIN, min(VDOT_MAX, vdot))
    return round_half_up(clamped, 1)


def elevation_pace_correction(elevation_gain_ft: float, distance_miles: float) -> int:
    """Seconds per mile lost to climbing: ~12 s/mi per 100 ft/mi of gain."""
    if distance_miles <= 0 or elevation_gain_ft <= 0:
        return 0
    gain_per_mile = elevation_gain_ft / distance_miles
    return round_half_up((gain_per_mile / 100) * 12)


def get_weather_pace_adjustment(
    temperature_f: float,
    humidity_pct: float,
    dew_point_f: Optional[float] = None,
) -> int:
    """
    Seconds per mile to add for the given conditions (positive = slower).

    Optimum is ~45°F. Heat cost grows non-linearly above 70°F and 85°F;
    humidity only matters once it is warm. Cold costs a little below 35°F.
    """
    adjustment = 0.0

    if temperature_f > OPTIMAL_RACING_TEMP_F:
        mild_zone = (70 - OPTIMAL_RACING_TEMP_F) * 0.4
        if temperature_f > 85:
            adjustment += mild_zone + (85 - 70) * 1.0 + (temperature_f - 85) * 1.5
        elif temperature_f > 70:
            adjustment += mild_zone + (temperature_f - 70) * 1.0
        else:
            adjustment += (temperature_f - OPTIMAL_RACING_TEMP_F) * 0.4

        if temperature_f > 65 and humidity_pct > 50:
            adjustment += (humidity_pct - 50) * 0.1
        elif temperature_f > 55 and humidity_pct > 60:
            adjustment += (humidity_pct - 60) * 0.05
    elif temperature_f < 35:
        adjustment += (35 - temperature_f) * 0.2

    if dew_point_f is not None and dew_point_f > 60:
        adjustment += (dew_point_f - 60) * 0.3

    return round_half_up(adjustment)


def calculate_adjusted_vdot(
    distance_meters: float,
    time_seconds: float,
    temperature_f: Optional[float] = None,
    humidity_pct: Optional[float] = None,
    elevation_gain_ft: Optional[float] = None,
) -> Optional[float]:
    """
    VDOT after correcting the finish time to flat, cool conditions.

    The correction never removes more than 15% of the actual time.
    """
    if not distance_meters or not time_seconds or distance_meters <= 0 or time_seconds <= 0:
        return None

    distance_miles = distance_meters / METERS_PER_MILE
    pace_adjustment = 0

    if temperature_f is not None and humidity_pct is not None:
        pace_adjustment += get_weather_pace_adjustment(temperature_f, humidity_pct)
    if elevation_gain_ft is not None and elevation_gain_ft > 0:
        pace_adjustment += elevation_pace_correction(elevation_gain_ft, distance_miles)

    if pace_adjustment <= 0:
        return calculate_vdot(distance_meters, time_seconds)

    corrected_time = time_seconds - pace_adjustment * distance_miles
    safe_time = max(corrected_time, time_seconds * 0.85)
    return calculate_vdot(distance_meters, safe_time)


def velocity_from_vdot(vdot: float, percent_vo2max: float) -> float:
    """Velocity (m/min) that costs `vdot * percent_vo2max` ml/kg/min."""
    vo2 = vdot * percent_vo2max
    a, b, c = 0.000104, 0.182258, -4.60 - vo2
    return (-b + math.sqrt(b * b - 4 * a * c)) / (2 * a)


def _velocity_to_pace(velocity_m_per_min: float) -> int:
    return round_half_up(METERS_PER_MILE / velocity_m_per_min * 60)


def calculate_pace_zones(vdot: float) -> PaceZones:
    """Training paces (seconds per mile) for every zone at this VDOT."""
    if vdot is None or vdot <= 0:
        raise ValueError("VDOT must be positive")

    paces = {
        zone: _velocity_to_pace(velocity_from_vdot(vdot, pct))
        for zone, pct in ZONE_INTENSITIES.items()
    }
    return PaceZones(vdot=vdot, **paces)


def estimate_vdot_from_easy_pace(easy_pace_seconds_per_mile: float) -> Optional[float]:
    """Back out VDOT assuming easy running is ~65% of VO2max."""
    if not easy_pace_seconds_per_mile or easy_pace_seconds_per_mile <= 0:
        return None
    velocity = METERS_PER_MILE / (easy_pace_seconds_per_mile / 60)
    return round_half_up(_vo2_at_velocity(velocity) / 0.65, 1)


def predict_race_time(vdot: float, distance_meters: float) -> Optional[int]:
    """
    Predict a finish time (seconds) for a distance at the given VDOT.

    Starts from 80% VO2max velocity and refines until the implied VDOT is
    within 0.1 of the target (at most 10 passes).
    """
    if not vdot or vdot <= 0 or not distance_meters or distance_meters <= 0:
        return None

    time_seconds = distance_meters / velocity_from_vdot(vdot, 0.80) * 60
    for _ in range(10):
        calculated = calculate_vdot(distance_meters, time_seconds)
        if abs(calculated - vdot) < 0.1:
            break
        time_seconds = time_seconds / (vdot / calculated)

    return round_half_up(time_seconds)


def get_equivalent_race_times(vdot: float) -> Dict[str, Dict]:
    """Predicted time and pace per mile for every standard race distance."""
    results: Dict[str, Dict] = {}
    for key, distance in RACE_DISTANCES.items():
        time_seconds = predict_race_time(vdot, distance["meters"])
        results[key] = {
            "label": distance["label"],
            "distance_meters": distance["meters"],
            "time_seconds": time_seconds,
            "time_formatted": format_duration(time_seconds),
            "pace_per_mile": round_half_up(time_seconds / distance["miles"]),
        }
    return results


def adjust_pace_zones_for_weather(zones: PaceZones, adjustment_s_per_mile: int) -> PaceZones:
    """
    Slow every zone by the weather adjustment.

    Hard efforts are shorter, so they absorb less of it: threshold 80%,
    VO2max/interval 50%, repetition 30%.
    """
    if adjustment_s_per_mile == 0:
        return zones

    adj = adjustment_s_per_mile
    return PaceZones(
        vdot=zones.vdot,
        recovery=zones.recovery + adj,
        easy=zones.easy + adj,
        general_aerobic=zones.general_aerobic + adj,
        marathon=zones.marathon + adj,
        half_marathon=zones.half_marathon + adj,
        tempo=zones.tempo + adj,
        threshold=zones.threshold + round_half_up(adj * 0.8),
        vo2max=zones.vo2max + round_half_up(adj * 0.5),
        interval=zones.interval + round_half_up(adj * 0.5),
        repetition=zones.repetition + round_half_up(adj * 0.3),
    )


_ZONE_ALIASES = {
    "recovery": "recovery",
    "easy": "easy",
    "easy_long": "easy",
    "long": "easy",
    "general_aerobic": "general_aerobic",
    "steady": "general_aerobic",
    "marathon": "marathon",
    "half_marathon": "half_marathon",
    "tempo": "tempo",
    "threshold": "threshold",
    "vo2max": "vo2max",
    "interval": "interval",
    "repetition": "repetition",
}


def get_pace_for_zone(zones: PaceZones, zone: str) -> Optional[int]:
    """Pace for a zone name or workout-type alias; None if unknown."""
    field = _ZONE_ALIASES.get((zone or "").lower())
    if not field:
        return None
    return getattr(zones, field)


_ZONE_DESCRIPTIONS = [
    ("recovery", "Recovery", "Very easy jog. Should feel almost too slow.",
     "Active recovery, blood flow without training stress."),
    ("easy", "Easy", "Conversational pace. Can speak in full sentences.",
     "Aerobic base building, daily training pace."),
    ("general_aerobic", "General Aerobic", "Comfortable but purposeful.",
     "Higher aerobic stimulus, good for medium-long runs."),
    ("marathon", "Marathon", "Comfortably hard. Short phrases.",
     "Marathon race pace, long run goal pace segments."),
    ("half_marathon", "Half Marathon", "Hard but sustainable. Few words at a time.",
     "Half marathon race pace, sustained tempo efforts."),
    ("tempo", "Tempo", "Comfortably hard. Threshold of conversation.",
     "Lactate clearance, controlled discomfort."),
    ("threshold", "Threshold", "Hard. At the edge of sustainable.",
     "Lactate threshold improvement, ~1 hour race pace."),
    ("vo2max", "VO2max", "Very hard. Can only say a few words.",
     "Maximum aerobic capacity development."),
    ("interval", "Interval", "Very hard. Near maximum sustainable.",
     "5K race pace, VO2max intervals."),
    ("repetition", "Repetition", "Fast and relaxed. Short reps with full recovery.",
     "Speed development, running economy."),
]


def get_pace_zone_descriptions(zones: PaceZones) -> List[Dict]:
    return [
        {
            "zone": label,
            "pace": format_pace(getattr(zones, field)),
            "pace_seconds_per_mile": getattr(zones, field),
            "effort_description": effort,
            "purpose": purpose,
        }
        for field, label, effort, purpose in _ZONE_DESCRIPTIONS
    ]


def calculate_heat_index(temperature_f: float, humidity_pct: float) -> float:
    """NWS Rothfusz heat index; returns the air temperature when it is not hot/humid enough."""
    t, rh = temperature_f, humidity_pct
    if t < 68 or rh < 40:
        return t

    hi = (
        -42.379
        + 2.04901523 * t
        + 10.14333127 * rh
        - 0.22475541 * t * rh
        - 0.00683783 * t * t
        - 0.05481717 * rh * rh
        + 0.00122874 * t * t * rh
        + 0.00085282 * t * rh * rh
        - 0.00000199 * t * t * rh * rh
    )
    if rh < 13 and 80 <= t <= 112:
        hi -= ((13 - rh) / 4) * math.sqrt((17 - abs(t - 95)) / 17)
    if rh > 85 and 80 <= t <= 87:
        hi += ((rh - 85) / 10) * ((87 - t) / 5)
    return hi


def format_pace(seconds_per_mile: Optional[float], unit: str = "mi") -> Optional[str]:
    """Format a per-mile pace as M:SS per mile or per km."""
    if not seconds_per_mile or seconds_per_mile <= 0:
        return None
    seconds = seconds_per_mile / KM_PER_MILE if unit == "km" else seconds_per_mile
    rounded = round_half_up(seconds)
    return f"{rounded // 60}:{rounded % 60:02d}"


def format_duration(total_seconds: Optional[float]) -> Optional[str]:
    """H:MM:SS for an hour or more, else M:SS."""
    if total_seconds is None:
        return None
    total = round_half_up(total_seconds)
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"
