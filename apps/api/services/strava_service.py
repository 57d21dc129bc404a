"""
Strava API client.

OAuth (authorize URL, code exchange, refresh, deauthorize), token freshness
for stored athletes, activity/lap/stream reads, and the conversions from
Strava payloads to our Activity/ActivitySplit fields.

Tokens are stored encrypted on the Athlete row; every function here that
takes an access token expects it already decrypted.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import requests

from core.config import settings
from services.token_encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

# Minimum scopes: basic profile plus private activities
STRAVA_SCOPES = "read,activity:read_all"

RUNNING_ACTIVITY_TYPES = ("Run", "VirtualRun", "TrailRun")

TOKEN_REFRESH_BUFFER_S = 300

# Strava's short-term rate limit window
DEFAULT_RETRY_AFTER_S = 900

METERS_PER_MILE = 1609.34
FEET_PER_METER = 3.28084


class StravaRateLimitError(RuntimeError):
    def __init__(self, message: str, *, retry_after_s: int = DEFAULT_RETRY_AFTER_S):
        super().__init__(message)
        self.retry_after_s = int(retry_after_s)


class StravaAuthError(RuntimeError):
    """Strava rejected our credentials (401, or a refresh token that no longer works)."""


class StravaOAuthCapacityError(RuntimeError):
    """
    Strava refused the connection because the app hit its connected-athlete limit.
    """


def _looks_like_capacity_error(payload: Optional[dict]) -> bool:
    if not isinstance(payload, dict):
        return False
    message = str(payload.get("message") or "").lower()
    if "limit" in message and "athlete" in message:
        return True
    for err in payload.get("errors") or []:
        if isinstance(err, dict) and "limit" in str(err.get("code") or "").lower():
            return True
    return False


def _require_credentials():
    if not settings.STRAVA_CLIENT_ID or not settings.STRAVA_CLIENT_SECRET:
        raise ValueError("Strava client credentials not configured")


def _retry_after(response: requests.Response) -> int:
    try:
        return int(response.headers.get("Retry-After", DEFAULT_RETRY_AFTER_S))
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_S


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------

def get_auth_url(state: Optional[str] = None) -> str:
    if not settings.STRAVA_CLIENT_ID:
        raise ValueError("STRAVA_CLIENT_ID is not set")

    params = {
        "client_id": settings.STRAVA_CLIENT_ID,
        "redirect_uri": settings.STRAVA_REDIRECT_URI,
        "response_type": "code",
        "scope": STRAVA_SCOPES,
        "approval_prompt": "auto",
    }
    if state:
        params["state"] = state

    return f"{settings.STRAVA_OAUTH_BASE}/authorize?{urlencode(params)}"


def exchange_code_for_token(code: str) -> Dict:
    """
    Trade an authorization code for tokens.

    Returns Strava's payload: access_token, refresh_token, expires_at, athlete.
    Raises StravaOAuthCapacityError when the app is at its athlete limit and
    requests.HTTPError for other failures.
    """
    _require_credentials()
    r = requests.post(
        f"{settings.STRAVA_OAUTH_BASE}/token",
        data={
            "client_id": settings.STRAVA_CLIENT_ID,
            "client_secret": settings.STRAVA_CLIENT_SECRET,
            "code": code,
            "grant_type": "authorization_code",
        },
        timeout=settings.EXTERNAL_API_TIMEOUT,
    )
    if r.status_code >= 400:
        try:
            payload = r.json()
        except ValueError:
            payload = {"message": r.text}
        logger.error(f"Strava token exchange failed: {r.status_code}")
        if r.status_code == 403 and _looks_like_capacity_error(payload):
            raise StravaOAuthCapacityError(str(payload.get("message") or "Limit of connected athletes exceeded"))
        r.raise_for_status()
    return r.json()


def refresh_access_token(refresh_token: str) -> Dict:
    """
    Exchange a refresh token for a new access token from Strava.

    Returns dict with: access_token, refresh_token, expires_at, expires_in, token_type
    Raises requests.HTTPError on failure (e.g. 400 = truly revoked).
    """
    _require_credentials()
    r = requests.post(
        f"{settings.STRAVA_OAUTH_BASE}/token",
        data={
            "client_id": settings.STRAVA_CLIENT_ID,
            "client_secret": settings.STRAVA_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        },
        timeout=settings.EXTERNAL_API_TIMEOUT,
    )
    r.raise_for_status()
    return r.json()


def deauthorize(access_token: str) -> None:
    """Revoke our access on Strava's side. Raises requests.HTTPError on failure."""
    r = requests.post(
        f"{settings.STRAVA_OAUTH_BASE}/deauthorize",
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=settings.EXTERNAL_API_TIMEOUT,
    )
    r.raise_for_status()


# ---------------------------------------------------------------------------
# Stored tokens
# ---------------------------------------------------------------------------

def is_token_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when the token expires within TOKEN_REFRESH_BUFFER_S. Unknown expiry counts as fresh."""
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return now >= expires_at - timedelta(seconds=TOKEN_REFRESH_BUFFER_S)


def store_tokens(athlete, token_data: Dict) -> None:
    """Encrypt and store tokens from an exchange/refresh payload on the athlete."""
    athlete.strava_access_token = encrypt_token(token_data["access_token"])
    if token_data.get("refresh_token"):
        athlete.strava_refresh_token = encrypt_token(token_data["refresh_token"])
    if token_data.get("expires_at"):
        athlete.strava_token_expires_at = datetime.fromtimestamp(int(token_data["expires_at"]), tz=timezone.utc)


def ensure_fresh_token(athlete, db) -> bool:
    """
    Pre-flight check: refresh the Strava access token if it expires within 5 minutes.

    Returns True if the token was refreshed (and committed), False if it was
    still fresh. Raises StravaAuthError when no usable refresh token exists
    or Strava rejects it; other request errors propagate.
    """
    if not athlete.strava_access_token:
        raise StravaAuthError("Athlete has no Strava access token")

    if not is_token_expired(athlete.strava_token_expires_at):
        return False

    raw_refresh = decrypt_token(athlete.strava_refresh_token)
    if not raw_refresh:
        raise StravaAuthError("Strava refresh token missing or undecryptable")

    try:
        token_data = refresh_access_token(raw_refresh)
    except requests.HTTPError as e:
        status = e.response.status_code if e.response is not None else None
        if status in (400, 401):
            raise StravaAuthError(f"Strava refused token refresh ({status})") from e
        raise

    store_tokens(athlete, token_data)
    db.commit()
    logger.info(f"Strava token refreshed for athlete {athlete.id}")
    return True


def get_valid_access_token(athlete, db) -> Optional[str]:
    """Decrypted access token, refreshed if needed; None when no usable token can be had."""
    try:
        ensure_fresh_token(athlete, db)
    except StravaAuthError as e:
        logger.warning(f"No valid Strava token for athlete {athlete.id}: {e}")
        return None
    except requests.RequestException as e:
        logger.warning(f"Strava token refresh failed for athlete {athlete.id}: {e}")
        return None

    token = decrypt_token(athlete.strava_access_token)
    return token or None


# ---------------------------------------------------------------------------
# API reads
# ---------------------------------------------------------------------------

def _api_get(path: str, access_token: str, params: Optional[Dict] = None) -> requests.Response:
    """GET against the API. 429 and 401 are raised as typed errors; other statuses are left to the caller."""
    r = requests.get(
        f"{settings.STRAVA_API_BASE}{path}",
        headers={"Authorization": f"Bearer {access_token}"},
        params=params,
        timeout=settings.EXTERNAL_API_TIMEOUT,
    )
    if r.status_code == 429:
        raise StravaRateLimitError(f"Strava rate limit on {path}", retry_after_s=_retry_after(r))
    if r.status_code == 401:
        raise StravaAuthError(f"Strava rejected access token on {path}")
    return r


def get_athlete(access_token: str) -> Dict:
    r = _api_get("/athlete", access_token)
    r.raise_for_status()
    return r.json()


def is_running_activity(payload: Dict) -> bool:
    return payload.get("type") in RUNNING_ACTIVITY_TYPES or payload.get("sport_type") in RUNNING_ACTIVITY_TYPES


def get_activities(
    access_token: str,
    after: Optional[int] = None,
    before: Optional[int] = None,
    per_page: int = 100,
    max_pages: int = 10,
) -> Tuple[List[Dict], bool]:
    """
    Page through the athlete's activities and keep the runs.

    Returns (runs, complete). A rate limit before anything was fetched raises
    StravaRateLimitError; a rate limit mid-way stops paging and returns what
    was fetched with complete=False.
    """
    fetched: List[Dict] = []
    for page in range(1, max_pages + 1):
        params = {"page": page, "per_page": per_page}
        if after:
            params["after"] = int(after)
        if before:
            params["before"] = int(before)

        try:
            r = _api_get("/athlete/activities", access_token, params)
        except StravaRateLimitError:
            if not fetched:
                raise
            logger.warning(f"Strava rate limit on page {page}; returning {len(fetched)} activities fetched so far")
            return [a for a in fetched if is_running_activity(a)], False

        r.raise_for_status()
        batch = r.json() or []
        fetched.extend(batch)
        if len(batch) < per_page:
            break
    else:
        # Every page was full; more may remain past max_pages
        return [a for a in fetched if is_running_activity(a)], False

    return [a for a in fetched if is_running_activity(a)], True


def get_activity_details(access_token: str, activity_id: int) -> Dict:
    """Full activity payload including best_efforts."""
    # Strava omits best_efforts unless include_all_efforts is set
    r = _api_get(f"/activities/{activity_id}", access_token, {"include_all_efforts": "true"})
    r.raise_for_status()
    return r.json()


def get_activity_laps(access_token: str, activity_id: int) -> List[Dict]:
    """Laps for an activity; empty when Strava has none for it."""
    r = _api_get(f"/activities/{activity_id}/laps", access_token)
    if not r.ok:
        logger.warning(f"Could not fetch laps for activity {activity_id}: {r.status_code}")
        return []
    return r.json() or []


def get_activity_streams(
    access_token: str,
    activity_id: int,
    stream_types: Sequence[str] = ("heartrate", "time"),
) -> Dict[str, List]:
    """Stream channels keyed by type (e.g. {'heartrate': [...], 'time': [...]})."""
    r = _api_get(
        f"/activities/{activity_id}/streams",
        access_token,
        {"keys": ",".join(stream_types), "key_by_type": "true"},
    )
    if not r.ok:
        logger.warning(f"Could not fetch streams for activity {activity_id}: {r.status_code}")
        return {}

    data = r.json() or {}
    streams: Dict[str, List] = {}
    if isinstance(data, list):
        for obj in data:
            if obj.get("type") in stream_types and obj.get("data") is not None:
                streams[obj["type"]] = obj["data"]
    elif isinstance(data, dict):
        for key in stream_types:
            obj = data.get(key)
            if isinstance(obj, dict) and obj.get("data") is not None:
                streams[key] = obj["data"]
    return streams


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

_RACE_NAME_HINTS = (
    "race", "5k", "10k", "15k", "half marathon", "half-marathon", "marathon",
    "10 mile", "10-mile", "50k",
)


def map_strava_workout_type(strava_workout_type: Optional[int] = None, activity_name: Optional[str] = None) -> str:
    """
    Our workout type for a Strava run.

    Explicit hints in the activity name win; otherwise Strava's numeric
    workout_type (1/11 race, 2/12 long run, 3 workout) decides, defaulting
    to easy.
    """
    name = (activity_name or "").lower()
    if any(hint in name for hint in _RACE_NAME_HINTS):
        return "race"
    if "tempo" in name:
        return "tempo"
    if "interval" in name or "track" in name or "speed" in name:
        return "interval"
    if "long run" in name or "long " in name:
        return "long"
    if "recovery" in name:
        return "recovery"
    if "progression" in name or "prog" in name:
        return "tempo"

    if strava_workout_type in (1, 11):
        return "race"
    if strava_workout_type in (2, 12):
        return "long"
    if strava_workout_type == 3:
        return "tempo"
    return "easy"


def _parse_strava_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _round_or_none(value) -> Optional[int]:
    return int(round(value)) if value else None


def convert_strava_activity(payload: Dict) -> Dict:
    """Activity column values for a Strava activity summary or detail payload."""
    start_time = _parse_strava_datetime(payload.get("start_date"))
    local_start = payload.get("start_date_local")
    local_date = datetime.fromisoformat(local_start.replace("Z", "")).date() if local_start else None
    if start_time is not None and start_time.tzinfo is None:
        start_time = start_time.replace(tzinfo=timezone.utc)

    return {
        "name": payload.get("name") or None,
        "start_time": start_time,
        "local_date": local_date or (start_time.date() if start_time else None),
        "sport": "run",
        "source": "strava",
        "provider": "strava",
        "external_activity_id": str(payload["id"]),
        "duration_s": payload.get("moving_time") or payload.get("elapsed_time"),
        "distance_m": payload.get("distance"),
        "avg_hr": _round_or_none(payload.get("average_heartrate")),
        "max_hr": _round_or_none(payload.get("max_heartrate")),
        "total_elevation_gain": payload.get("total_elevation_gain"),
        "workout_type": map_strava_workout_type(payload.get("workout_type"), payload.get("name")),
        "strava_workout_type": payload.get("workout_type"),
    }


def convert_strava_lap(lap: Dict) -> Dict:
    """
    ActivitySplit values for a Strava lap, plus `pace_seconds_per_mile`
    for classification. lap_type starts as 'steady' until classify_laps runs.
    """
    distance = lap.get("distance") or 0
    moving = lap.get("moving_time") or lap.get("elapsed_time") or 0
    miles = distance / METERS_PER_MILE
    return {
        "split_number": lap.get("lap_index") or lap.get("split"),
        "distance": distance,
        "elapsed_time": lap.get("elapsed_time"),
        "moving_time": lap.get("moving_time"),
        "average_heartrate": _round_or_none(lap.get("average_heartrate")),
        "max_heartrate": _round_or_none(lap.get("max_heartrate")),
        "pace_seconds_per_mile": round(moving / miles) if miles > 0 else 0,
        "lap_type": "steady",
    }


def _valid_lap_pace(pace: float) -> bool:
    # 3:00-15:00 per mile
    return 180 < pace < 900


def classify_laps(laps: List[Dict]) -> List[Dict]:
    """
    Label laps warmup / work / recovery / cooldown / steady from their paces.

    Paces are compared with a trimmed mean. A wide spread (over 45 s range
    and 15 s deviation) marks an interval session, which uses wider
    work/recovery thresholds.
    """
    if len(laps) < 2:
        return laps

    valid = sorted(l["pace_seconds_per_mile"] for l in laps if _valid_lap_pace(l["pace_seconds_per_mile"]))
    if len(valid) < 2:
        return laps

    trim = max(1, int(len(valid) * 0.1))
    trimmed = valid[trim:-trim] or valid
    avg = sum(trimmed) / len(trimmed)
    std = math.sqrt(sum((p - avg) ** 2 for p in trimmed) / len(trimmed))

    is_interval = (valid[-1] - valid[0]) > 45 and std > 15
    fast_threshold = avg - (std * 0.5 if is_interval else std * 0.3)
    slow_threshold = avg + (std * 0.7 if is_interval else std * 0.5)

    last = len(laps) - 1
    classified = []
    for i, lap in enumerate(laps):
        pace = lap["pace_seconds_per_mile"]
        if not _valid_lap_pace(pace) or pace > avg + 60:
            lap_type = "recovery"
        elif i <= 1 and pace > avg + 10:
            lap_type = "warmup"
        elif i >= last - 1 and pace > avg + 10:
            lap_type = "cooldown"
        elif is_interval and pace <= fast_threshold:
            lap_type = "work"
        elif is_interval and pace >= slow_threshold:
            lap_type = "recovery"
        elif pace < avg - 10:
            lap_type = "work"
        else:
            lap_type = "steady"
        classified.append({**lap, "lap_type": lap_type})
    return classified


def get_fastest_work_pace(laps: List[Dict]) -> Optional[int]:
    """
    Fastest work-lap pace (s/mi), ignoring jog recoveries. Falls back to the
    fastest lap that is not warmup/cooldown/recovery.
    """
    if not laps:
        return None
    unclassified = all(l.get("lap_type", "steady") == "steady" for l in laps)
    classified = classify_laps(laps) if unclassified and len(laps) > 2 else laps

    def effort_pace(l):
        return 180 < l["pace_seconds_per_mile"] < 600

    work = [l["pace_seconds_per_mile"] for l in classified if l["lap_type"] == "work" and effort_pace(l)]
    if work:
        return min(work)

    other = [
        l["pace_seconds_per_mile"]
        for l in classified
        if l["lap_type"] not in ("recovery", "warmup", "cooldown") and effort_pace(l)
    ]
    return min(other) if other else None


# ---------------------------------------------------------------------------
# Heart rate zones
# ---------------------------------------------------------------------------

HR_ZONES = [
    {"zone": 1, "name": "Recovery", "min": 0.0, "max": 0.6},
    {"zone": 2, "name": "Aerobic", "min": 0.6, "max": 0.7},
    {"zone": 3, "name": "Tempo", "min": 0.7, "max": 0.8},
    {"zone": 4, "name": "Threshold", "min": 0.8, "max": 0.9},
    {"zone": 5, "name": "VO2max", "min": 0.9, "max": 1.0},
]


def hr_zone_bounds(max_hr: int) -> List[Dict]:
    """Zone boundaries in bpm for a max heart rate."""
    return [
        {
            "zone": z["zone"],
            "name": z["name"],
            "min_bpm": round(max_hr * z["min"]),
            "max_bpm": round(max_hr * z["max"]),
        }
        for z in HR_ZONES
    ]


def _zone_index(hr_fraction: float) -> int:
    if hr_fraction >= 0.9:
        return 4
    if hr_fraction >= 0.8:
        return 3
    if hr_fraction >= 0.7:
        return 2
    if hr_fraction >= 0.6:
        return 1
    return 0


def calculate_hr_zones(hr_data: Sequence[float], time_data: Sequence[float], max_hr: int) -> List[Dict]:
    """
    Time spent in each zone from heartrate/time streams.

    Each sample's zone is credited with the time since the previous sample.
    Returns [] when the streams are unusable.
    """
    if not max_hr or not hr_data or not time_data or len(hr_data) != len(time_data) or len(hr_data) < 2:
        return []

    seconds = [0.0] * len(HR_ZONES)
    for i in range(1, len(hr_data)):
        seconds[_zone_index(hr_data[i] / max_hr)] += time_data[i] - time_data[i - 1]

    total = sum(seconds)
    return [
        {
            "zone": z["zone"],
            "name": z["name"],
            "seconds": round(seconds[i]),
            "percentage": round(seconds[i] / total * 100) if total > 0 else 0,
        }
        for i, z in enumerate(HR_ZONES)
    ]
