"""
Tests for the Strava API client.

HTTP is mocked at `requests`; nothing here talks to Strava.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.config import settings
from services.strava_service import (
    StravaAuthError,
    StravaOAuthCapacityError,
    StravaRateLimitError,
    calculate_hr_zones,
    classify_laps,
    convert_strava_activity,
    convert_strava_lap,
    ensure_fresh_token,
    exchange_code_for_token,
    get_activities,
    get_activity_streams,
    get_athlete,
    get_auth_url,
    get_fastest_work_pace,
    get_valid_access_token,
    hr_zone_bounds,
    is_token_expired,
    map_strava_workout_type,
    store_tokens,
)
from services.token_encryption import decrypt_token


def _response(status=200, payload=None, headers=None):
    r = MagicMock()
    r.status_code = status
    r.ok = status < 400
    r.json.return_value = payload
    r.text = ""
    r.headers = headers or {}
    if status >= 400:
        r.raise_for_status.side_effect = requests.HTTPError(f"{status}", response=r)
    return r


@pytest.fixture
def strava_credentials(monkeypatch):
    monkeypatch.setattr(settings, "STRAVA_CLIENT_ID", "12345")
    monkeypatch.setattr(settings, "STRAVA_CLIENT_SECRET", "shh")
    monkeypatch.setattr(settings, "STRAVA_REDIRECT_URI", "http://localhost:8000/v1/strava/callback")


class TestOAuth:
    def test_auth_url(self, strava_credentials):
        url = get_auth_url(state="signed-state")
        assert url.startswith(f"{settings.STRAVA_OAUTH_BASE}/authorize?")
        assert "client_id=12345" in url
        assert "scope=read%2Cactivity%3Aread_all" in url
        assert "state=signed-state" in url
        assert "response_type=code" in url

    def test_auth_url_requires_client_id(self, monkeypatch):
        monkeypatch.setattr(settings, "STRAVA_CLIENT_ID", None)
        with pytest.raises(ValueError):
            get_auth_url()

    def test_exchange_code(self, strava_credentials):
        payload = {"access_token": "a", "refresh_token": "r", "expires_at": 1900000000, "athlete": {"id": 9}}
        with patch("services.strava_service.requests.post", return_value=_response(200, payload)) as post:
            assert exchange_code_for_token("the-code") == payload
        assert post.call_args.kwargs["data"]["grant_type"] == "authorization_code"
        assert post.call_args.kwargs["data"]["code"] == "the-code"

    def test_exchange_code_at_athlete_capacity(self, strava_credentials):
        body = {"message": "Limit of connected athletes exceeded", "errors": []}
        with patch("services.strava_service.requests.post", return_value=_response(403, body)):
            with pytest.raises(StravaOAuthCapacityError):
                exchange_code_for_token("the-code")

    def test_exchange_code_other_failure(self, strava_credentials):
        body = {"message": "Bad Request", "errors": [{"code": "invalid"}]}
        with patch("services.strava_service.requests.post", return_value=_response(400, body)):
            with pytest.raises(requests.HTTPError):
                exchange_code_for_token("the-code")


class TestTokens:
    NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("expires_at,expected", [
        (None, False),
        (NOW + timedelta(hours=1), False),
        (NOW + timedelta(minutes=4), True),
        (NOW - timedelta(minutes=1), True),
        (datetime(2026, 3, 1, 13, 0), False),  # naive values are UTC
    ])
    def test_is_token_expired(self, expires_at, expected):
        assert is_token_expired(expires_at, now=self.NOW) is expected

    def test_store_tokens_encrypts(self, test_athlete):
        store_tokens(test_athlete, {"access_token": "acc", "refresh_token": "ref", "expires_at": 1900000000})
        assert test_athlete.strava_access_token.startswith("enc:v1:")
        assert decrypt_token(test_athlete.strava_refresh_token) == "ref"
        assert test_athlete.strava_token_expires_at == datetime.fromtimestamp(1900000000, tz=timezone.utc)

    def _connect(self, athlete, expires_in):
        store_tokens(athlete, {
            "access_token": "old-access",
            "refresh_token": "old-refresh",
            "expires_at": int((datetime.now(timezone.utc) + expires_in).timestamp()),
        })

    def test_fresh_token_is_not_refreshed(self, db_session, test_athlete):
        self._connect(test_athlete, timedelta(hours=2))
        with patch("services.strava_service.refresh_access_token") as refresh:
            assert ensure_fresh_token(test_athlete, db_session) is False
        refresh.assert_not_called()

    def test_expiring_token_is_refreshed(self, db_session, test_athlete):
        self._connect(test_athlete, timedelta(minutes=2))
        new = {"access_token": "new-access", "refresh_token": "new-refresh", "expires_at": 1900000000}
        with patch("services.strava_service.refresh_access_token", return_value=new) as refresh:
            assert ensure_fresh_token(test_athlete, db_session) is True
        refresh.assert_called_once_with("old-refresh")
        assert decrypt_token(test_athlete.strava_access_token) == "new-access"

    def test_refresh_refused(self, db_session, test_athlete):
        self._connect(test_athlete, timedelta(minutes=2))
        error = requests.HTTPError("400", response=_response(400))
        with patch("services.strava_service.refresh_access_token", side_effect=error):
            with pytest.raises(StravaAuthError):
                ensure_fresh_token(test_athlete, db_session)
            assert get_valid_access_token(test_athlete, db_session) is None

    def test_no_token(self, db_session, test_athlete):
        with pytest.raises(StravaAuthError):
            ensure_fresh_token(test_athlete, db_session)
        assert get_valid_access_token(test_athlete, db_session) is None

    def test_valid_token_is_decrypted(self, db_session, test_athlete):
        self._connect(test_athlete, timedelta(hours=2))
        assert get_valid_access_token(test_athlete, db_session) == "old-access"


class TestApiReads:
    def test_get_athlete_unauthorized(self):
        with patch("services.strava_service.requests.get", return_value=_response(401)):
            with pytest.raises(StravaAuthError):
                get_athlete("token")

    def test_get_activities_pages_and_keeps_runs(self):
        pages = [
            _response(200, [{"id": 1, "type": "Run"}, {"id": 2, "type": "Ride"}]),
            _response(200, [{"id": 3, "sport_type": "TrailRun"}]),
        ]
        with patch("services.strava_service.requests.get", side_effect=pages) as get:
            runs, complete = get_activities("token", after=1700000000, per_page=2)
        assert [a["id"] for a in runs] == [1, 3]
        assert complete is True
        assert get.call_count == 2
        assert get.call_args_list[0].kwargs["params"]["after"] == 1700000000

    def test_rate_limit_before_any_page(self):
        with patch("services.strava_service.requests.get", return_value=_response(429, headers={"Retry-After": "120"})):
            with pytest.raises(StravaRateLimitError) as exc:
                get_activities("token")
        assert exc.value.retry_after_s == 120

    def test_rate_limit_mid_way_returns_partial(self):
        pages = [_response(200, [{"id": 1, "type": "Run"}, {"id": 2, "type": "Run"}]), _response(429)]
        with patch("services.strava_service.requests.get", side_effect=pages):
            runs, complete = get_activities("token", per_page=2)
        assert [a["id"] for a in runs] == [1, 2]
        assert complete is False

    def test_page_cap_is_incomplete(self):
        pages = [_response(200, [{"id": 1, "type": "Run"}, {"id": 2, "type": "Run"}])]
        with patch("services.strava_service.requests.get", side_effect=pages):
            runs, complete = get_activities("token", per_page=2, max_pages=1)
        assert len(runs) == 2
        assert complete is False

    def test_streams_as_list(self):
        body = [
            {"type": "heartrate", "data": [120, 130]},
            {"type": "time", "data": [0, 5]},
            {"type": "distance", "data": [0, 10]},
        ]
        with patch("services.strava_service.requests.get", return_value=_response(200, body)):
            assert get_activity_streams("token", 1) == {"heartrate": [120, 130], "time": [0, 5]}

    def test_streams_keyed_by_type(self):
        body = {"heartrate": {"data": [120]}, "time": {"data": [0]}}
        with patch("services.strava_service.requests.get", return_value=_response(200, body)):
            assert get_activity_streams("token", 1) == {"heartrate": [120], "time": [0]}

    def test_streams_missing(self):
        with patch("services.strava_service.requests.get", return_value=_response(404)):
            assert get_activity_streams("token", 1) == {}


class TestConversions:
    @pytest.mark.parametrize("strava_type,name,expected", [
        (None, "Morning Run", "easy"),
        (1, "Morning Run", "race"),
        (2, None, "long"),
        (12, None, "long"),
        (3, None, "tempo"),
        (None, "Boston Marathon", "race"),
        (None, "Tempo Tuesday", "tempo"),
        (None, "Track 8x400", "interval"),
        (None, "Sunday long run", "long"),
        (None, "Recovery jog", "recovery"),
        (None, "Progression run", "tempo"),
    ])
    def test_map_workout_type(self, strava_type, name, expected):
        assert map_strava_workout_type(strava_type, name) == expected

    def test_convert_activity(self):
        fields = convert_strava_activity({
            "id": 123,
            "name": "Morning Run",
            "start_date": "2026-03-01T14:00:00Z",
            "start_date_local": "2026-03-01T09:00:00Z",
            "moving_time": 2400,
            "elapsed_time": 2500,
            "distance": 8046.7,
            "average_heartrate": 150.4,
            "max_heartrate": 171.6,
            "total_elevation_gain": 30.0,
            "workout_type": None,
        })
        assert fields["external_activity_id"] == "123"
        assert fields["provider"] == "strava"
        assert fields["start_time"] == datetime(2026, 3, 1, 14, 0, tzinfo=timezone.utc)
        assert fields["local_date"].isoformat() == "2026-03-01"
        assert fields["duration_s"] == 2400
        assert fields["avg_hr"] == 150
        assert fields["max_hr"] == 172
        assert fields["workout_type"] == "easy"

    def test_convert_lap(self):
        lap = convert_strava_lap({
            "lap_index": 2, "distance": 1609.34, "elapsed_time": 400, "moving_time": 390,
            "average_heartrate": 160.2,
        })
        assert lap["split_number"] == 2
        assert lap["pace_seconds_per_mile"] == 390
        assert lap["average_heartrate"] == 160
        assert lap["lap_type"] == "steady"


def _laps(*paces):
    return [{"pace_seconds_per_mile": p, "lap_type": "steady"} for p in paces]


class TestLaps:
    def test_interval_session(self):
        classified = classify_laps(_laps(500, 420, 540, 420, 540, 420, 500))
        assert [l["lap_type"] for l in classified] == [
            "warmup", "work", "recovery", "work", "recovery", "work", "cooldown",
        ]

    def test_single_lap_untouched(self):
        assert classify_laps(_laps(480)) == _laps(480)

    def test_fastest_work_pace(self):
        assert get_fastest_work_pace(_laps(500, 420, 540, 420, 540, 420, 500)) == 420
        assert get_fastest_work_pace([]) is None

    def test_fastest_pace_without_work_laps(self):
        laps = [
            {"pace_seconds_per_mile": 470, "lap_type": "steady"},
            {"pace_seconds_per_mile": 455, "lap_type": "steady"},
        ]
        assert get_fastest_work_pace(laps) == 455


class TestHeartRateZones:
    def test_zone_bounds(self):
        bounds = hr_zone_bounds(200)
        assert len(bounds) == 5
        assert bounds[0] == {"zone": 1, "name": "Recovery", "min_bpm": 0, "max_bpm": 120}
        assert bounds[4]["min_bpm"] == 180
        assert bounds[4]["max_bpm"] == 200

    def test_time_in_zones(self):
        zones = calculate_hr_zones([100, 120, 150, 175, 185], [0, 10, 20, 30, 40], 190)
        assert [z["seconds"] for z in zones] == [0, 10, 10, 0, 20]
        assert [z["percentage"] for z in zones] == [0, 25, 25, 0, 50]

    @pytest.mark.parametrize("hr,time", [([], []), ([120], [0]), ([120, 130], [0])])
    def test_unusable_streams(self, hr, time):
        assert calculate_hr_zones(hr, time, 190) == []
