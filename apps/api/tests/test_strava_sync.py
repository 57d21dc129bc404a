"""
Tests for Strava ingestion: activity upserts, laps, best efforts, manual
entry linking, deletes, connection lifecycle and heart-rate zones.

Strava calls are patched in the services.strava_sync namespace.
"""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import requests

from models import Activity, ActivitySplit, Athlete, BestEffort, RaceResult
from services.strava_service import StravaAuthError
from services.strava_sync import (
    FIRST_SYNC_DAYS,
    FULL_SYNC_DAYS,
    SyncResult,
    activity_hr_zones,
    activity_laps,
    connect_strava,
    delete_strava_activity,
    disconnect_strava,
    estimate_max_hr,
    sync_athlete_activities,
    sync_single_activity,
    sync_window_start,
)
from services.token_encryption import decrypt_token

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _summary(strava_id, day="2026-03-01", distance=8046.7, name="Morning Run"):
    return {
        "id": strava_id,
        "type": "Run",
        "name": name,
        "start_date": f"{day}T14:00:00Z",
        "start_date_local": f"{day}T09:00:00Z",
        "moving_time": 2400,
        "elapsed_time": 2450,
        "distance": distance,
        "average_heartrate": 150,
        "max_heartrate": 172,
    }


def _details(token, strava_id):
    return {
        **_summary(strava_id),
        "best_efforts": [
            {"id": strava_id * 10, "name": "5K", "distance": 5000, "elapsed_time": 1450,
             "start_date": "2026-03-01T14:10:00Z"},
        ],
    }


@pytest.fixture
def strava_api():
    """Patched Strava reads; tests adjust return values as needed."""
    with patch("services.strava_sync.get_valid_access_token", return_value="tok") as token, \
            patch("services.strava_sync.get_activities", return_value=([], True)) as activities, \
            patch("services.strava_sync.get_activity_details", side_effect=_details) as details, \
            patch("services.strava_sync.get_activity_laps", return_value=[]) as laps, \
            patch("services.strava_sync.refresh_derived_metrics") as refresh:
        yield {
            "token": token,
            "activities": activities,
            "details": details,
            "laps": laps,
            "refresh": refresh,
        }


class TestSyncWindow:
    def test_first_sync(self, test_athlete):
        assert sync_window_start(test_athlete, now=NOW) == NOW - timedelta(days=FIRST_SYNC_DAYS)

    def test_full_sync(self, test_athlete):
        test_athlete.last_strava_sync = NOW - timedelta(days=1)
        assert sync_window_start(test_athlete, full=True, now=NOW) == NOW - timedelta(days=FULL_SYNC_DAYS)

    def test_incremental_overlaps_previous_sync(self, test_athlete):
        test_athlete.last_strava_sync = datetime(2026, 3, 9, 12, 0)
        assert sync_window_start(test_athlete, now=NOW) == datetime(2026, 3, 8, 0, 0, tzinfo=timezone.utc)


class TestSyncAthleteActivities:
    def test_imports_runs_with_efforts_and_laps(self, db_session, connected_athlete, strava_api):
        strava_api["activities"].return_value = ([_summary(1001), _summary(1002, day="2026-03-03")], True)
        strava_api["laps"].side_effect = lambda token, sid: [
            {"lap_index": 1, "distance": 1609.34, "elapsed_time": 500, "moving_time": 500},
            {"lap_index": 2, "distance": 1609.34, "elapsed_time": 420, "moving_time": 420},
            {"lap_index": 3, "distance": 1609.34, "elapsed_time": 500, "moving_time": 500},
        ] if sid == 1001 else []

        result = sync_athlete_activities(db_session, connected_athlete, now=NOW)

        assert result == SyncResult(synced_new=2, updated_existing=0, skipped=0, best_efforts=2)
        after = strava_api["activities"].call_args.kwargs["after"]
        assert after == int((NOW - timedelta(days=FIRST_SYNC_DAYS)).timestamp())

        activities = db_session.query(Activity).order_by(Activity.start_time).all()
        assert [a.external_activity_id for a in activities] == ["1001", "1002"]
        assert all(a.provider == "strava" for a in activities)
        assert activities[0].local_date == date(2026, 3, 1)

        splits = (
            db_session.query(ActivitySplit)
            .filter(ActivitySplit.activity_id == activities[0].id)
            .order_by(ActivitySplit.split_number)
            .all()
        )
        assert len(splits) == 3
        assert splits[1].lap_type == "work"

        assert db_session.query(BestEffort).count() == 2
        assert connected_athlete.last_strava_sync == NOW
        strava_api["refresh"].assert_called_once()

    def test_resync_updates_without_refetching_details(self, db_session, connected_athlete, strava_api):
        strava_api["activities"].return_value = ([_summary(1001)], True)
        sync_athlete_activities(db_session, connected_athlete, now=NOW)
        strava_api["details"].reset_mock()

        strava_api["activities"].return_value = ([_summary(1001, name="Renamed Run")], True)
        result = sync_athlete_activities(db_session, connected_athlete, now=NOW + timedelta(hours=1))

        assert result.updated_existing == 1
        assert result.synced_new == 0
        assert result.best_efforts == 0
        strava_api["details"].assert_not_called()
        assert db_session.query(Activity).one().name == "Renamed Run"

    def test_links_matching_manual_entry(self, db_session, connected_athlete, strava_api, make_activity):
        manual = make_activity(connected_athlete, date(2026, 3, 1), distance_m=8000)
        db_session.commit()
        strava_api["activities"].return_value = ([_summary(1001)], True)

        result = sync_athlete_activities(db_session, connected_athlete, now=NOW)

        assert result.skipped == 1
        assert result.synced_new == 0
        assert db_session.query(Activity).count() == 1
        assert manual.provider == "strava"
        assert manual.external_activity_id == "1001"
        assert manual.source == "manual"

    def test_manual_entry_too_far_off_is_not_linked(self, db_session, connected_athlete, strava_api, make_activity):
        make_activity(connected_athlete, date(2026, 3, 1), distance_m=5000)
        db_session.commit()
        strava_api["activities"].return_value = ([_summary(1001)], True)

        result = sync_athlete_activities(db_session, connected_athlete, now=NOW)

        assert result.synced_new == 1
        assert db_session.query(Activity).count() == 2

    def test_partial_fetch_advances_only_to_newest_run(self, db_session, connected_athlete, strava_api):
        strava_api["activities"].return_value = ([_summary(1001), _summary(1002, day="2026-03-03")], False)

        result = sync_athlete_activities(db_session, connected_athlete, now=NOW)

        assert result.synced_new == 2
        assert connected_athlete.last_strava_sync == datetime(2026, 3, 3, 14, 0, tzinfo=timezone.utc)

    def test_partial_fetch_never_moves_cursor_back(self, db_session, connected_athlete, strava_api):
        previous = datetime(2026, 3, 5, 8, 0, tzinfo=timezone.utc)
        connected_athlete.last_strava_sync = previous
        db_session.commit()
        strava_api["activities"].return_value = ([_summary(1001, day="2026-03-04")], False)

        sync_athlete_activities(db_session, connected_athlete, now=NOW)

        assert connected_athlete.last_strava_sync == previous

    def test_no_token(self, db_session, connected_athlete, strava_api):
        strava_api["token"].return_value = None
        with pytest.raises(StravaAuthError):
            sync_athlete_activities(db_session, connected_athlete, now=NOW)
        strava_api["activities"].assert_not_called()


class TestSingleActivity:
    def test_imports_run(self, db_session, connected_athlete, strava_api):
        activity = sync_single_activity(db_session, connected_athlete, 2001)
        assert activity.external_activity_id == "2001"
        assert db_session.query(BestEffort).filter(BestEffort.activity_id == activity.id).count() == 1
        strava_api["refresh"].assert_called_once()

    def test_ignores_other_sports(self, db_session, connected_athlete, strava_api):
        strava_api["details"].side_effect = None
        strava_api["details"].return_value = {"id": 2002, "type": "Ride"}
        assert sync_single_activity(db_session, connected_athlete, 2002) is None
        assert db_session.query(Activity).count() == 0


class TestDeleteActivity:
    def test_removes_activity_and_dependents(self, db_session, connected_athlete, make_activity, strava_api):
        activity = make_activity(
            connected_athlete, date(2026, 3, 1), source="strava",
            provider="strava", external_activity_id="555",
        )
        db_session.add(BestEffort(
            athlete_id=connected_athlete.id, activity_id=activity.id, distance_category="5k",
            distance_meters=5000, elapsed_time=1400, achieved_at=NOW, strava_effort_id=1,
        ))
        race = RaceResult(
            athlete_id=connected_athlete.id, activity_id=activity.id, distance_label="5K",
            distance_meters=5000, finish_time_seconds=1400, date=date(2026, 3, 1),
        )
        db_session.add(race)
        db_session.commit()

        assert delete_strava_activity(db_session, connected_athlete, 555) is True

        assert db_session.query(Activity).count() == 0
        assert db_session.query(BestEffort).count() == 0
        db_session.refresh(race)
        assert race.activity_id is None
        strava_api["refresh"].assert_called_once()

    def test_unknown_activity(self, db_session, connected_athlete, strava_api):
        assert delete_strava_activity(db_session, connected_athlete, 999) is False
        strava_api["refresh"].assert_not_called()


class TestConnection:
    TOKEN_DATA = {
        "access_token": "acc",
        "refresh_token": "ref",
        "expires_at": 1900000000,
        "athlete": {"id": 42},
    }

    def test_connect(self, db_session, test_athlete):
        connect_strava(db_session, test_athlete, self.TOKEN_DATA)
        assert test_athlete.strava_athlete_id == 42
        assert test_athlete.strava_auto_sync is True
        assert test_athlete.has_strava_connection
        assert decrypt_token(test_athlete.strava_access_token) == "acc"

    def test_connect_requires_strava_athlete(self, db_session, test_athlete):
        with pytest.raises(ValueError):
            connect_strava(db_session, test_athlete, {"access_token": "acc"})

    def test_connect_rejects_account_linked_elsewhere(self, db_session, test_athlete):
        db_session.add(Athlete(email="other@example.com", strava_athlete_id=42))
        db_session.commit()
        with pytest.raises(ValueError):
            connect_strava(db_session, test_athlete, self.TOKEN_DATA)

    def test_disconnect(self, db_session, connected_athlete):
        with patch("services.strava_sync.deauthorize") as deauthorize:
            assert disconnect_strava(db_session, connected_athlete) is True
        deauthorize.assert_called_once_with("access")
        assert connected_athlete.strava_access_token is None
        assert connected_athlete.strava_athlete_id is None
        assert connected_athlete.has_strava_connection is False

    def test_disconnect_when_strava_refuses(self, db_session, connected_athlete):
        with patch("services.strava_sync.deauthorize", side_effect=requests.HTTPError("401")):
            assert disconnect_strava(db_session, connected_athlete) is False
        assert connected_athlete.strava_refresh_token is None


class TestHeartRateZones:
    @pytest.fixture
    def strava_run(self, connected_athlete, make_activity):
        return make_activity(
            connected_athlete, date(2026, 3, 1), source="strava",
            provider="strava", external_activity_id="555", max_hr=180,
        )

    def test_zones_from_streams(self, db_session, connected_athlete, strava_run):
        streams = {"heartrate": [100, 150, 195], "time": [0, 60, 120]}
        with patch("services.strava_sync.get_valid_access_token", return_value="tok"), \
                patch("services.strava_sync.get_activity_streams", return_value=streams) as get_streams:
            result = activity_hr_zones(db_session, connected_athlete, strava_run)

        get_streams.assert_called_once_with("tok", 555)
        assert result["max_hr"] == 195
        assert [z["seconds"] for z in result["zones"]] == [0, 0, 60, 0, 60]
        assert len(result["zone_bounds"]) == 5

    def test_no_heart_rate_stream(self, db_session, connected_athlete, strava_run):
        with patch("services.strava_sync.get_valid_access_token", return_value="tok"), \
                patch("services.strava_sync.get_activity_streams", return_value={"time": [0, 60]}):
            result = activity_hr_zones(db_session, connected_athlete, strava_run)
        assert result["zones"] == []
        assert result["max_hr"] == 190

    def test_manual_activity(self, db_session, connected_athlete, make_activity):
        manual = make_activity(connected_athlete, date(2026, 3, 1))
        with pytest.raises(ValueError):
            activity_hr_zones(db_session, connected_athlete, manual)

    def test_without_token(self, db_session, connected_athlete, strava_run):
        with patch("services.strava_sync.get_valid_access_token", return_value=None):
            with pytest.raises(StravaAuthError):
                activity_hr_zones(db_session, connected_athlete, strava_run)

    @pytest.mark.parametrize("athlete_max,activity_max,birthdate,hr_data,expected", [
        (None, None, None, [], 185),
        (None, 178, None, [], 178),
        (None, None, date(2000, 6, 15), [], 195),
        (170, 180, None, [], 170),
        (170, None, None, [150, 176.4], 176),
    ])
    def test_estimate_max_hr(self, athlete_max, activity_max, birthdate, hr_data, expected):
        athlete = Athlete(max_hr=athlete_max, birthdate=birthdate)
        activity = Activity(max_hr=activity_max)
        assert estimate_max_hr(athlete, activity, hr_data, today=date(2026, 3, 1)) == expected


class TestActivityLaps:
    def test_laps_with_fastest_work_pace(self, db_session, test_athlete, make_activity):
        activity = make_activity(test_athlete, date(2026, 3, 1))
        db_session.add_all([
            ActivitySplit(activity_id=activity.id, split_number=2, distance=1609.34, moving_time=540, lap_type="recovery"),
            ActivitySplit(activity_id=activity.id, split_number=1, distance=1609.34, moving_time=420, lap_type="work"),
        ])
        db_session.flush()
        db_session.expire(activity, ["splits"])

        result = activity_laps(activity)

        assert [l["split_number"] for l in result["laps"]] == [1, 2]
        assert result["laps"][0]["pace_seconds_per_mile"] == 420
        assert result["fastest_work_pace"] == 420
