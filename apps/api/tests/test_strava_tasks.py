"""
Tests for the Strava Celery tasks, run in-process against the test session.
"""
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from celery.exceptions import Retry

from services.strava_service import StravaAuthError, StravaRateLimitError
from services.strava_sync import SyncResult
from tasks.strava_tasks import (
    delete_strava_activity_task,
    retry_countdown,
    sync_auto_sync_athletes_task,
    sync_strava_activities_task,
    sync_strava_activity_task,
)


@pytest.fixture
def task_db(db_session):
    """Point the tasks at the test session."""
    with patch("tasks.strava_tasks.get_db_sync", return_value=db_session):
        yield db_session


class TestRetryCountdown:
    @pytest.mark.parametrize("retry_after,expected", [
        (0, 60),
        (None, 60),
        (30, 60),
        (900, 900),
        (7200, 3600),
    ])
    def test_clamped(self, retry_after, expected):
        assert retry_countdown(retry_after) == expected


class TestSyncActivitiesTask:
    def test_success(self, task_db, connected_athlete):
        result = SyncResult(synced_new=3, updated_existing=1, skipped=0, best_efforts=4)
        with patch("tasks.strava_tasks.sync_athlete_activities", return_value=result) as sync:
            outcome = sync_strava_activities_task.run(str(connected_athlete.id), full=True)
        assert outcome == {"status": "success", "synced_new": 3, "updated_existing": 1, "skipped": 0, "best_efforts": 4}
        assert sync.call_args.kwargs["full"] is True

    def test_unknown_athlete(self, task_db):
        outcome = sync_strava_activities_task.run(str(uuid4()))
        assert outcome["status"] == "error"

    def test_malformed_athlete_id(self, task_db):
        assert sync_strava_activities_task.run("not-a-uuid")["status"] == "error"

    def test_not_connected(self, task_db, test_athlete):
        outcome = sync_strava_activities_task.run(str(test_athlete.id))
        assert outcome["status"] == "error"
        assert "no Strava access token" in outcome["error"]

    def test_auth_failure(self, task_db, connected_athlete):
        with patch("tasks.strava_tasks.sync_athlete_activities", side_effect=StravaAuthError("revoked")):
            outcome = sync_strava_activities_task.run(str(connected_athlete.id))
        assert outcome == {"status": "error", "error": "strava_auth"}

    def test_rate_limit_retries_later(self, task_db, connected_athlete):
        error = StravaRateLimitError("slow down", retry_after_s=15)
        with patch("tasks.strava_tasks.sync_athlete_activities", side_effect=error), \
                patch.object(sync_strava_activities_task, "retry", side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                sync_strava_activities_task.run(str(connected_athlete.id))
        retry.assert_called_once_with(countdown=60)

    def test_unexpected_error_is_reported(self, task_db, connected_athlete):
        with patch("tasks.strava_tasks.sync_athlete_activities", side_effect=RuntimeError("boom")):
            outcome = sync_strava_activities_task.run(str(connected_athlete.id))
        assert outcome["status"] == "error"
        assert "boom" in outcome["error"]


class TestSyncActivityTask:
    def test_success(self, task_db, connected_athlete):
        activity = MagicMock(id=uuid4())
        with patch("tasks.strava_tasks.sync_single_activity", return_value=activity) as sync:
            outcome = sync_strava_activity_task.run(str(connected_athlete.id), "123")
        assert outcome == {"status": "success", "activity_id": str(activity.id)}
        assert sync.call_args.args[2] == 123

    def test_skipped(self, task_db, connected_athlete):
        with patch("tasks.strava_tasks.sync_single_activity", return_value=None):
            outcome = sync_strava_activity_task.run(str(connected_athlete.id), 123)
        assert outcome == {"status": "skipped", "strava_activity_id": 123}

    def test_rate_limit_retries_later(self, task_db, connected_athlete):
        error = StravaRateLimitError("slow down", retry_after_s=1800)
        with patch("tasks.strava_tasks.sync_single_activity", side_effect=error), \
                patch.object(sync_strava_activity_task, "retry", side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                sync_strava_activity_task.run(str(connected_athlete.id), 123)
        retry.assert_called_once_with(countdown=1800)


class TestAutoSync:
    def test_queues_connected_auto_sync_athletes(self, task_db, connected_athlete, test_athlete):
        connected_athlete.strava_auto_sync = True
        task_db.commit()
        with patch.object(sync_strava_activities_task, "delay") as delay:
            outcome = sync_auto_sync_athletes_task.run()
        assert outcome == {"status": "success", "queued": 1}
        delay.assert_called_once_with(str(connected_athlete.id))

    def test_nothing_to_queue(self, task_db, test_athlete):
        with patch.object(sync_strava_activities_task, "delay") as delay:
            assert sync_auto_sync_athletes_task.run() == {"status": "success", "queued": 0}
        delay.assert_not_called()


class TestDeleteActivityTask:
    @pytest.mark.parametrize("deleted,status", [(True, "deleted"), (False, "not_found")])
    def test_delete(self, task_db, connected_athlete, deleted, status):
        with patch("tasks.strava_tasks.delete_strava_activity", return_value=deleted) as delete:
            outcome = delete_strava_activity_task.run(str(connected_athlete.id), 555)
        assert outcome["status"] == status
        assert delete.call_args.args[2] == 555

    def test_unknown_athlete(self, task_db):
        assert delete_strava_activity_task.run(str(uuid4()), 555)["status"] == "error"
