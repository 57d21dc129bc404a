"""
Celery tasks for Strava synchronization.

These tasks run in the background worker to prevent blocking the API.
A Strava rate limit is not an error: the task is re-queued for when the
window resets.
"""
import logging
from typing import Dict, Optional
from uuid import UUID

from celery import Task
from celery.exceptions import Retry
from sqlalchemy.orm import Session

from core.database import get_db_sync
from models import Athlete
from services.strava_service import StravaAuthError, StravaRateLimitError
from services.strava_sync import delete_strava_activity, sync_athlete_activities, sync_single_activity
from tasks import celery_app

logger = logging.getLogger(__name__)

MIN_RETRY_COUNTDOWN_S = 60
MAX_RETRY_COUNTDOWN_S = 60 * 60


def retry_countdown(retry_after_s: int) -> int:
    """Retry delay bounded to 1m..60m."""
    return max(MIN_RETRY_COUNTDOWN_S, min(int(retry_after_s or 0), MAX_RETRY_COUNTDOWN_S))


def _load_athlete(db: Session, athlete_id: str) -> Optional[Athlete]:
    # Task arguments arrive as JSON strings
    try:
        return db.get(Athlete, UUID(str(athlete_id)))
    except ValueError:
        return None


@celery_app.task(name="tasks.sync_strava_activities", bind=True, max_retries=5)
def sync_strava_activities_task(self: Task, athlete_id: str, full: bool = False) -> Dict:
    """
    Background task to sync Strava activities for an athlete.

    Returns:
        {"status": "success", "synced_new": ..., "updated_existing": ...,
         "skipped": ..., "best_efforts": ...} or {"status": "error", "error": str}
    """
    db: Session = get_db_sync()
    try:
        athlete = _load_athlete(db, athlete_id)
        if not athlete:
            return {"status": "error", "error": f"Athlete {athlete_id} not found"}
        if not athlete.strava_access_token:
            return {"status": "error", "error": f"Athlete {athlete_id} has no Strava access token"}

        try:
            result = sync_athlete_activities(db, athlete, full=full)
        except StravaRateLimitError as e:
            countdown = retry_countdown(e.retry_after_s)
            logger.warning(f"Strava rate limit syncing athlete {athlete_id}; retrying in {countdown}s")
            raise self.retry(countdown=countdown)

        return {"status": "success", **result.to_dict()}

    except Retry:
        raise
    except StravaAuthError as e:
        db.rollback()
        logger.warning(f"Strava auth failed for athlete {athlete_id}: {e}")
        return {"status": "error", "error": "strava_auth"}
    except Exception as e:
        db.rollback()
        logger.exception(f"Error syncing activities for athlete {athlete_id}")
        return {"status": "error", "error": f"Error syncing activities: {e}"}
    finally:
        db.close()


@celery_app.task(name="tasks.sync_strava_activity", bind=True, max_retries=5)
def sync_strava_activity_task(self: Task, athlete_id: str, strava_activity_id: int) -> Dict:
    """Import one activity (webhook create/update)."""
    db: Session = get_db_sync()
    try:
        athlete = _load_athlete(db, athlete_id)
        if not athlete:
            return {"status": "error", "error": f"Athlete {athlete_id} not found"}

        try:
            activity = sync_single_activity(db, athlete, int(strava_activity_id))
        except StravaRateLimitError as e:
            raise self.retry(countdown=retry_countdown(e.retry_after_s))

        if activity is None:
            return {"status": "skipped", "strava_activity_id": strava_activity_id}
        return {"status": "success", "activity_id": str(activity.id)}

    except Retry:
        raise
    except StravaAuthError as e:
        db.rollback()
        logger.warning(f"Strava auth failed for athlete {athlete_id}: {e}")
        return {"status": "error", "error": "strava_auth"}
    except Exception as e:
        db.rollback()
        logger.exception(f"Error syncing Strava activity {strava_activity_id}")
        return {"status": "error", "error": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.delete_strava_activity")
def delete_strava_activity_task(athlete_id: str, strava_activity_id: int) -> Dict:
    """Remove one activity deleted on Strava (webhook delete)."""
    db: Session = get_db_sync()
    try:
        athlete = _load_athlete(db, athlete_id)
        if not athlete:
            return {"status": "error", "error": f"Athlete {athlete_id} not found"}
        deleted = delete_strava_activity(db, athlete, int(strava_activity_id))
        return {"status": "deleted" if deleted else "not_found", "strava_activity_id": strava_activity_id}
    except Exception as e:
        db.rollback()
        logger.exception(f"Error deleting Strava activity {strava_activity_id}")
        return {"status": "error", "error": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.sync_auto_sync_athletes")
def sync_auto_sync_athletes_task() -> Dict:
    """Queue an incremental sync for every athlete with auto-sync on."""
    db: Session = get_db_sync()
    try:
        athlete_ids = [
            row.id
            for row in db.query(Athlete.id).filter(
                Athlete.strava_auto_sync.is_(True),
                Athlete.strava_access_token.isnot(None),
            )
        ]
        for athlete_id in athlete_ids:
            sync_strava_activities_task.delay(str(athlete_id))
        logger.info(f"Queued Strava sync for {len(athlete_ids)} athletes")
        return {"status": "success", "queued": len(athlete_ids)}
    finally:
        db.close()
