"""
Strava Integration Router

OAuth connect/disconnect, sync triggers and connection status for the
authenticated athlete.
"""
import logging
from typing import Optional
from uuid import UUID

import requests
from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.config import settings
from core.database import get_db
from core.exceptions import (
    ExternalServiceError,
    ForbiddenError,
    NotFoundError,
    UpstreamRateLimitError,
    ValidationError,
)
from models import Activity, Athlete
from services.oauth_state import create_oauth_state, verify_oauth_state
from services.strava_service import (
    StravaAuthError,
    StravaOAuthCapacityError,
    StravaRateLimitError,
    exchange_code_for_token,
    get_athlete,
    get_auth_url,
    refresh_access_token,
    store_tokens,
)
from services.strava_sync import (
    activity_hr_zones,
    activity_laps,
    clear_strava_connection,
    connect_strava,
    disconnect_strava,
)
from services.token_encryption import decrypt_token
from tasks.strava_tasks import sync_strava_activities_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/strava", tags=["strava"])

DEFAULT_RETURN_TO = "/settings"

# /oauth/token answers these when the refresh token is no longer valid
REFRESH_REJECTED_STATUSES = (400, 401)


class AutoSyncRequest(BaseModel):
    enabled: bool


def _is_safe_return_to(return_to: Optional[str]) -> bool:
    # Relative paths only; "//host" would be protocol-relative
    return isinstance(return_to, str) and return_to.startswith("/") and not return_to.startswith("//")


def _refresh_rejected(e: requests.HTTPError) -> bool:
    return e.response is not None and e.response.status_code in REFRESH_REJECTED_STATUSES


def _redirect_to_app(return_to: Optional[str], outcome: str, reason: Optional[str] = None) -> RedirectResponse:
    if not _is_safe_return_to(return_to):
        return_to = DEFAULT_RETURN_TO
    sep = "&" if "?" in return_to else "?"
    url = f"{settings.WEB_APP_BASE_URL}{return_to}{sep}strava={outcome}"
    if reason:
        url += f"&reason={reason}"
    return RedirectResponse(url=url, status_code=302)


@router.get("/status")
def get_strava_status(
    current_user: Athlete = Depends(get_current_user),
):
    """
    Get Strava connection status for current user.
    """
    last_sync = current_user.last_strava_sync.isoformat() if current_user.last_strava_sync else None
    return {
        "connected": current_user.has_strava_connection,
        "strava_athlete_id": current_user.strava_athlete_id,
        "auto_sync": current_user.strava_auto_sync,
        "last_sync": last_sync,
    }


@router.get("/auth-url")
def get_strava_auth_url(
    current_user: Athlete = Depends(get_current_user),
    return_to: str = Query(DEFAULT_RETURN_TO, description="UI path to return to after OAuth (must start with /)"),
):
    """
    Get Strava OAuth authorization URL for current user.
    """
    if not _is_safe_return_to(return_to):
        raise ValidationError("Invalid return_to", field="return_to")

    state = create_oauth_state({"athlete_id": str(current_user.id), "return_to": return_to})
    try:
        auth_url = get_auth_url(state=state)
    except ValueError as e:
        raise ExternalServiceError("Strava", str(e))
    return {"auth_url": auth_url}


@router.get("/callback")
def strava_callback(
    code: Optional[str] = Query(None, description="Authorization code from Strava"),
    state: Optional[str] = Query(None, description="Signed state token"),
    error: Optional[str] = Query(None, description="Set by Strava when the athlete declines"),
    db: Session = Depends(get_db),
):
    """
    Handle Strava OAuth callback.

    Links Strava to the existing athlete named by the signed `state`, then
    redirects back to the web app with strava=connected|error.
    """
    payload = verify_oauth_state(state)
    if not payload or not payload.get("athlete_id"):
        raise ForbiddenError("Invalid OAuth state")

    return_to = payload.get("return_to")
    try:
        athlete_id = UUID(str(payload["athlete_id"]))
    except ValueError:
        raise ForbiddenError("Invalid OAuth state")
    athlete = db.query(Athlete).filter(Athlete.id == athlete_id).first()
    if not athlete:
        raise ForbiddenError("Invalid OAuth state")

    if error or not code:
        logger.info(f"Strava authorization declined for athlete {athlete.id}: {error}")
        return _redirect_to_app(return_to, "error", "denied")

    try:
        token_data = exchange_code_for_token(code)
    except StravaOAuthCapacityError:
        return _redirect_to_app(return_to, "error", "capacity")
    except requests.RequestException as e:
        logger.warning(f"Strava code exchange failed for athlete {athlete.id}: {e}")
        return _redirect_to_app(return_to, "error", "oauth")

    try:
        connect_strava(db, athlete, token_data)
    except ValueError as e:
        logger.warning(f"Strava connect rejected for athlete {athlete.id}: {e}")
        return _redirect_to_app(return_to, "error", "already_linked")

    db.commit()
    sync_strava_activities_task.delay(str(athlete.id))
    return _redirect_to_app(return_to, "connected")


@router.post("/sync")
def trigger_strava_sync(
    full: bool = False,
    current_user: Athlete = Depends(get_current_user),
):
    """
    Queue a sync of activities from Strava for the current user.
    """
    if not current_user.has_strava_connection:
        raise ValidationError("Strava not connected")

    task = sync_strava_activities_task.delay(str(current_user.id), full=full)
    return {
        "status": "queued",
        "message": "Strava sync task queued",
        "task_id": task.id,
    }


@router.post("/disconnect")
def disconnect(
    current_user: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Revoke our access on Strava (best effort) and forget the tokens."""
    if not current_user.strava_access_token and not current_user.strava_athlete_id:
        return {"status": "not_connected"}
    revoked = disconnect_strava(db, current_user)
    return {"status": "disconnected", "revoked_on_strava": revoked}


@router.put("/auto-sync")
def set_auto_sync(
    request: AutoSyncRequest,
    current_user: Athlete = Depends(get_current_user),
):
    if request.enabled and not current_user.has_strava_connection:
        raise ValidationError("Strava not connected")
    current_user.strava_auto_sync = request.enabled
    return {"auto_sync": current_user.strava_auto_sync}


@router.get("/verify")
def verify_connection(
    current_user: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Check the stored token against Strava.

    A 401 triggers one refresh; if Strava refuses that too, the athlete has
    revoked access and the stored connection is cleared.
    """
    if not current_user.has_strava_connection:
        return {"valid": False, "connected": False}

    token = decrypt_token(current_user.strava_access_token)
    try:
        if not token:
            raise StravaAuthError("Stored access token is unusable")
        get_athlete(token)
        return {"valid": True, "connected": True, "refreshed": False}
    except StravaAuthError:
        pass
    except StravaRateLimitError as e:
        raise UpstreamRateLimitError("Strava", e.retry_after_s)
    except requests.RequestException as e:
        raise ExternalServiceError("Strava", str(e))

    refresh = decrypt_token(current_user.strava_refresh_token)
    try:
        if not refresh:
            raise StravaAuthError("Stored refresh token is unusable")
        token_data = refresh_access_token(refresh)
        store_tokens(current_user, token_data)
        get_athlete(token_data["access_token"])
    except StravaRateLimitError as e:
        raise UpstreamRateLimitError("Strava", e.retry_after_s)
    except (StravaAuthError, requests.HTTPError) as e:
        if isinstance(e, requests.HTTPError) and not _refresh_rejected(e):
            # Outage or throttling on Strava's side; the stored tokens stay
            raise ExternalServiceError("Strava", str(e))
        logger.warning(f"Strava access revoked for athlete {current_user.id}: {e}")
        clear_strava_connection(db, current_user)
        return {"valid": False, "connected": False, "revoked": True}
    except requests.RequestException as e:
        raise ExternalServiceError("Strava", str(e))

    return {"valid": True, "connected": True, "refreshed": True}


def _get_owned_activity(db: Session, athlete: Athlete, activity_id: UUID) -> Activity:
    activity = db.query(Activity).filter(
        Activity.id == activity_id,
        Activity.athlete_id == athlete.id,
    ).first()
    if not activity:
        raise NotFoundError("Activity", str(activity_id))
    return activity


@router.get("/activities/{activity_id}/hr-zones")
def get_activity_hr_zones(
    activity_id: UUID,
    current_user: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Time in heart-rate zones for one synced run, read from its Strava streams.
    Zones are empty when the run has no heart-rate stream.
    """
    activity = _get_owned_activity(db, current_user, activity_id)
    try:
        return activity_hr_zones(db, current_user, activity)
    except ValueError as e:
        raise ValidationError(str(e), field="activity_id")
    except StravaAuthError:
        raise ValidationError("Strava not connected")
    except StravaRateLimitError as e:
        raise UpstreamRateLimitError("Strava", e.retry_after_s)
    except requests.RequestException as e:
        raise ExternalServiceError("Strava", str(e))


@router.get("/activities/{activity_id}/laps")
def get_activity_laps_summary(
    activity_id: UUID,
    current_user: Athlete = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Classified laps of a run and its fastest work-lap pace."""
    activity = _get_owned_activity(db, current_user, activity_id)
    return activity_laps(activity)
