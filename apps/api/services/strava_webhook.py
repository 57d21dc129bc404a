"""
Strava Webhook Service

Handles Strava webhook subscriptions and event processing.

Activity create/update events enqueue a single-activity sync, deletes enqueue a
removal, and an athlete deauthorization (the athlete revoked us
in their Strava settings) wipes the stored tokens.
"""

import hmac
import hashlib
import logging
from typing import Dict, List, Optional

import requests
from sqlalchemy.orm import Session

from core.config import settings
from models import Athlete
from services.strava_sync import clear_strava_connection
from tasks.strava_tasks import delete_strava_activity_task, sync_strava_activity_task

logger = logging.getLogger(__name__)


def verify_subscription_challenge(mode: Optional[str], verify_token: Optional[str], challenge: Optional[str]) -> Optional[Dict]:
    """
    Answer Strava's subscription handshake.

    Returns {"hub.challenge": challenge} when the verify token matches, else None.
    """
    expected = settings.STRAVA_WEBHOOK_VERIFY_TOKEN
    if not expected:
        logger.warning("STRAVA_WEBHOOK_VERIFY_TOKEN not set, refusing webhook verification")
        return None
    if mode != "subscribe" or not verify_token or not challenge:
        return None
    if not hmac.compare_digest(verify_token, expected):
        return None
    return {"hub.challenge": challenge}


def verify_webhook_signature(payload: str, signature: str) -> bool:
    """
    Check a hex HMAC-SHA256 of the raw body, keyed with the client secret.
    """
    if not settings.STRAVA_CLIENT_SECRET:
        logger.warning("STRAVA_CLIENT_SECRET not set, cannot verify webhook signature")
        return False

    expected_signature = hmac.new(
        settings.STRAVA_CLIENT_SECRET.encode('utf-8'),
        payload.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()

    return hmac.compare_digest(signature, expected_signature)


def _is_deauthorization(event: Dict) -> bool:
    updates = event.get("updates") or {}
    return str(updates.get("authorized", "")).lower() == "false"


def handle_webhook_event(db: Session, event: Dict) -> Dict:
    """
    Apply one webhook event. Returns a status dict for the response body.

    Statuses: queued, deauthorized, ignored, athlete_not_found, rejected.
    """
    object_type = event.get("object_type")
    aspect_type = event.get("aspect_type")
    object_id = event.get("object_id")
    owner_id = event.get("owner_id")

    logger.info(f"Webhook event: type={object_type}, aspect={aspect_type}, object_id={object_id}, owner_id={owner_id}")

    expected_subscription = settings.STRAVA_WEBHOOK_SUBSCRIPTION_ID
    if expected_subscription is not None and event.get("subscription_id") != expected_subscription:
        logger.warning(f"Webhook event for unknown subscription {event.get('subscription_id')}")
        return {"status": "rejected", "reason": "subscription_mismatch"}

    if object_type not in ("activity", "athlete"):
        return {"status": "ignored", "object_type": object_type}

    athlete = db.query(Athlete).filter(Athlete.strava_athlete_id == owner_id).first()
    if not athlete:
        logger.warning(f"No athlete found for Strava ID: {owner_id}")
        return {"status": "athlete_not_found"}

    if object_type == "athlete":
        if aspect_type == "update" and _is_deauthorization(event):
            clear_strava_connection(db, athlete)
            db.commit()
            logger.info(f"Strava deauthorized athlete {athlete.id}")
            return {"status": "deauthorized", "athlete_id": str(athlete.id)}
        return {"status": "ignored", "aspect_type": aspect_type}

    try:
        activity_id = int(object_id)
    except (TypeError, ValueError):
        logger.warning(f"Activity event without a usable object_id: {object_id!r}")
        return {"status": "ignored", "reason": "missing_object_id"}

    if aspect_type in ("create", "update"):
        sync_strava_activity_task.delay(str(athlete.id), activity_id)
        return {"status": "queued", "athlete_id": str(athlete.id), "activity_id": activity_id}

    if aspect_type == "delete":
        delete_strava_activity_task.delay(str(athlete.id), activity_id)
        return {"status": "queued", "athlete_id": str(athlete.id), "activity_id": activity_id, "aspect_type": "delete"}

    return {"status": "ignored", "aspect_type": aspect_type}


def _client_params() -> Dict:
    if not settings.STRAVA_CLIENT_ID or not settings.STRAVA_CLIENT_SECRET:
        raise ValueError("Strava credentials not configured")
    return {
        "client_id": settings.STRAVA_CLIENT_ID,
        "client_secret": settings.STRAVA_CLIENT_SECRET,
    }


def subscribe_to_webhooks(callback_url: str) -> Dict:
    """
    Subscribe to Strava webhooks.

    Strava calls `callback_url` with a GET handshake before answering, so the
    verify endpoint must be publicly reachable. Returns {"id": ...}.
    """
    if not settings.STRAVA_WEBHOOK_VERIFY_TOKEN:
        raise ValueError("STRAVA_WEBHOOK_VERIFY_TOKEN not configured")

    response = requests.post(
        f"{settings.STRAVA_API_BASE}/push_subscriptions",
        data={
            **_client_params(),
            "callback_url": callback_url,
            "verify_token": settings.STRAVA_WEBHOOK_VERIFY_TOKEN,
        },
        timeout=settings.EXTERNAL_API_TIMEOUT,
    )
    response.raise_for_status()
    return response.json()


def list_webhook_subscriptions() -> List[Dict]:
    """
    List current webhook subscriptions.
    """
    response = requests.get(
        f"{settings.STRAVA_API_BASE}/push_subscriptions",
        params=_client_params(),
        timeout=settings.EXTERNAL_API_TIMEOUT,
    )
    response.raise_for_status()
    return response.json()


def delete_webhook_subscription(subscription_id: int) -> bool:
    response = requests.delete(
        f"{settings.STRAVA_API_BASE}/push_subscriptions/{subscription_id}",
        params=_client_params(),
        timeout=settings.EXTERNAL_API_TIMEOUT,
    )
    return response.status_code == 204
