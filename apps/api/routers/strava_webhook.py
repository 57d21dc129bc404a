"""
Strava Webhook Router

Subscription handshake and event intake for Strava push notifications,
plus admin-only management of the push subscription itself.
"""

import json
import logging
from typing import Optional

import requests
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.database import get_db
from core.exceptions import ExternalServiceError, ValidationError
from models import Athlete
from services.strava_webhook import (
    delete_webhook_subscription,
    handle_webhook_event,
    list_webhook_subscriptions,
    subscribe_to_webhooks,
    verify_subscription_challenge,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/strava/webhook", tags=["strava-webhook"])


@router.get("/verify")
def verify_webhook(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """
    Verify webhook subscription with Strava.

    Strava calls this during subscription creation and expects the challenge
    echoed back when the verify token matches.
    """
    response = verify_subscription_challenge(hub_mode, hub_verify_token, hub_challenge)
    if response is None:
        logger.warning(f"Webhook verification failed: mode={hub_mode}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Verification failed"
        )
    logger.info("Webhook verification successful")
    return response


@router.post("/events")
async def receive_webhook_event(
    request: Request,
    x_strava_signature: Optional[str] = Header(None, alias="X-Strava-Signature"),
    db: Session = Depends(get_db),
):
    """
    Handle Strava webhook events.

    Strava does not sign events today; a signature header, when present,
    must match. Strava expects a 200 within 2 seconds, so activity imports
    and deletes are queued rather than done inline.
    """
    try:
        body_str = (await request.body()).decode('utf-8')
    except UnicodeDecodeError:
        logger.error("Webhook payload is not UTF-8")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid encoding"
        )

    if x_strava_signature:
        # Sent as "sha256=<hex>"
        signature = x_strava_signature.replace("sha256=", "")
        if not verify_webhook_signature(body_str, signature):
            logger.warning("Invalid webhook signature - rejecting")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid signature"
            )

    try:
        event = json.loads(body_str)
    except json.JSONDecodeError:
        logger.error("Invalid JSON in webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON"
        )
    if not isinstance(event, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid event"
        )

    # Session work is blocking; keep it off the event loop
    result = await run_in_threadpool(handle_webhook_event, db, event)
    if result.get("status") == "rejected":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown subscription")
    return result


@router.post("/subscribe")
def subscribe_webhook(
    callback_url: str = Query(..., description="Public URL for webhook callbacks"),
    admin: Athlete = Depends(require_admin),
):
    """
    Subscribe to Strava webhooks.

    Strava calls `callback_url` (the public /verify endpoint) before it
    answers, so this only works from a deployed environment.
    """
    try:
        result = subscribe_to_webhooks(callback_url)
    except ValueError as e:
        raise ValidationError(str(e))
    except requests.RequestException as e:
        logger.error(f"Error subscribing to webhooks: {e}")
        raise ExternalServiceError("Strava", str(e))
    logger.info(f"Webhook subscription created by {admin.id}: {result}")
    return result


@router.get("/subscriptions")
def get_webhook_subscriptions(admin: Athlete = Depends(require_admin)):
    """
    List current webhook subscriptions.
    """
    try:
        return list_webhook_subscriptions()
    except ValueError as e:
        raise ValidationError(str(e))
    except requests.RequestException as e:
        logger.error(f"Error listing subscriptions: {e}")
        raise ExternalServiceError("Strava", str(e))


@router.delete("/subscriptions/{subscription_id}")
def remove_webhook_subscription(subscription_id: int, admin: Athlete = Depends(require_admin)):
    try:
        deleted = delete_webhook_subscription(subscription_id)
    except ValueError as e:
        raise ValidationError(str(e))
    except requests.RequestException as e:
        raise ExternalServiceError("Strava", str(e))
    if not deleted:
        raise ExternalServiceError("Strava", f"subscription {subscription_id} was not deleted")
    logger.info(f"Webhook subscription {subscription_id} deleted by {admin.id}")
    return {"status": "deleted", "id": subscription_id}
