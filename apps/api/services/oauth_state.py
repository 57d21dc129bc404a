"""
Signed OAuth state.

The Strava connect flow round-trips `state` through the browser. Signing it
(HMAC-SHA256 over the payload with SECRET_KEY) binds the callback to the
athlete who started the flow and to the page they should return to.

Token layout: <urlsafe b64 JSON payload>.<urlsafe b64 signature>
"""

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import settings

# Allowed clock skew for tokens that claim to be issued in the future
MAX_CLOCK_SKEW_S = 60


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("utf-8"))


def _sign(payload_b64: str) -> str:
    key = settings.SECRET_KEY.encode("utf-8")
    mac = hmac.new(key, payload_b64.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(mac)


def _now() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def create_oauth_state(data: Dict[str, Any]) -> str:
    """Sign `data` plus an issued-at timestamp into a state token."""
    payload = dict(data)
    payload["iat"] = _now()
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_b64 = _b64url_encode(raw)
    return f"{payload_b64}.{_sign(payload_b64)}"


def verify_oauth_state(token: Optional[str], ttl_s: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """
    Payload of a valid state token, or None.

    Invalid means: malformed, bad signature, missing `iat`, or older than
    `ttl_s` (default OAUTH_STATE_TTL_S; 0 disables expiry).
    """
    if not token or token.count(".") != 1:
        return None
    payload_b64, sig = token.split(".")
    if not payload_b64 or not sig:
        return None
    if not hmac.compare_digest(sig, _sign(payload_b64)):
        return None

    try:
        payload = json.loads(_b64url_decode(payload_b64))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    try:
        iat = int(payload["iat"])
    except (KeyError, TypeError, ValueError):
        return None

    age = _now() - iat
    ttl = settings.OAUTH_STATE_TTL_S if ttl_s is None else ttl_s
    if age < -MAX_CLOCK_SKEW_S:
        return None
    if ttl > 0 and age > ttl:
        return None
    return payload
