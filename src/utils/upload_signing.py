from __future__ import annotations

import hashlib
import hmac
import os
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import quote

DEFAULT_SIGNED_URL_TTL_SECONDS = 3600
MIN_SIGNED_URL_TTL_SECONDS = 1


@dataclass(frozen=True)
class SignedObjectUrl:
    url: str
    expires_at: datetime


def _signing_secret() -> bytes:
    secret = os.getenv("OBJECT_SIGNING_SECRET", "").strip()
    if not secret:
        secret = os.getenv("API_AUTH_TOKEN", "").strip()
    if not secret:
        secret = "dev-object-secret"
    return secret.encode("utf-8")


def _signature_payload(key: str, exp: int) -> str:
    return f"{key}:{exp}"


def _digest(key: str, exp: int) -> str:
    payload = _signature_payload(key, exp)
    return hmac.new(_signing_secret(), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_object_url(
    key: str,
    *,
    base_path: str,
    expires_in: int | None = None,
) -> SignedObjectUrl:
    """Return a time-limited read URL for a locally stored object."""

    ttl_seconds = expires_in if expires_in is not None else DEFAULT_SIGNED_URL_TTL_SECONDS
    ttl_seconds = max(MIN_SIGNED_URL_TTL_SECONDS, int(ttl_seconds))
    exp = int(time.time()) + ttl_seconds
    sig = _digest(key, exp)
    url = f"{base_path.rstrip('/')}/{quote(key)}?exp={exp}&sig={sig}"
    return SignedObjectUrl(url=url, expires_at=datetime.fromtimestamp(exp, tz=UTC))


def verify_object_signature(key: str, *, exp: int, sig: str) -> bool:
    if exp <= int(time.time()):
        return False
    return hmac.compare_digest(_digest(key, exp), sig)
