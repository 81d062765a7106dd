"""
Authentication for scheduler-triggered endpoints.

Any one of four credentials is accepted:

* ``Authorization: Bearer <CRON_SECRET>``                       -> ``cron``
* ``Upstash-Signature: <hmac-sha256(body)>`` (hex or base64),
  checked against the current and the next signing key          -> ``signed-webhook``
* ``X-API-Key: <ADMIN_API_KEY>``                                 -> ``admin``
* ``X-Worker-Key: <WORKER_API_KEY>``                             -> ``worker-callback``
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import base64
import hashlib
import hmac
import logging

from fastapi import HTTPException, Request, status

from fundmatch.config import Settings, get_settings

logger = logging.getLogger(__name__)

SOURCE_CRON = "cron"
SOURCE_SIGNED_WEBHOOK = "signed-webhook"
SOURCE_ADMIN = "admin"
SOURCE_WORKER = "worker-callback"


@dataclass(frozen=True)
class Trigger:
    source: str
    body: bytes = b""


def _same(given: Optional[str], expected: Optional[str]) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def sign_body(body: bytes, key: str) -> str:
    return hmac.new(key.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(signature: str, body: bytes, keys) -> bool:
    signature = signature.strip()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    for key in keys:
        if not key:
            continue
        digest = hmac.new(key.encode("utf-8"), body, hashlib.sha256).digest()
        if _same(signature.lower(), digest.hex()):
            return True
        if _same(signature, base64.b64encode(digest).decode("ascii")):
            return True
        if _same(signature.rstrip("="), base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")):
            return True
    return False


def identify_trigger(headers, body: bytes, settings: Settings) -> Optional[str]:
    """Return the trigger source for the first valid credential, or None."""
    auth = headers.get("authorization") or ""
    if auth.startswith("Bearer ") and _same(auth[len("Bearer "):].strip(), settings.cron_secret):
        return SOURCE_CRON

    signature = headers.get("upstash-signature")
    if signature and verify_signature(
        signature, body, (settings.webhook_signing_key, settings.webhook_next_signing_key)
    ):
        return SOURCE_SIGNED_WEBHOOK

    if _same(headers.get("x-api-key"), settings.admin_api_key):
        return SOURCE_ADMIN

    if _same(headers.get("x-worker-key"), settings.worker_api_key):
        return SOURCE_WORKER

    return None


async def verify_trigger(request: Request) -> Trigger:
    """FastAPI dependency: 401 before any work unless one credential checks out."""
    body = await request.body()
    source = identify_trigger(request.headers, body, get_settings())
    if source is None:
        logger.warning("Rejected unauthenticated trigger on %s from %s",
                       request.url.path, request.client.host if request.client else "?")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return Trigger(source=source, body=body)
