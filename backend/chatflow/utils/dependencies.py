# /chatflow/utils/dependencies.py

import hmac
import hashlib
import secrets
import structlog
from fastapi import Request, HTTPException, status

from chatflow.config.settings import settings
from chatflow.utils.metrics import webhook_signature_counter
from chatflow.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


def is_valid_signature(body: bytes, signature: str, app_secret: str) -> bool:
    """Checks a Meta `X-Hub-Signature-256` header (`sha256=<hexdigest>`) against the raw body."""
    if not app_secret or not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len("sha256="):])


async def verify_webhook_signature(request: Request) -> bytes:
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256", "")
    if not is_valid_signature(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(status="invalid").inc()
        log.error("Invalid webhook signature.", remote=get_remote_address(request), signature=signature[:50])
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")
    webhook_signature_counter.labels(status="valid").inc()
    return body


async def verify_api_key(request: Request):
    """Guards operator endpoints with the `X-API-KEY` header when an API key is configured."""
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            log.warning("Rejected operator request.", remote=get_remote_address(request), path=request.url.path)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or missing API key")
