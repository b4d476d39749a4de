# /chatflow/services/whatsapp_service.py

import httpx
import logging
import re
import tenacity
from typing import Optional

from pymongo.errors import PyMongoError

from chatflow.config.settings import settings
from chatflow.errors import ChatflowError
from chatflow.models.session import OutboundMessage
from chatflow.services.db_service import db_service
from chatflow.utils.alerting import alerting_service
from chatflow.utils.circuit_breaker import CircuitBreaker
from chatflow.utils.metrics import outbound_counter

logger = logging.getLogger(__name__)

TEXT_LIMIT = 4096
CAPTION_LIMIT = 1024


class WhatsAppService:
    """Outbound transport over the WhatsApp Cloud API."""

    def __init__(self, access_token: str, phone_id: str, base_url: str):
        self.access_token = access_token
        self.phone_id = phone_id
        self.base_url = base_url.rstrip("/")
        self.http_client = httpx.AsyncClient(timeout=15.0)
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING)
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    @staticmethod
    def clean_phone(phone: str) -> str:
        return re.sub(r"[^\d]", "", phone or "")

    def build_payload(self, to_phone: str, message: OutboundMessage, reply_to: Optional[str] = None) -> Optional[dict]:
        """Translates an OutboundMessage into a Cloud API request body."""
        if message.kind == "typing":
            if not reply_to:
                return None
            return {
                "messaging_product": "whatsapp",
                "status": "read",
                "message_id": reply_to,
                "typing_indicator": {"type": "text"},
            }

        payload = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to_phone}
        if message.kind == "media":
            payload["type"] = "image"
            payload["image"] = {"link": message.media_url}
            if message.caption:
                payload["image"]["caption"] = message.caption[:CAPTION_LIMIT]
        elif message.kind == "document":
            payload["type"] = "document"
            payload["document"] = {"link": message.media_url, "filename": message.filename or "documento.pdf"}
            if message.caption:
                payload["document"]["caption"] = message.caption[:CAPTION_LIMIT]
        else:
            payload["type"] = "text"
            payload["text"] = {"body": (message.body or "")[:TEXT_LIMIT]}
        return payload

    async def send(self, to_phone: str, message: OutboundMessage, reply_to: Optional[str] = None) -> Optional[str]:
        """
        Sends one outbound message. Returns the WhatsApp message id, or None
        when nothing was sent. Never raises for transport failures.
        """
        clean_phone = self.clean_phone(to_phone)
        if not clean_phone:
            logger.error(f"whatsapp_send_invalid_phone: {to_phone}")
            return None
        payload = self.build_payload(clean_phone, message, reply_to)
        if payload is None:
            return None
        return await self.send_whatsapp_request(payload, message.kind)

    async def send_whatsapp_request(self, payload: dict, kind: str) -> Optional[str]:
        to_phone = payload.get("to", "-")
        url = f"{self.base_url}/{self.phone_id}/messages"
        try:
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=self._headers())
        except (httpx.HTTPError, tenacity.RetryError, ChatflowError) as e:
            outbound_counter.labels(kind=kind, status="error").inc()
            logger.error(f"whatsapp_send_error to {to_phone}: {e}")
            return None

        if response.status_code != 200:
            outbound_counter.labels(kind=kind, status="failed").inc()
            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            if response.status_code == 401:
                await alerting_service.send_critical_alert("WhatsApp authentication failed", {"error": "Invalid access token"})
            return None

        outbound_counter.labels(kind=kind, status="sent").inc()
        if kind == "typing":
            return None
        message_id = (response.json().get("messages") or [{}])[0].get("id")
        logger.info(f"WhatsApp {kind} message sent to {to_phone}, wamid: {message_id}")
        try:
            await db_service.log_message({
                "wamid": message_id,
                "phone": to_phone,
                "direction": "outbound",
                "message_type": payload.get("type"),
                "content": payload.get(payload.get("type"), {}),
                "status": "sent",
            })
        except PyMongoError as e:
            logger.warning(f"Failed to log outbound message {message_id}: {e}")
        return message_id

    async def get_media_url(self, media_id: str) -> Optional[str]:
        """Fetches a temporary URL for a media object from WhatsApp."""
        try:
            resp = await self.http_client.get(f"{self.base_url}/{media_id}", headers=self._headers())
            resp.raise_for_status()
            return resp.json().get("url")
        except httpx.HTTPError as e:
            logger.error(f"get_media_url_failed for {media_id}: {e}")
            return None

    async def cleanup(self):
        await self.http_client.aclose()


# Globally accessible instance
whatsapp_service = WhatsAppService(
    settings.whatsapp_access_token,
    settings.whatsapp_phone_id,
    settings.whatsapp_api_base_url,
)
