# /chatflow/routes/webhooks.py

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from chatflow.config.settings import settings
from chatflow.models.session import InboundMessage
from chatflow.services.conversation_service import conversation_service
from chatflow.services.whatsapp_service import whatsapp_service
from chatflow.utils.dependencies import verify_webhook_signature
from chatflow.utils.logging import clear_conversation
from chatflow.utils.metrics import response_time_histogram
from chatflow.utils.rate_limiter import limiter

# Inbound WhatsApp traffic. Verified payloads are normalized into
# InboundMessage objects and handed to the conversation service after the
# response is sent, so Meta gets its 200 quickly.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)

MEDIA_TYPES = ("image", "document", "audio", "video", "sticker")


def _message_text(message: Dict[str, Any]) -> str:
    msg_type = message.get("type")
    if msg_type == "text":
        return message.get("text", {}).get("body", "")
    if msg_type == "interactive":
        interactive = message.get("interactive", {})
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title", "")
    if msg_type == "button":
        return message.get("button", {}).get("text", "")
    if msg_type in MEDIA_TYPES:
        return message.get(msg_type, {}).get("caption", "")
    return ""


def _message_timestamp(message: Dict[str, Any]) -> datetime:
    try:
        return datetime.fromtimestamp(int(message["timestamp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError):
        return datetime.now(timezone.utc)


def _profile_names(value: Dict[str, Any]) -> Dict[str, str]:
    names = {}
    for contact in value.get("contacts", []):
        name = contact.get("profile", {}).get("name")
        if contact.get("wa_id") and name:
            names[contact["wa_id"]] = name
    return names


async def extract_inbound_messages(value: Dict[str, Any]) -> List[InboundMessage]:
    """Normalizes the `messages` of one webhook change into InboundMessage objects."""
    names = _profile_names(value)
    inbound = []
    for message in value.get("messages", []):
        sender, message_id = message.get("from"), message.get("id")
        if not sender or not message_id:
            log.warning("Skipping message without sender or id", message=message)
            continue

        media_url: Optional[str] = None
        msg_type = message.get("type")
        if msg_type in MEDIA_TYPES:
            media_id = message.get(msg_type, {}).get("id")
            if media_id:
                media_url = await whatsapp_service.get_media_url(media_id)

        inbound.append(InboundMessage(
            conversation_key=sender,
            text=_message_text(message),
            message_id=message_id,
            timestamp=_message_timestamp(message),
            media_url=media_url,
            profile_name=names.get(sender),
        ))
    return inbound


async def process_inbound(messages: List[InboundMessage]):
    for message in messages:
        try:
            result = await conversation_service.handle_inbound(message)
            log.info("Inbound message handled", message_id=message.message_id, status=result["status"])
        except Exception as e:
            log.error("Inbound message failed", message_id=message.message_id, error=str(e), exc_info=True)
        finally:
            clear_conversation()


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Accepts message and status notifications from the WhatsApp Cloud API."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except ValueError:
            log.warning("Webhook body is not valid JSON.")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        received: List[InboundMessage] = []
        for entry in data.get("entry", []):
            for change in entry.get("changes", []):
                if change.get("field") != "messages":
                    log.debug("Ignoring non-message change", change=change)
                    continue

                value = change.get("value", {})
                incoming_phone_id = value.get("metadata", {}).get("phone_number_id")
                expected_phone_id = settings.whatsapp_phone_id
                if incoming_phone_id and expected_phone_id and incoming_phone_id != expected_phone_id:
                    log.info(
                        "Ignored event for different phone ID.",
                        incoming_id=incoming_phone_id,
                        expected_id=expected_phone_id
                    )
                    continue

                for status_data in value.get("statuses", []):
                    log.debug("Delivery status", wamid=status_data.get("id"), status=status_data.get("status"))
                received.extend(await extract_inbound_messages(value))

        if received:
            background_tasks.add_task(process_inbound, received)
        log.info("Webhook processing complete.", messages=len(received))
        return JSONResponse({"status": "success"})
