# /chatflow/services/handover_service.py

import httpx
import logging
from datetime import datetime, timezone
from typing import Optional

from pymongo.errors import PyMongoError

from chatflow.config.settings import settings
from chatflow.services.db_service import DatabaseService, db_service
from chatflow.utils.alerting import alerting_service

# Notifies human operators that a conversation needs attention. Callers fire
# and forget: failures are logged here and never reach the conversation.

logger = logging.getLogger(__name__)


class HandoverNotifier:
    def __init__(self, db: DatabaseService, webhook_url: Optional[str]):
        self.db = db
        self.webhook_url = webhook_url
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None

    async def notify(self, key: str, reason: str) -> None:
        logger.info(f"Conversation {key} needs human attention: {reason}")
        try:
            await self.db.set_handover_status(key, "HUMAN", reason)
        except PyMongoError as e:
            logger.error(f"Failed to record handover status for {key}: {e}")

        if self.client:
            try:
                await self.client.post(self.webhook_url, json={
                    "conversation_key": key,
                    "reason": reason,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                })
            except httpx.HTTPError as e:
                logger.error(f"Handover webhook failed for {key}: {e}")
        else:
            await alerting_service.send_operator_warning(
                "Conversation handed over to a human", {"conversation_key": key, "reason": reason}
            )

    async def resolved(self, key: str) -> None:
        try:
            await self.db.set_handover_status(key, "BOT")
        except PyMongoError as e:
            logger.error(f"Failed to clear handover status for {key}: {e}")

    async def cleanup(self):
        if self.client:
            await self.client.aclose()


# Globally accessible instance
handover_notifier = HandoverNotifier(db_service, settings.handover_webhook_url)
