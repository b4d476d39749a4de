# /chatflow/services/slot_service.py

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from pymongo.errors import PyMongoError

from chatflow.config.settings import settings
from chatflow.errors import CollaboratorError
from chatflow.models.domain import DeliverySlot
from chatflow.services.db_service import db_service

logger = logging.getLogger(__name__)

SlotLoader = Callable[[str, str, int], Awaitable[List[Dict[str, Any]]]]


class DeliverySlotService:
    """
    Lists bookable delivery windows for slot nodes. A slot is offered while
    it starts more than `cutoff_minutes` from now and still has room.
    """

    def __init__(self, loader: SlotLoader, timezone: str, cutoff_minutes: int = 30,
                 clock: Optional[Callable[[], datetime]] = None):
        self._loader = loader
        self.tz = ZoneInfo(timezone)
        self.cutoff_minutes = cutoff_minutes
        self._clock = clock or (lambda: datetime.now(self.tz))

    def now(self) -> datetime:
        return self._clock()

    async def get_available_slots(self, max_results: int = 6) -> List[DeliverySlot]:
        now = self.now()
        limit = now + timedelta(minutes=self.cutoff_minutes)
        time_limit = limit.strftime("%H:%M:%S")
        try:
            # Full slots are filtered here, so read a few extra.
            documents = await self._loader(limit.strftime("%Y-%m-%d"), time_limit, max_results * 3)
        except PyMongoError as e:
            logger.error(f"Failed to load delivery slots: {e}")
            raise CollaboratorError("slots", str(e)) from e

        slots = [DeliverySlot.from_document(doc) for doc in documents]
        available = [slot for slot in slots if slot.remaining > 0][:max_results]
        logger.debug(f"{len(available)} delivery slots available after {time_limit}")
        return available


# Globally accessible instance
slot_service = DeliverySlotService(
    db_service.get_open_slots, settings.business_timezone, settings.slot_cutoff_minutes
)
