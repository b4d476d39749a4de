# backend/tests/unit/test_slot_service.py
from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest
from unittest.mock import AsyncMock
from pymongo.errors import PyMongoError

from chatflow.errors import CollaboratorError
from chatflow.models.domain import DeliverySlot
from chatflow.services.slot_service import DeliverySlotService

TZ = "America/Argentina/Buenos_Aires"


def _slot(slot_id, day, start, end, max_orders=3, orders_count=0):
    return {
        "_id": slot_id, "date": day, "time_start": start, "time_end": end,
        "max_orders": max_orders, "orders_count": orders_count, "is_available": True,
    }


def _service(loader, hour=9, minute=0, day=10):
    clock = lambda: datetime(2026, 3, day, hour, minute, tzinfo=ZoneInfo(TZ))  # noqa: E731
    return DeliverySlotService(loader, TZ, cutoff_minutes=30, clock=clock)


@pytest.mark.asyncio
async def test_lists_slots_with_room_after_the_cutoff():
    loader = AsyncMock(return_value=[
        _slot("a", "2026-03-10", "11:00:00", "11:30:00", max_orders=2, orders_count=2),
        _slot("b", "2026-03-10", "12:00:00", "12:30:00"),
        _slot("c", "2026-03-11", "09:00:00", "09:30:00"),
    ])

    slots = await _service(loader).get_available_slots(max_results=6)

    assert [s.id for s in slots] == ["b", "c"]
    loader.assert_awaited_once_with("2026-03-10", "09:30:00", 18)


@pytest.mark.asyncio
async def test_truncates_to_max_results():
    loader = AsyncMock(return_value=[_slot(str(i), "2026-03-12", f"{10 + i}:00:00", f"{10 + i}:30:00") for i in range(5)])

    slots = await _service(loader).get_available_slots(max_results=2)
    assert [s.id for s in slots] == ["0", "1"]


@pytest.mark.asyncio
async def test_cutoff_past_midnight_queries_the_next_day():
    loader = AsyncMock(return_value=[])

    await _service(loader, hour=23, minute=50).get_available_slots()
    loader.assert_awaited_once_with("2026-03-11", "00:20:00", 18)


@pytest.mark.asyncio
async def test_database_failure_is_a_collaborator_error():
    loader = AsyncMock(side_effect=PyMongoError("timeout"))

    with pytest.raises(CollaboratorError) as exc_info:
        await _service(loader).get_available_slots()
    assert exc_info.value.collaborator == "slots"


def test_slot_labels_are_relative_to_today():
    today = date(2026, 3, 10)
    assert DeliverySlot(id="1", date="2026-03-10", time_start="11:00:00", time_end="11:30:00").label(today) == "Hoy, 11:00 a 11:30"
    assert DeliverySlot(id="2", date="2026-03-11", time_start="09:00", time_end="09:30").label(today) == "Mañana, 09:00 a 09:30"
    assert DeliverySlot(id="3", date="2026-03-14", time_start="18:00:00", time_end="18:30:00").label(today) == "14/03, 18:00 a 18:30"
