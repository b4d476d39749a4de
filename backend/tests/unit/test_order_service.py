# backend/tests/unit/test_order_service.py
import pytest
from unittest.mock import AsyncMock, MagicMock
from pymongo.errors import PyMongoError

from chatflow.errors import CollaboratorError
from chatflow.models.domain import CartItem, CustomerRef
from chatflow.services.order_service import OrderService

PHONE = "5491100000000"

ITEMS = [
    CartItem(product_id="p-coca", name="Coca Cola", qty=2, unit_price=1500),
    CartItem(product_id="p-pan", name="Pan Integral", qty=1, unit_price=2200),
]


@pytest.fixture
def mock_db():
    db = MagicMock()
    db.get_or_create_client = AsyncMock(return_value="client-1")
    db.next_order_number = AsyncMock(side_effect=[1001, 1002])
    db.insert_order = AsyncMock(return_value="order-1")
    db.decrement_stock = AsyncMock(return_value=True)
    db.reserve_slot = AsyncMock(return_value=True)
    db.release_slot = AsyncMock()
    return db


@pytest.mark.asyncio
async def test_create_order_inserts_and_decrements_stock(mock_db):
    order = await OrderService(mock_db).create_order(CustomerRef(phone=PHONE, name="Ana"), ITEMS)

    assert order.order_number == "1001"
    assert order.total == 5200
    document = mock_db.insert_order.await_args.args[0]
    assert document["status"] == "PENDING"
    assert [line["quantity"] for line in document["items"]] == [2, 1]
    assert mock_db.decrement_stock.await_count == 2
    mock_db.reserve_slot.assert_not_awaited()


@pytest.mark.asyncio
async def test_stock_decrement_failure_after_insert_still_succeeds(mock_db):
    mock_db.decrement_stock.side_effect = [PyMongoError("connection reset"), True]

    order = await OrderService(mock_db).create_order(CustomerRef(phone=PHONE), ITEMS)

    # The order is committed, so the node proceeds and the cart is never re-submitted.
    assert order.order_id == "order-1"
    assert mock_db.insert_order.await_count == 1
    assert mock_db.decrement_stock.await_count == 2


@pytest.mark.asyncio
async def test_short_stock_is_logged_not_raised(mock_db):
    mock_db.decrement_stock.return_value = False

    order = await OrderService(mock_db).create_order(CustomerRef(phone=PHONE), ITEMS)
    assert order.order_number == "1001"


@pytest.mark.asyncio
async def test_insert_failure_raises_and_releases_the_slot(mock_db):
    mock_db.insert_order.side_effect = PyMongoError("not primary")
    customer = CustomerRef(phone=PHONE, delivery_slot_id="slot-1")

    with pytest.raises(CollaboratorError) as exc_info:
        await OrderService(mock_db).create_order(customer, ITEMS)

    assert exc_info.value.collaborator == "orders"
    mock_db.reserve_slot.assert_awaited_once_with("slot-1")
    mock_db.release_slot.assert_awaited_once_with("slot-1")
    mock_db.decrement_stock.assert_not_awaited()


@pytest.mark.asyncio
async def test_full_slot_is_rejected_before_the_order_is_written(mock_db):
    mock_db.reserve_slot.return_value = False
    customer = CustomerRef(phone=PHONE, delivery_slot_id="slot-1")

    with pytest.raises(CollaboratorError):
        await OrderService(mock_db).create_order(customer, ITEMS)

    mock_db.insert_order.assert_not_awaited()
    mock_db.release_slot.assert_not_awaited()


@pytest.mark.asyncio
async def test_order_records_the_chosen_slot(mock_db):
    customer = CustomerRef(phone=PHONE, delivery_slot_id="slot-2")

    await OrderService(mock_db).create_order(customer, ITEMS)

    assert mock_db.insert_order.await_args.args[0]["delivery_slot_id"] == "slot-2"
    mock_db.release_slot.assert_not_awaited()
