# /chatflow/services/order_service.py

import logging
from typing import List

from pymongo.errors import PyMongoError

from chatflow.errors import CollaboratorError
from chatflow.models.domain import CartItem, CreatedOrder, CustomerRef, cart_total
from chatflow.services.db_service import DatabaseService, db_service

# This service turns conversation carts into orders and complaint reports
# into claims. Database failures surface as CollaboratorError so the
# interpreter can apologise and retry the node on the next message.

logger = logging.getLogger(__name__)


class OrderService:
    def __init__(self, db: DatabaseService):
        self.db = db

    async def create_order(self, customer: CustomerRef, items: List[CartItem]) -> CreatedOrder:
        """
        Creates a PENDING WhatsApp order for the customer, reserving the chosen
        delivery slot first. Once the order is inserted the call succeeds, so a
        retried node never creates a second order for the same cart.

        Args:
            customer: Phone, name and delivery details gathered in the flow
            items: Cart lines, already aggregated by (product_id, detail)

        Returns:
            The created order's id, human-facing number and total
        """
        if not items:
            raise CollaboratorError("orders", "cannot create an order without items")

        total = cart_total(items)
        slot_reserved = False
        try:
            if customer.delivery_slot_id:
                slot_reserved = await self.db.reserve_slot(customer.delivery_slot_id)
                if not slot_reserved:
                    raise CollaboratorError("orders", f"delivery slot {customer.delivery_slot_id} is full")
            client_id = await self.db.get_or_create_client(customer.phone, customer.name)
            order_number = await self.db.next_order_number()
            order_id = await self.db.insert_order({
                "client_id": client_id,
                "phone": customer.phone,
                "order_number": str(order_number),
                "channel": "WHATSAPP",
                "status": "PENDING",
                "total_amount": total,
                "subtotal": total,
                "delivery_address": customer.address,
                "delivery_date": customer.delivery_date,
                "delivery_slot_id": customer.delivery_slot_id,
                "payment_method": customer.payment_method,
                "items": [
                    {
                        "product_id": item.product_id,
                        "name": item.name,
                        "quantity": item.qty,
                        "unit_price": item.unit_price,
                        "detail": item.detail,
                    }
                    for item in items
                ],
            })
        except PyMongoError as e:
            logger.error(f"Order creation failed for {customer.phone}: {e}", exc_info=True)
            if slot_reserved:
                await self._release_slot(customer.delivery_slot_id)
            raise CollaboratorError("orders", str(e)) from e

        # Committed: stock shortfalls and decrement errors are logged, never raised.
        await self._decrement_stock(items, order_number)

        logger.info(f"Order #{order_number} created for {customer.phone} (total {total})")
        return CreatedOrder(order_id=order_id, order_number=str(order_number), total=total)

    async def _decrement_stock(self, items: List[CartItem], order_number: int):
        for item in items:
            try:
                if not await self.db.decrement_stock(item.product_id, item.qty):
                    logger.warning(f"Stock for product {item.product_id} was short for order #{order_number}")
            except PyMongoError as e:
                logger.warning(f"Could not decrement stock of {item.product_id} for order #{order_number}: {e}")

    async def _release_slot(self, slot_id: str):
        try:
            await self.db.release_slot(slot_id)
        except PyMongoError as e:
            logger.error(f"Could not release delivery slot {slot_id}: {e}")

    async def create_claim(self, claim_type: str, priority: str, description: str,
                           customer: CustomerRef) -> str:
        try:
            claim_id = await self.db.insert_claim({
                "type": claim_type,
                "priority": priority,
                "description": description,
                "phone": customer.phone,
                "customer_name": customer.name,
                "status": "OPEN",
                "channel": "WHATSAPP",
            })
        except PyMongoError as e:
            logger.error(f"Claim creation failed for {customer.phone}: {e}", exc_info=True)
            raise CollaboratorError("claims", str(e)) from e
        logger.info(f"Claim {claim_id} ({claim_type}/{priority}) created for {customer.phone}")
        return claim_id


# Globally accessible instance
order_service = OrderService(db_service)
