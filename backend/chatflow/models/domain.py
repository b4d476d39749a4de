# /chatflow/models/domain.py

import logging
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import date, datetime, timedelta, timezone

# This file defines the core Pydantic models used by the ordering collaborators
# (catalog, orders, claims). These models ensure data consistency between the
# interpreter and the MongoDB documents it reads and writes.

logger = logging.getLogger(__name__)


class Product(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: float = 0.0
    stock: int = 0
    category: Optional[str] = None
    is_active: bool = True

    @property
    def in_stock(self) -> bool:
        return self.is_active and self.stock > 0

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> Optional["Product"]:
        """
        Builds a Product from a raw `products` collection document.
        Returns None for documents that cannot be priced.
        """
        try:
            return cls(
                id=str(doc.get("id") or doc.get("_id")),
                name=doc.get("name", "").strip(),
                description=doc.get("description"),
                price=float(doc.get("price") or 0),
                stock=int(doc.get("stock") or 0),
                category=doc.get("category") or None,
                is_active=doc.get("is_active", True),
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed product document {doc.get('_id')}: {e}")
            return None


class LineItem(BaseModel):
    """One product line recognised by the text-to-order parser."""
    product_id: str
    name: str
    qty: int = Field(gt=0)
    unit_price: float = 0.0

    @property
    def line_total(self) -> float:
        return self.qty * self.unit_price


class CartItem(BaseModel):
    product_id: str
    name: str
    qty: int = Field(gt=0)
    unit_price: float = 0.0
    detail: Optional[str] = None

    @property
    def line_total(self) -> float:
        return self.qty * self.unit_price


class CustomerRef(BaseModel):
    phone: str
    name: Optional[str] = None
    address: Optional[str] = None
    delivery_date: Optional[str] = None
    delivery_slot_id: Optional[str] = None
    payment_method: Optional[str] = None


class DeliverySlot(BaseModel):
    """A bookable delivery window from the `delivery_slots` collection."""
    id: str
    date: str
    time_start: str
    time_end: str
    max_orders: int = 0
    orders_count: int = 0

    @property
    def remaining(self) -> int:
        return self.max_orders - self.orders_count

    def label(self, today: date) -> str:
        """Human label such as "Hoy, 11:00 a 11:30"."""
        try:
            slot_day = date.fromisoformat(self.date)
        except ValueError:
            day = self.date
        else:
            if slot_day == today:
                day = "Hoy"
            elif slot_day == today + timedelta(days=1):
                day = "Mañana"
            else:
                day = slot_day.strftime("%d/%m")
        return f"{day}, {self.time_start[:5]} a {self.time_end[:5]}"

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "DeliverySlot":
        return cls(
            id=str(doc.get("id") or doc.get("_id")),
            date=str(doc.get("date", "")),
            time_start=str(doc.get("time_start", "")),
            time_end=str(doc.get("time_end", "")),
            max_orders=int(doc.get("max_orders") or 0),
            orders_count=int(doc.get("orders_count") or 0),
        )


class CreatedOrder(BaseModel):
    order_id: str
    order_number: str
    total: float
    status: str = "PENDING"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def aggregate_cart(cart: List[CartItem]) -> List[CartItem]:
    """
    Merges cart lines sharing (product_id, detail), summing quantities and
    keeping the first line's position and unit price.
    """
    merged: Dict[tuple, CartItem] = {}
    for item in cart:
        key = (item.product_id, item.detail)
        if key in merged:
            current = merged[key]
            merged[key] = current.model_copy(update={"qty": current.qty + item.qty})
        else:
            merged[key] = item.model_copy()
    return list(merged.values())


def cart_total(cart: List[CartItem]) -> float:
    return sum(item.line_total for item in cart)
