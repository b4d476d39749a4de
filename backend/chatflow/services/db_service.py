# /chatflow/services/db_service.py

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from bson import ObjectId
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from chatflow.config.settings import settings

logger = logging.getLogger(__name__)


class DatabaseService:
    """
    Manages all interactions with MongoDB: flow documents, the product
    catalog, orders, claims, handover status and message logs.
    """

    def __init__(self, mongo_uri: str, db_name: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client[db_name]
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    def _serialize_id(self, document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Convert ObjectId to string for JSON serialization."""
        if document and "_id" in document:
            document["_id"] = str(document["_id"])
        return document

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    def _id_filter(self, doc_id: str) -> Dict[str, Any]:
        if ObjectId.is_valid(doc_id):
            return {"_id": ObjectId(doc_id)}
        return {"_id": doc_id}

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("flows", [("is_active", 1)], {}),
            ("products", [("is_active", 1), ("name", 1)], {}),
            ("clients", [("phone", 1)], {"unique": True}),
            ("orders", [("order_number", 1)], {"unique": True}),
            ("orders", [("phone", 1), ("created_at", -1)], {}),
            ("delivery_slots", [("date", 1), ("time_start", 1)], {"unique": True}),
            ("claims", [("status", 1), ("created_at", -1)], {}),
            ("whatsapp_conversations", [("phone", 1)], {"unique": True}),
            ("message_logs", [("phone", 1), ("timestamp", -1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Flows & Products ====================

    async def get_active_flows(self) -> List[Dict[str, Any]]:
        cursor = self.db.flows.find({"is_active": {"$ne": False}})
        return [self._serialize_id(doc) for doc in await cursor.to_list(length=None)]

    async def get_products(self) -> List[Dict[str, Any]]:
        cursor = self.db.products.find({"is_active": {"$ne": False}}).sort("name", 1)
        return [self._serialize_id(doc) for doc in await cursor.to_list(length=None)]

    # ==================== Orders ====================

    async def get_or_create_client(self, phone: str, name: Optional[str]) -> str:
        """
        Returns the client id for a phone number, creating the client on
        first order.

        Args:
            phone: Conversation key (WhatsApp phone number)
            name: Profile name reported by WhatsApp, if any

        Returns:
            The client's document id as a string
        """
        client = await self.db.clients.find_one_and_update(
            {"phone": phone},
            {"$setOnInsert": {"phone": phone, "name": name or phone, "created_at": self._now_utc()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return str(client["_id"])

    async def next_order_number(self) -> int:
        counter = await self.db.counters.find_one_and_update(
            {"_id": "order_number"},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["value"])

    async def insert_order(self, order: Dict[str, Any]) -> str:
        order.setdefault("created_at", self._now_utc())
        result = await self.db.orders.insert_one(order)
        return str(result.inserted_id)

    async def decrement_stock(self, product_id: str, qty: int) -> bool:
        """Decrements stock without going below zero. Returns False when stock was short."""
        query = {**self._id_filter(product_id), "stock": {"$gte": qty}}
        result = await self.db.products.update_one(query, {"$inc": {"stock": -qty}})
        if result.modified_count:
            return True
        await self.db.products.update_one(self._id_filter(product_id), {"$set": {"stock": 0}})
        return False

    # ==================== Delivery slots ====================

    async def get_open_slots(self, date: str, time_limit: str, limit: int) -> List[Dict[str, Any]]:
        """
        Returns available delivery slots starting after `time_limit` today or
        on any later day, ordered by date and start time.

        Args:
            date: Today as YYYY-MM-DD
            time_limit: Earliest start time still bookable today (HH:MM:SS)
            limit: Maximum number of slots to read
        """
        query = {
            "is_available": True,
            "$or": [
                {"date": {"$gt": date}},
                {"date": date, "time_start": {"$gt": time_limit}},
            ],
        }
        cursor = self.db.delivery_slots.find(query).sort([("date", 1), ("time_start", 1)]).limit(limit)
        return [self._serialize_id(doc) for doc in await cursor.to_list(length=None)]

    async def reserve_slot(self, slot_id: str) -> bool:
        """Takes one place in a slot if it still has capacity. Returns False when it is full."""
        query = {
            **self._id_filter(slot_id),
            "is_available": True,
            "$expr": {"$lt": ["$orders_count", "$max_orders"]},
        }
        result = await self.db.delivery_slots.update_one(query, {"$inc": {"orders_count": 1}})
        return bool(result.modified_count)

    async def release_slot(self, slot_id: str) -> None:
        query = {**self._id_filter(slot_id), "orders_count": {"$gt": 0}}
        await self.db.delivery_slots.update_one(query, {"$inc": {"orders_count": -1}})

    # ==================== Claims ====================

    async def insert_claim(self, claim: Dict[str, Any]) -> str:
        claim.setdefault("created_at", self._now_utc())
        result = await self.db.claims.insert_one(claim)
        return str(result.inserted_id)

    # ==================== Conversations ====================

    async def set_handover_status(self, phone: str, status: str, reason: Optional[str] = None) -> None:
        await self.db.whatsapp_conversations.update_one(
            {"phone": phone},
            {"$set": {"status": status, "handover_reason": reason, "updated_at": self._now_utc()}},
            upsert=True,
        )

    async def log_message(self, message_data: Dict[str, Any]) -> None:
        """
        Log inbound or outbound message.

        Args:
            message_data: Message information to log
        """
        message_data.setdefault("timestamp", self._now_utc())
        await self.db.message_logs.insert_one(message_data)


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri, settings.mongo_db_name)
