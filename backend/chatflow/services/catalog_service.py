# /chatflow/services/catalog_service.py

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pymongo.errors import PyMongoError

from chatflow.config.settings import settings
from chatflow.errors import CollaboratorError
from chatflow.models.domain import Product
from chatflow.services.db_service import db_service
from chatflow.workflows.parser import find_best_product

logger = logging.getLogger(__name__)

ProductLoader = Callable[[], Awaitable[List[Dict[str, Any]]]]


class CatalogService:
    """Product lookups for catalog, stock check and add-to-cart nodes."""

    def __init__(self, loader: ProductLoader, ttl_seconds: int = 30):
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._products: List[Product] = []
        self._loaded_at: Optional[float] = None

    async def list_all(self) -> List[Product]:
        if self._loaded_at is None or time.monotonic() - self._loaded_at >= self.ttl_seconds:
            try:
                documents = await self._loader()
            except PyMongoError as e:
                logger.error(f"Failed to load product catalog: {e}")
                raise CollaboratorError("catalog", str(e)) from e
            self._products = [p for p in (Product.from_document(doc) for doc in documents) if p]
            self._loaded_at = time.monotonic()
        return list(self._products)

    async def find(self, query: str) -> Optional[Product]:
        """
        Best-matching active product for free text. Sold-out products are
        still returned so callers can report them as such; among equally good
        matches an in-stock product wins.
        """
        products = await self.list_all()
        in_stock = [p for p in products if p.in_stock]
        match = find_best_product(query, in_stock + [p for p in products if not p.in_stock])
        if match is None:
            logger.debug(f"No catalog match for '{query}'")
            return None
        return match[0]

    def invalidate(self):
        self._loaded_at = None


# Globally accessible instance
catalog_service = CatalogService(db_service.get_products, settings.flow_cache_ttl_seconds)
