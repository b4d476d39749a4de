# /chatflow/services/flow_repository.py

import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from chatflow.config.settings import settings
from chatflow.models.flow import Flow
from chatflow.services.db_service import db_service
from chatflow.utils.metrics import authoring_warnings_counter
from chatflow.workflows.parser import normalize

logger = logging.getLogger(__name__)

FlowLoader = Callable[[], Awaitable[List[Dict[str, Any]]]]


class FlowRepository:
    """
    Read-only access to active flows, cached for `ttl_seconds` so edits made
    in the editor are picked up shortly without a restart.
    """

    def __init__(self, loader: FlowLoader, ttl_seconds: int = 30):
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._flows: Dict[str, Flow] = {}
        self._loaded_at: Optional[float] = None

    async def _ensure_loaded(self):
        if self._loaded_at is not None and time.monotonic() - self._loaded_at < self.ttl_seconds:
            return
        documents = await self._loader()
        flows: Dict[str, Flow] = {}
        for doc in documents:
            try:
                flow = Flow.model_validate(doc)
            except ValidationError as e:
                flow_id = str(doc.get("_id") or doc.get("id"))
                authoring_warnings_counter.labels(flow_id=flow_id).inc()
                logger.error(f"Skipping invalid flow document {flow_id}: {e}")
                continue
            if flow.is_active:
                flows[flow.id] = flow
        self._flows = flows
        self._loaded_at = time.monotonic()
        logger.info(f"Loaded {len(flows)} active flows.")

    def invalidate(self):
        self._loaded_at = None

    async def get(self, flow_id: str) -> Optional[Flow]:
        await self._ensure_loaded()
        return self._flows.get(flow_id)

    async def list_flows(self) -> List[Flow]:
        await self._ensure_loaded()
        return list(self._flows.values())

    async def find_by_trigger(self, text: str) -> Optional[Flow]:
        """
        Finds the flow whose trigger keyword equals the message, or failing
        that, the first flow with a keyword contained in it as a whole word.
        """
        message = normalize(text)
        if not message:
            return None
        flows = await self.list_flows()
        for flow in flows:
            if any(normalize(kw) == message for kw in flow.trigger_keywords):
                return flow
        for flow in flows:
            for kw in flow.trigger_keywords:
                keyword = normalize(kw)
                if keyword and re.search(rf"\b{re.escape(keyword)}\b", message):
                    return flow
        return None

    async def get_default(self) -> Optional[Flow]:
        for flow in await self.list_flows():
            if flow.is_default:
                return flow
        return None


# Globally accessible instance
flow_repository = FlowRepository(db_service.get_active_flows, settings.flow_cache_ttl_seconds)
