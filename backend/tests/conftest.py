import asyncio
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any chatflow imports, so Settings
# sees ENVIRONMENT=test and the in-memory session backend.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"))

from chatflow.config.settings import Settings  # noqa: E402
from chatflow.errors import CollaboratorError  # noqa: E402
from chatflow.main import app  # noqa: E402
from chatflow.models.domain import CreatedOrder, DeliverySlot  # noqa: E402
from chatflow.models.flow import Flow  # noqa: E402
from chatflow.services.catalog_service import CatalogService  # noqa: E402
from chatflow.services.conversation_service import ConversationService  # noqa: E402
from chatflow.services.dedup_service import InMemoryDuplicateGuard  # noqa: E402
from chatflow.services.flow_repository import FlowRepository  # noqa: E402
from chatflow.services.session_store import InMemorySessionStore  # noqa: E402
from chatflow.utils.tasks import TimerScheduler  # noqa: E402
from chatflow.workflows.executors import Collaborators  # noqa: E402


PRODUCT_DOCUMENTS = [
    {"_id": "p-coca", "name": "Coca Cola", "price": 1500, "stock": 20, "category": "Bebidas"},
    {"_id": "p-pan", "name": "Pan Integral", "price": 2200, "stock": 8, "category": "Panadería"},
    {"_id": "p-leche", "name": "Leche", "price": 1200.5, "stock": 3, "category": "Lácteos"},
    {"_id": "p-burger", "name": "Hamburguesa Clásica", "price": 5000, "stock": 0, "category": "Comidas"},
]


def _loader(documents):
    async def load():
        return [dict(doc) for doc in documents]
    return load


class FakeOrders:
    """Order and claim collaborator that records calls instead of touching MongoDB."""

    def __init__(self):
        self.orders = []
        self.claims = []
        self.fail_next = False

    async def create_order(self, customer, items):
        if self.fail_next:
            self.fail_next = False
            raise CollaboratorError("orders", "database unavailable")
        self.orders.append((customer, items))
        total = sum(item.qty * item.unit_price for item in items)
        return CreatedOrder(order_id=f"order-{len(self.orders)}", order_number=str(1000 + len(self.orders)), total=total)

    async def create_claim(self, claim_type, priority, description, customer):
        self.claims.append((claim_type, priority, description, customer))
        return f"claim-{len(self.claims)}"


class FakeDocuments:
    def __init__(self):
        self.generated = []

    async def generate(self, template, data):
        self.generated.append((template, data))
        return f"https://docs.example.com/{template}.pdf"


class FakeSlots:
    """Delivery slot provider with a fixed clock (Tuesday 2026-03-10, 09:00)."""

    def __init__(self, slots: Optional[List[DeliverySlot]] = None):
        self.slots = slots if slots is not None else [
            DeliverySlot(id="slot-1", date="2026-03-10", time_start="11:00:00", time_end="11:30:00", max_orders=3),
            DeliverySlot(id="slot-2", date="2026-03-10", time_start="18:00:00", time_end="18:30:00", max_orders=3),
            DeliverySlot(id="slot-3", date="2026-03-11", time_start="09:00:00", time_end="09:30:00", max_orders=3),
        ]
        self.fail_next = False

    def now(self) -> datetime:
        return datetime(2026, 3, 10, 9, 0)

    async def get_available_slots(self, max_results: int = 6) -> List[DeliverySlot]:
        if self.fail_next:
            self.fail_next = False
            raise CollaboratorError("slots", "database unavailable")
        return self.slots[:max_results]


class FakeSender:
    def __init__(self):
        self.sent = []

    async def send(self, to_phone, message, reply_to=None):
        self.sent.append((to_phone, message, reply_to))
        return f"wamid.{len(self.sent)}"

    def texts(self, to_phone: Optional[str] = None) -> List[str]:
        return [m.body for to, m, _ in self.sent if m.kind == "text" and (to_phone is None or to == to_phone)]


class FakeNotifier:
    def __init__(self):
        self.notified = []
        self.resolved_keys = []

    async def notify(self, key, reason):
        self.notified.append((key, reason))

    async def resolved(self, key):
        self.resolved_keys.append(key)


class ManualSleep:
    """Stands in for asyncio.sleep; each call blocks until the test releases it."""

    def __init__(self):
        self.delays: List[float] = []
        self._waiters: List[asyncio.Future] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    def release_all(self):
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)


@pytest.fixture
def make_flow():
    """Builds a Flow from editor-style node and edge shorthands."""
    def _make(flow_id: str, nodes: List[Dict[str, Any]], edges: List[tuple] = (), **extra) -> Flow:
        document = {
            "_id": flow_id,
            "name": extra.pop("name", flow_id),
            "nodes": nodes,
            "edges": [
                {"id": f"e{i}", "source": e[0], "target": e[1], "sourceHandle": e[2] if len(e) > 2 else None}
                for i, e in enumerate(edges)
            ],
        }
        document.update(extra)
        return Flow.model_validate(document)
    return _make


@pytest.fixture
def flow_repo_factory():
    def _factory(*flows: Flow) -> FlowRepository:
        documents = [flow.model_dump(by_alias=False) for flow in flows]
        return FlowRepository(_loader(documents), ttl_seconds=3600)
    return _factory


@pytest.fixture
def catalog():
    return CatalogService(_loader(PRODUCT_DOCUMENTS), ttl_seconds=3600)


@pytest.fixture
def fake_orders():
    return FakeOrders()


@pytest.fixture
def fake_documents():
    return FakeDocuments()


@pytest.fixture
def fake_slots():
    return FakeSlots()


@pytest.fixture
def collaborators(catalog, fake_orders, fake_documents, fake_slots):
    return Collaborators(
        catalog=catalog, orders=fake_orders, claims=fake_orders, documents=fake_documents, slots=fake_slots
    )


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def manual_sleep():
    return ManualSleep()


@pytest.fixture
def test_settings():
    return Settings(environment="test", session_backend="memory", max_transitions_per_step=50)


@pytest.fixture
def service_factory(flow_repo_factory, collaborators, fake_sender, fake_notifier, manual_sleep, test_settings):
    """ConversationService wired to in-memory stores and recording fakes."""
    def _factory(*flows: Flow, **overrides) -> ConversationService:
        return ConversationService(
            store=overrides.get("store") or InMemorySessionStore(),
            dedup=InMemoryDuplicateGuard(test_settings.dedup_ttl_seconds),
            flows=overrides.get("flows") or flow_repo_factory(*flows),
            services=collaborators,
            sender=fake_sender,
            notifier=fake_notifier,
            scheduler=TimerScheduler(sleep=manual_sleep),
            config=overrides.get("config") or test_settings,
        )
    return _factory


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests without a live MongoDB.
    """
    mocker.patch("chatflow.utils.lifecycle.db_service.create_indexes", new_callable=AsyncMock)

    # The app's lifespan (startup/shutdown events) is managed by the TestClient
    with TestClient(app) as client:
        yield client
