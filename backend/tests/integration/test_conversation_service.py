# backend/tests/integration/test_conversation_service.py
import asyncio
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock

from chatflow.config import strings
from chatflow.errors import CollaboratorError, SessionStoreUnavailable
from chatflow.models.domain import CartItem
from chatflow.models.session import InboundMessage, utcnow
from chatflow.services.session_store import InMemorySessionStore

PHONE = "5491100000000"


def _inbound(text, message_id, seconds_ago=0, media_url=None):
    return InboundMessage(
        conversation_key=PHONE,
        text=text,
        message_id=message_id,
        timestamp=utcnow() - timedelta(seconds=seconds_ago),
        media_url=media_url,
    )


@pytest.fixture
def menu_flow(make_flow):
    return make_flow("menu", [
        {"id": "start", "type": "startNode"},
        {"id": "hello", "type": "messageNode", "data": {"text": "Hola"}},
        {"id": "menu", "type": "pollNode", "data": {"options": ["Pedido", "Soporte"]}},
        {"id": "order", "type": "messageNode", "data": {"text": "Elegiste {{poll_response}}"}},
        {"id": "support", "type": "handoverNode", "data": {"reason": "soporte"}},
        {"id": "back", "type": "messageNode", "data": {"text": "Volví"}},
    ], [
        ("start", "hello"), ("hello", "menu"), ("menu", "order", "0"), ("menu", "support", "1"),
        ("support", "back"),
    ], triggerKeywords="hola,menu", isDefault=True)


@pytest.mark.asyncio
async def test_trigger_keyword_starts_flow_and_reply_advances(service_factory, menu_flow, fake_sender):
    service = service_factory(menu_flow)

    first = await service.handle_inbound(_inbound("Hola", "wamid.1"))
    assert first["status"] == "processed"
    assert fake_sender.texts()[0] == "Hola"

    second = await service.handle_inbound(_inbound("1", "wamid.2"))
    assert second["status"] == "processed"
    assert fake_sender.texts()[-1] == "Elegiste Pedido"

    session = await service.get_session(PHONE)
    assert session.current_flow_id is None
    assert [entry.direction for entry in session.history][:2] == ["in", "out"]
    await service.shutdown()


@pytest.mark.asyncio
async def test_duplicate_message_is_processed_once(service_factory, menu_flow, fake_sender):
    service = service_factory(menu_flow)
    await service.handle_inbound(_inbound("hola", "wamid.1"))
    sent_before = len(fake_sender.sent)

    first = await service.handle_inbound(_inbound("1", "wamid.2"))
    retry = await service.handle_inbound(_inbound("1", "wamid.2"))

    assert first["status"] == "processed"
    assert retry["status"] == "duplicate"
    assert len(fake_sender.sent) == sent_before + 1
    await service.shutdown()


@pytest.mark.asyncio
async def test_out_of_order_message_is_recorded_but_not_processed(service_factory, menu_flow, fake_sender):
    service = service_factory(menu_flow)
    await service.handle_inbound(_inbound("hola", "wamid.1"))
    sent_before = len(fake_sender.sent)

    late = await service.handle_inbound(_inbound("2", "wamid.0", seconds_ago=60))

    assert late["status"] == "stale"
    assert len(fake_sender.sent) == sent_before
    assert late["session"].history[-1].note == "stale"
    assert late["session"].current_node_id == "menu"
    await service.shutdown()


@pytest.mark.asyncio
async def test_no_trigger_and_no_default_flow(service_factory, make_flow, fake_sender):
    flow = make_flow("ventas", [{"id": "m", "type": "messageNode", "data": {"text": "Ventas"}}], triggerKeywords="comprar")
    service = service_factory(flow)

    result = await service.handle_inbound(_inbound("buen día", "wamid.1"))

    assert result["status"] == "no_flow"
    assert fake_sender.texts() == [strings.NOT_UNDERSTOOD]
    await service.shutdown()


@pytest.mark.asyncio
async def test_escape_command_restarts_the_conversation(service_factory, menu_flow, fake_sender):
    service = service_factory(menu_flow)
    await service.handle_inbound(_inbound("hola", "wamid.1"))
    await service.handle_inbound(_inbound("xyz", "wamid.2"))

    result = await service.handle_inbound(_inbound("Menú", "wamid.3"))

    assert result["status"] == "processed"
    assert result["session"].current_node_id == "menu"
    assert fake_sender.texts()[-2] == "Hola"
    await service.shutdown()


@pytest.mark.asyncio
async def test_handover_pauses_until_resolved(service_factory, menu_flow, fake_sender, fake_notifier):
    service = service_factory(menu_flow)
    await service.handle_inbound(_inbound("hola", "wamid.1"))
    handed = await service.handle_inbound(_inbound("Soporte", "wamid.2"))
    await asyncio.sleep(0)

    assert handed["session"].paused is True
    assert fake_notifier.notified == [(PHONE, "soporte")]
    sent_before = len(fake_sender.sent)

    # While paused nothing runs, not even escape commands.
    for i, text in enumerate(["hola?", "cancelar", "sigo esperando"]):
        result = await service.handle_inbound(_inbound(text, f"wamid.p{i}"))
        assert result["status"] == "paused"
    assert len(fake_sender.sent) == sent_before
    session = await service.get_session(PHONE)
    assert session.pending_input.text == "sigo esperando"
    assert [e.note for e in session.history[-3:]] == ["paused", "paused", "paused"]

    resumed = await service.resolve_handover(PHONE)
    await asyncio.sleep(0)

    assert resumed["status"] == "processed"
    assert fake_sender.texts()[-1] == "Volví"
    assert resumed["session"].paused is False
    assert fake_notifier.resolved_keys == [PHONE]
    await service.shutdown()


@pytest.mark.asyncio
async def test_resolve_on_unknown_or_active_session(service_factory, menu_flow):
    service = service_factory(menu_flow)
    assert await service.resolve_handover(PHONE) is None

    await service.handle_inbound(_inbound("hola", "wamid.1"))
    assert (await service.resolve_handover(PHONE))["status"] == "not_paused"
    await service.shutdown()


@pytest.fixture
def timer_flow(make_flow):
    return make_flow("timer", [
        {"id": "one", "type": "messageNode", "data": {"text": "Preparando"}},
        {"id": "wait", "type": "timerNode", "data": {"durationMs": 1000}},
        {"id": "two", "type": "messageNode", "data": {"text": "¡Listo!"}},
    ], [("one", "wait"), ("wait", "two")], triggerKeywords="pedido")


@pytest.mark.asyncio
async def test_timer_continues_only_after_its_duration(service_factory, timer_flow, fake_sender, manual_sleep):
    service = service_factory(timer_flow)

    await service.handle_inbound(_inbound("pedido", "wamid.1"))
    task = service.scheduler._tasks[PHONE]
    await asyncio.sleep(0)

    assert manual_sleep.delays == [1.0]
    assert fake_sender.texts() == ["Preparando"]

    during = await service.handle_inbound(_inbound("¿ya está?", "wamid.2"))
    assert during["status"] == "timer_pending"
    assert fake_sender.texts() == ["Preparando"]

    manual_sleep.release_all()
    await task

    assert fake_sender.texts() == ["Preparando", "¡Listo!"]
    session = await service.get_session(PHONE)
    assert session.pending_timer is None
    assert session.current_flow_id is None
    await service.shutdown()


@pytest.mark.asyncio
async def test_stale_timer_token_is_ignored(service_factory, timer_flow, fake_sender):
    service = service_factory(timer_flow)
    await service.handle_inbound(_inbound("pedido", "wamid.1"))

    assert await service.fire_timer(PHONE, "not-the-token") is None
    assert fake_sender.texts() == ["Preparando"]
    await service.shutdown()


@pytest.mark.asyncio
async def test_overdue_timer_fires_on_next_message(service_factory, make_flow, fake_sender):
    flow = make_flow("timer", [
        {"id": "one", "type": "messageNode", "data": {"text": "Preparando"}},
        {"id": "wait", "type": "timerNode", "data": {"durationMs": 1000}},
        {"id": "ask", "type": "questionNode", "data": {"question": "¿Tu nombre?", "variable": "nombre"}},
        {"id": "bye", "type": "messageNode", "data": {"text": "Gracias {{nombre}}"}},
    ], [("one", "wait"), ("wait", "ask"), ("ask", "bye")], triggerKeywords="pedido")
    service = service_factory(flow)
    await service.handle_inbound(_inbound("pedido", "wamid.1"))
    service.scheduler.cancel(PHONE)

    # Simulate a restart that lost the in-process timer.
    session = await service.store.get(PHONE)
    session.pending_timer.due_at = utcnow() - timedelta(seconds=5)
    await service.store.set(PHONE, session)

    result = await service.handle_inbound(_inbound("Ana", "wamid.2"))

    assert result["status"] == "processed"
    assert fake_sender.texts() == ["Preparando", "¿Tu nombre?", "Gracias Ana"]
    await service.shutdown()


@pytest.mark.asyncio
async def test_loop_guard_keeps_the_stored_session(service_factory, make_flow, fake_sender):
    flow = make_flow("loop", [
        {"id": "a", "type": "messageNode", "data": {"text": "A"}},
        {"id": "b", "type": "messageNode", "data": {"text": "B"}},
    ], [("a", "b"), ("b", "a")], triggerKeywords="loop")
    service = service_factory(flow)

    result = await service.handle_inbound(_inbound("loop", "wamid.1"))

    assert result["status"] == "aborted"
    assert fake_sender.texts() == [strings.GENERIC_ERROR]
    stored = await service.get_session(PHONE)
    assert stored is None
    await service.shutdown()


@pytest.mark.asyncio
async def test_reset_session_removes_state(service_factory, menu_flow):
    service = service_factory(menu_flow)
    await service.handle_inbound(_inbound("hola", "wamid.1"))

    await service.reset_session(PHONE)

    assert await service.get_session(PHONE) is None
    await service.shutdown()


class _GatedStore(InMemorySessionStore):
    """Blocks the next read until `gate` is set."""

    def __init__(self):
        super().__init__()
        self.gate = None

    async def get(self, key):
        if self.gate is not None:
            gate, self.gate = self.gate, None
            await gate.wait()
        return await super().get(key)


class _FlakyStore(InMemorySessionStore):
    def __init__(self):
        super().__init__()
        self.fail_next_read = False

    async def get(self, key):
        if self.fail_next_read:
            self.fail_next_read = False
            raise SessionStoreUnavailable("connection reset")
        return await super().get(key)


async def _settle(rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_timer_firing_during_inbound_waits_for_the_lock(service_factory, timer_flow, fake_sender, manual_sleep):
    store = _GatedStore()
    service = service_factory(timer_flow, store=store)
    await service.handle_inbound(_inbound("pedido", "wamid.1"))
    timer_task = service.scheduler._tasks[PHONE]
    await asyncio.sleep(0)

    gate = store.gate = asyncio.Event()
    inbound_task = asyncio.create_task(service.handle_inbound(_inbound("¿ya está?", "wamid.2")))
    await _settle()
    manual_sleep.release_all()
    await _settle()

    # The inbound message holds the key; the timer is queued behind it.
    assert not timer_task.done()
    assert fake_sender.texts() == ["Preparando"]

    gate.set()
    during = await inbound_task
    await timer_task

    assert during["status"] == "timer_pending"
    assert fake_sender.texts() == ["Preparando", "¡Listo!"]
    session = await service.get_session(PHONE)
    assert session.pending_timer is None
    assert [e.note for e in session.history if e.direction == "in"] == [None, "timer_pending"]
    await service.shutdown()


@pytest.mark.asyncio
async def test_timer_queued_before_an_inbound_message_runs_first(service_factory, timer_flow, fake_sender, manual_sleep):
    service = service_factory(timer_flow)
    await service.handle_inbound(_inbound("pedido", "wamid.1"))
    timer_task = service.scheduler._tasks[PHONE]
    await asyncio.sleep(0)

    async with service.store.lock(PHONE):
        manual_sleep.release_all()
        await _settle()
        inbound_task = asyncio.create_task(service.handle_inbound(_inbound("¿ya está?", "wamid.2")))
        await _settle()
        assert fake_sender.texts() == ["Preparando"]

    await timer_task
    after = await inbound_task

    # The timer was queued first, so it finishes the flow before the message is read.
    assert fake_sender.texts() == ["Preparando", "¡Listo!", strings.NOT_UNDERSTOOD]
    assert after["status"] == "no_flow"
    await service.shutdown()


@pytest.fixture
def claim_flow(make_flow):
    return make_flow("claims", [
        {"id": "human", "type": "handoverNode", "data": {"reason": "reclamo"}},
        {"id": "report", "type": "reportNode", "data": {"priority": "high"}},
    ], [("human", "report")], triggerKeywords="ayuda")


@pytest.mark.asyncio
async def test_message_sent_during_handover_becomes_the_claim(service_factory, claim_flow, fake_orders):
    service = service_factory(claim_flow)
    await service.handle_inbound(_inbound("ayuda", "wamid.1"))
    paused = await service.handle_inbound(_inbound("Llegó la leche vencida", "wamid.2"))
    assert paused["status"] == "paused"

    resumed = await service.resolve_handover(PHONE)

    assert resumed["status"] == "processed"
    assert fake_orders.claims[0][2] == "Llegó la leche vencida"
    assert resumed["session"].current_flow_id is None
    await service.shutdown()


@pytest.mark.asyncio
async def test_message_sent_during_thread_pause_reaches_the_next_node(service_factory, make_flow, fake_orders):
    flow = make_flow("thread", [
        {"id": "pause", "type": "threadNode", "data": {"action": "PAUSE", "reason": "reclamo"}},
        {"id": "report", "type": "reportNode"},
    ], [("pause", "report")], triggerKeywords="ayuda")
    service = service_factory(flow)
    await service.handle_inbound(_inbound("ayuda", "wamid.1"))
    session = await service.get_session(PHONE)
    assert session.paused is True
    assert session.awaiting_input is False

    await service.handle_inbound(_inbound("Faltó el pan", "wamid.2"))
    await service.resolve_handover(PHONE)

    assert fake_orders.claims[0][2] == "Faltó el pan"
    await service.shutdown()


@pytest.mark.asyncio
async def test_failed_message_is_not_marked_as_processed(service_factory, menu_flow, fake_sender):
    store = _FlakyStore()
    service = service_factory(menu_flow, store=store)
    store.fail_next_read = True

    with pytest.raises(SessionStoreUnavailable):
        await service.handle_inbound(_inbound("hola", "wamid.1"))

    retry = await service.handle_inbound(_inbound("hola", "wamid.1"))
    assert retry["status"] == "processed"
    assert fake_sender.texts()[0] == "Hola"
    await service.shutdown()


@pytest.mark.asyncio
async def test_reply_after_catalog_failure_resends_the_catalog(service_factory, make_flow, catalog, fake_sender, fake_orders, mocker):
    flow = make_flow("shop", [
        {"id": "catalog", "type": "catalogNode", "data": {"message": "Nuestros productos:"}},
        {"id": "order", "type": "createOrderNode"},
    ], [("catalog", "order")], triggerKeywords="comprar")
    products = await catalog.list_all()
    mocker.patch.object(catalog, "list_all", new=AsyncMock(side_effect=[CollaboratorError("catalog", "down"), products]))
    service = service_factory(flow)

    await service.handle_inbound(_inbound("comprar", "wamid.1"))
    assert fake_sender.texts() == [strings.COLLABORATOR_ERROR]

    result = await service.handle_inbound(_inbound("2 coca", "wamid.2"))

    assert result["status"] == "processed"
    assert fake_sender.texts()[1] == "Nuestros productos:"
    assert "Coca Cola" in fake_sender.texts()[2]
    assert fake_orders.orders == []
    assert result["session"].awaiting_input is True
    await service.shutdown()


@pytest.mark.asyncio
async def test_chosen_delivery_slot_is_booked_with_the_order(service_factory, make_flow, fake_sender, fake_orders):
    flow = make_flow("delivery", [
        {"id": "slot", "type": "slotNode"},
        {"id": "order", "type": "createOrderNode"},
    ], [("slot", "order")], triggerKeywords="entrega")
    service = service_factory(flow)
    await service.handle_inbound(_inbound("entrega", "wamid.1"))
    assert "1. Hoy, 11:00 a 11:30" in fake_sender.texts()[0]

    session = await service.store.get(PHONE)
    session.cart = [CartItem(product_id="p-coca", name="Coca Cola", qty=1, unit_price=1500)]
    await service.store.set(PHONE, session)

    await service.handle_inbound(_inbound("3", "wamid.2"))

    customer, _ = fake_orders.orders[0]
    assert customer.delivery_slot_id == "slot-3"
    assert fake_sender.texts()[1] == strings.SLOT_SELECTED.format(slot="Mañana, 09:00 a 09:30")
    await service.shutdown()
