# /chatflow/services/conversation_service.py

import asyncio
import logging
from typing import Awaitable, List, Literal, Optional, Protocol, Set, TypedDict

from chatflow.config import strings
from chatflow.config.settings import Settings, settings
from chatflow.models.session import (
    InboundMessage, OutboundMessage, PendingInput, Session, text_message, utcnow
)
from chatflow.services.catalog_service import catalog_service
from chatflow.services.dedup_service import create_duplicate_guard
from chatflow.services.document_service import document_service
from chatflow.services.flow_repository import FlowRepository, flow_repository
from chatflow.services.handover_service import handover_notifier
from chatflow.services.order_service import order_service
from chatflow.services.session_store import SessionStore, create_session_store
from chatflow.services.slot_service import slot_service
from chatflow.services.whatsapp_service import whatsapp_service
from chatflow.utils.alerting import alerting_service
from chatflow.utils.logging import bind_conversation
from chatflow.utils.metrics import message_counter, outbound_counter
from chatflow.utils.tasks import TimerScheduler
from chatflow.workflows import engine
from chatflow.workflows.executors import Collaborators
from chatflow.workflows.parser import normalize

logger = logging.getLogger(__name__)

IntakeStatus = Literal[
    "processed", "duplicate", "stale", "paused", "timer_pending", "no_flow",
    "aborted", "error", "resumed", "not_paused", "ignored",
]


class MessageSender(Protocol):
    async def send(self, to_phone: str, message: OutboundMessage, reply_to: Optional[str] = None) -> Optional[str]: ...


class HumanAttentionNotifier(Protocol):
    async def notify(self, key: str, reason: str) -> None: ...

    async def resolved(self, key: str) -> None: ...


class DuplicateGuard(Protocol):
    async def is_duplicate_message(self, message_id: str, phone_number: str) -> bool: ...

    async def forget(self, message_id: str, phone_number: str) -> None: ...


class IntakeResult(TypedDict):
    """What happened to one event, plus the messages that were dispatched."""
    status: IntakeStatus
    outbound: List[OutboundMessage]
    session: Optional[Session]


def _outcome(status: IntakeStatus, session: Optional[Session] = None,
             outbound: Optional[List[OutboundMessage]] = None) -> IntakeResult:
    return {"status": status, "outbound": outbound or [], "session": session}


class ConversationService:
    """
    Entry point for every event that can move a conversation: inbound
    messages, timer expiry and operator actions. All of them run under the
    session store's per-key lock, so a conversation is never advanced by two
    events at once.
    """

    def __init__(
        self,
        store: SessionStore,
        dedup: DuplicateGuard,
        flows: FlowRepository,
        services: Collaborators,
        sender: MessageSender,
        notifier: HumanAttentionNotifier,
        scheduler: TimerScheduler,
        config: Settings = settings,
    ):
        self.store = store
        self.dedup = dedup
        self.flows = flows
        self.services = services
        self.sender = sender
        self.notifier = notifier
        self.scheduler = scheduler
        self.config = config
        self._background: Set[asyncio.Task] = set()
        self.scheduler.bind(self.fire_timer)

    # ==================== Intake ====================

    async def handle_inbound(self, inbound: InboundMessage) -> IntakeResult:
        key = inbound.conversation_key
        bind_conversation(key, message_id=inbound.message_id)

        if await self.dedup.is_duplicate_message(inbound.message_id, key):
            logger.info(f"Duplicate message {inbound.message_id} ignored")
            message_counter.labels(status="duplicate").inc()
            return _outcome("duplicate")

        try:
            async with self.store.lock(key):
                return await self._intake(key, inbound)
        except Exception:
            # Not handled: let a webhook retry of the same message through.
            await self.dedup.forget(inbound.message_id, key)
            raise

    async def _intake(self, key: str, inbound: InboundMessage) -> IntakeResult:
        session = await self.store.get(key) or Session.new(key, inbound.profile_name)
        if inbound.profile_name:
            session.profile_name = inbound.profile_name
        history_max = self.config.session_history_max

        if session.last_inbound_at and inbound.timestamp < session.last_inbound_at:
            logger.warning(
                f"Out-of-order message {inbound.message_id} ({inbound.timestamp.isoformat()}) "
                f"older than {session.last_inbound_at.isoformat()}; not processed"
            )
            session.record("in", inbound.text, history_max, inbound.message_id, note="stale")
            await self.store.set(key, session)
            message_counter.labels(status="stale").inc()
            return _outcome("stale", session)

        session.last_inbound_at = inbound.timestamp

        if session.paused:
            session.record("in", inbound.text, history_max, inbound.message_id, note="paused")
            session.pending_input = PendingInput(
                text=inbound.text, message_id=inbound.message_id, media_url=inbound.media_url
            )
            await self.store.set(key, session)
            message_counter.labels(status="paused").inc()
            return _outcome("paused", session)

        session.record("in", inbound.text, history_max, inbound.message_id)

        if self.is_escape_command(inbound.text):
            logger.info(f"Escape command '{inbound.text}' resets the session")
            self.scheduler.cancel(key)
            session.leave_flow()
            session.variables = {}
            session.cart = []
            session.pending_input = None
        elif session.pending_timer:
            if session.pending_timer.due_at > utcnow():
                session.history[-1].note = "timer_pending"
                await self.store.set(key, session)
                message_counter.labels(status="timer_pending").inc()
                return _outcome("timer_pending", session)
            # Overdue timer (e.g. lost on restart): fire it before handling the message.
            fired = await self._advance(session, self._timer_input(session), None)
            if fired["session"] is None or fired["status"] != "processed":
                return fired
            session = fired["session"]
            if session.paused or session.pending_timer:
                return fired

        if not session.in_flow:
            flow = await self.flows.find_by_trigger(inbound.text) or await self.flows.get_default()
            if flow is None:
                outbound = [text_message(strings.NOT_UNDERSTOOD)]
                self._record_outbound(session, outbound)
                await self.store.set(key, session)
                await self._dispatch(key, outbound, inbound.message_id)
                message_counter.labels(status="no_flow").inc()
                return _outcome("no_flow", session, outbound)
            logger.info(f"Starting flow '{flow.id}' ({flow.name})")
            session.enter_flow(flow.id, flow.entry_node().id)
            step_input = None
        else:
            step_input = inbound if session.awaiting_input else None

        return await self._advance(session, step_input, inbound.message_id)

    def is_escape_command(self, text: str) -> bool:
        message = normalize(text)
        return bool(message) and message in {normalize(cmd) for cmd in self.config.escape_command_list}

    # ==================== Timers & operator actions ====================

    async def fire_timer(self, key: str, token: str) -> Optional[IntakeResult]:
        bind_conversation(key, timer=token)
        async with self.store.lock(key):
            session = await self.store.get(key)
            if session is None or session.pending_timer is None or session.pending_timer.token != token:
                logger.info(f"Stale timer {token} ignored")
                return None
            if session.paused:
                logger.info(f"Timer {token} fired while paused; it will run on resume")
                return None
            return await self._advance(session, self._timer_input(session), None)

    async def resolve_handover(self, key: str) -> Optional[IntakeResult]:
        """
        Clears the pause and resumes the interpreter where it stopped: a
        buffered message is fed to a node awaiting input, a pending timer
        fires, and a node that was never entered is entered now.
        """
        bind_conversation(key, action="resolve")
        async with self.store.lock(key):
            session = await self.store.get(key)
            if session is None:
                return None
            if not session.paused:
                return _outcome("not_paused", session)

            session.paused = False
            session.handover_reason = None
            pending = session.pending_input
            session.pending_input = None
            self._in_background(self.notifier.resolved(key))
            logger.info("Handover resolved")

            if not session.in_flow:
                await self.store.set(key, session)
                return _outcome("resumed", session)
            if pending is not None and not session.awaiting_input:
                # No node is waiting for it; keep the text for the nodes ahead.
                session.variables["temp_input"] = pending.text
            if session.pending_timer:
                return await self._advance(session, self._timer_input(session), None)
            if session.awaiting_input:
                if pending is None:
                    await self.store.set(key, session)
                    return _outcome("resumed", session)
                step_input = InboundMessage(
                    conversation_key=key,
                    text=pending.text,
                    message_id=pending.message_id or f"resume:{key}",
                    timestamp=pending.received_at,
                    media_url=pending.media_url,
                )
                return await self._advance(session, step_input, pending.message_id)
            return await self._advance(session, None, None)

    async def reset_session(self, key: str) -> None:
        async with self.store.lock(key):
            self.scheduler.cancel(key)
            await self.store.delete(key)
        logger.info(f"Session {key} reset by operator")

    async def get_session(self, key: str) -> Optional[Session]:
        return await self.store.get(key)

    async def shutdown(self):
        await self.scheduler.shutdown()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ==================== Internals ====================

    def _timer_input(self, session: Session) -> InboundMessage:
        return InboundMessage(
            conversation_key=session.phone,
            message_id=f"timer:{session.pending_timer.token}",
        )

    async def _advance(self, session: Session, step_input: Optional[InboundMessage],
                       reply_to: Optional[str]) -> IntakeResult:
        key = session.phone
        try:
            result = await engine.step(
                session, step_input, self.flows, self.services, self.config.max_transitions_per_step
            )
        except Exception as e:
            logger.error(f"Unhandled error advancing {key}: {e}", exc_info=True)
            message_counter.labels(status="error").inc()
            self._in_background(alerting_service.send_critical_alert(
                "Flow step failed", {"conversation_key": key, "error": str(e)}
            ))
            outbound = [text_message(strings.GENERIC_ERROR)]
            await self._dispatch(key, outbound, reply_to)
            return _outcome("error", session, outbound)

        if result["aborted"]:
            message_counter.labels(status="aborted").inc()
            self._in_background(alerting_service.send_operator_warning(
                "Loop guard tripped", {"conversation_key": key, "flow_id": session.current_flow_id}
            ))
            await self._dispatch(key, result["outbound"], reply_to)
            return _outcome("aborted", session, result["outbound"])

        updated = result["session"]
        self._record_outbound(updated, result["outbound"])
        await self.store.set(key, updated)

        if updated.pending_timer and result["timer_ms"] is not None:
            self.scheduler.schedule(key, updated.pending_timer.token, result["timer_ms"])
        for reason in result["notifications"]:
            self._in_background(self.notifier.notify(key, reason))
        for warning in result["warnings"]:
            self._in_background(alerting_service.send_operator_warning(
                "Flow authoring problem", {"conversation_key": key, "warning": warning}
            ))

        await self._dispatch(key, result["outbound"], reply_to)
        message_counter.labels(status="processed").inc()
        return _outcome("processed", updated, result["outbound"])

    def _record_outbound(self, session: Session, outbound: List[OutboundMessage]):
        for message in outbound:
            if message.kind == "typing":
                continue
            text = message.body if message.kind == "text" else (message.caption or message.media_url or "")
            session.record("out", text, self.config.session_history_max)

    async def _dispatch(self, key: str, outbound: List[OutboundMessage], reply_to: Optional[str]):
        for message in outbound:
            try:
                await self.sender.send(key, message, reply_to)
            except Exception as e:
                outbound_counter.labels(kind=message.kind, status="error").inc()
                logger.error(f"Failed to send {message.kind} message to {key}: {e}", exc_info=True)

    def _in_background(self, coro: Awaitable):
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception():
            logger.error(f"Background task failed: {task.exception()}")


def build_conversation_service(config: Settings = settings) -> ConversationService:
    store = create_session_store(config)
    return ConversationService(
        store=store,
        dedup=create_duplicate_guard(config, getattr(store, "redis", None)),
        flows=flow_repository,
        services=Collaborators(
            catalog=catalog_service,
            orders=order_service,
            claims=order_service,
            documents=document_service,
            slots=slot_service,
        ),
        sender=whatsapp_service,
        notifier=handover_notifier,
        scheduler=TimerScheduler(),
        config=config,
    )


# Globally accessible instance
conversation_service = build_conversation_service()
