# /chatflow/workflows/engine.py

"""
Flow interpreter step loop.

`step` advances one conversation through its flow graph in response to a
single event (an inbound message, a timer firing, or a handover being
resolved). It:
- works on a copy of the session, so an aborted step leaves the caller's
  session untouched
- runs node executors and follows the resolved outgoing edge until a node
  halts, the flow ends, the session is paused, or the loop guard trips
- switches flows in place for flow links, keeping variables and cart
- converts collaborator errors into an apologetic message and a halt at the
  failing node, which the next event re-enters from scratch

It performs no persistence and sends no messages; the conversation service
does both with the returned StepResult.
"""

import logging
import time
import uuid
from datetime import timedelta
from typing import List, Optional, Protocol, TypedDict

from chatflow.config import strings
from chatflow.errors import CollaboratorError, FlowNotFound, LoopGuardTripped, NodeNotFound
from chatflow.models.flow import Edge, Flow, Node, PollNode
from chatflow.models.session import (
    InboundMessage, OutboundMessage, PendingTimer, Session, text_message, utcnow
)
from chatflow.utils.metrics import (
    authoring_warnings_counter, loop_guard_counter, node_executions_counter,
    step_duration_histogram, step_halts_counter,
)
from chatflow.workflows.executors import Collaborators, ExecutionContext, NodeResult, execute_node, fail

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRANSITIONS = 50


class FlowSource(Protocol):
    async def get(self, flow_id: str) -> Optional[Flow]: ...


class StepResult(TypedDict):
    """Result of advancing a session by one event."""
    session: Session
    outbound: List[OutboundMessage]
    halted: bool
    ended: bool
    aborted: bool
    timer_ms: Optional[int]
    warnings: List[str]
    notifications: List[str]


def choose_edge(flow: Flow, node: Node, handle: Optional[str], ctx: ExecutionContext) -> Optional[Edge]:
    """
    Picks the edge to follow after a node continues. A requested handle is
    looked up first (poll options also under the editor's "option-N" form);
    if it has no edge, an unlabelled edge is used and an authoring warning is
    recorded. Without a handle the first outgoing edge is taken.
    """
    if handle is None:
        edges = flow.resolve_outgoing(node.id)
        unlabelled = [e for e in edges if not e.source_handle]
        return (unlabelled or edges or [None])[0]

    edges = flow.resolve_outgoing(node.id, handle)
    if not edges and isinstance(node, PollNode):
        edges = flow.resolve_outgoing(node.id, f"option-{handle}")
    if edges:
        return edges[0]

    unlabelled = [e for e in flow.resolve_outgoing(node.id) if not e.source_handle]
    if unlabelled:
        ctx.warn(node.id, f"no edge for handle '{handle}'; following the unlabelled edge")
        return unlabelled[0]
    ctx.warn(node.id, f"no edge for handle '{handle}'; ending the flow")
    return None


async def _load_flow(flows: FlowSource, flow_id: str) -> Flow:
    flow = await flows.get(flow_id)
    if flow is None:
        raise FlowNotFound(flow_id)
    return flow


def _result(session: Session, outbound: List[OutboundMessage], ctx: Optional[ExecutionContext], *,
            halted: bool = False, ended: bool = False, aborted: bool = False,
            timer_ms: Optional[int] = None) -> StepResult:
    return {
        "session": session,
        "outbound": outbound,
        "halted": halted,
        "ended": ended,
        "aborted": aborted,
        "timer_ms": timer_ms,
        "warnings": list(ctx.warnings) if ctx else [],
        "notifications": list(ctx.notifications) if ctx else [],
    }


async def step(
    session: Session,
    inbound: Optional[InboundMessage],
    flows: FlowSource,
    services: Collaborators,
    max_transitions: int = DEFAULT_MAX_TRANSITIONS,
) -> StepResult:
    """
    Advances `session` from its current node.

    Args:
        session: The conversation's persisted session (not mutated).
        inbound: The reply fed to the current node, or None to enter it fresh.
        flows: Flow lookup used for the current flow and flow links.
        services: Collaborators available to executors.
        max_transitions: Node executions allowed before the step is aborted.

    Returns:
        StepResult with the updated session copy and the messages to send.
    """
    started = time.perf_counter()
    try:
        return await _run(session, inbound, flows, services, max_transitions)
    finally:
        step_duration_histogram.observe(time.perf_counter() - started)


async def _run(session: Session, inbound: Optional[InboundMessage], flows: FlowSource,
               services: Collaborators, max_transitions: int) -> StepResult:
    work = session.model_copy(deep=True)
    outbound: List[OutboundMessage] = []

    if work.paused or not work.current_flow_id:
        return _result(work, outbound, None, halted=True)

    try:
        flow = await _load_flow(flows, work.current_flow_id)
    except FlowNotFound as e:
        logger.warning(f"{e}; {work.phone} leaves the flow")
        work.leave_flow()
        return _result(work, [text_message(strings.FLOW_UNAVAILABLE)], None, ended=True)

    ctx = ExecutionContext(session=work, flow=flow, services=services)
    work.pending_timer = None

    try:
        node = flow.resolve_node(work.current_node_id)
    except NodeNotFound as e:
        logger.warning(f"{e}; restarting {work.phone} at the entry node")
        node = flow.entry_node()
        work.current_node_id = node.id
        inbound = None
        outbound.append(text_message(strings.CONVERSATION_RESTARTED))

    current_input = inbound
    transitions = 0
    while True:
        if transitions >= max_transitions:
            error = LoopGuardTripped(flow.id, node.id, transitions)
            logger.error(f"{error}; aborting step for {session.phone}")
            loop_guard_counter.labels(flow_id=flow.id).inc()
            _count_warnings(ctx)
            return _result(session, [text_message(strings.GENERIC_ERROR)], ctx, aborted=True)
        transitions += 1

        node_executions_counter.labels(node_type=node.type).inc()
        try:
            result: NodeResult = await execute_node(node, ctx, current_input)
        except CollaboratorError as e:
            logger.error(f"Collaborator failure at {flow.id}/{node.id} for {work.phone}: {e}")
            result = fail(e.collaborator, [text_message(strings.COLLABORATOR_ERROR)])
        current_input = None
        outbound.extend(result["messages"])
        work.current_node_id = node.id

        if result["outcome"] == "halt":
            step_halts_counter.labels(node_type=node.type).inc()
            if result["timer_ms"] is not None:
                work.awaiting_input = False
                work.pending_timer = PendingTimer(
                    token=uuid.uuid4().hex,
                    node_id=node.id,
                    due_at=utcnow() + timedelta(milliseconds=result["timer_ms"]),
                )
            else:
                work.awaiting_input = True
            _count_warnings(ctx)
            return _result(work, outbound, ctx, halted=True, timer_ms=result["timer_ms"])

        if result["outcome"] == "error":
            step_halts_counter.labels(node_type=node.type).inc()
            # The next event re-enters the node instead of being read as its answer.
            work.awaiting_input = False
            _count_warnings(ctx)
            return _result(work, outbound, ctx, halted=True)

        work.awaiting_input = False

        if result["jump_flow_id"]:
            target = await flows.get(result["jump_flow_id"])
            if target is not None:
                flow = target
                ctx.flow = target
                node = target.entry_node()
                work.enter_flow(target.id, node.id, keep_context=True)
                if work.paused:
                    break
                continue
            ctx.warn(node.id, f"flow link target '{result['jump_flow_id']}' not found")
            if not flow.resolve_outgoing(node.id):
                outbound.append(text_message(strings.TARGET_FLOW_NOT_FOUND))

        edge = choose_edge(flow, node, result["handle"], ctx)
        if edge is None:
            work.leave_flow()
            _count_warnings(ctx)
            return _result(work, outbound, ctx, ended=True)

        try:
            node = flow.resolve_node(edge.target_node_id)
        except NodeNotFound:
            ctx.warn(node.id, f"edge '{edge.id}' points at missing node '{edge.target_node_id}'; ending the flow")
            work.leave_flow()
            _count_warnings(ctx)
            return _result(work, outbound, ctx, ended=True)
        work.current_node_id = node.id

        if work.paused:
            break

    _count_warnings(ctx)
    return _result(work, outbound, ctx, halted=True)


def _count_warnings(ctx: ExecutionContext) -> None:
    for _ in ctx.warnings:
        authoring_warnings_counter.labels(flow_id=ctx.flow.id).inc()
