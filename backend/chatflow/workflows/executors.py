# /chatflow/workflows/executors.py

"""
Node executors for the flow interpreter.

Each executor receives the node, the execution context and the inbound
message. `inbound is None` means the node is being entered for the first
time; a value means the node halted earlier and is now re-entered with the
user's reply.

Executors never follow edges themselves. They report one of three outcomes
and leave graph walking to the engine:
- continue: optionally with a source handle to follow
- halt: wait for input (or for a timer when `timer_ms` is set)
- error: a collaborator failed; the engine halts at the node and the next
  event enters it again from scratch
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Protocol, TypedDict

from chatflow.config import strings
from chatflow.errors import CollaboratorError
from chatflow.models.domain import (
    CartItem, CreatedOrder, CustomerRef, DeliverySlot, Product, aggregate_cart, cart_total
)
from chatflow.models.flow import (
    AddToCartNode, CatalogNode, ConditionNode, CreateOrderNode, DocumentNode, Flow,
    FlowLinkNode, HandoverNode, MediaUploadNode, MessageNode, Node, OrderSummaryNode,
    PollNode, QuestionNode, ReportNode, SlotNode, StartNode, StockCheckNode, ThreadNode, TimerNode,
)
from chatflow.models.session import (
    InboundMessage, OutboundMessage, Session, document_message, text_message, typing_indicator
)
from chatflow.workflows import parser
from chatflow.workflows.variables import VariableContext, stringify

logger = logging.getLogger(__name__)

ADDRESS_VARIABLES = ["direccion", "dirección", "address", "domicilio", "direccion_entrega"]
DELIVERY_DATE_VARIABLES = ["fecha_entrega", "fecha", "delivery_date", "selected_slot_text"]
PAYMENT_METHOD_VARIABLES = ["metodo_pago", "payment_method"]
SLOT_OPTIONS_VARIABLE = "_slot_options"


# ---------------- Collaborator interfaces ---------------- #

class CatalogProvider(Protocol):
    async def find(self, query: str) -> Optional[Product]: ...

    async def list_all(self) -> List[Product]: ...


class OrderCreator(Protocol):
    async def create_order(self, customer: CustomerRef, items: List[CartItem]) -> CreatedOrder: ...


class ClaimCreator(Protocol):
    async def create_claim(self, claim_type: str, priority: str, description: str,
                           customer: CustomerRef) -> str: ...


class DocumentGenerator(Protocol):
    async def generate(self, template: str, data: Dict[str, Any]) -> str: ...


class SlotProvider(Protocol):
    def now(self) -> datetime: ...

    async def get_available_slots(self, max_results: int = 6) -> List[DeliverySlot]: ...


@dataclass
class Collaborators:
    catalog: CatalogProvider
    orders: OrderCreator
    claims: ClaimCreator
    documents: DocumentGenerator
    slots: Optional[SlotProvider] = None


# ---------------- Results and context ---------------- #

class NodeResult(TypedDict):
    """Result of executing a single node."""
    outcome: Literal["continue", "halt", "error"]
    handle: Optional[str]
    messages: List[OutboundMessage]
    timer_ms: Optional[int]
    jump_flow_id: Optional[str]
    error_kind: Optional[str]


def proceed(messages: Optional[List[OutboundMessage]] = None, handle: Optional[str] = None,
            jump_flow_id: Optional[str] = None) -> NodeResult:
    return {
        "outcome": "continue",
        "handle": handle,
        "messages": messages or [],
        "timer_ms": None,
        "jump_flow_id": jump_flow_id,
        "error_kind": None,
    }


def halt(messages: Optional[List[OutboundMessage]] = None, timer_ms: Optional[int] = None) -> NodeResult:
    return {
        "outcome": "halt",
        "handle": None,
        "messages": messages or [],
        "timer_ms": timer_ms,
        "jump_flow_id": None,
        "error_kind": None,
    }


def fail(kind: str, messages: Optional[List[OutboundMessage]] = None) -> NodeResult:
    return {
        "outcome": "error",
        "handle": None,
        "messages": messages or [],
        "timer_ms": None,
        "jump_flow_id": None,
        "error_kind": kind,
    }


@dataclass
class ExecutionContext:
    session: Session
    flow: Flow
    services: Collaborators
    warnings: List[str] = field(default_factory=list)
    notifications: List[str] = field(default_factory=list)

    @property
    def variables(self) -> VariableContext:
        return VariableContext(self.session.variables)

    def warn(self, node_id: str, message: str) -> None:
        """Records an authoring problem; the engine still takes a deterministic path."""
        entry = f"[{self.flow.id}/{node_id}] {message}"
        self.warnings.append(entry)
        logger.warning(f"Authoring warning {entry}")

    def customer(self) -> CustomerRef:
        return CustomerRef(
            phone=self.session.phone,
            name=self.session.profile_name,
            address=_first_variable(self.variables, ADDRESS_VARIABLES),
            delivery_date=_first_variable(self.variables, DELIVERY_DATE_VARIABLES),
            payment_method=_first_variable(self.variables, PAYMENT_METHOD_VARIABLES),
            delivery_slot_id=_first_variable(self.variables, ["selected_slot_id"]),
        )


def _first_variable(variables: VariableContext, names: List[str]) -> Optional[str]:
    for name in names:
        value = variables.get(name)
        if value not in (None, ""):
            return stringify(value)
    return None


def _texts(*bodies: Optional[str]) -> List[OutboundMessage]:
    return [text_message(body) for body in bodies if body and body.strip()]


# ---------------- Dispatch ---------------- #

async def execute_node(node: Node, ctx: ExecutionContext, inbound: Optional[InboundMessage]) -> NodeResult:
    match node:
        case StartNode():
            return proceed()
        case MessageNode():
            return run_message(node, ctx)
        case QuestionNode():
            return run_question(node, ctx, inbound)
        case PollNode():
            return run_poll(node, ctx, inbound)
        case ConditionNode():
            return run_condition(node, ctx)
        case CatalogNode():
            return await run_catalog(node, ctx, inbound)
        case SlotNode():
            return await run_slot(node, ctx, inbound)
        case StockCheckNode():
            return await run_stock_check(node, ctx, inbound)
        case AddToCartNode():
            return await run_add_to_cart(node, ctx)
        case OrderSummaryNode():
            return run_order_summary(node, ctx)
        case CreateOrderNode():
            return await run_create_order(node, ctx)
        case MediaUploadNode():
            return run_media_upload(node, ctx, inbound)
        case DocumentNode():
            return await run_document(node, ctx)
        case TimerNode():
            return run_timer(node, ctx, inbound)
        case ThreadNode():
            return run_thread(node, ctx)
        case FlowLinkNode():
            return run_flow_link(node, ctx)
        case HandoverNode():
            return run_handover(node, ctx, inbound)
        case ReportNode():
            return await run_report(node, ctx)
    raise TypeError(f"Unsupported node type: {type(node).__name__}")


# ---------------- Executors ---------------- #

def run_message(node: MessageNode, ctx: ExecutionContext) -> NodeResult:
    return proceed(_texts(ctx.variables.interpolate(node.data.text)))


def run_question(node: QuestionNode, ctx: ExecutionContext, inbound: Optional[InboundMessage]) -> NodeResult:
    if inbound is None:
        return halt(_texts(ctx.variables.interpolate(node.data.question)))
    ctx.variables.set(node.data.variable, inbound.text.strip())
    return proceed()


def poll_prompt(node: PollNode, ctx: ExecutionContext) -> str:
    question = ctx.variables.interpolate(node.data.question) or strings.POLL_DEFAULT_QUESTION
    options = "\n".join(f"{i}. {option}" for i, option in enumerate(node.data.options, start=1))
    return f"{question}\n\n{options}\n\n{strings.POLL_FOOTER}"


def match_poll_option(text: str, options: List[str]) -> Optional[int]:
    """
    Resolves a reply to a 0-based option index. Precedence: exact label
    (case and accent insensitive), then 1-based number, then a substring
    matching exactly one label. Returns None for no match or ambiguity.
    """
    reply = parser.normalize(text)
    if not reply:
        return None
    labels = [parser.normalize(option) for option in options]

    for i, label in enumerate(labels):
        if label == reply:
            return i
    if reply.isdigit() and 1 <= int(reply) <= len(options):
        return int(reply) - 1
    candidates = [i for i, label in enumerate(labels) if reply in label]
    if len(candidates) == 1:
        return candidates[0]
    return None


def run_poll(node: PollNode, ctx: ExecutionContext, inbound: Optional[InboundMessage]) -> NodeResult:
    if inbound is None:
        return halt(_texts(poll_prompt(node, ctx)))

    index = match_poll_option(inbound.text, node.data.options)
    if index is None:
        return halt(_texts(f"{strings.POLL_NOT_UNDERSTOOD}\n\n{poll_prompt(node, ctx)}"))

    ctx.variables.set(node.data.variable, node.data.options[index])
    return proceed(handle=str(index))


def _as_number(value: str) -> Optional[float]:
    try:
        return float(value.replace(",", "."))
    except ValueError:
        return None


def evaluate_condition(actual_raw: Any, operator: str, expected_raw: Any) -> bool:
    actual = stringify(actual_raw).strip().lower()
    expected = stringify(expected_raw).strip().lower()

    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        return expected in actual
    if operator in ("greater_than", "less_than"):
        a, b = _as_number(actual), _as_number(expected)
        if a is None or b is None:
            return False
        return a > b if operator == "greater_than" else a < b
    return actual == expected


def run_condition(node: ConditionNode, ctx: ExecutionContext) -> NodeResult:
    if not node.data.variable:
        ctx.warn(node.id, "condition has no variable configured; taking the 'false' branch")
        return proceed(handle="false")

    actual = ctx.variables.get(node.data.variable)
    if actual is None:
        return proceed(handle="false")

    expected = node.data.expected_value
    if isinstance(expected, str):
        expected = ctx.variables.interpolate(expected)
    result = evaluate_condition(actual, node.data.operator, expected)
    return proceed(handle="true" if result else "false")


def format_catalog(products: List[Product]) -> str:
    by_category: Dict[str, List[Product]] = {}
    for product in products:
        by_category.setdefault(product.category or "General", []).append(product)

    lines = [strings.CATALOG_HEADER]
    for category, items in by_category.items():
        lines.append(f"\n*{category.upper()}*")
        lines.extend(f"• {p.name} — ${stringify(p.price)}" for p in items)
    lines.append("")
    lines.append(strings.CATALOG_HOW_TO_ORDER)
    return "\n".join(lines)


async def run_catalog(node: CatalogNode, ctx: ExecutionContext, inbound: Optional[InboundMessage]) -> NodeResult:
    products = [p for p in await ctx.services.catalog.list_all() if p.in_stock]

    if inbound is None:
        if not products:
            return proceed(_texts(strings.CATALOG_EMPTY))
        return halt(_texts(ctx.variables.interpolate(node.data.message), format_catalog(products)))

    items = parser.parse(inbound.text, products)
    if not items:
        return halt(_texts(strings.CATALOG_NOTHING_PARSED))

    ctx.variables.set(node.data.variable, [item.model_dump() for item in items])
    if node.data.add_to_cart:
        ctx.session.cart.extend(
            CartItem(product_id=i.product_id, name=i.name, qty=i.qty, unit_price=i.unit_price) for i in items
        )
    lines = [strings.CATALOG_PARSED_HEADER]
    lines.extend(
        strings.SUMMARY_LINE.format(qty=i.qty, name=i.name, line_total=stringify(i.line_total)) for i in items
    )
    return proceed(_texts("\n".join(lines)))


def slot_prompt(node: SlotNode, ctx: ExecutionContext, offered: List[Dict[str, str]]) -> str:
    header = ctx.variables.interpolate(node.data.message) or strings.SLOT_HEADER
    options = "\n".join(f"{i}. {option['label']}" for i, option in enumerate(offered, start=1))
    return f"{header}\n\n{options}\n\n{strings.SLOT_FOOTER}"


async def run_slot(node: SlotNode, ctx: ExecutionContext, inbound: Optional[InboundMessage]) -> NodeResult:
    """
    Offers the next bookable delivery windows and waits for a choice. The
    offered list is kept in the session so the reply is matched against
    exactly what the user saw; the choice is stored as `selected_slot_id`
    and `selected_slot_text`.
    """
    offered = ctx.variables.get(SLOT_OPTIONS_VARIABLE) or []
    if inbound is not None and offered:
        index = match_poll_option(inbound.text, [option["label"] for option in offered])
        if index is None:
            return halt(_texts(f"{strings.SLOT_NOT_UNDERSTOOD}\n\n{slot_prompt(node, ctx, offered)}"))
        chosen = offered[index]
        ctx.variables.set("selected_slot_id", chosen["id"])
        ctx.variables.set("selected_slot_text", chosen["label"])
        ctx.variables.pop(SLOT_OPTIONS_VARIABLE)
        return proceed(_texts(strings.SLOT_SELECTED.format(slot=chosen["label"])))

    provider = ctx.services.slots
    if provider is None:
        raise CollaboratorError("slots", "no delivery slot service configured")
    slots = await provider.get_available_slots(node.data.max_options)
    if not slots:
        ctx.variables.pop(SLOT_OPTIONS_VARIABLE)
        return halt(_texts(strings.SLOTS_EMPTY))

    today = provider.now().date()
    offered = [{"id": slot.id, "label": slot.label(today)} for slot in slots]
    ctx.variables.set(SLOT_OPTIONS_VARIABLE, offered)
    return halt(_texts(slot_prompt(node, ctx, offered)))


def stock_status_message(result: Dict[str, Any]) -> str:
    if not result["found"]:
        return strings.STOCK_NOT_FOUND.format(query=result["search_term"])
    if result["stock"] <= 0:
        return strings.STOCK_SOLD_OUT.format(name=result["product_name"])
    price = stringify(result["price"])
    if result["available"]:
        message = strings.STOCK_AVAILABLE.format(name=result["product_name"], price=price)
        if result["requested_qty"] > 1:
            message += strings.STOCK_AVAILABLE_TOTAL.format(
                qty=result["requested_qty"], total=stringify(result["total_price"])
            )
        return message
    return strings.STOCK_INSUFFICIENT.format(
        name=result["product_name"], stock=result["stock"], qty=result["requested_qty"], price=price
    )


async def run_stock_check(node: StockCheckNode, ctx: ExecutionContext,
                          inbound: Optional[InboundMessage]) -> NodeResult:
    if inbound is None:
        question = ctx.variables.interpolate(node.data.question) or strings.STOCK_DEFAULT_QUESTION
        return halt(_texts(question))

    inquiry = parser.detect_stock_inquiry(inbound.text)
    if inquiry:
        qty, term = inquiry["qty"] or 1, inquiry["product"]
    else:
        qty, term = parser.split_quantity(inbound.text)

    product = await ctx.services.catalog.find(term)
    result: Dict[str, Any] = {
        "found": product is not None,
        "search_term": term,
        "product_name": product.name if product else None,
        "name": product.name if product else None,
        "product_id": product.id if product else None,
        "stock": product.stock if product else 0,
        "price": product.price if product else 0,
        "requested_qty": qty,
        "available": bool(product and product.stock >= qty),
        "total_price": (product.price * qty) if product else 0,
    }
    ctx.variables.set(node.data.result_variable, result)
    return proceed(_texts(stock_status_message(result)))


def parse_quantity(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return int(raw) if float(raw).is_integer() else None
    text = parser.normalize(str(raw))
    if text.isdigit():
        return int(text)
    return parser.NUMBER_WORDS.get(text)


async def run_add_to_cart(node: AddToCartNode, ctx: ExecutionContext) -> NodeResult:
    variables = ctx.variables
    raw_product = variables.get(node.data.product_variable)

    product_id = name = None
    price = 0.0
    requested_qty = None
    if isinstance(raw_product, dict):
        if raw_product.get("found", True) and raw_product.get("product_id"):
            product_id = str(raw_product["product_id"])
            name = raw_product.get("product_name") or raw_product.get("name")
            price = float(raw_product.get("price") or 0)
            requested_qty = raw_product.get("requested_qty")
    elif isinstance(raw_product, str) and raw_product.strip():
        product = await ctx.services.catalog.find(raw_product)
        if product:
            product_id, name, price = product.id, product.name, product.price

    if not product_id:
        return proceed(_texts(strings.CART_NO_PRODUCT))

    raw_qty = variables.get(node.data.qty_variable)
    if raw_qty in (None, ""):
        raw_qty = requested_qty if requested_qty is not None else 1
    qty = parse_quantity(raw_qty)
    if qty is None or qty <= 0:
        return proceed(_texts(strings.CART_INVALID_QTY))

    detail = None
    if node.data.detail_variable:
        detail_value = variables.get(node.data.detail_variable)
        detail = stringify(detail_value).strip() or None

    item = CartItem(product_id=product_id, name=name or product_id, qty=qty, unit_price=price, detail=detail)
    ctx.session.cart.append(item)
    for consumed in (node.data.product_variable, node.data.qty_variable, node.data.detail_variable):
        if consumed:
            variables.pop(consumed)

    count = len(ctx.session.cart)
    return proceed(_texts(strings.CART_ADDED.format(
        qty=qty,
        name=item.name,
        line_total=stringify(item.line_total),
        count=count,
        items="producto" if count == 1 else "productos",
        total=stringify(cart_total(ctx.session.cart)),
    )))


def format_cart(cart: List[CartItem]) -> str:
    lines = [strings.SUMMARY_HEADER]
    for item in aggregate_cart(cart):
        name = f"{item.name} ({item.detail})" if item.detail else item.name
        lines.append(strings.SUMMARY_LINE.format(qty=item.qty, name=name, line_total=stringify(item.line_total)))
    lines.append("")
    lines.append(strings.SUMMARY_TOTAL.format(total=stringify(cart_total(cart))))
    return "\n".join(lines)


def run_order_summary(node: OrderSummaryNode, ctx: ExecutionContext) -> NodeResult:
    if not ctx.session.cart:
        return proceed(_texts(strings.CART_EMPTY))
    ctx.variables.set("total_amount", cart_total(ctx.session.cart))
    return proceed(_texts(format_cart(ctx.session.cart)))


async def run_create_order(node: CreateOrderNode, ctx: ExecutionContext) -> NodeResult:
    if not ctx.session.cart:
        return fail("empty_cart", _texts(strings.CART_EMPTY))

    items = aggregate_cart(ctx.session.cart)
    customer = ctx.customer()
    if node.data.address_variable:
        address = ctx.variables.get(node.data.address_variable)
        if address not in (None, ""):
            customer.address = stringify(address)

    try:
        order = await ctx.services.orders.create_order(customer, items)
    except CollaboratorError as e:
        logger.error(f"Order creation failed for {ctx.session.phone}: {e}")
        return fail("order", _texts(strings.ORDER_FAILED))

    ctx.session.cart = []
    ctx.variables.set("order_id", order.order_id)
    ctx.variables.set("order_number", order.order_number)
    ctx.variables.set("total_amount", order.total)
    ctx.variables.set("created_order", order.model_dump(mode="json"))

    confirmation = strings.ORDER_CONFIRMED.format(
        order_number=order.order_number,
        total=stringify(order.total),
        address=customer.address or strings.ORDER_PICKUP,
    )
    return proceed(_texts(confirmation, ctx.variables.interpolate(node.data.message)))


def run_media_upload(node: MediaUploadNode, ctx: ExecutionContext,
                     inbound: Optional[InboundMessage]) -> NodeResult:
    request = ctx.variables.interpolate(node.data.message) or strings.MEDIA_DEFAULT_REQUEST
    if inbound is None or not inbound.media_url:
        return halt(_texts(request))
    ctx.variables.set(node.data.variable, inbound.media_url)
    return proceed(_texts(strings.MEDIA_RECEIVED))


async def run_document(node: DocumentNode, ctx: ExecutionContext) -> NodeResult:
    data = {
        "phone": ctx.session.phone,
        "customer_name": ctx.session.profile_name,
        "order": ctx.variables.get("created_order"),
        "cart": [item.model_dump() for item in ctx.session.cart],
        "variables": ctx.variables.as_dict(),
    }
    try:
        url = await ctx.services.documents.generate(node.data.template, data)
    except CollaboratorError as e:
        logger.error(f"Document generation failed for {ctx.session.phone}: {e}")
        return fail("document", _texts(strings.DOCUMENT_FAILED))

    ctx.variables.set("document_url", url)
    caption = ctx.variables.interpolate(node.data.caption) or strings.DOCUMENT_DEFAULT_CAPTION
    return proceed([document_message(url, f"{node.data.template}.pdf", caption)])


def run_timer(node: TimerNode, ctx: ExecutionContext, inbound: Optional[InboundMessage]) -> NodeResult:
    if inbound is not None:
        return proceed()
    messages = [typing_indicator()] if node.data.show_typing_indicator else []
    return halt(messages, timer_ms=node.data.duration_ms)


def run_thread(node: ThreadNode, ctx: ExecutionContext) -> NodeResult:
    message = ctx.variables.interpolate(node.data.message)
    if node.data.action == "pause":
        ctx.session.paused = True
        ctx.session.handover_reason = node.data.reason or strings.HANDOVER_DEFAULT_REASON
        ctx.notifications.append(ctx.session.handover_reason)
        return proceed(_texts(message))
    ctx.session.paused = False
    ctx.session.handover_reason = None
    return proceed(_texts(message))


def run_flow_link(node: FlowLinkNode, ctx: ExecutionContext) -> NodeResult:
    if not node.data.target_flow_id:
        ctx.warn(node.id, "flow link has no target flow configured")
        return proceed()
    return proceed(jump_flow_id=node.data.target_flow_id)


def run_handover(node: HandoverNode, ctx: ExecutionContext, inbound: Optional[InboundMessage]) -> NodeResult:
    if inbound is not None:
        # Whatever the user wrote while waiting describes the problem.
        if inbound.text.strip():
            ctx.variables.set("temp_input", inbound.text.strip())
        return proceed()
    ctx.session.paused = True
    ctx.session.handover_reason = node.data.reason or strings.HANDOVER_DEFAULT_REASON
    ctx.notifications.append(ctx.session.handover_reason)
    message = ctx.variables.interpolate(node.data.message) or strings.HANDOVER_DEFAULT
    return halt(_texts(message))


async def run_report(node: ReportNode, ctx: ExecutionContext) -> NodeResult:
    description = ctx.variables.get(node.data.variable)
    if description in (None, ""):
        description = ctx.variables.get("temp_input")
    description = stringify(description).strip() or strings.CLAIM_NO_DESCRIPTION

    try:
        claim_id = await ctx.services.claims.create_claim(
            node.data.report_type, node.data.priority, description, ctx.customer()
        )
    except CollaboratorError as e:
        logger.error(f"Claim creation failed for {ctx.session.phone}: {e}")
        return fail("claim", _texts(strings.CLAIM_FAILED))

    ctx.variables.set("claim_id", claim_id)
    return proceed(_texts(ctx.variables.interpolate(node.data.text) or strings.CLAIM_CREATED))
