# /chatflow/models/session.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from chatflow.models.domain import CartItem


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InboundMessage(BaseModel):
    """A normalized inbound chat message, independent of the transport."""
    conversation_key: str
    text: str = ""
    message_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    media_url: Optional[str] = None
    profile_name: Optional[str] = None


class OutboundMessage(BaseModel):
    kind: Literal["text", "media", "document", "typing"] = "text"
    body: Optional[str] = None
    media_url: Optional[str] = None
    filename: Optional[str] = None
    caption: Optional[str] = None


def text_message(body: str) -> OutboundMessage:
    return OutboundMessage(kind="text", body=body)


def media_message(url: str, caption: Optional[str] = None) -> OutboundMessage:
    return OutboundMessage(kind="media", media_url=url, caption=caption)


def document_message(url: str, filename: str, caption: Optional[str] = None) -> OutboundMessage:
    return OutboundMessage(kind="document", media_url=url, filename=filename, caption=caption)


def typing_indicator() -> OutboundMessage:
    return OutboundMessage(kind="typing")


class HistoryEntry(BaseModel):
    direction: Literal["in", "out"]
    text: str = ""
    message_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    # Set when the entry was recorded but not processed ("paused", "stale", "timer_pending").
    note: Optional[str] = None


class PendingTimer(BaseModel):
    token: str
    node_id: str
    due_at: datetime


class PendingInput(BaseModel):
    text: str = ""
    message_id: Optional[str] = None
    media_url: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    """
    Durable per-conversation execution state. Mutated only by the interpreter
    while the conversation key is locked.
    """
    phone: str
    current_flow_id: Optional[str] = None
    current_node_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    cart: List[CartItem] = Field(default_factory=list)
    paused: bool = False
    awaiting_input: bool = False
    pending_timer: Optional[PendingTimer] = None
    pending_input: Optional[PendingInput] = None
    handover_reason: Optional[str] = None
    profile_name: Optional[str] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    last_inbound_at: Optional[datetime] = None
    last_activity_at: datetime = Field(default_factory=utcnow)

    @property
    def in_flow(self) -> bool:
        return self.current_flow_id is not None

    def enter_flow(self, flow_id: str, node_id: str, keep_context: bool = False) -> None:
        self.current_flow_id = flow_id
        self.current_node_id = node_id
        self.awaiting_input = False
        self.pending_timer = None
        if not keep_context:
            self.variables = {}
            self.cart = []

    def leave_flow(self) -> None:
        self.current_flow_id = None
        self.current_node_id = None
        self.awaiting_input = False
        self.pending_timer = None

    def record(self, direction: str, text: str, limit: int, message_id: Optional[str] = None,
               note: Optional[str] = None) -> None:
        self.history.append(HistoryEntry(direction=direction, text=text, message_id=message_id, note=note))
        if len(self.history) > limit:
            del self.history[: len(self.history) - limit]
        self.last_activity_at = utcnow()

    @classmethod
    def new(cls, phone: str, profile_name: Optional[str] = None) -> "Session":
        return cls(phone=phone, profile_name=profile_name)
