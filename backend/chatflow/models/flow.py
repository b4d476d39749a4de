# /chatflow/models/flow.py

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
)
from pydantic.alias_generators import to_camel

from chatflow.errors import NodeNotFound

# Flow documents are authored in a visual editor and stored as JSON. This module
# decodes them into a closed set of node variants; editor-only fields (positions,
# styling, change handlers) are dropped on decode.

# Node type names used by the editor, mapped to the runtime kinds.
NODE_TYPE_ALIASES: Dict[str, str] = {
    "input": "start",
    "startNode": "start",
    "messageNode": "message",
    "send_message": "message",
    "questionNode": "question",
    "wait_input": "question",
    "pollNode": "poll",
    "conditionNode": "condition",
    "catalogNode": "catalog",
    "slotNode": "slot",
    "stockCheckNode": "stock_check",
    "addToCartNode": "add_to_cart",
    "orderSummaryNode": "order_summary",
    "createOrderNode": "create_order",
    "mediaUploadNode": "media_upload",
    "documentNode": "document",
    "timerNode": "timer",
    "threadNode": "thread",
    "flowLinkNode": "flow_link",
    "handoverNode": "handover",
    "reportNode": "report",
}


class NodeConfig(BaseModel):
    """Base for kind-specific node configuration (the editor's `data` object)."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
        str_strip_whitespace=True,
    )


class StartConfig(NodeConfig):
    pass


class MessageConfig(NodeConfig):
    text: str = Field(default="", validation_alias=AliasChoices("text", "message"))


class QuestionConfig(NodeConfig):
    question: str = ""
    variable: str = "temp_input"


class PollConfig(NodeConfig):
    question: Optional[str] = None
    options: List[str] = Field(default_factory=lambda: ["Sí", "No"])
    variable: str = "poll_response"

    @field_validator("options")
    @classmethod
    def drop_blank_options(cls, v: List[str]) -> List[str]:
        return [opt for opt in v if opt] or ["Sí", "No"]


class ConditionConfig(NodeConfig):
    variable: Optional[str] = None
    operator: Literal["equals", "not_equals", "contains", "greater_than", "less_than"] = "equals"
    expected_value: Any = ""


class CatalogConfig(NodeConfig):
    message: Optional[str] = None
    variable: str = "order_items"
    add_to_cart: bool = True


class SlotConfig(NodeConfig):
    message: Optional[str] = None
    max_options: int = Field(default=6, ge=1)


class StockCheckConfig(NodeConfig):
    question: Optional[str] = None
    result_variable: str = Field(
        default="stock_result",
        validation_alias=AliasChoices("resultVariable", "result_variable", "variable"),
    )


class AddToCartConfig(NodeConfig):
    product_variable: str = "stock_result"
    qty_variable: str = "cantidad"
    detail_variable: Optional[str] = None


class OrderSummaryConfig(NodeConfig):
    pass


class CreateOrderConfig(NodeConfig):
    address_variable: Optional[str] = None
    message: Optional[str] = None


class MediaUploadConfig(NodeConfig):
    message: Optional[str] = None
    variable: str = "file_url"


class DocumentConfig(NodeConfig):
    template: str = "order_receipt"
    caption: Optional[str] = None


class TimerConfig(NodeConfig):
    duration_ms: int = Field(
        default=1000,
        ge=0,
        validation_alias=AliasChoices("durationMs", "duration_ms", "duration"),
    )
    show_typing_indicator: bool = Field(
        default=True,
        validation_alias=AliasChoices("showTypingIndicator", "show_typing_indicator", "showTyping"),
    )


class ThreadConfig(NodeConfig):
    action: Literal["pause", "resume"] = "pause"
    message: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v):
        # The editor stores HANDOVER / RESUME.
        if isinstance(v, str):
            v = v.strip().lower()
            return {"handover": "pause"}.get(v, v)
        return v


class FlowLinkConfig(NodeConfig):
    target_flow_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("targetFlowId", "target_flow_id", "flowId"),
    )


class HandoverConfig(NodeConfig):
    message: Optional[str] = None
    reason: Optional[str] = None


class ReportConfig(NodeConfig):
    variable: str = "claim_description"
    report_type: str = "reclamo"
    priority: str = "medium"
    text: Optional[str] = None


class BaseNode(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)
    id: str


class StartNode(BaseNode):
    type: Literal["start"]
    data: StartConfig = Field(default_factory=StartConfig)


class MessageNode(BaseNode):
    type: Literal["message"]
    data: MessageConfig = Field(default_factory=MessageConfig)


class QuestionNode(BaseNode):
    type: Literal["question"]
    data: QuestionConfig = Field(default_factory=QuestionConfig)


class PollNode(BaseNode):
    type: Literal["poll"]
    data: PollConfig = Field(default_factory=PollConfig)


class ConditionNode(BaseNode):
    type: Literal["condition"]
    data: ConditionConfig = Field(default_factory=ConditionConfig)


class CatalogNode(BaseNode):
    type: Literal["catalog"]
    data: CatalogConfig = Field(default_factory=CatalogConfig)


class SlotNode(BaseNode):
    type: Literal["slot"]
    data: SlotConfig = Field(default_factory=SlotConfig)


class StockCheckNode(BaseNode):
    type: Literal["stock_check"]
    data: StockCheckConfig = Field(default_factory=StockCheckConfig)


class AddToCartNode(BaseNode):
    type: Literal["add_to_cart"]
    data: AddToCartConfig = Field(default_factory=AddToCartConfig)


class OrderSummaryNode(BaseNode):
    type: Literal["order_summary"]
    data: OrderSummaryConfig = Field(default_factory=OrderSummaryConfig)


class CreateOrderNode(BaseNode):
    type: Literal["create_order"]
    data: CreateOrderConfig = Field(default_factory=CreateOrderConfig)


class MediaUploadNode(BaseNode):
    type: Literal["media_upload"]
    data: MediaUploadConfig = Field(default_factory=MediaUploadConfig)


class DocumentNode(BaseNode):
    type: Literal["document"]
    data: DocumentConfig = Field(default_factory=DocumentConfig)


class TimerNode(BaseNode):
    type: Literal["timer"]
    data: TimerConfig = Field(default_factory=TimerConfig)


class ThreadNode(BaseNode):
    type: Literal["thread"]
    data: ThreadConfig = Field(default_factory=ThreadConfig)


class FlowLinkNode(BaseNode):
    type: Literal["flow_link"]
    data: FlowLinkConfig = Field(default_factory=FlowLinkConfig)


class HandoverNode(BaseNode):
    type: Literal["handover"]
    data: HandoverConfig = Field(default_factory=HandoverConfig)


class ReportNode(BaseNode):
    type: Literal["report"]
    data: ReportConfig = Field(default_factory=ReportConfig)


Node = Annotated[
    Union[
        StartNode, MessageNode, QuestionNode, PollNode, ConditionNode, CatalogNode, SlotNode,
        StockCheckNode, AddToCartNode, OrderSummaryNode, CreateOrderNode, MediaUploadNode,
        DocumentNode, TimerNode, ThreadNode, FlowLinkNode, HandoverNode, ReportNode,
    ],
    Field(discriminator="type"),
]


class Edge(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: str = ""
    source_node_id: str = Field(validation_alias=AliasChoices("sourceNodeId", "source_node_id", "source"))
    source_handle: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("sourceHandle", "source_handle")
    )
    target_node_id: str = Field(validation_alias=AliasChoices("targetNodeId", "target_node_id", "target"))


class Flow(BaseModel):
    """
    Immutable, loaded-per-execution representation of an authored flow.
    """
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id", "flow_id"))
    name: str = ""
    trigger_keywords: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("triggerKeywords", "trigger_keywords", "trigger_word", "triggerWord"),
    )
    is_active: bool = Field(default=True, validation_alias=AliasChoices("isActive", "is_active"))
    is_default: bool = Field(default=False, validation_alias=AliasChoices("isDefault", "is_default"))
    entry_node_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("entryNodeId", "entry_node_id")
    )
    nodes: List[Node] = Field(min_length=1)
    edges: List[Edge] = Field(default_factory=list)

    _node_index: Dict[str, Any] = PrivateAttr(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def normalize_editor_document(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "_id" in data and data["_id"] is not None:
            data["_id"] = str(data["_id"])
        nodes = []
        for raw in data.get("nodes") or []:
            if isinstance(raw, dict):
                raw = dict(raw)
                raw_type = raw.get("type")
                raw["type"] = NODE_TYPE_ALIASES.get(raw_type, raw_type)
                if raw.get("data") is None:
                    raw.pop("data", None)
            nodes.append(raw)
        data["nodes"] = nodes
        return data

    @field_validator("trigger_keywords", mode="before")
    @classmethod
    def split_trigger_keywords(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [kw.strip().lower() for kw in v.split(",") if kw.strip()]
        return [str(kw).strip().lower() for kw in v if str(kw).strip()]

    def model_post_init(self, __context: Any) -> None:
        self._node_index = {node.id: node for node in self.nodes}

    def resolve_node(self, node_id: Optional[str]) -> Node:
        node = self._node_index.get(node_id) if node_id else None
        if node is None:
            raise NodeNotFound(self.id, node_id)
        return node

    def has_node(self, node_id: Optional[str]) -> bool:
        return bool(node_id) and node_id in self._node_index

    def resolve_outgoing(self, node_id: str, handle: Optional[str] = None) -> List[Edge]:
        """Outgoing edges of a node, optionally restricted to one source handle."""
        edges = [e for e in self.edges if e.source_node_id == node_id]
        if handle is not None:
            edges = [e for e in edges if e.source_handle == handle]
        return edges

    def entry_node(self) -> Node:
        """
        The node a fresh execution starts at: the explicit entry node, else the
        first start node, else the first node without incoming edges, else the
        first node.
        """
        if self.entry_node_id and self.has_node(self.entry_node_id):
            return self.resolve_node(self.entry_node_id)
        for node in self.nodes:
            if node.type == "start":
                return node
        targets = {e.target_node_id for e in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node
        return self.nodes[0]
