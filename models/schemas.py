"""
Core data models for the WAFlow system.
These are the universal types shared across all modules.

Every model accepts the dashboard's camelCase JSON (``triggerType``,
``sourceHandle``, ``webhookUrl`` …) as well as the snake_case field names.
Flow nodes are a tagged union keyed by ``type``; each variant carries its own
typed config so malformed nodes are rejected when the flow is loaded, not
halfway through a conversation.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    DELAY = "delay"
    RESPONSE = "response"


class TriggerType(str, Enum):
    TEXT_EQUALS = "text_equals"
    TEXT_CONTAINS = "text_contains"
    TEXT_STARTS_WITH = "text_starts_with"
    TEXT_ENDS_WITH = "text_ends_with"
    TEXT_REGEX = "text_regex"
    ANY_MESSAGE = "any_message"
    MEDIA_RECEIVED = "media_received"


# Short spellings used by older flow definitions
_TRIGGER_ALIASES = {
    "equals": TriggerType.TEXT_EQUALS.value,
    "contains": TriggerType.TEXT_CONTAINS.value,
    "starts_with": TriggerType.TEXT_STARTS_WITH.value,
    "ends_with": TriggerType.TEXT_ENDS_WITH.value,
    "regex": TriggerType.TEXT_REGEX.value,
}


class ActionType(str, Enum):
    SEND_MESSAGE = "send_message"
    SEND_IMAGE = "send_image"
    SEND_DOCUMENT = "send_document"
    SET_VARIABLE = "set_variable"
    WEBHOOK = "webhook"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class ResponseType(str, Enum):
    ANY = "any"
    CHOICE = "choice"
    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"
    PHONE = "phone"
    MEDIA = "media"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ERROR = "error"
    TIMEOUT = "timeout"


class MessageDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageStatus(str, Enum):
    RECEIVED = "received"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InstanceStatus(str, Enum):
    NOT_INITIALIZED = "not_initialized"
    CREATED = "created"
    INITIALIZING = "initializing"
    QR_READY = "qr_ready"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failed"


class FetchLogAction(str, Enum):
    SCHEDULED_SYNC = "scheduled_sync"
    MANUAL_SYNC = "manual_sync"
    CONFIG_UPDATE = "config_update"
    ERROR_RETRY = "error_retry"


class FetchLogStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    CLOSED = "closed"


# ──────────────────────────────────────────────────────────────
#  Node configs: one typed payload per node type
# ──────────────────────────────────────────────────────────────

class TriggerConfig(_CamelModel):
    trigger_type: TriggerType
    text: str = ""
    pattern: str = ""
    flags: str = "i"
    media_type: Optional[str] = None

    @field_validator("trigger_type", mode="before")
    @classmethod
    def _expand_short_names(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _TRIGGER_ALIASES.get(v, v)
        return v

    @model_validator(mode="after")
    def _regex_needs_pattern(self) -> "TriggerConfig":
        if self.trigger_type == TriggerType.TEXT_REGEX and not self.pattern:
            raise ValueError("text_regex trigger requires a pattern")
        return self


class ActionConfig(_CamelModel):
    action_type: ActionType
    message: str = ""
    image_url: str = ""
    document_url: str = ""
    caption: str = ""
    variable_name: str = ""
    value: Any = ""
    webhook_url: str = ""
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _required_fields(self) -> "ActionConfig":
        required = {
            ActionType.SEND_MESSAGE: "message",
            ActionType.SEND_IMAGE: "image_url",
            ActionType.SEND_DOCUMENT: "document_url",
            ActionType.SET_VARIABLE: "variable_name",
            ActionType.WEBHOOK: "webhook_url",
        }[self.action_type]
        if not getattr(self, required):
            raise ValueError(f"{self.action_type.value} action requires {required}")
        self.method = self.method.upper()
        return self


class ConditionConfig(_CamelModel):
    variable: str
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = ""


class DelayConfig(_CamelModel):
    duration: float = Field(default=1, ge=0)    # seconds


class ResponseChoice(_CamelModel):
    value: str
    label: str = ""
    target_node_id: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        return str(v) if isinstance(v, (int, float)) else v


class ResponseValidation(_CamelModel):
    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    required: bool = True


class ResponseTimeout(_CamelModel):
    minutes: int = 30
    timeout_node_id: Optional[str] = None


class ResponseConfig(_CamelModel):
    message: str = ""
    response_type: ResponseType = ResponseType.ANY
    choices: list[ResponseChoice] = Field(default_factory=list)
    validation: ResponseValidation = Field(default_factory=ResponseValidation)
    timeout: Optional[ResponseTimeout] = None

    @model_validator(mode="after")
    def _choices_present(self) -> "ResponseConfig":
        if self.response_type == ResponseType.CHOICE and not self.choices:
            raise ValueError("choice response requires at least one choice")
        return self


# ──────────────────────────────────────────────────────────────
#  Flow graph
# ──────────────────────────────────────────────────────────────

ConfigT = TypeVar("ConfigT")


class NodePosition(BaseModel):
    """Editor canvas coordinates. Ignored by the engine."""
    x: float = 0
    y: float = 0


class NodeData(_CamelModel, Generic[ConfigT]):
    label: str = ""
    config: ConfigT


class _NodeBase(_CamelModel):
    id: str
    position: NodePosition = Field(default_factory=NodePosition)

    @property
    def config(self) -> Any:
        return self.data.config


class TriggerNode(_NodeBase):
    type: Literal["trigger"] = "trigger"
    data: NodeData[TriggerConfig]


class ActionNode(_NodeBase):
    type: Literal["action"] = "action"
    data: NodeData[ActionConfig]


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    data: NodeData[ConditionConfig]


class DelayNode(_NodeBase):
    type: Literal["delay"] = "delay"
    data: NodeData[DelayConfig] = Field(
        default_factory=lambda: NodeData[DelayConfig](config=DelayConfig())
    )


class ResponseNode(_NodeBase):
    type: Literal["response"] = "response"
    data: NodeData[ResponseConfig]


FlowNode = Annotated[
    Union[TriggerNode, ActionNode, ConditionNode, DelayNode, ResponseNode],
    Field(discriminator="type"),
]


class FlowEdge(_CamelModel):
    id: str = Field(default_factory=new_id)
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


class Flow(_CamelModel):
    """
    An automated reply flow owned by one (tenant, instance).

    Read-only to the engine apart from the trigger statistics.
    """
    id: str = Field(default_factory=new_id)
    tenant_id: str
    instance_id: str
    name: str
    description: str = ""
    is_active: bool = True
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    trigger_count: int = 0
    last_triggered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_graph(self) -> "Flow":
        errors = self.graph_errors()
        if errors:
            raise ValueError("; ".join(errors))
        return self

    def graph_errors(self) -> list[str]:
        """Return structural problems in the node/edge graph."""
        errors = []
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"duplicate node id '{node.id}'")
            seen.add(node.id)
        for edge in self.edges:
            if edge.source not in seen:
                errors.append(f"edge '{edge.id}' source '{edge.source}' is not a node")
            if edge.target not in seen:
                errors.append(f"edge '{edge.id}' target '{edge.target}' is not a node")
        return errors

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if not node_id:
            return None
        return next((n for n in self.nodes if n.id == node_id), None)

    def outgoing_edges(self, node_id: str) -> list[FlowEdge]:
        """Edges leaving ``node_id``, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def trigger_nodes(self) -> list[TriggerNode]:
        return [n for n in self.nodes if n.type == NodeType.TRIGGER.value]


# ──────────────────────────────────────────────────────────────
#  Conversation session: a paused flow waiting for a reply
# ──────────────────────────────────────────────────────────────

class ExpectedResponse(_CamelModel):
    type: ResponseType = ResponseType.ANY
    choices: list[ResponseChoice] = Field(default_factory=list)
    validation: ResponseValidation = Field(default_factory=ResponseValidation)
    timeout: ResponseTimeout = Field(default_factory=ResponseTimeout)


class ConversationSession(_CamelModel):
    """
    One per (tenant, instance, contact) while active.

    The store refuses to create a second active session for the same key.
    """
    id: str = Field(default_factory=new_id)
    flow_id: str
    tenant_id: str
    instance_id: str
    contact_number: str
    contact_name: str = ""
    current_node_id: Optional[str] = None
    is_active: bool = True
    is_waiting_for_response: bool = False
    variables: dict[str, Any] = Field(default_factory=dict)
    expected_response: ExpectedResponse = Field(default_factory=ExpectedResponse)
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    message_count: int = 0
    response_count: int = 0
    retry_count: int = 0
    last_error: Optional[str] = None

    @property
    def contact_key(self) -> tuple[str, str, str]:
        return (self.tenant_id, self.instance_id, self.contact_number)

    def is_timed_out(self, now: datetime) -> bool:
        if not (self.is_active and self.is_waiting_for_response):
            return False
        limit = timedelta(minutes=self.expected_response.timeout.minutes)
        return now - self.last_activity_at >= limit


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class InboundMessage(_CamelModel):
    """Channel-neutral inbound message as consumed by the flow engine."""
    id: str
    from_number: str = Field(alias="from")
    to: str = ""
    body: str = ""
    type: str = "text"                        # text | image | document | audio | video | …
    has_media: bool = False
    media_url: str = ""
    mime_type: str = ""
    is_group: bool = False
    contact_name: str = ""
    push_name: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class MessageContent(_CamelModel):
    text: str = ""
    caption: str = ""
    media_url: str = ""
    file_name: str = ""
    mime_type: str = ""
    file_size: int = 0


class MessageRecord(_CamelModel):
    """A stored inbound, outbound or scheduled WhatsApp message."""
    id: str = Field(default_factory=new_id)
    message_id: Optional[str] = None          # channel message id, unique once known
    tenant_id: str
    instance_id: str
    direction: MessageDirection
    from_number: str = Field(default="", alias="from")
    to: str = ""
    type: str = "text"
    content: MessageContent = Field(default_factory=MessageContent)
    is_group: bool = False
    group_id: Optional[str] = None
    contact_name: str = ""
    status: MessageStatus = MessageStatus.SENT
    due_at: Optional[datetime] = None         # scheduled send time
    claimed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    attempts: int = 0
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  WhatsApp instances
# ──────────────────────────────────────────────────────────────

class WhatsAppInstance(_CamelModel):
    instance_id: str
    tenant_id: str
    name: str = ""
    phone_number: str = ""
    status: InstanceStatus = InstanceStatus.CREATED
    is_active: bool = False
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    messages_sent: int = 0
    last_error: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  IndiaMART lead ingestion
# ──────────────────────────────────────────────────────────────

class LeadSourceConfig(_CamelModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    crm_key: str
    is_active: bool = True
    fetch_interval_minutes: int = Field(default=15, ge=1)
    overlap_minutes: int = Field(default=5, ge=0)
    last_fetch_time: Optional[datetime] = None
    next_fetch_time: Optional[datetime] = None
    total_leads_fetched: int = 0
    total_api_calls: int = 0
    last_api_call_status: Optional[str] = None
    last_api_call_error: Optional[str] = None
    auto_fetch: bool = True
    retry_failed_calls: bool = True
    max_retries: int = 3

    @property
    def masked_key(self) -> str:
        return f"****{self.crm_key[-4:]}" if self.crm_key else ""


class Lead(_CamelModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    unique_query_id: str
    query_type: str = ""
    query_time: str = ""
    query_message: str = ""
    sender_name: str = ""
    sender_mobile: str = ""
    sender_email: str = ""
    sender_company: str = ""
    sender_address: str = ""
    sender_city: str = ""
    sender_state: str = ""
    sender_pincode: str = ""
    sender_country_iso: str = ""
    sender_mobile_alt: str = ""
    sender_email_alt: str = ""
    subject: str = ""
    product_name: str = ""
    call_duration: str = ""
    receiver_mobile: str = ""
    status: LeadStatus = LeadStatus.NEW
    raw: dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=utcnow)


class LeadFetchLog(_CamelModel):
    """Durable record of one lead-fetch run, including failed ones."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    action: FetchLogAction = FetchLogAction.SCHEDULED_SYNC
    status: FetchLogStatus = FetchLogStatus.PENDING
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    records_pulled: int = 0
    records_processed: int = 0
    records_skipped: int = 0
    records_errors: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0
    parent_log_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    api_response: Any = None
