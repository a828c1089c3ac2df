"""Domain Models - Pydantic schemas for all entities"""
import re
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional, Type, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    AfterValidator, BaseModel, ConfigDict, Discriminator, Field, Tag,
    field_validator, model_validator,
)

from .enums import (
    ConditionLogic, ConditionOperator, ConditionDataType, TriggerStatus, EventSource,
    ActionType, ExecutionStatus, ActionResultStatus, EventStatus, FlowStatus, NodeType,
    InstanceStatus, EntryType, NodeHistoryStatus, WaitKind, CampaignStatus, DripMessageType,
    StepStatus, RunStatus, StepHistoryStatus, ExitReason, TargetType,
)
from ..utils.idgen import generate_action_id, generate_step_id
from ..utils.time import ensure_utc


# MongoDB hands datetimes back naive; every model timestamp is UTC-aware
UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _validate_hhmm(value: str) -> str:
    if not _HHMM.match(value):
        raise ValueError(f"Expected HH:MM (24h), got {value!r}")
    return value


ClockTime = Annotated[str, AfterValidator(_validate_hhmm)]


# ============================================================================
# Conditions
# ============================================================================

class Condition(BaseModel):
    """Leaf condition: field-operator-value"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    field: str = Field(..., min_length=1, description="Dotted path into the record")
    operator: ConditionOperator
    value: Any = None
    data_type: Optional[ConditionDataType] = Field(None, alias="dataType")


_GROUP_KEYS = ("logic", "items", "conditions", "rules")


def _condition_item_kind(value: Any) -> str:
    if isinstance(value, ConditionGroup):
        return "group"
    if isinstance(value, dict) and "field" not in value and any(k in value for k in _GROUP_KEYS):
        return "group"
    return "condition"


ConditionItem = Annotated[
    Union[
        Annotated[Condition, Tag("condition")],
        Annotated["ConditionGroup", Tag("group")],
    ],
    Discriminator(_condition_item_kind),
]


class ConditionGroup(BaseModel):
    """
    Recursive AND/OR tree of conditions

    Accepts the item list under ``items``, ``conditions`` (trigger rule shape)
    or ``rules`` (segment rule shape).
    """
    model_config = ConfigDict(extra="ignore")

    logic: ConditionLogic = ConditionLogic.AND
    items: List[ConditionItem] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "items" not in data:
            for key in ("conditions", "rules"):
                if key in data:
                    data["items"] = data.pop(key)
                    break
        logic = data.get("logic")
        if isinstance(logic, str):
            data["logic"] = logic.upper()
        return data

    @property
    def is_empty(self) -> bool:
        return not self.items


ConditionGroup.model_rebuild()


# ============================================================================
# Trigger action configs
# ============================================================================

class ActionConfig(BaseModel):
    """Base for per-type action configs; unknown provider keys are kept"""
    model_config = ConfigDict(extra="allow")


class SendWhatsAppConfig(ActionConfig):
    message: str = Field(..., min_length=1)
    to: Optional[str] = None
    media_url: Optional[str] = None


class SendTemplateConfig(ActionConfig):
    template_name: str = Field(..., min_length=1)
    language: str = "en"
    variables: Dict[str, Any] = Field(default_factory=dict)


class AssignGroupConfig(ActionConfig):
    group_id: str = Field(..., min_length=1)


class UpdateCrmConfig(ActionConfig):
    field: str = Field(..., min_length=1)
    value: Any = None


class ApiCallConfig(ActionConfig):
    url: str = Field(..., min_length=1)
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    store_as: Optional[str] = None


class InternalAlertConfig(ActionConfig):
    alert_type: str = "info"
    message: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)


class StartFlowConfig(ActionConfig):
    flow_id: str = Field(..., min_length=1)
    variables: Dict[str, Any] = Field(default_factory=dict)


class TagConfig(ActionConfig):
    tag: str = Field(..., min_length=1)


class UpdateScoreConfig(ActionConfig):
    score_change: float


class SendEmailConfig(ActionConfig):
    to: str = Field(..., min_length=1)
    subject: Optional[str] = None
    body: Optional[str] = None


class DelayConfig(ActionConfig):
    delay_ms: int = Field(default=1000, ge=0)


ACTION_CONFIG_MODELS: Dict[ActionType, Type[ActionConfig]] = {
    ActionType.SEND_WHATSAPP: SendWhatsAppConfig,
    ActionType.SEND_TEMPLATE: SendTemplateConfig,
    ActionType.ASSIGN_GROUP: AssignGroupConfig,
    ActionType.UPDATE_CRM: UpdateCrmConfig,
    ActionType.API_CALL: ApiCallConfig,
    ActionType.INTERNAL_ALERT: InternalAlertConfig,
    ActionType.START_FLOW: StartFlowConfig,
    ActionType.ADD_TAG: TagConfig,
    ActionType.REMOVE_TAG: TagConfig,
    ActionType.UPDATE_SCORE: UpdateScoreConfig,
    ActionType.SEND_EMAIL: SendEmailConfig,
    ActionType.DELAY: DelayConfig,
}


# ============================================================================
# Triggers
# ============================================================================

class TriggerAction(BaseModel):
    """One step of a trigger's action pipeline"""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=generate_action_id)
    type: ActionType
    config: Dict[str, Any] = Field(default_factory=dict)
    order: int = 0

    @model_validator(mode="after")
    def _validate_config(self) -> "TriggerAction":
        self.config = self.typed_config().model_dump(exclude_none=True)
        return self

    def typed_config(self) -> ActionConfig:
        """Config parsed into the variant for this action type"""
        return ACTION_CONFIG_MODELS[self.type].model_validate(self.config)


class TriggerSchedule(BaseModel):
    """Declarative schedule window, enforced by the ingestion boundary"""
    enabled: bool = False
    timezone: str = "UTC"
    days_of_week: Optional[List[int]] = None
    start_time: Optional[ClockTime] = None
    end_time: Optional[ClockTime] = None
    blackout_dates: List[UTCDateTime] = Field(default_factory=list)


class TriggerThrottle(BaseModel):
    """Declarative throttle policy, enforced by the ingestion boundary"""
    enabled: bool = False
    max_executions: int = Field(default=100, ge=1)
    window_seconds: int = Field(default=3600, ge=1)
    per_contact: bool = False


class Trigger(BaseModel):
    """Standing rule matching inbound events to an ordered action pipeline"""
    model_config = ConfigDict(extra="ignore")

    trigger_id: str = Field(..., description="Unique trigger ID")
    user_id: str
    name: str
    description: Optional[str] = None
    status: TriggerStatus = Field(default=TriggerStatus.DRAFT)
    event_source: EventSource
    event_type: Optional[str] = None
    condition_group: ConditionGroup = Field(default_factory=ConditionGroup)
    actions: List[TriggerAction] = Field(default_factory=list)
    schedule: Optional[TriggerSchedule] = None
    throttle: Optional[TriggerThrottle] = None
    priority: int = 0
    tags: List[str] = Field(default_factory=list)
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_executed_at: Optional[UTCDateTime] = None
    created_at: UTCDateTime
    updated_at: UTCDateTime

    def sorted_actions(self) -> List[TriggerAction]:
        """Actions in ascending order; ties keep authoring order"""
        return sorted(self.actions, key=lambda a: a.order)


class ActionResult(BaseModel):
    """Outcome of one action within an execution"""
    action_id: str
    action_type: ActionType
    status: ActionResultStatus
    result: Optional[Any] = None
    error: Optional[str] = None
    executed_at: UTCDateTime
    duration_ms: int = 0


class TriggerExecution(BaseModel):
    """One matched event for one trigger"""
    model_config = ConfigDict(extra="ignore")

    execution_id: str
    trigger_id: str
    user_id: str
    event_id: str
    event_source: str
    event_data: Dict[str, Any] = Field(default_factory=dict)
    contact_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: UTCDateTime
    completed_at: Optional[UTCDateTime] = None
    action_results: List[ActionResult] = Field(default_factory=list)
    error: Optional[str] = None


class InboundEvent(BaseModel):
    """Event as handed to the trigger engine by the ingestion boundary"""
    model_config = ConfigDict(extra="ignore")

    source_type: EventSource
    event_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    contact_id: Optional[str] = None
    source_id: Optional[str] = None


class RealTimeEvent(BaseModel):
    """Normalized inbound event, append-only audit record"""
    model_config = ConfigDict(extra="ignore")

    event_id: str
    user_id: str
    source_type: EventSource
    source_id: Optional[str] = None
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    normalized_data: Dict[str, Any] = Field(default_factory=dict)
    contact_id: Optional[str] = None
    received_at: UTCDateTime
    processed_at: Optional[UTCDateTime] = None
    trigger_matches: List[str] = Field(default_factory=list)
    status: EventStatus = EventStatus.RECEIVED
    error: Optional[str] = None


# ============================================================================
# Flows
# ============================================================================

class NodePosition(BaseModel):
    x: float = 0
    y: float = 0


class NodeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    label: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)


class FlowNode(BaseModel):
    """Typed node of a flow graph"""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: NodeType
    position: NodePosition = Field(default_factory=NodePosition)
    data: NodeData = Field(default_factory=NodeData)

    @property
    def label(self) -> str:
        return self.data.label or self.id

    @property
    def config(self) -> Dict[str, Any]:
        return self.data.config


class FlowEdge(BaseModel):
    """Directed edge; source_handle selects condition/reply branches"""
    model_config = ConfigDict(extra="ignore")

    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    condition: Optional[Condition] = None


class FlowVariable(BaseModel):
    """Declared flow variable with an optional default"""
    key: str
    type: str = "string"
    default_value: Any = None
    source: Optional[str] = None
    description: Optional[str] = None


class FlowEntryPoint(BaseModel):
    type: EntryType
    trigger_id: Optional[str] = None
    schedule: Optional[Dict[str, Any]] = None


class FlowSettings(BaseModel):
    """Per-flow execution policy"""
    allow_multiple_instances: bool = True
    max_concurrent_instances: int = Field(default=100, ge=1)
    timeout_ms: int = Field(default=86400000, ge=0)
    retry_on_failure: bool = False
    max_retries: int = Field(default=3, ge=0)


class FlowGraph(BaseModel):
    """Nodes and edges plus lookup helpers shared by drafts and snapshots"""
    model_config = ConfigDict(extra="ignore")

    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[FlowEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def nodes_of_type(self, node_type: NodeType) -> List[FlowNode]:
        return [node for node in self.nodes if node.type == node_type]

    def start_node(self) -> Optional[FlowNode]:
        starts = self.nodes_of_type(NodeType.START)
        return starts[0] if starts else None


class FlowDefinition(FlowGraph):
    """Authored flow graph plus lifecycle counters"""

    flow_id: str = Field(..., description="Unique flow ID")
    user_id: str
    name: str
    description: Optional[str] = None
    version: int = Field(default=1, description="Incremented on every publish")
    status: FlowStatus = Field(default=FlowStatus.DRAFT)
    variables: List[FlowVariable] = Field(default_factory=list)
    entry_points: List[FlowEntryPoint] = Field(default_factory=list)
    settings: FlowSettings = Field(default_factory=FlowSettings)
    tags: List[str] = Field(default_factory=list)
    published_at: Optional[UTCDateTime] = None
    total_instances: int = 0
    active_instances: int = 0
    completed_instances: int = 0
    failed_instances: int = 0
    created_at: UTCDateTime
    updated_at: UTCDateTime


class FlowVersion(FlowGraph):
    """Immutable snapshot taken at publish; instances walk this, never the draft"""

    version_id: str
    flow_id: str
    user_id: str
    version: int
    variables: List[FlowVariable] = Field(default_factory=list)
    settings: FlowSettings = Field(default_factory=FlowSettings)
    published_at: UTCDateTime


class NodeHistoryEntry(BaseModel):
    node_id: str
    node_type: NodeType
    entered_at: UTCDateTime
    exited_at: Optional[UTCDateTime] = None
    status: NodeHistoryStatus
    result: Optional[Any] = None
    error: Optional[str] = None


class FlowInstance(BaseModel):
    """One walk of a published flow version"""
    model_config = ConfigDict(extra="ignore")

    instance_id: str
    flow_id: str
    flow_version: int
    user_id: str
    contact_id: Optional[str] = None
    status: InstanceStatus = InstanceStatus.RUNNING
    current_node_id: str
    context: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    entry_type: EntryType = EntryType.MANUAL
    trigger_id: Optional[str] = None
    node_history: List[NodeHistoryEntry] = Field(default_factory=list)
    started_at: UTCDateTime
    completed_at: Optional[UTCDateTime] = None
    waiting_until: Optional[UTCDateTime] = None
    waiting_for: Optional[WaitKind] = None
    error: Optional[str] = None
    retry_count: int = 0


# ============================================================================
# Drip campaigns
# ============================================================================

class DripButton(BaseModel):
    type: str = Field(default="quick_reply", pattern="^(quick_reply|url|call)$")
    text: str
    value: Optional[str] = None


class DripStep(BaseModel):
    """One time-offset message of a campaign"""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=generate_step_id)
    order: int = 0
    name: str = ""
    day_offset: int = Field(default=0, ge=0)
    time_of_day: Optional[ClockTime] = Field(None, description="HH:MM in the campaign timezone")
    message_type: DripMessageType = DripMessageType.TEXT
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    template_variables: Dict[str, Any] = Field(default_factory=dict)
    text_content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = Field(None, pattern="^(image|video|document|audio)$")
    buttons: List[DripButton] = Field(default_factory=list)
    conditions: Optional[ConditionGroup] = None
    skip_if_replied: bool = False
    skip_if_converted: bool = False
    status: StepStatus = StepStatus.ACTIVE


class DripSchedule(BaseModel):
    days_of_week: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    start_time: ClockTime = "09:00"
    end_time: ClockTime = "18:00"


class DripSettings(BaseModel):
    allow_re_entry: bool = False
    re_entry_delay_days: int = Field(default=30, ge=0)
    stop_on_reply: bool = False
    stop_on_conversion: bool = True
    max_contacts_per_day: int = Field(default=1000, ge=1)


class DripMetrics(BaseModel):
    total_enrolled: int = 0
    active_contacts: int = 0
    completed_contacts: int = 0
    exited_contacts: int = 0
    total_sent: int = 0
    total_delivered: int = 0
    total_read: int = 0
    total_replied: int = 0
    total_converted: int = 0
    total_failed: int = 0


class DripCampaign(BaseModel):
    """Linear, time-offset message sequence"""
    model_config = ConfigDict(extra="ignore")

    campaign_id: str = Field(..., description="Unique campaign ID")
    user_id: str
    name: str
    description: Optional[str] = None
    status: CampaignStatus = Field(default=CampaignStatus.DRAFT)
    steps: List[DripStep] = Field(default_factory=list)
    target_type: TargetType = TargetType.MANUAL
    target_segment_ids: List[str] = Field(default_factory=list)
    target_tags: List[str] = Field(default_factory=list)
    timezone: str = "UTC"
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    schedule: DripSchedule = Field(default_factory=DripSchedule)
    settings: DripSettings = Field(default_factory=DripSettings)
    metrics: DripMetrics = Field(default_factory=DripMetrics)
    tags: List[str] = Field(default_factory=list)
    created_at: UTCDateTime
    updated_at: UTCDateTime

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value

    def ordered_steps(self) -> List[DripStep]:
        return sorted(self.steps, key=lambda s: s.order)


class StepHistoryEntry(BaseModel):
    step_id: str
    step_order: int
    status: StepHistoryStatus
    message_id: Optional[str] = None
    scheduled_at: Optional[UTCDateTime] = None
    sent_at: Optional[UTCDateTime] = None
    delivered_at: Optional[UTCDateTime] = None
    read_at: Optional[UTCDateTime] = None
    replied_at: Optional[UTCDateTime] = None
    error: Optional[str] = None


class DripRun(BaseModel):
    """One contact's enrollment in a campaign"""
    model_config = ConfigDict(extra="ignore")

    run_id: str
    campaign_id: str
    user_id: str
    contact_id: str
    contact_phone: str = ""
    status: RunStatus = RunStatus.ACTIVE
    current_step_index: int = 0
    enrolled_at: UTCDateTime
    completed_at: Optional[UTCDateTime] = None
    exited_at: Optional[UTCDateTime] = None
    exit_reason: Optional[ExitReason] = None
    step_history: List[StepHistoryEntry] = Field(default_factory=list)
    next_step_scheduled_at: Optional[UTCDateTime] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    entry_count: int = 1
    replied: bool = False
    converted: bool = False
    locked_until: Optional[UTCDateTime] = None
    locked_by: Optional[str] = None


# ============================================================================
# Collaborator payloads
# ============================================================================

class SendResult(BaseModel):
    """What a message sender reports back"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
