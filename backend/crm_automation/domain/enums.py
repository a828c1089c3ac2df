"""Domain Enumerations - All status and type definitions"""
from enum import Enum


# ============================================================================
# Conditions
# ============================================================================

class ConditionLogic(str, Enum):
    """How a condition group combines its items"""
    AND = "AND"
    OR = "OR"


class ConditionOperator(str, Enum):
    """Fixed operator set for leaf conditions"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    REGEX = "regex"
    BEFORE = "before"
    AFTER = "after"
    WITHIN_DAYS = "within_days"
    BETWEEN = "between"


class ConditionDataType(str, Enum):
    """Coercion hint for condition values"""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"


# ============================================================================
# Triggers
# ============================================================================

class TriggerStatus(str, Enum):
    """Trigger lifecycle: draft -> active <-> paused"""
    ACTIVE = "active"
    PAUSED = "paused"
    DRAFT = "draft"


class EventSource(str, Enum):
    """Where an inbound event originated"""
    WEBHOOK = "webhook"
    WHATSAPP = "whatsapp"
    WHATSAPP_MESSAGE = "whatsapp_message"
    WHATSAPP_STATUS = "whatsapp_status"
    FACEBOOK = "facebook"
    FACEBOOK_LEAD = "facebook_lead"
    CRM = "crm"
    CRM_UPDATE = "crm_update"
    CONTACT_CREATED = "contact_created"
    CONTACT_UPDATED = "contact_updated"
    TAG_ADDED = "tag_added"
    SEGMENT_JOINED = "segment_joined"
    FLOW_COMPLETED = "flow_completed"
    CAMPAIGN_EVENT = "campaign_event"
    API = "api"
    API_EVENT = "api_event"
    SYSTEM = "system"
    SCHEDULED = "scheduled"


class ActionType(str, Enum):
    """Trigger action types"""
    SEND_WHATSAPP = "send_whatsapp"
    SEND_TEMPLATE = "send_template"
    ASSIGN_GROUP = "assign_group"
    UPDATE_CRM = "update_crm"
    API_CALL = "api_call"
    INTERNAL_ALERT = "internal_alert"
    START_FLOW = "start_flow"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_SCORE = "update_score"
    SEND_EMAIL = "send_email"
    DELAY = "delay"


class ExecutionStatus(str, Enum):
    """Trigger execution status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class ActionResultStatus(str, Enum):
    """Outcome of a single action"""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class EventStatus(str, Enum):
    """Real-time event processing status"""
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


# ============================================================================
# Flows
# ============================================================================

class FlowStatus(str, Enum):
    """Flow definition status"""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class NodeType(str, Enum):
    """Flow node types"""
    START = "start"
    MESSAGE = "message"
    TEMPLATE = "template"
    DELAY = "delay"
    CONDITION = "condition"
    SPLIT = "split"
    MERGE = "merge"
    API_CALL = "api_call"
    WEBHOOK = "webhook"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_PROPERTY = "update_property"
    UPDATE_SCORE = "update_score"
    ASSIGN_AGENT = "assign_agent"
    ASSIGN_GROUP = "assign_group"
    AI_RESPONSE = "ai_response"
    WAIT_FOR_REPLY = "wait_for_reply"
    GOTO = "goto"
    END = "end"


class InstanceStatus(str, Enum):
    """Flow instance status"""
    RUNNING = "running"
    PAUSED = "paused"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EntryType(str, Enum):
    """How a flow instance was started"""
    MANUAL = "manual"
    TRIGGER = "trigger"
    SCHEDULED = "scheduled"
    API = "api"


class NodeHistoryStatus(str, Enum):
    """Status of a node history entry"""
    ENTERED = "entered"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class WaitKind(str, Enum):
    """What a suspended instance is waiting for"""
    DELAY = "delay"
    REPLY = "reply"


# ============================================================================
# Drip campaigns
# ============================================================================

class CampaignStatus(str, Enum):
    """Drip campaign status"""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class DripMessageType(str, Enum):
    """Kind of message a drip step sends"""
    TEMPLATE = "template"
    TEXT = "text"
    MEDIA = "media"
    INTERACTIVE = "interactive"


class StepStatus(str, Enum):
    """Whether a drip step is sent or skipped"""
    ACTIVE = "active"
    PAUSED = "paused"


class RunStatus(str, Enum):
    """Drip run status"""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"


class StepHistoryStatus(str, Enum):
    """Per-step delivery status"""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    REPLIED = "replied"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExitReason(str, Enum):
    """Why a drip run left its campaign"""
    COMPLETED = "completed"
    REPLIED = "replied"
    CONVERTED = "converted"
    UNSUBSCRIBED = "unsubscribed"
    MANUAL = "manual"
    ERROR = "error"
    CAMPAIGN_ENDED = "campaign_ended"


class TargetType(str, Enum):
    """How a campaign selects its audience"""
    SEGMENT = "segment"
    TAG = "tag"
    MANUAL = "manual"
    TRIGGER = "trigger"
    IMPORTED = "imported"
