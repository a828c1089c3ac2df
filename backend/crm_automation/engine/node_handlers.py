"""Node Handlers - Per-node-type behaviour for flow walks"""
import hashlib
import re
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .collaborators import ActionExecutor, MessageSender
from .condition_evaluator import ConditionEvaluator, resolve_field
from ..domain.models import FlowInstance, FlowNode, FlowVersion
from ..domain.enums import NodeType, WaitKind
from ..domain.errors import ActionFailure, UnsupportedActionError
from ..utils.logger import get_logger

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")

DEFAULT_DELAY_MS = 1000
DEFAULT_REPLY_TIMEOUT_MINUTES = 60

# Node types whose side effect belongs to the action executor
_EXECUTOR_NODES = {
    NodeType.API_CALL,
    NodeType.WEBHOOK,
    NodeType.ADD_TAG,
    NodeType.REMOVE_TAG,
    NodeType.UPDATE_SCORE,
    NodeType.ASSIGN_AGENT,
    NodeType.ASSIGN_GROUP,
    NodeType.AI_RESPONSE,
}


class NodeResult(BaseModel):
    """Outcome of running one node"""
    output: Any = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    branch: Optional[str] = None
    next_node_id: Optional[str] = None
    wait_for: Optional[WaitKind] = None
    wait_until: Optional[datetime] = None

    @property
    def suspends(self) -> bool:
        return self.wait_for is not None


def interpolate(template: Any, values: Dict[str, Any]) -> Any:
    """
    Replace {{path}} placeholders with values from the instance

    Non-string templates are returned untouched; dicts and lists are
    interpolated recursively. Unknown placeholders render as "".
    """
    if isinstance(template, str):
        def replace(match: re.Match) -> str:
            value = resolve_field(values, match.group(1))
            return "" if value is None else str(value)
        return _PLACEHOLDER.sub(replace, template)
    if isinstance(template, dict):
        return {key: interpolate(value, values) for key, value in template.items()}
    if isinstance(template, list):
        return [interpolate(item, values) for item in template]
    return template


def instance_values(instance: FlowInstance) -> Dict[str, Any]:
    """Variables merged over the entry context"""
    return {**instance.context, **instance.variables}


class NodeExecutor:
    """Dispatches a flow node to the handler for its type"""

    def __init__(
        self,
        message_sender: Optional[MessageSender] = None,
        action_executor: Optional[ActionExecutor] = None,
        evaluator: Optional[ConditionEvaluator] = None
    ):
        self.message_sender = message_sender
        self.action_executor = action_executor
        self.evaluator = evaluator or ConditionEvaluator()
        self._handlers: Dict[NodeType, Callable[..., Awaitable[NodeResult]]] = {
            NodeType.MESSAGE: self._send_message,
            NodeType.TEMPLATE: self._send_template,
            NodeType.DELAY: self._delay,
            NodeType.WAIT_FOR_REPLY: self._wait_for_reply,
            NodeType.CONDITION: self._condition,
            NodeType.SPLIT: self._split,
            NodeType.UPDATE_PROPERTY: self._update_property,
            NodeType.GOTO: self._goto,
        }
        for node_type in _EXECUTOR_NODES:
            self._handlers[node_type] = self._call_executor

    async def execute(
        self,
        node: FlowNode,
        instance: FlowInstance,
        version: FlowVersion,
        now: datetime
    ) -> NodeResult:
        """Run a node; raises on failure so the walk can record it"""
        handler = self._handlers.get(node.type)
        if handler is None:
            # start, merge, end and anything unrecognised pass straight through
            return NodeResult(output={"executed": True})
        return await handler(node, instance, version, now)

    # =========================================================================
    # Messaging
    # =========================================================================

    async def _send_message(self, node: FlowNode, instance: FlowInstance, version: FlowVersion, now: datetime) -> NodeResult:
        values = instance_values(instance)
        text = interpolate(node.config.get("message") or node.config.get("text") or "", values)
        if not text:
            raise ActionFailure(f"Message node {node.id} has no content")
        result = await self._send(instance, {"type": "text", "text": text, "media_url": node.config.get("media_url")})
        return NodeResult(output={"message_sent": True, "message_id": result.message_id, "content": text})

    async def _send_template(self, node: FlowNode, instance: FlowInstance, version: FlowVersion, now: datetime) -> NodeResult:
        template_name = node.config.get("template_name") or node.config.get("template_id")
        if not template_name:
            raise ActionFailure(f"Template node {node.id} has no template")
        content = {
            "type": "template",
            "template_name": template_name,
            "language": node.config.get("language", "en"),
            "variables": interpolate(node.config.get("variables", {}), instance_values(instance)),
        }
        result = await self._send(instance, content)
        return NodeResult(output={"template_sent": True, "message_id": result.message_id, "template_name": template_name})

    async def _send(self, instance: FlowInstance, content: Dict[str, Any]):
        if self.message_sender is None:
            raise UnsupportedActionError("No message sender configured")
        values = instance_values(instance)
        contact = {
            "contact_id": instance.contact_id,
            "user_id": instance.user_id,
            "phone": values.get("phone") or values.get("contact_phone"),
        }
        result = await self.message_sender.send(contact, content)
        if not result.success:
            raise ActionFailure(result.error or "Message send failed")
        return result

    # =========================================================================
    # Suspension
    # =========================================================================

    async def _delay(self, node: FlowNode, instance: FlowInstance, version: FlowVersion, now: datetime) -> NodeResult:
        config = node.config
        if config.get("delay_minutes"):
            delay_ms = float(config["delay_minutes"]) * 60 * 1000
        else:
            delay_ms = float(config.get("delay_ms") or DEFAULT_DELAY_MS)
        wait_until = now + timedelta(milliseconds=delay_ms)
        return NodeResult(
            output={"delay_ms": int(delay_ms)},
            wait_for=WaitKind.DELAY,
            wait_until=wait_until,
        )

    async def _wait_for_reply(self, node: FlowNode, instance: FlowInstance, version: FlowVersion, now: datetime) -> NodeResult:
        timeout_minutes = float(node.config.get("timeout_minutes") or DEFAULT_REPLY_TIMEOUT_MINUTES)
        return NodeResult(
            output={"timeout_minutes": timeout_minutes},
            wait_for=WaitKind.REPLY,
            wait_until=now + timedelta(minutes=timeout_minutes),
        )

    # =========================================================================
    # Branching
    # =========================================================================

    async def _condition(self, node: FlowNode, instance: FlowInstance, version: FlowVersion, now: datetime) -> NodeResult:
        condition = node.config.get("condition") or node.config.get("condition_group")
        if not condition:
            raise ActionFailure(f"Condition node {node.id} has no condition")
        condition_met = self.evaluator.evaluate(condition, instance_values(instance), now)
        return NodeResult(
            output={"condition_met": condition_met},
            branch="true" if condition_met else "false",
        )

    async def _split(self, node: FlowNode, instance: FlowInstance, version: FlowVersion, now: datetime) -> NodeResult:
        """
        Weighted A/B split

        config.branches is a list of {handle, weight}; without it every
        outgoing edge gets equal weight. The pick is a hash of instance and
        node id, so a retried instance lands on the same branch.
        """
        branches: List[Dict[str, Any]] = node.config.get("branches") or [
            {"handle": edge.source_handle or edge.id, "weight": 1}
            for edge in version.outgoing_edges(node.id)
        ]
        total = sum(max(float(b.get("weight", 1)), 0) for b in branches)
        if not branches or total <= 0:
            raise ActionFailure(f"Split node {node.id} has no weighted branches")

        digest = hashlib.sha256(f"{instance.instance_id}:{node.id}".encode()).hexdigest()
        point = (int(digest[:12], 16) / float(16 ** 12)) * total
        cumulative = 0.0
        chosen = branches[-1]
        for branch in branches:
            cumulative += max(float(branch.get("weight", 1)), 0)
            if point < cumulative:
                chosen = branch
                break
        return NodeResult(output={"branch": chosen.get("handle")}, branch=chosen.get("handle"))

    async def _goto(self, node: FlowNode, instance: FlowInstance, version: FlowVersion, now: datetime) -> NodeResult:
        target = node.config.get("target_node_id")
        if not target or version.get_node(target) is None:
            raise ActionFailure(f"Goto node {node.id} targets unknown node {target}")
        return NodeResult(output={"target_node_id": target}, next_node_id=target)

    # =========================================================================
    # Side effects
    # =========================================================================

    async def _update_property(self, node: FlowNode, instance: FlowInstance, version: FlowVersion, now: datetime) -> NodeResult:
        prop = node.config.get("property") or node.config.get("field")
        if not prop:
            raise ActionFailure(f"Update property node {node.id} has no property")
        value = interpolate(node.config.get("value"), instance_values(instance))
        return NodeResult(output={"property_updated": prop, "value": value}, variables={prop: value})

    async def _call_executor(self, node: FlowNode, instance: FlowInstance, version: FlowVersion, now: datetime) -> NodeResult:
        if self.action_executor is None:
            raise UnsupportedActionError(f"No executor configured for node '{node.type.value}'")
        values = instance_values(instance)
        config = interpolate(dict(node.config), values)
        record = {
            **values,
            "contact_id": instance.contact_id,
            "flow_id": instance.flow_id,
            "instance_id": instance.instance_id,
        }
        output = await self.action_executor.execute(node.type.value, config, record)

        store_as = node.config.get("store_as")
        variables = {store_as: output} if store_as else {}
        logger.debug(
            f"Node {node.type.value} executed",
            extra={"instance_id": instance.instance_id, "node_id": node.id}
        )
        return NodeResult(output=output, variables=variables)
