"""Flow Engine - Walks contacts through published flow graphs"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .collaborators import ActionExecutor, Clock, MessageSender, SystemClock
from .condition_evaluator import ConditionEvaluator
from .node_handlers import NodeExecutor, NodeResult, instance_values
from .tasks import TaskSupervisor
from ..config.settings import settings
from ..domain.models import FlowInstance, FlowNode, FlowVersion, NodeHistoryEntry
from ..domain.enums import (
    EntryType, FlowStatus, InstanceStatus, NodeHistoryStatus, NodeType, WaitKind,
)
from ..domain.errors import (
    FlowInstanceNotFoundError, FlowNotFoundError, FlowValidationError,
    InstanceLimitError, InvalidStateError,
)
from ..repositories.flow_repo import FlowRepository, LIVE_STATUSES
from ..utils.idgen import generate_instance_id
from ..utils.logger import get_logger

logger = get_logger(__name__)


class FlowEngine:
    """
    Creates flow instances and walks them node by node

    A walk runs until the instance completes, fails or suspends on a
    delay / wait_for_reply node. Suspended instances hold no task; the
    scheduler (or an inbound reply) calls resume_instance later.

    Every write during a walk is guarded on status=running, so a cancel
    issued from another request stops the walk at the next step.
    """

    def __init__(
        self,
        flow_repo: Optional[FlowRepository] = None,
        message_sender: Optional[MessageSender] = None,
        action_executor: Optional[ActionExecutor] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Optional[Clock] = None,
        supervisor: Optional[TaskSupervisor] = None,
        max_steps: Optional[int] = None
    ):
        self.flow_repo = flow_repo or FlowRepository()
        self.evaluator = evaluator or ConditionEvaluator()
        self.node_executor = NodeExecutor(message_sender, action_executor, self.evaluator)
        self.clock = clock or SystemClock()
        self.supervisor = supervisor or TaskSupervisor("flows")
        self.max_steps = max_steps or settings.flow_max_steps_per_walk

    # =========================================================================
    # Instance lifecycle
    # =========================================================================

    async def start_instance(
        self,
        user_id: str,
        flow_id: str,
        contact_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        entry_type: EntryType = EntryType.MANUAL,
        trigger_id: Optional[str] = None
    ) -> FlowInstance:
        """
        Start a new instance of a published flow

        The walk itself runs in the background; the returned instance
        reflects the state at creation.

        Raises:
            FlowNotFoundError: Flow does not exist for this tenant
            InvalidStateError: Flow is not published
            InstanceLimitError: Contact already in the flow, or flow at capacity
        """
        flow = self.flow_repo.get_flow(user_id, flow_id)
        if not flow:
            raise FlowNotFoundError(f"Flow {flow_id} not found")
        if flow.status != FlowStatus.PUBLISHED:
            raise InvalidStateError(
                "Flow is not published",
                details={"flow_id": flow_id, "status": flow.status.value}
            )

        version = self._load_version(flow_id, flow.version)
        start_node = version.start_node()
        if start_node is None:
            raise FlowValidationError("Flow has no start node", details={"flow_id": flow_id})

        flow_settings = version.settings
        if contact_id and not flow_settings.allow_multiple_instances:
            if self.flow_repo.count_live_instances(flow_id, contact_id) > 0:
                raise InstanceLimitError(
                    "Contact already has an active instance of this flow",
                    details={"flow_id": flow_id, "contact_id": contact_id}
                )
        if self.flow_repo.count_live_instances(flow_id) >= flow_settings.max_concurrent_instances:
            raise InstanceLimitError(
                "Flow has reached its concurrent instance limit",
                details={"flow_id": flow_id, "limit": flow_settings.max_concurrent_instances}
            )

        now = self.clock.now()
        defaults = {v.key: v.default_value for v in version.variables if v.default_value is not None}
        instance = FlowInstance(
            instance_id=generate_instance_id(),
            flow_id=flow_id,
            flow_version=version.version,
            user_id=user_id,
            contact_id=contact_id,
            status=InstanceStatus.RUNNING,
            current_node_id=start_node.id,
            context=context or {},
            variables={**defaults, **(variables or {})},
            entry_type=entry_type,
            trigger_id=trigger_id,
            node_history=[NodeHistoryEntry(
                node_id=start_node.id,
                node_type=start_node.type,
                entered_at=now,
                status=NodeHistoryStatus.ENTERED,
            )],
            started_at=now,
        )
        self.flow_repo.create_instance(instance)
        self.flow_repo.increment_counters(flow_id, total_instances=1, active_instances=1)

        logger.info(
            f"Started flow instance ({entry_type.value})",
            extra={"flow_id": flow_id, "instance_id": instance.instance_id, "contact_id": contact_id}
        )
        self._spawn_walk(instance.model_copy(deep=True), version)
        return instance

    async def resume_instance(
        self,
        instance_id: str,
        reply: Optional[Any] = None,
        user_id: Optional[str] = None
    ) -> FlowInstance:
        """
        Continue a waiting instance from the successor of its suspended node

        A reply is only accepted by an instance waiting for one and follows
        the node's "reply" handle. Without a reply the instance's
        ``waiting_until`` must have passed: a delay then continues and a
        reply wait follows "timeout". Both fall back to the first outgoing
        edge.

        Raises:
            FlowInstanceNotFoundError: No waiting instance with this ID
            InvalidStateError: The instance is waiting, but not for this
                reply, or its timer has not elapsed yet
        """
        if reply is not None:
            guard: Dict[str, Any] = {"waiting_for": WaitKind.REPLY}
        else:
            guard = {"waiting_until": {"$lte": self.clock.now()}}
        instance = self.flow_repo.transition_instance(
            instance_id,
            [InstanceStatus.WAITING],
            {"status": InstanceStatus.RUNNING},
            user_id=user_id,
            match=guard,
        )
        if not instance:
            self._reject_resume(instance_id, reply, user_id)

        version = self._load_version(instance.flow_id, instance.flow_version)
        if reply is not None:
            branch = "reply"
            output: Dict[str, Any] = {"reply": reply}
            instance.variables["last_reply"] = reply
        elif instance.waiting_for == WaitKind.REPLY:
            branch = "timeout"
            output = {"timed_out": True}
        else:
            branch = None
            output = {"resumed": True}

        instance.waiting_for = None
        instance.waiting_until = None
        self._close_entry(instance, NodeHistoryStatus.COMPLETED, result=output)

        logger.info(
            f"Resuming flow instance ({branch or 'delay'})",
            extra={"flow_id": instance.flow_id, "instance_id": instance_id}
        )
        node = version.get_node(instance.current_node_id)
        if node is None:
            self._fail(instance, f"Node {instance.current_node_id} not found in version {version.version}")
            return instance
        if self._advance(instance, version, node, NodeResult(branch=branch)):
            self._spawn_walk(instance.model_copy(deep=True), version)
        return instance

    def _reject_resume(self, instance_id: str, reply: Optional[Any], user_id: Optional[str]) -> None:
        current = self.flow_repo.get_instance(instance_id, user_id)
        if current is None or current.status != InstanceStatus.WAITING:
            raise FlowInstanceNotFoundError(f"No waiting flow instance {instance_id}")
        details = {
            "instance_id": instance_id,
            "waiting_for": current.waiting_for.value if current.waiting_for else None,
            "waiting_until": current.waiting_until.isoformat() if current.waiting_until else None,
        }
        if reply is not None:
            raise InvalidStateError(f"Flow instance {instance_id} is not waiting for a reply", details=details)
        raise InvalidStateError(f"Flow instance {instance_id} is still waiting", details=details)

    async def resume_due_instances(self, limit: int = 100) -> int:
        """Resume waiting instances whose delay or timeout has elapsed"""
        resumed = 0
        for instance in self.flow_repo.find_due_waits(self.clock.now(), limit):
            try:
                await self.resume_instance(instance.instance_id)
                resumed += 1
            except (FlowInstanceNotFoundError, InvalidStateError):
                # Resumed, cancelled or re-suspended by someone else meanwhile
                continue
        return resumed

    def cancel_instance(self, instance_id: str, user_id: Optional[str] = None) -> FlowInstance:
        """
        Cancel a running, waiting or paused instance

        Raises:
            FlowInstanceNotFoundError: No live instance with this ID (including
                one that was already cancelled)
        """
        instance = self.flow_repo.transition_instance(
            instance_id,
            LIVE_STATUSES,
            {
                "status": InstanceStatus.CANCELLED,
                "completed_at": self.clock.now(),
                "waiting_until": None,
                "waiting_for": None,
            },
            user_id=user_id,
        )
        if not instance:
            raise FlowInstanceNotFoundError(f"No active flow instance {instance_id}")
        self.flow_repo.increment_counters(instance.flow_id, active_instances=-1)
        logger.info("Cancelled flow instance", extra={"flow_id": instance.flow_id, "instance_id": instance_id})
        return instance

    async def retry_instance(self, instance_id: str, user_id: Optional[str] = None) -> FlowInstance:
        """
        Re-drive a failed instance from the node it failed on

        Only allowed when the flow version has retry_on_failure set and the
        instance has retries left.
        """
        current = self.flow_repo.get_instance(instance_id, user_id)
        if not current:
            raise FlowInstanceNotFoundError(f"Flow instance {instance_id} not found")
        if current.status != InstanceStatus.FAILED:
            raise InvalidStateError(
                "Only failed instances can be retried",
                details={"instance_id": instance_id, "status": current.status.value}
            )

        version = self._load_version(current.flow_id, current.flow_version)
        if not version.settings.retry_on_failure:
            raise InvalidStateError("Retries are disabled for this flow", details={"flow_id": current.flow_id})
        if current.retry_count >= version.settings.max_retries:
            raise InvalidStateError(
                "Retry limit reached",
                details={"instance_id": instance_id, "retry_count": current.retry_count}
            )

        node = version.get_node(current.current_node_id)
        if node is None:
            raise InvalidStateError(f"Node {current.current_node_id} no longer exists in version {version.version}")

        instance = self.flow_repo.transition_instance(
            instance_id,
            [InstanceStatus.FAILED],
            {"status": InstanceStatus.RUNNING, "error": None, "completed_at": None},
            inc={"retry_count": 1},
            push_history=NodeHistoryEntry(
                node_id=node.id,
                node_type=node.type,
                entered_at=self.clock.now(),
                status=NodeHistoryStatus.ENTERED,
            ),
        )
        if not instance:
            raise FlowInstanceNotFoundError(f"Flow instance {instance_id} is no longer failed")

        self.flow_repo.increment_counters(instance.flow_id, failed_instances=-1, active_instances=1)
        logger.info(
            f"Retrying flow instance (attempt {instance.retry_count})",
            extra={"flow_id": instance.flow_id, "instance_id": instance_id, "node_id": node.id}
        )
        self._spawn_walk(instance.model_copy(deep=True), version)
        return instance

    # =========================================================================
    # Walk
    # =========================================================================

    async def run(self, instance: FlowInstance, version: FlowVersion) -> FlowInstance:
        """
        Walk an instance until it completes, fails, suspends or is cancelled

        The instance's last history entry is always the 'entered' entry of
        its current node.
        """
        steps = 0
        while True:
            now = self.clock.now()
            steps += 1
            if steps > self.max_steps:
                self._fail(instance, f"Walk exceeded {self.max_steps} steps without suspending")
                return instance
            if self._timed_out(instance, version, now):
                self._fail(instance, "Flow instance timed out")
                return instance

            node = version.get_node(instance.current_node_id)
            if node is None:
                self._fail(instance, f"Node {instance.current_node_id} not found in version {version.version}")
                return instance

            if node.type == NodeType.END:
                self._close_entry(instance, NodeHistoryStatus.COMPLETED, result={"ended": True})
                self._complete(instance)
                return instance

            try:
                result = await self.node_executor.execute(node, instance, version, now)
            except Exception as e:
                error = str(e) or type(e).__name__
                self._close_entry(instance, NodeHistoryStatus.FAILED, error=error)
                logger.warning(
                    f"Flow node {node.type.value} failed: {error}",
                    extra={"flow_id": instance.flow_id, "instance_id": instance.instance_id, "node_id": node.id}
                )
                self._fail(instance, error)
                return instance

            instance.variables.update(result.variables)

            if result.suspends:
                instance.node_history[-1].result = result.output
                instance.status = InstanceStatus.WAITING
                instance.waiting_for = result.wait_for
                instance.waiting_until = result.wait_until
                if self._persist(instance):
                    logger.info(
                        f"Flow instance waiting for {result.wait_for.value}",
                        extra={"flow_id": instance.flow_id, "instance_id": instance.instance_id, "node_id": node.id}
                    )
                return instance

            self._close_entry(instance, NodeHistoryStatus.COMPLETED, result=result.output)
            if not self._advance(instance, version, node, result):
                return instance

    def resolve_next_node(self, version: FlowVersion, node: FlowNode, result: NodeResult, values: Dict[str, Any]) -> Optional[str]:
        """
        Pick the successor of a node

        goto targets win; then the edge whose source_handle matches the
        result's branch; then the first edge whose (optional) condition
        holds; then the first edge.
        """
        if result.next_node_id:
            return result.next_node_id

        edges = version.outgoing_edges(node.id)
        if not edges:
            return None

        if result.branch is not None:
            for edge in edges:
                if edge.source_handle == result.branch:
                    return edge.target

        for edge in edges:
            if edge.condition is None or self.evaluator.evaluate(edge.condition, values, self.clock.now()):
                return edge.target
        return edges[0].target

    def _advance(self, instance: FlowInstance, version: FlowVersion, node: FlowNode, result: NodeResult) -> bool:
        """Move to the next node and persist; False when the walk must stop"""
        next_node_id = self.resolve_next_node(version, node, result, instance_values(instance))
        if next_node_id is None:
            self._complete(instance)
            return False

        next_node = version.get_node(next_node_id)
        if next_node is None:
            self._fail(instance, f"Edge from {node.id} points to missing node {next_node_id}")
            return False

        instance.current_node_id = next_node.id
        instance.node_history.append(NodeHistoryEntry(
            node_id=next_node.id,
            node_type=next_node.type,
            entered_at=self.clock.now(),
            status=NodeHistoryStatus.ENTERED,
        ))
        return self._persist(instance)

    def _persist(self, instance: FlowInstance) -> bool:
        saved = self.flow_repo.save_instance(instance)
        if not saved:
            logger.info(
                "Flow instance no longer running, stopping walk",
                extra={"flow_id": instance.flow_id, "instance_id": instance.instance_id}
            )
        return saved

    def _complete(self, instance: FlowInstance) -> None:
        instance.status = InstanceStatus.COMPLETED
        instance.completed_at = self.clock.now()
        if self._persist(instance):
            self.flow_repo.increment_counters(instance.flow_id, active_instances=-1, completed_instances=1)
            logger.info(
                "Flow instance completed",
                extra={"flow_id": instance.flow_id, "instance_id": instance.instance_id, "status": "completed"}
            )

    def _fail(self, instance: FlowInstance, error: str) -> None:
        instance.status = InstanceStatus.FAILED
        instance.error = error
        instance.completed_at = self.clock.now()
        if self._persist(instance):
            self.flow_repo.increment_counters(instance.flow_id, active_instances=-1, failed_instances=1)
            logger.warning(
                f"Flow instance failed: {error}",
                extra={"flow_id": instance.flow_id, "instance_id": instance.instance_id, "status": "failed"}
            )

    def _close_entry(
        self,
        instance: FlowInstance,
        status: NodeHistoryStatus,
        result: Any = None,
        error: Optional[str] = None
    ) -> None:
        if not instance.node_history:
            return
        entry = instance.node_history[-1]
        entry.status = status
        entry.exited_at = self.clock.now()
        if result is not None:
            entry.result = result
        if error is not None:
            entry.error = error

    def _timed_out(self, instance: FlowInstance, version: FlowVersion, now: datetime) -> bool:
        timeout_ms = version.settings.timeout_ms
        return bool(timeout_ms) and now - instance.started_at > timedelta(milliseconds=timeout_ms)

    def _load_version(self, flow_id: str, version_number: int) -> FlowVersion:
        version = self.flow_repo.get_version(flow_id, version_number)
        if version is None:
            raise InvalidStateError(
                f"Flow {flow_id} has no published version {version_number}",
                details={"flow_id": flow_id, "version": version_number}
            )
        return version

    def _spawn_walk(self, instance: FlowInstance, version: FlowVersion) -> None:
        async def on_crash(exc: BaseException) -> None:
            crashed = self.flow_repo.transition_instance(
                instance.instance_id,
                [InstanceStatus.RUNNING],
                {"status": InstanceStatus.FAILED, "error": str(exc) or type(exc).__name__,
                 "completed_at": self.clock.now()},
            )
            if crashed:
                self.flow_repo.increment_counters(instance.flow_id, active_instances=-1, failed_instances=1)

        self.supervisor.spawn(
            self.run(instance, version),
            name=f"flow:{instance.flow_id}:{instance.instance_id}",
            on_failure=on_crash,
            context={"flow_id": instance.flow_id, "instance_id": instance.instance_id},
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, user_id: str, instance_id: str) -> FlowInstance:
        instance = self.flow_repo.get_instance(instance_id, user_id)
        if not instance:
            raise FlowInstanceNotFoundError(f"Flow instance {instance_id} not found")
        return instance

    def cancel_flow_instances(self, flow_id: str) -> List[str]:
        """Cancel every live instance of a flow; used when the flow is deleted"""
        cancelled = []
        for instance_id in self.flow_repo.list_live_instance_ids(flow_id):
            try:
                self.cancel_instance(instance_id)
                cancelled.append(instance_id)
            except FlowInstanceNotFoundError:
                continue
        return cancelled
