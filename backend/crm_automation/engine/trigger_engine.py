"""Trigger Engine - Event ingestion, matching and ordered action pipelines"""
import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from pydantic import BaseModel, Field

from .collaborators import ActionExecutor, Clock, SystemClock
from .condition_evaluator import ConditionEvaluator
from .tasks import TaskSupervisor
from ..config.settings import settings
from ..domain.models import (
    InboundEvent, RealTimeEvent, Trigger, TriggerAction, TriggerExecution, ActionResult,
    StartFlowConfig,
)
from ..domain.enums import (
    ActionType, ActionResultStatus, EntryType, EventStatus, ExecutionStatus,
)
from ..domain.errors import ActionFailure, UnsupportedActionError
from ..repositories.trigger_repo import TriggerRepository
from ..repositories.event_repo import EventRepository
from ..utils.idgen import generate_event_id, generate_execution_id
from ..utils.logger import get_logger
from ..utils.time import format_iso

logger = get_logger(__name__)


class FlowStarter(Protocol):
    """The slice of the flow engine that start_flow actions need"""

    async def start_instance(
        self,
        user_id: str,
        flow_id: str,
        contact_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        entry_type: EntryType = EntryType.MANUAL,
        trigger_id: Optional[str] = None
    ) -> Any:
        ...


class EventProcessingResult(BaseModel):
    """Summary returned to the ingestion boundary"""
    event_id: str
    triggers_matched: int
    executions_started: int
    execution_ids: List[str] = Field(default_factory=list)


def normalize_event(event: InboundEvent, received_at: datetime) -> Dict[str, Any]:
    """
    Flatten an inbound event into the record conditions are evaluated against

    Authored conditions name the envelope fields in camelCase (``sourceType``,
    ``eventType``, ``contactId``); the snake_case spellings are kept as
    aliases. Payload keys are spread last and win on collision.
    """
    source_type = event.source_type.value
    timestamp = format_iso(received_at)
    return {
        "source_type": source_type,
        "event_type": event.event_type,
        "contact_id": event.contact_id,
        "sourceType": source_type,
        "eventType": event.event_type,
        "contactId": event.contact_id,
        "timestamp": timestamp,
        **event.payload,
    }


class TriggerEngine:
    """
    Matches inbound events against active triggers and runs their actions

    Matching happens synchronously inside process_event; each matched
    trigger's action pipeline then runs as its own supervised task so a
    slow or failing pipeline never holds up the others.
    """

    def __init__(
        self,
        trigger_repo: Optional[TriggerRepository] = None,
        event_repo: Optional[EventRepository] = None,
        action_executor: Optional[ActionExecutor] = None,
        flow_starter: Optional[FlowStarter] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Optional[Clock] = None,
        supervisor: Optional[TaskSupervisor] = None,
        max_delay_ms: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.trigger_repo = trigger_repo or TriggerRepository()
        self.event_repo = event_repo or EventRepository()
        self.action_executor = action_executor
        self.flow_starter = flow_starter
        self.evaluator = evaluator or ConditionEvaluator()
        self.clock = clock or SystemClock()
        self.supervisor = supervisor or TaskSupervisor("triggers")
        self.max_delay_ms = max_delay_ms if max_delay_ms is not None else settings.trigger_max_delay_ms
        self._sleep = sleep

    # =========================================================================
    # Event ingestion
    # =========================================================================

    async def process_event(
        self,
        user_id: str,
        event: Union[InboundEvent, Dict[str, Any]]
    ) -> EventProcessingResult:
        """
        Normalize, persist and match an inbound event

        Returns once matching is done and every matched trigger has an
        execution record; action pipelines keep running in the background.
        """
        if not isinstance(event, InboundEvent):
            event = InboundEvent.model_validate(event)

        received_at = self.clock.now()
        realtime_event = RealTimeEvent(
            event_id=generate_event_id(),
            user_id=user_id,
            source_type=event.source_type,
            source_id=event.source_id,
            event_type=event.event_type,
            payload=event.payload,
            normalized_data=normalize_event(event, received_at),
            contact_id=event.contact_id,
            received_at=received_at,
            status=EventStatus.PROCESSING,
        )
        self.event_repo.create_event(realtime_event)

        try:
            matched = self.match_triggers(user_id, realtime_event)
        except Exception as e:
            self.event_repo.update_event(
                realtime_event.event_id,
                {"status": EventStatus.FAILED, "error": str(e), "processed_at": self.clock.now()}
            )
            logger.error(
                f"Trigger matching failed: {e}",
                extra={"event_id": realtime_event.event_id, "user_id": user_id}
            )
            raise

        self.event_repo.update_event(
            realtime_event.event_id,
            {
                "trigger_matches": [t.trigger_id for t in matched],
                "status": EventStatus.PROCESSED,
                "processed_at": self.clock.now(),
            }
        )

        execution_ids: List[str] = []
        for trigger in matched:
            try:
                execution = self._start_execution(trigger, realtime_event)
                execution_ids.append(execution.execution_id)
            except Exception as e:
                logger.error(
                    f"Failed to start execution: {e}",
                    extra={"trigger_id": trigger.trigger_id, "event_id": realtime_event.event_id}
                )

        logger.info(
            f"Processed {event.source_type.value}/{event.event_type} event: "
            f"{len(matched)} matched, {len(execution_ids)} started",
            extra={"event_id": realtime_event.event_id, "user_id": user_id}
        )
        return EventProcessingResult(
            event_id=realtime_event.event_id,
            triggers_matched=len(matched),
            executions_started=len(execution_ids),
            execution_ids=execution_ids,
        )

    def match_triggers(self, user_id: str, event: RealTimeEvent) -> List[Trigger]:
        """Active candidates whose condition group accepts the normalized record"""
        candidates = self.trigger_repo.find_candidates(user_id, event.source_type, event.event_type)
        now = self.clock.now()
        return [
            trigger for trigger in candidates
            if self.evaluator.evaluate(trigger.condition_group, event.normalized_data, now)
        ]

    def _start_execution(self, trigger: Trigger, event: RealTimeEvent) -> TriggerExecution:
        now = self.clock.now()
        execution = TriggerExecution(
            execution_id=generate_execution_id(),
            trigger_id=trigger.trigger_id,
            user_id=trigger.user_id,
            event_id=event.event_id,
            event_source=event.source_type.value,
            event_data=event.normalized_data,
            contact_id=event.contact_id,
            status=ExecutionStatus.RUNNING,
            started_at=now,
        )
        self.event_repo.create_execution(execution)
        self.trigger_repo.record_execution_started(trigger.trigger_id, now)

        async def on_crash(exc: BaseException) -> None:
            self._seal_crashed(trigger.trigger_id, execution.execution_id, exc)

        self.supervisor.spawn(
            self.run_actions(trigger, execution.execution_id, dict(event.normalized_data)),
            name=f"trigger:{trigger.trigger_id}:{execution.execution_id}",
            on_failure=on_crash,
            context={"trigger_id": trigger.trigger_id, "execution_id": execution.execution_id},
        )
        return execution

    # =========================================================================
    # Action pipeline
    # =========================================================================

    async def run_actions(self, trigger: Trigger, execution_id: str, record: Dict[str, Any]) -> ExecutionStatus:
        """
        Run a trigger's actions in ascending order, one at a time

        A failing action is recorded and the pipeline moves on.
        """
        has_failure = False

        for action in trigger.sorted_actions():
            executed_at = self.clock.now()
            started = time.monotonic()
            try:
                result = await self._execute_action(trigger, action, record)
                action_result = ActionResult(
                    action_id=action.id,
                    action_type=action.type,
                    status=ActionResultStatus.SUCCESS,
                    result=result,
                    executed_at=executed_at,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            except Exception as e:
                has_failure = True
                action_result = ActionResult(
                    action_id=action.id,
                    action_type=action.type,
                    status=ActionResultStatus.FAILED,
                    error=str(e) or type(e).__name__,
                    executed_at=executed_at,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                logger.warning(
                    f"Action {action.type.value} failed: {e}",
                    extra={"trigger_id": trigger.trigger_id, "execution_id": execution_id, "action": action.type.value}
                )
            self.event_repo.append_action_result(execution_id, action_result)

        status = ExecutionStatus.PARTIAL if has_failure else ExecutionStatus.COMPLETED
        sealed = self.event_repo.complete_execution(execution_id, status, self.clock.now())
        if sealed is not None:
            self.trigger_repo.record_execution_outcome(trigger.trigger_id, succeeded=not has_failure)

        logger.info(
            f"Trigger execution finished: {status.value}",
            extra={"trigger_id": trigger.trigger_id, "execution_id": execution_id, "status": status.value}
        )
        return status

    async def _execute_action(self, trigger: Trigger, action: TriggerAction, record: Dict[str, Any]) -> Any:
        config = action.typed_config()

        if action.type == ActionType.START_FLOW:
            return await self._start_flow(trigger, config, record)

        if action.type == ActionType.DELAY:
            delay_ms = min(config.delay_ms, self.max_delay_ms)
            await self._sleep(delay_ms / 1000)
            return {"message": "Delay completed", "delay_ms": delay_ms}

        if self.action_executor is None:
            raise UnsupportedActionError(f"No executor configured for action '{action.type.value}'")
        return await self.action_executor.execute(action.type.value, dict(action.config), record)

    async def _start_flow(self, trigger: Trigger, config: StartFlowConfig, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.flow_starter is None:
            raise ActionFailure("Flow engine is not available for start_flow")
        instance = await self.flow_starter.start_instance(
            user_id=trigger.user_id,
            flow_id=config.flow_id,
            contact_id=record.get("contact_id"),
            variables=dict(config.variables),
            context=record,
            entry_type=EntryType.TRIGGER,
            trigger_id=trigger.trigger_id,
        )
        return {"message": "Flow started", "flow_id": config.flow_id, "instance_id": instance.instance_id}

    def _seal_crashed(self, trigger_id: str, execution_id: str, exc: BaseException) -> None:
        """Record a pipeline that died outside the per-action wrapper"""
        sealed = self.event_repo.complete_execution(
            execution_id, ExecutionStatus.FAILED, self.clock.now(), error=str(exc) or type(exc).__name__
        )
        if sealed is not None:
            self.trigger_repo.record_execution_outcome(trigger_id, succeeded=False)
