"""Runtime wiring - One set of repositories, engines and services per process"""
from typing import Optional

from pymongo.database import Database

from .trigger_service import TriggerService
from .flow_service import FlowService
from .drip_service import DripService
from ..engine.collaborators import ActionExecutor, Clock, MessageSender, SystemClock
from ..engine.condition_evaluator import ConditionEvaluator
from ..engine.drip_engine import DripEngine
from ..engine.flow_engine import FlowEngine
from ..engine.tasks import TaskSupervisor
from ..engine.trigger_engine import TriggerEngine
from ..integrations import HttpActionExecutor, WebhookMessageSender
from ..repositories.contact_repo import ContactRepository
from ..repositories.drip_repo import DripRepository
from ..repositories.event_repo import EventRepository
from ..repositories.flow_repo import FlowRepository
from ..repositories.trigger_repo import TriggerRepository
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AutomationRuntime:
    """
    Builds the object graph the API and the scheduler share

    Engines hold background tasks, so a process needs exactly one of each;
    tests build their own runtime over a mongomock database and fakes.
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        message_sender: Optional[MessageSender] = None,
        action_executor: Optional[ActionExecutor] = None,
        clock: Optional[Clock] = None
    ):
        self.clock = clock or SystemClock()
        self.message_sender = message_sender or WebhookMessageSender()
        self.action_executor = action_executor or HttpActionExecutor()
        self.evaluator = ConditionEvaluator()

        self.trigger_repo = TriggerRepository(database)
        self.event_repo = EventRepository(database)
        self.flow_repo = FlowRepository(database)
        self.drip_repo = DripRepository(database)
        self.contact_repo = ContactRepository(database)

        self.trigger_supervisor = TaskSupervisor("triggers")
        self.flow_supervisor = TaskSupervisor("flows")

        self.flow_engine = FlowEngine(
            flow_repo=self.flow_repo,
            message_sender=self.message_sender,
            action_executor=self.action_executor,
            evaluator=self.evaluator,
            clock=self.clock,
            supervisor=self.flow_supervisor,
        )
        self.trigger_engine = TriggerEngine(
            trigger_repo=self.trigger_repo,
            event_repo=self.event_repo,
            action_executor=self.action_executor,
            flow_starter=self.flow_engine,
            evaluator=self.evaluator,
            clock=self.clock,
            supervisor=self.trigger_supervisor,
        )
        self.drip_engine = DripEngine(
            drip_repo=self.drip_repo,
            message_sender=self.message_sender,
            contact_store=self.contact_repo,
            evaluator=self.evaluator,
            clock=self.clock,
        )

        self.trigger_service = TriggerService(self.trigger_repo, self.event_repo)
        self.flow_service = FlowService(self.flow_repo, self.flow_engine)
        self.drip_service = DripService(self.drip_repo, self.drip_engine)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight trigger pipelines and flow walks"""
        await self.trigger_supervisor.drain(timeout)
        await self.flow_supervisor.drain(timeout)

    async def shutdown(self, timeout: float = 10.0) -> None:
        await self.trigger_supervisor.shutdown(timeout)
        await self.flow_supervisor.shutdown(timeout)
        logger.info("Automation runtime stopped")


_runtime: Optional[AutomationRuntime] = None


def get_runtime() -> AutomationRuntime:
    """Get or create the process-wide runtime"""
    global _runtime
    if _runtime is None:
        _runtime = AutomationRuntime()
    return _runtime


def set_runtime(runtime: Optional[AutomationRuntime]) -> None:
    """Install a runtime (tests hand in one over mongomock)"""
    global _runtime
    _runtime = runtime
