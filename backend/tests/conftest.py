"""
Pytest Configuration and Fixtures

Shared fixtures: a mongomock database behind the real repositories, a
controllable clock and in-memory stand-ins for the outbound integrations.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import mongomock
import pytest

from crm_automation.domain.models import SendResult
from crm_automation.domain.errors import ActionFailure
from crm_automation.services.runtime import AutomationRuntime


class FixedClock:
    """Clock that only moves when a test moves it"""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeSender:
    """Records outbound messages; queue failures with fail_next()"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self._failures: List[str] = []
        self._counter = 0

    def fail_next(self, error: str = "gateway unavailable", times: int = 1) -> None:
        self._failures.extend([error] * times)

    async def send(self, contact: Dict[str, Any], content: Dict[str, Any]) -> SendResult:
        if self._failures:
            return SendResult(success=False, error=self._failures.pop(0))
        self._counter += 1
        self.sent.append({"contact": contact, "content": content})
        return SendResult(success=True, message_id=f"msg-{self._counter}")


class FakeExecutor:
    """Records executed actions; action types in ``failing`` raise"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.failing: Dict[str, str] = {}
        self.responses: Dict[str, Any] = {}

    async def execute(self, action_type: str, config: Dict[str, Any], record: Dict[str, Any]) -> Any:
        self.calls.append({"action_type": action_type, "config": config, "record": record})
        if action_type in self.failing:
            raise ActionFailure(self.failing[action_type])
        return self.responses.get(action_type, {"ok": True, "action": action_type})

    def types(self) -> List[str]:
        return [call["action_type"] for call in self.calls]


@pytest.fixture
def db():
    """Fresh in-memory database per test"""
    return mongomock.MongoClient(tz_aware=False)["crm_automation_test"]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def runtime(db, sender, executor, clock) -> AutomationRuntime:
    return AutomationRuntime(database=db, message_sender=sender, action_executor=executor, clock=clock)


@pytest.fixture
def user_id() -> str:
    return "tenant-1"


