"""Collaborator contracts consumed by the automation engines"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..domain.models import ConditionGroup, SendResult
from ..utils.time import utc_now


@runtime_checkable
class ActionExecutor(Protocol):
    """Performs CRM side effects (tags, scores, API calls, alerts...)"""

    async def execute(self, action_type: str, config: Dict[str, Any], record: Dict[str, Any]) -> Any:
        """Run one action; raise on failure. Must be safe to call repeatedly."""
        ...


@runtime_checkable
class MessageSender(Protocol):
    """Sends a message to a contact through whatever channel backs it"""

    async def send(self, contact: Dict[str, Any], content: Dict[str, Any]) -> SendResult:
        ...


@runtime_checkable
class ContactStore(Protocol):
    """Read-only contact lookups"""

    def get_contact(self, user_id: str, contact_id: str) -> Optional[Dict[str, Any]]:
        ...

    def find_contacts(self, user_id: str, group: ConditionGroup, limit: int = 100) -> List[Dict[str, Any]]:
        ...


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC"""

    def now(self) -> datetime:
        return utc_now()
