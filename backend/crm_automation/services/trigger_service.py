"""Trigger Service - Trigger management and execution history"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .base import build_model
from ..domain.models import Trigger, TriggerExecution, RealTimeEvent
from ..domain.enums import ExecutionStatus, TriggerStatus
from ..domain.errors import TriggerNotFoundError, NotFoundError
from ..repositories.trigger_repo import TriggerRepository
from ..repositories.event_repo import EventRepository
from ..utils.idgen import generate_trigger_id, generate_action_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Fields a caller may change after creation
EDITABLE_FIELDS = {
    "name", "description", "event_source", "event_type", "condition_group",
    "actions", "schedule", "throttle", "priority", "tags",
}


class TriggerService:
    """Service for trigger operations"""

    def __init__(
        self,
        repo: Optional[TriggerRepository] = None,
        event_repo: Optional[EventRepository] = None
    ):
        self.repo = repo or TriggerRepository()
        self.event_repo = event_repo or EventRepository()

    def create_trigger(self, user_id: str, data: Dict[str, Any]) -> Trigger:
        """
        Create a trigger (draft unless a status is given)

        Action configs are validated per action type here, before anything
        is stored.
        """
        now = utc_now()
        trigger = build_model(Trigger, {
            **{k: v for k, v in data.items() if k in EDITABLE_FIELDS | {"status"}},
            "trigger_id": generate_trigger_id(),
            "user_id": user_id,
            "created_at": now,
            "updated_at": now,
        })
        return self.repo.create_trigger(trigger)

    def get_trigger(self, user_id: str, trigger_id: str) -> Trigger:
        """Get trigger by ID"""
        trigger = self.repo.get_trigger(user_id, trigger_id)
        if not trigger:
            raise TriggerNotFoundError(f"Trigger {trigger_id} not found", details={"trigger_id": trigger_id})
        return trigger

    def list_triggers(
        self,
        user_id: str,
        status: Optional[TriggerStatus] = None,
        event_source: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 20
    ) -> List[Trigger]:
        return self.repo.list_triggers(user_id, status, event_source, search, skip, limit)

    def count_triggers(
        self,
        user_id: str,
        status: Optional[TriggerStatus] = None,
        event_source: Optional[str] = None,
        search: Optional[str] = None
    ) -> int:
        return self.repo.count_triggers(user_id, status, event_source, search)

    def update_trigger(self, user_id: str, trigger_id: str, updates: Dict[str, Any]) -> Trigger:
        """
        Update editable trigger fields

        The merged trigger is re-validated so a bad action config is
        rejected without touching the stored document.
        """
        existing = self.get_trigger(user_id, trigger_id)
        changes = {k: v for k, v in updates.items() if k in EDITABLE_FIELDS}
        if not changes:
            return existing

        merged = build_model(Trigger, {**existing.model_dump(), **changes, "updated_at": utc_now()})
        fields = {key: getattr(merged, key) for key in changes}
        fields["updated_at"] = merged.updated_at

        updated = self.repo.update_trigger(user_id, trigger_id, fields)
        if not updated:
            raise TriggerNotFoundError(f"Trigger {trigger_id} not found", details={"trigger_id": trigger_id})
        logger.info(
            f"Updated trigger: {trigger_id}",
            extra={"trigger_id": trigger_id, "user_id": user_id}
        )
        return updated

    def delete_trigger(self, user_id: str, trigger_id: str) -> bool:
        if not self.repo.delete_trigger(user_id, trigger_id):
            raise TriggerNotFoundError(f"Trigger {trigger_id} not found", details={"trigger_id": trigger_id})
        logger.info(f"Deleted trigger: {trigger_id}", extra={"trigger_id": trigger_id, "user_id": user_id})
        return True

    def activate_trigger(self, user_id: str, trigger_id: str) -> Trigger:
        """Start matching events"""
        return self._set_status(user_id, trigger_id, TriggerStatus.ACTIVE)

    def pause_trigger(self, user_id: str, trigger_id: str) -> Trigger:
        """Stop matching events; counters and history are kept"""
        return self._set_status(user_id, trigger_id, TriggerStatus.PAUSED)

    def duplicate_trigger(self, user_id: str, trigger_id: str) -> Trigger:
        """Copy a trigger as a draft with fresh counters and action ids"""
        original = self.get_trigger(user_id, trigger_id)
        now = utc_now()
        data = original.model_dump(include=EDITABLE_FIELDS)
        for action in data["actions"]:
            action["id"] = generate_action_id()
        copy = build_model(Trigger, {
            **data,
            "name": f"{original.name} (Copy)",
            "status": TriggerStatus.DRAFT,
            "trigger_id": generate_trigger_id(),
            "user_id": user_id,
            "created_at": now,
            "updated_at": now,
        })
        return self.repo.create_trigger(copy)

    def _set_status(self, user_id: str, trigger_id: str, status: TriggerStatus) -> Trigger:
        updated = self.repo.update_trigger(user_id, trigger_id, {"status": status, "updated_at": utc_now()})
        if not updated:
            raise TriggerNotFoundError(f"Trigger {trigger_id} not found", details={"trigger_id": trigger_id})
        logger.info(
            f"Trigger {status.value}: {trigger_id}",
            extra={"trigger_id": trigger_id, "user_id": user_id, "status": status.value}
        )
        return updated

    # =========================================================================
    # History
    # =========================================================================

    def list_executions(
        self,
        user_id: str,
        trigger_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[TriggerExecution]:
        return self.event_repo.list_executions(user_id, trigger_id, status, start_date, end_date, skip, limit)

    def count_executions(
        self,
        user_id: str,
        trigger_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> int:
        return self.event_repo.count_executions(user_id, trigger_id, status, start_date, end_date)

    def get_execution(self, user_id: str, execution_id: str) -> TriggerExecution:
        execution = self.event_repo.get_execution(execution_id)
        if not execution or execution.user_id != user_id:
            raise NotFoundError(f"Execution {execution_id} not found", details={"execution_id": execution_id})
        return execution

    def list_recent_events(self, user_id: str, limit: int = 20) -> List[RealTimeEvent]:
        return self.event_repo.list_recent_events(user_id, limit)

    def get_trigger_stats(self, user_id: str) -> Dict[str, Any]:
        """Totals from the stored counters plus executions in the last day"""
        totals = self.repo.get_counter_totals(user_id)
        executions = totals["execution_count"]
        success_rate = (totals["success_count"] / executions) * 100 if executions else 0.0
        recent = self.event_repo.count_executions(user_id, start_date=utc_now() - timedelta(days=1))
        return {
            "total_triggers": totals["total_triggers"],
            "active_triggers": totals["active_triggers"],
            "total_executions": executions,
            "success_rate": round(success_rate, 2),
            "recent_executions": recent,
        }
