"""Event Repository - Real-time events and trigger execution history"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import DESCENDING, ReturnDocument

from .mongo_client import get_collection, to_mongo
from ..domain.models import RealTimeEvent, TriggerExecution, ActionResult
from ..domain.enums import ExecutionStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


class EventRepository:
    """Append-only event log plus per-trigger execution records"""

    def __init__(self, database: Optional[Database] = None):
        self._events: Collection = get_collection("realtime_events", database)
        self._executions: Collection = get_collection("trigger_executions", database)

    # =========================================================================
    # Real-time events
    # =========================================================================

    def create_event(self, event: RealTimeEvent) -> RealTimeEvent:
        """Persist a normalized inbound event"""
        doc = to_mongo(event)
        doc["_id"] = event.event_id
        self._events.insert_one(doc)
        return event

    def update_event(self, event_id: str, updates: Dict[str, Any]) -> Optional[RealTimeEvent]:
        """Stamp processing results onto an event"""
        doc = self._events.find_one_and_update(
            {"event_id": event_id},
            {"$set": to_mongo(updates)},
            return_document=ReturnDocument.AFTER
        )
        return self._event_model(doc)

    def get_event(self, event_id: str) -> Optional[RealTimeEvent]:
        """Get event by ID"""
        return self._event_model(self._events.find_one({"event_id": event_id}))

    def list_recent_events(self, user_id: str, limit: int = 20) -> List[RealTimeEvent]:
        """Most recently received events for a tenant"""
        cursor = self._events.find({"user_id": user_id}).sort("received_at", DESCENDING).limit(limit)
        return [self._event_model(doc) for doc in cursor]

    # =========================================================================
    # Trigger executions
    # =========================================================================

    def create_execution(self, execution: TriggerExecution) -> TriggerExecution:
        """Create an execution record"""
        doc = to_mongo(execution)
        doc["_id"] = execution.execution_id
        self._executions.insert_one(doc)
        return execution

    def get_execution(self, execution_id: str) -> Optional[TriggerExecution]:
        """Get execution by ID"""
        return self._execution_model(self._executions.find_one({"execution_id": execution_id}))

    def append_action_result(self, execution_id: str, result: ActionResult) -> bool:
        """Push one action result; completed executions are immutable"""
        outcome = self._executions.update_one(
            {"execution_id": execution_id, "completed_at": None},
            {"$push": {"action_results": to_mongo(result)}}
        )
        return outcome.modified_count > 0

    def complete_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        completed_at: datetime,
        error: Optional[str] = None
    ) -> Optional[TriggerExecution]:
        """
        Seal an execution with its final status

        Returns None if the execution was already sealed.
        """
        updates: Dict[str, Any] = {"status": status, "completed_at": completed_at}
        if error is not None:
            updates["error"] = error
        doc = self._executions.find_one_and_update(
            {"execution_id": execution_id, "completed_at": None},
            {"$set": to_mongo(updates)},
            return_document=ReturnDocument.AFTER
        )
        return self._execution_model(doc)

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
        """Execution history, newest first"""
        query = self._build_execution_query(user_id, trigger_id, status, start_date, end_date)
        cursor = self._executions.find(query).sort("started_at", DESCENDING).skip(skip).limit(limit)
        return [self._execution_model(doc) for doc in cursor]

    def count_executions(
        self,
        user_id: str,
        trigger_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> int:
        """Count executions matching the history filters"""
        return self._executions.count_documents(
            self._build_execution_query(user_id, trigger_id, status, start_date, end_date)
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _build_execution_query(
        self,
        user_id: str,
        trigger_id: Optional[str],
        status: Optional[ExecutionStatus],
        start_date: Optional[datetime],
        end_date: Optional[datetime]
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": user_id}
        if trigger_id:
            query["trigger_id"] = trigger_id
        if status:
            query["status"] = to_mongo(status)
        if start_date or end_date:
            date_query: Dict[str, Any] = {}
            if start_date:
                date_query["$gte"] = to_mongo(start_date)
            if end_date:
                date_query["$lte"] = to_mongo(end_date)
            query["started_at"] = date_query
        return query

    def _event_model(self, doc: Optional[Dict[str, Any]]) -> Optional[RealTimeEvent]:
        if not doc:
            return None
        doc.pop("_id", None)
        return RealTimeEvent.model_validate(doc)

    def _execution_model(self, doc: Optional[Dict[str, Any]]) -> Optional[TriggerExecution]:
        if not doc:
            return None
        doc.pop("_id", None)
        return TriggerExecution.model_validate(doc)
