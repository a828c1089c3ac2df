"""Trigger Repository - Data access for triggers"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, to_mongo
from ..domain.models import Trigger
from ..domain.enums import TriggerStatus
from ..domain.errors import ConflictError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TriggerRepository:
    """Repository for trigger definitions and their counters"""

    def __init__(self, database: Optional[Database] = None):
        self._triggers: Collection = get_collection("triggers", database)

    # =========================================================================
    # CRUD
    # =========================================================================

    def create_trigger(self, trigger: Trigger) -> Trigger:
        """Create a new trigger"""
        doc = to_mongo(trigger)
        doc["_id"] = trigger.trigger_id
        try:
            self._triggers.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Trigger {trigger.trigger_id} already exists")
        logger.info(
            f"Created trigger: {trigger.name}",
            extra={"trigger_id": trigger.trigger_id, "user_id": trigger.user_id}
        )
        return trigger

    def get_trigger(self, user_id: str, trigger_id: str) -> Optional[Trigger]:
        """Get trigger by ID within a tenant"""
        doc = self._triggers.find_one({"trigger_id": trigger_id, "user_id": user_id})
        return self._to_model(doc)

    def list_triggers(
        self,
        user_id: str,
        status: Optional[TriggerStatus] = None,
        event_source: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 20
    ) -> List[Trigger]:
        """List triggers, newest first"""
        query = self._build_list_query(user_id, status, event_source, search)
        cursor = self._triggers.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return [self._to_model(doc) for doc in cursor]

    def count_triggers(
        self,
        user_id: str,
        status: Optional[TriggerStatus] = None,
        event_source: Optional[str] = None,
        search: Optional[str] = None
    ) -> int:
        """Count triggers matching the list filters"""
        return self._triggers.count_documents(self._build_list_query(user_id, status, event_source, search))

    def update_trigger(self, user_id: str, trigger_id: str, updates: Dict[str, Any]) -> Optional[Trigger]:
        """Apply a $set and return the updated trigger"""
        doc = self._triggers.find_one_and_update(
            {"trigger_id": trigger_id, "user_id": user_id},
            {"$set": to_mongo(updates)},
            return_document=ReturnDocument.AFTER
        )
        return self._to_model(doc)

    def delete_trigger(self, user_id: str, trigger_id: str) -> bool:
        """Delete trigger; returns False when nothing matched"""
        result = self._triggers.delete_one({"trigger_id": trigger_id, "user_id": user_id})
        return result.deleted_count > 0

    # =========================================================================
    # Engine access
    # =========================================================================

    def find_candidates(self, user_id: str, event_source: str, event_type: Optional[str]) -> List[Trigger]:
        """
        Active triggers for an event source, highest priority first

        A trigger without an event_type filter matches every event type.
        """
        query: Dict[str, Any] = {
            "user_id": user_id,
            "status": TriggerStatus.ACTIVE.value,
            "event_source": to_mongo(event_source),
        }
        if event_type:
            query["$or"] = [{"event_type": event_type}, {"event_type": None}]
        cursor = self._triggers.find(query).sort([("priority", DESCENDING), ("created_at", ASCENDING)])
        return [self._to_model(doc) for doc in cursor]

    def record_execution_started(self, trigger_id: str, at: datetime) -> None:
        """Count one execution and stamp last_executed_at"""
        self._triggers.update_one(
            {"trigger_id": trigger_id},
            {"$inc": {"execution_count": 1}, "$set": {"last_executed_at": to_mongo(at)}}
        )

    def record_execution_outcome(self, trigger_id: str, succeeded: bool) -> None:
        """Count a finished execution as success or failure"""
        counter = "success_count" if succeeded else "failure_count"
        self._triggers.update_one({"trigger_id": trigger_id}, {"$inc": {counter: 1}})

    def get_counter_totals(self, user_id: str) -> Dict[str, int]:
        """Sum the stored counters across a tenant's triggers"""
        totals = {"total_triggers": 0, "active_triggers": 0, "execution_count": 0, "success_count": 0}
        for doc in self._triggers.find(
            {"user_id": user_id},
            {"status": 1, "execution_count": 1, "success_count": 1}
        ):
            totals["total_triggers"] += 1
            if doc.get("status") == TriggerStatus.ACTIVE.value:
                totals["active_triggers"] += 1
            totals["execution_count"] += doc.get("execution_count", 0)
            totals["success_count"] += doc.get("success_count", 0)
        return totals

    # =========================================================================
    # Helpers
    # =========================================================================

    def _build_list_query(
        self,
        user_id: str,
        status: Optional[TriggerStatus],
        event_source: Optional[str],
        search: Optional[str]
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": user_id}
        if status:
            query["status"] = TriggerStatus(status).value
        if event_source:
            query["event_source"] = to_mongo(event_source)
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        return query

    def _to_model(self, doc: Optional[Dict[str, Any]]) -> Optional[Trigger]:
        if not doc:
            return None
        doc.pop("_id", None)
        return Trigger.model_validate(doc)
