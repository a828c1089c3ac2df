"""Flow Repository - Flow definitions, published versions and instances"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, to_mongo
from ..domain.models import FlowDefinition, FlowVersion, FlowInstance, NodeHistoryEntry
from ..domain.enums import FlowStatus, InstanceStatus
from ..domain.errors import ConflictError
from ..utils.logger import get_logger

logger = get_logger(__name__)

LIVE_STATUSES = [InstanceStatus.RUNNING, InstanceStatus.WAITING, InstanceStatus.PAUSED]


class FlowRepository:
    """Repository for flows and the instances walking them"""

    def __init__(self, database: Optional[Database] = None):
        self._flows: Collection = get_collection("flow_definitions", database)
        self._versions: Collection = get_collection("flow_versions", database)
        self._instances: Collection = get_collection("flow_instances", database)

    # =========================================================================
    # Definitions
    # =========================================================================

    def create_flow(self, flow: FlowDefinition) -> FlowDefinition:
        """Create a new flow definition"""
        doc = to_mongo(flow)
        doc["_id"] = flow.flow_id
        try:
            self._flows.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Flow {flow.flow_id} already exists")
        logger.info(f"Created flow: {flow.name}", extra={"flow_id": flow.flow_id, "user_id": flow.user_id})
        return flow

    def get_flow(self, user_id: str, flow_id: str) -> Optional[FlowDefinition]:
        """Get flow by ID within a tenant"""
        return self._flow_model(self._flows.find_one({"flow_id": flow_id, "user_id": user_id}))

    def list_flows(
        self,
        user_id: str,
        status: Optional[FlowStatus] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 20
    ) -> List[FlowDefinition]:
        """List flows, most recently updated first"""
        query = self._build_list_query(user_id, status, search)
        cursor = self._flows.find(query).sort("updated_at", DESCENDING).skip(skip).limit(limit)
        return [self._flow_model(doc) for doc in cursor]

    def count_flows(self, user_id: str, status: Optional[FlowStatus] = None, search: Optional[str] = None) -> int:
        """Count flows matching the list filters"""
        return self._flows.count_documents(self._build_list_query(user_id, status, search))

    def update_flow(
        self,
        user_id: str,
        flow_id: str,
        updates: Dict[str, Any],
        inc: Optional[Dict[str, int]] = None
    ) -> Optional[FlowDefinition]:
        """Apply a $set (and optional $inc) and return the updated flow"""
        operation: Dict[str, Any] = {"$set": to_mongo(updates)}
        if inc:
            operation["$inc"] = inc
        doc = self._flows.find_one_and_update(
            {"flow_id": flow_id, "user_id": user_id},
            operation,
            return_document=ReturnDocument.AFTER
        )
        return self._flow_model(doc)

    def delete_flow(self, user_id: str, flow_id: str) -> bool:
        """Delete a flow and its version snapshots"""
        result = self._flows.delete_one({"flow_id": flow_id, "user_id": user_id})
        if result.deleted_count:
            self._versions.delete_many({"flow_id": flow_id})
        return result.deleted_count > 0

    def increment_counters(self, flow_id: str, **deltas: int) -> None:
        """Atomically adjust instance counters on the definition"""
        changes = {key: value for key, value in deltas.items() if value}
        if changes:
            self._flows.update_one({"flow_id": flow_id}, {"$inc": changes})

    # =========================================================================
    # Versions
    # =========================================================================

    def create_version(self, version: FlowVersion) -> FlowVersion:
        """Store an immutable publish snapshot"""
        doc = to_mongo(version)
        doc["_id"] = version.version_id
        try:
            self._versions.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(
                f"Flow {version.flow_id} version {version.version} already published",
                details={"flow_id": version.flow_id, "version": version.version}
            )
        return version

    def get_version(self, flow_id: str, version: int) -> Optional[FlowVersion]:
        """Get the snapshot an instance walks"""
        doc = self._versions.find_one({"flow_id": flow_id, "version": version})
        if not doc:
            return None
        doc.pop("_id", None)
        return FlowVersion.model_validate(doc)

    def list_versions(self, flow_id: str) -> List[FlowVersion]:
        """All published snapshots, newest first"""
        versions = []
        for doc in self._versions.find({"flow_id": flow_id}).sort("version", DESCENDING):
            doc.pop("_id", None)
            versions.append(FlowVersion.model_validate(doc))
        return versions

    # =========================================================================
    # Instances
    # =========================================================================

    def create_instance(self, instance: FlowInstance) -> FlowInstance:
        """Create a flow instance"""
        doc = to_mongo(instance)
        doc["_id"] = instance.instance_id
        self._instances.insert_one(doc)
        return instance

    def get_instance(self, instance_id: str, user_id: Optional[str] = None) -> Optional[FlowInstance]:
        """Get instance by ID, optionally scoped to a tenant"""
        query: Dict[str, Any] = {"instance_id": instance_id}
        if user_id:
            query["user_id"] = user_id
        return self._instance_model(self._instances.find_one(query))

    def save_instance(self, instance: FlowInstance, expected_status: InstanceStatus = InstanceStatus.RUNNING) -> bool:
        """
        Persist the walk's view of an instance

        Guarded on the stored status so a cancel that landed mid-walk is
        never overwritten. Returns False when the guard did not match.
        """
        fields = to_mongo(instance.model_dump(exclude={"instance_id", "flow_id", "user_id", "started_at"}))
        result = self._instances.update_one(
            {"instance_id": instance.instance_id, "status": expected_status.value},
            {"$set": fields}
        )
        return result.matched_count > 0

    def transition_instance(
        self,
        instance_id: str,
        from_statuses: List[InstanceStatus],
        updates: Dict[str, Any],
        user_id: Optional[str] = None,
        inc: Optional[Dict[str, int]] = None,
        push_history: Optional[NodeHistoryEntry] = None,
        match: Optional[Dict[str, Any]] = None
    ) -> Optional[FlowInstance]:
        """
        Atomically move an instance out of one of ``from_statuses``

        ``match`` adds field guards to the filter (e.g. the wait kind).
        Returns the updated instance, or None if it was not in an accepted state.
        """
        query: Dict[str, Any] = {
            "instance_id": instance_id,
            "status": {"$in": [s.value for s in from_statuses]},
        }
        if match:
            query.update(to_mongo(match))
        if user_id:
            query["user_id"] = user_id
        operation: Dict[str, Any] = {"$set": to_mongo(updates)}
        if inc:
            operation["$inc"] = inc
        if push_history is not None:
            operation["$push"] = {"node_history": to_mongo(push_history)}
        doc = self._instances.find_one_and_update(query, operation, return_document=ReturnDocument.AFTER)
        return self._instance_model(doc)

    def count_live_instances(self, flow_id: str, contact_id: Optional[str] = None) -> int:
        """Running, waiting or paused instances of a flow"""
        query: Dict[str, Any] = {"flow_id": flow_id, "status": {"$in": [s.value for s in LIVE_STATUSES]}}
        if contact_id:
            query["contact_id"] = contact_id
        return self._instances.count_documents(query)

    def list_live_instance_ids(self, flow_id: str) -> List[str]:
        """IDs of instances that still hold an active slot"""
        cursor = self._instances.find(
            {"flow_id": flow_id, "status": {"$in": [s.value for s in LIVE_STATUSES]}},
            {"instance_id": 1}
        )
        return [doc["instance_id"] for doc in cursor]

    def find_due_waits(self, now: datetime, limit: int = 100) -> List[FlowInstance]:
        """Waiting instances whose delay or reply timeout has elapsed"""
        cursor = self._instances.find({
            "status": InstanceStatus.WAITING.value,
            "waiting_until": {"$lte": to_mongo(now)},
        }).sort("waiting_until", ASCENDING).limit(limit)
        return [self._instance_model(doc) for doc in cursor]

    def list_instances(
        self,
        user_id: str,
        flow_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        contact_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[FlowInstance]:
        """List instances, newest first"""
        query = self._build_instance_query(user_id, flow_id, status, contact_id)
        cursor = self._instances.find(query).sort("started_at", DESCENDING).skip(skip).limit(limit)
        return [self._instance_model(doc) for doc in cursor]

    def count_instances(
        self,
        user_id: str,
        flow_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        contact_id: Optional[str] = None
    ) -> int:
        return self._instances.count_documents(self._build_instance_query(user_id, flow_id, status, contact_id))

    def get_counter_totals(self, user_id: str) -> Dict[str, int]:
        """Sum the stored instance counters across a tenant's flows"""
        totals = {
            "total_flows": 0,
            "published_flows": 0,
            "total_instances": 0,
            "active_instances": 0,
            "completed_instances": 0,
        }
        for doc in self._flows.find(
            {"user_id": user_id},
            {"status": 1, "total_instances": 1, "active_instances": 1, "completed_instances": 1}
        ):
            totals["total_flows"] += 1
            if doc.get("status") == FlowStatus.PUBLISHED.value:
                totals["published_flows"] += 1
            for key in ("total_instances", "active_instances", "completed_instances"):
                totals[key] += doc.get(key, 0)
        return totals

    def count_instances_started_since(self, user_id: str, since: datetime) -> int:
        return self._instances.count_documents({"user_id": user_id, "started_at": {"$gte": to_mongo(since)}})

    # =========================================================================
    # Helpers
    # =========================================================================

    def _build_list_query(self, user_id: str, status: Optional[FlowStatus], search: Optional[str]) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": user_id}
        if status:
            query["status"] = FlowStatus(status).value
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        return query

    def _build_instance_query(
        self,
        user_id: str,
        flow_id: Optional[str],
        status: Optional[InstanceStatus],
        contact_id: Optional[str]
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": user_id}
        if flow_id:
            query["flow_id"] = flow_id
        if status:
            query["status"] = InstanceStatus(status).value
        if contact_id:
            query["contact_id"] = contact_id
        return query

    def _flow_model(self, doc: Optional[Dict[str, Any]]) -> Optional[FlowDefinition]:
        if not doc:
            return None
        doc.pop("_id", None)
        return FlowDefinition.model_validate(doc)

    def _instance_model(self, doc: Optional[Dict[str, Any]]) -> Optional[FlowInstance]:
        if not doc:
            return None
        doc.pop("_id", None)
        return FlowInstance.model_validate(doc)
