"""Flow Service - Flow design, publishing and instance management"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .base import build_model
from ..domain.models import FlowDefinition, FlowVersion, FlowInstance
from ..domain.enums import EntryType, FlowStatus, InstanceStatus
from ..domain.errors import FlowNotFoundError, FlowValidationError, InvalidStateError
from ..engine.flow_engine import FlowEngine
from ..engine.flow_validator import validate_flow
from ..repositories.flow_repo import FlowRepository
from ..utils.idgen import generate_flow_id, generate_flow_version_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

EDITABLE_FIELDS = {
    "name", "description", "nodes", "edges", "variables", "entry_points", "settings", "tags",
}

_COUNTER_RESET = {
    "total_instances": 0,
    "active_instances": 0,
    "completed_instances": 0,
    "failed_instances": 0,
}


class FlowService:
    """Service for flow operations"""

    def __init__(self, repo: Optional[FlowRepository] = None, engine: Optional[FlowEngine] = None):
        self.repo = repo or FlowRepository()
        self.engine = engine or FlowEngine(flow_repo=self.repo)

    # =========================================================================
    # Definitions
    # =========================================================================

    def create_flow(self, user_id: str, data: Dict[str, Any]) -> FlowDefinition:
        """Create a draft flow"""
        now = utc_now()
        flow = build_model(FlowDefinition, {
            **{k: v for k, v in data.items() if k in EDITABLE_FIELDS},
            "flow_id": generate_flow_id(),
            "user_id": user_id,
            "status": FlowStatus.DRAFT,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        })
        return self.repo.create_flow(flow)

    def get_flow(self, user_id: str, flow_id: str) -> FlowDefinition:
        """Get flow by ID"""
        flow = self.repo.get_flow(user_id, flow_id)
        if not flow:
            raise FlowNotFoundError(f"Flow {flow_id} not found", details={"flow_id": flow_id})
        return flow

    def list_flows(
        self,
        user_id: str,
        status: Optional[FlowStatus] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 20
    ) -> List[FlowDefinition]:
        return self.repo.list_flows(user_id, status, search, skip, limit)

    def count_flows(self, user_id: str, status: Optional[FlowStatus] = None, search: Optional[str] = None) -> int:
        return self.repo.count_flows(user_id, status, search)

    def update_flow(self, user_id: str, flow_id: str, updates: Dict[str, Any]) -> FlowDefinition:
        """
        Edit the draft graph and metadata

        Running instances are unaffected: they walk the snapshot of the
        version they started on.
        """
        existing = self.get_flow(user_id, flow_id)
        if existing.status == FlowStatus.ARCHIVED:
            raise InvalidStateError("Archived flows cannot be edited", details={"flow_id": flow_id})

        changes = {k: v for k, v in updates.items() if k in EDITABLE_FIELDS}
        if not changes:
            return existing
        merged = build_model(FlowDefinition, {**existing.model_dump(), **changes, "updated_at": utc_now()})
        fields = {key: getattr(merged, key) for key in changes}
        fields["updated_at"] = merged.updated_at
        return self.repo.update_flow(user_id, flow_id, fields)

    def delete_flow(self, user_id: str, flow_id: str) -> Dict[str, Any]:
        """Delete a flow, cancelling every instance still running or waiting"""
        flow = self.get_flow(user_id, flow_id)
        cancelled = self.engine.cancel_flow_instances(flow.flow_id)
        self.repo.delete_flow(user_id, flow_id)
        logger.info(
            f"Deleted flow: {flow_id} ({len(cancelled)} instances cancelled)",
            extra={"flow_id": flow_id, "user_id": user_id}
        )
        return {"deleted": True, "cancelled_instances": len(cancelled)}

    def duplicate_flow(self, user_id: str, flow_id: str) -> FlowDefinition:
        """Copy a flow as a fresh draft"""
        original = self.get_flow(user_id, flow_id)
        now = utc_now()
        copy = build_model(FlowDefinition, {
            **original.model_dump(include=EDITABLE_FIELDS),
            **_COUNTER_RESET,
            "name": f"{original.name} (Copy)",
            "flow_id": generate_flow_id(),
            "user_id": user_id,
            "status": FlowStatus.DRAFT,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        })
        return self.repo.create_flow(copy)

    def get_flow_stats(self, user_id: str) -> Dict[str, Any]:
        """Totals from the stored instance counters plus instances started in the last day"""
        totals = self.repo.get_counter_totals(user_id)
        started = totals["total_instances"]
        completion_rate = (totals["completed_instances"] / started) * 100 if started else 0.0
        since = self.engine.clock.now() - timedelta(days=1)
        return {
            "total_flows": totals["total_flows"],
            "published_flows": totals["published_flows"],
            "active_instances": totals["active_instances"],
            "completion_rate": round(completion_rate, 2),
            "recent_instances": self.repo.count_instances_started_since(user_id, since),
        }

    # =========================================================================
    # Publishing
    # =========================================================================

    def validate_flow(self, user_id: str, flow_id: str) -> Dict[str, Any]:
        """Run structural validation without publishing"""
        errors = validate_flow(self.get_flow(user_id, flow_id))
        return {"is_valid": not errors, "errors": errors}

    def publish_flow(self, user_id: str, flow_id: str) -> FlowDefinition:
        """
        Validate, snapshot and publish the current draft

        Raises:
            FlowValidationError: Every structural problem found; nothing is written
        """
        flow = self.get_flow(user_id, flow_id)
        if flow.status == FlowStatus.ARCHIVED:
            raise InvalidStateError("Archived flows cannot be published", details={"flow_id": flow_id})

        errors = validate_flow(flow)
        if errors:
            raise FlowValidationError(
                f"Flow validation failed: {'; '.join(errors)}",
                details={"flow_id": flow_id, "errors": errors}
            )

        now = utc_now()
        version_number = flow.version + 1
        self.repo.create_version(FlowVersion(
            version_id=generate_flow_version_id(),
            flow_id=flow_id,
            user_id=user_id,
            version=version_number,
            nodes=flow.nodes,
            edges=flow.edges,
            variables=flow.variables,
            settings=flow.settings,
            published_at=now,
        ))
        published = self.repo.update_flow(user_id, flow_id, {
            "status": FlowStatus.PUBLISHED,
            "version": version_number,
            "published_at": now,
            "updated_at": now,
        })
        logger.info(
            f"Published flow version {version_number}",
            extra={"flow_id": flow_id, "user_id": user_id}
        )
        return published

    def unpublish_flow(self, user_id: str, flow_id: str) -> FlowDefinition:
        """Back to draft; no new instances start, live ones carry on"""
        return self._set_status(user_id, flow_id, FlowStatus.DRAFT)

    def archive_flow(self, user_id: str, flow_id: str) -> FlowDefinition:
        return self._set_status(user_id, flow_id, FlowStatus.ARCHIVED)

    def list_versions(self, user_id: str, flow_id: str) -> List[FlowVersion]:
        self.get_flow(user_id, flow_id)
        return self.repo.list_versions(flow_id)

    def _set_status(self, user_id: str, flow_id: str, status: FlowStatus) -> FlowDefinition:
        updated = self.repo.update_flow(user_id, flow_id, {"status": status, "updated_at": utc_now()})
        if not updated:
            raise FlowNotFoundError(f"Flow {flow_id} not found", details={"flow_id": flow_id})
        logger.info(f"Flow {status.value}: {flow_id}", extra={"flow_id": flow_id, "user_id": user_id})
        return updated

    # =========================================================================
    # Instances
    # =========================================================================

    async def start_instance(
        self,
        user_id: str,
        flow_id: str,
        contact_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        entry_type: EntryType = EntryType.MANUAL
    ) -> FlowInstance:
        return await self.engine.start_instance(
            user_id, flow_id, contact_id=contact_id, variables=variables, context=context, entry_type=entry_type
        )

    def get_instance(self, user_id: str, instance_id: str) -> FlowInstance:
        return self.engine.get_instance(user_id, instance_id)

    def list_instances(
        self,
        user_id: str,
        flow_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        contact_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[FlowInstance]:
        return self.repo.list_instances(user_id, flow_id, status, contact_id, skip, limit)

    def count_instances(
        self,
        user_id: str,
        flow_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        contact_id: Optional[str] = None
    ) -> int:
        return self.repo.count_instances(user_id, flow_id, status, contact_id)

    def cancel_instance(self, user_id: str, instance_id: str) -> FlowInstance:
        return self.engine.cancel_instance(instance_id, user_id=user_id)

    async def resume_instance(self, user_id: str, instance_id: str, reply: Optional[Any] = None) -> FlowInstance:
        return await self.engine.resume_instance(instance_id, reply=reply, user_id=user_id)

    async def retry_instance(self, user_id: str, instance_id: str) -> FlowInstance:
        return await self.engine.retry_instance(instance_id, user_id=user_id)
