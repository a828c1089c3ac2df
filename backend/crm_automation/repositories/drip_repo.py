"""Drip Repository - Campaigns, per-contact runs and run leases"""
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .mongo_client import get_collection, to_mongo
from ..domain.models import DripCampaign, DripRun
from ..domain.enums import CampaignStatus, RunStatus
from ..domain.errors import AlreadyEnrolledError, ConflictError
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Fields owned by the lease, never written by a run save
_LEASE_FIELDS = {"locked_until", "locked_by"}


class DripRepository:
    """Repository for drip campaigns and their runs"""

    def __init__(self, database: Optional[Database] = None):
        self._campaigns: Collection = get_collection("drip_campaigns", database)
        self._runs: Collection = get_collection("drip_runs", database)

    # =========================================================================
    # Campaigns
    # =========================================================================

    def create_campaign(self, campaign: DripCampaign) -> DripCampaign:
        """Create a new campaign"""
        doc = to_mongo(campaign)
        doc["_id"] = campaign.campaign_id
        try:
            self._campaigns.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Campaign {campaign.campaign_id} already exists")
        logger.info(
            f"Created drip campaign: {campaign.name}",
            extra={"campaign_id": campaign.campaign_id, "user_id": campaign.user_id}
        )
        return campaign

    def get_campaign(self, user_id: str, campaign_id: str) -> Optional[DripCampaign]:
        """Get campaign by ID within a tenant"""
        return self._campaign_model(self._campaigns.find_one({"campaign_id": campaign_id, "user_id": user_id}))

    def get_campaign_by_id(self, campaign_id: str) -> Optional[DripCampaign]:
        """Unscoped lookup used by the run processor"""
        return self._campaign_model(self._campaigns.find_one({"campaign_id": campaign_id}))

    def list_campaigns(
        self,
        user_id: str,
        status: Optional[CampaignStatus] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 20
    ) -> List[DripCampaign]:
        """List campaigns, newest first"""
        query = self._build_list_query(user_id, status, search)
        cursor = self._campaigns.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return [self._campaign_model(doc) for doc in cursor]

    def count_campaigns(
        self,
        user_id: str,
        status: Optional[CampaignStatus] = None,
        search: Optional[str] = None
    ) -> int:
        return self._campaigns.count_documents(self._build_list_query(user_id, status, search))

    def update_campaign(self, user_id: str, campaign_id: str, updates: Dict[str, Any]) -> Optional[DripCampaign]:
        """Apply a $set and return the updated campaign"""
        doc = self._campaigns.find_one_and_update(
            {"campaign_id": campaign_id, "user_id": user_id},
            {"$set": to_mongo(updates)},
            return_document=ReturnDocument.AFTER
        )
        return self._campaign_model(doc)

    def delete_campaign(self, user_id: str, campaign_id: str) -> bool:
        result = self._campaigns.delete_one({"campaign_id": campaign_id, "user_id": user_id})
        return result.deleted_count > 0

    def increment_metrics(self, campaign_id: str, **deltas: int) -> None:
        """Atomically adjust campaign metrics, e.g. total_sent=1"""
        changes = {f"metrics.{key}": value for key, value in deltas.items() if value}
        if changes:
            self._campaigns.update_one({"campaign_id": campaign_id}, {"$inc": changes})

    def get_metric_totals(self, user_id: str) -> Dict[str, int]:
        """Sum stored metrics across a tenant's campaigns"""
        totals = {
            "total_campaigns": 0,
            "active_campaigns": 0,
            "total_enrolled": 0,
            "total_sent": 0,
            "total_delivered": 0,
            "total_read": 0,
            "total_replied": 0,
            "total_converted": 0,
        }
        for doc in self._campaigns.find({"user_id": user_id}, {"status": 1, "metrics": 1}):
            totals["total_campaigns"] += 1
            if doc.get("status") == CampaignStatus.ACTIVE.value:
                totals["active_campaigns"] += 1
            metrics = doc.get("metrics") or {}
            for key in ("total_enrolled", "total_sent", "total_delivered", "total_read", "total_replied", "total_converted"):
                totals[key] += metrics.get(key, 0)
        return totals

    # =========================================================================
    # Runs
    # =========================================================================

    def create_run(self, run: DripRun) -> DripRun:
        """
        Insert a new run

        The (campaign_id, contact_id) unique index turns a concurrent
        double enrollment into AlreadyEnrolledError.
        """
        doc = to_mongo(run)
        doc["_id"] = run.run_id
        try:
            self._runs.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyEnrolledError(
                "Contact is already enrolled in this campaign",
                details={"campaign_id": run.campaign_id, "contact_id": run.contact_id}
            )
        return run

    def get_run(self, run_id: str, user_id: Optional[str] = None) -> Optional[DripRun]:
        query: Dict[str, Any] = {"run_id": run_id}
        if user_id:
            query["user_id"] = user_id
        return self._run_model(self._runs.find_one(query))

    def find_run(self, campaign_id: str, contact_id: str) -> Optional[DripRun]:
        """The (single) run of a contact in a campaign"""
        return self._run_model(self._runs.find_one({"campaign_id": campaign_id, "contact_id": contact_id}))

    def save_run(self, run: DripRun, expected_status: RunStatus = RunStatus.ACTIVE) -> bool:
        """
        Persist the processor's view of a run

        Guarded on the stored status so an unenroll or pause that landed
        while a message was being sent is not overwritten.
        """
        fields = to_mongo(run.model_dump(exclude={"run_id", "campaign_id", "user_id", "contact_id"} | _LEASE_FIELDS))
        result = self._runs.update_one(
            {"run_id": run.run_id, "status": expected_status.value},
            {"$set": fields}
        )
        return result.matched_count > 0

    def transition_run(
        self,
        filters: Dict[str, Any],
        from_statuses: List[RunStatus],
        updates: Dict[str, Any],
        inc: Optional[Dict[str, int]] = None
    ) -> Optional[DripRun]:
        """
        Atomically move a run out of one of ``from_statuses``

        Returns the updated run, or None if no run matched in an accepted state.
        """
        query = {**filters, "status": {"$in": [s.value for s in from_statuses]}}
        operation: Dict[str, Any] = {"$set": to_mongo(updates)}
        if inc:
            operation["$inc"] = inc
        doc = self._runs.find_one_and_update(query, operation, return_document=ReturnDocument.AFTER)
        return self._run_model(doc)

    def update_run_fields(self, run_id: str, updates: Dict[str, Any], guard: Optional[Dict[str, Any]] = None) -> bool:
        """Conditional $set on one run; returns whether the guard matched"""
        query = {"run_id": run_id, **(guard or {})}
        result = self._runs.update_one(query, {"$set": to_mongo(updates)})
        return result.matched_count > 0

    def set_campaign_runs_status(
        self,
        campaign_id: str,
        from_status: RunStatus,
        updates: Dict[str, Any]
    ) -> int:
        """Bulk move every run of a campaign out of one status"""
        result = self._runs.update_many(
            {"campaign_id": campaign_id, "status": from_status.value},
            {"$set": to_mongo(updates)}
        )
        return result.modified_count

    def count_enrolled_since(self, campaign_id: str, since: datetime) -> int:
        """Enrollments (including re-entries) at or after ``since``"""
        return self._runs.count_documents({"campaign_id": campaign_id, "enrolled_at": {"$gte": to_mongo(since)}})

    def find_due_runs(self, now: datetime, limit: int = 100) -> List[DripRun]:
        """Active, unleased runs whose next step is due, oldest first"""
        stored_now = to_mongo(now)
        cursor = self._runs.find({
            "status": RunStatus.ACTIVE.value,
            "next_step_scheduled_at": {"$lte": stored_now},
            "$or": [
                {"locked_until": None},
                {"locked_until": {"$lte": stored_now}},
            ],
        }).sort("next_step_scheduled_at", ASCENDING).limit(limit)
        return [self._run_model(doc) for doc in cursor]

    def list_runs(
        self,
        user_id: str,
        campaign_id: str,
        status: Optional[RunStatus] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[DripRun]:
        """Runs of a campaign, most recently enrolled first"""
        query = self._build_run_query(user_id, campaign_id, status)
        cursor = self._runs.find(query).sort("enrolled_at", DESCENDING).skip(skip).limit(limit)
        return [self._run_model(doc) for doc in cursor]

    def count_runs(self, user_id: str, campaign_id: str, status: Optional[RunStatus] = None) -> int:
        return self._runs.count_documents(self._build_run_query(user_id, campaign_id, status))

    # =========================================================================
    # Leases
    # =========================================================================

    def acquire_lease(self, run_id: str, owner: str, now: datetime, lease_seconds: int) -> Optional[DripRun]:
        """
        Claim a due run for processing

        Only one worker can hold a run at a time; an expired lease can be
        taken over. Returns the claimed run or None.
        """
        stored_now = to_mongo(now)
        try:
            doc = self._runs.find_one_and_update(
                {
                    "run_id": run_id,
                    "status": RunStatus.ACTIVE.value,
                    "$or": [
                        {"locked_until": None},
                        {"locked_until": {"$lte": stored_now}},
                    ],
                },
                {
                    "$set": {
                        "locked_until": to_mongo(now + timedelta(seconds=lease_seconds)),
                        "locked_by": owner,
                    }
                },
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            logger.error(f"Database error acquiring lease on run {run_id}: {e}", extra={"run_id": run_id})
            return None

        if doc is None:
            logger.debug(f"Run {run_id} already leased or no longer active", extra={"run_id": run_id})
        return self._run_model(doc)

    def release_lease(self, run_id: str, owner: str) -> bool:
        """Release a lease held by ``owner``"""
        try:
            result = self._runs.update_one(
                {"run_id": run_id, "locked_by": owner},
                {"$set": {"locked_until": None, "locked_by": None}}
            )
        except PyMongoError as e:
            logger.error(f"Database error releasing lease on run {run_id}: {e}", extra={"run_id": run_id})
            return False
        return result.modified_count > 0

    # =========================================================================
    # Helpers
    # =========================================================================

    def _build_list_query(
        self,
        user_id: str,
        status: Optional[CampaignStatus],
        search: Optional[str]
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": user_id}
        if status:
            query["status"] = CampaignStatus(status).value
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        return query

    def _build_run_query(self, user_id: str, campaign_id: str, status: Optional[RunStatus]) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": user_id, "campaign_id": campaign_id}
        if status:
            query["status"] = RunStatus(status).value
        return query

    def _campaign_model(self, doc: Optional[Dict[str, Any]]) -> Optional[DripCampaign]:
        if not doc:
            return None
        doc.pop("_id", None)
        return DripCampaign.model_validate(doc)

    def _run_model(self, doc: Optional[Dict[str, Any]]) -> Optional[DripRun]:
        if not doc:
            return None
        doc.pop("_id", None)
        return DripRun.model_validate(doc)
