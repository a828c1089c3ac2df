"""Drip Service - Campaign management, steps and enrollment"""
from typing import Any, Dict, List, Optional

from .base import build_model
from ..domain.models import DripCampaign, DripRun, DripStep
from ..domain.enums import CampaignStatus, ExitReason, RunStatus, StepHistoryStatus
from ..domain.errors import (
    CampaignNotFoundError, CampaignValidationError, DripRunNotFoundError, InvalidStateError,
    StepNotFoundError, ValidationError,
)
from ..engine.drip_engine import DripEngine
from ..repositories.drip_repo import DripRepository
from ..utils.idgen import generate_campaign_id, generate_step_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

EDITABLE_FIELDS = {
    "name", "description", "steps", "target_type", "target_segment_ids", "target_tags",
    "timezone", "start_date", "end_date", "schedule", "settings", "tags",
}


class DripService:
    """Service for drip campaign operations"""

    def __init__(self, repo: Optional[DripRepository] = None, engine: Optional[DripEngine] = None):
        self.repo = repo or DripRepository()
        self.engine = engine or DripEngine(drip_repo=self.repo)

    # =========================================================================
    # Campaigns
    # =========================================================================

    def create_campaign(self, user_id: str, data: Dict[str, Any]) -> DripCampaign:
        """Create a draft campaign"""
        now = utc_now()
        campaign = build_model(DripCampaign, {
            **{k: v for k, v in data.items() if k in EDITABLE_FIELDS},
            "campaign_id": generate_campaign_id(),
            "user_id": user_id,
            "status": CampaignStatus.DRAFT,
            "created_at": now,
            "updated_at": now,
        })
        return self.repo.create_campaign(campaign)

    def get_campaign(self, user_id: str, campaign_id: str) -> DripCampaign:
        campaign = self.repo.get_campaign(user_id, campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found", details={"campaign_id": campaign_id})
        return campaign

    def list_campaigns(
        self,
        user_id: str,
        status: Optional[CampaignStatus] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 20
    ) -> List[DripCampaign]:
        return self.repo.list_campaigns(user_id, status, search, skip, limit)

    def count_campaigns(self, user_id: str, status: Optional[CampaignStatus] = None, search: Optional[str] = None) -> int:
        return self.repo.count_campaigns(user_id, status, search)

    def update_campaign(self, user_id: str, campaign_id: str, updates: Dict[str, Any]) -> DripCampaign:
        existing = self.get_campaign(user_id, campaign_id)
        changes = {k: v for k, v in updates.items() if k in EDITABLE_FIELDS}
        if not changes:
            return existing
        return self._save_fields(existing, changes)

    def delete_campaign(self, user_id: str, campaign_id: str) -> Dict[str, Any]:
        """Delete a campaign; its live runs exit with campaign_ended"""
        self.get_campaign(user_id, campaign_id)
        self.repo.delete_campaign(user_id, campaign_id)
        exited = 0
        for status in (RunStatus.ACTIVE, RunStatus.PAUSED):
            exited += self.repo.set_campaign_runs_status(campaign_id, status, {
                "status": RunStatus.EXITED,
                "exited_at": utc_now(),
                "exit_reason": ExitReason.CAMPAIGN_ENDED,
                "next_step_scheduled_at": None,
            })
        logger.info(
            f"Deleted campaign: {campaign_id} ({exited} runs exited)",
            extra={"campaign_id": campaign_id, "user_id": user_id}
        )
        return {"deleted": True, "exited_runs": exited}

    def duplicate_campaign(self, user_id: str, campaign_id: str) -> DripCampaign:
        """Copy a campaign as a draft with fresh metrics and step ids"""
        original = self.get_campaign(user_id, campaign_id)
        data = original.model_dump(include=EDITABLE_FIELDS - {"start_date"})
        for step in data["steps"]:
            step["id"] = generate_step_id()
        now = utc_now()
        copy = build_model(DripCampaign, {
            **data,
            "name": f"{original.name} (Copy)",
            "campaign_id": generate_campaign_id(),
            "user_id": user_id,
            "status": CampaignStatus.DRAFT,
            "created_at": now,
            "updated_at": now,
        })
        return self.repo.create_campaign(copy)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def launch_campaign(self, user_id: str, campaign_id: str) -> DripCampaign:
        """
        Activate a campaign

        Raises:
            CampaignValidationError: Campaign has no steps
        """
        campaign = self.get_campaign(user_id, campaign_id)
        if not campaign.steps:
            raise CampaignValidationError(
                "Campaign must have at least one step",
                details={"campaign_id": campaign_id}
            )
        if campaign.status == CampaignStatus.ARCHIVED:
            raise InvalidStateError("Archived campaigns cannot be launched", details={"campaign_id": campaign_id})

        now = utc_now()
        updated = self.repo.update_campaign(user_id, campaign_id, {
            "status": CampaignStatus.ACTIVE,
            "start_date": campaign.start_date or now,
            "updated_at": now,
        })
        logger.info("Launched campaign", extra={"campaign_id": campaign_id, "user_id": user_id})
        return updated

    def pause_campaign(self, user_id: str, campaign_id: str) -> DripCampaign:
        """Pause a campaign and every active run in it"""
        campaign = self.get_campaign(user_id, campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            raise InvalidStateError("Only active campaigns can be paused", details={"campaign_id": campaign_id})
        paused = self.repo.set_campaign_runs_status(campaign_id, RunStatus.ACTIVE, {"status": RunStatus.PAUSED})
        updated = self.repo.update_campaign(user_id, campaign_id, {"status": CampaignStatus.PAUSED, "updated_at": utc_now()})
        logger.info(f"Paused campaign ({paused} runs)", extra={"campaign_id": campaign_id, "user_id": user_id})
        return updated

    def resume_campaign(self, user_id: str, campaign_id: str) -> DripCampaign:
        """Reactivate a paused campaign and its paused runs"""
        campaign = self.get_campaign(user_id, campaign_id)
        if campaign.status != CampaignStatus.PAUSED:
            raise InvalidStateError("Only paused campaigns can be resumed", details={"campaign_id": campaign_id})
        resumed = self.repo.set_campaign_runs_status(campaign_id, RunStatus.PAUSED, {"status": RunStatus.ACTIVE})
        updated = self.repo.update_campaign(user_id, campaign_id, {"status": CampaignStatus.ACTIVE, "updated_at": utc_now()})
        logger.info(f"Resumed campaign ({resumed} runs)", extra={"campaign_id": campaign_id, "user_id": user_id})
        return updated

    # =========================================================================
    # Steps
    # =========================================================================

    def add_step(self, user_id: str, campaign_id: str, data: Dict[str, Any]) -> DripCampaign:
        """Append a step; without an explicit order it goes last"""
        campaign = self.get_campaign(user_id, campaign_id)
        step_data = {**data, "id": generate_step_id()}
        step_data.setdefault("order", max((s.order for s in campaign.steps), default=-1) + 1)
        step = build_model(DripStep, step_data)
        return self._save_fields(campaign, {"steps": [*campaign.steps, step]})

    def update_step(self, user_id: str, campaign_id: str, step_id: str, updates: Dict[str, Any]) -> DripCampaign:
        campaign = self.get_campaign(user_id, campaign_id)
        steps = list(campaign.steps)
        for index, step in enumerate(steps):
            if step.id == step_id:
                steps[index] = build_model(DripStep, {**step.model_dump(), **updates, "id": step_id})
                return self._save_fields(campaign, {"steps": steps})
        raise StepNotFoundError(f"Step {step_id} not found", details={"campaign_id": campaign_id, "step_id": step_id})

    def remove_step(self, user_id: str, campaign_id: str, step_id: str) -> DripCampaign:
        campaign = self.get_campaign(user_id, campaign_id)
        steps = [s for s in campaign.steps if s.id != step_id]
        if len(steps) == len(campaign.steps):
            raise StepNotFoundError(f"Step {step_id} not found", details={"campaign_id": campaign_id, "step_id": step_id})
        return self._save_fields(campaign, {"steps": steps})

    def reorder_steps(self, user_id: str, campaign_id: str, step_ids: List[str]) -> DripCampaign:
        """
        Reassign step order from a list of step ids

        The list must name every step exactly once.
        """
        campaign = self.get_campaign(user_id, campaign_id)
        by_id = {step.id: step for step in campaign.steps}
        if sorted(step_ids) != sorted(by_id):
            raise ValidationError(
                "Step order must list every step exactly once",
                details={"campaign_id": campaign_id}
            )
        steps = [by_id[step_id].model_copy(update={"order": index}) for index, step_id in enumerate(step_ids)]
        return self._save_fields(campaign, {"steps": steps})

    def _save_fields(self, campaign: DripCampaign, changes: Dict[str, Any]) -> DripCampaign:
        merged = build_model(DripCampaign, {**campaign.model_dump(), **changes, "updated_at": utc_now()})
        fields = {key: getattr(merged, key) for key in changes}
        fields["updated_at"] = merged.updated_at
        return self.repo.update_campaign(campaign.user_id, campaign.campaign_id, fields)

    # =========================================================================
    # Runs
    # =========================================================================

    def enroll_contact(
        self,
        user_id: str,
        campaign_id: str,
        contact_id: str,
        contact_phone: str = "",
        variables: Optional[Dict[str, Any]] = None
    ) -> DripRun:
        return self.engine.enroll_contact(user_id, campaign_id, contact_id, contact_phone, variables)

    def unenroll_contact(
        self,
        user_id: str,
        campaign_id: str,
        contact_id: str,
        reason: ExitReason = ExitReason.MANUAL
    ) -> DripRun:
        return self.engine.unenroll_contact(user_id, campaign_id, contact_id, reason)

    def mark_conversion(self, user_id: str, campaign_id: str, contact_id: str) -> DripRun:
        return self.engine.mark_conversion(user_id, campaign_id, contact_id)

    def record_message_status(self, user_id: str, run_id: str, status: StepHistoryStatus) -> DripRun:
        run = self.get_run(user_id, run_id)
        return self.engine.record_message_status(run.run_id, status)

    def get_run(self, user_id: str, run_id: str) -> DripRun:
        run = self.repo.get_run(run_id, user_id)
        if not run:
            raise DripRunNotFoundError(f"Drip run {run_id} not found", details={"run_id": run_id})
        return run

    def list_runs(
        self,
        user_id: str,
        campaign_id: str,
        status: Optional[RunStatus] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[DripRun]:
        self.get_campaign(user_id, campaign_id)
        return self.repo.list_runs(user_id, campaign_id, status, skip, limit)

    def count_runs(self, user_id: str, campaign_id: str, status: Optional[RunStatus] = None) -> int:
        return self.repo.count_runs(user_id, campaign_id, status)

    def get_campaign_stats(self, user_id: str) -> Dict[str, Any]:
        """Funnel rates across all of a tenant's campaigns"""
        totals = self.repo.get_metric_totals(user_id)

        def rate(part: int, whole: int) -> int:
            return round(part / whole * 100) if whole else 0

        return {
            "total_campaigns": totals["total_campaigns"],
            "active_campaigns": totals["active_campaigns"],
            "total_enrolled": totals["total_enrolled"],
            "delivery_rate": rate(totals["total_delivered"], totals["total_sent"]),
            "read_rate": rate(totals["total_read"], totals["total_delivered"]),
            "reply_rate": rate(totals["total_replied"], totals["total_read"]),
            "conversion_rate": rate(totals["total_converted"], totals["total_enrolled"]),
        }
