"""Drip Engine - Enrollment and step processing for drip campaigns"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .collaborators import Clock, ContactStore, MessageSender, SystemClock
from .condition_evaluator import ConditionEvaluator
from .drip_schedule import compute_send_time, local_day_start
from .node_handlers import interpolate
from ..config.settings import settings
from ..domain.models import DripCampaign, DripRun, DripStep, StepHistoryEntry
from ..domain.enums import (
    CampaignStatus, DripMessageType, ExitReason, RunStatus, StepHistoryStatus, StepStatus,
)
from ..domain.errors import (
    AlreadyEnrolledError, CampaignNotFoundError, CampaignValidationError, ConcurrencyError,
    DailyLimitError, DripRunNotFoundError, InvalidStateError, MessageGatewayError,
    ReEntryTooSoonError,
)
from ..repositories.drip_repo import DripRepository
from ..utils.idgen import generate_run_id
from ..utils.logger import get_logger

logger = get_logger(__name__)

LIVE_RUN_STATUSES = [RunStatus.ACTIVE, RunStatus.PAUSED]
ENDED_RUN_STATUSES = [RunStatus.COMPLETED, RunStatus.EXITED, RunStatus.FAILED]


class DripEngine:
    """
    Walks enrolled contacts through a campaign's ordered steps

    Processing is pull based: the scheduler asks for due runs, leases
    each one and hands it to process_run. A run only ever moves forward
    one sent step per call.
    """

    def __init__(
        self,
        drip_repo: Optional[DripRepository] = None,
        message_sender: Optional[MessageSender] = None,
        contact_store: Optional[ContactStore] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Optional[Clock] = None,
        retry_delay_seconds: Optional[int] = None
    ):
        self.drip_repo = drip_repo or DripRepository()
        self.message_sender = message_sender
        self.contact_store = contact_store
        self.evaluator = evaluator or ConditionEvaluator()
        self.clock = clock or SystemClock()
        self.retry_delay_seconds = (
            retry_delay_seconds if retry_delay_seconds is not None else settings.drip_retry_delay_seconds
        )

    # =========================================================================
    # Enrollment
    # =========================================================================

    def enroll_contact(
        self,
        user_id: str,
        campaign_id: str,
        contact_id: str,
        contact_phone: str = "",
        variables: Optional[Dict[str, Any]] = None
    ) -> DripRun:
        """
        Enroll a contact into an active campaign

        Raises:
            CampaignNotFoundError: Campaign missing
            InvalidStateError: Campaign not active
            CampaignValidationError: Campaign has no steps
            AlreadyEnrolledError: Existing run and re-entry not allowed (or still live)
            ReEntryTooSoonError: Previous run ended within re_entry_delay_days
            DailyLimitError: max_contacts_per_day already reached today
        """
        campaign = self.drip_repo.get_campaign(user_id, campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        if campaign.status != CampaignStatus.ACTIVE:
            raise InvalidStateError(
                "Campaign is not active",
                details={"campaign_id": campaign_id, "status": campaign.status.value}
            )
        steps = campaign.ordered_steps()
        if not steps:
            raise CampaignValidationError("Campaign has no steps", details={"campaign_id": campaign_id})

        now = self.clock.now()
        existing = self.drip_repo.find_run(campaign_id, contact_id)
        if existing:
            self._check_re_entry(campaign, existing, now)

        enrolled_today = self.drip_repo.count_enrolled_since(campaign_id, local_day_start(campaign, now))
        if enrolled_today >= campaign.settings.max_contacts_per_day:
            raise DailyLimitError(
                "Campaign reached its daily enrollment limit",
                details={"campaign_id": campaign_id, "limit": campaign.settings.max_contacts_per_day}
            )

        next_at = compute_send_time(campaign, steps[0], now)
        if existing:
            run = self.drip_repo.transition_run(
                {"run_id": existing.run_id},
                ENDED_RUN_STATUSES,
                {
                    "status": RunStatus.ACTIVE,
                    "current_step_index": 0,
                    "enrolled_at": now,
                    "completed_at": None,
                    "exited_at": None,
                    "exit_reason": None,
                    "next_step_scheduled_at": next_at,
                    "variables": variables or {},
                    "contact_phone": contact_phone or existing.contact_phone,
                    "replied": False,
                    "converted": False,
                },
                inc={"entry_count": 1},
            )
            if not run:
                raise ConcurrencyError(
                    "Run changed while re-enrolling",
                    details={"campaign_id": campaign_id, "contact_id": contact_id}
                )
        else:
            run = self.drip_repo.create_run(DripRun(
                run_id=generate_run_id(),
                campaign_id=campaign_id,
                user_id=user_id,
                contact_id=contact_id,
                contact_phone=contact_phone,
                status=RunStatus.ACTIVE,
                current_step_index=0,
                enrolled_at=now,
                next_step_scheduled_at=next_at,
                variables=variables or {},
            ))

        self.drip_repo.increment_metrics(campaign_id, total_enrolled=1, active_contacts=1)
        logger.info(
            f"Enrolled contact (entry {run.entry_count})",
            extra={"campaign_id": campaign_id, "run_id": run.run_id, "contact_id": contact_id}
        )
        return run

    def _check_re_entry(self, campaign: DripCampaign, existing: DripRun, now: datetime) -> None:
        if not campaign.settings.allow_re_entry:
            raise AlreadyEnrolledError(
                "Contact is already enrolled in this campaign",
                details={"campaign_id": campaign.campaign_id, "contact_id": existing.contact_id}
            )
        if existing.status in LIVE_RUN_STATUSES:
            raise AlreadyEnrolledError(
                "Contact is still active in this campaign",
                details={"campaign_id": campaign.campaign_id, "run_id": existing.run_id}
            )

        ended_at = existing.exited_at or existing.completed_at or existing.enrolled_at
        delay = timedelta(days=campaign.settings.re_entry_delay_days)
        if now - ended_at < delay:
            raise ReEntryTooSoonError(
                f"Contact must wait {campaign.settings.re_entry_delay_days} days before re-entry",
                details={"campaign_id": campaign.campaign_id, "run_id": existing.run_id}
            )

    def unenroll_contact(
        self,
        user_id: str,
        campaign_id: str,
        contact_id: str,
        reason: ExitReason = ExitReason.MANUAL
    ) -> DripRun:
        """Exit a contact's live run"""
        run = self._exit_run(
            {"campaign_id": campaign_id, "contact_id": contact_id, "user_id": user_id},
            ExitReason(reason),
        )
        if not run:
            raise DripRunNotFoundError(
                "No active run for this contact",
                details={"campaign_id": campaign_id, "contact_id": contact_id}
            )
        return run

    def mark_conversion(self, user_id: str, campaign_id: str, contact_id: str) -> DripRun:
        """
        Record that a contact converted

        Counted once per run entry; exits the run when the campaign stops
        on conversion.
        """
        run = self.drip_repo.find_run(campaign_id, contact_id)
        if not run or run.user_id != user_id:
            raise DripRunNotFoundError(
                "Contact is not enrolled in this campaign",
                details={"campaign_id": campaign_id, "contact_id": contact_id}
            )

        if self.drip_repo.update_run_fields(run.run_id, {"converted": True}, guard={"converted": False}):
            self.drip_repo.increment_metrics(campaign_id, total_converted=1)
            run.converted = True

        campaign = self.drip_repo.get_campaign_by_id(campaign_id)
        if campaign and campaign.settings.stop_on_conversion and run.status in LIVE_RUN_STATUSES:
            exited = self._exit_run({"run_id": run.run_id}, ExitReason.CONVERTED)
            if exited:
                return exited
        return self.drip_repo.get_run(run.run_id) or run

    def record_message_status(self, run_id: str, status: StepHistoryStatus) -> DripRun:
        """
        Apply a delivery receipt to the run's most recent message

        Accepts delivered, read and replied. Metrics move only the first
        time a given receipt arrives for the message.
        """
        status = StepHistoryStatus(status)
        if status not in (StepHistoryStatus.DELIVERED, StepHistoryStatus.READ, StepHistoryStatus.REPLIED):
            raise InvalidStateError(f"Unsupported message status: {status.value}")

        run = self.drip_repo.get_run(run_id)
        if not run:
            raise DripRunNotFoundError(f"Drip run {run_id} not found")
        sent_entries = [i for i, e in enumerate(run.step_history) if e.sent_at is not None]
        if not sent_entries:
            raise InvalidStateError("Run has no sent messages", details={"run_id": run_id})

        index = sent_entries[-1]
        entry = run.step_history[index]
        stamp_field = f"{status.value}_at"
        if getattr(entry, stamp_field) is not None:
            return run

        now = self.clock.now()
        updates: Dict[str, Any] = {
            f"step_history.{index}.status": status,
            f"step_history.{index}.{stamp_field}": now,
        }
        if status == StepHistoryStatus.REPLIED:
            updates["replied"] = True
        if not self.drip_repo.update_run_fields(run_id, updates, guard={f"step_history.{index}.{stamp_field}": None}):
            return self.drip_repo.get_run(run_id) or run

        self.drip_repo.increment_metrics(run.campaign_id, **{f"total_{status.value}": 1})

        if status == StepHistoryStatus.REPLIED and run.status in LIVE_RUN_STATUSES:
            campaign = self.drip_repo.get_campaign_by_id(run.campaign_id)
            if campaign and campaign.settings.stop_on_reply:
                exited = self._exit_run({"run_id": run_id}, ExitReason.REPLIED)
                if exited:
                    return exited
        return self.drip_repo.get_run(run_id) or run

    def _exit_run(self, filters: Dict[str, Any], reason: ExitReason) -> Optional[DripRun]:
        run = self.drip_repo.transition_run(
            filters,
            LIVE_RUN_STATUSES,
            {
                "status": RunStatus.EXITED,
                "exited_at": self.clock.now(),
                "exit_reason": reason,
                "next_step_scheduled_at": None,
            },
        )
        if run:
            self.drip_repo.increment_metrics(run.campaign_id, active_contacts=-1, exited_contacts=1)
            logger.info(
                f"Run exited: {reason.value}",
                extra={"campaign_id": run.campaign_id, "run_id": run.run_id, "contact_id": run.contact_id}
            )
        return run

    # =========================================================================
    # Processing
    # =========================================================================

    def get_due_runs(self, limit: Optional[int] = None) -> List[DripRun]:
        """Active, unleased runs whose next step is due, oldest first"""
        return self.drip_repo.find_due_runs(self.clock.now(), limit or settings.drip_batch_size)

    def claim_run(self, run_id: str, owner: str, lease_seconds: Optional[int] = None) -> Optional[DripRun]:
        return self.drip_repo.acquire_lease(
            run_id, owner, self.clock.now(), lease_seconds or settings.drip_lease_seconds
        )

    def release_run(self, run_id: str, owner: str) -> bool:
        return self.drip_repo.release_lease(run_id, owner)

    async def process_run(self, run: DripRun) -> DripRun:
        """
        Send the run's current step (skipping steps that do not apply)

        Success appends a 'sent' entry and advances (or completes the run).
        A failed send appends a 'failed' entry and reschedules the same
        step after the retry delay.
        """
        now = self.clock.now()
        campaign = self.drip_repo.get_campaign_by_id(run.campaign_id)
        if not campaign or campaign.status != CampaignStatus.ACTIVE:
            return self._exit_run({"run_id": run.run_id}, ExitReason.CAMPAIGN_ENDED) or run

        steps = campaign.ordered_steps()
        index = run.current_step_index
        record = self._build_record(run)
        skipped = False
        while index < len(steps):
            reason = self._skip_reason(steps[index], run, record, now)
            if reason is None:
                break
            run.step_history.append(StepHistoryEntry(
                step_id=steps[index].id,
                step_order=steps[index].order,
                status=StepHistoryStatus.SKIPPED,
                scheduled_at=run.next_step_scheduled_at,
                error=reason,
            ))
            index += 1
            skipped = True

        if index >= len(steps):
            run.current_step_index = index
            return self._complete(run)

        step = steps[index]
        run.current_step_index = index
        if skipped:
            due_at = compute_send_time(campaign, step, now)
            if due_at > now:
                run.next_step_scheduled_at = due_at
                self._save(run)
                return run

        scheduled_at = run.next_step_scheduled_at or now
        try:
            message_id = await self._send_step(campaign, step, run)
        except Exception as e:
            error = str(e) or type(e).__name__
            run.step_history.append(StepHistoryEntry(
                step_id=step.id,
                step_order=step.order,
                status=StepHistoryStatus.FAILED,
                scheduled_at=scheduled_at,
                error=error,
            ))
            run.next_step_scheduled_at = now + timedelta(seconds=self.retry_delay_seconds)
            self.drip_repo.increment_metrics(campaign.campaign_id, total_failed=1)
            logger.warning(
                f"Drip step send failed: {error}",
                extra={"campaign_id": campaign.campaign_id, "run_id": run.run_id, "contact_id": run.contact_id}
            )
            self._save(run)
            return run

        run.step_history.append(StepHistoryEntry(
            step_id=step.id,
            step_order=step.order,
            status=StepHistoryStatus.SENT,
            message_id=message_id,
            scheduled_at=scheduled_at,
            sent_at=now,
        ))
        self.drip_repo.increment_metrics(campaign.campaign_id, total_sent=1)

        next_index = index + 1
        if next_index >= len(steps):
            run.current_step_index = next_index
            return self._complete(run)

        run.current_step_index = next_index
        run.next_step_scheduled_at = compute_send_time(campaign, steps[next_index], now)
        self._save(run)
        logger.info(
            f"Drip step {step.order} sent",
            extra={"campaign_id": campaign.campaign_id, "run_id": run.run_id, "contact_id": run.contact_id}
        )
        return run

    def _skip_reason(self, step: DripStep, run: DripRun, record: Dict[str, Any], now: datetime) -> Optional[str]:
        if step.status == StepStatus.PAUSED:
            return "Step is paused"
        if step.skip_if_replied and run.replied:
            return "Contact already replied"
        if step.skip_if_converted and run.converted:
            return "Contact already converted"
        if step.conditions is not None and not self.evaluator.evaluate(step.conditions, record, now):
            return "Step conditions not met"
        return None

    def _build_record(self, run: DripRun) -> Dict[str, Any]:
        """What step conditions and message placeholders see"""
        contact: Dict[str, Any] = {}
        if self.contact_store is not None:
            contact = self.contact_store.get_contact(run.user_id, run.contact_id) or {}
        return {
            **contact,
            **run.variables,
            "contact_id": run.contact_id,
            "contact_phone": run.contact_phone,
            "replied": run.replied,
            "converted": run.converted,
        }

    async def _send_step(self, campaign: DripCampaign, step: DripStep, run: DripRun) -> Optional[str]:
        if self.message_sender is None:
            raise MessageGatewayError("No message sender configured")
        values = self._build_record(run)
        contact = {"contact_id": run.contact_id, "user_id": run.user_id, "phone": run.contact_phone}
        result = await self.message_sender.send(contact, build_step_content(step, values))
        if not result.success:
            raise MessageGatewayError(result.error or "Message send failed")
        return result.message_id

    def _complete(self, run: DripRun) -> DripRun:
        now = self.clock.now()
        run.status = RunStatus.COMPLETED
        run.completed_at = now
        run.exit_reason = ExitReason.COMPLETED
        run.next_step_scheduled_at = None
        if self._save(run):
            self.drip_repo.increment_metrics(run.campaign_id, active_contacts=-1, completed_contacts=1)
            logger.info(
                "Drip run completed",
                extra={"campaign_id": run.campaign_id, "run_id": run.run_id, "status": "completed"}
            )
        return run

    def _save(self, run: DripRun) -> bool:
        """Guarded on ACTIVE; the in-memory run may already say COMPLETED"""
        saved = self.drip_repo.save_run(run, expected_status=RunStatus.ACTIVE)
        if not saved:
            logger.info(
                "Run left the active state while processing; result discarded",
                extra={"campaign_id": run.campaign_id, "run_id": run.run_id}
            )
        return saved


def build_step_content(step: DripStep, values: Dict[str, Any]) -> Dict[str, Any]:
    """Message payload handed to the sender for one step"""
    if step.message_type == DripMessageType.TEMPLATE:
        return {
            "type": "template",
            "template_id": step.template_id,
            "template_name": step.template_name,
            "variables": interpolate(step.template_variables, values),
        }
    if step.message_type == DripMessageType.MEDIA:
        return {
            "type": "media",
            "media_url": step.media_url,
            "media_type": step.media_type,
            "caption": interpolate(step.text_content or "", values),
        }
    if step.message_type == DripMessageType.INTERACTIVE:
        return {
            "type": "interactive",
            "text": interpolate(step.text_content or "", values),
            "buttons": [button.model_dump() for button in step.buttons],
        }
    return {"type": "text", "text": interpolate(step.text_content or "", values)}
