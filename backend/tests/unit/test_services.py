"""Tests for the trigger, flow and drip management services"""
import pytest

from crm_automation.domain.enums import CampaignStatus, FlowStatus, TriggerStatus
from crm_automation.domain.errors import (
    CampaignNotFoundError, CampaignValidationError, FlowValidationError, InvalidStateError,
    NotFoundError, StepNotFoundError, TriggerNotFoundError, ValidationError,
)
from tests.factories import make_campaign_data, make_trigger_data, node, edge


class TestTriggerService:
    def test_create_and_get(self, runtime, user_id):
        service = runtime.trigger_service
        data = make_trigger_data()
        del data["status"]
        trigger = service.create_trigger(user_id, data)
        assert trigger.trigger_id.startswith("TRG-")
        assert trigger.status == TriggerStatus.DRAFT
        assert [a.order for a in trigger.actions] == [0, 1]
        assert service.get_trigger(user_id, trigger.trigger_id).name == "New lead follow-up"

    def test_tenants_are_isolated(self, runtime, user_id):
        trigger = runtime.trigger_service.create_trigger(user_id, make_trigger_data())
        with pytest.raises(TriggerNotFoundError):
            runtime.trigger_service.get_trigger("someone-else", trigger.trigger_id)

    def test_invalid_action_config_is_rejected(self, runtime, user_id):
        data = make_trigger_data(actions=[{"type": "send_template", "config": {}}])
        with pytest.raises(ValidationError):
            runtime.trigger_service.create_trigger(user_id, data)

    def test_update_revalidates(self, runtime, user_id):
        service = runtime.trigger_service
        trigger = service.create_trigger(user_id, make_trigger_data())

        updated = service.update_trigger(user_id, trigger.trigger_id, {"name": "Renamed", "priority": 5, "status": "paused"})
        assert updated.name == "Renamed"
        assert updated.priority == 5
        assert updated.status == TriggerStatus.ACTIVE

        with pytest.raises(ValidationError):
            service.update_trigger(user_id, trigger.trigger_id, {"actions": [{"type": "add_tag", "config": {}}]})
        assert service.get_trigger(user_id, trigger.trigger_id).actions[0].config == {"tag": "hot"}

    def test_lifecycle_and_duplicate(self, runtime, user_id):
        service = runtime.trigger_service
        trigger = service.create_trigger(user_id, make_trigger_data())

        assert service.pause_trigger(user_id, trigger.trigger_id).status == TriggerStatus.PAUSED
        assert service.activate_trigger(user_id, trigger.trigger_id).status == TriggerStatus.ACTIVE

        copy = service.duplicate_trigger(user_id, trigger.trigger_id)
        assert copy.name == "New lead follow-up (Copy)"
        assert copy.status == TriggerStatus.DRAFT
        assert copy.execution_count == 0
        assert {a.id for a in copy.actions}.isdisjoint({a.id for a in trigger.actions})

        assert service.delete_trigger(user_id, trigger.trigger_id) is True
        with pytest.raises(TriggerNotFoundError):
            service.delete_trigger(user_id, trigger.trigger_id)

    def test_list_filters_and_counts(self, runtime, user_id):
        service = runtime.trigger_service
        service.create_trigger(user_id, make_trigger_data(name="Lead welcome"))
        service.create_trigger(user_id, make_trigger_data(name="Order update", event_source="webhook", status="draft"))

        assert service.count_triggers(user_id) == 2
        assert [t.name for t in service.list_triggers(user_id, status=TriggerStatus.ACTIVE)] == ["Lead welcome"]
        assert [t.name for t in service.list_triggers(user_id, event_source="webhook")] == ["Order update"]
        assert [t.name for t in service.list_triggers(user_id, search="order")] == ["Order update"]
        assert len(service.list_triggers(user_id, skip=1, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_stats(self, runtime, executor, user_id):
        service = runtime.trigger_service
        service.create_trigger(user_id, make_trigger_data())
        service.create_trigger(user_id, make_trigger_data(status="paused"))
        executor.failing["send_template"] = "no template"

        await runtime.trigger_engine.process_event(user_id, {
            "source_type": "facebook_lead", "event_type": "lead_created", "payload": {"lead_score": 90},
        })
        await runtime.drain()

        stats = service.get_trigger_stats(user_id)
        assert stats["total_triggers"] == 2
        assert stats["active_triggers"] == 1
        assert stats["total_executions"] == 1
        assert stats["success_rate"] == 0.0

    def test_missing_execution(self, runtime, user_id):
        with pytest.raises(NotFoundError):
            runtime.trigger_service.get_execution(user_id, "exe-missing")


class TestFlowService:
    def valid_graph(self):
        return {
            "nodes": [node("s", "start"), node("m", "message", message="hi"), node("e", "end")],
            "edges": [edge("s", "m"), edge("m", "e")],
        }

    def test_publish_snapshots_a_new_version(self, runtime, user_id):
        service = runtime.flow_service
        flow = service.create_flow(user_id, {"name": "Welcome", **self.valid_graph()})
        assert flow.status == FlowStatus.DRAFT
        assert flow.version == 1

        published = service.publish_flow(user_id, flow.flow_id)
        assert published.status == FlowStatus.PUBLISHED
        assert published.version == 2
        assert published.published_at is not None

        service.publish_flow(user_id, flow.flow_id)
        assert [v.version for v in service.list_versions(user_id, flow.flow_id)] == [3, 2]

    def test_publish_reports_every_error(self, runtime, user_id):
        flow = runtime.flow_service.create_flow(user_id, {"name": "Broken", "nodes": [node("m", "message")]})
        with pytest.raises(FlowValidationError) as exc_info:
            runtime.flow_service.publish_flow(user_id, flow.flow_id)

        errors = exc_info.value.details["errors"]
        assert "Flow must have at least one start node" in errors
        assert "Flow must have at least one end node" in errors
        assert runtime.flow_service.get_flow(user_id, flow.flow_id).status == FlowStatus.DRAFT
        assert runtime.flow_service.list_versions(user_id, flow.flow_id) == []

    def test_validate_without_publishing(self, runtime, user_id):
        flow = runtime.flow_service.create_flow(user_id, {"name": "Ok", **self.valid_graph()})
        assert runtime.flow_service.validate_flow(user_id, flow.flow_id) == {"is_valid": True, "errors": []}
        assert runtime.flow_service.get_flow(user_id, flow.flow_id).status == FlowStatus.DRAFT

    def test_archived_flows_are_frozen(self, runtime, user_id):
        service = runtime.flow_service
        flow = service.create_flow(user_id, {"name": "Old", **self.valid_graph()})
        service.archive_flow(user_id, flow.flow_id)
        with pytest.raises(InvalidStateError):
            service.update_flow(user_id, flow.flow_id, {"name": "New"})
        with pytest.raises(InvalidStateError):
            service.publish_flow(user_id, flow.flow_id)

    def test_unpublish_and_duplicate(self, runtime, user_id):
        service = runtime.flow_service
        flow = service.create_flow(user_id, {"name": "Welcome", **self.valid_graph()})
        service.publish_flow(user_id, flow.flow_id)
        assert service.unpublish_flow(user_id, flow.flow_id).status == FlowStatus.DRAFT

        copy = service.duplicate_flow(user_id, flow.flow_id)
        assert copy.name == "Welcome (Copy)"
        assert copy.version == 1
        assert copy.total_instances == 0
        assert len(copy.nodes) == 3
        assert service.count_flows(user_id) == 2
        assert [f.name for f in service.list_flows(user_id, search="copy")] == ["Welcome (Copy)"]

    @pytest.mark.asyncio
    async def test_stats(self, runtime, clock, user_id):
        service = runtime.flow_service
        flow = service.create_flow(user_id, {"name": "Welcome", **self.valid_graph()})
        service.publish_flow(user_id, flow.flow_id)
        waiting = service.create_flow(user_id, {
            "name": "Slow",
            "nodes": [node("s", "start"), node("d", "delay", delay_minutes=60), node("e", "end")],
            "edges": [edge("s", "d"), edge("d", "e")],
        })
        service.publish_flow(user_id, waiting.flow_id)
        service.create_flow(user_id, {"name": "Draft"})

        await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c1")
        clock.advance(days=2)
        await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c2")
        await runtime.flow_engine.start_instance(user_id, waiting.flow_id, "c3")
        await runtime.drain()

        assert service.get_flow_stats(user_id) == {
            "total_flows": 3,
            "published_flows": 2,
            "active_instances": 1,
            "completion_rate": 66.67,
            "recent_instances": 2,
        }
        assert service.get_flow_stats("someone-else")["total_flows"] == 0

    def test_invalid_node_type_is_a_validation_error(self, runtime, user_id):
        with pytest.raises(ValidationError):
            runtime.flow_service.create_flow(user_id, {"name": "Bad", "nodes": [node("x", "teleport")]})


class TestDripService:
    def test_launch_needs_steps(self, runtime, user_id):
        service = runtime.drip_service
        campaign = service.create_campaign(user_id, make_campaign_data(steps=[]))
        with pytest.raises(CampaignValidationError):
            service.launch_campaign(user_id, campaign.campaign_id)

        launched = service.launch_campaign(user_id, service.create_campaign(user_id, make_campaign_data()).campaign_id)
        assert launched.status == CampaignStatus.ACTIVE
        assert launched.start_date is not None

    def test_invalid_timezone_is_rejected(self, runtime, user_id):
        with pytest.raises(ValidationError):
            runtime.drip_service.create_campaign(user_id, make_campaign_data(timezone="Mars/Olympus"))

    def test_pause_and_resume_rules(self, runtime, user_id):
        service = runtime.drip_service
        campaign = service.create_campaign(user_id, make_campaign_data())
        with pytest.raises(InvalidStateError):
            service.pause_campaign(user_id, campaign.campaign_id)
        service.launch_campaign(user_id, campaign.campaign_id)
        assert service.pause_campaign(user_id, campaign.campaign_id).status == CampaignStatus.PAUSED
        with pytest.raises(InvalidStateError):
            service.pause_campaign(user_id, campaign.campaign_id)
        assert service.resume_campaign(user_id, campaign.campaign_id).status == CampaignStatus.ACTIVE

    def test_step_management(self, runtime, user_id):
        service = runtime.drip_service
        campaign = service.create_campaign(user_id, make_campaign_data())
        first = campaign.steps[0]

        campaign = service.add_step(user_id, campaign.campaign_id, {"day_offset": 3, "text_content": "Follow up"})
        second = campaign.steps[1]
        assert second.order == 1

        campaign = service.update_step(user_id, campaign.campaign_id, second.id, {"time_of_day": "11:30"})
        assert campaign.steps[1].time_of_day == "11:30"
        with pytest.raises(ValidationError):
            service.update_step(user_id, campaign.campaign_id, second.id, {"time_of_day": "25:00"})

        campaign = service.reorder_steps(user_id, campaign.campaign_id, [second.id, first.id])
        assert [s.id for s in campaign.ordered_steps()] == [second.id, first.id]
        with pytest.raises(ValidationError):
            service.reorder_steps(user_id, campaign.campaign_id, [first.id])

        campaign = service.remove_step(user_id, campaign.campaign_id, first.id)
        assert [s.id for s in campaign.steps] == [second.id]
        with pytest.raises(StepNotFoundError):
            service.remove_step(user_id, campaign.campaign_id, first.id)

    def test_duplicate_gets_fresh_ids_and_metrics(self, runtime, user_id):
        service = runtime.drip_service
        campaign = service.launch_campaign(user_id, service.create_campaign(user_id, make_campaign_data()).campaign_id)
        service.enroll_contact(user_id, campaign.campaign_id, "c1")

        copy = service.duplicate_campaign(user_id, campaign.campaign_id)
        assert copy.status == CampaignStatus.DRAFT
        assert copy.metrics.total_enrolled == 0
        assert copy.start_date is None
        assert copy.steps[0].id != campaign.steps[0].id

    def test_runs_listing_and_stats(self, runtime, user_id):
        service = runtime.drip_service
        campaign = service.launch_campaign(user_id, service.create_campaign(user_id, make_campaign_data()).campaign_id)
        service.enroll_contact(user_id, campaign.campaign_id, "c1")
        service.enroll_contact(user_id, campaign.campaign_id, "c2")
        service.mark_conversion(user_id, campaign.campaign_id, "c2")

        assert service.count_runs(user_id, campaign.campaign_id) == 2
        assert len(service.list_runs(user_id, campaign.campaign_id)) == 2

        stats = service.get_campaign_stats(user_id)
        assert stats["total_campaigns"] == 1
        assert stats["active_campaigns"] == 1
        assert stats["total_enrolled"] == 2
        assert stats["conversion_rate"] == 50
        assert stats["delivery_rate"] == 0

        with pytest.raises(CampaignNotFoundError):
            service.list_runs("someone-else", campaign.campaign_id)
