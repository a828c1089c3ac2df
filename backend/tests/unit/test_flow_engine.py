"""Tests for flow instance walks, suspension and lifecycle"""
import pytest

from crm_automation.domain.enums import InstanceStatus, NodeHistoryStatus, WaitKind
from crm_automation.domain.errors import (
    FlowInstanceNotFoundError, FlowNotFoundError, InstanceLimitError, InvalidStateError,
)
from tests.factories import node, edge


def published_flow(runtime, user_id, nodes, edges, **settings):
    flow = runtime.flow_service.create_flow(user_id, {
        "name": "Test flow",
        "nodes": nodes,
        "edges": edges,
        "settings": settings,
    })
    return runtime.flow_service.publish_flow(user_id, flow.flow_id)


def linear(*middle):
    nodes = [node("s", "start"), *middle, node("e", "end")]
    ids = [n["id"] for n in nodes]
    return nodes, [edge(a, b) for a, b in zip(ids, ids[1:])]


class TestWalk:
    @pytest.mark.asyncio
    async def test_linear_walk_completes(self, runtime, sender, executor, user_id):
        nodes, edges = linear(
            node("m", "message", message="Hi {{name}}"),
            node("t", "add_tag", tag="welcomed"),
        )
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c1", context={"name": "Asha"})
        await runtime.drain()

        instance = runtime.flow_service.get_instance(user_id, started.instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.flow_version == 2
        assert [h.node_id for h in instance.node_history] == ["s", "m", "t", "e"]
        assert all(h.status == NodeHistoryStatus.COMPLETED for h in instance.node_history)
        assert sender.sent[0]["content"]["text"] == "Hi Asha"
        assert executor.types() == ["add_tag"]

        stored = runtime.flow_service.get_flow(user_id, flow.flow_id)
        assert (stored.total_instances, stored.active_instances, stored.completed_instances) == (1, 0, 1)

    @pytest.mark.asyncio
    async def test_variable_defaults_and_overrides(self, runtime, user_id):
        nodes, edges = linear(node("u", "update_property", property="greeting", value="Hello {{tier}}"))
        flow = runtime.flow_service.create_flow(user_id, {
            "name": "Vars",
            "nodes": nodes,
            "edges": edges,
            "variables": [{"key": "tier", "default_value": "silver"}, {"key": "region", "default_value": "IN"}],
        })
        runtime.flow_service.publish_flow(user_id, flow.flow_id)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id, variables={"tier": "gold"})
        await runtime.drain()

        instance = runtime.flow_service.get_instance(user_id, started.instance_id)
        assert instance.variables == {"tier": "gold", "region": "IN", "greeting": "Hello gold"}

    @pytest.mark.asyncio
    async def test_condition_branches(self, runtime, sender, user_id):
        nodes = [
            node("s", "start"),
            node("c", "condition", condition={"logic": "AND", "conditions": [
                {"field": "score", "operator": "greater_than", "value": 50},
            ]}),
            node("hot", "message", message="hot"),
            node("cold", "message", message="cold"),
            node("e", "end"),
        ]
        edges = [
            edge("s", "c"), edge("c", "hot", "true"), edge("c", "cold", "false"),
            edge("hot", "e"), edge("cold", "e"),
        ]
        flow = published_flow(runtime, user_id, nodes, edges)
        await runtime.flow_engine.start_instance(user_id, flow.flow_id, context={"score": 80})
        await runtime.flow_engine.start_instance(user_id, flow.flow_id, context={"score": 10})
        await runtime.drain()

        assert sorted(m["content"]["text"] for m in sender.sent) == ["cold", "hot"]

    @pytest.mark.asyncio
    async def test_edge_conditions_pick_the_first_match(self, runtime, sender, user_id):
        nodes = [node("s", "start"), node("a", "message", message="a"), node("b", "message", message="b"), node("e", "end")]
        edges = [
            {**edge("s", "a"), "condition": {"field": "plan", "operator": "equals", "value": "pro"}},
            edge("s", "b"),
            edge("a", "e"),
            edge("b", "e"),
        ]
        flow = published_flow(runtime, user_id, nodes, edges)
        await runtime.flow_engine.start_instance(user_id, flow.flow_id, context={"plan": "free"})
        await runtime.drain()
        assert [m["content"]["text"] for m in sender.sent] == ["b"]

    @pytest.mark.asyncio
    async def test_node_failure_fails_the_instance(self, runtime, executor, user_id):
        executor.failing["webhook"] = "endpoint returned 500"
        nodes, edges = linear(node("w", "webhook", url="https://hooks.test"))
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()

        instance = runtime.flow_service.get_instance(user_id, started.instance_id)
        assert instance.status == InstanceStatus.FAILED
        assert instance.error == "endpoint returned 500"
        assert instance.current_node_id == "w"
        assert instance.node_history[-1].status == NodeHistoryStatus.FAILED

        stored = runtime.flow_service.get_flow(user_id, flow.flow_id)
        assert (stored.active_instances, stored.failed_instances) == (0, 1)

    @pytest.mark.asyncio
    async def test_runaway_loop_is_stopped(self, runtime, user_id):
        nodes = [
            node("s", "start"),
            node("u", "update_property", property="seen", value="yes"),
            node("g", "goto", target_node_id="u"),
            node("e", "end"),
        ]
        edges = [edge("s", "u"), edge("u", "g"), edge("g", "e")]
        flow = published_flow(runtime, user_id, nodes, edges)
        runtime.flow_engine.max_steps = 10

        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()

        instance = runtime.flow_service.get_instance(user_id, started.instance_id)
        assert instance.status == InstanceStatus.FAILED
        assert "exceeded 10 steps" in instance.error


class TestSuspension:
    @pytest.mark.asyncio
    async def test_delay_waits_until_due(self, runtime, clock, sender, user_id):
        nodes, edges = linear(node("d", "delay", delay_minutes=10), node("m", "message", message="later"))
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()

        waiting = runtime.flow_service.get_instance(user_id, started.instance_id)
        assert waiting.status == InstanceStatus.WAITING
        assert waiting.waiting_for == WaitKind.DELAY
        assert waiting.current_node_id == "d"
        assert sender.sent == []

        clock.advance(minutes=5)
        assert await runtime.flow_engine.resume_due_instances() == 0

        clock.advance(minutes=5)
        assert await runtime.flow_engine.resume_due_instances() == 1
        await runtime.drain()

        instance = runtime.flow_service.get_instance(user_id, started.instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.waiting_until is None
        assert [m["content"]["text"] for m in sender.sent] == ["later"]

    @pytest.mark.asyncio
    async def test_reply_and_timeout_branches(self, runtime, clock, sender, user_id):
        nodes = [
            node("s", "start"),
            node("w", "wait_for_reply", timeout_minutes=30),
            node("thanks", "message", message="Thanks: {{last_reply}}"),
            node("nudge", "message", message="Still there?"),
            node("e", "end"),
        ]
        edges = [
            edge("s", "w"), edge("w", "thanks", "reply"), edge("w", "nudge", "timeout"),
            edge("thanks", "e"), edge("nudge", "e"),
        ]
        flow = published_flow(runtime, user_id, nodes, edges)
        replied = await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c1")
        silent = await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c2")
        await runtime.drain()

        await runtime.flow_service.resume_instance(user_id, replied.instance_id, reply="yes")
        await runtime.drain()
        assert sender.sent[-1]["content"]["text"] == "Thanks: yes"

        clock.advance(minutes=31)
        assert await runtime.flow_engine.resume_due_instances() == 1
        await runtime.drain()
        assert sender.sent[-1]["content"]["text"] == "Still there?"

        for instance_id in (replied.instance_id, silent.instance_id):
            assert runtime.flow_service.get_instance(user_id, instance_id).status == InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_requires_a_waiting_instance(self, runtime, user_id):
        nodes, edges = linear()
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()
        with pytest.raises(FlowInstanceNotFoundError):
            await runtime.flow_engine.resume_instance(started.instance_id)

    @pytest.mark.asyncio
    async def test_reply_does_not_skip_a_delay(self, runtime, clock, user_id):
        nodes, edges = linear(node("d", "delay", delay_minutes=24 * 60))
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()

        with pytest.raises(InvalidStateError):
            await runtime.flow_engine.resume_instance(started.instance_id, reply="hi")
        await runtime.drain()

        instance = runtime.flow_service.get_instance(user_id, started.instance_id)
        assert instance.status == InstanceStatus.WAITING
        assert instance.waiting_for == WaitKind.DELAY

    @pytest.mark.asyncio
    async def test_timer_resume_waits_for_the_deadline(self, runtime, clock, sender, user_id):
        nodes, edges = [
            node("s", "start"), node("w", "wait_for_reply", timeout_minutes=30),
            node("nudge", "message", message="Still there?"), node("e", "end"),
        ], [edge("s", "w"), edge("w", "nudge", "timeout"), edge("nudge", "e")]
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c1")
        await runtime.drain()

        clock.advance(minutes=10)
        with pytest.raises(InvalidStateError):
            await runtime.flow_engine.resume_instance(started.instance_id)
        await runtime.drain()
        assert sender.sent == []
        assert runtime.flow_service.get_instance(user_id, started.instance_id).status == InstanceStatus.WAITING

        clock.advance(minutes=21)
        await runtime.flow_engine.resume_instance(started.instance_id)
        await runtime.drain()
        assert [m["content"]["text"] for m in sender.sent] == ["Still there?"]
        assert runtime.flow_service.get_instance(user_id, started.instance_id).status == InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_instances_keep_their_version(self, runtime, clock, sender, user_id):
        nodes, edges = linear(node("d", "delay", delay_minutes=1), node("m", "message", message="v2"))
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()

        nodes[2]["data"]["config"]["message"] = "v3"
        runtime.flow_service.update_flow(user_id, flow.flow_id, {"nodes": nodes})
        republished = runtime.flow_service.publish_flow(user_id, flow.flow_id)
        assert republished.version == 3

        clock.advance(minutes=2)
        await runtime.flow_engine.resume_due_instances()
        await runtime.drain()
        assert [m["content"]["text"] for m in sender.sent] == ["v2"]
        assert runtime.flow_service.get_instance(user_id, started.instance_id).flow_version == 2

    @pytest.mark.asyncio
    async def test_timeout_fails_a_resumed_instance(self, runtime, clock, user_id):
        nodes, edges = linear(node("d", "delay", delay_minutes=10))
        flow = published_flow(runtime, user_id, nodes, edges, timeout_ms=60000)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()

        clock.advance(minutes=11)
        await runtime.flow_engine.resume_due_instances()
        await runtime.drain()

        instance = runtime.flow_service.get_instance(user_id, started.instance_id)
        assert instance.status == InstanceStatus.FAILED
        assert instance.error == "Flow instance timed out"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_requires_a_published_flow(self, runtime, user_id):
        flow = runtime.flow_service.create_flow(user_id, {"name": "Draft"})
        with pytest.raises(InvalidStateError):
            await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        with pytest.raises(FlowNotFoundError):
            await runtime.flow_engine.start_instance(user_id, "flow-missing")

    @pytest.mark.asyncio
    async def test_cancel_waiting_instance(self, runtime, user_id):
        nodes, edges = linear(node("d", "delay", delay_minutes=10))
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()

        cancelled = runtime.flow_service.cancel_instance(user_id, started.instance_id)
        assert cancelled.status == InstanceStatus.CANCELLED
        assert cancelled.waiting_until is None

        with pytest.raises(FlowInstanceNotFoundError):
            runtime.flow_service.cancel_instance(user_id, started.instance_id)
        with pytest.raises(FlowInstanceNotFoundError):
            await runtime.flow_engine.resume_instance(started.instance_id)
        assert runtime.flow_service.get_flow(user_id, flow.flow_id).active_instances == 0

    @pytest.mark.asyncio
    async def test_single_instance_per_contact(self, runtime, user_id):
        nodes, edges = linear(node("d", "delay", delay_minutes=10))
        flow = published_flow(runtime, user_id, nodes, edges, allow_multiple_instances=False)
        await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c1")
        await runtime.drain()

        with pytest.raises(InstanceLimitError):
            await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c1")
        await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c2")

    @pytest.mark.asyncio
    async def test_concurrent_instance_cap(self, runtime, user_id):
        nodes, edges = linear(node("d", "delay", delay_minutes=10))
        flow = published_flow(runtime, user_id, nodes, edges, max_concurrent_instances=1)
        await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c1")
        await runtime.drain()
        with pytest.raises(InstanceLimitError):
            await runtime.flow_engine.start_instance(user_id, flow.flow_id, "c2")

    @pytest.mark.asyncio
    async def test_retry_failed_instance(self, runtime, executor, user_id):
        executor.failing["add_tag"] = "CRM down"
        nodes, edges = linear(node("t", "add_tag", tag="x"))
        flow = published_flow(runtime, user_id, nodes, edges, retry_on_failure=True, max_retries=1)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()
        assert runtime.flow_service.get_instance(user_id, started.instance_id).status == InstanceStatus.FAILED

        executor.failing.clear()
        retried = await runtime.flow_service.retry_instance(user_id, started.instance_id)
        assert retried.retry_count == 1
        await runtime.drain()

        instance = runtime.flow_service.get_instance(user_id, started.instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.error is None
        stored = runtime.flow_service.get_flow(user_id, flow.flow_id)
        assert (stored.active_instances, stored.failed_instances, stored.completed_instances) == (0, 0, 1)

    @pytest.mark.asyncio
    async def test_retry_rules(self, runtime, executor, user_id):
        executor.failing["add_tag"] = "CRM down"
        nodes, edges = linear(node("t", "add_tag", tag="x"))
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()

        with pytest.raises(InvalidStateError, match="disabled"):
            await runtime.flow_service.retry_instance(user_id, started.instance_id)

        done_nodes, done_edges = linear()
        other = published_flow(runtime, user_id, done_nodes, done_edges, retry_on_failure=True)
        completed = await runtime.flow_engine.start_instance(user_id, other.flow_id)
        await runtime.drain()
        with pytest.raises(InvalidStateError, match="Only failed"):
            await runtime.flow_service.retry_instance(user_id, completed.instance_id)

    @pytest.mark.asyncio
    async def test_deleting_a_flow_cancels_live_instances(self, runtime, user_id):
        nodes, edges = linear(node("d", "delay", delay_minutes=10))
        flow = published_flow(runtime, user_id, nodes, edges)
        started = await runtime.flow_engine.start_instance(user_id, flow.flow_id)
        await runtime.drain()

        result = runtime.flow_service.delete_flow(user_id, flow.flow_id)
        assert result == {"deleted": True, "cancelled_instances": 1}
        assert runtime.flow_repo.get_instance(started.instance_id).status == InstanceStatus.CANCELLED
