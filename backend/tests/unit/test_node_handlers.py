"""Tests for per-node-type flow behaviour"""
from datetime import datetime, timedelta, timezone

import pytest

from crm_automation.domain.enums import WaitKind
from crm_automation.domain.errors import ActionFailure, UnsupportedActionError
from crm_automation.domain.models import FlowInstance, FlowNode, FlowVersion
from crm_automation.engine.node_handlers import NodeExecutor, interpolate
from tests.factories import node, edge


NOW = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def version(nodes, edges=()) -> FlowVersion:
    return FlowVersion.model_validate({
        "version_id": "fv-1",
        "flow_id": "flow-1",
        "user_id": "t1",
        "version": 2,
        "published_at": NOW,
        "nodes": list(nodes),
        "edges": list(edges),
    })


def instance(**overrides) -> FlowInstance:
    data = {
        "instance_id": "fi-1",
        "flow_id": "flow-1",
        "flow_version": 2,
        "user_id": "t1",
        "contact_id": "c1",
        "current_node_id": "s",
        "context": {"first_name": "Asha", "phone": "+911234"},
        "variables": {},
        "started_at": NOW,
    }
    data.update(overrides)
    return FlowInstance.model_validate(data)


def flow_node(data) -> FlowNode:
    return FlowNode.model_validate(data)


class TestInterpolate:
    def test_placeholders_and_missing_values(self):
        assert interpolate("Hi {{ first_name }}{{missing}}!", {"first_name": "Asha"}) == "Hi Asha!"

    def test_nested_structures(self):
        values = {"contact": {"city": "Pune"}, "n": 3}
        assert interpolate({"a": ["{{contact.city}}", 1], "b": "{{n}}"}, values) == {"a": ["Pune", 1], "b": "3"}


class TestMessaging:
    @pytest.mark.asyncio
    async def test_message_is_interpolated_and_sent(self, sender):
        handler = NodeExecutor(message_sender=sender)
        n = flow_node(node("m", "message", message="Hello {{first_name}}"))
        result = await handler.execute(n, instance(), version([n.model_dump()]), NOW)

        assert result.output["message_sent"] is True
        assert result.output["message_id"] == "msg-1"
        assert sender.sent[0]["content"]["text"] == "Hello Asha"
        assert sender.sent[0]["contact"]["phone"] == "+911234"

    @pytest.mark.asyncio
    async def test_failed_send_raises(self, sender):
        sender.fail_next("rate limited")
        handler = NodeExecutor(message_sender=sender)
        n = flow_node(node("m", "message", message="x"))
        with pytest.raises(ActionFailure, match="rate limited"):
            await handler.execute(n, instance(), version([n.model_dump()]), NOW)

    @pytest.mark.asyncio
    async def test_missing_sender_is_unsupported(self):
        n = flow_node(node("t", "template", template_name="welcome"))
        with pytest.raises(UnsupportedActionError):
            await NodeExecutor().execute(n, instance(), version([n.model_dump()]), NOW)


class TestSuspension:
    @pytest.mark.asyncio
    async def test_delay_minutes(self):
        n = flow_node(node("d", "delay", delay_minutes=5))
        result = await NodeExecutor().execute(n, instance(), version([n.model_dump()]), NOW)
        assert result.suspends
        assert result.wait_for == WaitKind.DELAY
        assert result.wait_until == NOW + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_delay_defaults_to_one_second(self):
        n = flow_node(node("d", "delay"))
        result = await NodeExecutor().execute(n, instance(), version([n.model_dump()]), NOW)
        assert result.wait_until == NOW + timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_wait_for_reply(self):
        n = flow_node(node("w", "wait_for_reply", timeout_minutes=30))
        result = await NodeExecutor().execute(n, instance(), version([n.model_dump()]), NOW)
        assert result.wait_for == WaitKind.REPLY
        assert result.wait_until == NOW + timedelta(minutes=30)


class TestBranching:
    @pytest.mark.asyncio
    async def test_condition_picks_branch(self):
        n = flow_node(node("c", "condition", condition={
            "logic": "AND", "conditions": [{"field": "first_name", "operator": "equals", "value": "Asha"}],
        }))
        result = await NodeExecutor().execute(n, instance(), version([n.model_dump()]), NOW)
        assert result.branch == "true"

        other = await NodeExecutor().execute(n, instance(context={"first_name": "Ravi"}), version([n.model_dump()]), NOW)
        assert other.branch == "false"

    @pytest.mark.asyncio
    async def test_condition_without_rules_fails(self):
        n = flow_node(node("c", "condition"))
        with pytest.raises(ActionFailure):
            await NodeExecutor().execute(n, instance(), version([n.model_dump()]), NOW)

    @pytest.mark.asyncio
    async def test_split_is_deterministic_per_instance(self):
        n = flow_node(node("sp", "split", branches=[{"handle": "a", "weight": 50}, {"handle": "b", "weight": 50}]))
        v = version([n.model_dump()])
        first = await NodeExecutor().execute(n, instance(), v, NOW)
        second = await NodeExecutor().execute(n, instance(), v, NOW)
        assert first.branch in ("a", "b")
        assert first.branch == second.branch

    @pytest.mark.asyncio
    async def test_split_with_single_weighted_branch(self):
        n = flow_node(node("sp", "split", branches=[{"handle": "a", "weight": 0}, {"handle": "b", "weight": 1}]))
        result = await NodeExecutor().execute(n, instance(), version([n.model_dump()]), NOW)
        assert result.branch == "b"

    @pytest.mark.asyncio
    async def test_goto(self):
        target = node("loop", "message", message="x")
        n = flow_node(node("g", "goto", target_node_id="loop"))
        result = await NodeExecutor().execute(n, instance(), version([n.model_dump(), target]), NOW)
        assert result.next_node_id == "loop"

        bad = flow_node(node("g", "goto", target_node_id="nowhere"))
        with pytest.raises(ActionFailure):
            await NodeExecutor().execute(bad, instance(), version([bad.model_dump()]), NOW)


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_update_property_sets_variable(self):
        n = flow_node(node("u", "update_property", property="greeting", value="Hi {{first_name}}"))
        result = await NodeExecutor().execute(n, instance(), version([n.model_dump()]), NOW)
        assert result.variables == {"greeting": "Hi Asha"}

    @pytest.mark.asyncio
    async def test_executor_nodes_receive_interpolated_config(self, executor):
        executor.responses["api_call"] = {"status": 200}
        n = flow_node(node("a", "api_call", url="https://crm.test/{{first_name}}", store_as="api"))
        handler = NodeExecutor(action_executor=executor)
        result = await handler.execute(n, instance(), version([n.model_dump()]), NOW)

        assert executor.calls[0]["config"]["url"] == "https://crm.test/Asha"
        assert executor.calls[0]["record"]["instance_id"] == "fi-1"
        assert result.variables == {"api": {"status": 200}}

    @pytest.mark.asyncio
    async def test_pass_through_nodes(self):
        for node_type in ("start", "merge", "end"):
            n = flow_node(node("x", node_type))
            result = await NodeExecutor().execute(n, instance(), version([n.model_dump()]), NOW)
            assert result.output == {"executed": True}
            assert not result.suspends
