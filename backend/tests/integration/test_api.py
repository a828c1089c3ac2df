"""End-to-end API tests over a mongomock database"""
import pytest
from fastapi.testclient import TestClient

from crm_automation.config.settings import settings
from crm_automation.main import app
from crm_automation.repositories.mongo_client import set_database
from crm_automation.services.runtime import set_runtime
from tests.factories import make_campaign_data, make_trigger_data, node, edge


HEADERS = {"X-User-Id": "tenant-1"}


@pytest.fixture
def client(runtime, db, monkeypatch):
    monkeypatch.setattr(settings, "scheduler_enabled", False)
    set_database(db)
    set_runtime(runtime)
    with TestClient(app) as test_client:
        yield test_client
    set_runtime(None)
    set_database(None)


def drain(client, runtime):
    client.portal.call(runtime.drain)


class TestAuthAndErrors:
    def test_missing_tenant_header_is_401(self, client):
        response = client.get("/api/v1/triggers")
        assert response.status_code == 401
        assert response.json()["detail"]["error"]["code"] == "AUTHENTICATION_ERROR"

    def test_not_found_shape(self, client):
        response = client.get("/api/v1/triggers/TRG-missing", headers=HEADERS)
        assert response.status_code == 404
        error = response.json()["detail"]["error"]
        assert error["code"] == "TRIGGER_NOT_FOUND"
        assert error["details"] == {"trigger_id": "TRG-missing"}

    def test_request_validation_is_400(self, client):
        response = client.post("/api/v1/triggers", json={"name": ""}, headers=HEADERS)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Correlation-Id": "abc-1"})
        assert response.headers["X-Correlation-Id"] == "abc-1"
        assert response.json()["name"] == "CRM Automation Engine"


class TestTriggersApi:
    def test_crud(self, client):
        created = client.post("/api/v1/triggers", json=make_trigger_data(), headers=HEADERS)
        assert created.status_code == 201
        trigger_id = created.json()["trigger_id"]

        listing = client.get("/api/v1/triggers", params={"status": "active"}, headers=HEADERS).json()
        assert listing["total"] == 1
        assert listing["items"][0]["trigger_id"] == trigger_id

        patched = client.patch(f"/api/v1/triggers/{trigger_id}", json={"priority": 7}, headers=HEADERS)
        assert patched.json()["priority"] == 7
        assert patched.json()["name"] == "New lead follow-up"

        assert client.post(f"/api/v1/triggers/{trigger_id}/pause", headers=HEADERS).json()["status"] == "paused"
        duplicate = client.post(f"/api/v1/triggers/{trigger_id}/duplicate", headers=HEADERS)
        assert duplicate.status_code == 201

        deleted = client.delete(f"/api/v1/triggers/{trigger_id}", headers=HEADERS)
        assert deleted.json() == {"deleted": True, "trigger_id": trigger_id}

    def test_bad_action_config_is_rejected(self, client):
        data = make_trigger_data(actions=[{"type": "api_call", "config": {}}])
        response = client.post("/api/v1/triggers", json=data, headers=HEADERS)
        assert response.status_code == 400
        assert response.json()["detail"]["error"]["code"] == "VALIDATION_ERROR"

    def test_event_ingestion_and_history(self, client, runtime, executor):
        trigger_id = client.post("/api/v1/triggers", json=make_trigger_data(), headers=HEADERS).json()["trigger_id"]

        response = client.post("/api/v1/events", json={
            "source_type": "facebook_lead",
            "event_type": "lead_created",
            "contact_id": "c1",
            "payload": {"lead_score": 75},
        }, headers=HEADERS)
        assert response.status_code == 202
        assert response.json()["triggers_matched"] == 1
        drain(client, runtime)

        executions = client.get("/api/v1/triggers/executions", params={"trigger_id": trigger_id}, headers=HEADERS).json()
        assert executions["total"] == 1
        assert executions["items"][0]["status"] == "completed"
        assert executor.types() == ["add_tag", "send_template"]

        execution_id = executions["items"][0]["execution_id"]
        detail = client.get(f"/api/v1/triggers/executions/{execution_id}", headers=HEADERS).json()
        assert len(detail["action_results"]) == 2

        recent = client.get("/api/v1/events/recent", headers=HEADERS).json()
        assert recent[0]["trigger_matches"] == [trigger_id]

        stats = client.get("/api/v1/triggers/stats", headers=HEADERS).json()
        assert stats["total_executions"] == 1
        assert stats["success_rate"] == 100.0

    def test_unknown_event_source_is_400(self, client):
        response = client.post("/api/v1/events", json={"source_type": "carrier_pigeon", "event_type": "x"}, headers=HEADERS)
        assert response.status_code == 400


class TestFlowsApi:
    def test_publish_validation_errors(self, client):
        flow_id = client.post("/api/v1/flows", json={"name": "Empty"}, headers=HEADERS).json()["flow_id"]

        check = client.post(f"/api/v1/flows/{flow_id}/validate", headers=HEADERS).json()
        assert check["is_valid"] is False

        response = client.post(f"/api/v1/flows/{flow_id}/publish", headers=HEADERS)
        assert response.status_code == 400
        error = response.json()["detail"]["error"]
        assert error["code"] == "FLOW_VALIDATION_ERROR"
        assert "Flow must have at least one start node" in error["details"]["errors"]

    def test_publish_start_and_cancel(self, client, runtime):
        flow_id = client.post("/api/v1/flows", json={
            "name": "Nurture",
            "nodes": [node("s", "start"), node("d", "delay", delay_minutes=60), node("e", "end")],
            "edges": [edge("s", "d"), edge("d", "e")],
        }, headers=HEADERS).json()["flow_id"]

        not_yet = client.post(f"/api/v1/flows/{flow_id}/instances", json={"contact_id": "c1"}, headers=HEADERS)
        assert not_yet.status_code == 409

        published = client.post(f"/api/v1/flows/{flow_id}/publish", headers=HEADERS).json()
        assert published["version"] == 2

        started = client.post(f"/api/v1/flows/{flow_id}/instances", json={"contact_id": "c1"}, headers=HEADERS)
        assert started.status_code == 201
        instance_id = started.json()["instance_id"]
        drain(client, runtime)

        instance = client.get(f"/api/v1/flows/instances/{instance_id}", headers=HEADERS).json()
        assert instance["status"] == "waiting"
        assert instance["entry_type"] == "api"

        listing = client.get("/api/v1/flows/instances", params={"flow_id": flow_id}, headers=HEADERS).json()
        assert listing["total"] == 1

        early = client.post(f"/api/v1/flows/instances/{instance_id}/resume", json={"reply": "hi"}, headers=HEADERS)
        assert early.status_code == 409
        assert early.json()["detail"]["error"]["code"] == "INVALID_STATE"

        stats = client.get("/api/v1/flows/stats", headers=HEADERS).json()
        assert stats["published_flows"] == 1
        assert stats["active_instances"] == 1

        cancelled = client.post(f"/api/v1/flows/instances/{instance_id}/cancel", headers=HEADERS)
        assert cancelled.json()["status"] == "cancelled"
        again = client.post(f"/api/v1/flows/instances/{instance_id}/cancel", headers=HEADERS)
        assert again.status_code == 404

        versions = client.get(f"/api/v1/flows/{flow_id}/versions", headers=HEADERS).json()
        assert [v["version"] for v in versions] == [2]

    def test_reply_resumes_an_instance(self, client, runtime, sender):
        flow_id = client.post("/api/v1/flows", json={
            "name": "Survey",
            "nodes": [
                node("s", "start"), node("w", "wait_for_reply"),
                node("m", "message", message="Got {{last_reply}}"), node("e", "end"),
            ],
            "edges": [edge("s", "w"), edge("w", "m", "reply"), edge("m", "e")],
        }, headers=HEADERS).json()["flow_id"]
        client.post(f"/api/v1/flows/{flow_id}/publish", headers=HEADERS)
        instance_id = client.post(
            f"/api/v1/flows/{flow_id}/instances", json={"contact_id": "c1"}, headers=HEADERS
        ).json()["instance_id"]
        drain(client, runtime)

        resumed = client.post(f"/api/v1/flows/instances/{instance_id}/resume", json={"reply": "5 stars"}, headers=HEADERS)
        assert resumed.status_code == 200
        drain(client, runtime)

        assert sender.sent[-1]["content"]["text"] == "Got 5 stars"
        final = client.get(f"/api/v1/flows/instances/{instance_id}", headers=HEADERS).json()
        assert final["status"] == "completed"


class TestDripsApi:
    def test_campaign_lifecycle(self, client):
        created = client.post("/api/v1/drips", json=make_campaign_data(), headers=HEADERS)
        assert created.status_code == 201
        campaign_id = created.json()["campaign_id"]

        step = client.post(
            f"/api/v1/drips/{campaign_id}/steps", json={"day_offset": 2, "text_content": "Reminder"}, headers=HEADERS
        )
        assert step.status_code == 201
        step_ids = [s["id"] for s in step.json()["steps"]]

        reordered = client.put(
            f"/api/v1/drips/{campaign_id}/steps/order", json={"step_ids": list(reversed(step_ids))}, headers=HEADERS
        ).json()
        assert {s["id"]: s["order"] for s in reordered["steps"]} == {step_ids[1]: 0, step_ids[0]: 1}

        launched = client.post(f"/api/v1/drips/{campaign_id}/launch", headers=HEADERS).json()
        assert launched["status"] == "active"

        run = client.post(
            f"/api/v1/drips/{campaign_id}/enroll", json={"contact_id": "c1", "contact_phone": "+91"}, headers=HEADERS
        )
        assert run.status_code == 201
        duplicate = client.post(f"/api/v1/drips/{campaign_id}/enroll", json={"contact_id": "c1"}, headers=HEADERS)
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["error"]["code"] == "ALREADY_ENROLLED"

        runs = client.get(f"/api/v1/drips/{campaign_id}/runs", headers=HEADERS).json()
        assert runs["total"] == 1

        exited = client.post(f"/api/v1/drips/{campaign_id}/unenroll", json={"contact_id": "c1"}, headers=HEADERS)
        assert exited.json()["status"] == "exited"
        assert exited.json()["exit_reason"] == "manual"

        stats = client.get("/api/v1/drips/stats", headers=HEADERS).json()
        assert stats["total_enrolled"] == 1

    def test_launch_without_steps_is_400(self, client):
        campaign_id = client.post(
            "/api/v1/drips", json=make_campaign_data(steps=[]), headers=HEADERS
        ).json()["campaign_id"]
        response = client.post(f"/api/v1/drips/{campaign_id}/launch", headers=HEADERS)
        assert response.status_code == 400
        assert response.json()["detail"]["error"]["code"] == "CAMPAIGN_VALIDATION_ERROR"


class TestSegmentsApi:
    def test_preview(self, client, db):
        db["contacts"].insert_many([
            {"user_id": "tenant-1", "contact_id": "c1", "city": "Pune"},
            {"user_id": "tenant-1", "contact_id": "c2", "city": "Delhi"},
            {"user_id": "tenant-2", "contact_id": "c3", "city": "Pune"},
        ])
        response = client.post("/api/v1/segments/preview", json={
            "logic": "AND", "rules": [{"field": "city", "operator": "equals", "value": "Pune"}],
        }, headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"] == [{"user_id": "tenant-1", "contact_id": "c1", "city": "Pune"}]

    def test_invalid_rules_are_400(self, client):
        response = client.post("/api/v1/segments/preview", json={
            "logic": "AND", "rules": [{"field": "city", "operator": "resembles"}],
        }, headers=HEADERS)
        assert response.status_code == 400
