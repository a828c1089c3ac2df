"""Tests for the server launcher"""
import logging

import pytest

import run
from crm_automation.config.settings import settings


@pytest.fixture
def served(monkeypatch):
    calls = []
    monkeypatch.setattr(run, "setup_logging", lambda: None)
    monkeypatch.setattr(run.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(settings, "scheduler_enabled", True)
    monkeypatch.setenv("SCHEDULER_ENABLED", "true")
    return calls


def test_serves_the_app_and_reports_the_scheduler(served, caplog):
    with caplog.at_level(logging.INFO, logger="crm_automation.run"):
        run.main(["--port", "9000", "--workers", "3", "--reload"])

    assert served == [("crm_automation.main:app", {"host": "127.0.0.1", "port": 9000, "reload": True, "workers": 1})]
    assert "http://127.0.0.1:9000" in caplog.text
    assert "scheduler=on" in caplog.text
    assert "Scheduler polls drips every" in caplog.text


def test_no_scheduler_reaches_worker_processes(served, caplog):
    with caplog.at_level(logging.INFO, logger="crm_automation.run"):
        run.main(["--no-scheduler"])

    assert settings.scheduler_enabled is False
    assert run.os.environ["SCHEDULER_ENABLED"] == "false"
    assert "scheduler=off" in caplog.text
    assert "Scheduler polls" not in caplog.text
    assert served[0][1]["workers"] == 1
