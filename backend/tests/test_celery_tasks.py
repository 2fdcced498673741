"""Tests for the Celery wiring and task entry points."""

import pytest

from celery_app import celery_app
from core.config import settings
from tasks import automation_tasks


class FakeClient:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def worker_repo(repo, monkeypatch):
    """Point the task entry points at the in-memory repository."""
    client = FakeClient()
    monkeypatch.setattr(automation_tasks, "create_async_client", lambda app_name=None: client)
    monkeypatch.setattr(automation_tasks, "build_repository", lambda _client: repo)
    repo.client = client
    return repo


class TestCeleryConfig:
    """App configuration."""

    def test_beat_schedule(self):
        schedule = celery_app.conf.beat_schedule
        assert schedule["process-due-automations"]["task"] == "tasks.process_due_automations"
        assert schedule["process-due-automations"]["schedule"].total_seconds() == \
            settings.AUTOMATION_SWEEP_INTERVAL_SECONDS
        assert schedule["scan-inactive-contacts"]["task"] == "tasks.scan_automation_time_triggers"

    def test_tasks_routed_to_automation_queue(self):
        routes = celery_app.conf.task_routes
        assert {name: route["queue"] for name, route in routes.items()} == {
            "tasks.process_automation_trigger": "automation",
            "tasks.process_due_automations": "automation",
            "tasks.scan_automation_time_triggers": "automation",
        }


class TestTaskEntryPoints:
    """Tasks run their coroutine on a fresh client and close it."""

    def test_process_due_automations(self, worker_repo):
        result = automation_tasks.process_due_automations()
        assert result == {"sent": 0, "failed": 0, "skipped": 0, "retried": 0, "processed": 0}
        assert worker_repo.client.closed

    def test_process_automation_trigger(self, worker_repo):
        contact = worker_repo.add_contact()
        worker_repo.add_rule(send_delay_minutes=15)

        result = automation_tasks.process_automation_trigger({
            "orgId": "org1",
            "triggerType": "stage_change",
            "contactId": contact["id"],
            "triggerData": {"to_stage_id": "s2"},
        })

        assert result == {"message": "Automation processed", "rules_processed": 1}
        assert [e["status"] for e in worker_repo.executions.values()] == ["scheduled"]
        assert worker_repo.client.closed

    def test_domain_errors_are_not_retried(self, worker_repo, monkeypatch):
        worker_repo.add_rule()
        retried = []
        monkeypatch.setattr(automation_tasks.process_automation_trigger, "retry",
                            lambda exc=None, **kwargs: retried.append(exc))

        result = automation_tasks.process_automation_trigger({
            "orgId": "org1", "triggerType": "stage_change", "contactId": "ghost",
        })

        assert result == {"message": "Contact not found: ghost", "rules_processed": 0}
        assert retried == []
        assert worker_repo.executions == {}

    def test_infrastructure_errors_are_retried(self, worker_repo, monkeypatch):
        async def unavailable(org_id, trigger_type):
            raise RuntimeError("mongo unavailable")

        def fake_retry(exc=None, **kwargs):
            retried.append(exc)
            return RuntimeError("retry scheduled")

        retried = []
        monkeypatch.setattr(worker_repo, "find_active_rules", unavailable)
        monkeypatch.setattr(automation_tasks.process_automation_trigger, "retry", fake_retry)

        with pytest.raises(RuntimeError, match="retry scheduled"):
            automation_tasks.process_automation_trigger({
                "orgId": "org1", "triggerType": "stage_change", "contactId": "c1",
            })

        assert [str(exc) for exc in retried] == ["mongo unavailable"]

    def test_scan_time_triggers(self, worker_repo):
        result = automation_tasks.scan_automation_time_triggers()
        assert result["inactivity"] == {"rules": 0, "events": 0, "scheduled": 0}
        assert result["time_based"] == {"rules": 0, "events": 0, "scheduled": 0}
