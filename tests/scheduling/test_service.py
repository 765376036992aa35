"""Tests for ReconciliationScheduler."""

import time

import pytest

from g8r.core.errors import ConfigurationError, PermanentError
from g8r.core.models import QueueStatus, ReconciliationStatus, StackStatus
from g8r.scheduling.service import ReconciliationScheduler
from tests._support import fake_duty, snapshot, write_snapshot


@pytest.fixture
def scheduler(store, reconciler, locks):
    sched = ReconciliationScheduler(store, reconciler, locks, interval_seconds=0.05)
    yield sched
    sched.stop(timeout=5)


@pytest.fixture
def websites(tmp_path, scheduler):
    repo = tmp_path / "repo"
    write_snapshot(repo, snapshot([fake_duty("site-bucket"), fake_duty("site-cert", ["site-bucket"])]))
    return scheduler.register_stack(
        "websites", "local", {"path": str(repo)}, reconcile_interval=3600
    )


class TestTick:
    """Inline ticks (no start())."""

    def test_due_stack_is_synced(self, store, scheduler, handler, websites):
        assert scheduler.tick() == 1
        assert handler.applied() == ["site-bucket", "site-cert"]
        assert store.get_stack("websites").status == StackStatus.SYNCED

        stats = scheduler.get_stats()
        assert stats.tick_count == 1
        assert stats.cycles_dispatched == 1
        assert stats.cycles_succeeded == 1

    def test_stack_not_due_until_interval(self, scheduler, handler, websites):
        scheduler.tick()
        assert scheduler.tick() == 0
        assert len(handler.applied()) == 2

    def test_active_queue_is_drained(self, store, scheduler, sources, handler, websites):
        scheduler.tick()
        scheduler.register_queue("events", "memory", "duty_sync")
        sources.broker.publish("events", {"duties": ["site-cert"]})

        scheduler.tick()
        stats = scheduler.get_stats()
        assert stats.messages_processed == 1
        assert handler.applied()[-1] == "site-cert"

    def test_failure_is_counted(self, store, scheduler, handler, websites):
        handler.fail("site-bucket", PermanentError("boom"))
        scheduler.tick()
        assert scheduler.get_stats().cycles_failed == 1

    def test_abandoned_execution_is_failed(self, store, scheduler, websites):
        scheduler.tick()
        stale = store.begin_execution("site-cert", "aws-prod")

        scheduler.tick()
        assert store.get_execution(stale).reason == "Abandoned"
        assert scheduler.get_stats().executions_abandoned == 1

    def test_reset_stats(self, scheduler, websites):
        scheduler.tick()
        scheduler.reset_stats()
        assert scheduler.get_stats().tick_count == 0


class TestRegistration:
    def test_register_stack_defaults_interval(self, scheduler):
        stack = scheduler.register_stack("infra", "git", {"url": "https://example.com/infra.git"})
        assert stack.reconcile_interval == scheduler.default_reconcile_interval
        assert stack.status == StackStatus.PENDING

    def test_register_queue_validates_handler(self, store, scheduler):
        with pytest.raises(ConfigurationError):
            scheduler.register_queue("events", "memory", "no_such_handler")
        assert store.list_queues() == []


class TestPauseResume:
    def test_paused_stack_is_not_dispatched(self, scheduler, handler, websites):
        assert scheduler.pause_stack("websites")
        assert scheduler.tick() == 0
        assert handler.calls == []

        assert scheduler.resume_stack("websites")
        assert scheduler.tick() == 1

    def test_resume_after_sync_is_synced(self, store, scheduler, websites):
        scheduler.tick()
        scheduler.pause_stack("websites")
        scheduler.resume_stack("websites")
        assert store.get_stack("websites").status == StackStatus.SYNCED

    def test_queue_pause_resume(self, store, scheduler):
        scheduler.register_queue("events", "memory", "duty_sync")
        assert scheduler.pause_queue("events")
        assert store.get_queue("events").status == QueueStatus.PAUSED
        assert scheduler.resume_queue("events")
        assert store.get_queue("events").status == QueueStatus.ACTIVE

    def test_unknown_names(self, scheduler):
        assert not scheduler.pause_stack("nope")
        assert not scheduler.resume_stack("nope")
        assert not scheduler.pause_queue("nope")
        assert not scheduler.resume_queue("nope")


class TestManualOperations:
    def test_sync_now_forces(self, scheduler, websites):
        first = scheduler.sync_now("websites")
        second = scheduler.sync_now("websites")
        assert first.status == ReconciliationStatus.SUCCEEDED
        assert second.status == ReconciliationStatus.SKIPPED

    def test_converge_now(self, scheduler, handler, websites):
        scheduler.sync_now("websites")
        rec = scheduler.converge_now(["site-bucket"])
        assert rec.duties_applied == ["site-bucket"]

    def test_destroy_stack(self, store, scheduler, handler, websites):
        scheduler.sync_now("websites")
        rec = scheduler.destroy_stack("websites", confirmed=True)
        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert handler.destroyed() == ["site-cert", "site-bucket"]


class TestLifecycle:
    """Background ticking through the thread backend."""

    def test_start_ticks_and_stop(self, scheduler, handler, websites):
        scheduler.start()
        deadline = time.monotonic() + 5
        while len(handler.applied()) < 2 and time.monotonic() < deadline:
            time.sleep(0.02)

        health = scheduler.health()
        assert health.running
        assert health.healthy
        assert health.stacks == 1
        assert health.backend["backend"] == "thread"

        scheduler.stop(timeout=5)
        assert not scheduler.is_running
        assert handler.applied() == ["site-bucket", "site-cert"]
        assert not scheduler.health().healthy

    def test_manual_operation_after_stop(self, scheduler, handler, websites):
        scheduler.sync_now("websites")
        scheduler.start()
        scheduler.stop(timeout=5)
        handler.calls.clear()

        rec = scheduler.converge_now(["site-bucket"])
        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert handler.applied() == ["site-bucket"]

    def test_health_when_stopped(self, scheduler, websites):
        health = scheduler.health().to_dict()
        assert health["running"] is False
        assert health["stacks"] == 1
        assert health["stats"]["tick_count"] == 0
