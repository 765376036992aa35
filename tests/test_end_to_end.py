"""
End-to-end convergence through a full runtime.

These tests wire g8r with ``create_runtime`` against a SQLite file, declare
a stack in a local directory and check what the handlers saw and what the
store recorded.
"""

import pytest

from g8r import G8rSettings, create_runtime
from g8r.core.errors import PermanentError
from g8r.core.models import DutyPhase, ReconciliationStatus, SourceType
from tests._support import fake_duty, snapshot, write_snapshot
from tests._support.handlers import ScriptedHandler

pytestmark = pytest.mark.integration


@pytest.fixture
def handler():
    return ScriptedHandler()


@pytest.fixture
def runtime(tmp_path, handler):
    settings = G8rSettings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'g8r.db'}",
        workspace_dir=tmp_path / "workspace",
        retry_max_attempts=2,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )
    rt = create_runtime(settings, configure_logs=False)
    rt.registry.register("Fake", "test", handler)
    yield rt
    rt.close()


@pytest.fixture
def websites(tmp_path, runtime):
    repo = tmp_path / "repo"
    write_snapshot(repo, snapshot([fake_duty("a"), fake_duty("b", ["a"])]))
    runtime.scheduler.register_stack("websites", "local", {"path": str(repo)})
    return repo


class TestEndToEnd:
    """Declared stack to recorded convergence."""

    def test_dependency_chain_converges_in_order(self, runtime, handler, websites):
        rec = runtime.scheduler.sync_now("websites")

        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert rec.duties_applied == ["a", "b"]
        assert handler.applied() == ["a", "b"]
        for name in ("a", "b"):
            assert runtime.store.duty_status(name).phase == DutyPhase.DEPLOYED

    def test_failed_dependency_is_never_invoked(self, runtime, handler, websites):
        handler.fail("a", PermanentError("bucket name taken"))
        rec = runtime.scheduler.sync_now("websites")

        assert rec.status == ReconciliationStatus.FAILED
        assert handler.applied() == ["a"]

        b = runtime.store.duty_status("b")
        assert b.phase == DutyPhase.FAILED
        assert b.last_execution.reason == "DependencyFailed"
        assert runtime.store.duty_status("a").last_execution.reason == "PermanentError"

    def test_push_event_scopes_to_named_duty(self, runtime, handler, websites):
        runtime.scheduler.sync_now("websites")
        handler.calls.clear()

        runtime.scheduler.register_queue("events", "memory", "duty_sync")
        runtime.broker.publish("events", {"duties": ["b"]})
        runtime.scheduler.tick()

        assert handler.applied() == ["b"]
        rec = runtime.store.list_reconciliations(source_type=SourceType.QUEUE)[0]
        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert rec.metadata["scope"]["duties"] == ["b"]
        assert rec.duties_applied == ["b"]

    def test_echo_handler_runs_out_of_the_box(self, tmp_path, runtime):
        repo = tmp_path / "echo"
        write_snapshot(repo, snapshot([{
            "name": "hello",
            "duty_type": "Echo",
            "backend": "local",
            "spec": {"message": "hi"},
        }]))
        runtime.scheduler.register_stack("echo", "local", {"path": str(repo)})

        rec = runtime.scheduler.sync_now("echo")
        assert rec.status == ReconciliationStatus.SUCCEEDED
        status = runtime.store.get_duty("hello").status.for_roster("aws-prod")
        assert status.outputs == {"message": "hi"}
