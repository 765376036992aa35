"""Tests for the Reconciler: pull, push, scope, destroy."""

import pytest

from g8r.core.errors import (
    DestroyNotConfirmed,
    LockContention,
    PermanentError,
    StackNotFound,
    TransientError,
)
from g8r.core.models import (
    DutyPhase,
    HandlerResult,
    Queue,
    QueueStatus,
    ReconciliationStatus,
    SourceType,
    Stack,
    StackStatus,
    Trigger,
)
from tests._support import fake_duty, snapshot, write_snapshot


@pytest.fixture
def repo(tmp_path):
    return tmp_path / "repo"


@pytest.fixture
def stack(store, repo):
    write_snapshot(
        repo,
        snapshot([
            fake_duty("site-bucket"),
            fake_duty("site-cert", ["site-bucket"]),
        ]),
    )
    return store.upsert_stack(
        Stack(name="websites", source_type="local", source_config={"path": str(repo)})
    )


@pytest.fixture
def events(store, sources):
    store.upsert_queue(Queue(name="events", queue_type="memory", message_handler="duty_sync"))
    return sources.broker.channel("events")


class TestConverge:
    """Direct convergence passes."""

    def test_full_pass(self, store, reconciler, handler, stack):
        reconciler.sync_stack("websites")
        handler.calls.clear()

        rec = reconciler.converge()
        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert rec.source_type == SourceType.MANUAL
        assert rec.trigger == Trigger.MANUAL
        assert rec.duties_applied == ["site-bucket", "site-cert"]
        assert rec.metadata["scope"] == {"duties": None, "rosters": None, "full": True}

    def test_named_duty_with_deployed_dependency(self, reconciler, handler, stack):
        reconciler.sync_stack("websites")
        handler.calls.clear()

        rec = reconciler.converge(["site-cert"])
        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert handler.applied() == ["site-cert"]
        assert handler.seen_dependency_outputs["site-cert"] == {
            "site-bucket": {"id": "site-bucket@aws-prod"}
        }

    def test_named_duty_with_undeployed_dependency_fails_plan(self, store, reconciler, handler, repo):
        write_snapshot(repo, snapshot([fake_duty("a"), fake_duty("b", ["a"])]))
        store.upsert_stack(Stack(name="s", source_type="local", source_config={"path": str(repo)}))
        handler.fail("a", PermanentError("boom"))
        reconciler.sync_stack("s")
        handler.calls.clear()

        rec = reconciler.converge(["b"])
        assert rec.status == ReconciliationStatus.FAILED
        assert rec.metadata["aborted"]["reason"] == "PlanError"
        assert handler.calls == []

    def test_unknown_names_fail_the_cycle(self, reconciler, handler, stack):
        reconciler.sync_stack("websites")
        rec = reconciler.converge(["site-bucket", "nope"], ["aws-prod", "gcp"])
        assert rec.status == ReconciliationStatus.FAILED
        assert rec.metadata["unknown_duties"] == ["nope"]
        assert rec.metadata["unknown_rosters"] == ["gcp"]

    def test_roster_scope(self, store, reconciler, handler, repo):
        write_snapshot(repo, snapshot(
            [fake_duty("site-bucket")],
            rosters=[
                {"name": "aws-prod", "roster_type": "aws_account", "traits": ["aws"]},
                {"name": "aws-dev", "roster_type": "aws_account", "traits": ["aws"]},
            ],
        ))
        store.upsert_stack(Stack(name="s", source_type="local", source_config={"path": str(repo)}))
        reconciler.sync_stack("s")
        handler.calls.clear()

        reconciler.converge(rosters=["aws-dev"])
        assert handler.calls == [("apply", "site-bucket", "aws-dev")]


class TestStackSync:
    """Pull ingestion."""

    def test_first_sync_converges_everything(self, store, reconciler, handler, stack):
        rec = reconciler.sync_stack("websites")

        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert rec.source_type == SourceType.STACK
        assert rec.source_id == "websites"
        assert rec.trigger == Trigger.SCHEDULED
        assert rec.duties_applied == ["site-bucket", "site-cert"]
        assert rec.metadata["added_duties"] == ["site-bucket", "site-cert"]
        assert rec.metadata["previous_version"] is None
        assert handler.applied() == ["site-bucket", "site-cert"]

        synced = store.get_stack("websites")
        assert synced.status == StackStatus.SYNCED
        assert synced.last_sync_version == rec.source_version

    def test_unchanged_revision_does_nothing(self, store, reconciler, handler, stack):
        reconciler.sync_stack("websites")
        count = len(store.list_reconciliations())

        assert reconciler.sync_stack("websites") is None
        assert len(store.list_reconciliations()) == count
        assert len(handler.applied()) == 2

    def test_unchanged_revision_forced_records_skip(self, reconciler, stack):
        first = reconciler.sync_stack("websites")
        rec = reconciler.sync_stack("websites", force=True)

        assert rec.status == ReconciliationStatus.SKIPPED
        assert rec.source_version == first.source_version
        assert rec.metadata["revision_changed"] is False

    def test_unchanged_revision_reconverges_pending(self, store, reconciler, handler, stack):
        handler.respond("site-cert", HandlerResult(DutyPhase.PENDING_VALIDATION, "awaiting DNS"))
        reconciler.sync_stack("websites")
        assert store.get_duty("site-cert").phase == DutyPhase.PENDING_VALIDATION
        handler.calls.clear()

        rec = reconciler.sync_stack("websites")
        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert handler.applied() == ["site-cert"]
        assert store.get_duty("site-cert").phase == DutyPhase.DEPLOYED

    def test_changed_revision_reports_orphans(self, store, reconciler, stack, repo):
        reconciler.sync_stack("websites")
        write_snapshot(repo, snapshot([fake_duty("site-bucket", spec={"versioning": True})]))

        rec = reconciler.sync_stack("websites")
        assert rec.metadata["updated_duties"] == ["site-bucket"]
        assert rec.metadata["orphaned_duties"] == ["site-cert"]
        assert rec.duties_applied == ["site-bucket"]
        assert rec.metadata["previous_version"] is not None

    def test_failed_duty_marks_stack_error(self, store, reconciler, handler, stack):
        handler.fail("site-bucket", PermanentError("bucket name taken"))
        rec = reconciler.sync_stack("websites")

        assert rec.status == ReconciliationStatus.FAILED
        assert "site-bucket@aws-prod: PermanentError" in rec.error_message
        stack = store.get_stack("websites")
        assert stack.status == StackStatus.ERROR
        assert stack.last_sync_version == rec.source_version

    def test_fetch_failure(self, store, reconciler, tmp_path):
        store.upsert_stack(Stack(
            name="broken", source_type="local", source_config={"path": str(tmp_path / "missing")}
        ))
        rec = reconciler.sync_stack("broken")

        assert rec.status == ReconciliationStatus.FAILED
        assert rec.metadata["aborted"]["reason"] == "RetryExhausted"
        assert store.get_stack("broken").status == StackStatus.ERROR

    def test_invalid_snapshot(self, store, reconciler, repo):
        repo.mkdir()
        (repo / "g8r.yaml").write_text("duties: [unclosed", encoding="utf-8")
        store.upsert_stack(Stack(name="bad", source_type="local", source_config={"path": str(repo)}))

        rec = reconciler.sync_stack("bad")
        assert rec.status == ReconciliationStatus.FAILED
        assert rec.metadata["aborted"]["reason"] == "ConfigurationError"
        assert store.get_stack("bad").status == StackStatus.ERROR

    def test_busy_stack_is_skipped(self, locks, reconciler, handler, stack):
        locks.acquire("stack:websites", holder="other-scheduler")
        assert reconciler.sync_stack("websites") is None
        assert handler.calls == []

    def test_missing_stack(self, reconciler):
        with pytest.raises(StackNotFound):
            reconciler.sync_stack("nope")


class TestQueues:
    """Push ingestion."""

    def test_message_converges_named_scope(self, store, reconciler, handler, stack, events):
        reconciler.sync_stack("websites")
        handler.calls.clear()
        message = events.publish({"duties": ["site-bucket"]})

        records = reconciler.drain_queue("events")
        assert len(records) == 1
        rec = records[0]
        assert rec.source_type == SourceType.QUEUE
        assert rec.source_id == "events"
        assert rec.trigger == Trigger.EVENT
        assert rec.metadata["message_id"] == message.id
        assert handler.applied() == ["site-bucket"]
        assert events.depth == 0 and events.inflight == 0

    def test_invalid_message_is_recorded_and_acked(self, store, reconciler, events):
        events.publish({"unexpected": True})

        records = reconciler.drain_queue("events")
        assert records[0].status == ReconciliationStatus.FAILED
        assert records[0].metadata["payload"] == {"unexpected": True}
        assert events.depth == 0

    def test_stack_sync_message(self, store, reconciler, handler, stack, sources):
        store.upsert_queue(Queue(name="hooks", queue_type="memory", message_handler="stack_sync"))
        hooks = sources.broker.channel("hooks")
        hooks.publish({"stack": "websites"})
        hooks.publish({"stack": "websites"})

        first, second = reconciler.drain_queue("hooks")
        assert first.source_type == SourceType.STACK
        assert first.trigger == Trigger.EVENT
        assert first.status == ReconciliationStatus.SUCCEEDED
        assert second.status == ReconciliationStatus.SKIPPED
        assert len(handler.applied()) == 2

    def test_busy_stack_message_is_redelivered(self, store, locks, reconciler, stack, sources):
        store.upsert_queue(Queue(name="hooks", queue_type="memory", message_handler="stack_sync"))
        hooks = sources.broker.channel("hooks")
        hooks.publish({"stack": "websites"})
        locks.acquire("stack:websites", holder="other-scheduler")

        assert reconciler.drain_queue("hooks") == []
        assert hooks.depth == 1

    def test_paused_queue_is_not_drained(self, store, reconciler, events):
        events.publish({"full": True})
        store.set_queue_status("events", QueueStatus.PAUSED)
        assert reconciler.drain_queue("events") == []
        assert events.depth == 1

    def test_unknown_queue_type_marks_error(self, store, reconciler):
        store.upsert_queue(Queue(name="sqs", queue_type="sqs", message_handler="duty_sync"))
        assert reconciler.drain_queue("sqs") == []
        assert store.get_queue("sqs").status == QueueStatus.ERROR

    def test_close_requeues_inflight(self, reconciler, events):
        reconciler.drain_queue("events")
        events.publish({"full": True})
        source = reconciler._queue_source(reconciler.store.get_queue("events"))
        source.receive()
        reconciler.close()
        assert events.depth == 1


class TestDestroy:
    """Destroying stacks and duties."""

    def test_destroy_requires_confirmation(self, reconciler, stack):
        with pytest.raises(DestroyNotConfirmed):
            reconciler.destroy_stack("websites")
        with pytest.raises(DestroyNotConfirmed):
            reconciler.destroy_duties(["site-bucket"])

    def test_destroy_stack(self, store, reconciler, handler, stack):
        reconciler.sync_stack("websites")
        rec = reconciler.destroy_stack("websites", confirmed=True)

        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert rec.metadata["operation"] == "destroy"
        assert handler.destroyed() == ["site-cert", "site-bucket"]
        assert store.get_duty("site-bucket").phase == DutyPhase.ABSENT

    def test_destroy_single_duty_ignores_dependencies(self, store, reconciler, handler, stack):
        reconciler.sync_stack("websites")
        rec = reconciler.destroy_duties(["site-cert"], confirmed=True)

        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert handler.destroyed() == ["site-cert"]
        assert store.get_duty("site-bucket").phase == DutyPhase.DEPLOYED

    def test_destroy_busy_stack(self, locks, reconciler, stack):
        locks.acquire("stack:websites", holder="other-scheduler")
        with pytest.raises(LockContention):
            reconciler.destroy_stack("websites", confirmed=True)


class TestTransientFetch:
    def test_fetch_is_retried(self, store, reconciler, sources, stack):
        attempts = []

        class FlakySource:
            def __init__(self, inner):
                self.inner = inner

            def fetch(self):
                attempts.append(1)
                if len(attempts) < 2:
                    raise TransientError("remote hung up")
                return self.inner.fetch()

            def load_snapshot(self):
                return self.inner.load_snapshot()

        local = sources.stack_source(stack)
        sources.register_stack_type("local", lambda s: FlakySource(local))

        rec = reconciler.sync_stack("websites")
        assert rec.status == ReconciliationStatus.SUCCEEDED
        assert len(attempts) == 2
