"""
Reconciler - one convergence cycle per trigger, one record per cycle.

Manifesto:
    Pull (stack) and push (queue) ingestion look different on the way in
    and identical on the way out.  Whatever triggered it, a cycle selects
    duties, plans them with the DependencyResolver, runs the plan with the
    ConvergenceRunner and commits exactly one Reconciliation record with
    the scope, the per-duty outcomes and the duties that reached terminal
    success.  Partial progress is never rolled back: each execution is
    already recorded on its own.

Architecture:
    ::

        sync_stack(name)                    process_queue_message(queue, msg)
          lock stack:<name>                   message handler -> ConvergenceRequest
          source.fetch() (retried)              ├── stack_sync -> sync_stack(trigger=event)
          revision unchanged?                   └── duty_sync  -> converge(duties, rosters)
            ├── unconverged duties -> pass    ack after the record is persisted
            ├── forced -> skipped record
            └── otherwise nothing
          revision changed:
            load snapshot -> apply_snapshot -> pass over the stack's duties

        _run_pass(rec_id, duties, rosters, operation)
          select -> plan (PlanError aborts) -> run -> finish_reconciliation

    Scope rules for dependencies outside the selected set:

        full pass (no duty names)   outside references are a PlanError
        named duties / stack pass   accepted when already deployed on the roster
        destroy                     ignored

Tags:
    g8r, reconciliation, scheduler, pull, push, convergence

Doc-Types:
    - API Reference
    - Architecture
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any

from g8r.core.errors import (
    ConfigurationError,
    DestroyNotConfirmed,
    ExecutionCancelled,
    G8rError,
    LockContention,
    NotFoundError,
)
from g8r.core.locks import LockManager, source_lock_key
from g8r.core.logging import LogContext, get_logger
from g8r.core.models import (
    Duty,
    DutyPhase,
    Operation,
    Queue,
    QueueStatus,
    Reconciliation,
    ReconciliationStatus,
    Roster,
    SourceType,
    Stack,
    StackStatus,
    Trigger,
)
from g8r.core.store import StateStore
from g8r.execution.retry import RetryContext, RetryPolicy
from g8r.orchestration.planner import DependencyResolver, match_rosters
from g8r.orchestration.runner import ConvergenceRunner
from g8r.scheduling.messages import MessageHandlerRegistry
from g8r.scheduling.sources import QueueMessage, QueueSource, SourceFactory, StackSource

logger = get_logger(__name__)

MANUAL_SOURCE_ID = "manual"


class Reconciler:
    """Turns triggers into recorded convergence cycles.

    Example:
        >>> reconciler = Reconciler(store, runner, locks, SourceFactory(workspace))
        >>> rec = reconciler.sync_stack("websites", force=True)
        >>> rec.status, rec.duties_applied
        (<ReconciliationStatus.SUCCEEDED: 'succeeded'>, ['site-bucket', 'site-cert'])
    """

    def __init__(
        self,
        store: StateStore,
        runner: ConvergenceRunner,
        locks: LockManager,
        sources: SourceFactory,
        message_handlers: MessageHandlerRegistry | None = None,
        resolver: DependencyResolver | None = None,
        fetch_policy: RetryPolicy | None = None,
        lock_ttl_seconds: int = 3600,
    ) -> None:
        self.store = store
        self.runner = runner
        self.locks = locks
        self.sources = sources
        self.message_handlers = message_handlers or MessageHandlerRegistry()
        self.resolver = resolver or DependencyResolver()
        self.fetch_policy = fetch_policy or RetryPolicy()
        self.lock_ttl_seconds = lock_ttl_seconds
        self._queue_sources: dict[str, QueueSource] = {}
        self._queue_sources_lock = threading.Lock()

    # =========================================================================
    # CONVERGENCE
    # =========================================================================

    def converge(
        self,
        duties: Iterable[str] | None = None,
        rosters: Iterable[str] | None = None,
        *,
        source_type: SourceType = SourceType.MANUAL,
        source_id: str = MANUAL_SOURCE_ID,
        trigger: Trigger = Trigger.MANUAL,
        source_version: str | None = None,
        metadata: dict[str, Any] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Reconciliation:
        """Run one convergence pass and record it.

        Args:
            duties: Duty names to converge; None selects every duty
            rosters: Roster names to converge on; None selects every roster
            source_type: Source the cycle is recorded under
            source_id: Stack/queue name (``manual`` for direct calls)
            trigger: Why the cycle runs
            metadata: Extra fields for the reconciliation record
            cancel_event: Set to stop submitting new duties

        Returns:
            The finished Reconciliation record
        """
        duty_names = list(dict.fromkeys(duties)) if duties is not None else None
        roster_names = list(dict.fromkeys(rosters)) if rosters is not None else None
        rec_id = self.store.start_reconciliation(
            source_type, source_id, trigger, source_version, metadata=metadata
        )
        with LogContext(reconciliation_id=rec_id, source=f"{source_type.value}:{source_id}"):
            return self._run_pass(rec_id, duty_names, roster_names, Operation.APPLY, cancel_event)

    def destroy_duties(
        self,
        duties: Iterable[str],
        *,
        confirmed: bool = False,
        rosters: Iterable[str] | None = None,
        source_type: SourceType = SourceType.MANUAL,
        source_id: str = MANUAL_SOURCE_ID,
        cancel_event: threading.Event | None = None,
    ) -> Reconciliation:
        """Destroy duties, dependents first.

        Raises:
            DestroyNotConfirmed: unless ``confirmed=True``
        """
        duty_names = list(dict.fromkeys(duties))
        if not confirmed:
            raise DestroyNotConfirmed(
                f"Destroying {duty_names} requires explicit confirmation"
            )
        roster_names = list(dict.fromkeys(rosters)) if rosters is not None else None
        rec_id = self.store.start_reconciliation(
            source_type, source_id, Trigger.MANUAL, metadata={"operation": Operation.DESTROY.value}
        )
        with LogContext(reconciliation_id=rec_id, source=f"{source_type.value}:{source_id}"):
            logger.warning("reconciler.destroy_started", duties=duty_names)
            return self._run_pass(rec_id, duty_names, roster_names, Operation.DESTROY, cancel_event)

    def _run_pass(
        self,
        rec_id: int,
        duty_names: list[str] | None,
        roster_names: list[str] | None,
        operation: Operation,
        cancel_event: threading.Event | None,
        metadata: dict[str, Any] | None = None,
    ) -> Reconciliation:
        scope = {
            "duties": sorted(duty_names) if duty_names is not None else None,
            "rosters": sorted(roster_names) if roster_names is not None else None,
            "full": duty_names is None,
        }
        metadata = {"scope": scope, **(metadata or {})}

        try:
            selected, known, roster_scope = self._select(duty_names, roster_names, metadata)
            plan = self.resolver.plan(
                selected, roster_scope, _outside_dependency_check(operation, duty_names, known)
            )
            metadata["unmatched_duties"] = plan.unmatched
            if plan.unmatched:
                logger.warning("reconciler.unmatched_duties", duties=plan.unmatched)

            result = self.runner.run(
                plan, operation=operation, reconciliation_id=rec_id, cancel_event=cancel_event
            )
        except G8rError as e:
            logger.error("reconciler.cycle_aborted", reason=e.reason, error=str(e))
            metadata["aborted"] = e.to_dict()
            return self.store.finish_reconciliation(
                rec_id, ReconciliationStatus.FAILED, error=str(e), metadata=metadata
            )

        metadata.update(result.summary())
        status = result.status
        errors = []
        if result.error is not None:
            errors.append(str(result.error))
        errors.extend(f"{r.duty}@{r.roster}: {r.reason}" for r in result.failed)
        unknown = metadata.get("unknown_duties", []) + metadata.get("unknown_rosters", [])
        if unknown:
            errors.append(f"Unknown names in scope: {unknown}")
            if status == ReconciliationStatus.SUCCEEDED:
                status = ReconciliationStatus.FAILED

        rec = self.store.finish_reconciliation(
            rec_id,
            status,
            duties_applied=result.applied,
            error="; ".join(errors) or None,
            metadata=metadata,
        )
        logger.info(
            "reconciler.cycle_finished",
            status=rec.status.value,
            applied=rec.duties_applied,
            failed=len(result.failed),
            skipped=len(result.skipped),
        )
        return rec

    def _select(
        self,
        duty_names: list[str] | None,
        roster_names: list[str] | None,
        metadata: dict[str, Any],
    ) -> tuple[list[Duty], dict[str, Duty], list[Roster]]:
        """Duties and rosters in scope; names that do not exist go in ``metadata``."""
        known = {d.name: d for d in self.store.list_duties()}
        if duty_names is None:
            selected = list(known.values())
        else:
            selected = [known[n] for n in duty_names if n in known]
            missing = [n for n in duty_names if n not in known]
            if missing:
                metadata["unknown_duties"] = missing

        rosters = self.store.list_rosters()
        if roster_names is not None:
            present = {r.name for r in rosters}
            rosters = [r for r in rosters if r.name in roster_names]
            missing = [n for n in roster_names if n not in present]
            if missing:
                metadata["unknown_rosters"] = missing
        return selected, known, rosters

    # =========================================================================
    # STACKS (pull)
    # =========================================================================

    def sync_stack(
        self,
        name: str,
        *,
        trigger: Trigger = Trigger.SCHEDULED,
        force: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> Reconciliation | None:
        """Pull a stack and converge it.

        Returns None when another cycle holds the stack, or when the
        revision is unchanged, nothing needs convergence and ``force`` is off.

        Raises:
            StackNotFound: no stack is registered under ``name``
        """
        key = source_lock_key(SourceType.STACK.value, name)
        token = self.locks.new_token()
        if not self.locks.acquire(key, holder=token, ttl_seconds=self.lock_ttl_seconds):
            logger.info("reconciler.stack_busy", stack=name)
            return None
        try:
            stack = self.store.get_stack(name)
            with LogContext(stack=name):
                return self._sync_stack(stack, trigger, force, cancel_event)
        finally:
            self.locks.release(key, holder=token)

    def _sync_stack(
        self,
        stack: Stack,
        trigger: Trigger,
        force: bool,
        cancel_event: threading.Event | None,
    ) -> Reconciliation | None:
        try:
            source = self.sources.stack_source(stack)
            ctx = RetryContext(
                self.fetch_policy, operation=f"fetch stack {stack.name}", cancel_event=cancel_event
            )
            revision = ctx.run(source.fetch)
        except G8rError as e:
            return self._stack_failed(stack, trigger, e)

        if revision == stack.last_sync_version:
            return self._resync_unchanged(stack, revision, trigger, force, cancel_event)

        logger.info(
            "reconciler.stack_changed", previous=stack.last_sync_version, revision=revision
        )
        return self._sync_revision(stack, source, revision, trigger, cancel_event)

    def _sync_revision(
        self,
        stack: Stack,
        source: StackSource,
        revision: str,
        trigger: Trigger,
        cancel_event: threading.Event | None,
    ) -> Reconciliation:
        self.store.set_stack_status(stack.name, StackStatus.SYNCING)
        rec_id = self.store.start_reconciliation(
            SourceType.STACK,
            stack.name,
            trigger,
            revision,
            metadata={"previous_version": stack.last_sync_version},
        )
        with LogContext(reconciliation_id=rec_id):
            try:
                snapshot = source.load_snapshot()
                diff = self.store.apply_snapshot(snapshot, source=stack.name)
            except G8rError as e:
                logger.error("reconciler.snapshot_failed", reason=e.reason, error=str(e))
                rec = self.store.finish_reconciliation(
                    rec_id,
                    ReconciliationStatus.FAILED,
                    error=str(e),
                    metadata={"aborted": e.to_dict()},
                )
                self.store.set_stack_status(stack.name, StackStatus.ERROR, str(e))
                return rec

            if diff.orphaned:
                logger.warning("reconciler.orphaned_duties", duties=diff.orphaned)
            rec = self._run_pass(
                rec_id,
                diff.duties,
                None,
                Operation.APPLY,
                cancel_event,
                metadata={
                    "rosters_declared": diff.rosters,
                    "added_duties": diff.added,
                    "updated_duties": diff.updated,
                    "orphaned_duties": diff.orphaned,
                },
            )
        self._record_stack_sync(stack.name, revision, rec)
        return rec

    def _resync_unchanged(
        self,
        stack: Stack,
        revision: str,
        trigger: Trigger,
        force: bool,
        cancel_event: threading.Event | None,
    ) -> Reconciliation | None:
        rosters = self.store.list_rosters()
        unconverged = [
            duty.name
            for duty in self.store.list_duties(source=stack.name)
            if any(duty.phase_on(r.name).needs_convergence for r in match_rosters(duty, rosters))
        ]

        if not unconverged:
            self.store.update_stack_sync(stack.name, revision, StackStatus.SYNCED)
            if not force:
                logger.debug("reconciler.stack_unchanged", revision=revision)
                return None
            logger.info("reconciler.stack_unchanged_forced", revision=revision)
            return self.store.record_reconciliation(
                SourceType.STACK,
                stack.name,
                trigger,
                ReconciliationStatus.SKIPPED,
                source_version=revision,
                metadata={"reason": "unchanged", "revision_changed": False},
            )

        logger.info("reconciler.reconverging", duties=unconverged)
        rec_id = self.store.start_reconciliation(
            SourceType.STACK, stack.name, trigger, revision, metadata={"revision_changed": False}
        )
        with LogContext(reconciliation_id=rec_id):
            rec = self._run_pass(rec_id, unconverged, None, Operation.APPLY, cancel_event)
        self._record_stack_sync(stack.name, revision, rec)
        return rec

    def _record_stack_sync(self, name: str, revision: str, rec: Reconciliation) -> None:
        if rec.status == ReconciliationStatus.SUCCEEDED:
            self.store.update_stack_sync(name, revision, StackStatus.SYNCED)
        else:
            self.store.update_stack_sync(
                name, revision, StackStatus.ERROR, error=rec.error_message or rec.status.value
            )

    def _stack_failed(self, stack: Stack, trigger: Trigger, error: G8rError) -> Reconciliation:
        cancelled = isinstance(error, ExecutionCancelled)
        logger.error("reconciler.stack_fetch_failed", reason=error.reason, error=str(error))
        rec = self.store.record_reconciliation(
            SourceType.STACK,
            stack.name,
            trigger,
            ReconciliationStatus.CANCELLED if cancelled else ReconciliationStatus.FAILED,
            error=str(error),
            metadata={"aborted": error.to_dict()},
        )
        if not cancelled:
            self.store.set_stack_status(stack.name, StackStatus.ERROR, str(error))
        return rec

    def destroy_stack(
        self,
        name: str,
        *,
        confirmed: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> Reconciliation:
        """Destroy every duty the stack declared, dependents first.

        Raises:
            DestroyNotConfirmed: unless ``confirmed=True``
            LockContention: a sync of the stack is in progress
        """
        if not confirmed:
            raise DestroyNotConfirmed(
                f"Destroying stack '{name}' requires explicit confirmation"
            ).with_context(stack=name)
        self.store.get_stack(name)

        key = source_lock_key(SourceType.STACK.value, name)
        token = self.locks.new_token()
        if not self.locks.acquire(key, holder=token, ttl_seconds=self.lock_ttl_seconds):
            raise LockContention(f"Stack '{name}' is being synced").with_context(stack=name)
        try:
            duties = [d.name for d in self.store.list_duties(source=name)]
            return self.destroy_duties(
                duties,
                confirmed=True,
                source_type=SourceType.STACK,
                source_id=name,
                cancel_event=cancel_event,
            )
        finally:
            self.locks.release(key, holder=token)

    # =========================================================================
    # QUEUES (push)
    # =========================================================================

    def process_queue_message(
        self,
        queue: Queue,
        message: QueueMessage,
        cancel_event: threading.Event | None = None,
    ) -> Reconciliation | None:
        """Interpret one message and run the cycle it asks for.

        Returns None only when the message should be redelivered later
        (the stack it names is busy).
        """
        with LogContext(queue=queue.name, message_id=message.id):
            try:
                handler = self.message_handlers.get(queue.message_handler)
                request = handler(message, dict(queue.handler_config))
                if request.is_stack_sync:
                    return self.sync_stack(
                        request.stack, trigger=Trigger.EVENT, force=True, cancel_event=cancel_event
                    )
            except (ConfigurationError, NotFoundError) as e:
                logger.error("reconciler.message_invalid", reason=e.reason, error=str(e))
                return self.store.record_reconciliation(
                    SourceType.QUEUE,
                    queue.name,
                    Trigger.EVENT,
                    ReconciliationStatus.FAILED,
                    error=str(e),
                    metadata={"message_id": message.id, "payload": message.payload},
                )

            logger.info("reconciler.message_received", scope=request.scope())
            return self.converge(
                None if request.full or not request.duties else request.duties,
                request.rosters or None,
                source_type=SourceType.QUEUE,
                source_id=queue.name,
                trigger=Trigger.EVENT,
                metadata={"message_id": message.id},
                cancel_event=cancel_event,
            )

    def drain_queue(
        self,
        name: str,
        max_messages: int = 100,
        cancel_event: threading.Event | None = None,
    ) -> list[Reconciliation]:
        """Consume waiting messages from an active queue.

        A message is acknowledged only after its reconciliation record is
        persisted; a store failure rejects it and stops the drain.
        """
        key = source_lock_key(SourceType.QUEUE.value, name)
        token = self.locks.new_token()
        if not self.locks.acquire(key, holder=token, ttl_seconds=self.lock_ttl_seconds):
            logger.debug("reconciler.queue_busy", queue=name)
            return []

        records: list[Reconciliation] = []
        try:
            queue = self.store.get_queue(name)
            if queue.status != QueueStatus.ACTIVE:
                return records
            try:
                source = self._queue_source(queue)
            except ConfigurationError as e:
                logger.error("reconciler.queue_invalid", queue=name, error=str(e))
                self.store.set_queue_status(name, QueueStatus.ERROR, str(e))
                return records

            while len(records) < max_messages:
                if cancel_event is not None and cancel_event.is_set():
                    break
                message = source.receive(timeout=0)
                if message is None:
                    break
                try:
                    rec = self.process_queue_message(queue, message, cancel_event)
                except G8rError as e:
                    logger.error(
                        "reconciler.message_failed", queue=name, message_id=message.id, error=str(e)
                    )
                    source.reject(message.id)
                    break
                if rec is None:
                    source.reject(message.id)
                    break
                source.acknowledge(message.id)
                records.append(rec)
        finally:
            self.locks.release(key, holder=token)

        if records:
            logger.info("reconciler.queue_drained", queue=name, messages=len(records))
        return records

    def _queue_source(self, queue: Queue) -> QueueSource:
        with self._queue_sources_lock:
            source = self._queue_sources.get(queue.name)
            if source is None or source.queue.queue_type != queue.queue_type:
                source = self.sources.queue_source(queue)
                source.connect()
                self._queue_sources[queue.name] = source
            return source

    def close(self) -> None:
        """Disconnect queue sources; unacknowledged messages are redelivered."""
        with self._queue_sources_lock:
            sources = list(self._queue_sources.values())
            self._queue_sources.clear()
        for source in sources:
            source.disconnect()


def _outside_dependency_check(
    operation: Operation,
    duty_names: list[str] | None,
    known: dict[str, Duty],
) -> Callable[[str, str], bool] | None:
    """Which dependencies outside the selected set a pass may rely on."""
    if operation == Operation.DESTROY:
        return lambda dep, roster: True
    if duty_names is None:
        return None

    def deployed(dep: str, roster: str) -> bool:
        return dep in known and known[dep].phase_on(roster) == DutyPhase.DEPLOYED

    return deployed
