"""Reconciliation scheduler - beat-as-poller over stacks and queues.

Manifesto:
    The backend decides when to tick; the scheduler decides what a tick
    does.  A tick never runs a cycle itself.  It finds the sources that
    need attention and hands each one to a bounded pool, so one slow git
    fetch or one long convergence pass never holds up the others.

┌──────────────────────────────────────────────────────────────────────────────┐
│  ReconciliationScheduler.tick()                                              │
│                                                                              │
│   1. locks.cleanup_expired()                                                 │
│   2. executor.fail_abandoned()            running rows with no live owner    │
│   3. for each stack with is_due(now)      -> pool: reconciler.sync_stack()   │
│   4. for each active queue                -> pool: reconciler.drain_queue()  │
│                                                                              │
│   A source that still has a cycle in flight is not dispatched again.         │
│   Without start() (tests, one-shot use) cycles run inline.                   │
│                                                                              │
│  Public API:                                                                 │
│   start() / stop()            tick loop; stop cancels cycles cooperatively   │
│   sync_now(name, force)       manual pull of one stack                       │
│   converge_now(duties, ...)   manual targeted or full pass                   │
│   register_stack/queue        add or update a source                         │
│   pause_*/resume_*            take a source out of / back into rotation      │
│   health()                    running state, tick count, stats               │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    g8r, scheduling, beat-as-poller, service

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from g8r.core.errors import G8rError, NotFoundError
from g8r.core.locks import LockManager
from g8r.core.logging import get_logger
from g8r.core.models import (
    Queue,
    QueueStatus,
    Reconciliation,
    ReconciliationStatus,
    Stack,
    StackStatus,
    Trigger,
    utcnow,
)
from g8r.core.store import StateStore
from g8r.scheduling.backend import ThreadSchedulerBackend
from g8r.scheduling.reconciler import Reconciler

logger = get_logger(__name__)


@dataclass
class SchedulerStats:
    """Counters since start (or the last reset)."""

    tick_count: int = 0
    cycles_dispatched: int = 0
    cycles_succeeded: int = 0
    cycles_failed: int = 0
    stacks_unchanged: int = 0
    messages_processed: int = 0
    executions_abandoned: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "cycles_dispatched": self.cycles_dispatched,
            "cycles_succeeded": self.cycles_succeeded,
            "cycles_failed": self.cycles_failed,
            "stacks_unchanged": self.stacks_unchanged,
            "messages_processed": self.messages_processed,
            "executions_abandoned": self.executions_abandoned,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


@dataclass
class SchedulerHealth:
    """Health status for the scheduler service."""

    healthy: bool
    running: bool
    backend: dict[str, Any]
    stacks: int = 0
    stacks_paused: int = 0
    queues_active: int = 0
    active_locks: int = 0
    in_flight: list[str] = field(default_factory=list)
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "running": self.running,
            "backend": self.backend,
            "stacks": self.stacks,
            "stacks_paused": self.stacks_paused,
            "queues_active": self.queues_active,
            "active_locks": self.active_locks,
            "in_flight": self.in_flight,
            "stats": self.stats.to_dict(),
        }


class ReconciliationScheduler:
    """Drives pull and push reconciliation cycles.

    Example:
        >>> scheduler = ReconciliationScheduler(store, reconciler, locks)
        >>> scheduler.register_stack("websites", "git", {"url": "https://..."})
        >>> scheduler.start()
        >>> # ... later ...
        >>> scheduler.stop()
    """

    def __init__(
        self,
        store: StateStore,
        reconciler: Reconciler,
        locks: LockManager,
        backend: ThreadSchedulerBackend | None = None,
        interval_seconds: float = 10.0,
        max_concurrent_cycles: int = 4,
        default_reconcile_interval: int = 300,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.locks = locks
        self.backend = backend or ThreadSchedulerBackend()
        self.interval = interval_seconds
        self.max_concurrent_cycles = max_concurrent_cycles
        self.default_reconcile_interval = default_reconcile_interval

        self._stats = SchedulerStats()
        self._stats_lock = threading.Lock()
        self._running = False
        self._cancel = threading.Event()
        self._pool: ThreadPoolExecutor | None = None
        self._in_flight: dict[str, Future] = {}
        self._in_flight_lock = threading.Lock()

    # === Lifecycle ===

    def start(self) -> None:
        if self._running:
            logger.warning("scheduler.already_running")
            return

        logger.info(
            "scheduler.starting",
            backend=self.backend.name,
            interval_seconds=self.interval,
            max_concurrent_cycles=self.max_concurrent_cycles,
        )
        self._cancel.clear()
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_concurrent_cycles, thread_name_prefix="g8r-cycle"
        )
        self._running = True
        self.backend.start(self.tick, self.interval)

    def stop(self, timeout: float = 30.0) -> None:
        """Stop ticking, cancel in-flight cycles and wait for them.

        Cycles stop submitting new duties at once; running duties finish
        their current attempt.
        """
        if not self._running:
            return

        logger.info("scheduler.stopping", in_flight=self.in_flight())
        self._cancel.set()
        self.backend.stop(timeout=timeout)
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        self.reconciler.close()
        # Cycles have drained; manual operations after a stop run normally
        self._cancel.clear()
        self._running = False
        logger.info("scheduler.stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # === Tick Processing ===

    def tick(self) -> int:
        """One scheduler pass.  Returns the number of cycles dispatched."""
        with self._stats_lock:
            self._stats.tick_count += 1
            self._stats.last_tick = utcnow()

        dispatched = 0
        try:
            expired = self.locks.cleanup_expired()
            if expired:
                logger.info("scheduler.locks_expired", count=expired)
            abandoned = self.reconciler.runner.executor.fail_abandoned()
            if abandoned:
                with self._stats_lock:
                    self._stats.executions_abandoned += abandoned

            now = utcnow()
            for stack in self.store.list_stacks():
                if stack.is_due(now) and self._dispatch(f"stack:{stack.name}", self._run_stack, stack.name):
                    dispatched += 1
            for queue in self.store.list_queues(QueueStatus.ACTIVE):
                if self._dispatch(f"queue:{queue.name}", self._run_queue, queue.name):
                    dispatched += 1
        except G8rError as e:
            with self._stats_lock:
                self._stats.last_error = str(e)
            logger.error("scheduler.tick_failed", reason=e.reason, error=str(e))

        if dispatched:
            logger.debug("scheduler.tick", dispatched=dispatched)
        return dispatched

    def _dispatch(self, key: str, func: Callable[[str], None], name: str) -> bool:
        future: Future | None = None
        with self._in_flight_lock:
            running = self._in_flight.get(key)
            if running is not None and not running.done():
                return False
            if self._pool is not None:
                future = self._pool.submit(func, name)
                self._in_flight[key] = future
        with self._stats_lock:
            self._stats.cycles_dispatched += 1

        if future is None:
            func(name)
            return True

        def _done(_: Future, key: str = key) -> None:
            with self._in_flight_lock:
                if self._in_flight.get(key) is future:
                    del self._in_flight[key]

        future.add_done_callback(_done)
        return True

    def _run_stack(self, name: str) -> None:
        try:
            rec = self.reconciler.sync_stack(
                name, trigger=Trigger.SCHEDULED, cancel_event=self._cancel
            )
        except Exception as e:
            self._record_failure(f"stack:{name}", e)
            return
        with self._stats_lock:
            if rec is None:
                self._stats.stacks_unchanged += 1
            else:
                self._count(rec)

    def _run_queue(self, name: str) -> None:
        try:
            records = self.reconciler.drain_queue(name, cancel_event=self._cancel)
        except Exception as e:
            self._record_failure(f"queue:{name}", e)
            return
        with self._stats_lock:
            self._stats.messages_processed += len(records)
            for rec in records:
                self._count(rec)

    def _count(self, rec: Reconciliation) -> None:
        if rec.status in (ReconciliationStatus.SUCCEEDED, ReconciliationStatus.SKIPPED):
            self._stats.cycles_succeeded += 1
        else:
            self._stats.cycles_failed += 1

    def _record_failure(self, source: str, error: Exception) -> None:
        logger.exception("scheduler.cycle_failed", source=source, error=str(error))
        with self._stats_lock:
            self._stats.cycles_failed += 1
            self._stats.last_error = f"{source}: {error}"

    def in_flight(self) -> list[str]:
        with self._in_flight_lock:
            return sorted(k for k, f in self._in_flight.items() if not f.done())

    # === Manual Operations ===

    def sync_now(self, name: str, force: bool = True) -> Reconciliation | None:
        """Pull one stack right away, outside the interval."""
        logger.info("scheduler.sync_now", stack=name, force=force)
        return self.reconciler.sync_stack(
            name, trigger=Trigger.MANUAL, force=force, cancel_event=self._cancel
        )

    def converge_now(
        self,
        duties: Iterable[str] | None = None,
        rosters: Iterable[str] | None = None,
    ) -> Reconciliation:
        return self.reconciler.converge(duties, rosters, cancel_event=self._cancel)

    def destroy_stack(self, name: str, confirmed: bool = False) -> Reconciliation:
        return self.reconciler.destroy_stack(name, confirmed=confirmed, cancel_event=self._cancel)

    def register_stack(
        self,
        name: str,
        source_type: str,
        source_config: dict[str, Any] | None = None,
        *,
        config_path: str = "g8r.yaml",
        reconcile_interval: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Stack:
        """Register or update a stack; sync state of an existing stack is kept."""
        stack = self.store.upsert_stack(
            Stack(
                name=name,
                source_type=source_type,
                source_config=dict(source_config or {}),
                config_path=config_path,
                reconcile_interval=reconcile_interval or self.default_reconcile_interval,
                metadata=dict(metadata or {}),
            )
        )
        logger.info("scheduler.stack_registered", stack=name, source_type=source_type)
        return stack

    def register_queue(
        self,
        name: str,
        queue_type: str,
        message_handler: str,
        queue_config: dict[str, Any] | None = None,
        handler_config: dict[str, Any] | None = None,
    ) -> Queue:
        """Register or update a queue.

        Raises:
            ConfigurationError: unknown message handler
        """
        self.reconciler.message_handlers.get(message_handler)
        queue = self.store.upsert_queue(
            Queue(
                name=name,
                queue_type=queue_type,
                message_handler=message_handler,
                queue_config=dict(queue_config or {}),
                handler_config=dict(handler_config or {}),
            )
        )
        logger.info("scheduler.queue_registered", queue=name, queue_type=queue_type)
        return queue

    def pause_stack(self, name: str) -> bool:
        """Returns False if the stack does not exist."""
        try:
            self.store.set_stack_status(name, StackStatus.PAUSED)
        except NotFoundError:
            return False
        logger.info("scheduler.stack_paused", stack=name)
        return True

    def resume_stack(self, name: str) -> bool:
        try:
            stack = self.store.get_stack(name)
            status = StackStatus.SYNCED if stack.last_sync_version else StackStatus.PENDING
            self.store.set_stack_status(name, status)
        except NotFoundError:
            return False
        logger.info("scheduler.stack_resumed", stack=name)
        return True

    def pause_queue(self, name: str) -> bool:
        try:
            self.store.set_queue_status(name, QueueStatus.PAUSED)
        except NotFoundError:
            return False
        logger.info("scheduler.queue_paused", queue=name)
        return True

    def resume_queue(self, name: str) -> bool:
        try:
            self.store.set_queue_status(name, QueueStatus.ACTIVE)
        except NotFoundError:
            return False
        logger.info("scheduler.queue_resumed", queue=name)
        return True

    # === Health & Stats ===

    def health(self) -> SchedulerHealth:
        backend_health = self.backend.health()
        stacks = self.store.list_stacks()
        return SchedulerHealth(
            healthy=self._running and backend_health.get("healthy", False),
            running=self._running,
            backend=backend_health,
            stacks=len(stacks),
            stacks_paused=sum(1 for s in stacks if s.status == StackStatus.PAUSED),
            queues_active=len(self.store.list_queues(QueueStatus.ACTIVE)),
            active_locks=len(self.locks.list_active()),
            in_flight=self.in_flight(),
            stats=self.get_stats(),
        )

    def get_stats(self) -> SchedulerStats:
        with self._stats_lock:
            return SchedulerStats(**vars(self._stats))

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = SchedulerStats()
