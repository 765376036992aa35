"""Wire a complete g8r runtime from settings.

Every component takes its collaborators explicitly; this module is the one
place that builds them in order::

    settings -> engine -> StateStore -> LockManager
             -> HandlerRegistry (+ built-ins) -> DutyExecutor -> ConvergenceRunner
             -> SourceFactory + MessageHandlerRegistry -> Reconciler
             -> ReconciliationScheduler

Example:
    >>> runtime = create_runtime(G8rSettings(database_url="sqlite:///g8r.db"))
    >>> runtime.registry.register("Bucket", "aws", BucketHandler())
    >>> runtime.scheduler.register_stack("websites", "git", {"url": "https://..."})
    >>> runtime.scheduler.start()
"""

from __future__ import annotations

from dataclasses import dataclass

from g8r.core.locks import LockManager
from g8r.core.logging import configure_logging, get_logger
from g8r.core.orm import create_g8r_engine
from g8r.core.settings import G8rSettings
from g8r.core.store import StateStore
from g8r.execution.engine import DutyExecutor
from g8r.execution.handlers import register_builtin_handlers
from g8r.execution.registry import HandlerRegistry
from g8r.execution.retry import RetryPolicy
from g8r.orchestration.planner import DependencyResolver
from g8r.orchestration.runner import ConvergenceRunner
from g8r.scheduling.messages import MessageHandlerRegistry
from g8r.scheduling.reconciler import Reconciler
from g8r.scheduling.service import ReconciliationScheduler
from g8r.scheduling.sources import MemoryBroker, SourceFactory

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Every long-lived component of one g8r process."""

    settings: G8rSettings
    store: StateStore
    locks: LockManager
    registry: HandlerRegistry
    executor: DutyExecutor
    runner: ConvergenceRunner
    sources: SourceFactory
    message_handlers: MessageHandlerRegistry
    reconciler: Reconciler
    scheduler: ReconciliationScheduler

    @property
    def broker(self) -> MemoryBroker:
        return self.sources.broker

    def close(self) -> None:
        self.scheduler.stop()
        self.reconciler.close()
        self.store.engine.dispose()


def create_runtime(
    settings: G8rSettings | None = None,
    *,
    registry: HandlerRegistry | None = None,
    configure_logs: bool = True,
    create_schema: bool = True,
) -> Runtime:
    """Build a runtime.

    Args:
        settings: Defaults to ``G8rSettings()`` (environment / ``.env``)
        registry: Handler registry to use; built-in handlers are added to it
        configure_logs: Configure structlog from the settings
        create_schema: Create missing tables
    """
    settings = settings or G8rSettings()
    if configure_logs:
        configure_logging(level=settings.log_level, json_format=settings.log_json)

    engine = create_g8r_engine(settings.database_url, echo=settings.database_echo)
    store = StateStore(engine)
    if create_schema:
        store.create_schema()

    locks = LockManager(store.session_factory, default_ttl=settings.lock_ttl_seconds)
    registry = register_builtin_handlers(registry or HandlerRegistry())
    retry_policy = RetryPolicy.from_settings(settings)
    executor = DutyExecutor(
        store, registry, locks, retry_policy=retry_policy, lock_ttl_seconds=settings.lock_ttl_seconds
    )
    runner = ConvergenceRunner(executor, max_concurrency=settings.max_concurrency)
    sources = SourceFactory(workspace_dir=settings.workspace_dir)
    message_handlers = MessageHandlerRegistry()
    reconciler = Reconciler(
        store,
        runner,
        locks,
        sources,
        message_handlers=message_handlers,
        resolver=DependencyResolver(),
        fetch_policy=retry_policy,
        lock_ttl_seconds=settings.lock_ttl_seconds,
    )
    scheduler = ReconciliationScheduler(
        store,
        reconciler,
        locks,
        interval_seconds=settings.tick_interval_seconds,
        max_concurrent_cycles=settings.max_concurrent_cycles,
        default_reconcile_interval=settings.default_reconcile_interval,
    )

    logger.info(
        "runtime.created",
        database=engine.url.render_as_string(hide_password=True),
        handlers=len(registry.list_handlers()),
        max_concurrency=settings.max_concurrency,
    )
    return Runtime(
        settings=settings,
        store=store,
        locks=locks,
        registry=registry,
        executor=executor,
        runner=runner,
        sources=sources,
        message_handlers=message_handlers,
        reconciler=reconciler,
        scheduler=scheduler,
    )
