"""
Shared pytest fixtures and configuration for g8r tests.

This module provides:
- A file-backed SQLite state store per test (WAL, real locking)
- Lock manager, handler registry with a scriptable handler
- A zero-delay retry policy so retry tests run instantly
- The executor / runner / reconciler wired the way create_runtime wires them

Usage:
    def test_something(store, handler, reconciler):
        handler.fail("site-bucket", PermanentError("boom"))
        ...
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from g8r.core.locks import LockManager
from g8r.core.orm import create_g8r_engine
from g8r.core.store import StateStore
from g8r.execution.engine import DutyExecutor
from g8r.execution.handlers import register_builtin_handlers
from g8r.execution.registry import HandlerRegistry
from g8r.execution.retry import RetryPolicy
from g8r.orchestration.runner import ConvergenceRunner
from g8r.scheduling.reconciler import Reconciler
from g8r.scheduling.sources import SourceFactory
from tests._support.handlers import ScriptedHandler


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def store(tmp_path: Path) -> Iterator[StateStore]:
    """Fresh state store in a temporary SQLite file."""
    engine = create_g8r_engine(f"sqlite:///{tmp_path / 'g8r.db'}")
    state = StateStore(engine)
    state.create_schema()
    yield state
    engine.dispose()


@pytest.fixture
def locks(store: StateStore) -> LockManager:
    return LockManager(store.session_factory, instance_id="test", default_ttl=60)


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three attempts, no waiting."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, max_elapsed=None)


@pytest.fixture
def handler() -> ScriptedHandler:
    return ScriptedHandler()


@pytest.fixture
def registry(handler: ScriptedHandler) -> HandlerRegistry:
    reg = register_builtin_handlers(HandlerRegistry())
    reg.register("Fake", "test", handler)
    return reg


@pytest.fixture
def executor(
    store: StateStore, registry: HandlerRegistry, locks: LockManager, fast_retry: RetryPolicy
) -> DutyExecutor:
    return DutyExecutor(store, registry, locks, retry_policy=fast_retry, lock_ttl_seconds=60)


@pytest.fixture
def runner(executor: DutyExecutor) -> ConvergenceRunner:
    return ConvergenceRunner(executor, max_concurrency=4)


@pytest.fixture
def sources(tmp_path: Path) -> SourceFactory:
    return SourceFactory(workspace_dir=tmp_path / "workspace")


@pytest.fixture
def reconciler(
    store: StateStore,
    runner: ConvergenceRunner,
    locks: LockManager,
    sources: SourceFactory,
    fast_retry: RetryPolicy,
) -> Reconciler:
    return Reconciler(store, runner, locks, sources, fetch_policy=fast_retry, lock_ttl_seconds=60)
