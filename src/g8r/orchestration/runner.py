"""Convergence runner: execute an ExecutionPlan with bounded concurrency.

Nodes are (duty, roster) pairs.  A node is submitted once every node it
depends on (same roster) has reached terminal success in this pass; nodes
without an ordering relationship run concurrently on a thread pool bounded
by ``max_concurrency``.

Outcome propagation::

    dependency FAILED            -> dependent recorded as failed, DependencyFailed
                                    (handler never invoked, propagates transitively)
    dependency PENDING / SKIPPED -> dependent skipped for this pass, DependencyPending
                                    (no record; picked up by a later pass)
    cycle cancelled              -> nothing new is submitted; in-flight duties
                                    stop at their next retry boundary
    store failure                -> pass aborted; partial results kept

Destroy passes run the same plan with the edges reversed: dependents are
destroyed before the duties they depend on.
"""

from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from g8r.core.errors import ExecutionCancelled, G8rError
from g8r.core.logging import get_logger
from g8r.core.models import (
    ExecutionOutcome,
    ExecutionResult,
    Operation,
    ReconciliationStatus,
)
from g8r.execution.engine import DutyExecutor
from g8r.orchestration.planner import ExecutionPlan, PlannedDuty

logger = get_logger(__name__)

DEPENDENCY_PENDING = "DependencyPending"

NodeKey = tuple[str, str]


@dataclass
class PassResult:
    """Results of one convergence (or destroy) pass."""

    operation: Operation = Operation.APPLY
    results: list[ExecutionResult] = field(default_factory=list)
    order: list[NodeKey] = field(default_factory=list)
    cancelled: bool = False
    error: G8rError | None = None

    def _by_outcome(self, outcome: ExecutionOutcome) -> list[ExecutionResult]:
        return [r for r in self._ordered() if r.outcome == outcome]

    def _ordered(self) -> list[ExecutionResult]:
        index = {key: i for i, key in enumerate(self.order)}
        return sorted(self.results, key=lambda r: index.get((r.duty, r.roster), len(index)))

    @property
    def succeeded(self) -> list[ExecutionResult]:
        return self._by_outcome(ExecutionOutcome.SUCCEEDED)

    @property
    def pending(self) -> list[ExecutionResult]:
        return self._by_outcome(ExecutionOutcome.PENDING)

    @property
    def failed(self) -> list[ExecutionResult]:
        return self._by_outcome(ExecutionOutcome.FAILED)

    @property
    def skipped(self) -> list[ExecutionResult]:
        return self._by_outcome(ExecutionOutcome.SKIPPED)

    @property
    def applied(self) -> list[str]:
        """Duty names that reached terminal success, in plan order."""
        names: list[str] = []
        for result in self.succeeded:
            if result.duty not in names:
                names.append(result.duty)
        return names

    @property
    def status(self) -> ReconciliationStatus:
        if self.cancelled:
            return ReconciliationStatus.CANCELLED
        if self.error is not None or self.failed:
            return ReconciliationStatus.FAILED
        return ReconciliationStatus.SUCCEEDED

    def result_for(self, duty: str, roster: str) -> ExecutionResult | None:
        for result in self.results:
            if result.duty == duty and result.roster == roster:
                return result
        return None

    def summary(self) -> dict[str, Any]:
        """Per-duty outcomes for the reconciliation record."""
        return {
            "operation": self.operation.value,
            "outcomes": [r.to_dict() for r in self._ordered()],
            "pending": [f"{r.duty}@{r.roster}" for r in self.pending],
            "skipped": [f"{r.duty}@{r.roster}" for r in self.skipped],
            "failed": [f"{r.duty}@{r.roster}" for r in self.failed],
        }


class ConvergenceRunner:
    """Schedules plan nodes onto a bounded thread pool.

    Example:
        >>> runner = ConvergenceRunner(executor, max_concurrency=4)
        >>> result = runner.run(plan, reconciliation_id=rec_id)
        >>> result.applied
        ['site-bucket', 'site-cert']
    """

    def __init__(self, executor: DutyExecutor, max_concurrency: int = 4) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.executor = executor
        self.max_concurrency = max_concurrency

    def run(
        self,
        plan: ExecutionPlan,
        *,
        operation: Operation = Operation.APPLY,
        reconciliation_id: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PassResult:
        nodes = plan.nodes
        if operation == Operation.DESTROY:
            nodes = list(reversed(nodes))
        node_map: dict[NodeKey, PlannedDuty] = {n.key: n for n in nodes}
        waits_on = self._edges(nodes, reverse=operation == Operation.DESTROY)

        outcome = PassResult(operation=operation, order=[n.key for n in nodes])
        if not nodes:
            return outcome

        cancel_event = cancel_event or threading.Event()
        external = self._external_outputs(plan) if operation == Operation.APPLY else {}

        lock = threading.Lock()
        pending: list[NodeKey] = [n.key for n in nodes]
        done: set[NodeKey] = set()
        failed: set[NodeKey] = set()
        blocked: set[NodeKey] = set()
        outputs: dict[NodeKey, dict[str, Any]] = {}
        stop = False

        def dependency_outputs(node: PlannedDuty) -> dict[str, dict[str, Any]]:
            merged = {}
            for dep in node.duty.depends_on:
                key = (dep, node.roster.name)
                with lock:
                    value = outputs.get(key)
                if value is None:
                    value = external.get(key)
                if value is not None:
                    merged[dep] = value
            return merged

        def run_node(node: PlannedDuty) -> ExecutionResult:
            if operation == Operation.DESTROY:
                return self.executor.destroy(
                    node.roster,
                    node.duty,
                    confirmed=True,
                    reconciliation_id=reconciliation_id,
                    cancel_event=cancel_event,
                )
            return self.executor.execute(
                node.roster,
                node.duty,
                reconciliation_id=reconciliation_id,
                cancel_event=cancel_event,
                dependency_outputs=dependency_outputs(node),
            )

        with ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="g8r-duty"
        ) as pool:
            futures: dict[Future, NodeKey] = {}

            while pending and not stop:
                if cancel_event.is_set():
                    outcome.cancelled = True
                    break

                running = set(futures.values())
                ready: list[NodeKey] = []
                for key in list(pending):
                    if key in running:
                        continue
                    deps = waits_on[key]
                    if any(d in failed for d in deps):
                        pending.remove(key)
                        failed.add(key)
                        node = node_map[key]
                        outcome.results.append(
                            self.executor.record_dependency_failed(
                                node.roster,
                                node.duty,
                                [d for d, _ in deps & failed],
                                operation=operation,
                                reconciliation_id=reconciliation_id,
                            )
                        )
                    elif any(d in blocked for d in deps):
                        pending.remove(key)
                        blocked.add(key)
                        outcome.results.append(self._dependency_pending(node_map[key], operation))
                    elif all(d in done for d in deps):
                        ready.append(key)

                slots = self.max_concurrency - len(futures)
                for key in ready[:slots]:
                    pending.remove(key)
                    futures[pool.submit(run_node, node_map[key])] = key
                    logger.debug("runner.submitted", duty=key[0], roster=key[1], active=len(futures))

                if not futures:
                    # Everything left waits on something that can no longer finish
                    for key in pending:
                        outcome.results.append(self._dependency_pending(node_map[key], operation))
                    pending.clear()
                    break

                finished, _ = wait(list(futures), return_when=FIRST_COMPLETED)
                for future in finished:
                    key = futures.pop(future)
                    try:
                        result = future.result()
                    except G8rError as e:
                        logger.error("runner.aborted", duty=key[0], roster=key[1], error=str(e))
                        outcome.error = e
                        stop = True
                        cancel_event.set()
                        continue

                    outcome.results.append(result)
                    with lock:
                        if result.outcome == ExecutionOutcome.SUCCEEDED:
                            done.add(key)
                            outputs[key] = result.outputs
                        elif result.outcome == ExecutionOutcome.FAILED:
                            failed.add(key)
                            if result.reason == ExecutionCancelled.reason:
                                outcome.cancelled = True
                        else:
                            blocked.add(key)

            # Drain in-flight work; cancel_event stops it at the next retry boundary
            for future in list(futures):
                key = futures.pop(future)
                try:
                    outcome.results.append(future.result())
                except G8rError as e:
                    outcome.error = outcome.error or e

        if outcome.cancelled:
            logger.warning("runner.cancelled", remaining=len(pending))

        logger.info(
            "runner.finished",
            operation=operation.value,
            succeeded=len(outcome.succeeded),
            pending=len(outcome.pending),
            failed=len(outcome.failed),
            skipped=len(outcome.skipped),
            status=outcome.status.value,
        )
        return outcome

    @staticmethod
    def _edges(nodes: list[PlannedDuty], reverse: bool) -> dict[NodeKey, set[NodeKey]]:
        """For each node, the nodes it must wait for."""
        waits_on: dict[NodeKey, set[NodeKey]] = {n.key: set() for n in nodes}
        for node in nodes:
            for dep in node.depends_on:
                dep_key = (dep, node.roster.name)
                if reverse:
                    waits_on[dep_key].add(node.key)
                else:
                    waits_on[node.key].add(dep_key)
        return waits_on

    def _external_outputs(self, plan: ExecutionPlan) -> dict[NodeKey, dict[str, Any]]:
        """Stored outputs of satisfied dependencies outside the pass."""
        found: dict[NodeKey, dict[str, Any]] = {}
        names = {dep for rp in plan.rosters for dep in rp.satisfied}
        if not names:
            return found
        duties = {d.name: d for d in self.executor.store.list_duties(names=names)}
        for rp in plan.rosters:
            for dep in rp.satisfied:
                if dep in duties:
                    state = duties[dep].status.for_roster(rp.roster.name)
                    found[(dep, rp.roster.name)] = dict(state.outputs)
        return found

    @staticmethod
    def _dependency_pending(node: PlannedDuty, operation: Operation) -> ExecutionResult:
        logger.info("runner.dependency_pending", duty=node.duty.name, roster=node.roster.name)
        return ExecutionResult(
            duty=node.duty.name,
            roster=node.roster.name,
            outcome=ExecutionOutcome.SKIPPED,
            operation=operation,
            reason=DEPENDENCY_PENDING,
        )
