"""
Dependency Resolver - turns selected duties into an execution plan.

This is the ordering half of a convergence pass:
1. Match duties to rosters by selector
2. Per roster, validate dependencies reference selected (or satisfied) duties
3. Validate the dependency graph is a DAG (no cycles)
4. Topological sort, ties broken by duty name
5. Return an ExecutionPlan the ConvergenceRunner schedules from

Design Principles:
- Pure functions where possible (testable, deterministic)
- No database access (the caller says which outside dependencies are satisfied)
- No execution (that's for ConvergenceRunner)
- Clear error messages for all failure modes
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from g8r.core.errors import CycleDetectedError, PlanError, UnresolvedDependencyError
from g8r.core.logging import get_logger
from g8r.core.models import Duty, Roster

logger = get_logger(__name__)


@dataclass
class PlannedDuty:
    """One (duty, roster) node of a plan."""

    duty: Duty
    roster: Roster
    depends_on: tuple[str, ...] = ()
    depth: int = 0
    sequence_order: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.duty.name, self.roster.name)


@dataclass
class RosterPlan:
    """Topologically sorted duties for one roster."""

    roster: Roster
    steps: list[PlannedDuty] = field(default_factory=list)
    satisfied: tuple[str, ...] = ()

    @property
    def duty_names(self) -> list[str]:
        return [s.duty.name for s in self.steps]


@dataclass
class ExecutionPlan:
    """Every (roster, duty) node of one convergence pass.

    ``nodes`` orders by dependency depth, then duty name, then roster name.
    ``unmatched`` lists duties no roster's traits satisfied.
    """

    rosters: list[RosterPlan] = field(default_factory=list)
    unmatched: list[str] = field(default_factory=list)

    @property
    def nodes(self) -> list[PlannedDuty]:
        steps = [s for rp in self.rosters for s in rp.steps]
        return sorted(steps, key=lambda s: (s.depth, s.duty.name, s.roster.name))

    @property
    def duty_names(self) -> list[str]:
        return sorted({s.duty.name for rp in self.rosters for s in rp.steps})

    @property
    def is_empty(self) -> bool:
        return not any(rp.steps for rp in self.rosters)

    def for_roster(self, name: str) -> RosterPlan | None:
        for rp in self.rosters:
            if rp.roster.name == name:
                return rp
        return None


def match_rosters(duty: Duty, rosters: Iterable[Roster]) -> list[Roster]:
    """Rosters whose traits/type satisfy the duty's selector, sorted by name."""
    return sorted((r for r in rosters if duty.selector.matches(r)), key=lambda r: r.name)


class DependencyResolver:
    """
    Resolves selected duties into an ExecutionPlan.

    Thread-safe: No mutable state, each plan() call is independent.

    Example:
        resolver = DependencyResolver()
        plan = resolver.plan(duties, rosters)
        # plan.nodes is dependency-ordered
    """

    def plan(
        self,
        duties: Iterable[Duty],
        rosters: Iterable[Roster],
        is_satisfied: Callable[[str, str], bool] | None = None,
    ) -> ExecutionPlan:
        """
        Build a plan for every roster that matches at least one duty.

        Args:
            duties: Duties in scope for this pass
            rosters: All known rosters
            is_satisfied: ``(duty_name, roster_name) -> bool`` for dependencies
                outside the scope.  Targeted passes use it to accept
                dependencies that are already deployed; full passes leave it
                unset so any outside reference is an error.

        Raises:
            UnresolvedDependencyError: A dependency is outside the selection
            CycleDetectedError: Dependencies contain a cycle
        """
        duties = sorted(duties, key=lambda d: d.name)
        rosters = sorted(rosters, key=lambda r: r.name)

        logger.debug("planner.start", duty_count=len(duties), roster_count=len(rosters))

        matched: set[str] = set()
        roster_plans: list[RosterPlan] = []
        for roster in rosters:
            selected = [d for d in duties if d.selector.matches(roster)]
            if not selected:
                continue
            matched.update(d.name for d in selected)

            def satisfied(dep: str, _roster: str = roster.name) -> bool:
                return is_satisfied is not None and is_satisfied(dep, _roster)

            roster_plans.append(self.resolve_roster(roster, selected, satisfied))

        plan = ExecutionPlan(
            rosters=roster_plans,
            unmatched=[d.name for d in duties if d.name not in matched],
        )

        logger.info(
            "planner.resolved",
            rosters=len(roster_plans),
            nodes=len(plan.nodes),
            unmatched=plan.unmatched,
        )
        return plan

    def resolve_roster(
        self,
        roster: Roster,
        duties: list[Duty],
        is_satisfied: Callable[[str], bool] | None = None,
    ) -> RosterPlan:
        """Order the duties selected for one roster."""
        names = {d.name for d in duties}
        satisfied = self._validate_dependencies(duties, names, is_satisfied)

        # Edges restricted to the selected set
        graph = {d.name: [dep for dep in d.depends_on if dep in names] for d in duties}
        self._validate_no_cycles(graph)
        order = self._topological_sort(graph)

        duty_map = {d.name: d for d in duties}
        depth: dict[str, int] = {}
        steps = []
        for index, name in enumerate(order):
            deps = graph[name]
            depth[name] = 1 + max((depth[d] for d in deps), default=-1)
            steps.append(
                PlannedDuty(
                    duty=duty_map[name],
                    roster=roster,
                    depends_on=tuple(deps),
                    depth=depth[name],
                    sequence_order=index,
                )
            )
        return RosterPlan(roster=roster, steps=steps, satisfied=tuple(sorted(satisfied)))

    def _validate_dependencies(
        self,
        duties: list[Duty],
        names: set[str],
        is_satisfied: Callable[[str], bool] | None,
    ) -> set[str]:
        """Validate dependencies reference selected or satisfied duties.

        Returns the satisfied outside dependencies.
        """
        satisfied: set[str] = set()
        for duty in duties:
            missing = []
            for dep in duty.depends_on:
                if dep in names:
                    continue
                if is_satisfied is not None and is_satisfied(dep):
                    satisfied.add(dep)
                else:
                    missing.append(dep)
            if missing:
                raise UnresolvedDependencyError(duty.name, missing)
        return satisfied

    def _validate_no_cycles(self, graph: dict[str, list[str]]) -> None:
        """
        Validate the dependency graph is a DAG (no cycles).

        Uses depth-first search with three-color marking:
        - WHITE (0): Unvisited
        - GRAY (1): Currently visiting (on current path)
        - BLACK (2): Finished visiting

        If we encounter a GRAY node, we've found a cycle.
        """
        WHITE, GRAY, BLACK = 0, 1, 2

        color = {name: WHITE for name in graph}
        path: list[str] = []

        def dfs(node: str) -> list[str] | None:
            color[node] = GRAY
            path.append(node)

            for neighbor in sorted(graph[node]):
                if color[neighbor] == GRAY:
                    cycle_start = path.index(neighbor)
                    return path[cycle_start:] + [neighbor]
                elif color[neighbor] == WHITE:
                    result = dfs(neighbor)
                    if result:
                        return result

            color[node] = BLACK
            path.pop()
            return None

        for name in sorted(graph):
            if color[name] == WHITE:
                cycle = dfs(name)
                if cycle:
                    raise CycleDetectedError(cycle)

    def _topological_sort(self, graph: dict[str, list[str]]) -> list[str]:
        """
        Topological sort using Kahn's algorithm.

        Among duties that are ready at the same time the one with the
        smallest name goes first, so plans are deterministic.
        """
        dependents: dict[str, list[str]] = defaultdict(list)
        in_degree = {name: len(deps) for name, deps in graph.items()}
        for name, deps in graph.items():
            for dep in deps:
                dependents[dep].append(name)

        ready = [name for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            node = heapq.heappop(ready)
            result.append(node)
            for dependent in dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(result) != len(graph):
            remaining = sorted(set(graph) - set(result))
            raise PlanError(f"Topological sort incomplete. Remaining: {remaining}")

        return result
