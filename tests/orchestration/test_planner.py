"""
Tests for DependencyResolver.

Tests cover:
- Selector matching and unmatched duties
- Topological ordering with name tie-breaks
- Cycle and unresolved dependency detection
- Outside dependencies accepted through is_satisfied
"""

import pytest
from structlog.testing import capture_logs

from g8r.core.errors import CycleDetectedError, UnresolvedDependencyError
from g8r.orchestration.planner import DependencyResolver, match_rosters
from tests._support import OrderValidator
from tests._support.handlers import make_duty, make_roster


@pytest.fixture
def resolver():
    return DependencyResolver()


class TestMatching:
    """Selector matching across rosters."""

    def test_match_rosters_sorted(self):
        rosters = [make_roster("b", "aws"), make_roster("a", "aws"), make_roster("c", "gcp")]
        assert [r.name for r in match_rosters(make_duty("x"), rosters)] == ["a", "b"]

    def test_unmatched_duty_is_reported(self, resolver):
        plan = resolver.plan(
            [make_duty("bucket"), make_duty("gcs", traits=("gcp",))],
            [make_roster("aws-prod")],
        )
        assert plan.duty_names == ["bucket"]
        assert plan.unmatched == ["gcs"]

    def test_no_rosters_is_empty_plan(self, resolver):
        plan = resolver.plan([make_duty("bucket")], [])
        assert plan.is_empty
        assert plan.unmatched == ["bucket"]

    def test_one_node_per_matching_roster(self, resolver):
        plan = resolver.plan(
            [make_duty("bucket")],
            [make_roster("aws-prod"), make_roster("aws-dev"), make_roster("gcp", "gcp")],
        )
        assert [(n.duty.name, n.roster.name) for n in plan.nodes] == [
            ("bucket", "aws-dev"),
            ("bucket", "aws-prod"),
        ]
        assert plan.for_roster("gcp") is None


class TestOrdering:
    """Topological ordering."""

    def test_dependencies_first(self, resolver):
        duties = [
            make_duty("site-cert", ["site-dns"]),
            make_duty("site-dns", ["site-bucket"]),
            make_duty("site-bucket"),
        ]
        plan = resolver.plan(duties, [make_roster()])
        assert [n.duty.name for n in plan.nodes] == ["site-bucket", "site-dns", "site-cert"]
        assert [n.depth for n in plan.nodes] == [0, 1, 2]

    def test_ties_broken_by_name(self, resolver):
        duties = [make_duty("zeta"), make_duty("alpha"), make_duty("mid", ["zeta", "alpha"])]
        plan = resolver.plan(duties, [make_roster()])
        assert [n.duty.name for n in plan.nodes] == ["alpha", "zeta", "mid"]

    def test_diamond(self, resolver):
        duties = [
            make_duty("d", ["b", "c"]),
            make_duty("c", ["a"]),
            make_duty("b", ["a"]),
            make_duty("a"),
        ]
        plan = resolver.plan(duties, [make_roster()])
        validator = OrderValidator([n.duty.name for n in plan.nodes])
        validator.assert_before("a", "b")
        validator.assert_before("a", "c")
        validator.assert_before("b", "d")
        validator.assert_before("c", "d")
        assert plan.for_roster("aws-prod").steps[-1].depends_on == ("b", "c")

    def test_plan_is_deterministic(self, resolver):
        duties = [make_duty(n) for n in ("c", "a", "b")]
        first = resolver.plan(duties, [make_roster()])
        second = resolver.plan(list(reversed(duties)), [make_roster()])
        assert [n.key for n in first.nodes] == [n.key for n in second.nodes]


class TestValidation:
    """Plan errors."""

    def test_cycle(self, resolver):
        duties = [make_duty("a", ["b"]), make_duty("b", ["c"]), make_duty("c", ["a"])]
        with pytest.raises(CycleDetectedError) as exc_info:
            resolver.plan(duties, [make_roster()])
        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]

    def test_unresolved_dependency(self, resolver):
        with pytest.raises(UnresolvedDependencyError) as exc_info:
            resolver.plan([make_duty("site-cert", ["site-dns"])], [make_roster()])
        assert exc_info.value.missing == ["site-dns"]

    def test_dependency_not_on_same_roster_is_unresolved(self, resolver):
        # site-dns exists but only targets gcp rosters
        duties = [make_duty("site-cert", ["site-dns"]), make_duty("site-dns", traits=("gcp",))]
        with pytest.raises(UnresolvedDependencyError):
            resolver.plan(duties, [make_roster("aws-prod"), make_roster("gcp", "gcp")])

    def test_satisfied_outside_dependency(self, resolver):
        plan = resolver.plan(
            [make_duty("site-cert", ["site-bucket"])],
            [make_roster()],
            is_satisfied=lambda duty, roster: (duty, roster) == ("site-bucket", "aws-prod"),
        )
        roster_plan = plan.for_roster("aws-prod")
        assert roster_plan.duty_names == ["site-cert"]
        assert roster_plan.satisfied == ("site-bucket",)
        assert roster_plan.steps[0].depends_on == ()


class TestLogging:
    def test_resolved_event(self, resolver):
        with capture_logs() as logs:
            resolver.plan([make_duty("bucket"), make_duty("gcs", traits=("gcp",))], [make_roster()])

        resolved = [e for e in logs if e["event"] == "planner.resolved"]
        assert resolved == [
            {"event": "planner.resolved", "rosters": 1, "nodes": 1, "unmatched": ["gcs"], "log_level": "info"}
        ]
