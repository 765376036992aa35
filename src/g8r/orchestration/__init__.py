"""Planning and running convergence passes."""

from g8r.orchestration.planner import (
    DependencyResolver,
    ExecutionPlan,
    PlannedDuty,
    RosterPlan,
    match_rosters,
)
from g8r.orchestration.runner import ConvergenceRunner, PassResult

__all__ = [
    "ConvergenceRunner",
    "DependencyResolver",
    "ExecutionPlan",
    "PassResult",
    "PlannedDuty",
    "RosterPlan",
    "match_rosters",
]
