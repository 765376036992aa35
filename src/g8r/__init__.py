"""
g8r - declarative infrastructure reconciliation engine.

Duties (desired-state declarations) are matched to rosters (deployment
targets) by trait selectors, ordered by their declared dependencies and
driven to their declared state by pluggable backend handlers.  Every
execution and every reconciliation cycle is recorded in a durable store.

Layers:
    g8r.core           errors, logging, settings, models, snapshot, ORM, store, locks
    g8r.execution      retry policy, handler registry, duty execution engine
    g8r.orchestration  dependency resolver and convergence runner
    g8r.scheduling     stack/queue sources, reconciler, scheduler service
    g8r.factory        create_runtime(settings)
"""

__version__ = "0.3.0"

from g8r.core.errors import G8rError
from g8r.core.models import Duty, DutyPhase, HandlerResult, Roster, RosterSelector
from g8r.core.settings import G8rSettings
from g8r.execution.registry import DutyHandler, HandlerRegistry
from g8r.factory import Runtime, create_runtime

__all__ = [
    "__version__",
    "G8rError",
    "G8rSettings",
    "Duty",
    "DutyPhase",
    "HandlerResult",
    "Roster",
    "RosterSelector",
    "DutyHandler",
    "HandlerRegistry",
    "Runtime",
    "create_runtime",
]
