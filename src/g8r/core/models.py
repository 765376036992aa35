"""
Domain models for the g8r reconciliation engine.

Plain dataclasses and string enums shared by the store, the execution
engine, the planner and the scheduler.  ORM rows live in
``g8r.core.orm.tables`` and are converted to these types at the store
boundary so nothing above the store touches a SQLAlchemy session.

Duty phase state machine::

    pending ──► pending_validation ◄──► pending
       │                │
       └──────► deployed ◄┘          (terminal success)
    any ──────► failed               (retried later, restarts from pending)
    any ──────► destroying ──► absent

Tags:
    g8r, domain-model, dataclass, state-machine

Doc-Types:
    - API Reference
    - Data Model
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from g8r.core.errors import InvalidTransition, PermanentError


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# ENUMS
# =============================================================================


class DutyPhase(str, Enum):
    """Convergence phase of a duty on one roster."""

    PENDING = "pending"
    PENDING_VALIDATION = "pending_validation"
    DEPLOYED = "deployed"
    FAILED = "failed"
    DESTROYING = "destroying"
    ABSENT = "absent"

    @property
    def is_converged(self) -> bool:
        return self in (DutyPhase.DEPLOYED, DutyPhase.ABSENT)

    @property
    def needs_convergence(self) -> bool:
        """Phases a scheduled pass must revisit even when the source is unchanged."""
        return self in (DutyPhase.PENDING, DutyPhase.PENDING_VALIDATION, DutyPhase.FAILED)


# Phases a handler may report from apply()
APPLY_PHASES = frozenset({DutyPhase.DEPLOYED, DutyPhase.PENDING, DutyPhase.PENDING_VALIDATION})

_TRANSITIONS: dict[DutyPhase, frozenset[DutyPhase]] = {
    DutyPhase.PENDING: frozenset({
        DutyPhase.PENDING, DutyPhase.PENDING_VALIDATION, DutyPhase.DEPLOYED,
    }),
    DutyPhase.PENDING_VALIDATION: frozenset({
        DutyPhase.PENDING, DutyPhase.PENDING_VALIDATION, DutyPhase.DEPLOYED,
    }),
    DutyPhase.DEPLOYED: frozenset({
        DutyPhase.DEPLOYED, DutyPhase.PENDING, DutyPhase.PENDING_VALIDATION,
    }),
    DutyPhase.FAILED: frozenset({DutyPhase.PENDING}),
    DutyPhase.DESTROYING: frozenset({DutyPhase.DESTROYING, DutyPhase.ABSENT}),
    DutyPhase.ABSENT: frozenset({DutyPhase.ABSENT, DutyPhase.PENDING}),
}


def can_transition(current: DutyPhase, target: DutyPhase) -> bool:
    """Whether ``current -> target`` is allowed.

    Any phase may move to ``failed`` or ``destroying``.
    """
    if target in (DutyPhase.FAILED, DutyPhase.DESTROYING):
        return True
    return target in _TRANSITIONS[current]


def check_transition(duty: str, current: DutyPhase, target: DutyPhase) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(duty, current.value, target.value)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Operation(str, Enum):
    APPLY = "apply"
    DESTROY = "destroy"


class ExecutionOutcome(str, Enum):
    """What a single ``DutyExecutor`` call amounted to."""

    SUCCEEDED = "succeeded"   # terminal success (deployed / absent)
    PENDING = "pending"       # recorded success, non-terminal phase
    FAILED = "failed"
    SKIPPED = "skipped"       # lock contention or dependency not ready; no record


class ReconciliationStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class Trigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    EVENT = "event"


class SourceType(str, Enum):
    STACK = "stack"
    QUEUE = "queue"
    MANUAL = "manual"


class StackStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    PAUSED = "paused"


class QueueStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


# =============================================================================
# ROSTERS AND DUTIES
# =============================================================================


@dataclass(frozen=True)
class RosterSelector:
    """Which rosters a duty targets.

    ``traits`` must all be present, at least one of ``any_traits`` must be
    present, and ``roster_type`` must match when given.  Empty constraints
    always hold.
    """

    traits: frozenset[str] = frozenset()
    any_traits: frozenset[str] = frozenset()
    roster_type: str | None = None

    def matches(self, roster: Roster) -> bool:
        if not self.traits <= roster.traits:
            return False
        if self.any_traits and not (self.any_traits & roster.traits):
            return False
        if self.roster_type is not None and self.roster_type != roster.roster_type:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "traits": sorted(self.traits),
            "any_traits": sorted(self.any_traits),
            "roster_type": self.roster_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RosterSelector:
        data = data or {}
        return cls(
            traits=frozenset(data.get("traits") or ()),
            any_traits=frozenset(data.get("any_traits") or ()),
            roster_type=data.get("roster_type"),
        )


@dataclass
class Roster:
    """A deployment target.  Connection and auth are opaque to the engine."""

    name: str
    roster_type: str
    traits: frozenset[str] = frozenset()
    connection: dict[str, Any] = field(default_factory=dict)
    auth: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None


@dataclass
class RosterState:
    """Phase of a duty on a single roster."""

    phase: DutyPhase = DutyPhase.PENDING
    message: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "outputs": self.outputs,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RosterState:
        updated = data.get("updated_at")
        return cls(
            phase=DutyPhase(data.get("phase", DutyPhase.PENDING.value)),
            message=data.get("message"),
            outputs=dict(data.get("outputs") or {}),
            updated_at=datetime.fromisoformat(updated) if updated else None,
        )


# Worst phase first; the aggregate phase of a duty is the worst of its rosters
_PHASE_SEVERITY = [
    DutyPhase.FAILED,
    DutyPhase.DESTROYING,
    DutyPhase.PENDING,
    DutyPhase.PENDING_VALIDATION,
    DutyPhase.DEPLOYED,
    DutyPhase.ABSENT,
]


@dataclass
class DutyStatus:
    """Status document stored on the duty row.

    Serialized as ``{phase, message, outputs, roster, updated_at, rosters}``
    where the top-level ``message``/``outputs``/``roster`` describe the most
    recent transition and ``rosters`` holds the per-roster state.
    """

    rosters: dict[str, RosterState] = field(default_factory=dict)
    last_roster: str | None = None

    @property
    def phase(self) -> DutyPhase:
        if not self.rosters:
            return DutyPhase.PENDING
        return min(
            (state.phase for state in self.rosters.values()),
            key=_PHASE_SEVERITY.index,
        )

    def for_roster(self, roster: str) -> RosterState:
        return self.rosters.get(roster) or RosterState()

    def set(self, roster: str, state: RosterState) -> None:
        self.rosters[roster] = state
        self.last_roster = roster

    def to_dict(self) -> dict[str, Any]:
        latest = self.rosters.get(self.last_roster) if self.last_roster else None
        return {
            "phase": self.phase.value,
            "message": latest.message if latest else None,
            "outputs": latest.outputs if latest else {},
            "roster": self.last_roster,
            "updated_at": (
                latest.updated_at.isoformat() if latest and latest.updated_at else None
            ),
            "rosters": {name: state.to_dict() for name, state in sorted(self.rosters.items())},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DutyStatus:
        data = data or {}
        rosters = {
            name: RosterState.from_dict(state)
            for name, state in (data.get("rosters") or {}).items()
        }
        return cls(rosters=rosters, last_roster=data.get("roster"))


@dataclass
class Duty:
    """A desired-state declaration.

    ``prior_outputs`` and ``dependency_outputs`` are runtime-only fields the
    engine fills in before calling a handler; they are never persisted on the
    duty row.
    """

    name: str
    duty_type: str
    backend: str
    selector: RosterSelector = field(default_factory=RosterSelector)
    spec: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    status: DutyStatus = field(default_factory=DutyStatus)
    metadata: dict[str, Any] = field(default_factory=dict)
    source: str | None = None
    updated_at: datetime | None = None

    prior_outputs: dict[str, Any] | None = field(default=None, compare=False, repr=False)
    dependency_outputs: dict[str, dict[str, Any]] = field(
        default_factory=dict, compare=False, repr=False
    )

    @property
    def phase(self) -> DutyPhase:
        return self.status.phase

    @property
    def handler_key(self) -> str:
        return f"{self.duty_type}/{self.backend}"

    def phase_on(self, roster: str) -> DutyPhase:
        return self.status.for_roster(roster).phase


# =============================================================================
# HANDLER AND ENGINE RESULTS
# =============================================================================


@dataclass
class HandlerResult:
    """What a handler's ``apply`` returns: ``{phase, message, outputs}``."""

    phase: DutyPhase
    message: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> HandlerResult:
        """Accept a ``HandlerResult`` or a ``{phase, message, outputs}`` mapping."""
        if isinstance(value, HandlerResult):
            result = value
        elif isinstance(value, dict):
            try:
                phase = DutyPhase(value.get("phase"))
            except ValueError as e:
                raise PermanentError(f"Handler returned unknown phase {value.get('phase')!r}", cause=e)
            result = cls(
                phase=phase,
                message=value.get("message"),
                outputs=dict(value.get("outputs") or {}),
            )
        else:
            raise PermanentError(f"Handler returned {type(value).__name__}, expected a phase result")

        if result.phase not in APPLY_PHASES:
            raise PermanentError(f"Handler returned phase '{result.phase.value}' from apply")
        return result

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase.value, "message": self.message, "outputs": self.outputs}


@dataclass
class ExecutionResult:
    """Outcome of one ``DutyExecutor.execute``/``destroy`` call."""

    duty: str
    roster: str
    outcome: ExecutionOutcome
    operation: Operation = Operation.APPLY
    phase: DutyPhase | None = None
    reason: str | None = None
    error: str | None = None
    execution_id: int | None = None
    attempts: int = 0
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome == ExecutionOutcome.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.outcome == ExecutionOutcome.FAILED

    @property
    def skipped(self) -> bool:
        return self.outcome == ExecutionOutcome.SKIPPED

    def to_dict(self) -> dict[str, Any]:
        return {
            "duty": self.duty,
            "roster": self.roster,
            "operation": self.operation.value,
            "outcome": self.outcome.value,
            "phase": self.phase.value if self.phase else None,
            "reason": self.reason,
            "error": self.error,
            "execution_id": self.execution_id,
            "attempts": self.attempts,
        }


@dataclass
class ExecutionRecord:
    """A persisted duty execution (append-only history)."""

    id: int
    duty: str
    roster: str | None
    operation: Operation
    status: ExecutionStatus
    started_at: datetime
    completed_at: datetime | None = None
    reason: str | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None
    attempts: int = 0
    reconciliation_id: int | None = None


@dataclass
class DutyStatusView:
    """Answer to a status query: current phase plus latest execution detail."""

    duty: str
    phase: DutyPhase
    status: dict[str, Any]
    last_execution: ExecutionRecord | None = None

    @property
    def last_error(self) -> str | None:
        if self.last_execution is None:
            return None
        return self.last_execution.error_message


# =============================================================================
# SOURCES AND RECONCILIATIONS
# =============================================================================


@dataclass
class Stack:
    """Pull-based ingestion source."""

    name: str
    source_type: str
    source_config: dict[str, Any] = field(default_factory=dict)
    config_path: str = "g8r.yaml"
    reconcile_interval: int = 300
    last_sync_at: datetime | None = None
    last_sync_version: str | None = None
    status: StackStatus = StackStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_due(self, now: datetime | None = None) -> bool:
        if self.status == StackStatus.PAUSED:
            return False
        if self.last_sync_at is None:
            return True
        now = now or utcnow()
        last = self.last_sync_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=UTC)
        return (now - last).total_seconds() >= self.reconcile_interval


@dataclass
class Queue:
    """Push-based ingestion source."""

    name: str
    queue_type: str
    message_handler: str
    queue_config: dict[str, Any] = field(default_factory=dict)
    handler_config: dict[str, Any] = field(default_factory=dict)
    status: QueueStatus = QueueStatus.ACTIVE
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Reconciliation:
    """One convergence cycle's outcome (append-only)."""

    id: int
    source_type: SourceType
    source_id: str
    trigger: Trigger
    status: ReconciliationStatus
    started_at: datetime
    source_version: str | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    duties_applied: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
