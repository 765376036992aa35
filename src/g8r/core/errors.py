"""
Structured error types for the g8r reconciliation engine.

Every failure path in g8r ends up as a persisted record with a typed reason.
The hierarchy below is what makes that possible: each error carries a
``reason`` string that is written verbatim to duty execution and
reconciliation records, plus a category and an explicit retry flag that the
retry policy consults.

Manifesto:
    - **Typed reasons:** Records say ``CapabilityMismatch``, not "error"
    - **Explicit retry semantics:** Only ``TransientError`` is retryable
    - **Rich context:** Errors carry duty/roster/source metadata for logging
    - **Error chaining:** Handler exceptions are preserved as ``cause``

Architecture:
    ::

        G8rError (category, retryable, reason, context, cause)
          ├── ConfigurationError ─── HandlerNotFound
          ├── CapabilityMismatch
          ├── ValidationError
          ├── TransientError          (retryable)
          │     └── SourceError
          ├── PermanentError
          ├── RetryExhausted
          ├── DependencyFailed
          ├── PlanError ─── CycleDetectedError, UnresolvedDependencyError
          ├── LockContention
          ├── ExecutionCancelled
          ├── ExecutionAbandoned
          ├── InvalidTransition
          ├── DestroyNotConfirmed
          ├── NotFoundError ─── RosterNotFound, DutyNotFound,
          │                     StackNotFound, QueueNotFound
          └── StoreError

Usage:
    from g8r.core.errors import TransientError, PermanentError

    try:
        client.create_bucket(name)
    except ThrottlingException as e:
        raise TransientError("bucket create throttled", cause=e)

Tags:
    g8r, error-handling, exception-hierarchy, retry-logic, error-context

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Declarative input
    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    CAPABILITY = "CAPABILITY"

    # Handler / external system
    HANDLER = "HANDLER"
    NETWORK = "NETWORK"
    SOURCE = "SOURCE"

    # Engine
    PLAN = "PLAN"
    EXECUTION = "EXECUTION"
    CONCURRENCY = "CONCURRENCY"
    STORAGE = "STORAGE"

    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        duty: Duty name the error relates to
        roster: Roster name the error relates to
        handler: Handler key (``duty_type/backend``)
        stack: Stack (pull source) name
        queue: Queue (push source) name
        execution_id: Duty execution record id
        reconciliation_id: Reconciliation record id
        metadata: Additional key-value pairs
    """

    duty: str | None = None
    roster: str | None = None
    handler: str | None = None
    stack: str | None = None
    queue: str | None = None
    execution_id: int | None = None
    reconciliation_id: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["duty", "roster", "handler", "stack", "queue",
                    "execution_id", "reconciliation_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class G8rError(Exception):
    """Base exception for all g8r errors.

    Subclasses set ``default_category``, ``default_retryable`` and ``reason``.
    ``reason`` is the typed failure reason persisted on execution and
    reconciliation records.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    reason: str = "InternalError"

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> G8rError:
        """Add context to this error (fluent API).

        Usage:
            raise CapabilityMismatch("missing traits").with_context(
                duty="site-bucket", roster="aws-prod"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "reason": self.reason,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, reason={self.reason})"


# =============================================================================
# DECLARATIVE INPUT ERRORS
# =============================================================================


class ConfigurationError(G8rError):
    """Malformed or unresolvable roster/duty/source data.

    Fatal to the affected duty (or source) only.
    """

    default_category = ErrorCategory.CONFIG
    reason = "ConfigurationError"


class HandlerNotFound(ConfigurationError):
    """No handler is registered for a duty's ``(duty_type, backend)``."""

    reason = "HandlerNotFound"

    def __init__(self, duty_type: str, backend: str, available: list[str] | None = None):
        self.duty_type = duty_type
        self.backend = backend
        self.available = available or []
        super().__init__(
            f"No handler registered for {duty_type}/{backend}. "
            f"Available handlers: {self.available or 'none'}"
        )


class CapabilityMismatch(G8rError):
    """A roster lacks traits the matched handler requires."""

    default_category = ErrorCategory.CAPABILITY
    reason = "CapabilityMismatch"

    def __init__(self, roster: str, handler: str, missing: set[str] | list[str]):
        self.missing = sorted(missing)
        super().__init__(
            f"Roster '{roster}' missing required trait(s) {self.missing} for handler '{handler}'"
        )
        self.with_context(roster=roster, handler=handler)


class ValidationError(G8rError):
    """A duty's spec failed handler validation. No external call is attempted."""

    default_category = ErrorCategory.VALIDATION
    reason = "ValidationError"


# =============================================================================
# HANDLER ERRORS
# =============================================================================


class TransientError(G8rError):
    """Handler-classified retryable failure (throttling, propagation delay...)."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True
    reason = "TransientError"


class SourceError(TransientError):
    """Fetching a version-controlled source failed."""

    default_category = ErrorCategory.SOURCE
    reason = "SourceError"


class PermanentError(G8rError):
    """Handler-classified non-retryable failure. Immediately terminal."""

    default_category = ErrorCategory.HANDLER
    reason = "PermanentError"


class RetryExhausted(G8rError):
    """Transient failures persisted past the retry policy's bounds."""

    default_category = ErrorCategory.EXECUTION
    reason = "RetryExhausted"

    def __init__(self, operation: str, attempts: int, last_error: Exception | None, elapsed: float = 0.0):
        self.operation = operation
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(
            f"{operation} failed after {attempts} attempt(s) in {elapsed:.1f}s: {last_error}",
            cause=last_error,
        )


class ExecutionCancelled(G8rError):
    """The cycle was cancelled; the execution stopped at a retry boundary."""

    default_category = ErrorCategory.EXECUTION
    reason = "Cancelled"


# =============================================================================
# ENGINE ERRORS
# =============================================================================


class DependencyFailed(G8rError):
    """A prerequisite duty did not reach terminal success."""

    default_category = ErrorCategory.PLAN
    reason = "DependencyFailed"

    def __init__(self, duty: str, failed_dependencies: list[str]):
        self.failed_dependencies = sorted(failed_dependencies)
        super().__init__(
            f"Duty '{duty}' skipped: dependency {', '.join(self.failed_dependencies)} did not succeed"
        )
        self.with_context(duty=duty)


class PlanError(G8rError):
    """The dependency graph cannot be turned into an execution plan."""

    default_category = ErrorCategory.PLAN
    reason = "PlanError"


class CycleDetectedError(PlanError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cycle detected in duty dependency graph: {' -> '.join(cycle)}")


class UnresolvedDependencyError(PlanError):
    """A duty depends on a duty outside the selected set or on a missing duty."""

    def __init__(self, duty: str, missing: list[str]):
        self.duty = duty
        self.missing = sorted(missing)
        super().__init__(
            f"Duty '{duty}' depends on unresolved duties: {', '.join(self.missing)}"
        )


class LockContention(G8rError):
    """Another execution already holds the lock. Treated as a skip."""

    default_category = ErrorCategory.CONCURRENCY
    reason = "LockContention"


class ExecutionAbandoned(G8rError):
    """A running execution lost its owner (the process died before completing it)."""

    default_category = ErrorCategory.CONCURRENCY
    reason = "Abandoned"


class InvalidTransition(G8rError):
    """A duty phase transition is not allowed by the state machine."""

    default_category = ErrorCategory.INTERNAL
    reason = "InvalidTransition"

    def __init__(self, duty: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Duty '{duty}' cannot move from '{current}' to '{target}'")
        self.with_context(duty=duty)


class DestroyNotConfirmed(G8rError):
    """Destroy was requested without explicit caller confirmation."""

    default_category = ErrorCategory.CONFIG
    reason = "DestroyNotConfirmed"


# =============================================================================
# STORE ERRORS
# =============================================================================


class NotFoundError(G8rError):
    """A named record does not exist in the state store."""

    default_category = ErrorCategory.STORAGE
    reason = "NotFound"
    kind = "record"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{self.kind.capitalize()} not found: {name}")


class RosterNotFound(NotFoundError):
    kind = "roster"


class DutyNotFound(NotFoundError):
    kind = "duty"


class StackNotFound(NotFoundError):
    kind = "stack"


class QueueNotFound(NotFoundError):
    kind = "queue"


class StoreError(G8rError):
    """The durable state store is unavailable or rejected a write."""

    default_category = ErrorCategory.STORAGE
    reason = "StoreError"


def failure_reason(error: BaseException) -> str:
    """Typed reason string for any exception raised during execution.

    Non-g8r exceptions escaping a handler are treated as permanent failures.
    """
    if isinstance(error, G8rError):
        return error.reason
    return PermanentError.reason


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "G8rError",
    "ConfigurationError",
    "HandlerNotFound",
    "CapabilityMismatch",
    "ValidationError",
    "TransientError",
    "SourceError",
    "PermanentError",
    "RetryExhausted",
    "ExecutionCancelled",
    "DependencyFailed",
    "PlanError",
    "CycleDetectedError",
    "UnresolvedDependencyError",
    "LockContention",
    "ExecutionAbandoned",
    "InvalidTransition",
    "DestroyNotConfirmed",
    "NotFoundError",
    "RosterNotFound",
    "DutyNotFound",
    "StackNotFound",
    "QueueNotFound",
    "StoreError",
    "failure_reason",
]
