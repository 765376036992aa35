"""
Duty execution engine: converge one (roster, duty) pair.

Manifesto:
    This is where the engine touches the outside world, so every path out
    of it is recorded.  An execution either never starts (the pair is
    locked by somebody else, which is a skip) or it produces exactly one
    execution record that goes from ``running`` to one terminal status in
    the same transaction as the duty status it implies.

Architecture:
    ::

        execute(roster, duty)
          1. acquire lock duty:<duty>@<roster>      ── held? -> SKIPPED
          2. begin_execution (running)               ── failed -> pending
          3. registry.resolve                        ── HandlerNotFound / CapabilityMismatch
          4. handler.validate                        ── ValidationError, no side effects
          5. prior outputs of last successful apply  ── idempotency context
          6. RetryContext.run(handler.apply)         ── TransientError retried
          7. interpret phase                         ── deployed / pending / pending_validation
          8. complete_execution (record + status, one transaction)
          9. release lock (always)

        destroy(roster, duty, confirmed=True)
          same discipline; destroying -> absent

Tags:
    g8r, execution, idempotency, retry, locking

Doc-Types:
    - API Reference
    - Architecture
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any

from g8r.core.errors import (
    DependencyFailed,
    DestroyNotConfirmed,
    ExecutionAbandoned,
    G8rError,
    InvalidTransition,
    LockContention,
    ValidationError,
    failure_reason,
)
from g8r.core.locks import LockManager, duty_lock_key
from g8r.core.logging import LogContext, get_logger
from g8r.core.models import (
    Duty,
    DutyPhase,
    ExecutionOutcome,
    ExecutionResult,
    ExecutionStatus,
    HandlerResult,
    Operation,
    Roster,
)
from g8r.core.store import StateStore
from g8r.execution.registry import DutyHandler, HandlerRegistry
from g8r.execution.retry import RetryContext, RetryPolicy

logger = get_logger(__name__)


class DutyExecutor:
    """Runs validate/apply/destroy for single (roster, duty) pairs.

    Example:
        >>> executor = DutyExecutor(store, registry, LockManager(store.session_factory))
        >>> result = executor.execute(roster, duty)
        >>> result.outcome, result.phase
        (<ExecutionOutcome.SUCCEEDED: 'succeeded'>, <DutyPhase.DEPLOYED: 'deployed'>)
    """

    def __init__(
        self,
        store: StateStore,
        registry: HandlerRegistry,
        locks: LockManager,
        retry_policy: RetryPolicy | None = None,
        lock_ttl_seconds: int = 3600,
    ) -> None:
        self.store = store
        self.registry = registry
        self.locks = locks
        self.retry_policy = retry_policy or RetryPolicy()
        self.lock_ttl_seconds = lock_ttl_seconds

    def execute(
        self,
        roster: Roster,
        duty: Duty,
        *,
        reconciliation_id: int | None = None,
        cancel_event: threading.Event | None = None,
        dependency_outputs: dict[str, dict[str, Any]] | None = None,
    ) -> ExecutionResult:
        """Drive ``duty`` toward its declared state on ``roster``."""
        return self._locked(
            Operation.APPLY, roster, duty, reconciliation_id, cancel_event, dependency_outputs
        )

    def destroy(
        self,
        roster: Roster,
        duty: Duty,
        *,
        confirmed: bool = False,
        reconciliation_id: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        """Drive ``duty`` toward absence on ``roster``.

        Raises:
            DestroyNotConfirmed: unless the caller passes ``confirmed=True``
        """
        if not confirmed:
            raise DestroyNotConfirmed(
                f"Destroy of duty '{duty.name}' on roster '{roster.name}' requires confirmation"
            ).with_context(duty=duty.name, roster=roster.name)
        return self._locked(Operation.DESTROY, roster, duty, reconciliation_id, cancel_event, None)

    def record_dependency_failed(
        self,
        roster: Roster,
        duty: Duty,
        failed_dependencies: list[str],
        *,
        operation: Operation = Operation.APPLY,
        reconciliation_id: int | None = None,
    ) -> ExecutionResult:
        """Record that ``duty`` cannot run because prerequisites failed.

        The record is written under the pair lock, so it never lands on top
        of an execution another cycle has in flight; in that case the pair
        is skipped.
        """
        key = duty_lock_key(duty.name, roster.name)
        token = self.locks.new_token()
        if not self.locks.acquire(key, holder=token, ttl_seconds=self.lock_ttl_seconds):
            return self._skipped(operation, roster, duty)

        error = DependencyFailed(duty.name, failed_dependencies)
        try:
            record = self.store.record_failed_execution(
                duty.name,
                roster.name,
                reason=error.reason,
                error=str(error),
                operation=operation,
                reconciliation_id=reconciliation_id,
            )
        finally:
            self.locks.release(key, holder=token)

        logger.warning(
            "executor.dependency_failed",
            duty=duty.name,
            roster=roster.name,
            dependencies=error.failed_dependencies,
        )
        return ExecutionResult(
            duty=duty.name,
            roster=roster.name,
            outcome=ExecutionOutcome.FAILED,
            operation=operation,
            phase=DutyPhase.FAILED,
            reason=error.reason,
            error=str(error),
            execution_id=record.id,
        )

    def fail_abandoned(self) -> int:
        """Fail ``running`` executions whose owner is gone.

        A running record whose pair lock can be taken has no live executor
        (locks are held from before ``begin_execution`` until after
        completion), so it is completed as failed with reason ``Abandoned``.
        Returns the number of records failed.
        """
        failed = 0
        for record in self.store.list_running_executions():
            if record.roster is None:
                continue
            key = duty_lock_key(record.duty, record.roster)
            token = self.locks.new_token()
            if not self.locks.acquire(key, holder=token, ttl_seconds=self.lock_ttl_seconds):
                continue
            try:
                current = self.store.get_execution(record.id)
                if current.status != ExecutionStatus.RUNNING:
                    continue
                error = ExecutionAbandoned(
                    f"Execution {record.id} of '{record.duty}' on '{record.roster}' "
                    f"was left running since {record.started_at.isoformat()}"
                ).with_context(duty=record.duty, roster=record.roster, execution_id=record.id)
                self.store.complete_execution(
                    record.id,
                    status=ExecutionStatus.FAILED,
                    phase=DutyPhase.FAILED,
                    reason=error.reason,
                    error=str(error),
                    message=str(error),
                    attempts=current.attempts,
                )
                failed += 1
                logger.warning(
                    "executor.abandoned",
                    execution_id=record.id,
                    duty=record.duty,
                    roster=record.roster,
                )
            finally:
                self.locks.release(key, holder=token)
        return failed

    # -------------------------------------------------------------------------

    def _locked(
        self,
        operation: Operation,
        roster: Roster,
        duty: Duty,
        reconciliation_id: int | None,
        cancel_event: threading.Event | None,
        dependency_outputs: dict[str, dict[str, Any]] | None,
    ) -> ExecutionResult:
        key = duty_lock_key(duty.name, roster.name)
        token = self.locks.new_token()
        if not self.locks.acquire(key, holder=token, ttl_seconds=self.lock_ttl_seconds):
            return self._skipped(operation, roster, duty)

        try:
            with LogContext(duty=duty.name, roster=roster.name, operation=operation.value):
                return self._run(
                    operation, roster, duty, reconciliation_id, cancel_event, dependency_outputs
                )
        finally:
            self.locks.release(key, holder=token)

    def _run(
        self,
        operation: Operation,
        roster: Roster,
        duty: Duty,
        reconciliation_id: int | None,
        cancel_event: threading.Event | None,
        dependency_outputs: dict[str, dict[str, Any]] | None,
    ) -> ExecutionResult:
        execution_id = self.store.begin_execution(
            duty.name, roster.name, operation, reconciliation_id
        )
        ctx = RetryContext(
            self.retry_policy,
            operation=f"{operation.value} {duty.handler_key} {duty.name}@{roster.name}",
            cancel_event=cancel_event,
        )
        logger.debug("executor.started", execution_id=execution_id, handler=duty.handler_key)

        try:
            handler = self.registry.resolve(roster, duty)
            self._validate(handler, roster, duty)

            previous = self.store.last_successful_result(duty.name, roster.name)
            # One Duty object is shared by every roster it matches; runtime
            # fields go on a per-call copy.
            call_duty = replace(
                duty,
                prior_outputs=dict(previous.get("outputs") or {}) if previous else None,
                dependency_outputs=dict(dependency_outputs or {}),
            )

            if operation == Operation.APPLY:
                outcome = HandlerResult.coerce(ctx.run(handler.apply, roster, call_duty))
            else:
                ctx.run(handler.destroy, roster, call_duty)
                outcome = None
        except Exception as e:
            return self._fail(operation, roster, duty, execution_id, e, ctx.attempts)

        if outcome is None:
            phase, message, outputs = DutyPhase.ABSENT, "destroyed", {}
            result_doc = {"phase": phase.value, "message": message, "outputs": {}}
        else:
            phase, message, outputs = outcome.phase, outcome.message, outcome.outputs
            result_doc = outcome.to_dict()

        try:
            self.store.complete_execution(
                execution_id,
                status=ExecutionStatus.SUCCEEDED,
                phase=phase,
                message=message,
                outputs=outputs,
                result=result_doc,
                attempts=ctx.attempts,
            )
        except InvalidTransition as e:
            return self._fail(operation, roster, duty, execution_id, e, ctx.attempts)

        terminal = phase in (DutyPhase.DEPLOYED, DutyPhase.ABSENT)
        logger.info(
            "executor.succeeded" if terminal else "executor.pending",
            execution_id=execution_id,
            phase=phase.value,
            attempts=ctx.attempts,
        )
        return ExecutionResult(
            duty=duty.name,
            roster=roster.name,
            outcome=ExecutionOutcome.SUCCEEDED if terminal else ExecutionOutcome.PENDING,
            operation=operation,
            phase=phase,
            execution_id=execution_id,
            attempts=ctx.attempts,
            outputs=outputs,
        )

    @staticmethod
    def _skipped(operation: Operation, roster: Roster, duty: Duty) -> ExecutionResult:
        logger.info(
            "executor.skipped",
            duty=duty.name, roster=roster.name, reason=LockContention.reason,
        )
        return ExecutionResult(
            duty=duty.name,
            roster=roster.name,
            outcome=ExecutionOutcome.SKIPPED,
            operation=operation,
            reason=LockContention.reason,
        )

    @staticmethod
    def _validate(handler: DutyHandler, roster: Roster, duty: Duty) -> None:
        try:
            handler.validate(roster, duty)
        except G8rError:
            raise
        except Exception as e:
            raise ValidationError(f"Duty '{duty.name}' failed validation: {e}", cause=e)

    def _fail(
        self,
        operation: Operation,
        roster: Roster,
        duty: Duty,
        execution_id: int,
        error: Exception,
        attempts: int,
    ) -> ExecutionResult:
        reason = failure_reason(error)
        message = str(error)
        self.store.complete_execution(
            execution_id,
            status=ExecutionStatus.FAILED,
            phase=DutyPhase.FAILED,
            reason=reason,
            error=message,
            message=message,
            attempts=attempts,
        )
        log = logger.warning if isinstance(error, G8rError) else logger.error
        log(
            "executor.failed",
            execution_id=execution_id,
            reason=reason,
            error=message,
            attempts=attempts,
            exc_info=not isinstance(error, G8rError),
        )
        return ExecutionResult(
            duty=duty.name,
            roster=roster.name,
            outcome=ExecutionOutcome.FAILED,
            operation=operation,
            phase=DutyPhase.FAILED,
            reason=reason,
            error=message,
            execution_id=execution_id,
            attempts=attempts,
        )
