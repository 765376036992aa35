"""
Durable state store: the single source of truth for what is deployed.

Manifesto:
    Every component above the store (executor, runner, reconciler,
    scheduler) receives a ``StateStore`` handle explicitly.  There is no
    ambient "current state".  The store owns transaction boundaries so
    that an execution record and the duty status it implies are always
    written together or not at all.

Architecture:
    ::

        StateStore(engine)
          ├── rosters / duties        updated in place (updated_at)
          ├── duty_executions         append-only; running -> exactly one terminal
          ├── stacks / queues         ingestion sources, mutated by the scheduler
          └── reconciliations         append-only cycle outcomes

        begin_execution()     INSERT running row  (+ failed/absent -> pending)
        complete_execution()  UPDATE row + duty status in ONE transaction

Tags:
    g8r, state-store, sqlalchemy, transactions, persistence

Doc-Types:
    - API Reference
    - Data Model
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from g8r.core.errors import (
    DutyNotFound,
    QueueNotFound,
    RosterNotFound,
    StackNotFound,
    StoreError,
)
from g8r.core.logging import get_logger
from g8r.core.models import (
    Duty,
    DutyPhase,
    DutyStatus,
    DutyStatusView,
    ExecutionRecord,
    ExecutionStatus,
    Operation,
    Queue,
    QueueStatus,
    Reconciliation,
    ReconciliationStatus,
    Roster,
    RosterSelector,
    RosterState,
    SourceType,
    Stack,
    StackStatus,
    Trigger,
    check_transition,
    utcnow,
)
from g8r.core.orm.base import G8rBase
from g8r.core.orm.session import g8r_session_factory
from g8r.core.orm.tables import (
    DutyExecutionTable,
    DutyTable,
    QueueTable,
    ReconciliationTable,
    RosterTable,
    StackTable,
)
from g8r.core.snapshot import ConfigSnapshot

logger = get_logger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass
class SnapshotDiff:
    """What applying a snapshot changed in the store."""

    rosters: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)

    @property
    def duties(self) -> list[str]:
        return sorted(self.added + self.updated + self.unchanged)


class StateStore:
    """Durable store for rosters, duties, executions, sources and reconciliations.

    Example:
        >>> store = StateStore(create_g8r_engine("sqlite:///g8r.db"))
        >>> store.create_schema()
        >>> store.upsert_roster(Roster(name="aws-prod", roster_type="aws_account"))
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.session_factory: sessionmaker = g8r_session_factory(engine)

    def create_schema(self) -> None:
        G8rBase.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One unit of work: commit on success, roll back on any error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f"State store operation failed: {e}", cause=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # ROSTERS
    # =========================================================================

    def upsert_roster(self, roster: Roster) -> Roster:
        with self.transaction() as session:
            row = self._upsert_roster(session, roster)
            return _roster_from_row(row)

    def upsert_rosters(self, rosters: Iterable[Roster]) -> list[Roster]:
        with self.transaction() as session:
            return [_roster_from_row(self._upsert_roster(session, r)) for r in rosters]

    def get_roster(self, name: str) -> Roster:
        with self.transaction() as session:
            return _roster_from_row(self._roster_row(session, name))

    def list_rosters(self) -> list[Roster]:
        with self.transaction() as session:
            rows = session.scalars(select(RosterTable).order_by(RosterTable.name)).all()
            return [_roster_from_row(row) for row in rows]

    def delete_roster(self, name: str) -> bool:
        """Remove a roster.  Its execution history keeps the roster name."""
        with self.transaction() as session:
            row = session.scalar(select(RosterTable).where(RosterTable.name == name))
            if row is None:
                return False
            session.delete(row)
            return True

    def _upsert_roster(self, session: Session, roster: Roster) -> RosterTable:
        row = session.scalar(select(RosterTable).where(RosterTable.name == roster.name))
        if row is None:
            row = RosterTable(name=roster.name)
            session.add(row)
        row.roster_type = roster.roster_type
        row.traits = sorted(roster.traits)
        row.connection = dict(roster.connection)
        row.auth = dict(roster.auth) if roster.auth is not None else None
        row.meta = dict(roster.metadata)
        session.flush()
        return row

    @staticmethod
    def _roster_row(session: Session, name: str) -> RosterTable:
        row = session.scalar(select(RosterTable).where(RosterTable.name == name))
        if row is None:
            raise RosterNotFound(name)
        return row

    # =========================================================================
    # DUTIES
    # =========================================================================

    def upsert_duty(self, duty: Duty) -> Duty:
        """Create or update a duty declaration.  Status is never overwritten."""
        with self.transaction() as session:
            row, _ = self._upsert_duty(session, duty)
            return _duty_from_row(row)

    def upsert_duties(self, duties: Iterable[Duty]) -> list[Duty]:
        with self.transaction() as session:
            return [_duty_from_row(self._upsert_duty(session, d)[0]) for d in duties]

    def get_duty(self, name: str) -> Duty:
        with self.transaction() as session:
            return _duty_from_row(self._duty_row(session, name))

    def list_duties(
        self,
        names: Iterable[str] | None = None,
        source: str | None = None,
    ) -> list[Duty]:
        stmt = select(DutyTable).order_by(DutyTable.name)
        if names is not None:
            stmt = stmt.where(DutyTable.name.in_(list(names)))
        if source is not None:
            stmt = stmt.where(DutyTable.source == source)
        with self.transaction() as session:
            return [_duty_from_row(row) for row in session.scalars(stmt).all()]

    def apply_snapshot(self, snapshot: ConfigSnapshot, source: str | None = None) -> SnapshotDiff:
        """Merge a rendered snapshot into the store in one transaction.

        Duties previously declared by ``source`` but missing from the
        snapshot are reported as orphaned; they are left in place.
        """
        diff = SnapshotDiff()
        duties = snapshot.to_duties(source)
        with self.transaction() as session:
            for roster in snapshot.to_rosters():
                self._upsert_roster(session, roster)
                diff.rosters.append(roster.name)
            for duty in duties:
                _, change = self._upsert_duty(session, duty)
                getattr(diff, change).append(duty.name)
            if source is not None:
                declared = {d.name for d in duties}
                previous = session.scalars(
                    select(DutyTable.name).where(DutyTable.source == source)
                ).all()
                diff.orphaned = sorted(set(previous) - declared)
        logger.info(
            "store.snapshot_applied",
            source=source,
            rosters=len(diff.rosters),
            added=len(diff.added),
            updated=len(diff.updated),
            orphaned=diff.orphaned,
        )
        return diff

    def _upsert_duty(self, session: Session, duty: Duty) -> tuple[DutyTable, str]:
        row = session.scalar(select(DutyTable).where(DutyTable.name == duty.name))
        values = {
            "duty_type": duty.duty_type,
            "backend": duty.backend,
            "roster_selector": duty.selector.to_dict(),
            "spec": dict(duty.spec),
            "depends_on": list(duty.depends_on),
            "meta": dict(duty.metadata),
        }
        if duty.source is not None:
            values["source"] = duty.source

        if row is None:
            row = DutyTable(name=duty.name, status=DutyStatus().to_dict(), **values)
            session.add(row)
            change = "added"
        elif any(getattr(row, key) != value for key, value in values.items()):
            if duty.source is not None and row.source not in (None, duty.source):
                logger.warning(
                    "store.duty_source_changed",
                    duty=duty.name, previous=row.source, source=duty.source,
                )
            for key, value in values.items():
                setattr(row, key, value)
            change = "updated"
        else:
            change = "unchanged"
        session.flush()
        return row, change

    @staticmethod
    def _duty_row(session: Session, name: str, for_update: bool = False) -> DutyTable:
        stmt = select(DutyTable).where(DutyTable.name == name)
        if for_update:
            stmt = stmt.with_for_update()
        row = session.scalar(stmt)
        if row is None:
            raise DutyNotFound(name)
        return row

    # =========================================================================
    # DUTY EXECUTIONS
    # =========================================================================

    def begin_execution(
        self,
        duty: str,
        roster: str,
        operation: Operation = Operation.APPLY,
        reconciliation_id: int | None = None,
    ) -> int:
        """Insert a ``running`` execution record and return its id.

        A failed or absent duty is moved back to ``pending`` before an
        apply; a destroy moves the pair to ``destroying``.
        """
        with self.transaction() as session:
            duty_row = self._duty_row(session, duty, for_update=True)
            status = DutyStatus.from_dict(duty_row.status)
            current = status.for_roster(roster)

            if operation == Operation.DESTROY:
                target = DutyPhase.DESTROYING
            elif current.phase in (DutyPhase.FAILED, DutyPhase.ABSENT):
                target = DutyPhase.PENDING
            else:
                target = None

            if target is not None and target != current.phase:
                check_transition(duty, current.phase, target)
                status.set(roster, RosterState(
                    phase=target,
                    message=current.message,
                    outputs=current.outputs,
                    updated_at=utcnow(),
                ))
                duty_row.status = status.to_dict()

            row = self._insert_execution(session, duty_row, roster, operation, reconciliation_id)
            return row.id

    def complete_execution(
        self,
        execution_id: int,
        *,
        status: ExecutionStatus,
        phase: DutyPhase,
        reason: str | None = None,
        error: str | None = None,
        message: str | None = None,
        outputs: dict[str, Any] | None = None,
        result: dict[str, Any] | None = None,
        attempts: int = 0,
    ) -> ExecutionRecord:
        """Complete a running execution and update the duty status atomically.

        ``outputs=None`` keeps the pair's previous outputs (failures do not
        erase what an earlier success produced).  Raises ``InvalidTransition``
        and rolls back both writes if the phase change is not allowed.
        """
        with self.transaction() as session:
            row = session.get(DutyExecutionTable, execution_id, with_for_update=True)
            if row is None:
                raise StoreError(f"Duty execution {execution_id} does not exist")
            if row.status != ExecutionStatus.RUNNING.value:
                raise StoreError(
                    f"Duty execution {execution_id} already completed with status '{row.status}'"
                )
            duty_row = session.get(DutyTable, row.duty_id, with_for_update=True)
            self._set_phase(duty_row, row.roster_name, phase, message, outputs)

            row.status = status.value
            row.reason = reason
            row.error_message = error
            row.result = result
            row.attempts = attempts
            row.completed_at = utcnow()
            session.flush()
            return _execution_from_row(row, duty_row.name)

    def record_failed_execution(
        self,
        duty: str,
        roster: str,
        *,
        reason: str,
        error: str,
        operation: Operation = Operation.APPLY,
        reconciliation_id: int | None = None,
    ) -> ExecutionRecord:
        """Record a failure decided without invoking a handler (e.g. DependencyFailed)."""
        with self.transaction() as session:
            duty_row = self._duty_row(session, duty, for_update=True)
            self._set_phase(duty_row, roster, DutyPhase.FAILED, error, None)
            row = self._insert_execution(session, duty_row, roster, operation, reconciliation_id)
            row.status = ExecutionStatus.FAILED.value
            row.reason = reason
            row.error_message = error
            row.completed_at = row.started_at
            session.flush()
            return _execution_from_row(row, duty_row.name)

    def list_running_executions(self) -> list[ExecutionRecord]:
        """Executions not yet completed, oldest first."""
        stmt = (
            select(DutyExecutionTable, DutyTable.name)
            .join(DutyTable, DutyExecutionTable.duty_id == DutyTable.id)
            .where(DutyExecutionTable.status == ExecutionStatus.RUNNING.value)
            .order_by(DutyExecutionTable.id)
        )
        with self.transaction() as session:
            return [_execution_from_row(row, name) for row, name in session.execute(stmt).all()]

    def last_successful_result(self, duty: str, roster: str) -> dict[str, Any] | None:
        """Result of the latest successful execution for the pair.

        Returns None when there is none or when the latest success was a
        destroy (the resource is gone).
        """
        with self.transaction() as session:
            duty_row = self._duty_row(session, duty)
            row = session.scalar(
                select(DutyExecutionTable)
                .where(
                    DutyExecutionTable.duty_id == duty_row.id,
                    DutyExecutionTable.roster_name == roster,
                    DutyExecutionTable.status == ExecutionStatus.SUCCEEDED.value,
                )
                .order_by(DutyExecutionTable.id.desc())
                .limit(1)
            )
            if row is None or row.operation == Operation.DESTROY.value:
                return None
            return dict(row.result or {})

    def get_execution(self, execution_id: int) -> ExecutionRecord:
        with self.transaction() as session:
            found = session.execute(
                select(DutyExecutionTable, DutyTable.name)
                .join(DutyTable, DutyExecutionTable.duty_id == DutyTable.id)
                .where(DutyExecutionTable.id == execution_id)
            ).first()
            if found is None:
                raise StoreError(f"Duty execution {execution_id} does not exist")
            return _execution_from_row(*found)

    def list_executions(
        self,
        duty: str | None = None,
        roster: str | None = None,
        reconciliation_id: int | None = None,
        limit: int = 50,
    ) -> list[ExecutionRecord]:
        """Execution history, newest first."""
        stmt = (
            select(DutyExecutionTable, DutyTable.name)
            .join(DutyTable, DutyExecutionTable.duty_id == DutyTable.id)
            .order_by(DutyExecutionTable.id.desc())
            .limit(limit)
        )
        if duty is not None:
            stmt = stmt.where(DutyTable.name == duty)
        if roster is not None:
            stmt = stmt.where(DutyExecutionTable.roster_name == roster)
        if reconciliation_id is not None:
            stmt = stmt.where(DutyExecutionTable.reconciliation_id == reconciliation_id)
        with self.transaction() as session:
            return [_execution_from_row(row, name) for row, name in session.execute(stmt).all()]

    def duty_status(self, name: str) -> DutyStatusView:
        """Current phase of a duty plus its most recent execution."""
        duty = self.get_duty(name)
        latest = self.list_executions(duty=name, limit=1)
        return DutyStatusView(
            duty=name,
            phase=duty.phase,
            status=duty.status.to_dict(),
            last_execution=latest[0] if latest else None,
        )

    @staticmethod
    def _insert_execution(
        session: Session,
        duty_row: DutyTable,
        roster: str,
        operation: Operation,
        reconciliation_id: int | None,
    ) -> DutyExecutionTable:
        roster_id = session.scalar(select(RosterTable.id).where(RosterTable.name == roster))
        row = DutyExecutionTable(
            duty_id=duty_row.id,
            roster_id=roster_id,
            roster_name=roster,
            reconciliation_id=reconciliation_id,
            operation=operation.value,
            status=ExecutionStatus.RUNNING.value,
            started_at=utcnow(),
        )
        session.add(row)
        session.flush()
        return row

    @staticmethod
    def _set_phase(
        duty_row: DutyTable,
        roster: str,
        phase: DutyPhase,
        message: str | None,
        outputs: dict[str, Any] | None,
    ) -> None:
        status = DutyStatus.from_dict(duty_row.status)
        current = status.for_roster(roster)
        check_transition(duty_row.name, current.phase, phase)
        status.set(roster, RosterState(
            phase=phase,
            message=message,
            outputs=dict(outputs) if outputs is not None else current.outputs,
            updated_at=utcnow(),
        ))
        duty_row.status = status.to_dict()

    # =========================================================================
    # STACKS
    # =========================================================================

    def upsert_stack(self, stack: Stack) -> Stack:
        """Register or update a stack.  Sync state is preserved on update."""
        with self.transaction() as session:
            row = session.scalar(select(StackTable).where(StackTable.name == stack.name))
            if row is None:
                row = StackTable(
                    name=stack.name,
                    status=stack.status.value,
                    last_sync_at=stack.last_sync_at,
                    last_sync_version=stack.last_sync_version,
                )
                session.add(row)
            row.source_type = stack.source_type
            row.source_config = dict(stack.source_config)
            row.config_path = stack.config_path
            row.reconcile_interval = stack.reconcile_interval
            row.meta = dict(stack.metadata)
            session.flush()
            return _stack_from_row(row)

    def get_stack(self, name: str) -> Stack:
        with self.transaction() as session:
            return _stack_from_row(self._stack_row(session, name))

    def list_stacks(self, status: StackStatus | None = None) -> list[Stack]:
        stmt = select(StackTable).order_by(StackTable.name)
        if status is not None:
            stmt = stmt.where(StackTable.status == status.value)
        with self.transaction() as session:
            return [_stack_from_row(row) for row in session.scalars(stmt).all()]

    def set_stack_status(self, name: str, status: StackStatus, error: str | None = None) -> Stack:
        with self.transaction() as session:
            row = self._stack_row(session, name)
            row.status = status.value
            meta = dict(row.meta or {})
            if error is not None:
                meta["last_error"] = error
            row.meta = meta
            if status == StackStatus.ERROR:
                # Failed attempts also restart the interval
                row.last_sync_at = utcnow()
            session.flush()
            return _stack_from_row(row)

    def update_stack_sync(
        self,
        name: str,
        version: str | None,
        status: StackStatus = StackStatus.SYNCED,
        error: str | None = None,
    ) -> Stack:
        """Record a completed sync: revision, timestamp, status."""
        with self.transaction() as session:
            row = self._stack_row(session, name)
            row.last_sync_version = version
            row.last_sync_at = utcnow()
            row.status = status.value
            meta = dict(row.meta or {})
            if error is not None:
                meta["last_error"] = error
            else:
                meta.pop("last_error", None)
            row.meta = meta
            session.flush()
            return _stack_from_row(row)

    @staticmethod
    def _stack_row(session: Session, name: str) -> StackTable:
        row = session.scalar(select(StackTable).where(StackTable.name == name))
        if row is None:
            raise StackNotFound(name)
        return row

    # =========================================================================
    # QUEUES
    # =========================================================================

    def upsert_queue(self, queue: Queue) -> Queue:
        with self.transaction() as session:
            row = session.scalar(select(QueueTable).where(QueueTable.name == queue.name))
            if row is None:
                row = QueueTable(name=queue.name, status=queue.status.value)
                session.add(row)
            row.queue_type = queue.queue_type
            row.queue_config = dict(queue.queue_config)
            row.message_handler = queue.message_handler
            row.handler_config = dict(queue.handler_config)
            row.meta = dict(queue.metadata)
            session.flush()
            return _queue_from_row(row)

    def get_queue(self, name: str) -> Queue:
        with self.transaction() as session:
            return _queue_from_row(self._queue_row(session, name))

    def list_queues(self, status: QueueStatus | None = None) -> list[Queue]:
        stmt = select(QueueTable).order_by(QueueTable.name)
        if status is not None:
            stmt = stmt.where(QueueTable.status == status.value)
        with self.transaction() as session:
            return [_queue_from_row(row) for row in session.scalars(stmt).all()]

    def set_queue_status(self, name: str, status: QueueStatus, error: str | None = None) -> Queue:
        with self.transaction() as session:
            row = self._queue_row(session, name)
            row.status = status.value
            meta = dict(row.meta or {})
            if error is not None:
                meta["last_error"] = error
            elif status == QueueStatus.ACTIVE:
                meta.pop("last_error", None)
            row.meta = meta
            session.flush()
            return _queue_from_row(row)

    @staticmethod
    def _queue_row(session: Session, name: str) -> QueueTable:
        row = session.scalar(select(QueueTable).where(QueueTable.name == name))
        if row is None:
            raise QueueNotFound(name)
        return row

    # =========================================================================
    # RECONCILIATIONS
    # =========================================================================

    def start_reconciliation(
        self,
        source_type: SourceType,
        source_id: str,
        trigger: Trigger,
        source_version: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        with self.transaction() as session:
            row = ReconciliationTable(
                source_type=source_type.value,
                source_id=source_id,
                source_version=source_version,
                trigger=trigger.value,
                status=ReconciliationStatus.RUNNING.value,
                started_at=utcnow(),
                duties_applied=[],
                meta=dict(metadata or {}),
            )
            session.add(row)
            session.flush()
            return row.id

    def finish_reconciliation(
        self,
        reconciliation_id: int,
        status: ReconciliationStatus,
        duties_applied: list[str] | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
        source_version: str | None = None,
    ) -> Reconciliation:
        """Complete a reconciliation record; metadata is merged into what is there."""
        with self.transaction() as session:
            row = session.get(ReconciliationTable, reconciliation_id)
            if row is None:
                raise StoreError(f"Reconciliation {reconciliation_id} does not exist")
            row.status = status.value
            row.completed_at = utcnow()
            row.duties_applied = list(duties_applied or [])
            row.error_message = error
            if source_version is not None:
                row.source_version = source_version
            if metadata:
                row.meta = {**(row.meta or {}), **metadata}
            session.flush()
            return _reconciliation_from_row(row)

    def record_reconciliation(
        self,
        source_type: SourceType,
        source_id: str,
        trigger: Trigger,
        status: ReconciliationStatus,
        source_version: str | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Reconciliation:
        """Write an already-finished reconciliation (e.g. a forced no-op)."""
        now = utcnow()
        with self.transaction() as session:
            row = ReconciliationTable(
                source_type=source_type.value,
                source_id=source_id,
                source_version=source_version,
                trigger=trigger.value,
                status=status.value,
                started_at=now,
                completed_at=now,
                error_message=error,
                duties_applied=[],
                meta=dict(metadata or {}),
            )
            session.add(row)
            session.flush()
            return _reconciliation_from_row(row)

    def get_reconciliation(self, reconciliation_id: int) -> Reconciliation:
        with self.transaction() as session:
            row = session.get(ReconciliationTable, reconciliation_id)
            if row is None:
                raise StoreError(f"Reconciliation {reconciliation_id} does not exist")
            return _reconciliation_from_row(row)

    def list_reconciliations(
        self,
        source_type: SourceType | None = None,
        source_id: str | None = None,
        limit: int = 50,
    ) -> list[Reconciliation]:
        """Reconciliation history, newest first."""
        stmt = select(ReconciliationTable).order_by(ReconciliationTable.id.desc()).limit(limit)
        if source_type is not None:
            stmt = stmt.where(ReconciliationTable.source_type == source_type.value)
        if source_id is not None:
            stmt = stmt.where(ReconciliationTable.source_id == source_id)
        with self.transaction() as session:
            return [_reconciliation_from_row(row) for row in session.scalars(stmt).all()]


# =============================================================================
# ROW CONVERSION
# =============================================================================


def _roster_from_row(row: RosterTable) -> Roster:
    return Roster(
        name=row.name,
        roster_type=row.roster_type,
        traits=frozenset(row.traits or ()),
        connection=dict(row.connection or {}),
        auth=dict(row.auth) if row.auth is not None else None,
        metadata=dict(row.meta or {}),
        updated_at=_aware(row.updated_at),
    )


def _duty_from_row(row: DutyTable) -> Duty:
    return Duty(
        name=row.name,
        duty_type=row.duty_type,
        backend=row.backend,
        selector=RosterSelector.from_dict(row.roster_selector),
        spec=dict(row.spec or {}),
        depends_on=list(row.depends_on or ()),
        status=DutyStatus.from_dict(row.status),
        metadata=dict(row.meta or {}),
        source=row.source,
        updated_at=_aware(row.updated_at),
    )


def _execution_from_row(row: DutyExecutionTable, duty_name: str) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        duty=duty_name,
        roster=row.roster_name,
        operation=Operation(row.operation),
        status=ExecutionStatus(row.status),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        reason=row.reason,
        error_message=row.error_message,
        result=row.result,
        attempts=row.attempts,
        reconciliation_id=row.reconciliation_id,
    )


def _stack_from_row(row: StackTable) -> Stack:
    return Stack(
        name=row.name,
        source_type=row.source_type,
        source_config=dict(row.source_config or {}),
        config_path=row.config_path,
        reconcile_interval=row.reconcile_interval,
        last_sync_at=_aware(row.last_sync_at),
        last_sync_version=row.last_sync_version,
        status=StackStatus(row.status),
        metadata=dict(row.meta or {}),
    )


def _queue_from_row(row: QueueTable) -> Queue:
    return Queue(
        name=row.name,
        queue_type=row.queue_type,
        message_handler=row.message_handler,
        queue_config=dict(row.queue_config or {}),
        handler_config=dict(row.handler_config or {}),
        status=QueueStatus(row.status),
        metadata=dict(row.meta or {}),
    )


def _reconciliation_from_row(row: ReconciliationTable) -> Reconciliation:
    return Reconciliation(
        id=row.id,
        source_type=SourceType(row.source_type),
        source_id=row.source_id,
        trigger=Trigger(row.trigger),
        status=ReconciliationStatus(row.status),
        started_at=_aware(row.started_at),
        source_version=row.source_version,
        completed_at=_aware(row.completed_at),
        error_message=row.error_message,
        duties_applied=list(row.duties_applied or ()),
        metadata=dict(row.meta or {}),
    )
