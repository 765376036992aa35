"""Store-backed exclusive locks with TTL expiry.

Manifesto:
    Two cycles (different stacks, or a stack and a queue) may select the
    same (duty, roster) pair at the same moment.  Exactly one of them may
    reach the handler.  That coordination lives in the durable store, not
    in process memory, so it holds across threads and processes.  A lock
    row is claimed by INSERT; a primary-key conflict means somebody else
    holds it.  Locks carry a TTL so a crashed holder cannot wedge a pair
    forever.

    Lock keys::

        duty:<duty>@<roster>   at most one running execution per pair
        stack:<name>           single writer per pull source
        queue:<name>           single consumer per push source

Tags:
    g8r, locks, TTL, concurrency, at-most-once

Doc-Types:
    api-reference
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from g8r.core.errors import StoreError
from g8r.core.logging import get_logger
from g8r.core.orm.tables import LockTable

logger = get_logger(__name__)


def duty_lock_key(duty: str, roster: str) -> str:
    return f"duty:{duty}@{roster}"


def source_lock_key(source_type: str, name: str) -> str:
    return f"{source_type}:{name}"


class LockManager:
    """Acquire/release named locks stored in ``g8r_locks``.

    Example:
        >>> locks = LockManager(session_factory, instance_id="scheduler-1")
        >>> token = locks.new_token()
        >>> if locks.acquire("duty:site-bucket@aws-prod", holder=token):
        ...     try:
        ...         ...
        ...     finally:
        ...         locks.release("duty:site-bucket@aws-prod", holder=token)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        instance_id: str | None = None,
        default_ttl: int = 3600,
    ) -> None:
        self._session_factory = session_factory
        self.instance_id = instance_id or str(uuid4())
        self.default_ttl = default_ttl

    def new_token(self) -> str:
        """A holder id unique to one acquisition by this instance."""
        return f"{self.instance_id}:{uuid4().hex[:12]}"

    def acquire(self, key: str, holder: str | None = None, ttl_seconds: int | None = None) -> bool:
        """Try to take ``key``.

        Returns True if acquired (or already held by ``holder``, in which
        case the expiry is refreshed), False if another holder has it.
        """
        holder = holder or self.instance_id
        now = datetime.now(UTC)
        expires = now + timedelta(seconds=ttl_seconds or self.default_ttl)

        try:
            with self._session_factory() as session:
                try:
                    session.execute(
                        delete(LockTable).where(
                            LockTable.lock_key == key, LockTable.expires_at < now
                        )
                    )
                    session.add(
                        LockTable(lock_key=key, holder=holder, acquired_at=now, expires_at=expires)
                    )
                    session.commit()
                    logger.debug("lock.acquired", key=key, holder=holder)
                    return True
                except IntegrityError:
                    session.rollback()

                refreshed = session.execute(
                    update(LockTable)
                    .where(LockTable.lock_key == key, LockTable.holder == holder)
                    .values(expires_at=expires)
                )
                session.commit()
                if refreshed.rowcount > 0:
                    logger.debug("lock.refreshed", key=key, holder=holder)
                    return True
        except SQLAlchemyError as e:
            raise StoreError(f"Lock acquire failed for {key}: {e}", cause=e)

        logger.debug("lock.contended", key=key, holder=holder)
        return False

    def release(self, key: str, holder: str | None = None) -> bool:
        """Release ``key`` if held by ``holder``."""
        holder = holder or self.instance_id
        try:
            with self._session_factory() as session:
                result = session.execute(
                    delete(LockTable).where(LockTable.lock_key == key, LockTable.holder == holder)
                )
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Lock release failed for {key}: {e}", cause=e)

        if result.rowcount > 0:
            logger.debug("lock.released", key=key, holder=holder)
            return True
        return False

    def is_locked(self, key: str) -> bool:
        return self.get_holder(key) is not None

    def get_holder(self, key: str) -> str | None:
        now = datetime.now(UTC)
        with self._session_factory() as session:
            return session.scalar(
                select(LockTable.holder).where(
                    LockTable.lock_key == key, LockTable.expires_at > now
                )
            )

    def cleanup_expired(self) -> int:
        """Remove all expired locks.  Called by the scheduler on every tick."""
        now = datetime.now(UTC)
        try:
            with self._session_factory() as session:
                result = session.execute(delete(LockTable).where(LockTable.expires_at < now))
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Lock cleanup failed: {e}", cause=e)

        count = result.rowcount
        if count > 0:
            logger.info("lock.expired_cleaned", count=count)
        return count

    def list_active(self) -> list[dict]:
        now = datetime.now(UTC)
        with self._session_factory() as session:
            rows = session.scalars(
                select(LockTable)
                .where(LockTable.expires_at > now)
                .order_by(LockTable.acquired_at)
            ).all()
        return [
            {
                "lock_key": row.lock_key,
                "holder": row.holder,
                "acquired_at": row.acquired_at,
                "expires_at": row.expires_at,
            }
            for row in rows
        ]
