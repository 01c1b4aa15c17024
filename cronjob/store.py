"""
Durable store backing the runtime.

Holds three things, all in the database configured by `CRON_DB_URL`:
1. Keyed object state (one row per state entry)
2. Invocations, which double as the queue of delayed calls
3. The per-invocation journal of recorded step outcomes
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlmodel import Session, col, func, select

from cronjob.errors import HandlerError
from cronjob.models import (
    CANCELLED,
    COMPLETED,
    FAILED,
    FINISHED_STATUSES,
    PENDING,
    RUNNING,
    Invocation,
    JournalEntry,
    ObjectState,
)
from cronjob.utils import ensure_utc_aware

logger = logging.getLogger("Store")


def _normalize(invocation: Optional[Invocation]) -> Optional[Invocation]:
    """Restore timezone information lost by backends such as SQLite."""
    if invocation is None:
        return None
    invocation.execute_at = ensure_utc_aware(invocation.execute_at)
    invocation.created_at = ensure_utc_aware(invocation.created_at)
    invocation.started_at = ensure_utc_aware(invocation.started_at)
    invocation.completed_at = ensure_utc_aware(invocation.completed_at)
    return invocation


class DurableStore:
    def __init__(self, engine):
        self.engine = engine

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # === Object state ===

    def load_state(self, service: str, key: str) -> dict[str, str]:
        with self.session() as session:
            rows = session.exec(
                select(ObjectState)
                .where(ObjectState.service == service)
                .where(ObjectState.key == key)
            ).all()
            return {row.name: row.value for row in rows}

    def _replace_state(
        self, session: Session, service: str, key: str, state: dict[str, str], now: datetime
    ):
        session.exec(
            delete(ObjectState)
            .where(ObjectState.service == service)
            .where(ObjectState.key == key)
        )
        for name, value in state.items():
            session.add(
                ObjectState(service=service, key=key, name=name, value=value, updated_at=now)
            )

    # === Invocations ===

    def enqueue(self, invocation: Invocation) -> Invocation:
        with self.session() as session:
            session.add(invocation)
            session.commit()
            logger.debug(
                f"Enqueued {invocation.id} ({invocation.service}/{invocation.key}/{invocation.handler}) "
                f"for {invocation.execute_at.isoformat()}"
            )
            return _normalize(invocation)

    def get_invocation(self, invocation_id: str) -> Optional[Invocation]:
        with self.session() as session:
            return _normalize(session.get(Invocation, invocation_id))

    def find_by_idempotency_key(
        self, service: str, key: str, handler: str, idempotency_key: str
    ) -> Optional[Invocation]:
        with self.session() as session:
            invocation = session.exec(
                select(Invocation)
                .where(Invocation.service == service)
                .where(Invocation.key == key)
                .where(Invocation.handler == handler)
                .where(Invocation.idempotency_key == idempotency_key)
                .order_by(Invocation.created_at)
            ).first()
            return _normalize(invocation)

    def claim(self, invocation_id: str, now: datetime) -> Optional[Invocation]:
        """
        Move a PENDING invocation to RUNNING and count the attempt.

        Returns: the claimed invocation, or None if it is no longer pending
        (completed, failed, cancelled, or claimed by another attempt).
        """
        with self.session() as session:
            invocation = session.exec(
                select(Invocation)
                .where(Invocation.id == invocation_id)
                .where(Invocation.status == PENDING)
            ).first()
            if invocation is None:
                return None
            invocation.status = RUNNING
            invocation.attempts += 1
            invocation.started_at = now
            session.add(invocation)
            session.commit()
            return _normalize(invocation)

    def complete(
        self,
        invocation_id: str,
        result: Optional[str],
        state: Optional[tuple[str, str, dict[str, str]]],
        now: datetime,
    ) -> Invocation:
        """
        Mark an invocation COMPLETED and commit its buffered state in the same transaction.

        Args:
            state: (service, key, entries) to replace the object's state with, or None
                when the invocation did not modify state.
        """
        with self.session() as session:
            invocation = session.get(Invocation, invocation_id)
            if state is not None:
                service, key, entries = state
                self._replace_state(session, service, key, entries, now)
            invocation.status = COMPLETED
            invocation.result = result
            invocation.error_type = None
            invocation.error_code = None
            invocation.error_message = None
            invocation.completed_at = now
            session.add(invocation)
            session.commit()
            return _normalize(invocation)

    def fail(self, invocation_id: str, error: Exception, now: datetime) -> Invocation:
        with self.session() as session:
            invocation = session.get(Invocation, invocation_id)
            invocation.status = FAILED
            self._set_error(invocation, error)
            invocation.completed_at = now
            session.add(invocation)
            session.commit()
            return _normalize(invocation)

    def reschedule(
        self, invocation_id: str, execute_at: datetime, error: Exception
    ) -> Invocation:
        """Put a failed attempt back in the queue for a retry at `execute_at`."""
        with self.session() as session:
            invocation = session.get(Invocation, invocation_id)
            invocation.status = PENDING
            invocation.execute_at = execute_at
            self._set_error(invocation, error)
            session.add(invocation)
            session.commit()
            return _normalize(invocation)

    def requeue(self, invocation_id: str, now: datetime) -> bool:
        """
        Put a RUNNING invocation whose outcome could not be stored back in the queue.

        Returns whether the invocation was still RUNNING.
        """
        with self.session() as session:
            invocation = session.exec(
                select(Invocation)
                .where(Invocation.id == invocation_id)
                .where(Invocation.status == RUNNING)
            ).first()
            if invocation is None:
                return False
            invocation.status = PENDING
            invocation.execute_at = now
            session.add(invocation)
            session.commit()
            return True

    @staticmethod
    def _set_error(invocation: Invocation, error: Exception):
        invocation.error_type = type(error).__name__
        invocation.error_code = error.code if isinstance(error, HandlerError) else None
        invocation.error_message = str(error)

    def cancel(self, invocation_id: str, now: datetime) -> bool:
        """
        Cancel a pending invocation.

        Only PENDING invocations are affected; one that is already running or
        finished is left alone. Returns whether the invocation was cancelled.
        """
        with self.session() as session:
            invocation = session.exec(
                select(Invocation)
                .where(Invocation.id == invocation_id)
                .where(Invocation.status == PENDING)
            ).first()
            if invocation is None:
                return False
            invocation.status = CANCELLED
            invocation.completed_at = now
            session.add(invocation)
            session.commit()
            return True

    def due_invocations(self, now: datetime, limit: int = 100) -> list[Invocation]:
        with self.session() as session:
            invocations = session.exec(
                select(Invocation)
                .where(Invocation.status == PENDING)
                .where(Invocation.execute_at <= now)
                .order_by(Invocation.execute_at, Invocation.created_at)
                .limit(limit)
            ).all()
            return [_normalize(invocation) for invocation in invocations]

    def pending_invocations(self, service: str, key: str) -> list[Invocation]:
        with self.session() as session:
            invocations = session.exec(
                select(Invocation)
                .where(Invocation.service == service)
                .where(Invocation.key == key)
                .where(Invocation.status == PENDING)
                .order_by(Invocation.execute_at)
            ).all()
            return [_normalize(invocation) for invocation in invocations]

    def next_due_at(self) -> Optional[datetime]:
        with self.session() as session:
            next_due = session.exec(
                select(func.min(Invocation.execute_at)).where(Invocation.status == PENDING)
            ).one()
            return ensure_utc_aware(next_due)

    def recover_running(self, now: datetime) -> int:
        """Re-queue invocations left RUNNING by a process that stopped mid-attempt."""
        with self.session() as session:
            stuck = session.exec(
                select(Invocation).where(Invocation.status == RUNNING)
            ).all()
            for invocation in stuck:
                invocation.status = PENDING
                invocation.execute_at = now
                session.add(invocation)
            if stuck:
                session.commit()
                logger.warning(f"Re-queued {len(stuck)} interrupted invocations")
            return len(stuck)

    def cleanup_finished(self, older_than: timedelta, now: datetime) -> int:
        """Remove finished invocations and their journals older than the retention period."""
        threshold = now - older_than
        with self.session() as session:
            finished_ids = session.exec(
                select(Invocation.id)
                .where(col(Invocation.status).in_(FINISHED_STATUSES))
                .where(Invocation.completed_at < threshold)
            ).all()
            if not finished_ids:
                return 0
            session.exec(
                delete(JournalEntry).where(col(JournalEntry.invocation_id).in_(finished_ids))
            )
            session.exec(delete(Invocation).where(col(Invocation.id).in_(finished_ids)))
            session.commit()
            logger.info(
                f"Cleaned up {len(finished_ids)} finished invocations "
                f"(older than {older_than.days} days)"
            )
            return len(finished_ids)

    def status_counts(self) -> dict[str, int]:
        with self.session() as session:
            rows = session.exec(
                select(Invocation.status, func.count()).group_by(Invocation.status)
            ).all()
            return {status: count for status, count in rows}

    # === Journal ===

    def load_journal(self, invocation_id: str) -> list[JournalEntry]:
        with self.session() as session:
            return list(
                session.exec(
                    select(JournalEntry)
                    .where(JournalEntry.invocation_id == invocation_id)
                    .order_by(JournalEntry.seq)
                ).all()
            )

    def append_journal(
        self, entry: JournalEntry, scheduled: Optional[Invocation] = None
    ) -> JournalEntry:
        """
        Record a step outcome.

        When the step schedules a new invocation, the invocation row is written in the
        same transaction, so a replayed step never schedules it twice.
        """
        with self.session() as session:
            if scheduled is not None:
                session.add(scheduled)
            session.add(entry)
            session.commit()
            return entry
