"""SQL-backed attempt repository (PostgreSQL in production, SQLite in tests)."""
import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError

from loginguard.domain.attempt import AttemptRecord
from loginguard.domain.clock import ensure_utc
from loginguard.domain.enums import IdentifierType
from loginguard.domain.errors import StoreUnavailable
from loginguard.infrastructure.database.models import LoginAttemptModel

log = logging.getLogger("loginguard.store")


class PgAttemptRepository:
    """Attempt persistence via SQLAlchemy.

    Writes are compare-and-swap on the ``version`` column, inside a
    transaction that also takes a row lock where the backend supports it.
    A lost race re-reads and re-applies the mutation, up to ``max_retries``.
    """

    def __init__(self, session_factory, max_retries: int = 10):
        self._sf = session_factory
        self._max_retries = max_retries

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, identifier: str, identifier_type: IdentifierType) -> AttemptRecord | None:
        with self._sf() as session:
            row = self._find(session, identifier, identifier_type)
            return self._to_domain(row) if row else None

    def list_blocked(self, now: datetime) -> list:
        with self._sf() as session:
            rows = (
                session.query(LoginAttemptModel)
                .filter(LoginAttemptModel.blocked_until > ensure_utc(now))
                .order_by(LoginAttemptModel.blocked_until.asc())
                .all()
            )
            return [self._to_domain(r) for r in rows]

    def count(self) -> int:
        with self._sf() as session:
            return session.query(LoginAttemptModel).count()

    def check_health(self) -> bool:
        try:
            self.count()
            return True
        except StoreUnavailable:
            return False

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def update(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        mutate: Callable[[AttemptRecord | None], AttemptRecord],
    ) -> AttemptRecord:
        """Atomically replace the record for a key with ``mutate(prior)``."""
        for attempt in range(1, self._max_retries + 1):
            with self._sf() as session:
                row = self._find(session, identifier, identifier_type, for_update=True)
                prior = self._to_domain(row) if row else None
                updated = mutate(prior)

                if row is None:
                    stored = updated.with_version(1)
                    session.add(self._to_model(stored))
                    try:
                        session.commit()
                    except IntegrityError:
                        # Another writer created the row first; retry as an update.
                        session.rollback()
                        log.debug("Insert race on %s:%s (attempt %d)", identifier_type.value, identifier, attempt)
                        continue
                    return stored

                stored = updated.with_version(row.version + 1)
                changed = (
                    session.query(LoginAttemptModel)
                    .filter(
                        LoginAttemptModel.id == row.id,
                        LoginAttemptModel.version == row.version,
                    )
                    .update(self._columns(stored), synchronize_session=False)
                )
                if changed != 1:
                    session.rollback()
                    log.debug("Version conflict on %s:%s (attempt %d)", identifier_type.value, identifier, attempt)
                    continue
                session.commit()
                return stored

        raise StoreUnavailable(
            f"Gave up updating {identifier_type.value}:{identifier} after {self._max_retries} conflicting writes."
        )

    def reset(self, identifier: str, identifier_type: IdentifierType, now: datetime) -> bool:
        """Single UPDATE; absent keys are left absent."""
        with self._sf() as session:
            changed = (
                session.query(LoginAttemptModel)
                .filter(
                    LoginAttemptModel.identifier == identifier,
                    LoginAttemptModel.identifier_type == identifier_type.value,
                )
                .update(
                    {
                        LoginAttemptModel.consecutive_failures: 0,
                        LoginAttemptModel.blocked_until: None,
                        LoginAttemptModel.last_attempt: ensure_utc(now),
                        LoginAttemptModel.version: LoginAttemptModel.version + 1,
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
        return changed > 0

    def delete_stale(self, cutoff: datetime, now: datetime, include_expired: bool = False) -> int:
        """One conditional DELETE: a row blocked mid-sweep no longer matches."""
        unblocked = LoginAttemptModel.blocked_until.is_(None)
        if include_expired:
            unblocked = or_(unblocked, LoginAttemptModel.blocked_until <= ensure_utc(now))
        with self._sf() as session:
            deleted = (
                session.query(LoginAttemptModel)
                .filter(and_(LoginAttemptModel.last_attempt < ensure_utc(cutoff), unblocked))
                .delete(synchronize_session=False)
            )
            session.commit()
        return deleted

    def delete_all(self, identifier_type: IdentifierType | None = None) -> int:
        with self._sf() as session:
            query = session.query(LoginAttemptModel)
            if identifier_type is not None:
                query = query.filter(LoginAttemptModel.identifier_type == identifier_type.value)
            deleted = query.delete(synchronize_session=False)
            session.commit()
        return deleted

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _find(session, identifier: str, identifier_type: IdentifierType, for_update: bool = False):
        query = session.query(LoginAttemptModel).filter(
            LoginAttemptModel.identifier == identifier,
            LoginAttemptModel.identifier_type == identifier_type.value,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def _columns(record: AttemptRecord) -> dict:
        return {
            LoginAttemptModel.failed_attempts: record.failed_attempts,
            LoginAttemptModel.consecutive_failures: record.consecutive_failures,
            LoginAttemptModel.blocked_until: record.blocked_until,
            LoginAttemptModel.last_attempt: record.last_attempt,
            LoginAttemptModel.version: record.version,
        }

    @staticmethod
    def _to_model(record: AttemptRecord) -> LoginAttemptModel:
        return LoginAttemptModel(
            identifier=record.identifier,
            identifier_type=record.identifier_type.value,
            failed_attempts=record.failed_attempts,
            consecutive_failures=record.consecutive_failures,
            blocked_until=record.blocked_until,
            last_attempt=record.last_attempt,
            version=record.version,
            created_at=record.created_at or record.last_attempt,
        )

    @staticmethod
    def _to_domain(row: LoginAttemptModel) -> AttemptRecord:
        return AttemptRecord(
            identifier=row.identifier,
            identifier_type=IdentifierType(row.identifier_type),
            failed_attempts=row.failed_attempts,
            consecutive_failures=row.consecutive_failures,
            blocked_until=row.blocked_until,
            last_attempt=row.last_attempt,
            created_at=row.created_at,
            version=row.version,
        )
