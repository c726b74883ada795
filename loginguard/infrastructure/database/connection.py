"""Database engine and session factory for the SQL attempt store.

Every store call is bounded: the pool wait is capped by ``pool_timeout`` and,
on PostgreSQL, connects and statements carry server-side timeouts. Driver
level failures leave this module as ``StoreUnavailable`` so hosts can choose
to fail open or closed.
"""
import logging
import os
import re
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from loginguard.domain.errors import StoreUnavailable

log = logging.getLogger("loginguard.store")

_engine = None
_SessionLocal = None

# Matches a postgres(ql):// URL anywhere inside a string.
_PG_URL_RE = re.compile(r"(postgres(?:ql)?://\S+)")


def resolve_database_url(env_var: str = "DATABASE_URL", environ=None) -> str:
    """Read a database URL from environment and return a clean SQLAlchemy URL.

    Handles robustly:
    - Leading/trailing whitespace or newlines from copy-paste.
    - Literal surrounding quotes pasted in dashboards.
    - Full ``psql`` command pasted instead of just the URL.
    - ``postgres://`` scheme that SQLAlchemy rejects (needs ``postgresql://``).
    """
    env = os.environ if environ is None else environ
    raw = env.get(env_var, "").strip()

    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ('"', "'"):
        raw = raw[1:-1].strip()

    match = _PG_URL_RE.search(raw)
    url = match.group(1) if match else raw

    # Strip trailing quote that may remain from psql 'url'
    url = url.rstrip("'\"").strip()

    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    return url


def build_engine(url: str, timeout: float = 5.0):
    """Create a SQLAlchemy engine whose calls are bounded by ``timeout`` seconds."""
    masked = url.split("@")[-1].split("?")[0] if "@" in url else url.split("://")[0]
    log.info("Initialising attempt store engine -> %s", masked)

    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"timeout": timeout, "check_same_thread": False},
            echo=False,
        )

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    return create_engine(
        url,
        pool_size=3,
        max_overflow=5,
        pool_timeout=timeout,
        pool_recycle=1800,
        pool_pre_ping=True,
        connect_args=connect_args,
        echo=False,
    )


def init_engine(url: str | None = None, timeout: float = 5.0):
    """Initialise the process-wide engine. Returns the managed session factory."""
    global _engine, _SessionLocal

    url = url or resolve_database_url()
    if not url:
        raise RuntimeError("DATABASE_URL is empty -- cannot initialise the SQL attempt store.")

    _engine = build_engine(url, timeout=timeout)
    _SessionLocal = ManagedSessionFactory(sessionmaker(bind=_engine, expire_on_commit=False))
    return _SessionLocal


def get_engine():
    """Return the active SQLAlchemy engine (may be None)."""
    return _engine


def get_session_factory():
    """Return the managed session factory. Raises if no engine was initialised."""
    if _SessionLocal is None:
        raise RuntimeError("Database not initialised. Call init_engine() first.")
    return _SessionLocal


def create_tables(engine=None) -> None:
    """Create the attempt tables (idempotent)."""
    from loginguard.infrastructure.database.models import Base

    engine = engine or _engine
    try:
        Base.metadata.create_all(bind=engine)
    except (OperationalError, PoolTimeoutError) as exc:
        raise StoreUnavailable(f"Could not create attempt tables: {exc}") from exc
    log.info("Attempt tables verified.")


def check_health(engine=None) -> bool:
    """Lightweight connectivity check."""
    engine = engine or _engine
    if engine is None:
        return False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except (DBAPIError, PoolTimeoutError) as exc:
        log.warning("Attempt store health check failed: %s", exc)
        return False


class ManagedSessionFactory:
    """Callable wrapper around a sessionmaker passed to SQL repositories.

    Usage (identical to bare sessionmaker):
        with managed_sf() as session:
            ...

    Rolls back on any error, always closes, and converts connectivity
    failures into ``StoreUnavailable``.
    """

    def __init__(self, sessionmaker_):
        self._sessionmaker = sessionmaker_

    @property
    def bind(self):
        return self._sessionmaker.kw.get("bind")

    def __call__(self):
        return self._managed_session()

    @contextmanager
    def _managed_session(self):
        try:
            session = self._sessionmaker()
        except (OperationalError, PoolTimeoutError) as exc:
            raise StoreUnavailable(f"Attempt store unavailable: {exc}") from exc
        try:
            yield session
        except (OperationalError, PoolTimeoutError) as exc:
            session.rollback()
            raise StoreUnavailable(f"Attempt store unavailable: {exc}") from exc
        except DBAPIError as exc:
            session.rollback()
            if exc.connection_invalidated:
                raise StoreUnavailable(f"Attempt store connection lost: {exc}") from exc
            raise
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
