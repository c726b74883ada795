"""
Shared pytest fixtures for the LOGINGUARD test suite.

Strategy:
- Domain tests: pure in-memory, zero I/O, frozen clock.
- Store / ledger tests: run against the in-memory store, the JSON file store
  and the SQL store on a temporary SQLite file.
- API tests: FastAPI TestClient around an in-memory ledger.
  DATABASE_URL is cleared so nothing ever touches a real database.
"""
import os
import tempfile
from datetime import datetime, timezone

import pytest

# ---------------------------------------------------------------------------
# Ensure no real database or audit log is touched during the test run
# ---------------------------------------------------------------------------
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("LOGINGUARD_AUDIT_LOG_DIR", tempfile.mkdtemp(prefix="loginguard_audit_"))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from loginguard.application.ledger import AttemptLedger
from loginguard.config import GuardSettings
from loginguard.domain.attempt import AttemptRecord
from loginguard.domain.clock import FrozenClock
from loginguard.domain.enums import IdentifierType
from loginguard.infrastructure.database.connection import ManagedSessionFactory, create_tables
from loginguard.infrastructure.repositories.attempt_repository import AttemptRepository
from loginguard.infrastructure.repositories.pg_attempt_repository import PgAttemptRepository

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Domain helpers (reusable across many test modules)
# ---------------------------------------------------------------------------

def make_record(
    identifier="10.0.0.5",
    identifier_type=IdentifierType.IP,
    failed_attempts=1,
    consecutive_failures=1,
    blocked_until=None,
    last_attempt=T0,
    **kwargs,
) -> AttemptRecord:
    return AttemptRecord(
        identifier=identifier,
        identifier_type=identifier_type,
        failed_attempts=failed_attempts,
        consecutive_failures=consecutive_failures,
        blocked_until=blocked_until,
        last_attempt=last_attempt,
        **kwargs,
    )


def make_sql_store(path: str, **kwargs) -> PgAttemptRepository:
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    create_tables(engine)
    return PgAttemptRepository(
        ManagedSessionFactory(sessionmaker(bind=engine, expire_on_commit=False)), **kwargs
    )


# ---------------------------------------------------------------------------
# pytest fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def settings():
    return GuardSettings()


@pytest.fixture
def memory_store():
    return AttemptRepository()


@pytest.fixture
def sql_store(tmp_path):
    return make_sql_store(str(tmp_path / "attempts.db"))


@pytest.fixture(params=["memory", "json", "sql"])
def any_store(request, tmp_path):
    """Each ledger contract test runs once per store implementation."""
    if request.param == "memory":
        return AttemptRepository()
    if request.param == "json":
        return AttemptRepository(data_path=str(tmp_path / "data" / "attempts.json"))
    return make_sql_store(str(tmp_path / "attempts.db"))


@pytest.fixture
def ledger(memory_store, clock, settings):
    return AttemptLedger(memory_store, clock=clock, settings=settings)
