"""SQLAlchemy ORM models -- login attempt schema definition."""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase


def _utcnow():
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Login attempts (one row per identifier + type)
# ---------------------------------------------------------------------------

class LoginAttemptModel(Base):
    __tablename__ = "login_attempts"
    __table_args__ = (
        UniqueConstraint("identifier", "identifier_type", name="uq_login_attempts_identifier_type"),
        Index("ix_login_attempts_blocked_until", "blocked_until"),
        Index("ix_login_attempts_last_attempt", "last_attempt"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Address (up to IPv6 with zone) or email
    identifier = Column(String(254), nullable=False)
    identifier_type = Column(String(10), nullable=False)
    failed_attempts = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    # NULL means never blocked (or cleared by a reset)
    blocked_until = Column(DateTime(timezone=True), nullable=True)
    last_attempt = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    # Compare-and-swap counter for concurrent writers
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
