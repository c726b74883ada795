"""Attempt record entity -- per-identifier failure and block state."""
import math
from datetime import datetime

from loginguard.domain.clock import ensure_utc
from loginguard.domain.enums import BlockTier, IdentifierType


class AttemptRecord:
    """
    Failure history for one (identifier, type) pair.
    Immutable: every transition returns a new record.
    """

    def __init__(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        failed_attempts: int = 0,
        consecutive_failures: int = 0,
        blocked_until: datetime | None = None,
        last_attempt: datetime | None = None,
        created_at: datetime | None = None,
        version: int = 0,
    ):
        if failed_attempts < 0 or consecutive_failures < 0:
            raise ValueError("Attempt counters cannot be negative")
        self._identifier = identifier
        self._identifier_type = IdentifierType(identifier_type)
        self._failed_attempts = failed_attempts
        self._consecutive_failures = consecutive_failures
        self._blocked_until = ensure_utc(blocked_until)
        self._last_attempt = ensure_utc(last_attempt)
        self._created_at = ensure_utc(created_at) or self._last_attempt
        self._version = version

    @property
    def identifier(self) -> str:
        return self._identifier

    @property
    def identifier_type(self) -> IdentifierType:
        return self._identifier_type

    @property
    def key(self) -> tuple:
        return (self._identifier, self._identifier_type)

    @property
    def failed_attempts(self) -> int:
        return self._failed_attempts

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def blocked_until(self) -> datetime | None:
        return self._blocked_until

    @property
    def last_attempt(self) -> datetime | None:
        return self._last_attempt

    @property
    def created_at(self) -> datetime | None:
        return self._created_at

    @property
    def version(self) -> int:
        return self._version

    def is_blocked_at(self, now: datetime) -> bool:
        """A record is blocked only while ``blocked_until`` lies in the future."""
        return self._blocked_until is not None and self._blocked_until > ensure_utc(now)

    def with_failure(self, decision, now: datetime) -> "AttemptRecord":
        """Apply a policy decision for a failure observed at ``now``."""
        return AttemptRecord(
            identifier=self._identifier,
            identifier_type=self._identifier_type,
            failed_attempts=decision.failed_attempts,
            consecutive_failures=decision.consecutive_failures,
            blocked_until=decision.blocked_until,
            last_attempt=now,
            created_at=self._created_at or now,
            version=self._version,
        )

    def with_reset(self, now: datetime) -> "AttemptRecord":
        """Clear consecutive failures and any block. Lifetime total is kept."""
        return AttemptRecord(
            identifier=self._identifier,
            identifier_type=self._identifier_type,
            failed_attempts=self._failed_attempts,
            consecutive_failures=0,
            blocked_until=None,
            last_attempt=now,
            created_at=self._created_at,
            version=self._version,
        )

    def with_version(self, version: int) -> "AttemptRecord":
        data = self.to_dict()
        data["version"] = version
        return AttemptRecord.from_dict(data)

    def to_dict(self) -> dict:
        return {
            "identifier": self._identifier,
            "type": self._identifier_type.value,
            "failed_attempts": self._failed_attempts,
            "consecutive_failures": self._consecutive_failures,
            "blocked_until": _iso(self._blocked_until),
            "last_attempt": _iso(self._last_attempt),
            "created_at": _iso(self._created_at),
            "version": self._version,
        }

    @staticmethod
    def from_dict(data: dict) -> "AttemptRecord":
        return AttemptRecord(
            identifier=data["identifier"],
            identifier_type=IdentifierType(data["type"]),
            failed_attempts=data.get("failed_attempts", 0),
            consecutive_failures=data.get("consecutive_failures", 0),
            blocked_until=_parse(data.get("blocked_until")),
            last_attempt=_parse(data.get("last_attempt")),
            created_at=_parse(data.get("created_at")),
            version=data.get("version", 0),
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, AttemptRecord):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return (
            f"AttemptRecord({self._identifier_type.value}:{self._identifier!r}, "
            f"failed={self._failed_attempts}, consecutive={self._consecutive_failures}, "
            f"blocked_until={_iso(self._blocked_until)})"
        )


class FailureResult:
    """Outcome of recording one failure."""

    def __init__(
        self,
        failed_attempts: int,
        consecutive_failures: int,
        blocked_until: datetime | None,
        remaining_attempts: int,
        tier: BlockTier = BlockTier.NONE,
    ):
        self._failed_attempts = failed_attempts
        self._consecutive_failures = consecutive_failures
        self._blocked_until = ensure_utc(blocked_until)
        self._remaining_attempts = remaining_attempts
        self._tier = tier

    @property
    def failed_attempts(self) -> int:
        return self._failed_attempts

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def blocked_until(self) -> datetime | None:
        return self._blocked_until

    @property
    def remaining_attempts(self) -> int:
        """First-threshold headroom. Negative once blocked; clamp before display."""
        return self._remaining_attempts

    @property
    def tier(self) -> BlockTier:
        return self._tier

    def to_dict(self) -> dict:
        return {
            "failed_attempts": self._failed_attempts,
            "consecutive_failures": self._consecutive_failures,
            "blocked_until": _iso(self._blocked_until),
            "remaining_attempts": self._remaining_attempts,
            "tier": self._tier.value,
        }


class BlockInfo:
    """An active block on an identifier."""

    REASON_TEMPLATE = "Too many failed login attempts. Access blocked until {until}"

    def __init__(self, blocked_until: datetime, reason: str, retry_after_seconds: int):
        self._blocked_until = ensure_utc(blocked_until)
        self._reason = reason
        self._retry_after_seconds = retry_after_seconds

    @property
    def blocked(self) -> bool:
        return True

    @property
    def blocked_until(self) -> datetime:
        return self._blocked_until

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def retry_after_seconds(self) -> int:
        return self._retry_after_seconds

    @staticmethod
    def from_record(record: AttemptRecord, now: datetime) -> "BlockInfo | None":
        """Build the block view of a record, or None when it is not blocked at ``now``."""
        if not record.is_blocked_at(now):
            return None
        return BlockInfo.until(record.blocked_until, now)

    @staticmethod
    def until(blocked_until: datetime, now: datetime) -> "BlockInfo":
        blocked_until = ensure_utc(blocked_until)
        remaining = (blocked_until - ensure_utc(now)).total_seconds()
        return BlockInfo(
            blocked_until=blocked_until,
            reason=BlockInfo.REASON_TEMPLATE.format(until=_iso(blocked_until)),
            retry_after_seconds=max(1, math.ceil(remaining)),
        )

    def to_dict(self) -> dict:
        return {
            "blocked": True,
            "blocked_until": _iso(self._blocked_until),
            "reason": self._reason,
            "retry_after_seconds": self._retry_after_seconds,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value))
