"""Use case layer: the attempt ledger.

The ledger is the only writer of attempt records. It validates identifiers,
runs the progressive block policy inside the store's atomic update, and turns
records into the values hosts consume.

Stores are duck-typed; both ``AttemptRepository`` and ``PgAttemptRepository``
provide ``get``, ``update``, ``reset``, ``delete_stale``, ``delete_all``,
``list_blocked``, ``count`` and ``check_health``.
"""
import logging
from datetime import datetime, timedelta

from loginguard.config import GuardSettings
from loginguard.domain.attempt import AttemptRecord, BlockInfo, FailureResult
from loginguard.domain.clock import SystemClock, ensure_utc
from loginguard.domain.enums import IdentifierType
from loginguard.domain.errors import StoreUnavailable
from loginguard.domain.invariant import mask_identifier, validate_identifier
from loginguard.domain.policy import ProgressiveBlockPolicy

log = logging.getLogger("loginguard.ledger")


class AttemptLedger:
    """Authoritative per-identifier failure and block state."""

    def __init__(self, store, policy=None, clock=None, settings=None, audit=None):
        self._settings = settings or (policy.settings if policy else GuardSettings())
        self._store = store
        self._policy = policy or ProgressiveBlockPolicy(self._settings)
        self._clock = clock or SystemClock()
        self._audit = audit

    @property
    def settings(self) -> GuardSettings:
        return self._settings

    @property
    def policy(self) -> ProgressiveBlockPolicy:
        return self._policy

    @property
    def store(self):
        return self._store

    def now(self) -> datetime:
        return ensure_utc(self._clock.now())

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def get(self, identifier: str, identifier_type) -> AttemptRecord | None:
        identifier, kind = validate_identifier(identifier, identifier_type)
        return self._call_store("get", identifier, kind)

    def record_failure(self, identifier: str, identifier_type, now: datetime | None = None) -> FailureResult:
        """Count one failed authentication and apply any block it triggers."""
        identifier, kind = validate_identifier(identifier, identifier_type)
        now = ensure_utc(now) if now is not None else self.now()
        outcome = {}

        def apply(prior: AttemptRecord | None) -> AttemptRecord:
            decision = self._policy.evaluate(prior, now, kind)
            outcome["decision"] = decision
            base = prior or AttemptRecord(identifier, kind, created_at=now)
            return base.with_failure(decision, now)

        record = self._call_store("update", identifier, kind, apply)
        decision = outcome["decision"]

        if decision.escalated:
            log.info(
                "Blocked %s:%s until %s after %d consecutive failures (tier %s)",
                kind.value, mask_identifier(identifier, kind),
                record.blocked_until.isoformat(), record.consecutive_failures, decision.tier.value,
            )
            self._emit("identifier_blocked", identifier, kind, {
                "tier": decision.tier.value,
                "consecutive_failures": record.consecutive_failures,
                "failed_attempts": record.failed_attempts,
                "blocked_until": record.blocked_until.isoformat(),
            })
        else:
            log.debug(
                "Failure %d for %s:%s", record.consecutive_failures,
                kind.value, mask_identifier(identifier, kind),
            )

        return FailureResult(
            failed_attempts=record.failed_attempts,
            consecutive_failures=record.consecutive_failures,
            blocked_until=record.blocked_until,
            remaining_attempts=decision.remaining_attempts,
            tier=decision.tier,
        )

    def reset_attempts(self, identifier: str, identifier_type, now: datetime | None = None) -> bool:
        """Clear consecutive failures and any block after a successful login.

        Returns False (and creates nothing) when the key has no record.
        """
        identifier, kind = validate_identifier(identifier, identifier_type)
        now = ensure_utc(now) if now is not None else self.now()
        changed = self._call_store("reset", identifier, kind, now)
        if changed:
            log.debug("Reset attempts for %s:%s", kind.value, mask_identifier(identifier, kind))
            self._emit("attempts_reset", identifier, kind)
        return changed

    def is_blocked(self, identifier: str, identifier_type, now: datetime | None = None) -> BlockInfo | None:
        """Return the active block on a key, or None."""
        identifier, kind = validate_identifier(identifier, identifier_type)
        now = ensure_utc(now) if now is not None else self.now()
        record = self._call_store("get", identifier, kind)
        if record is None:
            return None
        return BlockInfo.from_record(record, now)

    def cleanup(self, now: datetime | None = None, retention_days: int | None = None) -> int:
        """Delete unblocked records untouched for ``retention_days``."""
        now = ensure_utc(now) if now is not None else self.now()
        days = retention_days if retention_days is not None else self._settings.retention_days
        if days < 0:
            raise ValueError("retention_days cannot be negative")
        cutoff = now - timedelta(days=days)
        deleted = self._call_store(
            "delete_stale", cutoff, now, include_expired=self._settings.sweep_expired_blocks
        )
        log.info("Cleaned up %d login attempt records older than %d days", deleted, days)
        self._emit("attempts_cleanup", None, None, {"deleted": deleted, "retention_days": days})
        return deleted

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    def list_blocked(self, now: datetime | None = None) -> list:
        """Records with a block still running at ``now``."""
        now = ensure_utc(now) if now is not None else self.now()
        return self._call_store("list_blocked", now)

    def purge(self, identifier_type=None) -> int:
        """Delete every record (optionally only one identifier type)."""
        kind = IdentifierType.parse(identifier_type) if identifier_type is not None else None
        deleted = self._call_store("delete_all", kind)
        log.warning("Purged %d login attempt records (%s)", deleted, kind.value if kind else "all types")
        self._emit("attempts_purged", None, kind, {"deleted": deleted})
        return deleted

    def check_health(self) -> bool:
        return bool(self._store.check_health())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _call_store(self, operation: str, *args, **kwargs):
        try:
            return getattr(self._store, operation)(*args, **kwargs)
        except StoreUnavailable as exc:
            log.warning("Attempt store %s failed: %s", operation, exc)
            raise

    def _emit(self, action: str, identifier, kind, payload: dict | None = None) -> None:
        if self._audit is None:
            return
        subject = f"{kind.value}:{mask_identifier(identifier, kind)}" if identifier else None
        data = dict(payload or {})
        if kind is not None and identifier is None:
            data["type"] = kind.value
        try:
            self._audit(action, subject, data)
        except Exception as exc:  # pragma: no cover
            # The audit trail must never break authentication.
            log.warning("Audit write for %s failed: %s", action, exc)
