"""Use case: guard a login endpoint with address- and account-keyed blocking.

Address blocking stops one client from spraying many accounts; account
blocking stops many clients from hammering one account. Both run on the same
ledger, keyed by (identifier, type).
"""
import logging
from datetime import datetime

from loginguard.application.ledger import AttemptLedger
from loginguard.domain.attempt import BlockInfo
from loginguard.domain.clock import ensure_utc
from loginguard.domain.enums import FailMode, IdentifierType
from loginguard.domain.errors import StoreUnavailable
from loginguard.domain.invariant import validate_identifier

log = logging.getLogger("loginguard.protection")

UNAVAILABLE_REASON = "Login temporarily unavailable. Please try again shortly."


class AccessDecision:
    """What a login handler should do next."""

    def __init__(
        self,
        allowed: bool,
        blocked_until: datetime | None = None,
        reason: str | None = None,
        retry_after_seconds: int = 0,
        remaining_attempts: int | None = None,
        blocked_by: IdentifierType | None = None,
        degraded: bool = False,
    ):
        self.allowed = allowed
        self.blocked_until = ensure_utc(blocked_until)
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds
        # Clamped for display; the ledger's raw value goes negative once blocked.
        self.remaining_attempts = None if remaining_attempts is None else max(0, remaining_attempts)
        self.blocked_by = blocked_by
        # True when the ledger could not be consulted and fail_mode decided.
        self.degraded = degraded

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "blocked_until": self.blocked_until.isoformat() if self.blocked_until else None,
            "reason": self.reason,
            "retry_after_seconds": self.retry_after_seconds,
            "remaining_attempts": self.remaining_attempts,
            "blocked_by": self.blocked_by.value if self.blocked_by else None,
            "degraded": self.degraded,
        }


class LoginProtection:
    """Check, record and clear login failures for an (address, email) pair."""

    def __init__(self, ledger: AttemptLedger, fail_mode: FailMode | None = None):
        self._ledger = ledger
        self._fail_mode = FailMode(fail_mode or ledger.settings.fail_mode)

    @property
    def fail_mode(self) -> FailMode:
        return self._fail_mode

    def check(self, ip: str, email: str | None = None) -> AccessDecision:
        """Refuse the attempt up front when either key is blocked."""
        now = self._ledger.now()
        try:
            for identifier, kind in self._keys(ip, email):
                info = self._ledger.is_blocked(identifier, kind, now)
                if info:
                    return AccessDecision(
                        allowed=False,
                        blocked_until=info.blocked_until,
                        reason=info.reason,
                        retry_after_seconds=info.retry_after_seconds,
                        blocked_by=kind,
                    )
        except StoreUnavailable as exc:
            return self._degraded(exc)
        return AccessDecision(allowed=True)

    def register_failure(self, ip: str, email: str | None = None) -> AccessDecision:
        """Record a failed login on every key and report the strictest outcome."""
        now = self._ledger.now()
        decision = AccessDecision(allowed=True)
        remaining = None
        try:
            for identifier, kind in self._keys(ip, email):
                result = self._ledger.record_failure(identifier, kind, now)
                if remaining is None or result.remaining_attempts < remaining:
                    remaining = result.remaining_attempts
                until = result.blocked_until
                if until is None or until <= now:
                    continue
                if decision.allowed or until > decision.blocked_until:
                    info = BlockInfo.until(until, now)
                    decision = AccessDecision(
                        allowed=False,
                        blocked_until=until,
                        reason=info.reason,
                        retry_after_seconds=info.retry_after_seconds,
                        blocked_by=kind,
                    )
        except StoreUnavailable as exc:
            return self._degraded(exc)
        if remaining is not None:
            decision.remaining_attempts = max(0, remaining)
        return decision

    def register_success(self, ip: str, email: str | None = None) -> bool:
        """Clear failure state on every key after a successful login.

        Returns False when a key could not be reset because the store was
        down; the login itself already succeeded, so the caller decides
        whether that matters.
        """
        cleared = True
        for identifier, kind in self._keys(ip, email):
            try:
                self._ledger.reset_attempts(identifier, kind)
            except StoreUnavailable as exc:
                log.warning("Could not reset %s attempts after successful login: %s", kind.value, exc)
                cleared = False
        return cleared

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _keys(ip: str, email: str | None) -> list:
        """Canonical keys for the pair, validated before any store access."""
        keys = [validate_identifier(ip, IdentifierType.IP)]
        if email:
            keys.append(validate_identifier(email, IdentifierType.EMAIL))
        return keys

    def _degraded(self, exc: StoreUnavailable) -> AccessDecision:
        if self._fail_mode is FailMode.OPEN:
            log.warning("Attempt store unavailable, failing open: %s", exc)
            return AccessDecision(allowed=True, degraded=True)
        log.error("Attempt store unavailable, failing closed: %s", exc)
        return AccessDecision(allowed=False, reason=UNAVAILABLE_REASON, retry_after_seconds=30, degraded=True)
