"""Progressive block policy -- pure escalation rules, no I/O."""
from datetime import datetime

from loginguard.config import BlockThresholds, GuardSettings
from loginguard.domain.attempt import AttemptRecord
from loginguard.domain.clock import ensure_utc
from loginguard.domain.enums import BlockTier, IdentifierType
from loginguard.domain.errors import InvalidType


class PolicyDecision:
    """Counters and block expiry the policy assigns to one failure."""

    def __init__(
        self,
        failed_attempts: int,
        consecutive_failures: int,
        blocked_until: datetime | None,
        tier: BlockTier,
        remaining_attempts: int,
        escalated: bool = False,
    ):
        self.failed_attempts = failed_attempts
        self.consecutive_failures = consecutive_failures
        self.blocked_until = blocked_until
        self.tier = tier
        self.remaining_attempts = remaining_attempts
        # True when this failure moved the key into a higher tier and set a new expiry.
        self.escalated = escalated

    def __repr__(self) -> str:
        return (
            f"PolicyDecision(failed={self.failed_attempts}, "
            f"consecutive={self.consecutive_failures}, tier={self.tier.value}, "
            f"blocked_until={self.blocked_until})"
        )


class ProgressiveBlockPolicy:
    """
    Maps (prior record, event time) to the next counters and block expiry.

    Tiers escalate monotonically inside the staleness window: a tier's block
    is applied when the consecutive count first reaches it, and an expiry is
    never moved earlier by a later failure.
    """

    def __init__(self, settings: GuardSettings | None = None):
        self._settings = settings or GuardSettings()

    @property
    def settings(self) -> GuardSettings:
        return self._settings

    def thresholds_for(self, identifier_type: IdentifierType) -> BlockThresholds:
        if identifier_type is IdentifierType.IP:
            return self._settings.ip_limits
        if identifier_type is IdentifierType.EMAIL:
            return self._settings.email_limits
        raise InvalidType(f"No thresholds for identifier type: {identifier_type!r}")

    def tier_for(self, consecutive_failures: int, identifier_type: IdentifierType) -> BlockTier:
        """Highest tier whose threshold ``consecutive_failures`` reaches."""
        limits = self.thresholds_for(identifier_type)
        if consecutive_failures >= limits.third:
            return BlockTier.THIRD
        if consecutive_failures >= limits.second:
            return BlockTier.SECOND
        if consecutive_failures >= limits.first:
            return BlockTier.FIRST
        return BlockTier.NONE

    def duration_for(self, tier: BlockTier):
        durations = self._settings.durations
        if tier is BlockTier.THIRD:
            return durations.third
        if tier is BlockTier.SECOND:
            return durations.second
        if tier is BlockTier.FIRST:
            return durations.first
        return None

    def is_stale(self, prior: AttemptRecord, now: datetime) -> bool:
        if prior.last_attempt is None:
            return True
        return ensure_utc(now) - prior.last_attempt > self._settings.staleness_window

    def evaluate(
        self,
        prior: AttemptRecord | None,
        now: datetime,
        identifier_type: IdentifierType | None = None,
    ) -> PolicyDecision:
        """Decide the state that follows one more failure at ``now``."""
        now = ensure_utc(now)
        if identifier_type is None:
            if prior is None:
                raise InvalidType("identifier_type is required when there is no prior record")
            identifier_type = prior.identifier_type

        if prior is None:
            failed, consecutive = 1, 1
            prior_tier = BlockTier.NONE
            blocked_until = None
        elif self.is_stale(prior, now):
            # Old failures decay; the lifetime total and any set expiry survive.
            failed, consecutive = prior.failed_attempts + 1, 1
            prior_tier = BlockTier.NONE
            blocked_until = prior.blocked_until
        else:
            failed = prior.failed_attempts + 1
            consecutive = prior.consecutive_failures + 1
            prior_tier = self.tier_for(prior.consecutive_failures, identifier_type)
            blocked_until = prior.blocked_until

        tier = self.tier_for(consecutive, identifier_type)
        escalated = False
        if tier.rank() > prior_tier.rank():
            candidate = now + self.duration_for(tier)
            if blocked_until is None or candidate > blocked_until:
                blocked_until = candidate
            escalated = True

        limits = self.thresholds_for(identifier_type)
        return PolicyDecision(
            failed_attempts=failed,
            consecutive_failures=consecutive,
            blocked_until=blocked_until,
            tier=tier,
            remaining_attempts=limits.first - consecutive,
            escalated=escalated,
        )
