"""Guard configuration.

Every ledger / policy instance receives its own ``GuardSettings``; there is no
module-level mutable configuration, so independent guards can coexist in one
process (one per tenant, one per test).

Environment variables (all optional, read by ``GuardSettings.from_env``):
  LOGINGUARD_IP_{FIRST,SECOND,THIRD}_THRESHOLD     consecutive failures per IP
  LOGINGUARD_EMAIL_{FIRST,SECOND,THIRD}_THRESHOLD  consecutive failures per email
  LOGINGUARD_{FIRST,SECOND,THIRD}_BLOCK_SECONDS    block duration per tier
  LOGINGUARD_STALENESS_HOURS                       inactivity before history decays
  LOGINGUARD_RETENTION_DAYS                        cleanup retention window
  LOGINGUARD_SWEEP_EXPIRED_BLOCKS                  also sweep expired blocks (true/false)
  LOGINGUARD_STORE_TIMEOUT_SECONDS                 store call timeout
  LOGINGUARD_MAX_UPDATE_RETRIES                    optimistic update retries
  LOGINGUARD_FAIL_MODE                             open | closed
  LOGINGUARD_ADMIN_TOKEN                           bearer token for the admin and host-only routes
  LOGINGUARD_TRUST_FORWARDED_HEADERS               take the client address from X-Forwarded-For (true/false)
  LOGINGUARD_AUDIT_LOG_DIR                         directory for audit.log
  LOGINGUARD_{GLOBAL,LOGIN,API,STRICT}_WINDOW_SECONDS / _LIMIT
"""
import os
from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from loginguard.domain.enums import FailMode

ENV_PREFIX = "LOGINGUARD_"
_TIERS = ("first", "second", "third")


class BlockThresholds(BaseModel):
    """Consecutive-failure counts that trigger each block tier."""

    model_config = ConfigDict(frozen=True)

    first: int = Field(3, ge=1)
    second: int = Field(5, ge=1)
    third: int = Field(8, ge=1)

    @model_validator(mode="after")
    def _check_ascending(self):
        if not self.first < self.second < self.third:
            raise ValueError("thresholds must be strictly ascending (first < second < third)")
        return self


class BlockDurations(BaseModel):
    """How long each tier blocks for."""

    model_config = ConfigDict(frozen=True)

    first: timedelta = timedelta(minutes=15)
    second: timedelta = timedelta(hours=1)
    third: timedelta = timedelta(hours=24)

    @field_validator("first", "second", "third")
    @classmethod
    def _check_positive(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("block durations must be positive")
        return value


class RateLimitSettings(BaseModel):
    """Fixed-window request limits for hosts that run their own limiter.

    Carried for completeness of the configuration surface; loginguard does not
    enforce these itself.
    """

    model_config = ConfigDict(frozen=True)

    global_window: timedelta = timedelta(minutes=15)
    global_limit: int = Field(300, ge=1)
    login_window: timedelta = timedelta(minutes=15)
    login_limit: int = Field(20, ge=1)
    api_window: timedelta = timedelta(minutes=1)
    api_limit: int = Field(60, ge=1)
    strict_window: timedelta = timedelta(hours=1)
    strict_limit: int = Field(5, ge=1)


class GuardSettings(BaseModel):
    """Complete configuration for one login guard."""

    model_config = ConfigDict(frozen=True)

    # Identical by default: a looser email table would let an attacker spray
    # many target emails from one address.
    ip_limits: BlockThresholds = BlockThresholds()
    email_limits: BlockThresholds = BlockThresholds()
    durations: BlockDurations = BlockDurations()
    staleness_window: timedelta = timedelta(hours=24)
    retention_days: int = Field(30, ge=1)
    sweep_expired_blocks: bool = False
    store_timeout_seconds: float = Field(5.0, gt=0)
    max_update_retries: int = Field(10, ge=1)
    fail_mode: FailMode = FailMode.CLOSED
    rate_limits: RateLimitSettings = RateLimitSettings()
    # None disables the admin and host-only routes entirely.
    admin_token: SecretStr | None = None
    # Only safe behind a proxy that overwrites X-Forwarded-For.
    trust_forwarded_headers: bool = False
    audit_log_dir: str | None = None

    @field_validator("staleness_window")
    @classmethod
    def _check_staleness(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("staleness window must be positive")
        return value

    @classmethod
    def from_env(cls, environ=None) -> "GuardSettings":
        """Build settings from ``LOGINGUARD_*`` variables over the defaults.

        Raises pydantic.ValidationError on values that do not validate.
        """
        env = os.environ if environ is None else environ

        def read(name: str) -> str | None:
            raw = env.get(ENV_PREFIX + name)
            if raw is None or not raw.strip():
                return None
            return raw.strip()

        data: dict = {}
        for kind in ("ip", "email"):
            limits = {}
            for tier in _TIERS:
                value = read(f"{kind.upper()}_{tier.upper()}_THRESHOLD")
                if value is not None:
                    limits[tier] = value
            if limits:
                data[f"{kind}_limits"] = limits

        durations = {}
        for tier in _TIERS:
            value = read(f"{tier.upper()}_BLOCK_SECONDS")
            if value is not None:
                durations[tier] = _seconds(value)
        if durations:
            data["durations"] = durations

        staleness = read("STALENESS_HOURS")
        if staleness is not None:
            data["staleness_window"] = _hours(staleness)

        for name, key in (
            ("RETENTION_DAYS", "retention_days"),
            ("SWEEP_EXPIRED_BLOCKS", "sweep_expired_blocks"),
            ("STORE_TIMEOUT_SECONDS", "store_timeout_seconds"),
            ("MAX_UPDATE_RETRIES", "max_update_retries"),
            ("ADMIN_TOKEN", "admin_token"),
            ("TRUST_FORWARDED_HEADERS", "trust_forwarded_headers"),
            ("AUDIT_LOG_DIR", "audit_log_dir"),
        ):
            value = read(name)
            if value is not None:
                data[key] = value

        fail_mode = read("FAIL_MODE")
        if fail_mode is not None:
            data["fail_mode"] = fail_mode.lower()

        rate_limits = {}
        for layer in ("global", "login", "api", "strict"):
            window = read(f"{layer.upper()}_WINDOW_SECONDS")
            if window is not None:
                rate_limits[f"{layer}_window"] = _seconds(window)
            limit = read(f"{layer.upper()}_LIMIT")
            if limit is not None:
                rate_limits[f"{layer}_limit"] = limit
        if rate_limits:
            data["rate_limits"] = rate_limits

        return cls.model_validate(data)

    def public_dict(self) -> dict:
        """JSON-friendly view with durations in seconds."""
        data = self.model_dump(mode="json", exclude={"admin_token", "audit_log_dir"})
        data["durations"] = {
            tier: int(getattr(self.durations, tier).total_seconds()) for tier in _TIERS
        }
        data["staleness_window"] = int(self.staleness_window.total_seconds())
        data["rate_limits"] = {
            key: int(value.total_seconds()) if isinstance(value, timedelta) else value
            for key, value in self.rate_limits.model_dump().items()
        }
        return data


def _seconds(raw: str):
    """Seconds from an env string; left as-is when not numeric so validation reports it."""
    try:
        return timedelta(seconds=float(raw))
    except ValueError:
        return raw


def _hours(raw: str):
    try:
        return timedelta(hours=float(raw))
    except ValueError:
        return raw
