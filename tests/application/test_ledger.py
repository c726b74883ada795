"""Tests for the AttemptLedger use case.

Contract tests run against every store (``any_store``); behaviour that only
depends on the ledger itself uses the in-memory store or a MagicMock.
"""
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from loginguard.application.ledger import AttemptLedger
from loginguard.config import GuardSettings
from loginguard.domain.clock import FrozenClock
from loginguard.domain.enums import BlockTier, IdentifierType
from loginguard.domain.errors import InvalidIdentifier, InvalidType, StoreUnavailable
from loginguard.infrastructure.repositories.attempt_repository import AttemptRepository
from tests.conftest import T0, make_record, make_sql_store

IP = IdentifierType.IP
EMAIL = IdentifierType.EMAIL


@pytest.fixture
def contract_ledger(any_store):
    return AttemptLedger(any_store, clock=FrozenClock(T0))


def _seed(store, **kwargs):
    """Write a record with arbitrary timestamps straight into a store."""
    record = make_record(**kwargs)
    return store.update(record.identifier, record.identifier_type, lambda prior: record)


# ---------------------------------------------------------------------------
# record_failure
# ---------------------------------------------------------------------------

class TestRecordFailure:
    def test_first_failure_creates_record(self, contract_ledger):
        result = contract_ledger.record_failure("10.0.0.5", "ip", T0)
        assert result.failed_attempts == 1
        assert result.consecutive_failures == 1
        assert result.blocked_until is None
        assert result.remaining_attempts == 2
        assert contract_ledger.get("10.0.0.5", "ip").version == 1

    def test_ip_escalation_scenario(self, contract_ledger):
        times = [T0 + timedelta(seconds=10 * i) for i in range(8)]
        results = [contract_ledger.record_failure("10.0.0.5", IP, t) for t in times]

        assert results[1].blocked_until is None
        assert results[2].blocked_until == times[2] + timedelta(minutes=15)
        assert results[2].tier == BlockTier.FIRST
        assert results[3].blocked_until == results[2].blocked_until
        assert results[4].blocked_until == times[4] + timedelta(hours=1)
        assert results[7].blocked_until == times[7] + timedelta(hours=24)
        assert results[7].consecutive_failures == 8
        assert results[7].remaining_attempts == -5

    def test_blocked_right_after_third_failure(self, contract_ledger):
        for i in range(3):
            contract_ledger.record_failure("10.0.0.5", IP, T0 + timedelta(seconds=i))
        info = contract_ledger.is_blocked("10.0.0.5", IP, T0 + timedelta(seconds=3))
        assert info is not None
        assert info.blocked_until == T0 + timedelta(seconds=2, minutes=15)

    def test_block_lapses_at_expiry(self, contract_ledger):
        for i in range(3):
            contract_ledger.record_failure("10.0.0.5", IP, T0)
        expiry = T0 + timedelta(minutes=15)
        assert contract_ledger.is_blocked("10.0.0.5", IP, expiry - timedelta(seconds=1))
        assert contract_ledger.is_blocked("10.0.0.5", IP, expiry) is None

    def test_failures_while_blocked_still_count(self, contract_ledger):
        for _ in range(4):
            result = contract_ledger.record_failure("10.0.0.5", IP, T0)
        assert result.consecutive_failures == 4

    def test_staleness_restarts_streak(self, contract_ledger):
        for _ in range(2):
            contract_ledger.record_failure("10.0.0.5", IP, T0)
        result = contract_ledger.record_failure("10.0.0.5", IP, T0 + timedelta(hours=25))
        assert result.consecutive_failures == 1
        assert result.failed_attempts == 3

    def test_ip_and_email_keys_independent(self, contract_ledger):
        for _ in range(3):
            contract_ledger.record_failure("10.0.0.5", IP, T0)
        assert contract_ledger.is_blocked("10.0.0.5", IP, T0) is not None
        assert contract_ledger.is_blocked("10.0.0.6", IP, T0) is None
        assert contract_ledger.is_blocked("user@test.com", EMAIL, T0) is None

    def test_email_normalized_to_one_record(self, contract_ledger):
        contract_ledger.record_failure("Admin@Test.com", "email", T0)
        result = contract_ledger.record_failure("  admin@test.com ", "EMAIL", T0)
        assert result.consecutive_failures == 2
        assert contract_ledger.get("ADMIN@TEST.COM", EMAIL).identifier == "admin@test.com"

    def test_ipv6_normalized(self, contract_ledger):
        contract_ledger.record_failure("2001:db8:0:0:0:0:0:1", IP, T0)
        result = contract_ledger.record_failure("2001:db8::1", IP, T0)
        assert result.consecutive_failures == 2

    def test_default_now_from_clock(self, memory_store):
        clock = FrozenClock(T0)
        ledger = AttemptLedger(memory_store, clock=clock)
        ledger.record_failure("10.0.0.5", IP)
        assert ledger.get("10.0.0.5", IP).last_attempt == T0


# ---------------------------------------------------------------------------
# reset_attempts
# ---------------------------------------------------------------------------

class TestResetAttempts:
    def test_reset_after_email_block(self, contract_ledger):
        times = [T0 + timedelta(seconds=i) for i in range(5)]
        for t in times:
            contract_ledger.record_failure("admin@test.com", EMAIL, t)
        info = contract_ledger.is_blocked("admin@test.com", EMAIL, times[-1])
        assert info.blocked_until == times[-1] + timedelta(hours=1)

        later = times[-1] + timedelta(seconds=1)
        assert contract_ledger.reset_attempts("admin@test.com", EMAIL, later) is True
        assert contract_ledger.is_blocked("admin@test.com", EMAIL, later) is None

        record = contract_ledger.get("admin@test.com", EMAIL)
        assert record.consecutive_failures == 0
        assert record.failed_attempts == 5
        assert record.last_attempt == later

    def test_reset_is_idempotent(self, contract_ledger):
        contract_ledger.record_failure("10.0.0.5", IP, T0)
        assert contract_ledger.reset_attempts("10.0.0.5", IP, T0)
        first = contract_ledger.get("10.0.0.5", IP)
        contract_ledger.reset_attempts("10.0.0.5", IP, T0)
        second = contract_ledger.get("10.0.0.5", IP)
        assert first.consecutive_failures == second.consecutive_failures == 0
        assert second.blocked_until is None

    def test_reset_absent_key_creates_nothing(self, contract_ledger):
        assert contract_ledger.reset_attempts("10.0.0.9", IP, T0) is False
        assert contract_ledger.get("10.0.0.9", IP) is None
        assert contract_ledger.store.count() == 0

    def test_streak_restarts_after_reset(self, contract_ledger):
        for _ in range(2):
            contract_ledger.record_failure("10.0.0.5", IP, T0)
        contract_ledger.reset_attempts("10.0.0.5", IP, T0)
        result = contract_ledger.record_failure("10.0.0.5", IP, T0)
        assert result.consecutive_failures == 1
        assert result.failed_attempts == 3
        assert result.blocked_until is None


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------

class TestCleanup:
    def test_deletes_old_unblocked_records(self, contract_ledger):
        store = contract_ledger.store
        _seed(store, identifier="10.0.0.1", last_attempt=T0 - timedelta(days=31))
        _seed(store, identifier="10.0.0.2", last_attempt=T0 - timedelta(days=1))

        assert contract_ledger.cleanup(T0, retention_days=30) == 1
        assert contract_ledger.get("10.0.0.1", IP) is None
        assert contract_ledger.get("10.0.0.2", IP) is not None

    def test_never_deletes_future_block(self, contract_ledger):
        _seed(
            contract_ledger.store,
            last_attempt=T0 - timedelta(days=40),
            blocked_until=T0 + timedelta(hours=1),
            consecutive_failures=8, failed_attempts=8,
        )
        assert contract_ledger.cleanup(T0, retention_days=30) == 0
        assert contract_ledger.is_blocked("10.0.0.5", IP, T0) is not None

    def test_expired_block_kept_by_default(self, contract_ledger):
        _seed(
            contract_ledger.store,
            last_attempt=T0 - timedelta(days=40),
            blocked_until=T0 - timedelta(days=39),
        )
        assert contract_ledger.cleanup(T0) == 0

    def test_expired_block_swept_when_enabled(self, any_store):
        ledger = AttemptLedger(any_store, settings=GuardSettings(sweep_expired_blocks=True))
        _seed(any_store, identifier="10.0.0.1", last_attempt=T0 - timedelta(days=40),
              blocked_until=T0 - timedelta(days=39))
        _seed(any_store, identifier="10.0.0.2", last_attempt=T0 - timedelta(days=40),
              blocked_until=T0 + timedelta(days=1))
        assert ledger.cleanup(T0) == 1
        assert ledger.get("10.0.0.2", IP) is not None

    def test_retention_zero_keeps_records_touched_now(self, contract_ledger):
        contract_ledger.record_failure("10.0.0.5", IP, T0)
        assert contract_ledger.cleanup(T0, retention_days=0) == 0

    def test_negative_retention_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.cleanup(T0, retention_days=-1)

    def test_default_retention_from_settings(self, memory_store):
        ledger = AttemptLedger(memory_store, settings=GuardSettings(retention_days=7))
        _seed(memory_store, last_attempt=T0 - timedelta(days=8))
        assert ledger.cleanup(T0) == 1


# ---------------------------------------------------------------------------
# Administrative operations
# ---------------------------------------------------------------------------

class TestAdmin:
    def test_list_blocked_sorted_by_expiry(self, contract_ledger):
        for _ in range(8):
            contract_ledger.record_failure("10.0.0.8", IP, T0)
        for _ in range(3):
            contract_ledger.record_failure("10.0.0.3", IP, T0)
        contract_ledger.record_failure("10.0.0.1", IP, T0)

        blocked = contract_ledger.list_blocked(T0)
        assert [r.identifier for r in blocked] == ["10.0.0.3", "10.0.0.8"]

    def test_purge_by_type(self, contract_ledger):
        contract_ledger.record_failure("10.0.0.5", IP, T0)
        contract_ledger.record_failure("a@b.com", EMAIL, T0)
        assert contract_ledger.purge("ip") == 1
        assert contract_ledger.get("a@b.com", EMAIL) is not None
        assert contract_ledger.purge() == 1
        assert contract_ledger.store.count() == 0

    def test_purge_unknown_type(self, ledger):
        with pytest.raises(InvalidType):
            ledger.purge("phone")

    def test_check_health(self, contract_ledger):
        assert contract_ledger.check_health() is True


# ---------------------------------------------------------------------------
# Validation and store failures
# ---------------------------------------------------------------------------

class TestValidation:
    @pytest.mark.parametrize("identifier,kind,error", [
        ("", "ip", InvalidIdentifier),
        ("   ", "email", InvalidIdentifier),
        ("not-an-email", "email", InvalidIdentifier),
        ("10.0.0.5", "phone", InvalidType),
        ("10.0.0.5", None, InvalidType),
        (None, "ip", InvalidIdentifier),
    ])
    def test_rejected_before_store_access(self, identifier, kind, error):
        store = MagicMock()
        ledger = AttemptLedger(store, clock=FrozenClock(T0))
        with pytest.raises(error):
            ledger.record_failure(identifier, kind)
        with pytest.raises(error):
            ledger.is_blocked(identifier, kind)
        with pytest.raises(error):
            ledger.reset_attempts(identifier, kind)
        assert store.mock_calls == []

    def test_invalid_errors_are_value_errors(self, ledger):
        with pytest.raises(ValueError):
            ledger.record_failure("", IP)


class TestStoreUnavailable:
    def test_record_failure_propagates(self):
        store = MagicMock()
        store.update.side_effect = StoreUnavailable("down")
        ledger = AttemptLedger(store, clock=FrozenClock(T0))
        with pytest.raises(StoreUnavailable):
            ledger.record_failure("10.0.0.5", IP)

    def test_is_blocked_propagates(self):
        store = MagicMock()
        store.get.side_effect = StoreUnavailable("down")
        ledger = AttemptLedger(store, clock=FrozenClock(T0))
        with pytest.raises(StoreUnavailable):
            ledger.is_blocked("10.0.0.5", IP)


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

@pytest.fixture(params=["memory", "json", "sql"])
def threaded_ledger(request, tmp_path):
    """Ledger over each store; the SQL store gets room for one retry per writer."""
    if request.param == "memory":
        store = AttemptRepository()
    elif request.param == "json":
        store = AttemptRepository(data_path=str(tmp_path / "attempts.json"))
    else:
        store = make_sql_store(str(tmp_path / "attempts.db"), max_retries=200)
    return AttemptLedger(store, clock=FrozenClock(T0))


class TestConcurrency:
    def test_parallel_failures_are_all_counted(self, threaded_ledger):
        """20 threads fail simultaneously for one address: nothing is lost."""
        errors = []
        barrier = threading.Barrier(20)

        def fail():
            try:
                barrier.wait()
                threaded_ledger.record_failure("10.0.0.5", IP)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=fail) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        record = threaded_ledger.get("10.0.0.5", IP)
        assert record.consecutive_failures == 20
        assert record.failed_attempts == 20
        assert record.version == 20
        assert record.blocked_until == T0 + timedelta(hours=24)

    def test_parallel_keys_do_not_interfere(self, threaded_ledger):
        def fail(n):
            for _ in range(5):
                threaded_ledger.record_failure(f"10.0.1.{n}", IP)

        threads = [threading.Thread(target=fail, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert threaded_ledger.store.count() == 10
        assert all(threaded_ledger.get(f"10.0.1.{n}", IP).consecutive_failures == 5 for n in range(10))


# ---------------------------------------------------------------------------
# Audit hook
# ---------------------------------------------------------------------------

class TestAudit:
    def _ledger(self, memory_store, audit):
        return AttemptLedger(memory_store, clock=FrozenClock(T0), audit=audit)

    def test_block_escalation_audited_once_per_tier(self, memory_store):
        audit = MagicMock()
        ledger = self._ledger(memory_store, audit)
        for _ in range(4):
            ledger.record_failure("10.0.0.5", IP)
        audit.assert_called_once()
        action, subject, payload = audit.call_args.args
        assert action == "identifier_blocked"
        assert subject == "ip:10.0.0.5"
        assert payload["tier"] == "first"
        assert payload["consecutive_failures"] == 3

    def test_email_subject_masked(self, memory_store):
        audit = MagicMock()
        ledger = self._ledger(memory_store, audit)
        for _ in range(3):
            ledger.record_failure("john@gmail.com", EMAIL)
        assert audit.call_args.args[1] == "email:jo**@gmail.com"

    def test_reset_audited_only_when_changed(self, memory_store):
        audit = MagicMock()
        ledger = self._ledger(memory_store, audit)
        ledger.reset_attempts("10.0.0.5", IP)
        audit.assert_not_called()
        ledger.record_failure("10.0.0.5", IP)
        ledger.reset_attempts("10.0.0.5", IP)
        audit.assert_called_once_with("attempts_reset", "ip:10.0.0.5", {})

    def test_cleanup_and_purge_audited(self, memory_store):
        audit = MagicMock()
        ledger = self._ledger(memory_store, audit)
        ledger.cleanup()
        ledger.purge("email")
        assert audit.call_args_list[0].args == (
            "attempts_cleanup", None, {"deleted": 0, "retention_days": 30},
        )
        assert audit.call_args_list[1].args == (
            "attempts_purged", None, {"deleted": 0, "type": "email"},
        )

    def test_audit_failure_does_not_break_ledger(self, memory_store):
        audit = MagicMock(side_effect=RuntimeError("disk full"))
        ledger = self._ledger(memory_store, audit)
        for _ in range(3):
            result = ledger.record_failure("10.0.0.5", IP)
        assert result.blocked_until is not None
