"""
Tests for distributed locking utilities.

Tests the DistributedLock class that guards the daily reconciliation run
and installment charges across workers.
"""

import pytest

from payments.exceptions import LockAcquisitionError
from payments.locks import DistributedLock


class TestDistributedLock:
    """Tests for DistributedLock class."""

    def test_acquire_success(self, mock_redis):
        """Should acquire lock when available."""
        lock = DistributedLock("test:key", ttl=30, blocking=False)
        result = lock.acquire()

        assert result is True
        assert lock.is_held is True
        # set(key, token, nx=True, ex=ttl)
        call_args = mock_redis.set.call_args
        assert call_args[0][0] == "lock:test:key"
        assert call_args[1]["nx"] is True
        assert call_args[1]["ex"] == 30

    def test_acquire_generates_unique_token(self, mock_redis):
        lock1 = DistributedLock("test:key1", ttl=30, blocking=False)
        lock2 = DistributedLock("test:key2", ttl=30, blocking=False)

        lock1.acquire()
        lock2.acquire()

        assert lock1._token is not None
        assert lock1._token != lock2._token

    def test_acquire_non_blocking_raises_when_held(self, mock_redis):
        """Non-blocking mode should raise immediately if lock unavailable."""
        mock_redis.set.return_value = False

        lock = DistributedLock("test:key", ttl=30, blocking=False)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "already held" in str(exc_info.value)
        assert exc_info.value.details["key"] == "lock:test:key"
        assert lock.is_held is False
        mock_redis.set.assert_called_once()

    def test_acquire_blocking_waits_and_acquires(self, mock_redis):
        """Blocking mode should retry until the lock frees up."""
        mock_redis.set.side_effect = [False, False, True]

        lock = DistributedLock("test:key", ttl=30, blocking=True, timeout=1.0)

        assert lock.acquire() is True
        assert mock_redis.set.call_count == 3

    def test_acquire_blocking_timeout_raises_error(self, mock_redis):
        mock_redis.set.return_value = False

        lock = DistributedLock("test:key", ttl=30, blocking=True, timeout=0.1)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "within 0.1s" in str(exc_info.value)
        assert exc_info.value.details == {"key": "lock:test:key", "timeout": 0.1}
        assert lock.is_held is False

    def test_release_success(self, mock_redis):
        lock = DistributedLock("test:key", ttl=30, blocking=False)
        lock.acquire()

        assert lock.release() is True
        assert lock.is_held is False
        mock_redis.eval.assert_called_once()

    def test_release_only_if_owned(self, mock_redis):
        """The Lua script returns 0 when another owner holds the key."""
        mock_redis.eval.return_value = 0

        lock = DistributedLock("test:key", ttl=30, blocking=False)
        lock.acquire()

        assert lock.release() is False

    def test_release_without_acquire_returns_false(self, mock_redis):
        lock = DistributedLock("test:key", ttl=30, blocking=False)

        assert lock.release() is False
        mock_redis.eval.assert_not_called()

    def test_release_twice_is_safe(self, mock_redis):
        lock = DistributedLock("test:key", ttl=30, blocking=False)
        lock.acquire()
        lock.release()

        assert lock.release() is False
        assert mock_redis.eval.call_count == 1

    def test_context_manager_releases_on_exception(self, mock_redis):
        with pytest.raises(ValueError, match="Test error"):
            with DistributedLock("test:key", ttl=30):
                raise ValueError("Test error")

        mock_redis.set.assert_called_once()
        mock_redis.eval.assert_called_once()

    def test_context_manager_propagates_acquisition_failure(self, mock_redis):
        mock_redis.set.return_value = False
        executed = False

        with pytest.raises(LockAcquisitionError):
            with DistributedLock("test:key", ttl=30, blocking=False):
                executed = True

        assert executed is False
        mock_redis.eval.assert_not_called()

    def test_extend_uses_original_ttl_by_default(self, mock_redis):
        lock = DistributedLock("reconciliation:run", ttl=3600, blocking=False)
        lock.acquire()

        assert lock.extend() is True
        # eval(EXTEND_SCRIPT, 1, key, token, ttl)
        call_args = mock_redis.eval.call_args[0]
        assert call_args[0] == DistributedLock.EXTEND_SCRIPT
        assert call_args[2] == "lock:reconciliation:run"
        assert call_args[4] == 3600

    def test_extend_with_custom_ttl(self, mock_redis):
        lock = DistributedLock("test:key", ttl=30, blocking=False)
        lock.acquire()

        assert lock.extend(ttl=60) is True
        assert mock_redis.eval.call_args[0][4] == 60

    def test_extend_returns_false_without_lock(self, mock_redis):
        lock = DistributedLock("test:key", ttl=30, blocking=False)

        assert lock.extend() is False
        mock_redis.eval.assert_not_called()

    def test_extend_returns_false_if_not_owned(self, mock_redis):
        mock_redis.eval.return_value = 0

        lock = DistributedLock("test:key", ttl=30, blocking=False)
        lock.acquire()

        assert lock.extend() is False

    def test_is_held_property(self, mock_redis):
        lock = DistributedLock("test:key", ttl=30, blocking=False)

        assert lock.is_held is False
        lock.acquire()
        assert lock.is_held is True
        lock.release()
        assert lock.is_held is False
