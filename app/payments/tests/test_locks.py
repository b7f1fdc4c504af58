"""
Tests for DistributedLock.

Redis is mocked; the lock only relies on SET NX EX and a Lua release.
"""

from unittest.mock import MagicMock, patch

import pytest

from payments.exceptions import LockAcquisitionError
from payments.locks import DistributedLock


@pytest.fixture
def mock_redis():
    """Mock Redis connection for unit tests."""
    with patch("payments.locks.get_redis_connection") as mock_get_conn:
        redis_instance = MagicMock()
        mock_get_conn.return_value = redis_instance
        yield redis_instance


class TestDistributedLock:
    """Tests for DistributedLock class."""

    def test_acquire_sets_key_with_nx_and_ttl(self, mock_redis):
        """Should SET the prefixed key only if absent, with the TTL."""
        mock_redis.set.return_value = True

        lock = DistributedLock("appointments:auto-complete", ttl=300, blocking=False)

        assert lock.acquire() is True
        args, kwargs = mock_redis.set.call_args
        assert args[0] == "lock:appointments:auto-complete"
        assert kwargs == {"nx": True, "ex": 300}
        assert lock.is_held is True

    def test_non_blocking_raises_when_held(self, mock_redis):
        """Should raise immediately when another process holds the key."""
        mock_redis.set.return_value = False

        lock = DistributedLock("busy", blocking=False)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert exc_info.value.details["key"] == "lock:busy"
        assert lock.is_held is False

    def test_blocking_retries_until_acquired(self, mock_redis):
        """Should poll until the key frees up."""
        mock_redis.set.side_effect = [False, False, True]

        lock = DistributedLock("contended", blocking=True, timeout=1.0)

        assert lock.acquire() is True
        assert mock_redis.set.call_count == 3

    def test_blocking_times_out(self, mock_redis):
        """Should raise after the timeout elapses."""
        mock_redis.set.return_value = False

        lock = DistributedLock("stuck", blocking=True, timeout=0.1)

        with pytest.raises(LockAcquisitionError, match="within"):
            lock.acquire()

    def test_release_runs_owner_checked_script(self, mock_redis):
        """Should release through the Lua script with our token."""
        mock_redis.set.return_value = True
        mock_redis.eval.return_value = 1
        lock = DistributedLock("key", blocking=False)
        lock.acquire()
        token = lock._token

        assert lock.release() is True
        mock_redis.eval.assert_called_once_with(
            DistributedLock.RELEASE_SCRIPT, 1, "lock:key", token
        )
        assert lock.is_held is False

    def test_release_without_acquire_is_noop(self, mock_redis):
        """Should not touch Redis when nothing is held."""
        assert DistributedLock("key").release() is False
        mock_redis.eval.assert_not_called()

    def test_context_manager_releases_on_exception(self, mock_redis):
        """Should release the lock and re-raise."""
        mock_redis.set.return_value = True

        with pytest.raises(RuntimeError):
            with DistributedLock("key", blocking=False):
                raise RuntimeError("boom")

        mock_redis.eval.assert_called_once()
