"""
Concurrency control utilities.

Two complementary mechanisms:

1. **DistributedLock** - Redis mutual exclusion across processes. Used by
   periodic tasks so two overlapping beat runs never work the same batch.

2. **check_version** - Optimistic version check plus row lock for callers
   that read a snapshot (with its ``version``) and want their write
   rejected if anyone changed the record since.

Usage:
    from payments.locks import DistributedLock, check_version

    with DistributedLock("appointments:auto-complete", ttl=300, blocking=False):
        complete_elapsed_sessions()

    with transaction.atomic():
        appointment = check_version(Appointment, appointment_id, expected_version=7)
        ...
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction
from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from payments.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    The token stored under the key identifies the holder, so a process
    whose lock already expired cannot release someone else's.

    Args:
        key: Lock identifier (will be prefixed with "lock:")
        ttl: Seconds after which Redis drops the lock on its own
        blocking: If True, acquire() polls until timeout
        timeout: Maximum wait in seconds (blocking mode only)

    Raises:
        LockAcquisitionError: From acquire() / __enter__ when not acquired
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            end_time = time.time() + self.timeout
            while time.time() < end_time:
                if self._try_acquire(redis):
                    return True
                time.sleep(0.05)

            self._token = None
            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis):
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """Release the lock if we hold it; safe to call twice."""
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Lock a record for update, but only at the version the caller saw.

    Must run inside a transaction; the row lock is held until it ends.

    Raises:
        NotFoundError: If the record doesn't exist
        StaleRecordError: If the record exists at another version
    """
    instance = (
        model_class.objects.select_for_update()
        .filter(pk=pk, version=expected_version)
        .first()
    )
    if instance is not None:
        return instance

    model_name = model_class.__name__
    current_version = (
        model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
    )
    if current_version is None:
        raise NotFoundError(
            f"{model_name} {pk} not found",
            error_code=f"{model_name.upper()}_NOT_FOUND",
            details={"pk": str(pk)},
        )

    raise StaleRecordError(
        f"{model_name} {pk} has been modified "
        f"(expected version {expected_version}, current {current_version})",
        details={
            "pk": str(pk),
            "expected_version": expected_version,
            "current_version": current_version,
        },
    )


__all__ = [
    "DistributedLock",
    "check_version",
]
