"""
Concurrency control for payment operations.

Two mechanisms, used at different grains:

1. DistributedLock: Redis mutual exclusion across workers. Guards whole
   runs and gateway calls that must not overlap (the daily reconciliation
   run, charging one installment).

2. check_version: optimistic locking for single-row edits made from a
   stale read (plan reschedule or cancel submitted by an organizer).

Usage:

    from payments.locks import DistributedLock, check_version

    with DistributedLock(f"installment:charge:{installment.pk}", ttl=120, blocking=False):
        adapter.charge_installment(plan, installment, plan.saved_payment_method)

    with transaction.atomic():
        plan = check_version(PaymentPlan, plan_id, expected_version=3)
        plan.cancel(reason="organizer request")
        plan.save()  # version becomes 4
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


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis lock with an owner token and a TTL.

    The TTL frees the lock if its holder dies; the token makes sure only
    the holder can release or extend it.

    Example:
        lock = DistributedLock("reconciliation:run", ttl=3600, timeout=5.0)
        lock.acquire()  # raises LockAcquisitionError after 5s
        try:
            run()
        finally:
            lock.release()

    Args:
        key: Lock name, stored as "lock:<key>"
        ttl: Seconds before Redis drops the lock on its own
        blocking: Wait up to `timeout` seconds instead of failing at once
        timeout: Wait limit for blocking acquisition
    """

    # Delete only if we still own the key
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    # Re-arm the TTL only if we still own the key
    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    RETRY_INTERVAL = 0.05

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
        """
        Raises:
            LockAcquisitionError: Lock held elsewhere (after the timeout
                when blocking)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if not self.blocking:
            if not self._try_acquire(redis):
                self._token = None
                raise LockAcquisitionError(
                    f"Lock '{self.key}' is already held",
                    details={"key": self.key},
                )
            return True

        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if self._try_acquire(redis):
                return True
            time.sleep(self.RETRY_INTERVAL)

        self._token = None
        raise LockAcquisitionError(
            f"Failed to acquire lock '{self.key}' within {self.timeout}s",
            details={"key": self.key, "timeout": self.timeout},
        )

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """False when we did not hold the lock. Safe to call twice."""
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, ttl: int | None = None) -> bool:
        """
        Reset the remaining TTL (to `ttl` or the original TTL).

        Long runs call this between units of work, e.g. once per event
        during reconciliation.
        """
        if self._token is None:
            return False

        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl or self.ttl
        )
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


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Lock a row for update, provided it is still at `expected_version`.

    Must run inside the caller's transaction; the row lock is held until it
    commits. The model is expected to bump `version` on save (VersionedMixin).

    Raises:
        NotFoundError: No such row
        StaleRecordError: The row was changed since the caller read it
    """
    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )
        if instance is not None:
            return instance

        model_name = model_class.__name__
        current = model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
        if current is None:
            raise NotFoundError(
                f"{model_name} {pk} not found",
                error_code=f"{model_name.upper()}_NOT_FOUND",
                details={"pk": str(pk)},
            )
        raise StaleRecordError(
            f"{model_name} {pk} has been modified "
            f"(expected version {expected_version}, current {current})",
            details={
                "pk": str(pk),
                "expected_version": expected_version,
                "current_version": current,
            },
        )


__all__ = [
    "DistributedLock",
    "check_version",
]
