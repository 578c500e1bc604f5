"""
Concurrency control utilities for billing operations.

This module provides two complementary mechanisms:

1. **Run Lease** (RunLease)
   - Redis-based lease across processes/servers
   - TTL prevents a crashed billing run from blocking every later tick
   - Use for: the billing job, so overlapping cron triggers cannot
     charge the same installment twice

2. **Row Locks** (lock_row)
   - select_for_update re-read inside the caller's transaction
   - Use for: installment/plan updates that must re-check PAID-is-terminal
     immediately before writing

Usage:

    from billing.locks import RunLease, lock_row

    with RunLease("billing:installment-job", ttl=1800):
        scheduler.run()

    with transaction.atomic():
        installment = lock_row(Installment, installment_id)
        if not installment.is_paid:
            ...
"""

from __future__ import annotations

import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models

from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from billing.exceptions import LockAcquisitionError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Run Lease
# =============================================================================


class RunLease:
    """
    Non-blocking Redis lease for a single-flight job.

    SET NX EX takes the lease; the TTL frees it if the holder crashes. A
    random token guards release so an expired holder cannot delete a
    lease that another run has since taken.

    Example:
        try:
            with RunLease("billing:installment-job", ttl=1800):
                run()
        except LockAcquisitionError:
            skip()

    Args:
        key: Lease identifier (prefixed with "lock:")
        ttl: Seconds until the lease expires on its own
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(self, key: str, ttl: int) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> None:
        """
        Take the lease.

        Raises:
            LockAcquisitionError: If another holder has it
        """
        token = str(uuid_module.uuid4())
        if not self._get_redis().set(self.key, token, nx=True, ex=self.ttl):
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        self._token = token

    def release(self) -> bool:
        """Give the lease back if this holder still owns it."""
        if self._token is None:
            return False
        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def __enter__(self) -> RunLease:
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
# Row Locks
# =============================================================================


def lock_row(model_class: type[T], pk: Any, select_related: tuple[str, ...] = ()) -> T:
    """
    Re-read a row with SELECT ... FOR UPDATE.

    Must be called inside transaction.atomic(); the row stays locked until
    the transaction ends. Backends without row locking (SQLite) ignore the
    FOR UPDATE clause.

    Raises:
        NotFoundError: If the row doesn't exist
    """
    queryset = model_class.objects.select_for_update()
    if select_related:
        queryset = queryset.select_related(*select_related)
    instance = queryset.filter(pk=pk).first()
    if instance is None:
        model_name = model_class.__name__
        raise NotFoundError(
            f"{model_name} {pk} not found",
            error_code=f"{model_name.upper()}_NOT_FOUND",
            details={"pk": str(pk)},
        )
    return instance


__all__ = [
    "RunLease",
    "lock_row",
]
