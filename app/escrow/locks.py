"""
Locks around escrow units of work.

Two kinds are used:

- lock_payment(): a select_for_update row lock on the Payment. Every
  settlement, dispute, charge confirmation and cash operation takes it
  first, so units on the same payment run one at a time.
- DistributedLock: a Redis lock held around a Stripe transfer or refund
  call. The call happens outside any database transaction, and the lock
  stops two workers from sending the same idempotency key concurrently.
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

from django_redis import get_redis_connection

from escrow.exceptions import LockAcquisitionError, PaymentNotFoundError
from escrow.models import Payment

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

POLL_INTERVAL_SECONDS = 0.05


class DistributedLock:
    """
    Owner-tokened Redis lock that expires after ttl seconds.

    The key is stored as "lock:{key}" with a random token as its value;
    release deletes it only while the token still matches, so a worker
    whose lock already expired cannot free someone else's.

    Example:
        with DistributedLock(f"escrow:disbursement:{pk}", ttl=60, timeout=5):
            ...
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    end
    return 0
    """

    def __init__(self, key: str, ttl: int = 30, blocking: bool = True, timeout: float = 10.0) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._connection: Redis | None = None

    @property
    def redis(self) -> Redis:
        if self._connection is None:
            self._connection = get_redis_connection("default")
        return self._connection

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def _claim(self, token: str) -> bool:
        claimed = bool(self.redis.set(self.key, token, nx=True, ex=self.ttl))
        if claimed:
            self._token = token
        return claimed

    def acquire(self) -> bool:
        """
        Take the lock, polling until timeout when blocking.

        Raises:
            LockAcquisitionError: Still held by someone else
        """
        token = uuid.uuid4().hex

        if not self.blocking:
            if self._claim(token):
                return True
            raise LockAcquisitionError(f"Lock '{self.key}' is already held", details={"key": self.key})

        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if self._claim(token):
                return True
            time.sleep(POLL_INTERVAL_SECONDS)

        raise LockAcquisitionError(
            f"Timed out after {self.timeout}s waiting for lock '{self.key}'",
            details={"key": self.key, "timeout": self.timeout},
        )

    def release(self) -> bool:
        """Free the lock if this instance owns it; returns whether a key was deleted."""
        if self._token is None:
            return False
        token, self._token = self._token, None
        return bool(self.redis.eval(self.RELEASE_SCRIPT, 1, self.key, token))

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def lock_payment(payment_id: Any) -> Payment:
    """
    Fetch a Payment (with its delivery) under a row lock.

    Only valid inside transaction.atomic(); the lock lasts until commit
    or rollback.

    Raises:
        PaymentNotFoundError: No such payment
    """
    payment = Payment.objects.select_for_update().select_related("delivery").filter(pk=payment_id).first()
    if payment is None:
        raise PaymentNotFoundError(
            f"Payment {payment_id} not found",
            details={"payment_id": str(payment_id)},
        )
    return payment
