# carapp_billing/utils/redis_lock.py
from contextlib import contextmanager

from carapp_billing.extensions import get_redis


class LockNotAcquired(RuntimeError):
    pass


@contextmanager
def redis_lock(key: str, ttl: int = 300, client=None):
    client = client or get_redis()
    lock = client.lock(key, timeout=ttl)
    acquired = lock.acquire(blocking=False)
    if not acquired:
        raise LockNotAcquired(f"Lock {key} is held by another process")

    try:
        yield
    finally:
        lock.release()
