"""
Per-(user, calendar) locks so two sync passes never race on one sync token.
"""

import threading

from vividly_sync.models import SyncInProgressError
from vividly_sync.urls import normalize_calendar_url

_registry_lock = threading.Lock()
_locks: dict[tuple[str, str], threading.Lock] = {}


def calendar_lock(user_id: str, calendar_url: str) -> threading.Lock:
    key = (user_id, normalize_calendar_url(calendar_url))
    with _registry_lock:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


def acquire_calendar(user_id: str, calendar_url: str, timeout: float = 0) -> threading.Lock:
    """
    Take the calendar's lock or raise SyncInProgressError.

    With timeout=0 a busy calendar is rejected immediately. The caller owns
    the returned lock and must release it.
    """
    lock = calendar_lock(user_id, calendar_url)
    if timeout > 0:
        acquired = lock.acquire(timeout=timeout)
    else:
        acquired = lock.acquire(blocking=False)
    if not acquired:
        raise SyncInProgressError(f"A sync of {calendar_url} is already running")
    return lock
