from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from backend.services.errors import BusyError

logger = logging.getLogger(__name__)

# accounts sort before merge records, then by id
ACCOUNT = 0
MERGE_RECORD = 1

LockKey = tuple[int, int]


def account_key(supplier_id: int) -> LockKey:
    return (ACCOUNT, int(supplier_id))


def merge_key(merge_id: int) -> LockKey:
    return (MERGE_RECORD, int(merge_id))


class AccountLockManager:
    """
    In-process exclusive locks over suppliers and merge records.

    Keys are always acquired in canonical order, so two operations over
    overlapping supplier pairs cannot deadlock. Row locks in the database
    (SELECT ... FOR UPDATE, same order) cover other processes.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[LockKey, threading.Lock] = {}

    def _lock_for(self, key: LockKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[LockKey], timeout: float | None = None) -> Iterator[list[LockKey]]:
        ordered = sorted(set(keys))
        wait = self.timeout if timeout is None else timeout
        acquired: list[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                if not lock.acquire(timeout=wait):
                    logger.warning("lock busy key=%s held_keys=%s", key, ordered[: len(acquired)])
                    raise BusyError(f"Another merge or undo is in progress for {_describe(key)}")
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()

    def is_locked(self, key: LockKey) -> bool:
        with self._guard:
            lock = self._locks.get(key)
        return bool(lock and lock.locked())


def _describe(key: LockKey) -> str:
    kind, ident = key
    return f"supplier {ident}" if kind == ACCOUNT else f"merge {ident}"


default_lock_manager = AccountLockManager()
