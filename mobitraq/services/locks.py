from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager

_REGISTRY_LOCK = threading.Lock()
_SESSION_LOCKS: dict[int, threading.RLock] = defaultdict(threading.RLock)
_EMPLOYEE_LOCKS: dict[int, threading.RLock] = defaultdict(threading.RLock)


def _resolve(locks: dict[int, threading.RLock], key: int) -> threading.RLock:
    with _REGISTRY_LOCK:
        return locks[key]


@contextmanager
def session_lock(session_id: int) -> Iterator[None]:
    """Serializes distance/segmentation updates for one tracking session."""
    lock = _resolve(_SESSION_LOCKS, session_id)
    with lock:
        yield


@contextmanager
def employee_lock(employee_id: int) -> Iterator[None]:
    """Single-writer guard for an employee's tracking state."""
    lock = _resolve(_EMPLOYEE_LOCKS, employee_id)
    with lock:
        yield


def forget_session(session_id: int) -> None:
    with _REGISTRY_LOCK:
        _SESSION_LOCKS.pop(session_id, None)
