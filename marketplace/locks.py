"""
Per-order mutual exclusion.

Every mutation of an order and its payment transactions runs while holding
that order's lock; different orders never wait on each other.

    locks = OrderLocks()
    with locks.hold(order_id):
        ...

Row locks taken inside each ledger unit extend this across worker
processes on databases that support SELECT ... FOR UPDATE.
"""
import threading
import weakref
from contextlib import contextmanager
from typing import Hashable, Iterator


class _OrderLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.Lock()


class OrderLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        # Entries disappear once no caller holds or waits on them.
        self._locks: "weakref.WeakValueDictionary[Hashable, _OrderLock]" = weakref.WeakValueDictionary()

    def _get(self, key: Hashable) -> _OrderLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _OrderLock()
                self._locks[key] = entry
            return entry

    @contextmanager
    def hold(self, order_id: Hashable) -> Iterator[None]:
        entry = self._get(order_id)
        with entry.lock:
            yield
