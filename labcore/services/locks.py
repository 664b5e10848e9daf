import threading
from collections.abc import Iterator
from contextlib import contextmanager

from labcore.config import settings
from labcore.errors import ConcurrencyConflictError


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLocks:
    """Process-wide mutual exclusion keyed by entity, e.g. ``instance:42``.

    A key's entry lives only while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: dict[str, _Slot] = {}

    def _checkout(self, key: str) -> _Slot:
        with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            slot.users += 1
            return slot

    def _checkin(self, key: str, slot: _Slot) -> None:
        with self._lock:
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        wait = settings.lock_timeout_seconds if timeout is None else timeout
        slot = self._checkout(key)
        try:
            if not slot.lock.acquire(timeout=wait):
                raise ConcurrencyConflictError(key, wait)
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            self._checkin(key, slot)

    def is_held(self, key: str) -> bool:
        with self._lock:
            slot = self._slots.get(key)
        return slot is not None and slot.lock.locked()

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


locks = KeyedLocks()


def instance_key(instance_id: int) -> str:
    return f"instance:{instance_id}"


def definition_key(definition_id: int) -> str:
    return f"definition:{definition_id}"
