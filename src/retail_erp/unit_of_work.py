"""Transaction boundary for multi-ledger mutations.

The repositories offer no multi-record transaction, so the sale processor
brackets each mutation sequence with :func:`transaction`. Every successful
write registers a compensating action on the :class:`UnitOfWork`; if a later
step raises, the compensations run newest-first and the caller receives a
:class:`~retail_erp.errors.TransactionRolledBack`.

:class:`KeyedLocks` serializes check-then-act sequences per entity so that
two operations never validate against the same stale quantity or debt.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, NoReturn, Tuple

from . import log
from .errors import BusinessRuleViolation, TransactionRolledBack


Compensation = Callable[[], object]


class UnitOfWork:
    """Undo log collected while a mutation sequence runs."""

    def __init__(self, label: str) -> None:
        self.label = label
        self._compensations: List[Tuple[str, Compensation]] = []
        self._closed = False

    def on_rollback(self, description: str, action: Compensation) -> None:
        """Register ``action`` to undo the write that just succeeded."""

        if self._closed:
            raise RuntimeError(f"Unit of work '{self.label}' is already closed")
        self._compensations.append((description, action))

    @property
    def pending(self) -> int:
        return len(self._compensations)

    def commit(self) -> None:
        self._compensations.clear()
        self._closed = True

    def rollback(self) -> List[str]:
        """Run every compensation in reverse order.

        A compensation that fails is logged and the remaining ones still run.

        Returns:
            list[str]: Descriptions of compensations that could not be applied.
        """

        failures: List[str] = []
        while self._compensations:
            description, action = self._compensations.pop()
            try:
                action()
                log.debug("Compensated '%s' in '%s'", description, self.label)
            except Exception:
                log.exception("Compensation '%s' failed in '%s'", description, self.label)
                failures.append(description)
        self._closed = True
        return failures


@contextmanager
def transaction(label: str) -> Iterator[UnitOfWork]:
    """Run a block as one all-or-nothing unit of work.

    A business-rule violation raised before the first write is re-raised
    unchanged. Once a write has been registered, any failure, business rule
    or not, is rolled back and wrapped in :class:`TransactionRolledBack` so
    callers can tell retryable failures apart.
    """

    uow = UnitOfWork(label)
    try:
        yield uow
    except BusinessRuleViolation as exc:
        if uow.pending == 0:
            uow.rollback()
            raise
        _rollback_and_wrap(uow, exc)
    except Exception as exc:
        _rollback_and_wrap(uow, exc)
    else:
        uow.commit()


def _rollback_and_wrap(uow: UnitOfWork, exc: BaseException) -> NoReturn:
    log.error("Rolling back '%s' after failure: %s", uow.label, exc)
    failures = uow.rollback()
    if failures:
        log.error("Rollback of '%s' left %d step(s) unapplied: %s", uow.label, len(failures), ", ".join(failures))
    raise TransactionRolledBack(uow.label, exc) from exc


class KeyedLocks:
    """Registry handing out one lock per entity key.

    Keys are acquired in sorted order, which rules out lock-order deadlocks
    between operations that touch overlapping sets of entities. A key's lock
    is dropped from the registry once no caller holds or waits for it, so
    the registry only ever contains keys in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        ordered = sorted(set(keys))
        acquired: List[Tuple[str, threading.Lock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            log.debug("Holding locks: %s", ", ".join(ordered))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


def product_key(product_id: str) -> str:
    return f"product:{product_id}"


def client_key(client_id: str) -> str:
    return f"client:{client_id}"


def sale_key(sale_id: str) -> str:
    return f"sale:{sale_id}"


__all__ = [
    "UnitOfWork",
    "transaction",
    "KeyedLocks",
    "product_key",
    "client_key",
    "sale_key",
]
