# clinic_scheduling/services/locks.py
"""
Serialization per (provider_id, date).

A provider's calendar for one day is the shared resource: every write that
can affect overlap takes this partition lock first. Within one process a
keyed threading.Lock does it; on PostgreSQL a transaction-scoped advisory
lock on the same key extends it across processes.
"""
from __future__ import annotations
import hashlib
import logging
import threading
import time
from contextlib import contextmanager
from datetime import date
from typing import Iterable, Iterator, Tuple

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..errors import SchedulingTimeout

logger = logging.getLogger(__name__)

PartitionKey = Tuple[str, date]


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class PartitionLocks:
    """Registry of per-partition locks; entries are dropped once unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[PartitionKey, _Entry] = {}

    def _checkout(self, key: PartitionKey) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: PartitionKey, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, keys: Iterable[PartitionKey], timeout: float) -> Iterator[list[PartitionKey]]:
        """
        Acquires every key (sorted, deduplicated) within `timeout` seconds in
        total. Raises SchedulingTimeout, holding nothing, if the deadline passes.
        """
        ordered = sorted(set(keys))
        deadline = time.monotonic() + timeout
        acquired: list[tuple[PartitionKey, _Entry]] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not entry.lock.acquire(timeout=remaining):
                    self._checkin(key, entry)
                    logger.warning("Lock wait timed out: provider=%s date=%s", key[0], key[1])
                    raise SchedulingTimeout(
                        "Calendar is busy, try again",
                        provider_id=key[0],
                        date=key[1].isoformat(),
                    )
                acquired.append((key, entry))
            yield ordered
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key, entry)


def advisory_key(key: PartitionKey) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    digest = hashlib.blake2b(f"{key[0]}|{key[1].isoformat()}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def acquire_db_locks(session: Session, keys: Iterable[PartitionKey], timeout: float) -> None:
    """
    Cross-process half of the partition lock. Only PostgreSQL has
    transaction-scoped advisory locks; elsewhere the in-process lock is all
    there is (SQLite serializes writers on its own).
    """
    if session.get_bind().dialect.name != "postgresql":
        return

    session.execute(text(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'"))
    for key in sorted(set(keys)):
        try:
            session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": advisory_key(key)})
        except OperationalError as e:
            raise SchedulingTimeout(
                "Calendar is busy, try again", provider_id=key[0], date=key[1].isoformat()
            ) from e
