"""Persistence of migration records in ``vhosts.yml``."""
from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager, nullcontext

from ..errors import PreconditionError
from ..locking import LockManager
from ..state import StateRegistry, StateRegistryError
from .models import MigrationRecord, MigrationStatus


class MigrationStore:
    """Read and write :class:`MigrationRecord` objects.

    ``vhosts.yml`` is rewritten as a whole, so every save is a
    read-modify-write. Saves are serialised with a thread lock and, when a
    :class:`LockManager` is supplied, the global file lock so concurrent batch
    workers and other processes never lose each other's updates.
    """

    def __init__(self, registry: StateRegistry, locks: LockManager | None = None) -> None:
        """Bind the store to *registry*."""
        self.registry = registry
        self.locks = locks
        self._mutex = threading.Lock()

    def get(self, vhost: str) -> MigrationRecord:
        """Return the record for *vhost*."""
        entry = self.registry.get_vhost(vhost)
        if entry is None:
            raise PreconditionError(f"VHost '{vhost}' is not registered in vhosts.yml.")
        return MigrationRecord.from_mapping(entry)

    def records(
        self,
        *,
        status: MigrationStatus | None = None,
        node: str | None = None,
    ) -> list[MigrationRecord]:
        """Return records filtered by *status* and *node*."""
        records = [MigrationRecord.from_mapping(entry) for entry in self.registry.read_vhosts()]
        return [
            record
            for record in records
            if (status is None or record.status is status)
            and (node is None or record.node == node)
        ]

    def save(self, record: MigrationRecord) -> None:
        """Persist the migration fields of *record*."""
        with self._exclusive():
            try:
                self.registry.update_vhost(record.vhost, record.to_updates())
            except StateRegistryError as exc:
                raise PreconditionError(str(exc)) from exc

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._mutex:
            guard = self.locks.global_lock() if self.locks is not None else nullcontext()
            with guard:
                yield


__all__ = ["MigrationStore"]
