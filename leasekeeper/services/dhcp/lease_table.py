from ipaddress import IPv4Address
from threading import RLock
from typing import Callable, Iterable, Optional

from leasekeeper.services.dhcp.models import LeaseRecord


class LeaseTable:
    """
    In-memory map of client identity -> LeaseRecord.

    Responsibilities:
        - Keep at most one record per client identity (raw identifier bytes).
        - Own the lock that serializes message handling and the expiry sweep.
        - Call `on_mutation` after every add, remove, replace or clear, so the
          persistence worker can schedule a save.

    Usage:
        table = LeaseTable(on_mutation=DbPersistenceService.request_save)
        with table.lock:
            record = table.get(identity)
            table.replace(record.transition(...))

    Notes:
        - Records are frozen dataclasses; callers never mutate them in place.
        - Iteration follows insertion order.
    """

    def __init__(self, on_mutation: Optional[Callable[[], None]] = None):
        self.lock = RLock()
        self._records: dict[bytes, LeaseRecord] = {}
        self._on_mutation = on_mutation

    def set_on_mutation(self, on_mutation: Optional[Callable[[], None]]):
        with self.lock:
            self._on_mutation = on_mutation

    def _mutated(self):
        if self._on_mutation is not None:
            self._on_mutation()

    def get(self, identity: bytes) -> Optional[LeaseRecord]:
        with self.lock:
            return self._records.get(bytes(identity))

    def add(self, record: LeaseRecord):
        """Insert a new record, replacing nothing."""
        with self.lock:
            if record.identity in self._records:
                raise KeyError(f"Record for {record.identity.hex()} already present.")
            self._records[record.identity] = record
            self._mutated()

    def replace(self, record: LeaseRecord):
        """Insert or overwrite the record for record.identity."""
        with self.lock:
            self._records[record.identity] = record
            self._mutated()

    def remove(self, identity: bytes) -> Optional[LeaseRecord]:
        with self.lock:
            _record = self._records.pop(bytes(identity), None)
            if _record is not None:
                self._mutated()
            return _record

    def clear(self):
        with self.lock:
            if self._records:
                self._records.clear()
                self._mutated()

    def load(self, records: Iterable[LeaseRecord]):
        """Replace the whole content with persisted records, without a save request."""
        with self.lock:
            self._records = {_record.identity: _record for _record in records}

    def records(self) -> list[LeaseRecord]:
        """Snapshot of all records."""
        with self.lock:
            return list(self._records.values())

    def find_by_ip(self, ip: IPv4Address) -> list[LeaseRecord]:
        with self.lock:
            return [_record for _record in self._records.values() if _record.ip_address == ip]

    def __len__(self) -> int:
        with self.lock:
            return len(self._records)
