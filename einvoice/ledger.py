import base64
import hashlib
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Protocol, Set

from einvoice.errors import ChainIntegrityError, FieldError, ValidationError

logger = logging.getLogger(__name__)

# PIH of the first invoice: base64(SHA-256("0"))
INITIAL_HASH = base64.b64encode(hashlib.sha256(b"0").digest()).decode("ascii")


@dataclass(frozen=True)
class ChainEntry:
    icv: int
    hash: str
    previous_hash: str
    uuid: Optional[str] = None
    invoice_number: Optional[str] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ChainMismatch:
    icv: int
    expected: Optional[str]
    actual: Optional[str]
    reason: str = "previous hash mismatch"


class ChainStore(Protocol):
    def max_sequence(self) -> int: ...

    def get(self, icv: int) -> Optional[ChainEntry]: ...

    def append(self, entry: ChainEntry) -> None: ...


class InMemoryChainStore:
    def __init__(self):
        self._entries: Dict[int, ChainEntry] = {}

    def max_sequence(self) -> int:
        return max(self._entries, default=0)

    def get(self, icv: int) -> Optional[ChainEntry]:
        return self._entries.get(icv)

    def append(self, entry: ChainEntry) -> None:
        self._entries[entry.icv] = entry


class ChainSlot:
    """An ICV/PIH pair held under the ledger lock until committed."""

    def __init__(self, icv: int, previous_hash: str):
        self.icv = icv
        self.previous_hash = previous_hash
        self.entry: Optional[ChainEntry] = None

    def commit(self, invoice_hash: str, uuid: Optional[str] = None,
               invoice_number: Optional[str] = None) -> ChainEntry:
        self.entry = ChainEntry(self.icv, invoice_hash, self.previous_hash, uuid, invoice_number)
        return self.entry


class HashChainLedger:
    """
    Allocates invoice counter values (ICV) and links every invoice to the
    hash of its predecessor (PIH).

    Allocation and recording are serialized with a process-wide lock.
    Deployments with several processes need a store whose ``append`` is
    guarded by a database transaction.
    """

    def __init__(self, store: Optional[ChainStore] = None):
        self.store = store if store is not None else InMemoryChainStore()
        self._lock = threading.RLock()
        self._allocated = 0
        self._reserved: Set[int] = set()

    def _peek(self) -> int:
        return max(self._allocated, self.store.max_sequence(), max(self._reserved, default=0)) + 1

    def next_sequence(self) -> int:
        with self._lock:
            icv = self._peek()
            self._allocated = icv
            return icv

    def previous_hash(self) -> str:
        with self._lock:
            last = self.store.max_sequence()
            if last == 0:
                return INITIAL_HASH
            entry = self.store.get(last)
            return entry.hash if entry is not None else INITIAL_HASH

    def record(self, entry: ChainEntry) -> ChainEntry:
        with self._lock:
            last = self.store.max_sequence()
            errors = []
            if entry.icv <= last or self.store.get(entry.icv) is not None:
                errors.append(FieldError("icv", f"ICV {entry.icv} is already used", "icv_reused"))
            elif entry.icv > self._peek():
                errors.append(FieldError("icv", f"ICV {entry.icv} skips unallocated values", "icv_skipped"))
            if not entry.hash:
                errors.append(FieldError("hash", "Invoice hash is required", "required"))
            if errors:
                raise ValidationError.from_errors(errors)
            self.store.append(entry)
            self._allocated = max(self._allocated, entry.icv)
            logger.info("Recorded ICV %s (hash %s, previous %s)", entry.icv, entry.hash, entry.previous_hash)
            return entry

    @contextmanager
    def reserve(self) -> Iterator[ChainSlot]:
        """
        Hold the allocator while one invoice is built and signed.

        The slot's ICV is only consumed when ``slot.commit()`` was called and
        the block exits normally; an exception leaves the ledger untouched.
        While the block runs the ICV is held back from ``next_sequence()``
        and from nested reservations.
        """
        with self._lock:
            slot = ChainSlot(self._peek(), self.previous_hash())
            self._reserved.add(slot.icv)
            try:
                yield slot
            finally:
                self._reserved.discard(slot.icv)
            if slot.entry is not None:
                self.record(slot.entry)

    def is_used(self, icv: int) -> bool:
        return self.store.get(icv) is not None

    def verify_chain(self, start: int = 1, end: Optional[int] = None) -> List[ChainMismatch]:
        """
        Replay entries ``start..end`` and return every broken link.

        The running hash is taken from each entry's own stored hash, so a
        single corrupted entry is reported once, at its successor.
        """
        with self._lock:
            end = self.store.max_sequence() if end is None else end
            running = INITIAL_HASH
            if start > 1:
                predecessor = self.store.get(start - 1)
                running = predecessor.hash if predecessor is not None else None

            mismatches = []
            for icv in range(start, end + 1):
                entry = self.store.get(icv)
                if entry is None:
                    mismatches.append(ChainMismatch(icv, running, None, "missing entry"))
                    running = None
                    continue
                if running is not None and entry.previous_hash != running:
                    mismatches.append(ChainMismatch(icv, running, entry.previous_hash))
                running = entry.hash

        if mismatches:
            logger.warning("Hash chain verification found %d problem(s) between ICV %s and %s",
                           len(mismatches), start, end)
        return mismatches

    def assert_intact(self, start: int = 1, end: Optional[int] = None) -> None:
        mismatches = self.verify_chain(start, end)
        if mismatches:
            raise ChainIntegrityError(mismatches)

    def statistics(self) -> dict:
        with self._lock:
            last = self.store.max_sequence()
            entry = self.store.get(last) if last else None
            return {
                "last_icv": last,
                "entries": sum(1 for icv in range(1, last + 1) if self.store.get(icv) is not None),
                "last_hash": entry.hash if entry is not None else None,
                "next_icv": self._peek(),
            }
