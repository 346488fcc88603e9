"""The replicated log: entries on stable storage plus the unstable tail."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Protocol, Sequence, runtime_checkable

from .log_unstable import Entry, EntryID, Snapshot, Unstable
from .logger import Logger, get_logger

NO_LIMIT = 2**64 - 1


class StorageError(Exception):
    """Base class for errors reported by log storage."""


class CompactedError(StorageError):
    """The requested index lies before the first retained entry."""

    def __init__(self, message: str = "requested index is unavailable due to compaction") -> None:
        super().__init__(message)


class UnavailableError(StorageError):
    """The requested index lies beyond the last stored entry."""

    def __init__(self, message: str = "requested entry at index is unavailable") -> None:
        super().__init__(message)


@runtime_checkable
class Storage(Protocol):
    """Read access to the entries already written to stable storage."""

    def first_index(self) -> int:
        """Index of the first entry that may be read."""
        ...

    def last_index(self) -> int:
        """Index of the last entry held."""
        ...

    def term(self, i: int) -> int:
        """Term of entry i; raises CompactedError or UnavailableError."""
        ...

    def entries(self, lo: int, hi: int, max_size: int) -> List[Entry]:
        """Entries in [lo, hi), limited in total size but never empty."""
        ...

    def snapshot(self) -> Snapshot:
        """The most recent snapshot."""
        ...


def entries_size(ents: Sequence[Entry]) -> int:
    """Total encoded size of the entries."""
    return sum(e.size() for e in ents)


def limit_size(ents: Sequence[Entry], max_size: int) -> List[Entry]:
    """Longest prefix whose total size fits max_size; at least one entry."""
    ents = list(ents)
    if not ents:
        return ents
    size = ents[0].size()
    for limit in range(1, len(ents)):
        size += ents[limit].size()
        if size > max_size:
            return ents[:limit]
    return ents


@dataclass
class LogSlice:
    """Contiguous entries following prev, sent by a leader at the given term."""

    term: int = 0
    prev: EntryID = field(default_factory=EntryID)
    entries: List[Entry] = field(default_factory=list)

    def last_index(self) -> int:
        return self.prev.index + len(self.entries)

    def validate(self) -> None:
        """Raise ValueError unless the slice is well formed."""
        if self.prev.term > self.term:
            raise ValueError(f"leader term {self.term} < prev term {self.prev.term}")
        prev = self.prev
        for entry in self.entries:
            if entry.index != prev.index + 1:
                raise ValueError(f"index {entry.index} does not follow {prev.index}")
            if entry.term < prev.term or entry.term > self.term:
                raise ValueError(
                    f"term {entry.term} at index {entry.index} out of range "
                    f"[{prev.term}, {self.term}]"
                )
            prev = EntryID.of(entry)


class RaftLog:
    """Combines stable storage with unstable entries and tracks commit/apply."""

    def __init__(
        self,
        storage: Storage,
        logger: Optional[Logger] = None,
        max_applying_ents_size: int = NO_LIMIT,
    ) -> None:
        self.logger: Logger = logger if logger is not None else get_logger()
        first_index = storage.first_index()
        last_index = storage.last_index()
        self.storage = storage
        self.unstable = Unstable(
            offset=last_index + 1,
            offset_in_progress=last_index + 1,
            logger=self.logger,
        )
        self.max_applying_ents_size = max_applying_ents_size
        self.applying_ents_size = 0
        self.applying_ents_paused = False
        self.committed = first_index - 1
        self.applying = first_index - 1
        self.applied = first_index - 1

    def __str__(self) -> str:
        return (
            f"committed={self.committed}, applied={self.applied}, "
            f"applying={self.applying}, unstable.offset={self.unstable.offset}, "
            f"unstable.offsetInProgress={self.unstable.offset_in_progress}, "
            f"len(unstable.Entries)={len(self.unstable.entries)}"
        )

    def maybe_append(self, a: LogSlice, committed: int) -> Optional[int]:
        """Append the slice if it matches; return its last index or None."""
        if not self.match_term(a.prev):
            return None
        lastnewi = a.last_index()
        ci = self.find_conflict(a.entries)
        if ci == 0:
            pass
        elif ci <= self.committed:
            self.logger.panic(
                "entry %d conflict with committed entry [committed(%d)]", ci, self.committed
            )
        else:
            offset = a.prev.index + 1
            if ci - offset > len(a.entries):
                self.logger.panic("index, %d, is out of range [%d]", ci - offset, len(a.entries))
            self.append(*a.entries[ci - offset :])
        self.commit_to(min(committed, lastnewi))
        return lastnewi

    def append(self, *args: Entry) -> int:
        """Append entries to the unstable tail; return the new last index."""
        if not args:
            return self.last_index()
        after = args[0].index - 1
        if after < self.committed:
            self.logger.panic("after(%d) is out of range [committed(%d)]", after, self.committed)
        self.unstable.truncate_and_append(args)
        return self.last_index()

    def find_conflict(self, ents: Sequence[Entry]) -> int:
        """Index of the first entry that conflicts or is new, else 0."""
        for entry in ents:
            entry_id = EntryID.of(entry)
            if not self.match_term(entry_id):
                if entry_id.index <= self.last_index():
                    self.logger.info(
                        "found conflict at index %d [existing term: %d, conflicting term: %d]",
                        entry_id.index,
                        self._zero_term_on_out_of_bounds(entry_id.index),
                        entry_id.term,
                    )
                return entry_id.index
        return 0

    def find_conflict_by_term(self, index: int, term: int) -> tuple:
        """Largest (i, term(i)) with i <= index and term(i) <= term or unknown (0)."""
        while index > 0:
            try:
                our_term = self.term(index)
            except StorageError:
                return index, 0
            if our_term <= term:
                return index, our_term
            index -= 1
        return 0, 0

    def next_unstable_ents(self) -> List[Entry]:
        return self.unstable.next_entries()

    def has_next_unstable_ents(self) -> bool:
        return len(self.next_unstable_ents()) > 0

    def has_next_or_in_progress_unstable_ents(self) -> bool:
        return len(self.unstable.entries) > 0

    def next_committed_ents(self, allow_unstable: bool) -> List[Entry]:
        """Committed entries ready to be applied."""
        if self.applying_ents_paused or self.has_next_or_in_progress_snapshot():
            return []
        lo, hi = self.applying + 1, self.max_appliable_index(allow_unstable) + 1
        if lo >= hi:
            return []
        max_size = self.max_applying_ents_size - self.applying_ents_size
        if max_size <= 0:
            self.logger.panic(
                "applying entry size (%d-%d)=%d not positive",
                self.max_applying_ents_size,
                self.applying_ents_size,
                max_size,
            )
        try:
            return self.slice(lo, hi, max_size)
        except StorageError as err:
            self.logger.panic("unexpected error when getting unapplied entries (%s)", err)
            raise

    def has_next_committed_ents(self, allow_unstable: bool) -> bool:
        if self.applying_ents_paused or self.has_next_or_in_progress_snapshot():
            return False
        return self.applying + 1 < self.max_appliable_index(allow_unstable) + 1

    def max_appliable_index(self, allow_unstable: bool) -> int:
        hi = self.committed
        if not allow_unstable:
            hi = min(hi, self.unstable.offset - 1)
        return hi

    def next_unstable_snapshot(self) -> Optional[Snapshot]:
        return self.unstable.next_snapshot()

    def has_next_unstable_snapshot(self) -> bool:
        return self.unstable.next_snapshot() is not None

    def has_next_or_in_progress_snapshot(self) -> bool:
        return self.unstable.snapshot is not None

    def snapshot(self) -> Snapshot:
        if self.unstable.snapshot is not None:
            return self.unstable.snapshot
        return self.storage.snapshot()

    def first_index(self) -> int:
        i = self.unstable.maybe_first_index()
        if i is not None:
            return i
        return self.storage.first_index()

    def last_index(self) -> int:
        i = self.unstable.maybe_last_index()
        if i is not None:
            return i
        return self.storage.last_index()

    def commit_to(self, tocommit: int) -> None:
        """Raise the commit index; it never decreases."""
        if self.committed < tocommit:
            if self.last_index() < tocommit:
                self.logger.panic(
                    "tocommit(%d) is out of range [lastIndex(%d)]. "
                    "Was the raft log corrupted, truncated, or lost?",
                    tocommit,
                    self.last_index(),
                )
            self.committed = tocommit

    def applied_to(self, i: int, size: int = 0) -> None:
        if self.committed < i or i < self.applied:
            self.logger.panic(
                "applied(%d) is out of range [prevApplied(%d), committed(%d)]",
                i,
                self.applied,
                self.committed,
            )
        self.applied = i
        self.applying = max(self.applying, i)
        if self.applying_ents_size > size:
            self.applying_ents_size -= size
        else:
            self.applying_ents_size = 0
        self.applying_ents_paused = self.applying_ents_size >= self.max_applying_ents_size

    def accept_applying(self, i: int, size: int = 0, allow_unstable: bool = True) -> None:
        if self.committed < i:
            self.logger.panic(
                "applying(%d) is out of range [prevApplying(%d), committed(%d)]",
                i,
                self.applying,
                self.committed,
            )
        self.applying = i
        self.applying_ents_size += size
        # Pause when over the limit, or when the last batch was cut short by it.
        self.applying_ents_paused = (
            self.applying_ents_size >= self.max_applying_ents_size
            or i < self.max_appliable_index(allow_unstable)
        )

    def stable_to(self, entry_id: EntryID) -> None:
        self.unstable.stable_to(entry_id)

    def stable_snap_to(self, i: int) -> None:
        self.unstable.stable_snap_to(i)

    def accept_unstable(self) -> None:
        """Mark the current unstable entries and snapshot as being persisted."""
        self.unstable.accept_in_progress()

    def last_entry_id(self) -> EntryID:
        index = self.last_index()
        try:
            t = self.term(index)
        except StorageError as err:
            self.logger.panic(
                "unexpected error when getting the last term at %d: %s", index, err
            )
            raise
        return EntryID(term=t, index=index)

    def term(self, i: int) -> int:
        """Term of entry i; raises CompactedError or UnavailableError."""
        t = self.unstable.maybe_term(i)
        if t is not None:
            return t
        # The valid range is [first_index-1, last_index].
        if i + 1 < self.first_index():
            raise CompactedError()
        if i > self.last_index():
            raise UnavailableError()
        return self.storage.term(i)

    def entries(self, i: int, max_size: int = NO_LIMIT) -> List[Entry]:
        if i > self.last_index():
            return []
        return self.slice(i, self.last_index() + 1, max_size)

    def all_entries(self) -> List[Entry]:
        while True:
            try:
                return self.entries(self.first_index(), NO_LIMIT)
            except CompactedError:
                continue

    def is_up_to_date(self, their: EntryID) -> bool:
        """Whether a log ending at `their` is at least as up to date as this one."""
        our = self.last_entry_id()
        return their.term > our.term or (their.term == our.term and their.index >= our.index)

    def match_term(self, entry_id: EntryID) -> bool:
        try:
            return self.term(entry_id.index) == entry_id.term
        except StorageError:
            return False

    def maybe_commit(self, at: EntryID) -> bool:
        if at.term != 0 and at.index > self.committed and self.match_term(at):
            self.commit_to(at.index)
            return True
        return False

    def restore(self, snapshot: Snapshot) -> None:
        self.logger.info(
            "log [%s] starts to restore snapshot [index: %d, term: %d]",
            self,
            snapshot.metadata.index,
            snapshot.metadata.term,
        )
        self.committed = snapshot.metadata.index
        self.unstable.restore(snapshot)

    def scan(self, lo: int, hi: int, page_size: int) -> Iterator[List[Entry]]:
        """Yield consecutive pages covering [lo, hi), each about page_size bytes."""
        while lo < hi:
            ents = self.slice(lo, hi, page_size)
            if not ents:
                raise StorageError(f"got 0 entries in [{lo}, {hi})")
            yield ents
            lo += len(ents)

    def slice(self, lo: int, hi: int, max_size: int = NO_LIMIT) -> List[Entry]:
        """Entries in [lo, hi), limited in size but never empty for lo < hi."""
        self.check_out_of_bounds(lo, hi)
        if lo == hi:
            return []
        offset = self.unstable.offset
        if lo >= offset:
            return limit_size(self.unstable.slice(lo, hi), max_size)

        cut = min(hi, offset)
        try:
            ents = list(self.storage.entries(lo, cut, max_size))
        except CompactedError:
            raise
        except UnavailableError:
            self.logger.panic("entries[%d:%d) is unavailable from storage", lo, cut)
            raise
        if hi <= offset:
            return ents
        if len(ents) < cut - lo:
            return ents
        size = entries_size(ents)
        if size >= max_size:
            return ents

        unstable = limit_size(self.unstable.slice(offset, hi), max_size - size)
        if len(unstable) == 1 and size + entries_size(unstable) > max_size:
            return ents
        return ents + unstable

    def check_out_of_bounds(self, lo: int, hi: int) -> None:
        """Raise CompactedError if lo is compacted; panic if the range is invalid."""
        if lo > hi:
            self.logger.panic("invalid slice %d > %d", lo, hi)
        fi = self.first_index()
        if lo < fi:
            raise CompactedError()
        last = self.last_index()
        if hi > last + 1:
            self.logger.panic("slice[%d,%d) out of bound [%d,%d]", lo, hi, fi, last)

    def _zero_term_on_out_of_bounds(self, i: int) -> int:
        try:
            return self.term(i)
        except (CompactedError, UnavailableError):
            return 0