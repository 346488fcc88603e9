"""Log entries and snapshot not yet written to stable storage."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .logger import Logger, get_logger


class EntryType(enum.IntEnum):
    NORMAL = 0
    CONF_CHANGE = 1
    CONF_CHANGE_V2 = 2


def _varint_size(value: int) -> int:
    return ((value | 1).bit_length() + 6) // 7


@dataclass(frozen=True)
class Entry:
    """A single replicated log entry."""

    term: int = 0
    index: int = 0
    type: EntryType = EntryType.NORMAL
    data: Optional[bytes] = None

    def size(self) -> int:
        """Size in bytes of the entry's wire encoding."""
        n = 1 + _varint_size(int(self.type))
        n += 1 + _varint_size(self.term)
        n += 1 + _varint_size(self.index)
        if self.data is not None:
            length = len(self.data)
            n += 1 + length + _varint_size(length)
        return n


@dataclass(frozen=True)
class SnapshotMetadata:
    index: int = 0
    term: int = 0


@dataclass(frozen=True)
class Snapshot:
    metadata: SnapshotMetadata = field(default_factory=SnapshotMetadata)
    data: Optional[bytes] = None


@dataclass(frozen=True)
class EntryID:
    """Identifies a log entry by its (term, index) pair."""

    term: int = 0
    index: int = 0

    @staticmethod
    def of(entry: Entry) -> "EntryID":
        return EntryID(term=entry.term, index=entry.index)


@dataclass
class Unstable:
    """Entries and an optional snapshot awaiting persistence.

    ``entries[i]`` has log position ``i + offset``. Entries before
    ``offset_in_progress`` are being written to storage.
    """

    snapshot: Optional[Snapshot] = None
    entries: List[Entry] = field(default_factory=list)
    offset: int = 0
    snapshot_in_progress: bool = False
    offset_in_progress: int = 0
    logger: Logger = field(default_factory=get_logger)

    def maybe_first_index(self) -> Optional[int]:
        """Index of the first possible entry, known only with a snapshot."""
        if self.snapshot is not None:
            return self.snapshot.metadata.index + 1
        return None

    def maybe_last_index(self) -> Optional[int]:
        """Last index held, from the entries or else the snapshot."""
        if self.entries:
            return self.offset + len(self.entries) - 1
        if self.snapshot is not None:
            return self.snapshot.metadata.index
        return None

    def maybe_term(self, i: int) -> Optional[int]:
        """Term of the entry at index i, if held."""
        if i < self.offset:
            if self.snapshot is not None and self.snapshot.metadata.index == i:
                return self.snapshot.metadata.term
            return None
        last = self.maybe_last_index()
        if last is None or i > last:
            return None
        return self.entries[i - self.offset].term

    def next_entries(self) -> List[Entry]:
        """Entries not already being written to storage."""
        in_progress = self.offset_in_progress - self.offset
        return self.entries[in_progress:]

    def next_snapshot(self) -> Optional[Snapshot]:
        """The snapshot, unless absent or already being written."""
        if self.snapshot is None or self.snapshot_in_progress:
            return None
        return self.snapshot

    def accept_in_progress(self) -> None:
        """Mark all current entries and the snapshot as being written."""
        if self.entries:
            self.offset_in_progress = self.entries[-1].index + 1
        if self.snapshot is not None:
            self.snapshot_in_progress = True

    def stable_to(self, entry_id: EntryID) -> None:
        """Drop entries up to entry_id once they are on stable storage."""
        gt = self.maybe_term(entry_id.index)
        if gt is None:
            self.logger.info(
                "entry at index %d missing from unstable log; ignoring", entry_id.index
            )
            return
        if entry_id.index < self.offset:
            self.logger.info(
                "entry at index %d matched unstable snapshot; ignoring", entry_id.index
            )
            return
        if gt != entry_id.term:
            self.logger.info(
                "entry at (index,term)=(%d,%d) mismatched with entry at (%d,%d) "
                "in unstable log; ignoring",
                entry_id.index,
                entry_id.term,
                entry_id.index,
                gt,
            )
            return
        num = entry_id.index + 1 - self.offset
        self.entries = self.entries[num:]
        self.offset = entry_id.index + 1
        self.offset_in_progress = max(self.offset_in_progress, self.offset)

    def stable_snap_to(self, i: int) -> None:
        if self.snapshot is not None and self.snapshot.metadata.index == i:
            self.snapshot = None
            self.snapshot_in_progress = False

    def restore(self, snapshot: Snapshot) -> None:
        """Replace everything held with the given snapshot."""
        self.offset = snapshot.metadata.index + 1
        self.offset_in_progress = self.offset
        self.entries = []
        self.snapshot = snapshot
        self.snapshot_in_progress = False

    def truncate_and_append(self, ents: Iterable[Entry]) -> None:
        """Append entries, truncating any conflicting suffix first."""
        ents = list(ents)
        from_index = ents[0].index
        if from_index == self.offset + len(self.entries):
            self.entries.extend(ents)
        elif from_index <= self.offset:
            self.logger.info("replace the unstable entries from index %d", from_index)
            self.entries = ents
            self.offset = from_index
            self.offset_in_progress = self.offset
        else:
            self.logger.info("truncate the unstable entries before index %d", from_index)
            self.entries = self.slice(self.offset, from_index) + ents
            self.offset_in_progress = min(self.offset_in_progress, from_index)

    def slice(self, lo: int, hi: int) -> List[Entry]:
        """Copy of the entries with indexes in [lo, hi); the range must be held."""
        self._check_out_of_bounds(lo, hi)
        return self.entries[lo - self.offset : hi - self.offset]

    def _check_out_of_bounds(self, lo: int, hi: int) -> None:
        if lo > hi:
            self.logger.panic("invalid unstable.slice %d > %d", lo, hi)
        upper = self.offset + len(self.entries)
        if lo < self.offset or hi > upper:
            self.logger.panic(
                "unstable.slice[%d,%d) out of bound [%d,%d]", lo, hi, self.offset, upper
            )