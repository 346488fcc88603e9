# raftlog

`raftlog` is the log layer of a Raft consensus node. It keeps track of four things:

- which entries are already in stable storage;
- which entries are still unstable, meaning held in memory and not yet persisted;
- how far the log is committed;
- how far the application has applied it.

It also checks the invariants that Raft relies on. When one of them is broken, the log raises `RaftPanic` rather than carrying on.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `raftlog.log_unstable`

This module holds the data types and the unstable tail:

- `Entry` and `EntryType`. `Entry.size()` gives the size of the entry's wire encoding in bytes.
- `Snapshot` and `SnapshotMetadata`.
- `EntryID`, a `(term, index)` pair. `EntryID.of(entry)` builds one from an entry.
- `Unstable`, which holds the entries that have not been persisted yet, plus an optional snapshot that is waiting to be persisted.

### `raftlog.log`

- `RaftLog` combines a `Storage` with the unstable tail. It also tracks `committed`, `applying` and `applied`.
- `Storage` is the protocol that stable storage must implement. It has these methods:
  - `first_index()`
  - `last_index()`
  - `term(i)`
  - `entries(lo, hi, max_size)`
  - `snapshot()`
- `LogSlice` holds the entries carried by an append. `validate()` raises `ValueError` when the slice is malformed.
- `entries_size` and `limit_size` help with size-bounded paging. `limit_size` always keeps at least one entry.
- The storage errors are `StorageError`, `CompactedError` and `UnavailableError`.
- `NO_LIMIT` is the default size limit.

### `raftlog.logger`

This module provides the `Logger` protocol and its `DefaultLogger` implementation. It also has four functions:

- `set_logger`
- `get_logger`
- `reset_default_logger`
- `discard_logger`

## Example

The package does not include a storage implementation. The example below uses a minimal empty one:

```python
from raftlog.log import RaftLog, LogSlice, UnavailableError
from raftlog.log_unstable import Entry, EntryID, Snapshot
from raftlog.logger import discard_logger


class EmptyStorage:
    def first_index(self):
        return 1

    def last_index(self):
        return 0

    def term(self, i):
        if i == 0:
            return 0
        raise UnavailableError()

    def entries(self, lo, hi, max_size):
        raise UnavailableError()

    def snapshot(self):
        return Snapshot()


log = RaftLog(EmptyStorage(), discard_logger())
log.append(Entry(index=1, term=1), Entry(index=2, term=1))

# A follower accepts entries that extend the log at a matching position.
last = log.maybe_append(
    LogSlice(term=2, prev=EntryID(term=1, index=2), entries=[Entry(index=3, term=2)]),
    committed=3,
)
assert last == 3 and log.committed == 3

# Hand out committed entries to be applied, then record how far they got.
for entry in log.next_committed_ents(allow_unstable=True):
    ...
log.applied_to(3, 0)
```

`maybe_append` returns `None` when the slice's `prev` does not match the log.

## Persisting unstable entries

Unstable entries are persisted in three steps:

1. Get the pending entries with `next_unstable_ents()`.
2. Mark them as in progress with `accept_unstable()`.
3. Write them to your storage. Once they are durable there, call `stable_to(EntryID.of(last_entry))`.

## Reading a range in pages

`scan(lo, hi, page_size)` is a generator. It yields consecutive pages that together cover `[lo, hi)`:

```python
for page in log.scan(1, 4, page_size=64):
    ...
```

Each page contains at least one entry, even when that entry alone is larger than `page_size`.

If part of the range has been compacted away, the log raises `CompactedError`.

## Logging

```python
import sys
from raftlog.logger import DefaultLogger, set_logger

logger = DefaultLogger(sys.stderr, "raft ")
logger.enable_debug()
set_logger(logger)
```

- Messages use `%`-style formatting, for example `logger.info("applied %d", index)`.
- Each line starts with the prefix, followed by the level header, such as `INFO: `.
- `enable_timestamps()` adds the local date and time after the prefix.
- `logger.panic(...)` writes the message and then raises `RaftPanic`.
- `logger.fatal(...)` writes the message and then raises `SystemExit(1)`.
- `discard_logger()` returns a logger that drops all output but still raises on `panic`.

## What this package does not do

This package is the log only. It does not provide:

- a storage implementation, whether in-memory or on disk;
- elections;
- message handling between nodes;
- a node or server to run.

An application supplies its own `Storage` and drives the log from its own consensus logic.