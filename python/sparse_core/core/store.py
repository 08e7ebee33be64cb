"""
Stream state stores.

An accumulator owns exactly one store and keeps one opaque state blob per
stream in it: a 4-byte big-endian count for the counter variant, the 32-byte
chain head for the hash-chain variant. Stores never interpret the blobs.

Writes for one batch reach the store through a single ``commit`` call so a
durable backend can apply them in one transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Mapping, Optional, Tuple

from sparse_core.core.digest import StreamID
from sparse_core.core.errors import state_shape_mismatch

if TYPE_CHECKING:
    from sparse_core.config import StoreConfig

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Key-value capability an accumulator needs: stream id -> state blob."""

    @abstractmethod
    def bound_variant(self) -> Optional[str]:
        """Variant this store was bound to, or None for a fresh store."""

    @abstractmethod
    def _record_variant(self, variant: str) -> None: ...

    @abstractmethod
    def get(self, stream_id: StreamID) -> Optional[bytes]: ...

    @abstractmethod
    def commit(self, writes: Mapping[StreamID, bytes]) -> None:
        """Apply every write or none of them."""

    @abstractmethod
    def items(self) -> Iterator[Tuple[StreamID, bytes]]:
        """Yield (stream id, state) pairs ordered by stream id."""

    def bind(self, variant: str) -> None:
        current = self.bound_variant()
        if current is None:
            self._record_variant(variant)
            return
        if current != variant:
            raise state_shape_mismatch(f"store holds {current} state, cannot be used by {variant}")

    def set(self, stream_id: StreamID, state: bytes) -> None:
        self.commit({stream_id: state})

    def close(self) -> None:
        pass

    def __contains__(self, stream_id: StreamID) -> bool:
        return self.get(stream_id) is not None

    def __len__(self) -> int:
        return sum(1 for _ in self.items())


class InMemoryStateStore(StateStore):
    def __init__(self) -> None:
        self._states: dict[StreamID, bytes] = {}
        self._variant: Optional[str] = None

    def bound_variant(self) -> Optional[str]:
        return self._variant

    def _record_variant(self, variant: str) -> None:
        self._variant = variant

    def get(self, stream_id: StreamID) -> Optional[bytes]:
        return self._states.get(stream_id)

    def commit(self, writes: Mapping[StreamID, bytes]) -> None:
        self._states.update(writes)

    def items(self) -> Iterator[Tuple[StreamID, bytes]]:
        for stream_id in sorted(self._states, key=lambda s: s.value):
            yield stream_id, self._states[stream_id]

    def __len__(self) -> int:
        return len(self._states)


class SqliteStateStore(StateStore):
    """Durable store backed by one SQLite file; each commit is one transaction."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        path = str(path)
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._path = path
        self._conn = sqlite3.connect(path)
        with self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS stream_state ("
                "stream_id INTEGER PRIMARY KEY, state BLOB NOT NULL)"
            )
            self._conn.execute("CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
        logger.debug("opened sqlite state store", extra={"path": path})

    def bound_variant(self) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM meta WHERE key = 'variant'").fetchone()
        return None if row is None else row[0]

    def _record_variant(self, variant: str) -> None:
        with self._conn:
            self._conn.execute("INSERT INTO meta (key, value) VALUES ('variant', ?)", (variant,))

    def get(self, stream_id: StreamID) -> Optional[bytes]:
        row = self._conn.execute(
            "SELECT state FROM stream_state WHERE stream_id = ?", (stream_id.value,)
        ).fetchone()
        return None if row is None else bytes(row[0])

    def commit(self, writes: Mapping[StreamID, bytes]) -> None:
        with self._conn:
            self._conn.executemany(
                "INSERT OR REPLACE INTO stream_state (stream_id, state) VALUES (?, ?)",
                [(stream_id.value, bytes(state)) for stream_id, state in writes.items()],
            )

    def items(self) -> Iterator[Tuple[StreamID, bytes]]:
        rows = self._conn.execute("SELECT stream_id, state FROM stream_state ORDER BY stream_id").fetchall()
        for stream_id, state in rows:
            yield StreamID(stream_id), bytes(state)

    def close(self) -> None:
        self._conn.close()

    def __len__(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM stream_state").fetchone()[0]


def open_store(config: StoreConfig) -> StateStore:
    if config.backend == "memory":
        return InMemoryStateStore()
    if config.backend == "sqlite":
        return SqliteStateStore(config.path)
    raise ValueError(f"unknown store backend: {config.backend}")
