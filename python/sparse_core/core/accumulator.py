from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Iterable, List, Optional, Sequence, Tuple

from sparse_core.core.digest import (
    DIGEST_LEN,
    EMPTY_NODE,
    U32_MAX,
    Leaf,
    MerkleTreeDigest,
    NodeDigest,
    Point,
    StreamID,
    chain_step,
    compute_merkle_tree,
    counter_leaf,
)
from sparse_core.core.errors import AccumulatorError, CounterOverflowError, state_shape_mismatch
from sparse_core.core.store import InMemoryStateStore, StateStore, open_store

if TYPE_CHECKING:
    from sparse_core.config import AccumulatorConfig, StoreConfig

logger = logging.getLogger(__name__)


def _coerce_update(entry: Tuple[Any, Sequence[Any]]) -> Tuple[StreamID, Sequence[Any]]:
    stream_id, points = entry
    if not isinstance(stream_id, StreamID):
        stream_id = StreamID(stream_id)
    return stream_id, points


def _as_point(point: Any) -> Point:
    return point if isinstance(point, Point) else Point(point)


class StreamUpdater(ABC):
    """Ingests a batch of stream updates and returns the batch digest.

    Only streams present in the batch are read or written. New state for the
    whole batch is staged first and handed to the store in one commit, so a
    rejected entry leaves every stream as it was before the call.

    Instances are not thread-safe; serialize ``update`` calls per instance.
    """

    variant: str = ""

    def __init__(self, store: Optional[StateStore] = None) -> None:
        self._store = store if store is not None else InMemoryStateStore()
        self._store.bind(self.variant)

    @property
    def store(self) -> StateStore:
        return self._store

    def update(self, updates: Iterable[Tuple[Any, Sequence[Any]]]) -> MerkleTreeDigest:
        staged: dict[StreamID, bytes] = {}
        leaves: List[Leaf] = []
        entries = 0
        try:
            for entry in updates:
                stream_id, points = _coerce_update(entry)
                prior = staged.get(stream_id)
                if prior is None:
                    prior = self._store.get(stream_id)
                state, leaf = self._apply(stream_id, prior, points)
                staged[stream_id] = state
                leaves.append(leaf)
                entries += 1
        except AccumulatorError as err:
            logger.warning(
                "batch rejected",
                extra={"variant": self.variant, "code": err.code, "entry_index": entries},
            )
            raise

        if staged:
            self._store.commit(staged)
        digest = compute_merkle_tree(leaves)
        logger.debug(
            "batch applied",
            extra={"variant": self.variant, "entries": entries, "streams": len(staged), "digest": digest.hex()},
        )
        return digest

    @abstractmethod
    def _apply(self, stream_id: StreamID, prior: Optional[bytes], points: Sequence[Any]) -> Tuple[bytes, Leaf]:
        """Return the new state blob for ``stream_id`` and its leaf for this batch."""


class CounterSparseNode(StreamUpdater):
    """Tracks how many points each stream has ever received.

    The leaf for a stream is H(id || local_count || total), every field a
    big-endian u32, so a verifier holding the previous total can check the
    delta without the stream history.
    """

    variant = "counter"

    def _apply(self, stream_id: StreamID, prior: Optional[bytes], points: Sequence[Any]) -> Tuple[bytes, Leaf]:
        local_count = len(points)
        if local_count > U32_MAX:
            raise CounterOverflowError(
                "ACC_LOCAL_COUNT_OVERFLOW",
                f"stream {stream_id.value} carries {local_count} points in one batch",
            )
        for point in points:
            _as_point(point)
        total = _decode_count(prior) + local_count
        if total > U32_MAX:
            raise CounterOverflowError(
                "ACC_TOTAL_COUNT_OVERFLOW",
                f"stream {stream_id.value} counter would reach {total}",
            )
        return total.to_bytes(4, "big"), counter_leaf(stream_id, local_count, total)

    def count(self, stream_id: StreamID) -> int:
        return _decode_count(self._store.get(stream_id))

    @property
    def counts(self) -> dict[StreamID, int]:
        return {stream_id: _decode_count(state) for stream_id, state in self._store.items()}


class HashChainSparseNode(StreamUpdater):
    """Keeps a rolling head per stream: head' = H(head || point), genesis all-zero.

    The leaf for a stream is its head after the batch, so heads do not depend
    on how points were split across batches.
    """

    variant = "hash_chain"

    def _apply(self, stream_id: StreamID, prior: Optional[bytes], points: Sequence[Any]) -> Tuple[bytes, Leaf]:
        head = _decode_head(prior)
        for point in points:
            head = chain_step(head, _as_point(point))
        return head.data, Leaf(head.data)

    def head(self, stream_id: StreamID) -> NodeDigest:
        return _decode_head(self._store.get(stream_id))

    @property
    def heads(self) -> dict[StreamID, NodeDigest]:
        return {stream_id: _decode_head(state) for stream_id, state in self._store.items()}


def _decode_count(state: Optional[bytes]) -> int:
    if state is None:
        return 0
    if len(state) != 4:
        raise state_shape_mismatch(f"counter state must be 4 bytes, got {len(state)}")
    return int.from_bytes(state, "big")


def _decode_head(state: Optional[bytes]) -> NodeDigest:
    if state is None:
        return EMPTY_NODE
    if len(state) != DIGEST_LEN:
        raise state_shape_mismatch(f"chain head must be {DIGEST_LEN} bytes, got {len(state)}")
    return NodeDigest(state)


VARIANTS: dict[str, type[StreamUpdater]] = {
    CounterSparseNode.variant: CounterSparseNode,
    HashChainSparseNode.variant: HashChainSparseNode,
}


def build_accumulator(accumulator: AccumulatorConfig, store: StoreConfig) -> StreamUpdater:
    try:
        cls = VARIANTS[accumulator.variant]
    except KeyError:
        raise ValueError(f"unknown accumulator variant: {accumulator.variant}") from None
    return cls(open_store(store))
