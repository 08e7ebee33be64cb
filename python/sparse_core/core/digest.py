from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple

from sparse_core.core.errors import invalid_point, invalid_stream_id, state_shape_mismatch

# Length of every fixed-width digest and point.
DIGEST_LEN = 32

U32_MAX = 0xFFFFFFFF


@dataclass(frozen=True)
class StreamID:
    value: int

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise invalid_stream_id(self.value)
        if not 0 <= self.value <= U32_MAX:
            raise invalid_stream_id(self.value)

    def encode(self) -> bytes:
        return self.value.to_bytes(4, "big")


@dataclass(frozen=True)
class Point:
    """One unit of work appended to a stream, e.g. an effects or event digest."""

    data: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.data, (bytes, bytearray)):
            raise invalid_point(f"point must be bytes, got {type(self.data)!r}")
        if len(self.data) != DIGEST_LEN:
            raise invalid_point(f"point must be {DIGEST_LEN} bytes, got {len(self.data)}")
        object.__setattr__(self, "data", bytes(self.data))


@dataclass(frozen=True)
class NodeDigest:
    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != DIGEST_LEN:
            raise state_shape_mismatch(f"node digest must be {DIGEST_LEN} bytes, got {len(self.data)}")

    def hex(self) -> str:
        return self.data.hex()


@dataclass(frozen=True)
class Leaf:
    data: bytes


@dataclass(frozen=True)
class MerkleTreeDigest:
    data: bytes

    def hex(self) -> str:
        return self.data.hex()

    def __len__(self) -> int:
        return len(self.data)


EMPTY_NODE = NodeDigest(bytes(DIGEST_LEN))
EMPTY_POINT = Point(bytes(DIGEST_LEN))

StreamUpdate = Tuple[StreamID, Sequence[Point]]
Batch = Sequence[StreamUpdate]


def compute_merkle_tree(leaves: Iterable[Leaf]) -> MerkleTreeDigest:
    """Fold leaves into one digest: a single hash over their concatenation.

    No intermediate nodes are built; an empty sequence yields the hash of the
    empty input.
    """
    hasher = hashlib.sha256()
    for leaf in leaves:
        hasher.update(leaf.data)
    return MerkleTreeDigest(hasher.digest())


def counter_leaf(stream_id: StreamID, local_count: int, total: int) -> Leaf:
    hasher = hashlib.sha256()
    hasher.update(stream_id.encode())
    hasher.update(local_count.to_bytes(4, "big"))
    hasher.update(total.to_bytes(4, "big"))
    return Leaf(hasher.digest())


def chain_step(head: NodeDigest, point: Point) -> NodeDigest:
    hasher = hashlib.sha256()
    hasher.update(head.data)
    hasher.update(point.data)
    return NodeDigest(hasher.digest())


def fold_chain(points: Iterable[Point], head: NodeDigest = EMPTY_NODE) -> NodeDigest:
    for point in points:
        head = chain_step(head, point)
    return head
