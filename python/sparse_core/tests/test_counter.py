from __future__ import annotations

import contextlib
import hashlib
import logging
from collections.abc import Sequence

import pytest

from sparse_core.core.accumulator import CounterSparseNode
from sparse_core.core.digest import DIGEST_LEN, EMPTY_POINT, StreamID, compute_merkle_tree
from sparse_core.core.errors import AccumulatorError, CounterOverflowError


def _leaf(stream_id: int, local: int, total: int) -> bytes:
    return hashlib.sha256(
        stream_id.to_bytes(4, "big") + local.to_bytes(4, "big") + total.to_bytes(4, "big")
    ).digest()


class _OversizedPoints(Sequence):
    def __len__(self) -> int:
        return 2**32

    def __getitem__(self, index):
        raise AssertionError("points must not be read once the count overflows")


def test_counter_sparse_node_tracks_counts_across_batches() -> None:
    counters = CounterSparseNode()
    digest1 = counters.update(
        [
            (StreamID(0), [EMPTY_POINT, EMPTY_POINT]),
            (StreamID(1), [EMPTY_POINT]),
        ]
    )
    assert len(digest1) == DIGEST_LEN
    assert counters.counts == {StreamID(0): 2, StreamID(1): 1}

    digest2 = counters.update(
        [
            (StreamID(0), [EMPTY_POINT]),
            (StreamID(2), [EMPTY_POINT, EMPTY_POINT]),
        ]
    )
    assert len(digest2) == DIGEST_LEN
    assert len(counters.counts) == 3
    assert counters.counts == {StreamID(0): 3, StreamID(1): 1, StreamID(2): 2}


def test_digest_commits_to_id_local_count_and_total() -> None:
    counters = CounterSparseNode()
    counters.update([(StreamID(0), [EMPTY_POINT, EMPTY_POINT]), (StreamID(1), [EMPTY_POINT])])
    digest = counters.update([(StreamID(0), [EMPTY_POINT]), (StreamID(2), [EMPTY_POINT, EMPTY_POINT])])

    assert digest.data == hashlib.sha256(_leaf(0, 1, 3) + _leaf(2, 2, 2)).digest()


def test_untouched_streams_keep_state_and_add_no_leaf() -> None:
    counters = CounterSparseNode()
    counters.update([(StreamID(1), [EMPTY_POINT] * 4)])
    digest = counters.update([(StreamID(2), [EMPTY_POINT])])

    assert counters.count(StreamID(1)) == 4
    assert digest.data == hashlib.sha256(_leaf(2, 1, 1)).digest()


def test_empty_entry_still_emits_leaf() -> None:
    counters = CounterSparseNode()
    counters.update([(StreamID(3), [EMPTY_POINT])])
    digest = counters.update([(StreamID(3), [])])

    assert counters.count(StreamID(3)) == 1
    assert digest.data == hashlib.sha256(_leaf(3, 0, 1)).digest()


def test_empty_batch_returns_empty_aggregate_and_mutates_nothing() -> None:
    counters = CounterSparseNode()
    counters.update([(StreamID(0), [EMPTY_POINT])])
    digest = counters.update([])

    assert digest == compute_merkle_tree([])
    assert counters.counts == {StreamID(0): 1}


def test_counter_is_monotonic() -> None:
    counters = CounterSparseNode()
    previous = 0
    for size in [0, 3, 1, 0, 5]:
        counters.update([(StreamID(9), [EMPTY_POINT] * size)])
        assert counters.count(StreamID(9)) == previous + size
        previous += size


def test_update_is_deterministic_for_equal_inputs() -> None:
    batches = [
        [(StreamID(0), [EMPTY_POINT]), (StreamID(5), [EMPTY_POINT] * 3)],
        [(StreamID(5), []), (StreamID(1), [EMPTY_POINT])],
    ]
    first = [CounterSparseNode().update(b) for b in batches[:1]]
    runs = []
    for _ in range(5):
        counters = CounterSparseNode()
        runs.append([counters.update(b) for b in batches])
    assert all(run == runs[0] for run in runs)
    assert runs[0][0] == first[0]


def test_repeated_stream_in_one_batch_reads_its_own_write() -> None:
    counters = CounterSparseNode()
    digest = counters.update([(StreamID(4), [EMPTY_POINT]), (StreamID(4), [EMPTY_POINT, EMPTY_POINT])])

    assert counters.count(StreamID(4)) == 3
    assert digest.data == hashlib.sha256(_leaf(4, 1, 1) + _leaf(4, 2, 3)).digest()


def test_accepts_plain_ints_and_bytes() -> None:
    counters = CounterSparseNode()
    assert counters.update([(0, [bytes(32)])]) == CounterSparseNode().update([(StreamID(0), [EMPTY_POINT])])


def test_local_count_overflow_is_rejected() -> None:
    counters = CounterSparseNode()
    with pytest.raises(CounterOverflowError) as exc:
        counters.update([(StreamID(0), _OversizedPoints())])
    assert exc.value.code == "ACC_LOCAL_COUNT_OVERFLOW"
    assert counters.counts == {}


def test_total_overflow_rolls_back_whole_batch(caplog) -> None:
    counters = CounterSparseNode()
    counters.store.set(StreamID(1), (0xFFFFFFFF).to_bytes(4, "big"))

    with caplog.at_level(logging.WARNING, logger="sparse_core.core.accumulator"):
        with pytest.raises(CounterOverflowError) as exc:
            counters.update([(StreamID(0), [EMPTY_POINT]), (StreamID(1), [EMPTY_POINT])])

    assert exc.value.code == "ACC_TOTAL_COUNT_OVERFLOW"
    assert counters.count(StreamID(0)) == 0
    assert counters.count(StreamID(1)) == 0xFFFFFFFF
    assert caplog.records[-1].code == "ACC_TOTAL_COUNT_OVERFLOW"
    assert caplog.records[-1].entry_index == 1


def test_invalid_point_leaves_state_untouched() -> None:
    counters = CounterSparseNode()
    with pytest.raises(AccumulatorError) as exc:
        counters.update([(StreamID(0), [EMPTY_POINT]), (StreamID(1), [b"short"])])
    assert exc.value.code == "ACC_INVALID_POINT"
    assert counters.counts == {}


@contextlib.contextmanager
def _batch_scope():
    yield


def test_overflow_propagates_through_generator_context_manager() -> None:
    counters = CounterSparseNode()
    counters.store.set(StreamID(0), (0xFFFFFFFF).to_bytes(4, "big"))

    with pytest.raises(CounterOverflowError) as exc:
        with _batch_scope():
            counters.update([(StreamID(0), [EMPTY_POINT])])

    assert exc.value.code == "ACC_TOTAL_COUNT_OVERFLOW"
    assert counters.count(StreamID(0)) == 0xFFFFFFFF
