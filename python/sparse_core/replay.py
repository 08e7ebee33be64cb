from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, List

from jsonschema import Draft202012Validator

from sparse_core.core.accumulator import StreamUpdater
from sparse_core.core.digest import MerkleTreeDigest, Point, StreamID, StreamUpdate
from sparse_core.core.errors import AccumulatorError

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class BatchFormatError(ValueError):
    line: int
    message: str

    def __str__(self) -> str:
        return f"line {self.line}: {self.message}"


class BatchValidator:
    def __init__(self, schema_path: str) -> None:
        schema = json.loads(Path(schema_path).read_text())
        self._validator = Draft202012Validator(schema)

    def parse(self, record: dict[str, Any], line: int = 0) -> List[StreamUpdate]:
        errors = sorted(self._validator.iter_errors(record), key=lambda e: [str(p) for p in e.path])
        if errors:
            raise BatchFormatError(line, f"schema validation failed: {errors[0].message}")
        try:
            return [
                (StreamID(entry["stream_id"]), [Point(bytes.fromhex(p)) for p in entry["points"]])
                for entry in record["updates"]
            ]
        except AccumulatorError as err:
            raise BatchFormatError(line, err.message) from err


def load_batches(path: Path, validator: BatchValidator) -> List[List[StreamUpdate]]:
    batches: List[List[StreamUpdate]] = []
    for number, text in enumerate(path.read_text().splitlines(), start=1):
        if not text.strip():
            continue
        try:
            record = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BatchFormatError(number, f"invalid json: {exc.msg}") from exc
        batches.append(validator.parse(record, line=number))
    return batches


def replay(accumulator: StreamUpdater, batches: Iterable[List[StreamUpdate]]) -> List[MerkleTreeDigest]:
    return [accumulator.update(batch) for batch in batches]


def digests_are_stable(
    factory: Callable[[], StreamUpdater], batches: List[List[StreamUpdate]], runs: int
) -> bool:
    """Replay ``batches`` ``runs`` times on fresh accumulators and compare digest sequences."""
    if runs < 1:
        raise ValueError(f"runs must be at least 1, got {runs}")
    sequences = {tuple(d.data for d in replay(factory(), batches)) for _ in range(runs)}
    if len(sequences) != 1:
        logger.error("non-deterministic replay", extra={"runs": runs, "distinct": len(sequences)})
        return False
    return True
