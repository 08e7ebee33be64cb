from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False)
class AccumulatorError(ValueError):
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(eq=False)
class CounterOverflowError(AccumulatorError):
    """A batch-local or running counter left the unsigned 32-bit range."""


def invalid_stream_id(value: object) -> AccumulatorError:
    return AccumulatorError("ACC_INVALID_STREAM_ID", f"stream id must be an unsigned 32-bit int, got {value!r}")


def invalid_point(message: str) -> AccumulatorError:
    return AccumulatorError("ACC_INVALID_POINT", message)


def state_shape_mismatch(message: str) -> AccumulatorError:
    return AccumulatorError("ACC_STATE_SHAPE_MISMATCH", message)
