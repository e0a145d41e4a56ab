"""Record layout, error codes and small helpers shared by the view builder.

A record holds ``nm`` signed 64-bit measures followed by ``nd`` unsigned
32-bit dimension attributes, stored little-endian.
"""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import Sequence

DIM_FSZ = 4
MSR_FSZ = 8

MAX_NUM_OF_DIMS = 20
MAX_NUM_OF_MEAS = 4
MAX_NUM_OF_CHUNKS = 1024
MAX_NUMBER_OF_TASKS = 256
MAX_PARAM_LINE_SIZE = 1024
SSA_BUFFER_SIZE = 1024 * 1024

MAX_VIEW_REC_SIZE = DIM_FSZ * MAX_NUM_OF_DIMS + MSR_FSZ * MAX_NUM_OF_MEAS
MAX_VIEW_ROW_SIZE_IN_INTS = MAX_NUM_OF_DIMS + 2 * MAX_NUM_OF_MEAS

MLB32 = 0x80000000
MLB = 0x8000000000000000


class ErrorCode(IntEnum):
    """Status codes reported by the data cube operations."""

    OK = 0
    WRITE_FAILED = 1
    INTERNAL_ERROR = 2
    TREE_DESTROY_FAILURE = 3
    FILE_OPEN_FAILURE = 4
    MEMORY_ALLOCATION_FAILURE = 5
    FILE_DELETE_FAILURE = 6
    VERIFICATION_FAILED = 7
    SHMEMORY_FAILURE = 8


class AdcError(Exception):
    """Failure of a data cube operation, carrying an :class:`ErrorCode`."""

    def __init__(self, message: str, code: ErrorCode | int = ErrorCode.INTERNAL_ERROR):
        super().__init__(message)
        self.code = ErrorCode(code)


def get_rec_size(nd: int, nm: int) -> int:
    """Size in bytes of a record with ``nd`` dimensions and ``nm`` measures."""
    return DIM_FSZ * nd + MSR_FSZ * nm


def key_comp(a: Sequence[int], b: Sequence[int]) -> int:
    """Compare two keys lexicographically, returning -1, 0 or 1."""
    ta, tb = tuple(a), tuple(b)
    return (ta > tb) - (ta < tb)


def select_to_view(
    measures: Sequence[int], dims: Sequence[int], selection: Sequence[int]
) -> tuple[tuple[int, ...], tuple[int, ...]]:
    """Project a row onto the 1-based dimension positions in ``selection``."""
    picked = []
    for position in selection:
        if not 1 <= position <= len(dims):
            raise ValueError(
                f"selection position {position} outside 1..{len(dims)}"
            )
        picked.append(dims[position - 1])
    return tuple(measures), tuple(picked)


def _record_format(nd: int, nm: int) -> str:
    return f"<{nm}q{nd}I"


def pack_record(measures: Sequence[int], dims: Sequence[int]) -> bytes:
    """Encode measures and dimension attributes as one binary record."""
    try:
        return struct.pack(_record_format(len(dims), len(measures)), *measures, *dims)
    except struct.error as exc:
        raise ValueError(f"cannot pack record: {exc}") from exc


def unpack_record(data: bytes, nd: int, nm: int) -> tuple[tuple[int, ...], tuple[int, ...]]:
    """Decode a binary record into ``(measures, dims)``."""
    expected = get_rec_size(nd, nm)
    if len(data) != expected:
        raise ValueError(f"record of {len(data)} bytes, expected {expected}")
    values = struct.unpack(_record_format(nd, nm), data)
    return tuple(values[:nm]), tuple(values[nm:])


def adc_file_name(adc_name: str, file_name: str, task_number: int) -> str:
    """Name of a per-task work file: ``<adc_name>.<file_name>.<task_number>``."""
    return f"{adc_name}.{file_name}.{task_number}"