"""Building single views: run formation, external merge and aggregation.

Every function works on a view control object ``ctl`` that exposes:

* ``nd``, ``nm``, ``nv``: dimensions of the parent rows, measures, and
  dimensions of the view being built;
* ``selection``: 1-based positions, within a parent row, of the view's dimensions;
* ``tree``: an :class:`~dcube.rbtree.AggregateTree`;
* ``view_file`` and ``chunks_file``: seekable binary streams;
* ``chunks``: a list of :class:`MergeChunk`;
* ``memory_limit`` and ``n_rows_to_read``;
* ``m_sums`` and ``checksums``: one running value per measure;
* ``n_view_rows`` and ``total_of_view_rows``;
* ``input_rows``: the whole input as ``(measures, dims)`` pairs, for in-core builds.

Records are read from a stream starting at its current position. View rows
are always appended at the end of ``view_file``.
"""

from __future__ import annotations

import heapq
import io
import struct
from collections import deque
from dataclasses import dataclass, field
from functools import lru_cache
from itertools import islice
from typing import BinaryIO, Iterable, Iterator, Protocol, Sequence

from dcube.adcgen import MEASURE_BOUND
from dcube.rbtree import AggregateTree
from dcube.records import (
    MAX_NUM_OF_CHUNKS,
    SSA_BUFFER_SIZE,
    AdcError,
    ErrorCode,
    get_rec_size,
    key_comp,
    pack_record,
    select_to_view,
)

Row = tuple[tuple[int, ...], tuple[int, ...]]


class _ViewState(Protocol):
    nd: int
    nm: int
    nv: int
    selection: Sequence[int]
    tree: AggregateTree
    view_file: BinaryIO
    chunks_file: BinaryIO
    chunks: list["MergeChunk"]
    memory_limit: int
    n_rows_to_read: int
    m_sums: list[int]
    checksums: list[int]
    n_view_rows: int
    total_of_view_rows: int
    input_rows: Sequence[Row]


@lru_cache(maxsize=None)
def _record_struct(nd: int, nm: int) -> struct.Struct:
    return struct.Struct(f"<{nm}q{nd}I")


def _read_exact(stream: BinaryIO, count: int, nd: int, nm: int) -> list[Row]:
    layout = _record_struct(nd, nm)
    wanted = count * layout.size
    data = stream.read(wanted)
    if len(data) != wanted:
        raise AdcError(
            f"unexpected end of data: read {len(data)} of {wanted} bytes",
            ErrorCode.INTERNAL_ERROR,
        )
    return [(values[:nm], values[nm:]) for values in layout.iter_unpack(data)]


def _iter_records(
    stream: BinaryIO, count: int, nd: int, nm: int, batch: int | None = None
) -> Iterator[Row]:
    """Read ``count`` records in batches, resuming where the last batch ended.

    The stream may be written to between batches; the read position is kept
    here and restored before each batch.
    """
    size = get_rec_size(nd, nm)
    if batch is None:
        batch = max(1, SSA_BUFFER_SIZE // max(size, 1))
    position = stream.tell()
    remaining = count
    while remaining > 0:
        n = min(batch, remaining)
        stream.seek(position)
        rows = _read_exact(stream, n, nd, nm)
        position = stream.tell()
        remaining -= n
        yield from rows


def _write(stream: BinaryIO, data: bytes) -> None:
    try:
        written = stream.write(data)
    except OSError as exc:
        raise AdcError(f"write error: {exc}", ErrorCode.WRITE_FAILED) from exc
    if written is not None and written != len(data):
        raise AdcError("write error: short write", ErrorCode.WRITE_FAILED)


def _accumulate(ctl: _ViewState, measures: Sequence[int], order: int) -> None:
    for i, value in enumerate(measures):
        ctl.m_sums[i] += value
        ctl.checksums[i] += order * value % MEASURE_BOUND


def _write_rows(ctl: _ViewState, rows: Iterable[Row], ordern: int) -> tuple[int, int]:
    """Append rows to the view file; the checksum order advances per measure."""
    out = ctl.view_file
    out.seek(0, io.SEEK_END)
    count = 0
    for measures, key in rows:
        for i, value in enumerate(measures):
            ctl.m_sums[i] += value
            ordern += 1
            ctl.checksums[i] += ordern * value % MEASURE_BOUND
        _write(out, pack_record(measures, key))
        count += 1
    return ordern, count


@dataclass
class MergeChunk:
    """A sorted run on the chunks file and the part of it read into memory."""

    count: int
    offset: int
    buffer: deque = field(default_factory=deque)

    def refill(self, stream: BinaryIO, nd: int, nm: int, limit: int) -> int:
        """Read up to ``limit`` more records of this run; return how many."""
        n = min(limit, self.count)
        if n <= 0:
            return 0
        stream.seek(self.offset)
        self.buffer.extend(_read_exact(stream, n, nd, nm))
        self.count -= n
        self.offset += n * get_rec_size(nd, nm)
        return n

    @property
    def exhausted(self) -> bool:
        """True once every record of the run has been taken."""
        return not self.buffer and self.count == 0


def write_chunk(stream: BinaryIO, rows: Iterable[Row], record_size: int) -> int:
    """Write rows as fixed-size records at the stream's position; return the count."""
    count = 0
    for measures, key in rows:
        data = pack_record(measures, key)
        if len(data) != record_size:
            raise AdcError(
                f"record of {len(data)} bytes, expected {record_size}",
                ErrorCode.WRITE_FAILED,
            )
        _write(stream, data)
        count += 1
    return count


def write_view_to_disk(ctl: _ViewState, rows: Iterable[Row]) -> int:
    """Append view rows to the view file, updating sums and checksums."""
    _ordern, count = _write_rows(ctl, rows, 0)
    return count


def _spill(ctl: _ViewState, offset: int) -> int:
    tree = ctl.tree
    n = len(tree)
    ctl.chunks.append(MergeChunk(n, offset))
    if len(ctl.chunks) >= MAX_NUM_OF_CHUNKS:
        raise AdcError("Too many chunks were created.", ErrorCode.INTERNAL_ERROR)
    record_size = get_rec_size(ctl.nv, ctl.nm)
    ctl.chunks_file.seek(offset)
    write_chunk(ctl.chunks_file, tree, record_size)
    tree.reset(ctl.nv, ctl.nm)
    return offset + n * record_size


def run_formation(ctl: _ViewState, source: BinaryIO) -> int:
    """Aggregate ``n_rows_to_read`` rows of ``source`` into the tree.

    Whenever the tree fills, it is written out as a sorted run on the chunks
    file. Returns the number of runs; with none, the view is in the tree.
    """
    tree = ctl.tree
    tree.reset(ctl.nv, ctl.nm)
    ctl.chunks.clear()
    offset = 0
    for measures, dims in _iter_records(source, ctl.n_rows_to_read, ctl.nd, ctl.nm):
        view_measures, key = select_to_view(measures, dims, ctl.selection)
        tree.insert(view_measures, key)
        if tree.memory_is_full:
            offset = _spill(ctl, offset)
    if ctl.chunks and len(tree):
        _spill(ctl, offset)
    ctl.view_file.seek(0, io.SEEK_END)
    return len(ctl.chunks)


def _merge_chunks(ctl: _ViewState) -> int:
    chunks = ctl.chunks
    if not chunks:
        raise AdcError("MultiWayMerge: no chunks to merge", ErrorCode.INTERNAL_ERROR)
    record_size = get_rec_size(ctl.nv, ctl.nm)
    sub_chunk = (ctl.memory_limit // len(chunks)) // record_size
    if sub_chunk == 0:
        raise AdcError(
            "MultiWayMerge: Not enough memory to run the external sort",
            ErrorCode.INTERNAL_ERROR,
        )

    source = ctl.chunks_file
    heap: list[tuple[tuple[int, ...], int, tuple[int, ...]]] = []
    for index, chunk in enumerate(chunks):
        chunk.refill(source, ctl.nv, ctl.nm, sub_chunk)
        if chunk.buffer:
            measures, key = chunk.buffer.popleft()
            heap.append((key, index, measures))
    heapq.heapify(heap)

    out = ctl.view_file
    out.seek(0, io.SEEK_END)
    written = 0
    current_measures: list[int] | None = None
    current_key: tuple[int, ...] = ()

    def emit() -> None:
        nonlocal written
        written += 1
        _accumulate(ctl, current_measures, written)
        _write(out, pack_record(current_measures, current_key))

    while heap:
        key, index, measures = heapq.heappop(heap)
        chunk = chunks[index]
        if not chunk.buffer:
            chunk.refill(source, ctl.nv, ctl.nm, sub_chunk)
        if chunk.buffer:
            next_measures, next_key = chunk.buffer.popleft()
            heapq.heappush(heap, (next_key, index, next_measures))

        if current_measures is None:
            current_measures, current_key = list(measures), key
        elif key == current_key:
            for i, value in enumerate(measures):
                current_measures[i] += value
        else:
            emit()
            current_measures, current_key = list(measures), key

    if current_measures is not None:
        emit()
    return written


def multi_way_merge(ctl: _ViewState) -> int:
    """Merge the sorted runs into the view file, adding up duplicate keys.

    Returns the number of view rows written.
    """
    written = _merge_chunks(ctl)
    ctl.n_view_rows = written
    ctl.total_of_view_rows += written
    return written


def prefixed_aggregate(ctl: _ViewState, stream: BinaryIO) -> int:
    """Build a view from a parent already sorted on the view's key.

    Equal consecutive keys are added up; the result is appended to ``stream``
    through an output buffer of ``memory_limit`` bytes. The checksum order
    counts rows within the current buffer.
    """
    record_size = get_rec_size(ctl.nv, ctl.nm)
    buffer_limit = ctl.memory_limit // record_size
    pending: list[bytes] = []
    flushed = 0
    aggr_measures: list[int] | None = None
    aggr_key: tuple[int, ...] = ()

    def flush() -> None:
        nonlocal flushed, pending
        stream.seek(0, io.SEEK_END)
        _write(stream, b"".join(pending))
        flushed += len(pending)
        pending = []

    def close_group() -> None:
        pending.append(pack_record(aggr_measures, aggr_key))
        _accumulate(ctl, aggr_measures, len(pending))

    for measures, dims in _iter_records(stream, ctl.n_rows_to_read, ctl.nd, ctl.nm):
        view_measures, key = select_to_view(measures, dims, ctl.selection)
        if aggr_measures is None:
            aggr_measures, aggr_key = list(view_measures), key
            continue
        order = key_comp(key, aggr_key)
        if order > 0:
            close_group()
            aggr_measures, aggr_key = list(view_measures), key
        elif order == 0:
            for i, value in enumerate(view_measures):
                aggr_measures[i] += value
        else:
            raise AdcError(
                "PrefixedAggregate: wrong parent view order.", ErrorCode.INTERNAL_ERROR
            )
        if pending and len(pending) == buffer_limit:
            flush()

    if aggr_measures is not None:
        close_group()
    if pending:
        flush()
    ctl.n_view_rows = flushed
    ctl.total_of_view_rows += flushed
    return flushed


def shared_sort_aggregate(ctl: _ViewState) -> int:
    """Build a view from a parent sorted on the view's first dimension.

    The parent is read from ``view_file`` at its current position. Each run of
    equal first-dimension values is sorted on its own, spilling to the chunks
    file and merging when it does not fit in the tree.
    """
    if ctl.nv < 1:
        raise ValueError("shared-sort aggregation needs at least one view dimension")
    tree = ctl.tree
    tree.reset(ctl.nv, ctl.nm)
    ctl.chunks.clear()
    segment = max(1, SSA_BUFFER_SIZE // get_rec_size(ctl.nd, ctl.nm))
    offset = 0
    ordern = 0
    rows = 0
    previous: int | None = None

    def finish_partition() -> None:
        nonlocal offset, ordern, rows
        if ctl.chunks:
            if len(tree):
                _spill(ctl, offset)
            rows += _merge_chunks(ctl)
            ctl.chunks.clear()
            offset = 0
        else:
            ordern, count = _write_rows(ctl, tree, ordern)
            rows += count
        tree.reset(ctl.nv, ctl.nm)

    records = _iter_records(ctl.view_file, ctl.n_rows_to_read, ctl.nd, ctl.nm, segment)
    for measures, dims in records:
        view_measures, key = select_to_view(measures, dims, ctl.selection)
        part = key[0]
        if previous is not None and part != previous:
            finish_partition()
        tree.insert(view_measures, key)
        if tree.memory_is_full:
            offset = _spill(ctl, offset)
        previous = part

    if previous is not None:
        finish_partition()
    ctl.chunks_file.seek(0)
    ctl.n_view_rows = rows
    ctl.total_of_view_rows += rows
    return rows


def compute_memory_fitted_view(ctl: _ViewState) -> int:
    """Build a view from the in-core input, computing only its checksums.

    The whole view must fit in the tree. Returns the number of view rows.
    """
    tree = ctl.tree
    tree.reset(ctl.nv, ctl.nm)
    for measures, dims in islice(ctl.input_rows, ctl.n_rows_to_read):
        view_measures, key = select_to_view(measures, dims, ctl.selection)
        tree.insert(view_measures, key)
        if tree.memory_is_full:
            raise AdcError(
                "ComputeMemoryFittedView(): Not enough memory.",
                ErrorCode.MEMORY_ALLOCATION_FAILURE,
            )
    ordern = 0
    for measures, _key in tree:
        for i, value in enumerate(measures):
            ordern += 1
            ctl.checksums[i] += ordern * value % MEASURE_BOUND
    ctl.n_view_rows = len(tree)
    ctl.total_of_view_rows += ctl.n_view_rows
    tree.reset(ctl.nv, ctl.nm)
    return ctl.n_view_rows