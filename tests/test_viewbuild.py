import io
from dataclasses import dataclass, field

import pytest

from dcube.rbtree import AggregateTree
from dcube.records import AdcError, ErrorCode, get_rec_size, pack_record, unpack_record
from dcube.viewbuild import (
    MergeChunk,
    compute_memory_fitted_view,
    multi_way_merge,
    prefixed_aggregate,
    run_formation,
    shared_sort_aggregate,
    write_chunk,
    write_view_to_disk,
)

ROWS = [((k % 7 + 1,), (k % 5, k % 3, k)) for k in range(40)]


@dataclass
class Ctl:
    nd: int
    nm: int
    nv: int
    selection: list
    tree: AggregateTree
    memory_limit: int = 1 << 20
    n_rows_to_read: int = 0
    view_file: io.BytesIO = field(default_factory=io.BytesIO)
    chunks_file: io.BytesIO = field(default_factory=io.BytesIO)
    chunks: list = field(default_factory=list)
    m_sums: list = field(default_factory=list)
    checksums: list = field(default_factory=list)
    n_view_rows: int = 0
    total_of_view_rows: int = 0
    input_rows: list = field(default_factory=list)

    def __post_init__(self):
        self.m_sums = [0] * self.nm
        self.checksums = [0] * self.nm


def make_ctl(nd, nm, selection, tree_memory=1 << 20, **kwargs):
    nv = len(selection)
    return Ctl(nd, nm, nv, list(selection), AggregateTree(nv, nm, tree_memory), **kwargs)


def encode(rows):
    return b"".join(pack_record(m, d) for m, d in rows)


def decode(data, nd, nm):
    size = get_rec_size(nd, nm)
    return [unpack_record(data[i:i + size], nd, nm) for i in range(0, len(data), size)]


def direct_view(rows, nd, nm, selection):
    ctl = make_ctl(nd, nm, selection, n_rows_to_read=len(rows))
    run_formation(ctl, io.BytesIO(encode(rows)))
    write_view_to_disk(ctl, ctl.tree)
    return ctl


def test_write_chunk_layout():
    stream = io.BytesIO()
    count = write_chunk(stream, [((5,), (1, 2))], 16)
    assert count == 1
    assert stream.getvalue() == (
        b"\x05" + b"\x00" * 7 + b"\x01\x00\x00\x00\x02\x00\x00\x00"
    )


def test_write_chunk_rejects_wrong_size():
    with pytest.raises(AdcError) as info:
        write_chunk(io.BytesIO(), [((5,), (1, 2))], 12)
    assert info.value.code == ErrorCode.WRITE_FAILED


def test_write_view_to_disk_sums_and_checksums():
    ctl = make_ctl(1, 1, [1])
    rows = [((5,), (1,)), ((7,), (2,))]
    assert write_view_to_disk(ctl, rows) == 2
    assert ctl.view_file.getvalue() == encode(rows)
    assert ctl.m_sums == [12]
    assert ctl.checksums == [19]


def test_write_view_checksum_order_advances_per_measure():
    ctl = make_ctl(1, 2, [1])
    write_view_to_disk(ctl, [((3, 4), (1,))])
    assert ctl.checksums == [3, 8]


def test_run_formation_in_memory():
    ctl = make_ctl(3, 1, [1], n_rows_to_read=len(ROWS))
    assert run_formation(ctl, io.BytesIO(encode(ROWS))) == 0
    view = list(ctl.tree)
    assert [key for _m, key in view] == [(0,), (1,), (2,), (3,), (4,)]
    assert sum(m[0] for m, _k in view) == sum(m[0] for m, _d in ROWS)


def test_run_formation_short_input():
    ctl = make_ctl(3, 1, [1], n_rows_to_read=len(ROWS) + 1)
    with pytest.raises(AdcError):
        run_formation(ctl, io.BytesIO(encode(ROWS)))


@pytest.mark.parametrize("selection", [[1], [2, 1], [3], [1, 3]])
def test_spill_and_merge_matches_direct(selection):
    direct = direct_view(ROWS, 3, 1, selection)
    nv = len(selection)
    ctl = make_ctl(3, 1, selection, tree_memory=2 * AggregateTree(nv, 1, 0).node_size,
                   n_rows_to_read=len(ROWS))
    assert run_formation(ctl, io.BytesIO(encode(ROWS))) > 1
    written = multi_way_merge(ctl)
    assert written == len(direct.tree)
    assert ctl.n_view_rows == written
    assert ctl.total_of_view_rows == written
    assert ctl.view_file.getvalue() == direct.view_file.getvalue()
    assert ctl.m_sums == direct.m_sums
    assert ctl.checksums == direct.checksums


def test_merge_with_single_record_sub_chunks():
    direct = direct_view(ROWS, 3, 1, [2, 1])
    ctl = make_ctl(3, 1, [2, 1], tree_memory=96, n_rows_to_read=len(ROWS))
    run_formation(ctl, io.BytesIO(encode(ROWS)))
    ctl.memory_limit = get_rec_size(2, 1) * len(ctl.chunks)
    multi_way_merge(ctl)
    assert ctl.view_file.getvalue() == direct.view_file.getvalue()


def test_merge_without_chunks_fails():
    ctl = make_ctl(3, 1, [1])
    with pytest.raises(AdcError) as info:
        multi_way_merge(ctl)
    assert info.value.code == ErrorCode.INTERNAL_ERROR


def test_merge_without_memory_fails():
    ctl = make_ctl(3, 1, [3], tree_memory=80, n_rows_to_read=len(ROWS))
    run_formation(ctl, io.BytesIO(encode(ROWS)))
    ctl.memory_limit = 1
    with pytest.raises(AdcError):
        multi_way_merge(ctl)


def test_too_many_chunks():
    rows = [((1,), (k,)) for k in range(1100)]
    ctl = make_ctl(1, 1, [1], tree_memory=40, n_rows_to_read=len(rows))
    with pytest.raises(AdcError) as info:
        run_formation(ctl, io.BytesIO(encode(rows)))
    assert info.value.code == ErrorCode.INTERNAL_ERROR


def test_merge_chunk_refill():
    rows = ROWS[:3]
    stream = io.BytesIO(encode(rows))
    chunk = MergeChunk(3, 0)
    assert chunk.refill(stream, 3, 1, 2) == 2
    assert list(chunk.buffer) == rows[:2]
    assert chunk.count == 1
    assert chunk.refill(stream, 3, 1, 2) == 1
    assert list(chunk.buffer) == rows
    chunk.buffer.clear()
    assert chunk.exhausted


def test_prefixed_aggregate_matches_direct():
    parent = sorted(ROWS, key=lambda r: r[1])
    data = encode(parent)
    direct = direct_view(parent, 3, 1, [1])
    ctl = make_ctl(3, 1, [1], n_rows_to_read=len(parent))
    stream = io.BytesIO(data)
    written = prefixed_aggregate(ctl, stream)
    assert written == len(direct.tree)
    assert stream.getvalue()[:len(data)] == data
    assert stream.getvalue()[len(data):] == direct.view_file.getvalue()
    assert ctl.m_sums == direct.m_sums
    assert ctl.checksums == direct.checksums


def test_prefixed_aggregate_with_flushes():
    parent = sorted(ROWS, key=lambda r: r[1])
    data = encode(parent)
    direct = direct_view(parent, 3, 1, [1, 2])
    ctl = make_ctl(3, 1, [1, 2], n_rows_to_read=len(parent),
                   memory_limit=2 * get_rec_size(2, 1))
    stream = io.BytesIO(data)
    written = prefixed_aggregate(ctl, stream)
    assert written == len(direct.tree)
    assert stream.getvalue()[len(data):] == direct.view_file.getvalue()
    assert ctl.m_sums == direct.m_sums


def test_prefixed_aggregate_rejects_unsorted_parent():
    parent = [((1,), (2, 0, 0)), ((1,), (1, 0, 0))]
    ctl = make_ctl(3, 1, [1], n_rows_to_read=2)
    with pytest.raises(AdcError):
        prefixed_aggregate(ctl, io.BytesIO(encode(parent)))


@pytest.mark.parametrize("tree_memory", [1 << 20, 96])
def test_shared_sort_matches_direct(tree_memory):
    parent = sorted(ROWS, key=lambda r: r[1][0])
    data = encode(parent)
    direct = direct_view(parent, 3, 1, [1, 3])
    ctl = make_ctl(3, 1, [1, 3], tree_memory=tree_memory, n_rows_to_read=len(parent))
    ctl.view_file = io.BytesIO(data)
    rows = shared_sort_aggregate(ctl)
    assert rows == len(direct.tree)
    assert ctl.n_view_rows == rows
    assert ctl.view_file.getvalue()[len(data):] == direct.view_file.getvalue()
    assert ctl.m_sums == direct.m_sums


def test_compute_memory_fitted_view():
    direct = direct_view(ROWS, 3, 1, [2])
    ctl = make_ctl(3, 1, [2], n_rows_to_read=len(ROWS), input_rows=list(ROWS))
    rows = compute_memory_fitted_view(ctl)
    assert rows == len(direct.tree)
    assert ctl.total_of_view_rows == rows
    assert len(ctl.tree) == 0
    assert ctl.checksums == direct.checksums
    assert ctl.view_file.getvalue() == b""


def test_compute_memory_fitted_view_out_of_memory():
    ctl = make_ctl(3, 1, [3], tree_memory=80, n_rows_to_read=len(ROWS),
                   input_rows=list(ROWS))
    with pytest.raises(AdcError) as info:
        compute_memory_fitted_view(ctl)
    assert info.value.code == ErrorCode.MEMORY_ALLOCATION_FAILURE