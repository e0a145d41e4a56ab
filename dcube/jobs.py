"""Planning of the group-bys: bit helpers, parent selection and task partitioning.

Group-bys are bit sets of dimensions. In 64-bit form dimension ``i`` (1-based)
is the bit ``MLB >> (i - 1)``; the 32-bit form used for parent lookup keeps
the same left alignment within 32 bits.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterable, NamedTuple, Sequence, TypeVar

from dcube.records import MAX_NUMBER_OF_TASKS, MLB, MLB32

MASK32 = 0xFFFFFFFF
MASK64 = 0xFFFFFFFFFFFFFFFF

_T = TypeVar("_T")


class ParentKind(IntEnum):
    """How a view is derived from an already computed one."""

    SMALLEST = 0
    PREFIXED = 1
    SHARED_SORT = 2
    NONE = 3


@dataclass(frozen=True)
class ParentChoice:
    """The parent chosen for a view; ``kind`` is NONE when there is none."""

    kind: ParentKind
    level: int = 0
    view_offset: int = 0
    n_rows: int = 0
    groupby: int = 0


class _Job(NamedTuple):
    grpb: int
    nv: int
    n_rows: int
    view_offset: int


def set_one_bit(s: int, pos: int) -> int:
    """Return ``s`` with the 64-bit position ``pos`` (0 = most significant) set."""
    if not 0 <= pos < 64:
        raise ValueError(f"bit position {pos} outside 0..63")
    return (s | (MLB >> pos)) & MASK64


def mlo32(x: int) -> int:
    """Number of leading zero bits of a 32-bit value (32 for zero)."""
    return 32 - (x & MASK32).bit_length()


def mro32(x: int) -> int:
    """1-based position, from the left, of the rightmost set bit (0 for zero)."""
    x &= MASK32
    if x == 0:
        return 0
    return 32 - ((x & -x).bit_length() - 1)


def set_leading_ones32(n: int) -> int:
    """A 32-bit value whose ``n`` leading bits are set."""
    if n < 0:
        raise ValueError("count of leading ones must not be negative")
    n = min(n, 32)
    return ((1 << n) - 1) << (32 - n)


def number_of_ones(s: int) -> int:
    """Number of set bits in a 64-bit value."""
    return bin(s & MASK64).count("1")


def num_of_combs(n: int, k: int) -> int:
    """Number of ways to choose ``k`` of ``n``; zero when ``k > n``."""
    if k > n:
        return 0
    return math.comb(n, k)


def reg_tuple_from_bin64(bin_rep: int, num_dims: int) -> list[int]:
    """The 1-based dimensions selected by a 64-bit group-by."""
    return [i + 1 for i in range(num_dims) if bin_rep & (MLB >> i)]


def reg_tuple_from_parent(bin64: int, bin32: int, nd: int) -> list[int]:
    """Positions, within the parent ``bin32``, of the dimensions of ``bin64``."""
    child = ((bin64 & MASK64) >> (64 - nd)) & MASK32
    child = (child << (32 - nd)) & MASK32
    positions = []
    k = 0
    for i in range(nd):
        bit = MLB32 >> i
        if bin32 & bit:
            k += 1
            if child & bit:
                positions.append(k)
    return positions


def create_bin_tuple(selection: Iterable[int]) -> int:
    """The 64-bit group-by of 1-based dimensions."""
    result = 0
    for dim in selection:
        result = set_one_bit(result, dim - 1)
    return result


def format_tuple32(s: int, length: int) -> str:
    """The first ``length`` bits of a 32-bit group-by as a string of 0 and 1."""
    return "".join("1" if s & (MLB32 >> i) else "0" for i in range(length))


def count_tuple_ones(bin_rep: int, num_dims: int) -> int:
    """Number of set bits among the low ``num_dims`` bits."""
    return bin(bin_rep & ((1 << num_dims) - 1)).count("1")


_LEADING_INT = re.compile(r"\s*[+-]?\d+")


def _atoi(token: str) -> int:
    match = _LEADING_INT.match(token)
    return int(match.group()) if match else 0


def parse_view_sizes(text: str) -> list[tuple[int, int]]:
    """Read a view size listing into ``(group-by, size)`` pairs in file order."""
    tokens = iter(text.split())
    result: list[tuple[int, int]] = []
    selection: list[int] = []
    for token in tokens:
        if token == "Selection:":
            for token in tokens:
                if token == "View":
                    break
                selection.append(_atoi(token))
        if token == "Size:":
            size = _atoi(next(tokens, ""))
            result.append((create_bin_tuple(selection), size))
            selection = []
    return result


def _restore(items: list, key: Callable, first: int, last: int) -> None:
    j = first
    half = last >> 1
    while j <= half:
        tj = 2 * j
        m = tj + 1 if tj < last and key(items[tj - 1]) < key(items[tj]) else tj
        if key(items[m - 1]) > key(items[j - 1]):
            items[m - 1], items[j - 1] = items[j - 1], items[m - 1]
            j = m
        else:
            j = last


def _heap_sort(items: list[_T], key: Callable[[_T], int]) -> None:
    n = len(items)
    for i in range(n >> 1, 0, -1):
        _restore(items, key, i, n)
    for i in range(n, 1, -1):
        items[0], items[i - 1] = items[i - 1], items[0]
        _restore(items, key, 1, i - 1)


def multi_file_proc_jobs(
    tuples_and_sizes: Sequence[tuple[int, int]],
    n_tasks: int,
    task_number: int,
    n_top_dims: int,
) -> list[int]:
    """Deal the views to tasks and return this task's 64-bit group-bys.

    ``tuples_and_sizes`` holds right-aligned ``(group-by, size)`` pairs sorted
    by size. Views are dealt from the largest back and forth across the
    tasks; a task's views come out with the most dimensions first.
    """
    if not 1 <= n_tasks <= MAX_NUMBER_OF_TASKS:
        raise ValueError(f"task count {n_tasks} outside 1..{MAX_NUMBER_OF_TASKS}")
    if not 0 <= task_number < n_tasks:
        raise ValueError(f"task number {task_number} outside 0..{n_tasks - 1}")

    mine: list[int] = []
    pn = 0
    forward = True
    for tup, _size in reversed(tuples_and_sizes):
        if pn == task_number:
            mine.append(tup)
        turned = False
        if forward and pn == n_tasks - 1:
            forward, turned = False, True
        if not forward and pn == 0:
            forward, turned = True, True
        if not turned:
            pn += 1 if forward else -1

    ones = [(count_tuple_ones(t, n_top_dims), t) for t in mine]
    _heap_sort(ones, key=lambda item: item[0])
    shift = 64 - n_top_dims
    return [(t << shift) & MASK64 for _n, t in reversed(ones)]


def partition_cube(
    text: str, n_top_dims: int, n_input_recs: int, n_tasks: int, task_number: int
) -> list[int]:
    """Group-bys this task computes, from a view size listing, in build order."""
    pairs = [(t, min(size, n_input_recs)) for t, size in parse_view_sizes(text)]
    _heap_sort(pairs, key=lambda item: item[1])
    shift = 64 - n_top_dims
    shifted = [(t >> shift, size) for t, size in pairs]
    return multi_file_proc_jobs(shifted, n_tasks, task_number, n_top_dims)


def _best(jobs: Iterable[_Job]) -> _Job | None:
    best = None
    for job in jobs:
        if best is None or job.n_rows < best.n_rows:
            best = job
    return best


class JobPool:
    """Views computed so far, grouped by their number of dimensions."""

    def __init__(self, nd: int):
        if nd < 0:
            raise ValueError("dimension count must not be negative")
        self.nd = nd
        self.limits = [num_of_combs(nd, level) for level in range(nd + 1)]
        self.layers: list[list[_Job]] = [[] for _ in range(nd + 1)]

    def update(self, groupby: int, nv: int, nrows: int, offset: int) -> None:
        """Record a finished view of ``nv`` dimensions."""
        if not 1 <= nv <= self.nd:
            raise ValueError(f"view dimension count {nv} outside 1..{self.nd}")
        layer = self.layers[nv]
        if len(layer) >= self.limits[nv]:
            raise ValueError(f"layer {nv} already holds {self.limits[nv]} views")
        layer.append(_Job(groupby & MASK32, nv, nrows, offset))

    def _levels(self, bin_rep: int) -> Iterable[list[_Job]]:
        for level in range(number_of_ones(bin_rep), self.nd + 1):
            yield level, self.layers[level]

    @staticmethod
    def _choice(kind: ParentKind, level: int, job: _Job) -> ParentChoice:
        return ParentChoice(kind, level, job.view_offset, job.n_rows, job.grpb)

    def get_parent(self, groupby: int, bin_rep: int) -> ParentChoice:
        """Pick the parent: prefixed first, then shared-sort, then smallest."""
        groupby &= MASK32
        pfm = set_leading_ones32(mro32(groupby))
        lead = mlo32(groupby)
        mlo = (MLB32 >> lead) if lead < 32 else 0
        lom = set_leading_ones32(lead)
        for level, layer in self._levels(bin_rep):
            parents = [j for j in layer if groupby & j.grpb == groupby]
            prefixed = _best(j for j in parents if j.grpb & pfm == bin_rep)
            if prefixed is not None:
                return self._choice(ParentKind.PREFIXED, level, prefixed)
            shared = _best(j for j in parents if j.grpb & mlo and not j.grpb & lom)
            if shared is not None:
                return self._choice(ParentKind.SHARED_SORT, level, shared)
            smallest = _best(parents)
            if smallest is not None:
                return self._choice(ParentKind.SMALLEST, level, smallest)
        return ParentChoice(ParentKind.NONE)

    def get_smallest_parent(self, groupby: int, bin_rep: int) -> ParentChoice:
        """The covering view with fewest rows at the lowest level that has one."""
        groupby &= MASK32
        for level, layer in self._levels(bin_rep):
            smallest = _best(j for j in layer if groupby & j.grpb == groupby)
            if smallest is not None:
                return self._choice(ParentKind.SMALLEST, level, smallest)
        return ParentChoice(ParentKind.NONE)

    def get_prefixed_parent(self, groupby: int, bin_rep: int) -> ParentChoice:
        """The smallest covering view whose leading dimensions equal ``bin_rep``."""
        groupby &= MASK32
        tm = set_leading_ones32(mro32(groupby))
        for level, layer in self._levels(bin_rep):
            prefixed = _best(
                j for j in layer if groupby & j.grpb == groupby and j.grpb & tm == bin_rep
            )
            if prefixed is not None:
                return self._choice(ParentKind.PREFIXED, level, prefixed)
        return ParentChoice(ParentKind.NONE)