"""Expected sizes of the data cube views, derived from the generator's primes."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Sequence

from dcube.records import AdcError, ErrorCode

UP_PRIME_LIMIT = 100000
LARGE_NUM = 0x4FFFFFFFFFFFFFFF
MAX_PRIME_FACTOR = 59

ADC_PRIMES = (
    421, 601, 631, 701, 883,
    419, 443, 647, 21737, 31769,
    1427, 18353, 22817, 34337, 98717,
    3527, 8693, 9677, 11093, 18233,
)

_EXP_U = (
    11, 13, 17, 19, 23,
    23, 29, 31, 37, 41,
    41, 43, 47, 53, 59,
    3, 5, 7, 11, 13,
)
_EXP_S = (11, 13, 17, 19, 23)
_EXP_W = (
    2 * 2, 2 * 2 * 2 * 5, 2 * 3, 2 * 2 * 5, 2 * 3 * 7,
    23, 29, 31, 2 * 2, 2 * 2 * 19,
)
_EXP_A = (
    2 * 2, 2 * 2 * 2 * 5, 2 * 3, 2 * 2 * 5, 2 * 3 * 7,
    2 * 19, 2 * 13, 2 * 19, 2 * 2 * 2 * 13 * 19, 2 * 2 * 2 * 19 * 19,
    2 * 23, 2 * 2 * 2 * 2, 2 * 2 * 2 * 2 * 2 * 23, 2 * 2 * 2 * 2 * 2, 2 * 2 * 23,
)
_EXP_B = (
    2 * 2 * 7, 2 * 2 * 2 * 5, 2 * 3 * 7, 2 * 2 * 5 * 7, 2 * 3 * 7 * 7,
    2 * 19, 2 * 13, 2 * 19, 2 * 2 * 2 * 13 * 19, 2 * 2 * 2 * 19 * 19,
    2 * 31, 2 * 2 * 2 * 2 * 31, 2 * 2 * 2 * 2 * 2 * 31, 2 * 2 * 2 * 2 * 2 * 29, 2 * 2 * 29,
    2 * 43, 2 * 2, 2 * 2, 2 * 2 * 47, 2 * 2 * 2 * 43,
)

# The class tables lie back to back; a class whose own table is shorter than
# the cube's dimension count continues into the table that follows it.
_EXP_LAYOUT = _EXP_U + _EXP_S + _EXP_W + _EXP_A + _EXP_B
_EXP_OFFSETS = {
    "U": 0,
    "S": len(_EXP_U),
    "W": len(_EXP_U) + len(_EXP_S),
    "A": len(_EXP_U) + len(_EXP_S) + len(_EXP_W),
    "B": len(_EXP_U) + len(_EXP_S) + len(_EXP_W) + len(_EXP_A),
}
CLASS_EXPONENTS: dict[str, tuple[int, ...]] = {
    clss: _EXP_LAYOUT[offset:offset + len(ADC_PRIMES)]
    for clss, offset in _EXP_OFFSETS.items()
}

VIEW_STRIDE = {"U": 1 << 3, "A": 1 << 6, "B": 1 << 14}

Factorization = tuple[tuple[int, int], ...]


@dataclass(frozen=True, order=True)
class ViewSize:
    """Size of the view whose dimensions are the set bits of ``index``."""

    size: int
    index: int


def list_first_primes(limit: int) -> list[int]:
    """Primes below ``limit``; the list always begins with 2, 3, 5 and 7."""
    primes = [2, 3, 5, 7]
    for n in range(8, limit):
        composite = False
        for p in primes:
            if p * p > n:
                break
            if n % p == 0:
                composite = True
                break
        if not composite:
            primes.append(n)
    return primes


def factorize_table(primes: Sequence[int]) -> list[Factorization]:
    """Prime factorizations of every number below the largest of ``primes``.

    Entry ``n`` is a tuple of ``(prime, exponent)`` pairs in ascending prime
    order; entries 0 and 1 are empty.
    """
    top = primes[-1]
    smallest = list(range(top))
    for p in primes:
        if p * p >= top:
            break
        for m in range(p * p, top, p):
            if smallest[m] == m:
                smallest[m] = p
    table: list[Factorization] = [(), ()][:top]
    for n in range(2, top):
        p = smallest[n]
        rest = table[n // p]
        if rest and rest[0][0] == p:
            table.append(((p, rest[0][1] + 1),) + rest[1:])
        else:
            table.append(((p, 1),) + rest)
    return table


@lru_cache(maxsize=1)
def _default_factorizations() -> list[Factorization]:
    return factorize_table(list_first_primes(UP_PRIME_LIMIT))


def get_lcm(
    mask: int, factorizations: Sequence[Factorization], exponents: Sequence[int]
) -> int:
    """Least common multiple of the generator orders selected by ``mask``.

    Stops multiplying once the product passes ``LARGE_NUM // MAX_PRIME_FACTOR``.
    """
    powers: dict[int, int] = {}
    bit = 0
    while mask > 0:
        if mask & 1:
            if bit >= len(ADC_PRIMES) or bit >= len(exponents):
                raise ValueError(f"mask bit {bit} has no generator")
            prime = ADC_PRIMES[bit]
            generator_exp = dict(factorizations[exponents[bit]])
            for factor, exp in factorizations[prime - 1]:
                local = exp - generator_exp.get(factor, 0)
                if powers.get(factor, 0) < local:
                    powers[factor] = local
        mask >>= 1
        bit += 1

    bound = LARGE_NUM // MAX_PRIME_FACTOR
    lcm = 1
    for factor in sorted(powers):
        for _ in range(powers[factor]):
            lcm *= factor
            if lcm > bound:
                return lcm
    return lcm


def view_sizes(dim: int, tuple_count: int, clss: str) -> list[ViewSize]:
    """Sizes of all ``2**dim`` views, sorted by size then index.

    Index 0 (the empty selection) has size 0; sizes never exceed
    ``tuple_count``. Unknown classes give every view size 1.
    """
    exponents = CLASS_EXPONENTS.get(clss)
    factorizations = _default_factorizations() if exponents is not None else None
    views = [ViewSize(0, 0)]
    for mask in range(1, 1 << dim):
        lcm = get_lcm(mask, factorizations, exponents) if exponents is not None else 1
        views.append(ViewSize(min(lcm, tuple_count), mask))
    views.sort()
    return views


def format_view_sizes(views: Sequence[ViewSize], dim: int, clss: str) -> str:
    """Render the view size listing for a sorted list of all views."""
    count = 1 << dim
    if len(views) < count:
        raise ValueError(f"expected {count} views, got {len(views)}")
    stride = VIEW_STRIDE.get(clss, 1)
    lines = []
    total_bytes = 0
    total_tuples = 0
    for view in views[1:count:stride]:
        chosen = [j + 1 for j in range(dim) if (view.index >> j) & 1]
        lines.append("Selection:" + "".join(f" {j}" for j in chosen) + "\n")
        lines.append(f"View Size: {view.size}\n")
        total_bytes += (8 + 4 * len(chosen)) * view.size
        total_tuples += view.size
    lines.append(f"\nTotal in bytes: {total_bytes}  Number of tuples: {total_tuples}\n")
    return "".join(lines)


def write_view_sizes(path: str | Path, dim: int, tuple_count: int, clss: str) -> Path:
    """Compute the view sizes and write their listing to ``path``."""
    target = Path(path)
    text = format_view_sizes(view_sizes(dim, tuple_count, clss), dim, clss)
    try:
        target.write_text(text)
    except OSError as exc:
        raise AdcError(f"can't open file: {target}", ErrorCode.FILE_OPEN_FAILURE) from exc
    return target