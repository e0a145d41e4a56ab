"""Synthetic input for the data cube: parameters, the tuple generator and its files."""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterator

from dcube.records import MAX_NUM_OF_DIMS, AdcError, ErrorCode, adc_file_name
from dcube.viewsizes import ADC_PRIMES, CLASS_EXPONENTS, write_view_sizes

MEASURE_BOUND = 31415

ADC_GENERATORS = (
    2, 7, 3, 2, 2,
    2, 2, 5, 31, 7,
    2, 3, 3, 3, 2,
    5, 2, 2, 2, 3,
)

# Benchmark classes fix the cube shape regardless of the parameter file.
CLASS_SHAPES = {
    "S": (5, 1, 1000),
    "W": (10, 1, 100000),
    "A": (15, 1, 1000000),
    "B": (20, 1, 10000000),
}

# Keywords are matched in this order and each fills the field beside it.
# The slots are assigned by keyword position: INVERSE_ENDIAN is read but
# ignored, fileName fills inverse_endian and class fills filename.
_KEYWORD_FIELDS = (
    ("attrNum", "dim"),
    ("measuresNum", "mnum"),
    ("tuplesNum", "tuplenum"),
    ("INVERSE_ENDIAN", None),
    ("fileName", "inverse_endian"),
    ("class", "filename"),
)

_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")


@dataclass
class AdcParams:
    """Parameters describing the generated cube input."""

    ndid: int = 0
    dim: int = 5
    mnum: int = 1
    tuplenum: int = 100
    inverse_endian: int = 0
    filename: str = "ADC"
    clss: str = "U"


class TupleGenerator:
    """Deterministic source of cube tuples built from multiplicative generators.

    Each dimension ``i`` walks the powers of a generator modulo ``ADC_PRIMES[i]``;
    measures are derived from the current attributes.
    """

    def __init__(self, dim: int, measures: int, clss: str):
        if dim > MAX_NUM_OF_DIMS:
            raise ValueError(f"number of dcdim is too large:{dim}")
        if measures > MEASURE_BOUND:
            raise ValueError(f"number of mes is too large:{measures}")
        if dim < 0 or measures < 0:
            raise ValueError("dimension and measure counts must not be negative")
        exponents = CLASS_EXPONENTS.get(clss, CLASS_EXPONENTS["U"])
        self.dim = dim
        self.measures = measures
        self.clss = clss
        self.primes = ADC_PRIMES[:dim]
        self.generators = tuple(
            pow(g, e, p) for g, e, p in zip(ADC_GENERATORS[:dim], exponents, self.primes)
        )
        self.initial_seeds = tuple((p + 1) // 2 for p in self.primes)
        self._seeds = list(self.initial_seeds)

    def next_tuple(self) -> tuple[tuple[int, ...], tuple[int, ...]]:
        """Advance every dimension and return ``(measures, dims)``."""
        dims = []
        for i, (prime, gen) in enumerate(zip(self.primes, self.generators)):
            value = self._seeds[i] * gen % prime
            self._seeds[i] = value
            dims.append(value)
        max_attr = max(dims, default=0)
        measures = tuple(
            ((self._seeds[i] if i < self.dim else 0) * max_attr) % MEASURE_BOUND
            for i in range(self.measures)
        )
        return measures, tuple(dims)

    def __iter__(self) -> Iterator[tuple[tuple[int, ...], tuple[int, ...]]]:
        while True:
            yield self.next_tuple()


def _seed_table(generator: TupleGenerator) -> str:
    lines = ["Prime \tGenerator \tSeed\n"]
    for prime, gen, seed in zip(generator.primes, generator.generators, generator.initial_seeds):
        lines.append(f" {prime}\t {gen}\t\t {seed}\n")
    return "".join(lines)


def _scan_int(text: str) -> int | None:
    match = _INT_PREFIX.match(text)
    return int(match.group(1)) if match else None


def parse_par_file(path: str | Path, params: AdcParams) -> AdcParams:
    """Read a parameter file and return ``params`` updated from it.

    A number after the second dot of the path sets ``ndid``. Lines holding
    ``#`` are comments. The class of ``params`` then fixes the cube shape.
    """
    name = str(path)
    updates: dict[str, object] = {}

    first = name.find(".")
    if first >= 0:
        second = name.find(".", first + 1)
        if second >= 0:
            ndid = _scan_int(name[second + 1:])
            if ndid is not None:
                updates["ndid"] = ndid

    try:
        with open(path, "r", errors="replace") as parfile:
            lines = parfile.readlines()
    except OSError as exc:
        raise AdcError(f"ParseParFile: Can't open file: {name}", ErrorCode.FILE_OPEN_FAILURE) from exc

    for line in lines:
        if "#" in line:
            continue
        for keyword, field in _KEYWORD_FIELDS:
            if keyword not in line:
                continue
            rest = line[len(keyword) + 1:]
            if field == "filename":
                tokens = rest.split()
                if tokens:
                    updates[field] = tokens[0]
            elif field is not None:
                value = _scan_int(rest)
                if value is not None:
                    updates[field] = value
            break

    shape = CLASS_SHAPES.get(params.clss)
    if shape is not None:
        updates["dim"], updates["mnum"], updates["tuplenum"] = shape
    return replace(params, **updates)


def write_par_file(params: AdcParams, path: str | Path) -> Path:
    """Write ``params`` as a parameter file at ``path``."""
    target = Path(path)
    text = (
        f"attrNum={params.dim}\n"
        f"measuresNum={params.mnum}\n"
        f"tuplesNum={params.tuplenum}\n"
        f"class={params.clss}\n"
        f"INVERSE_ENDIAN={params.inverse_endian}\n"
        f"fileName={params.filename}\n"
    )
    try:
        target.write_text(text)
    except OSError as exc:
        raise AdcError(f"WriteADCPar: can't open file {target}", ErrorCode.FILE_OPEN_FAILURE) from exc
    return target


def format_params(params: AdcParams) -> str:
    """Human-readable summary of the parameters."""
    return (
        "********************* ADC paramters\n"
        f" id\t\t{params.ndid}\n"
        f" attributes \t{params.dim}\n"
        f" measures   \t{params.mnum}\n"
        f" tuples     \t{params.tuplenum}\n"
        f" class\t\t{params.clss}\n"
        f" filename       {params.filename}\n"
        "***********************************\n"
    )


def generate_adc(params: AdcParams, directory: str | Path = ".") -> Path:
    """Write the binary tuple file and the view size listing; return the tuple file.

    Each record holds the measures as 8-byte integers followed by the
    attributes as 4-byte integers, big-endian when ``inverse_endian`` is 1.
    """
    base = Path(directory)
    data_path = base / adc_file_name(params.filename, "dat", params.ndid)
    generator = TupleGenerator(params.dim, params.mnum, params.clss)
    order = ">" if params.inverse_endian == 1 else "<"
    record = struct.Struct(f"{order}{params.mnum}q{params.dim}i")
    count = int(params.tuplenum)

    try:
        out = data_path.open("wb")
    except OSError as exc:
        raise AdcError(f"GenerateADC: Can't open file: {data_path}", ErrorCode.FILE_OPEN_FAILURE) from exc

    with out:
        print(
            f"\nGenerateADC: writing {count} tuples of {params.dim} attributes "
            f"and {params.mnum} measures to {data_path}"
        )
        if count > 0:
            print(_seed_table(generator), end="")
        for _ in range(count):
            measures, dims = generator.next_tuple()
            out.write(record.pack(*measures, *dims))

    print(f"Binary ADC file {data_path} have been generated.")
    sizes_path = write_view_sizes(
        base / adc_file_name(params.filename, "view.sz", params.ndid),
        params.dim,
        params.tuplenum,
        params.clss,
    )
    print(f"View sizes are written into {sizes_path}")
    return data_path