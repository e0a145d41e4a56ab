"""Dense linear algebra timing benchmarks: GEMM, Cholesky, linear solve and matmul runs."""

from __future__ import annotations

import math
import sys
import threading
from time import perf_counter
from typing import Callable, Sequence

import numpy as np

MAX_DIM = 46341
MATMUL_N = 8192
SMALL_MATMULS = 20
DGEMM_SIZE = 2000
DGEMM_ITERATIONS = 100

_USAGE = (
    "usage: blasbench gemm|cholesky|gesv <dim> <nrep>\n"
    "       blasbench matmul-seq|matmul-threads [N]\n"
    "       blasbench dgemm [size] [num_itr]\n"
)


def _generator(rng: np.random.Generator | None) -> np.random.Generator:
    return rng if rng is not None else np.random.default_rng()


def _check_dim(n: int) -> None:
    if n < 0:
        raise ValueError("n must not be negative")
    if n >= MAX_DIM:
        raise ValueError(f"n should be less than {MAX_DIM} ")


def _report_average(name: str, timings: list[float]) -> None:
    average = sum(timings) / len(timings) if timings else math.nan
    print(f"{name} average time: {average:g}s")


def gemm_benchmark(n: int, nrep: int, rng: np.random.Generator | None = None) -> list[float]:
    """Time ``nrep`` products of random ``n`` by ``n`` matrices; return the timings."""
    _check_dim(n)
    gen = _generator(rng)
    timings = []
    for _ in range(nrep):
        y = gen.standard_normal((n, n))
        z = gen.standard_normal((n, n))
        start = perf_counter()
        _ = y @ z
        elapsed = perf_counter() - start
        print(f"DGEMM elapsed time: {elapsed:g}s")
        timings.append(elapsed)
    _report_average("DGEMM", timings)
    return timings


def cholesky_benchmark(n: int, nrep: int, rng: np.random.Generator | None = None) -> list[float]:
    """Time ``nrep`` upper Cholesky factorizations of random SPD matrices."""
    _check_dim(n)
    gen = _generator(rng)
    timings = []
    for _ in range(nrep):
        y1 = gen.standard_normal((n, n))
        y = y1 @ y1.T
        start = perf_counter()
        try:
            _ = np.linalg.cholesky(y).T
        except np.linalg.LinAlgError as exc:
            print(f"Error: dpotrf failed: {exc}", file=sys.stderr)
        elapsed = perf_counter() - start
        print(f"DPOTRF elapsed time: {elapsed:g}s")
        timings.append(elapsed)
    _report_average("DPOTRF", timings)
    return timings


def solve_benchmark(n: int, nrep: int, rng: np.random.Generator | None = None) -> list[float]:
    """Time ``nrep`` solutions of random dense linear systems."""
    _check_dim(n)
    gen = _generator(rng)
    timings = []
    for _ in range(nrep):
        y1 = gen.standard_normal((n, n))
        b = gen.standard_normal(n)
        y = y1 @ y1.T
        start = perf_counter()
        try:
            _ = np.linalg.solve(y, b)
        except np.linalg.LinAlgError as exc:
            print(f"Error: dgesv failed: {exc}", file=sys.stderr)
        elapsed = perf_counter() - start
        print(f"DGESV elapsed time: {elapsed:g}s")
        timings.append(elapsed)
    _report_average("DGESV", timings)
    return timings


def matmul(n: int) -> np.ndarray:
    """Multiply an all-ones matrix by an all-twos one, both ``n`` by ``n``."""
    a = np.ones((n, n))
    b = np.full((n, n), 2.0)
    return a @ b


def dgemm(a, b, num_itr: int) -> np.ndarray:
    """Compute ``a @ b.T`` ``num_itr`` times; return the last product."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    result = np.zeros((a.shape[0], b.shape[0]))
    for _ in range(num_itr):
        result = a @ b.T
    return result


def reduction(a, b, num_itr: int) -> float:
    """Sum every element of ``a`` and ``b``, ``num_itr`` times over."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    total = 0.0
    for _ in range(num_itr):
        total += float(np.sum(a) + np.sum(b))
    return total


def _elapsed_ms(start: float) -> int:
    return int((perf_counter() - start) * 1000)


def _matmul_seq(n: int) -> None:
    start = perf_counter()
    matmul(n)
    for _ in range(SMALL_MATMULS):
        matmul(n // 8)
    print(f"matmul finish in {_elapsed_ms(start)}ms")


def _matmul_threads(n: int) -> None:
    start = perf_counter()
    threads = [threading.Thread(target=matmul, args=(n // 8,)) for _ in range(SMALL_MATMULS)]
    threads.append(threading.Thread(target=matmul, args=(n,)))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    print(f"matmul finish in {_elapsed_ms(start)}ms")


def _dgemm_alone(size: int, num_itr: int) -> None:
    a = np.full((size, size), 0.1)
    b = np.full((size, size), 1.2)
    start = perf_counter()
    dgemm(a, b, num_itr)
    print(f"finish in {_elapsed_ms(start)}ms")


_TIMED: dict[str, Callable[[int, int], list[float]]] = {
    "gemm": gemm_benchmark,
    "cholesky": cholesky_benchmark,
    "gesv": solve_benchmark,
}


def _ints(values: Sequence[str], defaults: Sequence[int]) -> list[int]:
    parsed = [int(v) for v in values]
    return parsed + list(defaults[len(parsed):])


def main(argv: Sequence[str] | None = None) -> int:
    """Run one benchmark chosen by the first argument; return the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        sys.stderr.write(_USAGE)
        return 2
    command, rest = args[0], args[1:]
    try:
        if command in _TIMED:
            if len(rest) != 2:
                print(f"No. of input: {len(rest) + 1}")
                print(f"{command} <dim> <nrep>")
                return 0
            n, nrep = _ints(rest, ())
            if n >= MAX_DIM:
                print(f"n should be less than {MAX_DIM} ")
                return 0
            _TIMED[command](n, nrep)
        elif command in ("matmul-seq", "matmul-threads") and len(rest) <= 1:
            (n,) = _ints(rest, (MATMUL_N,))
            (_matmul_seq if command == "matmul-seq" else _matmul_threads)(n)
        elif command == "dgemm" and len(rest) <= 2:
            size, num_itr = _ints(rest, (DGEMM_SIZE, DGEMM_ITERATIONS))
            _dgemm_alone(size, num_itr)
        else:
            sys.stderr.write(_USAGE)
            return 2
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())