"""Command line driver of the data cube benchmark: generate, build every view, verify."""

from __future__ import annotations

import os
import re
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from time import perf_counter
from typing import NamedTuple, Sequence

from dcube.adcgen import AdcParams, format_params, generate_adc, parse_par_file
from dcube.records import MAX_NUMBER_OF_TASKS, AdcError
from dcube.viewcntl import ViewControl, ViewParams

CLASS = "S"

CHECKSUM_S = 464620213
CHECKSUM_W_LO, CHECKSUM_W_HI = 434318, 1401796
CHECKSUM_A_LO, CHECKSUM_A_HI = 178042, 7141688
CHECKSUM_B_LO, CHECKSUM_B_HI = 700453, 9348365

EXPECTED_CHECKSUMS = {
    "S": CHECKSUM_S,
    "W": CHECKSUM_W_LO + 1000000 * CHECKSUM_W_HI,
    "A": CHECKSUM_A_LO + 1000000 * CHECKSUM_A_HI,
    "B": CHECKSUM_B_LO + 1000000 * CHECKSUM_B_HI,
}

_UINT64 = 1 << 64
_LEADING_INT = re.compile(r"\s*[+-]?\d+")

_USAGE = (
    "Usage: <program name> <amount of memory>\n"
    "       <file of parameters>\n"
    "Example: dc 1000000 DC/ADC.par\n"
    "The last argument, (a parameter file) can be skipped\n"
)


def verify(checksum: int, clss: str) -> int:
    """0 when the checksum matches its class, 1 when not, -1 for an unknown class."""
    expected = EXPECTED_CHECKSUMS.get(clss)
    if expected is None:
        return -1
    return 0 if checksum == expected else 1


@dataclass(frozen=True)
class DcResult:
    """Totals of one benchmark run."""

    time: float
    n_input_recs: int
    n_views: int
    n_tasks: int
    total_view_tuples: int
    total_view_bytes: int
    checksum: int
    verification: int

    @property
    def verified(self) -> int:
        """1 when verified, 0 when verification failed, -1 when it was not possible."""
        if self.verification == -1:
            return -1
        return 1 if self.verification == 0 else 0

    @property
    def tuples_per_second(self) -> float:
        """View tuples generated per second of the slowest task."""
        if self.time > 0:
            return self.total_view_tuples / self.time
        return float("inf") if self.total_view_tuples else float("nan")


class _TaskOutcome(NamedTuple):
    failed: bool
    elapsed: float
    n_views: int
    view_bytes: int
    view_tuples: int
    checksum: int


def _run_task(params: ViewParams, task: int) -> _TaskOutcome:
    ctl = ViewControl(params, task)
    elapsed = 0.0
    try:
        try:
            ctl.partition()
        except AdcError as exc:
            print(f" DC.PartitionCube failed: {exc}", file=sys.stderr)
        start = perf_counter()
        try:
            ctl.compute_given_groupbys()
        except AdcError as exc:
            print(f" DC.ComputeGivenGroupbys failed: {exc}", file=sys.stderr)
        elapsed = perf_counter() - start
        outcome = _TaskOutcome(
            ctl.verification_failed,
            elapsed,
            ctl.number_of_made_views,
            ctl.total_view_file_size,
            ctl.total_of_view_rows,
            ctl.totchs[0],
        )
    finally:
        try:
            ctl.close()
        except AdcError as exc:
            print(f" ParRun.CloseAdcView: is failed: {exc}", file=sys.stderr)
    return outcome


def _print_report(result: DcResult) -> None:
    print("\n*** DC Benchmark Results:")
    print(f" Benchmark Time   = {result.time:20.3f}")
    print(f" Input Tuples     =         {result.n_input_recs:12d}")
    print(f" Number of Views  =         {result.n_views:12d}")
    print(f" Number of Tasks  =         {result.n_tasks:12d}")
    print(f" Tuples Generated = {float(result.total_view_tuples):20.0f}")
    print(f" Tuples/s         = {result.tuples_per_second:20.2f}")
    print(f" Checksum         = {float(result.checksum):20.12e}")
    if result.verification:
        print(" Verification failed")


def run_dc(params: ViewParams) -> DcResult:
    """Build all views of a generated cube with ``params.n_tasks`` tasks and verify them."""
    n_tasks = params.n_tasks
    if n_tasks < 1:
        raise ValueError("the number of tasks must be at least 1")
    print(f"\nNumber of available threads:  {n_tasks}")
    if n_tasks > MAX_NUMBER_OF_TASKS:
        n_tasks = MAX_NUMBER_OF_TASKS
        print(f"Warning: Maximum number of tasks reached: {n_tasks}")
    params = replace(params, n_tasks=n_tasks)

    with ThreadPoolExecutor(max_workers=n_tasks) as pool:
        outcomes = list(pool.map(lambda task: _run_task(params, task), range(n_tasks)))

    good = [o for o in outcomes if not o.failed]
    result = DcResult(
        time=max((o.elapsed for o in outcomes), default=0.0),
        n_input_recs=params.n_input_recs,
        n_views=sum(o.n_views for o in good),
        n_tasks=n_tasks,
        total_view_tuples=sum(o.view_tuples for o in good),
        total_view_bytes=sum(o.view_bytes for o in good),
        checksum=sum(o.checksum for o in good) % _UINT64,
        verification=0,
    )
    result = replace(result, verification=verify(result.checksum, params.clss))
    _print_report(result)
    return result


def _leading_int(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group()) if match else 0


def _max_threads() -> int:
    configured = _leading_int(os.environ.get("OMP_NUM_THREADS", ""))
    if configured > 0:
        return configured
    return os.cpu_count() or 1


def main(argv: Sequence[str] | None = None) -> int:
    """Run the benchmark: ``[memory [parameter file]]``; return the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)

    print("\n\n Data Cube (DC) Benchmark\n")
    if len(args) != 2:
        print(" No Paramter file. Using compiled defaults")
    if len(args) > 2 or (args and not args[0][:1].isdigit()):
        sys.stderr.write(_USAGE)
        return 1

    params = AdcParams(clss=CLASS)
    if len(args) != 2:
        params = replace(params, dim=9, tuplenum=125000)
    else:
        try:
            params = parse_par_file(args[1], params)
        except AdcError as exc:
            print(f" main.ParseParFile failed: {exc}", file=sys.stderr)
            return 1
    print(format_params(params), end="")

    try:
        generate_adc(params)
    except (AdcError, ValueError) as exc:
        print(f" main.GenerateAdc failed: {exc}", file=sys.stderr)
        return 1

    memory = _leading_int(args[0]) if args else 0
    if memory <= 0:
        memory = params.tuplenum * (50 + 5 * params.dim)
        print(f"Estimated rb-tree size = {memory} ")

    view_params = ViewParams(
        adc_name=params.filename,
        nd=params.dim,
        nm=params.mnum,
        n_input_recs=params.tuplenum,
        memory_limit=memory,
        ndid=params.ndid,
        clss=params.clss,
        n_tasks=_max_threads(),
    )
    try:
        run_dc(view_params)
    except (AdcError, ValueError) as exc:
        print(f" main.DC failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())