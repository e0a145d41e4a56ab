"""Per-task control of the data cube build: work files, planning and view loop."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Sequence

from dcube.jobs import (
    MASK32,
    JobPool,
    ParentKind,
    format_tuple32,
    parse_view_sizes,
    partition_cube,
    reg_tuple_from_bin64,
    reg_tuple_from_parent,
)
from dcube.rbtree import AggregateTree
from dcube.records import (
    MAX_NUM_OF_DIMS,
    MAX_NUM_OF_MEAS,
    AdcError,
    ErrorCode,
    adc_file_name,
    get_rec_size,
)
from dcube.viewbuild import (
    MergeChunk,
    compute_memory_fitted_view,
    multi_way_merge,
    prefixed_aggregate,
    run_formation,
    shared_sort_aggregate,
    write_view_to_disk,
)

_GROUPBY = struct.Struct(">Q")
_VIEW_SIZE = struct.Struct("<II")

_LOG_HEADER = (
    "Meaning of the log file colums is as follows:\n"
    "Row Number | Groupby | View Size | Measure Sums | Number of Chunks\n"
)


@dataclass
class ViewParams:
    """What one task needs to build the views of a generated cube."""

    adc_name: str
    nd: int
    nm: int
    n_input_recs: int
    memory_limit: int
    ndid: int = 0
    clss: str = "U"
    n_tasks: int = 1
    directory: str | Path = "."
    in_core: bool = False
    optimization: bool = False


class ViewControl:
    """State of one task: its work files, the aggregation tree and the job pool.

    Use as a context manager; closing removes the temporary work files and
    keeps the log and the view file.
    """

    def __init__(self, params: ViewParams, task_number: int):
        if not 1 <= params.nd <= MAX_NUM_OF_DIMS:
            raise ValueError(f"dimension count {params.nd} outside 1..{MAX_NUM_OF_DIMS}")
        if not 1 <= params.nm <= MAX_NUM_OF_MEAS:
            raise ValueError(f"measure count {params.nm} outside 1..{MAX_NUM_OF_MEAS}")
        self.params = params
        self.task_number = task_number
        self.ndid = params.ndid
        self.adc_name = params.adc_name
        self.n_top_dims = params.nd
        self.nd = params.nd
        self.nv = params.nd
        self.nm = params.nm
        self.n_input_recs = params.n_input_recs
        self.memory_limit = params.memory_limit
        self.n_tasks = params.n_tasks
        self.in_core = params.in_core
        self.optimization = params.optimization

        self.selection: list[int] = list(range(1, params.nd + 1))
        self.n_rows_to_read = params.n_input_recs
        self.from_parent = False
        self.n_view_rows = 0
        self.total_of_view_rows = 0
        self.acc_view_file_offset = 0
        self.total_view_file_size = 0
        self.number_of_made_views = 0
        self.number_of_views_made_from_input = 0
        self.number_of_prefixed_groupbys = 0
        self.number_of_shared_sort_groupbys = 0
        self.m_sums = [0] * params.nm
        self.checksums = [0] * params.nm
        self.totchs = [0] * params.nm
        self.chunks: list[MergeChunk] = []
        self.input_rows: list[tuple[tuple[int, ...], tuple[int, ...]]] = []
        self.groupby = 0
        self.smallest_parent_level = 0
        self.view_offset = 0
        self.n_parent_view_rows = 0
        self.par_bin_rep_tuple = 0
        self.made_views: list[tuple[int, int]] = []
        self.verification_failed = False

        self.tree = AggregateTree(params.nd, params.nm, params.memory_limit)
        self.job_pool = JobPool(params.nd)

        self._opened: list[IO] = []
        self._temporary: list[Path] = []
        self._closed = False

        base = Path(params.directory)
        suffix = f".{params.ndid}"

        def task_path(kind: str) -> Path:
            return base / (adc_file_name(params.adc_name, kind, task_number) + suffix)

        self.log_path = task_path("logf")
        self.input_path = base / adc_file_name(params.adc_name, "dat", params.ndid)
        self.view_path = task_path("view.dat")
        self.chunks_path = task_path("chunks.dat")
        self.groupby_path = task_path("groupby.dat")
        self.adc_view_sizes_path = base / adc_file_name(params.adc_name, "view.sz", params.ndid)
        self.view_sizes_path = task_path("viewsz.dat")

        try:
            self.log_file = self._open(self.log_path, "w+")
            self.input_file = self._open(self.input_path, "rb")
            self.view_file = self._open(self.view_path, "wb+")
            self.chunks_file = self._open(self.chunks_path, "wb+", temporary=True)
            self.groupby_file = self._open(self.groupby_path, "wb+", temporary=True)
            self.adc_view_sizes_file = self._open(self.adc_view_sizes_path, "r")
            self.view_sizes_file = self._open(self.view_sizes_path, "wb+", temporary=True)
        except AdcError:
            self.close()
            raise

        self.log_file.write("\n" + _LOG_HEADER)

    def _open(self, path: Path, mode: str, temporary: bool = False) -> IO:
        try:
            stream = open(path, mode)
        except OSError as exc:
            raise AdcError(
                f"AdcFileOpen: Cannot open the file {path} errno = {exc.errno}",
                ErrorCode.FILE_OPEN_FAILURE,
            ) from exc
        self._opened.append(stream)
        if temporary:
            self._temporary.append(path)
        return stream

    @property
    def in_rec_size(self) -> int:
        """Size of a record of the rows being read."""
        return get_rec_size(self.nd, self.nm)

    @property
    def out_rec_size(self) -> int:
        """Size of a record of the view being built."""
        return get_rec_size(self.nv, self.nm)

    def init_view(self, selection: Sequence[int], from_parent: bool) -> None:
        """Prepare to build the view of ``selection``, from a parent or the input."""
        self.selection = list(selection)
        self.nv = len(self.selection)
        self.m_sums = [0] * self.nm
        self.chunks.clear()
        self.from_parent = bool(from_parent)
        self.n_view_rows = 0
        if self.from_parent:
            self.nd = self.smallest_parent_level
            self.view_file.seek(self.view_offset)
            self.n_rows_to_read = self.n_parent_view_rows
        else:
            self.nd = self.n_top_dims
            self.input_file.seek(0)
            self.n_rows_to_read = self.n_input_recs

    def partition(self) -> list[int]:
        """Choose this task's group-bys and store them in the group-by file."""
        self.adc_view_sizes_file.seek(0)
        text = self.adc_view_sizes_file.read()
        groupbys = partition_cube(
            text, self.n_top_dims, self.n_input_recs, self.n_tasks, self.task_number
        )
        self.groupby_file.seek(0)
        self.groupby_file.truncate()
        self.groupby_file.write(b"".join(_GROUPBY.pack(g) for g in groupbys))
        self.groupby_file.seek(0)
        self.adc_view_sizes_file.seek(0)
        return groupbys

    def _read_whole_input(self) -> None:
        layout = struct.Struct(f"<{self.nm}q{self.n_top_dims}I")
        self.input_file.seek(0)
        data = self.input_file.read()
        usable = len(data) - len(data) % layout.size
        self.input_rows = [
            (values[: self.nm], values[self.nm:]) for values in layout.iter_unpack(data[:usable])
        ]
        self.input_file.seek(0)
        self.n_rows_to_read = len(self.input_rows)
        if len(self.input_rows) != self.n_input_recs:
            raise AdcError(
                " ReadWholeInputData(): wrong input data reading.", ErrorCode.INTERNAL_ERROR
            )

    def _build_view(self, bin_rep: int, selection: list[int]) -> None:
        choice = self.job_pool.get_parent(self.groupby, self.groupby)
        kind = choice.kind
        if kind != ParentKind.NONE:
            self.smallest_parent_level = choice.level
            self.view_offset = choice.view_offset
            self.n_parent_view_rows = choice.n_rows
            self.par_bin_rep_tuple = choice.groupby
            selection = reg_tuple_from_parent(bin_rep, self.par_bin_rep_tuple, self.n_top_dims)
        self.init_view(selection, kind != ParentKind.NONE)

        if self.optimization and kind == ParentKind.PREFIXED:
            prefixed_aggregate(self, self.view_file)
            self.number_of_prefixed_groupbys += 1
        elif self.optimization and kind == ParentKind.SHARED_SORT:
            shared_sort_aggregate(self)
            self.number_of_shared_sort_groupbys += 1
        else:
            if kind != ParentKind.NONE:
                run_formation(self, self.view_file)
            else:
                run_formation(self, self.input_file)
                self.number_of_views_made_from_input += 1
            if not self.chunks:
                self.n_view_rows = len(self.tree)
                self.total_of_view_rows += self.n_view_rows
                write_view_to_disk(self, self.tree)
            else:
                multi_way_merge(self)

        self.job_pool.update(self.groupby, self.nv, self.n_view_rows, self.acc_view_file_offset)
        self.acc_view_file_offset += self.n_view_rows * self.out_rec_size
        self.chunks_file.seek(0)
        self.input_file.seek(0)

    def compute_given_groupbys(self) -> int:
        """Build every group-by of the group-by file; return how many were made.

        Raises :class:`AdcError` when a built view disagrees with the listing.
        """
        n_views = 0
        first_view = True
        self.groupby_file.seek(0)
        while True:
            data = self.groupby_file.read(_GROUPBY.size)
            if len(data) < _GROUPBY.size:
                break
            (bin_rep,) = _GROUPBY.unpack(data)
            self.checksums = [0] * self.nm
            n_views += 1

            selection = reg_tuple_from_bin64(bin_rep, self.n_top_dims)
            index = bin_rep >> (64 - self.n_top_dims)
            self.groupby = (index << (32 - self.n_top_dims)) & MASK32

            if self.in_core:
                if first_view:
                    first_view = False
                    self._read_whole_input()
                self.init_view(selection, False)
                self.n_rows_to_read = len(self.input_rows)
                compute_memory_fitted_view(self)
            else:
                self._build_view(bin_rep, selection)

            for i, value in enumerate(self.checksums):
                self.totchs[i] += value
            self.view_sizes_file.seek(0, 2)
            self.view_sizes_file.write(_VIEW_SIZE.pack(index, self.n_view_rows))
            self.made_views.append((index, self.n_view_rows))
            self.total_view_file_size += self.out_rec_size * self.n_view_rows

            line = f"\n {n_views:7d} " + format_tuple32(self.groupby, self.n_top_dims)
            line += f" |  {self.n_view_rows:15d} | "
            line += "".join(f" {c:20d}" for c in self.checksums)
            line += f" | {len(self.chunks):5d}"
            self.log_file.write(line)

        self.number_of_made_views = n_views
        self.verify_view_sizes()
        return n_views

    def verify_view_sizes(self) -> bool:
        """Compare built view sizes with the listing; return True when they pass.

        Raises :class:`AdcError` on a view whose size is neither the listed
        size nor the input size.
        """
        self.view_sizes_file.seek(0)
        data = self.view_sizes_file.read()
        usable = len(data) - len(data) % _VIEW_SIZE.size
        counts = dict(_VIEW_SIZE.iter_unpack(data[:usable]))

        self.adc_view_sizes_file.seek(0)
        listing = parse_view_sizes(self.adc_view_sizes_file.read())
        for tuple64, size in listing:
            index = tuple64 >> (64 - self.n_top_dims)
            self.verification_failed = not self.number_of_made_views
            calculated = counts.get(index, 0)
            if calculated and calculated != size and calculated != self.n_input_recs:
                self.log_file.write(
                    f"A view size is wrong: genSz={size} calcSz={calculated}\n"
                )
                self.verification_failed = True
                raise AdcError(
                    f"A view size is wrong: genSz={size} calcSz={calculated}",
                    ErrorCode.VERIFICATION_FAILED,
                )

        self.log_file.write("\n\n" + _LOG_HEADER)
        message = "Verification=failed" if self.verification_failed else "Verification=passed"
        self.log_file.seek(0)
        self.log_file.write(message)
        self.log_file.seek(0, 2)
        self.view_sizes_file.seek(0)
        return not self.verification_failed

    def close(self) -> None:
        """Close every work file and delete the temporary ones."""
        if self._closed:
            return
        self._closed = True
        log = getattr(self, "log_file", None)
        for stream in self._opened:
            if stream is not log:
                stream.close()
        failure: OSError | None = None
        for path in self._temporary:
            try:
                path.unlink()
            except OSError as exc:
                failure = failure or exc
        if log is not None:
            log.close()
        if failure is not None:
            raise AdcError(
                f"cannot delete work file: {failure}", ErrorCode.FILE_DELETE_FAILURE
            ) from failure

    def __enter__(self) -> "ViewControl":
        return self

    def __exit__(self, *args) -> None:
        self.close()