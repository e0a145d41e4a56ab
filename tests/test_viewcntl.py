import re

import pytest

from dcube.adcgen import AdcParams, TupleGenerator, generate_adc
from dcube.jobs import number_of_ones
from dcube.records import AdcError, ErrorCode
from dcube.viewcntl import ViewControl, ViewParams

TUPLES = 50
DIM = 3


def _make_cube(directory, clss="S"):
    params = AdcParams(dim=DIM, mnum=1, tuplenum=TUPLES, clss=clss, filename="ADC")
    generate_adc(params, directory)
    return params


def _view_params(directory, clss="S", memory_limit=None, **extra):
    return ViewParams(
        adc_name="ADC",
        nd=DIM,
        nm=1,
        n_input_recs=TUPLES,
        memory_limit=memory_limit or TUPLES * (50 + 5 * DIM),
        clss=clss,
        directory=directory,
        **extra,
    )


def _run(params):
    with ViewControl(params, 0) as ctl:
        ctl.partition()
        made = ctl.compute_given_groupbys()
        ctl.view_file.seek(0, 2)
        view_bytes = ctl.view_file.tell()
        return {
            "made": made,
            "number_of_made_views": ctl.number_of_made_views,
            "views": dict(ctl.made_views),
            "totchs": list(ctl.totchs),
            "total_rows": ctl.total_of_view_rows,
            "total_size": ctl.total_view_file_size,
            "view_bytes": view_bytes,
            "failed": ctl.verification_failed,
        }


@pytest.fixture
def cube(tmp_path):
    _make_cube(tmp_path)
    return tmp_path


def test_all_views_built_and_verified(cube):
    snap = _run(_view_params(cube))
    assert snap["made"] == 2 ** DIM - 1
    assert snap["number_of_made_views"] == snap["made"]
    assert snap["failed"] is False


def test_each_view_built_once(cube):
    snap = _run(_view_params(cube))
    assert sorted(snap["views"]) == list(range(1, 2 ** DIM))


def test_full_view_rows_match_distinct_tuples(cube):
    snap = _run(_view_params(cube))
    generator = TupleGenerator(DIM, 1, "S")
    distinct = {generator.next_tuple()[1] for _ in range(TUPLES)}
    assert snap["views"][2 ** DIM - 1] == len(distinct)


def test_view_rows_bounded_by_input(cube):
    snap = _run(_view_params(cube))
    assert all(1 <= rows <= TUPLES for rows in snap["views"].values())


def test_view_file_matches_accounting(cube):
    snap = _run(_view_params(cube))
    assert snap["view_bytes"] == snap["total_size"]
    assert snap["total_rows"] == sum(snap["views"].values())


def test_small_memory_gives_same_views(cube):
    large = _run(_view_params(cube))
    small = _run(_view_params(cube, memory_limit=480))
    assert small["views"] == large["views"]
    assert small["totchs"] == large["totchs"]


def test_in_core_gives_same_checksums(cube):
    default = _run(_view_params(cube))
    in_core = _run(_view_params(cube, in_core=True))
    assert in_core["totchs"] == default["totchs"]
    assert in_core["views"] == default["views"]


def test_optimization_gives_same_checksums(cube):
    default = _run(_view_params(cube))
    optimized = _run(_view_params(cube, optimization=True))
    assert optimized["totchs"] == default["totchs"]
    assert optimized["views"] == default["views"]


def test_close_removes_work_files(cube):
    ctl = ViewControl(_view_params(cube), 0)
    ctl.partition()
    ctl.compute_given_groupbys()
    temporary = [ctl.chunks_path, ctl.groupby_path, ctl.view_sizes_path]
    ctl.close()
    assert not any(path.exists() for path in temporary)
    assert ctl.view_path.exists()
    assert ctl.log_path.exists()


def test_missing_input_raises(tmp_path):
    with pytest.raises(AdcError) as info:
        ViewControl(_view_params(tmp_path), 0)
    assert info.value.code == ErrorCode.FILE_OPEN_FAILURE


def test_init_view_from_input(cube):
    with ViewControl(_view_params(cube), 0) as ctl:
        ctl.init_view([1, 3], False)
        assert ctl.nv == 2
        assert ctl.nd == DIM
        assert ctl.n_rows_to_read == TUPLES
        assert ctl.selection == [1, 3]
        assert ctl.from_parent is False


def test_partition_orders_by_dimension_count(cube):
    with ViewControl(_view_params(cube), 0) as ctl:
        groupbys = ctl.partition()
    assert len(groupbys) == 2 ** DIM - 1
    ones = [number_of_ones(g) for g in groupbys]
    assert ones == sorted(ones, reverse=True)


def test_log_starts_with_verification_result(cube):
    params = _view_params(cube)
    with ViewControl(params, 0) as ctl:
        ctl.partition()
        ctl.compute_given_groupbys()
        log_path = ctl.log_path
    assert log_path.read_text().startswith("Verification=passed")


def test_tampered_sizes_fail_verification(tmp_path):
    _make_cube(tmp_path, clss="W")
    listing = tmp_path / "ADC.view.sz.0"
    listing.write_text(re.sub(r"View Size: \d+", "View Size: 1", listing.read_text()))
    with ViewControl(_view_params(tmp_path, clss="W"), 0) as ctl:
        ctl.partition()
        with pytest.raises(AdcError) as info:
            ctl.compute_given_groupbys()
        assert ctl.verification_failed is True
    assert info.value.code == ErrorCode.VERIFICATION_FAILED