import numpy as np
import pytest

from dcube.blasbench import (
    cholesky_benchmark,
    dgemm,
    gemm_benchmark,
    main,
    matmul,
    reduction,
    solve_benchmark,
)


@pytest.fixture
def rng():
    return np.random.default_rng(7)


def test_matmul_values():
    result = matmul(4)
    assert result.shape == (4, 4)
    assert np.all(result == 8.0)


def test_matmul_empty():
    assert matmul(0).shape == (0, 0)


def test_dgemm_with_identity_gives_transpose():
    b = np.arange(9.0).reshape(3, 3)
    result = dgemm(np.eye(3), b, 1)
    assert np.array_equal(result, b.T)


def test_dgemm_repetition_keeps_result():
    a = np.arange(6.0).reshape(2, 3)
    b = np.arange(12.0).reshape(4, 3)
    assert np.array_equal(dgemm(a, b, 3), dgemm(a, b, 1))
    assert dgemm(a, b, 1).shape == (2, 4)


def test_dgemm_without_iterations_is_zero():
    result = dgemm(np.ones((2, 2)), np.ones((3, 2)), 0)
    assert result.shape == (2, 3)
    assert not result.any()


def test_reduction_single_pass():
    assert reduction(np.ones((2, 2)), np.zeros((2, 2)), 1) == 4.0


def test_reduction_scales_with_iterations():
    a = np.full((3, 3), 0.5)
    b = np.full((3, 3), 1.5)
    assert reduction(a, b, 3) == pytest.approx(3 * reduction(a, b, 1))
    assert reduction(a, b, 0) == 0.0


def test_gemm_benchmark_timings(rng, capsys):
    timings = gemm_benchmark(4, 3, rng)
    assert len(timings) == 3
    assert all(t >= 0 for t in timings)
    out = capsys.readouterr().out
    assert out.count("DGEMM elapsed time") == 3
    assert "DGEMM average time" in out


def test_cholesky_benchmark_succeeds(rng, capsys):
    timings = cholesky_benchmark(5, 2, rng)
    assert len(timings) == 2
    captured = capsys.readouterr()
    assert "DPOTRF average time" in captured.out
    assert "Error" not in captured.err


def test_solve_benchmark_succeeds(rng, capsys):
    timings = solve_benchmark(5, 2, rng)
    assert len(timings) == 2
    captured = capsys.readouterr()
    assert "DGESV average time" in captured.out
    assert "Error" not in captured.err


def test_benchmark_rejects_large_dimension(rng):
    with pytest.raises(ValueError, match="46341"):
        gemm_benchmark(46341, 1, rng)


def test_main_wrong_argument_count(capsys):
    assert main(["gemm", "4"]) == 0
    assert "No. of input" in capsys.readouterr().out


def test_main_dimension_limit(capsys):
    assert main(["gemm", "50000", "1"]) == 0
    assert "n should be less than 46341" in capsys.readouterr().out


def test_main_runs_gemm(capsys):
    assert main(["gemm", "4", "2"]) == 0
    assert capsys.readouterr().out.count("DGEMM elapsed time") == 2


def test_main_matmul_launchers(capsys):
    assert main(["matmul-seq", "16"]) == 0
    assert main(["matmul-threads", "16"]) == 0
    assert capsys.readouterr().out.count("matmul finish in") == 2


def test_main_dgemm(capsys):
    assert main(["dgemm", "8", "2"]) == 0
    assert "finish in" in capsys.readouterr().out


def test_main_unknown_command(capsys):
    assert main(["bogus"]) == 2
    assert "usage" in capsys.readouterr().err


def test_main_bad_number(capsys):
    assert main(["gemm", "x", "2"]) == 1
    assert "error" in capsys.readouterr().err