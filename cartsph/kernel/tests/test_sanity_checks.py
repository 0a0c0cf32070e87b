from __future__ import annotations

"""
Numerical regression tests for the harmonics kernel.

Each test runs one check of :mod:`cartsph.kernel.sanity_suite` on the CPU
in float64 and asserts it passed, printing the full result on failure.
"""

import json

import pytest
import torch

from cartsph.kernel.sanity_suite import (
    SanityResult,
    check_finite_differences,
    check_hessian_symmetry,
    check_low_degree_consistency,
    check_normalization_idempotence,
    check_on_axis,
    check_tiled_vs_dense,
    check_vjp,
    default_tolerance,
    main,
    run_check,
)


_CPU = torch.device("cpu")
_N = 33
_L_MAX = 5


def _format_failure(prefix: str, res: SanityResult) -> str:
    msg = [
        f"{prefix} failed:",
        f"  ok          = {res.ok}",
        f"  max_abs_err = {res.max_abs_err:.6e}",
        f"  rel_l2_err  = {res.rel_l2_err:.6e}",
    ]
    if res.extra:
        msg.append("  extra:")
        for k, v in sorted(res.extra.items()):
            msg.append(f"    {k}: {v}")
    return "\n".join(msg)


@pytest.mark.parametrize("normalize", [False, True])
def test_tiled_matches_dense(normalize: bool) -> None:
    tol = default_tolerance(torch.float64)
    res = run_check(
        "tiled_vs_dense", check_tiled_vs_dense, _N, _L_MAX, _CPU, torch.float64, tol,
        normalize=normalize,
    )
    assert res.ok, _format_failure("tiled_vs_dense", res)


def test_tiled_matches_dense_single_precision() -> None:
    tol = default_tolerance(torch.float32)
    res = run_check(
        "tiled_vs_dense_f32", check_tiled_vs_dense, _N, 4, _CPU, torch.float32, tol
    )
    assert res.ok, _format_failure("tiled_vs_dense_f32", res)


@pytest.mark.parametrize("normalize", [False, True])
def test_finite_differences(normalize: bool) -> None:
    res = run_check(
        "finite_differences", check_finite_differences, _N, _L_MAX, _CPU,
        normalize=normalize,
    )
    assert res.ok, _format_failure("finite_differences", res)


def test_hessian_is_exactly_symmetric() -> None:
    res = run_check("hessian_symmetry", check_hessian_symmetry, _N, _L_MAX, _CPU, torch.float64)
    assert res.ok, _format_failure("hessian_symmetry", res)


def test_low_degree_consistency() -> None:
    res = run_check(
        "low_degree_consistency", check_low_degree_consistency, _N, _L_MAX, _CPU, torch.float64
    )
    assert res.ok, _format_failure("low_degree_consistency", res)


def test_on_axis() -> None:
    res = run_check("on_axis", check_on_axis, 8, _CPU, torch.float64, 1e-12)
    assert res.ok, _format_failure("on_axis", res)


def test_normalization_idempotence() -> None:
    res = run_check(
        "normalization_idempotence", check_normalization_idempotence,
        _N, _L_MAX, _CPU, torch.float64, 1e-12,
    )
    assert res.ok, _format_failure("normalization_idempotence", res)


@pytest.mark.parametrize("lanes", [1, 8])
def test_vjp(lanes: int) -> None:
    res = run_check("vjp", check_vjp, _N, _L_MAX, _CPU, lanes_per_sample=lanes)
    assert res.ok, _format_failure("vjp", res)


def test_failing_check_becomes_failed_result() -> None:
    def broken(*_args):
        raise RuntimeError("boom")

    res = run_check("broken", broken)
    assert not res.ok
    assert "boom" in res.extra["error"]


def test_cli_main_runs_on_cpu(capsys) -> None:
    rc = main(["--device", "cpu", "--n-samples", "9", "--l-max", "3"])
    out = capsys.readouterr().out
    assert rc == 0, out
    assert "cartsph sanity summary" in out
    assert "[FAIL]" not in out


def test_cli_writes_run_log(tmp_path, capsys) -> None:
    log_dir = tmp_path / "run"
    rc = main(
        ["--device", "cpu", "--n-samples", "5", "--l-max", "2", "--log-dir", str(log_dir)]
    )
    capsys.readouterr()
    assert rc == 0

    lines = (log_dir / "events.jsonl").read_text(encoding="utf-8").splitlines()
    records = [json.loads(line) for line in lines]
    env = records[0]
    assert env["msg"] == "Runtime environment."
    assert env["torch"] == torch.__version__
    assert env["cuda_available"] == torch.cuda.is_available()
    assert "numpy" in env and "python" in env

    checks = [r for r in records[1:] if r["msg"] == "sanity_check"]
    assert len(checks) == 9
    assert all(r["ok"] for r in checks)
    assert {r["name"] for r in checks} >= {"vjp", "on_axis", "hessian_symmetry"}
    assert all("wall_time_s" in r["extra"] for r in checks)
