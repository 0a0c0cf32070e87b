import argparse
import math
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import torch
from torch import Tensor

from cartsph.kernel.backward import vector_jacobian_product
from cartsph.kernel.config import Capabilities, KernelConfig, channel_index
from cartsph.kernel.device import DeviceContext
from cartsph.kernel.dispatch import KernelOutputs, spherical_harmonics_kernel
from cartsph.kernel.logging_utils import log_test_result_jsonl, want_jsonl
from cartsph.utils.logging import JsonlLogger, log_runtime_environment


# ---------------------------------------------------------------------------
# Structured result type
# ---------------------------------------------------------------------------


@dataclass
class SanityResult:
    """
    Container for a single numerical sanity check.

    Attributes
    ----------
    name:
        Logical check name, e.g. ``"tiled_vs_dense"``.
    ok:
        True if the check passed its tolerance.
    max_abs_err:
        Maximum absolute error between reference and tested quantities.
    rel_l2_err:
        Norm of the difference divided by the norm of the reference.
    extra:
        Free-form metadata: seeds, timing, configuration, etc.
    """

    name: str
    ok: bool
    max_abs_err: float
    rel_l2_err: float
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_row(self) -> str:
        """Human-readable one-line summary."""
        status = "PASS" if self.ok else "FAIL"
        return (
            f"[{status}] {self.name:28s}  "
            f"max_abs_err={self.max_abs_err:.3e}  "
            f"rel_l2={self.rel_l2_err:.3e}"
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def default_tolerance(dtype: torch.dtype) -> float:
    """Relative L2 tolerance for cross-implementation parity."""
    return 1e-4 if dtype == torch.float32 else 1e-10


def random_vectors(
    n: int,
    device: torch.device,
    dtype: torch.dtype,
    seed: int = 0,
    r_min: float = 0.5,
    r_max: float = 1.5,
) -> Tensor:
    """Random directions with radii uniform in ``[r_min, r_max]``."""
    g = torch.Generator(device="cpu").manual_seed(seed)
    dirs = torch.randn(n, 3, generator=g, dtype=torch.float64)
    dirs = dirs / torch.linalg.vector_norm(dirs, dim=1, keepdim=True)
    radii = r_min + (r_max - r_min) * torch.rand(n, 1, generator=g, dtype=torch.float64)
    return (dirs * radii).to(device=device, dtype=dtype)


def _errors(ref: Tensor, test: Tensor) -> tuple:
    ref64 = ref.detach().to(device="cpu", dtype=torch.float64)
    test64 = test.detach().to(device="cpu", dtype=torch.float64)
    diff = test64 - ref64
    max_abs = float(diff.abs().max().item()) if diff.numel() else 0.0
    denom = float(torch.linalg.vector_norm(ref64).item())
    num = float(torch.linalg.vector_norm(diff).item())
    rel = num / denom if denom > 0.0 else num
    return max_abs, rel


def _combine(pairs: Sequence[tuple]) -> tuple:
    max_abs = 0.0
    rel = 0.0
    for ref, test in pairs:
        if ref is None or test is None:
            continue
        a, r = _errors(ref, test)
        max_abs = max(max_abs, a)
        rel = max(rel, r)
    return max_abs, rel


def _evaluate(
    xyz: Tensor,
    l_max: int,
    caps: Capabilities,
    backend: str = "tiled",
    samples_per_group: Optional[int] = None,
) -> KernelOutputs:
    config = KernelConfig(backend=backend)
    if samples_per_group is not None:
        config = KernelConfig(backend=backend, samples_per_group=samples_per_group)
    with DeviceContext(device=xyz.device) as ctx:
        return spherical_harmonics_kernel(xyz, l_max, caps, config=config, context=ctx)


_ALL = dict(requires_grad=True, requires_hessian=True)


def _run_check(
    suite_label: str,
    name: str,
    fn: Callable[..., SanityResult],
    *args: Any,
    **kwargs: Any,
) -> SanityResult:
    """
    Run a check, turning unexpected exceptions into a failing result, and
    emit a JSONL record when enabled.
    """
    t0 = time.perf_counter()
    try:
        res = fn(*args, **kwargs)
        if not isinstance(res, SanityResult):
            raise TypeError(
                f"Check {fn.__name__} did not return a SanityResult; got {type(res)!r}"
            )
        res.extra.setdefault("wall_time_s", time.perf_counter() - t0)
    except Exception as exc:  # pragma: no cover - reported as a failed check
        res = SanityResult(
            name=name,
            ok=False,
            max_abs_err=float("inf"),
            rel_l2_err=float("inf"),
            extra={"error": repr(exc), "wall_time_s": time.perf_counter() - t0},
        )

    log_test_result_jsonl(suite_label, res)
    return res


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def check_tiled_vs_dense(
    n_samples: int,
    l_max: int,
    device: torch.device,
    dtype: torch.dtype,
    tol: float,
    normalize: bool = False,
) -> SanityResult:
    """Tiled kernel against the dense autodiff evaluator (values, dsph, ddsph)."""
    xyz = random_vectors(n_samples, device, dtype, seed=1)
    caps = Capabilities(normalize=normalize, **_ALL)
    tiled = _evaluate(xyz, l_max, caps, samples_per_group=max(1, n_samples // 3))
    dense = _evaluate(xyz, l_max, caps, backend="dense")

    max_abs, rel = _combine(
        [(dense.sph, tiled.sph), (dense.dsph, tiled.dsph), (dense.ddsph, tiled.ddsph)]
    )
    return SanityResult(
        name="tiled_vs_dense" + ("_normalized" if normalize else ""),
        ok=rel <= tol,
        max_abs_err=max_abs,
        rel_l2_err=rel,
        extra={"n_samples": n_samples, "l_max": l_max, "dtype": str(dtype), "tol": tol},
    )


def check_cpu_vs_device(
    n_samples: int,
    l_max: int,
    device: torch.device,
    dtype: torch.dtype,
    tol: float,
    normalize: bool = True,
) -> SanityResult:
    """Same launch on the CPU and on ``device``."""
    xyz_cpu = random_vectors(n_samples, torch.device("cpu"), dtype, seed=2)
    caps = Capabilities(normalize=normalize, **_ALL)
    ref = _evaluate(xyz_cpu, l_max, caps)
    test = _evaluate(xyz_cpu.to(device), l_max, caps)

    max_abs, rel = _combine(
        [(ref.sph, test.sph), (ref.dsph, test.dsph), (ref.ddsph, test.ddsph)]
    )
    return SanityResult(
        name="cpu_vs_device",
        ok=rel <= tol,
        max_abs_err=max_abs,
        rel_l2_err=rel,
        extra={"device": str(device), "n_samples": n_samples, "l_max": l_max, "tol": tol},
    )


def check_finite_differences(
    n_samples: int,
    l_max: int,
    device: torch.device,
    normalize: bool = False,
    h: float = 1e-5,
    tol: float = 1e-6,
) -> SanityResult:
    """Central differences of sph (for dsph) and of dsph (for ddsph), in float64."""
    dtype = torch.float64
    xyz = random_vectors(n_samples, device, dtype, seed=3)
    caps = Capabilities(normalize=normalize, **_ALL)
    base = _evaluate(xyz, l_max, caps)

    fd_grad = torch.empty_like(base.dsph)
    fd_hess = torch.empty_like(base.ddsph)
    for a in range(3):
        step = torch.zeros(3, dtype=dtype, device=device)
        step[a] = h
        plus = _evaluate(xyz + step, l_max, caps)
        minus = _evaluate(xyz - step, l_max, caps)
        fd_grad[:, a, :] = (plus.sph - minus.sph) / (2.0 * h)
        fd_hess[:, a, :, :] = (plus.dsph - minus.dsph) / (2.0 * h)

    max_abs, rel = _combine([(fd_grad, base.dsph), (fd_hess, base.ddsph)])
    return SanityResult(
        name="finite_differences" + ("_normalized" if normalize else ""),
        ok=rel <= tol,
        max_abs_err=max_abs,
        rel_l2_err=rel,
        extra={"n_samples": n_samples, "l_max": l_max, "h": h, "tol": tol},
    )


def check_hessian_symmetry(
    n_samples: int,
    l_max: int,
    device: torch.device,
    dtype: torch.dtype,
    normalize: bool = True,
) -> SanityResult:
    """``ddsph[n, a, b, c] == ddsph[n, b, a, c]`` exactly."""
    xyz = random_vectors(n_samples, device, dtype, seed=4)
    out = _evaluate(xyz, l_max, Capabilities(normalize=normalize, **_ALL))
    max_abs, rel = _errors(out.ddsph, out.ddsph.transpose(1, 2))
    return SanityResult(
        name="hessian_symmetry",
        ok=max_abs == 0.0,
        max_abs_err=max_abs,
        rel_l2_err=rel,
        extra={"n_samples": n_samples, "l_max": l_max},
    )


def check_low_degree_consistency(
    n_samples: int,
    l_max: int,
    device: torch.device,
    dtype: torch.dtype,
) -> SanityResult:
    """Channels of degree <= L' must not depend on the requested l_max >= L'."""
    xyz = random_vectors(n_samples, device, dtype, seed=5)
    caps = Capabilities(**_ALL)
    full = _evaluate(xyz, l_max, caps)
    pairs = []
    for low in range(l_max):
        part = _evaluate(xyz, low, caps)
        k = (low + 1) ** 2
        pairs.append((part.sph, full.sph[:, :k]))
        pairs.append((part.dsph, full.dsph[..., :k]))
        pairs.append((part.ddsph, full.ddsph[..., :k]))
    max_abs, rel = _combine(pairs)
    return SanityResult(
        name="low_degree_consistency",
        ok=max_abs == 0.0,
        max_abs_err=max_abs,
        rel_l2_err=rel,
        extra={"n_samples": n_samples, "l_max": l_max},
    )


def check_on_axis(
    l_max: int,
    device: torch.device,
    dtype: torch.dtype,
    tol: float,
) -> SanityResult:
    """On the z axis only m = 0 survives: ``Y_l0 = sqrt((2l+1)/4pi) z^l``."""
    z = torch.tensor([-1.5, -0.25, 0.5, 2.0], dtype=dtype, device=device)
    xyz = torch.zeros((z.shape[0], 3), dtype=dtype, device=device)
    xyz[:, 2] = z
    out = _evaluate(xyz, l_max, Capabilities(**_ALL))

    expected = torch.zeros_like(out.sph)
    for l in range(l_max + 1):
        expected[:, channel_index(l, 0)] = ((2 * l + 1) / (4.0 * math.pi)) ** 0.5 * z**l

    finite = bool(torch.isfinite(out.sph).all() and torch.isfinite(out.dsph).all())
    finite = finite and bool(torch.isfinite(out.ddsph).all())
    max_abs, rel = _errors(expected, out.sph)
    return SanityResult(
        name="on_axis",
        ok=finite and rel <= tol,
        max_abs_err=max_abs,
        rel_l2_err=rel,
        extra={"l_max": l_max, "finite": finite},
    )


def check_normalization_idempotence(
    n_samples: int,
    l_max: int,
    device: torch.device,
    dtype: torch.dtype,
    tol: float,
) -> SanityResult:
    """On unit vectors the normalized values equal the unnormalized ones."""
    xyz = random_vectors(n_samples, device, dtype, seed=6, r_min=1.0, r_max=1.0)
    raw = _evaluate(xyz, l_max, Capabilities())
    normed = _evaluate(xyz, l_max, Capabilities(normalize=True))
    max_abs, rel = _errors(raw.sph, normed.sph)
    return SanityResult(
        name="normalization_idempotence",
        ok=rel <= tol,
        max_abs_err=max_abs,
        rel_l2_err=rel,
        extra={"n_samples": n_samples, "l_max": l_max},
    )


def check_vjp(
    n_samples: int,
    l_max: int,
    device: torch.device,
    lanes_per_sample: int = 8,
    h: float = 1e-6,
    tol: float = 1e-7,
) -> SanityResult:
    """VJP kernel against einsum and against finite differences of sum(sph * g)."""
    dtype = torch.float64
    xyz = random_vectors(n_samples, device, dtype, seed=7)
    g = torch.Generator(device="cpu").manual_seed(8)
    n_ch = (l_max + 1) ** 2
    sph_grad = torch.randn(n_samples, n_ch, generator=g, dtype=dtype).to(device)

    caps = Capabilities(requires_grad=True, normalize=True)
    out = _evaluate(xyz, l_max, caps)
    vjp = vector_jacobian_product(out.dsph, sph_grad, lanes_per_sample=lanes_per_sample)
    ref = torch.einsum("nac,nc->na", out.dsph, sph_grad)

    fd = torch.empty_like(vjp)
    for a in range(3):
        step = torch.zeros(3, dtype=dtype, device=device)
        step[a] = h
        plus = _evaluate(xyz + step, l_max, Capabilities(normalize=True)).sph
        minus = _evaluate(xyz - step, l_max, Capabilities(normalize=True)).sph
        fd[:, a] = ((plus - minus) * sph_grad).sum(dim=1) / (2.0 * h)

    max_abs, rel = _combine([(ref, vjp), (fd, vjp)])
    return SanityResult(
        name="vjp",
        ok=rel <= tol,
        max_abs_err=max_abs,
        rel_l2_err=rel,
        extra={"lanes_per_sample": lanes_per_sample, "l_max": l_max, "tol": tol},
    )


# ---------------------------------------------------------------------------
# Public run_* wrappers used by pytest
# ---------------------------------------------------------------------------


def run_check(
    name: str,
    fn: Callable[..., SanityResult],
    *args: Any,
    suite_label: str = "pytest_cartsph_tests",
    **kwargs: Any,
) -> SanityResult:
    """Wrapper used by pytest so records are tagged with ``suite_label``."""
    return _run_check(suite_label, name, fn, *args, **kwargs)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m cartsph.kernel.sanity_suite",
        description="Run numerical sanity checks of the harmonics kernel.",
    )
    parser.add_argument(
        "--device",
        type=str,
        default="cpu",
        help="Device for computations (e.g. 'cpu', 'cuda').",
    )
    parser.add_argument(
        "--dtype",
        type=str,
        default="float64",
        choices=["float32", "float64"],
        help="Floating-point dtype for the parity checks.",
    )
    parser.add_argument(
        "--n-samples",
        type=int,
        default=257,
        help="Number of random vectors per check.",
    )
    parser.add_argument(
        "--l-max",
        type=int,
        default=6,
        help="Maximum degree.",
    )
    parser.add_argument(
        "--tol",
        type=float,
        default=None,
        help="Relative L2 tolerance for parity checks (dtype default if omitted).",
    )
    parser.add_argument(
        "--jsonl",
        action="store_true",
        help=(
            "Force structured JSONL records by setting CARTSPH_ENABLE_JSONL=1 "
            "inside this process. If CARTSPH_JSONL_PATH is set, records are "
            "also appended to that file."
        ),
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help=(
            "Directory for an events.jsonl run log (runtime environment and "
            "one record per check)."
        ),
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)

    if args.jsonl:
        os.environ["CARTSPH_ENABLE_JSONL"] = "1"

    device = torch.device(args.device)
    dtype = torch.float32 if args.dtype == "float32" else torch.float64
    tol = default_tolerance(dtype) if args.tol is None else args.tol
    n, l_max = args.n_samples, args.l_max

    print(f"[sanity_suite] device={device}, dtype={dtype}, n_samples={n}, l_max={l_max}")
    jsonl_path = os.environ.get("CARTSPH_JSONL_PATH", "").strip() or "<stdout>"
    print(
        f"[sanity_suite] jsonl_active={want_jsonl()}, jsonl_path={jsonl_path}",
        file=sys.stderr,
    )

    run_log = JsonlLogger(args.log_dir) if args.log_dir else None
    if run_log is not None:
        log_runtime_environment(run_log)

    suite = "sanity_suite"
    results: List[SanityResult] = [
        _run_check(suite, "tiled_vs_dense", check_tiled_vs_dense, n, l_max, device, dtype, tol),
        _run_check(
            suite, "tiled_vs_dense_normalized", check_tiled_vs_dense,
            n, l_max, device, dtype, tol, normalize=True,
        ),
        _run_check(suite, "finite_differences", check_finite_differences, n, l_max, device),
        _run_check(
            suite, "finite_differences_normalized", check_finite_differences,
            n, l_max, device, normalize=True,
        ),
        _run_check(suite, "hessian_symmetry", check_hessian_symmetry, n, l_max, device, dtype),
        _run_check(
            suite, "low_degree_consistency", check_low_degree_consistency,
            n, l_max, device, dtype,
        ),
        _run_check(suite, "on_axis", check_on_axis, l_max, device, dtype, tol),
        _run_check(
            suite, "normalization_idempotence", check_normalization_idempotence,
            n, l_max, device, dtype, max(tol, 1e-12),
        ),
        _run_check(suite, "vjp", check_vjp, n, l_max, device),
    ]
    if device.type != "cpu":
        results.append(
            _run_check(suite, "cpu_vs_device", check_cpu_vs_device, n, l_max, device, dtype, tol)
        )

    if run_log is not None:
        for res in results:
            run_log.info(
                "sanity_check",
                name=res.name,
                ok=res.ok,
                max_abs_err=res.max_abs_err,
                rel_l2_err=res.rel_l2_err,
                extra=res.extra,
            )
        run_log.close()

    print("\n=== cartsph sanity summary ===")
    for res in results:
        print(res.as_row())
        if res.extra:
            print(f"    extra: {res.extra}")

    return 0 if all(r.ok for r in results) else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
