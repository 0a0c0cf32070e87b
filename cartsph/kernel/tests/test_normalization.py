from __future__ import annotations

import pytest
import torch

from cartsph.kernel.config import Capabilities, n_channels
from cartsph.kernel.device import DeviceContext
from cartsph.kernel.dispatch import spherical_harmonics_kernel
from cartsph.kernel.normalization import chain_rule, unit_vectors
from cartsph.kernel.recurrence import Y00


ALL_NORM = Capabilities(requires_grad=True, requires_hessian=True, normalize=True)


@pytest.fixture
def ctx():
    with DeviceContext(device="cpu") as c:
        yield c


def _random_xyz(n: int = 20, seed: int = 0) -> torch.Tensor:
    g = torch.Generator(device="cpu").manual_seed(seed)
    return torch.randn(n, 3, generator=g, dtype=torch.float64)


def test_unit_vectors_handles_zero_rows() -> None:
    xyz = torch.tensor([[3.0, 0.0, 4.0], [0.0, 0.0, 0.0]], dtype=torch.float64)
    u, ir = unit_vectors(xyz)
    torch.testing.assert_close(u[0], torch.tensor([0.6, 0.0, 0.8], dtype=torch.float64))
    assert ir[0].item() == pytest.approx(0.2)
    assert torch.equal(u[1], torch.zeros(3, dtype=torch.float64))
    assert ir[1].item() == 0.0


def test_chain_rule_output_is_symmetric() -> None:
    g = torch.Generator(device="cpu").manual_seed(1)
    rows, n = 6, 4
    grad = torch.randn(3, n, rows, generator=g, dtype=torch.float64)
    h = torch.randn(3, 3, n, rows, generator=g, dtype=torch.float64)
    hess = h + h.transpose(0, 1)
    u, ir = unit_vectors(torch.randn(rows, 3, generator=g, dtype=torch.float64))
    new_grad, new_hess = chain_rule(grad, hess, u, ir)
    assert new_grad.shape == grad.shape
    assert torch.equal(new_hess, new_hess.transpose(0, 1))


def test_zero_vector_is_well_defined(ctx) -> None:
    xyz = torch.zeros((2, 3), dtype=torch.float64)
    out = spherical_harmonics_kernel(xyz, 4, ALL_NORM, context=ctx)
    expected = torch.zeros((2, n_channels(4)), dtype=torch.float64)
    expected[:, 0] = Y00
    torch.testing.assert_close(out.sph, expected)
    assert torch.equal(out.dsph, torch.zeros_like(out.dsph))
    assert torch.equal(out.ddsph, torch.zeros_like(out.ddsph))


def test_scale_invariance_of_normalized_outputs(ctx) -> None:
    xyz = _random_xyz(seed=2)
    a = spherical_harmonics_kernel(xyz, 5, ALL_NORM, context=ctx)
    b = spherical_harmonics_kernel(2.0 * xyz, 5, ALL_NORM, context=ctx)
    torch.testing.assert_close(b.sph, a.sph)
    torch.testing.assert_close(b.dsph, a.dsph / 2.0)
    torch.testing.assert_close(b.ddsph, a.ddsph / 4.0)


def test_normalized_gradient_is_tangential(ctx) -> None:
    # degree-0 homogeneity: x . grad Y(x / |x|) = 0
    xyz = _random_xyz(seed=3)
    out = spherical_harmonics_kernel(xyz, 6, ALL_NORM, context=ctx)
    radial = torch.einsum("na,nac->nc", xyz, out.dsph)
    torch.testing.assert_close(radial, torch.zeros_like(radial), atol=1e-12, rtol=0.0)


def test_solid_harmonics_euler_identity(ctx) -> None:
    # solid harmonics are homogeneous of degree l: x . grad Y_lm = l Y_lm
    l_max = 6
    xyz = _random_xyz(seed=4)
    out = spherical_harmonics_kernel(
        xyz, l_max, Capabilities(requires_grad=True), context=ctx
    )
    radial = torch.einsum("na,nac->nc", xyz, out.dsph)
    degrees = torch.cat(
        [torch.full((2 * l + 1,), float(l), dtype=torch.float64) for l in range(l_max + 1)]
    )
    torch.testing.assert_close(radial, out.sph * degrees, rtol=1e-10, atol=1e-10)


def test_normalization_is_idempotent_on_unit_vectors(ctx) -> None:
    xyz = _random_xyz(seed=5)
    xyz = xyz / torch.linalg.vector_norm(xyz, dim=1, keepdim=True)
    raw = spherical_harmonics_kernel(xyz, 7, Capabilities(), context=ctx)
    normed = spherical_harmonics_kernel(xyz, 7, Capabilities(normalize=True), context=ctx)
    torch.testing.assert_close(normed.sph, raw.sph, rtol=1e-12, atol=1e-12)
