from __future__ import annotations

import pytest
import torch

from cartsph.kernel.autograd import SphericalHarmonicsFunction, spherical_harmonics
from cartsph.kernel.backward import vector_jacobian_product
from cartsph.kernel.config import Capabilities, KernelConfig
from cartsph.kernel.device import DeviceContext
from cartsph.kernel.dispatch import spherical_harmonics_kernel


@pytest.fixture
def ctx():
    with DeviceContext(device="cpu") as c:
        yield c


def _random(n: int, n_ch: int, seed: int = 0):
    g = torch.Generator(device="cpu").manual_seed(seed)
    dsph = torch.randn(n, 3, n_ch, generator=g, dtype=torch.float64)
    sph_grad = torch.randn(n, n_ch, generator=g, dtype=torch.float64)
    return dsph, sph_grad


@pytest.mark.parametrize("lanes", [1, 2, 8, 32])
@pytest.mark.parametrize("n_ch", [1, 9, 16, 49])
def test_vjp_matches_einsum(lanes: int, n_ch: int) -> None:
    dsph, sph_grad = _random(11, n_ch)
    got = vector_jacobian_product(dsph, sph_grad, lanes_per_sample=lanes)
    ref = torch.einsum("nac,nc->na", dsph, sph_grad)
    assert got.shape == (11, 3)
    torch.testing.assert_close(got, ref, rtol=1e-12, atol=1e-12)


def test_vjp_empty_batch() -> None:
    dsph, sph_grad = _random(0, 9)
    out = vector_jacobian_product(dsph, sph_grad)
    assert out.shape == (0, 3)


def test_vjp_argument_validation() -> None:
    dsph, sph_grad = _random(4, 9)
    with pytest.raises(ValueError):
        vector_jacobian_product(dsph, sph_grad, lanes_per_sample=3)
    with pytest.raises(ValueError):
        vector_jacobian_product(dsph, sph_grad[:, :8])
    with pytest.raises(ValueError):
        vector_jacobian_product(dsph[:, :2], sph_grad)
    with pytest.raises(TypeError):
        vector_jacobian_product(dsph, sph_grad.float())


def test_vjp_matches_finite_differences_of_forward(ctx) -> None:
    l_max, h = 4, 1e-6
    g = torch.Generator(device="cpu").manual_seed(1)
    xyz = torch.randn(7, 3, generator=g, dtype=torch.float64)
    sph_grad = torch.randn(7, (l_max + 1) ** 2, generator=g, dtype=torch.float64)

    caps = Capabilities(requires_grad=True, normalize=True)
    out = spherical_harmonics_kernel(xyz, l_max, caps, context=ctx)
    got = vector_jacobian_product(out.dsph, sph_grad, lanes_per_sample=4)

    fd = torch.empty_like(got)
    value_caps = Capabilities(normalize=True)
    for a in range(3):
        step = torch.zeros(3, dtype=torch.float64)
        step[a] = h
        plus = spherical_harmonics_kernel(xyz + step, l_max, value_caps, context=ctx).sph
        minus = spherical_harmonics_kernel(xyz - step, l_max, value_caps, context=ctx).sph
        fd[:, a] = ((plus - minus) * sph_grad).sum(dim=1) / (2.0 * h)
    torch.testing.assert_close(got, fd, rtol=1e-6, atol=1e-7)


def test_autograd_backward_uses_vjp(ctx) -> None:
    g = torch.Generator(device="cpu").manual_seed(2)
    xyz = torch.randn(6, 3, generator=g, dtype=torch.float64, requires_grad=True)
    upstream = torch.randn(6, 16, generator=g, dtype=torch.float64)

    sph = spherical_harmonics(xyz, 3, True, KernelConfig(lanes_per_sample=2), ctx)
    (sph * upstream).sum().backward()

    ref = spherical_harmonics_kernel(
        xyz.detach(), 3, Capabilities(requires_grad=True, normalize=True), context=ctx
    )
    torch.testing.assert_close(xyz.grad, torch.einsum("nac,nc->na", ref.dsph, upstream))


def test_autograd_without_grad_has_no_graph(ctx) -> None:
    xyz = torch.randn(4, 3, dtype=torch.float64)
    sph = SphericalHarmonicsFunction.apply(xyz, 2, False, None, ctx)
    assert sph.grad_fn is None
    assert sph.shape == (4, 9)


def test_gradcheck(ctx) -> None:
    g = torch.Generator(device="cpu").manual_seed(3)
    xyz = torch.randn(3, 3, generator=g, dtype=torch.float64, requires_grad=True)
    assert torch.autograd.gradcheck(
        lambda v: spherical_harmonics(v, 3, True, None, ctx),
        (xyz,),
        eps=1e-6,
        atol=1e-6,
    )
