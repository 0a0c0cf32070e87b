from __future__ import annotations

import pytest
import torch

from cartsph.kernel.config import Capabilities
from cartsph.kernel.device import DeviceContext
from cartsph.kernel.local_buffers import LocalBuffers
from cartsph.kernel.prefactors import compute_prefactors
from cartsph.kernel.recurrence import (
    Degree0,
    Degree1,
    GenericDegree,
    TileCoordinates,
    azimuthal_terms,
    legendre_column,
    select_variant,
)


ALL = Capabilities(requires_grad=True, requires_hessian=True)


def _random_xyz(n: int = 16, seed: int = 0) -> torch.Tensor:
    g = torch.Generator(device="cpu").manual_seed(seed)
    return torch.randn(n, 3, generator=g, dtype=torch.float64)


def test_azimuthal_terms_match_complex_power() -> None:
    xyz = _random_xyz()
    coords = TileCoordinates.from_xyz(xyz)
    az = azimuthal_terms(coords, 6)
    w = torch.complex(coords.x, coords.y)
    for m in range(7):
        ref = w**m
        torch.testing.assert_close(az.c[m], ref.real)
        torch.testing.assert_close(az.s[m], ref.imag)
        torch.testing.assert_close(az.twomz[m], 2.0 * (m + 1) * coords.z)


def test_legendre_column_degree_two() -> None:
    xyz = _random_xyz()
    coords = TileCoordinates.from_xyz(xyz)
    table = compute_prefactors(2)
    az = azimuthal_terms(coords, 2)
    col = legendre_column(2, coords, az, table)
    x, y, z = coords.x, coords.y, coords.z
    torch.testing.assert_close(col[2], torch.full_like(x, 3.0))
    torch.testing.assert_close(col[1], -3.0 * z)
    torch.testing.assert_close(col[0], z * z - 0.5 * (x * x + y * y))
    assert legendre_column(-1, coords, az, table) == []


def test_select_variant() -> None:
    assert isinstance(select_variant(0), Degree0)
    assert isinstance(select_variant(1), Degree1)
    generic = select_variant(4)
    assert isinstance(generic, GenericDegree)
    assert generic.degree == 4
    with pytest.raises(ValueError):
        GenericDegree(-1)


def _run_variant(variant, degree: int, xyz: torch.Tensor, base: int = 0):
    rows = xyz.shape[0]
    table = compute_prefactors(max(degree, 1))
    coords = TileCoordinates.from_xyz(xyz)
    az = azimuthal_terms(coords, max(degree, 1))
    with DeviceContext(device="cpu") as ctx:
        buf = LocalBuffers(ctx, rows, 2 * degree + 1, torch.float64, ALL)
        buf.clear(2 * degree + 1)
        variant.evaluate(buf, coords, az, table, ALL, base=base)
        value, grad, hess = buf.active()
        return value.clone(), grad.clone(), hess.clone()


@pytest.mark.parametrize("degree, closed_form", [(0, Degree0()), (1, Degree1())])
def test_closed_forms_match_generic_recurrence(degree, closed_form) -> None:
    xyz = _random_xyz(seed=3)
    ref = _run_variant(GenericDegree(degree), degree, xyz)
    got = _run_variant(closed_form, degree, xyz)
    for r, g in zip(ref, got):
        torch.testing.assert_close(g, r, rtol=1e-14, atol=1e-15)


def test_generic_degree_hessian_is_symmetric() -> None:
    xyz = _random_xyz(seed=4)
    _, _, hess = _run_variant(GenericDegree(5), 5, xyz)
    assert torch.equal(hess, hess.transpose(0, 1))


def test_value_only_variant_skips_derivative_columns() -> None:
    xyz = _random_xyz(n=5, seed=5)
    coords = TileCoordinates.from_xyz(xyz)
    table = compute_prefactors(3)
    az = azimuthal_terms(coords, 3)
    with DeviceContext(device="cpu") as ctx:
        buf = LocalBuffers(ctx, 5, 7, torch.float64, Capabilities())
        buf.clear(7)
        GenericDegree(3).evaluate(buf, coords, az, table, Capabilities())
        value, grad, hess = buf.active()
        assert grad is None and hess is None
        assert torch.isfinite(value).all()
