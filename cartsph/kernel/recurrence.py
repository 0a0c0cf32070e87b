"""Recurrence engine for real solid harmonics.

All variants share one contract: given the coordinates of a tile of samples
(each a (rows,) tensor), the azimuthal terms and the prefactor table, write
the value, gradient and Hessian of their channels into :class:`LocalBuffers`.

Low degrees are closed-form polynomials (:class:`Degree0`, :class:`Degree1`).
Every other degree goes through :class:`GenericDegree`, which builds the
Legendre-type column ``Q_l^m`` by the descending-m recurrence

    Q_l^l     = qlmk[k_l + l]
    Q_l^{l-1} = -z Q_l^l
    Q_l^m     = qlmk[k_l + m] (2(m+1) z Q_l^{m+1} + (x^2 + y^2) Q_l^{m+2})

and evaluates ``Y_{l,+m} = pk[k_l+m] Q_l^m c_m``,
``Y_{l,-m} = pk[k_l+m] Q_l^m s_m``, where ``c_m + i s_m = (x + i y)^m``.

Derivatives follow from

    dQ_l^m/dx = x Q_{l-1}^{m+1}
    dQ_l^m/dy = y Q_{l-1}^{m+1}
    dQ_l^m/dz = (l+m) Q_{l-1}^m

and ``d(x + i y)^m = m (x + i y)^{m-1} (1, i, 0)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import torch
from torch import Tensor

from .config import HARDCODED_L_MAX, Capabilities
from .local_buffers import LocalBuffers
from .prefactors import PrefactorTable

# sqrt(1 / (4 pi)) and sqrt(3 / (4 pi))
Y00 = 0.28209479177387814
Y1_NORM = 0.4886025119029199


@dataclass
class TileCoordinates:
    """Coordinates of one tile, one entry per row."""

    x: Tensor
    y: Tensor
    z: Tensor

    @classmethod
    def from_xyz(cls, xyz: Tensor) -> "TileCoordinates":
        return cls(x=xyz[:, 0], y=xyz[:, 1], z=xyz[:, 2])

    @property
    def rxy(self) -> Tensor:
        return self.x * self.x + self.y * self.y


@dataclass
class AzimuthalTerms:
    """``c_m``, ``s_m`` and ``twomz_m = 2(m+1) z`` for ``m = 0..l_max``."""

    c: List[Tensor]
    s: List[Tensor]
    twomz: List[Tensor]


def azimuthal_terms(coords: TileCoordinates, l_max: int) -> AzimuthalTerms:
    """Sequential in m; computed once per tile before the degree sweep."""
    x, y, z = coords.x, coords.y, coords.z
    c = [torch.ones_like(x)]
    s = [torch.zeros_like(x)]
    twomz = [2.0 * z]
    for m in range(1, l_max + 1):
        c.append(c[m - 1] * x - s[m - 1] * y)
        s.append(c[m - 1] * y + s[m - 1] * x)
        twomz.append(2.0 * (m + 1) * z)
    return AzimuthalTerms(c=c, s=s, twomz=twomz)


def legendre_column(
    d: int,
    coords: TileCoordinates,
    az: AzimuthalTerms,
    table: PrefactorTable,
) -> List[Tensor]:
    """``[Q_d^0, ..., Q_d^d]`` for every row. Empty for ``d < 0``."""
    if d < 0:
        return []
    qlmk = table.qlmk_block(d)
    rxy = coords.rxy
    col: List[Optional[Tensor]] = [None] * (d + 1)
    col[d] = torch.full_like(coords.x, qlmk[d])
    if d >= 1:
        col[d - 1] = -coords.z * col[d]
    for m in range(d - 2, -1, -1):
        col[m] = qlmk[m] * (az.twomz[m] * col[m + 1] + rxy * col[m + 2])
    return col  # type: ignore[return-value]


def _entry(col: Sequence[Tensor], m: int, zero: Tensor) -> Tensor:
    if 0 <= m < len(col):
        return col[m]
    return zero


def _stack_hessian(xx, xy, xz, yy, yz, zz) -> Tensor:
    return torch.stack(
        [
            torch.stack([xx, xy, xz]),
            torch.stack([xy, yy, yz]),
            torch.stack([xz, yz, zz]),
        ]
    )


def _unique_hessian(h: Tensor) -> Tuple[Tensor, ...]:
    return (h[0, 0], h[0, 1], h[0, 2], h[1, 1], h[1, 2], h[2, 2])


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


class Degree0:
    """``Y_00``: constant value, zero derivatives. Writes slot ``base``."""

    degree = 0

    def evaluate(
        self,
        buffers: LocalBuffers,
        coords: TileCoordinates,
        az: AzimuthalTerms,
        table: PrefactorTable,
        caps: Capabilities,
        base: int = 0,
    ) -> None:
        zero = torch.zeros_like(coords.x)
        value = torch.full_like(coords.x, Y00)
        grad = torch.stack([zero, zero, zero]) if caps.requires_grad else None
        hess = (zero,) * 6 if caps.requires_hessian else None
        buffers.write(base, value, grad, hess)


class Degree1:
    """``Y_1m = sqrt(3/4pi) (y, z, x)``. Writes slots ``base .. base + 2``."""

    degree = 1

    def evaluate(
        self,
        buffers: LocalBuffers,
        coords: TileCoordinates,
        az: AzimuthalTerms,
        table: PrefactorTable,
        caps: Capabilities,
        base: int = 0,
    ) -> None:
        zero = torch.zeros_like(coords.x)
        const = torch.full_like(coords.x, Y1_NORM)
        hess = (zero,) * 6 if caps.requires_hessian else None

        for slot, (value, axis) in enumerate(
            ((coords.y, 1), (coords.z, 2), (coords.x, 0))
        ):
            grad = None
            if caps.requires_grad:
                parts = [zero, zero, zero]
                parts[axis] = const
                grad = torch.stack(parts)
            buffers.write(base + slot, Y1_NORM * value, grad, hess)


class GenericDegree:
    """Degree ``l`` through the Legendre recurrence. Writes slots ``0 .. 2l``."""

    def __init__(self, degree: int) -> None:
        if degree < 0:
            raise ValueError(f"degree must be non-negative, got {degree}")
        self.degree = degree

    def evaluate(
        self,
        buffers: LocalBuffers,
        coords: TileCoordinates,
        az: AzimuthalTerms,
        table: PrefactorTable,
        caps: Capabilities,
        base: int = 0,
    ) -> None:
        l = self.degree
        x, y = coords.x, coords.y
        zero = torch.zeros_like(x)
        pk = table.pk_block(l)

        q0 = legendre_column(l, coords, az, table)
        q1 = legendre_column(l - 1, coords, az, table) if caps.requires_grad else []
        q2 = legendre_column(l - 2, coords, az, table) if caps.requires_hessian else []

        for m in range(l + 1):
            factor = pk[m]
            q = q0[m]

            g_q = h_q = None
            if caps.requires_grad:
                q1_xy = _entry(q1, m + 1, zero)
                q1_z = _entry(q1, m, zero)
                g_q = torch.stack([x * q1_xy, y * q1_xy, (l + m) * q1_z])
            if caps.requires_hessian:
                q2_xy = _entry(q2, m + 2, zero)
                q2_xz = _entry(q2, m + 1, zero)
                q2_zz = _entry(q2, m, zero)
                lm = float(l + m)
                h_q = _stack_hessian(
                    q1_xy + x * x * q2_xy,
                    x * y * q2_xy,
                    lm * x * q2_xz,
                    q1_xy + y * y * q2_xy,
                    lm * y * q2_xz,
                    lm * (lm - 1.0) * q2_zz,
                )

            # cosine part -> slot l + m; sine part -> slot l - m
            parts = [(l + m, "c")]
            if m > 0:
                parts.append((l - m, "s"))

            for slot, kind in parts:
                a, g_a, h_a = _azimuthal_factor(kind, m, az, zero, caps)
                value = factor * q * a
                grad = hess = None
                if g_q is not None:
                    grad = factor * (g_q * a + q * g_a)
                if h_q is not None:
                    outer = g_q[:, None] * g_a[None, :]
                    full = factor * (h_q * a + outer + outer.transpose(0, 1) + q * h_a)
                    hess = _unique_hessian(full)
                buffers.write(base + slot, value, grad, hess)


def _azimuthal_factor(
    kind: str,
    m: int,
    az: AzimuthalTerms,
    zero: Tensor,
    caps: Capabilities,
) -> Tuple[Tensor, Optional[Tensor], Optional[Tensor]]:
    """``c_m`` or ``s_m`` with its gradient and Hessian (z-independent)."""
    c, s = az.c, az.s
    a = c[m] if kind == "c" else s[m]

    grad = hess = None
    if caps.requires_grad:
        if m == 0:
            grad = torch.stack([zero, zero, zero])
        elif kind == "c":
            grad = torch.stack([m * c[m - 1], -m * s[m - 1], zero])
        else:
            grad = torch.stack([m * s[m - 1], m * c[m - 1], zero])

    if caps.requires_hessian:
        if m < 2:
            hess = _stack_hessian(zero, zero, zero, zero, zero, zero)
        else:
            k = float(m * (m - 1))
            if kind == "c":
                xx, xy = k * c[m - 2], -k * s[m - 2]
            else:
                xx, xy = k * s[m - 2], k * c[m - 2]
            hess = _stack_hessian(xx, xy, zero, -xx, zero, zero)
    return a, grad, hess


DegreeVariant = Union[Degree0, Degree1, GenericDegree]

_LOW_DEGREE_VARIANTS: Dict[int, DegreeVariant] = {0: Degree0(), 1: Degree1()}


def select_variant(degree: int) -> DegreeVariant:
    """Closed form for ``degree <= HARDCODED_L_MAX``, generic recurrence otherwise."""
    if degree <= HARDCODED_L_MAX and degree in _LOW_DEGREE_VARIANTS:
        return _LOW_DEGREE_VARIANTS[degree]
    return GenericDegree(degree)


__all__ = [
    "Y00",
    "Y1_NORM",
    "TileCoordinates",
    "AzimuthalTerms",
    "azimuthal_terms",
    "legendre_column",
    "Degree0",
    "Degree1",
    "GenericDegree",
    "DegreeVariant",
    "select_variant",
]
