"""Dense reference evaluator.

Independent of the tiled kernel: every sample's ``Q_l^m`` table is built by
the ascending-l three-term recurrence

    Q_m^m     = (-1)^m (2m-1)!!
    Q_{m+1}^m = (2m+1) z Q_m^m
    Q_l^m     = ((2l-1) z Q_{l-1}^m - (l+m-1) r^2 Q_{l-2}^m) / (l-m)

normalized with log-gamma constants, and derivatives are obtained with
``torch.func`` rather than closed forms. Used for cross-backend parity.
"""

from __future__ import annotations

import math
from functools import lru_cache
from typing import List, Tuple

import torch
from torch import Tensor
from torch.func import hessian, jacrev, vmap

from .config import Capabilities, n_channels, validate_l_max
from .dispatch import KernelOutputs


@lru_cache(maxsize=32)
def _normalization(l_max: int) -> Tuple[Tuple[float, ...], ...]:
    """N_lm = (-1)^m sqrt((2l+1)/4pi (l-m)!/(l+m)!) (times sqrt 2 for m > 0)."""
    table: List[Tuple[float, ...]] = []
    for l in range(l_max + 1):
        row = []
        for m in range(l + 1):
            log_ratio = math.lgamma(l - m + 1) - math.lgamma(l + m + 1)
            val = math.sqrt((2 * l + 1) / (4.0 * math.pi) * math.exp(log_ratio))
            if m > 0:
                val *= math.sqrt(2.0) * (-1.0) ** m
            row.append(val)
        table.append(tuple(row))
    return tuple(table)


def _double_factorial_odd(m: int) -> float:
    out = 1.0
    for k in range(1, 2 * m, 2):
        out *= k
    return out


def _safe_direction(v: Tensor) -> Tensor:
    r2 = (v * v).sum()
    positive = r2 > 0
    ir = torch.where(positive, torch.rsqrt(torch.where(positive, r2, torch.ones_like(r2))), torch.zeros_like(r2))
    return v * ir


def _harmonics_single(v: Tensor, l_max: int, normalize: bool) -> Tensor:
    """All ``(l_max+1)^2`` harmonics of one (3,) vector."""
    if normalize:
        v = _safe_direction(v)
    x, y, z = v[0], v[1], v[2]
    r2 = x * x + y * y + z * z
    norms = _normalization(l_max)

    c = [torch.ones_like(x)]
    s = [torch.zeros_like(x)]
    for m in range(1, l_max + 1):
        c.append(c[-1] * x - s[-1] * y)
        s.append(c[-2] * y + s[-1] * x)

    # q[l][m]
    q = [[None] * (l + 1) for l in range(l_max + 1)]
    for m in range(l_max + 1):
        q[m][m] = torch.full_like(x, (-1.0) ** m * _double_factorial_odd(m))
        if m + 1 <= l_max:
            q[m + 1][m] = (2 * m + 1) * z * q[m][m]
        for l in range(m + 2, l_max + 1):
            q[l][m] = ((2 * l - 1) * z * q[l - 1][m] - (l + m - 1) * r2 * q[l - 2][m]) / (l - m)

    out = [torch.zeros_like(x)] * n_channels(l_max)
    for l in range(l_max + 1):
        base = l * l + l
        out[base] = norms[l][0] * q[l][0]
        for m in range(1, l + 1):
            out[base + m] = norms[l][m] * q[l][m] * c[m]
            out[base - m] = norms[l][m] * q[l][m] * s[m]
    return torch.stack(out)


def dense_spherical_harmonics(
    xyz: Tensor,
    l_max: int,
    caps: Capabilities,
) -> KernelOutputs:
    """Evaluate on the whole batch at once; same outputs as the tiled kernel."""
    validate_l_max(l_max)
    n = int(xyz.shape[0])
    ntot = n_channels(l_max)

    if n == 0:
        empty = dict(dtype=xyz.dtype, device=xyz.device)
        return KernelOutputs(
            sph=torch.zeros((0, ntot), **empty),
            dsph=torch.zeros((0, 3, ntot), **empty) if caps.requires_grad else None,
            ddsph=torch.zeros((0, 3, 3, ntot), **empty) if caps.requires_hessian else None,
        )

    def f(v: Tensor) -> Tensor:
        return _harmonics_single(v, l_max, caps.normalize)

    sph = vmap(f)(xyz)
    dsph = ddsph = None
    if caps.requires_grad:
        # (N, ntot, 3) -> (N, 3, ntot)
        dsph = vmap(jacrev(f))(xyz).permute(0, 2, 1).contiguous()
    if caps.requires_hessian:
        # (N, ntot, 3, 3) -> (N, 3, 3, ntot)
        ddsph = vmap(hessian(f))(xyz).permute(0, 2, 3, 1).contiguous()
    return KernelOutputs(sph=sph, dsph=dsph, ddsph=ddsph)


__all__ = ["dense_spherical_harmonics"]
