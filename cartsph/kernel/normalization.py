"""Chain rule from direction-cosine derivatives to raw-vector derivatives.

With ``u = v / |v|`` and ``ir = 1 / |v|``, the harmonics are evaluated on
``u`` and their derivatives ``F_a``, ``H_ab`` (taken with respect to ``u``)
are turned into derivatives of ``G(v) = F(v / |v|)``:

    G_a  = (F_a - u_a t) ir
    G_ab = (H_ab - u_a T_b - u_b T_a + u_a u_b (3 t + s)
            - u_a F_b - u_b F_a - delta_ab t) ir^2

where ``t = u . F``, ``T_a = sum_b u_b H_ba`` and ``s = u . T``. The second
expression is symmetric in (a, b).

Zero-length vectors get ``ir = 0`` and ``u = 0``: the value is the one at the
origin and every derivative is zero.
"""

from __future__ import annotations

from typing import Optional, Tuple

import torch
from torch import Tensor

from .local_buffers import LocalBuffers


def unit_vectors(xyz: Tensor) -> Tuple[Tensor, Tensor]:
    """Return ``(u, ir)`` for an (N, 3) batch. Zero rows map to ``(0, 0)``."""
    r2 = (xyz * xyz).sum(dim=-1)
    positive = r2 > 0
    safe_r2 = torch.where(positive, r2, torch.ones_like(r2))
    ir = torch.where(positive, torch.rsqrt(safe_r2), torch.zeros_like(r2))
    return xyz * ir[:, None], ir


def chain_rule(
    grad: Tensor,
    hess: Optional[Tensor],
    u: Tensor,
    ir: Tensor,
) -> Tuple[Tensor, Optional[Tensor]]:
    """
    Out-of-place chain rule on scratch-layout derivatives.

    ``grad`` is (3, n, rows), ``hess`` is (3, 3, n, rows), ``u`` is (rows, 3)
    and ``ir`` is (rows,). The Hessian is built from the raw gradient.
    """
    u3 = u.transpose(0, 1)[:, None, :]
    t = (u3 * grad).sum(dim=0)
    new_grad = (grad - u3 * t) * ir

    new_hess = None
    if hess is not None:
        tmp = (u3[:, None] * hess).sum(dim=0)
        tmp2 = (u3 * tmp).sum(dim=0)
        ua = u3[:, None]
        ub = u3[None, :]
        eye = torch.eye(3, dtype=hess.dtype, device=hess.device)[:, :, None, None]
        # each bracket is symmetric in (a, b) term by term
        cross_h = ua * tmp[None, :] + tmp[:, None] * ub
        cross_g = ua * grad[None, :] + grad[:, None] * ub
        new_hess = (
            hess - cross_h + ua * ub * (3.0 * t + tmp2) - cross_g - eye * t
        ) * (ir * ir)
    return new_grad, new_hess


def normalize_active(buffers: LocalBuffers, u: Tensor, ir: Tensor) -> None:
    """Apply :func:`chain_rule` in place to the active slots of ``buffers``."""
    _, grad, hess = buffers.active()
    if grad is None:
        return
    new_grad, new_hess = chain_rule(grad, hess, u, ir)
    grad.copy_(new_grad)
    if hess is not None and new_hess is not None:
        hess.copy_(new_hess)


__all__ = [
    "unit_vectors",
    "chain_rule",
    "normalize_active",
]
