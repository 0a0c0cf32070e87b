"""Reverse-mode kernel: contract the Jacobian with an upstream gradient.

    xyz_grad[n, a] = sum_c dsph[n, a, c] * sph_grad[n, c]

Each sample is handled by ``lanes_per_sample`` lanes. Lane ``j`` owns the
channels ``j, j + W, j + 2W, ...`` (``W`` lanes) and accumulates a partial
sum; a shuffle-down tree then halves the active lanes until lane 0 holds
the full sum. Channels are zero-padded up to a multiple of ``W``.
"""

from __future__ import annotations

from typing import Any, Optional

import torch
import torch.nn.functional as F
from torch import Tensor

from .config import DEFAULT_LANES_PER_SAMPLE, SUPPORTED_FLOAT_DTYPES
from .logging_utils import debug_tensor_stats, get_logger, log_kernel_event


def _lane_partials(prod: Tensor, lanes: int) -> Tensor:
    """(N, 3, C) -> (N, 3, lanes) partial sums with the strided channel split."""
    n, _, n_ch = prod.shape
    chunk = (n_ch + lanes - 1) // lanes
    pad = chunk * lanes - n_ch
    if pad:
        prod = F.pad(prod, (0, pad))
    # channel k * lanes + j -> [k, j]
    return prod.reshape(n, 3, chunk, lanes).sum(dim=2)


def _tree_reduce(partials: Tensor) -> Tensor:
    width = partials.shape[-1]
    while width > 1:
        half = width // 2
        partials = partials[..., :half] + partials[..., half:width]
        width = half
    return partials[..., 0]


def vector_jacobian_product(
    dsph: Tensor,
    sph_grad: Tensor,
    *,
    lanes_per_sample: int = DEFAULT_LANES_PER_SAMPLE,
    logger: Optional[Any] = None,
) -> Tensor:
    """
    Gradient of ``sum(sph * sph_grad)`` with respect to the input vectors.

    Parameters
    ----------
    dsph:
        (N, 3, ntotal) first derivatives from the forward kernel.
    sph_grad:
        (N, ntotal) upstream gradient.
    lanes_per_sample:
        Width of the per-sample reduction; a positive power of two.

    Returns
    -------
    Tensor
        (N, 3), same dtype and device as ``dsph``.
    """
    if dsph.ndim != 3 or dsph.shape[1] != 3:
        raise ValueError(f"dsph must have shape (N, 3, ntotal), got {tuple(dsph.shape)}")
    n, _, n_ch = dsph.shape
    if tuple(sph_grad.shape) != (n, n_ch):
        raise ValueError(
            f"sph_grad must have shape ({n}, {n_ch}), got {tuple(sph_grad.shape)}"
        )
    if dsph.dtype not in SUPPORTED_FLOAT_DTYPES:
        raise TypeError(f"dsph must be float32 or float64, got {dsph.dtype}")
    if sph_grad.dtype != dsph.dtype:
        raise TypeError(
            f"sph_grad dtype {sph_grad.dtype} does not match dsph dtype {dsph.dtype}"
        )
    if sph_grad.device != dsph.device:
        raise ValueError(
            f"sph_grad lives on {sph_grad.device}, dsph on {dsph.device}"
        )
    if lanes_per_sample <= 0 or (lanes_per_sample & (lanes_per_sample - 1)) != 0:
        raise ValueError(
            f"lanes_per_sample must be a positive power of two, got {lanes_per_sample}"
        )

    logger = get_logger(logger)
    log_kernel_event(
        logger,
        "sph_vjp_launch",
        n_samples=n,
        n_channels=n_ch,
        lanes_per_sample=lanes_per_sample,
    )

    if n == 0 or n_ch == 0:
        return torch.zeros((n, 3), dtype=dsph.dtype, device=dsph.device)

    prod = dsph * sph_grad[:, None, :]
    xyz_grad = _tree_reduce(_lane_partials(prod, lanes_per_sample))
    debug_tensor_stats("xyz_grad", xyz_grad, logger)
    return xyz_grad


__all__ = ["vector_jacobian_product"]
