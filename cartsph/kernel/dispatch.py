from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

import torch
from torch import Tensor

from .config import (
    HARDCODED_L_MAX,
    SUPPORTED_FLOAT_DTYPES,
    Capabilities,
    KernelConfig,
    n_channels,
    validate_l_max,
)
from .device import DeviceContext, allocation_guard, current_context
from .local_buffers import LocalBuffers, scratch_slots
from .logging_utils import (
    debug_tensor_stats,
    get_logger,
    log_degree_spectrum,
    log_kernel_event,
)
from .normalization import normalize_active, unit_vectors
from .prefactors import compute_prefactors
from .recurrence import TileCoordinates, azimuthal_terms, select_variant


__all__ = [
    "KernelOutputs",
    "LaunchStats",
    "spherical_harmonics_kernel",
    "validate_xyz",
]


@dataclass
class KernelOutputs:
    """Harmonic values and, on request, their first and second derivatives.

    Shapes: ``sph (N, ntotal)``, ``dsph (N, 3, ntotal)``,
    ``ddsph (N, 3, 3, ntotal)`` with ``ntotal = (l_max + 1)^2``.
    """

    sph: Tensor
    dsph: Optional[Tensor] = None
    ddsph: Optional[Tensor] = None

    def as_tuple(self) -> Tuple[Tensor, Optional[Tensor], Optional[Tensor]]:
        return self.sph, self.dsph, self.ddsph


@dataclass
class LaunchStats:
    """Counters describing one launch (filled in place when passed in)."""

    n_samples: int = 0
    l_max: int = 0
    backend: str = "tiled"
    rows_per_group: int = 0
    n_groups: int = 0
    padded_rows: int = 0
    degree_phases: int = 0
    caps: Capabilities = field(default_factory=Capabilities)

    def as_dict(self) -> dict:
        return {
            "n_samples": self.n_samples,
            "l_max": self.l_max,
            "backend": self.backend,
            "rows_per_group": self.rows_per_group,
            "n_groups": self.n_groups,
            "padded_rows": self.padded_rows,
            "degree_phases": self.degree_phases,
            "requires_grad": self.caps.requires_grad,
            "requires_hessian": self.caps.requires_hessian,
            "normalize": self.caps.normalize,
        }


def validate_xyz(xyz: Tensor) -> None:
    """Type/shape checks shared by every entry point."""
    if not isinstance(xyz, torch.Tensor):
        raise TypeError(f"xyz must be a torch.Tensor, got {type(xyz).__name__}")
    if xyz.dtype not in SUPPORTED_FLOAT_DTYPES:
        raise TypeError(f"xyz must be float32 or float64, got {xyz.dtype}")
    if xyz.ndim != 2 or xyz.shape[1] != 3:
        raise ValueError(f"xyz must have shape (N, 3), got {tuple(xyz.shape)}")


def _allocate_outputs(
    n: int,
    l_max: int,
    caps: Capabilities,
    dtype: torch.dtype,
    device: torch.device,
) -> KernelOutputs:
    ntot = n_channels(l_max)
    itemsize = torch.empty((), dtype=dtype).element_size()
    per_sample = ntot * (1 + (3 if caps.requires_grad else 0) + (9 if caps.requires_hessian else 0))
    with allocation_guard("outputs", n * per_sample * itemsize, device):
        sph = torch.zeros((n, ntot), dtype=dtype, device=device)
        dsph = (
            torch.zeros((n, 3, ntot), dtype=dtype, device=device)
            if caps.requires_grad
            else None
        )
        ddsph = (
            torch.zeros((n, 3, 3, ntot), dtype=dtype, device=device)
            if caps.requires_hessian
            else None
        )
    return KernelOutputs(sph=sph, dsph=dsph, ddsph=ddsph)


def _check_out(
    out: KernelOutputs,
    n: int,
    l_max: int,
    caps: Capabilities,
    dtype: torch.dtype,
    device: torch.device,
) -> KernelOutputs:
    ntot = n_channels(l_max)
    expected = {
        "sph": ((n, ntot), out.sph, True),
        "dsph": ((n, 3, ntot), out.dsph, caps.requires_grad),
        "ddsph": ((n, 3, 3, ntot), out.ddsph, caps.requires_hessian),
    }
    for name, (shape, tensor, needed) in expected.items():
        if not needed:
            continue
        if tensor is None:
            raise ValueError(f"out.{name} is required for the requested capabilities")
        if tuple(tensor.shape) != shape:
            raise ValueError(
                f"out.{name} has shape {tuple(tensor.shape)}, expected {shape}"
            )
        if tensor.dtype != dtype:
            raise ValueError(f"out.{name} has dtype {tensor.dtype}, expected {dtype}")
        if tensor.device != device:
            raise ValueError(f"out.{name} lives on {tensor.device}, expected {device}")
    return KernelOutputs(
        sph=out.sph,
        dsph=out.dsph if caps.requires_grad else None,
        ddsph=out.ddsph if caps.requires_hessian else None,
    )


def spherical_harmonics_kernel(
    xyz: Tensor,
    l_max: int,
    caps: Optional[Capabilities] = None,
    *,
    config: Optional[KernelConfig] = None,
    context: Optional[DeviceContext] = None,
    logger: Optional[Any] = None,
    out: Optional[KernelOutputs] = None,
    stats: Optional[LaunchStats] = None,
) -> KernelOutputs:
    """
    Evaluate real solid (or, with ``caps.normalize``, spherical) harmonics.

    The batch is cut into groups of ``config.samples_per_group`` rows. Every
    group runs the same sequence of degree phases; the rows past the end of
    the batch in the last group are zero-padded, take part in every phase
    and are dropped on flush.

    Parameters
    ----------
    xyz:
        (N, 3) float32/float64 tensor on the context device.
    l_max:
        Maximum degree (inclusive).
    caps:
        Which derivatives to produce and whether to normalize.
    config:
        Tile geometry, backend and compute dtype.
    context:
        Device context; defaults to :func:`current_context`.
    out:
        Optional preallocated outputs, checked against the expected shapes.
    stats:
        Optional :class:`LaunchStats` filled in place.
    """
    caps = Capabilities() if caps is None else caps
    config = KernelConfig() if config is None else config
    context = current_context() if context is None else context
    logger = get_logger(logger)

    validate_l_max(l_max)
    validate_xyz(xyz)
    if xyz.device != context.device:
        raise ValueError(
            f"xyz lives on {xyz.device} but the device context is {context.device}; "
            "move it with DeviceContext.to_device first."
        )

    # derivatives come from the closed forms, never from autograd
    xyz = xyz.detach()
    dtype = xyz.dtype if config.dtype is None else config.dtype
    if xyz.dtype != dtype:
        xyz = xyz.to(dtype)
    n = int(xyz.shape[0])

    if stats is None:
        stats = LaunchStats()
    stats.n_samples = n
    stats.l_max = l_max
    stats.backend = config.backend
    stats.caps = caps
    stats.n_groups = stats.rows_per_group = stats.padded_rows = stats.degree_phases = 0

    log_kernel_event(
        logger,
        "sph_kernel_launch",
        n_samples=n,
        l_max=l_max,
        backend=config.backend,
        dtype=str(dtype),
        device=str(context.device),
        requires_grad=caps.requires_grad,
        requires_hessian=caps.requires_hessian,
        normalize=caps.normalize,
    )

    if config.backend == "dense":
        from .dense import dense_spherical_harmonics

        result = dense_spherical_harmonics(xyz, l_max, caps)
        if out is not None:
            target = _check_out(out, n, l_max, caps, dtype, context.device)
            target.sph.copy_(result.sph)
            if target.dsph is not None:
                target.dsph.copy_(result.dsph)
            if target.ddsph is not None:
                target.ddsph.copy_(result.ddsph)
            result = target
        return result

    if out is None:
        outputs = _allocate_outputs(n, l_max, caps, dtype, context.device)
    else:
        outputs = _check_out(out, n, l_max, caps, dtype, context.device)

    if n == 0:
        return outputs

    table = compute_prefactors(l_max)
    rows = min(config.samples_per_group, n)
    n_groups = (n + rows - 1) // rows
    stats.rows_per_group = rows
    stats.n_groups = n_groups
    stats.padded_rows = n_groups * rows - n

    debug_tensor_stats("xyz", xyz, logger)

    low_max = min(l_max, HARDCODED_L_MAX)
    buffers = LocalBuffers(context, rows, scratch_slots(l_max), dtype, caps)
    try:
        with context.launch_scope():
            tile = torch.zeros((rows, 3), dtype=dtype, device=context.device)
            for group in range(n_groups):
                start = group * rows
                n_valid = min(rows, n - start)
                tile.zero_()
                tile[:n_valid] = xyz[start : start + n_valid]

                if caps.normalize:
                    u, ir = unit_vectors(tile)
                else:
                    u, ir = tile, None

                coords = TileCoordinates.from_xyz(u)
                az = azimuthal_terms(coords, l_max)

                # low degrees share one phase at their channel offsets
                buffers.clear(n_channels(low_max))
                for l in range(low_max + 1):
                    select_variant(l).evaluate(buffers, coords, az, table, caps, base=l * l)
                _finish_phase(buffers, outputs, caps, u, ir, 0, start, n_valid)
                stats.degree_phases += 1

                for l in range(low_max + 1, l_max + 1):
                    buffers.clear(2 * l + 1)
                    select_variant(l).evaluate(buffers, coords, az, table, caps)
                    _finish_phase(buffers, outputs, caps, u, ir, l * l, start, n_valid)
                    stats.degree_phases += 1
    finally:
        context.synchronize()
        buffers.release()

    if logger is not None:
        log_degree_spectrum(logger, "sph_kernel", outputs.sph, l_max)
        debug_tensor_stats("dsph", outputs.dsph, logger)
        debug_tensor_stats("ddsph", outputs.ddsph, logger)
        log_kernel_event(logger, "sph_kernel_done", **stats.as_dict())

    return outputs


def _finish_phase(
    buffers: LocalBuffers,
    outputs: KernelOutputs,
    caps: Capabilities,
    u: Tensor,
    ir: Optional[Tensor],
    base_index: int,
    row_offset: int,
    n_valid: int,
) -> None:
    if caps.normalize and caps.requires_grad and ir is not None:
        normalize_active(buffers, u, ir)
    buffers.flush(
        outputs.sph,
        outputs.dsph,
        outputs.ddsph,
        base_index,
        row_offset,
        n_valid,
    )
