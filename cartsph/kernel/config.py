from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

import torch

# -------------------------
# Recurrence limits
# -------------------------
# Degrees up to and including HARDCODED_L_MAX are evaluated by closed-form
# polynomial variants (Degree0, Degree1); everything above goes through the
# generic recurrence. The scratch layout in local_buffers depends on this
# value, so it is a module constant rather than a config field.
HARDCODED_L_MAX: int = 1

# Default tile geometry. A work-group owns SAMPLES_PER_GROUP rows (one row per
# sample); LANES_PER_SAMPLE is the width of the cooperative channel reduction
# used by the backward kernel.
DEFAULT_SAMPLES_PER_GROUP: int = 8192
DEFAULT_LANES_PER_SAMPLE: int = 8

SUPPORTED_FLOAT_DTYPES = (torch.float32, torch.float64)

BackendKind = Literal["tiled", "dense"]
PrecisionKind = Literal["single", "double"]


def n_channels(l_max: int) -> int:
    """Number of (l, m) channels up to and including degree l_max."""
    return (l_max + 1) * (l_max + 1)


def channel_index(l: int, m: int) -> int:
    """Linear channel index of (l, m) within a per-sample output row."""
    if abs(m) > l:
        raise ValueError(f"|m| must not exceed l, got l={l}, m={m}")
    return l * l + l + m


def validate_l_max(l_max: int) -> int:
    """Common validation for the maximum degree."""
    if isinstance(l_max, bool) or not isinstance(l_max, int):
        raise TypeError(f"l_max must be an int, got {type(l_max).__name__}")
    if l_max < 0:
        raise ValueError(f"l_max must be non-negative, got {l_max}")
    return l_max


# -------------------------
# Capability flags
# -------------------------


@dataclass(frozen=True)
class Capabilities:
    """Which outputs a launch must produce.

    The same flag set is threaded through the driver, the recurrence variants,
    the scratch manager and the normalization stage, so that a single code
    path serves every combination.

    Parameters
    ----------
    requires_grad:
        Produce ``dsph`` (first derivatives).
    requires_hessian:
        Produce ``ddsph`` (second derivatives). Needs ``requires_grad``.
    normalize:
        Evaluate on the direction ``xyz / |xyz|`` and return derivatives
        with respect to the raw input vector.
    """

    requires_grad: bool = False
    requires_hessian: bool = False
    normalize: bool = False

    def __post_init__(self) -> None:
        if self.requires_hessian and not self.requires_grad:
            raise ValueError(
                "requires_hessian=True needs requires_grad=True; "
                "second derivatives are propagated from the first."
            )


# -------------------------
# Kernel configuration
# -------------------------


@dataclass
class KernelConfig:
    """Configuration for a harmonics launch.

    Parameters
    ----------
    samples_per_group:
        Number of samples (rows) owned by one work-group. The last group of
        a batch is padded up to this size; padded rows are never written.
    lanes_per_sample:
        Lanes cooperating on one sample's channel reduction in the backward
        kernel. Must be a power of two.
    backend:
        ``"tiled"`` (the work-group kernel) or ``"dense"`` (the reference
        evaluator used for cross-backend parity).
    precision:
        Optional high-level precision policy:
          * "single" -> float32
          * "double" -> float64
        Ignored when ``dtype`` is given explicitly.
    dtype:
        Compute dtype. ``None`` keeps the dtype of the input vectors.
    """

    samples_per_group: int = DEFAULT_SAMPLES_PER_GROUP
    lanes_per_sample: int = DEFAULT_LANES_PER_SAMPLE
    backend: BackendKind = "tiled"
    precision: Optional[PrecisionKind] = None
    dtype: Optional[torch.dtype] = None

    def __post_init__(self) -> None:
        """Fill in derived fields and run basic validation."""
        if self.dtype is None and self.precision is not None:
            if self.precision == "double":
                self.dtype = torch.float64
            elif self.precision == "single":
                self.dtype = torch.float32
            else:
                raise ValueError(
                    f"precision must be 'single' or 'double', got {self.precision!r}"
                )

        self.validate()

    def validate(self) -> None:
        """Perform cheap validation of the tile geometry and numerics."""
        if self.samples_per_group <= 0:
            raise ValueError("samples_per_group must be positive")

        lanes = self.lanes_per_sample
        if lanes <= 0 or (lanes & (lanes - 1)) != 0:
            raise ValueError(
                f"lanes_per_sample must be a positive power of two, got {lanes}"
            )

        if self.backend not in ("tiled", "dense"):
            raise ValueError(
                f"backend must be 'tiled' or 'dense', got {self.backend!r}"
            )

        if self.dtype is not None and self.dtype not in SUPPORTED_FLOAT_DTYPES:
            raise ValueError(
                "dtype must be torch.float32 or torch.float64; "
                f"got {self.dtype!r}"
            )


__all__ = [
    "HARDCODED_L_MAX",
    "DEFAULT_SAMPLES_PER_GROUP",
    "DEFAULT_LANES_PER_SAMPLE",
    "SUPPORTED_FLOAT_DTYPES",
    "BackendKind",
    "PrecisionKind",
    "n_channels",
    "channel_index",
    "validate_l_max",
    "Capabilities",
    "KernelConfig",
]
