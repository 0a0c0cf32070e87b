"""Batched evaluation of real Cartesian spherical harmonics on torch devices.

High-level responsibilities
---------------------------
- Evaluate real solid/spherical harmonics up to degree ``l_max`` for large
  batches of 3D vectors, with closed-form gradients and Hessians.
- Tile the batch into work-groups that sweep the degrees through a shared,
  phase-checked scratch.
- Provide an explicit device context, a reverse-mode (VJP) kernel and an
  autograd bridge for torch users.
"""

from __future__ import annotations

from .autograd import SphericalHarmonicsFunction, spherical_harmonics
from .backward import vector_jacobian_product
from .calculator import SolidHarmonics, SphericalHarmonics, evaluate
from .config import HARDCODED_L_MAX, Capabilities, KernelConfig, channel_index, n_channels
from .device import DeviceContext, DeviceInfo, current_context, device_count, list_devices
from .dispatch import KernelOutputs, LaunchStats, spherical_harmonics_kernel
from .errors import DeviceConfigurationError, ResourceExhaustedError, ScratchOrderError
from .prefactors import PrefactorTable, compute_prefactors

__all__ = [
    "HARDCODED_L_MAX",
    "Capabilities",
    "KernelConfig",
    "channel_index",
    "n_channels",
    "PrefactorTable",
    "compute_prefactors",
    "DeviceContext",
    "DeviceInfo",
    "current_context",
    "device_count",
    "list_devices",
    "KernelOutputs",
    "LaunchStats",
    "spherical_harmonics_kernel",
    "vector_jacobian_product",
    "SphericalHarmonicsFunction",
    "spherical_harmonics",
    "SolidHarmonics",
    "SphericalHarmonics",
    "evaluate",
    "DeviceConfigurationError",
    "ResourceExhaustedError",
    "ScratchOrderError",
]
