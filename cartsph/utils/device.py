"""Device utilities shared by the kernel and its tests.

The helpers here centralize the "preferred device" policy so new components
default to CUDA whenever available, while remaining import-safe on CPU-only
machines.
"""

from __future__ import annotations

import os

import torch


def get_default_device() -> torch.device:
    """Return the preferred device: CARTSPH_DEVICE if set, else CUDA when available."""
    env = os.getenv("CARTSPH_DEVICE", "").strip()
    if env:
        return torch.device(env)
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def ensure_cuda_available_or_skip(test_context: str = "CUDA-required") -> None:
    """Skip a test when CUDA is unavailable.

    Use this in GPU-first tests to avoid accidental CPU execution in CI
    environments that do not provide a CUDA runtime.
    """
    if not torch.cuda.is_available():
        import pytest

        pytest.skip(f"{test_context}: CUDA not available", allow_module_level=True)


def assert_cuda_tensor(tensor: torch.Tensor, name: str = "tensor") -> None:
    """Assert that a tensor resides on CUDA."""
    if not tensor.is_cuda:
        raise AssertionError(f"{name} expected to be on CUDA device, found {tensor.device}")
