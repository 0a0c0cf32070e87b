"""Error types raised by the harmonics kernel and its device layer."""

from __future__ import annotations


class DeviceConfigurationError(RuntimeError):
    """No usable device, or an invalid device id. Raised before any work is issued."""


class ResourceExhaustedError(RuntimeError):
    """A scratch or output allocation failed on the device."""

    def __init__(self, what: str, nbytes: int, device: object):
        super().__init__(
            f"Allocation of {what} ({nbytes} bytes) failed on {device}"
        )
        self.what = what
        self.nbytes = nbytes
        self.device = device


class ScratchOrderError(RuntimeError):
    """A scratch phase was entered out of order (clear -> compute -> flush)."""

    def __init__(self, operation: str, phase: str, allowed: tuple[str, ...]):
        super().__init__(
            f"Scratch operation '{operation}' is not allowed in phase {phase}; "
            f"expected one of {', '.join(allowed)}"
        )
        self.operation = operation
        self.phase = phase
        self.allowed = allowed


__all__ = [
    "DeviceConfigurationError",
    "ResourceExhaustedError",
    "ScratchOrderError",
]
