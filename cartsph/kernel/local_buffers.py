"""Per-tile scratch for the degree sweep.

One :class:`LocalBuffers` is allocated per launch and shared by every tile.
It holds, for each active slot of the degree being computed, the value and
(on request) the gradient and the Hessian of every row of the tile.

Layout (slot-major, one row per sample of the tile)::

    value[i, row]           flat index(i, row) = i * rows + row
    grad[a, i, row]         a in {x, y, z}
    hess[a, b, i, row]      symmetric in (a, b)

Each degree goes through ``clear -> write... -> flush``; the phase machine
below rejects any other order with :class:`ScratchOrderError`.
"""

from __future__ import annotations

import enum
from typing import Optional, Sequence, Tuple

import torch
from torch import Tensor

from .config import HARDCODED_L_MAX, Capabilities, n_channels
from .device import DeviceContext
from .errors import ScratchOrderError


class ScratchPhase(enum.Enum):
    IDLE = "IDLE"
    CLEARED = "CLEARED"
    COMPUTED = "COMPUTED"
    FLUSHED = "FLUSHED"


# Hessian components in the order the recurrence hands them over.
HESSIAN_COMPONENTS: Tuple[Tuple[int, int], ...] = (
    (0, 0),
    (0, 1),
    (0, 2),
    (1, 1),
    (1, 2),
    (2, 2),
)


def scratch_slots(l_max: int) -> int:
    """Slots needed for a sweep to ``l_max``: the low block or the widest degree."""
    low = n_channels(min(l_max, HARDCODED_L_MAX))
    return max(low, 2 * l_max + 1)


class LocalBuffers:
    """Degree-scoped scratch shared by all rows of a tile."""

    def __init__(
        self,
        context: DeviceContext,
        rows: int,
        n_slots: int,
        dtype: torch.dtype,
        caps: Capabilities,
    ) -> None:
        if rows <= 0:
            raise ValueError(f"rows must be positive, got {rows}")
        if n_slots <= 0:
            raise ValueError(f"n_slots must be positive, got {n_slots}")

        self.context = context
        self.rows = rows
        self.n_slots = n_slots
        self.dtype = dtype
        self.caps = caps

        self.value = context.allocate((n_slots, rows), dtype, what="scratch values")
        self.grad: Optional[Tensor] = None
        self.hess: Optional[Tensor] = None
        if caps.requires_grad:
            self.grad = context.allocate((3, n_slots, rows), dtype, what="scratch gradients")
        if caps.requires_hessian:
            self.hess = context.allocate((3, 3, n_slots, rows), dtype, what="scratch hessians")

        self.phase = ScratchPhase.IDLE
        self.n_active = 0

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def index(self, i: int, row: int) -> int:
        """Flat offset of slot ``i`` for ``row`` in the value array."""
        if not (0 <= i < self.n_slots and 0 <= row < self.rows):
            raise IndexError(f"slot {i}, row {row} outside {self.n_slots}x{self.rows}")
        return i * self.rows + row

    # ------------------------------------------------------------------
    # Phase machine
    # ------------------------------------------------------------------

    def _require(self, operation: str, allowed: Sequence[ScratchPhase]) -> None:
        if self.phase not in allowed:
            raise ScratchOrderError(
                operation, self.phase.value, tuple(p.value for p in allowed)
            )

    def clear(self, n_active: int) -> None:
        """Zero the first ``n_active`` slots and open them for writing."""
        self._require("clear", (ScratchPhase.IDLE, ScratchPhase.FLUSHED))
        if not (0 < n_active <= self.n_slots):
            raise ValueError(f"n_active must be in 1..{self.n_slots}, got {n_active}")

        self.value[:n_active].zero_()
        if self.grad is not None:
            self.grad[:, :n_active].zero_()
        if self.hess is not None:
            self.hess[:, :, :n_active].zero_()
        self.n_active = n_active
        self.phase = ScratchPhase.CLEARED

    def write(
        self,
        slot: int,
        value: Tensor,
        grad: Optional[Tensor] = None,
        hess: Optional[Sequence[Tensor]] = None,
    ) -> None:
        """
        Store one channel for every row.

        ``value`` is (rows,), ``grad`` is (3, rows) and ``hess`` holds the six
        unique components in HESSIAN_COMPONENTS order, each (rows,).
        """
        self._require("write", (ScratchPhase.CLEARED, ScratchPhase.COMPUTED))
        if not (0 <= slot < self.n_active):
            raise IndexError(f"slot {slot} outside the {self.n_active} active slots")

        self.value[slot] = value
        if self.grad is not None:
            if grad is None:
                raise ValueError("gradient required: scratch was opened with requires_grad")
            self.grad[:, slot] = grad
        if self.hess is not None:
            if hess is None:
                raise ValueError("hessian required: scratch was opened with requires_hessian")
            for (a, b), comp in zip(HESSIAN_COMPONENTS, hess):
                self.hess[a, b, slot] = comp
                if a != b:
                    self.hess[b, a, slot] = comp
        self.phase = ScratchPhase.COMPUTED

    def active(self) -> Tuple[Tensor, Optional[Tensor], Optional[Tensor]]:
        """Views of the active slots, for in-place post-processing before a flush."""
        self._require("active", (ScratchPhase.COMPUTED,))
        n = self.n_active
        grad = None if self.grad is None else self.grad[:, :n]
        hess = None if self.hess is None else self.hess[:, :, :n]
        return self.value[:n], grad, hess

    def flush(
        self,
        sph: Tensor,
        dsph: Optional[Tensor],
        ddsph: Optional[Tensor],
        base_index: int,
        row_offset: int,
        n_valid: int,
    ) -> None:
        """
        Copy the active slots into the global outputs.

        Channels ``base_index .. base_index + n_active`` of samples
        ``row_offset .. row_offset + n_valid`` are written; padded rows of
        the tile (``row >= n_valid``) are dropped.
        """
        self._require("flush", (ScratchPhase.COMPUTED,))
        n = self.n_active
        stop = base_index + n
        rows = slice(row_offset, row_offset + n_valid)

        sph[rows, base_index:stop] = self.value[:n, :n_valid].transpose(0, 1)
        if dsph is not None and self.grad is not None:
            dsph[rows, :, base_index:stop] = self.grad[:, :n, :n_valid].permute(2, 0, 1)
        if ddsph is not None and self.hess is not None:
            ddsph[rows, :, :, base_index:stop] = self.hess[:, :, :n, :n_valid].permute(3, 0, 1, 2)
        self.phase = ScratchPhase.FLUSHED

    def release(self) -> None:
        """Return the scratch arrays to the owning context."""
        self.context.free(self.value)
        if self.grad is not None:
            self.context.free(self.grad)
        if self.hess is not None:
            self.context.free(self.hess)
        self.phase = ScratchPhase.IDLE
        self.n_active = 0


__all__ = [
    "ScratchPhase",
    "LocalBuffers",
    "HESSIAN_COMPONENTS",
    "scratch_slots",
]
