from __future__ import annotations

import pytest
import torch

from cartsph.kernel.config import Capabilities
from cartsph.kernel.device import DeviceContext
from cartsph.kernel.errors import ScratchOrderError
from cartsph.kernel.local_buffers import LocalBuffers, ScratchPhase, scratch_slots


ALL = Capabilities(requires_grad=True, requires_hessian=True)


@pytest.fixture
def ctx():
    with DeviceContext(device="cpu") as c:
        yield c


def _make(ctx, rows=4, n_slots=5, caps=ALL):
    return LocalBuffers(ctx, rows, n_slots, torch.float64, caps)


def test_scratch_slots() -> None:
    assert scratch_slots(0) == 1
    assert scratch_slots(1) == 4
    assert scratch_slots(2) == 5
    assert scratch_slots(5) == 11


def test_out_of_order_phases(ctx) -> None:
    buf = _make(ctx)
    row = torch.zeros(4, dtype=torch.float64)
    grad = torch.zeros(3, 4, dtype=torch.float64)
    hess = (row,) * 6

    assert buf.phase is ScratchPhase.IDLE
    with pytest.raises(ScratchOrderError):
        buf.write(0, row, grad, hess)
    with pytest.raises(ScratchOrderError):
        buf.flush(torch.zeros(4, 5), None, None, 0, 0, 4)

    buf.clear(3)
    with pytest.raises(ScratchOrderError):
        buf.clear(3)
    with pytest.raises(ScratchOrderError):
        buf.flush(torch.zeros(4, 5), None, None, 0, 0, 4)
    with pytest.raises(ScratchOrderError):
        buf.active()

    buf.write(0, row, grad, hess)
    assert buf.phase is ScratchPhase.COMPUTED
    with pytest.raises(ScratchOrderError):
        buf.clear(3)


def test_write_outside_active_slots(ctx) -> None:
    buf = _make(ctx)
    buf.clear(2)
    row = torch.zeros(4, dtype=torch.float64)
    with pytest.raises(IndexError):
        buf.write(2, row, torch.zeros(3, 4, dtype=torch.float64), (row,) * 6)


def test_missing_derivatives_rejected(ctx) -> None:
    buf = _make(ctx)
    buf.clear(1)
    with pytest.raises(ValueError):
        buf.write(0, torch.zeros(4, dtype=torch.float64))


def test_clear_flush_cycle_masks_padding(ctx) -> None:
    rows, n_valid = 4, 3
    buf = _make(ctx, rows=rows)
    n, ntot = 5, 6
    sph = torch.full((n, ntot), -1.0, dtype=torch.float64)
    dsph = torch.full((n, 3, ntot), -1.0, dtype=torch.float64)
    ddsph = torch.full((n, 3, 3, ntot), -1.0, dtype=torch.float64)

    buf.clear(2)
    for slot in range(2):
        value = torch.arange(rows, dtype=torch.float64) + 10.0 * slot
        grad = torch.stack([value + 1.0, value + 2.0, value + 3.0])
        hess = tuple(value + 100.0 * (k + 1) for k in range(6))
        buf.write(slot, value, grad, hess)
    buf.flush(sph, dsph, ddsph, base_index=1, row_offset=2, n_valid=n_valid)
    assert buf.phase is ScratchPhase.FLUSHED

    # written block
    for slot in range(2):
        for r in range(n_valid):
            expected = r + 10.0 * slot
            assert sph[2 + r, 1 + slot] == expected
            assert dsph[2 + r, 1, 1 + slot] == expected + 2.0
            # (0, 1) is the second unique component; mirrored to (1, 0)
            assert ddsph[2 + r, 0, 1, 1 + slot] == expected + 200.0
            assert ddsph[2 + r, 1, 0, 1 + slot] == expected + 200.0
            assert ddsph[2 + r, 2, 2, 1 + slot] == expected + 600.0

    # rows before the offset and untouched channels keep their values
    assert torch.all(sph[:2] == -1.0)
    assert torch.all(sph[:, 0] == -1.0)
    assert torch.all(sph[:, 3:] == -1.0)


def test_clear_zeroes_previous_degree(ctx) -> None:
    buf = _make(ctx, caps=Capabilities())
    buf.clear(3)
    buf.write(2, torch.ones(4, dtype=torch.float64))
    buf.flush(torch.zeros(4, 3, dtype=torch.float64), None, None, 0, 0, 4)
    buf.clear(3)
    assert torch.all(buf.value[:3] == 0.0)


def test_index_layout(ctx) -> None:
    buf = _make(ctx, rows=4, n_slots=5, caps=Capabilities())
    buf.clear(5)
    buf.write(3, torch.tensor([0.0, 1.0, 2.0, 3.0], dtype=torch.float64))
    flat = buf.value.reshape(-1)
    assert flat[buf.index(3, 2)] == 2.0
    assert buf.index(1, 0) == 4
    with pytest.raises(IndexError):
        buf.index(5, 0)


def test_release_returns_buffers(ctx) -> None:
    before = ctx.n_live_buffers
    buf = _make(ctx)
    assert ctx.n_live_buffers == before + 3
    buf.release()
    assert ctx.n_live_buffers == before
    assert buf.phase is ScratchPhase.IDLE


def test_value_only_scratch_allocates_one_array(ctx) -> None:
    buf = _make(ctx, caps=Capabilities())
    assert buf.grad is None and buf.hess is None
    assert ctx.n_live_buffers == 1
