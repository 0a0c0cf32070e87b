"""Device context for harmonics launches.

A :class:`DeviceContext` is an explicit, scoped handle on one execution
device (a CUDA device or the CPU). It owns the queue work is issued on and
every buffer allocated through it; leaving the ``with`` block synchronizes
and releases those buffers.

"Current device for the calling thread" is the innermost context the thread
has entered. Threads that have not entered one get a lazily created context
on the preferred device (see :func:`cartsph.utils.device.get_default_device`).
"""

from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

import torch
from torch import Tensor

from cartsph.utils.device import get_default_device

from .errors import DeviceConfigurationError, ResourceExhaustedError
from .logging_utils import get_logger, log_kernel_event


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@dataclass
class DeviceInfo:
    index: int
    kind: str
    name: str
    total_memory_bytes: int


def device_count() -> int:
    """Number of CUDA devices visible to this process (0 without CUDA)."""
    if not torch.cuda.is_available():
        return 0
    return int(torch.cuda.device_count())


def list_devices() -> List[DeviceInfo]:
    """Return the detected CUDA devices using PyTorch APIs."""
    infos: List[DeviceInfo] = []
    for idx in range(device_count()):
        prop = torch.cuda.get_device_properties(idx)
        infos.append(
            DeviceInfo(
                index=idx,
                kind="cuda",
                name=str(prop.name),
                total_memory_bytes=int(prop.total_memory),
            )
        )
    return infos


def _resolve_device(
    device_id: Optional[int],
    device: Optional[Union[str, torch.device]],
) -> torch.device:
    if device_id is not None and device is not None:
        raise ValueError("pass either device_id or device, not both")

    if device_id is not None:
        if isinstance(device_id, bool) or not isinstance(device_id, int):
            raise TypeError(f"device_id must be an int, got {type(device_id).__name__}")
        if device_id < 0:
            raise DeviceConfigurationError(f"device id must be non-negative, got {device_id}")
        dev = torch.device("cuda", device_id)
    elif device is not None:
        try:
            dev = torch.device(device)
        except RuntimeError as exc:
            raise DeviceConfigurationError(f"invalid device {device!r}: {exc}") from exc
    else:
        dev = get_default_device()

    if dev.type == "cpu":
        return torch.device("cpu")

    if dev.type != "cuda":
        raise DeviceConfigurationError(
            f"unsupported device type {dev.type!r}; expected 'cpu' or 'cuda'"
        )

    count = device_count()
    if count == 0:
        raise DeviceConfigurationError(
            f"device {dev} requested but no CUDA device is available"
        )
    index = 0 if dev.index is None else int(dev.index)
    if index < 0 or index >= count:
        raise DeviceConfigurationError(
            f"device id {index} out of range; {count} CUDA device(s) visible"
        )
    return torch.device("cuda", index)


@contextlib.contextmanager
def allocation_guard(what: str, nbytes: int, device: torch.device) -> Iterator[None]:
    """Re-raise out-of-memory failures as :class:`ResourceExhaustedError`."""
    try:
        yield
    except RuntimeError as exc:
        if isinstance(exc, torch.cuda.OutOfMemoryError) or "out of memory" in str(exc).lower():
            raise ResourceExhaustedError(what, nbytes, device) from exc
        raise


def _nbytes(shape: Sequence[int], dtype: torch.dtype) -> int:
    numel = 1
    for s in shape:
        numel *= int(s)
    itemsize = torch.empty((), dtype=dtype).element_size()
    return numel * itemsize


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

_THREAD_STATE = threading.local()


def _context_stack() -> List["DeviceContext"]:
    stack = getattr(_THREAD_STATE, "stack", None)
    if stack is None:
        stack = []
        _THREAD_STATE.stack = stack
    return stack


class DeviceContext:
    """
    Scoped owner of a device, its queue and the buffers allocated on it.

    Parameters
    ----------
    device_id:
        CUDA device index. Mutually exclusive with ``device``.
    device:
        Explicit device (``"cpu"``, ``"cuda"``, ``"cuda:1"``, ...).
    logger:
        Optional structured logger for lifecycle events.

    With neither argument the preferred device is used. Configuration
    problems raise :class:`DeviceConfigurationError` from the constructor.
    """

    def __init__(
        self,
        device_id: Optional[int] = None,
        *,
        device: Optional[Union[str, torch.device]] = None,
        logger: Optional[Any] = None,
    ) -> None:
        self.device = _resolve_device(device_id, device)
        self.logger = get_logger(logger)
        self._buffers: Dict[int, Tensor] = {}
        self._closed = False
        self._entered = 0
        self.stream: Optional[torch.cuda.Stream] = None
        if self.device.type == "cuda":
            self.stream = torch.cuda.Stream(device=self.device)

    # ----- properties -----
    @property
    def is_cuda(self) -> bool:
        return self.device.type == "cuda"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def n_live_buffers(self) -> int:
        return len(self._buffers)

    def __repr__(self) -> str:
        return (
            f"DeviceContext(device={self.device}, live_buffers={len(self._buffers)}, "
            f"closed={self._closed})"
        )

    # ----- scope -----
    def __enter__(self) -> "DeviceContext":
        self._check_open()
        _context_stack().append(self)
        self._entered += 1
        log_kernel_event(self.logger, "device_context_enter", device=str(self.device))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        stack = _context_stack()
        if stack and stack[-1] is self:
            stack.pop()
        self._entered -= 1
        if self._entered == 0:
            self.close()

    def close(self) -> None:
        """Wait for queued work, then release every buffer owned by this context."""
        if self._closed:
            return
        self.synchronize()
        n = len(self._buffers)
        self._buffers.clear()
        self._closed = True
        log_kernel_event(
            self.logger, "device_context_close", device=str(self.device), freed=n
        )

    def _check_open(self) -> None:
        if self._closed:
            raise DeviceConfigurationError(f"{self!r} has been closed")

    # ----- buffer lifecycle -----
    def allocate(
        self,
        shape: Sequence[int],
        dtype: torch.dtype = torch.float64,
        *,
        zero: bool = True,
        what: str = "buffer",
    ) -> Tensor:
        """Allocate an owned device buffer of ``shape``."""
        self._check_open()
        shape = tuple(int(s) for s in shape)
        if any(s < 0 for s in shape):
            raise ValueError(f"negative dimension in shape {shape}")
        with allocation_guard(what, _nbytes(shape, dtype), self.device):
            if zero:
                buf = torch.zeros(shape, dtype=dtype, device=self.device)
            else:
                buf = torch.empty(shape, dtype=dtype, device=self.device)
        self._buffers[id(buf)] = buf
        return buf

    def to_device(
        self,
        data: Any,
        dtype: Optional[torch.dtype] = None,
        *,
        non_blocking: bool = False,
    ) -> Tensor:
        """Copy host data (tensor or array-like) onto this context's device."""
        self._check_open()
        if isinstance(data, Tensor):
            src = data
        else:
            src = torch.as_tensor(data)
        target_dtype = src.dtype if dtype is None else dtype
        nbytes = _nbytes(tuple(src.shape), target_dtype)
        with allocation_guard("input transfer", nbytes, self.device):
            return src.to(device=self.device, dtype=target_dtype, non_blocking=non_blocking)

    def to_host(self, tensor: Tensor) -> Tensor:
        """Synchronous device to host copy."""
        self._check_open()
        return tensor.detach().to("cpu")

    def free(self, buffer: Tensor) -> None:
        """Release a buffer previously returned by :meth:`allocate`."""
        key = id(buffer)
        if key not in self._buffers or self._buffers[key] is not buffer:
            raise ValueError("buffer is not owned by this DeviceContext")
        del self._buffers[key]

    def synchronize(self) -> None:
        """Block until all work queued on this context has completed."""
        if self.stream is not None:
            self.stream.synchronize()

    @contextlib.contextmanager
    def launch_scope(self) -> Iterator[None]:
        """
        Issue the enclosed work on this context's stream.

        The stream first waits for the caller's current stream, so inputs
        produced there are visible. On the CPU this is a no-op.
        """
        self._check_open()
        if self.stream is None:
            yield
            return
        self.stream.wait_stream(torch.cuda.current_stream(self.device))
        with torch.cuda.stream(self.stream):
            yield

    # ----- atomics -----
    def atomic_add(self, target: Tensor, index: Tensor, values: Tensor) -> Tensor:
        """``target[index[i]] += values[i]`` with duplicate indices accumulated."""
        self._check_atomic_args(target, index, values)
        return target.index_add_(0, index, values)

    def atomic_max(self, target: Tensor, index: Tensor, values: Tensor) -> Tensor:
        """``target[index[i]] = max(target[index[i]], values[i])``."""
        self._check_atomic_args(target, index, values)
        return target.scatter_reduce_(0, index, values, reduce="amax", include_self=True)

    def atomic_or(self, target: Tensor, index: Tensor, values: Tensor) -> Tensor:
        """``target[index[i]] |= values[i]`` for integer tensors."""
        self._check_atomic_args(target, index, values)
        if target.dtype.is_floating_point or target.dtype.is_complex or target.dtype == torch.bool:
            raise TypeError(f"atomic_or needs an integer tensor, got {target.dtype}")
        nbits = torch.iinfo(target.dtype).bits
        for b in range(nbits):
            bit = torch.bitwise_and(torch.bitwise_right_shift(values, b), 1)
            hit = torch.zeros_like(target)
            hit.scatter_reduce_(0, index, bit, reduce="amax", include_self=True)
            target.bitwise_or_(torch.bitwise_left_shift(hit, b))
        return target

    def _check_atomic_args(self, target: Tensor, index: Tensor, values: Tensor) -> None:
        if target.ndim != 1 or index.ndim != 1 or values.ndim != 1:
            raise ValueError("atomic operations take 1D target, index and values")
        if index.shape != values.shape:
            raise ValueError(
                f"index and values must have the same shape, got "
                f"{tuple(index.shape)} vs {tuple(values.shape)}"
            )
        if index.dtype != torch.int64:
            raise TypeError(f"index must be int64, got {index.dtype}")
        if values.dtype != target.dtype:
            raise TypeError(
                f"values dtype {values.dtype} does not match target dtype {target.dtype}"
            )
        if target.device != self.device or index.device != self.device or values.device != self.device:
            raise ValueError(f"atomic operands must live on {self.device}")


def current_context() -> DeviceContext:
    """Innermost active context of the calling thread, or the thread's default one."""
    stack = _context_stack()
    if stack:
        return stack[-1]
    default = getattr(_THREAD_STATE, "default", None)
    if default is None or default.closed:
        default = DeviceContext()
        _THREAD_STATE.default = default
    return default


__all__ = [
    "DeviceInfo",
    "DeviceContext",
    "device_count",
    "list_devices",
    "current_context",
    "allocation_guard",
]
