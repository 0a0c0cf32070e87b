"""User-facing calculators and the ``evaluate`` entry point."""

from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple, Union

import torch
from torch import Tensor

from .autograd import SphericalHarmonicsFunction
from .config import Capabilities, KernelConfig, validate_l_max
from .device import DeviceContext, current_context
from .dispatch import KernelOutputs, LaunchStats, spherical_harmonics_kernel

ArrayLike = Union[Tensor, Sequence[Sequence[float]], Any]


class SolidHarmonics(torch.nn.Module):
    """
    Real solid harmonics ``r^l Y_lm`` up to ``l_max``, on the input vectors as given.

    ``forward`` is autograd-aware (first order). ``compute*`` return plain
    tensors with closed-form derivatives.
    """

    normalized = False

    def __init__(
        self,
        l_max: int,
        *,
        config: Optional[KernelConfig] = None,
        logger: Optional[Any] = None,
    ) -> None:
        super().__init__()
        self.l_max = validate_l_max(l_max)
        self.config = KernelConfig() if config is None else config
        self.logger = logger

    def extra_repr(self) -> str:
        return f"l_max={self.l_max}, backend={self.config.backend!r}"

    def _run(self, xyz: Tensor, caps: Capabilities) -> KernelOutputs:
        with DeviceContext(device=xyz.device, logger=self.logger) as ctx:
            return spherical_harmonics_kernel(
                xyz.detach(),
                self.l_max,
                caps,
                config=self.config,
                context=ctx,
                logger=self.logger,
            )

    def compute(self, xyz: Tensor) -> Tensor:
        return self._run(xyz, Capabilities(normalize=self.normalized)).sph

    def compute_with_gradients(self, xyz: Tensor) -> Tuple[Tensor, Tensor]:
        out = self._run(
            xyz, Capabilities(requires_grad=True, normalize=self.normalized)
        )
        return out.sph, out.dsph

    def compute_with_hessians(self, xyz: Tensor) -> Tuple[Tensor, Tensor, Tensor]:
        out = self._run(
            xyz,
            Capabilities(
                requires_grad=True, requires_hessian=True, normalize=self.normalized
            ),
        )
        return out.sph, out.dsph, out.ddsph

    def forward(self, xyz: Tensor) -> Tensor:
        with DeviceContext(device=xyz.device, logger=self.logger) as ctx:
            return SphericalHarmonicsFunction.apply(
                xyz, self.l_max, self.normalized, self.config, ctx
            )


class SphericalHarmonics(SolidHarmonics):
    """Real spherical harmonics of the direction ``xyz / |xyz|``.

    Derivatives are taken with respect to the raw vectors.
    """

    normalized = True


def evaluate(
    xyz: ArrayLike,
    l_max: int,
    requires_grad: bool = False,
    requires_hessian: bool = False,
    normalize: bool = False,
    *,
    config: Optional[KernelConfig] = None,
    context: Optional[DeviceContext] = None,
    out: Optional[Tuple[Tensor, Optional[Tensor], Optional[Tensor]]] = None,
    logger: Optional[Any] = None,
    stats: Optional[LaunchStats] = None,
) -> Tuple[Tensor, Optional[Tensor], Optional[Tensor]]:
    """
    Evaluate harmonics of a batch of vectors on the current device.

    ``xyz`` may be a tensor or any array-like of shape (N, 3); it is copied
    to the context device. Returns ``(sph, dsph, ddsph)`` with ``None`` for
    the outputs that were not requested.
    """
    caps = Capabilities(
        requires_grad=requires_grad,
        requires_hessian=requires_hessian,
        normalize=normalize,
    )
    context = current_context() if context is None else context

    data = xyz if isinstance(xyz, Tensor) else torch.as_tensor(xyz)
    if not data.is_floating_point():
        data = data.to(torch.get_default_dtype())
    data = context.to_device(data)

    kernel_out = None
    if out is not None:
        if len(out) != 3:
            raise ValueError("out must be a (sph, dsph, ddsph) triple")
        kernel_out = KernelOutputs(sph=out[0], dsph=out[1], ddsph=out[2])

    result = spherical_harmonics_kernel(
        data,
        l_max,
        caps,
        config=config,
        context=context,
        logger=logger,
        out=kernel_out,
        stats=stats,
    )
    return result.as_tuple()


__all__ = [
    "SolidHarmonics",
    "SphericalHarmonics",
    "evaluate",
]
