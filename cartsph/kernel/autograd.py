from __future__ import annotations

from typing import Optional

import torch
from torch import Tensor
from torch.autograd.function import once_differentiable

from .backward import vector_jacobian_product
from .config import Capabilities, KernelConfig
from .device import DeviceContext
from .dispatch import spherical_harmonics_kernel


class SphericalHarmonicsFunction(torch.autograd.Function):
    """
    Autograd bridge around the tiled kernel.

    The forward pass asks the kernel for first derivatives only when the
    input requires grad, keeps ``dsph`` and hands it to the VJP kernel in
    the backward pass. Double backward is not supported.
    """

    @staticmethod
    def forward(
        ctx,
        xyz: Tensor,
        l_max: int,
        normalize: bool,
        config: Optional[KernelConfig],
        context: Optional[DeviceContext],
    ) -> Tensor:
        ctx.set_materialize_grads(False)
        needs_grad = bool(ctx.needs_input_grad[0])
        caps = Capabilities(requires_grad=needs_grad, normalize=normalize)

        outputs = spherical_harmonics_kernel(
            xyz.detach(), l_max, caps, config=config, context=context
        )

        ctx.input_dtype = xyz.dtype
        ctx.lanes_per_sample = (config or KernelConfig()).lanes_per_sample
        if needs_grad:
            ctx.save_for_backward(outputs.dsph)
        return outputs.sph

    @staticmethod
    @once_differentiable
    def backward(ctx, grad_sph: Optional[Tensor]):
        if grad_sph is None or not ctx.needs_input_grad[0]:
            return None, None, None, None, None

        (dsph,) = ctx.saved_tensors
        xyz_grad = vector_jacobian_product(
            dsph,
            grad_sph.to(dsph.dtype).contiguous(),
            lanes_per_sample=ctx.lanes_per_sample,
        )
        return xyz_grad.to(ctx.input_dtype), None, None, None, None


def spherical_harmonics(
    xyz: Tensor,
    l_max: int,
    normalize: bool = False,
    config: Optional[KernelConfig] = None,
    context: Optional[DeviceContext] = None,
) -> Tensor:
    """Differentiable harmonic values of ``xyz`` (first order only)."""
    return SphericalHarmonicsFunction.apply(xyz, l_max, normalize, config, context)


__all__ = ["SphericalHarmonicsFunction", "spherical_harmonics"]
