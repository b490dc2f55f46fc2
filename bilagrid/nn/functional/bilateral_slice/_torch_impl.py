# SPDX-FileCopyrightText: Copyright (c) 2023 - 2026 NVIDIA CORPORATION & AFFILIATES.
# SPDX-FileCopyrightText: All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Vectorized PyTorch reference for the bilateral slice and its gradients.

Layouts follow the Warp kernels: ``grid`` is ``(B, Gh, Gw, D, C)``, ``guide`` is
``(B, H, W)`` and the sliced output is ``(B, H, W, C)``. All functions are dtype
generic, so the analytic gradients can be checked in float64.
"""

from typing import Callable, Tuple, Union

import torch
from jaxtyping import Float
from torch import Tensor
from torch.autograd import Function

# Regularizer of the smoothed absolute value used along the depth axis.
SMOOTH_ABS_EPS = 1.0e-8

Scalar = Union[float, Tensor]


# Define scalar weight primitives shared by all three passes.
def lerp_weight(x: Scalar, xs: Tensor) -> Tensor:
    """Tent weight of the sample centred at ``x`` for coordinate ``xs``."""
    return torch.clamp(1.0 - torch.abs(x - xs), min=0.0)


def smoothed_abs(x: Tensor) -> Tensor:
    return torch.sqrt(x * x + SMOOTH_ABS_EPS)


def smoothed_lerp_weight(x: Scalar, xs: Tensor) -> Tensor:
    """Tent weight with a differentiable peak, used along the depth axis."""
    return torch.clamp(1.0 - smoothed_abs(x - xs), min=0.0)


def smoothed_lerp_weight_grad(x: Scalar, xs: Tensor) -> Tensor:
    """Derivative of :func:`smoothed_lerp_weight` with respect to ``xs``."""
    dx = x - xs
    abs_dx = smoothed_abs(dx)
    return torch.where(abs_dx < 1.0, dx / abs_dx, torch.zeros_like(abs_dx))


def clamp_boundary(index: Tensor, extent: int) -> Tensor:
    return torch.clamp(index, 0, extent - 1)


def mirror_boundary(index: Tensor, extent: int) -> Tensor:
    """Reflect indices about the edges, repeating the edge sample.

    ``-1`` maps to ``0`` and ``extent`` maps to ``extent - 1``. Indices more than
    one extent out of range saturate at the edge.
    """
    index = torch.where(index < 0, -index - 1, index)
    index = torch.where(index >= extent, 2 * extent - 1 - index, index)
    return torch.clamp(index, 0, extent - 1)


def _sample_coordinates(
    guide: Tensor, grid_shape: torch.Size
) -> Tuple[Tensor, Tensor, Tensor]:
    # Continuous grid coordinates of every guide pixel: x/y per column/row,
    # depth per pixel.
    _, height, width = guide.shape
    _, grid_height, grid_width, grid_depth, _ = grid_shape
    gxf = (torch.arange(width, device=guide.device, dtype=guide.dtype) + 0.5) * (
        grid_width / width
    )
    gyf = (torch.arange(height, device=guide.device, dtype=guide.dtype) + 0.5) * (
        grid_height / height
    )
    gzf = guide * grid_depth
    return gxf, gyf, gzf


def _gather_neighbourhood(
    grid: Tensor,
    guide: Tensor,
    depth_weight: Callable[[Tensor, Tensor], Tensor],
) -> Tensor:
    # Weighted sum over the clamped 2x2x2 neighbourhood of every pixel.
    batch, grid_height, grid_width, grid_depth, channels = grid.shape
    _, height, width = guide.shape
    value = grid.new_zeros(batch, height, width, channels)
    if value.numel() == 0:
        return value

    gxf, gyf, gzf = _sample_coordinates(guide, grid.shape)
    gx0 = torch.floor(gxf - 0.5).long()
    gy0 = torch.floor(gyf - 0.5).long()
    gz0 = torch.floor(gzf - 0.5).long()
    batch_index = torch.arange(batch, device=grid.device)[:, None, None]

    for dy in range(2):
        gy = gy0 + dy
        wy = lerp_weight(gy.to(grid.dtype) + 0.5, gyf)
        gyc = clamp_boundary(gy, grid_height)[None, :, None]
        for dx in range(2):
            gx = gx0 + dx
            wx = lerp_weight(gx.to(grid.dtype) + 0.5, gxf)
            gxc = clamp_boundary(gx, grid_width)[None, None, :]
            wxy = wy[:, None] * wx[None, :]
            for dz in range(2):
                gz = gz0 + dz
                wz = depth_weight(gz.to(grid.dtype) + 0.5, gzf)
                gzc = clamp_boundary(gz, grid_depth)
                weight = wxy[None] * wz
                value = value + weight[..., None] * grid[batch_index, gyc, gxc, gzc]
    return value


def _bilateral_slice_forward_torch(grid: Tensor, guide: Tensor) -> Tensor:
    return _gather_neighbourhood(grid, guide, smoothed_lerp_weight)


def _footprint(
    grid_extent: int, guide_extent: int, device: torch.device, dtype: torch.dtype
) -> Tuple[Tensor, Tensor]:
    # Guide pixels that can reach each grid cell along one axis, as a padded
    # (grid_extent, window) table of mirrored indices and tent weights. Padding
    # entries carry zero weight.
    scale = guide_extent / grid_extent
    cells = torch.arange(grid_extent, device=device, dtype=dtype)
    lower = torch.floor(scale * (cells + 0.5 - 1.0)).long()
    upper = torch.ceil(scale * (cells + 0.5 + 1.0)).long()
    window = int((upper - lower).max().item()) if grid_extent > 0 else 0
    pixels = lower[:, None] + torch.arange(window, device=device)[None, :]
    valid = pixels < upper[:, None]
    weight = lerp_weight(cells[:, None] + 0.5, (pixels.to(dtype) + 0.5) / scale)
    weight = torch.where(valid, weight, torch.zeros_like(weight))
    return mirror_boundary(pixels, guide_extent), weight


def bilateral_slice_grid_grad_torch(
    guide: Float[Tensor, "batch height width"],
    codomain_tangent: Float[Tensor, "batch height width channels"],
    grid_shape: torch.Size,
) -> Float[Tensor, "batch grid_height grid_width depth channels"]:
    """Gradient of the slice with respect to the grid.

    Each grid cell gathers the codomain tangent over the guide pixels whose
    forward sample can touch it. Pixels outside the guide are mirrored back,
    and the outermost depth cells take unit weight for depth coordinates
    beyond the grid, matching the clamped forward pass.

    Parameters
    ----------
    guide : torch.Tensor
        Guide image of shape ``(B, H, W)``.
    codomain_tangent : torch.Tensor
        Gradient with respect to the slice output, shape ``(B, H, W, C)``.
    grid_shape : torch.Size
        Shape ``(B, Gh, Gw, D, C)`` of the grid.

    Returns
    -------
    torch.Tensor
        Gradient with the grid's shape.
    """
    batch, grid_height, grid_width, grid_depth, channels = grid_shape
    _, height, width = guide.shape
    dtype = codomain_tangent.dtype
    device = codomain_tangent.device

    grad = codomain_tangent.new_zeros(grid_shape)
    if height == 0 or width == 0:
        return grad

    rows, row_weight = _footprint(grid_height, height, device, dtype)
    cols, col_weight = _footprint(grid_width, width, device, dtype)
    depth = torch.arange(grid_depth, device=device)
    depth_centres = depth.to(dtype) + 0.5
    first_cell = depth == 0
    last_cell = depth == grid_depth - 1

    # Loop over the row window to bound memory; the rest is vectorized.
    for k in range(rows.shape[1]):
        row = rows[:, k][:, None, None]
        guide_rows = guide[:, row, cols[None]]
        tangent_rows = codomain_tangent[:, row, cols[None]]
        gzf = (guide_rows * grid_depth)[..., None]
        wz = smoothed_lerp_weight(depth_centres, gzf)
        saturate = (first_cell & (gzf < 0.5)) | (
            last_cell & (gzf > grid_depth - 0.5)
        )
        wz = torch.where(saturate, torch.ones_like(wz), wz)
        wxy = row_weight[:, k][:, None, None] * col_weight[None]
        grad = grad + torch.einsum("hwk,bhwkd,bhwkc->bhwdc", wxy, wz, tangent_rows)
    return grad


def bilateral_slice_guide_grad_torch(
    grid: Float[Tensor, "batch grid_height grid_width depth channels"],
    guide: Float[Tensor, "batch height width"],
    codomain_tangent: Float[Tensor, "batch height width channels"],
) -> Float[Tensor, "batch height width"]:
    """Gradient of the slice with respect to the guide, shape ``(B, H, W)``."""
    grid_depth = grid.shape[3]

    def depth_weight_grad(x: Tensor, xs: Tensor) -> Tensor:
        return grid_depth * smoothed_lerp_weight_grad(x, xs)

    sample = _gather_neighbourhood(grid, guide, depth_weight_grad)
    return (sample * codomain_tangent).sum(dim=-1)


class BilateralSliceTorchFunction(Function):
    """Autograd wrapper pairing the torch forward with the explicit gradients."""

    @staticmethod
    def forward(ctx, grid: Tensor, guide: Tensor) -> Tensor:
        ctx.save_for_backward(grid, guide)
        return _bilateral_slice_forward_torch(grid, guide)

    @staticmethod
    def backward(ctx, grad_output: Tensor):
        grid, guide = ctx.saved_tensors
        grad_grid = grad_guide = None
        if ctx.needs_input_grad[0]:
            grad_grid = bilateral_slice_grid_grad_torch(guide, grad_output, grid.shape)
        if ctx.needs_input_grad[1]:
            grad_guide = bilateral_slice_guide_grad_torch(grid, guide, grad_output)
        return grad_grid, grad_guide


def bilateral_slice_torch(
    grid: Float[Tensor, "batch grid_height grid_width depth channels"],
    guide: Float[Tensor, "batch height width"],
) -> Float[Tensor, "batch height width channels"]:
    """Differentiable torch bilateral slice."""
    return BilateralSliceTorchFunction.apply(grid, guide)


__all__ = [
    "BilateralSliceTorchFunction",
    "bilateral_slice_grid_grad_torch",
    "bilateral_slice_guide_grad_torch",
    "bilateral_slice_torch",
    "clamp_boundary",
    "lerp_weight",
    "mirror_boundary",
    "smoothed_abs",
    "smoothed_lerp_weight",
    "smoothed_lerp_weight_grad",
]
