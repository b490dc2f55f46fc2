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

"""Warp kernels and PyTorch custom ops for the bilateral slice.

Module Structure
----------------
1. **Weight primitives** - ``wp.func`` helpers shared by every kernel.
2. **Kernels** - forward slice, grid gradient and guide gradient. Each output
   element is owned by exactly one thread, so no kernel needs atomics.
3. **Launchers** - skip empty launches, bridge torch tensors to Warp arrays and
   report a single success flag.
4. **Custom ops** - ``torch.library.custom_op`` wrappers with fake
   implementations for ``torch.compile`` and autograd registration.

Warp launches are at most 4-D and Warp arrays at most 4-D, so the grid
``(B, Gh, Gw, D, C)`` is viewed as ``(B, Gh, Gw, D * C)``. Depth and channel
share the innermost axis with channel fastest varying.
"""

import logging
from typing import Optional, Tuple

import torch
import warp as wp

from bilagrid.core.function_spec import FunctionSpec

logger = logging.getLogger(__name__)

# Initialize Warp once for kernel launch.
wp.config.quiet = True
wp.init()

_SMOOTH_ABS_EPS = wp.constant(1.0e-8)


# Define scalar weight primitives used by all three passes.
@wp.func
def lerp_weight(x: wp.float32, xs: wp.float32) -> wp.float32:
    return wp.max(1.0 - wp.abs(x - xs), 0.0)


@wp.func
def smoothed_abs(x: wp.float32) -> wp.float32:
    return wp.sqrt(x * x + _SMOOTH_ABS_EPS)


@wp.func
def smoothed_lerp_weight(x: wp.float32, xs: wp.float32) -> wp.float32:
    return wp.max(1.0 - smoothed_abs(x - xs), 0.0)


@wp.func
def smoothed_lerp_weight_grad(x: wp.float32, xs: wp.float32) -> wp.float32:
    dx = x - xs
    abs_dx = smoothed_abs(dx)
    if abs_dx < 1.0:
        return dx / abs_dx
    return 0.0


@wp.func
def clamp_boundary(i: int, extent: int) -> int:
    return wp.clamp(i, 0, extent - 1)


@wp.func
def mirror_boundary(i: int, extent: int) -> int:
    j = i
    if j < 0:
        j = -j - 1
    if j >= extent:
        j = 2 * extent - 1 - j
    return wp.clamp(j, 0, extent - 1)


@wp.func
def _sample_coordinate(i: int, grid_extent: int, guide_extent: int) -> wp.float32:
    # Continuous grid coordinate of the centre of guide pixel ``i``.
    return (wp.float32(i) + 0.5) * (wp.float32(grid_extent) / wp.float32(guide_extent))


@wp.func
def _grid_value(
    grid: wp.array4d(dtype=wp.float32),
    b: int,
    gy: int,
    gx: int,
    gz: int,
    c: int,
    channels: int,
) -> wp.float32:
    return grid[b, gy, gx, gz * channels + c]


@wp.kernel
def _bilateral_slice_kernel(
    grid: wp.array4d(dtype=wp.float32),
    guide: wp.array3d(dtype=wp.float32),
    out: wp.array4d(dtype=wp.float32),
    grid_depth: int,
):
    """Trilinearly sample the grid at every output element.

    Launched with ``dim=(B, H, W, C)``. Grid indices are clamped to the edge.
    """
    b, y, x, c = wp.tid()
    channels = out.shape[3]
    grid_height = grid.shape[1]
    grid_width = grid.shape[2]

    gxf = _sample_coordinate(x, grid_width, guide.shape[2])
    gyf = _sample_coordinate(y, grid_height, guide.shape[1])
    gzf = guide[b, y, x] * wp.float32(grid_depth)
    gx0 = wp.int32(wp.floor(gxf - 0.5))
    gy0 = wp.int32(wp.floor(gyf - 0.5))
    gz0 = wp.int32(wp.floor(gzf - 0.5))

    value = float(0.0)
    for dy in range(2):
        gy = gy0 + dy
        gyc = clamp_boundary(gy, grid_height)
        wy = lerp_weight(wp.float32(gy) + 0.5, gyf)
        for dx in range(2):
            gx = gx0 + dx
            gxc = clamp_boundary(gx, grid_width)
            wx = lerp_weight(wp.float32(gx) + 0.5, gxf)
            for dz in range(2):
                gz = gz0 + dz
                gzc = clamp_boundary(gz, grid_depth)
                wz = smoothed_lerp_weight(wp.float32(gz) + 0.5, gzf)
                value += wx * wy * wz * _grid_value(grid, b, gyc, gxc, gzc, c, channels)

    out[b, y, x, c] = value


@wp.kernel
def _bilateral_slice_grid_grad_kernel(
    guide: wp.array3d(dtype=wp.float32),
    codomain_tangent: wp.array4d(dtype=wp.float32),
    grid_vjp_out: wp.array4d(dtype=wp.float32),
    grid_depth: int,
):
    """Gather the codomain tangent into every grid cell.

    Launched with ``dim=(B, Gh, Gw, D * C)``. The footprint of a cell is the
    window of guide pixels within one cell of its centre; pixels outside the
    guide are mirrored back inside.
    """
    b, gy, gx, zc = wp.tid()
    channels = codomain_tangent.shape[3]
    gz = zc // channels
    c = zc % channels
    height = guide.shape[1]
    width = guide.shape[2]
    scale_x = wp.float32(width) / wp.float32(grid_vjp_out.shape[2])
    scale_y = wp.float32(height) / wp.float32(grid_vjp_out.shape[1])

    x0 = wp.int32(wp.floor(scale_x * (wp.float32(gx) + 0.5 - 1.0)))
    x1_exclusive = wp.int32(wp.ceil(scale_x * (wp.float32(gx) + 0.5 + 1.0)))
    y0 = wp.int32(wp.floor(scale_y * (wp.float32(gy) + 0.5 - 1.0)))
    y1_exclusive = wp.int32(wp.ceil(scale_y * (wp.float32(gy) + 0.5 + 1.0)))

    vjp_value = float(0.0)
    for y in range(y0, y1_exclusive):
        y_mirror = mirror_boundary(y, height)
        gyf = (wp.float32(y) + 0.5) / scale_y
        wy = lerp_weight(wp.float32(gy) + 0.5, gyf)
        for x in range(x0, x1_exclusive):
            x_mirror = mirror_boundary(x, width)
            gxf = (wp.float32(x) + 0.5) / scale_x
            wx = lerp_weight(wp.float32(gx) + 0.5, gxf)

            gzf = guide[b, y_mirror, x_mirror] * wp.float32(grid_depth)
            wz = smoothed_lerp_weight(wp.float32(gz) + 0.5, gzf)
            # Outermost depth cells absorb coordinates beyond the grid.
            if (gz == 0 and gzf < 0.5) or (
                gz == grid_depth - 1 and gzf > wp.float32(grid_depth) - 0.5
            ):
                wz = 1.0
            vjp_value += wz * wx * wy * codomain_tangent[b, y_mirror, x_mirror, c]

    grid_vjp_out[b, gy, gx, zc] = vjp_value


@wp.kernel
def _bilateral_slice_guide_grad_kernel(
    grid: wp.array4d(dtype=wp.float32),
    guide: wp.array3d(dtype=wp.float32),
    codomain_tangent: wp.array4d(dtype=wp.float32),
    guide_vjp_out: wp.array3d(dtype=wp.float32),
    grid_depth: int,
):
    """Differentiate the sample along depth and contract it with the tangent.

    Launched with ``dim=(B, H, W)``. Grid indices are clamped as in the forward
    kernel.
    """
    b, y, x = wp.tid()
    channels = codomain_tangent.shape[3]
    grid_height = grid.shape[1]
    grid_width = grid.shape[2]

    gxf = _sample_coordinate(x, grid_width, guide.shape[2])
    gyf = _sample_coordinate(y, grid_height, guide.shape[1])
    gzf = guide[b, y, x] * wp.float32(grid_depth)
    gx0 = wp.int32(wp.floor(gxf - 0.5))
    gy0 = wp.int32(wp.floor(gyf - 0.5))
    gz0 = wp.int32(wp.floor(gzf - 0.5))

    vjp_value = float(0.0)
    for c in range(channels):
        grid_sample = float(0.0)
        for dy in range(2):
            gy = gy0 + dy
            gyc = clamp_boundary(gy, grid_height)
            wy = lerp_weight(wp.float32(gy) + 0.5, gyf)
            for dx in range(2):
                gx = gx0 + dx
                gxc = clamp_boundary(gx, grid_width)
                wx = lerp_weight(wp.float32(gx) + 0.5, gxf)
                for dz in range(2):
                    gz = gz0 + dz
                    gzc = clamp_boundary(gz, grid_depth)
                    dwz = wp.float32(grid_depth) * smoothed_lerp_weight_grad(
                        wp.float32(gz) + 0.5, gzf
                    )
                    grid_sample += (
                        wx * wy * dwz * _grid_value(grid, b, gyc, gxc, gzc, c, channels)
                    )
        vjp_value += grid_sample * codomain_tangent[b, y, x, c]

    guide_vjp_out[b, y, x] = vjp_value


# Launch helpers keep the empty-launch guard and error reporting in one place.
def _launch(kernel, dim, inputs, wp_device, wp_stream) -> bool:
    try:
        wp.launch(kernel, dim=dim, inputs=inputs, device=wp_device, stream=wp_stream)
    except RuntimeError as err:
        logger.error("Warp launch of %s with dim=%s failed: %s", kernel.key, dim, err)
        return False
    return True


def _grid_array(grid: torch.Tensor):
    batch, grid_height, grid_width, grid_depth, channels = grid.shape
    return wp.from_torch(
        grid.detach().reshape(batch, grid_height, grid_width, grid_depth * channels)
    )


def bilateral_slice_launch(
    grid: torch.Tensor, guide: torch.Tensor, out: torch.Tensor
) -> bool:
    """Launch the forward slice into a pre-allocated output.

    Parameters
    ----------
    grid : torch.Tensor
        Contiguous float32 grid of shape ``(B, Gh, Gw, D, C)``.
    guide : torch.Tensor
        Contiguous float32 guide of shape ``(B, H, W)``.
    out : torch.Tensor
        Contiguous float32 output of shape ``(B, H, W, C)``, fully overwritten.

    Returns
    -------
    bool
        ``True`` if no launch error was reported. An empty output is not
        launched and reports success.
    """
    if out.numel() == 0:
        logger.debug("Skipping bilateral slice launch for empty output %s", out.shape)
        return True

    batch, height, width, channels = out.shape
    grid_depth = grid.shape[3]
    wp_device, wp_stream = FunctionSpec.warp_launch_context(out)
    with wp.ScopedStream(wp_stream):
        return _launch(
            _bilateral_slice_kernel,
            dim=(batch, height, width, channels),
            inputs=[
                _grid_array(grid),
                wp.from_torch(guide.detach()),
                wp.from_torch(out.detach()),
                int(grid_depth),
            ],
            wp_device=wp_device,
            wp_stream=wp_stream,
        )


def bilateral_slice_grad_launch(
    grid: torch.Tensor,
    guide: torch.Tensor,
    codomain_tangent: torch.Tensor,
    grid_vjp_out: torch.Tensor,
    guide_vjp_out: torch.Tensor,
) -> bool:
    """Launch both backward kernels into pre-allocated gradients.

    The grid and guide gradients do not depend on each other and are issued
    back to back on the same stream. Empty gradients are skipped. When the
    guide is empty no pixel reaches the grid and its gradient is zero.

    Returns
    -------
    bool
        ``True`` if neither launch reported an error.
    """
    batch, grid_height, grid_width, grid_depth, channels = grid.shape
    wp_device, wp_stream = FunctionSpec.warp_launch_context(grid_vjp_out)
    ok = True
    with wp.ScopedStream(wp_stream):
        if grid_vjp_out.numel() == 0:
            logger.debug("Skipping grid gradient launch for empty grid")
        elif guide.numel() == 0:
            grid_vjp_out.zero_()
        else:
            ok = (
                _launch(
                    _bilateral_slice_grid_grad_kernel,
                    dim=(batch, grid_height, grid_width, grid_depth * channels),
                    inputs=[
                        wp.from_torch(guide.detach()),
                        wp.from_torch(codomain_tangent.detach()),
                        _grid_array(grid_vjp_out),
                        int(grid_depth),
                    ],
                    wp_device=wp_device,
                    wp_stream=wp_stream,
                )
                and ok
            )

        if guide_vjp_out.numel() == 0:
            logger.debug("Skipping guide gradient launch for empty guide")
        else:
            ok = (
                _launch(
                    _bilateral_slice_guide_grad_kernel,
                    dim=tuple(guide_vjp_out.shape),
                    inputs=[
                        _grid_array(grid),
                        wp.from_torch(guide.detach()),
                        wp.from_torch(codomain_tangent.detach()),
                        wp.from_torch(guide_vjp_out.detach()),
                        int(grid_depth),
                    ],
                    wp_device=wp_device,
                    wp_stream=wp_stream,
                )
                and ok
            )
    return ok


def _as_float32(tensor: torch.Tensor) -> torch.Tensor:
    return tensor.detach().to(torch.float32).contiguous()


# Register the warp-backed slice with torch custom ops.
@torch.library.custom_op("bilagrid::bilateral_slice_warp", mutates_args=())
def bilateral_slice_impl(grid: torch.Tensor, guide: torch.Tensor) -> torch.Tensor:
    # Kernels run in float32; the output takes the grid's dtype.
    input_dtype = grid.dtype
    batch, _, _, _, channels = grid.shape
    _, height, width = guide.shape
    output = torch.empty(
        (batch, height, width, channels), device=grid.device, dtype=torch.float32
    )
    if not bilateral_slice_launch(_as_float32(grid), _as_float32(guide), output):
        raise RuntimeError("Warp bilateral slice forward launch failed")

    if input_dtype != torch.float32:
        output = output.to(input_dtype)
    return output


# Register fake tensor propagation for torch compile/fake mode.
@bilateral_slice_impl.register_fake
def _(grid: torch.Tensor, guide: torch.Tensor) -> torch.Tensor:
    return grid.new_empty((grid.shape[0], guide.shape[1], guide.shape[2], grid.shape[4]))


@torch.library.custom_op("bilagrid::_bilateral_slice_backward_warp", mutates_args=())
def _bilateral_slice_backward_impl(
    grad_output: torch.Tensor, grid: torch.Tensor, guide: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Private custom op wrapping the backward launches for ``torch.compile``."""
    grid_vjp = torch.empty(grid.shape, device=grid.device, dtype=torch.float32)
    guide_vjp = torch.empty(guide.shape, device=guide.device, dtype=torch.float32)
    ok = bilateral_slice_grad_launch(
        _as_float32(grid),
        _as_float32(guide),
        _as_float32(grad_output),
        grid_vjp,
        guide_vjp,
    )
    if not ok:
        raise RuntimeError("Warp bilateral slice backward launch failed")
    return grid_vjp.to(grid.dtype), guide_vjp.to(guide.dtype)


@_bilateral_slice_backward_impl.register_fake
def _(
    grad_output: torch.Tensor, grid: torch.Tensor, guide: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    return torch.empty_like(grid), torch.empty_like(guide)


# Setup tensors required for custom-op backward.
def setup_bilateral_slice_context(
    ctx: torch.autograd.function.FunctionCtx, inputs: tuple, output: torch.Tensor
) -> None:
    grid, guide = inputs
    ctx.save_for_backward(grid, guide)


def backward_bilateral_slice(
    ctx: torch.autograd.function.FunctionCtx, grad_output: torch.Tensor
) -> Tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
    grid, guide = ctx.saved_tensors
    if grad_output is None:
        return None, None

    grad_grid, grad_guide = _bilateral_slice_backward_impl(grad_output, grid, guide)
    return (
        grad_grid if ctx.needs_input_grad[0] else None,
        grad_guide if ctx.needs_input_grad[1] else None,
    )


# Register custom-op backward.
bilateral_slice_impl.register_autograd(
    backward_bilateral_slice, setup_context=setup_bilateral_slice_context
)


# Public warp entry point used by the BilateralSlice FunctionSpec.
def bilateral_slice_warp(grid: torch.Tensor, guide: torch.Tensor) -> torch.Tensor:
    return bilateral_slice_impl(grid, guide)


__all__ = [
    "bilateral_slice_grad_launch",
    "bilateral_slice_launch",
    "bilateral_slice_warp",
    "clamp_boundary",
    "lerp_weight",
    "mirror_boundary",
    "smoothed_abs",
    "smoothed_lerp_weight",
    "smoothed_lerp_weight_grad",
]
