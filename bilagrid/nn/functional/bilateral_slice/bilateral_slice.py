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

from typing import Union

import torch
from jaxtyping import Float
from torch import Tensor

from bilagrid.core.function_spec import FunctionSpec

from ._torch_impl import bilateral_slice_torch


def _validate_bilateral_slice_inputs(grid: Tensor, guide: Tensor) -> None:
    if grid.ndim != 5:
        raise ValueError(
            "grid must be 5D (batch, grid_height, grid_width, depth, channels), "
            f"got shape {tuple(grid.shape)}"
        )
    if guide.ndim != 3:
        raise ValueError(
            f"guide must be 3D (batch, height, width), got shape {tuple(guide.shape)}"
        )
    if grid.shape[0] != guide.shape[0]:
        raise ValueError(
            "grid and guide must have the same batch size, "
            f"got {grid.shape[0]} and {guide.shape[0]}"
        )
    if any(extent < 1 for extent in grid.shape):
        raise ValueError(
            f"grid extents must all be at least 1, got shape {tuple(grid.shape)}"
        )
    if grid.device != guide.device:
        raise ValueError("grid and guide must be on the same device")
    if not (grid.is_floating_point() and guide.is_floating_point()):
        raise ValueError(
            f"grid and guide must be floating point, got {grid.dtype} and {guide.dtype}"
        )
    if grid.dtype != guide.dtype:
        raise ValueError(
            f"grid and guide must have the same dtype, got {grid.dtype} and {guide.dtype}"
        )


class BilateralSlice(FunctionSpec):
    """Slice a bilateral grid with a guide image.

    Every guide pixel ``(y, x)`` samples the grid at the continuous position
    ``((x + 0.5) * Gw / W, (y + 0.5) * Gh / H, guide[b, y, x] * D)``. The sample
    is a tent-weighted sum over the 2x2x2 neighbouring cells, with a smoothed
    tent along depth so the output is differentiable with respect to the guide.
    Grid indices outside the grid are clamped to its edge.

    Parameters
    ----------
    grid : torch.Tensor
        Bilateral grid of shape ``(B, Gh, Gw, D, C)``.
    guide : torch.Tensor
        Guide image of shape ``(B, H, W)``. Values are depth coordinates in
        units of the full grid depth, nominally in ``[0, 1]``.
    implementation : {"warp", "torch"} or None
        Implementation to use. When ``None``, dispatch selects the available
        implementation.

    Returns
    -------
    torch.Tensor
        Sliced output of shape ``(B, H, W, C)``, differentiable with respect
        to both ``grid`` and ``guide``.

    Notes
    -----
    The gradient with respect to the grid reflects guide pixels about the image
    border, while the forward pass and the guide gradient clamp grid indices.
    """

    # Warp outranks the torch baseline, so it is the default when importable.
    @FunctionSpec.register(name="warp", required_imports=("warp>=1.0.0",), rank=0)
    def warp_forward(
        grid: Float[Tensor, "batch grid_height grid_width depth channels"],
        guide: Float[Tensor, "batch height width"],
    ) -> Float[Tensor, "batch height width channels"]:
        from ._warp_impl import bilateral_slice_warp

        _validate_bilateral_slice_inputs(grid, guide)
        return bilateral_slice_warp(grid, guide)

    @FunctionSpec.register(name="torch", rank=1, baseline=True)
    def torch_forward(
        grid: Float[Tensor, "batch grid_height grid_width depth channels"],
        guide: Float[Tensor, "batch height width"],
    ) -> Float[Tensor, "batch height width channels"]:
        _validate_bilateral_slice_inputs(grid, guide)
        return bilateral_slice_torch(grid, guide)

    @classmethod
    def make_inputs(cls, device: Union[torch.device, str] = "cpu"):
        device = torch.device(device)
        cases = [
            ("hdrnet", 1, 16, 16, 8, 12, 256, 256),
            ("batched", 2, 8, 8, 4, 4, 64, 48),
            ("non-square", 1, 12, 20, 8, 3, 90, 150),
            ("fine-grid", 1, 8, 8, 4, 2, 6, 5),
        ]
        for label, batch, gh, gw, depth, channels, height, width in cases:
            generator = torch.Generator().manual_seed(0)
            grid = torch.randn(batch, gh, gw, depth, channels, generator=generator)
            guide = torch.rand(batch, height, width, generator=generator)
            yield (
                f"{label}-b{batch}-g{gh}x{gw}x{depth}-c{channels}-i{height}x{width}",
                (grid.to(device), guide.to(device)),
                {},
            )


bilateral_slice = BilateralSlice.make_function("bilateral_slice")


__all__ = [
    "BilateralSlice",
    "bilateral_slice",
]
