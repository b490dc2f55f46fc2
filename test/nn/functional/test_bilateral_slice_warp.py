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

import logging
from unittest.mock import patch

import pytest
import torch

wp = pytest.importorskip("warp")

from bilagrid.nn.functional.bilateral_slice import _warp_impl  # noqa: E402
from bilagrid.nn.functional.bilateral_slice._torch_impl import (  # noqa: E402
    bilateral_slice_grid_grad_torch,
    bilateral_slice_guide_grad_torch,
    bilateral_slice_torch,
)
from bilagrid.nn.functional.bilateral_slice._warp_impl import (  # noqa: E402
    bilateral_slice_grad_launch,
    bilateral_slice_launch,
    bilateral_slice_warp,
    clamp_boundary,
    lerp_weight,
    mirror_boundary,
    smoothed_abs,
    smoothed_lerp_weight,
    smoothed_lerp_weight_grad,
)
from test.conftest import kink_free_guide, out_of_range_guide  # noqa: E402


@wp.kernel
def _weights_kernel(
    x: wp.array(dtype=wp.float32),
    xs: wp.array(dtype=wp.float32),
    out: wp.array2d(dtype=wp.float32),
):
    i = wp.tid()
    out[i, 0] = lerp_weight(x[i], xs[i])
    out[i, 1] = smoothed_abs(x[i] - xs[i])
    out[i, 2] = smoothed_lerp_weight(x[i], xs[i])
    out[i, 3] = smoothed_lerp_weight_grad(x[i], xs[i])


@wp.kernel
def _boundary_kernel(
    index: wp.array(dtype=wp.int32),
    extent: int,
    out: wp.array2d(dtype=wp.int32),
):
    i = wp.tid()
    out[i, 0] = clamp_boundary(index[i], extent)
    out[i, 1] = mirror_boundary(index[i], extent)


def test_warp_weight_primitives():
    xs = torch.tensor([-0.6, -0.2, 0.0, 0.3, 0.5, 0.9, 1.4, 2.0])
    x = torch.full_like(xs, 0.5)
    out = torch.zeros(xs.shape[0], 4)
    wp.launch(
        _weights_kernel,
        dim=xs.shape[0],
        inputs=[wp.from_torch(x), wp.from_torch(xs), wp.from_torch(out)],
        device="cpu",
    )
    dx = (x - xs).double()
    abs_dx = torch.sqrt(dx * dx + 1.0e-8)
    expected = torch.stack(
        [
            torch.clamp(1.0 - dx.abs(), min=0.0),
            abs_dx,
            torch.clamp(1.0 - abs_dx, min=0.0),
            torch.where(abs_dx < 1.0, dx / abs_dx, torch.zeros_like(dx)),
        ],
        dim=-1,
    )
    torch.testing.assert_close(out.double(), expected, atol=1e-5, rtol=1e-5)


def test_warp_boundary_primitives():
    index = torch.tensor([-9, -2, -1, 0, 3, 4, 5, 12], dtype=torch.int32)
    out = torch.zeros(index.shape[0], 2, dtype=torch.int32)
    wp.launch(
        _boundary_kernel,
        dim=index.shape[0],
        inputs=[wp.from_torch(index), 4, wp.from_torch(out)],
        device="cpu",
    )
    assert out[:, 0].tolist() == [0, 0, 0, 0, 3, 3, 3, 3]
    assert out[:, 1].tolist() == [0, 1, 0, 0, 3, 3, 2, 0]


def test_warp_forward_clamps_grid_edges(device: str):
    grid = torch.tensor([1.0, 3.0], device=device).reshape(1, 1, 2, 1, 1)
    guide = torch.full((1, 1, 8), 0.25, device=device)
    out = bilateral_slice_warp(grid, guide)
    expected = torch.tensor([1.0, 1.0, 1.25, 1.75, 2.25, 2.75, 3.0, 3.0])
    torch.testing.assert_close(out.reshape(-1).cpu(), expected, atol=1e-6, rtol=1e-6)


def test_warp_grid_grad_mirrors_guide_border(device: str):
    grid = torch.zeros(1, 1, 2, 1, 1, device=device)
    guide = torch.full((1, 1, 8), 0.25, device=device)
    tangent = torch.zeros(1, 1, 8, 1, device=device)
    tangent[0, 0, 1, 0] = 1.0
    grid_vjp = torch.empty_like(grid)
    guide_vjp = torch.empty_like(guide)
    assert bilateral_slice_grad_launch(grid, guide, tangent, grid_vjp, guide_vjp)
    torch.testing.assert_close(grid_vjp.reshape(-1).cpu(), torch.tensor([1.0, 0.0]))


def test_warp_grid_grad_is_adjoint_of_forward(device: str):
    grid = torch.randn(2, 3, 4, 5, 2, device=device)
    guide = kink_free_guide(2, 9, 11, 5, device=device)
    tangent = torch.randn(2, 9, 11, 2, device=device)
    out = torch.empty_like(tangent)
    grid_vjp = torch.empty_like(grid)
    guide_vjp = torch.empty_like(guide)
    assert bilateral_slice_launch(grid, guide, out)
    assert bilateral_slice_grad_launch(grid, guide, tangent, grid_vjp, guide_vjp)
    lhs = (out.double() * tangent.double()).sum()
    rhs = (grid.double() * grid_vjp.double()).sum()
    torch.testing.assert_close(lhs, rhs, rtol=1e-4, atol=1e-4)


@pytest.mark.parametrize(
    "grid_shape,image_shape",
    [((1, 4, 4, 8, 3), (16, 16)), ((2, 6, 3, 4, 2), (5, 7))],
)
def test_warp_gradients_match_float64_reference(device, grid_shape, image_shape):
    batch, _, _, depth, channels = grid_shape
    grid = torch.randn(grid_shape, dtype=torch.float64)
    guide = kink_free_guide(batch, *image_shape, depth, dtype=torch.float64)
    tangent = torch.randn(batch, *image_shape, channels, dtype=torch.float64)

    out = torch.empty(batch, *image_shape, channels, device=device)
    grid_vjp = torch.empty(grid_shape, device=device)
    guide_vjp = torch.empty(batch, *image_shape, device=device)
    grid32 = grid.float().to(device)
    guide32 = guide.float().to(device)
    assert bilateral_slice_launch(grid32, guide32, out)
    assert bilateral_slice_grad_launch(
        grid32, guide32, tangent.float().to(device), grid_vjp, guide_vjp
    )

    torch.testing.assert_close(
        out.cpu().double(), bilateral_slice_torch(grid, guide), atol=1e-5, rtol=1e-4
    )
    torch.testing.assert_close(
        grid_vjp.cpu().double(),
        bilateral_slice_grid_grad_torch(guide, tangent, grid.shape),
        atol=1e-4,
        rtol=1e-4,
    )
    torch.testing.assert_close(
        guide_vjp.cpu().double(),
        bilateral_slice_guide_grad_torch(grid, guide, tangent),
        atol=1e-3,
        rtol=1e-4,
    )


def test_warp_output_keeps_input_dtype(device: str):
    grid = torch.randn(1, 2, 3, 4, 2, dtype=torch.float64, device=device)
    guide = torch.rand(1, 5, 6, dtype=torch.float64, device=device)
    grid.requires_grad_(True)
    guide.requires_grad_(True)
    out = bilateral_slice_warp(grid, guide)
    assert out.dtype == torch.float64
    out.sum().backward()
    assert grid.grad.dtype == torch.float64
    assert guide.grad.dtype == torch.float64


def test_warp_empty_launches_leave_memory_untouched(bilagrid_debug_logs):
    grid = torch.randn(1, 2, 2, 3, 2)
    guide = torch.rand(1, 0, 4)
    out = torch.empty(1, 0, 4, 2)
    assert bilateral_slice_launch(grid, guide, out)
    assert "empty output" in bilagrid_debug_logs.text

    grid_vjp = torch.full_like(grid, 7.0)
    guide_vjp = torch.empty(1, 0, 4)
    tangent = torch.empty(1, 0, 4, 2)
    assert bilateral_slice_grad_launch(grid, guide, tangent, grid_vjp, guide_vjp)
    # No pixel reaches the grid, so its gradient is zero.
    assert torch.all(grid_vjp == 0)


def test_warp_empty_grid_gradient_is_skipped():
    grid = torch.randn(0, 2, 2, 3, 2)
    guide = torch.rand(0, 3, 4)
    tangent = torch.rand(0, 3, 4, 2)
    assert bilateral_slice_grad_launch(
        grid, guide, tangent, torch.empty_like(grid), torch.empty_like(guide)
    )


def test_warp_launch_failure_is_reported(caplog):
    grid = torch.randn(1, 2, 2, 3, 2)
    guide = torch.rand(1, 4, 4)
    out = torch.empty(1, 4, 4, 2)
    with patch.object(
        _warp_impl.wp, "launch", side_effect=RuntimeError("launch failed")
    ):
        with caplog.at_level(logging.ERROR, logger="bilagrid"):
            assert bilateral_slice_launch(grid, guide, out) is False
        assert "Warp launch" in caplog.text

        with pytest.raises(RuntimeError, match="forward launch failed"):
            bilateral_slice_warp(grid, guide)

        grid_vjp = torch.empty_like(grid)
        guide_vjp = torch.empty_like(guide)
        assert not bilateral_slice_grad_launch(
            grid, guide, torch.rand(1, 4, 4, 2), grid_vjp, guide_vjp
        )


def test_warp_depth_ramp_midpoint(device: str):
    depth, channels = 8, 4
    z = torch.arange(depth, dtype=torch.float32)[:, None]
    c = torch.arange(channels, dtype=torch.float32)[None, :]
    grid = ((z + 0.5) + 2.0 * c).expand(1, 16, 16, depth, channels)
    guide = torch.full((1, 64, 64), 0.5)
    out = bilateral_slice_warp(grid.contiguous().to(device), guide.to(device))
    expected = (4.0 + 2.0 * c[0]).expand(1, 64, 64, channels)
    torch.testing.assert_close(out.cpu(), expected, atol=1e-5, rtol=1e-5)


def test_warp_grid_grad_is_adjoint_for_guides_outside_unit_range(device: str):
    grid = torch.randn(2, 3, 4, 4, 2, device=device)
    guide = out_of_range_guide(2, 7, 9, device=device)
    tangent = torch.randn(2, 7, 9, 2, device=device)
    out = torch.empty_like(tangent)
    grid_vjp = torch.empty_like(grid)
    guide_vjp = torch.empty_like(guide)
    assert bilateral_slice_launch(grid, guide, out)
    assert bilateral_slice_grad_launch(grid, guide, tangent, grid_vjp, guide_vjp)
    lhs = (out.double() * tangent.double()).sum()
    rhs = (grid.double() * grid_vjp.double()).sum()
    torch.testing.assert_close(lhs, rhs, rtol=1e-4, atol=1e-4)


def test_warp_gradients_match_reference_outside_unit_range(device: str):
    grid = torch.randn(1, 3, 4, 4, 2, dtype=torch.float64)
    guide = out_of_range_guide(1, 6, 5, dtype=torch.float64)
    tangent = torch.randn(1, 6, 5, 2, dtype=torch.float64)

    out = torch.empty(1, 6, 5, 2, device=device)
    grid_vjp = torch.empty(grid.shape, device=device)
    guide_vjp = torch.empty(guide.shape, device=device)
    grid32 = grid.float().to(device)
    guide32 = guide.float().to(device)
    assert bilateral_slice_launch(grid32, guide32, out)
    assert bilateral_slice_grad_launch(
        grid32, guide32, tangent.float().to(device), grid_vjp, guide_vjp
    )

    torch.testing.assert_close(
        out.cpu().double(), bilateral_slice_torch(grid, guide), atol=1e-5, rtol=1e-4
    )
    torch.testing.assert_close(
        grid_vjp.cpu().double(),
        bilateral_slice_grid_grad_torch(guide, tangent, grid.shape),
        atol=1e-4,
        rtol=1e-4,
    )
    torch.testing.assert_close(
        guide_vjp.cpu().double(),
        bilateral_slice_guide_grad_torch(grid, guide, tangent),
        atol=1e-3,
        rtol=1e-4,
    )
