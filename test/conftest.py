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

import importlib.util
import logging

import pytest
import torch

AVAILABLE_DEVICES = ["cpu"] + (["cuda:0"] if torch.cuda.is_available() else [])


def requires_module(names):
    """Skip a test unless every named module can be imported."""
    if isinstance(names, str):
        names = [names]
    missing = [name for name in names if importlib.util.find_spec(name) is None]
    return pytest.mark.skipif(
        bool(missing), reason=f"requires module(s): {', '.join(missing)}"
    )


@pytest.fixture(params=AVAILABLE_DEVICES)
def device(request) -> str:
    return request.param


@pytest.fixture(autouse=True)
def _seed():
    torch.manual_seed(0)


@pytest.fixture
def bilagrid_debug_logs(caplog):
    """Capture DEBUG records emitted by the bilagrid loggers."""
    caplog.set_level(logging.DEBUG, logger="bilagrid")
    return caplog


def kink_free_guide(batch, height, width, depth, dtype=torch.float32, device="cpu"):
    """Random guide whose depth coordinates stay clear of the cell centres.

    The depth weights have kinks where ``guide * depth`` hits ``k + 0.5``, so
    finite differences are only meaningful away from them. Offsets within a
    cell are drawn from ``[0.1, 0.4]`` or ``[0.6, 0.9]``.
    """
    cells = torch.randint(0, depth, (batch, height, width), dtype=torch.float64)
    offsets = 0.1 + 0.3 * torch.rand(batch, height, width, dtype=torch.float64)
    offsets = offsets + 0.5 * torch.randint(0, 2, (batch, height, width))
    return ((cells + offsets) / depth).to(dtype=dtype, device=device)


def out_of_range_guide(batch, height, width, dtype=torch.float32, device="cpu"):
    """Guide mixing in-range values with values below 0 and above 1.

    Meant for a grid depth of 4: the out-of-range depth coordinates
    ``-2.92, -1.24, 5.08, 6.44`` fall beyond both depth edges and clear of
    the cell-centre kinks.
    """
    outside = torch.tensor([-0.73, -0.31, 1.27, 1.61], dtype=torch.float64)
    picks = outside[torch.randint(0, outside.numel(), (batch, height, width))]
    inside = kink_free_guide(batch, height, width, 4, dtype=torch.float64)
    guide = torch.where(torch.rand(batch, height, width) < 0.5, picks, inside)
    return guide.to(dtype=dtype, device=device)
