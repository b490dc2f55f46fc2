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

"""ASV benchmarks for bilagrid functionals."""

from __future__ import annotations

import os
from typing import Any, Iterable

import torch

from benchmarks.bilagrid.nn.functional.registry import FUNCTIONAL_SPECS


def _resolve_device() -> torch.device:
    """Resolve the device to benchmark on."""

    # An explicit device in the environment wins.
    device_name = os.getenv("BILAGRID_ASV_DEVICE")
    if device_name:
        return torch.device(device_name)

    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def _filter_specs(specs: Iterable[type]) -> list[type]:
    """Keep the specs named in BILAGRID_ASV_FUNCTIONALS, or all of them."""

    spec_filter = os.getenv("BILAGRID_ASV_FUNCTIONALS")
    if not spec_filter:
        return list(specs)

    requested = {
        name.strip().lower() for name in spec_filter.split(",") if name.strip()
    }
    if not requested:
        return list(specs)

    selected = [spec for spec in specs if spec.__name__.lower() in requested]
    if not selected:
        available = ", ".join(sorted(spec.__name__ for spec in specs))
        raise ValueError(
            "BILAGRID_ASV_FUNCTIONALS did not match any FunctionSpec. "
            f"Requested: {spec_filter!r}. Available: {available}"
        )
    return selected


def _synchronize() -> None:
    if _DEVICE.type == "cuda":
        torch.cuda.synchronize()


# Precompute (spec_name, implementation_name, case_index) triples for ASV.
_DEVICE = _resolve_device()
_PARAMS: list[tuple[str, str, int]] = []
_WORK_ITEMS: dict[
    tuple[str, str, int], tuple[type, str, tuple[Any, ...], dict[str, Any]]
] = {}

for spec in _filter_specs(FUNCTIONAL_SPECS):
    implementations = spec.available_implementations()
    if not implementations:
        continue

    cases = list(spec.make_inputs(device=_DEVICE))
    for impl in implementations:
        for case_index, (label, args, kwargs) in enumerate(cases):
            key = (spec.__name__, impl, case_index)
            _PARAMS.append(key)
            _WORK_ITEMS[key] = (spec, label, args, kwargs)


class FunctionalBenchmarks:
    """Time forward and forward+backward passes of each implementation."""

    params = [_PARAMS]
    param_names = ["spec_impl_case"]
    timeout = 120

    def setup(self, spec_impl_case: tuple[str, str, int]) -> None:
        spec, _, args, kwargs = _WORK_ITEMS[spec_impl_case]
        self.spec = spec
        self.implementation = spec_impl_case[1]
        self.args = args
        self.kwargs = kwargs
        # Leaf copies for the backward timing; forward timing uses the originals.
        self.grad_args = tuple(
            arg.detach().clone().requires_grad_(True)
            if isinstance(arg, torch.Tensor) and arg.is_floating_point()
            else arg
            for arg in args
        )
        _synchronize()

    def time_functional(self, spec_impl_case: tuple[str, str, int]) -> None:
        self.spec.dispatch(
            *self.args, **self.kwargs, implementation=self.implementation
        )
        _synchronize()

    def time_functional_backward(self, spec_impl_case: tuple[str, str, int]) -> None:
        out = self.spec.dispatch(
            *self.grad_args, **self.kwargs, implementation=self.implementation
        )
        out.sum().backward()
        _synchronize()
