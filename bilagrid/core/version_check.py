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

"""Helpers for checking optional dependency versions at runtime."""

import functools
import importlib
from importlib import metadata
from typing import Callable, Optional, Tuple

from packaging.requirements import InvalidRequirement, Requirement
from packaging.specifiers import SpecifierSet
from packaging.version import InvalidVersion, Version


@functools.lru_cache(maxsize=None)
def get_installed_version(package: str) -> Optional[str]:
    """Return the installed version of ``package`` or ``None``.

    The distribution metadata is consulted first. Packages whose import name
    differs from their distribution name (``warp`` ships as ``warp-lang``) fall
    back to the module's ``__version__`` attribute.
    """
    try:
        return metadata.version(package)
    except metadata.PackageNotFoundError:
        pass

    try:
        module = importlib.import_module(package)
    except ImportError:
        return None
    return getattr(module, "__version__", None)


def parse_requirement(requirement: str) -> Tuple[str, str]:
    """Split ``"warp>=1.0.0"`` into ``("warp", ">=1.0.0")``.

    A bare package name yields an empty specifier.
    """
    try:
        parsed = Requirement(requirement)
    except InvalidRequirement as err:
        raise ValueError(f"Invalid requirement string {requirement!r}") from err
    return parsed.name, str(parsed.specifier)


def check_version_spec(
    package: str,
    spec: str = "",
    error_msg: Optional[str] = None,
    hard_fail: bool = True,
) -> bool:
    """Check that ``package`` is installed and satisfies ``spec``.

    Parameters
    ----------
    package : str
        Import or distribution name of the package.
    spec : str, optional
        Either a bare minimum version (``"2.6.0"``) or a PEP 440 specifier set
        (``">=2.6.0,<3"``). Empty means any installed version is accepted.
    error_msg : str, optional
        Message used instead of the default one when the check fails.
    hard_fail : bool, optional
        Raise ``ImportError`` on failure instead of returning ``False``.

    Returns
    -------
    bool
        ``True`` when the requirement is satisfied.
    """
    installed = get_installed_version(package)
    if installed is None:
        if hard_fail:
            raise ImportError(
                error_msg or f"Package '{package}' is required but not installed."
            )
        return False

    if not spec:
        return True

    specifier = SpecifierSet(spec if spec[0] in "<>=!~" else f">={spec}")
    try:
        satisfied = specifier.contains(Version(installed), prereleases=True)
    except InvalidVersion:
        satisfied = False

    if not satisfied:
        if hard_fail:
            minimum = spec.lstrip("<>=!~")
            raise ImportError(
                error_msg
                or f"{package} {minimum} is required, found {installed} "
                f"(requirement: {specifier})"
            )
        return False
    return True


def require_version_spec(
    package: str, spec: str = "", error_msg: Optional[str] = None
) -> Callable:
    """Decorator form of :func:`check_version_spec` with ``hard_fail=True``.

    The check runs on every call so that the decorated function can be defined
    in modules that import without the optional dependency.
    """

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            check_version_spec(package, spec, error_msg=error_msg, hard_fail=True)
            return fn(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "check_version_spec",
    "get_installed_version",
    "parse_requirement",
    "require_version_spec",
]
