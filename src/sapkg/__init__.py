"""
sapkg: Super accelerated package manager

Copyright (c) 2026  sapkg contributors

This file is part of `sapkg`.

sapkg is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

sapkg is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the License for more details.

You should have received a copy of the GNU Affero General Public License
along with sapkg. If not, see <https://www.gnu.org/licenses/>.
"""
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

# tomllib is stdlib from 3.11; older interpreters get the tomli backport
try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib


def _discover_version() -> str:
    """Installed distribution metadata first, then the source checkout's pyproject.toml."""
    try:
        return version("sapkg")
    except PackageNotFoundError:
        pass
    pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    if not pyproject_path.exists():
        return "0.0.0"
    with pyproject_path.open("rb") as f:
        return tomllib.load(f)["project"]["version"]


__version__ = _discover_version()

__all__ = [
    "cache",
    "cli",
    "common_utils",
    "core",
    "errors",
    "installation",
    "isolation",
    "models",
]
