"""Version lookup shared by the CLI, the server and generated stubs."""

from __future__ import annotations

import tomllib
from functools import lru_cache
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _metadata_version
from pathlib import Path

_PYPROJECT = Path(__file__).resolve().parents[2] / "pyproject.toml"


def _checkout_version(pyproject: Path) -> str | None:
    if not pyproject.is_file():
        return None
    try:
        data = tomllib.loads(pyproject.read_text())
    except tomllib.TOMLDecodeError:
        return None
    project = data.get("project", {})
    if project.get("name") != "tablerpc":
        return None
    return project.get("version")


@lru_cache(maxsize=1)
def get_version() -> str:
    """Version from a source checkout's pyproject.toml, else the installed metadata."""
    if found := _checkout_version(_PYPROJECT):
        return found
    try:
        return _metadata_version("tablerpc")
    except PackageNotFoundError:
        return "0.0.0"
