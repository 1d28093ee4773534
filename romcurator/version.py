"""Version utilities for ROM Curator."""

from __future__ import annotations

from importlib import metadata

__version__ = "0.4.0"


def load_version() -> str:
    try:
        return metadata.version("romcurator")
    except metadata.PackageNotFoundError:
        return __version__
