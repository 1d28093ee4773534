"""ROM Curator - DAT catalog reconciliation and container conversion."""

from .version import __version__

__all__ = ["__version__"]
