"""Core package for hierarchical modeling of viral-load (Ct) trajectories."""

from importlib.metadata import PackageNotFoundError, version

try:  # pragma: no cover
    __version__ = version("viralct")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

__all__ = ["__version__"]
