"""
companion-core distribution import namespace.

Re-exports the core `turn_pipeline` package so callers can depend on the
distribution name.
"""

from importlib.metadata import PackageNotFoundError, version

from turn_pipeline import *  # noqa: F401,F403

try:
    __version__ = version("companion-core")
except PackageNotFoundError:  # pragma: no cover - source checkout without install
    __version__ = "0+unknown"

__all__ = ["__version__"]
