"""jetflow: unfolding of event-plane dependent jet spectra."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__ = version("jetflow")
except PackageNotFoundError:  # source checkout without installed metadata
    __version__ = "0.1.0"
