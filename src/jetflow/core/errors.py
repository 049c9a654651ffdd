"""Exception types raised by the jetflow toolchain."""

from __future__ import annotations


class JetFlowError(Exception):
    """Base class for jetflow errors."""


class ConfigurationError(JetFlowError):
    """Raised when required inputs, binnings or options are missing or invalid."""


class DimensionMismatchError(JetFlowError, ValueError):
    """Raised when operators with incompatible axis sizes are combined."""
