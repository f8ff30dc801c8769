"""
Exceptions raised by the csdr package.

Steady-state activation and learning never raise; these are reserved for
construction-time validation and for reading persisted layer state.
"""


class CSDRError(Exception):
    """Base class for csdr errors."""


class ConfigurationError(CSDRError, ValueError):
    """Invalid layer sizes, radii, capacities or hyperparameters."""


class StreamFormatError(CSDRError, IOError):
    """Persisted layer state is truncated or inconsistent."""
