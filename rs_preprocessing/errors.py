"""
Exception types raised by the preprocessing pipelines.
"""

from typing import Optional


class PreprocessingError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(PreprocessingError, ValueError):
    """Invalid configuration or input that should not be retried."""


class InvalidRangeError(ConfigurationError):
    """Invalid date range, step or unit for interval generation."""


class BandMismatchError(ConfigurationError):
    """Images in one output collection expose different band layouts."""


class EmptyResultError(PreprocessingError):
    """An interval or region produced no contributing scenes or pixels."""


class ExternalServiceError(PreprocessingError):
    """
    The execution or export engine reported a failure.

    Parameters:
    -----------
    message : str
        Description of the failure
    unit : Optional[str]
        Interval label, image name or file that failed, so the caller
        can retry that unit alone
    """

    def __init__(self, message: str, unit: Optional[str] = None):
        self.unit = unit
        if unit:
            message = f"{message} (unit: {unit})"
        super().__init__(message)
