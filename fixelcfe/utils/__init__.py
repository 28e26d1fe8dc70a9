"""Utility functions for fixelcfe."""

from fixelcfe.utils.exceptions import (
    FixelCFEError,
    ConfigurationError,
    FixelDataError,
    MatrixFormatError,
    ConnectivityError,
    StatisticalError,
)
from fixelcfe.utils.logging import setup_logging, timer, ProgressLogger
from fixelcfe.utils.validation import validate_file_exists, validate_dir_exists, validate_matrix_shape

__all__ = [
    # Exceptions
    "FixelCFEError",
    "ConfigurationError",
    "FixelDataError",
    "MatrixFormatError",
    "ConnectivityError",
    "StatisticalError",
    # Logging
    "setup_logging",
    "timer",
    "ProgressLogger",
    # Validation
    "validate_file_exists",
    "validate_dir_exists",
    "validate_matrix_shape",
]
