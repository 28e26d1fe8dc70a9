"""Custom exceptions for fixelcfe."""

from typing import Optional


class FixelCFEError(Exception):
    """Base exception for fixelcfe."""
    pass


class ConfigurationError(FixelCFEError):
    """Error in configuration."""
    pass


class FixelDataError(FixelCFEError):
    """Error related to a fixel directory or fixel data file."""
    pass


class MatrixFormatError(FixelDataError):
    """Malformed fixel-fixel connectivity matrix data.

    Attributes:
        reason: Short description of what is wrong with the entry.
        line_number: 1-based line number in the matrix file (if known).
        line: Full text of the offending line.
        token: The offending ``target:value`` token.
    """

    def __init__(
        self,
        reason: str,
        line: str,
        token: str,
        line_number: Optional[int] = None,
    ):
        self.reason = reason
        self.line = line
        self.token = token
        self.line_number = line_number
        where = f" at line {line_number}" if line_number is not None else ""
        super().__init__(
            f"Malformed sparse matrix data ({reason}){where}\n"
            f"  Line: \"{line}\"\n"
            f"  Entry: \"{token}\""
        )


class ConnectivityError(FixelCFEError):
    """Error while building the fixel-fixel connectivity matrix."""
    pass


class StatisticalError(FixelCFEError):
    """Error during statistical analysis."""
    pass
