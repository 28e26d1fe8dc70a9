"""Validation of configuration parameters.

Every config dataclass validates itself through a :class:`ConfigValidator`,
which collects all problems before raising so that a user sees every
invalid parameter of a run at once.
"""

from pathlib import Path
from typing import Any, List, Sequence, Union

from fixelcfe.utils.exceptions import ConfigurationError


class ConfigValidator:
    """Accumulate configuration errors and raise them together.

    Each ``validate_*`` method returns whether the value passed, and records
    a message in :attr:`errors` otherwise.

    Example:
        >>> validator = ConfigValidator()
        >>> validator.validate_range(cfe_dh, 0.001, 1.0, "cfe_dh")
        >>> validator.validate_n_jobs(n_jobs)
        >>> validator.raise_if_errors()
    """

    def __init__(self):
        self.errors: List[str] = []

    def _fail(self, message: str) -> bool:
        self.errors.append(message)
        return False

    def _is_number(self, value: Any, name: str) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return self._fail(f"{name} must be a number, got {type(value).__name__}")
        return True

    def validate_range(self, value: float, low: float, high: float, name: str) -> bool:
        """Value must lie within [low, high]."""
        if not self._is_number(value, name):
            return False
        if not low <= value <= high:
            return self._fail(f"{name} must be between {low} and {high}, got {value}")
        return True

    def validate_fraction(self, value: float, name: str) -> bool:
        """Value must lie within [0, 1], e.g. a connectivity threshold."""
        return self.validate_range(value, 0, 1, name)

    def validate_positive(self, value: float, name: str) -> bool:
        if not self._is_number(value, name):
            return False
        if value <= 0:
            return self._fail(f"{name} must be positive, got {value}")
        return True

    def validate_n_jobs(self, value: int, name: str = "n_jobs") -> bool:
        """Worker count for joblib: positive, or negative for all-but-N cores."""
        if isinstance(value, bool) or not isinstance(value, int) or value == 0:
            return self._fail(f"{name} must be a non-zero integer, got {value!r}")
        return True

    def validate_file_exists(self, path: Union[str, Path], name: str) -> bool:
        path = Path(path)
        if not path.exists():
            return self._fail(f"{name} file not found: {path}")
        if not path.is_file():
            return self._fail(f"{name} is not a file: {path}")
        return True

    def validate_choice(self, value: Any, choices: Sequence[Any], name: str) -> bool:
        if value not in choices:
            return self._fail(f"{name} must be one of {list(choices)}, got '{value}'")
        return True

    def raise_if_errors(self) -> None:
        """Raise a single ConfigurationError listing every recorded problem.

        Raises:
            ConfigurationError: If any validation failed.
        """
        if self.errors:
            details = "\n".join(f"  - {error}" for error in self.errors)
            raise ConfigurationError(f"Configuration validation failed:\n{details}")
