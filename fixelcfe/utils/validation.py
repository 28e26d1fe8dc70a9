"""Checks on command inputs and numeric array shapes."""

from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from fixelcfe.utils.exceptions import StatisticalError


def _check_path(path: Union[str, Path], name: str, is_dir: bool) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{name} not found: {path}")
    if is_dir and not path.is_dir():
        raise ValueError(f"{name} is not a directory: {path}")
    if not is_dir and not path.is_file():
        raise ValueError(f"{name} is not a file: {path}")
    return path


def validate_file_exists(path: Union[str, Path], name: str = "file") -> Path:
    """Check that ``path`` is an existing file.

    Raises:
        FileNotFoundError: If nothing exists at ``path``.
        ValueError: If ``path`` exists but is not a file.
    """
    return _check_path(path, name, is_dir=False)


def validate_dir_exists(path: Union[str, Path], name: str = "directory") -> Path:
    """Check that ``path`` is an existing directory (e.g. a fixel directory)."""
    return _check_path(path, name, is_dir=True)


def validate_matrix_shape(
    matrix: np.ndarray,
    name: str,
    rows: Optional[int] = None,
    cols: Optional[int] = None,
) -> Tuple[int, int]:
    """Check that a GLM input is a 2D matrix of the expected size.

    Args:
        matrix: Design, data or shuffling matrix.
        name: Name used in the error message (e.g. "design matrix").
        rows: Required number of rows (usually the number of subjects).
        cols: Required number of columns.

    Returns:
        The (rows, cols) shape.

    Raises:
        StatisticalError: If the matrix is not 2D or a dimension differs.
    """
    shape = np.shape(matrix)
    if len(shape) != 2:
        raise StatisticalError(f"{name} must be 2D, got array with shape {shape}")
    for axis, expected, label in ((0, rows, "rows"), (1, cols, "columns")):
        if expected is not None and shape[axis] != expected:
            raise StatisticalError(
                f"Number of {label} in {name} ({shape[axis]}) does not match "
                f"expected number ({expected})"
            )
    return shape
