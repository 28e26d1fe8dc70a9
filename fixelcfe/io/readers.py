"""File readers for design, contrast and subject list inputs."""

import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from fixelcfe.utils.exceptions import FixelDataError

_SEPARATORS = re.compile(r"[,\s]+")

TABLE_EXTENSIONS = (".tsv", ".csv")


def load_numeric_matrix(path: Union[str, Path]) -> np.ndarray:
    """Load a plain numeric matrix file.

    Rows are lines; values are separated by whitespace and/or commas. Blank
    lines and ``#`` comments are ignored. Files with a ``.tsv`` or ``.csv``
    extension are instead read as tables with a header row (see
    :func:`load_design_table`).

    Returns:
        2D float array (a single row for one-line files).

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If rows have differing lengths or values are not numeric.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Matrix file not found: {path}")
    if path.suffix.lower() in TABLE_EXTENSIONS:
        return load_design_table(path)[0]

    rows = []
    with path.open("r") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            try:
                rows.append([float(token) for token in _SEPARATORS.split(line) if token])
            except ValueError as e:
                raise ValueError(f"Non-numeric value in {path.name} at line {line_number}: {e}") from e

    if not rows:
        raise ValueError(f"Matrix file {path} contains no data")
    lengths = {len(row) for row in rows}
    if len(lengths) != 1:
        raise ValueError(
            f"Rows of matrix file {path.name} have inconsistent lengths: {sorted(lengths)}"
        )
    return np.array(rows, dtype=np.float64)


def load_design_table(path: Union[str, Path]) -> Tuple[np.ndarray, List[str]]:
    """Load a design matrix stored as a TSV/CSV table with named columns.

    Returns:
        Tuple of (matrix, column_names).
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Design table not found: {path}")
    sep = "\t" if path.suffix.lower() == ".tsv" else ","
    df = pd.read_csv(path, sep=sep)
    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(
            f"Design table {path.name} contains non-numeric columns: {non_numeric}"
        )
    return df.values.astype(np.float64), [str(c) for c in df.columns]


def load_vector(path: Union[str, Path]) -> np.ndarray:
    """Load a numeric vector (one value per line, or a single row)."""
    matrix = load_numeric_matrix(path)
    if matrix.shape[0] != 1 and matrix.shape[1] != 1:
        raise ValueError(f"File {path} does not contain a vector (shape {matrix.shape})")
    return matrix.reshape(-1)


def load_subject_list(path: Union[str, Path]) -> List[str]:
    """Read a text file listing one subject file name per line."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Subject list not found: {path}")
    with path.open("r") as f:
        subjects = [line.strip() for line in f if line.strip()]
    if not subjects:
        raise ValueError(f"Subject list {path} is empty")
    return subjects


def find_subject_file(name: str, search_dirs: Sequence[Optional[Union[str, Path]]]) -> Path:
    """Locate a subject file by absolute path, or relative to search directories.

    Directories are searched in order; the current working directory is
    always tried last.

    Raises:
        FixelDataError: If the file cannot be found.
    """
    candidate = Path(name)
    if candidate.is_absolute():
        if candidate.is_file():
            return candidate
        raise FixelDataError(f"Unable to find subject image \"{name}\"")

    for directory in search_dirs:
        if directory is None:
            continue
        joined = Path(directory) / candidate
        if joined.is_file():
            return joined
    if candidate.is_file():
        return candidate

    searched = ", ".join(f"\"{d}\"" for d in search_dirs if d is not None)
    raise FixelDataError(
        f"Unable to find subject image \"{name}\" in {searched or 'any directory'} "
        f"or in the current working directory"
    )
