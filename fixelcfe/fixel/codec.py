"""Text encoding of fixel-fixel connectivity matrices.

A matrix file holds one line per fixel, in template (external) index order.
Each line is a comma-separated list of ``target:value`` pairs, where ``value``
is an integer streamline count for initial matrices and a floating-point
connectivity for normalised matrices. An empty line denotes a fixel without
connections.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np

from fixelcfe.fixel.index_remapper import IndexRemapper
from fixelcfe.fixel.matrix import (
    InitFixel,
    NormFixel,
    index_dtype,
    value_dtype,
)
from fixelcfe.utils.exceptions import FixelDataError, MatrixFormatError
from fixelcfe.utils.logging import ProgressLogger, timer

logger = logging.getLogger(__name__)

MATRIX_KINDS = ("init", "norm")


def _check_kind(kind: str) -> None:
    if kind not in MATRIX_KINDS:
        raise ValueError(f"Unknown matrix kind '{kind}', expected one of {MATRIX_KINDS}")


def format_line(fixel: Union[InitFixel, NormFixel]) -> str:
    """Encode the adjacency list of one fixel as a single line (no newline)."""
    if isinstance(fixel, NormFixel):
        return ",".join(
            f"{int(index)}:{str(value)}"
            for index, value in zip(fixel.indices, fixel.values)
        )
    return ",".join(
        f"{int(index)}:{int(count)}"
        for index, count in zip(fixel.indices, fixel.counts)
    )


def save_matrix(matrix: List[Union[InitFixel, NormFixel]], path: Union[str, Path]) -> Path:
    """Write a connectivity matrix to a text file, one line per fixel.

    Normalised values are written with the shortest representation that
    reads back to the identical single-precision value.

    Args:
        matrix: Initial or normalised connectivity matrix.
        path: Output file path; parent directories are created.

    Returns:
        Path of the written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    progress = ProgressLogger(logger, "Fixels written", total=len(matrix), every=100000)
    with timer(logger, f"Saving fixel-fixel connectivity matrix to {path.name}"):
        with open(path, "w", encoding="utf-8") as handle:
            for fixel in matrix:
                handle.write(format_line(fixel))
                handle.write("\n")
                progress.increment()
        progress.done()

    return path


def parse_line(
    line: str,
    kind: str,
    index_remapper: Optional[IndexRemapper] = None,
    line_number: Optional[int] = None,
) -> Union[InitFixel, NormFixel]:
    """Decode one line of a connectivity matrix file.

    Args:
        line: Line text without the trailing newline.
        kind: ``"init"`` for streamline counts, ``"norm"`` for connectivity values.
        index_remapper: When given (and not the default remapper), target
            indices are translated to internal indices and targets outside
            the mask are dropped.
        line_number: 1-based line number, reported in errors.

    Returns:
        The decoded :class:`InitFixel` or :class:`NormFixel`.

    Raises:
        MatrixFormatError: If an entry is not a ``target:value`` pair, a token
            cannot be converted, a target index is out of range or repeated,
            or a value is out of range (negative count, or connectivity not
            a finite number in [0, 1]).
    """
    _check_kind(kind)
    remap = index_remapper is not None and not index_remapper.is_default()
    num_external = index_remapper.num_external() if index_remapper is not None else None

    indices = []
    values = []
    seen = set()
    if line.strip():
        for entry in line.split(","):
            pair = entry.split(":")
            if len(pair) != 2:
                raise MatrixFormatError("unpaired", line, entry, line_number)
            try:
                target = int(pair[0])
                if kind == "init":
                    value = int(pair[1])
                else:
                    value = float(pair[1])
            except ValueError as e:
                raise MatrixFormatError("conversion", line, entry, line_number) from e
            if target < 0 or (num_external is not None and target >= num_external):
                raise MatrixFormatError("index out of range", line, entry, line_number)
            if target in seen:
                raise MatrixFormatError("duplicate index", line, entry, line_number)
            seen.add(target)
            if kind == "init":
                in_range = value >= 0
            else:
                in_range = np.isfinite(value) and 0.0 <= value <= 1.0
            if not in_range:
                raise MatrixFormatError("value out of range", line, entry, line_number)
            if remap:
                target = index_remapper.e2i(target)
                if target == IndexRemapper.invalid:
                    continue
            indices.append(target)
            values.append(value)

    if kind == "init":
        return InitFixel.from_elements(list(zip(indices, values)))
    return NormFixel(np.array(indices, dtype=index_dtype),
                     np.array(values, dtype=value_dtype))


def load_matrix(
    path: Union[str, Path],
    kind: str = "norm",
    index_remapper: Optional[IndexRemapper] = None,
) -> List[Union[InitFixel, NormFixel]]:
    """Load a connectivity matrix from a text file.

    With a non-default ``index_remapper``, lines of fixels outside the mask are
    skipped without being parsed, so the returned matrix has one entry per
    internal fixel.

    Args:
        path: Matrix file.
        kind: ``"init"`` or ``"norm"``.
        index_remapper: Optional remapper; when given, the file must contain
            exactly one line per template fixel.

    Returns:
        List of fixels indexed by internal fixel index.

    Raises:
        FileNotFoundError: If the file does not exist.
        FixelDataError: If the number of lines does not match the template.
        MatrixFormatError: On malformed content.
    """
    _check_kind(kind)
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Connectivity matrix file not found: {path}")

    remap = index_remapper is not None and not index_remapper.is_default()
    matrix = []
    num_lines = 0
    progress = ProgressLogger(
        logger, "Fixels loaded",
        total=index_remapper.num_external() if index_remapper is not None else None,
        every=100000,
    )

    with timer(logger, f"Loading fixel-fixel connectivity matrix from {path.name}"):
        with open(path, "r", encoding="utf-8") as handle:
            for num_lines, line in enumerate(handle, start=1):
                line = line.rstrip("\r\n")
                if index_remapper is not None and num_lines > index_remapper.num_external():
                    raise FixelDataError(
                        f"Connectivity matrix {path} contains more lines than "
                        f"the number of fixels in the template "
                        f"({index_remapper.num_external()})"
                    )
                if remap and index_remapper.e2i(num_lines - 1) == IndexRemapper.invalid:
                    progress.increment()
                    continue
                matrix.append(parse_line(line, kind, index_remapper, num_lines))
                progress.increment()
        progress.done()

    if index_remapper is not None and num_lines != index_remapper.num_external():
        raise FixelDataError(
            f"Connectivity matrix {path} contains {num_lines} lines, but the "
            f"template contains {index_remapper.num_external()} fixels"
        )

    logger.debug(f"Loaded {len(matrix)} fixels ({kind}) from {path}")
    return matrix
