"""Hypotheses (t- and F-tests) and design matrix checks for the GLM."""

import logging
from pathlib import Path
from typing import List, NamedTuple, Optional, Union

import numpy as np

from fixelcfe.io.readers import load_numeric_matrix
from fixelcfe.utils.exceptions import StatisticalError
from fixelcfe.utils.logging import log_warning_box

logger = logging.getLogger(__name__)


class Partition(NamedTuple):
    """Design matrix split into effects of interest and nuisance.

    Attributes:
        X: Columns with a non-zero weight in the hypothesis.
        Z: Remaining (nuisance) columns.
        Rz: Residual-forming matrix of Z (identity when Z is empty).
        rank_x: Rank of X.
        rank_z: Rank of Z.
    """
    X: np.ndarray
    Z: np.ndarray
    Rz: np.ndarray
    rank_x: int
    rank_z: int


def _rank(matrix: np.ndarray) -> int:
    if matrix.size == 0:
        return 0
    return int(np.linalg.matrix_rank(matrix))


class Hypothesis:
    """A t-test (single contrast row) or F-test (set of contrast rows).

    Args:
        matrix: Contrast weights, (rows, factors); a single row for a t-test.
        index: Position of the hypothesis in the full list (0-based).
        is_f: Whether this is an F-test.

    Raises:
        StatisticalError: If a t-test has more than one row or the contrast is
            all zeros.
    """

    def __init__(self, matrix: np.ndarray, index: int, is_f: bool = False):
        self.matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float64))
        self.index = int(index)
        self.is_f = bool(is_f)
        if not self.is_f and self.matrix.shape[0] != 1:
            raise StatisticalError(
                f"A t-test must be defined by a single contrast row "
                f"(hypothesis {self.index + 1} has {self.matrix.shape[0]})"
            )
        if not np.any(self.matrix):
            raise StatisticalError(f"Contrast for hypothesis {self.index + 1} is all zeros")
        self.rank = _rank(self.matrix)

    @property
    def name(self) -> str:
        return f"{'F' if self.is_f else 't'}{self.index + 1}"

    @property
    def cols(self) -> int:
        return self.matrix.shape[1]

    def interest_columns(self) -> np.ndarray:
        return np.any(self.matrix != 0.0, axis=0)

    def partition(self, design: np.ndarray) -> Partition:
        """Split ``design`` columns by whether they carry contrast weight."""
        design = np.asarray(design, dtype=np.float64)
        if design.shape[1] != self.cols:
            raise StatisticalError(
                f"Hypothesis {self.name} has {self.cols} columns but the design "
                f"matrix has {design.shape[1]}"
            )
        interest = self.interest_columns()
        X = design[:, interest]
        Z = design[:, ~interest]
        if Z.shape[1]:
            Rz = np.eye(design.shape[0]) - Z @ np.linalg.pinv(Z)
        else:
            Rz = np.eye(design.shape[0])
        return Partition(X, Z, Rz, _rank(X), _rank(Z))

    def __repr__(self) -> str:
        return f"Hypothesis({self.name}, rows={self.matrix.shape[0]}, rank={self.rank})"


def hypotheses_from_matrix(
    contrast: np.ndarray,
    ftests: Optional[np.ndarray] = None,
    fonly: bool = False,
) -> List[Hypothesis]:
    """Build the list of hypotheses from contrast and F-test matrices.

    Each contrast row defines a t-test unless ``fonly`` is set. Each row of
    ``ftests`` (one 0/1 entry per contrast row) defines an F-test combining the
    selected contrast rows.

    Raises:
        StatisticalError: On inconsistent shapes or invalid F-test rows.
    """
    contrast = np.atleast_2d(np.asarray(contrast, dtype=np.float64))
    hypotheses = []

    if fonly and ftests is None:
        raise StatisticalError("F-tests must be provided when only F-tests are requested")

    if not fonly:
        for row in range(contrast.shape[0]):
            hypotheses.append(Hypothesis(contrast[row:row + 1], len(hypotheses), is_f=False))

    if ftests is not None:
        ftests = np.atleast_2d(np.asarray(ftests, dtype=np.float64))
        if ftests.shape[1] != contrast.shape[0]:
            raise StatisticalError(
                f"Number of columns in F-test matrix ({ftests.shape[1]}) does not match "
                f"number of rows in contrast matrix ({contrast.shape[0]})"
            )
        for row in ftests:
            if not np.all((row == 0.0) | (row == 1.0)):
                raise StatisticalError("F-test matrix must contain only zeros and ones")
            if not row.any():
                raise StatisticalError("Each row of the F-test matrix must select at least one contrast row")
            hypotheses.append(Hypothesis(contrast[row == 1.0], len(hypotheses), is_f=True))

    if not hypotheses:
        raise StatisticalError("No hypotheses to test")
    return hypotheses


def load_hypotheses(
    contrast_path: Union[str, Path],
    ftests_path: Optional[Union[str, Path]] = None,
    fonly: bool = False,
) -> List[Hypothesis]:
    """Load hypotheses from a contrast matrix file and optional F-test file."""
    contrast = load_numeric_matrix(contrast_path)
    ftests = load_numeric_matrix(ftests_path) if ftests_path is not None else None
    hypotheses = hypotheses_from_matrix(contrast, ftests, fonly)
    logger.debug(f"Loaded hypotheses: {[h.name for h in hypotheses]}")
    return hypotheses


def check_design(design: np.ndarray, num_extra_columns: int = 0,
                 hypotheses: Optional[List[Hypothesis]] = None) -> float:
    """Check a design matrix before any computation.

    Args:
        design: Fixed design matrix (subjects x factors).
        num_extra_columns: Number of element-wise columns appended per element.
        hypotheses: If given, contrast widths are checked against the full
            number of factors.

    Returns:
        Condition number of the fixed design matrix.

    Raises:
        StatisticalError: On shape mismatches.
    """
    design = np.asarray(design, dtype=np.float64)
    if design.ndim != 2 or design.size == 0:
        raise StatisticalError(f"Design matrix must be a non-empty 2D matrix, got shape {design.shape}")
    if not np.isfinite(design).all():
        raise StatisticalError("Design matrix contains non-finite values")

    num_factors = design.shape[1] + num_extra_columns
    if hypotheses:
        for hypothesis in hypotheses:
            if hypothesis.cols != num_factors:
                extra = (f" (in addition to the {num_extra_columns} element-wise columns)"
                         if num_extra_columns else "")
                raise StatisticalError(
                    f"The number of columns in the contrast matrix ({hypothesis.cols}) "
                    f"does not equal the number of columns in the design matrix "
                    f"({design.shape[1]}){extra}"
                )

    if design.shape[0] <= num_factors:
        raise StatisticalError(
            f"Number of subjects ({design.shape[0]}) must exceed number of "
            f"factors ({num_factors})"
        )

    cond = float(np.linalg.cond(design))
    logger.info(f"Design matrix condition number: {cond:.4g}")
    if _rank(design) < design.shape[1]:
        log_warning_box(
            logger,
            f"Design matrix is rank deficient (rank {_rank(design)} with "
            f"{design.shape[1]} columns); results for non-estimable contrasts "
            f"are meaningless",
        )
    return cond
