"""General linear model for fixel-wise statistics.

Measurements are stored as an (elements x subjects) matrix ``Y`` and the
design as a (subjects x factors) matrix ``M``. Two test strategies share the
same calling convention, taking a (subjects x subjects) shuffling matrix and
returning an (elements x hypotheses) matrix of statistics:

- :class:`TestFixed` when the design is identical for every element;
- :class:`TestVariable` when element-wise design columns are present, or when
  non-finite values require subjects to be excluded element by element.

Both implement the Freedman-Lane procedure: the data are residualised against
the nuisance columns of each hypothesis, shuffled, and regressed against the
full model.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence, Union

import numpy as np

from fixelcfe.fixel.index_remapper import IndexRemapper
from fixelcfe.io.fixel import check_data_file, load_fixel_data
from fixelcfe.io.readers import find_subject_file, load_subject_list
from fixelcfe.statistics.hypothesis import Hypothesis, Partition
from fixelcfe.utils.exceptions import StatisticalError
from fixelcfe.utils.logging import ProgressLogger
from fixelcfe.utils.validation import validate_matrix_shape

logger = logging.getLogger(__name__)


class GLMStats(NamedTuple):
    """Basic properties of the unshuffled model fit.

    Attributes:
        betas: (elements, factors) regression coefficients.
        abs_effect_size: (elements, hypotheses); NaN for F-tests.
        std_effect_size: (elements, hypotheses); NaN for F-tests.
        stdev: (elements,) residual standard deviation.
        cond: (elements,) condition number of each element's design matrix,
            or None when the design is fixed.
    """
    betas: np.ndarray
    abs_effect_size: np.ndarray
    std_effect_size: np.ndarray
    stdev: np.ndarray
    cond: Optional[np.ndarray]


def _rank(matrix: np.ndarray) -> int:
    return int(np.linalg.matrix_rank(matrix)) if matrix.size else 0


def solve_betas(Y: np.ndarray, M: np.ndarray) -> np.ndarray:
    """Least-squares coefficients, (factors, elements) = pinv(M) @ Y.T."""
    return np.linalg.pinv(M) @ np.atleast_2d(Y).T


def stdev(Y: np.ndarray, M: np.ndarray) -> np.ndarray:
    """Residual standard deviation per element, with dof = subjects - rank(M)."""
    Y = np.atleast_2d(Y)
    residuals = Y.T - M @ solve_betas(Y, M)
    dof = M.shape[0] - _rank(M)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.sqrt((residuals ** 2).sum(axis=0) / dof)


def abs_effect_size(Y: np.ndarray, M: np.ndarray, hypothesis: Hypothesis) -> np.ndarray:
    """Contrast of betas per element; NaN for F-tests."""
    Y = np.atleast_2d(Y)
    if hypothesis.is_f:
        return np.full(Y.shape[0], np.nan)
    return (hypothesis.matrix @ solve_betas(Y, M))[0]


def std_effect_size(Y: np.ndarray, M: np.ndarray, hypothesis: Hypothesis) -> np.ndarray:
    """Absolute effect size divided by residual standard deviation; NaN for F-tests."""
    Y = np.atleast_2d(Y)
    if hypothesis.is_f:
        return np.full(Y.shape[0], np.nan)
    with np.errstate(divide="ignore", invalid="ignore"):
        return abs_effect_size(Y, M, hypothesis) / stdev(Y, M)


def _fixed_stats(Y: np.ndarray, M: np.ndarray, hypotheses: Sequence[Hypothesis]):
    betas = solve_betas(Y, M)
    abs_effect = np.full((Y.shape[0], len(hypotheses)), np.nan)
    for ih, hypothesis in enumerate(hypotheses):
        if not hypothesis.is_f:
            abs_effect[:, ih] = (hypothesis.matrix @ betas)[0]
    residuals = Y.T - M @ betas
    dof = M.shape[0] - _rank(M)
    with np.errstate(divide="ignore", invalid="ignore"):
        sd = np.sqrt((residuals ** 2).sum(axis=0) / dof)
        std_effect = abs_effect / sd[:, None]
    return betas.T, abs_effect, std_effect, sd


def all_stats(
    Y: np.ndarray,
    M: np.ndarray,
    hypotheses: Sequence[Hypothesis],
    extra_columns: Sequence["CohortDataImport"] = (),
) -> GLMStats:
    """Betas, effect sizes and standard deviation of the unshuffled model.

    With element-wise ``extra_columns``, or non-finite values in ``Y``, each
    element is fitted with its own design matrix from which subjects with
    non-finite values are excluded.

    Args:
        Y: Measurements, (elements, subjects).
        M: Fixed design matrix, (subjects, factors).
        hypotheses: Hypotheses to compute effect sizes for.
        extra_columns: Element-wise design matrix columns.

    Returns:
        :class:`GLMStats` with one row per element.
    """
    Y = np.atleast_2d(np.asarray(Y, dtype=np.float64))
    M = np.asarray(M, dtype=np.float64)
    validate_matrix_shape(M, "design matrix", rows=Y.shape[1])

    if not extra_columns and np.isfinite(Y).all():
        betas, abs_effect, std_effect, sd = _fixed_stats(Y, M, hypotheses)
        return GLMStats(betas, abs_effect, std_effect, sd, None)

    num_elements = Y.shape[0]
    num_factors = M.shape[1] + len(extra_columns)
    betas = np.full((num_elements, num_factors), np.nan)
    abs_effect = np.full((num_elements, len(hypotheses)), np.nan)
    std_effect = np.full((num_elements, len(hypotheses)), np.nan)
    sd = np.full(num_elements, np.nan)
    cond = np.full(num_elements, np.nan)

    progress = ProgressLogger(logger, "Elements fitted", total=num_elements, every=50000)
    for element in range(num_elements):
        design = element_design(M, extra_columns, element)
        mask = np.isfinite(Y[element]) & np.isfinite(design).all(axis=1)
        if mask.sum() > 0:
            design = design[mask]
            y = Y[element:element + 1, mask]
            b, a, s, d = _fixed_stats(y, design, hypotheses)
            betas[element] = b[0]
            abs_effect[element] = a[0]
            std_effect[element] = s[0]
            sd[element] = d[0]
            cond[element] = np.linalg.cond(design)
        progress.increment()
    progress.done()

    return GLMStats(betas, abs_effect, std_effect, sd, cond)


def element_design(M: np.ndarray, extra_columns: Sequence["CohortDataImport"],
                   element: int) -> np.ndarray:
    """Full design matrix of one element: fixed columns then element-wise ones."""
    if not extra_columns:
        return M
    extra = np.column_stack([column(element) for column in extra_columns])
    return np.hstack([M, extra])


class CohortDataImport:
    """Element-wise design matrix column: one value per subject and element.

    Args:
        data: (subjects, elements) matrix, internal element indexing.
        name: Description used in log messages.
    """

    def __init__(self, data: np.ndarray, name: str = "column"):
        self.data = np.asarray(data, dtype=np.float64)
        if self.data.ndim != 2:
            raise StatisticalError(
                f"Element-wise column data must be 2D (subjects x elements), got {self.data.shape}"
            )
        self.name = name

    def __call__(self, element: int) -> np.ndarray:
        return self.data[:, element]

    def __len__(self) -> int:
        return self.data.shape[0]

    @property
    def num_elements(self) -> int:
        return self.data.shape[1]

    def all_finite(self) -> bool:
        return bool(np.isfinite(self.data).all())

    @classmethod
    def from_files(
        cls,
        list_path: Union[str, Path],
        fixel_dir: Union[str, Path],
        index_remapper: IndexRemapper,
    ) -> "CohortDataImport":
        """Load one fixel data file per subject, as listed in ``list_path``.

        File names may be absolute, relative to the fixel directory, or
        relative to the current working directory.
        """
        list_path = Path(list_path)
        num_fixels = index_remapper.num_external()
        # Every file is checked before any data is read
        paths = [check_data_file(find_subject_file(name, [fixel_dir]), num_fixels)
                 for name in load_subject_list(list_path)]
        data = np.empty((len(paths), index_remapper.num_internal()), dtype=np.float64)
        for subject, path in enumerate(paths):
            values = load_fixel_data(path, num_fixels)
            data[subject] = index_remapper.to_internal(values)
        logger.debug(f"Loaded {len(paths)} fixel data files listed in {list_path.name}")
        return cls(data, name=list_path.name)


def _freedman_lane(
    Sy: np.ndarray,
    pinvM: np.ndarray,
    Rm: np.ndarray,
    hypothesis: Hypothesis,
    partition: Partition,
) -> np.ndarray:
    """Statistic of one hypothesis for shuffled, nuisance-residualised data.

    Args:
        Sy: Shuffled residualised data, (elements, subjects).
        pinvM: Pseudo-inverse of the full design, (factors, subjects).
        Rm: Residual-forming matrix of the full design.
        hypothesis: Hypothesis being tested.
        partition: Partition of the design for this hypothesis.

    Returns:
        F for F-tests, sign(c beta) * sqrt(F) for t-tests; 0 where not finite.
    """
    num_subjects = Sy.shape[1]
    dof = num_subjects - partition.rank_x - partition.rank_z
    c = hypothesis.matrix
    beta = Sy @ pinvM.T
    cbeta = beta @ c.T
    inv_cov = np.linalg.pinv(c @ (pinvM @ pinvM.T) @ c.T)
    residual_ss = ((Sy @ Rm.T) ** 2).sum(axis=1)

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        numerator = np.einsum("er,rs,es->e", cbeta, inv_cov, cbeta) / hypothesis.rank
        F = numerator / (residual_ss / dof) if dof > 0 else np.full(Sy.shape[0], np.nan)
        if hypothesis.is_f:
            stat = F
        else:
            stat = np.sqrt(F) * np.where(cbeta[:, 0] > 0.0, 1.0, -1.0)
    return np.where(np.isfinite(stat), stat, 0.0)


class TestBase(ABC):
    """Common interface of the GLM test strategies.

    Args:
        Y: Measurements, (elements, subjects).
        M: Fixed design matrix, (subjects, factors).
        hypotheses: Hypotheses to test.
    """

    def __init__(self, Y: np.ndarray, M: np.ndarray, hypotheses: Sequence[Hypothesis]):
        self.y = np.atleast_2d(np.asarray(Y, dtype=np.float64))
        self.M = np.asarray(M, dtype=np.float64)
        self.hypotheses = list(hypotheses)
        validate_matrix_shape(self.M, "design matrix", rows=self.y.shape[1])
        if not self.hypotheses:
            raise StatisticalError("At least one hypothesis is required")

    @property
    def num_elements(self) -> int:
        return self.y.shape[0]

    @property
    def num_subjects(self) -> int:
        return self.M.shape[0]

    @property
    def num_factors(self) -> int:
        return self.M.shape[1]

    @property
    def num_hypotheses(self) -> int:
        return len(self.hypotheses)

    def _check_shuffle(self, shuffling_matrix: np.ndarray) -> np.ndarray:
        shuffling_matrix = np.asarray(shuffling_matrix, dtype=np.float64)
        validate_matrix_shape(shuffling_matrix, "shuffling matrix",
                              rows=self.num_subjects, cols=self.num_subjects)
        return shuffling_matrix

    @abstractmethod
    def __call__(self, shuffling_matrix: np.ndarray) -> np.ndarray:
        """Statistics of every element and hypothesis, (elements, hypotheses), for one shuffle."""


class TestFixed(TestBase):
    """GLM test with a design matrix shared by all elements.

    Partitions and pseudo-inverses are computed once at construction.
    """

    def __init__(self, Y: np.ndarray, M: np.ndarray, hypotheses: Sequence[Hypothesis]):
        super().__init__(Y, M, hypotheses)
        for hypothesis in self.hypotheses:
            if hypothesis.cols != self.num_factors:
                raise StatisticalError(
                    f"Hypothesis {hypothesis.name} has {hypothesis.cols} columns but the "
                    f"design matrix has {self.num_factors}"
                )
        self.pinvM = np.linalg.pinv(self.M)
        self.Rm = np.eye(self.num_subjects) - self.M @ self.pinvM
        self.partitions = [h.partition(self.M) for h in self.hypotheses]

    def __call__(self, shuffling_matrix: np.ndarray) -> np.ndarray:
        shuffling_matrix = self._check_shuffle(shuffling_matrix)
        output = np.empty((self.num_elements, self.num_hypotheses))
        for ih, (hypothesis, partition) in enumerate(zip(self.hypotheses, self.partitions)):
            PRz = shuffling_matrix @ partition.Rz
            Sy = self.y @ PRz.T
            output[:, ih] = _freedman_lane(Sy, self.pinvM, self.Rm, hypothesis, partition)
        return output


class TestVariable(TestBase):
    """GLM test with a per-element design matrix.

    For every element, element-wise columns are appended to the fixed design
    and subjects with non-finite data or column values are excluded. Rows of
    the shuffling matrix that draw from an excluded subject are dropped, as
    are the excluded subjects' columns, so that the shuffle remains square
    over the included subjects. All working arrays are local to the element.

    Args:
        importers: Element-wise design matrix columns.
        Y: Measurements, (elements, subjects).
        M: Fixed design matrix, (subjects, factors).
        hypotheses: Hypotheses, with one column per fixed and element-wise factor.
        nans_in_data: Whether ``Y`` contains non-finite values.
        nans_in_columns: Whether any importer contains non-finite values.
    """

    def __init__(self, importers: Sequence[CohortDataImport], Y: np.ndarray, M: np.ndarray,
                 hypotheses: Sequence[Hypothesis], nans_in_data: bool = False,
                 nans_in_columns: bool = False):
        super().__init__(Y, M, hypotheses)
        self.importers = list(importers)
        self.nans_in_data = nans_in_data
        self.nans_in_columns = nans_in_columns
        for importer in self.importers:
            if len(importer) != self.num_subjects:
                raise StatisticalError(
                    f"Element-wise column {importer.name} has {len(importer)} subjects, "
                    f"expected {self.num_subjects}"
                )
            if importer.num_elements != self.num_elements:
                raise StatisticalError(
                    f"Element-wise column {importer.name} has {importer.num_elements} "
                    f"elements, expected {self.num_elements}"
                )
        for hypothesis in self.hypotheses:
            if hypothesis.cols != self.num_factors:
                raise StatisticalError(
                    f"Hypothesis {hypothesis.name} has {hypothesis.cols} columns but the "
                    f"full design matrix has {self.num_factors}"
                )

    @property
    def num_factors(self) -> int:
        return self.M.shape[1] + len(self.importers)

    def default_design(self, element: int) -> np.ndarray:
        return element_design(self.M, self.importers, element)

    def __call__(self, shuffling_matrix: np.ndarray) -> np.ndarray:
        shuffling_matrix = self._check_shuffle(shuffling_matrix)
        output = np.zeros((self.num_elements, self.num_hypotheses))
        for element in range(self.num_elements):
            output[element] = self._test_element(element, shuffling_matrix)
        return output

    def _test_element(self, element: int, shuffling_matrix: np.ndarray) -> np.ndarray:
        design = self.default_design(element)
        y = self.y[element]

        mask = np.ones(self.num_subjects, dtype=bool)
        if self.nans_in_data:
            mask &= np.isfinite(y)
        if self.nans_in_columns:
            mask &= np.isfinite(design).all(axis=1)

        if mask.all():
            shuffle = shuffling_matrix
        else:
            # Drop any shuffle row drawing from an excluded subject
            keep_rows = ~np.any(shuffling_matrix[:, ~mask] != 0.0, axis=1)
            shuffle = shuffling_matrix[keep_rows][:, mask]
            if shuffle.shape[0] != shuffle.shape[1]:
                raise StatisticalError(
                    f"Shuffling matrix cannot be reduced to the {int(mask.sum())} "
                    f"subjects with finite data at element {element}"
                )
            design = design[mask]
            y = y[mask]

        stats = np.zeros(self.num_hypotheses)
        if not mask.any():
            return stats

        pinvM = np.linalg.pinv(design)
        Rm = np.eye(design.shape[0]) - design @ pinvM
        for ih, hypothesis in enumerate(self.hypotheses):
            partition = hypothesis.partition(design)
            Sy = (shuffle @ partition.Rz @ y)[None, :]
            stats[ih] = _freedman_lane(Sy, pinvM, Rm, hypothesis, partition)[0]
        return stats
