"""Permutation testing with statistical enhancement.

The test runs in three phases:

1. optional empirical phase, estimating per element a baseline enhanced
   statistic used to correct for non-stationarity;
2. default phase, computing the observed statistics from the unshuffled data;
3. permutation phase, building the null distribution of the maximum enhanced
   statistic and per-element exceedance counts.

Shuffles are evaluated in parallel with joblib threads. Each worker reduces
its own chunk of shuffles and partial results are combined with sums and by
shuffle index, so the outcome does not depend on evaluation order.
"""

import logging
import math
from typing import Callable, List, NamedTuple, Optional

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from fixelcfe.statistics.glm import TestBase
from fixelcfe.statistics.shuffle import Shuffler
from fixelcfe.utils.exceptions import StatisticalError
from fixelcfe.utils.logging import timer

logger = logging.getLogger(__name__)

Enhancer = Callable[[np.ndarray], np.ndarray]


class PermutationResult(NamedTuple):
    """Outcome of the permutation phase.

    Attributes:
        null_distribution: (shuffles, hypotheses) maximum enhanced statistic of
            each shuffle; a single column under strong FWE control.
        null_contributions: (elements, hypotheses) number of shuffles in which
            each element provided the maximum.
        uncorrected_pvalues: (elements, hypotheses).
        num_shuffles: Number of shuffles evaluated.
    """
    null_distribution: np.ndarray
    null_contributions: np.ndarray
    uncorrected_pvalues: np.ndarray
    num_shuffles: int


def _chunks(num_items: int, n_jobs: int) -> List[range]:
    workers = max(1, effective_n_jobs(n_jobs))
    size = max(1, math.ceil(num_items / (workers * 4)))
    return [range(start, min(start + size, num_items)) for start in range(0, num_items, size)]


def _apply_empirical(enhanced: np.ndarray, empirical: Optional[np.ndarray]) -> np.ndarray:
    if empirical is None:
        return enhanced
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(empirical > 0.0, enhanced / empirical, 0.0)


def precompute_empirical_stat(
    test: TestBase,
    enhancer: Enhancer,
    shuffler: Shuffler,
    skew: float = 1.0,
    n_jobs: int = 1,
) -> np.ndarray:
    """Estimate the empirical enhanced statistic for non-stationarity correction.

    For each element and hypothesis, this is the generalised mean with power
    ``skew`` of the positive enhanced statistics across shuffles, or 0 where
    no shuffle produced a positive value.

    Returns:
        (elements, hypotheses) empirical statistic.
    """
    if skew <= 0.0:
        raise StatisticalError(f"Non-stationarity skew must be positive, got {skew}")
    shape = (test.num_elements, test.num_hypotheses)

    def process(indices: range):
        sums = np.zeros(shape)
        counts = np.zeros(shape, dtype=np.int64)
        for index in indices:
            enhanced = enhancer(test(shuffler[index].data))
            positive = enhanced > 0.0
            sums[positive] += np.power(enhanced[positive], skew)
            counts += positive
        return sums, counts

    with timer(logger, f"Pre-computing empirical statistic for non-stationarity adjustment "
                       f"({len(shuffler)} shuffles)"):
        partials = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(process)(chunk) for chunk in _chunks(len(shuffler), n_jobs)
        )

    sums = np.zeros(shape)
    counts = np.zeros(shape, dtype=np.int64)
    for partial_sums, partial_counts in partials:
        sums += partial_sums
        counts += partial_counts

    empirical = np.zeros(shape)
    nonzero = counts > 0
    empirical[nonzero] = np.power(sums[nonzero] / counts[nonzero], 1.0 / skew)
    return empirical


def precompute_default_permutation(
    test: TestBase,
    enhancer: Enhancer,
    empirical: Optional[np.ndarray] = None,
):
    """Statistics of the unshuffled data.

    Returns:
        Tuple of (default_stats, enhanced), both (elements, hypotheses). With
        ``empirical``, the enhanced statistic is divided by it where positive
        and set to 0 elsewhere.
    """
    default_stats = test(np.eye(test.num_subjects))
    enhanced = _apply_empirical(enhancer(default_stats), empirical)
    return default_stats, enhanced


def run_permutations(
    test: TestBase,
    enhancer: Enhancer,
    shuffler: Shuffler,
    empirical: Optional[np.ndarray],
    observed_enhanced: np.ndarray,
    strong: bool = False,
    n_jobs: int = 1,
) -> PermutationResult:
    """Build the null distribution of the maximum enhanced statistic.

    Args:
        test: GLM test strategy.
        enhancer: Statistical enhancer (e.g. :class:`~fixelcfe.statistics.cfe.CFE`).
        shuffler: Shuffles to evaluate.
        empirical: Optional empirical statistic for non-stationarity correction.
        observed_enhanced: Enhanced statistic of the default permutation.
        strong: Strong FWE control: the null distribution holds the maximum
            across all hypotheses rather than one column per hypothesis.
        n_jobs: Number of worker threads.

    Returns:
        :class:`PermutationResult`.
    """
    observed_enhanced = np.asarray(observed_enhanced, dtype=np.float64)
    shape = (test.num_elements, test.num_hypotheses)
    if observed_enhanced.shape != shape:
        raise StatisticalError(
            f"Observed statistic shape {observed_enhanced.shape} does not match "
            f"(elements, hypotheses) = {shape}"
        )
    num_shuffles = len(shuffler)
    num_columns = 1 if strong else test.num_hypotheses

    def process(indices: range):
        null_rows = np.zeros((len(indices), num_columns))
        contributions = np.zeros(shape, dtype=np.int64)
        exceedances = np.zeros(shape, dtype=np.int64)
        for row, index in enumerate(indices):
            enhanced = _apply_empirical(enhancer(test(shuffler[index].data)), empirical)
            if strong:
                element, hypothesis = np.unravel_index(np.argmax(enhanced), shape)
                null_rows[row, 0] = enhanced[element, hypothesis]
                contributions[element, hypothesis] += 1
            else:
                elements = np.argmax(enhanced, axis=0)
                columns = np.arange(shape[1])
                null_rows[row] = enhanced[elements, columns]
                contributions[elements, columns] += 1
            exceedances += enhanced >= observed_enhanced
        return indices, null_rows, contributions, exceedances

    with timer(logger, f"Running permutations ({num_shuffles} shuffles)"):
        partials = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(process)(chunk) for chunk in _chunks(num_shuffles, n_jobs)
        )

    null_distribution = np.zeros((num_shuffles, num_columns))
    null_contributions = np.zeros(shape, dtype=np.int64)
    exceedances = np.zeros(shape, dtype=np.int64)
    for indices, null_rows, contributions, partial_exceedances in partials:
        null_distribution[indices.start:indices.stop] = null_rows
        null_contributions += contributions
        exceedances += partial_exceedances

    uncorrected = (1.0 + exceedances) / (1.0 + num_shuffles)
    uncorrected[~np.isfinite(observed_enhanced)] = 1.0
    return PermutationResult(null_distribution, null_contributions, uncorrected, num_shuffles)


def fwe_pvalue(null_distribution: np.ndarray, observed: np.ndarray) -> np.ndarray:
    """Family-wise error corrected p-values.

    p = (1 + number of null values >= observed) / (1 + number of shuffles),
    per element and hypothesis. A single-column null distribution (strong
    control) is used for every hypothesis.

    Args:
        null_distribution: (shuffles, columns) maximum statistics.
        observed: (elements, hypotheses) observed enhanced statistics.

    Returns:
        (elements, hypotheses) p-values in (0, 1]; 1 where the observed
        statistic is not finite.
    """
    null_distribution = np.atleast_2d(np.asarray(null_distribution, dtype=np.float64))
    observed = np.asarray(observed, dtype=np.float64)
    vector = observed.ndim == 1
    if vector:
        observed = observed[:, None]
    if null_distribution.shape[1] not in (1, observed.shape[1]):
        raise StatisticalError(
            f"Null distribution has {null_distribution.shape[1]} columns but there "
            f"are {observed.shape[1]} hypotheses"
        )
    num_shuffles = null_distribution.shape[0]
    pvalues = np.empty(observed.shape)
    for column in range(observed.shape[1]):
        null = np.sort(null_distribution[:, min(column, null_distribution.shape[1] - 1)])
        num_ge = num_shuffles - np.searchsorted(null, observed[:, column], side="left")
        pvalues[:, column] = (1.0 + num_ge) / (1.0 + num_shuffles)
    pvalues[~np.isfinite(observed)] = 1.0
    return pvalues[:, 0] if vector else pvalues
