"""Filters operating on fixel data through the connectivity matrix."""

import logging

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import connected_components

from fixelcfe.fixel.matrix import NormFixel, NormMatrix, to_sparse
from fixelcfe.utils.exceptions import FixelDataError

logger = logging.getLogger(__name__)

FWHM_TO_STDEV = 1.0 / 2.3548


class Smooth:
    """Connectivity-based smoothing of fixel data.

    Smoothing weights combine fixel-fixel connectivity with a Gaussian
    kernel of the distance between fixel positions. Weights below
    ``threshold`` are discarded and the rest are normalised to sum to one
    for each fixel. Fixels left without any weight receive full
    self-connectivity.

    Args:
        positions: (N, 3) scanner-space position of every fixel.
        matrix: Normalised connectivity matrix over the same N fixels.
        fwhm: Full width at half maximum of the Gaussian kernel (mm).
        threshold: Minimum smoothing weight retained.

    Example:
        >>> smoother = Smooth(index.fixel_positions(), matrix, fwhm=10.0)
        >>> smoothed = smoother(fd_values)
    """

    def __init__(self, positions: np.ndarray, matrix: NormMatrix,
                 fwhm: float = 10.0, threshold: float = 0.01):
        if fwhm <= 0.0:
            raise ValueError(f"Smoothing FWHM must be positive, got {fwhm}")
        positions = np.asarray(positions, dtype=np.float64)
        if positions.shape != (len(matrix), 3):
            raise FixelDataError(
                f"Number of fixel positions ({positions.shape[0]}) does not match "
                f"connectivity matrix ({len(matrix)})"
            )
        self.fwhm = float(fwhm)
        self.threshold = float(threshold)

        stdev = self.fwhm * FWHM_TO_STDEV
        gaussian_const1 = 1.0 / (stdev * np.sqrt(2.0 * np.pi))
        gaussian_const2 = -1.0 / (2.0 * stdev * stdev)

        self.weights: NormMatrix = []
        for fixel, connections in enumerate(matrix):
            if len(connections):
                targets = connections.indices.astype(np.int64)
                sq_distance = ((positions[targets] - positions[fixel]) ** 2).sum(axis=1)
                weights = (connections.values.astype(np.float64)
                           * gaussian_const1 * np.exp(gaussian_const2 * sq_distance))
                keep = weights >= self.threshold
                targets, weights = targets[keep], weights[keep]
            else:
                targets = np.empty(0, dtype=np.int64)
                weights = np.empty(0, dtype=np.float64)

            if weights.size:
                weights = weights / weights.sum()
            else:
                targets = np.array([fixel])
                weights = np.ones(1)
            self.weights.append(NormFixel(targets, weights))

        self._operator = to_sparse(self.weights)

    def __call__(self, values: np.ndarray) -> np.ndarray:
        """Smooth one value per fixel; non-finite input fixels produce NaN."""
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (len(self.weights),):
            raise FixelDataError(
                f"Size of fixel data ({values.size}) does not match "
                f"fixel connectivity matrix ({len(self.weights)})"
            )
        finite = np.isfinite(values)
        numerator = self._operator @ np.where(finite, values, 0.0)
        denominator = self._operator @ finite.astype(np.float64)
        output = np.full(values.shape, np.nan)
        valid = finite & (denominator > 0.0)
        output[valid] = numerator[valid] / denominator[valid]
        return output


class Connect:
    """Connected-component labelling of thresholded fixel data.

    Fixels whose value exceeds ``value_threshold`` are grouped into clusters
    through connections of at least ``connectivity_threshold``. Clusters are
    labelled 1, 2, ... in order of decreasing size; all other fixels are 0.
    """

    def __init__(self, matrix: NormMatrix, value_threshold: float = 0.5,
                 connectivity_threshold: float = 0.1):
        self.matrix = matrix
        self.value_threshold = float(value_threshold)
        self.connectivity_threshold = float(connectivity_threshold)

    def __call__(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        num_fixels = len(self.matrix)
        if values.shape != (num_fixels,):
            raise FixelDataError(
                f"Size of fixel data ({values.size}) does not match "
                f"fixel connectivity matrix ({num_fixels})"
            )

        with np.errstate(invalid="ignore"):
            active = np.isfinite(values) & (values > self.value_threshold)
        labels = np.zeros(num_fixels, dtype=np.int64)
        if not active.any():
            logger.info("No fixels above value threshold; output is empty")
            return labels

        graph = to_sparse(self.matrix).tocoo()
        keep = ((graph.data >= self.connectivity_threshold)
                & active[graph.row] & active[graph.col])
        adjacency = sparse.csr_matrix(
            (np.ones(int(keep.sum())), (graph.row[keep], graph.col[keep])),
            shape=(num_fixels, num_fixels),
        )

        _, components = connected_components(adjacency, directed=True, connection="weak")
        active_components = components[active]
        unique, first, sizes = np.unique(active_components, return_index=True, return_counts=True)
        # Largest cluster first; ties broken by lowest fixel index
        first_fixel = np.flatnonzero(active)[first]
        order = np.lexsort((first_fixel, -sizes))
        relabel = np.zeros(components.max() + 1, dtype=np.int64)
        relabel[unique[order]] = np.arange(1, unique.size + 1)
        labels[active] = relabel[active_components]

        logger.info(
            f"Found {unique.size} clusters; largest contains {int(sizes.max())} fixels"
        )
        return labels
