"""Fixel-fixel connectivity matrix.

Two representations are used depending on the stage of processing:

- The *initial* matrix (:class:`InitFixel` per fixel) holds, for every fixel,
  a sorted list of the fixels it shares streamlines with and the number of
  such streamlines, plus the total number of streamlines that traversed the
  fixel. It is built incrementally while streamlines are processed.
- The *normalised* matrix (:class:`NormFixel` per fixel) holds floating-point
  connectivity values in [0, 1] obtained by dividing counts by the fixel's
  streamline total, with weak connections culled.

Both matrices are plain lists indexed by (internal) fixel index.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, NamedTuple, Sequence

import numpy as np
from joblib import Parallel, delayed
from scipy import sparse

from fixelcfe.utils.exceptions import ConnectivityError
from fixelcfe.utils.logging import timer

logger = logging.getLogger(__name__)

index_dtype = np.uint32
value_dtype = np.float32

NORMALISE_CHUNK_SIZE = 4096


class InitElement(NamedTuple):
    """Target fixel and number of streamlines shared with it."""
    index: int
    count: int


class NormElement(NamedTuple):
    """Target fixel and normalised connectivity value."""
    index: int
    value: float


@dataclass
class InitFixel:
    """Streamline-count adjacency list of one fixel.

    Attributes:
        indices: Target fixel indices, strictly increasing.
        counts: Number of streamlines shared with each target.
        track_count: Number of streamlines that traversed this fixel.
    """
    indices: List[int] = field(default_factory=list)
    counts: List[int] = field(default_factory=list)
    track_count: int = 0

    def add(self, indices: Sequence[int]) -> None:
        """Record one streamline that traversed this fixel.

        ``indices`` is the sorted, duplicate-free list of all fixels traversed
        by the streamline. Targets already present have their count
        incremented; new targets are inserted in order. The existing lists are
        extended in place, so the merge costs O(existing + new).

        The fixel's streamline total is incremented exactly once per call.
        """
        own = self.indices
        counts = self.counts

        if not own:
            own.extend(int(i) for i in indices)
            counts.extend([1] * len(own))
            self.track_count += 1
            return

        # First pass: increment targets that already exist,
        #   and count how many of the incoming targets are new
        old_size = len(own)
        in_count = len(indices)
        self_index = in_index = 0
        intersection = 0
        while self_index < old_size and in_index < in_count:
            if own[self_index] == indices[in_index]:
                counts[self_index] += 1
                self_index += 1
                in_index += 1
                intersection += 1
            elif own[self_index] > indices[in_index]:
                in_index += 1
            else:
                self_index += 1

        num_new = in_count - intersection
        if num_new:
            own.extend([0] * num_new)
            counts.extend([0] * num_new)

            # Second pass, back to front: shift existing entries towards the
            #   new end of the lists, inserting new targets where they belong
            self_index = old_size - 1
            in_index = in_count - 1
            out_index = old_size + num_new - 1
            while out_index > self_index >= 0 and in_index >= 0:
                target = indices[in_index]
                if own[self_index] == target:
                    own[out_index] = own[self_index]
                    counts[out_index] = counts[self_index]
                    self_index -= 1
                    in_index -= 1
                elif own[self_index] > target:
                    own[out_index] = own[self_index]
                    counts[out_index] = counts[self_index]
                    self_index -= 1
                else:
                    own[out_index] = int(target)
                    counts[out_index] = 1
                    in_index -= 1
                out_index -= 1
            if self_index < 0:
                while in_index >= 0 and out_index >= 0:
                    own[out_index] = int(indices[in_index])
                    counts[out_index] = 1
                    in_index -= 1
                    out_index -= 1

        self.track_count += 1

    def count(self) -> int:
        return self.track_count

    def __len__(self) -> int:
        return len(self.indices)

    def __iter__(self) -> Iterator[InitElement]:
        for index, count in zip(self.indices, self.counts):
            yield InitElement(index, count)

    @classmethod
    def from_elements(cls, elements: Sequence[InitElement],
                      track_count: int = None) -> "InitFixel":
        """Build from (index, count) pairs, e.g. when loading from file.

        When the streamline total is not known it is estimated as the largest
        count, which is the self-connection count of a fixel built from
        streamlines.
        """
        pairs = sorted((int(i), int(c)) for i, c in elements)
        fixel = cls([i for i, _ in pairs], [c for _, c in pairs])
        if track_count is None:
            track_count = max(fixel.counts) if fixel.counts else 0
        fixel.track_count = int(track_count)
        return fixel


@dataclass
class NormFixel:
    """Normalised adjacency list of one fixel.

    Attributes:
        indices: Target fixel indices (uint32).
        values: Connectivity values (float32), same length as ``indices``.
        norm_multiplier: Multiplicative factor making the weights sum to one
            once :meth:`normalise` has been called; 1 until then.
    """
    indices: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=index_dtype))
    values: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=value_dtype))
    norm_multiplier: float = 1.0

    def __post_init__(self):
        self.indices = np.asarray(self.indices, dtype=index_dtype)
        self.values = np.asarray(self.values, dtype=value_dtype)
        if self.indices.shape != self.values.shape:
            raise ValueError(
                f"Mismatched fixel connectivity data: {self.indices.size} "
                f"indices but {self.values.size} values"
            )

    def normalise(self) -> None:
        """Recompute :attr:`norm_multiplier` as the inverse sum of weights."""
        total = float(self.values.sum(dtype=np.float64))
        self.norm_multiplier = 1.0 / total if total > 0.0 else 1.0

    def exponentiate(self, c: float) -> None:
        self.values = np.power(self.values, value_dtype(c)).astype(value_dtype)

    def is_empty(self) -> bool:
        return self.indices.size == 0

    def __len__(self) -> int:
        return int(self.indices.size)

    def __iter__(self) -> Iterator[NormElement]:
        for index, value in zip(self.indices, self.values):
            yield NormElement(int(index), float(value))

    @classmethod
    def from_elements(cls, elements: Sequence[NormElement]) -> "NormFixel":
        if not elements:
            return cls()
        indices, values = zip(*elements)
        return cls(np.array(indices, dtype=index_dtype),
                   np.array(values, dtype=value_dtype))


InitMatrix = List[InitFixel]
NormMatrix = List[NormFixel]


def normalise_fixel(
    fixel_index: int,
    fixel: InitFixel,
    connectivity_threshold: float,
    self_connect_isolated: bool = True,
) -> NormFixel:
    """Convert one initial adjacency list into a normalised one.

    Counts are divided by the fixel's streamline total and entries below
    ``connectivity_threshold`` are discarded. If nothing survives and
    ``self_connect_isolated`` is set, a single self-connection of weight 1 is
    inserted. The normalisation multiplier of the result is computed.
    """
    if fixel.track_count and len(fixel):
        indices = np.asarray(fixel.indices, dtype=index_dtype)
        values = (np.asarray(fixel.counts, dtype=np.float64)
                  / float(fixel.track_count)).astype(value_dtype)
        keep = values >= value_dtype(connectivity_threshold)
        indices, values = indices[keep], values[keep]
    else:
        indices = np.empty(0, dtype=index_dtype)
        values = np.empty(0, dtype=value_dtype)

    if indices.size == 0 and self_connect_isolated:
        indices = np.array([fixel_index], dtype=index_dtype)
        values = np.ones(1, dtype=value_dtype)

    fixel = NormFixel(indices, values)
    fixel.normalise()
    return fixel


def normalise_matrix(
    init_matrix: InitMatrix,
    connectivity_threshold: float,
    self_connect_isolated: bool = True,
    n_jobs: int = 1,
) -> NormMatrix:
    """Threshold and normalise an initial connectivity matrix.

    Each fixel's entry in ``init_matrix`` is released as soon as it has been
    converted, and the input list is left empty on return, so that peak memory
    stays close to the size of the larger of the two matrices.

    Args:
        init_matrix: Initial (streamline count) matrix. Consumed.
        connectivity_threshold: Minimum fraction of a fixel's streamlines that
            must be shared with a target for the connection to be retained.
        self_connect_isolated: Give fixels without any surviving connection a
            single self-connection of weight 1.
        n_jobs: Number of worker threads (-1 for all cores).

    Returns:
        The normalised matrix, one :class:`NormFixel` per fixel.
    """
    if not 0.0 <= connectivity_threshold <= 1.0:
        raise ConnectivityError(
            f"Connectivity threshold must be within [0, 1], got {connectivity_threshold}"
        )

    num_fixels = len(init_matrix)
    norm_matrix: NormMatrix = [None] * num_fixels

    def process(start: int, stop: int) -> int:
        for index in range(start, stop):
            norm_matrix[index] = normalise_fixel(
                index, init_matrix[index], connectivity_threshold, self_connect_isolated
            )
            # Release the initial data for this fixel immediately
            init_matrix[index] = None
        return stop - start

    with timer(logger, "Normalising and thresholding fixel-fixel connectivity matrix"):
        chunks = [
            (start, min(start + NORMALISE_CHUNK_SIZE, num_fixels))
            for start in range(0, num_fixels, NORMALISE_CHUNK_SIZE)
        ]
        Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(process)(start, stop) for start, stop in chunks
        )

    init_matrix.clear()

    num_connections = sum(len(f) for f in norm_matrix)
    logger.info(
        f"Normalised matrix: {num_fixels} fixels, {num_connections} connections "
        f"(threshold {connectivity_threshold})"
    )
    return norm_matrix


def to_sparse(norm_matrix: NormMatrix, num_columns: int = None) -> sparse.csr_matrix:
    """Assemble a normalised matrix into a CSR sparse matrix (row = fixel)."""
    num_rows = len(norm_matrix)
    if num_columns is None:
        num_columns = num_rows
    lengths = np.fromiter((len(f) for f in norm_matrix), dtype=np.int64, count=num_rows)
    indptr = np.zeros(num_rows + 1, dtype=np.int64)
    np.cumsum(lengths, out=indptr[1:])
    if num_rows and indptr[-1]:
        indices = np.concatenate([f.indices for f in norm_matrix]).astype(np.int64)
        data = np.concatenate([f.values for f in norm_matrix]).astype(np.float64)
    else:
        indices = np.empty(0, dtype=np.int64)
        data = np.empty(0, dtype=np.float64)
    return sparse.csr_matrix((data, indices, indptr), shape=(num_rows, num_columns))


def norm_multipliers(norm_matrix: NormMatrix) -> np.ndarray:
    """Vector of per-fixel normalisation multipliers."""
    return np.fromiter((f.norm_multiplier for f in norm_matrix),
                       dtype=np.float64, count=len(norm_matrix))
