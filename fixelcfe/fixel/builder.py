"""Construction of the fixel-fixel connectivity matrix from streamlines.

Streamlines are resolved to fixel index sets in parallel batches; all updates
of the initial matrix are applied from a single aggregation loop, so that no
fixel's adjacency list ever has more than one writer.
"""

import logging
from itertools import islice
from typing import Iterable, Iterator, List, Optional, Union

import numpy as np
from joblib import Parallel, delayed

from fixelcfe.fixel.matrix import InitFixel, InitMatrix
from fixelcfe.fixel.tracks import DEFAULT_UPSAMPLE_STEP, TrackMapper, VoxelHits
from fixelcfe.io.fixel import FixelIndex
from fixelcfe.utils.exceptions import ConnectivityError
from fixelcfe.utils.logging import ProgressLogger, timer

logger = logging.getLogger(__name__)


class FixelAssigner:
    """Assign the voxel hits of a streamline to fixels.

    In each traversed voxel, the fixel whose direction is closest to the
    streamline tangent (largest absolute dot product) is selected. The
    assignment is rejected if the angle exceeds ``angle_threshold`` or if that
    fixel lies outside the mask.

    Args:
        fixel_index: Voxel-to-fixel lookup of the template.
        directions: (N, 3) unit fixel directions.
        mask: Optional boolean array over fixels; fixels outside it never
            contribute to the matrix.
        angle_threshold: Maximum angle in degrees between streamline tangent
            and fixel direction.
    """

    def __init__(self, fixel_index: FixelIndex, directions: np.ndarray,
                 mask: Optional[np.ndarray] = None, angle_threshold: float = 45.0):
        self.fixel_index = fixel_index
        self.directions = np.asarray(directions, dtype=np.float64)
        num_fixels = fixel_index.num_fixels
        if self.directions.shape != (num_fixels, 3):
            raise ConnectivityError(
                f"Fixel directions shape {self.directions.shape} does not match "
                f"number of fixels in index ({num_fixels})"
            )
        if mask is None:
            mask = np.ones(num_fixels, dtype=bool)
        self.mask = np.asarray(mask, dtype=bool).reshape(-1)
        if self.mask.size != num_fixels:
            raise ConnectivityError(
                f"Fixel mask size ({self.mask.size}) does not match "
                f"number of fixels in index ({num_fixels})"
            )
        self.angle_threshold = float(angle_threshold)
        self.threshold_dp = float(np.cos(np.deg2rad(angle_threshold)))

    def __call__(self, hits: VoxelHits) -> List[int]:
        out = []
        for voxel, direction in zip(hits.voxels, hits.directions):
            fixels = self.fixel_index.fixels_in_voxel(voxel)
            if not len(fixels):
                continue
            dps = np.abs(self.directions[fixels.start:fixels.stop] @ direction)
            closest = int(np.argmax(dps))
            if dps[closest] > self.threshold_dp and self.mask[fixels.start + closest]:
                out.append(fixels.start + closest)
        # Fixel indices must be sorted and unique before InitFixel.add()
        return sorted(set(out))


def _batched(iterable: Iterable, size: int) -> Iterator[list]:
    iterator = iter(iterable)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


def generate_matrix(
    streamlines: Iterable[Union[np.ndarray, VoxelHits]],
    fixel_index: FixelIndex,
    directions: np.ndarray,
    mask: Optional[np.ndarray] = None,
    angle_threshold: float = 45.0,
    upsample_step: float = DEFAULT_UPSAMPLE_STEP,
    mapper: Optional[TrackMapper] = None,
    n_jobs: int = 1,
    batch_size: int = 1024,
    num_streamlines: Optional[int] = None,
) -> InitMatrix:
    """Build the initial (streamline count) fixel-fixel connectivity matrix.

    Args:
        streamlines: Iterable of streamlines, each either an (N, 3) array of
            points in scanner coordinates or pre-mapped :class:`VoxelHits`.
        fixel_index: Voxel-to-fixel lookup of the template.
        directions: (N, 3) unit fixel directions.
        mask: Optional boolean fixel mask.
        angle_threshold: Maximum streamline-to-fixel angle in degrees.
        upsample_step: Streamline resampling step as a fraction of voxel size
            (ignored when ``mapper`` is given).
        mapper: Streamline-to-voxel mapper; built from the index image if None.
        n_jobs: Number of worker threads resolving streamlines.
        batch_size: Number of streamlines per work item.
        num_streamlines: Expected number of streamlines (progress reporting only).

    Returns:
        One :class:`InitFixel` per template fixel.

    Raises:
        ConnectivityError: If any streamline cannot be processed; no partial
            matrix is returned.
    """
    if batch_size < 1:
        raise ValueError(f"Batch size must be at least 1, got {batch_size}")

    assigner = FixelAssigner(fixel_index, directions, mask, angle_threshold)
    if mapper is None:
        mapper = TrackMapper(fixel_index.affine, fixel_index.shape, upsample_step)

    def resolve(batch: list) -> List[List[int]]:
        resolved = []
        for streamline in batch:
            hits = streamline if isinstance(streamline, VoxelHits) else mapper(streamline)
            resolved.append(assigner(hits))
        return resolved

    num_fixels = fixel_index.num_fixels
    matrix: InitMatrix = [InitFixel() for _ in range(num_fixels)]
    progress = ProgressLogger(logger, "Streamlines processed", total=num_streamlines,
                              every=max(batch_size, 10000))
    num_assigned = 0

    with timer(logger, "Computing fixel-fixel connectivity matrix"):
        try:
            results = Parallel(n_jobs=n_jobs, prefer="threads", return_as="generator")(
                delayed(resolve)(batch) for batch in _batched(streamlines, batch_size)
            )
            for resolved in results:
                for fixels in resolved:
                    for fixel in fixels:
                        matrix[fixel].add(fixels)
                    if fixels:
                        num_assigned += 1
                progress.increment(len(resolved))
        except ConnectivityError:
            raise
        except MemoryError as e:
            raise ConnectivityError(
                "Error assigning memory for fixel-fixel connectivity matrix"
            ) from e
        except Exception as e:
            raise ConnectivityError(f"Error computing fixel-fixel connectivity matrix: {e}") from e
        progress.done()

    logger.info(
        f"{num_assigned} of {progress.count} streamlines assigned to at least one fixel"
    )
    return matrix
