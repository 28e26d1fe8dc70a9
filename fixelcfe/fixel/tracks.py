"""Mapping of streamlines to voxels.

Streamlines are read with :mod:`nibabel.streamlines` (``.tck`` and ``.trk``)
as arrays of points in scanner coordinates (mm). Each streamline is resampled
finely enough that no voxel it passes through is skipped, then reduced to one
hit per traversed voxel carrying the mean tangent direction of the streamline
within that voxel.
"""

import logging
from pathlib import Path
from typing import Iterator, NamedTuple, Optional, Sequence, Union

import nibabel as nib
import numpy as np
from nibabel.affines import apply_affine

from fixelcfe.utils.exceptions import ConnectivityError

logger = logging.getLogger(__name__)

DEFAULT_UPSAMPLE_STEP = 0.333


class VoxelHits(NamedTuple):
    """Voxels traversed by one streamline.

    Attributes:
        voxels: (M, 3) integer voxel coordinates, one row per voxel.
        directions: (M, 3) unit tangent direction of the streamline in each voxel.
    """
    voxels: np.ndarray
    directions: np.ndarray

    @classmethod
    def empty(cls) -> "VoxelHits":
        return cls(np.empty((0, 3), dtype=np.int64), np.empty((0, 3), dtype=np.float64))


class TrackMapper:
    """Convert streamlines (points in mm) into per-voxel hits.

    Args:
        affine: Voxel-to-scanner transform of the fixel index image.
        shape: Spatial shape (X, Y, Z) of the fixel index image.
        upsample_step: Resampling step as a fraction of the smallest voxel size.
    """

    def __init__(self, affine: np.ndarray, shape: Sequence[int],
                 upsample_step: float = DEFAULT_UPSAMPLE_STEP):
        if upsample_step <= 0.0:
            raise ValueError(f"Upsampling step must be positive, got {upsample_step}")
        self.affine = np.asarray(affine, dtype=np.float64)
        self.inverse_affine = np.linalg.inv(self.affine)
        self.shape = tuple(int(s) for s in shape[:3])
        voxel_sizes = np.sqrt((self.affine[:3, :3] ** 2).sum(axis=0))
        self.step = float(upsample_step * voxel_sizes.min())

    def resample(self, points: np.ndarray) -> np.ndarray:
        """Resample a polyline at regular arc-length intervals of at most ``step``."""
        segments = np.linalg.norm(np.diff(points, axis=0), axis=1)
        arc = np.concatenate(([0.0], np.cumsum(segments)))
        total = arc[-1]
        if total == 0.0:
            return points[:1]
        num_samples = int(np.ceil(total / self.step)) + 1
        samples = np.linspace(0.0, total, num_samples)
        return np.column_stack([np.interp(samples, arc, points[:, axis]) for axis in range(3)])

    def __call__(self, points: np.ndarray) -> VoxelHits:
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ConnectivityError(
                f"Malformed streamline: expected (N, 3) points, got shape {points.shape}"
            )
        if not np.isfinite(points).all():
            raise ConnectivityError("Malformed streamline: non-finite point coordinates")
        if points.shape[0] < 2:
            return VoxelHits.empty()

        resampled = self.resample(points)
        if resampled.shape[0] < 2:
            return VoxelHits.empty()

        tangents = np.gradient(resampled, axis=0)
        norms = np.linalg.norm(tangents, axis=1)
        valid = norms > 0.0
        tangents[valid] /= norms[valid, None]

        voxels = np.rint(apply_affine(self.inverse_affine, resampled)).astype(np.int64)
        inside = valid & np.all((voxels >= 0) & (voxels < np.array(self.shape)), axis=1)
        if not inside.any():
            return VoxelHits.empty()
        voxels = voxels[inside]
        tangents = tangents[inside]

        unique, first, inverse = np.unique(voxels, axis=0, return_index=True, return_inverse=True)
        inverse = inverse.reshape(-1)

        # Orient each tangent consistently with the first one seen in its voxel
        reference = tangents[first][inverse]
        signs = np.sign(np.einsum("ij,ij->i", tangents, reference))
        signs[signs == 0.0] = 1.0

        summed = np.zeros((unique.shape[0], 3), dtype=np.float64)
        np.add.at(summed, inverse, tangents * signs[:, None])
        lengths = np.linalg.norm(summed, axis=1)
        lengths[lengths == 0.0] = 1.0
        return VoxelHits(unique, summed / lengths[:, None])


def streamline_count(path: Union[str, Path]) -> Optional[int]:
    """Number of streamlines declared in a track file header, if available."""
    try:
        header = nib.streamlines.load(str(path), lazy_load=True).header
    except Exception as e:
        raise ConnectivityError(f"Unable to read track file {path}: {e}") from e
    for key in ("count", "nb_streamlines"):
        value = header.get(key)
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
    return None


def iter_streamlines(path: Union[str, Path]) -> Iterator[np.ndarray]:
    """Lazily yield the points (scanner mm) of every streamline in a track file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConnectivityError: If the file cannot be parsed as a tractogram.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Track file not found: {path}")
    try:
        tractogram_file = nib.streamlines.load(str(path), lazy_load=True)
    except Exception as e:
        raise ConnectivityError(f"Unable to read track file {path}: {e}") from e

    logger.debug(f"Reading streamlines from {path}")
    iterator = iter(tractogram_file.streamlines)
    while True:
        try:
            streamline = next(iterator)
        except StopIteration:
            return
        except Exception as e:
            raise ConnectivityError(f"Malformed streamline data in {path}: {e}") from e
        yield np.asarray(streamline, dtype=np.float64)
