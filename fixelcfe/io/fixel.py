"""Fixel directory format.

A fixel directory holds:

- ``index.nii[.gz]``: 4D image (X, Y, Z, 2); volume 0 is the number of fixels
  in each voxel, volume 1 the index of the first of them.
- ``directions.nii[.gz]``: (N, 3, 1) image of unit fixel directions in
  scanner space.
- Any number of fixel data files: (N, 1, 1) images of one value per fixel.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import nibabel as nib
import numpy as np
from nibabel.affines import apply_affine

from fixelcfe.utils.exceptions import FixelDataError

logger = logging.getLogger(__name__)

NIFTI_EXTENSIONS = (".nii.gz", ".nii")


@dataclass
class FixelIndex:
    """Voxel-to-fixel lookup of a fixel template.

    Attributes:
        counts: (X, Y, Z) number of fixels per voxel.
        offsets: (X, Y, Z) index of the first fixel of each voxel.
        affine: Voxel-to-scanner transform of the index image.
        path: Index image the lookup was read from, if any.
    """
    counts: np.ndarray
    offsets: np.ndarray
    affine: np.ndarray
    path: Path = None

    @property
    def shape(self):
        return self.counts.shape

    @property
    def voxel_sizes(self) -> np.ndarray:
        return np.sqrt((self.affine[:3, :3] ** 2).sum(axis=0))

    @property
    def num_fixels(self) -> int:
        return int(self.counts.sum())

    def fixels_in_voxel(self, ijk) -> range:
        """Fixel indices belonging to voxel ``ijk`` (empty range outside the image)."""
        i, j, k = (int(x) for x in ijk)
        if not (0 <= i < self.shape[0] and 0 <= j < self.shape[1] and 0 <= k < self.shape[2]):
            return range(0)
        offset = int(self.offsets[i, j, k])
        return range(offset, offset + int(self.counts[i, j, k]))

    def fixel_voxels(self) -> np.ndarray:
        """(N, 3) voxel coordinates of every fixel."""
        voxels = np.argwhere(self.counts > 0)
        counts = self.counts[tuple(voxels.T)].astype(np.int64)
        offsets = self.offsets[tuple(voxels.T)].astype(np.int64)
        starts = np.repeat(offsets, counts)
        within = np.arange(counts.sum()) - np.repeat(np.cumsum(counts) - counts, counts)
        result = np.zeros((self.num_fixels, 3), dtype=np.int64)
        result[starts + within] = np.repeat(voxels, counts, axis=0)
        return result

    def fixel_positions(self) -> np.ndarray:
        """(N, 3) scanner-space position (voxel centre) of every fixel."""
        return apply_affine(self.affine, self.fixel_voxels())


def find_fixel_file(fixel_dir: Union[str, Path], stem: str) -> Path:
    """Locate ``stem.nii.gz`` or ``stem.nii`` in a fixel directory."""
    fixel_dir = Path(fixel_dir)
    for extension in NIFTI_EXTENSIONS:
        candidate = fixel_dir / f"{stem}{extension}"
        if candidate.is_file():
            return candidate
    raise FixelDataError(f"Could not find fixel {stem} image in directory {fixel_dir}")


def load_fixel_index(fixel_dir: Union[str, Path]) -> FixelIndex:
    """Load the index image of a fixel directory.

    Raises:
        FixelDataError: If the image is missing or not a valid index image.
    """
    path = find_fixel_file(fixel_dir, "index")
    img = nib.load(str(path))
    data = np.asanyarray(img.dataobj)
    if data.ndim != 4 or data.shape[3] != 2:
        raise FixelDataError(
            f"Fixel index image {path} must be 4D with 2 volumes, got shape {data.shape}"
        )
    counts = np.asarray(data[..., 0], dtype=np.int64)
    offsets = np.asarray(data[..., 1], dtype=np.int64)
    if (counts < 0).any() or (offsets < 0).any():
        raise FixelDataError(f"Fixel index image {path} contains negative values")
    index = FixelIndex(counts=counts, offsets=offsets, affine=img.affine, path=path)
    logger.debug(f"Loaded fixel index {path} ({index.num_fixels} fixels)")
    return index


def load_directions(fixel_dir: Union[str, Path], num_fixels: int = None) -> np.ndarray:
    """Load fixel directions as an (N, 3) array of unit vectors."""
    path = find_fixel_file(fixel_dir, "directions")
    data = np.asarray(nib.load(str(path)).get_fdata(), dtype=np.float64)
    if data.ndim < 2 or data.shape[1] != 3 or data.size != 3 * data.shape[0]:
        raise FixelDataError(
            f"Fixel directions image {path} must have shape (N, 3, 1), got {data.shape}"
        )
    directions = data.reshape(-1, 3)
    if num_fixels is not None and directions.shape[0] != num_fixels:
        raise FixelDataError(
            f"Number of fixels in directions image ({directions.shape[0]}) does not "
            f"match fixel index image ({num_fixels})"
        )
    norms = np.linalg.norm(directions, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return directions / norms


def check_data_file(path: Union[str, Path], num_fixels: Optional[int] = None) -> Path:
    """Check from its header that ``path`` is a fixel data file of the template.

    Raises:
        FileNotFoundError: If the file does not exist.
        FixelDataError: If the image is not (N, 1, 1) or N does not match.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Fixel data file not found: {path}")
    shape = nib.load(str(path)).shape
    if len(shape) < 1 or int(np.prod(shape)) != shape[0]:
        raise FixelDataError(f"Image {path} is not a fixel data file (shape {shape})")
    if num_fixels is not None and shape[0] != num_fixels:
        raise FixelDataError(
            f"Number of fixels in {path} ({shape[0]}) does not match "
            f"fixel template ({num_fixels})"
        )
    return path


def load_fixel_data(path: Union[str, Path], num_fixels: Optional[int] = None) -> np.ndarray:
    """Load a fixel data file as a 1D float array, after :func:`check_data_file`."""
    path = check_data_file(path, num_fixels)
    return np.asarray(nib.load(str(path)).get_fdata(), dtype=np.float64).reshape(-1)


def load_fixel_mask(path: Union[str, Path], num_fixels: int) -> np.ndarray:
    """Load a fixel mask file; fixels with a finite non-zero value are included."""
    data = load_fixel_data(path, num_fixels)
    return np.isfinite(data) & (data != 0.0)


def save_fixel_data(path: Union[str, Path], data: np.ndarray) -> Path:
    """Write a 1D array of fixel values as an (N, 1, 1) NIfTI image."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = np.asarray(data)
    if data.dtype.kind == "b":
        data = data.astype(np.uint8)
    elif data.dtype.kind in "iu":
        data = data.astype(np.int32)
    else:
        data = data.astype(np.float32)
    img = nib.Nifti1Image(data.reshape(-1, 1, 1), np.eye(4))
    nib.save(img, str(path))
    return path


def copy_index_and_directions(fixel_dir: Union[str, Path],
                              output_dir: Union[str, Path]) -> List[Path]:
    """Copy the index and directions images of a template into ``output_dir``."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    copied = []
    for stem in ("index", "directions"):
        source = find_fixel_file(fixel_dir, stem)
        target = output_dir / source.name
        if source.resolve() != target.resolve():
            shutil.copyfile(source, target)
        copied.append(target)
    return copied
