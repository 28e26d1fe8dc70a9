"""Mapping between template (external) and in-mask (internal) fixel indices.

When a processing mask is provided, fixels inside the mask are renumbered so
that they occupy a contiguous range of internal indices, preserving the
ordering of the template. Data matrices, connectivity matrices and statistics
are then stored for internal indices only, while outputs are written back in
template order.

The remapper is an explicit value: every function that needs to translate
indices takes one as a parameter.
"""

from typing import Optional

import numpy as np

from fixelcfe.utils.exceptions import FixelDataError


class IndexRemapper:
    """Bijection between external fixel indices and internal indices.

    A remapper constructed from a fixel count alone is the *default*
    remapper: it behaves as the identity and allocates no lookup tables.

    Args:
        num_fixels: Number of fixels in the template (external index count).

    Example:
        >>> remapper = IndexRemapper.from_mask(np.array([True, False, True]))
        >>> remapper.e2i(2)
        1
        >>> remapper.e2i(1) == IndexRemapper.invalid
        True
    """

    invalid = np.iinfo(np.uint32).max

    def __init__(self, num_fixels: int):
        self._num_external = int(num_fixels)
        self._num_internal = int(num_fixels)
        self._e2i: Optional[np.ndarray] = None
        self._i2e: Optional[np.ndarray] = None

    @classmethod
    def from_mask(cls, mask: np.ndarray) -> "IndexRemapper":
        """Build a remapper from a boolean fixel mask (one entry per fixel)."""
        mask = np.asarray(mask)
        if mask.ndim != 1:
            mask = mask.reshape(-1)
        mask = mask.astype(bool)

        remapper = cls(mask.size)
        i2e = np.flatnonzero(mask).astype(np.uint32)
        e2i = np.full(mask.size, cls.invalid, dtype=np.uint32)
        e2i[i2e] = np.arange(i2e.size, dtype=np.uint32)

        remapper._e2i = e2i
        remapper._i2e = i2e
        remapper._num_internal = int(i2e.size)
        return remapper

    def is_default(self) -> bool:
        return self._e2i is None

    def num_external(self) -> int:
        return self._num_external

    def num_internal(self) -> int:
        return self._num_internal

    def e2i(self, external: int) -> int:
        """Internal index of an external fixel, or :attr:`invalid`."""
        if not 0 <= external < self._num_external:
            raise IndexError(
                f"External fixel index {external} out of range "
                f"[0, {self._num_external})"
            )
        if self._e2i is None:
            return int(external)
        return int(self._e2i[external])

    def i2e(self, internal: int) -> int:
        """External index of an internal fixel."""
        if not 0 <= internal < self._num_internal:
            raise IndexError(
                f"Internal fixel index {internal} out of range "
                f"[0, {self._num_internal})"
            )
        if self._i2e is None:
            return int(internal)
        return int(self._i2e[internal])

    def internal_mask(self) -> np.ndarray:
        """Boolean array over external fixels, True where an internal index exists."""
        if self._e2i is None:
            return np.ones(self._num_external, dtype=bool)
        return self._e2i != self.invalid

    def external_indices(self) -> np.ndarray:
        """External index of every internal fixel (the i2e table)."""
        if self._i2e is None:
            return np.arange(self._num_external, dtype=np.uint32)
        return self._i2e

    def to_internal(self, values: np.ndarray) -> np.ndarray:
        """Select the in-mask entries of a template-ordered array.

        The first axis of ``values`` must index external fixels.
        """
        values = np.asarray(values)
        if values.shape[0] != self._num_external:
            raise FixelDataError(
                f"Number of fixels in data ({values.shape[0]}) does not match "
                f"number of fixels in template ({self._num_external})"
            )
        if self._i2e is None:
            return values
        return values[self._i2e]

    def to_external(self, values: np.ndarray, fill: float = np.nan) -> np.ndarray:
        """Scatter internally-indexed values into template order.

        Excluded fixels receive ``fill`` (NaN by default).
        """
        values = np.asarray(values)
        if values.shape[0] != self._num_internal:
            raise FixelDataError(
                f"Number of values ({values.shape[0]}) does not match "
                f"number of fixels in mask ({self._num_internal})"
            )
        if self._i2e is None:
            return values
        dtype = np.result_type(values.dtype, np.float32)
        output = np.full((self._num_external,) + values.shape[1:], fill, dtype=dtype)
        output[self._i2e] = values
        return output

    def __repr__(self) -> str:
        if self.is_default():
            return f"IndexRemapper(default, num_fixels={self._num_external})"
        return (
            f"IndexRemapper(num_external={self._num_external}, "
            f"num_internal={self._num_internal})"
        )
