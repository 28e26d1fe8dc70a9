"""Generation of subject shufflings for non-parametric testing.

A shuffle is a (subjects x subjects) matrix applied to model residuals under
the Freedman-Lane scheme. Depending on the assumed error structure it is a
permutation matrix (exchangeable errors, ``"ee"``), a diagonal sign-flip
matrix (independent symmetric errors, ``"ise"``), or the product of both
(``"both"``). Exchangeability blocks restrict which relabellings are allowed.

The identity is never produced by a :class:`Shuffler`: the unshuffled data are
handled separately as the default permutation.
"""

import itertools
import logging
import math
from pathlib import Path
from typing import Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np

from fixelcfe.io.readers import load_numeric_matrix
from fixelcfe.utils.exceptions import StatisticalError

logger = logging.getLogger(__name__)

ERROR_TYPES = ("ee", "ise", "both")


class Shuffle(NamedTuple):
    """One shuffling of the subjects.

    Attributes:
        index: Position in the sequence of shuffles (0-based).
        data: (subjects, subjects) shuffling matrix.
    """
    index: int
    data: np.ndarray


def permutation_matrix(permutation: Sequence[int], signs: Optional[Sequence[float]] = None) -> np.ndarray:
    """Matrix P such that ``(P @ y)[i] == signs[i] * y[permutation[i]]``."""
    permutation = np.asarray(permutation, dtype=np.int64)
    n = permutation.size
    matrix = np.zeros((n, n))
    matrix[np.arange(n), permutation] = 1.0 if signs is None else np.asarray(signs, dtype=np.float64)
    return matrix


def load_permutations(path: Union[str, Path], num_subjects: int) -> List[np.ndarray]:
    """Load explicit permutations from a text file.

    The file holds one permutation per column, as 1-based subject indices (the
    convention of PALM's ``palm_quickperms``).

    Returns:
        List of 0-based permutation arrays.

    Raises:
        StatisticalError: If the file does not hold valid permutations of
            ``num_subjects`` subjects.
    """
    matrix = load_numeric_matrix(path)
    if matrix.shape[0] != num_subjects:
        raise StatisticalError(
            f"Permutations file {path} has {matrix.shape[0]} rows, expected one per "
            f"subject ({num_subjects})"
        )
    permutations = []
    expected = np.arange(num_subjects)
    for column in range(matrix.shape[1]):
        values = matrix[:, column]
        if not np.all(values == np.round(values)):
            raise StatisticalError(f"Permutation {column + 1} in {path} contains non-integer values")
        permutation = values.astype(np.int64) - 1
        if not np.array_equal(np.sort(permutation), expected):
            raise StatisticalError(
                f"Column {column + 1} of {path} is not a permutation of 1..{num_subjects}"
            )
        permutations.append(permutation)
    return permutations


def _blocks_from_labels(labels: Sequence[float], num_subjects: int, name: str) -> List[np.ndarray]:
    labels = np.asarray(labels).reshape(-1)
    if labels.size != num_subjects:
        raise StatisticalError(
            f"Number of entries in {name} ({labels.size}) does not match "
            f"number of subjects ({num_subjects})"
        )
    return [np.flatnonzero(labels == value) for value in np.unique(labels)]


class Shuffler:
    """Sequence of unique, non-identity shuffling matrices.

    If the number of unique shuffles allowed by the design does not exceed
    ``nshuffles``, all of them are enumerated instead and a warning is logged.

    Args:
        num_subjects: Number of subjects (rows of the design matrix).
        nshuffles: Number of shuffles requested.
        errors: ``"ee"`` (permutations), ``"ise"`` (sign-flips) or ``"both"``.
        exchange_within: Block label per subject; shuffles only within blocks.
        exchange_whole: Block label per subject; blocks are shuffled as wholes
            (all blocks must have the same size).
        permutations: Explicit permutations (0-based); overrides ``nshuffles``.
        random_state: Seed for reproducible shuffles.

    Example:
        >>> shuffler = Shuffler(10, nshuffles=100, random_state=0)
        >>> for shuffle in shuffler:
        ...     stats = test(shuffle.data)
    """

    def __init__(
        self,
        num_subjects: int,
        nshuffles: int = 5000,
        errors: str = "ee",
        exchange_within: Optional[Sequence[float]] = None,
        exchange_whole: Optional[Sequence[float]] = None,
        permutations: Optional[Sequence[Sequence[int]]] = None,
        random_state: Optional[int] = None,
    ):
        if errors not in ERROR_TYPES:
            raise StatisticalError(f"Unknown error type '{errors}', expected one of {ERROR_TYPES}")
        if exchange_within is not None and exchange_whole is not None:
            raise StatisticalError("Exchangeability blocks may be specified within or whole, not both")
        if nshuffles < 1 and permutations is None:
            raise StatisticalError(f"Number of shuffles must be at least 1, got {nshuffles}")

        self.num_subjects = int(num_subjects)
        self.errors = errors
        self.is_permutation = errors in ("ee", "both")
        self.is_signflip = errors in ("ise", "both")
        self.rng = np.random.default_rng(random_state)

        self.blocks: Optional[List[np.ndarray]] = None
        self.whole_blocks = False
        if exchange_within is not None:
            self.blocks = _blocks_from_labels(exchange_within, self.num_subjects, "within-block labels")
        elif exchange_whole is not None:
            self.blocks = _blocks_from_labels(exchange_whole, self.num_subjects, "whole-block labels")
            sizes = {block.size for block in self.blocks}
            if len(sizes) != 1:
                raise StatisticalError("Whole-block exchangeability requires blocks of equal size")
            self.whole_blocks = True

        self._shuffles: List[Tuple[np.ndarray, np.ndarray]] = []
        if permutations is not None:
            self._from_permutations(permutations)
        else:
            total = self.num_unique_shuffles()
            if total - 1 < 1:
                raise StatisticalError("Design does not permit any shuffling besides the identity")
            if total - 1 <= nshuffles:
                if total - 1 < nshuffles:
                    logger.warning(
                        f"Only {total - 1} unique shuffles exist; "
                        f"all of them will be used instead of the {nshuffles} requested"
                    )
                self._enumerate()
            else:
                self._generate_random(nshuffles)

        logger.debug(f"Shuffler: {len(self._shuffles)} shuffles ({errors})")

    # Counting and generation

    def num_unique_shuffles(self) -> int:
        """Number of distinct shuffles permitted, including the identity."""
        n = self.num_subjects
        total = 1
        if self.is_permutation:
            if self.blocks is None:
                total *= math.factorial(n)
            elif self.whole_blocks:
                total *= math.factorial(len(self.blocks))
            else:
                for block in self.blocks:
                    total *= math.factorial(block.size)
        if self.is_signflip:
            units = len(self.blocks) if self.whole_blocks else n
            total *= 2 ** units
        return total

    def _identity(self) -> Tuple[np.ndarray, np.ndarray]:
        return np.arange(self.num_subjects), np.ones(self.num_subjects)

    def _expand_block_signs(self, block_signs: Sequence[float]) -> np.ndarray:
        signs = np.ones(self.num_subjects)
        for block, sign in zip(self.blocks, block_signs):
            signs[block] = sign
        return signs

    def _block_permutation(self, order: Sequence[int]) -> np.ndarray:
        permutation = np.arange(self.num_subjects)
        for target, source in zip(self.blocks, order):
            permutation[target] = self.blocks[source]
        return permutation

    def _iter_permutations(self) -> Iterator[np.ndarray]:
        n = self.num_subjects
        if not self.is_permutation:
            yield np.arange(n)
        elif self.blocks is None:
            for p in itertools.permutations(range(n)):
                yield np.array(p)
        elif self.whole_blocks:
            for order in itertools.permutations(range(len(self.blocks))):
                yield self._block_permutation(order)
        else:
            for parts in itertools.product(*(itertools.permutations(b) for b in self.blocks)):
                permutation = np.arange(n)
                for block, part in zip(self.blocks, parts):
                    permutation[block] = part
                yield permutation

    def _iter_signs(self) -> Iterator[np.ndarray]:
        if not self.is_signflip:
            yield np.ones(self.num_subjects)
        elif self.whole_blocks:
            for block_signs in itertools.product((1.0, -1.0), repeat=len(self.blocks)):
                yield self._expand_block_signs(block_signs)
        else:
            for signs in itertools.product((1.0, -1.0), repeat=self.num_subjects):
                yield np.array(signs)

    def _enumerate(self) -> None:
        identity_perm, identity_signs = self._identity()
        for permutation in self._iter_permutations():
            for signs in self._iter_signs():
                if np.array_equal(permutation, identity_perm) and np.array_equal(signs, identity_signs):
                    continue
                self._shuffles.append((permutation, signs))

    def _random_permutation(self) -> np.ndarray:
        n = self.num_subjects
        if not self.is_permutation:
            return np.arange(n)
        if self.blocks is None:
            return self.rng.permutation(n)
        if self.whole_blocks:
            return self._block_permutation(self.rng.permutation(len(self.blocks)))
        permutation = np.arange(n)
        for block in self.blocks:
            permutation[block] = self.rng.permutation(block)
        return permutation

    def _random_signs(self) -> np.ndarray:
        if not self.is_signflip:
            return np.ones(self.num_subjects)
        if self.whole_blocks:
            return self._expand_block_signs(self.rng.choice((1.0, -1.0), size=len(self.blocks)))
        return self.rng.choice((1.0, -1.0), size=self.num_subjects)

    def _generate_random(self, nshuffles: int) -> None:
        identity = self._key(*self._identity())
        seen = {identity}
        while len(self._shuffles) < nshuffles:
            permutation = self._random_permutation()
            signs = self._random_signs()
            key = self._key(permutation, signs)
            if key in seen:
                continue
            seen.add(key)
            self._shuffles.append((permutation, signs))

    def _from_permutations(self, permutations: Sequence[Sequence[int]]) -> None:
        identity = np.arange(self.num_subjects)
        seen = set()
        for permutation in permutations:
            permutation = np.asarray(permutation, dtype=np.int64)
            if permutation.size != self.num_subjects:
                raise StatisticalError(
                    f"Explicit permutation has {permutation.size} entries, "
                    f"expected {self.num_subjects}"
                )
            if np.array_equal(permutation, identity):
                logger.debug("Skipping identity permutation in explicit permutations")
                continue
            key = tuple(permutation.tolist())
            if key in seen:
                raise StatisticalError("Explicit permutations contain duplicates")
            seen.add(key)
            self._shuffles.append((permutation, np.ones(self.num_subjects)))
        if not self._shuffles:
            raise StatisticalError("No non-identity permutations provided")

    @staticmethod
    def _key(permutation: np.ndarray, signs: np.ndarray) -> tuple:
        return tuple(permutation.tolist()) + tuple(np.sign(signs).astype(int).tolist())

    # Sequence interface

    def __len__(self) -> int:
        return len(self._shuffles)

    def __getitem__(self, index: int) -> Shuffle:
        permutation, signs = self._shuffles[index]
        signs = signs if self.is_signflip else None
        return Shuffle(index, permutation_matrix(permutation, signs))

    def __iter__(self) -> Iterator[Shuffle]:
        for index in range(len(self)):
            yield self[index]
