import os
import tempfile

import numpy as np
import pytest

from fixelcfe.statistics.shuffle import Shuffler, load_permutations, permutation_matrix
from fixelcfe.utils.exceptions import StatisticalError


def as_keys(shuffler):
    return [tuple(shuffle.data.reshape(-1)) for shuffle in shuffler]


def test_permutation_matrix():
    y = np.array([10.0, 20.0, 30.0])
    np.testing.assert_array_equal(permutation_matrix([2, 0, 1]) @ y, [30.0, 10.0, 20.0])
    np.testing.assert_array_equal(permutation_matrix([0, 1, 2], [1, -1, 1]) @ y, [10.0, -20.0, 30.0])


def test_enumerates_all_permutations():
    shuffler = Shuffler(4, nshuffles=100)
    keys = as_keys(shuffler)

    assert len(shuffler) == 23
    assert len(set(keys)) == 23
    assert tuple(np.eye(4).reshape(-1)) not in keys
    for shuffle in shuffler:
        assert np.all(shuffle.data.sum(axis=0) == 1.0)
        assert np.all(shuffle.data.sum(axis=1) == 1.0)


def test_enumerates_sign_flips():
    shuffler = Shuffler(4, nshuffles=100, errors='ise')
    assert len(shuffler) == 2 ** 4 - 1
    for shuffle in shuffler:
        assert np.count_nonzero(shuffle.data - np.diag(np.diag(shuffle.data))) == 0
        assert np.any(np.diag(shuffle.data) == -1.0)


def test_both_error_types():
    shuffler = Shuffler(3, nshuffles=1000, errors='both')
    assert len(shuffler) == 6 * 8 - 1
    assert len(set(as_keys(shuffler))) == len(shuffler)


def test_random_shuffles_unique_and_reproducible():
    first = Shuffler(10, nshuffles=50, random_state=42)
    second = Shuffler(10, nshuffles=50, random_state=42)

    assert len(first) == 50
    keys = as_keys(first)
    assert len(set(keys)) == 50
    assert tuple(np.eye(10).reshape(-1)) not in keys
    assert keys == as_keys(second)
    assert [s.index for s in first] == list(range(50))


def test_exchange_within_blocks():
    labels = [1, 1, 1, 2, 2, 2]
    shuffler = Shuffler(6, nshuffles=100, exchange_within=labels)

    assert len(shuffler) == 6 * 6 - 1
    for shuffle in shuffler:
        assert np.all(shuffle.data[:3, 3:] == 0.0)
        assert np.all(shuffle.data[3:, :3] == 0.0)


def test_exchange_whole_blocks():
    labels = [1, 2, 1, 2]
    shuffler = Shuffler(4, nshuffles=100, exchange_whole=labels)

    assert len(shuffler) == 1
    y = np.array([1.0, 2.0, 3.0, 4.0])
    np.testing.assert_array_equal(shuffler[0].data @ y, [2.0, 1.0, 4.0, 3.0])

    with pytest.raises(StatisticalError):
        Shuffler(3, exchange_whole=[1, 1, 2])


def test_invalid_arguments():
    with pytest.raises(StatisticalError):
        Shuffler(4, errors='xyz')
    with pytest.raises(StatisticalError):
        Shuffler(4, exchange_within=[1, 1, 2, 2], exchange_whole=[1, 1, 2, 2])
    with pytest.raises(StatisticalError):
        Shuffler(1)
    with pytest.raises(StatisticalError):
        Shuffler(4, exchange_within=[1, 2])


def test_load_permutations_one_based():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, 'perms.txt')
        np.savetxt(path, np.array([[1, 2, 3], [2, 1, 3], [3, 2, 1]]).T, fmt='%d')
        permutations = load_permutations(path, 3)

        assert [p.tolist() for p in permutations] == [[0, 1, 2], [1, 0, 2], [2, 1, 0]]

        shuffler = Shuffler(3, permutations=permutations)
        assert len(shuffler) == 2
        np.testing.assert_array_equal(shuffler[0].data, permutation_matrix([1, 0, 2]))

        with pytest.raises(StatisticalError):
            load_permutations(path, 4)

        bad = os.path.join(temp_dir, 'bad.txt')
        np.savetxt(bad, np.array([[1, 1, 3]]).T, fmt='%d')
        with pytest.raises(StatisticalError):
            load_permutations(bad, 3)


def test_duplicate_explicit_permutations():
    with pytest.raises(StatisticalError):
        Shuffler(3, permutations=[[1, 0, 2], [1, 0, 2]])
