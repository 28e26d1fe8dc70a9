import numpy as np
import pytest

from fixelcfe.fixel.index_remapper import IndexRemapper
from fixelcfe.utils.exceptions import FixelDataError


def test_default_remapper_is_identity():
    remapper = IndexRemapper(5)
    assert remapper.is_default()
    assert remapper.num_external() == remapper.num_internal() == 5
    assert [remapper.e2i(i) for i in range(5)] == list(range(5))
    assert [remapper.i2e(i) for i in range(5)] == list(range(5))


def test_mask_remapper_round_trip():
    mask = np.array([True, False, True, True, False, True])
    remapper = IndexRemapper.from_mask(mask)

    assert not remapper.is_default()
    assert remapper.num_external() == 6
    assert remapper.num_internal() == 4
    for internal in range(remapper.num_internal()):
        assert remapper.e2i(remapper.i2e(internal)) == internal
    for external in np.flatnonzero(mask):
        assert remapper.i2e(remapper.e2i(external)) == external
    for external in np.flatnonzero(~mask):
        assert remapper.e2i(external) == IndexRemapper.invalid


def test_mask_remapper_preserves_order():
    remapper = IndexRemapper.from_mask([0, 1, 1, 0, 1])
    assert list(remapper.external_indices()) == [1, 2, 4]
    assert list(remapper.internal_mask()) == [False, True, True, False, True]


def test_to_external_fills_excluded_with_nan():
    remapper = IndexRemapper.from_mask([True, False, True])
    output = remapper.to_external(np.array([1.5, 2.5]))
    assert output[0] == 1.5
    assert np.isnan(output[1])
    assert output[2] == 2.5


def test_to_internal_selects_in_mask_values():
    remapper = IndexRemapper.from_mask([False, True, True])
    np.testing.assert_array_equal(remapper.to_internal(np.array([7, 8, 9])), [8, 9])


def test_size_mismatch_raises():
    remapper = IndexRemapper.from_mask([True, False, True])
    with pytest.raises(FixelDataError):
        remapper.to_internal(np.zeros(4))
    with pytest.raises(FixelDataError):
        remapper.to_external(np.zeros(3))


def test_out_of_range_index_raises():
    remapper = IndexRemapper(3)
    with pytest.raises(IndexError):
        remapper.e2i(3)
    with pytest.raises(IndexError):
        remapper.i2e(-1)
