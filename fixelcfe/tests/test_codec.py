import os
import tempfile

import numpy as np
import pytest

from fixelcfe.fixel.codec import load_matrix, parse_line, save_matrix
from fixelcfe.fixel.index_remapper import IndexRemapper
from fixelcfe.fixel.matrix import InitFixel, NormFixel
from fixelcfe.utils.exceptions import FixelDataError, MatrixFormatError


def test_norm_matrix_save_and_load():
    matrix = [
        NormFixel([0, 2], [1.0, 0.123456789]),
        NormFixel(),
        NormFixel([1, 2], [0.3, 1.0 / 3.0]),
    ]
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, 'matrix.txt')
        save_matrix(matrix, path)
        with open(path) as f:
            lines = f.read().split('\n')
        assert len(lines) == 4 and lines[1] == '' and lines[3] == ''

        loaded = load_matrix(path, 'norm', IndexRemapper(3))

    assert len(loaded) == 3
    for original, restored in zip(matrix, loaded):
        np.testing.assert_array_equal(original.indices, restored.indices)
        np.testing.assert_array_equal(original.values, restored.values)


def test_init_matrix_save_and_load():
    fixel = InitFixel()
    fixel.add([0, 1])
    fixel.add([0, 2])
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, 'init.txt')
        save_matrix([fixel, InitFixel(), InitFixel()], path)
        loaded = load_matrix(path, 'init')

    assert loaded[0].indices == [0, 1, 2]
    assert loaded[0].counts == [2, 1, 1]
    assert loaded[0].count() == 2
    assert len(loaded[1]) == 0


def test_parse_line_errors_report_token():
    with pytest.raises(MatrixFormatError) as info:
        parse_line('0:1.0,3', 'norm', line_number=7)
    assert info.value.reason == 'unpaired'
    assert info.value.token == '3'
    assert info.value.line_number == 7
    assert 'line 7' in str(info.value)

    with pytest.raises(MatrixFormatError) as info:
        parse_line('0:abc', 'norm')
    assert info.value.reason == 'conversion'

    with pytest.raises(MatrixFormatError) as info:
        parse_line('0:1.5', 'init')
    assert info.value.reason == 'conversion'

    with pytest.raises(MatrixFormatError) as info:
        parse_line('0:1.0,5:0.5', 'norm', IndexRemapper(3))
    assert info.value.reason == 'index out of range'
    assert info.value.token == '5:0.5'


def test_load_with_mask_remaps_and_skips():
    remapper = IndexRemapper.from_mask([True, False, True])
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, 'matrix.txt')
        with open(path, 'w') as f:
            # Line of the excluded fixel is malformed but must not be parsed
            f.write('0:0.5,1:0.25,2:0.25\nnot a matrix line\n1:0.5,2:0.5\n')
        loaded = load_matrix(path, 'norm', remapper)

    assert len(loaded) == 2
    assert list(loaded[0].indices) == [0, 1]
    np.testing.assert_allclose(loaded[0].values, [0.5, 0.25])
    assert list(loaded[1].indices) == [1]


def test_load_line_count_mismatch():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, 'matrix.txt')
        with open(path, 'w') as f:
            f.write('0:1\n1:1\n')
        with pytest.raises(FixelDataError):
            load_matrix(path, 'norm', IndexRemapper(3))
        with pytest.raises(FixelDataError):
            load_matrix(path, 'norm', IndexRemapper(1))


def test_load_missing_file():
    with pytest.raises(FileNotFoundError):
        load_matrix('/nonexistent/matrix.txt')


def test_parse_line_rejects_values_out_of_range():
    cases = [
        ('0:nan,1:0.5', 'norm', '0:nan'),
        ('0:0.5,1:inf', 'norm', '1:inf'),
        ('1:-0.25', 'norm', '1:-0.25'),
        ('0:0.5,2:1.5', 'norm', '2:1.5'),
        ('0:3,1:-3', 'init', '1:-3'),
    ]
    for line, kind, token in cases:
        with pytest.raises(MatrixFormatError) as info:
            parse_line(line, kind, IndexRemapper(3), line_number=2)
        assert info.value.reason == 'value out of range'
        assert info.value.token == token
        assert info.value.line_number == 2


def test_parse_line_rejects_duplicate_targets():
    for kind in ('norm', 'init'):
        with pytest.raises(MatrixFormatError) as info:
            parse_line('0:1,2:1,0:1', kind)
        assert info.value.reason == 'duplicate index'
        assert info.value.token == '0:1'


def test_parse_line_accepts_weight_bounds():
    fixel = parse_line('0:0,1:1.0,2:0.5', 'norm')
    np.testing.assert_array_equal(fixel.values, [0.0, 1.0, 0.5])


def test_load_aborts_on_non_finite_weight():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, 'matrix.txt')
        with open(path, 'w') as f:
            f.write('0:nan,1:0.5\n0:0.5,1:0.5\n1:-3\n')
        with pytest.raises(MatrixFormatError) as info:
            load_matrix(path, 'norm', IndexRemapper(3))
    assert info.value.line_number == 1
    assert info.value.token == '0:nan'
