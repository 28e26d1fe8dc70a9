import json
import os
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from fixelcfe.config.defaults import (
    CFEConfig,
    ConnectConfig,
    ConnectivityConfig,
    PermutationConfig,
    SmoothingConfig,
    StatsConfig,
)
from fixelcfe.core.connectivity import run_connectivity_pipeline
from fixelcfe.core.filters import run_connect_pipeline, run_smooth_pipeline
from fixelcfe.core.stats import run_cfestats_pipeline
from fixelcfe.fixel.codec import load_matrix, save_matrix
from fixelcfe.io.fixel import load_fixel_data, save_fixel_data
from fixelcfe.tests.tools import (
    chain_matrix,
    make_crossing_template,
    write_cohort,
    write_text_matrix,
    write_tracks,
)

X_FIXELS = [0, 2, 4, 6, 8]


def test_connectivity_pipeline():
    with tempfile.TemporaryDirectory() as temp_dir:
        fixel_dir = make_crossing_template(os.path.join(temp_dir, 'template'))
        tracks = write_tracks(Path(temp_dir) / 'tracks.tck', [
            [[-0.4, 0.0, 0.0], [2.0, 0.0, 0.0], [4.4, 0.0, 0.0]],
            [[2.0, -0.4, 0.0], [2.0, 0.4, 0.0]],
        ])
        matrix_out = Path(temp_dir) / 'matrix' / 'matrix.txt'
        init_out = Path(temp_dir) / 'init.txt'

        result = run_connectivity_pipeline(
            fixel_dir, tracks, matrix_out,
            config=ConnectivityConfig(connectivity_threshold=0.01),
            init_out=init_out,
        )
        assert result == matrix_out
        matrix = load_matrix(matrix_out, 'norm')
        init = load_matrix(init_out, 'init')

    assert len(matrix) == 10
    for fixel in X_FIXELS:
        assert list(matrix[fixel].indices) == X_FIXELS
        np.testing.assert_allclose(matrix[fixel].values, np.ones(5))
        assert init[fixel].counts == [1] * 5
    for fixel in (1, 3, 5, 7, 9):
        assert list(matrix[fixel].indices) == [fixel]
        np.testing.assert_allclose(matrix[fixel].values, [1.0])
    assert init[5].indices == [5]
    assert len(init[1]) == 0


def test_connectivity_pipeline_with_mask():
    with tempfile.TemporaryDirectory() as temp_dir:
        fixel_dir = make_crossing_template(os.path.join(temp_dir, 'template'))
        tracks = write_tracks(Path(temp_dir) / 'tracks.tck',
                              [[[-0.4, 0.0, 0.0], [4.4, 0.0, 0.0]]])
        mask = np.ones(10)
        mask[4] = 0.0
        mask_path = save_fixel_data(Path(temp_dir) / 'mask.nii.gz', mask)

        matrix_out = run_connectivity_pipeline(fixel_dir, tracks, Path(temp_dir) / 'matrix.txt',
                                               mask=mask_path)
        matrix = load_matrix(matrix_out, 'norm')

    assert list(matrix[0].indices) == [0, 2, 6, 8]
    assert list(matrix[4].indices) == [4]


def write_stats_inputs(temp_dir, data, design, contrast, ftests=None):
    fixel_dir = make_crossing_template(os.path.join(temp_dir, 'template'))
    subjects = write_cohort(fixel_dir, data, os.path.join(temp_dir, 'subjects.txt'))
    design_path = write_text_matrix(os.path.join(temp_dir, 'design.txt'), design)
    contrast_path = write_text_matrix(os.path.join(temp_dir, 'contrast.txt'), contrast)
    matrix_path = save_matrix(chain_matrix(10, X_FIXELS), os.path.join(temp_dir, 'matrix.txt'))
    ftests_path = None
    if ftests is not None:
        ftests_path = Path(write_text_matrix(os.path.join(temp_dir, 'ftests.txt'), ftests))
    return fixel_dir, subjects, design_path, contrast_path, matrix_path, ftests_path


def test_cfestats_one_sample():
    rng = np.random.default_rng(0)
    data = rng.normal(0.0, 1.0, size=(8, 10))
    data[:, X_FIXELS] += 2.0
    # Fixel data files store single precision
    data = data.astype(np.float32).astype(np.float64)

    with tempfile.TemporaryDirectory() as temp_dir:
        fixel_dir, subjects, design, contrast, matrix, _ = write_stats_inputs(
            temp_dir, data, np.ones((8, 1)), np.array([[1.0]]))
        mask = np.ones(10)
        mask[9] = 0.0
        mask_path = save_fixel_data(os.path.join(temp_dir, 'mask.nii.gz'), mask)
        output_dir = Path(temp_dir) / 'stats'

        config = StatsConfig(
            mask=mask_path,
            save_plots=False,
            permutation=PermutationConfig(nshuffles=20, errors='ise', random_state=0),
        )
        outputs = run_cfestats_pipeline(fixel_dir, subjects, design, contrast, matrix,
                                        output_dir, config=config)

        for name in ('index.nii.gz', 'directions.nii.gz', 'beta0.nii.gz',
                     'abs_effect.nii.gz', 'std_effect.nii.gz', 'std_dev.nii.gz',
                     'tvalue.nii.gz', 'cfe.nii.gz', 'fwe_pvalue.nii.gz',
                     'uncorrected_pvalue.nii.gz', 'null_contributions.nii.gz',
                     'null_dist.txt', 'results_summary.tsv', 'cfestats_config.json'):
            assert (output_dir / name).exists(), name
        assert not (output_dir / 'cond.nii.gz').exists()
        assert len(outputs['pvalues']) == 3

        tvalues = load_fixel_data(output_dir / 'tvalue.nii.gz', 10)
        fwe = load_fixel_data(output_dir / 'fwe_pvalue.nii.gz', 10)
        null = np.loadtxt(output_dir / 'null_dist.txt')
        summary = pd.read_csv(output_dir / 'results_summary.tsv', sep='\t')
        with open(output_dir / 'cfe.json') as f:
            sidecar = json.load(f)

    expected = stats.ttest_1samp(data[:, :9], 0.0).statistic
    np.testing.assert_allclose(tvalues[:9], expected, rtol=1e-5)
    assert np.isnan(tvalues[9])
    assert null.shape == (20,)
    assert np.all((fwe[:9] > 0.0) & (fwe[:9] <= 1.0))
    np.testing.assert_array_equal(fwe[[1, 3, 5, 7]], [1.0] * 4)
    assert np.isnan(fwe[9])
    assert list(summary['hypothesis']) == ['t1']
    assert sidecar['CFE']['E'] == 2.0


def test_cfestats_variable_design_strong_control():
    rng = np.random.default_rng(1)
    data = rng.normal(0.0, 1.0, size=(8, 10))
    data[4:, X_FIXELS] += 1.5
    data[2, 3] = np.nan
    data = data.astype(np.float32).astype(np.float64)
    design = np.zeros((8, 2))
    design[:4, 0] = 1.0
    design[4:, 1] = 1.0

    with tempfile.TemporaryDirectory() as temp_dir:
        fixel_dir, subjects, design_path, contrast, matrix, ftests = write_stats_inputs(
            temp_dir, data, design, np.array([[-1.0, 1.0]]), ftests=np.array([[1.0]]))
        output_dir = Path(temp_dir) / 'stats'

        config = StatsConfig(
            ftests=ftests,
            cfe=CFEConfig(e=1.0, h=2.0, c=0.5),
            permutation=PermutationConfig(nshuffles=10, nonstationarity=True,
                                          nshuffles_nonstationarity=10, strong=True,
                                          random_state=3),
        )
        run_cfestats_pipeline(fixel_dir, subjects, design_path, contrast, matrix,
                              output_dir, config=config)

        for name in ('tvalue_t1.nii.gz', 'Fvalue_F2.nii.gz', 'cfe_t1.nii.gz', 'cfe_F2.nii.gz',
                     'cfe_empirical_t1.nii.gz', 'cfe_empirical_F2.nii.gz',
                     'abs_effect_t1.nii.gz', 'cond.nii.gz', 'beta0.nii.gz', 'beta1.nii.gz',
                     'fwe_pvalue_t1.nii.gz', 'fwe_pvalue_F2.nii.gz', 'null_dist.txt',
                     'design_matrix.png', 'null_dist_t1.png', 'null_dist_F2.png'):
            assert (output_dir / name).exists(), name
        assert not (output_dir / 'abs_effect_F2.nii.gz').exists()
        assert not (output_dir / 'null_dist_t1.txt').exists()

        tvalues = load_fixel_data(output_dir / 'tvalue_t1.nii.gz', 10)
        fvalues = load_fixel_data(output_dir / 'Fvalue_F2.nii.gz', 10)

    keep = np.ones(8, dtype=bool)
    keep[2] = False
    column = data[:, 3]
    expected = stats.ttest_ind(column[4:], column[:4][keep[:4]]).statistic
    assert tvalues[3] == pytest.approx(expected, rel=1e-5)
    np.testing.assert_allclose(fvalues, tvalues ** 2, rtol=1e-4)


def test_cfestats_notest():
    data = np.random.default_rng(2).normal(1.0, 1.0, size=(6, 10))
    with tempfile.TemporaryDirectory() as temp_dir:
        fixel_dir, subjects, design, contrast, matrix, _ = write_stats_inputs(
            temp_dir, data, np.ones((6, 1)), np.array([[1.0]]))
        output_dir = Path(temp_dir) / 'stats'
        config = StatsConfig(save_plots=False, permutation=PermutationConfig(notest=True))

        outputs = run_cfestats_pipeline(fixel_dir, subjects, design, contrast, matrix,
                                        output_dir, config=config)

        assert (output_dir / 'cfe.nii.gz').exists()
        assert not (output_dir / 'fwe_pvalue.nii.gz').exists()
        assert outputs['pvalues'] == []


def test_cfestats_design_mismatch():
    data = np.zeros((6, 10))
    with tempfile.TemporaryDirectory() as temp_dir:
        fixel_dir, subjects, _, contrast, matrix, _ = write_stats_inputs(
            temp_dir, data, np.ones((6, 1)), np.array([[1.0]]))
        design = write_text_matrix(os.path.join(temp_dir, 'short.txt'), np.ones((5, 1)))
        with pytest.raises(Exception, match='does not match'):
            run_cfestats_pipeline(fixel_dir, subjects, design, contrast, matrix,
                                  Path(temp_dir) / 'stats',
                                  config=StatsConfig(save_plots=False))


def test_smooth_pipeline():
    values = np.full(10, 2.0)
    values[[1, 3, 5, 7, 9]] = [1.0, 3.0, 5.0, 7.0, 9.0]
    with tempfile.TemporaryDirectory() as temp_dir:
        fixel_dir = make_crossing_template(os.path.join(temp_dir, 'template'))
        matrix = save_matrix(chain_matrix(10, X_FIXELS), os.path.join(temp_dir, 'matrix.txt'))
        in_data = save_fixel_data(os.path.join(temp_dir, 'fd.nii.gz'), values)
        mask = np.ones(10)
        mask[9] = 0.0
        mask_path = save_fixel_data(os.path.join(temp_dir, 'mask.nii.gz'), mask)

        out_data = run_smooth_pipeline(fixel_dir, matrix, in_data,
                                       Path(temp_dir) / 'fd_smooth.nii.gz',
                                       config=SmoothingConfig(mask=mask_path))
        smoothed = load_fixel_data(out_data, 10)

    np.testing.assert_allclose(smoothed[:9], values[:9], rtol=1e-6)
    assert np.isnan(smoothed[9])


def test_connect_pipeline():
    values = np.zeros(10)
    values[[0, 2, 6, 8, 5]] = 1.0
    with tempfile.TemporaryDirectory() as temp_dir:
        matrix = save_matrix(chain_matrix(10, X_FIXELS), os.path.join(temp_dir, 'matrix.txt'))
        in_data = save_fixel_data(os.path.join(temp_dir, 'values.nii.gz'), values)

        out_data = run_connect_pipeline(matrix, in_data, Path(temp_dir) / 'labels.nii.gz',
                                        config=ConnectConfig(value_threshold=0.5))
        labels = load_fixel_data(out_data, 10)

    np.testing.assert_array_equal(labels, [1, 0, 1, 0, 0, 3, 2, 0, 2, 0])
