import numpy as np
import pytest
from scipy import stats

from fixelcfe.statistics.glm import (
    CohortDataImport,
    TestFixed,
    TestVariable,
    all_stats,
    stdev,
)
from fixelcfe.statistics import glm
from fixelcfe.statistics.hypothesis import check_design, hypotheses_from_matrix
from fixelcfe.utils.exceptions import StatisticalError


def random_data(num_elements=6, num_subjects=12, seed=0):
    rng = np.random.default_rng(seed)
    return rng.normal(0.3, 1.0, size=(num_elements, num_subjects))


def two_group_design(num_subjects=12):
    group = np.zeros(num_subjects)
    group[num_subjects // 2:] = 1.0
    return np.column_stack([1.0 - group, group]), group.astype(bool)


def test_one_sample_t_matches_scipy():
    Y = random_data()
    M = np.ones((Y.shape[1], 1))
    hypotheses = hypotheses_from_matrix(np.array([[1.0]]))

    tvalues = TestFixed(Y, M, hypotheses)(np.eye(Y.shape[1]))

    expected = stats.ttest_1samp(Y, 0.0, axis=1).statistic
    np.testing.assert_allclose(tvalues[:, 0], expected, rtol=1e-8)


def test_two_sample_t_matches_scipy():
    Y = random_data(seed=1)
    M, group = two_group_design(Y.shape[1])
    hypotheses = hypotheses_from_matrix(np.array([[1.0, -1.0]]))

    tvalues = TestFixed(Y, M, hypotheses)(np.eye(Y.shape[1]))

    expected = stats.ttest_ind(Y[:, ~group], Y[:, group], axis=1).statistic
    np.testing.assert_allclose(tvalues[:, 0], expected, rtol=1e-8)


def test_f_of_single_row_is_t_squared():
    Y = random_data(seed=2)
    M, _ = two_group_design(Y.shape[1])
    hypotheses = hypotheses_from_matrix(np.array([[1.0, -1.0]]), ftests=np.array([[1.0]]))
    assert [h.name for h in hypotheses] == ['t1', 'F2']

    result = TestFixed(Y, M, hypotheses)(np.eye(Y.shape[1]))

    np.testing.assert_allclose(result[:, 1], result[:, 0] ** 2, rtol=1e-8)
    assert np.all(result[:, 1] >= 0.0)


def test_shuffled_statistic_uses_permuted_residuals():
    Y = random_data(seed=3)
    M, group = two_group_design(Y.shape[1])
    hypotheses = hypotheses_from_matrix(np.array([[1.0, -1.0]]))
    permutation = np.random.default_rng(0).permutation(Y.shape[1])
    shuffle = np.eye(Y.shape[1])[permutation]

    result = TestFixed(Y, M, hypotheses)(shuffle)

    # No nuisance columns, so shuffling the data equals relabelling the groups
    shuffled = Y[:, permutation]
    expected = stats.ttest_ind(shuffled[:, ~group], shuffled[:, group], axis=1).statistic
    np.testing.assert_allclose(result[:, 0], expected, rtol=1e-8)


def test_non_finite_statistic_is_zero():
    Y = np.vstack([np.zeros(8), np.arange(8.0)])
    M = np.ones((8, 1))
    hypotheses = hypotheses_from_matrix(np.array([[1.0]]))

    result = TestFixed(Y, M, hypotheses)(np.eye(8))

    assert result[0, 0] == 0.0
    assert result[1, 0] > 0.0


def test_variable_matches_fixed_without_nans():
    Y = random_data(seed=4)
    M, _ = two_group_design(Y.shape[1])
    hypotheses = hypotheses_from_matrix(np.array([[1.0, -1.0]]), ftests=np.array([[1.0]]))
    shuffle = np.eye(Y.shape[1])[::-1]

    fixed = TestFixed(Y, M, hypotheses)(shuffle)
    variable = TestVariable([], Y, M, hypotheses)(shuffle)

    np.testing.assert_allclose(variable, fixed, rtol=1e-8, atol=1e-12)


def test_variable_excludes_non_finite_subjects():
    Y = random_data(seed=5)
    Y[2, 3] = np.nan
    M = np.ones((Y.shape[1], 1))
    hypotheses = hypotheses_from_matrix(np.array([[1.0]]))
    identity = np.eye(Y.shape[1])

    result = TestVariable([], Y, M, hypotheses, nans_in_data=True)(identity)

    keep = np.ones(Y.shape[1], dtype=bool)
    keep[3] = False
    expected = stats.ttest_1samp(Y[2, keep], 0.0).statistic
    np.testing.assert_allclose(result[2, 0], expected, rtol=1e-8)
    np.testing.assert_allclose(result[0, 0], stats.ttest_1samp(Y[0], 0.0).statistic, rtol=1e-8)


def test_variable_with_element_wise_column():
    Y = random_data(num_elements=4, seed=6)
    rng = np.random.default_rng(7)
    column = CohortDataImport(rng.normal(size=(Y.shape[1], Y.shape[0])), name='covariate')
    M = np.ones((Y.shape[1], 1))
    hypotheses = hypotheses_from_matrix(np.array([[0.0, 1.0]]))
    identity = np.eye(Y.shape[1])

    result = TestVariable([column], Y, M, hypotheses)(identity)

    for element in range(Y.shape[0]):
        design = np.column_stack([M, column(element)])
        expected = TestFixed(Y[element:element + 1], design, hypotheses)(identity)
        np.testing.assert_allclose(result[element], expected[0], rtol=1e-8)


def test_variable_column_shape_checked():
    Y = random_data(num_elements=4)
    column = CohortDataImport(np.zeros((Y.shape[1], 3)))
    hypotheses = hypotheses_from_matrix(np.array([[0.0, 1.0]]))
    with pytest.raises(StatisticalError):
        TestVariable([column], Y, np.ones((Y.shape[1], 1)), hypotheses)


def test_all_stats_fixed_design():
    Y = random_data(seed=8)
    M, group = two_group_design(Y.shape[1])
    hypotheses = hypotheses_from_matrix(np.array([[1.0, -1.0]]), ftests=np.array([[1.0]]))

    result = all_stats(Y, M, hypotheses)

    np.testing.assert_allclose(result.betas[:, 0], Y[:, ~group].mean(axis=1))
    np.testing.assert_allclose(result.betas[:, 1], Y[:, group].mean(axis=1))
    np.testing.assert_allclose(result.abs_effect_size[:, 0],
                               Y[:, ~group].mean(axis=1) - Y[:, group].mean(axis=1))
    assert np.all(np.isnan(result.abs_effect_size[:, 1]))
    np.testing.assert_allclose(result.std_effect_size[:, 0],
                               result.abs_effect_size[:, 0] / result.stdev)
    assert result.cond is None


def test_stdev_one_sample():
    Y = random_data(seed=9)
    np.testing.assert_allclose(stdev(Y, np.ones((Y.shape[1], 1))), Y.std(axis=1, ddof=1))


def test_all_stats_with_nans_fits_each_element():
    Y = random_data(seed=10)
    Y[1, 0] = np.nan
    M = np.ones((Y.shape[1], 1))
    hypotheses = hypotheses_from_matrix(np.array([[1.0]]))

    result = all_stats(Y, M, hypotheses)

    assert result.betas[1, 0] == pytest.approx(np.nanmean(Y[1]))
    assert result.stdev[1] == pytest.approx(np.nanstd(Y[1], ddof=1))
    assert result.cond is not None and np.all(np.isfinite(result.cond))


def test_hypothesis_validation():
    with pytest.raises(StatisticalError):
        hypotheses_from_matrix(np.array([[0.0, 0.0]]))
    with pytest.raises(StatisticalError):
        hypotheses_from_matrix(np.array([[1.0, 0.0]]), ftests=np.array([[1.0, 1.0]]))
    with pytest.raises(StatisticalError):
        hypotheses_from_matrix(np.array([[1.0, 0.0]]), fonly=True)
    with pytest.raises(StatisticalError):
        hypotheses_from_matrix(np.array([[1.0, 0.0]]), ftests=np.array([[2.0]]))


def test_check_design():
    hypotheses = hypotheses_from_matrix(np.array([[1.0, 0.0]]))
    assert check_design(np.column_stack([np.ones(6), np.arange(6.0)]),
                        hypotheses=hypotheses) > 1.0
    with pytest.raises(StatisticalError):
        check_design(np.ones((6, 1)), hypotheses=hypotheses)
    with pytest.raises(StatisticalError):
        check_design(np.ones((2, 2)))


def test_base_strategy_is_abstract():
    hypotheses = hypotheses_from_matrix(np.array([[1.0]]))
    with pytest.raises(TypeError):
        glm.TestBase(random_data(), np.ones((12, 1)), hypotheses)

    fixed = TestFixed(random_data(), np.ones((12, 1)), hypotheses)
    assert isinstance(fixed, glm.TestBase)
