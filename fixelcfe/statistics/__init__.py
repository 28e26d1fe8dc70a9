"""Statistical analysis: GLM, shuffling, enhancement and permutation testing."""

from fixelcfe.statistics.hypothesis import Hypothesis, load_hypotheses, check_design
from fixelcfe.statistics.glm import (
    GLMStats,
    all_stats,
    solve_betas,
    stdev,
    CohortDataImport,
    TestFixed,
    TestVariable,
)
from fixelcfe.statistics.shuffle import Shuffler, load_permutations
from fixelcfe.statistics.cfe import CFE, precondition_matrix
from fixelcfe.statistics.permutation import (
    PermutationResult,
    precompute_empirical_stat,
    precompute_default_permutation,
    run_permutations,
    fwe_pvalue,
)

__all__ = [
    # GLM
    "Hypothesis",
    "load_hypotheses",
    "check_design",
    "GLMStats",
    "all_stats",
    "solve_betas",
    "stdev",
    "CohortDataImport",
    "TestFixed",
    "TestVariable",
    # Shuffling
    "Shuffler",
    "load_permutations",
    # Enhancement
    "CFE",
    "precondition_matrix",
    # Permutation testing
    "PermutationResult",
    "precompute_empirical_stat",
    "precompute_default_permutation",
    "run_permutations",
    "fwe_pvalue",
]
