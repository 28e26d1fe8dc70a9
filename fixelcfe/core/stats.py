"""Fixel-based statistical analysis pipeline.

This module orchestrates whole-brain fixel-based analysis with
connectivity-based fixel enhancement (CFE) and non-parametric permutation
testing, from a fixel template, per-subject fixel data, a design matrix and
contrasts.
"""

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from fixelcfe.config.defaults import StatsConfig
from fixelcfe.config.loader import save_config
from fixelcfe.fixel.codec import load_matrix
from fixelcfe.fixel.index_remapper import IndexRemapper
from fixelcfe.io.fixel import copy_index_and_directions, load_fixel_index, load_fixel_mask
from fixelcfe.io.readers import (
    TABLE_EXTENSIONS,
    load_design_table,
    load_numeric_matrix,
    load_subject_list,
    load_vector,
)
from fixelcfe.io.writers import save_tsv, save_vector, write_fixel_output
from fixelcfe.statistics.cfe import CFE, precondition_matrix
from fixelcfe.statistics.glm import CohortDataImport, TestFixed, TestVariable, all_stats
from fixelcfe.statistics.hypothesis import Hypothesis, check_design, load_hypotheses
from fixelcfe.statistics.permutation import (
    fwe_pvalue,
    precompute_default_permutation,
    precompute_empirical_stat,
    run_permutations,
)
from fixelcfe.statistics.shuffle import Shuffler, load_permutations
from fixelcfe.utils.exceptions import FixelDataError, StatisticalError
from fixelcfe.utils.logging import log_config, log_section, log_warning_box, timer
from fixelcfe.utils.validation import validate_dir_exists, validate_file_exists
from fixelcfe.utils.visualization import (
    close_all_figures,
    plot_design_matrix,
    plot_null_distribution,
)

OUTPUT_EXTENSION = ".nii.gz"
FWE_ALPHA = 0.05


def _postfix(hypotheses: Sequence[Hypothesis], hypothesis: Hypothesis) -> str:
    return f"_{hypothesis.name}" if len(hypotheses) > 1 else ""


def _output(output_dir: Path, name: str) -> Path:
    return output_dir / f"{name}{OUTPUT_EXTENSION}"


def _load_design(path: Path):
    path = Path(path)
    if path.suffix.lower() in TABLE_EXTENSIONS:
        return load_design_table(path)
    design = load_numeric_matrix(path)
    return design, [f"column{i + 1}" for i in range(design.shape[1])]


def _build_shuffler(config: StatsConfig, num_subjects: int, nshuffles: int,
                    random_state: Optional[int], explicit: bool) -> Shuffler:
    permutation = config.permutation
    exchange_within = (load_vector(permutation.exchange_within)
                       if permutation.exchange_within is not None else None)
    exchange_whole = (load_vector(permutation.exchange_whole)
                      if permutation.exchange_whole is not None else None)
    permutations = None
    if explicit and permutation.permutations_file is not None:
        permutations = load_permutations(permutation.permutations_file, num_subjects)
    return Shuffler(
        num_subjects,
        nshuffles=nshuffles,
        errors=permutation.errors,
        exchange_within=exchange_within,
        exchange_whole=exchange_whole,
        permutations=permutations,
        random_state=random_state,
    )


def run_cfestats_pipeline(
    fixel_dir: Path,
    subjects: Path,
    design: Path,
    contrast: Path,
    matrix: Path,
    output_dir: Path,
    config: Optional[StatsConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, List[Path]]:
    """Run fixel-based analysis using CFE and non-parametric statistics.

    This function orchestrates:
    1. Copying the template index and directions to the output directory
    2. Loading the fixel mask, subject data, design matrix and hypotheses
    3. Loading and preconditioning the connectivity matrix
    4. Fitting the GLM and saving betas, effect sizes and standard deviation
    5. Optional non-stationarity correction (empirical statistic)
    6. Computing and enhancing the observed statistics
    7. Permutation testing for FWE-corrected and uncorrected p-values

    Args:
        fixel_dir: Fixel template directory; subject files are searched here.
        subjects: Text file listing one fixel data file per subject.
        design: Design matrix (one row per subject).
        contrast: Contrast matrix (one row per t-test).
        matrix: Normalised fixel-fixel connectivity matrix.
        output_dir: Output fixel directory.
        config: Analysis parameters; defaults if None.
        logger: Logger instance. If None, uses the module logger.

    Returns:
        Dictionary mapping output categories to lists of written files.

    Raises:
        StatisticalError: On inconsistent design, contrasts or data shapes.
        FixelDataError: On invalid fixel data or template mismatch.
        MatrixFormatError: On a malformed connectivity matrix.
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    if config is None:
        config = StatsConfig()
    config.validate()

    fixel_dir = Path(fixel_dir)
    output_dir = Path(output_dir)
    validate_dir_exists(fixel_dir, "fixel directory")
    for path, name in ((subjects, "subject list"), (design, "design matrix"),
                       (contrast, "contrast matrix"), (matrix, "connectivity matrix")):
        validate_file_exists(Path(path), name)

    cfe_config = config.cfe
    permutation_config = config.permutation
    log_config(logger, asdict(config), "Statistics configuration")

    outputs: Dict[str, List[Path]] = {
        'glm': [],
        'statistics': [],
        'pvalues': [],
        'null_distributions': [],
        'other': [],
    }

    with timer(logger, "Fixel-based analysis"):
        # === Step 1: Output directory ===
        log_section(logger, "Setup")
        outputs['other'].extend(copy_index_and_directions(fixel_dir, output_dir))
        fixel_index = load_fixel_index(fixel_dir)
        num_fixels = fixel_index.num_fixels

        if config.mask is not None:
            fixel_mask = load_fixel_mask(config.mask, num_fixels)
            index_remapper = IndexRemapper.from_mask(fixel_mask)
            logger.info(f"Fixel mask contains {index_remapper.num_internal()} of "
                        f"{num_fixels} fixels")
        else:
            index_remapper = IndexRemapper(num_fixels)

        # === Step 2: Inputs ===
        log_section(logger, "Inputs")
        subject_files = load_subject_list(subjects)
        num_subjects = len(subject_files)
        logger.info(f"Number of subjects: {num_subjects}")

        design_matrix, column_names = _load_design(design)
        if design_matrix.shape[0] != num_subjects:
            raise StatisticalError(
                f"Number of subjects ({num_subjects}) does not match number of rows "
                f"in design matrix ({design_matrix.shape[0]})"
            )

        extra_columns = []
        for column_path in config.columns:
            column = CohortDataImport.from_files(column_path, fixel_dir, index_remapper)
            if len(column) != num_subjects:
                raise StatisticalError(
                    f"Number of subjects in element-wise column file {column_path} "
                    f"({len(column)}) does not match number of subjects ({num_subjects})"
                )
            extra_columns.append(column)
            column_names.append(Path(column_path).stem)
        nans_in_columns = any(not column.all_finite() for column in extra_columns)
        if extra_columns:
            logger.info(f"Number of element-wise design matrix columns: {len(extra_columns)}"
                        + (" (non-finite values present)" if nans_in_columns else ""))

        hypotheses = load_hypotheses(contrast, config.ftests, config.fonly)
        check_design(design_matrix, len(extra_columns), hypotheses)
        logger.info(f"Hypotheses: {', '.join(h.name for h in hypotheses)}")
        if permutation_config.strong and len(hypotheses) == 1:
            logger.warning("Option for strong FWE control has no effect with a single hypothesis")

        # === Step 3: Connectivity ===
        log_section(logger, "Connectivity matrix")
        norm_matrix = load_matrix(matrix, "norm", index_remapper)
        if len(norm_matrix) != index_remapper.num_internal():
            raise FixelDataError(
                f"Connectivity matrix has {len(norm_matrix)} fixels, expected "
                f"{index_remapper.num_internal()}"
            )
        num_isolated = precondition_matrix(
            norm_matrix, cfe_config.c,
            normalise=not cfe_config.legacy,
            skip_isolated=cfe_config.skip_isolated,
        )
        if num_isolated:
            log_warning_box(
                logger,
                f"A total of {num_isolated} fixels do not possess any streamlines-based "
                f"connectivity; these will not be enhanced by CFE, and hence cannot be "
                f"tested for statistical significance",
            )
        enhancer = CFE(norm_matrix, e=cfe_config.e, h=cfe_config.h,
                       dh=cfe_config.dh, integrate=cfe_config.integrate)
        del norm_matrix

        # === Step 4: Subject data and GLM ===
        log_section(logger, "Subject data")
        cohort = CohortDataImport.from_files(subjects, fixel_dir, index_remapper)
        data = cohort.data.T
        nans_in_data = not cohort.all_finite()
        if nans_in_data:
            logger.info("Non-finite values present in data; subjects will be excluded "
                        "element by element")
        del cohort

        if config.save_plots:
            plot_design_matrix(design_matrix, column_names[:design_matrix.shape[1]],
                               output_path=output_dir / "design_matrix.png")

        log_section(logger, "GLM")
        with timer(logger, "Calculating basic properties of default permutation"):
            stats = all_stats(data, design_matrix, hypotheses, extra_columns)

        metadata = {
            "Subjects": num_subjects,
            "DesignColumns": column_names,
        }
        for factor in range(stats.betas.shape[1]):
            outputs['glm'].append(write_fixel_output(
                _output(output_dir, f"beta{factor}"), stats.betas[:, factor], index_remapper))
        for ih, hypothesis in enumerate(hypotheses):
            if hypothesis.is_f:
                continue
            postfix = _postfix(hypotheses, hypothesis)
            outputs['glm'].append(write_fixel_output(
                _output(output_dir, f"abs_effect{postfix}"), stats.abs_effect_size[:, ih],
                index_remapper))
            outputs['glm'].append(write_fixel_output(
                _output(output_dir, f"std_effect{postfix}"), stats.std_effect_size[:, ih],
                index_remapper))
        outputs['glm'].append(write_fixel_output(
            _output(output_dir, "std_dev"), stats.stdev, index_remapper))
        if stats.cond is not None:
            outputs['glm'].append(write_fixel_output(
                _output(output_dir, "cond"), stats.cond, index_remapper))

        if extra_columns or nans_in_data:
            test = TestVariable(extra_columns, data, design_matrix, hypotheses,
                                nans_in_data=nans_in_data, nans_in_columns=nans_in_columns)
        else:
            test = TestFixed(data, design_matrix, hypotheses)
        logger.debug(f"GLM test: {type(test).__name__}")

        cfe_metadata = dict(metadata, CFE={
            "E": cfe_config.e,
            "H": cfe_config.h,
            "C": cfe_config.c,
            "dh": cfe_config.dh,
            "legacy": cfe_config.legacy,
            "integrate": cfe_config.integrate,
        })

        # === Step 5: Non-stationarity ===
        empirical = None
        if permutation_config.nonstationarity:
            log_section(logger, "Non-stationarity adjustment")
            random_state = permutation_config.random_state
            empirical_shuffler = _build_shuffler(
                config, num_subjects, permutation_config.nshuffles_nonstationarity,
                None if random_state is None else random_state + 1, explicit=False,
            )
            empirical = precompute_empirical_stat(
                test, enhancer, empirical_shuffler,
                skew=permutation_config.skew_nonstationarity,
                n_jobs=permutation_config.n_jobs,
            )
            for ih, hypothesis in enumerate(hypotheses):
                outputs['statistics'].append(write_fixel_output(
                    _output(output_dir, f"cfe_empirical{_postfix(hypotheses, hypothesis)}"),
                    empirical[:, ih], index_remapper, cfe_metadata))

        # === Step 6: Default permutation ===
        log_section(logger, "Observed statistics")
        with timer(logger, "Running GLM and enhancement algorithm for default permutation"):
            default_stats, default_enhanced = precompute_default_permutation(
                test, enhancer, empirical)

        for ih, hypothesis in enumerate(hypotheses):
            postfix = _postfix(hypotheses, hypothesis)
            stat_name = "Fvalue" if hypothesis.is_f else "tvalue"
            outputs['statistics'].append(write_fixel_output(
                _output(output_dir, f"{stat_name}{postfix}"), default_stats[:, ih],
                index_remapper, dict(metadata, Hypothesis=hypothesis.name)))
            outputs['statistics'].append(write_fixel_output(
                _output(output_dir, f"cfe{postfix}"), default_enhanced[:, ih],
                index_remapper, dict(cfe_metadata, Hypothesis=hypothesis.name)))

        # === Step 7: Permutation testing ===
        summary = {
            "hypothesis": [h.name for h in hypotheses],
            "type": ["F" if h.is_f else "t" for h in hypotheses],
            "max_statistic": default_stats.max(axis=0, initial=0.0),
            "max_enhanced": default_enhanced.max(axis=0, initial=0.0),
        }

        if not permutation_config.notest:
            log_section(logger, "Permutation testing")
            shuffler = _build_shuffler(
                config, num_subjects, permutation_config.nshuffles,
                permutation_config.random_state, explicit=True,
            )
            result = run_permutations(
                test, enhancer, shuffler, empirical, default_enhanced,
                strong=permutation_config.strong, n_jobs=permutation_config.n_jobs,
            )

            if permutation_config.strong:
                outputs['null_distributions'].append(save_vector(
                    result.null_distribution[:, 0], output_dir / "null_dist.txt"))
            else:
                for ih, hypothesis in enumerate(hypotheses):
                    outputs['null_distributions'].append(save_vector(
                        result.null_distribution[:, ih],
                        output_dir / f"null_dist{_postfix(hypotheses, hypothesis)}.txt"))

            fwe = fwe_pvalue(result.null_distribution, default_enhanced)
            for ih, hypothesis in enumerate(hypotheses):
                postfix = _postfix(hypotheses, hypothesis)
                hypothesis_metadata = dict(cfe_metadata, Hypothesis=hypothesis.name,
                                           Shuffles=result.num_shuffles,
                                           StrongFWE=permutation_config.strong)
                outputs['pvalues'].append(write_fixel_output(
                    _output(output_dir, f"fwe_pvalue{postfix}"), fwe[:, ih],
                    index_remapper, hypothesis_metadata))
                outputs['pvalues'].append(write_fixel_output(
                    _output(output_dir, f"uncorrected_pvalue{postfix}"),
                    result.uncorrected_pvalues[:, ih], index_remapper, hypothesis_metadata))
                outputs['pvalues'].append(write_fixel_output(
                    _output(output_dir, f"null_contributions{postfix}"),
                    result.null_contributions[:, ih], index_remapper))

                if config.save_plots:
                    column = 0 if permutation_config.strong else ih
                    plot_null_distribution(
                        result.null_distribution[:, column],
                        observed_max=float(default_enhanced[:, ih].max(initial=0.0)),
                        output_path=output_dir / f"null_dist{postfix}.png",
                        title=f"Null distribution ({hypothesis.name})",
                    )

            summary["min_fwe_pvalue"] = fwe.min(axis=0, initial=1.0)
            summary[f"fixels_fwe_p<{FWE_ALPHA}"] = (fwe < FWE_ALPHA).sum(axis=0)
            for ih, hypothesis in enumerate(hypotheses):
                logger.info(
                    f"{hypothesis.name}: {int((fwe[:, ih] < FWE_ALPHA).sum())} fixels with "
                    f"FWE-corrected p < {FWE_ALPHA} (minimum p = {fwe[:, ih].min(initial=1.0):.4g})"
                )
        else:
            logger.info("Permutation testing skipped")

        if config.save_plots:
            close_all_figures()

        summary_path = output_dir / "results_summary.tsv"
        save_tsv(pd.DataFrame(summary), summary_path,
                 metadata={"Description": "Summary of fixel-based analysis results"})
        outputs['other'].append(summary_path)

        config_path = output_dir / "cfestats_config.json"
        save_config(config, config_path)
        outputs['other'].append(config_path)

    return outputs
