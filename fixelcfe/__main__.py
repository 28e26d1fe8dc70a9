"""Entry point of the ``fixelcfe`` command: builds the run configuration and dispatches."""

import sys
from dataclasses import asdict
from typing import Any, Dict, Optional

from fixelcfe.cli import cli_overrides, create_parser
from fixelcfe.config.defaults import (
    ConnectConfig,
    ConnectivityConfig,
    SmoothingConfig,
    StatsConfig,
)
from fixelcfe.config.loader import config_from_dict, load_config_file, merge_configs
from fixelcfe.core.connectivity import run_connectivity_pipeline
from fixelcfe.core.filters import run_connect_pipeline, run_smooth_pipeline
from fixelcfe.core.stats import run_cfestats_pipeline
from fixelcfe.core.version import __version__
from fixelcfe.utils.logging import log_section, setup_logging

CONNECTIVITY_OPTIONS = ("angle_threshold", "connectivity_threshold", "upsample_step",
                        "batch_size", "n_jobs")
CFE_OPTIONS = ("dh", "e", "h", "c", "legacy", "integrate")
PERMUTATION_OPTIONS = ("notest", "nshuffles", "errors", "exchange_within", "exchange_whole",
                       "permutations_file", "strong", "nonstationarity",
                       "nshuffles_nonstationarity", "skew_nonstationarity", "random_state",
                       "n_jobs")
STATS_OPTIONS = ("mask", "columns", "ftests", "fonly", "save_plots")
SMOOTHING_OPTIONS = ("fwhm", "threshold", "mask")
CONNECT_OPTIONS = ("value_threshold", "connectivity_threshold")


def build_config(config_class, file_values: Optional[Dict[str, Any]],
                 overrides: Dict[str, Any]):
    """Defaults, overridden by config file values, overridden by command-line values."""
    values = asdict(config_class())
    if file_values:
        values = merge_configs(values, file_values)
    values = merge_configs(values, overrides)
    return config_from_dict(values, config_class)


def _run_connectivity(args, file_values, logger):
    config = build_config(ConnectivityConfig, file_values,
                          cli_overrides(args, CONNECTIVITY_OPTIONS))
    run_connectivity_pipeline(fixel_dir=args.fixel_dir, tracks=args.tracks,
                              matrix_out=args.matrix_out, config=config, mask=args.mask,
                              init_out=args.init_out, logger=logger)


def _run_cfestats(args, file_values, logger):
    overrides = cli_overrides(args, STATS_OPTIONS)
    overrides["cfe"] = cli_overrides(args, CFE_OPTIONS)
    overrides["permutation"] = cli_overrides(args, PERMUTATION_OPTIONS)
    config = build_config(StatsConfig, file_values, overrides)
    run_cfestats_pipeline(fixel_dir=args.fixel_dir, subjects=args.subjects,
                          design=args.design, contrast=args.contrast, matrix=args.matrix,
                          output_dir=args.output_dir, config=config, logger=logger)


def _run_smooth(args, file_values, logger):
    config = build_config(SmoothingConfig, file_values, cli_overrides(args, SMOOTHING_OPTIONS))
    run_smooth_pipeline(fixel_dir=args.fixel_dir, matrix=args.matrix, in_data=args.in_data,
                        out_data=args.out_data, config=config, logger=logger)


def _run_connect(args, file_values, logger):
    config = build_config(ConnectConfig, file_values, cli_overrides(args, CONNECT_OPTIONS))
    run_connect_pipeline(matrix=args.matrix, in_data=args.in_data, out_data=args.out_data,
                         config=config, logger=logger)


COMMANDS = {
    "connectivity": _run_connectivity,
    "cfestats": _run_cfestats,
    "smooth": _run_smooth,
    "connect": _run_connect,
}


def main():
    """Parse the command line, run the requested command and exit with 1 on failure."""
    args = create_parser().parse_args()
    logger = setup_logging(verbose=args.verbose, log_file=args.log_file)
    log_section(logger, f"fixelcfe v{__version__}: {args.command}")

    try:
        file_values = None
        if args.config:
            logger.info(f"Reading parameters from {args.config}")
            file_values = load_config_file(args.config)
        COMMANDS[args.command](args, file_values, logger)
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        if args.verbose:
            logger.exception("Traceback:")
        sys.exit(1)

    logger.info(f"{args.command} finished")


if __name__ == "__main__":
    main()
