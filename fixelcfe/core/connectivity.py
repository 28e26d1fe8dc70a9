"""Connectivity pipeline orchestration.

Builds the fixel-fixel connectivity matrix of a fixel template from a
whole-brain tractogram, then thresholds and normalises it.
"""

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from fixelcfe.config.defaults import ConnectivityConfig
from fixelcfe.fixel.builder import generate_matrix
from fixelcfe.fixel.codec import save_matrix
from fixelcfe.fixel.matrix import normalise_matrix
from fixelcfe.fixel.tracks import iter_streamlines, streamline_count
from fixelcfe.io.fixel import load_directions, load_fixel_index, load_fixel_mask
from fixelcfe.utils.logging import log_config, log_section, timer
from fixelcfe.utils.validation import validate_dir_exists, validate_file_exists


def run_connectivity_pipeline(
    fixel_dir: Path,
    tracks: Path,
    matrix_out: Path,
    config: Optional[ConnectivityConfig] = None,
    mask: Optional[Path] = None,
    init_out: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Generate and save the normalised fixel-fixel connectivity matrix.

    Steps:
    1. Load the fixel template (index and directions) and optional mask
    2. Assign every streamline to the fixels it traverses
    3. Optionally save the initial (streamline count) matrix
    4. Threshold and normalise the matrix
    5. Save the normalised matrix

    Args:
        fixel_dir: Fixel template directory.
        tracks: Whole-brain tractogram (.tck or .trk).
        matrix_out: Output path of the normalised matrix.
        config: Connectivity parameters; defaults if None.
        mask: Optional fixel mask; streamlines are only assigned to fixels
            inside it.
        init_out: Optional output path of the initial matrix.
        logger: Logger instance. If None, uses the module logger.

    Returns:
        Path of the normalised matrix.

    Raises:
        FixelDataError: If the template or mask is invalid.
        ConnectivityError: If matrix construction fails.
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    if config is None:
        config = ConnectivityConfig()
    config.validate()

    fixel_dir = Path(fixel_dir)
    tracks = Path(tracks)
    validate_dir_exists(fixel_dir, "fixel directory")
    validate_file_exists(tracks, "track file")

    log_config(logger, asdict(config), "Connectivity configuration")

    with timer(logger, "Fixel connectivity"):
        log_section(logger, "Fixel template")
        fixel_index = load_fixel_index(fixel_dir)
        directions = load_directions(fixel_dir, fixel_index.num_fixels)
        logger.info(f"Fixel template: {fixel_index.num_fixels} fixels in "
                    f"{int((fixel_index.counts > 0).sum())} voxels")

        fixel_mask = None
        if mask is not None:
            fixel_mask = load_fixel_mask(mask, fixel_index.num_fixels)
            logger.info(f"Fixel mask: {int(fixel_mask.sum())} of {fixel_mask.size} fixels")

        log_section(logger, "Streamline assignment")
        init_matrix = generate_matrix(
            iter_streamlines(tracks),
            fixel_index,
            directions,
            mask=fixel_mask,
            angle_threshold=config.angle_threshold,
            upsample_step=config.upsample_step,
            n_jobs=config.n_jobs,
            batch_size=config.batch_size,
            num_streamlines=streamline_count(tracks),
        )

        if init_out is not None:
            save_matrix(init_matrix, init_out)
            logger.info(f"Saved initial connectivity matrix: {init_out}")

        log_section(logger, "Normalisation")
        norm_matrix = normalise_matrix(
            init_matrix,
            config.connectivity_threshold,
            self_connect_isolated=config.self_connect_isolated,
            n_jobs=config.n_jobs,
        )

        matrix_out = save_matrix(norm_matrix, matrix_out)
        logger.info(f"Saved normalised connectivity matrix: {matrix_out}")

    return matrix_out
