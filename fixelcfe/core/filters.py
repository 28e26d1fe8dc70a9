"""Fixel data filtering pipelines (smoothing and connected components)."""

import logging
from pathlib import Path
from typing import Optional

from fixelcfe.config.defaults import ConnectConfig, SmoothingConfig
from fixelcfe.fixel.codec import load_matrix
from fixelcfe.fixel.filters import Connect, Smooth
from fixelcfe.fixel.index_remapper import IndexRemapper
from fixelcfe.io.fixel import load_fixel_data, load_fixel_index, load_fixel_mask, save_fixel_data
from fixelcfe.io.writers import write_fixel_output
from fixelcfe.utils.logging import timer


def run_smooth_pipeline(
    fixel_dir: Path,
    matrix: Path,
    in_data: Path,
    out_data: Path,
    config: Optional[SmoothingConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Smooth fixel data using connectivity and a Gaussian spatial kernel.

    Fixels outside the optional mask are neither used nor smoothed, and are
    written as NaN.

    Args:
        fixel_dir: Fixel template directory (provides fixel positions).
        matrix: Normalised fixel-fixel connectivity matrix.
        in_data: Input fixel data file.
        out_data: Output fixel data file.
        config: Smoothing parameters; defaults if None.
        logger: Logger instance. If None, uses the module logger.

    Returns:
        Path of the smoothed data file.
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    if config is None:
        config = SmoothingConfig()
    config.validate()

    fixel_index = load_fixel_index(fixel_dir)
    num_fixels = fixel_index.num_fixels
    if config.mask is not None:
        index_remapper = IndexRemapper.from_mask(load_fixel_mask(config.mask, num_fixels))
    else:
        index_remapper = IndexRemapper(num_fixels)

    values = index_remapper.to_internal(load_fixel_data(in_data, num_fixels))
    connectivity = load_matrix(matrix, "norm", index_remapper)
    positions = fixel_index.fixel_positions()[index_remapper.external_indices()]

    with timer(logger, f"Smoothing fixel data (FWHM {config.fwhm} mm)"):
        smoother = Smooth(positions, connectivity, fwhm=config.fwhm, threshold=config.threshold)
        smoothed = smoother(values)

    out_data = write_fixel_output(out_data, smoothed, index_remapper)
    logger.info(f"Saved smoothed fixel data: {out_data}")
    return out_data


def run_connect_pipeline(
    matrix: Path,
    in_data: Path,
    out_data: Path,
    config: Optional[ConnectConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Label connected clusters of supra-threshold fixels.

    Args:
        matrix: Normalised fixel-fixel connectivity matrix.
        in_data: Input fixel data file.
        out_data: Output fixel data file of cluster labels.
        config: Thresholds; defaults if None.
        logger: Logger instance. If None, uses the module logger.

    Returns:
        Path of the label file.
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    if config is None:
        config = ConnectConfig()
    config.validate()

    connectivity = load_matrix(matrix, "norm")
    values = load_fixel_data(in_data, len(connectivity))

    labels = Connect(
        connectivity,
        value_threshold=config.value_threshold,
        connectivity_threshold=config.connectivity_threshold,
    )(values)
    logger.info(f"Found {int(labels.max(initial=0))} clusters of fixels above "
                f"{config.value_threshold}")

    out_data = save_fixel_data(out_data, labels)
    logger.info(f"Saved fixel cluster labels: {out_data}")
    return out_data
