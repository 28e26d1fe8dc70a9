"""Figures saved alongside cfestats results.

Two figures are produced: the design matrix (subjects by factors) and, per
hypothesis, the histogram of the permutation null distribution of the
maximum enhanced statistic.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

logger = logging.getLogger(__name__)

FIGURE_DPI = 150


def _save_figure(fig: plt.Figure, output_path: Union[str, Path], what: str) -> None:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=FIGURE_DPI, bbox_inches="tight")
    logger.info(f"Saved {what} figure: {output_path}")


def plot_design_matrix(
    design_matrix: np.ndarray,
    column_names: Optional[List[str]] = None,
    output_path: Optional[Path] = None,
    title: str = "Design matrix",
    cmap: str = "RdBu_r",
) -> plt.Figure:
    """Draw the design matrix as a heatmap centred on zero.

    Args:
        design_matrix: (subjects, factors) matrix.
        column_names: Factor labels; defaults to "column 1", "column 2", ...
        output_path: PNG file to write, if any.
        title: Figure title.
        cmap: Diverging colormap.

    Returns:
        The figure.
    """
    design_matrix = np.atleast_2d(np.asarray(design_matrix, dtype=np.float64))
    num_subjects, num_factors = design_matrix.shape
    if column_names is None:
        column_names = [f"column {i + 1}" for i in range(num_factors)]

    # Height scales with the number of subjects
    height = min(20.0, max(4.0, 0.25 * num_subjects))
    fig, ax = plt.subplots(figsize=(max(4.0, 1.2 * num_factors + 2.0), height))
    sns.heatmap(design_matrix, ax=ax, cmap=cmap, center=0,
                xticklabels=column_names,
                yticklabels=list(range(1, num_subjects + 1)),
                cbar_kws={"label": "Value"})
    ax.set_title(title, fontweight="bold")
    ax.set_xlabel("Factor")
    ax.set_ylabel("Subject")
    ax.tick_params(axis="x", labelrotation=45)
    fig.tight_layout()

    if output_path:
        _save_figure(fig, output_path, "design matrix")
    return fig


def plot_null_distribution(
    null_distribution: np.ndarray,
    observed_max: Optional[float] = None,
    output_path: Optional[Path] = None,
    title: str = "Null distribution",
    figsize: Tuple[float, float] = (8, 5),
) -> plt.Figure:
    """Histogram of the maximum enhanced statistic over shuffles.

    ``observed_max``, the largest enhanced statistic of the unshuffled data,
    is marked with a dashed line.
    """
    values = np.ravel(np.asarray(null_distribution, dtype=np.float64))
    bins = int(np.clip(values.size // 20, 10, 50))

    fig, ax = plt.subplots(figsize=figsize)
    sns.histplot(values, ax=ax, bins=bins, color=sns.color_palette("viridis", 3)[1])
    if observed_max is not None:
        ax.axvline(observed_max, color="red", linestyle="--",
                   label=f"Observed max = {observed_max:.3g}")
        ax.legend()
    ax.set_title(title, fontweight="bold")
    ax.set_xlabel("Maximum enhanced statistic")
    ax.set_ylabel("Shuffles")
    fig.tight_layout()

    if output_path:
        _save_figure(fig, output_path, "null distribution")
    return fig


def close_all_figures() -> None:
    plt.close("all")
