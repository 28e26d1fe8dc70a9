"""Core pipeline orchestration for fixelcfe."""

from fixelcfe.core.version import __version__
from fixelcfe.core.connectivity import run_connectivity_pipeline
from fixelcfe.core.stats import run_cfestats_pipeline
from fixelcfe.core.filters import run_smooth_pipeline, run_connect_pipeline

__all__ = [
    "__version__",
    "run_connectivity_pipeline",
    "run_cfestats_pipeline",
    "run_smooth_pipeline",
    "run_connect_pipeline",
]
