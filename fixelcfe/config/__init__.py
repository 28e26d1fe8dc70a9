"""Configuration management for fixelcfe."""

from fixelcfe.config.defaults import (
    ConnectivityConfig,
    CFEConfig,
    PermutationConfig,
    SmoothingConfig,
    ConnectConfig,
    StatsConfig,
)
from fixelcfe.config.loader import load_config_file, merge_configs, config_from_dict, save_config
from fixelcfe.config.validator import ConfigValidator

__all__ = [
    # Config classes
    "ConnectivityConfig",
    "CFEConfig",
    "PermutationConfig",
    "SmoothingConfig",
    "ConnectConfig",
    "StatsConfig",
    # Loader functions
    "load_config_file",
    "merge_configs",
    "config_from_dict",
    "save_config",
    # Validator
    "ConfigValidator",
]
