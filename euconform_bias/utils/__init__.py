# File: euconform_bias/utils/__init__.py
"""
Utility functions for configuration, paths, numerics, and reproducibility.
"""

from .config import (
    EngineSettings,
    get_remote_base_url,
    load_engine_config,
    load_engine_settings,
    load_models_config,
    load_yaml,
    merge_configs,
    save_yaml,
)
from .numerics import estimate_token_count, pseudo_logprob_from_latency
from .paths import (
    ensure_dir_exists,
    get_cache_dir,
    get_configs_dir,
    get_data_dir,
    get_project_root,
    get_results_dir,
)
from .random_utils import Mulberry32, seeded_sample, seeded_shuffle, set_global_seed

__all__ = [
    # Config utilities
    "EngineSettings",
    "load_yaml",
    "save_yaml",
    "load_models_config",
    "load_engine_config",
    "load_engine_settings",
    "get_remote_base_url",
    "merge_configs",
    # Numerics
    "pseudo_logprob_from_latency",
    "estimate_token_count",
    # Path utilities
    "get_project_root",
    "get_configs_dir",
    "get_data_dir",
    "get_results_dir",
    "get_cache_dir",
    "ensure_dir_exists",
    # Random seed utilities
    "Mulberry32",
    "seeded_shuffle",
    "seeded_sample",
    "set_global_seed",
]
