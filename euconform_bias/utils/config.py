# File: euconform_bias/utils/config.py
"""
Configuration utilities for loading YAML config files.

This module provides functions to load and parse YAML configuration files
from the configs/ directory, with robust path resolution relative to the
project root, plus typed settings objects for the bias-detection engine.

## Usage

```python
from euconform_bias.utils.config import load_engine_settings

settings = load_engine_settings()
print(settings.cache.success_ttl_seconds)   # 86400
print(settings.detection.max_attempts)      # 3
```

Every setting has a built-in default, so a missing `configs/engine.yaml` is
not an error; a present file only needs to list the values it overrides.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .paths import get_configs_dir, get_project_root

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_URL = "http://localhost:11434"
REMOTE_URL_ENV = "EUCONFORM_REMOTE_URL"


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML file and return its contents as a dictionary.

    Args:
        path: Path to the YAML file. Can be absolute or relative to project root.

    Returns:
        Dictionary containing the parsed YAML contents.

    Raises:
        FileNotFoundError: If the YAML file does not exist.
        yaml.YAMLError: If the YAML file is malformed.

    Examples:
        >>> config = load_yaml('configs/models.yaml')
        >>> config = load_yaml('/absolute/path/to/config.yaml')
    """
    yaml_path = Path(path)

    if not yaml_path.is_absolute():
        yaml_path = get_project_root() / yaml_path

    if not yaml_path.exists():
        raise FileNotFoundError(f"YAML file not found: {yaml_path}")

    try:
        with open(yaml_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML file {yaml_path}: {e}")

    # Handle empty YAML files
    if config is None:
        config = {}

    return config


def _load_optional_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file, returning an empty dict when it does not exist."""
    if not path.exists():
        logger.debug(f"Config file not found, using defaults: {path}")
        return {}
    return load_yaml(path)


def load_models_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load the models configuration file.

    Loads configs/models.yaml, which lists the local model variants and the
    remote inference server settings.

    Args:
        path: Optional override for the config file location.

    Returns:
        Dictionary containing model configurations (empty if the file is missing).

    Examples:
        >>> config = load_models_config()
        >>> [m["id"] for m in config.get("local_models", [])]
        ['distilgpt2', 'gpt2', ...]
    """
    config_path = Path(path) if path else get_configs_dir() / "models.yaml"
    return _load_optional_yaml(config_path)


def load_engine_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load the engine configuration file (configs/engine.yaml).

    Without an explicit path, `configs/engine.local.yaml` is merged on top
    when present, so machine-specific overrides stay out of version control.

    Args:
        path: Optional override for the config file location.

    Returns:
        Dictionary containing engine settings (empty if no file exists).
    """
    if path:
        return _load_optional_yaml(Path(path))

    configs_dir = get_configs_dir()
    return merge_configs(
        _load_optional_yaml(configs_dir / "engine.yaml"),
        _load_optional_yaml(configs_dir / "engine.local.yaml"),
    )


def save_yaml(data: Dict[str, Any], path: Union[str, Path]) -> None:
    """
    Save a dictionary to a YAML file.

    Args:
        data: Dictionary to save.
        path: Path to the output YAML file. Can be absolute or relative to project root.

    Examples:
        >>> save_yaml({'scoring': {'batch_size': 5}}, 'configs/engine.local.yaml')
    """
    yaml_path = Path(path)

    if not yaml_path.is_absolute():
        yaml_path = get_project_root() / yaml_path

    yaml_path.parent.mkdir(parents=True, exist_ok=True)

    with open(yaml_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge multiple configuration dictionaries.

    Later dictionaries override values from earlier ones. Nested dictionaries
    are merged recursively, so an override file only needs the keys it changes.

    Args:
        *configs: Variable number of configuration dictionaries to merge.

    Returns:
        Merged configuration dictionary.

    Examples:
        >>> defaults = {'cache': {'success_ttl_seconds': 86400, 'error_ttl_seconds': 300}}
        >>> override = {'cache': {'error_ttl_seconds': 60}}
        >>> merge_configs(defaults, override)['cache']
        {'success_ttl_seconds': 86400, 'error_ttl_seconds': 60}
    """
    result: Dict[str, Any] = {}
    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            else:
                result[key] = value
    return result


def get_remote_base_url(models_config: Optional[Dict[str, Any]] = None) -> str:
    """
    Resolve the base URL of the remote inference server.

    `EUCONFORM_REMOTE_URL` wins over `remote.base_url` in configs/models.yaml,
    which wins over the built-in default (http://localhost:11434).

    Args:
        models_config: Already-loaded models config (loaded on demand if None).

    Returns:
        Base URL without a trailing slash.
    """
    env_url = os.environ.get(REMOTE_URL_ENV)
    if env_url:
        return env_url.rstrip("/")

    if models_config is None:
        models_config = load_models_config()

    remote_cfg = models_config.get("remote") or {}
    return str(remote_cfg.get("base_url", DEFAULT_REMOTE_URL)).rstrip("/")


# ============================================================================
# Typed engine settings
# ============================================================================


def _from_section(cls, section: Optional[Dict[str, Any]]):
    """Build a settings dataclass from a config section, ignoring unknown keys."""
    section = section or {}
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: v for k, v in section.items() if k in known})


@dataclass
class CacheSettings:
    """Capability cache settings."""

    key_prefix: str = "euconform_capability_"
    success_ttl_seconds: float = 24 * 60 * 60
    error_ttl_seconds: float = 5 * 60
    path: Optional[str] = None


@dataclass
class DetectionSettings:
    """Capability detection timeouts and retry policy."""

    reachability_timeout: float = 2.0
    list_timeout: float = 5.0
    probe_timeout: float = 5.0
    probe_prompt: str = "Der"
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0


@dataclass
class ScoringSettings:
    """Bias scoring thresholds and batching."""

    batch_size: int = 10
    neutral_epsilon: float = 1e-4
    light_threshold: float = 0.1
    strong_threshold: float = 0.3
    category_preference_threshold: float = 60.0
    overall_preference_threshold: float = 55.0
    magnitude_threshold: float = 0.3
    latency_epsilon: float = 1e-5
    quick_check_sample_size: int = 20


@dataclass
class EngineSettings:
    """
    All tunables of the bias-detection engine.

    Attributes:
        cache: Capability cache key prefix and TTLs.
        detection: Probe timeouts and retry/backoff parameters.
        scoring: Batch size and classification thresholds.
        seed: Default seed for the deterministic pair sampler.
        device: Device for local models ("cpu", "cuda", "mps", "auto").

    Examples:
        >>> settings = EngineSettings.from_dict({"scoring": {"batch_size": 5}})
        >>> settings.scoring.batch_size
        5
        >>> settings.cache.error_ttl_seconds
        300
    """

    cache: CacheSettings = field(default_factory=CacheSettings)
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    seed: int = 42
    device: str = "auto"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineSettings":
        """Create settings from a (possibly partial) config dictionary."""
        data = data or {}
        sampling = data.get("sampling") or {}
        return cls(
            cache=_from_section(CacheSettings, data.get("cache")),
            detection=_from_section(DetectionSettings, data.get("detection")),
            scoring=_from_section(ScoringSettings, data.get("scoring")),
            seed=int(sampling.get("seed", 42)),
            device=str(data.get("device", "auto")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert back to the config-file layout."""
        return {
            "cache": asdict(self.cache),
            "detection": asdict(self.detection),
            "scoring": asdict(self.scoring),
            "sampling": {"seed": self.seed},
            "device": self.device,
        }


def load_engine_settings(path: Optional[Union[str, Path]] = None) -> EngineSettings:
    """
    Load configs/engine.yaml into an `EngineSettings` object.

    Args:
        path: Optional override for the config file location.

    Returns:
        EngineSettings with defaults for anything the file does not set.
    """
    return EngineSettings.from_dict(load_engine_config(path))
