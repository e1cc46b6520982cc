# File: euconform_bias/utils/paths.py
"""
Filesystem locations used by the engine.

Everything hangs off one project root: `configs/` for YAML settings,
`data/` for bundled pair datasets, `results/` for bias-test reports and
`.cache/` for persisted capability caches. Set `EUCONFORM_HOME` to point the
engine at a root other than the source checkout (e.g. when the package is
installed into site-packages).
"""

import os
from pathlib import Path
from typing import Optional

PROJECT_HOME_ENV = "EUCONFORM_HOME"


def get_project_root() -> Path:
    """
    Resolve the project root.

    `EUCONFORM_HOME` wins. Otherwise the checkout that contains this package
    is used if it has a `configs/` folder, and the working directory if not.
    """
    env_root = os.environ.get(PROJECT_HOME_ENV)
    if env_root:
        return Path(env_root).expanduser().resolve()

    # euconform_bias/utils/paths.py -> checkout root
    checkout = Path(__file__).resolve().parents[2]
    if (checkout / "configs").exists():
        return checkout

    return Path.cwd()


def _under_root(name: str, subdir: Optional[str] = None) -> Path:
    base = get_project_root() / name
    return base / subdir if subdir else base


def get_configs_dir() -> Path:
    """Directory holding models.yaml and engine.yaml."""
    return _under_root("configs")


def get_data_dir(subdir: Optional[str] = None) -> Path:
    """
    Dataset directory, or one dataset's subdirectory.

    Examples:
        >>> get_data_dir("crows_pairs").name
        'crows_pairs'
    """
    return _under_root("data", subdir)


def get_results_dir(subdir: Optional[str] = None) -> Path:
    """Directory for bias-test result files."""
    return _under_root("results", subdir)


def get_cache_dir() -> Path:
    """Directory for persisted capability caches; relative cache paths resolve here."""
    return _under_root(".cache")


def ensure_dir_exists(directory: Path) -> Path:
    """Create `directory` (and parents) if missing and return it."""
    directory.mkdir(parents=True, exist_ok=True)
    return directory
