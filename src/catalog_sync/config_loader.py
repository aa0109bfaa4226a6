"""
YAML configuration files for catalog_sync.

A project keeps its settings in ``.catalog_sync/config.yml`` next to the
mirror; shop credentials usually live in a global file or the environment.
This module finds those files, loads them (with ``!include``), expands
``${VAR}`` references and merges them section by section.

Usage:
    from catalog_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

PROJECT_DIR = ".catalog_sync"
_CONFIG_NAMES = ("config.yml", "config.yaml")

# Settings holding filesystem paths, as (section, key)
_PATH_SETTINGS = (
    ("sync", "mirror_dir"),
    ("sync", "state_dir"),
    ("logging", "file"),
)

# ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


# ---------------------------------------------------------------------------
# Env var expansion
# ---------------------------------------------------------------------------


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in *value*.

    An unset or empty variable expands to its default, or to ``""``.  A
    ``${`` without a closing brace is kept as written.
    """

    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1)) or match.group(2) or ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _expand(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {key: _expand(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_expand(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """``SafeLoader`` that understands ``!include other.yml``.

    Included paths are relative to the including file.  ``include_chain``
    holds the files being loaded, outermost first.
    """

    include_chain: tuple[Path, ...] = ()


def _include(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    target = Path(loader.construct_scalar(node)).expanduser()
    if not target.is_absolute():
        target = loader.include_chain[-1].parent / target
    target = target.resolve()
    if target in loader.include_chain:
        chain = " -> ".join(str(p) for p in loader.include_chain + (target,))
        raise ValueError(f"Circular include: {chain}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} "
            f"(from {loader.include_chain[-1]})"
        )
    return load_yaml(target, loader.include_chain)


ConfigLoader.add_constructor("!include", _include)


def load_yaml(path: Path, include_chain: tuple[Path, ...] = ()) -> Any:
    """Parse one YAML file, following ``!include`` directives."""
    path = Path(path).resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader.include_chain = include_chain + (path,)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def find_project_config(start: Path | None = None) -> Path | None:
    """Nearest ``.catalog_sync/config.yml`` in *start* or its parents.

    Running from a subdirectory of a project still finds the project's
    settings, the way git finds its repository.
    """
    here = (start or Path.cwd()).resolve()
    for directory in (here, *here.parents):
        for name in _CONFIG_NAMES:
            candidate = directory / PROJECT_DIR / name
            if candidate.is_file():
                return candidate
    return None


def discover_config_files(start: Path | None = None) -> list[Path]:
    """Existing config files, highest precedence first.

    1. ``CATALOG_SYNC_CONFIG`` (one explicit file)
    2. the nearest project file, see ``find_project_config``
    3. ``~/.config/catalog_sync/config.yml`` (per user)
    """
    found: list[Path] = []
    explicit = os.environ.get("CATALOG_SYNC_CONFIG")
    if explicit:
        path = Path(explicit).expanduser().resolve()
        if path.is_file():
            found.append(path)
        else:
            logger.warning("CATALOG_SYNC_CONFIG points to a missing file: %s", path)

    project = find_project_config(start)
    if project is not None and project not in found:
        found.append(project)

    user = Path.home() / ".config" / "catalog_sync" / "config.yml"
    if user.is_file() and user.resolve() not in found:
        found.append(user.resolve())
    return found


def project_root(config_path: Path) -> Path:
    """Directory relative paths in *config_path* are resolved against.

    For ``<root>/.catalog_sync/config.yml`` that is ``<root>``; for any
    other file it is the file's own directory.
    """
    parent = config_path.resolve().parent
    return parent.parent if parent.name == PROJECT_DIR else parent


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def _anchor_paths(data: dict[str, Any], root: Path) -> dict[str, Any]:
    """Make relative mirror, state and log paths absolute under *root*."""
    for section, key in _PATH_SETTINGS:
        values = data.get(section)
        if not isinstance(values, dict):
            continue
        value = values.get(key)
        if isinstance(value, str) and value and not Path(value).expanduser().is_absolute():
            data[section] = {**values, key: str(root / value)}
    return data


def merge_sections(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge *override* into *base*; nested mappings merge key by key.

    A project file that only sets ``sync.mirror_dir`` keeps the user
    file's ``sync.batch_sizes``.  Lists and scalars are replaced.
    """
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_sections(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_hierarchical_config(start: Path | None = None) -> dict[str, Any]:
    """Load every discovered config file and merge them.

    Files are applied from lowest precedence to highest.  Each file is
    env-expanded and has its paths anchored before merging, so a path
    is always relative to the file that set it.

    Returns:
        The merged mapping; empty when no file exists.

    Raises:
        ValueError: On a circular ``!include``.
        FileNotFoundError: On a missing ``!include`` target.
        yaml.YAMLError: On malformed YAML.
    """
    paths = discover_config_files(start)
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        data = load_yaml(path)
        if data is None:
            continue
        if not isinstance(data, dict):
            logger.warning(
                "Ignoring %s: top level is a %s, not a mapping",
                path,
                type(data).__name__,
            )
            continue
        data = _anchor_paths(_expand(data), project_root(path))
        merged = merge_sections(merged, data)
    return merged
