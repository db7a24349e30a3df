# File: latex_lsp/config/loader.py

"""Loads and manages application configuration from multiple sources.

This module loads configuration settings from a YAML file (defaults) and
environment variables (overrides). The path of the default configuration file
(`config.yml`) is determined by:
1. Checking the `LATEX_LSP_CONFIG_FILE` environment variable.
2. Searching upwards from this file's location for a project root marker
   (`pyproject.toml`) and looking for the file in that root directory.
3. As a fallback, looking in the current working directory (with a warning).

It exposes the loaded configuration via a singleton dictionary `APP_CONFIG`
and provides `get_lsp_settings()`, which merges the `lsp` section over the
built-in defaults so callers never have to guard against missing keys.
"""

import copy
import logging
import os
import pathlib
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

# Initialize logging for this module
logger = logging.getLogger(__name__)
# If run standalone or root logger isn't set, this provides a default.
if not logging.getLogger().hasHandlers():
    logging.basicConfig(
        level=os.environ.get("LOGLEVEL", "INFO").upper(),
        format="%(levelname)s: [%(name)s] %(message)s",
    )

DEFAULT_CONFIG_FILENAME = "config.yml"
PROJECT_ROOT_MARKER = "pyproject.toml"  # File to indicate project root

ENV_CONFIG_PATH = "LATEX_LSP_CONFIG_FILE"


def parse_bool(value: str) -> bool:
    """Converts common textual truth values ("1", "true", "yes", "on") to bool.

    Raises:
        ValueError: If the string is not a recognised boolean spelling.
    """
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Not a boolean value: {value!r}")


# Mappings from environment variables to nested configuration keys.
# Format: (ENV_VARIABLE_NAME, [list, of, config, keys], converter)
ENV_OVERRIDES: List[Tuple[str, List[str], Callable[[str], Any]]] = [
    ("LATEX_LSP_ENABLED", ["lsp", "enabled"], parse_bool),
    ("TEXLAB_PATH", ["lsp", "server_path"], str),
    ("LATEX_LSP_REQUEST_TIMEOUT", ["lsp", "request_timeout"], float),
    ("LATEX_LSP_INITIALIZE_TIMEOUT", ["lsp", "initialize_timeout"], float),
    ("LATEX_LSP_HEALTH_INTERVAL", ["lsp", "health_check_interval"], float),
    ("LATEX_LSP_MAX_RESTARTS", ["lsp", "max_restarts"], int),
]

# Built-in values used whenever config.yml is missing a key.
DEFAULT_LSP_SETTINGS: Dict[str, Any] = {
    "enabled": True,
    "server_path": "",
    "bundled_bin_dir": "resources/bin",
    "request_timeout": 5.0,
    "initialize_timeout": 15.0,
    "shutdown_timeout": 2.0,
    "health_check_interval": 30.0,
    "max_restarts": 3,
    "restart_delays": [1.0, 2.0, 4.0],
    "formatting": {"tab_size": 2, "insert_spaces": True},
}


def _find_project_root(
    start_path: pathlib.Path, marker_filename: str = PROJECT_ROOT_MARKER
) -> Optional[pathlib.Path]:
    """Searches upward from start_path for a directory containing marker_filename.

    Args:
        start_path: The directory path to begin the search from.
        marker_filename: The filename to look for as the project root indicator.

    Returns:
        The Path of the directory containing the marker file, or None if not
        found before reaching the filesystem root.
    """
    current_path = start_path.resolve()
    while True:
        if (current_path / marker_filename).is_file():
            logger.debug(f"Found project root marker '{marker_filename}' at '{current_path}'")
            return current_path
        parent_path = current_path.parent
        if parent_path == current_path:
            logger.debug(
                f"Project root marker '{marker_filename}' not found searching from '{start_path}'."
            )
            return None
        current_path = parent_path


def _update_nested_dict(d: Dict[str, Any], keys: List[str], value: Any):
    """Sets a value in a nested dictionary, creating intermediate dicts.

    Logs an error and leaves the dictionary untouched if an intermediate key
    already holds a non-dict value.
    """
    node = d
    for key in keys[:-1]:
        child = node.setdefault(key, {})
        if not isinstance(child, dict):
            logger.error(
                f"Config structure conflict: Expected dict at '{key}' "
                f"while setting path '{'.'.join(keys)}', but found type {type(child)}. "
                f"Cannot apply value '{value}'."
            )
            return
        node = child
    node[keys[-1]] = value


def _resolve_config_path() -> pathlib.Path:
    env_config_path_str = os.getenv(ENV_CONFIG_PATH)
    if env_config_path_str:
        logger.info(
            f"Using config path from environment variable {ENV_CONFIG_PATH}: '{env_config_path_str}'"
        )
        return pathlib.Path(env_config_path_str).resolve()

    project_root = _find_project_root(start_path=pathlib.Path(__file__).parent)
    if project_root:
        return (project_root / DEFAULT_CONFIG_FILENAME).resolve()

    logger.warning(
        f"Could not find project root marker '{PROJECT_ROOT_MARKER}'. "
        "Falling back to current working directory for config path."
    )
    return (pathlib.Path.cwd() / DEFAULT_CONFIG_FILENAME).resolve()


def load_configuration(
    dotenv_path: Optional[str] = None,
    env_override_map: List[Tuple[str, List[str], Callable[[str], Any]]] = ENV_OVERRIDES,
    config_path: Optional[pathlib.Path] = None,
) -> Dict[str, Any]:
    """Loads configuration layers: YAML defaults, then environment overrides.

    Args:
        dotenv_path: Explicit path to the .env file. If None, `python-dotenv`
            searches standard locations.
        env_override_map: Which environment variables override which
            configuration keys, and how their string values are converted.
        config_path: Explicit YAML file to read. If None, the path is resolved
            as described in the module docstring.

    Returns:
        The merged configuration dictionary. A missing config file yields an
        empty base (overrides still apply); an unparsable one yields `{}`.
    """
    config: Dict[str, Any] = {}
    effective_config_path = config_path or _resolve_config_path()

    try:
        with open(effective_config_path, encoding="utf-8") as f:
            loaded_yaml = yaml.safe_load(f)
            config = loaded_yaml if isinstance(loaded_yaml, dict) else {}
        logger.info(f"Loaded base config from '{effective_config_path}'.")
    except FileNotFoundError:
        logger.warning(f"Base config file '{effective_config_path}' not found. Using defaults.")
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML '{effective_config_path}': {e}", exc_info=True)
        return {}

    try:
        loaded_env = load_dotenv(dotenv_path=dotenv_path, override=False)
        if loaded_env:
            logger.info(".env file loaded into environment variables.")
        else:
            logger.debug(".env file not found or empty.")
    except OSError as e:
        logger.error(f"Error loading .env file: {e}", exc_info=True)

    override_count = 0
    for env_var, config_keys, converter in env_override_map:
        env_value_str = os.getenv(env_var)
        if env_value_str is None:
            continue
        try:
            typed_value = converter(env_value_str)
        except ValueError:
            logger.warning(
                f"Value override failed: Cannot convert env var '{env_var}' "
                f"value '{env_value_str}' using {getattr(converter, '__name__', converter)}."
            )
            continue
        _update_nested_dict(config, config_keys, typed_value)
        logger.info(
            f"Applied value override: '{'.'.join(config_keys)}' = '{typed_value}' "
            f"(from env '{env_var}')"
        )
        override_count += 1
    if override_count > 0:
        logger.info(f"Applied {override_count} environment variable value override(s).")

    return config


# --- Singleton Configuration Instance ---
APP_CONFIG: Dict[str, Any] = load_configuration()


def get_lsp_settings(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Returns the `lsp` configuration section merged over the built-in defaults.

    Args:
        config: A configuration dictionary shaped like `APP_CONFIG`. Defaults
            to `APP_CONFIG`.

    Returns:
        A new dictionary; mutating it does not affect the source config.
    """
    source = APP_CONFIG if config is None else config
    section = source.get("lsp") or {}
    if not isinstance(section, dict):
        logger.error(f"Config section 'lsp' is a {type(section)}, expected a mapping. Ignoring it.")
        section = {}
    settings = copy.deepcopy(DEFAULT_LSP_SETTINGS)
    for key, value in section.items():
        if isinstance(value, dict) and isinstance(settings.get(key), dict):
            settings[key].update(value)
        else:
            settings[key] = value
    return settings
