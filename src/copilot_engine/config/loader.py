"""Load ClientOptions from YAML files and the environment.

Layers, lowest to highest priority:
- user options file
- ./copilot-engine.yaml (or an explicit path instead of both files)
- COPILOT_CLI_PATH / COPILOT_CLI_URL / COPILOT_LOG_LEVEL
- keyword overrides
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from copilot_engine.config.merge import merge_configs
from copilot_engine.config.paths import get_config_paths
from copilot_engine.config.schema import ClientOptions
from copilot_engine.config.validation import build_model
from copilot_engine.errors import ConfigurationError
from copilot_engine.logging import get_logger

_log = get_logger("config")

ENV_VARIABLES = {
    "COPILOT_CLI_PATH": "cli_path",
    "COPILOT_CLI_URL": "cli_url",
    "COPILOT_LOG_LEVEL": "log_level",
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML as dict, or empty dict on error.
    """
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Options taken from environment variables."""
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for variable, key in ENV_VARIABLES.items():
        value = environ.get(variable)
        if value:
            overrides[key] = value

    # An external server replaces the spawned one entirely
    if "cli_url" in overrides:
        overrides.pop("cli_path", None)
    return overrides


def load_client_options(
    path: str | os.PathLike[str] | None = None, **overrides: Any
) -> ClientOptions:
    """Build ClientOptions from option files, environment and overrides.

    Args:
        path: Read only this file instead of the default locations. It must
            exist.
        **overrides: Highest-priority options, e.g. from command line flags.

    Raises:
        ConfigurationError: If the explicit file is missing or the merged
            options are invalid.
    """
    layers: list[dict[str, Any]] = []

    if path is not None:
        explicit = Path(path)
        if not explicit.exists():
            raise ConfigurationError(f"Options file not found: {explicit}")
        layers.append(load_yaml_file(explicit))
    else:
        for candidate in get_config_paths():
            data = load_yaml_file(candidate)
            if data:
                _log.debug("Loaded options from %s", candidate)
                layers.append(data)

    layers.append(env_overrides())
    layers.append(overrides)

    merged = merge_configs(*layers)
    if merged.get("cli_url") and "cli_path" in merged and "cli_path" not in overrides:
        merged.pop("cli_path")
    return build_model(ClientOptions, merged)
