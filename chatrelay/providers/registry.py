"""Model registry and TOML configuration loader.

Loads model definitions from models.toml and gateway defaults from
defaults.toml, and resolves a ModelChoice to its registry entry.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from chatrelay.errors import ConfigurationError
from chatrelay.schemas.gateway import GatewaySettings, ModelChoice, ModelConfig

# Default config directory relative to the chatrelay package
_CONFIG_DIR = Path(__file__).parent.parent / "config"

# Environment variables that override defaults.toml keys
_ENV_OVERRIDES = {
    "CHATRELAY_DB_PATH": "db_path",
    "CHATRELAY_UPLOAD_DIR": "upload_dir",
    "CHATRELAY_UPLOAD_BASE_URL": "upload_base_url",
}


def load_models(config_path: Path | None = None) -> dict[str, ModelConfig]:
    """Load the model registry from a TOML file.

    Args:
        config_path: Path to models.toml. Defaults to chatrelay/config/models.toml.

    Returns:
        Dictionary mapping model keys to ModelConfig instances.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the TOML structure is invalid.
    """
    path = config_path or _CONFIG_DIR / "models.toml"
    if not path.exists():
        raise FileNotFoundError(f"Model registry not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    models_section = raw.get("models")
    if not models_section or not isinstance(models_section, dict):
        raise ValueError(f"No [models] section found in {path}")

    registry: dict[str, ModelConfig] = {}
    for key, entry in models_section.items():
        if not isinstance(entry, dict):
            continue
        registry[key] = ModelConfig(**entry)

    return registry


def load_gateway_settings(config_path: Path | None = None) -> GatewaySettings:
    """Load gateway defaults from a TOML file, then apply env overrides.

    Args:
        config_path: Path to defaults.toml. Defaults to chatrelay/config/defaults.toml.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    path = config_path or _CONFIG_DIR / "defaults.toml"
    if not path.exists():
        raise FileNotFoundError(f"Gateway config not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    values = dict(raw.get("gateway", {}))
    for env_var, field in _ENV_OVERRIDES.items():
        if os.environ.get(env_var):
            values[field] = os.environ[env_var]

    return GatewaySettings(**values)


def resolve_model(registry: dict[str, ModelConfig], choice: ModelChoice) -> ModelConfig:
    """Look up the registry entry for a model choice.

    Raises:
        ConfigurationError: If the registry has no entry for the choice.
    """
    config = registry.get(choice.value)
    if config is None:
        raise ConfigurationError(f"Model {choice.value!r} is not in the model registry")
    return config
