"""API key management for the chat relay.

Provider keys are read from the environment. Before the first lookup,
keys are loaded with this priority:
  1. Environment variables (highest, already set in shell)
  2. ~/.chatrelay/keys.env (user-level keys)
  3. .env in current directory (project-level)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from chatrelay.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Directory for user-level chatrelay configuration
CHATRELAY_HOME = Path.home() / ".chatrelay"
KEYS_FILE = CHATRELAY_HOME / "keys.env"

# Provider definitions: (env_var, display_name, signup_url)
PROVIDERS = [
    ("GROQ_API_KEY", "Groq", "https://console.groq.com/keys"),
    ("OPENAI_API_KEY", "OpenAI", "https://platform.openai.com/api-keys"),
]


def load_keys_env() -> None:
    """Load API keys from ~/.chatrelay/keys.env and .env into os.environ.

    Existing env vars are NOT overwritten, and later files don't
    overwrite earlier ones.
    """
    files = [KEYS_FILE, Path.cwd() / ".env"]
    for env_file in files:
        if env_file.is_file():
            _load_env_file(env_file)


def _load_env_file(path: Path) -> None:
    """Parse a simple KEY=VALUE .env file and set vars that aren't already set."""
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and not os.environ.get(key):
                os.environ[key] = value
                logger.debug("Loaded %s from %s", key, path)
    except OSError:
        logger.debug("Could not read %s", path)


def require_api_key(env_var: str) -> str:
    """Return the API key stored in ``env_var``.

    Raises:
        ConfigurationError: If the variable is unset or blank.
    """
    value = os.environ.get(env_var, "").strip()
    if not value:
        raise ConfigurationError(f"{env_var} is not set (environment, {KEYS_FILE} or .env)")
    return value


def get_configured_keys() -> dict[str, bool]:
    """Return env_var -> whether a key is present, for every known provider."""
    return {env_var: bool(os.environ.get(env_var)) for env_var, _, _ in PROVIDERS}
