"""Static configuration for telerelay.

All non-secret settings (subject, polling, cursor, notifications, logging)
live in a single JSON file for quick edits without touching Python. Secrets
come from the environment (.env).
"""

import json
import os

from core.config import RelayConfig, relay_config_from_dict

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# TELERELAY_CONFIG lets one checkout run several relays with separate configs.
CONFIG_PATH = os.getenv("TELERELAY_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json; an absent file yields an empty config."""

    if not os.path.exists(CONFIG_PATH):
        return {}

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


# Expose the raw config for modules that need structured access.
CONFIG = _load_json_config()

# Logging configuration (optional).
LOGGING = CONFIG.get("logging", {})


def relay_config() -> RelayConfig:
    """Validate the relay settings. Only `run` needs them; `login` and
    `lookup-user` work before the subject is configured."""

    if not CONFIG:
        raise FileNotFoundError(f"Config file not found or empty: {CONFIG_PATH}")
    return relay_config_from_dict(CONFIG)


def resolve_path(path: str) -> str:
    """Resolve a relative path against the project root."""

    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)
