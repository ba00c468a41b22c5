"""Where Streamgate reads its config file and writes its log."""

import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONFIG_FILENAME = "config.json"

# Container images mount /config and /logs; local checkouts keep both under ./data.
_IN_CONTAINER = os.path.exists("/.dockerenv")


def _root(env_name, container_dir, local_dir):
    override = os.environ.get(env_name)
    if override:
        return Path(override).resolve()
    return Path(container_dir if _IN_CONTAINER else local_dir).resolve()


CONFIG_DIR = _root("STREAMGATE_CONFIG_DIR", "/config", PROJECT_ROOT / "data" / "config")
LOG_DIR = _root("STREAMGATE_LOG_DIR", "/logs", PROJECT_ROOT / "data" / "logs")


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path=None, config_dir=None):
    """Return the absolute config file path, refusing anything outside the config dir."""
    base = Path(os.path.realpath(config_dir or CONFIG_DIR))
    candidate = Path(path) if path else Path(CONFIG_FILENAME)
    if not candidate.is_absolute():
        candidate = base / candidate
    resolved = Path(os.path.realpath(candidate))
    if resolved != base and base not in resolved.parents:
        raise ValueError(f"Config path must be within {base}")
    return str(resolved)
