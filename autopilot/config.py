"""Load autopilot settings from a YAML file."""

import logging
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from autopilot.errors import ConfigurationError

logger = logging.getLogger(__name__)

LOCAL_CONFIG = Path(".autopilot.yaml")
USER_CONFIG = Path("~/.config/autopilot/config.yaml")

DEFAULT_CLAUDE_ARGS = ["--dangerously-skip-permissions", "--output-format", "stream-json", "--verbose"]
DEFAULT_CODEX_ARGS = ["exec", "--json", "--dangerously-bypass-approvals-and-sandbox"]


@dataclass
class Settings:
    claude_command: str = "claude"
    claude_args: list[str] = field(default_factory=lambda: list(DEFAULT_CLAUDE_ARGS))
    codex_command: str = "codex"
    codex_args: list[str] = field(default_factory=lambda: list(DEFAULT_CODEX_ARGS))
    codex_enabled: bool = True
    max_iterations: int = 50
    max_review_iterations: int = 10
    timeout: int = 0  # seconds per agent invocation, 0 disables
    progress_dir: Path = Path(".autopilot")


def _coerce(path: Path, key: str, value, default):
    """Convert a raw YAML value to the type of the field's default."""
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigurationError(f"{path}: '{key}' must be true or false")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ConfigurationError(f"{path}: '{key}' must be a non-negative integer")
        return value
    if isinstance(default, list):
        if isinstance(value, str):
            return shlex.split(value)
        if value is None:
            return []
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return value
        raise ConfigurationError(f"{path}: '{key}' must be a string or a list of strings")
    if isinstance(default, Path):
        if not isinstance(value, str):
            raise ConfigurationError(f"{path}: '{key}' must be a path")
        return Path(value).expanduser()
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{path}: '{key}' must be a non-empty string")
    return value


def find_config(explicit: str | Path | None = None) -> Path | None:
    """Return the config file to use, or None when only defaults apply.

    An explicit path must exist. Otherwise ``./.autopilot.yaml`` wins over
    ``~/.config/autopilot/config.yaml``.
    """
    if explicit is not None:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")
        return path
    for candidate in (LOCAL_CONFIG, USER_CONFIG.expanduser()):
        if candidate.is_file():
            return candidate
    return None


def load_settings(path: str | Path | None = None) -> Settings:
    """Read settings from *path* (see :func:`find_config`) over the defaults."""
    settings = Settings()
    config_path = find_config(path)
    if config_path is None:
        logger.debug("No config file found, using defaults")
        return settings

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot read {config_path}: {exc}") from exc

    if data is None:
        return settings
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path}: top level must be a mapping")

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"{config_path}: unknown keys: {', '.join(map(str, unknown))}")

    for key, value in data.items():
        setattr(settings, key, _coerce(config_path, key, value, getattr(settings, key)))

    logger.info("Loaded settings from %s", config_path)
    return settings
