"""
Rally configuration.

Loads config.yaml (default: $XDG_CONFIG_HOME/pr-rally/config.yaml). A missing
or unparseable file yields defaults; a known key with the wrong type is a
ConfigError.

Example config.yaml:

    reviewer: claude
    reviewee: codex
    max_iterations: 5
    timeout_secs: 900
    reviewee_additional_tools:
      - "Bash(make test:*)"
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from rally.lib.errors import ConfigError

logger = logging.getLogger(__name__)

APP_NAME = "pr-rally"

DEFAULT_BOT_SUFFIXES = ["[bot]"]
DEFAULT_BOT_LOGINS = ["github-actions", "dependabot"]
DEFAULT_MAX_EXTERNAL_COMMENTS = 20


def config_home() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    return (Path(base) if base else Path.home() / ".config") / APP_NAME


def default_config_path() -> Path:
    return config_home() / "config.yaml"


def default_cache_dir() -> Path:
    base = os.environ.get("XDG_CACHE_HOME")
    return (Path(base) if base else Path.home() / ".cache") / APP_NAME


@dataclass
class RallyConfig:
    """Settings consumed by the orchestrator and the agent adapters."""
    reviewer: str = "claude"
    reviewee: str = "claude"
    max_iterations: int = 10
    timeout_secs: int = 600
    prompt_dir: Path | None = None
    reviewer_additional_tools: list[str] = field(default_factory=list)  # claude only
    reviewee_additional_tools: list[str] = field(default_factory=list)  # claude only
    cache_dir: Path = field(default_factory=default_cache_dir)
    bot_suffixes: list[str] = field(default_factory=lambda: list(DEFAULT_BOT_SUFFIXES))
    bot_logins: list[str] = field(default_factory=lambda: list(DEFAULT_BOT_LOGINS))
    max_external_comments: int = DEFAULT_MAX_EXTERNAL_COMMENTS

    def resolved_prompt_dir(self) -> Path | None:
        """User prompt override directory, if any.

        Explicit prompt_dir wins; otherwise $XDG_CONFIG_HOME/pr-rally/prompts
        is used when it exists.
        """
        if self.prompt_dir is not None:
            return self.prompt_dir
        candidate = config_home() / "prompts"
        return candidate if candidate.is_dir() else None


_INT_KEYS = {"max_iterations", "timeout_secs", "max_external_comments"}
_STR_KEYS = {"reviewer", "reviewee"}
_PATH_KEYS = {"prompt_dir", "cache_dir"}
_LIST_KEYS = {"reviewer_additional_tools", "reviewee_additional_tools", "bot_suffixes", "bot_logins"}


def _coerce(key: str, value):
    if key in _INT_KEYS:
        # bool is an int subclass; "true" is never a meaningful count
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(key, f"expected an integer, got {value!r}")
        if value < 1:
            raise ConfigError(key, f"must be at least 1, got {value}")
        return value
    if key in _STR_KEYS:
        if not isinstance(value, str) or not value:
            raise ConfigError(key, f"expected a non-empty string, got {value!r}")
        return value
    if key in _PATH_KEYS:
        if not isinstance(value, str):
            raise ConfigError(key, f"expected a path string, got {value!r}")
        return Path(value).expanduser()
    if key in _LIST_KEYS:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(key, f"expected a list of strings, got {value!r}")
        return list(value)
    return value


def parse_rally_config(data: dict) -> RallyConfig:
    """Build a RallyConfig from a decoded YAML mapping.

    Raises:
        ConfigError: If a known key has a value of the wrong type
    """
    known = {f.name for f in fields(RallyConfig)}
    kwargs = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {key}")
            continue
        if value is None:
            continue
        kwargs[key] = _coerce(key, value)
    return RallyConfig(**kwargs)


def load_rally_config(config_path: Path | None = None) -> RallyConfig:
    """Load config.yaml and return RallyConfig.

    If the file doesn't exist or can't be parsed, returns defaults.

    Raises:
        ConfigError: If a known key has a value of the wrong type
    """
    if config_path is None:
        config_path = default_config_path()

    if not config_path.exists():
        return RallyConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return RallyConfig()

    if data is None:
        return RallyConfig()
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {config_path}: top level is not a mapping")
        return RallyConfig()

    return parse_rally_config(data)
