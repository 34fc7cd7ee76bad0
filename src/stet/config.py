"""Layered configuration: defaults, global and repo TOML files, environment, CLI overrides."""

import logging
import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE_NAME,
    DEFAULT_CONTEXT_LIMIT,
    DEFAULT_LLM_TIMEOUT,
    DEFAULT_MODEL,
    DEFAULT_NUM_CTX,
    DEFAULT_OLLAMA_BASE_URL,
    DEFAULT_PREPARE_BUFFER_SIZE,
    DEFAULT_PREPARE_WORKERS,
    DEFAULT_RAG_MAX_DEFINITIONS,
    DEFAULT_SUPPRESSION_HISTORY_COUNT,
    DEFAULT_TEMPERATURE,
    DEFAULT_WARN_THRESHOLD,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .findings import resolve_strictness

logger = logging.getLogger(__name__)

# Environment variable -> config field
ENV_VARS = {
    "STET_MODEL": "model",
    "STET_OLLAMA_BASE_URL": "ollama_base_url",
    "STET_CONTEXT_LIMIT": "context_limit",
    "STET_WARN_THRESHOLD": "warn_threshold",
    "STET_TIMEOUT": "timeout",
    "STET_STATE_DIR": "state_dir",
    "STET_WORKTREE_ROOT": "worktree_root",
    "STET_TEMPERATURE": "temperature",
    "STET_NUM_CTX": "num_ctx",
    "STET_STRICTNESS": "strictness",
    "STET_NITPICKY": "nitpicky",
    "STET_CRITIC_MODEL": "critic_model",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass
class Config:
    """Effective settings for one invocation."""

    model: str = DEFAULT_MODEL
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    context_limit: int = DEFAULT_CONTEXT_LIMIT
    warn_threshold: float = DEFAULT_WARN_THRESHOLD
    timeout: float = DEFAULT_LLM_TIMEOUT
    temperature: float = DEFAULT_TEMPERATURE
    num_ctx: int = DEFAULT_NUM_CTX
    state_dir: str = ""
    worktree_root: str = ""
    strictness: str = "default"
    nitpicky: bool = False
    rag_symbol_max_definitions: int = DEFAULT_RAG_MAX_DEFINITIONS
    rag_symbol_max_tokens: int = 0
    rag_call_graph_enabled: bool = False
    critic_enabled: bool = False
    critic_model: str = ""
    suppression_enabled: bool = True
    suppression_history_count: int = DEFAULT_SUPPRESSION_HISTORY_COUNT
    # None applies the default scope patterns, [] disables exclusions
    exclude_patterns: list[str] | None = None
    prepare_workers: int = DEFAULT_PREPARE_WORKERS
    prepare_buffer_size: int = DEFAULT_PREPARE_BUFFER_SIZE

    def resolved_state_dir(self, repo_root: Path) -> Path:
        return Path(self.state_dir) if self.state_dir else Path(repo_root) / STATE_DIR_NAME

    def resolved_worktree_root(self, repo_root: Path) -> Path:
        if self.worktree_root:
            return Path(self.worktree_root)
        return self.resolved_state_dir(repo_root) / "worktrees"

    @property
    def effective_critic_model(self) -> str:
        if not self.critic_enabled:
            return ""
        return self.critic_model or self.model

    def validate(self) -> None:
        """Raise ConfigError for values that cannot work."""
        if not self.model:
            raise ConfigError("model must not be empty")
        if not self.ollama_base_url:
            raise ConfigError("ollama_base_url must not be empty")
        if self.context_limit < 0:
            raise ConfigError(f"context_limit must be >= 0, got {self.context_limit}")
        if not 0 <= self.warn_threshold <= 1:
            raise ConfigError(f"warn_threshold must be between 0 and 1, got {self.warn_threshold}")
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")
        if self.num_ctx < 0:
            raise ConfigError(f"num_ctx must be >= 0, got {self.num_ctx}")
        if self.rag_symbol_max_definitions < 0 or self.rag_symbol_max_tokens < 0:
            raise ConfigError("RAG limits must be >= 0")
        if self.prepare_workers < 1 or self.prepare_buffer_size < 1:
            raise ConfigError("prepare_workers and prepare_buffer_size must be >= 1")
        resolve_strictness(self.strictness)


_FIELD_TYPES = {f.name: f.type for f in fields(Config)}


def _coerce(name: str, value: Any, source: str) -> Any:
    """Convert ``value`` to the type of config field ``name``."""
    kind = _FIELD_TYPES[name]
    try:
        if name == "exclude_patterns":
            if isinstance(value, str):
                return [p.strip() for p in value.split(",") if p.strip()]
            if isinstance(value, list) and all(isinstance(p, str) for p in value):
                return list(value)
            raise TypeError("expected a list of strings")
        if kind is bool or kind == "bool":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if kind is int or kind == "int":
            if isinstance(value, bool):
                raise TypeError("expected an integer")
            return int(value)
        if kind is float or kind == "float":
            if isinstance(value, bool):
                raise TypeError("expected a number")
            return float(value)
        if not isinstance(value, str):
            raise TypeError("expected a string")
        return value
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for {name} in {source}: {e}") from e


def global_config_path() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "stet" / CONFIG_FILE_NAME


def read_toml(path: Path) -> dict:
    """Parse a TOML config file; a missing file is empty.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"read config {path}: {e}") from e


def _apply(config: Config, values: dict, source: str) -> None:
    for key, value in values.items():
        if key not in _FIELD_TYPES:
            logger.warning(f"Ignoring unknown config key {key!r} in {source}")
            continue
        setattr(config, key, _coerce(key, value, source))


def load_config(
    repo_root: Path | None = None,
    overrides: dict | None = None,
    env: dict[str, str] | None = None,
    global_path: Path | None = None,
) -> Config:
    """Build the effective config.

    Layers, lowest first: defaults, global config file, repo
    ``.review/config.toml``, ``STET_*`` environment variables, then
    ``overrides`` (None values are ignored).

    Raises:
        ConfigError: If any layer holds a malformed value.
    """
    config = Config()
    gpath = global_path if global_path is not None else global_config_path()
    _apply(config, read_toml(gpath), str(gpath))
    if repo_root is not None:
        rpath = Path(repo_root) / STATE_DIR_NAME / CONFIG_FILE_NAME
        _apply(config, read_toml(rpath), str(rpath))
    environ = os.environ if env is None else env
    env_values = {field_name: environ[var] for var, field_name in ENV_VARS.items() if var in environ}
    _apply(config, env_values, "environment")
    if overrides:
        _apply(config, {k: v for k, v in overrides.items() if v is not None}, "command line")
    config.validate()
    return config
