"""Configuration defaults, the user config file, and runtime options for RAF."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

from raf.worktree import default_worktree_root

CONFIG_ENV = "RAF_CONFIG"


class ConfigError(RuntimeError):
    """The config file exists but cannot be used."""


@dataclass
class Config:
    """Runtime configuration: defaults, overlaid by the config file, then CLI flags."""

    # Execution
    timeout: float = 60  # minutes per attempt
    max_retries: int = 3
    model: str = "opus"
    engine: str = "claude"

    # Git
    auto_commit: bool = True
    commit_prefix: str = "RAF"
    worktree: bool = False
    sync_main_branch: bool = True
    worktree_root: Path = field(default_factory=default_worktree_root)

    # Misc
    verbose: bool = False
    debug: bool = False

    @property
    def timeout_seconds(self) -> float:
        return self.timeout * 60


# JSON key -> (attribute, expected type)
_KEYS: dict[str, tuple[str, type | tuple[type, ...]]] = {
    "timeout": ("timeout", (int, float)),
    "maxRetries": ("max_retries", int),
    "model": ("model", str),
    "engine": ("engine", str),
    "autoCommit": ("auto_commit", bool),
    "commitPrefix": ("commit_prefix", str),
    "worktree": ("worktree", bool),
    "syncMainBranch": ("sync_main_branch", bool),
    "worktreeRoot": ("worktree_root", str),
}


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".raf" / "raf.config.json"


def validate_config(data: object) -> dict[str, object]:
    """Check a parsed config document; returns attribute-name overrides."""
    if not isinstance(data, dict):
        raise ConfigError("Config must be a JSON object")

    overrides: dict[str, object] = {}
    for key, value in data.items():
        if key not in _KEYS:
            raise ConfigError(f"Unknown config key: {key}")
        attr, expected = _KEYS[key]
        # bool is an int subclass; only accept it where a bool is wanted.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(f"{key} has the wrong type")
        if not isinstance(value, expected):
            raise ConfigError(f"{key} has the wrong type")
        overrides[attr] = value

    if "timeout" in overrides and overrides["timeout"] <= 0:  # type: ignore[operator]
        raise ConfigError("timeout must be a positive number")
    if "max_retries" in overrides and overrides["max_retries"] < 0:  # type: ignore[operator]
        raise ConfigError("maxRetries must be a non-negative integer")
    if "commit_prefix" in overrides and not overrides["commit_prefix"]:
        raise ConfigError("commitPrefix must not be empty")
    if "worktree_root" in overrides:
        overrides["worktree_root"] = Path(str(overrides["worktree_root"])).expanduser()
    return overrides


def load_config(path: Path | None = None) -> Config:
    """Defaults merged with the config file at *path* (missing file = defaults)."""
    path = path or default_config_path()
    cfg = Config()
    if not path.is_file():
        return cfg
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    cfg = replace(cfg, **validate_config(data))
    if os.environ.get("RAF_WORKTREE_ROOT"):
        cfg.worktree_root = default_worktree_root()
    return cfg
