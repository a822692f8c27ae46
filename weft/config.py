"""Configuration loading.

Settings come from two TOML files with the same layout, merged key by key:

- the user file ``$XDG_CONFIG_HOME/weft/config.toml`` (defaults),
- the repository file ``weft.toml`` at the repo root (wins).

Example::

    [repo]
    base_branch = "main"
    worktree_dir = ".worktrees"

    [hooks]
    on_create = "make setup"

    [spawn]
    auto = false
    auto_review = true
    agent_command = "claude"
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .models import RepoConfig

logger = logging.getLogger(__name__)

REPO_CONFIG_FILE = "weft.toml"


class SpawnConfig(BaseModel):
    auto: bool = False
    agent_command: str = "claude"


class Settings(BaseModel):
    repo: RepoConfig = Field(default_factory=RepoConfig)
    spawn: SpawnConfig = Field(default_factory=SpawnConfig)


def user_config_path() -> Path:
    """Get the user-level config file path."""
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "weft" / "config.toml"


def read_toml(path: Path) -> Dict[str, Any]:
    """Read a TOML file; a missing file reads as empty."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return {}
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(path, str(e)) from e
    except OSError as e:
        raise ConfigError(path, str(e)) from e


def _flatten(doc: Dict[str, Any], path: Path) -> Dict[str, Dict[str, Any]]:
    """Map the TOML tables onto ``Settings`` sections."""
    for table in ("repo", "hooks", "spawn"):
        if table in doc and not isinstance(doc[table], dict):
            raise ConfigError(path, f"[{table}] must be a table")

    repo = dict(doc.get("repo", {}))
    hooks = doc.get("hooks", {})
    spawn = dict(doc.get("spawn", {}))

    if "on_create" in hooks:
        repo["on_create_hook"] = hooks["on_create"]
    if "auto_review" in spawn:
        repo["auto_review"] = spawn.pop("auto_review")
    return {"repo": repo, "spawn": spawn}


def load_settings(repo_root: Path, user_path: Optional[Path] = None) -> Settings:
    """Load effective settings for a repository."""
    user_path = user_path or user_config_path()
    repo_path = Path(repo_root) / REPO_CONFIG_FILE

    merged: Dict[str, Dict[str, Any]] = {"repo": {}, "spawn": {}}
    for path in (user_path, repo_path):
        for section, values in _flatten(read_toml(path), path).items():
            merged[section].update(values)

    try:
        settings = Settings.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(repo_path, str(e)) from e

    logger.debug("settings for %s: %s", repo_root, settings.model_dump())
    return settings
