"""
Configuration and scope resolution.

Settings are layered, later layers winning:
1. Built-in defaults
2. Environment variables (LORE_*)
3. ~/.lore/config/lore.yaml
4. A dict handed to load_config()

Scope roots:
    project     <git root or cwd>/.lore/memory
    local       <project>/.lore/memory/local
    global      ~/.lore/memory
    enterprise  $LORE_ENTERPRISE_PATH (only when enterprise.enabled)
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from lore.errors import ValidationError
from lore.log import get_logger
from lore.models import Scope, is_scope

logger = get_logger("lore.config")

LORE_DIR_NAME = ".lore"
MEMORY_DIR_NAME = "memory"

DEFAULTS: Dict[str, Any] = {
    "home": str(Path.home() / LORE_DIR_NAME),
    "embedding": {
        "provider": "ollama",
        "endpoint": "http://localhost:11434",
        "model": "embeddinggemma",
        "fallback_models": ["nomic-embed-text", "all-minilm"],
        "local_model": "all-MiniLM-L6-v2",
        "timeout_seconds": 10.0,
        "retries": 2,
        "backoff_seconds": 0.1,
    },
    "llm": {
        "endpoint": "http://localhost:11434",
        "model": "llama3.2",
        "timeout_seconds": 30.0,
    },
    "cache": {
        "max_entries": 1000,
    },
    "search": {
        "thresholds": {
            "session_start": 0.4,
            "user_prompt_first": 0.45,
            "user_prompt": 0.55,
            "post_tool_use": 0.5,
            "explicit_search": 0.5,
        },
        "limit": 10,
    },
    "injection": {
        "limits": {"gotcha": 5, "decision": 3, "learning": 2},
        "thresholds": {"gotcha": 0.2, "decision": 0.35, "learning": 0.4},
        "total_cap": 10,
    },
    "enterprise": {
        "enabled": False,
        "path": None,
    },
}


def _merge(base: dict, override: dict) -> dict:
    """Merge nested mappings key by key."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _env_config() -> dict:
    config: Dict[str, Any] = {}
    env = os.environ

    if env.get("LORE_HOME"):
        config["home"] = env["LORE_HOME"]
    if env.get("LORE_OLLAMA_URL"):
        config.setdefault("embedding", {})["endpoint"] = env["LORE_OLLAMA_URL"]
        config.setdefault("llm", {})["endpoint"] = env["LORE_OLLAMA_URL"]
    if env.get("LORE_EMBEDDING_PROVIDER"):
        config.setdefault("embedding", {})["provider"] = env["LORE_EMBEDDING_PROVIDER"]
    if env.get("LORE_EMBEDDING_MODEL"):
        config.setdefault("embedding", {})["model"] = env["LORE_EMBEDDING_MODEL"]
    if env.get("LORE_EMBEDDING_TIMEOUT"):
        config.setdefault("embedding", {})["timeout_seconds"] = float(env["LORE_EMBEDDING_TIMEOUT"])
    if env.get("LORE_LLM_MODEL"):
        config.setdefault("llm", {})["model"] = env["LORE_LLM_MODEL"]
    if env.get("LORE_LLM_TIMEOUT"):
        config.setdefault("llm", {})["timeout_seconds"] = float(env["LORE_LLM_TIMEOUT"])
    if env.get("LORE_ENTERPRISE_PATH"):
        config.setdefault("enterprise", {})["path"] = env["LORE_ENTERPRISE_PATH"]
    if env.get("LORE_ENTERPRISE_ENABLED"):
        enabled = env["LORE_ENTERPRISE_ENABLED"].lower() in ("1", "true", "yes")
        config.setdefault("enterprise", {})["enabled"] = enabled

    return config


def config_file_path() -> Path:
    home = os.environ.get("LORE_HOME") or str(Path.home() / LORE_DIR_NAME)
    return Path(home) / "config" / "lore.yaml"


def load_config(provided_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Load configuration from defaults, environment, YAML file and caller."""
    config = copy.deepcopy(DEFAULTS)
    _merge(config, _env_config())

    config_file = config_file_path()
    if config_file.exists():
        try:
            with open(config_file) as f:
                file_config = yaml.safe_load(f) or {}
            if isinstance(file_config, dict):
                _merge(config, file_config)
            else:
                logger.warning(f"Ignoring {config_file}: top level is not a mapping")
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not load config file {config_file}: {e}")

    if provided_config:
        _merge(config, copy.deepcopy(provided_config))

    return config


# =============================================================================
# SCOPE RESOLUTION
# =============================================================================

def find_git_root(cwd: Optional[Path] = None) -> Optional[Path]:
    """Walk up from cwd to the directory holding .git, if any."""
    current = Path(cwd or os.getcwd()).resolve()
    for candidate in [current, *current.parents]:
        if (candidate / ".git").exists():
            return candidate
    return None


def get_project_root(cwd: Optional[Path] = None) -> Path:
    return find_git_root(cwd) or Path(cwd or os.getcwd()).resolve()


def get_scope_path(
    scope: str,
    cwd: Optional[Path] = None,
    config: Optional[Dict[str, Any]] = None,
) -> Path:
    """Resolve the storage root for a scope.

    Raises:
        ValidationError: unknown scope, or enterprise scope not configured
    """
    if not is_scope(scope):
        raise ValidationError(f"Invalid scope: {scope}")
    config = config or load_config()

    if scope == Scope.GLOBAL.value:
        return Path(config["home"]).expanduser() / MEMORY_DIR_NAME

    project_memory = get_project_root(cwd) / LORE_DIR_NAME / MEMORY_DIR_NAME
    if scope == Scope.PROJECT.value:
        return project_memory
    if scope == Scope.LOCAL.value:
        return project_memory / "local"

    enterprise = config.get("enterprise") or {}
    if not enterprise.get("enabled"):
        raise ValidationError("Enterprise scope is not enabled")
    if not enterprise.get("path"):
        raise ValidationError("Enterprise scope enabled but LORE_ENTERPRISE_PATH is not set")
    return Path(enterprise["path"]).expanduser()


def get_default_scope(cwd: Optional[Path] = None) -> str:
    """Project scope inside a git work tree, global otherwise."""
    if find_git_root(cwd) is not None:
        return Scope.PROJECT.value
    return Scope.GLOBAL.value


def get_semantic_index_dir(root: Path) -> Path:
    return Path(root) / ".semantic-index"


def get_embedding_cache_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    config = config or load_config()
    return Path(config["home"]).expanduser() / "cache" / "embeddings"
