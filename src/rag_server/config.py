"""Configuration loading utilities for the RAG server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable RAG_SERVER_CONFIG
3. Fallback to "config/default.yaml"

Values missing from the file are filled from :data:`DEFAULTS`. Environment
variables with prefix ``RAG_SERVER__`` override anything loaded
(e.g., RAG_SERVER__MEMORY__MAX_MESSAGE_COUNT=50).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {
        "cors_origins": ["*"],
        "static_dir": "static",
    },
    "provider": {
        "enabled": True,
        "base_url": "http://localhost:11434",
        "embed_model": "nomic-embed-text",
        "generate_model": "gemma3:1b",
        "timeout": 30.0,
        "embedding_dim": 768,
    },
    "memory": {
        "max_size_bytes": 5 * 1024 * 1024,
        "max_message_count": 20,
        "max_context_size": 1024 * 1024,
        "scorer": "auto",
        "score_timeout": 5.0,
        "max_concurrency": 8,
        "prune_mode": "after_append",
    },
    "documents": {
        "path": None,
        "inline": [],
        "top_k": 3,
    },
    "logging": {
        "level": "INFO",
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix RAG_SERVER__."""
    prefix = "RAG_SERVER__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., RAG_SERVER__PROVIDER__BASE_URL -> cfg["provider"]["base_url"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the RAG server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``RAG_SERVER_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file contents, environment overrides applied.
    """
    if path is None:
        path = os.environ.get("RAG_SERVER_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded))


def configure_logging(cfg: Dict[str, Any]) -> None:
    level_name = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
