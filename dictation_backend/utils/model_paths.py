from __future__ import annotations

import os
import sys
from pathlib import Path

APP_DIR_NAME = "dictation-backend"


def platform_cache_home() -> Path:
    xdg = os.getenv("XDG_CACHE_HOME", "").strip()
    if xdg:
        return Path(xdg).expanduser()
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches"
    if sys.platform.startswith("win"):
        local = os.getenv("LOCALAPPDATA", "").strip()
        if local:
            return Path(local)
    return Path.home() / ".cache"


def default_cache_root() -> Path:
    return platform_cache_home() / APP_DIR_NAME / "models"


def resolve_cache_root(explicit_path: str | None = None) -> Path:
    """
    Resolve the model cache root with precedence:
    1) explicit arg
    2) DICTATION_CACHE_ROOT
    3) platform cache directory (XDG_CACHE_HOME, ~/Library/Caches, ...)
    """

    explicit = str(explicit_path or "").strip()
    if explicit:
        return Path(explicit).expanduser()

    env_path = os.getenv("DICTATION_CACHE_ROOT", "").strip()
    if env_path:
        return Path(env_path).expanduser()

    return default_cache_root()
