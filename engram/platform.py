"""
Engram Platform Abstraction
---------------------------
Cross-platform path resolution for the persisted memory state.

Directories come from platformdirs so the engine lands in the usual
per-user locations on Windows, Linux and macOS, with environment
overrides and a Docker convention on top.
"""

import os
import sys
import logging
from pathlib import Path
from typing import Any, Dict

import platformdirs

logger = logging.getLogger("Engram.Platform")

IS_WINDOWS = sys.platform == "win32"
IS_MACOS = sys.platform == "darwin"
IS_LINUX = sys.platform.startswith("linux")

_APP_NAME = "engram"
_APP_AUTHOR = "Engram"


def is_running_in_docker() -> bool:
    """Detect if we're running inside a Docker container."""
    if os.environ.get("ENGRAM_DOCKER") == "1":
        return True
    if Path("/.dockerenv").exists():
        return True
    try:
        with open("/proc/1/cgroup", "r") as f:
            return "docker" in f.read()
    except (FileNotFoundError, PermissionError):
        return False


def _resolve_dir(env_var: str, platformdirs_fn: str) -> Path:
    """
    Resolve a directory path with priority:
    1. Environment variable override
    2. platformdirs location for the current OS
    """
    env_val = os.environ.get(env_var)
    if env_val:
        return Path(env_val)
    fn = getattr(platformdirs, platformdirs_fn)
    return Path(fn(_APP_NAME, _APP_AUTHOR))


def get_data_dir() -> Path:
    """
    Get the Engram data directory.

    Priority: ENGRAM_DATA_DIR env var > platformdirs.
    Docker override: /data when running in a container.

    Contains: memory.db, index/, .engram.lock
    """
    if is_running_in_docker():
        return Path(os.environ.get("ENGRAM_DATA_DIR", "/data"))
    return _resolve_dir("ENGRAM_DATA_DIR", "user_data_dir")


def get_config_dir() -> Path:
    """
    Get the Engram configuration directory.

    Priority: ENGRAM_CONFIG_DIR env var > platformdirs.
    Contains: config.yaml
    """
    if is_running_in_docker():
        return Path(os.environ.get("ENGRAM_CONFIG_DIR", "/config"))
    return _resolve_dir("ENGRAM_CONFIG_DIR", "user_config_dir")


def get_cache_dir() -> Path:
    """Directory for downloaded embedding model weights."""
    if is_running_in_docker():
        return Path(os.environ.get("ENGRAM_CACHE_DIR", "/data/models"))
    return _resolve_dir("ENGRAM_CACHE_DIR", "user_cache_dir")


def get_platform_info() -> Dict[str, Any]:
    """Return platform diagnostic information for health output."""
    return {
        "os": sys.platform,
        "python": sys.version,
        "is_windows": IS_WINDOWS,
        "is_macos": IS_MACOS,
        "is_linux": IS_LINUX,
        "is_docker": is_running_in_docker(),
        "data_dir": str(get_data_dir()),
        "config_dir": str(get_config_dir()),
        "cache_dir": str(get_cache_dir()),
    }
