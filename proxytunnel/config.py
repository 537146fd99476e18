"""
proxytunnel Configuration Management
====================================
Handles config loading, proxy credentials and platform-specific paths.
"""

from __future__ import annotations

import copy
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from platformdirs import user_config_dir

APP_NAME = "proxytunnel"

# ── paths ────────────────────────────────────────────────────────────────────

CONFIG_DIR = Path(user_config_dir(APP_NAME))
CONFIG_FILE = CONFIG_DIR / "config.yaml"


def ensure_dirs() -> None:
    """Create the config directory."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


# ── default config ───────────────────────────────────────────────────────────

DEFAULT_CONFIG: Dict[str, Any] = {
    "connection": {
        "proxy": "",
        "connect_timeout": 30.0,
        "request_timeout": 30.0,
        "socket_timeout": None,
        "max_header_size": 65536,
        "header_encoding": "iso-8859-1",
        "user_agent": "",
    },
    "auth": {
        "username": "",
        "password": "",
        "domain": "",
        "schemes": ["Kerberos", "Negotiate", "Digest", "NTLM", "Basic"],
    },
    "ui": {
        "verbose": False,
    },
}


@dataclass
class ConnectionConfig:
    proxy: str = ""
    connect_timeout: Optional[float] = 30.0
    request_timeout: Optional[float] = 30.0
    socket_timeout: Optional[float] = None
    max_header_size: int = 65536
    header_encoding: str = "iso-8859-1"
    user_agent: str = ""


@dataclass
class AuthConfig:
    username: str = ""
    password: str = ""
    domain: str = ""
    schemes: List[str] = field(default_factory=lambda: list(DEFAULT_CONFIG["auth"]["schemes"]))


@dataclass
class UIConfig:
    verbose: bool = False


@dataclass
class TunnelConfig:
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    ui: UIConfig = field(default_factory=UIConfig)


def _env_float(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def load_config(path: Optional[Path] = None) -> TunnelConfig:
    """Load configuration from disk, env vars, and defaults."""
    config_file = path or CONFIG_FILE
    if path is None:
        ensure_dirs()
    raw: Dict[str, Any] = {}

    if config_file.exists():
        with open(config_file) as f:
            raw = yaml.safe_load(f) or {}

    # Merge with defaults
    merged = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), raw)

    # Env-var overrides
    if os.environ.get("PROXYTUNNEL_PROXY"):
        merged["connection"]["proxy"] = os.environ["PROXYTUNNEL_PROXY"]
    if os.environ.get("PROXYTUNNEL_USERNAME"):
        merged["auth"]["username"] = os.environ["PROXYTUNNEL_USERNAME"]
    if os.environ.get("PROXYTUNNEL_PASSWORD"):
        merged["auth"]["password"] = os.environ["PROXYTUNNEL_PASSWORD"]
    if os.environ.get("PROXYTUNNEL_DOMAIN"):
        merged["auth"]["domain"] = os.environ["PROXYTUNNEL_DOMAIN"]
    connect_timeout = _env_float("PROXYTUNNEL_CONNECT_TIMEOUT")
    if connect_timeout is not None:
        merged["connection"]["connect_timeout"] = connect_timeout
    request_timeout = _env_float("PROXYTUNNEL_REQUEST_TIMEOUT")
    if request_timeout is not None:
        merged["connection"]["request_timeout"] = request_timeout

    cfg = TunnelConfig(
        connection=ConnectionConfig(**merged.get("connection", {})),
        auth=AuthConfig(**merged.get("auth", {})),
        ui=UIConfig(**merged.get("ui", {})),
    )
    return cfg


def save_config(cfg: TunnelConfig, path: Optional[Path] = None) -> Path:
    """Persist current configuration to disk."""
    config_file = path or CONFIG_FILE
    if path is None:
        ensure_dirs()
    data = {
        "connection": {
            "proxy": cfg.connection.proxy,
            "connect_timeout": cfg.connection.connect_timeout,
            "request_timeout": cfg.connection.request_timeout,
            "socket_timeout": cfg.connection.socket_timeout,
            "max_header_size": cfg.connection.max_header_size,
            "header_encoding": cfg.connection.header_encoding,
            "user_agent": cfg.connection.user_agent,
        },
        "auth": {
            "username": cfg.auth.username,
            "password": cfg.auth.password,
            "domain": cfg.auth.domain,
            "schemes": cfg.auth.schemes,
        },
        "ui": {
            "verbose": cfg.ui.verbose,
        },
    }
    with open(config_file, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    return config_file


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def detect_platform() -> Dict[str, str]:
    """Return platform information."""
    return {
        "system": platform.system(),
        "release": platform.release(),
        "machine": platform.machine(),
        "python": platform.python_version(),
    }
