"""
config.py

Configuration for vMix Data Server.

Defaults live in the Config dataclass. A JSON overrides file (same shape the
config editor writes: {"version": 1, "overrides": {...}}, or a legacy flat
object) is applied on top, then VMIX_* environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Dict, Optional

log = logging.getLogger(__name__)


def _default_data_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".vmix_data_server", "profiles")


@dataclass
class Config:
    """Configuration for vMix Data Server."""

    # ----------------------------
    # SERVER
    # ----------------------------
    HOST: str = "127.0.0.1"
    PORT: int = 8088
    DATA_DIR: str = ""  # empty -> ~/.vmix_data_server/profiles
    API_KEY: str = "vmix-default-api-key"  # required for non-loopback clients
    CORS_ENABLED: bool = True
    COMPRESSION_ENABLED: bool = True
    WS_HEARTBEAT_SECONDS: float = 20.0

    # ----------------------------
    # CACHE
    # ----------------------------
    CACHE_EXPIRY_SECONDS: float = 300.0

    # ----------------------------
    # LOGGING
    # ----------------------------
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE_ENABLED: bool = True
    LOG_DIR: str = ""  # empty -> <data dir>/../logs
    LOG_RUN_FILE_PREFIX: str = "vmix_data_server"
    LOG_RETENTION_COUNT: int = 30  # keep last 30 run logs
    LOG_BUFFER_LINES: int = 400

    # ----------------------------
    # SUBSCRIBER CLIENT
    # ----------------------------
    CLIENT_PING_SECONDS: float = 30.0
    CLIENT_RECONNECT_BASE_SECONDS: float = 1.0
    CLIENT_RECONNECT_MULTIPLIER: float = 2.0
    CLIENT_RECONNECT_MAX_SECONDS: float = 30.0
    CLIENT_RECONNECT_MAX_ATTEMPTS: int = 10

    # ----------------------------
    # DESKTOP EDITOR
    # ----------------------------
    DESKTOP_ENABLED: bool = False
    DESKTOP_SAVE_DEBOUNCE_MS: int = 300

    def data_dir(self) -> str:
        return (self.DATA_DIR or "").strip() or _default_data_dir()

    def log_dir(self) -> str:
        base = (self.LOG_DIR or "").strip()
        if base:
            return base
        return os.path.join(os.path.dirname(os.path.abspath(self.data_dir())), "logs")

    def base_url(self) -> str:
        host = "127.0.0.1" if self.HOST in ("0.0.0.0", "::", "") else self.HOST
        return f"http://{host}:{int(self.PORT)}"


# Environment variables applied after the overrides file.
ENV_OVERRIDES: Dict[str, str] = {
    "VMIX_API_KEY": "API_KEY",
    "VMIX_DATA_DIR": "DATA_DIR",
    "VMIX_HOST": "HOST",
    "VMIX_PORT": "PORT",
    "VMIX_LOG_LEVEL": "LOG_LEVEL",
}


def load_overrides_file(path: str) -> dict:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning("Config overrides %s ignored: %s", path, e)
        return {}
    if isinstance(data, dict) and isinstance(data.get("overrides"), dict):
        return data["overrides"]
    if isinstance(data, dict):
        # allow legacy flat dict
        return data
    log.warning("Config overrides %s ignored: expected a JSON object", path)
    return {}


def _coerce(cur, value):
    if isinstance(cur, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(cur, int):
        return int(value)
    if isinstance(cur, float):
        return float(value)
    return str(value)


def apply_overrides(cfg: Config, overrides: dict) -> Config:
    """Apply known fields onto cfg, coercing to the default's type."""
    if not overrides:
        return cfg
    known = {f.name for f in fields(cfg)}
    for k, v in overrides.items():
        if k not in known:
            log.warning("Config: unknown field %s ignored", k)
            continue
        try:
            setattr(cfg, k, _coerce(getattr(cfg, k), v))
        except (TypeError, ValueError):
            log.warning("Config: bad value for %s: %r", k, v)
    return cfg


def apply_env(cfg: Config, environ: Optional[Dict[str, str]] = None) -> Config:
    env = os.environ if environ is None else environ
    picked = {field: env[var] for var, field in ENV_OVERRIDES.items() if env.get(var)}
    return apply_overrides(cfg, picked)


def load_config(path: str = "", environ: Optional[Dict[str, str]] = None) -> Config:
    cfg = Config()
    apply_overrides(cfg, load_overrides_file(path))
    apply_env(cfg, environ)
    return cfg
