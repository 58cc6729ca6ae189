# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Sidecar, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Central configuration module for Sidecar.

Defines Pydantic models for config.json and a loader
with a module-level singleton cache.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from sidecar.exceptions import ConfigValidationError
from sidecar.supervisor.signals import DEFAULT_RELAY_SIGNALS, resolve_relay_signals

logger = logging.getLogger("sidecar.config")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class SystemConfig(BaseModel):
    log_level: str = "WARNING"
    json_log_file: bool = True

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
        return level


class ServerConfig(BaseModel):
    """Listener settings used by ``sidecar serve`` and ``sidecar stop``."""

    socket_path: str | None = None  # None: <data_dir>/sidecar.sock
    socket_mode: int = 0o660
    make_parents: bool = False
    backlog: int = Field(default=128, ge=1)
    kill_grace_s: float = Field(default=0.0, ge=0.0)  # 0 disables SIGTERM-first


class ClientConfig(BaseModel):
    """Settings for ``sidecar exec``."""

    relay_signals: list[str] = list(DEFAULT_RELAY_SIGNALS)
    inherit_env: bool = True
    exit_code_launch_failure: int = Field(default=127, ge=1, le=255)
    exit_code_connection_failure: int = Field(default=125, ge=1, le=255)

    @field_validator("relay_signals")
    @classmethod
    def _check_relay_signals(cls, v: list[str]) -> list[str]:
        # Raises ValueError for SIGKILL and friends.
        resolve_relay_signals(v)
        return v


class SidecarConfig(BaseModel):
    version: int = 1
    system: SystemConfig = SystemConfig()
    server: ServerConfig = ServerConfig()
    client: ClientConfig = ClientConfig()


# ---------------------------------------------------------------------------
# Singleton cache
# ---------------------------------------------------------------------------

_config: SidecarConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def invalidate_cache() -> None:
    """Reset the module-level singleton cache."""
    global _config, _config_path, _config_mtime
    _config = None
    _config_path = None
    _config_mtime = 0.0


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def get_config_path(data_dir: Path | None = None) -> Path:
    """Return the path to config.json inside *data_dir*."""
    if data_dir is None:
        from sidecar.paths import get_data_dir

        data_dir = get_data_dir()
    return data_dir / "config.json"


def resolve_socket_path(config: SidecarConfig, override: str | Path | None = None) -> Path:
    """Pick the socket path: explicit *override*, then config, then default."""
    if override:
        return Path(override).expanduser()
    if config.server.socket_path:
        return Path(config.server.socket_path).expanduser()
    from sidecar.paths import get_default_socket_path

    return get_default_socket_path()


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------


def load_config(path: Path | None = None) -> SidecarConfig:
    """Load configuration from disk, returning cached instance when possible.

    When the file does not exist the default configuration is returned.
    The cache is invalidated automatically when the file's mtime changes.

    Raises:
        ConfigValidationError: The file is not valid JSON or fails validation.
    """
    global _config, _config_path, _config_mtime

    if path is None:
        path = get_config_path()

    if _config is not None and _config_path == path:
        try:
            disk_mtime = path.stat().st_mtime
        except OSError:
            disk_mtime = 0.0
        if disk_mtime == _config_mtime:
            return _config
        logger.debug("Config file changed on disk (mtime %.3f -> %.3f); reloading", _config_mtime, disk_mtime)

    if path.is_file():
        logger.debug("Loading config from %s", path)
        try:
            data: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
            config = SidecarConfig.model_validate(data)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse %s: %s", path, exc)
            raise ConfigValidationError(f"{path}: invalid JSON: {exc}") from exc
        except ValidationError as exc:
            logger.error("Invalid config in %s: %s", path, exc)
            raise ConfigValidationError(f"{path}: {exc}") from exc
    else:
        logger.debug("Config file not found at %s; using defaults", path)
        config = SidecarConfig()

    _config = config
    _config_path = path
    try:
        _config_mtime = path.stat().st_mtime
    except OSError:
        _config_mtime = 0.0
    return config

