# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from sidecar.config.models import (
    ClientConfig,
    ServerConfig,
    SidecarConfig,
    SystemConfig,
    get_config_path,
    invalidate_cache,
    load_config,
    resolve_socket_path,
)

__all__ = [
    "ClientConfig",
    "ServerConfig",
    "SidecarConfig",
    "SystemConfig",
    "get_config_path",
    "invalidate_cache",
    "load_config",
    "resolve_socket_path",
]
