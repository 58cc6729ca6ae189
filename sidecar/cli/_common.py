# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

"""Helpers shared by the CLI commands."""

from __future__ import annotations

import argparse
import os
import sys

from sidecar.config import SidecarConfig, load_config
from sidecar.exceptions import ConfigError


def load_cli_config() -> SidecarConfig:
    """Load config.json, exiting with status 1 on an invalid file."""
    try:
        return load_config()
    except ConfigError as exc:
        print(f"sidecar: {exc}", file=sys.stderr)
        sys.exit(1)


def resolve_log_level(args: argparse.Namespace, config: SidecarConfig) -> str:
    """SIDECAR_LOG_LEVEL wins, then ``-v``, then ``system.log_level``."""
    from sidecar.logging_config import verbosity_to_level

    env_level = os.environ.get("SIDECAR_LOG_LEVEL")
    if env_level:
        return env_level.upper()
    verbose = getattr(args, "verbose", 0) or 0
    if verbose:
        return verbosity_to_level(verbose)
    return config.system.log_level


def configure_logging(args: argparse.Namespace, config: SidecarConfig, *, log_to_file: bool) -> None:
    from sidecar.logging_config import setup_logging
    from sidecar.paths import get_log_dir

    setup_logging(
        level=resolve_log_level(args, config),
        log_dir=get_log_dir() if log_to_file else None,
        json_file=config.system.json_log_file,
    )
