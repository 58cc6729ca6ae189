# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys

from sidecar.cli._common import configure_logging, load_cli_config
from sidecar.config import SidecarConfig, resolve_socket_path
from sidecar.exceptions import BindError
from sidecar.supervisor.listener import Listener

logger = logging.getLogger("sidecar")

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def build_listener(args: argparse.Namespace, config: SidecarConfig) -> Listener:
    """Merge command-line overrides over the ``server`` config section."""
    server = config.server
    return Listener(
        resolve_socket_path(config, args.path),
        backlog=server.backlog,
        socket_mode=args.mode if args.mode is not None else server.socket_mode,
        make_parents=args.parents if args.parents is not None else server.make_parents,
        kill_grace_s=args.kill_grace if args.kill_grace is not None else server.kill_grace_s,
    )


async def run_server(listener: Listener) -> None:
    """Serve until SIGINT/SIGTERM or a stop request."""
    loop = asyncio.get_running_loop()
    await listener.start()
    for sig in _SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, listener.request_stop)
    try:
        await listener.serve_forever()
    finally:
        for sig in _SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the server and block until it is stopped."""
    config = load_cli_config()
    configure_logging(args, config, log_to_file=True)

    if args.setsid:
        try:
            os.setsid()
        except OSError as exc:
            print(f"sidecar: setsid() failed: {exc}", file=sys.stderr)
            sys.exit(1)

    listener = build_listener(args, config)
    logger.info("Starting server (pid=%d) on %s", os.getpid(), listener.socket_path)
    try:
        asyncio.run(run_server(listener))
    except BindError as exc:
        print(f"sidecar: {exc}", file=sys.stderr)
        sys.exit(1)
    logger.info("Server exited after %d session(s)", listener.sessions_started)
