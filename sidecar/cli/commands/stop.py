# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from sidecar.cli._common import configure_logging, load_cli_config
from sidecar.config import resolve_socket_path
from sidecar.exceptions import ChannelError, ConnectError, PeerClosedError
from sidecar.supervisor import transport
from sidecar.supervisor.protocol import StopRequest, encode_request

logger = logging.getLogger("sidecar")


async def request_stop(path: Path) -> None:
    """Ask the server at *path* to shut down and wait for it to hang up.

    Raises:
        ConnectError: No server listens at *path*.
    """
    conn = await transport.connect(path)
    async with conn:
        try:
            await conn.send(encode_request(StopRequest()))
            # The server closes the session once the stop is accepted.
            await conn.receive()
        except PeerClosedError:
            logger.info("Server at %s acknowledged stop", path)
        except ChannelError as exc:
            logger.warning("Stop request to %s ended abnormally: %s", path, exc)


def cmd_stop(args: argparse.Namespace) -> None:
    """Stop a running server."""
    config = load_cli_config()
    configure_logging(args, config, log_to_file=False)

    path = resolve_socket_path(config, args.path)
    try:
        asyncio.run(request_stop(path))
    except ConnectError as exc:
        print(f"sidecar: server is not running: {exc}", file=sys.stderr)
        sys.exit(1)
