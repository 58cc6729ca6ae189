# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from collections.abc import Iterable, Mapping

from sidecar.cli._common import configure_logging, load_cli_config
from sidecar.config import SidecarConfig
from sidecar.exceptions import ConnectError, LaunchError, LostConnectionError
from sidecar.supervisor.connector import Connector
from sidecar.supervisor.protocol import ExitStatus, LaunchRequest
from sidecar.supervisor.signals import signal_from_name, signal_name

logger = logging.getLogger("sidecar")

_DEFAULT_REMOTE_CWD = "/"


# ── Request building ──────────────────────────────────────


def parse_env_assignments(items: Iterable[str]) -> dict[str, str]:
    """Parse ``NAME=VALUE`` items; a bare ``NAME`` sets an empty value.

    Raises:
        ValueError: An item has an empty name.
    """
    env: dict[str, str] = {}
    for item in items:
        name, _, value = item.partition("=")
        if not name:
            raise ValueError(f"invalid environment assignment: {item!r}")
        env[name] = value
    return env


def build_environment(
    overrides: Mapping[str, str],
    *,
    inherit: bool,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the child's complete environment."""
    env: dict[str, str] = dict(os.environ if base is None else base) if inherit else {}
    env.update(overrides)
    return env


def strip_separator(program: list[str]) -> list[str]:
    if program and program[0] == "--":
        return program[1:]
    return program


def build_launch_request(args: argparse.Namespace, config: SidecarConfig) -> LaunchRequest:
    """Build the request for *args*.

    Raises:
        ValueError: Bad ``--env`` item or unknown ``--deathsig``.
    """
    overrides = parse_env_assignments(args.env)
    inherit = config.client.inherit_env and not args.clear_env
    deathsig = signal_name(signal_from_name(args.deathsig)) if args.deathsig else None
    return LaunchRequest(
        argv=tuple(strip_separator(list(args.program))),
        env=build_environment(overrides, inherit=inherit),
        cwd=args.workdir or _DEFAULT_REMOTE_CWD,
        setsid=args.setsid,
        setpgid=args.setpgid,
        deathsig=deathsig,
        user=args.user,
        group=args.group,
    )


# ── Local execution ───────────────────────────────────────


def exec_local(request: LaunchRequest, *, workdir: str | None) -> None:
    """Replace this process with the program.  Only returns by raising OSError."""
    if workdir:
        os.chdir(workdir)
    if request.setsid:
        os.setsid()
    elif request.setpgid:
        os.setpgid(0, 0)
    if request.group is not None:
        os.setgid(request.group)
    if request.user is not None:
        os.setuid(request.user)
    os.execvpe(request.argv[0], list(request.argv), dict(request.env))


# ── Remote execution ──────────────────────────────────────


def exit_code_for(status: ExitStatus) -> int:
    """Map the remote status to this process's exit code (128+N on signal)."""
    return min(max(status.code, 0), 255)


async def run_remote(request: LaunchRequest, socket_path: str, config: SidecarConfig) -> ExitStatus:
    connector = Connector(socket_path, relay_signals=config.client.relay_signals)
    return await connector.run(request)


def cmd_exec(args: argparse.Namespace) -> None:
    """Execute a command on the server (or locally without ``--connect``)."""
    config = load_cli_config()
    configure_logging(args, config, log_to_file=False)

    program = strip_separator(list(args.program))
    if not program:
        # Nothing to run.
        sys.exit(0)

    try:
        request = build_launch_request(args, config)
    except ValueError as exc:
        print(f"sidecar: {exc}", file=sys.stderr)
        sys.exit(2)

    if not args.connect:
        try:
            exec_local(request, workdir=args.workdir)
        except OSError as exc:
            print(f'sidecar: failed to execute command: "{program[0]}"\n{exc}', file=sys.stderr)
            sys.exit(config.client.exit_code_launch_failure)

    try:
        status = asyncio.run(run_remote(request, args.connect, config))
    except LaunchError as exc:
        print(f'sidecar: failed to execute command: "{program[0]}"\n{exc.reason}', file=sys.stderr)
        sys.exit(config.client.exit_code_launch_failure)
    except (ConnectError, LostConnectionError) as exc:
        print(f"sidecar: {exc}", file=sys.stderr)
        sys.exit(config.client.exit_code_connection_failure)

    logger.debug("Exiting with remote status code=%s signal=%s", status.code, status.signal)
    sys.exit(exit_code_for(status))
