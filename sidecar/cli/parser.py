# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Sequence

_EXEC_EPILOG = """\
exit status:
  the remote program's status, or 128+N if it was killed by signal N.
  127 if the program could not be started, 125 if the server could not be
  reached or went away. A program can exit with 127 or 125 itself; set
  client.exit_code_launch_failure and client.exit_code_connection_failure
  in config.json to tell them apart.
"""


def _add_verbose(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v", "--verbose", action="count", default=argparse.SUPPRESS,
        help="enable debug messages (repeat for more)",
    )


def _octal(text: str) -> int:
    try:
        return int(text, 8)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid octal mode: {text!r}") from None


def build_parser() -> argparse.ArgumentParser:
    from sidecar import __version__

    parser = argparse.ArgumentParser(
        prog="sidecar",
        description="Sidecar - run commands in a neighbouring container over a shared socket",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="enable debug messages (repeat for more)",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Override runtime data directory (default: ~/.sidecar or SIDECAR_DATA_DIR)",
    )
    sub = parser.add_subparsers(dest="command")

    # ── Serve ─────────────────────────────────────────────
    for name, help_text in (
        ("serve", "Start the server and wait for commands"),
        ("start", "Start the server (alias for serve)"),
    ):
        p_serve = sub.add_parser(name, help=help_text)
        _add_verbose(p_serve)
        p_serve.add_argument(
            "path", nargs="?", default=None,
            help="server socket location (default: from config)",
        )
        p_serve.add_argument(
            "--parents", action="store_true", default=None,
            help="make parent directories as needed",
        )
        p_serve.add_argument(
            "--mode", type=_octal, default=None, metavar="OCTAL",
            help="permission bits of the socket file (e.g. 660)",
        )
        p_serve.add_argument(
            "--setsid", action="store_true",
            help="start the server as a new session",
        )
        p_serve.add_argument(
            "--kill-grace", type=float, default=None, metavar="SECONDS",
            help="SIGTERM first and wait this long before SIGKILL on disconnect",
        )
        p_serve.set_defaults(func=_lazy_serve)

    # ── Stop ──────────────────────────────────────────────
    p_stop = sub.add_parser("stop", help="Stop a running server")
    _add_verbose(p_stop)
    p_stop.add_argument(
        "path", nargs="?", default=None,
        help="server socket location (default: from config)",
    )
    p_stop.set_defaults(func=_lazy_stop)

    # ── Exec ──────────────────────────────────────────────
    p_exec = sub.add_parser(
        "exec", help="Execute a command on the server",
        usage="%(prog)s [OPTIONS] [--] PROGRAM [ARG]...",
        epilog=_EXEC_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_verbose(p_exec)
    p_exec.add_argument(
        "-c", "--connect", default=None, metavar="PATH",
        help="server socket location (run locally when omitted)",
    )
    p_exec.add_argument(
        "-e", "--env", action="append", default=[], metavar="NAME=VALUE",
        help="set NAME to VALUE in the environment",
    )
    p_exec.add_argument(
        "--clear-env", action="store_true",
        help="start from an empty environment instead of the current one",
    )
    p_exec.add_argument(
        "-w", "--workdir", default=None, metavar="DIR",
        help="change working directory to DIR",
    )
    p_exec.add_argument("--user", type=int, default=None, metavar="UID", help="set user id")
    p_exec.add_argument("--group", type=int, default=None, metavar="GID", help="set group id")
    p_exec.add_argument(
        "--setpgid", action="store_true",
        help="run the program as a process group leader",
    )
    p_exec.add_argument(
        "--setsid", action="store_true",
        help="run the program in a new session",
    )
    p_exec.add_argument(
        "--deathsig", default="SIGKILL", metavar="SIGNAL",
        help="signal delivered to the program when the server exits (default: SIGKILL)",
    )
    p_exec.add_argument(
        "program", nargs=argparse.REMAINDER,
        help="program and arguments to execute",
    )
    p_exec.set_defaults(func=_lazy_exec)

    return parser


def cli_main(argv: Sequence[str] | None = None) -> None:
    from dotenv import load_dotenv

    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    # Apply --data-dir override before any command
    if args.data_dir:
        os.environ["SIDECAR_DATA_DIR"] = args.data_dir

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    args.func(args)


# ── Lazy import wrappers ──────────────────────────────────


def _lazy_serve(args: argparse.Namespace) -> None:
    from sidecar.cli.commands.serve import cmd_serve

    cmd_serve(args)


def _lazy_stop(args: argparse.Namespace) -> None:
    from sidecar.cli.commands.stop import cmd_stop

    cmd_stop(args)


def _lazy_exec(args: argparse.Namespace) -> None:
    from sidecar.cli.commands.exec_cmd import cmd_exec

    cmd_exec(args)
