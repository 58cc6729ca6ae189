# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

"""Portable signal naming shared by the wire protocol, client and server.

Signals cross the connection by name (``"SIGTERM"``) because signal
numbers differ between platforms; each side maps names to its own
numbers with :func:`signal_from_name` / :func:`signal_name`.
"""

from __future__ import annotations

import signal
from collections.abc import Iterable

# Cannot be caught, or are synchronous faults of the client itself.
FORBIDDEN_SIGNALS: frozenset[str] = frozenset({
    "SIGKILL", "SIGSTOP", "SIGILL", "SIGFPE", "SIGSEGV",
})

# Job-control signals act on the whole foreground process group.
GROUP_SIGNALS: frozenset[str] = frozenset({
    "SIGTSTP", "SIGSTOP", "SIGCONT", "SIGTTIN", "SIGTTOU",
})

DEFAULT_RELAY_SIGNALS: tuple[str, ...] = (
    "SIGHUP",
    "SIGINT",
    "SIGQUIT",
    "SIGTERM",
    "SIGUSR1",
    "SIGUSR2",
    "SIGWINCH",
    "SIGCONT",
    "SIGTSTP",
    "SIGTTIN",
    "SIGTTOU",
    "SIGALRM",
)


def signal_from_name(name: str) -> int:
    """Resolve a signal name (``"SIGTERM"``, ``"TERM"``) or number string.

    Raises:
        ValueError: If the name is unknown on this platform.
    """
    text = name.strip().upper()
    if text.isdigit():
        return int(signal.Signals(int(text)))
    if not text.startswith("SIG"):
        text = "SIG" + text
    try:
        return int(signal.Signals[text])
    except KeyError:
        raise ValueError(f"unknown signal: {name!r}") from None


def signal_name(value: int) -> str:
    """Return the canonical name for a local signal number.

    Raises:
        ValueError: If the number is not a valid signal here.
    """
    return signal.Signals(value).name


def is_group_signal(value: int) -> bool:
    """Whether *value* is a job-control signal aimed at a process group."""
    return signal_name(value) in GROUP_SIGNALS


def resolve_relay_signals(names: Iterable[str]) -> list[int]:
    """Map configured names to local numbers, skipping unsupported ones.

    Names unknown on this platform (e.g. ``SIGWINCH`` where it does not
    exist) are silently dropped; forbidden names raise.

    Raises:
        ValueError: If a forbidden signal is requested.
    """
    result: list[int] = []
    for name in names:
        try:
            value = signal_from_name(name)
        except ValueError:
            continue
        if signal_name(value) in FORBIDDEN_SIGNALS:
            raise ValueError(f"signal cannot be relayed: {signal_name(value)}")
        if value not in result:
            result.append(value)
    return result
