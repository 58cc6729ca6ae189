# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Sidecar, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Unified exception hierarchy for Sidecar.

All domain-specific exceptions derive from :class:`SidecarError`,
enabling callers to catch the entire family with a single clause::

    try:
        ...
    except SidecarError as e:
        logger.error("Sidecar error: %s", e)
"""


class SidecarError(Exception):
    """Base exception for all Sidecar errors."""


# ── Endpoint ─────────────────────────────────────────────────


class EndpointError(SidecarError):
    """The shared socket endpoint is unavailable."""


class BindError(EndpointError):
    """Socket path is already bound or cannot be replaced."""


class ConnectError(EndpointError):
    """No listener is bound at the socket path."""


# ── Channel ──────────────────────────────────────────────────


class ChannelError(SidecarError):
    """An established connection can no longer be used."""


class TransportError(ChannelError):
    """Unexpected I/O fault on a connection."""


class PeerClosedError(ChannelError):
    """The peer closed the connection (gracefully or abruptly)."""


# ── Protocol ─────────────────────────────────────────────────


class ProtocolError(SidecarError):
    """Wire protocol errors."""


class MalformedMessageError(ProtocolError):
    """A message could not be decoded or violates the protocol."""


# ── Process ──────────────────────────────────────────────────


class ProcessError(SidecarError):
    """Child process errors."""


class SpawnError(ProcessError):
    """The child process could not be started.

    No process exists when this is raised.  ``errno`` is the OS error
    number when the failure came from the OS, otherwise ``None``.
    """

    def __init__(self, reason: str, *, errno: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.errno = errno


# ── Execution (client side) ──────────────────────────────────


class ExecutionError(SidecarError):
    """Remote execution could not be completed."""


class LaunchError(ExecutionError):
    """The server refused or failed to start the command."""

    def __init__(self, reason: str, *, errno: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.errno = errno


class LostConnectionError(ExecutionError):
    """The connection ended before the exit status arrived."""


# ── Configuration ────────────────────────────────────────────


class ConfigError(SidecarError):
    """Configuration errors."""


class ConfigValidationError(ConfigError):
    """Configuration validation failure."""
