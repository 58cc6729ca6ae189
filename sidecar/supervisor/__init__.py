# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0
"""
Remote execution supervisor package.

A server (Listener + one Session per connection) spawns commands on
behalf of clients (Connector) that reach it over a Unix SEQPACKET socket,
handing over their own standard streams as passed descriptors.
"""

from __future__ import annotations

from sidecar.supervisor.connector import Connector, ConnectorState
from sidecar.supervisor.listener import Listener
from sidecar.supervisor.process_handle import ProcessHandle, ProcessState, ProcessStats, StreamTriple
from sidecar.supervisor.protocol import ExitStatus, LaunchRequest, LaunchResult, Signal, StopRequest
from sidecar.supervisor.session import Session, SessionState
from sidecar.supervisor.transport import Endpoint, Transport, connect, listen

__all__ = [
    "Connector",
    "ConnectorState",
    "Endpoint",
    "ExitStatus",
    "LaunchRequest",
    "LaunchResult",
    "Listener",
    "ProcessHandle",
    "ProcessState",
    "ProcessStats",
    "Session",
    "SessionState",
    "Signal",
    "StopRequest",
    "StreamTriple",
    "Transport",
    "connect",
    "listen",
]
