"""
Client-side connector: drives one remote execution to its exit status.
"""

# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Iterable, Sequence
from enum import Enum
from pathlib import Path

from sidecar.exceptions import (
    ChannelError,
    LaunchError,
    LostConnectionError,
    MalformedMessageError,
    PeerClosedError,
)
from sidecar.supervisor import transport as transport_mod
from sidecar.supervisor.protocol import (
    ExitStatus,
    LaunchRequest,
    Signal,
    decode_exit,
    decode_result,
    encode_request,
    encode_signal,
)
from sidecar.supervisor.signals import (
    DEFAULT_RELAY_SIGNALS,
    is_group_signal,
    resolve_relay_signals,
    signal_name,
)
from sidecar.supervisor.transport import Transport, close_handles

logger = logging.getLogger(__name__)


class ConnectorState(Enum):
    """State of a client-side connector."""
    IDLE = "idle"
    CONNECTED = "connected"
    AWAITING_RESULT = "awaiting_result"
    STREAMING = "streaming"
    FAILED = "failed"
    CLOSED = "closed"


_TRANSITIONS: dict[ConnectorState, frozenset[ConnectorState]] = {
    ConnectorState.IDLE: frozenset({ConnectorState.CONNECTED, ConnectorState.CLOSED}),
    ConnectorState.CONNECTED: frozenset({ConnectorState.AWAITING_RESULT, ConnectorState.CLOSED}),
    ConnectorState.AWAITING_RESULT: frozenset({
        ConnectorState.STREAMING, ConnectorState.FAILED, ConnectorState.CLOSED,
    }),
    ConnectorState.STREAMING: frozenset({ConnectorState.CLOSED}),
    ConnectorState.FAILED: frozenset({ConnectorState.CLOSED}),
    ConnectorState.CLOSED: frozenset(),
}


class Connector:
    """
    One remote execution, from connect to exit status.

    Flow::

        Idle -> Connected -> AwaitingResult -> Streaming -> Closed
                                            \\-> Failed   -> Closed

    While Streaming, local signals are forwarded by one task while another
    waits for the exit status.  A connector is single-use.

    Args:
        socket_path: Server endpoint.
        relay_signals: Signal names to intercept and forward.  ``None``
            means the default relay set.
        stdio: Descriptors handed to the remote child as its standard
            streams (normally this process's own 0, 1 and 2).
        install_signal_handlers: Intercept OS signals via the event loop.
            Off, signals can still be injected with :meth:`send_signal`.
        stop_self_on_tstp: After relaying SIGTSTP, stop this process with
            SIGSTOP so the shell sees the job suspend.
    """

    def __init__(
        self,
        socket_path: Path | str,
        *,
        relay_signals: Iterable[str] | None = None,
        stdio: Sequence[int] = (0, 1, 2),
        install_signal_handlers: bool = True,
        stop_self_on_tstp: bool = True,
    ):
        self.socket_path = Path(socket_path)
        names = DEFAULT_RELAY_SIGNALS if relay_signals is None else tuple(relay_signals)
        self.relay_signals = resolve_relay_signals(names)
        self.stdio = tuple(stdio)
        self.install_signal_handlers = install_signal_handlers
        self.stop_self_on_tstp = stop_self_on_tstp

        self.state = ConnectorState.IDLE
        self.pid: int | None = None
        self.signals_relayed = 0
        self._transport: Transport | None = None
        self._queue: asyncio.Queue[int] = asyncio.Queue()
        self._installed: list[int] = []

    def _transition(self, new_state: ConnectorState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid connector transition {self.state.value} -> {new_state.value}")
        logger.debug("Connector: %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def send_signal(self, value: int) -> None:
        """Queue *value* for forwarding to the remote child."""
        self._queue.put_nowait(value)

    async def run(self, request: LaunchRequest) -> ExitStatus:
        """
        Execute *request* remotely and return the child's exit status.

        Raises:
            ConnectError: No server listens at the socket path.
            LaunchError: The server could not start the command.
            LostConnectionError: The connection ended before the exit status.
        """
        if self.state is not ConnectorState.IDLE:
            raise RuntimeError("Connector instances are single-use")
        try:
            self._transport = await transport_mod.connect(self.socket_path)
            self._transition(ConnectorState.CONNECTED)
            await self._send_request(request)
            self._transition(ConnectorState.AWAITING_RESULT)
            await self._await_result()
            self._transition(ConnectorState.STREAMING)
            return await self._stream()
        finally:
            self._remove_signal_handlers()
            if self._transport is not None:
                self._transport.close()
            self.state = ConnectorState.CLOSED

    # ── Connected ─────────────────────────────────────────────────

    async def _send_request(self, request: LaunchRequest) -> None:
        assert self._transport is not None
        try:
            await self._transport.send(encode_request(request), self.stdio)
        except ChannelError as e:
            raise LostConnectionError(f"failed to send launch request: {e}") from e
        logger.debug("Launch request sent: %s", list(request.argv))

    # ── AwaitingResult ────────────────────────────────────────────

    async def _await_result(self) -> None:
        assert self._transport is not None
        try:
            payload, handles = await self._transport.receive()
        except ChannelError as e:
            raise LostConnectionError(f"connection lost before launch result: {e}") from e
        close_handles(handles)

        try:
            result = decode_result(payload)
        except MalformedMessageError as e:
            raise LostConnectionError(f"invalid launch result: {e}") from e

        if not result.ok:
            self._transition(ConnectorState.FAILED)
            reason = result.reason or "launch failed"
            logger.info("Launch failed: %s", reason)
            raise LaunchError(reason, errno=result.errno)

        self.pid = result.pid
        logger.info("Remote process started (PID %s)", result.pid)

    # ── Streaming ─────────────────────────────────────────────────

    async def _stream(self) -> ExitStatus:
        self._install_signal_handlers()
        forwarder = asyncio.create_task(self._forward_signals(), name="sidecar-forward")
        try:
            return await self._await_exit()
        finally:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forwarder

    async def _forward_signals(self) -> None:
        assert self._transport is not None
        while True:
            value = await self._queue.get()
            sig = Signal(value=value, group=is_group_signal(value))
            try:
                await self._transport.send(encode_signal(sig))
            except ChannelError as e:
                # The exit waiter reports the lost connection.
                logger.warning("Could not relay %s: %s", signal_name(value), e)
                return
            self.signals_relayed += 1
            logger.debug("Relayed %s (group=%s)", signal_name(value), sig.group)

            if value == signal.SIGTSTP and self.stop_self_on_tstp:
                os.kill(os.getpid(), signal.SIGSTOP)

    async def _await_exit(self) -> ExitStatus:
        assert self._transport is not None
        while True:
            try:
                payload, handles = await self._transport.receive()
            except PeerClosedError as e:
                raise LostConnectionError("server closed the connection before the exit status") from e
            except ChannelError as e:
                raise LostConnectionError(f"connection lost: {e}") from e

            if handles:
                close_handles(handles)
                logger.warning("Dropping message with %d unexpected handles", len(handles))
                continue
            try:
                status = decode_exit(payload)
            except MalformedMessageError as e:
                logger.warning("Ignoring invalid message while streaming: %s", e)
                continue
            logger.info("Remote process exited (code=%s, signal=%s)", status.code, status.signal)
            return status

    # ── Signal handlers ───────────────────────────────────────────

    def _install_signal_handlers(self) -> None:
        if not self.install_signal_handlers:
            return
        loop = asyncio.get_running_loop()
        for value in self.relay_signals:
            try:
                loop.add_signal_handler(value, self.send_signal, value)
            except (ValueError, RuntimeError, OSError) as e:
                logger.debug("Cannot intercept %s: %s", signal_name(value), e)
                continue
            self._installed.append(value)

    def _remove_signal_handlers(self) -> None:
        if not self._installed:
            return
        loop = asyncio.get_running_loop()
        for value in self._installed:
            loop.remove_signal_handler(value)
        self._installed.clear()
