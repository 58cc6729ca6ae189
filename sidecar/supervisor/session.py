"""
Server-side session: one connection, one request, at most one child.
"""

# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable
from enum import Enum

from sidecar.exceptions import (
    ChannelError,
    MalformedMessageError,
    PeerClosedError,
    SpawnError,
    TransportError,
)
from sidecar.logging_config import set_session_id
from sidecar.supervisor.process_handle import ProcessHandle, StreamTriple
from sidecar.supervisor.protocol import (
    ExitStatus,
    LaunchRequest,
    LaunchResult,
    StopRequest,
    decode_request,
    decode_signal,
    encode_exit,
    encode_result,
)
from sidecar.supervisor.transport import Transport, close_handles

logger = logging.getLogger(__name__)


# ── Session State ──────────────────────────────────────────────────

class SessionState(Enum):
    """State of a server-side session."""
    AWAITING_REQUEST = "awaiting_request"
    SPAWNING = "spawning"
    RUNNING = "running"
    EXITED = "exited"      # Child exited on its own; status being sent
    FAILED = "failed"      # Spawn failed; failure being reported
    KILLING = "killing"    # Client vanished; child being killed and reaped
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.AWAITING_REQUEST: frozenset({SessionState.SPAWNING, SessionState.CLOSED}),
    SessionState.SPAWNING: frozenset({SessionState.RUNNING, SessionState.FAILED, SessionState.CLOSED}),
    SessionState.RUNNING: frozenset({SessionState.EXITED, SessionState.KILLING}),
    SessionState.EXITED: frozenset({SessionState.CLOSED}),
    SessionState.FAILED: frozenset({SessionState.CLOSED}),
    SessionState.KILLING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


# ── Session ────────────────────────────────────────────────────────

class Session:
    """
    Per-connection state machine.

    Flow::

        AwaitingRequest -> Spawning -> Running -> Exited  -> Closed
                                    \\-> Failed -> Closed
                                       Running -> Killing -> Closed

    While Running, signal relay and child-exit detection run as two tasks;
    whichever finishes first decides between Exited and Killing.  A child
    is force-killed and reaped on every path out of Running that did not
    deliver its exit status, including cancellation of the session.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        kill_grace_s: float = 0.0,
        on_stop: Callable[[], None] | None = None,
        session_id: str | None = None,
    ):
        self.transport = transport
        self.kill_grace_s = kill_grace_s
        self.on_stop = on_stop
        self.session_id = session_id or f"ses_{uuid.uuid4().hex[:8]}"
        self.state = SessionState.AWAITING_REQUEST
        self.child: ProcessHandle | None = None
        self.exit_sent = False

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid session transition {self.state.value} -> {new_state.value}")
        logger.debug("Session %s: %s -> %s", self.session_id, self.state.value, new_state.value)
        self.state = new_state

    async def run(self) -> None:
        """Drive the session to Closed.  Never raises except on cancellation."""
        set_session_id(self.session_id)
        logger.info("Client connected (%s)", self.transport.peer_description())
        try:
            request, stdio = await self._await_request()
            if request is None:
                return
            if isinstance(request, StopRequest):
                logger.info("Stop requested by client")
                if self.on_stop is not None:
                    self.on_stop()
                return
            assert stdio is not None
            child = await self._spawn(request, stdio)
            if child is None:
                return
            await self._supervise(child)
        except Exception:
            logger.exception("Session %s failed unexpectedly", self.session_id)
        finally:
            await self._close()

    # ── AwaitingRequest ───────────────────────────────────────────

    async def _await_request(self) -> tuple[LaunchRequest | StopRequest | None, StreamTriple | None]:
        try:
            payload, handles = await self.transport.receive()
        except PeerClosedError:
            logger.info("Client disconnected before sending a request")
            return None, None
        except TransportError as e:
            logger.warning("Failed to receive request: %s", e)
            return None, None

        try:
            request = decode_request(payload, handles)
        except MalformedMessageError as e:
            close_handles(handles)
            logger.warning("Malformed request rejected: %s", e)
            await self._send_result(LaunchResult.failure(f"malformed request: {e}"))
            return None, None
        except BaseException:
            close_handles(handles)
            raise

        if isinstance(request, StopRequest):
            return request, None
        return request, StreamTriple.from_handles(handles)

    # ── Spawning ──────────────────────────────────────────────────

    async def _spawn(self, request: LaunchRequest, stdio: StreamTriple) -> ProcessHandle | None:
        self._transition(SessionState.SPAWNING)
        logger.info(
            "Process starting argv=%s cwd=%s env_keys=%d",
            list(request.argv), request.cwd, len(request.env),
        )
        try:
            child = await ProcessHandle.spawn(request, stdio)
        except SpawnError as e:
            self._transition(SessionState.FAILED)
            await self._send_result(LaunchResult.failure(e.reason, errno=e.errno))
            return None
        except Exception as e:
            logger.exception("Unexpected spawn failure for %s", request.argv[0])
            self._transition(SessionState.FAILED)
            await self._send_result(LaunchResult.failure(f"cannot start {request.argv[0]}: {e}"))
            return None
        finally:
            stdio.close()

        # From here on the child must be reaped before the session ends.
        self.child = child
        try:
            await self.transport.send(encode_result(LaunchResult.success(pid=child.pid)))
        except ChannelError as e:
            logger.warning("Client gone before launch result (PID %s): %s", child.pid, e)
            self._transition(SessionState.RUNNING)
            self._transition(SessionState.KILLING)
            await child.terminate(self.kill_grace_s)
            return None
        self._transition(SessionState.RUNNING)
        return child

    # ── Running ───────────────────────────────────────────────────

    async def _supervise(self, child: ProcessHandle) -> None:
        relay = asyncio.create_task(self._relay_signals(child), name=f"{self.session_id}-relay")
        waiter = asyncio.create_task(child.wait(), name=f"{self.session_id}-wait")
        try:
            done, _pending = await asyncio.wait(
                {relay, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
            if waiter in done:
                # Child exit wins ties: its status is owed to the client.
                self._transition(SessionState.EXITED)
                await self._send_exit(waiter.result())
            else:
                self._transition(SessionState.KILLING)
                logger.warning("Client disconnected; killing PID %s", child.pid)
                await child.terminate(self.kill_grace_s)
        finally:
            for task in (relay, waiter):
                if not task.done():
                    task.cancel()
            for task in (relay, waiter):
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _relay_signals(self, child: ProcessHandle) -> None:
        """Forward signals until the client goes away."""
        while True:
            try:
                payload, handles = await self.transport.receive()
            except PeerClosedError:
                logger.info("Client closed connection (PID %s running)", child.pid)
                return
            except TransportError as e:
                logger.warning("Receive failed (PID %s running): %s", child.pid, e)
                return

            if handles:
                close_handles(handles)
                logger.warning("Dropping message with %d unexpected handles", len(handles))
                continue
            try:
                sig = decode_signal(payload)
            except MalformedMessageError as e:
                logger.warning("Ignoring invalid message while running: %s", e)
                continue
            child.send_signal(sig.value, group=sig.group)

    async def _send_exit(self, status: ExitStatus) -> None:
        try:
            await self.transport.send(encode_exit(status))
            self.exit_sent = True
        except ChannelError as e:
            logger.warning("Could not deliver exit status %s: %s", status.code, e)

    async def _send_result(self, result: LaunchResult) -> None:
        try:
            await self.transport.send(encode_result(result))
        except ChannelError as e:
            logger.warning("Could not deliver launch result: %s", e)

    # ── Closed ────────────────────────────────────────────────────

    async def _close(self) -> None:
        child = self.child
        try:
            if child is not None and child.stats.exit_status is None:
                # Cancelled or crashed mid-run: never leave the child behind.
                logger.warning("Session %s closing with live child PID %s", self.session_id, child.pid)
                child.kill_now()
                await asyncio.shield(child.wait())
        finally:
            self.transport.close()
            # Terminal from any state, including a cancelled Running.
            self.state = SessionState.CLOSED
            logger.info("Session closed")
