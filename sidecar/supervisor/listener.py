"""
Listener - accepts clients on the shared socket and runs one Session each.
"""

# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from sidecar.exceptions import TransportError
from sidecar.supervisor import transport
from sidecar.supervisor.session import Session

logger = logging.getLogger(__name__)

ACCEPT_RETRY_DELAY = 0.1  # seconds to back off after a failed accept()


class Listener:
    """
    Unix SEQPACKET server for remote executions.

    Sessions are independent tasks; the only shared state is the bound
    endpoint.  Stopping the listener cancels live sessions, which kill and
    reap their children before closing.
    """

    def __init__(
        self,
        socket_path: Path,
        *,
        backlog: int = 128,
        socket_mode: int | None = None,
        make_parents: bool = False,
        kill_grace_s: float = 0.0,
    ):
        self.socket_path = Path(socket_path)
        self.backlog = backlog
        self.socket_mode = socket_mode
        self.make_parents = make_parents
        self.kill_grace_s = kill_grace_s

        self.endpoint: transport.Endpoint | None = None
        self.sessions: set[asyncio.Task] = set()
        self.sessions_started = 0
        self._accept_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_serving(self) -> bool:
        return self._accept_task is not None and not self._accept_task.done()

    async def start(self) -> None:
        """
        Bind the socket and start accepting in the background.

        Raises:
            BindError: The socket path is unavailable.
        """
        self.endpoint = await transport.listen(
            self.socket_path,
            backlog=self.backlog,
            mode=self.socket_mode,
            make_parents=self.make_parents,
        )
        self._accept_task = asyncio.create_task(self._accept_loop(), name="sidecar-accept")
        logger.info("Server started on %s", self.socket_path)

    def request_stop(self) -> None:
        """Ask :meth:`serve_forever` to return (safe from signal handlers)."""
        self._stop_event.set()

    async def serve_forever(self) -> None:
        """Start if needed, then run until :meth:`request_stop`; always stops."""
        if self.endpoint is None:
            await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    async def _accept_loop(self) -> None:
        assert self.endpoint is not None
        while True:
            try:
                conn = await self.endpoint.accept()
            except TransportError as e:
                logger.error("Failed to accept connection: %s", e)
                await asyncio.sleep(ACCEPT_RETRY_DELAY)
                continue

            session = Session(
                conn,
                kill_grace_s=self.kill_grace_s,
                on_stop=self.request_stop,
            )
            task = asyncio.create_task(session.run(), name=session.session_id)
            self.sessions.add(task)
            task.add_done_callback(self.sessions.discard)
            self.sessions_started += 1

    async def stop(self) -> None:
        """Stop accepting, cancel live sessions and remove the socket file."""
        if self._accept_task is not None:
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass
            self._accept_task = None

        if self.endpoint is not None:
            self.endpoint.close()

        live = list(self.sessions)
        if live:
            logger.info("Cancelling %d live session(s)", len(live))
            for task in live:
                task.cancel()
            await asyncio.gather(*live, return_exceptions=True)

        logger.info("Server stopped")
