"""
Process handle for one child spawned on behalf of a client.
"""

# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import contextlib
import ctypes
import errno
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from sidecar.exceptions import SpawnError
from sidecar.supervisor.protocol import ExitStatus, LaunchRequest
from sidecar.supervisor.signals import signal_from_name
from sidecar.supervisor.transport import close_handles

logger = logging.getLogger(__name__)

_PR_SET_PDEATHSIG = 1


# ── Process State ──────────────────────────────────────────────────

class ProcessState(Enum):
    """State of a child process."""
    RUNNING = "running"      # Spawned, not yet reaped
    EXITED = "exited"        # Reaped after exiting on its own
    KILLED = "killed"        # Reaped after kill_now()


@dataclass
class ProcessStats:
    """Process statistics."""
    started_at: datetime
    stopped_at: datetime | None = None
    signals_forwarded: int = 0
    exit_status: ExitStatus | None = None


@dataclass
class StreamTriple:
    """stdin/stdout/stderr descriptors received from the client.

    Owned by whoever holds it until :meth:`close`; closing twice is safe.
    """
    stdin: int
    stdout: int
    stderr: int
    _closed: bool = field(default=False, repr=False)

    @classmethod
    def from_handles(cls, handles: list[int]) -> StreamTriple:
        stdin, stdout, stderr = handles
        return cls(stdin=stdin, stdout=stdout, stderr=stderr)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close_handles((self.stdin, self.stdout, self.stderr))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _death_signal_hook(sig: int) -> Callable[[], None]:
    """Build a preexec hook that kills the child when the server dies (Linux)."""
    parent = os.getpid()
    libc = ctypes.CDLL(None, use_errno=True)

    def _hook() -> None:
        if libc.prctl(_PR_SET_PDEATHSIG, sig, 0, 0, 0) != 0:
            err = ctypes.get_errno()
            raise OSError(err, os.strerror(err))
        # The server may have died between fork() and prctl().
        if os.getppid() != parent:
            os._exit(128)

    return _hook


def _spawn_failure_reason(exc: OSError, request: LaunchRequest) -> str:
    filename = exc.filename or request.argv[0]
    if exc.errno == errno.ENOENT:
        if filename == request.cwd:
            return f"working directory not found: {request.cwd}"
        return f"executable not found: {request.argv[0]}"
    if exc.errno == errno.ENOTDIR and filename == request.cwd:
        return f"working directory is not a directory: {request.cwd}"
    if exc.errno == errno.EACCES:
        return f"permission denied: {filename}"
    return f"{exc.strerror or exc}: {filename}"


# ── Process Handle ──────────────────────────────────────────────────

class ProcessHandle:
    """
    Handle for a spawned child process.

    Owns the child until it has been reaped: signal forwarding, waiting
    for termination and forced termination all go through here.
    """

    def __init__(self, process: asyncio.subprocess.Process, request: LaunchRequest):
        self.process = process
        self.pid: int = process.pid
        self.argv = request.argv
        self.group_leader = request.setpgid or request.setsid
        self.state = ProcessState.RUNNING
        self.stats = ProcessStats(started_at=_now())
        self.reap_count = 0
        self._kill_sent = False

    @classmethod
    async def spawn(cls, request: LaunchRequest, stdio: StreamTriple) -> ProcessHandle:
        """
        Start the child with *stdio* as its standard streams.

        The server's copies of the descriptors are closed before returning,
        whether or not the spawn succeeded.

        Raises:
            SpawnError: No process was created.
        """
        kwargs: dict = {
            "stdin": stdio.stdin,
            "stdout": stdio.stdout,
            "stderr": stdio.stderr,
            "env": dict(request.env),
            "cwd": request.cwd,
            "start_new_session": request.setsid,
            "close_fds": True,
        }
        if request.setpgid and not request.setsid:
            kwargs["process_group"] = 0
        if request.user is not None:
            kwargs["user"] = request.user
        if request.group is not None:
            kwargs["group"] = request.group
        if request.deathsig and sys.platform.startswith("linux"):
            try:
                kwargs["preexec_fn"] = _death_signal_hook(signal_from_name(request.deathsig))
            except ValueError as e:
                stdio.close()
                raise SpawnError(str(e)) from e

        try:
            process = await asyncio.create_subprocess_exec(*request.argv, **kwargs)
        except OSError as e:
            reason = _spawn_failure_reason(e, request)
            logger.warning("Spawn failed for %s: %s", request.argv[0], reason)
            raise SpawnError(reason, errno=e.errno) from e
        except (ValueError, TypeError, OverflowError, subprocess.SubprocessError) as e:
            # Bad argument values, or a failing preexec hook.
            logger.warning("Spawn rejected for %s: %s", request.argv[0], e)
            raise SpawnError(f"cannot start {request.argv[0]}: {e}") from e
        finally:
            stdio.close()

        logger.info("Process started: %s (PID %s)", request.argv[0], process.pid)
        return cls(process, request)

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def is_alive(self) -> bool:
        """Check if the child has not been reaped yet."""
        return self.process.returncode is None

    def send_signal(self, value: int, *, group: bool = False) -> None:
        """
        Deliver *value* to the child (best-effort).

        Group signals go to the child's process group when the child leads
        one.  A child that already exited makes this a no-op.
        """
        if not self.is_alive():
            logger.debug("Signal %s dropped: PID %s already exited", value, self.pid)
            return

        try:
            if group and self.group_leader:
                try:
                    os.killpg(self.pid, value)
                except ProcessLookupError:
                    logger.warning("No process group %s; signalling the process", self.pid)
                    os.kill(self.pid, value)
            else:
                os.kill(self.pid, value)
        except ProcessLookupError:
            logger.debug("Signal %s raced with exit of PID %s", value, self.pid)
            return
        except (PermissionError, ValueError) as e:
            logger.error("Failed to send signal %s to PID %s: %s", value, self.pid, e)
            return
        self.stats.signals_forwarded += 1
        logger.debug("Signal %s forwarded to PID %s (group=%s)", value, self.pid, group)

    async def wait(self) -> ExitStatus:
        """
        Wait for the child to terminate and reap it.

        Returns:
            The child's exit status.  Later calls return the same status.
        """
        if self.stats.exit_status is not None:
            return self.stats.exit_status

        returncode = await self.process.wait()
        if self.stats.exit_status is not None:
            return self.stats.exit_status

        status = ExitStatus.from_returncode(returncode)
        self.reap_count += 1
        self.stats.exit_status = status
        self.stats.stopped_at = _now()
        self.state = ProcessState.KILLED if self._kill_sent else ProcessState.EXITED
        logger.info(
            "Process exited: %s (PID %s, code=%s, signal=%s)",
            self.argv[0], self.pid, status.code, status.signal,
        )
        return status

    def kill_now(self) -> None:
        """Force kill the child with SIGKILL.  Idempotent; no-op once exited."""
        if not self.is_alive() or self._kill_sent:
            return

        self._kill_sent = True
        logger.warning("Killing process: %s (PID %s)", self.argv[0], self.pid)
        with contextlib.suppress(ProcessLookupError):
            if self.group_leader:
                try:
                    os.killpg(self.pid, signal.SIGKILL)
                    return
                except ProcessLookupError:
                    pass
            os.kill(self.pid, signal.SIGKILL)

    async def terminate(self, grace_s: float) -> ExitStatus:
        """
        Stop the child: SIGTERM, then SIGKILL after *grace_s* seconds.

        With ``grace_s <= 0`` this is kill_now() followed by wait().
        """
        if grace_s > 0 and self.is_alive():
            self.send_signal(signal.SIGTERM, group=True)
            try:
                async with asyncio.timeout(grace_s):
                    return await asyncio.shield(self.wait())
            except TimeoutError:
                logger.warning(
                    "Process %s (PID %s) ignored SIGTERM for %.1fs",
                    self.argv[0], self.pid, grace_s,
                )
        self.kill_now()
        return await self.wait()
