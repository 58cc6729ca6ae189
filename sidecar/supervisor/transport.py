"""
Message transport over Unix SOCK_SEQPACKET sockets with handle passing.

Each ``send`` is exactly one datagram on the peer's side, and open file
descriptors attached to it travel as ``SCM_RIGHTS`` ancillary data
atomically with the payload.
"""

# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import stat
import struct
from collections.abc import Iterable, Sequence
from pathlib import Path

from sidecar.exceptions import (
    BindError,
    ConnectError,
    PeerClosedError,
    TransportError,
)

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────
MAX_MESSAGE_SIZE = 256 * 1024  # largest accepted datagram (env can be big)
MAX_HANDLES = 8                # receive room; extras beyond 3 must be seen to be rejected
STALE_PROBE_TIMEOUT = 1.0      # seconds to decide whether a socket file is live

_RECV_FLAGS = getattr(socket, "MSG_CMSG_CLOEXEC", 0)


def close_handles(handles: Iterable[int]) -> None:
    """Close every descriptor in *handles*, ignoring ones already closed."""
    for fd in handles:
        with contextlib.suppress(OSError):
            os.close(fd)


def _new_socket() -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_SEQPACKET)
    sock.setblocking(False)
    return sock


# ── Connection ─────────────────────────────────────────────────


class Transport:
    """One connected SEQPACKET socket.

    Sends and receives are serialized separately, so one task may block in
    :meth:`receive` while another sends.
    """

    def __init__(self, sock: socket.socket) -> None:
        sock.setblocking(False)
        self._sock = sock
        self._fd = sock.fileno()
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._waiters: set[asyncio.Future[None]] = set()
        self._send_lock = asyncio.Lock()
        self._recv_lock = asyncio.Lock()

    @classmethod
    def pair(cls) -> tuple[Transport, Transport]:
        """Return two connected transports (used by tests and in-process peers)."""
        a, b = socket.socketpair(socket.AF_UNIX, socket.SOCK_SEQPACKET)
        return cls(a), cls(b)

    @property
    def closed(self) -> bool:
        return self._closed

    def peer_description(self) -> str:
        """Describe the peer process from SO_PEERCRED (best-effort, Linux)."""
        opt = getattr(socket, "SO_PEERCRED", None)
        if opt is None or self._closed:
            return "unknown"
        try:
            raw = self._sock.getsockopt(socket.SOL_SOCKET, opt, struct.calcsize("3i"))
        except OSError:
            return "unknown"
        pid, uid, gid = struct.unpack("3i", raw)
        return f"pid={pid} uid={uid} gid={gid}"

    async def send(self, payload: bytes, handles: Sequence[int] = ()) -> None:
        """Send one message, optionally with attached descriptors.

        The descriptors stay open in this process; the peer receives
        duplicates.

        Raises:
            TransportError: Peer gone, message too large, or I/O fault.
        """
        if len(payload) > MAX_MESSAGE_SIZE:
            raise TransportError(
                f"message of {len(payload)} bytes exceeds {MAX_MESSAGE_SIZE}"
            )
        async with self._send_lock:
            while True:
                self._check_open()
                try:
                    if handles:
                        socket.send_fds(self._sock, [payload], list(handles))
                    else:
                        self._sock.send(payload)
                    return
                except (BlockingIOError, InterruptedError):
                    await self._wait_ready(writable=True)
                except OSError as e:
                    raise TransportError(f"send failed: {e}") from e

    async def receive(self) -> tuple[bytes, list[int]]:
        """Receive one message and the descriptors attached to it.

        The caller owns the returned descriptors and must close them.

        Raises:
            PeerClosedError: The peer closed its end.
            TransportError: I/O fault or a truncated message.
        """
        async with self._recv_lock:
            while True:
                self._check_open()
                try:
                    data, fds, flags, _addr = socket.recv_fds(
                        self._sock, MAX_MESSAGE_SIZE, MAX_HANDLES, _RECV_FLAGS,
                    )
                    break
                except (BlockingIOError, InterruptedError):
                    await self._wait_ready(writable=False)
                except (ConnectionResetError, ConnectionAbortedError) as e:
                    raise PeerClosedError(f"peer reset connection: {e}") from e
                except OSError as e:
                    raise TransportError(f"receive failed: {e}") from e

        if flags & (socket.MSG_TRUNC | socket.MSG_CTRUNC):
            close_handles(fds)
            raise TransportError("message or attached handles truncated")
        if not data and not fds:
            raise PeerClosedError("peer closed connection")
        return data, list(fds)

    def close(self) -> None:
        """Close the socket.  Idempotent; pending waits fail with TransportError."""
        if self._closed:
            return
        self._closed = True
        if self._loop is not None and not self._loop.is_closed():
            self._loop.remove_reader(self._fd)
            self._loop.remove_writer(self._fd)
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_exception(TransportError("transport closed"))
        self._waiters.clear()
        self._sock.close()

    async def __aenter__(self) -> Transport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed:
            raise TransportError("transport closed")

    async def _wait_ready(self, *, writable: bool) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        waiter: asyncio.Future[None] = loop.create_future()

        def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        if writable:
            loop.add_writer(self._fd, _wake)
        else:
            loop.add_reader(self._fd, _wake)
        self._waiters.add(waiter)
        try:
            await waiter
        finally:
            self._waiters.discard(waiter)
            # After close() the fd number may already belong to someone else.
            if not self._closed:
                if writable:
                    loop.remove_writer(self._fd)
                else:
                    loop.remove_reader(self._fd)


# ── Listening endpoint ─────────────────────────────────────────


class Endpoint:
    """A bound, listening socket file that yields one Transport per peer."""

    def __init__(self, sock: socket.socket, path: Path) -> None:
        self._sock = sock
        self.path = path
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def accept(self) -> Transport:
        """Wait for the next peer.

        Raises:
            TransportError: accept() failed (e.g. descriptor exhaustion).
        """
        loop = asyncio.get_running_loop()
        try:
            conn, _addr = await loop.sock_accept(self._sock)
        except OSError as e:
            raise TransportError(f"accept failed: {e}") from e
        return Transport(conn)

    def close(self, *, unlink: bool = True) -> None:
        """Stop listening and remove the socket file.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._sock.close()
        if unlink:
            try:
                self.path.unlink(missing_ok=True)
                logger.debug("Socket file removed: %s", self.path)
            except OSError as e:
                logger.error("Failed to remove socket file %s: %s", self.path, e)


def _remove_stale_socket(path: Path) -> None:
    """Remove *path* if it is a socket file nobody listens on any more.

    Raises:
        BindError: The path is live, not a socket, or cannot be removed.
    """
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise BindError(f"cannot inspect {path}: {e}") from e
    if not stat.S_ISSOCK(st.st_mode):
        raise BindError(f"{path} exists and is not a socket")

    probe = socket.socket(socket.AF_UNIX, socket.SOCK_SEQPACKET)
    probe.settimeout(STALE_PROBE_TIMEOUT)
    try:
        probe.connect(str(path))
    except ConnectionRefusedError:
        logger.info("Removing stale socket file %s", path)
        try:
            path.unlink()
        except OSError as e:
            raise BindError(f"cannot remove stale socket {path}: {e}") from e
        return
    except OSError as e:
        raise BindError(f"{path} is in use or unusable: {e}") from e
    finally:
        probe.close()
    raise BindError(f"{path} is already bound by a running server")


async def listen(
    path: Path | str,
    *,
    backlog: int = 128,
    mode: int | None = None,
    make_parents: bool = False,
) -> Endpoint:
    """Bind and listen on *path*.

    Args:
        path: Socket file location.
        backlog: listen() backlog.
        mode: Permission bits applied to the socket file, if given.
        make_parents: Create missing parent directories.

    Raises:
        BindError: Path live, not a socket, or bind/listen failed.
    """
    path = Path(path)
    if make_parents:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BindError(f"cannot create {path.parent}: {e}") from e

    _remove_stale_socket(path)

    sock = _new_socket()
    try:
        sock.bind(str(path))
        if mode is not None:
            os.chmod(path, mode)
        sock.listen(backlog)
    except OSError as e:
        sock.close()
        raise BindError(f"cannot listen on {path}: {e}") from e

    logger.info("Listening on %s", path)
    return Endpoint(sock, path)


async def connect(path: Path | str) -> Transport:
    """Connect to a listening endpoint.

    Raises:
        ConnectError: Nothing listens at *path* or it is unreachable.
    """
    loop = asyncio.get_running_loop()
    sock = _new_socket()
    try:
        await loop.sock_connect(sock, str(path))
    except OSError as e:
        sock.close()
        raise ConnectError(f"cannot connect to {path}: {e}") from e
    logger.debug("Connected to %s", path)
    return Transport(sock)
