"""Tests for the SEQPACKET transport with descriptor passing.

Uses real sockets in short temporary directories.
"""

# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import os
import socket
import stat
from pathlib import Path

import pytest

from sidecar.exceptions import (
    BindError,
    ConnectError,
    PeerClosedError,
    TransportError,
)
from sidecar.supervisor import transport
from sidecar.supervisor.transport import MAX_MESSAGE_SIZE, Transport


# ── Connected pairs ───────────────────────────────────────────


class TestTransportPair:
    @pytest.mark.asyncio
    async def test_message_boundaries_preserved(self):
        a, b = Transport.pair()
        async with a, b:
            await a.send(b"one")
            await a.send(b"two")
            assert await b.receive() == (b"one", [])
            assert await b.receive() == (b"two", [])

    @pytest.mark.asyncio
    async def test_handles_travel_with_message(self, pipe):
        r, w = pipe
        a, b = Transport.pair()
        async with a, b:
            await a.send(b"with-fd", [w])
            payload, fds = await b.receive()
            assert payload == b"with-fd"
            assert len(fds) == 1
            try:
                os.write(fds[0], b"ping")
            finally:
                transport.close_handles(fds)
            assert os.read(r, 4) == b"ping"

    @pytest.mark.asyncio
    async def test_received_handles_are_cloexec(self, pipe):
        _r, w = pipe
        a, b = Transport.pair()
        async with a, b:
            await a.send(b"x", [w])
            _payload, fds = await b.receive()
            try:
                assert not os.get_inheritable(fds[0])
            finally:
                transport.close_handles(fds)

    @pytest.mark.asyncio
    async def test_receive_waits_for_data(self):
        a, b = Transport.pair()
        async with a, b:
            pending = asyncio.create_task(b.receive())
            await asyncio.sleep(0.05)
            assert not pending.done()
            await a.send(b"late")
            assert await asyncio.wait_for(pending, 2) == (b"late", [])

    @pytest.mark.asyncio
    async def test_peer_close_is_reported(self):
        a, b = Transport.pair()
        a.close()
        with pytest.raises(PeerClosedError):
            await b.receive()
        b.close()

    @pytest.mark.asyncio
    async def test_peer_close_wakes_pending_receive(self):
        a, b = Transport.pair()
        pending = asyncio.create_task(b.receive())
        await asyncio.sleep(0.05)
        a.close()
        with pytest.raises(PeerClosedError):
            await asyncio.wait_for(pending, 2)
        b.close()

    @pytest.mark.asyncio
    async def test_send_after_peer_close_fails(self):
        a, b = Transport.pair()
        b.close()
        with pytest.raises(TransportError):
            await a.send(b"nobody listening")
        a.close()

    @pytest.mark.asyncio
    async def test_local_close_fails_pending_receive(self):
        a, b = Transport.pair()
        pending = asyncio.create_task(b.receive())
        await asyncio.sleep(0.05)
        b.close()
        with pytest.raises(TransportError):
            await asyncio.wait_for(pending, 2)
        a.close()

    @pytest.mark.asyncio
    async def test_oversized_message_rejected(self):
        a, b = Transport.pair()
        async with a, b:
            with pytest.raises(TransportError, match="exceeds"):
                await a.send(b"x" * (MAX_MESSAGE_SIZE + 1))

    @pytest.mark.asyncio
    async def test_truncated_message_closes_handles(self, pipe):
        _r, w = pipe
        raw_a, raw_b = socket.socketpair(socket.AF_UNIX, socket.SOCK_SEQPACKET)
        raw_a.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 4 * MAX_MESSAGE_SIZE)
        raw_b.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4 * MAX_MESSAGE_SIZE)
        b = Transport(raw_b)
        try:
            socket.send_fds(raw_a, [b"y" * (MAX_MESSAGE_SIZE + 10)], [w])
            before = set(os.listdir("/proc/self/fd"))
            with pytest.raises(TransportError, match="truncated"):
                await b.receive()
            assert set(os.listdir("/proc/self/fd")) <= before
        finally:
            raw_a.close()
            b.close()

    def test_close_is_idempotent(self):
        a, b = Transport.pair()
        a.close()
        a.close()
        assert a.closed
        b.close()


# ── Listening endpoint ────────────────────────────────────────


class TestListenConnect:
    @pytest.mark.asyncio
    async def test_accept_and_exchange(self, sock_path: Path):
        endpoint = await transport.listen(sock_path)
        try:
            client = await transport.connect(sock_path)
            server = await asyncio.wait_for(endpoint.accept(), 2)
            async with client, server:
                await client.send(b"hello")
                assert await server.receive() == (b"hello", [])
                assert "pid=" in server.peer_description()
        finally:
            endpoint.close()
        assert not sock_path.exists()

    @pytest.mark.asyncio
    async def test_socket_mode_and_parents(self, sock_dir: Path):
        path = sock_dir / "nested" / "deeper" / "s.sock"
        endpoint = await transport.listen(path, mode=0o600, make_parents=True)
        try:
            st = os.stat(path)
            assert stat.S_ISSOCK(st.st_mode)
            assert stat.S_IMODE(st.st_mode) == 0o600
        finally:
            endpoint.close()

    @pytest.mark.asyncio
    async def test_missing_parent_without_parents_flag(self, sock_dir: Path):
        with pytest.raises(BindError):
            await transport.listen(sock_dir / "missing" / "s.sock")

    @pytest.mark.asyncio
    async def test_stale_socket_replaced(self, sock_path: Path):
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_SEQPACKET)
        stale.bind(str(sock_path))
        stale.close()
        assert sock_path.exists()

        endpoint = await transport.listen(sock_path)
        try:
            client = await transport.connect(sock_path)
            client.close()
        finally:
            endpoint.close()

    @pytest.mark.asyncio
    async def test_live_socket_not_stolen(self, sock_path: Path):
        endpoint = await transport.listen(sock_path)
        try:
            with pytest.raises(BindError, match="already bound"):
                await transport.listen(sock_path)
            assert sock_path.exists()
        finally:
            endpoint.close()

    @pytest.mark.asyncio
    async def test_regular_file_not_replaced(self, sock_path: Path):
        sock_path.write_text("precious")
        with pytest.raises(BindError, match="not a socket"):
            await transport.listen(sock_path)
        assert sock_path.read_text() == "precious"

    @pytest.mark.asyncio
    async def test_connect_without_listener(self, sock_path: Path):
        with pytest.raises(ConnectError):
            await transport.connect(sock_path)
