"""Tests for the server-side Session state machine.

The client side is played directly over a connected transport pair, so
every message and every disconnect point is under the test's control.
"""

# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import json
import os
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from sidecar.supervisor.protocol import (
    LaunchRequest,
    Signal,
    StopRequest,
    decode_exit,
    decode_result,
    encode_request,
    encode_signal,
)
from sidecar.supervisor.session import Session, SessionState
from sidecar.supervisor.transport import Transport

ENV = {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}


# ── Helpers ──────────────────────────────────────────────────


class Harness:
    """A running Session plus the client end of its connection."""

    def __init__(self, **session_kwargs) -> None:
        self.client, server = Transport.pair()
        self.session = Session(server, **session_kwargs)
        self.task = asyncio.create_task(self.session.run())
        self.out_r, self.out_w = os.pipe()
        self.in_fd = os.open(os.devnull, os.O_RDONLY)

    async def launch(self, *argv: str, **kwargs) -> None:
        kwargs.setdefault("env", ENV)
        request = LaunchRequest(argv=argv, **kwargs)
        await self.client.send(encode_request(request), [self.in_fd, self.out_w, self.out_w])

    async def receive(self):
        return await asyncio.wait_for(self.client.receive(), 5)

    async def finish(self) -> None:
        await asyncio.wait_for(self.task, 5)

    def read_output(self) -> bytes:
        os.close(self.out_w)
        self.out_w = -1
        chunks = []
        while chunk := os.read(self.out_r, 4096):
            chunks.append(chunk)
        return b"".join(chunks)

    def close(self) -> None:
        self.client.close()
        for fd in (self.out_r, self.out_w, self.in_fd):
            if fd >= 0:
                try:
                    os.close(fd)
                except OSError:
                    pass


@pytest_asyncio.fixture
async def harness():
    made: list[Harness] = []

    def _make(**kwargs) -> Harness:
        h = Harness(**kwargs)
        made.append(h)
        return h

    yield _make
    for h in made:
        h.close()
        if not h.task.done():
            h.task.cancel()
            await asyncio.gather(h.task, return_exceptions=True)


# ── Normal completion ────────────────────────────────────────


class TestNormalRun:
    @pytest.mark.asyncio
    async def test_echo_success_then_exit_zero(self, harness):
        h = harness()
        await h.launch("echo", "hi")

        payload, fds = await h.receive()
        result = decode_result(payload)
        assert fds == []
        assert result.ok
        assert result.pid > 0

        payload, _ = await h.receive()
        status = decode_exit(payload)
        assert status.code == 0
        assert status.signal is None

        await h.finish()
        assert h.session.state == SessionState.CLOSED
        assert h.session.exit_sent
        assert h.session.child.reap_count == 1
        assert h.read_output() == b"hi\n"

    @pytest.mark.asyncio
    async def test_nonzero_exit_code(self, harness):
        h = harness()
        await h.launch("/bin/sh", "-c", "exit 3")
        assert decode_result((await h.receive())[0]).ok
        assert decode_exit((await h.receive())[0]).code == 3
        await h.finish()

    @pytest.mark.asyncio
    async def test_connection_closed_after_exit(self, harness):
        from sidecar.exceptions import PeerClosedError

        h = harness()
        await h.launch("true")
        await h.receive()
        await h.receive()
        await h.finish()
        with pytest.raises(PeerClosedError):
            await h.receive()


# ── Spawn failure ────────────────────────────────────────────


class TestSpawnFailure:
    @pytest.mark.asyncio
    async def test_missing_program_reports_failure(self, harness):
        h = harness()
        await h.launch("/nonexistent/program")
        result = decode_result((await h.receive())[0])
        assert not result.ok
        assert "executable not found" in result.reason
        await h.finish()
        assert h.session.state == SessionState.CLOSED
        assert h.session.child is None
        assert h.read_output() == b""

    @pytest.mark.asyncio
    async def test_unexpected_spawn_error_still_reports_failure(self, harness):
        h = harness()
        with patch(
            "sidecar.supervisor.session.ProcessHandle.spawn",
            new=AsyncMock(side_effect=RuntimeError("uid is less than minimum")),
        ):
            await h.launch("true")
            result = decode_result((await h.receive())[0])
            await h.finish()
        assert not result.ok
        assert "cannot start true" in result.reason
        assert "uid is less than minimum" in result.reason
        assert h.session.state == SessionState.CLOSED
        assert h.read_output() == b""


# ── Malformed requests ───────────────────────────────────────


class TestMalformedRequest:
    @pytest.mark.asyncio
    async def test_empty_argv_rejected_without_spawn(self, harness):
        h = harness()
        payload = json.dumps({"kind": "launch", "argv": [], "env": {}, "cwd": "/"}).encode()
        with patch("sidecar.supervisor.session.ProcessHandle.spawn") as spawn:
            await h.client.send(payload, [h.in_fd, h.out_w, h.out_w])
            result = decode_result((await h.receive())[0])
            await h.finish()
        spawn.assert_not_called()
        assert not result.ok
        assert result.reason.startswith("malformed request")

    @pytest.mark.asyncio
    async def test_wrong_handle_count_rejected(self, harness):
        h = harness()
        payload = encode_request(LaunchRequest(argv=["true"], env=ENV))
        with patch("sidecar.supervisor.session.ProcessHandle.spawn") as spawn:
            await h.client.send(payload, [h.out_w])
            result = decode_result((await h.receive())[0])
            await h.finish()
        spawn.assert_not_called()
        assert not result.ok
        # The session's copy of the handle was released.
        assert h.read_output() == b""

    @pytest.mark.asyncio
    async def test_garbage_rejected(self, harness):
        h = harness()
        await h.client.send(b"\x00garbage")
        result = decode_result((await h.receive())[0])
        await h.finish()
        assert not result.ok

    @pytest.mark.asyncio
    async def test_deeply_nested_payload_rejected(self, harness):
        h = harness()
        await h.client.send(b"[" * 50000, [h.in_fd, h.out_w, h.out_w])
        result = decode_result((await h.receive())[0])
        await h.finish()
        assert not result.ok
        assert result.reason.startswith("malformed request")
        assert h.session.state == SessionState.CLOSED
        # EOF proves the received handles were closed.
        assert h.read_output() == b""

    @pytest.mark.asyncio
    async def test_out_of_range_user_rejected(self, harness):
        h = harness()
        with patch("sidecar.supervisor.session.ProcessHandle.spawn") as spawn:
            await h.launch("true", user=2**40)
            result = decode_result((await h.receive())[0])
            await h.finish()
        spawn.assert_not_called()
        assert not result.ok
        assert "out of range" in result.reason

    @pytest.mark.asyncio
    async def test_disconnect_before_request(self, harness):
        h = harness()
        h.client.close()
        await h.finish()
        assert h.session.state == SessionState.CLOSED
        assert h.session.child is None


# ── Signals ──────────────────────────────────────────────────


class TestSignalRelay:
    @pytest.mark.asyncio
    async def test_sigterm_relayed_to_child(self, harness):
        h = harness()
        await h.launch("sleep", "30")
        assert decode_result((await h.receive())[0]).ok

        await h.client.send(encode_signal(Signal(signal.SIGTERM)))
        status = decode_exit((await h.receive())[0])
        assert status.signal == signal.SIGTERM
        assert status.code == 128 + signal.SIGTERM
        await h.finish()
        assert h.session.child.stats.signals_forwarded == 1

    @pytest.mark.asyncio
    async def test_invalid_message_while_running_is_ignored(self, harness):
        h = harness()
        await h.launch("sleep", "30")
        assert decode_result((await h.receive())[0]).ok

        await h.client.send(b'{"kind": "signal", "signal": "SIGNOPE"}')
        await h.client.send(b"junk")
        await h.client.send(b"[" * 50000)
        await asyncio.sleep(0.1)
        assert h.session.state == SessionState.RUNNING
        assert h.session.child.is_alive()

        await h.client.send(encode_signal(Signal(signal.SIGINT)))
        status = decode_exit((await h.receive())[0])
        assert status.signal == signal.SIGINT
        await h.finish()


# ── Disconnect ───────────────────────────────────────────────


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_abrupt_disconnect_kills_and_reaps(self, harness):
        h = harness()
        await h.launch("sleep", "30")
        assert decode_result((await h.receive())[0]).ok
        child = h.session.child

        h.client.close()
        await h.finish()

        assert h.session.state == SessionState.CLOSED
        assert not h.session.exit_sent
        assert child.stats.exit_status.signal == signal.SIGKILL
        assert child.reap_count == 1
        with pytest.raises(ProcessLookupError):
            os.kill(child.pid, 0)

    @pytest.mark.asyncio
    async def test_grace_period_sends_sigterm_first(self, harness):
        h = harness(kill_grace_s=2.0)
        await h.launch("sleep", "30")
        assert decode_result((await h.receive())[0]).ok
        child = h.session.child

        h.client.close()
        await h.finish()
        assert child.stats.exit_status.signal == signal.SIGTERM

    @pytest.mark.asyncio
    async def test_cancelled_session_kills_child(self, harness):
        h = harness()
        await h.launch("sleep", "30")
        assert decode_result((await h.receive())[0]).ok
        child = h.session.child

        h.task.cancel()
        await asyncio.gather(h.task, return_exceptions=True)
        assert h.session.state == SessionState.CLOSED
        assert child.reap_count == 1
        assert not child.is_alive()


# ── Stop request ─────────────────────────────────────────────


class TestStopRequest:
    @pytest.mark.asyncio
    async def test_stop_calls_hook(self, harness):
        on_stop = MagicMock()
        h = harness(on_stop=on_stop)
        await h.client.send(encode_request(StopRequest()))
        await h.finish()
        on_stop.assert_called_once_with()
        assert h.session.child is None
