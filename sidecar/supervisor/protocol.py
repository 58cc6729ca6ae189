"""
Wire protocol: one JSON object per datagram, discriminated by ``kind``.
"""

# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from sidecar.exceptions import MalformedMessageError
from sidecar.supervisor.signals import signal_from_name, signal_name

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────

KIND_LAUNCH = "launch"
KIND_STOP = "stop"
KIND_RESULT = "result"
KIND_SIGNAL = "signal"
KIND_EXIT = "exit"

# stdin, stdout, stderr
LAUNCH_HANDLE_COUNT = 3

# uid_t/gid_t; (uid_t)-1 is reserved
MAX_ID = 2**32 - 2


# ── Message Types ──────────────────────────────────────────────


@dataclass(frozen=True)
class LaunchRequest:
    """Process-creation parameters sent by the client.

    ``env`` fully replaces the child's environment.  The launch options
    (``setsid`` … ``group``) default to "inherit the server's behaviour".
    """

    argv: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str = "/"
    setsid: bool = False
    setpgid: bool = False
    deathsig: str | None = "SIGKILL"
    user: int | None = None
    group: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "argv", tuple(self.argv))
        object.__setattr__(self, "env", dict(self.env))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": KIND_LAUNCH,
            "argv": list(self.argv),
            "env": dict(self.env),
            "cwd": self.cwd,
            "setsid": self.setsid,
            "setpgid": self.setpgid,
            "deathsig": self.deathsig,
            "user": self.user,
            "group": self.group,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LaunchRequest:
        argv = data.get("argv")
        if not isinstance(argv, list) or not argv:
            raise MalformedMessageError("argv must be a non-empty list")
        if not all(isinstance(a, str) for a in argv) or not argv[0]:
            raise MalformedMessageError("argv entries must be strings")

        env = data.get("env", {})
        if not isinstance(env, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in env.items()
        ):
            raise MalformedMessageError("env must map strings to strings")

        cwd = data.get("cwd", "/")
        if not isinstance(cwd, str) or not cwd:
            raise MalformedMessageError("cwd must be a non-empty string")

        deathsig = data.get("deathsig")
        if deathsig is not None:
            if not isinstance(deathsig, str):
                raise MalformedMessageError("deathsig must be a signal name")
            try:
                signal_from_name(deathsig)
            except ValueError as e:
                raise MalformedMessageError(str(e)) from e

        for key in ("user", "group"):
            value = data.get(key)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
                raise MalformedMessageError(f"{key} must be an integer id")
            if value is not None and not 0 <= value <= MAX_ID:
                raise MalformedMessageError(f"{key} id {value} out of range")

        return cls(
            argv=tuple(argv),
            env=dict(env),
            cwd=cwd,
            setsid=_optional_bool(data, "setsid"),
            setpgid=_optional_bool(data, "setpgid"),
            deathsig=deathsig,
            user=data.get("user"),
            group=data.get("group"),
        )


@dataclass(frozen=True)
class StopRequest:
    """Ask the server to shut down.  Carries no handles."""

    def to_dict(self) -> dict[str, Any]:
        return {"kind": KIND_STOP}


@dataclass(frozen=True)
class LaunchResult:
    """Outcome of the spawn attempt: sent exactly once per session."""

    ok: bool
    reason: str | None = None
    errno: int | None = None
    pid: int | None = None

    @classmethod
    def success(cls, pid: int | None = None) -> LaunchResult:
        return cls(ok=True, pid=pid)

    @classmethod
    def failure(cls, reason: str, errno: int | None = None) -> LaunchResult:
        return cls(ok=False, reason=reason, errno=errno)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": KIND_RESULT, "ok": self.ok}
        if self.ok:
            data["pid"] = self.pid
        else:
            data["reason"] = self.reason or ""
            data["errno"] = self.errno
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LaunchResult:
        ok = data.get("ok")
        if not isinstance(ok, bool):
            raise MalformedMessageError("result.ok must be a boolean")
        if ok:
            return cls.success(pid=_optional_int(data, "pid"))
        reason = data.get("reason")
        if not isinstance(reason, str):
            raise MalformedMessageError("result.reason must be a string")
        return cls.failure(reason, errno=_optional_int(data, "errno"))


@dataclass(frozen=True)
class Signal:
    """A signal for the child, as a local signal number.

    ``group`` asks for delivery to the child's process group.
    """

    value: int
    group: bool = False

    def to_dict(self) -> dict[str, Any]:
        try:
            name = signal_name(self.value)
        except ValueError as e:
            raise MalformedMessageError(f"invalid signal value {self.value}") from e
        return {"kind": KIND_SIGNAL, "signal": name, "group": self.group}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Signal:
        name = data.get("signal")
        if not isinstance(name, str):
            raise MalformedMessageError("signal must be a signal name")
        try:
            value = signal_from_name(name)
        except ValueError as e:
            raise MalformedMessageError(str(e)) from e
        return cls(value=value, group=_optional_bool(data, "group"))


@dataclass(frozen=True)
class ExitStatus:
    """Terminal status of the child.

    ``code`` follows the shell convention: ``128 + N`` when the child was
    terminated by signal N, in which case ``signal`` is N.
    """

    code: int
    signal: int | None = None

    @property
    def signaled(self) -> bool:
        return self.signal is not None

    @classmethod
    def from_returncode(cls, returncode: int) -> ExitStatus:
        """Build from a subprocess return code (negative means signal)."""
        if returncode < 0:
            return cls(code=128 - returncode, signal=-returncode)
        return cls(code=returncode)

    def to_dict(self) -> dict[str, Any]:
        name = signal_name(self.signal) if self.signal is not None else None
        return {"kind": KIND_EXIT, "code": self.code, "signal": name}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExitStatus:
        code = data.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            raise MalformedMessageError("exit.code must be an integer")
        name = data.get("signal")
        if name is None:
            return cls(code=code)
        if not isinstance(name, str):
            raise MalformedMessageError("exit.signal must be a signal name")
        try:
            return cls(code=code, signal=signal_from_name(name))
        except ValueError as e:
            raise MalformedMessageError(str(e)) from e


Request = Union[LaunchRequest, StopRequest]
Message = Union[LaunchRequest, StopRequest, LaunchResult, Signal, ExitStatus]

_DECODERS = {
    KIND_LAUNCH: LaunchRequest.from_dict,
    KIND_STOP: lambda _data: StopRequest(),
    KIND_RESULT: LaunchResult.from_dict,
    KIND_SIGNAL: Signal.from_dict,
    KIND_EXIT: ExitStatus.from_dict,
}


# ── Encoding ───────────────────────────────────────────────────


def encode(message: Message) -> bytes:
    """Serialize any message to one datagram payload."""
    return json.dumps(message.to_dict(), separators=(",", ":")).encode("utf-8")


def encode_request(request: Request) -> bytes:
    return encode(request)


def encode_result(result: LaunchResult) -> bytes:
    return encode(result)


def encode_signal(sig: Signal) -> bytes:
    return encode(sig)


def encode_exit(status: ExitStatus) -> bytes:
    return encode(status)


# ── Decoding ───────────────────────────────────────────────────


def decode(payload: bytes) -> Message:
    """Decode one datagram payload into a message of any kind.

    Raises:
        MalformedMessageError: Truncated, corrupt or unknown payload.
    """
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise MalformedMessageError(f"undecodable message: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessageError("message must be a JSON object")
    kind = data.get("kind")
    decoder = _DECODERS.get(kind) if isinstance(kind, str) else None
    if decoder is None:
        raise MalformedMessageError(f"unknown message kind: {kind!r}")
    return decoder(data)


def _decode_as(payload: bytes, expected: type) -> Any:
    message = decode(payload)
    if not isinstance(message, expected):
        raise MalformedMessageError(
            f"expected {expected.__name__}, got {type(message).__name__}"
        )
    return message


def decode_request(payload: bytes, handles: Sequence[int] = ()) -> Request:
    """Decode the first message of a session.

    A launch request must arrive with exactly three handles; a stop
    request with none.  Closing *handles* stays the caller's job.

    Raises:
        MalformedMessageError: Bad payload or wrong handle count.
    """
    message = decode(payload)
    if isinstance(message, LaunchRequest):
        if len(handles) != LAUNCH_HANDLE_COUNT:
            raise MalformedMessageError(
                f"launch request needs {LAUNCH_HANDLE_COUNT} handles, got {len(handles)}"
            )
        return message
    if isinstance(message, StopRequest):
        if handles:
            raise MalformedMessageError("stop request must not carry handles")
        return message
    raise MalformedMessageError(f"unexpected {type(message).__name__} as request")


def decode_result(payload: bytes) -> LaunchResult:
    return _decode_as(payload, LaunchResult)


def decode_signal(payload: bytes) -> Signal:
    return _decode_as(payload, Signal)


def decode_exit(payload: bytes) -> ExitStatus:
    return _decode_as(payload, ExitStatus)


def _optional_int(data: Mapping[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise MalformedMessageError(f"{key} must be an integer")
    return value


def _optional_bool(data: Mapping[str, Any], key: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise MalformedMessageError(f"{key} must be a boolean")
    return value
