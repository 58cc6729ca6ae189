# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0
"""Global test fixtures for Sidecar tests.

Provides filesystem isolation, short socket directories and config cache
management for all test modules.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

import pytest

logger = logging.getLogger(__name__)


# ── Fixtures ──────────────────────────────────────────────


@pytest.fixture
def sock_dir() -> Path:
    """A short-lived directory with a short path.

    AF_UNIX socket paths are limited to ~108 bytes, which pytest's
    ``tmp_path`` can exceed.
    """
    d = Path(tempfile.mkdtemp(prefix="sc", dir="/tmp"))
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def sock_path(sock_dir: Path) -> Path:
    return sock_dir / "s.sock"


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Create an isolated Sidecar runtime data directory.

    - Redirects ``SIDECAR_DATA_DIR`` to a temp directory
    - Invalidates the config cache before and after the test
    """
    from sidecar.config import invalidate_cache

    d = tmp_path / "sidecar-data"
    d.mkdir()
    monkeypatch.setenv("SIDECAR_DATA_DIR", str(d))
    monkeypatch.delenv("SIDECAR_LOG_LEVEL", raising=False)

    invalidate_cache()
    yield d
    invalidate_cache()


@pytest.fixture
def pipe():
    """An ``os.pipe()`` pair whose ends are closed after the test."""
    r, w = os.pipe()
    yield r, w
    for fd in (r, w):
        try:
            os.close(fd)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def _reset_root_logging():
    """Undo handlers installed by setup_logging() in CLI tests."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
