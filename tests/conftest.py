"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from bot_protocol.state import StateStore  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock for timeout/cleanup tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 2, 14, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def state_file(tmp_path: Path) -> Path:
    """State file path inside a directory that does not exist yet."""
    return tmp_path / "workspace" / "bot-protocol-state.json"


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def store(state_file: Path, clock: FakeClock) -> StateStore:
    return StateStore(state_file, clock=clock)


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    monkeypatch.delenv("BOT_PROTOCOL_CONFIG", raising=False)
    for var in list(os.environ):
        if var.startswith("BOT_PROTOCOL__"):
            monkeypatch.delenv(var, raising=False)
    yield
