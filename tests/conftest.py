"""
Pytest configuration and fixtures for the Canton IDE backend tests.
"""

import sys
from pathlib import Path

import pytest

from canton_ide_backend.orchestrator import Operation, SessionOrchestrator
from canton_ide_backend.toolchain import Toolchain


FAKE_DPM = Path(__file__).resolve().parent / "fakes" / "fake_dpm.py"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_toolchain():
    return Toolchain(binary=sys.executable, prefix=(str(FAKE_DPM),))


@pytest.fixture
def workspaces_root(tmp_path):
    root = tmp_path / "sessions"
    root.mkdir()
    return root


@pytest.fixture
def orchestrator(workspaces_root, fake_toolchain):
    # Short ceilings so hanging projects fail fast.
    return SessionOrchestrator(
        workspaces_root,
        fake_toolchain,
        operations={
            "build": Operation("build", ("build",), 10.0, label="Build"),
            "test": Operation("test", ("test",), 1.5, label="Test"),
        },
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def daml_project():
    return {
        "daml.yaml": "sdk-version: 3.4.0\nname: demo\nsource: daml\n",
        "daml/Main.daml": "module Main where\n",
    }
