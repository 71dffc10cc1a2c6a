"""Pytest configuration to make the project root and the test helpers importable.

This ensures that ``import perfstream`` works when tests are run from a
checkout without installing the package.
"""

import os
import sys
import tempfile

import pytest

TESTS_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(TESTS_DIR)

for path in (PROJECT_ROOT, TESTS_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)

from fakes import FakeBridge  # noqa: E402
from perfstream.core.profiles import AgentConfig, DeviceProfile  # noqa: E402
from perfstream.core.session import DeviceSession  # noqa: E402


@pytest.fixture
def binary_dir(tmp_path, monkeypatch):
    """A directory holding a fake arm64 agent binary; staging goes to tmp_path too."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    (bin_dir / "BAMPerfProfiler-arm64-v8a").write_bytes(b"\x7fELF fake agent")

    staging = tmp_path / "staging"
    staging.mkdir()
    monkeypatch.setattr(tempfile, "gettempdir", lambda: str(staging))
    return bin_dir


@pytest.fixture
def profile(binary_dir):
    return DeviceProfile(name="test-device", agent=AgentConfig(binary_dir=str(binary_dir)))


@pytest.fixture
def bridge():
    return FakeBridge()


@pytest.fixture
def session(bridge, profile):
    s = DeviceSession(bridge, profile)
    yield s
    if s.active_handle is not None:
        s.active_handle.stop()
