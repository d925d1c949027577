"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest                 # everything
    python -m pytest -m "not display"  # skip tests that open a pygame window

pygame is pointed at SDL's dummy video driver before anything imports
it, so window tests run on hosts without a display.
"""

import os

import pytest

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "display: tests that open a (dummy-driver) pygame window")


@pytest.fixture
def rom_file(tmp_path):
    """Factory: write bytes to a temporary ROM file and return its path."""
    def _make(data: bytes, name: str = "test.ch8") -> str:
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)
    return _make
