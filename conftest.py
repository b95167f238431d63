"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest                  # full suite
    python -m pytest -m "not display" # skip the pygame window tests
    python -m pytest -k TestDraw      # single class

Window tests run against SDL's dummy video/audio drivers, so no screen
or sound card is needed.
"""

import os

import pytest

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "display: tests that open a pygame window (dummy SDL driver)")
    config.addinivalue_line("markers",
        "timing: tests that depend on wall-clock pacing")


@pytest.fixture
def rom_file(tmp_path):
    """Write opcode words to a ROM file and return its path."""
    def _write(*words: int) -> str:
        path = tmp_path / "test.ch8"
        path.write_bytes(b"".join(w.to_bytes(2, "big") for w in words))
        return str(path)
    return _write
