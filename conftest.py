"""
Pytest configuration for the MC88100 simulator test suite.

    python -m pytest                 # full suite
    python -m pytest -m "not slow"   # skip the long randomized cache runs
    python -m pytest -k Cache        # single class or test name
"""

import pytest

from asm import assemble
from system import MC88100System


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "slow: long randomized access sequences (deselect with -m 'not slow')")


@pytest.fixture
def run_asm():
    """Assemble, load into a fresh system, run to halt; returns the system."""
    def _run(source: str, max_steps: int = 100_000, **kwargs) -> MC88100System:
        sys_emu = MC88100System(**kwargs)
        sys_emu.load_words(assemble(source))
        sys_emu.run(max_steps)
        return sys_emu
    return _run


@pytest.fixture
def program_file(tmp_path):
    """Write program text to a temp file and return its path."""
    def _write(text: str, name: str = "prog.hex") -> str:
        path = tmp_path / name
        path.write_text(text)
        return str(path)
    return _write
