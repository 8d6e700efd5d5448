"""
pytest configuration for the client test suite.

Adds the src directory to the Python path and resets log context between
tests.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from core.logging.context import clear_log_context  # noqa: E402


@pytest.fixture(autouse=True)
def reset_log_context():
    """Context variables leak between tests run in the same thread."""
    clear_log_context()
    yield
    clear_log_context()
