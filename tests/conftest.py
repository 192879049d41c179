"""Pytest configuration for repository test runs."""

import sys
from pathlib import Path


def pytest_sessionstart() -> None:
    """Add the project root and the shared test helpers to sys.path."""
    tests_path = Path(__file__).resolve().parent
    for path in (tests_path.parent, tests_path):
        if str(path) not in sys.path:
            sys.path.insert(0, str(path))
