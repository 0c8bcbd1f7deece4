"""Pytest configuration for test isolation.

The engine reads ``CATEGORIZER_*`` and ``DATABASE_URL`` from the environment
and keeps a process-wide rate budget, admission controller and engine cache.
To keep tests hermetic, an autouse fixture clears the relevant environment
variables for each test and resets the shared services afterwards.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Make sure the workspace source dirs are importable without an install.
_ROOT = Path(__file__).resolve().parents[1]
sys.path[:0] = [
    p
    for p in (str(_ROOT / "packages"), str(_ROOT / "libs" / "db" / "src"), str(_ROOT))
    if p not in sys.path
]

from db.client import dispose_engines  # noqa: E402
from hybrid_categorizer.api import reset_shared_services  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop engine tuning env vars and reset shared state after each test."""

    for name in list(os.environ):
        if name.startswith("CATEGORIZER_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    yield
    reset_shared_services()
    dispose_engines()
