import sys
from pathlib import Path

import pytest

# Ensure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import page_pipeline  # noqa: E402


@pytest.fixture
def sleeps(monkeypatch):
    """Record every time.sleep() delay instead of waiting."""
    calls = []
    monkeypatch.setattr(page_pipeline.time, "sleep", calls.append)
    return calls
