"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: makes the backend dir importable (sportsync.*,
    scripts.*) and resets process-wide singletons between tests.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

_BACKEND_DIR = Path(__file__).resolve().parents[1]

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))


@pytest.fixture(autouse=True)
def _reset_router_singletons(monkeypatch):
    from sportsync.routers import admin_sync

    monkeypatch.setattr(admin_sync, "_provider", None)
    monkeypatch.setattr(admin_sync, "_orchestrator", None)
