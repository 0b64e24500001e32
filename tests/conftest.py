"""
Pytest fixtures for the formula engine, sheet store and HTTP API.
"""

import pytest
from fastapi.testclient import TestClient

from sheetcalc import app as app_module
from sheetcalc.storage import SheetRepository


@pytest.fixture
def repo():
    return SheetRepository()


@pytest.fixture
def demo_sheet(repo):
    return repo.seed_demo()


@pytest.fixture
def client(monkeypatch):
    """TestClient bound to a fresh, empty repository."""
    monkeypatch.setattr(app_module, "sheet_repo", SheetRepository())
    return TestClient(app_module.app)


@pytest.fixture
def chain_store():
    """Factory for A1 = A2 + 1, A2 = A3 + 1, ..., last cell holds 1."""
    def _build(length: int) -> dict:
        store = {f"A{i}": f"=A{i + 1}+1" for i in range(1, length)}
        store[f"A{length}"] = "1"
        return store
    return _build
