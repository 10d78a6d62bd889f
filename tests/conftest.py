"""Shared pytest fixtures."""

import pytest

from reposhelf.config import StoreConfig
from reposhelf.store import ProjectStore


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep a developer's REPOSHELF_* settings out of the tests."""
    for var in ("REPOSHELF_ROOT", "REPOSHELF_TEMPLATES", "REPOSHELF_AUTHOR"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def store(tmp_path):
    return ProjectStore(StoreConfig(root=tmp_path / "store"))


@pytest.fixture
def project(store):
    """A project created from the default template."""
    store.create_project("p1")
    return "p1"
