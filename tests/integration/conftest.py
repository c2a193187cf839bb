"""
Integration test fixtures: a file-backed project with docvault.yaml.

These tests run the full stack (config -> service -> SQLite file -> blob
directory -> change feed) without external services.

Run: pytest tests/integration/ -v -m integration
"""

from __future__ import annotations

import pytest

from docvault.db.base import engine_registry
from docvault.db.session import ENGINE_NAME
from docvault.engine.config import load_config
from docvault.repository.service import RepositoryService


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: exercises the full file-backed stack")


@pytest.fixture
def integration_project(tmp_path):
    """Project directory with a docvault.yaml pointing at tmp storage."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "docvault.yaml").write_text(
        "name: Board Portal\n"
        "environment: staging\n"
        "database:\n"
        f"  url: sqlite:///{root / 'docvault.db'}\n"
        "blob_store:\n"
        f"  root: {root / '.docvault' / 'blobs'}\n"
        "trash:\n"
        "  retention_days: 30\n"
        "  cascade_batch_size: 2\n"
        "logging:\n"
        f"  directory: {root / '.docvault' / 'logs'}\n",
        encoding="utf-8",
    )
    return root


@pytest.fixture
def project_service(integration_project):
    """Service built from the project's docvault.yaml, tables created."""
    config = load_config(str(integration_project / "docvault.yaml"))
    service = RepositoryService.from_config(
        config,
        create_tables=True,
        user_directory=lambda: ["alice", "bob", "carol"],
    )
    yield service
    service.close()
    engine_registry.dispose(ENGINE_NAME)
