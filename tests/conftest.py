"""
DocVault Test Suite: Shared fixtures and configuration.

Run:  pytest tests/ -v

Every test gets its own in-memory SQLite database (StaticPool) and a blob
store under pytest's tmp_path; nothing touches Postgres, Redis or Celery.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from docvault.db.base import engine_registry
from docvault.db.session import ENGINE_NAME, init_repository_db
from docvault.engine.config import reset_config
from docvault.engine.logging import shutdown_logging
from docvault.repository.blobs import LocalBlobStore
from docvault.repository.collaborators import DatabaseAuditLogger, DatabaseNotifier
from docvault.repository.fanout import ChangeFeed
from docvault.repository.service import RepositoryService
from docvault.repository.store import NodeStore


USERS = ["alice", "bob", "carol"]


# ---------------------------------------------------------------------------
# Global singletons
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_globals():
    """Reset config and the log queue between tests."""
    reset_config()
    yield
    reset_config()
    shutdown_logging()


# ---------------------------------------------------------------------------
# Database / storage
# ---------------------------------------------------------------------------

@pytest.fixture
def session_factory():
    """Fresh in-memory repository database with all tables."""
    factory = init_repository_db("sqlite://", create_tables=True)
    yield factory
    engine_registry.dispose(ENGINE_NAME)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def store(session_factory):
    return NodeStore(session_factory, batch_size=500)


@pytest.fixture
def feed():
    feed = ChangeFeed()
    yield feed
    feed.detach()


@pytest.fixture
def notifier(session_factory):
    return DatabaseNotifier(session_factory)


@pytest.fixture
def audit(session_factory):
    return DatabaseAuditLogger(session_factory)


@pytest.fixture
def service(session_factory, blob_store, notifier, audit, feed):
    """Fully wired service with a three-user directory."""
    return RepositoryService(
        session_factory,
        blob_store,
        notifier=notifier,
        audit=audit,
        feed=feed,
        user_directory=lambda: list(USERS),
    )


@pytest.fixture
def failing_blob_store():
    """Blob store stand-in whose every call can be made to fail."""
    blobs = MagicMock()
    blobs.put.side_effect = lambda path, data: path
    blobs.get.side_effect = lambda locator: f"https://blobs.example/{locator}"
    blobs.delete.return_value = None
    return blobs


# ---------------------------------------------------------------------------
# Tree builders
# ---------------------------------------------------------------------------

@pytest.fixture
def board_tree(service):
    """
    alice's tree:

        Board/              (folder, private)
        ├── minutes.pdf     (file)
        └── Finance/        (folder)
            └── budget.xlsx (file)
    """
    board = service.create_folder("Board", owner_id="alice")
    minutes = service.upload_file("minutes.pdf", b"minutes v1", owner_id="alice", parent_id=board.id)
    finance = service.create_folder("Finance", owner_id="alice", parent_id=board.id)
    budget = service.upload_file("budget.xlsx", b"budget", owner_id="alice", parent_id=finance.id)
    return {"board": board, "minutes": minutes, "finance": finance, "budget": budget}
