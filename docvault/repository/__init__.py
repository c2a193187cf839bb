"""DocVault Repository: node store, trash, versions, pins, fan-out and the service facade."""

from docvault.repository.blobs import BlobStore, LocalBlobStore  # noqa: F401
from docvault.repository.fanout import ChangeEvent, ChangeFeed, ChangeKind, RedisChangeRelay  # noqa: F401
from docvault.repository.models import (  # noqa: F401
    BrowseGroup,
    Category,
    Node,
    NodeKind,
    Version,
    Visibility,
)
from docvault.repository.service import RepositoryService  # noqa: F401
from docvault.repository.views import ViewRegistry  # noqa: F401

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeKind",
    "RedisChangeRelay",
    "BrowseGroup",
    "Category",
    "Node",
    "NodeKind",
    "Version",
    "Visibility",
    "RepositoryService",
    "ViewRegistry",
]
