"""
DocVault Blob Store: raw content storage behind opaque locators.

The engine only ever calls three operations:
    put(path, data)  -> locator
    get(locator)     -> url
    delete(paths)

``LocalBlobStore`` keeps blobs on the local filesystem and is the store used
by tests and single-node deployments. Object-storage backends implement the
same abstract class.

Upload paths are randomized as ``{owner}/{uuid}_{timestamp}.{ext}`` so two
uploads never collide, even for the same file name.
"""

from __future__ import annotations

import hashlib
import io
import logging
import mimetypes
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Union

from docvault.engine.errors import StorageError
from docvault.engine.logging import log, log_storage_event

logger = logging.getLogger("docvault.repository.blobs")

BlobData = Union[bytes, BinaryIO]

CHUNK_SIZE = 8192


def make_storage_path(owner_id: str, filename: str) -> str:
    """Randomized storage path for a new upload."""
    ext = os.path.splitext(os.path.basename(filename))[1].lstrip(".").lower()
    safe_owner = "".join(c for c in owner_id if c.isalnum() or c in "-_") or "anonymous"
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    stem = f"{safe_owner}/{uuid.uuid4().hex}_{timestamp}"
    return f"{stem}.{ext}" if ext else stem


def detect_mime_type(filename: str) -> str:
    mime, _ = mimetypes.guess_type(filename)
    return mime or "application/octet-stream"


class BlobStore(ABC):
    """Abstract content store."""

    @abstractmethod
    def put(self, path: str, data: BlobData) -> str:
        """Store ``data`` under ``path`` and return its locator."""

    @abstractmethod
    def get(self, locator: str) -> str:
        """Return a dereferenceable URL for ``locator``."""

    @abstractmethod
    def delete(self, paths: Iterable[str]) -> None:
        """Remove blobs. Missing blobs are not an error."""


class LocalBlobStore(BlobStore):
    """
    Filesystem-backed blob store rooted at ``root``.

    Locators are the relative storage paths. URLs are built from
    ``public_base_url`` when configured, otherwise a ``file://`` URI.
    """

    def __init__(self, root: Union[str, Path], public_base_url: Optional[str] = None):
        self._root = Path(root).resolve()
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if self._root not in target.parents:
            raise StorageError(
                f"Blob path escapes the store root: {path}",
                operation="resolve",
                paths=[path],
            )
        return target

    def put(self, path: str, data: BlobData) -> str:
        target = self._resolve(path)
        stream = io.BytesIO(data) if isinstance(data, (bytes, bytearray)) else data

        bytes_written = 0
        file_hash = hashlib.sha256()
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as f:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
                    file_hash.update(chunk)
                    bytes_written += len(chunk)
        except OSError as e:
            log(log_storage_event("put", [path], success=False, error=str(e)))
            raise StorageError(f"Failed to store blob '{path}': {e}", operation="put", paths=[path]) from e

        log(log_storage_event("put", [path], success=True))
        logger.info(f"Stored: {path} ({bytes_written} bytes, sha256={file_hash.hexdigest()[:12]})")
        return path

    def get(self, locator: str) -> str:
        target = self._resolve(locator)
        if not target.exists():
            raise StorageError(f"Blob not found: {locator}", operation="get", paths=[locator])
        if self._public_base_url:
            return f"{self._public_base_url}/{locator}"
        return target.as_uri()

    def read(self, locator: str) -> bytes:
        target = self._resolve(locator)
        try:
            return target.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read blob '{locator}': {e}", operation="read", paths=[locator]) from e

    def exists(self, locator: str) -> bool:
        return self._resolve(locator).exists()

    def delete(self, paths: Iterable[str]) -> None:
        paths = list(paths)
        failed: List[str] = []
        for path in paths:
            target = self._resolve(path)
            try:
                if target.exists():
                    target.unlink()
                    logger.info(f"Deleted blob: {path}")
            except OSError as e:
                logger.error(f"Failed to delete blob {path}: {e}")
                failed.append(path)

        if failed:
            log(log_storage_event("delete", failed, success=False, error="unlink failed"))
            raise StorageError(
                f"Failed to delete {len(failed)} of {len(paths)} blob(s)",
                operation="delete",
                paths=failed,
            )
        if paths:
            log(log_storage_event("delete", paths, success=True))

    def __repr__(self) -> str:
        return f"<LocalBlobStore root='{self._root}'>"
