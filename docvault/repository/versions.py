"""
DocVault Version Manager: archive-then-swap versioning for files.

The live node is always the newest version; ``node_versions`` only holds
archived snapshots. Commit and restore both archive the current state as
version ``max + 1`` before changing the node, so numbering never rewinds.

Archive row insert, blob upload and node swap share one transaction:
- upload fails   → rollback, no archive row, StorageError
- commit fails   → rollback, the freshly uploaded blob is deleted
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from docvault.db.base import utcnow
from docvault.db.models import NodeRecord, VersionRecord
from docvault.db.session import session_scope
from docvault.engine.errors import DocVaultError, NotFoundError, ValidationError
from docvault.engine.logging import log, log_node_operation
from docvault.repository.blobs import BlobStore, detect_mime_type, make_storage_path
from docvault.repository.models import Node, NodePatch, Version
from docvault.repository.store import NodeStore, build_payload, to_node
from docvault.repository.visibility import require_visible, require_writer

logger = logging.getLogger("docvault.repository.versions")

SUMMARY_NEW_UPLOAD = "archived before new version upload"
SUMMARY_RESTORE = "archived before restoration"


def to_version(record: VersionRecord) -> Version:
    return Version(
        id=record.id,
        file_id=record.file_id,
        version_number=record.version_number,
        name=record.name,
        content_locator=record.content_locator,
        mime_type=record.mime_type,
        size=record.size or 0,
        uploaded_by=record.uploaded_by,
        created_at=record.created_at,
        change_summary=record.change_summary,
    )


class VersionManager:
    """Commits new file content and restores archived versions."""

    def __init__(self, store: NodeStore, blobs: BlobStore):
        self._store = store
        self._blobs = blobs
        self._factory = store.session_factory

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _writable_file(self, file_id: str, actor_id: Optional[str], operation: str) -> Node:
        node = self._store.get(file_id, include_deleted=False)
        if node.is_folder:
            raise ValidationError(
                f"'{node.name}' is a folder; versions apply to files only",
                entity_id=file_id,
                entity_type="folder",
                operation=operation,
            )
        return require_writer(node, actor_id, operation)

    @staticmethod
    def _lock_node(session: Session, file_id: str) -> NodeRecord:
        record = (
            session.query(NodeRecord)
            .filter(NodeRecord.id == file_id)
            .with_for_update()
            .one_or_none()
        )
        if record is None:
            raise NotFoundError(f"File '{file_id}' not found", entity_id=file_id)
        return record

    @staticmethod
    def _archive(session: Session, record: NodeRecord, actor_id: str, summary: str) -> VersionRecord:
        current_max = (
            session.query(func.max(VersionRecord.version_number))
            .filter(VersionRecord.file_id == record.id)
            .scalar()
        )
        archived = VersionRecord(
            file_id=record.id,
            version_number=(current_max or 0) + 1,
            name=record.name,
            content_locator=record.content_locator,
            mime_type=record.mime_type,
            size=record.size or 0,
            uploaded_by=actor_id,
            change_summary=summary,
            created_at=utcnow(),
        )
        session.add(archived)
        session.flush()
        return archived

    # -------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------

    def commit(
        self,
        file_id: str,
        actor_id: str,
        data: bytes,
        new_name: Optional[str] = None,
        change_summary: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> Tuple[Node, Version]:
        """
        Archive the current content and replace it with ``data``.

        Returns the updated node and the archived version row.

        Raises:
            ValidationError: target is a folder or the new name is invalid.
            PermissionDenied: actor may not write to the file.
            StorageError: the upload failed (nothing was changed).
        """
        start = time.monotonic()
        node = self._writable_file(file_id, actor_id, "commit_version")
        name = build_payload(NodePatch, name=new_name).name if new_name is not None else node.name
        path = make_storage_path(actor_id, name)

        session = self._factory()
        locator: Optional[str] = None
        try:
            record = self._lock_node(session, file_id)
            archived = self._archive(session, record, actor_id, change_summary or SUMMARY_NEW_UPLOAD)

            try:
                locator = self._blobs.put(path, data)
            except DocVaultError:
                session.rollback()
                logger.error(f"Upload for new version of {file_id} failed, archive row rolled back")
                raise

            record.content_locator = locator
            record.name = name
            record.size = len(data)
            record.mime_type = mime_type or detect_mime_type(name)
            record.updated_at = utcnow()

            try:
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                self._discard_blob(locator)
                raise

            result = to_node(record), to_version(archived)
        finally:
            session.close()

        log(log_node_operation(
            "commit", file_id, actor_id,
            object_type="versions",
            fields_changed=["content_locator", "name", "size", "updated_at"],
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        ))
        logger.info(f"Committed new content for '{name}' (archived v{result[1].version_number})")
        return result

    def _discard_blob(self, locator: str) -> None:
        try:
            self._blobs.delete([locator])
        except DocVaultError as e:
            logger.error(f"Orphaned blob {locator} could not be removed: {e}")

    # -------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------

    def restore(self, file_id: str, version_number: int, actor_id: str) -> Tuple[Node, Version]:
        """
        Make an archived version current again.

        The current state is archived first (as a new, higher number); the
        node then takes the target's locator, name and size.
        """
        start = time.monotonic()
        self._writable_file(file_id, actor_id, "restore_version")

        with session_scope(self._factory) as session:
            record = self._lock_node(session, file_id)
            target = (
                session.query(VersionRecord)
                .filter(
                    VersionRecord.file_id == file_id,
                    VersionRecord.version_number == version_number,
                )
                .one_or_none()
            )
            if target is None:
                raise NotFoundError(
                    f"Version {version_number} of '{record.name}' not found",
                    entity_id=file_id,
                    entity_type="version",
                    operation="restore_version",
                )

            archived = self._archive(session, record, actor_id, SUMMARY_RESTORE)
            record.content_locator = target.content_locator
            record.name = target.name
            record.size = target.size
            record.mime_type = target.mime_type
            record.updated_at = utcnow()
            session.flush()
            result = to_node(record), to_version(archived)

        log(log_node_operation(
            "restore", file_id, actor_id,
            object_type="versions",
            fields_changed=["content_locator", "name", "size"],
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        ))
        logger.info(f"Restored '{result[0].name}' to v{version_number} (archived v{result[1].version_number})")
        return result

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def list_versions(self, file_id: str, viewer_id: Optional[str]) -> List[Version]:
        """Archived versions of a visible file, newest first."""
        node = self._store.get(file_id)
        require_visible(node, viewer_id, "list_versions")
        with session_scope(self._factory) as session:
            rows = (
                session.query(VersionRecord)
                .filter(VersionRecord.file_id == file_id)
                .order_by(VersionRecord.version_number.desc())
                .all()
            )
            return [to_version(r) for r in rows]

    def get_version(self, file_id: str, version_number: int, viewer_id: Optional[str]) -> Version:
        node = self._store.get(file_id)
        require_visible(node, viewer_id, "get_version")
        with session_scope(self._factory) as session:
            row = (
                session.query(VersionRecord)
                .filter(
                    VersionRecord.file_id == file_id,
                    VersionRecord.version_number == version_number,
                )
                .one_or_none()
            )
            if row is None:
                raise NotFoundError(
                    f"Version {version_number} of file '{file_id}' not found",
                    entity_id=file_id,
                    entity_type="version",
                )
            return to_version(row)
