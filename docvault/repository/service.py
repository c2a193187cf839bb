"""
DocVault Repository Service: the caller-facing facade.

Combines the Node Store, Trash Lifecycle, Version Manager and Pin Registry,
enforces permissions at the boundary, and reports completed mutations to the
audit logger and notifier. Collaborator failures are logged and never undo
the mutation that triggered them.

Usage:
    service = RepositoryService.from_config(get_config(), create_tables=True)
    folder = service.create_folder("Board", owner_id="alice")
    doc = service.upload_file("minutes.pdf", data, owner_id="alice", parent_id=folder.id)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Optional, Set, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from docvault.engine.config import DocVaultConfig
from docvault.engine.errors import DocVaultError, ValidationError
from docvault.repository.blobs import BlobStore, LocalBlobStore, detect_mime_type, make_storage_path
from docvault.repository.collaborators import (
    AuditLogger,
    DatabaseAuditLogger,
    DatabaseNotifier,
    Notifier,
)
from docvault.repository.fanout import ChangeFeed, RedisChangeRelay
from docvault.repository.models import (
    AuditEntry,
    BrowseGroup,
    Category,
    Node,
    NodeCreate,
    NodeKind,
    NodePatch,
    NotificationCategory,
    Version,
    Visibility,
)
from docvault.repository.pins import PinRegistry
from docvault.repository.store import NodeStore, build_payload
from docvault.repository.trash import EmptyTrashResult, SweepResult, TrashLifecycle
from docvault.repository.versions import VersionManager
from docvault.repository.visibility import require_owner, require_visible, require_writer

logger = logging.getLogger("docvault.repository.service")

UserDirectory = Callable[[], Iterable[str]]


class RepositoryService:
    """Every operation a UI or API layer calls on the repository."""

    def __init__(
        self,
        session_factory: sessionmaker,
        blobs: BlobStore,
        *,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditLogger] = None,
        user_directory: Optional[UserDirectory] = None,
        feed: Optional[ChangeFeed] = None,
        batch_size: int = 500,
        recent_limit: int = 8,
        retention_days: int = 30,
    ):
        self.store = NodeStore(session_factory, batch_size=batch_size)
        self.blobs = blobs
        self.trash = TrashLifecycle(self.store, blobs)
        self.versions = VersionManager(self.store, blobs)
        self.pins = PinRegistry(self.store)
        self.notifier = notifier
        self.audit = audit
        self.feed = feed
        self.relay: Optional[RedisChangeRelay] = None
        self._user_directory = user_directory
        self._recent_limit = recent_limit
        self._retention_days = retention_days
        if feed is not None:
            feed.attach(session_factory)

    @classmethod
    def from_config(
        cls,
        config: DocVaultConfig,
        create_tables: bool = False,
        user_directory: Optional[UserDirectory] = None,
    ) -> "RepositoryService":
        """Build a fully wired service from ``docvault.yaml`` settings."""
        from docvault.db.session import init_repository_db

        db = config.database
        factory = init_repository_db(
            db.url,
            create_tables=create_tables,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_recycle=db.pool_recycle,
            pool_pre_ping=db.pool_pre_ping,
        )
        service = cls(
            factory,
            LocalBlobStore(config.blob_store.root, config.blob_store.public_base_url),
            notifier=DatabaseNotifier(factory),
            audit=DatabaseAuditLogger(factory),
            user_directory=user_directory,
            feed=ChangeFeed(),
            batch_size=config.trash.cascade_batch_size,
            recent_limit=config.listing.recent_limit,
            retention_days=config.trash.retention_days,
        )
        if config.fanout.redis_enabled:
            relay = RedisChangeRelay(service.feed, config.fanout.redis_url, config.fanout.channel)
            if relay.start():
                service.relay = relay
        return service

    # -------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------

    def _record(self, actor_id: Optional[str], action: str, node: Optional[Node] = None,
                entity_id: Optional[str] = None, **metadata: Any) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(
                actor_id or "system",
                action,
                node.kind.value if node else None,
                node.id if node else entity_id,
                metadata,
            )
        except Exception as e:
            logger.error(f"Audit record for {action} failed: {e}")

    def _notify(self, recipients: Iterable[str], title: str, message: str,
                category: NotificationCategory = NotificationCategory.FILE) -> None:
        if self.notifier is None:
            return
        for user_id in sorted(set(recipients)):
            try:
                self.notifier.notify(user_id, title, message, category)
            except Exception as e:
                logger.error(f"Notification to {user_id} failed: {e}")

    def _directory_users(self) -> Set[str]:
        if self._user_directory is None:
            return set()
        try:
            return set(self._user_directory())
        except Exception as e:
            logger.error(f"User directory lookup failed: {e}")
            return set()

    def _audience(self, node: Node) -> Set[str]:
        if node.visibility is Visibility.SPECIFIC:
            return set(node.shared_with)
        if node.visibility is Visibility.EVERYONE:
            return self._directory_users()
        return set()

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def get_node(self, node_id: str, viewer_id: Optional[str]) -> Node:
        """A single node. Trashed nodes are only visible to their owner."""
        node = self.store.get(node_id)
        if node.is_deleted:
            return require_owner(node, viewer_id, "view")
        return require_visible(node, viewer_id)

    def list_children(self, parent_id: Optional[str], viewer_id: Optional[str], trash: bool = False) -> List[Node]:
        if parent_id is not None:
            parent = self.store.get(parent_id, include_deleted=trash)
            if not parent.is_folder:
                raise ValidationError(f"'{parent.name}' is not a folder", entity_id=parent_id)
            if trash:
                require_owner(parent, viewer_id, "view_trash")
        # Visibility is per node; the parent's own visibility does not gate its children
        return self.store.list_children(parent_id, viewer_id, trash=trash)

    def list_trash(self, owner_id: str) -> List[Node]:
        return self.store.list_trash(owner_id)

    def list_recent(self, viewer_id: Optional[str], limit: Optional[int] = None) -> List[Node]:
        return self.store.list_recent(viewer_id, limit or self._recent_limit)

    def list_shared_with_me(self, viewer_id: str, parent_id: Optional[str] = None) -> List[Node]:
        if parent_id is not None:
            require_visible(self.store.get(parent_id, include_deleted=False), viewer_id)
        return self.store.list_shared_with(viewer_id, parent_id)

    def list_by_category(self, viewer_id: Optional[str], group: Union[BrowseGroup, str]) -> List[Node]:
        try:
            group = BrowseGroup(group)
        except ValueError as e:
            raise ValidationError(f"Unknown category group '{group}'", operation="list_by_category") from e
        return self.store.list_by_group(viewer_id, group)

    def download_url(self, node_id: str, viewer_id: Optional[str]) -> str:
        node = self.get_node(node_id, viewer_id)
        if node.is_folder or not node.content_locator:
            raise ValidationError(f"'{node.name}' has no downloadable content", entity_id=node_id)
        return self.blobs.get(node.content_locator)

    def list_versions(self, file_id: str, viewer_id: Optional[str]) -> List[Version]:
        return self.versions.list_versions(file_id, viewer_id)

    def audit_trail(self, node_id: str, viewer_id: Optional[str], limit: int = 100) -> List[AuditEntry]:
        """Audit entries for a node the viewer can see, newest first."""
        self.get_node(node_id, viewer_id)
        entries = getattr(self.audit, "entries", None)
        if entries is None:
            return []
        return entries(entity_id=node_id, limit=limit)

    # -------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------

    def _check_parent(self, parent_id: Optional[str], actor_id: str) -> None:
        if parent_id is None:
            return
        parent = self.store.get(parent_id)
        require_visible(parent, actor_id, "create")

    def create_folder(
        self,
        name: str,
        owner_id: str,
        parent_id: Optional[str] = None,
        visibility: Visibility = Visibility.PRIVATE,
        shared_with: Iterable[str] = (),
    ) -> Node:
        payload = build_payload(
            NodeCreate,
            name=name,
            kind=NodeKind.FOLDER,
            owner_id=owner_id,
            parent_id=parent_id,
            visibility=visibility,
            shared_with=frozenset(shared_with),
        )
        self._check_parent(parent_id, owner_id)
        node = self.store.create(payload)
        self._record(owner_id, "create_folder", node, name=node.name, parent_id=parent_id)
        logger.info(f"{owner_id} created folder '{node.name}' ({node.id})")
        return node

    def upload_file(
        self,
        name: str,
        data: bytes,
        owner_id: str,
        parent_id: Optional[str] = None,
        visibility: Visibility = Visibility.PRIVATE,
        shared_with: Iterable[str] = (),
        category: Union[Category, str] = Category.OTHERS,
        mime_type: Optional[str] = None,
    ) -> Node:
        """
        Store ``data`` in the blob store and create the file node.

        If the node cannot be created the uploaded blob is removed again.
        """
        payload = build_payload(
            NodeCreate,
            name=name,
            kind=NodeKind.FILE,
            owner_id=owner_id,
            parent_id=parent_id,
            visibility=visibility,
            shared_with=frozenset(shared_with),
            category=category,
            mime_type=mime_type or detect_mime_type(name),
            size=len(data),
        )
        self._check_parent(parent_id, owner_id)

        locator = self.blobs.put(make_storage_path(owner_id, payload.name), data)
        try:
            node = self.store.create(payload.model_copy(update={"content_locator": locator}))
        except (DocVaultError, SQLAlchemyError):
            try:
                self.blobs.delete([locator])
            except DocVaultError as e:
                logger.error(f"Orphaned blob {locator} could not be removed: {e}")
            raise

        self._record(owner_id, "upload", node, name=node.name, size=node.size, category=node.category.value)
        self._notify(
            self._audience(node) - {owner_id},
            "New file uploaded",
            f"{owner_id} uploaded '{node.name}'",
        )
        logger.info(f"{owner_id} uploaded '{node.name}' ({node.size} bytes)")
        return node

    # -------------------------------------------------------------------
    # Versions
    # -------------------------------------------------------------------

    def _version_recipients(self, node: Node, actor_id: str) -> Set[str]:
        return {actor_id, node.owner_id} | set(node.shared_with)

    def commit_version(
        self,
        file_id: str,
        actor_id: str,
        data: bytes,
        new_name: Optional[str] = None,
        change_summary: Optional[str] = None,
    ) -> Node:
        node, archived = self.versions.commit(file_id, actor_id, data, new_name, change_summary)
        self._record(actor_id, "commit_version", node, archived_version=archived.version_number)
        self._notify(
            self._version_recipients(node, actor_id),
            "New version uploaded",
            f"{actor_id} uploaded a new version of '{node.name}'",
        )
        return node

    def restore_version(self, file_id: str, version_number: int, actor_id: str) -> Node:
        node, archived = self.versions.restore(file_id, version_number, actor_id)
        self._record(
            actor_id, "restore_version", node,
            restored_version=version_number,
            archived_version=archived.version_number,
        )
        self._notify(
            self._version_recipients(node, actor_id),
            "Version restored",
            f"{actor_id} restored '{node.name}' to version {version_number}",
            NotificationCategory.INFO,
        )
        return node

    # -------------------------------------------------------------------
    # Trash
    # -------------------------------------------------------------------

    def soft_delete(self, node_id: str, actor_id: str) -> List[str]:
        ids = self.trash.soft_delete(node_id, actor_id)
        if ids:
            self._record(actor_id, "soft_delete", entity_id=node_id, affected=len(ids))
        return ids

    def restore(self, node_id: str, actor_id: str) -> List[str]:
        ids = self.trash.restore(node_id, actor_id)
        if ids:
            self._record(actor_id, "restore", entity_id=node_id, affected=len(ids))
        return ids

    def purge(self, node_id: str, actor_id: str) -> List[str]:
        ids = self.trash.purge(node_id, actor_id)
        self._record(actor_id, "purge", entity_id=node_id, affected=len(ids))
        return ids

    def empty_trash(self, owner_id: str) -> EmptyTrashResult:
        result = self.trash.empty_trash(owner_id)
        self._record(
            owner_id, "empty_trash",
            entity_id=owner_id,
            purged=len(result.purged_ids),
            retained=len(result.retained_ids),
        )
        return result

    def sweep_trash(self, retention_days: Optional[int] = None) -> SweepResult:
        """Purge trash older than the retention window."""
        days = self._retention_days if retention_days is None else retention_days
        result = self.trash.purge_expired(days)
        self._record(None, "retention_sweep", purged=len(result.purged_ids), failed=len(result.failed_roots))
        return result

    # -------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------

    def toggle_pin(self, node_id: str, actor_id: str) -> Node:
        node = self.pins.toggle_pin(node_id, actor_id)
        self._record(actor_id, "pin" if node.is_pinned else "unpin", node)
        return node

    def set_visibility(
        self,
        node_id: str,
        actor_id: str,
        visibility: Union[Visibility, str],
        shared_with: Iterable[str] = (),
    ) -> Node:
        """
        Change who can see a node. ``shared_with`` is only meaningful for
        'specific' and replaces the previous share list.
        """
        shared = frozenset(shared_with)
        try:
            visibility = Visibility(visibility)
        except ValueError as e:
            raise ValidationError(f"Unknown visibility '{visibility}'", entity_id=node_id) from e
        if visibility is not Visibility.SPECIFIC and shared:
            raise ValidationError(
                "shared_with must be empty unless visibility is 'specific'",
                entity_id=node_id,
                operation="set_visibility",
            )

        node = self.store.get(node_id, include_deleted=False)
        require_writer(node, actor_id, "set_visibility")
        patch = build_payload(
            NodePatch,
            visibility=visibility,
            **({"shared_with": shared} if visibility is Visibility.SPECIFIC else {}),
        )
        updated = self.store.update(node_id, patch)

        previously = self._audience(node) | {node.owner_id}
        self._record(
            actor_id, "set_visibility", updated,
            visibility=updated.visibility.value,
            shared_with=sorted(updated.shared_with),
        )
        self._notify(
            self._audience(updated) - previously - {actor_id},
            "Shared with you",
            f"{actor_id} shared '{updated.name}' with you",
        )
        return updated

    def rename(self, node_id: str, actor_id: str, new_name: str) -> Node:
        node = self.store.get(node_id, include_deleted=False)
        require_owner(node, actor_id, "rename")
        updated = self.store.update(node_id, build_payload(NodePatch, name=new_name))
        self._record(actor_id, "rename", updated, old_name=node.name, new_name=updated.name)
        return updated

    def close(self) -> None:
        """Stop the Redis relay and detach the change feed."""
        if self.relay is not None:
            self.relay.stop()
            self.relay = None
        if self.feed is not None:
            self.feed.detach()

    def __repr__(self) -> str:
        return f"<RepositoryService blobs={self.blobs!r}>"
