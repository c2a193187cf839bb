"""
DocVault Trash Lifecycle: soft delete, restore, purge, empty trash, retention.

Per-node state machine:

    active ──soft_delete──▶ deleted ──restore──▶ active
                               │
                               └────purge──────▶ (rows and blobs gone)

Soft-deleting a folder cascades to every active descendant. The cascade
records the folder as ``trash_root_id`` on each node it touches, so a later
restore brings back exactly that batch and leaves nodes that were trashed
separately where they are.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Set

from docvault.db.base import utcnow
from docvault.engine.errors import DocVaultError
from docvault.engine.logging import log, log_node_operation, log_storage_event
from docvault.repository.blobs import BlobStore
from docvault.repository.models import Node
from docvault.repository.store import NodeStore
from docvault.repository.visibility import require_owner

logger = logging.getLogger("docvault.repository.trash")


@dataclass
class EmptyTrashResult:
    """Outcome of emptying one owner's trash."""
    purged_ids: List[str] = field(default_factory=list)
    retained_ids: List[str] = field(default_factory=list)


@dataclass
class SweepResult:
    """Outcome of a retention sweep."""
    purged_ids: List[str] = field(default_factory=list)
    failed_roots: List[str] = field(default_factory=list)


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


class TrashLifecycle:
    """Soft-delete state machine over the Node Store and Blob Store."""

    def __init__(self, store: NodeStore, blobs: BlobStore):
        self._store = store
        self._blobs = blobs

    # -------------------------------------------------------------------
    # Soft delete
    # -------------------------------------------------------------------

    def soft_delete(self, node_id: str, actor_id: Optional[str]) -> List[str]:
        """
        Move a node (and, for a folder, its whole active subtree) to the trash.

        Returns the ids actually marked deleted. Deleting a node that is
        already in the trash is a no-op.

        Raises:
            PermissionDenied: actor does not own the node.
            PartialCascadeError: some batches were written, others failed.
        """
        start = time.monotonic()
        node = self._store.get(node_id)
        require_owner(node, actor_id, "delete")
        if node.is_deleted:
            return []

        # Collect the full id set before writing anything
        ids = [node_id]
        if node.is_folder:
            ids.extend(self._store.descendant_ids(node_id))

        try:
            updated = self._store.mark_deleted(ids, utcnow(), trash_root_id=node_id)
        except DocVaultError as e:
            log(log_node_operation("soft_delete", node_id, actor_id, object_type="trash", error=str(e)))
            raise

        log(log_node_operation(
            "soft_delete", node_id, actor_id,
            object_type="trash",
            affected_ids=updated,
            duration_ms=_elapsed_ms(start),
        ))
        logger.info(f"Moved '{node.name}' to trash ({len(updated)} node(s))")
        return updated

    # -------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------

    def restore(self, node_id: str, actor_id: Optional[str]) -> List[str]:
        """
        Bring a trashed node back, with the descendants its deletion batch
        took along. Deleted ancestors are restored too so the node is
        reachable again; their other trashed children stay in the trash.

        Returns the ids made active. Restoring an active node is a no-op.

        Raises:
            PermissionDenied: actor does not own the node, or a deleted
                ancestor belongs to someone else.
        """
        start = time.monotonic()
        node = self._store.get(node_id)
        require_owner(node, actor_id, "restore")
        if not node.is_deleted:
            return []

        deleted_ancestors = [a for a in self._store.ancestors(node_id) if a.is_deleted]
        for ancestor in deleted_ancestors:
            require_owner(ancestor, actor_id, "restore")

        ids = [node_id]
        if node.is_folder:
            descendants = self._store.get_many(self._store.descendant_ids(node_id))
            ids.extend(
                d.id for d in descendants
                if d.is_deleted and d.trash_root_id == node.trash_root_id
            )
        ids.extend(a.id for a in deleted_ancestors)

        try:
            restored = self._store.mark_restored(ids, operation_root=node_id)
        except DocVaultError as e:
            log(log_node_operation("restore", node_id, actor_id, object_type="trash", error=str(e)))
            raise

        log(log_node_operation(
            "restore", node_id, actor_id,
            object_type="trash",
            affected_ids=restored,
            duration_ms=_elapsed_ms(start),
        ))
        logger.info(f"Restored '{node.name}' ({len(restored)} node(s))")
        return restored

    # -------------------------------------------------------------------
    # Purge
    # -------------------------------------------------------------------

    def purge(self, node_id: str, actor_id: Optional[str]) -> List[str]:
        """
        Permanently remove a node, its subtree, their archived versions and
        every blob they reference.

        Blobs go first. If the blob store fails, StorageError propagates and
        no rows are touched, so the purge can be retried.
        """
        node = self._store.get(node_id)
        require_owner(node, actor_id, "purge")
        return self._purge_subtree(node, actor_id)

    def _purge_subtree(self, node: Node, actor_id: Optional[str]) -> List[str]:
        start = time.monotonic()
        ids = [node.id] + self._store.descendant_ids(node.id)
        locators = sorted(self._store.locators_for(ids))

        if locators:
            try:
                self._blobs.delete(locators)
            except DocVaultError as e:
                log(log_node_operation("purge", node.id, actor_id, object_type="trash", error=str(e)))
                logger.error(f"Purge of '{node.name}' aborted, blob delete failed: {e}")
                raise

        self._store.hard_delete(ids)

        log(log_node_operation(
            "purge", node.id, actor_id,
            object_type="trash",
            affected_ids=ids,
            duration_ms=_elapsed_ms(start),
        ))
        if locators:
            log(log_storage_event("purge", locators, success=True))
        logger.info(f"Purged '{node.name}' ({len(ids)} node(s), {len(locators)} blob(s))")
        return ids

    # -------------------------------------------------------------------
    # Empty trash
    # -------------------------------------------------------------------

    def empty_trash(self, owner_id: str) -> EmptyTrashResult:
        """
        Purge every trashed node owned by ``owner_id``.

        A trashed folder whose subtree holds nodes of another owner is kept
        (and reported); the owner's nodes beneath it are still purged.
        """
        candidates = {n.id: n for n in self._store.list_trash(owner_id)}
        candidate_ids: Set[str] = set(candidates)
        result = EmptyTrashResult()

        pending = [n for n in candidates.values() if n.parent_id not in candidate_ids]
        while pending:
            root = pending.pop()
            subtree = self._store.get_many([root.id] + self._store.descendant_ids(root.id))
            if all(n.id in candidate_ids for n in subtree):
                result.purged_ids.extend(self._purge_subtree(root, owner_id))
                continue

            result.retained_ids.append(root.id)
            pending.extend(
                n for n in subtree
                if n.parent_id == root.id and n.id in candidate_ids
            )

        log(log_node_operation(
            "empty_trash", owner_id, owner_id,
            object_type="trash",
            affected_ids=result.purged_ids,
        ))
        if result.retained_ids:
            logger.warning(
                f"Empty trash for {owner_id} retained {len(result.retained_ids)} folder(s) "
                f"holding other users' nodes"
            )
        return result

    # -------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------

    def purge_expired(self, retention_days: int, now: Optional[datetime] = None) -> SweepResult:
        """
        Purge every trash root deleted more than ``retention_days`` ago.

        One failing root is logged and reported; the sweep carries on with
        the rest.
        """
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        result = SweepResult()
        for root in self._store.expired_trash_roots(cutoff):
            try:
                result.purged_ids.extend(self._purge_subtree(root, actor_id=None))
            except DocVaultError as e:
                logger.error(f"Retention purge of {root.id} failed: {e}")
                result.failed_roots.append(root.id)
        return result
