"""
DocVault Pin Registry: the is_pinned flag and the default listing order.

Every listing returned by the Node Store is ordered:
    is_pinned desc → kind desc (folders before files) → name asc
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from docvault.db.models import NodeRecord
from docvault.engine.logging import log, log_node_operation
from docvault.repository.models import Node, NodePatch
from docvault.repository.visibility import require_owner

if TYPE_CHECKING:
    from docvault.repository.store import NodeStore

logger = logging.getLogger("docvault.repository.pins")


def listing_order():
    """ORDER BY terms shared by every folder-style listing."""
    return (
        NodeRecord.is_pinned.desc(),
        NodeRecord.kind.desc(),
        NodeRecord.name.asc(),
    )


class PinRegistry:
    """Flips the pinned flag on nodes. Owner-only."""

    def __init__(self, store: "NodeStore"):
        self._store = store

    def toggle_pin(self, node_id: str, actor_id: Optional[str]) -> Node:
        node = self._store.get(node_id, include_deleted=False)
        require_owner(node, actor_id, "pin")
        updated = self._store.update(node_id, NodePatch(is_pinned=not node.is_pinned))
        log(log_node_operation(
            "unpin" if node.is_pinned else "pin",
            node_id,
            actor_id,
            fields_changed=["is_pinned"],
        ))
        logger.debug(f"Node {node_id} pinned={updated.is_pinned}")
        return updated
