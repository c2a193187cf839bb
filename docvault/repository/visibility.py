"""
DocVault Visibility Filter: the single access-control predicate.

A node N is visible to viewer V iff:
    V == N.owner_id
    OR N.visibility == everyone
    OR (N.visibility == specific AND V in N.shared_with)

``is_visible`` evaluates it on a Node already in memory; ``visibility_clause``
is the same rule as a SQL expression for store queries. Every read path other
than the owner's trash view goes through one of the two.

Write access (content commits, version restores, visibility changes) is the
owner or a user named in shared_with while visibility is specific.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import and_, exists, or_

from docvault.db.models import NodeRecord, NodeShareRecord
from docvault.engine.errors import PermissionDenied
from docvault.engine.logging import log, log_security_event
from docvault.repository.models import Node, Visibility

logger = logging.getLogger("docvault.repository.visibility")


def is_owner(node: Node, viewer_id: Optional[str]) -> bool:
    return viewer_id is not None and node.owner_id == viewer_id


def is_visible(node: Node, viewer_id: Optional[str]) -> bool:
    """Return True when ``viewer_id`` may see ``node``."""
    if viewer_id is None:
        return node.visibility is Visibility.EVERYONE
    if node.owner_id == viewer_id:
        return True
    if node.visibility is Visibility.EVERYONE:
        return True
    if node.visibility is Visibility.SPECIFIC:
        return viewer_id in node.shared_with
    return False


def can_write(node: Node, actor_id: Optional[str]) -> bool:
    """Owner, or a collaborator named in shared_with."""
    if is_owner(node, actor_id):
        return True
    return node.visibility is Visibility.SPECIFIC and actor_id in node.shared_with


def visibility_clause(viewer_id: Optional[str], node=NodeRecord):
    """
    SQL equivalent of ``is_visible`` over the nodes table.

    ``node`` may be an alias of NodeRecord (e.g. a joined parent row).
    """
    everyone = node.visibility == Visibility.EVERYONE.value
    if viewer_id is None:
        return everyone
    shared = and_(
        node.visibility == Visibility.SPECIFIC.value,
        exists().where(
            and_(
                NodeShareRecord.node_id == node.id,
                NodeShareRecord.user_id == viewer_id,
            )
        ),
    )
    return or_(node.owner_id == viewer_id, everyone, shared)


# ---------------------------------------------------------------------------
# Guards - raise PermissionDenied and record a security log entry
# ---------------------------------------------------------------------------

def _deny(node: Node, actor_id: Optional[str], permission: str, operation: str) -> PermissionDenied:
    log(log_security_event(
        event=f"{operation}_denied",
        node_id=node.id,
        actor_id=actor_id,
        permission_needed=permission,
    ))
    logger.warning(f"Denied {operation} on node {node.id} for actor {actor_id} (needs {permission})")
    return PermissionDenied(
        f"Actor '{actor_id}' may not {operation} '{node.name}'",
        entity_id=node.id,
        entity_type=node.kind.value,
        actor_id=actor_id,
        operation=operation,
        required_permission=permission,
    )


def require_visible(node: Node, actor_id: Optional[str], operation: str = "view") -> Node:
    if not is_visible(node, actor_id):
        raise _deny(node, actor_id, "view", operation)
    return node


def require_owner(node: Node, actor_id: Optional[str], operation: str) -> Node:
    if not is_owner(node, actor_id):
        raise _deny(node, actor_id, "owner", operation)
    return node


def require_writer(node: Node, actor_id: Optional[str], operation: str) -> Node:
    if not can_write(node, actor_id):
        raise _deny(node, actor_id, "write", operation)
    return node
