"""
DocVault Node Store: CRUD over the file/folder tree.

Owns the canonical queries over ``nodes``:
- create / get / update / hard_delete
- list_children, with the trash view as an explicit opt-in
- recents, shared-with-me, category browser and trash listings
- tree traversal (descendants, ancestors) and the batched cascade writes
  used by the Trash Lifecycle

Every non-trash read applies ``visibility_clause``; every folder-style
listing uses the Pin Registry's ``listing_order``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Set, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased, sessionmaker

from docvault.db.base import utcnow
from docvault.db.models import NodeRecord, NodeShareRecord, VersionRecord
from docvault.db.session import session_scope
from docvault.engine.errors import NotFoundError, PartialCascadeError, ValidationError
from docvault.repository.models import (
    DOCUMENT_CATEGORIES,
    GROUP_EXTENSIONS,
    BrowseGroup,
    Category,
    Node,
    NodeCreate,
    NodeKind,
    NodePatch,
    Visibility,
)
from docvault.repository.pins import listing_order
from docvault.repository.visibility import visibility_clause

logger = logging.getLogger("docvault.repository.store")

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def build_payload(model_cls: Type[PayloadT], **data: Any) -> PayloadT:
    """Construct a write payload, turning pydantic errors into ValidationError."""
    try:
        return model_cls(**data)
    except PydanticValidationError as e:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]) or "__root__", "error": err["msg"]}
            for err in e.errors()
        ]
        summary = "; ".join(f"{d['field']}: {d['error']}" for d in details)
        raise ValidationError(
            f"Invalid {model_cls.__name__}: {summary}",
            validation_errors=details,
        ) from e


def to_node(record: NodeRecord) -> Node:
    """Detach a NodeRecord into a Node read model."""
    return Node(
        id=record.id,
        name=record.name,
        kind=NodeKind(record.kind),
        parent_id=record.parent_id,
        owner_id=record.owner_id,
        visibility=Visibility(record.visibility),
        shared_with=frozenset(record.shared_with),
        category=Category(record.category),
        content_locator=record.content_locator,
        mime_type=record.mime_type,
        size=record.size or 0,
        created_at=record.created_at,
        updated_at=record.updated_at,
        is_deleted=bool(record.is_deleted),
        deleted_at=record.deleted_at,
        trash_root_id=record.trash_root_id,
        is_pinned=bool(record.is_pinned),
    )


def _chunks(items: Sequence[str], size: int) -> Iterator[List[str]]:
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


class NodeStore:
    """
    Node Store over a SQLAlchemy session factory.

    Each public method runs in its own ``session_scope`` (one transaction),
    except the batched cascade writes which commit once per batch.
    """

    def __init__(self, session_factory: sessionmaker, batch_size: int = 500):
        self._factory = session_factory
        self._batch_size = batch_size

    @property
    def session_factory(self) -> sessionmaker:
        return self._factory

    # -------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------

    def create(self, payload: NodeCreate) -> Node:
        """
        Insert a node. The parent, when given, must be an active folder.

        Raises:
            ValidationError: parent is a file or is in the trash.
            NotFoundError: parent does not exist.
        """
        with session_scope(self._factory) as session:
            if payload.parent_id is not None:
                parent = session.get(NodeRecord, payload.parent_id)
                if parent is None:
                    raise NotFoundError(
                        f"Parent folder '{payload.parent_id}' not found",
                        entity_id=payload.parent_id,
                        entity_type="folder",
                        operation="create",
                    )
                if parent.kind != NodeKind.FOLDER.value:
                    raise ValidationError(
                        f"Parent '{parent.name}' is not a folder",
                        entity_id=parent.id,
                        operation="create",
                    )
                if parent.is_deleted:
                    raise ValidationError(
                        f"Parent folder '{parent.name}' is in the trash",
                        entity_id=parent.id,
                        operation="create",
                    )

            now = utcnow()
            record = NodeRecord(
                name=payload.name,
                kind=payload.kind.value,
                parent_id=payload.parent_id,
                owner_id=payload.owner_id,
                visibility=payload.visibility.value,
                category=payload.category.value,
                content_locator=payload.content_locator,
                mime_type=payload.mime_type,
                size=payload.size,
                is_pinned=False,
                is_deleted=False,
                created_at=now,
                updated_at=now,
            )
            record.shares = [NodeShareRecord(user_id=u) for u in sorted(payload.shared_with)]
            session.add(record)
            session.flush()
            node = to_node(record)

        logger.debug(f"Created {node.kind.value} '{node.name}' ({node.id})")
        return node

    def get(self, node_id: str, include_deleted: bool = True) -> Node:
        """Fetch one node. Raises NotFoundError when missing (or trashed, if excluded)."""
        with session_scope(self._factory) as session:
            record = session.get(NodeRecord, node_id)
            if record is None or (record.is_deleted and not include_deleted):
                raise NotFoundError(
                    f"Node '{node_id}' not found",
                    entity_id=node_id,
                    operation="get",
                )
            return to_node(record)

    def get_many(self, node_ids: Iterable[str]) -> List[Node]:
        ids = list(dict.fromkeys(node_ids))
        nodes: List[Node] = []
        with session_scope(self._factory) as session:
            for chunk in _chunks(ids, self._batch_size):
                rows = session.query(NodeRecord).filter(NodeRecord.id.in_(chunk)).all()
                nodes.extend(to_node(r) for r in rows)
        return nodes

    def update(self, node_id: str, patch: NodePatch) -> Node:
        """
        Apply a partial update.

        Visibility changes replace the share set: switching away from
        'specific' always clears shared_with.
        """
        changes = patch.changes()
        with session_scope(self._factory) as session:
            record = session.get(NodeRecord, node_id)
            if record is None:
                raise NotFoundError(f"Node '{node_id}' not found", entity_id=node_id, operation="update")

            if record.kind == NodeKind.FOLDER.value and (
                changes.get("content_locator") is not None or changes.get("size")
            ):
                raise ValidationError(
                    f"Folder '{record.name}' cannot carry content",
                    entity_id=node_id,
                    operation="update",
                )

            if "visibility" in changes:
                visibility = Visibility(changes.pop("visibility"))
                shared = changes.pop("shared_with", None) or frozenset()
                record.visibility = visibility.value
                wanted = set(shared) if visibility is Visibility.SPECIFIC else set()
                record.shares = [s for s in record.shares if s.user_id in wanted] + [
                    NodeShareRecord(user_id=u) for u in sorted(wanted - record.shared_with)
                ]

            for field, value in changes.items():
                if isinstance(value, Category):
                    value = value.value
                setattr(record, field, value)

            if set(patch.model_fields_set) - {"is_pinned"}:
                record.updated_at = utcnow()

            session.flush()
            return to_node(record)

    def hard_delete(self, node_ids: Iterable[str]) -> int:
        """
        Physically remove nodes, their shares and their archived versions.

        Rows are deleted deepest first so parent_id references never dangle.
        Callers pass complete subtrees; a node whose child is not in the set
        makes the store reject the delete.
        """
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return 0

        with session_scope(self._factory) as session:
            records: List[NodeRecord] = []
            for chunk in _chunks(ids, self._batch_size):
                for version in session.query(VersionRecord).filter(VersionRecord.file_id.in_(chunk)).all():
                    session.delete(version)
                records.extend(session.query(NodeRecord).filter(NodeRecord.id.in_(chunk)).all())
            session.flush()

            remaining = {r.id: r for r in records}
            while remaining:
                parents = {r.parent_id for r in remaining.values()}
                leaves = [r for node_id, r in remaining.items() if node_id not in parents]
                if not leaves:
                    # Cannot happen in a forest; guards against a corrupted cycle
                    raise ValidationError("Cycle detected while deleting nodes", operation="hard_delete")
                for record in leaves:
                    session.delete(record)
                    del remaining[record.id]
                session.flush()

        logger.info(f"Hard-deleted {len(records)} node(s)")
        return len(records)

    # -------------------------------------------------------------------
    # Listings
    # -------------------------------------------------------------------

    def list_children(
        self,
        parent_id: Optional[str],
        viewer_id: Optional[str],
        *,
        trash: bool = False,
    ) -> List[Node]:
        """
        Children of ``parent_id`` (None = root) visible to ``viewer_id``.

        With ``trash=True`` only the viewer's own deleted children are
        returned; visibility settings are ignored because trash is owner-only.
        """
        with session_scope(self._factory) as session:
            query = session.query(NodeRecord)
            if parent_id is None:
                query = query.filter(NodeRecord.parent_id.is_(None))
            else:
                query = query.filter(NodeRecord.parent_id == parent_id)

            if trash:
                query = query.filter(
                    NodeRecord.is_deleted.is_(True),
                    NodeRecord.owner_id == viewer_id,
                )
            else:
                query = query.filter(
                    NodeRecord.is_deleted.is_(False),
                    visibility_clause(viewer_id),
                )

            return [to_node(r) for r in query.order_by(*listing_order()).all()]

    def list_trash(self, owner_id: str) -> List[Node]:
        """Every deleted node owned by ``owner_id``, most recently deleted first."""
        with session_scope(self._factory) as session:
            rows = (
                session.query(NodeRecord)
                .filter(NodeRecord.owner_id == owner_id, NodeRecord.is_deleted.is_(True))
                .order_by(NodeRecord.deleted_at.desc(), NodeRecord.name.asc())
                .all()
            )
            return [to_node(r) for r in rows]

    def list_recent(self, viewer_id: Optional[str], limit: int = 8) -> List[Node]:
        """Most recently updated visible files."""
        with session_scope(self._factory) as session:
            rows = (
                session.query(NodeRecord)
                .filter(
                    NodeRecord.is_deleted.is_(False),
                    NodeRecord.kind == NodeKind.FILE.value,
                    visibility_clause(viewer_id),
                )
                .order_by(NodeRecord.updated_at.desc(), NodeRecord.name.asc())
                .limit(limit)
                .all()
            )
            return [to_node(r) for r in rows]

    def list_shared_with(self, viewer_id: str, parent_id: Optional[str] = None) -> List[Node]:
        """
        Visible nodes owned by someone else.

        At the root (``parent_id`` None) this also surfaces shared nodes whose
        parent folder the viewer cannot see, since they are otherwise
        unreachable.
        """
        parent = aliased(NodeRecord)
        with session_scope(self._factory) as session:
            query = session.query(NodeRecord).filter(
                NodeRecord.is_deleted.is_(False),
                NodeRecord.owner_id != viewer_id,
                visibility_clause(viewer_id),
            )
            if parent_id is None:
                query = query.outerjoin(parent, NodeRecord.parent_id == parent.id).filter(
                    or_(NodeRecord.parent_id.is_(None), ~visibility_clause(viewer_id, parent))
                )
            else:
                query = query.filter(NodeRecord.parent_id == parent_id)
            return [to_node(r) for r in query.order_by(*listing_order()).all()]

    def list_by_group(self, viewer_id: Optional[str], group: BrowseGroup) -> List[Node]:
        """Visible, active files in a category-browser group."""
        with session_scope(self._factory) as session:
            query = session.query(NodeRecord).filter(
                NodeRecord.is_deleted.is_(False),
                NodeRecord.kind == NodeKind.FILE.value,
                visibility_clause(viewer_id),
            )
            if group in GROUP_EXTENSIONS:
                terms = [NodeRecord.name.ilike(f"%{ext}") for ext in GROUP_EXTENSIONS[group]]
                if group is BrowseGroup.DOCUMENTS:
                    terms.append(NodeRecord.category.in_([c.value for c in DOCUMENT_CATEGORIES]))
                query = query.filter(or_(*terms))
            elif group is BrowseGroup.RESEARCH:
                query = query.filter(NodeRecord.category == Category.RESEARCH_PROPOSALS.value)
            else:
                query = query.filter(NodeRecord.category == Category.OTHERS.value)
            return [to_node(r) for r in query.order_by(*listing_order()).all()]

    # -------------------------------------------------------------------
    # Tree traversal
    # -------------------------------------------------------------------

    def descendant_ids(self, root_id: str) -> List[str]:
        """
        All descendants of ``root_id`` (not including it), deleted or not.

        Iterative walk over parent_id edges, one query per tree level.
        """
        found: List[str] = []
        frontier = [root_id]
        seen: Set[str] = {root_id}
        with session_scope(self._factory) as session:
            while frontier:
                next_frontier: List[str] = []
                for chunk in _chunks(frontier, self._batch_size):
                    rows = session.query(NodeRecord.id).filter(NodeRecord.parent_id.in_(chunk)).all()
                    for (child_id,) in rows:
                        if child_id not in seen:
                            seen.add(child_id)
                            found.append(child_id)
                            next_frontier.append(child_id)
                frontier = next_frontier
        return found

    def ancestors(self, node_id: str) -> List[Node]:
        """Ancestor chain of ``node_id``, nearest parent first."""
        chain: List[Node] = []
        with session_scope(self._factory) as session:
            record = session.get(NodeRecord, node_id)
            if record is None:
                raise NotFoundError(f"Node '{node_id}' not found", entity_id=node_id, operation="ancestors")
            seen = {record.id}
            while record.parent_id is not None and record.parent_id not in seen:
                record = session.get(NodeRecord, record.parent_id)
                if record is None:
                    break
                seen.add(record.id)
                chain.append(to_node(record))
        return chain

    def locators_for(self, node_ids: Iterable[str]) -> Set[str]:
        """Every blob locator referenced by these nodes or their archived versions."""
        ids = list(dict.fromkeys(node_ids))
        locators: Set[str] = set()
        with session_scope(self._factory) as session:
            for chunk in _chunks(ids, self._batch_size):
                rows = (
                    session.query(NodeRecord.content_locator)
                    .filter(NodeRecord.id.in_(chunk), NodeRecord.content_locator.isnot(None))
                    .all()
                )
                locators.update(loc for (loc,) in rows if loc)
                rows = (
                    session.query(VersionRecord.content_locator)
                    .filter(VersionRecord.file_id.in_(chunk), VersionRecord.content_locator.isnot(None))
                    .all()
                )
                locators.update(loc for (loc,) in rows if loc)
        return locators

    def expired_trash_roots(self, cutoff: datetime) -> List[Node]:
        """
        Deleted nodes whose parent is active (or root) and whose deletion is
        older than ``cutoff``.
        """
        parent = aliased(NodeRecord)
        with session_scope(self._factory) as session:
            rows = (
                session.query(NodeRecord)
                .outerjoin(parent, NodeRecord.parent_id == parent.id)
                .filter(
                    NodeRecord.is_deleted.is_(True),
                    NodeRecord.deleted_at < cutoff,
                    or_(NodeRecord.parent_id.is_(None), parent.is_deleted.is_(False)),
                )
                .order_by(NodeRecord.deleted_at.asc())
                .all()
            )
            return [to_node(r) for r in rows]

    # -------------------------------------------------------------------
    # Batched cascade writes
    # -------------------------------------------------------------------

    def mark_deleted(
        self,
        node_ids: Sequence[str],
        deleted_at: datetime,
        trash_root_id: str,
    ) -> List[str]:
        """Soft-delete the given active nodes in batches. Returns the ids written."""

        def apply(record: NodeRecord) -> bool:
            if record.is_deleted:
                return False
            record.is_deleted = True
            record.deleted_at = deleted_at
            record.trash_root_id = trash_root_id
            return True

        return self._batched(node_ids, apply, "soft_delete", trash_root_id)

    def mark_restored(self, node_ids: Sequence[str], operation_root: str) -> List[str]:
        """Clear the deletion markers on the given nodes in batches."""

        def apply(record: NodeRecord) -> bool:
            if not record.is_deleted:
                return False
            record.is_deleted = False
            record.deleted_at = None
            record.trash_root_id = None
            return True

        return self._batched(node_ids, apply, "restore", operation_root)

    def _batched(self, node_ids: Sequence[str], apply, operation: str, root_id: str) -> List[str]:
        ids = list(dict.fromkeys(node_ids))
        updated: List[str] = []
        failed: List[str] = []
        last_error: Optional[SQLAlchemyError] = None

        for chunk in _chunks(ids, self._batch_size):
            written: List[str] = []
            try:
                with session_scope(self._factory) as session:
                    for record in session.query(NodeRecord).filter(NodeRecord.id.in_(chunk)).all():
                        if apply(record):
                            written.append(record.id)
            except SQLAlchemyError as e:
                logger.error(f"{operation} batch of {len(chunk)} under {root_id} failed: {e}")
                failed.extend(chunk)
                last_error = e
                continue
            updated.extend(written)

        if failed:
            if not updated and last_error is not None:
                raise last_error
            raise PartialCascadeError(
                f"{operation} of '{root_id}' wrote {len(updated)} node(s), "
                f"{len(failed)} failed",
                entity_id=root_id,
                operation=operation,
                updated_ids=updated,
                failed_ids=failed,
            )
        return updated
