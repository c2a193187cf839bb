"""
DocVault Repository Models: SQLAlchemy tables for the repository engine.

Tables:
1. nodes          - Files and folders (self-referencing parent_id tree)
2. node_shares    - Node ↔ user junction for visibility = 'specific'
3. node_versions  - Archived snapshots of a file's prior content
4. audit_log      - Who did what to which entity
5. notifications  - Per-user inbox written by the engine's notifier
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from docvault.db.base import Base, SoftDeleteMixin, TimestampMixin, utcnow


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# 1. Nodes
# ---------------------------------------------------------------------------

class NodeRecord(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "nodes"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False, index=True)
    kind = Column(String(10), nullable=False, index=True)
    # No ondelete cascade: purge removes subtrees explicitly, deepest first
    parent_id = Column(String(32), ForeignKey("nodes.id"), nullable=True, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    visibility = Column(String(10), nullable=False, default="private", index=True)
    category = Column(String(50), nullable=False, default="Others", index=True)
    content_locator = Column(String(500), nullable=True)
    mime_type = Column(String(100), nullable=True)
    size = Column(BigInteger, nullable=False, default=0)
    is_pinned = Column(Boolean, nullable=False, default=False)
    trash_root_id = Column(String(32), nullable=True, index=True)

    shares = relationship(
        "NodeShareRecord",
        cascade="all, delete-orphan",
        lazy="selectin",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("kind IN ('file', 'folder')", name="ck_nodes_kind"),
        CheckConstraint(
            "visibility IN ('everyone', 'specific', 'private')",
            name="ck_nodes_visibility",
        ),
        CheckConstraint(
            "kind = 'file' OR content_locator IS NULL",
            name="ck_nodes_folder_no_content",
        ),
        Index("ix_nodes_owner_deleted", "owner_id", "is_deleted"),
    )

    @property
    def shared_with(self) -> set:
        return {s.user_id for s in self.shares}

    def __repr__(self) -> str:
        return f"<NodeRecord(id='{self.id}', name='{self.name}', kind='{self.kind}')>"


# ---------------------------------------------------------------------------
# 2. Node shares
# ---------------------------------------------------------------------------

class NodeShareRecord(Base):
    __tablename__ = "node_shares"

    node_id = Column(String(32), ForeignKey("nodes.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)

    def __repr__(self) -> str:
        return f"<NodeShareRecord(node_id='{self.node_id}', user_id='{self.user_id}')>"


# ---------------------------------------------------------------------------
# 3. Versions
# ---------------------------------------------------------------------------

class VersionRecord(Base):
    __tablename__ = "node_versions"

    id = Column(String(32), primary_key=True, default=new_id)
    file_id = Column(String(32), ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    content_locator = Column(String(500), nullable=True)
    mime_type = Column(String(100), nullable=True)
    size = Column(BigInteger, nullable=False, default=0)
    uploaded_by = Column(String(64), nullable=False)
    change_summary = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("file_id", "version_number", name="uq_node_versions_file_number"),
        CheckConstraint("version_number >= 1", name="ck_node_versions_positive"),
    )

    def __repr__(self) -> str:
        return f"<VersionRecord(file_id='{self.file_id}', v{self.version_number})>"


# ---------------------------------------------------------------------------
# 4. Audit log
# ---------------------------------------------------------------------------

class AuditLogRecord(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String(64), nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(String(64), nullable=True, index=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<AuditLogRecord(actor='{self.actor_id}', action='{self.action}', entity='{self.entity_id}')>"


# ---------------------------------------------------------------------------
# 5. Notifications
# ---------------------------------------------------------------------------

class NotificationRecord(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    category = Column(String(20), nullable=False, default="info")
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<NotificationRecord(user='{self.user_id}', title='{self.title}')>"
