"""
DocVault collaborators: the notifier and audit logger the service calls
after a successful mutation.

Both are plain interfaces so hosts can plug in their own delivery (email,
websocket, SIEM). The database-backed implementations write to the
``notifications`` and ``audit_log`` tables in the repository database.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from docvault.db.base import utcnow
from docvault.db.models import AuditLogRecord, NotificationRecord
from docvault.db.session import session_scope
from docvault.repository.models import AuditEntry, Notification, NotificationCategory

logger = logging.getLogger("docvault.repository.collaborators")


class Notifier(ABC):
    @abstractmethod
    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        category: NotificationCategory = NotificationCategory.INFO,
    ) -> None:
        """Deliver one notification to one user."""


class AuditLogger(ABC):
    @abstractmethod
    def record(
        self,
        actor_id: str,
        action: str,
        entity_type: Optional[str],
        entity_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append one audit entry."""


class DatabaseNotifier(Notifier):
    """Stores notifications as rows; callers poll ``list_for``."""

    def __init__(self, session_factory: sessionmaker):
        self._factory = session_factory

    def notify(self, user_id, title, message, category=NotificationCategory.INFO) -> None:
        with session_scope(self._factory) as session:
            session.add(NotificationRecord(
                user_id=user_id,
                title=title,
                message=message,
                category=NotificationCategory(category).value,
                is_read=False,
                created_at=utcnow(),
            ))
        logger.debug(f"Notified {user_id}: {title}")

    def list_for(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        with session_scope(self._factory) as session:
            query = session.query(NotificationRecord).filter(NotificationRecord.user_id == user_id)
            if unread_only:
                query = query.filter(NotificationRecord.is_read.is_(False))
            rows = query.order_by(NotificationRecord.id.desc()).limit(limit).all()
            return [
                Notification(
                    id=r.id,
                    user_id=r.user_id,
                    title=r.title,
                    message=r.message,
                    category=NotificationCategory(r.category),
                    is_read=r.is_read,
                    created_at=r.created_at,
                )
                for r in rows
            ]

    def mark_read(self, user_id: str, notification_ids: Optional[List[int]] = None) -> int:
        """Mark notifications read. With no ids, marks all of the user's."""
        with session_scope(self._factory) as session:
            query = session.query(NotificationRecord).filter(
                NotificationRecord.user_id == user_id,
                NotificationRecord.is_read.is_(False),
            )
            if notification_ids is not None:
                query = query.filter(NotificationRecord.id.in_(notification_ids))
            return query.update({NotificationRecord.is_read: True}, synchronize_session=False)


class DatabaseAuditLogger(AuditLogger):
    """Appends to the audit_log table."""

    def __init__(self, session_factory: sessionmaker):
        self._factory = session_factory

    def record(self, actor_id, action, entity_type, entity_id, metadata=None) -> None:
        with session_scope(self._factory) as session:
            session.add(AuditLogRecord(
                actor_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=metadata or {},
                created_at=utcnow(),
            ))

    def entries(
        self,
        entity_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Most recent audit entries, optionally filtered by entity or actor."""
        with session_scope(self._factory) as session:
            query = session.query(AuditLogRecord)
            if entity_id is not None:
                query = query.filter(AuditLogRecord.entity_id == entity_id)
            if actor_id is not None:
                query = query.filter(AuditLogRecord.actor_id == actor_id)
            rows = query.order_by(AuditLogRecord.id.desc()).limit(limit).all()
            return [
                AuditEntry(
                    id=r.id,
                    actor_id=r.actor_id,
                    action=r.action,
                    entity_type=r.entity_type,
                    entity_id=r.entity_id,
                    metadata=r.details or {},
                    created_at=r.created_at,
                )
                for r in rows
            ]
