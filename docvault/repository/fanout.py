"""
DocVault Change Fan-Out: row-change notifications for open views.

``ChangeFeed.attach(session_factory)`` hooks SQLAlchemy session events on the
repository's sessionmaker:

    after_flush    → collect inserted / updated / deleted nodes and versions
    after_commit   → publish the collected events to subscribers
    after_rollback → discard them

Subscribers register per table with an event mask. Delivery is
at-least-once and unordered relative to other sessions; subscribers are
expected to refetch rather than apply deltas. A subscriber that raises is
logged and skipped, the rest still receive the event.

``RedisChangeRelay`` mirrors local events onto a Redis pub/sub channel and
replays events from other processes into the local feed.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Flag
from typing import Any, Callable, Dict, List, Set, Tuple

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from docvault.db.models import NodeRecord, VersionRecord

logger = logging.getLogger("docvault.repository.fanout")

TRACKED_MODELS = {
    NodeRecord: NodeRecord.__tablename__,
    VersionRecord: VersionRecord.__tablename__,
}

_SESSION_KEY = "docvault_changes"


class ChangeKind(Flag):
    INSERT = 1
    UPDATE = 2
    DELETE = 4
    ALL = 7


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: ChangeKind
    row_id: str
    origin: str = "local"

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "kind": self.kind.name, "row_id": self.row_id}


Callback = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class Subscription:
    id: str
    table: str
    mask: ChangeKind
    callback: Callback
    coalesce: bool = False

    def matches(self, change: ChangeEvent) -> bool:
        return change.table == self.table and bool(change.kind & self.mask)


class ChangeFeed:
    """In-process publish/subscribe over committed row changes."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._attached: List[sessionmaker] = []
        self._published = 0

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------

    def subscribe(
        self, table: str, event_mask: ChangeKind, callback: Callback, coalesce: bool = False,
    ) -> Subscription:
        """
        Register ``callback`` for changes to ``table`` matching ``event_mask``.

        A coalescing subscriber receives at most one event per (table, kind)
        from each committed batch.
        """
        if table not in TRACKED_MODELS.values():
            raise ValueError(f"Unknown table '{table}'")
        sub = Subscription(
            id=uuid.uuid4().hex, table=table, mask=event_mask, callback=callback, coalesce=coalesce,
        )
        with self._lock:
            self._subscriptions[sub.id] = sub
        logger.debug(f"Subscribed {sub.id} to {table} ({event_mask})")
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def published_count(self) -> int:
        return self._published

    def publish(self, change: ChangeEvent) -> int:
        """Deliver one event. Returns the number of subscribers reached."""
        return self.publish_many([change])

    def publish_many(self, changes: List[ChangeEvent]) -> int:
        """Deliver a batch of events. Returns the number of deliveries made."""
        changes = list(dict.fromkeys(changes))
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        self._published += len(changes)

        delivered = 0
        for sub in subscriptions:
            seen: Set[Tuple[str, ChangeKind]] = set()
            for change in changes:
                if not sub.matches(change):
                    continue
                if sub.coalesce:
                    if (change.table, change.kind) in seen:
                        continue
                    seen.add((change.table, change.kind))
                try:
                    sub.callback(change)
                    delivered += 1
                except Exception as e:
                    logger.error(f"Subscriber {sub.id} failed on {change.table}/{change.row_id}: {e}")
        return delivered

    # -------------------------------------------------------------------
    # SQLAlchemy integration
    # -------------------------------------------------------------------

    def attach(self, session_factory: sessionmaker) -> None:
        """Listen for flush/commit/rollback on every session from the factory."""
        if session_factory in self._attached:
            return
        event.listen(session_factory, "after_flush", self._after_flush)
        event.listen(session_factory, "after_commit", self._after_commit)
        event.listen(session_factory, "after_rollback", self._after_rollback)
        self._attached.append(session_factory)
        logger.info("Change feed attached to session factory")

    def detach(self) -> None:
        for factory in self._attached:
            event.remove(factory, "after_flush", self._after_flush)
            event.remove(factory, "after_commit", self._after_commit)
            event.remove(factory, "after_rollback", self._after_rollback)
        self._attached.clear()

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        pending = session.info.setdefault(_SESSION_KEY, [])
        for obj in session.new:
            table = TRACKED_MODELS.get(type(obj))
            if table:
                pending.append(ChangeEvent(table, ChangeKind.INSERT, obj.id))
        for obj in session.dirty:
            table = TRACKED_MODELS.get(type(obj))
            if table and session.is_modified(obj, include_collections=False):
                pending.append(ChangeEvent(table, ChangeKind.UPDATE, obj.id))
        for obj in session.deleted:
            table = TRACKED_MODELS.get(type(obj))
            if table:
                pending.append(ChangeEvent(table, ChangeKind.DELETE, obj.id))

    def _after_commit(self, session: Session) -> None:
        pending = session.info.pop(_SESSION_KEY, [])
        if pending:
            self.publish_many(pending)

    def _after_rollback(self, session: Session) -> None:
        session.info.pop(_SESSION_KEY, None)


# ---------------------------------------------------------------------------
# Redis relay
# ---------------------------------------------------------------------------

class RedisChangeRelay:
    """
    Bridges a ChangeFeed across processes via Redis pub/sub.

    Local events are published to ``channel``; messages from other relays are
    republished into the local feed with ``origin="remote"`` and are never
    sent back out.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        redis_url: str = "redis://localhost:6379/0",
        channel: str = "docvault:changes",
        client: Any = None,
    ):
        self._feed = feed
        self._redis_url = redis_url
        self._channel = channel
        self._client = client
        self._pubsub = None
        self._thread = None
        self._subscriptions: List[Subscription] = []
        self._instance_id = uuid.uuid4().hex

    @property
    def instance_id(self) -> str:
        return self._instance_id

    def start(self) -> bool:
        """Connect, subscribe to the channel and begin relaying."""
        try:
            if self._client is None:
                import redis
                self._client = redis.Redis.from_url(
                    self._redis_url,
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                )
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(**{self._channel: self._on_message})
            self._thread = self._pubsub.run_in_thread(sleep_time=0.1, daemon=True)
        except Exception as e:
            logger.warning(f"Redis change relay unavailable ({self._redis_url}): {e}")
            return False

        for table in TRACKED_MODELS.values():
            self._subscriptions.append(self._feed.subscribe(table, ChangeKind.ALL, self._forward))
        logger.info(f"Redis change relay started on channel '{self._channel}'")
        return True

    def stop(self) -> None:
        for sub in self._subscriptions:
            self._feed.unsubscribe(sub)
        self._subscriptions.clear()
        if self._thread is not None:
            self._thread.stop()
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None

    def _forward(self, change: ChangeEvent) -> None:
        if change.origin != "local":
            return
        payload = dict(change.to_dict(), source=self._instance_id)
        self._client.publish(self._channel, json.dumps(payload))

    def _on_message(self, message: Dict[str, Any]) -> None:
        try:
            payload = json.loads(message["data"])
            if payload.get("source") == self._instance_id:
                return
            change = ChangeEvent(
                table=payload["table"],
                kind=ChangeKind[payload["kind"]],
                row_id=payload["row_id"],
                origin="remote",
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed change message: {e}")
            return
        self._feed.publish(change)
