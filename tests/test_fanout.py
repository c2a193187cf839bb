"""Unit tests for docvault.repository.fanout: ChangeFeed and RedisChangeRelay."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from docvault.db.session import session_scope
from docvault.repository.fanout import ChangeEvent, ChangeFeed, ChangeKind, RedisChangeRelay
from docvault.repository.models import NodeCreate, NodeKind


def _collect(feed, table="nodes", mask=ChangeKind.ALL):
    received = []
    feed.subscribe(table, mask, received.append)
    return received


class TestSubscriptions:

    def test_mask_filters_kinds(self):
        feed = ChangeFeed()
        inserts = _collect(feed, mask=ChangeKind.INSERT)
        everything = _collect(feed)

        feed.publish(ChangeEvent("nodes", ChangeKind.INSERT, "n1"))
        feed.publish(ChangeEvent("nodes", ChangeKind.DELETE, "n1"))
        assert [e.kind for e in inserts] == [ChangeKind.INSERT]
        assert len(everything) == 2

    def test_table_filter(self):
        feed = ChangeFeed()
        versions = _collect(feed, table="node_versions")
        feed.publish(ChangeEvent("nodes", ChangeKind.UPDATE, "n1"))
        assert versions == []

    def test_unknown_table_rejected(self):
        with pytest.raises(ValueError):
            ChangeFeed().subscribe("users", ChangeKind.ALL, print)

    def test_unsubscribe(self):
        feed = ChangeFeed()
        sub = feed.subscribe("nodes", ChangeKind.ALL, MagicMock())
        assert feed.subscriber_count == 1
        feed.unsubscribe(sub)
        assert feed.subscriber_count == 0
        assert feed.publish(ChangeEvent("nodes", ChangeKind.INSERT, "n1")) == 0

    def test_coalescing_subscriber_gets_one_event_per_kind(self):
        feed = ChangeFeed()
        per_row = _collect(feed)
        coalesced = []
        feed.subscribe("nodes", ChangeKind.ALL, coalesced.append, coalesce=True)

        feed.publish_many([
            ChangeEvent("nodes", ChangeKind.UPDATE, f"n{i}") for i in range(5)
        ] + [ChangeEvent("nodes", ChangeKind.DELETE, "n9")])
        assert len(per_row) == 6
        assert [e.kind for e in coalesced] == [ChangeKind.UPDATE, ChangeKind.DELETE]
        assert feed.published_count == 6

    def test_failing_subscriber_isolated(self):
        feed = ChangeFeed()
        feed.subscribe("nodes", ChangeKind.ALL, MagicMock(side_effect=RuntimeError("boom")))
        healthy = _collect(feed)

        assert feed.publish(ChangeEvent("nodes", ChangeKind.INSERT, "n1")) == 1
        assert len(healthy) == 1
        assert feed.published_count == 1


class TestSessionIntegration:

    def test_commit_publishes_insert(self, store, feed, session_factory):
        feed.attach(session_factory)
        received = _collect(feed)
        node = store.create(NodeCreate(name="Docs", kind=NodeKind.FOLDER, owner_id="alice"))
        assert ChangeEvent("nodes", ChangeKind.INSERT, node.id) in received

    def test_update_and_delete(self, store, feed, session_factory):
        node = store.create(NodeCreate(name="Docs", kind=NodeKind.FOLDER, owner_id="alice"))
        feed.attach(session_factory)
        received = _collect(feed)

        store.mark_deleted([node.id], datetime.now(timezone.utc), node.id)
        store.hard_delete([node.id])
        kinds = [e.kind for e in received if e.row_id == node.id]
        assert kinds == [ChangeKind.UPDATE, ChangeKind.DELETE]

    def test_rollback_discards(self, feed, session_factory):
        from docvault.db.models import NodeRecord

        feed.attach(session_factory)
        received = _collect(feed)
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as session:
                session.add(NodeRecord(name="x", kind="folder", owner_id="alice", visibility="private"))
                session.flush()
                raise RuntimeError("abort")
        assert received == []

    def test_cascade_commit_coalesced(self, store, feed, session_factory):
        parent = store.create(NodeCreate(name="Docs", kind=NodeKind.FOLDER, owner_id="alice"))
        children = [
            store.create(NodeCreate(name=f"c{i}", kind=NodeKind.FOLDER, owner_id="alice", parent_id=parent.id))
            for i in range(4)
        ]
        feed.attach(session_factory)
        per_row = _collect(feed)
        coalesced = []
        feed.subscribe("nodes", ChangeKind.ALL, coalesced.append, coalesce=True)

        ids = [parent.id] + [c.id for c in children]
        store.mark_deleted(ids, datetime.now(timezone.utc), parent.id)
        assert {e.row_id for e in per_row} == set(ids)
        assert [e.kind for e in coalesced] == [ChangeKind.UPDATE]

    def test_attach_is_idempotent(self, store, feed, session_factory):
        feed.attach(session_factory)
        feed.attach(session_factory)
        received = _collect(feed)
        store.create(NodeCreate(name="Docs", kind=NodeKind.FOLDER, owner_id="alice"))
        assert len(received) == 1

    def test_detach(self, store, feed, session_factory):
        feed.attach(session_factory)
        feed.detach()
        received = _collect(feed)
        store.create(NodeCreate(name="Docs", kind=NodeKind.FOLDER, owner_id="alice"))
        assert received == []

    def test_version_rows_reported(self, service, feed):
        doc = service.upload_file("a.pdf", b"1", owner_id="alice")
        received = _collect(feed, table="node_versions", mask=ChangeKind.INSERT)
        service.commit_version(doc.id, "alice", b"2")
        assert len(received) == 1


class TestRedisChangeRelay:

    def _relay(self, feed):
        client = MagicMock()
        relay = RedisChangeRelay(feed, channel="test:changes", client=client)
        return relay, client

    def test_start_subscribes(self):
        feed = ChangeFeed()
        relay, client = self._relay(feed)
        assert relay.start()
        client.pubsub.return_value.subscribe.assert_called_once()
        assert feed.subscriber_count == 2
        relay.stop()
        assert feed.subscriber_count == 0
        client.pubsub.return_value.close.assert_called_once()

    def test_start_failure_returns_false(self):
        feed = ChangeFeed()
        relay, client = self._relay(feed)
        client.pubsub.side_effect = ConnectionError("refused")
        assert relay.start() is False
        assert feed.subscriber_count == 0

    def test_local_events_forwarded(self):
        feed = ChangeFeed()
        relay, client = self._relay(feed)
        relay.start()
        feed.publish(ChangeEvent("nodes", ChangeKind.UPDATE, "n1"))

        channel, body = client.publish.call_args[0]
        assert channel == "test:changes"
        assert json.loads(body) == {
            "table": "nodes", "kind": "UPDATE", "row_id": "n1", "source": relay.instance_id,
        }

    def test_remote_events_republished_not_echoed(self):
        feed = ChangeFeed()
        relay, client = self._relay(feed)
        relay.start()
        received = _collect(feed)

        relay._on_message({"data": json.dumps(
            {"table": "nodes", "kind": "DELETE", "row_id": "n9", "source": "other"}
        )})
        assert received == [ChangeEvent("nodes", ChangeKind.DELETE, "n9", origin="remote")]
        client.publish.assert_not_called()

    def test_own_messages_ignored(self):
        feed = ChangeFeed()
        relay, _ = self._relay(feed)
        received = _collect(feed)
        relay._on_message({"data": json.dumps(
            {"table": "nodes", "kind": "INSERT", "row_id": "n1", "source": relay.instance_id}
        )})
        assert received == []

    def test_malformed_message_ignored(self):
        feed = ChangeFeed()
        relay, _ = self._relay(feed)
        received = _collect(feed)
        relay._on_message({"data": "not json"})
        relay._on_message({"data": json.dumps({"table": "nodes", "kind": "EXPLODE", "row_id": "x"})})
        assert received == []
